from team_sync.main import main

main()
