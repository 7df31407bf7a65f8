"""
Team Sync - Keep GitHub team memberships in line with declared YAML rosters.

This package reconciles each team's members and maintainers against a target
mapping of user to role, forcing organization admins to the maintainer role.
"""

__version__ = "1.0.0"
__author__ = "Team Sync Maintainers"
