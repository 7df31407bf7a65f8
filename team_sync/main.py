"""
Main orchestrator for Team Sync.

This module loads the configuration and membership files, derives the teams to
reconcile for each group family, runs the Syncer on every team and aggregates
the errors into a single exit status.
"""

import sys
import signal
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from team_sync.admin_cache import OrgAdminCache
from team_sync.config import ConfigurationError, load_config, load_memberships
from team_sync.directories import DirectoryClient, DirectoryError, load_directory_client
from team_sync.logging_setup import setup_logging
from team_sync.membership import Role, filter_roles
from team_sync.notifications import ProgressNotifier
from team_sync.syncer import SyncError, SyncResult, Syncer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SYNC_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CANCELLED = 3
EXIT_UNEXPECTED_ERROR = 4


def team_targets(family: str, membership: Mapping[str, Role],
                 templates: List[Dict[str, Any]]) -> List[Tuple[str, Dict[str, Role]]]:
    """
    Derive the teams of a group family and their target memberships.

    Each template names a team as ``prefix + family + suffix``; a template
    with ``roles`` only keeps the entries holding one of those roles.
    """
    targets = []
    for template in templates:
        team = f"{template.get('prefix', '')}{family}{template.get('suffix', '')}"
        targets.append((team, filter_roles(membership, template.get('roles'))))
    return targets


class SyncOrchestrator:
    """
    Runs a complete sync over every configured group family.

    Errors from individual teams never stop the run; they are collected and
    reported together at the end.
    """

    def __init__(self, config_path: Optional[str] = None,
                 dry_run: Optional[bool] = None,
                 debug: Optional[bool] = None,
                 memberships_dir: Optional[str] = None,
                 max_workers: Optional[int] = None,
                 directory: Optional[DirectoryClient] = None,
                 notifier: Optional[ProgressNotifier] = None,
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Overrides ``sync.dry_run`` when not None
            debug: Overrides ``logging.debug`` when not None
            memberships_dir: Overrides ``memberships.directory`` when not None
            max_workers: Overrides ``sync.max_workers`` when not None
            directory: Directory client to use instead of the configured one
            notifier: Progress notifier, stdout by default
            cancel_event: Event that cancels the run once set
        """
        self.config = None
        self.config_path = config_path
        self.overrides = {
            'dry_run': dry_run,
            'debug': debug,
            'memberships_dir': memberships_dir,
            'max_workers': max_workers,
        }
        self.directory = directory
        self._owns_directory = directory is None
        self.notifier = notifier or ProgressNotifier()
        self.cancel_event = cancel_event or threading.Event()

        self.results: List[SyncResult] = []
        self._results_lock = threading.Lock()
        self.error: Optional[SyncError] = None

        self.sync_stats = {
            'families_processed': 0,
            'groups_processed': 0,
            'groups_failed': 0,
            'groups_skipped': 0,
            'total_users_added': 0,
            'total_users_updated': 0,
            'total_users_removed': 0,
            'total_errors': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info("Starting Team Sync")

            families = load_memberships(self.config['memberships']['directory'])
            self._connect_directory()
            self._process_families(families)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            self.error = SyncError.join(result.error for result in self.results)

            if self.cancel_event.is_set():
                logger.warning("Sync cancelled before completion")
                self._report_errors()
                return EXIT_CANCELLED

            if self.error:
                self._report_errors()
                return EXIT_SYNC_ERRORS

            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except DirectoryError as e:
            logger.error(f"Failed to create directory client: {e}")
            print(f"Failed to create directory client: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            print(f"Unexpected error: {e}", file=sys.stderr)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load configuration and apply command line overrides."""
        self.config = load_config(self.config_path)

        if self.overrides['dry_run'] is not None:
            self.config['sync']['dry_run'] = self.overrides['dry_run']
        if self.overrides['debug'] is not None:
            self.config['logging']['debug'] = self.overrides['debug']
        if self.overrides['memberships_dir'] is not None:
            self.config['memberships']['directory'] = self.overrides['memberships_dir']
        if self.overrides['max_workers'] is not None:
            if self.overrides['max_workers'] < 1:
                raise ConfigurationError("--max-workers must be a positive integer")
            self.config['sync']['max_workers'] = self.overrides['max_workers']

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    @property
    def dry_run(self) -> bool:
        return bool(self.config['sync']['dry_run'])

    def _connect_directory(self):
        """Create the directory client unless one was injected."""
        if self.directory is None:
            self.directory = load_directory_client(self.config['directory'], cancel_event=self.cancel_event)

    def _process_families(self, families: Dict[str, Dict[str, Role]]):
        """Reconcile every team of every family."""
        org = self.config['directory']['org']
        sync_config = self.config['sync']
        templates = self.config['memberships']['teams']

        admin_cache = OrgAdminCache(self.directory, self.config.get('ignored_org_admins'))
        syncer = Syncer(
            self.directory,
            admin_cache=admin_cache,
            notifier=self.notifier,
            dry_run=self.dry_run,
            operation_workers=sync_config['operation_workers'],
        )

        if self.dry_run:
            self.notifier.dry_run_started()

        if not families:
            logger.warning(f"No membership files found in {self.config['memberships']['directory']}")

        max_workers = sync_config['max_workers']
        if max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='team-sync') as executor:
                futures = []
                for family in sorted(families):
                    self.notifier.family_started(family)
                    for team, target in team_targets(family, families[family], templates):
                        futures.append(executor.submit(self._sync_group, syncer, org, team, target))
                    self.sync_stats['families_processed'] += 1
                for future in futures:
                    future.result()
        else:
            for family in sorted(families):
                if self.cancel_event.is_set():
                    break
                self.notifier.family_started(family)
                for team, target in team_targets(family, families[family], templates):
                    self._sync_group(syncer, org, team, target)
                self.sync_stats['families_processed'] += 1

    def _sync_group(self, syncer: Syncer, org: str, team: str, target: Dict[str, Role]):
        """Reconcile one team and record its result."""
        if self.cancel_event.is_set():
            logger.debug(f"Skipping {org}/{team}, sync cancelled")
            with self._results_lock:
                self.sync_stats['groups_skipped'] += 1
            return

        logger.info(f"Syncing team: {org}/{team}")
        result = syncer.sync(org, team, target)

        with self._results_lock:
            self.results.append(result)
            if result.aborted:
                self.sync_stats['groups_failed'] += 1
            else:
                self.sync_stats['groups_processed'] += 1
            counts = result.counts(applied=not result.dry_run)
            self.sync_stats['total_users_added'] += counts['add']
            self.sync_stats['total_users_updated'] += counts['update']
            self.sync_stats['total_users_removed'] += counts['remove']
            self.sync_stats['total_errors'] += len(result.errors)

    def _report_errors(self):
        """Print every collected error to stderr."""
        if not self.error:
            return
        print(f"Sync finished with {len(self.error.errors)} error(s):", file=sys.stderr)
        for error in self.error.errors:
            print(f"  - {error}", file=sys.stderr)

    def _log_sync_summary(self):
        """Log final synchronization statistics and print the progress summary."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Families processed: {stats['families_processed']}")
        logger.info(f"Teams processed: {stats['groups_processed']}")
        logger.info(f"Teams failed: {stats['groups_failed']}")
        logger.info(f"Teams skipped: {stats['groups_skipped']}")
        logger.info(f"Users added: {stats['total_users_added']}")
        logger.info(f"Users updated: {stats['total_users_updated']}")
        logger.info(f"Users removed: {stats['total_users_removed']}")
        logger.info(f"Total errors: {stats['total_errors']}")

        self.notifier.summary(
            {
                'add': stats['total_users_added'],
                'update': stats['total_users_updated'],
                'remove': stats['total_users_removed'],
            },
            stats['total_errors'],
            dry_run=self.dry_run,
        )

    def validate(self) -> Dict[str, Any]:
        """
        Load configuration and membership files without contacting the directory.

        Returns:
            Dictionary with the validation status and the teams that would be synced
        """
        report = {'status': 'valid', 'teams': {}, 'errors': []}
        try:
            self._load_configuration()
            families = load_memberships(self.config['memberships']['directory'])
        except ConfigurationError as e:
            report['status'] = 'invalid'
            report['errors'].append(str(e))
            return report

        org = self.config['directory']['org']
        for family in sorted(families):
            for team, target in team_targets(family, families[family], self.config['memberships']['teams']):
                report['teams'][f"{org}/{team}"] = {
                    identity: role.value for identity, role in sorted(target.items())
                }
        return report

    def _cleanup(self):
        """Clean up resources."""
        if self._owns_directory and self.directory is not None:
            self.directory.close()


def install_signal_handlers(cancel_event: threading.Event):
    """
    Cancel the run on SIGINT/SIGTERM.

    The first signal sets ``cancel_event`` and restores the previous handlers,
    so a second signal stops the process the usual way.
    """
    signals = (signal.SIGINT, signal.SIGTERM)
    previous = {signum: signal.getsignal(signum) for signum in signals}

    def handler(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling sync")
        cancel_event.set()
        for restored, original in previous.items():
            signal.signal(restored, original if original is not None else signal.SIG_DFL)

    for signum in signals:
        signal.signal(signum, handler)


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Synchronize GitHub team memberships from YAML files')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--memberships-dir', '-m', help='Directory holding the membership files')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Report changes without applying them')
    parser.add_argument('--debug', action='store_true', default=None,
                        help='Enable debug logging')
    parser.add_argument('--max-workers', type=int,
                        help='Number of teams synchronized in parallel')
    parser.add_argument('--validate', action='store_true',
                        help='Validate configuration and membership files, then exit')

    args = parser.parse_args(argv)

    cancel_event = threading.Event()
    orchestrator = SyncOrchestrator(
        config_path=args.config,
        dry_run=args.dry_run,
        debug=args.debug,
        memberships_dir=args.memberships_dir,
        max_workers=args.max_workers,
        cancel_event=cancel_event,
    )

    if args.validate:
        report = orchestrator.validate()
        print(json.dumps(report, indent=2))
        sys.exit(0 if report['status'] == 'valid' else EXIT_CONFIGURATION_ERROR)

    install_signal_handlers(cancel_event)
    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
