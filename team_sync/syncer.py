"""
Team membership reconciler.

The Syncer makes a team's membership on the directory exactly match a target
mapping of identity to role. It lists the current members and maintainers,
applies the org admin override, computes the add/update/remove operations and
applies them, collecting per-operation failures instead of stopping at the
first one.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

from team_sync.admin_cache import OrgAdminCache
from team_sync.directories.base import DirectoryClient, DirectoryError
from team_sync.membership import (
    Operation,
    OperationKind,
    Role,
    compute_operations,
    merge_listings,
    sorted_keys,
)
from team_sync.notifications import NullNotifier, ProgressNotifier

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """
    Aggregate of one or more sync failures.

    ``errors`` keeps every underlying exception so callers can report them
    individually; the message lists them one per line.
    """

    def __init__(self, errors: Iterable[Exception], message: Optional[str] = None):
        self.errors: List[Exception] = list(errors)
        super().__init__(message or '\n'.join(str(e) for e in self.errors))

    @classmethod
    def join(cls, errors: Iterable[Optional[Exception]]) -> Optional['SyncError']:
        """Combine errors into one SyncError, flattening nested ones. None if there are none."""
        flat: List[Exception] = []
        for error in errors:
            if error is None:
                continue
            if isinstance(error, SyncError):
                flat.extend(error.errors)
            else:
                flat.append(error)
        return cls(flat) if flat else None


class GroupSyncError(DirectoryError):
    """A team could not be reconciled at all (listing or admin lookup failed)."""

    def __init__(self, org: str, team: str, cause: Exception):
        super().__init__(f"failed to sync {org}/{team}: {cause}", getattr(cause, 'status', None))
        self.org = org
        self.team = team
        self.cause = cause


@dataclass
class SyncResult:
    """Outcome of reconciling one team."""

    org: str
    team: str
    dry_run: bool = False
    operations: List[Operation] = field(default_factory=list)
    applied: List[Operation] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def error(self) -> Optional[SyncError]:
        return SyncError.join(self.errors)

    def counts(self, applied: bool = False) -> Dict[str, int]:
        """Operations per kind; only the successfully applied ones if ``applied``."""
        counts = {kind.value: 0 for kind in OperationKind}
        for operation in (self.applied if applied else self.operations):
            counts[operation.kind.value] += 1
        return counts


class Syncer:
    """
    Reconciles team memberships against target mappings.

    A Syncer holds no per-team state, so one instance may reconcile several
    teams concurrently; the org admin cache is the only shared state.
    """

    def __init__(self, directory: DirectoryClient,
                 admin_cache: Optional[OrgAdminCache] = None,
                 notifier: Optional[ProgressNotifier] = None,
                 dry_run: bool = False,
                 operation_workers: int = 1,
                 ignored_admins: Optional[Iterable[str]] = None):
        """
        Initialize the syncer.

        Args:
            directory: Directory client used for listings and changes
            admin_cache: Shared org admin cache; created from ``directory`` if omitted
            notifier: Receives one progress line per attempted change
            dry_run: Report changes without sending them to the directory
            operation_workers: Number of changes applied in parallel within a team
            ignored_admins: Ignore list for a cache created here
        """
        self.directory = directory
        self.admin_cache = admin_cache or OrgAdminCache(directory, ignored_admins)
        self.notifier = notifier or NullNotifier()
        self.dry_run = dry_run
        self.operation_workers = max(1, int(operation_workers))

    def sync(self, org: str, team: str, target: Mapping[str, Union[Role, str]]) -> SyncResult:
        """
        Make the membership of ``org/team`` exactly match ``target``.

        Args:
            org: Organization name
            team: Team slug
            target: Mapping of identity to role ("member" or "maintainer")

        Returns:
            SyncResult with the computed operations and any collected errors.
            If the current state cannot be read the result is marked aborted
            and no change is attempted.

        Raises:
            ValueError: If ``target`` contains an unknown role
        """
        target_membership = {identity: Role.parse(role) for identity, role in target.items()}
        result = SyncResult(org, team, dry_run=self.dry_run)

        logger.debug(f"Starting sync of {org}/{team}, target: {target_membership}")

        try:
            org_admins = self.admin_cache.get_org_admins(org)
            existing = self._existing_membership(org, team)
        except Exception as e:
            logger.error(f"Aborting sync of {org}/{team}: {e}",
                         exc_info=not isinstance(e, DirectoryError))
            self.notifier.group_failed(org, team, e)
            result.errors.append(GroupSyncError(org, team, e))
            result.aborted = True
            return result

        logger.debug(f"Org admins of {org}: {sorted(org_admins)}")
        logger.debug(f"Upstream state of {org}/{team}: {existing}")

        result.operations = compute_operations(org, team, existing, target_membership, org_admins)
        if not result.operations:
            logger.info(f"{org}/{team} is already in sync")
            return result

        if self.operation_workers > 1 and len(result.operations) > 1:
            with ThreadPoolExecutor(max_workers=self.operation_workers,
                                    thread_name_prefix='team-sync-op') as executor:
                outcomes = list(executor.map(self._apply, result.operations))
        else:
            outcomes = [self._apply(operation) for operation in result.operations]

        for operation, error in zip(result.operations, outcomes):
            if error is None:
                if not self.dry_run:
                    result.applied.append(operation)
            else:
                result.errors.append(error)

        logger.debug(f"Finished sync of {org}/{team}: {len(result.applied)} applied, "
                     f"{len(result.errors)} failed")
        return result

    def _existing_membership(self, org: str, team: str) -> Dict[str, Role]:
        """List members and maintainers of the team and merge them."""
        if self.operation_workers > 1:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix='team-sync-list') as executor:
                members = executor.submit(self.directory.list_team_members, org, team, Role.MEMBER)
                maintainers = executor.submit(self.directory.list_team_members, org, team, Role.MAINTAINER)
                member_logins, maintainer_logins = members.result(), maintainers.result()
        else:
            member_logins = self.directory.list_team_members(org, team, Role.MEMBER)
            maintainer_logins = self.directory.list_team_members(org, team, Role.MAINTAINER)

        existing = merge_listings(member_logins, maintainer_logins)
        logger.debug(f"{org}/{team} has {len(existing)} members: {sorted_keys(existing)}")
        return existing

    def _apply(self, operation: Operation) -> Optional[Exception]:
        """Report and, unless in dry-run, execute one operation. Returns its error, if any."""
        self.notifier.operation(operation)
        if self.dry_run:
            return None

        try:
            if operation.is_upsert:
                self.directory.upsert_membership(operation.org, operation.team,
                                                 operation.identity, operation.role)
            else:
                self.directory.remove_membership(operation.org, operation.team, operation.identity)
        except Exception as e:
            logger.error(f"Failed to {operation.describe()}: {e}",
                         exc_info=not isinstance(e, DirectoryError))
            self.notifier.operation_failed(operation, e)
            return e

        logger.info(f"Applied: {operation.describe()}")
        return None
