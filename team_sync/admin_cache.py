"""
Organization admin cache.

Several teams under the same organization are reconciled in one run, and org
admin status is not expected to change mid-run, so admin lookups are fetched
once per organization and shared by every reconciliation in the run.
"""

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from typing import Dict, FrozenSet, Iterable, Optional

from team_sync.directories.base import DirectoryClient

logger = logging.getLogger(__name__)

# Enterprise-installed automation accounts that must never be force-promoted
DEFAULT_IGNORED_ORG_ADMINS = frozenset({
    'google-admin',
    'google-ospo-team',
    'googlebot',
})


class ReadWriteLock:
    """
    Reader/writer lock built on a condition variable.

    Any number of readers may hold the lock at once; a writer holds it alone.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class OrgAdminCache:
    """
    Per-run cache of organization admins.

    Cached organizations are read under a shared lock. A miss is resolved under
    a per-organization lock, so concurrent misses for the same organization
    perform a single remote fetch while other organizations proceed. Failed
    fetches are not cached.
    """

    def __init__(self, directory: DirectoryClient,
                 ignored_admins: Optional[Iterable[str]] = None):
        """
        Initialize the cache.

        Args:
            directory: Directory client used to list org admins
            ignored_admins: Identities never treated as org admins. Defaults to
                DEFAULT_IGNORED_ORG_ADMINS
        """
        self.directory = directory
        if ignored_admins is None:
            ignored_admins = DEFAULT_IGNORED_ORG_ADMINS
        self.ignored_admins: FrozenSet[str] = frozenset(ignored_admins)

        self._cache: Dict[str, FrozenSet[str]] = {}
        self._lock = ReadWriteLock()

        self._fetch_locks: Dict[str, threading.Lock] = {}
        self._fetch_locks_guard = threading.Lock()
        self._fetch_counts = Counter()

    def _cached(self, org: str) -> Optional[FrozenSet[str]]:
        with self._lock.read_locked():
            return self._cache.get(org)

    def _fetch_lock(self, org: str) -> threading.Lock:
        with self._fetch_locks_guard:
            return self._fetch_locks.setdefault(org, threading.Lock())

    def get_org_admins(self, org: str) -> FrozenSet[str]:
        """
        Get the admins of an organization, excluding ignored identities.

        Args:
            org: Organization name

        Returns:
            Frozen set of admin identities

        Raises:
            DirectoryError: If the directory lookup fails; nothing is cached
        """
        admins = self._cached(org)
        if admins is not None:
            logger.debug(f"Using cached org admins for {org}")
            return admins

        with self._fetch_lock(org):
            # Another thread may have populated the entry while we waited
            admins = self._cached(org)
            if admins is not None:
                logger.debug(f"Using cached org admins for {org}")
                return admins

            logger.debug(f"Looking up org admins for {org}")
            with self._fetch_locks_guard:
                self._fetch_counts[org] += 1
            fetched = self.directory.list_org_admins(org)

            ignored = self.ignored_admins.intersection(fetched)
            if ignored:
                logger.debug(f"Ignoring automation admins of {org}: {sorted(ignored)}")
            admins = frozenset(fetched) - self.ignored_admins

            with self._lock.write_locked():
                self._cache[org] = admins

        logger.info(f"Found {len(admins)} org admins for {org}")
        return admins

    def fetch_count(self, org: str) -> int:
        """Number of remote lookups attempted for ``org`` in this run."""
        with self._fetch_locks_guard:
            return self._fetch_counts[org]

    def clear(self):
        with self._lock.write_locked():
            self._cache.clear()
        with self._fetch_locks_guard:
            self._fetch_counts.clear()
