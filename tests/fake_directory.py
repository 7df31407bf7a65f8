"""
In-memory directory used by the test suite.

Records every call so tests can assert on the exact directory traffic, and can
be told to fail specific calls.
"""

import os
import sys
import threading
from typing import Dict, Optional, Set

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from team_sync.directories.base import DirectoryClient, DirectoryError
from team_sync.membership import Role


class FakeDirectory(DirectoryClient):
    """Thread-safe fake of the directory capability."""

    def __init__(self, teams: Optional[Dict] = None, admins: Optional[Dict[str, Set[str]]] = None):
        self.teams = {key: dict(members) for key, members in (teams or {}).items()}
        self.admins = {org: set(logins) for org, logins in (admins or {}).items()}
        # (org, team) -> identities additionally reported in the member listing
        self.duplicated_members: Dict = {}
        # (method, key) -> exception; key is an identity, an (org, team) pair or an org
        self.failures: Dict = {}
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def _maybe_fail(self, method, key):
        error = self.failures.get((method, key))
        if error is not None:
            raise error

    def calls_to(self, method):
        with self._lock:
            return [call for call in self.calls if call[0] == method]

    @property
    def mutations(self):
        with self._lock:
            return [call for call in self.calls if call[0] in ('upsert', 'remove')]

    def membership(self, org, team) -> Dict[str, Role]:
        with self._lock:
            return dict(self.teams.get((org, team), {}))

    def list_team_members(self, org, team, role):
        self._record('list', org, team, role)
        self._maybe_fail('list', (org, team))
        with self._lock:
            members = self.teams.get((org, team), {})
            logins = {login for login, current in members.items() if current == role}
            if role == Role.MEMBER:
                logins |= set(self.duplicated_members.get((org, team), ()))
            return logins

    def list_org_admins(self, org):
        self._record('admins', org)
        self._maybe_fail('admins', org)
        with self._lock:
            return set(self.admins.get(org, ()))

    def upsert_membership(self, org, team, identity, role):
        self._record('upsert', org, team, identity, role)
        self._maybe_fail('upsert', identity)
        with self._lock:
            self.teams.setdefault((org, team), {})[identity] = role

    def remove_membership(self, org, team, identity):
        self._record('remove', org, team, identity)
        self._maybe_fail('remove', identity)
        with self._lock:
            members = self.teams.get((org, team), {})
            if identity not in members:
                raise DirectoryError(f"{identity} is not a member of {org}/{team}", 404)
            del members[identity]

    def close(self):
        self.closed = True
