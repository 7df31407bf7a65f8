"""
GitHub directory integration.

Implements the DirectoryClient interface against the GitHub REST API: team
membership listings by role, organization admin listings, and team membership
upserts and removals.
"""

import logging
import re
from typing import Any, Dict, Iterator, Optional, Set
from urllib.parse import quote, urlencode

from .base import HTTPDirectoryClient, DirectoryError
from team_sync.membership import Role

logger = logging.getLogger(__name__)

_LINK_PATTERN = re.compile(r'<([^>]*)>\s*;\s*rel="([^"]*)"')


def parse_link_header(contents: str) -> Dict[str, str]:
    """
    Parse a Link header like

        <https://api.example/?page=2>; rel="next", <https://api.example/?page=3>; rel="last"

    into ``{"next": "https://api.example/?page=2", "last": "https://api.example/?page=3"}``.
    """
    return {rel: url for url, rel in _LINK_PATTERN.findall(contents or '')}


class GitHubDirectoryClient(HTTPDirectoryClient):
    """
    GitHub REST API client.

    Team slugs are used to address teams; identities are user logins.
    """

    API_VERSION = '2022-11-28'
    DEFAULT_BASE_URL = 'https://api.github.com'

    def __init__(self, config: Dict[str, Any], cancel_event=None):
        config = dict(config)
        config.setdefault('base_url', self.DEFAULT_BASE_URL)
        super().__init__(config, cancel_event)
        self.per_page = int(config.get('per_page', 100))
        logger.info(f"Initialized GitHub directory client for {self.host}")

    def default_headers(self) -> Dict[str, str]:
        return {
            'Accept': 'application/vnd.github+json',
            'X-GitHub-Api-Version': self.API_VERSION,
            'User-Agent': 'team-sync',
        }

    def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Yield every item of a paginated list endpoint, following rel="next" links."""
        query = dict(params or {})
        query['per_page'] = self.per_page
        next_url: Optional[str] = f"{path}?{urlencode(query)}"

        while next_url:
            _, headers, items = self.request('GET', next_url)
            if items is None:
                items = []
            if not isinstance(items, list):
                raise DirectoryError(f"Expected a list response from {path}, got {type(items).__name__}")
            yield from items
            next_url = parse_link_header(headers.get('link', '')).get('next')

    @staticmethod
    def _logins(items) -> Set[str]:
        logins = set()
        for item in items:
            login = item.get('login') if isinstance(item, dict) else None
            if not login:
                logger.warning(f"Skipping directory entry without login: {item}")
                continue
            logins.add(login)
        return logins

    def list_team_members(self, org: str, team: str, role: Role) -> Set[str]:
        path = f"/orgs/{quote(org, safe='')}/teams/{quote(team, safe='')}/members"
        try:
            members = self._logins(self._paginate(path, {'role': Role.parse(role).value}))
        except DirectoryError as e:
            raise type(e)(f"Failed to get {role}s for GitHub team {org}/{team}: {e}", e.status) from e
        logger.debug(f"Retrieved {len(members)} {role}s of {org}/{team}")
        return members

    def list_org_admins(self, org: str) -> Set[str]:
        path = f"/orgs/{quote(org, safe='')}/members"
        try:
            admins = self._logins(self._paginate(path, {'role': 'admin'}))
        except DirectoryError as e:
            raise type(e)(f"Failed to get org admins for {org}: {e}", e.status) from e
        logger.debug(f"Retrieved {len(admins)} org admins of {org}")
        return admins

    def _membership_path(self, org: str, team: str, identity: str) -> str:
        return (f"/orgs/{quote(org, safe='')}/teams/{quote(team, safe='')}"
                f"/memberships/{quote(identity, safe='')}")

    def upsert_membership(self, org: str, team: str, identity: str, role: Role) -> None:
        role = Role.parse(role)
        try:
            self.request('PUT', self._membership_path(org, team, identity), body={'role': role.value})
        except DirectoryError as e:
            raise type(e)(f"Failed to add {identity} to {org}/{team}: {e}", e.status) from e

    def remove_membership(self, org: str, team: str, identity: str) -> None:
        try:
            self.request('DELETE', self._membership_path(org, team, identity))
        except DirectoryError as e:
            raise type(e)(f"Failed to remove {identity} from {org}/{team}: {e}", e.status) from e
