"""
Membership data model and diff helpers for Team Sync.

This module defines the role enumeration, the operation records produced by a
reconciliation, and the pure functions that merge directory listings and
compute the operations needed to converge a team onto its target membership.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Team role, ordered so that ``MAINTAINER`` dominates ``MEMBER``."""

    MEMBER = 'member'
    MAINTAINER = 'maintainer'

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    @classmethod
    def parse(cls, value) -> 'Role':
        """
        Convert a configuration value to a Role.

        Args:
            value: Role name, or an existing Role

        Returns:
            Matching Role

        Raises:
            ValueError: If the value is not a recognised role name
        """
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
        valid = ', '.join(f'"{role.value}"' for role in cls)
        raise ValueError(f"Invalid role {value!r}, expected one of {valid}")

    def __str__(self) -> str:
        return self.value


_ROLE_RANKS = {Role.MEMBER: 0, Role.MAINTAINER: 1}


class OperationKind(str, Enum):
    ADD = 'add'
    UPDATE = 'update'
    REMOVE = 'remove'

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Operation:
    """A single change to apply to a team."""

    kind: OperationKind
    org: str
    team: str
    identity: str
    role: Optional[Role] = None
    previous_role: Optional[Role] = None

    @property
    def is_upsert(self) -> bool:
        return self.kind in (OperationKind.ADD, OperationKind.UPDATE)

    def describe(self) -> str:
        if self.kind == OperationKind.ADD:
            return f"add {self.identity} to {self.org}/{self.team} as {self.role}"
        if self.kind == OperationKind.UPDATE:
            return (f"update {self.identity} role in {self.org}/{self.team} "
                    f"from {self.previous_role} to {self.role}")
        return f"remove {self.identity} from {self.org}/{self.team}"


def merge_listings(members: Iterable[str], maintainers: Iterable[str]) -> Dict[str, Role]:
    """
    Merge per-role directory listings into a single membership mapping.

    An identity that appears in both listings keeps the higher role, whatever
    order the listings are processed in.

    Args:
        members: Identities listed with the member role
        maintainers: Identities listed with the maintainer role

    Returns:
        Mapping of identity to role
    """
    membership: Dict[str, Role] = {}
    for role, identities in ((Role.MAINTAINER, maintainers), (Role.MEMBER, members)):
        for identity in identities:
            current = membership.get(identity)
            if current is None or role.rank > current.rank:
                membership[identity] = role
            elif current != role:
                logger.debug(f"{identity} listed as both {current} and {role}, keeping {current}")
    return membership


def apply_admin_override(target: Mapping[str, Role],
                         org_admins: FrozenSet[str]) -> Dict[str, Role]:
    """
    Return the target membership with organization admins forced to maintainer.

    GitHub always reports org admins as team maintainers, so requesting any
    lower role would produce a diff on every run.
    """
    effective: Dict[str, Role] = {}
    for identity, role in target.items():
        if identity in org_admins and role != Role.MAINTAINER:
            logger.warning(f"Upgrading target role of org admin {identity} from {role} to maintainer")
            role = Role.MAINTAINER
        effective[identity] = role
    return effective


def compute_operations(org: str, team: str,
                       existing: Mapping[str, Role],
                       target: Mapping[str, Role],
                       org_admins: FrozenSet[str] = frozenset()) -> List[Operation]:
    """
    Compute the operations that converge ``existing`` onto ``target``.

    Args:
        org: Organization name
        team: Team slug
        existing: Current team membership
        target: Desired team membership as configured
        org_admins: Organization admins subject to the maintainer override

    Returns:
        Upserts in identity order, followed by removals in identity order
    """
    effective = apply_admin_override(target, org_admins)
    operations: List[Operation] = []

    for identity in sorted(effective):
        target_role = effective[identity]
        existing_role = existing.get(identity)
        if existing_role is None:
            operations.append(Operation(OperationKind.ADD, org, team, identity, target_role))
        elif existing_role != target_role:
            operations.append(Operation(OperationKind.UPDATE, org, team, identity,
                                        target_role, existing_role))

    # Removal only depends on presence in the configured target
    for identity in sorted(existing):
        if identity not in target:
            operations.append(Operation(OperationKind.REMOVE, org, team, identity,
                                        previous_role=existing[identity]))

    return operations


def filter_roles(target: Mapping[str, Role], roles: Optional[Iterable[Role]]) -> Dict[str, Role]:
    """Keep only the entries whose role is in ``roles`` (all entries if None)."""
    if roles is None:
        return dict(target)
    allowed = set(roles)
    return {identity: role for identity, role in target.items() if role in allowed}


def sorted_keys(mapping: Mapping) -> List:
    """Sorted keys of a mapping, for stable log output."""
    return sorted(mapping)
