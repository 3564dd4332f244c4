"""
auth/permissions.py -- Closed permission vocabulary and claim merging.

Permission and SystemRole are the allow-lists. They are validated once, at the
point a role or claim is created, rather than compared as loose strings
throughout the code.

merge_claims() is deliberately pure: no store access, no ordering surprises.
The token issuer and the registry both call it so an actor's effective
permissions and the claims written into their token can never disagree.

Layer rule: stdlib + auth.models only.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from auth.models import Claim

PERMISSION_CLAIM_TYPE = "permission"


class Permission(str, Enum):
    USER_CREATE = "user.create"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"
    USER_BAN = "user.ban"
    USER_UNBAN = "user.unban"
    ROLE_CREATE = "role.create"
    ROLE_UPDATE = "role.update"
    ROLE_DELETE = "role.delete"
    ROLE_ASSIGN = "role.assign"

    @property
    def claim(self) -> Claim:
        return Claim(PERMISSION_CLAIM_TYPE, self.value)


class SystemRole(str, Enum):
    ADMIN = "Admin"
    MENTOR = "Mentor"
    USER = "User"


_PERMISSION_VALUES = frozenset(p.value for p in Permission)


def is_known_permission(value: str) -> bool:
    return value in _PERMISSION_VALUES


def canonical_role_name(name: str, allowed: Iterable[str]) -> str | None:
    """Return the allow-listed spelling of name, or None if it is not allowed.

    Matching is case-insensitive ("admin" -> "Admin"); whitespace around the
    name is ignored.
    """
    wanted = name.strip().lower()
    for candidate in allowed:
        if candidate.lower() == wanted:
            return candidate
    return None


def merge_claims(groups: Iterable[Iterable[Claim]]) -> list[Claim]:
    """Flatten claim groups into one list deduplicated by (type, value).

    The first occurrence wins and relative order is preserved, so the result
    is deterministic for a deterministic input order (roles in assignment
    order, claims in insertion order).
    """
    seen: set[tuple[str, str]] = set()
    merged: list[Claim] = []
    for group in groups:
        for claim in group:
            if claim.key in seen:
                continue
            seen.add(claim.key)
            merged.append(claim)
    return merged
