"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, registry, engine and account manager do the work.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

# Lockout sentinel written on ban and cleared on unban.
BANNED_LOCKOUT_END = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Claim:
    """A (type, value) capability grant attached to a role.

    Frozen so claims hash by value -- merge_claims() and the registry's
    duplicate checks rely on tuple-style equality.
    """

    type: str
    value: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.value)


@dataclass
class Role:
    """A named bundle of claims. name is stored in its canonical allow-list casing."""

    name: str
    description: str = ""
    id: str | None = None
    claims: list[Claim] = field(default_factory=list)


@dataclass
class User:
    """A local account.

    password_hash is None only between record creation and the first write
    of a hash; registration always sets one.

    lockout_end doubles as the ban sentinel: a banned account carries the
    far-future BANNED_LOCKOUT_END so any code that only checks lockout still
    refuses it.

    access_failed_count is the store's internal failure counter; it resets
    whenever the account locks or a login succeeds.

    refresh_token_hash is HMAC-SHA256(SECRET_KEY, raw_secret). The raw secret
    is returned to the client once and never persisted.

    version is the optimistic concurrency stamp. The store increments it on
    every update and can refuse writes made against a stale copy.
    """

    email: str
    id: str | None = None
    password_hash: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None
    email_confirmed: bool = False
    banned: bool = False
    lockout_end: datetime | None = None
    lockout_multiplier: int = 1
    access_failed_count: int = 0
    security_stamp: str = ""
    refresh_token_hash: str | None = None
    refresh_token_expires: datetime | None = None
    version: int = 1
    created_at: str | None = None
    last_login: str | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.lockout_end is not None and self.lockout_end > now


@dataclass
class SessionToken:
    """A freshly minted access token plus the facts it asserts.

    Never persisted. expires_at is absolute wall-clock time set at mint.
    """

    token: str
    token_id: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    roles: list[str] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)


@dataclass
class Principal:
    """The decoded, signature-checked view of a session token."""

    user_id: str
    email: str
    token_id: str
    issued_at: datetime | None
    expires_at: datetime | None
    roles: list[str] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)

    def has_role(self, role_name: str) -> bool:
        return role_name.lower() in {r.lower() for r in self.roles}

    def has_claim(self, claim_type: str, value: str) -> bool:
        return Claim(claim_type, value) in self.claims

    def has_permission(self, permission) -> bool:
        """Accepts a Permission member or its raw value ("user.ban")."""
        return self.has_claim("permission", getattr(permission, "value", permission))

    def is_expired(self, now: datetime) -> bool:
        """Expiry is NOT checked by TokenIssuer.validate_token(); callers use this.

        A principal without an expiry counts as expired.
        """
        return self.expires_at is None or self.expires_at <= now


@dataclass
class AuthSession:
    """Result of a successful login or refresh.

    refresh_token is the raw opaque secret -- shown to the client once.
    """

    access: SessionToken
    refresh_token: str
    refresh_expires_at: datetime


@dataclass
class RegistrationRequest:
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None
    phone_number: str | None = None


@dataclass
class RegistrationReceipt:
    """Pending-confirmation acknowledgment returned by register()."""

    user_id: str
    email: str
    email_confirmed: bool = False
    message: str = "Registration succeeded. Check your inbox to confirm the account."


@dataclass
class ProfileUpdate:
    """Mutable profile fields. None leaves a field unchanged."""

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone_number: str | None = None
