"""
auth/store.py -- Store interfaces and the SQLAlchemy Core persistence layer.

CredentialStore and RoleStore are the collaborator contracts the registry,
engine and account manager are written against (typing.Protocol, so test
doubles need no inheritance). IdentityStore implements both over one engine.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; _row_to_user / _row_to_role are the mappers.
Service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness:
  users.normalized_email, roles.normalized_name, role_claims(role_id, type,
  value) and user_roles(user_id, role_id) carry UNIQUE constraints. Services
  check first and return a Conflict result; the constraint is the backstop
  when two requests race, surfacing as sqlalchemy.exc.IntegrityError.

Optimistic concurrency:
  Every user update bumps users.version. update_user(expected_version=N)
  only matches the row if it still carries version N, so a read-modify-write
  made against a stale copy affects zero rows instead of overwriting a
  concurrent change.

Timestamps are stored as ISO 8601 strings (UTC) and mapped to aware datetimes.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Claim, Role, User

# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class CredentialStore(Protocol):
    def create_user(self, user: User) -> str: ...

    def get_by_id(self, user_id: str) -> User | None: ...

    def get_by_email(self, email: str) -> User | None: ...

    def get_by_refresh_token_hash(self, token_hash: str) -> User | None: ...

    def update_user(self, user_id: str, expected_version: int | None = None, **fields) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(self) -> list[User]: ...

    def get_user_role_ids(self, user_id: str) -> list[str]: ...

    def add_user_to_role(self, user_id: str, role_id: str) -> None: ...

    def remove_user_from_role(self, user_id: str, role_id: str) -> bool: ...

    def get_users_in_role(self, role_id: str) -> list[User]: ...

    def count_users_in_role(self, role_id: str) -> int: ...


class RoleStore(Protocol):
    def create_role(self, role: Role) -> str: ...

    def get_role(self, role_id: str) -> Role | None: ...

    def get_role_by_name(self, name: str) -> Role | None: ...

    def list_roles(self) -> list[Role]: ...

    def update_role(self, role_id: str, name: str, description: str) -> bool: ...

    def delete_role(self, role_id: str) -> bool: ...

    def get_role_claims(self, role_id: str) -> list[Claim]: ...

    def add_role_claim(self, role_id: str, claim: Claim) -> None: ...

    def remove_role_claim(self, role_id: str, claim: Claim) -> bool: ...

    def get_roles_with_claim(self, claim: Claim) -> list[Role]: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("normalized_email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone_number", String(32)),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("banned", Integer, nullable=False, server_default="0"),
    Column("lockout_end", String(40)),
    Column("lockout_multiplier", Integer, nullable=False, server_default="1"),
    Column("access_failed_count", Integer, nullable=False, server_default="0"),
    Column("security_stamp", String(64), nullable=False),
    Column("refresh_token_hash", String(64), index=True),  # HMAC-SHA256 hex
    Column("refresh_token_expires", String(40)),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(64), nullable=False),
    Column("normalized_name", String(64), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(40), nullable=False),
)

_role_claims = Table(
    "role_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", String(36), nullable=False, index=True),
    Column("claim_type", String(128), nullable=False),
    Column("claim_value", String(256), nullable=False),
    UniqueConstraint("role_id", "claim_type", "claim_value", name="uq_role_claim"),
)

# id preserves assignment order, which fixes the role (and claim merge) order
# in minted tokens.
_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("role_id", String(36), nullable=False, index=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

# Columns update_user() accepts. Anything else is a programming error.
_USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "phone_number",
        "email_confirmed",
        "banned",
        "lockout_end",
        "lockout_multiplier",
        "access_failed_count",
        "security_stamp",
        "refresh_token_hash",
        "refresh_token_expires",
        "last_login",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_security_stamp() -> str:
    return secrets.token_hex(16)


def rotated_stamp_fields() -> dict:
    """update_user() fields for a security stamp rotation.

    The stored refresh secret is tied to the old stamp, so it is dropped too.
    """
    return {
        "security_stamp": new_security_stamp(),
        "refresh_token_hash": None,
        "refresh_token_expires": None,
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """SQLAlchemy Core implementation of CredentialStore and RoleStore.

    Usage:
        store = IdentityStore("sqlite:///idcore.db")
        user_id = store.create_user(User(email="a@x.com", password_hash=hash_password("...")))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///idcore.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken
        (case-insensitive). Callers check get_by_email() first; the error
        only fires when two registrations race.
        """
        user_id = user.id or str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    normalized_email=user.email.strip().lower(),
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone_number=user.phone_number,
                    email_confirmed=1 if user.email_confirmed else 0,
                    banned=1 if user.banned else 0,
                    lockout_end=_to_iso(user.lockout_end),
                    lockout_multiplier=user.lockout_multiplier,
                    access_failed_count=user.access_failed_count,
                    security_stamp=user.security_stamp or new_security_stamp(),
                    version=1,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(_users.c.normalized_email == email.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_refresh_token_hash(self, token_hash: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.refresh_token_hash == token_hash)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.normalized_email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, expected_version: int | None = None, **fields) -> bool:
        """Update mutable fields on an existing user and bump its version.

        Accepted fields: see _USER_MUTABLE_FIELDS. Unknown keys raise
        ValueError rather than being silently ignored. Bools are stored as
        0/1, datetimes as ISO strings.

        Returns True if a row was updated. False means the user does not exist
        or, when expected_version is given, that another writer got there first.
        """
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values: dict = {}
        for key, value in fields.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, datetime):
                value = _to_iso(value)
            values[key] = value
        if "email" in values:
            values["normalized_email"] = values["email"].strip().lower()
        values["version"] = _users.c.version + 1

        stmt = _users.update().where(_users.c.id == user_id)
        if expected_version is not None:
            stmt = stmt.where(_users.c.version == expected_version)
        with self.engine.connect() as conn:
            result = conn.execute(stmt.values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user and its role memberships.

        Returns True if deleted, False if not found.
        """
        with self.engine.connect() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # User-role membership
    # ------------------------------------------------------------------

    def get_user_role_ids(self, user_id: str) -> list[str]:
        """Return the user's role ids in assignment order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_user_roles.c.role_id).where(_user_roles.c.user_id == user_id).order_by(_user_roles.c.id)
            ).fetchall()
        return [r.role_id for r in rows]

    def add_user_to_role(self, user_id: str, role_id: str) -> None:
        """Raises IntegrityError if the membership already exists."""
        with self.engine.connect() as conn:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
            conn.commit()

    def remove_user_from_role(self, user_id: str, role_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            )
            conn.commit()
        return result.rowcount > 0

    def get_users_in_role(self, role_id: str) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select()
                .join(_user_roles, _user_roles.c.user_id == _users.c.id)
                .where(_user_roles.c.role_id == role_id)
                .order_by(_user_roles.c.id)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users_in_role(self, role_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_user_roles).where(_user_roles.c.role_id == role_id)
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> str:
        """Insert a role and return its id. Raises IntegrityError on a duplicate name."""
        role_id = role.id or str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _roles.insert().values(
                    id=role_id,
                    name=role.name,
                    normalized_name=role.name.strip().lower(),
                    description=role.description or "",
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return role_id

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
            if row is None:
                return None
            claims = _load_claims(conn, [row.id])
        return _row_to_role(row, claims.get(row.id, []))

    def get_role_by_name(self, name: str) -> Role | None:
        """Look up a role by name, case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.normalized_name == name.strip().lower())).fetchone()
            if row is None:
                return None
            claims = _load_claims(conn, [row.id])
        return _row_to_role(row, claims.get(row.id, []))

    def list_roles(self) -> list[Role]:
        """Return all roles ordered by name, each with its claims."""
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.normalized_name)).fetchall()
            claims = _load_claims(conn, [r.id for r in rows])
        return [_row_to_role(r, claims.get(r.id, [])) for r in rows]

    def update_role(self, role_id: str, name: str, description: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update()
                .where(_roles.c.id == role_id)
                .values(name=name, normalized_name=name.strip().lower(), description=description or "")
            )
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: str) -> bool:
        """Delete a role row. Callers must check memberships and claims first --
        the store does not cascade."""
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role claims
    # ------------------------------------------------------------------

    def get_role_claims(self, role_id: str) -> list[Claim]:
        """Return the role's claims in insertion order."""
        with self.engine.connect() as conn:
            claims = _load_claims(conn, [role_id])
        return claims.get(role_id, [])

    def add_role_claim(self, role_id: str, claim: Claim) -> None:
        """Raises IntegrityError if the role already holds this (type, value)."""
        with self.engine.connect() as conn:
            conn.execute(_role_claims.insert().values(role_id=role_id, claim_type=claim.type, claim_value=claim.value))
            conn.commit()

    def remove_role_claim(self, role_id: str, claim: Claim) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_claims.delete().where(
                    (_role_claims.c.role_id == role_id)
                    & (_role_claims.c.claim_type == claim.type)
                    & (_role_claims.c.claim_value == claim.value)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def get_roles_with_claim(self, claim: Claim) -> list[Role]:
        """Return every role holding the exact (type, value) pair, ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _roles.select()
                .where(
                    _roles.c.id.in_(
                        select(_role_claims.c.role_id).where(
                            (_role_claims.c.claim_type == claim.type) & (_role_claims.c.claim_value == claim.value)
                        )
                    )
                )
                .order_by(_roles.c.normalized_name)
            ).fetchall()
            claims = _load_claims(conn, [r.id for r in rows])
        return [_row_to_role(r, claims.get(r.id, [])) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _load_claims(conn, role_ids: list[str]) -> dict[str, list[Claim]]:
    if not role_ids:
        return {}
    rows = conn.execute(
        _role_claims.select().where(_role_claims.c.role_id.in_(role_ids)).order_by(_role_claims.c.id)
    ).fetchall()
    grouped: dict[str, list[Claim]] = {}
    for row in rows:
        grouped.setdefault(row.role_id, []).append(Claim(row.claim_type, row.claim_value))
    return grouped


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        email_confirmed=bool(row.email_confirmed),
        banned=bool(row.banned),
        lockout_end=_from_iso(row.lockout_end),
        lockout_multiplier=row.lockout_multiplier,
        access_failed_count=row.access_failed_count,
        security_stamp=row.security_stamp,
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_expires=_from_iso(row.refresh_token_expires),
        version=row.version,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_role(row, claims: list[Claim]) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description or "",
        claims=list(claims),
    )
