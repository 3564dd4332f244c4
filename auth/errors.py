"""
auth/errors.py -- Explicit result values for every domain operation.

Expected failures (bad password, duplicate role, already banned, ...) are
returned, never raised. Each operation hands back a Result carrying either a
value or an AuthError. The error carries a stable snake_case code, a kind from
the taxonomy below, and the HTTP status hint the API layer uses.

Unexpected failures (SQLAlchemy errors, network errors from the notifier) are
NOT wrapped -- they propagate to the HTTP boundary, which logs them and
returns a generic internal_error.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    LOCKED = "locked"
    INTERNAL = "internal_error"


_DEFAULT_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.LOCKED: 423,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class AuthError:
    """A tagged domain error.

    status is an optional override of the kind's default HTTP status. It is
    used for "insufficient permission", which is an unauthorized-kind error
    the HTTP layer reports as 403.
    """

    code: str
    kind: ErrorKind
    message: str
    remaining: timedelta | None = None
    detail: dict = field(default_factory=dict)
    status: int | None = None

    @property
    def status_code(self) -> int:
        return self.status if self.status is not None else _DEFAULT_STATUS[self.kind]


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success-or-error outcome. Build with Result.ok() / Result.fail()."""

    value: T | None = None
    error: AuthError | None = None

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: T | None = None) -> Result[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, error: AuthError) -> Result[T]:
        return cls(error=error)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def invalid_credentials() -> AuthError:
    # Same message for unknown email and wrong password.
    return AuthError("invalid_credentials", ErrorKind.UNAUTHORIZED, "Invalid email or password.")


def account_banned() -> AuthError:
    return AuthError(
        "account_banned",
        ErrorKind.FORBIDDEN,
        "This account has been banned. Contact support for more information.",
    )


def account_locked(remaining: timedelta) -> AuthError:
    minutes = max(1, int(-(-remaining.total_seconds() // 60)))
    return AuthError(
        "account_locked",
        ErrorKind.LOCKED,
        f"Account is temporarily locked. Try again in {minutes} minute(s).",
        remaining=remaining,
        detail={"retry_after_seconds": int(remaining.total_seconds())},
    )


def email_not_confirmed() -> AuthError:
    return AuthError("email_not_confirmed", ErrorKind.FORBIDDEN, "Please confirm your email address first.")


def invalid_token() -> AuthError:
    return AuthError("invalid_token", ErrorKind.VALIDATION, "Token is invalid, expired, or already used.")


def password_rejected(reasons: list[str]) -> AuthError:
    return AuthError(
        "password_rejected",
        ErrorKind.VALIDATION,
        "Password does not meet the password policy.",
        detail={"reasons": reasons},
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def duplicate_email(email: str) -> AuthError:
    return AuthError("duplicate_email", ErrorKind.CONFLICT, f"Email '{email}' is already registered.")


def invalid_email(email: str) -> AuthError:
    return AuthError("invalid_email", ErrorKind.VALIDATION, f"'{email}' is not a valid email address.")


def user_not_found(user_id: str) -> AuthError:
    return AuthError("user_not_found", ErrorKind.NOT_FOUND, f"User '{user_id}' was not found.")


def unauthorized(permission: str) -> AuthError:
    return AuthError(
        "unauthorized",
        ErrorKind.UNAUTHORIZED,
        "You are not allowed to perform this operation.",
        detail={"required_permission": permission},
        status=403,
    )


def forbidden() -> AuthError:
    return AuthError("forbidden", ErrorKind.FORBIDDEN, "You may only perform this operation on your own account.")


def already_banned() -> AuthError:
    return AuthError("already_banned", ErrorKind.CONFLICT, "The account is already banned.")


def not_banned() -> AuthError:
    return AuthError("not_banned", ErrorKind.CONFLICT, "The account is not banned.")


# ---------------------------------------------------------------------------
# Roles and claims
# ---------------------------------------------------------------------------


def role_not_found(role_ref: str) -> AuthError:
    return AuthError("role_not_found", ErrorKind.NOT_FOUND, f"Role '{role_ref}' was not found.")


def invalid_role_name(name: str, allowed: list[str]) -> AuthError:
    return AuthError(
        "invalid_role_name",
        ErrorKind.VALIDATION,
        f"Role '{name}' is not allowed. Allowed roles: {', '.join(allowed)}.",
    )


def duplicate_role(role_id: str) -> AuthError:
    return AuthError("duplicate_role", ErrorKind.CONFLICT, f"Role '{role_id}' already exists.")


def role_has_assigned_users(role_id: str) -> AuthError:
    return AuthError(
        "role_has_assigned_users",
        ErrorKind.CONFLICT,
        f"Role '{role_id}' cannot be deleted while users are assigned to it.",
    )


def role_has_claims(role_id: str) -> AuthError:
    return AuthError(
        "role_has_claims",
        ErrorKind.CONFLICT,
        f"Role '{role_id}' cannot be deleted while it carries claims.",
    )


def claim_already_exists(role_id: str, claim_type: str, value: str) -> AuthError:
    return AuthError(
        "claim_already_exists",
        ErrorKind.CONFLICT,
        f"Claim '{claim_type}:{value}' is already attached to role '{role_id}'.",
    )


def claim_not_found(role_id: str, claim_type: str, value: str) -> AuthError:
    return AuthError(
        "claim_not_found",
        ErrorKind.NOT_FOUND,
        f"Claim '{claim_type}:{value}' was not found on role '{role_id}'.",
    )


def invalid_permission(value: str) -> AuthError:
    return AuthError("invalid_permission", ErrorKind.VALIDATION, f"'{value}' is not a known permission.")


def user_already_in_role(user_id: str, role_name: str) -> AuthError:
    return AuthError("user_already_in_role", ErrorKind.CONFLICT, f"User '{user_id}' already holds role '{role_name}'.")


def user_not_in_role(user_id: str, role_name: str) -> AuthError:
    return AuthError("user_not_in_role", ErrorKind.CONFLICT, f"User '{user_id}' does not hold role '{role_name}'.")
