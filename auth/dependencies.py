"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with "Authorization: Bearer <session token>".

get_current_principal() validates the token and then enforces what
TokenIssuer.validate_token() deliberately leaves to callers:
  - expiry (exp in the past -> 401 token_expired);
  - the account still exists and is not banned (re-read from the store on
    every request, so a ban or delete takes effect before the token expires).

require_permission(Permission.X) wraps it and checks the permission claim
against the registry's current state, not the possibly stale token claims.

http_error() turns a domain AuthError into the HTTPException the API's
exception handler renders as {"error": {"code", "message", "detail"}}.
unwrap() does the same for a failed Result and returns the value otherwise.

Layer rule: no imports from api/ or notify/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request

from auth import errors
from auth.errors import AuthError, ErrorKind, Result, T
from auth.models import Principal
from auth.permissions import Permission


def http_error(error: AuthError) -> HTTPException:
    """Map an AuthError to an HTTPException carrying the structured envelope.

    Locked errors also set Retry-After (whole seconds, rounded up).
    """
    headers: dict[str, str] | None = None
    if error.kind is ErrorKind.LOCKED and error.remaining is not None:
        headers = {"Retry-After": str(max(1, math.ceil(error.remaining.total_seconds())))}
    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": error.message, "detail": error.detail or None},
        headers=headers,
    )


def unwrap(result: Result[T]) -> T:
    """Return the result's value, or raise http_error() for its error."""
    if not result.is_ok:
        raise http_error(result.error)
    return result.value


def _unauthenticated(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_principal(request: Request) -> Principal:
    """Require a valid, unexpired session token for an existing, unbanned user.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise _unauthenticated("unauthenticated", "Authentication required.")

    result = request.app.state.issuer.validate_token(auth_header[7:].strip())
    if not result.is_ok:
        raise _unauthenticated("invalid_token", "Token is invalid.")
    principal = result.value
    if principal.is_expired(datetime.now(timezone.utc)):
        raise _unauthenticated("token_expired", "Token has expired.")

    user = request.app.state.store.get_by_id(principal.user_id)
    if user is None or user.banned:
        raise _unauthenticated("invalid_token", "Token is invalid.")
    return principal


def require_permission(permission: Permission):
    """Build a dependency that requires the caller to hold a permission claim.

    Raises HTTP 401 if unauthenticated, HTTP 403 if the permission is missing.

        @router.post("/roles")
        def route(principal: Principal = Depends(require_permission(Permission.ROLE_CREATE))): ...
    """

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if not request.app.state.registry.has_permission(principal.user_id, permission):
            raise http_error(errors.unauthorized(permission.value))
        return principal

    return dependency
