"""
api/routes/v1/auth.py -- Authentication and account lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/register              -- create an unconfirmed account; mails a link
  POST   /api/v1/auth/login                 -- password login; access token + refresh secret
  POST   /api/v1/auth/refresh               -- exchange a refresh secret (rotates it)
  GET    /api/v1/auth/confirm-email         -- confirmation link target; returns a session token
  POST   /api/v1/auth/logout                -- rotate the security stamp (requires auth)
  POST   /api/v1/auth/change-password       -- requires auth
  GET    /api/v1/auth/me                    -- current user info (requires auth)
  PUT    /api/v1/auth/users/{user_id}       -- user.update + self-or-admin
  DELETE /api/v1/auth/users/{user_id}       -- user.delete + self-or-admin
  POST   /api/v1/auth/users/{user_id}/ban   -- user.ban
  POST   /api/v1/auth/users/{user_id}/unban -- user.unban

Permission checks for the /users routes live in AccountLifecycleManager, which
receives the caller's id as actor_id. Routes only authenticate.

Security:
  [C1] The engine equalizes login timing for unknown emails -- never inline
       a store lookup + verify_password() here.
  [M5] Cache-Control: no-store on every login and refresh response, including errors.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserResponse,
    UserUpdateRequest,
)
from auth.dependencies import get_current_principal, http_error, unwrap
from auth.errors import Result
from auth.models import AuthSession, Principal, ProfileUpdate, RegistrationRequest

# Auth policy:
# - POST   /auth/register, /auth/login, /auth/refresh:  public
# - GET    /auth/confirm-email:                         public (token-bearing)
# - POST   /auth/logout, /auth/change-password:         requires auth (get_current_principal)
# - GET    /auth/me:                                    requires auth
# - PUT    /auth/users/{id}, DELETE /auth/users/{id}:   requires auth; permission checked by the manager
# - POST   /auth/users/{id}/ban, /unban:                requires auth; permission checked by the manager
router = APIRouter()


def _session_response(result: Result[AuthSession], response: Response) -> LoginResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    if not result.is_ok:
        exc = http_error(result.error)
        exc.headers = {**(exc.headers or {}), "Cache-Control": "no-store"}
        raise exc
    return LoginResponse.from_session(result.value)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account holding the default role and send its confirmation link.

    The account cannot log in until the link has been followed.
    """
    receipt = unwrap(
        request.app.state.accounts.register(
            RegistrationRequest(
                email=body.email,
                password=body.password,
                first_name=body.first_name,
                last_name=body.last_name,
                phone_number=body.phone_number,
            )
        )
    )
    return RegisterResponse(
        user_id=receipt.user_id,
        email=receipt.email,
        email_confirmed=receipt.email_confirmed,
        message=receipt.message,
    )


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same invalid_credentials
    error. A locked account answers 423 with Retry-After.
    """
    return _session_response(request.app.state.engine.login(body.email, body.password), response)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, response: Response, body: RefreshRequest) -> LoginResponse:
    """Trade a refresh secret for a new session. The presented secret stops working."""
    return _session_response(request.app.state.engine.refresh(body.refresh_token), response)


@router.get("/auth/confirm-email", response_model=TokenResponse)
def confirm_email(
    request: Request,
    user_id: str = Query(default="", max_length=36),
    token: str = Query(default="", max_length=2048),
) -> TokenResponse:
    """Confirm an email address from the mailed link. Each link works once."""
    token_result = request.app.state.accounts.confirm_email(user_id, token)
    return TokenResponse.from_session_token(unwrap(token_result))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    """Revoke the refresh secret. The access token stays valid until it expires."""
    unwrap(request.app.state.engine.logout(principal.user_id))
    return MessageResponse(message="Logged out.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    unwrap(
        request.app.state.accounts.change_password(
            principal.user_id,
            body.current_password,
            body.new_password,
        )
    )
    return MessageResponse(message="Password changed. Sign in again on your other devices.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the current user with their roles as they are now, not as minted."""
    user = unwrap(request.app.state.accounts.get_user(principal.user_id))
    roles = [r.name for r in request.app.state.registry.get_user_roles(user.id)]
    return MeResponse(**UserResponse.from_user(user).model_dump(), roles=roles)


# ---------------------------------------------------------------------------
# Actor-checked account management
# ---------------------------------------------------------------------------


@router.put("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: str,
    body: UserUpdateRequest,
    principal: Principal = Depends(get_current_principal),
) -> UserResponse:
    update = ProfileUpdate(
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        phone_number=body.phone_number,
    )
    user = unwrap(request.app.state.accounts.update_profile(user_id, principal.user_id, update))
    return UserResponse.from_user(user)


@router.delete("/auth/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    unwrap(request.app.state.accounts.delete_account(user_id, principal.user_id))
    return Response(status_code=204)


@router.post("/auth/users/{user_id}/ban", response_model=MessageResponse)
def ban_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    unwrap(request.app.state.accounts.ban_account(user_id, principal.user_id))
    return MessageResponse(message="Account banned.")


@router.post("/auth/users/{user_id}/unban", response_model=MessageResponse)
def unban_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    unwrap(request.app.state.accounts.unban_account(user_id, principal.user_id))
    return MessageResponse(message="Account unbanned.")
