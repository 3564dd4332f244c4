"""
api/routes/v1/roles.py -- Role, claim and membership REST endpoints.

Routes:
  POST   /api/v1/roles                      -- role.create
  GET    /api/v1/roles                      -- list roles (requires auth)
  GET    /api/v1/roles/by-claim             -- roles holding ?type=&value= (requires auth)
  GET    /api/v1/roles/{role_id}            -- requires auth
  PUT    /api/v1/roles/{role_id}            -- role.update
  DELETE /api/v1/roles/{role_id}            -- role.delete; refused while users or claims remain
  GET    /api/v1/roles/{role_id}/users      -- requires auth
  POST   /api/v1/roles/assign               -- role.assign
  POST   /api/v1/roles/remove               -- role.assign
  POST   /api/v1/roles/{role_id}/claims     -- role.create
  DELETE /api/v1/roles/{role_id}/claims     -- role.create (?type=&value=)

/roles/by-claim is registered before /roles/{role_id} so the literal path wins.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import ClaimBody, ClaimResponse, RoleAssignment, RoleCreate, RoleResponse, UserResponse
from auth.dependencies import get_current_principal, require_permission, unwrap
from auth.models import Principal
from auth.permissions import PERMISSION_CLAIM_TYPE, Permission

router = APIRouter()


# ---------------------------------------------------------------------------
# Queries (any authenticated user)
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, principal: Principal = Depends(get_current_principal)) -> list[RoleResponse]:
    roles = unwrap(request.app.state.registry.list_roles())
    return [RoleResponse.from_role(r) for r in roles]


@router.get("/roles/by-claim", response_model=list[RoleResponse])
def roles_by_claim(
    request: Request,
    value: str = Query(min_length=1, max_length=256),
    type: str = Query(default=PERMISSION_CLAIM_TYPE, min_length=1, max_length=128),
    principal: Principal = Depends(get_current_principal),
) -> list[RoleResponse]:
    """List every role carrying the exact (type, value) claim."""
    roles = unwrap(request.app.state.registry.roles_with_claim(type, value))
    return [RoleResponse.from_role(r) for r in roles]


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: str, principal: Principal = Depends(get_current_principal)) -> RoleResponse:
    return RoleResponse.from_role(unwrap(request.app.state.registry.get_role(role_id)))


@router.get("/roles/{role_id}/users", response_model=list[UserResponse])
def users_in_role(
    request: Request,
    role_id: str,
    principal: Principal = Depends(get_current_principal),
) -> list[UserResponse]:
    users = unwrap(request.app.state.registry.users_in_role(role_id))
    return [UserResponse.from_user(u) for u in users]


# ---------------------------------------------------------------------------
# Role CRUD
# ---------------------------------------------------------------------------


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    principal: Principal = Depends(require_permission(Permission.ROLE_CREATE)),
) -> RoleResponse:
    """Create a role. The name must be on the configured allow-list."""
    role = unwrap(request.app.state.registry.add_role(body.name, body.description))
    return RoleResponse.from_role(role)


@router.put("/roles/{role_id}", response_model=RoleResponse)
def edit_role(
    request: Request,
    role_id: str,
    body: RoleCreate,
    principal: Principal = Depends(require_permission(Permission.ROLE_UPDATE)),
) -> RoleResponse:
    role = unwrap(request.app.state.registry.edit_role(role_id, body.name, body.description))
    return RoleResponse.from_role(role)


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    request: Request,
    role_id: str,
    principal: Principal = Depends(require_permission(Permission.ROLE_DELETE)),
) -> Response:
    unwrap(request.app.state.registry.delete_role(role_id))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


@router.post("/roles/assign", status_code=204)
def assign_role(
    request: Request,
    body: RoleAssignment,
    principal: Principal = Depends(require_permission(Permission.ROLE_ASSIGN)),
) -> Response:
    """Add a user to a role. Takes effect in tokens minted from now on."""
    unwrap(request.app.state.registry.assign_user_to_role(body.user_id, body.role_name))
    return Response(status_code=204)


@router.post("/roles/remove", status_code=204)
def remove_role(
    request: Request,
    body: RoleAssignment,
    principal: Principal = Depends(require_permission(Permission.ROLE_ASSIGN)),
) -> Response:
    unwrap(request.app.state.registry.remove_user_from_role(body.user_id, body.role_name))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


@router.post("/roles/{role_id}/claims", response_model=ClaimResponse, status_code=201)
def add_claim(
    request: Request,
    role_id: str,
    body: ClaimBody,
    principal: Principal = Depends(require_permission(Permission.ROLE_CREATE)),
) -> ClaimResponse:
    claim = unwrap(request.app.state.registry.add_claim_to_role(role_id, body.type, body.value))
    return ClaimResponse.from_claim(claim)


@router.delete("/roles/{role_id}/claims", status_code=204)
def remove_claim(
    request: Request,
    role_id: str,
    value: str = Query(min_length=1, max_length=256),
    type: str = Query(default=PERMISSION_CLAIM_TYPE, min_length=1, max_length=128),
    principal: Principal = Depends(require_permission(Permission.ROLE_CREATE)),
) -> Response:
    unwrap(request.app.state.registry.remove_claim_from_role(role_id, type, value))
    return Response(status_code=204)
