"""
auth/registry.py -- Role/claim CRUD and permission checks.

PermissionRegistry owns the role invariants:
  - role names come from the configured allow-list (case-insensitive match,
    stored in the canonical spelling);
  - role names are unique;
  - a role may not hold the same (type, value) claim twice;
  - a role with assigned users or attached claims cannot be deleted
    (the delete is rejected, never cascaded).

Every public operation returns a Result. Checks run in a fixed order and all
of them complete before the first store write.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth import errors
from auth.errors import Result
from auth.models import Claim, Role, User
from auth.permissions import (
    PERMISSION_CLAIM_TYPE,
    Permission,
    SystemRole,
    canonical_role_name,
    is_known_permission,
    merge_claims,
)
from auth.store import CredentialStore, RoleStore
from core.config import Settings, get_settings

logger = logging.getLogger("idcore.registry")

# Claims seed_system_roles() guarantees on each system role. update and delete
# are still limited to the actor's own account unless the actor is an Admin.
_SELF_SERVICE = (Permission.USER_UPDATE, Permission.USER_DELETE)
_SEED_GRANTS: dict[str, tuple[Permission, ...]] = {
    SystemRole.ADMIN.value.lower(): tuple(Permission),
    SystemRole.MENTOR.value.lower(): _SELF_SERVICE,
    SystemRole.USER.value.lower(): _SELF_SERVICE,
}


class PermissionRegistry:
    def __init__(
        self,
        roles: RoleStore,
        users: CredentialStore,
        settings: Settings | None = None,
    ) -> None:
        self.roles = roles
        self.users = users
        self.settings = settings or get_settings()

    @property
    def allowed_roles(self) -> list[str]:
        return list(self.settings.allowed_roles)

    # ------------------------------------------------------------------
    # Roles CRUD
    # ------------------------------------------------------------------

    def add_role(self, name: str, description: str = "") -> Result[Role]:
        canonical = canonical_role_name(name, self.allowed_roles)
        if canonical is None:
            return Result.fail(errors.invalid_role_name(name, self.allowed_roles))
        existing = self.roles.get_role_by_name(canonical)
        if existing is not None:
            return Result.fail(errors.duplicate_role(existing.id))

        role = Role(name=canonical, description=description or "")
        try:
            role.id = self.roles.create_role(role)
        except IntegrityError:
            # A concurrent request created the same name first.
            return Result.fail(errors.duplicate_role(canonical))
        logger.info("Role created: %s (%s)", role.name, role.id)
        return Result.ok(role)

    def edit_role(self, role_id: str, name: str, description: str = "") -> Result[Role]:
        role = self.roles.get_role(role_id)
        if role is None:
            return Result.fail(errors.role_not_found(role_id))
        canonical = canonical_role_name(name, self.allowed_roles)
        if canonical is None:
            return Result.fail(errors.invalid_role_name(name, self.allowed_roles))
        duplicate = self.roles.get_role_by_name(canonical)
        if duplicate is not None and duplicate.id != role.id:
            return Result.fail(errors.duplicate_role(duplicate.id))

        try:
            self.roles.update_role(role_id, canonical, description or "")
        except IntegrityError:
            return Result.fail(errors.duplicate_role(canonical))
        logger.info("Role updated: %s -> %s (%s)", role.name, canonical, role_id)
        role.name = canonical
        role.description = description or ""
        return Result.ok(role)

    def delete_role(self, role_id: str) -> Result[None]:
        role = self.roles.get_role(role_id)
        if role is None:
            return Result.fail(errors.role_not_found(role_id))
        if self.users.count_users_in_role(role_id) > 0:
            return Result.fail(errors.role_has_assigned_users(role_id))
        if role.claims:
            return Result.fail(errors.role_has_claims(role_id))

        self.roles.delete_role(role_id)
        logger.info("Role deleted: %s (%s)", role.name, role_id)
        return Result.ok()

    def get_role(self, role_id: str) -> Result[Role]:
        role = self.roles.get_role(role_id)
        if role is None:
            return Result.fail(errors.role_not_found(role_id))
        return Result.ok(role)

    def list_roles(self) -> Result[list[Role]]:
        return Result.ok(self.roles.list_roles())

    # ------------------------------------------------------------------
    # Users & roles
    # ------------------------------------------------------------------

    def assign_user_to_role(self, user_id: str, role_name: str) -> Result[None]:
        user = self.users.get_by_id(user_id)
        if user is None:
            return Result.fail(errors.user_not_found(user_id))
        role = self.find_role(role_name)
        if role is None:
            return Result.fail(errors.role_not_found(role_name))
        if role.id in self.users.get_user_role_ids(user_id):
            return Result.fail(errors.user_already_in_role(user_id, role.name))

        try:
            self.users.add_user_to_role(user_id, role.id)
        except IntegrityError:
            return Result.fail(errors.user_already_in_role(user_id, role.name))
        logger.info("User %s added to role %s", user_id, role.name)
        return Result.ok()

    def remove_user_from_role(self, user_id: str, role_name: str) -> Result[None]:
        user = self.users.get_by_id(user_id)
        if user is None:
            return Result.fail(errors.user_not_found(user_id))
        role = self.find_role(role_name)
        if role is None:
            return Result.fail(errors.role_not_found(role_name))
        if not self.users.remove_user_from_role(user_id, role.id):
            return Result.fail(errors.user_not_in_role(user_id, role.name))

        logger.info("User %s removed from role %s", user_id, role.name)
        return Result.ok()

    def users_in_role(self, role_id: str) -> Result[list[User]]:
        if self.roles.get_role(role_id) is None:
            return Result.fail(errors.role_not_found(role_id))
        return Result.ok(self.users.get_users_in_role(role_id))

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def add_claim_to_role(self, role_id: str, claim_type: str, value: str) -> Result[Claim]:
        role = self.roles.get_role(role_id)
        if role is None:
            return Result.fail(errors.role_not_found(role_id))
        if claim_type == PERMISSION_CLAIM_TYPE and not is_known_permission(value):
            return Result.fail(errors.invalid_permission(value))
        claim = Claim(claim_type, value)
        if claim in role.claims:
            return Result.fail(errors.claim_already_exists(role_id, claim_type, value))

        try:
            self.roles.add_role_claim(role_id, claim)
        except IntegrityError:
            return Result.fail(errors.claim_already_exists(role_id, claim_type, value))
        logger.info("Claim %s:%s added to role %s", claim_type, value, role.name)
        return Result.ok(claim)

    def remove_claim_from_role(self, role_id: str, claim_type: str, value: str) -> Result[None]:
        role = self.roles.get_role(role_id)
        if role is None:
            return Result.fail(errors.role_not_found(role_id))
        claim = Claim(claim_type, value)
        if claim not in role.claims:
            return Result.fail(errors.claim_not_found(role_id, claim_type, value))

        self.roles.remove_role_claim(role_id, claim)
        logger.info("Claim %s:%s removed from role %s", claim_type, value, role.name)
        return Result.ok()

    def roles_with_claim(self, claim_type: str, value: str) -> Result[list[Role]]:
        return Result.ok(self.roles.get_roles_with_claim(Claim(claim_type, value)))

    # ------------------------------------------------------------------
    # Effective permissions (read-only helpers, plain values)
    # ------------------------------------------------------------------

    def get_user_roles(self, user_id: str) -> list[Role]:
        """Return the user's roles in assignment order, each with its claims.

        Memberships whose role row has vanished are skipped.
        """
        roles: list[Role] = []
        for role_id in self.users.get_user_role_ids(user_id):
            role = self.roles.get_role(role_id)
            if role is not None:
                roles.append(role)
        return roles

    def user_claims(self, user_id: str) -> list[Claim]:
        return merge_claims(role.claims for role in self.get_user_roles(user_id))

    def has_permission(self, user_id: str, permission: Permission) -> bool:
        return permission.claim in self.user_claims(user_id)

    def is_admin(self, user_id: str) -> bool:
        return any(r.name.lower() == SystemRole.ADMIN.value.lower() for r in self.get_user_roles(user_id))

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def seed_system_roles(self) -> None:
        """Create every allow-listed role that does not exist yet.

        System roles are also granted the permissions in _SEED_GRANTS they do
        not hold yet: everything for Admin, self-service update and delete for
        Mentor and User. Idempotent -- safe to call on every startup.
        """
        for name in self.allowed_roles:
            role = self.roles.get_role_by_name(name)
            if role is None:
                result = self.add_role(name)
                if not result.is_ok:
                    logger.error("Failed to seed role %s: %s", name, result.error.message)
                    continue
                role = result.value
            else:
                logger.info("%s already exists, skipping...", name)

            for permission in _SEED_GRANTS.get(role.name.lower(), ()):
                if permission.claim not in role.claims:
                    self.roles.add_role_claim(role.id, permission.claim)
                    logger.info("Granted %s to %s", permission.value, role.name)

    def find_role(self, role_name: str) -> Role | None:
        canonical = canonical_role_name(role_name, self.allowed_roles)
        if canonical is None:
            return None
        return self.roles.get_role_by_name(canonical)
