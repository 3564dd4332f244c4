"""
auth/accounts.py -- Account lifecycle: registration through deletion.

Privileged operations take the acting user's id explicitly (actor_id) and
authorize against the store, never against request context. Authorization
runs in a fixed order and completes before the first write:

  update_profile / delete_account:
      actor missing or lacking the permission claim -> unauthorized (403)
      actor is neither the target nor an Admin      -> forbidden
      target missing                                -> user_not_found

  ban_account / unban_account:
      actor missing or lacking user.ban / user.unban -> unauthorized (403)
      target missing                                 -> user_not_found
      target already in the requested state          -> already_banned / not_banned

Security stamp rotation (confirmation, password change, ban) also drops the
stored refresh secret; see auth.store.rotated_stamp_fields().
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth import errors
from auth.errors import AuthError, Result
from auth.models import (
    BANNED_LOCKOUT_END,
    ProfileUpdate,
    RegistrationReceipt,
    RegistrationRequest,
    SessionToken,
    User,
)
from auth.passwords import hash_password, password_policy_errors, verify_password
from auth.permissions import Permission
from auth.registry import PermissionRegistry
from auth.store import new_security_stamp, rotated_stamp_fields
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.engine import AuthenticationEngine
    from notify.email import Notifier

logger = logging.getLogger("idcore.accounts")

CONFIRM_EMAIL_PATH = "/api/v1/auth/confirm-email"


def _looks_like_email(value: str) -> bool:
    local, sep, domain = value.partition("@")
    return bool(sep and local and "." in domain and " " not in value)


class AccountLifecycleManager:
    def __init__(
        self,
        engine: AuthenticationEngine,
        registry: PermissionRegistry,
        notifier: Notifier,
        settings: Settings | None = None,
    ) -> None:
        self.engine = engine
        self.store = engine.store
        self.issuer = engine.issuer
        self.registry = registry
        self.notifier = notifier
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Registration and confirmation
    # ------------------------------------------------------------------

    def register(self, request: RegistrationRequest) -> Result[RegistrationReceipt]:
        """Create an unconfirmed account holding the default role and mail a confirmation link.

        Every check runs before the first write: a duplicate email or a
        rejected password leaves the store untouched and sends nothing. If
        the notifier raises, the new account is deleted and the error
        propagates.
        """
        email = request.email.strip()
        if not _looks_like_email(email):
            return Result.fail(errors.invalid_email(email))
        if self.store.get_by_email(email) is not None:
            return Result.fail(errors.duplicate_email(email))
        reasons = password_policy_errors(request.password)
        if reasons:
            return Result.fail(errors.password_rejected(reasons))
        default_role = self.registry.find_role(self.settings.default_role)
        if default_role is None:
            return Result.fail(errors.role_not_found(self.settings.default_role))

        user = User(
            email=email,
            password_hash=hash_password(request.password),
            first_name=request.first_name,
            last_name=request.last_name,
            phone_number=request.phone_number,
            security_stamp=new_security_stamp(),
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError:
            # A concurrent registration won the unique index.
            return Result.fail(errors.duplicate_email(email))

        assigned = self.registry.assign_user_to_role(user.id, default_role.name)
        if not assigned.is_ok:
            logger.error("Could not assign %s to new user %s: %s", default_role.name, user.id, assigned.error.code)
            return Result.fail(assigned.error)

        token = self.issuer.generate_confirmation_token(user)
        try:
            self.notifier.send_confirmation(user.email, self.confirmation_link(user.id, token))
        except Exception:
            # Nobody can receive this account's link; free the address for a retry.
            logger.error("Confirmation mail for new user %s failed; removing the account", user.id)
            self.store.delete_user(user.id)
            raise
        logger.info("User registered: %s", user.id)
        return Result.ok(RegistrationReceipt(user_id=user.id, email=user.email))

    def confirmation_link(self, user_id: str, token: str) -> str:
        base = self.settings.confirmation_base_url.rstrip("/")
        return f"{base}{CONFIRM_EMAIL_PATH}?{urlencode({'user_id': user_id, 'token': token})}"

    def confirm_email(self, user_id: str, token: str) -> Result[SessionToken]:
        if not user_id or not user_id.strip() or not token or not token.strip():
            return Result.fail(errors.invalid_token())
        user = self.store.get_by_id(user_id)
        if user is None:
            return Result.fail(errors.user_not_found(user_id))
        if user.email_confirmed or not self.issuer.validate_confirmation_token(token, user):
            return Result.fail(errors.invalid_token())

        confirmed = self.store.update_user(
            user.id,
            expected_version=user.version,
            email_confirmed=True,
            **rotated_stamp_fields(),
        )
        if not confirmed:
            # Lost to a concurrent confirmation with the same token.
            return Result.fail(errors.invalid_token())

        logger.info("Email confirmed for user %s", user.id)
        user.email_confirmed = True
        return Result.ok(self.issuer.generate_token(user))

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def change_password(self, user_id: str, current_password: str, new_password: str) -> Result[None]:
        user = self.store.get_by_id(user_id)
        if user is None:
            return Result.fail(errors.user_not_found(user_id))
        if not verify_password(current_password, user.password_hash):
            logger.warning("Password change rejected for user %s: wrong current password", user.id)
            return Result.fail(errors.invalid_credentials())
        reasons = password_policy_errors(new_password)
        if reasons:
            return Result.fail(errors.password_rejected(reasons))

        self.store.update_user(user.id, password_hash=hash_password(new_password), **rotated_stamp_fields())
        logger.info("Password changed for user %s", user.id)
        return Result.ok()

    def get_user(self, user_id: str) -> Result[User]:
        user = self.store.get_by_id(user_id)
        if user is None:
            return Result.fail(errors.user_not_found(user_id))
        return Result.ok(user)

    # ------------------------------------------------------------------
    # Actor-checked operations
    # ------------------------------------------------------------------

    def update_profile(self, target_id: str, actor_id: str, update: ProfileUpdate) -> Result[User]:
        denied = self._authorize_self_or_admin(actor_id, target_id, Permission.USER_UPDATE)
        if denied is not None:
            return Result.fail(denied)
        target = self.store.get_by_id(target_id)
        if target is None:
            return Result.fail(errors.user_not_found(target_id))

        fields: dict = {}
        if update.email is not None:
            email = update.email.strip()
            if email.lower() != target.email.lower():
                if not _looks_like_email(email):
                    return Result.fail(errors.invalid_email(email))
                if self.store.get_by_email(email) is not None:
                    return Result.fail(errors.duplicate_email(email))
            if email != target.email:
                fields["email"] = email
        for name in ("first_name", "last_name", "phone_number"):
            value = getattr(update, name)
            if value is not None:
                fields[name] = value

        if fields:
            try:
                self.store.update_user(target.id, **fields)
            except IntegrityError:
                return Result.fail(errors.duplicate_email(fields["email"]))
            logger.info("Profile of user %s updated by %s (%s)", target.id, actor_id, ", ".join(sorted(fields)))
        return Result.ok(self.store.get_by_id(target.id))

    def delete_account(self, target_id: str, actor_id: str) -> Result[None]:
        denied = self._authorize_self_or_admin(actor_id, target_id, Permission.USER_DELETE)
        if denied is not None:
            return Result.fail(denied)
        if not self.store.delete_user(target_id):
            return Result.fail(errors.user_not_found(target_id))
        logger.info("User %s deleted by %s", target_id, actor_id)
        return Result.ok()

    def ban_account(self, target_id: str, actor_id: str) -> Result[None]:
        denied = self._authorize(actor_id, Permission.USER_BAN)
        if denied is not None:
            return Result.fail(denied)
        target = self.store.get_by_id(target_id)
        if target is None:
            return Result.fail(errors.user_not_found(target_id))
        if target.banned:
            return Result.fail(errors.already_banned())

        self.store.update_user(target.id, banned=True, lockout_end=BANNED_LOCKOUT_END, **rotated_stamp_fields())
        logger.info("User %s banned by %s", target.id, actor_id)
        return Result.ok()

    def unban_account(self, target_id: str, actor_id: str) -> Result[None]:
        denied = self._authorize(actor_id, Permission.USER_UNBAN)
        if denied is not None:
            return Result.fail(denied)
        target = self.store.get_by_id(target_id)
        if target is None:
            return Result.fail(errors.user_not_found(target_id))
        if not target.banned:
            return Result.fail(errors.not_banned())

        self.store.update_user(target.id, banned=False, lockout_end=None)
        logger.info("User %s unbanned by %s", target.id, actor_id)
        return Result.ok()

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _authorize(self, actor_id: str | None, permission: Permission) -> AuthError | None:
        actor = self.store.get_by_id(actor_id) if actor_id else None
        if actor is None or actor.banned or not self.registry.has_permission(actor.id, permission):
            logger.warning("Actor %s denied %s", actor_id, permission.value)
            return errors.unauthorized(permission.value)
        return None

    def _authorize_self_or_admin(self, actor_id: str | None, target_id: str, permission: Permission) -> AuthError | None:
        denied = self._authorize(actor_id, permission)
        if denied is not None:
            return denied
        if actor_id != target_id and not self.registry.is_admin(actor_id):
            logger.warning("Actor %s denied %s on user %s", actor_id, permission.value, target_id)
            return errors.forbidden()
        return None
