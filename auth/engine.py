"""
auth/engine.py -- Login state machine, progressive lockout, refresh, logout.

Login check order is fixed:
  1. unknown email        -> invalid_credentials (after a dummy bcrypt check [C1])
  2. banned               -> account_banned (lockout state untouched)
  3. lockout_end > now    -> account_locked(remaining)
  4. email not confirmed  -> email_not_confirmed
  5. password verified    -> reset counters, issue tokens
  6. password rejected    -> count the failure; lock on reaching the threshold

Lockout backoff: the n-th lockout lasts lockout_base_minutes x multiplier and
then doubles the multiplier (5, 10, 20, ... minutes). A successful login puts
the multiplier back to 1. LOCKOUT_MAX_MULTIPLIER > 0 caps the growth.

Concurrency: failure bookkeeping and the success reset are read-modify-writes
on the user row. Each write is guarded by the version that was read; on a
conflict the user is re-read, the gates re-run and the transition
re-applied, up to _MAX_WRITE_ATTEMPTS times. Concurrent wrong guesses
therefore cannot under-count, and a ban landing after the password check
still wins.

Store errors are not caught or retried here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from auth import errors
from auth.errors import AuthError, Result
from auth.models import AuthSession, User
from auth.passwords import burn_password_check, verify_password
from auth.store import CredentialStore, rotated_stamp_fields
from auth.tokens import TokenIssuer, generate_opaque_secret
from core.config import Settings, get_settings

logger = logging.getLogger("idcore.auth")

_MAX_WRITE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthenticationEngine:
    def __init__(
        self,
        store: CredentialStore,
        issuer: TokenIssuer,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> Result[AuthSession]:
        user = self.store.get_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            burn_password_check(password)
            logger.warning("Login failed: unknown account")
            return Result.fail(errors.invalid_credentials())

        now = _utcnow()
        blocked = self._gate(user, now)
        if blocked is not None:
            logger.warning("Login refused for user %s: %s", user.id, blocked.code)
            return Result.fail(blocked)

        if verify_password(password, user.password_hash):
            outcome = self._login_succeeded(user, now)
            if isinstance(outcome, AuthError):
                return Result.fail(outcome)
            return Result.ok(outcome)
        return Result.fail(self._record_failure(user, now))

    def _gate(self, user: User, now: datetime) -> AuthError | None:
        """Ban, lockout and confirmation checks, in that order."""
        if user.banned:
            return errors.account_banned()
        if user.is_locked(now):
            return errors.account_locked(user.lockout_end - now)
        if not user.email_confirmed:
            return errors.email_not_confirmed()
        return None

    def _login_succeeded(self, user: User, now: datetime) -> AuthSession | AuthError:
        """Reset the counters and issue a session, guarded by the version that was read.

        A ban, lockout or password change that lands after the password check
        wins: the row is re-read and gated again before another attempt.
        """
        for _ in range(_MAX_WRITE_ATTEMPTS):
            fields: dict = {"access_failed_count": 0, "last_login": now}
            if user.lockout_multiplier > 1:
                fields["lockout_multiplier"] = 1
            if user.lockout_end is not None:
                fields["lockout_end"] = None
            session = self._issue_session(user, now, fields, expected_version=user.version)
            if session is not None:
                logger.info("Login succeeded for user %s", user.id)
                return session

            fresh = self.store.get_by_id(user.id)
            if fresh is None or fresh.password_hash != user.password_hash:
                return errors.invalid_credentials()
            blocked = self._gate(fresh, now)
            if blocked is not None:
                logger.warning("Login refused for user %s: %s", user.id, blocked.code)
                return blocked
            user = fresh

        logger.warning("Could not record login for user %s after %d attempts", user.id, _MAX_WRITE_ATTEMPTS)
        return errors.invalid_credentials()

    def _record_failure(self, user: User, now: datetime) -> AuthError:
        threshold = self.settings.lockout_threshold
        for _ in range(_MAX_WRITE_ATTEMPTS):
            failures = user.access_failed_count + 1
            if failures >= threshold:
                minutes = self.settings.lockout_base_minutes * user.lockout_multiplier
                locked = self.store.update_user(
                    user.id,
                    expected_version=user.version,
                    access_failed_count=0,
                    lockout_end=now + timedelta(minutes=minutes),
                    lockout_multiplier=self._next_multiplier(user.lockout_multiplier),
                )
                if locked:
                    logger.warning("Account %s locked for %d minute(s)", user.id, minutes)
                    return errors.account_locked(timedelta(minutes=minutes))
            elif self.store.update_user(user.id, expected_version=user.version, access_failed_count=failures):
                logger.warning("Login failed for user %s (%d/%d)", user.id, failures, threshold)
                return errors.invalid_credentials()

            # Lost the race: start over from the row as it is now.
            fresh = self.store.get_by_id(user.id)
            if fresh is None:
                return errors.invalid_credentials()
            blocked = self._gate(fresh, now)
            if blocked is not None:
                return blocked
            user = fresh

        logger.warning("Could not record failed login for user %s after %d attempts", user.id, _MAX_WRITE_ATTEMPTS)
        return errors.invalid_credentials()

    def _next_multiplier(self, current: int) -> int:
        doubled = current * 2
        cap = self.settings.lockout_max_multiplier
        if cap > 0:
            return min(doubled, cap)
        return doubled

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> Result[AuthSession]:
        """Exchange a refresh secret for a new session. The old secret stops working."""
        if not refresh_token:
            return Result.fail(errors.invalid_token())
        user = self.store.get_by_refresh_token_hash(self.issuer.hash_secret(refresh_token))
        if user is None:
            return Result.fail(errors.invalid_token())

        now = _utcnow()
        if user.refresh_token_expires is None or user.refresh_token_expires <= now:
            return Result.fail(errors.invalid_token())
        blocked = self._gate(user, now)
        if blocked is not None:
            logger.warning("Refresh refused for user %s: %s", user.id, blocked.code)
            return Result.fail(blocked)

        session = self._issue_session(user, now, {}, expected_version=user.version)
        if session is None:
            # Another request rotated this secret first.
            return Result.fail(errors.invalid_token())
        return Result.ok(session)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: str) -> Result[None]:
        """Rotate the security stamp, revoking the stored refresh secret."""
        user = self.store.get_by_id(user_id)
        if user is None:
            return Result.fail(errors.user_not_found(user_id))
        self.store.update_user(user.id, **rotated_stamp_fields())
        logger.info("User %s logged out", user.id)
        return Result.ok()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_session(
        self,
        user: User,
        now: datetime,
        fields: dict,
        expected_version: int | None = None,
    ) -> AuthSession | None:
        """Store a fresh refresh secret (plus fields) and mint the access token.

        Returns None only when expected_version is given and no longer matches.
        """
        raw_secret = generate_opaque_secret()
        refresh_expires = now + timedelta(days=self.settings.refresh_token_expire_days)
        written = self.store.update_user(
            user.id,
            expected_version=expected_version,
            refresh_token_hash=self.issuer.hash_secret(raw_secret),
            refresh_token_expires=refresh_expires,
            **fields,
        )
        if not written:
            return None
        return AuthSession(
            access=self.issuer.generate_token(user),
            refresh_token=raw_secret,
            refresh_expires_at=refresh_expires,
        )
