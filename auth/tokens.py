"""
auth/tokens.py -- Session tokens, confirmation tokens, and refresh secrets.

Security design decisions:
  JWT: python-jose with HS256. Session tokens are signed with SECRET_KEY and
       carry sub, iat, jti, email, role names, the merged role claims, iss,
       aud and an absolute exp. validate_token() checks signature, algorithm,
       issuer and audience but NOT expiry, so flows that inspect an expired
       token (confirmation-link completion, refresh) can still read it.
       Callers that need expiry enforcement use Principal.is_expired().

  Confirmation tokens: a second JWT shape with purpose="email_confirmation"
       and the user's current security stamp. Expiry IS enforced here, and
       the stamp rotates on confirmation, so each link works once. A session
       token is never accepted as a confirmation token and vice versa.

  Refresh secrets: secrets.token_urlsafe(64) gives 512 bits of entropy. We
       store HMAC-SHA256(SECRET_KEY, raw_secret) so lookup is O(1) and a
       leaked database does not yield usable secrets. bcrypt's intentional
       slowness is unnecessary for high-entropy values.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth import errors
from auth.errors import Result
from auth.models import Claim, Principal, SessionToken, User
from auth.permissions import merge_claims
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.registry import PermissionRegistry

logger = logging.getLogger("idcore.auth")

_ALGORITHM = "HS256"
_CONFIRMATION_PURPOSE = "email_confirmation"


def generate_opaque_secret() -> str:
    """Return a URL-safe random secret with 512 bits of entropy."""
    return secrets.token_urlsafe(64)


def _utcnow() -> datetime:
    # JWT NumericDate has one-second resolution; drop microseconds so the
    # returned expiry matches the encoded one exactly.
    return datetime.now(timezone.utc).replace(microsecond=0)


def _from_timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenIssuer:
    """Mints and validates signed tokens for a single signing configuration."""

    def __init__(self, registry: PermissionRegistry, settings: Settings | None = None) -> None:
        self.registry = registry
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def generate_token(self, user: User) -> SessionToken:
        """Mint a session token for user with their roles' merged claims.

        Roles are taken in assignment order and claims in insertion order, so
        the first-occurrence-wins merge is deterministic.
        """
        roles = self.registry.get_user_roles(user.id)
        claims = merge_claims(role.claims for role in roles)
        role_names = [role.name for role in roles]

        issued_at = _utcnow()
        expires_at = issued_at + timedelta(minutes=self.settings.access_token_expire_minutes)
        token_id = str(uuid.uuid4())
        payload = {
            "sub": user.id,
            "iat": issued_at,
            "jti": token_id,
            "email": user.email,
            "roles": role_names,
            "claims": [{"type": c.type, "value": c.value} for c in claims],
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "exp": expires_at,
        }
        encoded = jwt.encode(payload, self.settings.secret_key, algorithm=_ALGORITHM)
        return SessionToken(
            token=encoded,
            token_id=token_id,
            user_id=user.id,
            issued_at=issued_at,
            expires_at=expires_at,
            roles=role_names,
            claims=claims,
        )

    def validate_token(self, token: str) -> Result[Principal]:
        """Verify signature, algorithm, issuer and audience. Expiry is ignored,
        but a token without exp is rejected.

        Any failure yields an invalid_token error; the reason is logged at
        debug level only.
        """
        payload = self._decode(token, verify_exp=False)
        if payload is None or "purpose" in payload:
            return Result.fail(errors.invalid_token())
        if not payload.get("sub") or "email" not in payload or payload.get("exp") is None:
            return Result.fail(errors.invalid_token())

        try:
            claims = [Claim(str(c["type"]), str(c["value"])) for c in payload.get("claims", [])]
        except (KeyError, TypeError):
            return Result.fail(errors.invalid_token())

        return Result.ok(
            Principal(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                token_id=str(payload.get("jti", "")),
                issued_at=_from_timestamp(payload.get("iat")),
                expires_at=_from_timestamp(payload.get("exp")),
                roles=[str(r) for r in payload.get("roles", [])],
                claims=claims,
            )
        )

    # ------------------------------------------------------------------
    # Email confirmation tokens
    # ------------------------------------------------------------------

    def generate_confirmation_token(self, user: User) -> str:
        issued_at = _utcnow()
        payload = {
            "sub": user.id,
            "purpose": _CONFIRMATION_PURPOSE,
            "stamp": user.security_stamp,
            "iat": issued_at,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "exp": issued_at + timedelta(hours=self.settings.confirmation_token_expire_hours),
        }
        return jwt.encode(payload, self.settings.secret_key, algorithm=_ALGORITHM)

    def validate_confirmation_token(self, token: str, user: User) -> bool:
        """Return True only for an unexpired confirmation token minted for user's current stamp."""
        payload = self._decode(token, verify_exp=True)
        if payload is None:
            return False
        if payload.get("purpose") != _CONFIRMATION_PURPOSE or payload.get("sub") != user.id:
            return False
        return hmac.compare_digest(str(payload.get("stamp", "")), user.security_stamp)

    # ------------------------------------------------------------------
    # Refresh secrets
    # ------------------------------------------------------------------

    def hash_secret(self, raw_secret: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_secret) as a hex string."""
        return hmac.new(
            self.settings.secret_key.encode(),
            raw_secret.encode(),
            hashlib.sha256,
        ).hexdigest()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _decode(self, token: str, verify_exp: bool) -> dict | None:
        try:
            header = jwt.get_unverified_header(token)
            if str(header.get("alg", "")).upper() != _ALGORITHM:
                logger.debug("Rejected token signed with %r", header.get("alg"))
                return None
            return jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[_ALGORITHM],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                options={"verify_exp": verify_exp},
            )
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            return None
