"""
tests/test_api_routes.py -- Integration tests for the auth and role routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> engine/accounts/registry -> IdentityStore -> response model serialization and
the error envelope. Unit tests of the services cover the edge cases; here the
question is whether the HTTP contract holds (status codes, headers, bodies).

Coverage:
  - Auth failures: 401 without a token, with a garbage token, with an expired
    token, and after the account is banned
  - Register -> confirm (link parsed from the recorded mail) -> login -> refresh
  - Lockout over HTTP: 423 with Retry-After
  - Permission failures: 403 with required_permission
  - Role CRUD, claims and membership as Admin

Fixtures used (from conftest.py):
  - api_client: ApiHarness -- client, admin, admin_token, notifier.
    The admin is "admin@idcore.test" with password GOOD_PASSWORD.

Every test registers its own users (unique emails) because the harness is
shared by the whole module.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from jose import jwt

from conftest import GOOD_PASSWORD, ApiHarness


def _register_and_confirm(harness: ApiHarness, email: str, password: str = GOOD_PASSWORD) -> str:
    """Register through the API, follow the mailed link, return the new user's id."""
    resp = harness.client.post("/api/v1/auth/register", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    to, link = harness.notifier.sent[-1]
    assert to == email
    parsed = urlparse(link)
    confirm = harness.client.get(parsed.path, params={k: v[0] for k, v in parse_qs(parsed.query).items()})
    assert confirm.status_code == 200, confirm.text
    return resp.json()["user_id"]


def _login(harness: ApiHarness, email: str, password: str = GOOD_PASSWORD):
    return harness.client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _token_for(harness: ApiHarness, email: str) -> str:
    resp = _login(harness, email)
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


class TestApiAuthFailure:
    """Unauthenticated requests to protected routes must return 401 with the error envelope."""

    def test_me_without_token(self, api_client: ApiHarness) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_garbage_token(self, api_client: ApiHarness) -> None:
        resp = api_client.client.get("/api/v1/roles", headers=api_client.auth_headers("not-a-jwt"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_expired_token(self, api_client: ApiHarness) -> None:
        settings = api_client.state.issuer.settings
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = jwt.encode(
            {
                "sub": api_client.admin.id,
                "iat": past,
                "jti": "expired",
                "email": api_client.admin.email,
                "roles": ["Admin"],
                "claims": [],
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "exp": past + timedelta(minutes=5),
            },
            settings.secret_key,
            algorithm="HS256",
        )
        resp = api_client.client.get("/api/v1/auth/me", headers=api_client.auth_headers(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

    def test_protected_role_write_without_token(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post("/api/v1/roles", json={"name": "Mentor"})
        assert resp.status_code == 401


class TestRegistrationFlow:
    def test_register_returns_pending_receipt(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register",
            json={"email": "pending@example.com", "password": GOOD_PASSWORD, "first_name": "Pat"},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["email"] == "pending@example.com"
        assert data["email_confirmed"] is False

        login = _login(api_client, "pending@example.com")
        assert login.status_code == 403
        assert login.json()["error"]["code"] == "email_not_confirmed"

    def test_duplicate_registration(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register",
            json={"email": "ADMIN@idcore.test", "password": GOOD_PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_email"

    def test_weak_password_reports_reasons(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register",
            json={"email": "weak@example.com", "password": "abc"},
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "password_rejected"
        assert error["detail"]["reasons"]

    def test_malformed_body_is_422(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post("/api/v1/auth/register", json={"email": "not-an-email"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_confirm_then_login_then_me(self, api_client: ApiHarness) -> None:
        user_id = _register_and_confirm(api_client, "flow@example.com")
        resp = _login(api_client, "flow@example.com")
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["roles"] == ["User"]
        assert data["refresh_token"]

        me = api_client.client.get("/api/v1/auth/me", headers=api_client.auth_headers(data["access_token"]))
        assert me.status_code == 200
        assert me.json()["id"] == user_id
        assert me.json()["email_confirmed"] is True
        assert me.json()["roles"] == ["User"]

    def test_confirmation_link_works_once(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "once@example.com")
        parsed = urlparse(api_client.notifier.sent[-1][1])
        again = api_client.client.get(parsed.path, params={k: v[0] for k, v in parse_qs(parsed.query).items()})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_token"


class TestSessionRoutes:
    def test_invalid_login_is_401_and_not_cached(self, api_client: ApiHarness) -> None:
        resp = _login(api_client, "nobody@example.com", "whatever")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_lockout_sets_retry_after(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "locked@example.com")
        for _ in range(2):
            assert _login(api_client, "locked@example.com", "wrong-password").status_code == 401
        resp = _login(api_client, "locked@example.com", "wrong-password")
        assert resp.status_code == 423
        assert resp.json()["error"]["code"] == "account_locked"
        assert int(resp.headers["Retry-After"]) == 300

        # Correct password is still refused while locked.
        assert _login(api_client, "locked@example.com").status_code == 423

    def test_refresh_rotates_and_logout_revokes(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "refresh@example.com")
        first = _login(api_client, "refresh@example.com").json()

        second = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert second.status_code == 200
        assert second.headers["Cache-Control"] == "no-store"
        new = second.json()

        reused = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reused.status_code == 400

        logout = api_client.client.post("/api/v1/auth/logout", headers=api_client.auth_headers(new["access_token"]))
        assert logout.status_code == 200
        after = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": new["refresh_token"]})
        assert after.status_code == 400

    def test_change_password(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "changer@example.com")
        token = _token_for(api_client, "changer@example.com")
        resp = api_client.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": GOOD_PASSWORD, "new_password": "N3w!password"},
            headers=api_client.auth_headers(token),
        )
        assert resp.status_code == 200
        assert _login(api_client, "changer@example.com").status_code == 401
        assert _login(api_client, "changer@example.com", "N3w!password").status_code == 200


class TestAccountManagement:
    def test_self_update(self, api_client: ApiHarness) -> None:
        user_id = _register_and_confirm(api_client, "selfedit@example.com")
        token = _token_for(api_client, "selfedit@example.com")
        resp = api_client.client.put(
            f"/api/v1/auth/users/{user_id}",
            json={"first_name": "Sam"},
            headers=api_client.auth_headers(token),
        )
        assert resp.status_code == 200
        assert resp.json()["first_name"] == "Sam"

    def test_update_someone_else_is_forbidden(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "nosy@example.com")
        victim_id = _register_and_confirm(api_client, "victim@example.com")
        token = _token_for(api_client, "nosy@example.com")
        resp = api_client.client.put(
            f"/api/v1/auth/users/{victim_id}",
            json={"first_name": "Pwned"},
            headers=api_client.auth_headers(token),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_ban_requires_permission(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "wannabe@example.com")
        target_id = _register_and_confirm(api_client, "target@example.com")
        token = _token_for(api_client, "wannabe@example.com")
        resp = api_client.client.post(f"/api/v1/auth/users/{target_id}/ban", headers=api_client.auth_headers(token))
        assert resp.status_code == 403
        error = resp.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["detail"]["required_permission"] == "user.ban"

    def test_ban_invalidates_live_token_then_unban(self, api_client: ApiHarness) -> None:
        user_id = _register_and_confirm(api_client, "troll@example.com")
        token = _token_for(api_client, "troll@example.com")

        ban = api_client.client.post(f"/api/v1/auth/users/{user_id}/ban", headers=api_client.auth_headers())
        assert ban.status_code == 200
        assert api_client.client.get("/api/v1/auth/me", headers=api_client.auth_headers(token)).status_code == 401
        assert _login(api_client, "troll@example.com").json()["error"]["code"] == "account_banned"

        twice = api_client.client.post(f"/api/v1/auth/users/{user_id}/ban", headers=api_client.auth_headers())
        assert twice.status_code == 409

        unban = api_client.client.post(f"/api/v1/auth/users/{user_id}/unban", headers=api_client.auth_headers())
        assert unban.status_code == 200
        assert _login(api_client, "troll@example.com").status_code == 200

    def test_self_delete(self, api_client: ApiHarness) -> None:
        user_id = _register_and_confirm(api_client, "leaver@example.com")
        token = _token_for(api_client, "leaver@example.com")
        resp = api_client.client.delete(f"/api/v1/auth/users/{user_id}", headers=api_client.auth_headers(token))
        assert resp.status_code == 204
        assert _login(api_client, "leaver@example.com").status_code == 401

    def test_admin_delete_missing_user(self, api_client: ApiHarness) -> None:
        resp = api_client.client.delete("/api/v1/auth/users/nope", headers=api_client.auth_headers())
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "user_not_found"


class TestRoleRoutes:
    def _role_id(self, harness: ApiHarness, name: str) -> str:
        roles = harness.client.get("/api/v1/roles", headers=harness.auth_headers()).json()
        return next(r["id"] for r in roles if r["name"] == name)

    def test_list_seeded_roles(self, api_client: ApiHarness) -> None:
        resp = api_client.client.get("/api/v1/roles", headers=api_client.auth_headers())
        assert resp.status_code == 200
        assert [r["name"] for r in resp.json()] == ["Admin", "Mentor", "User"]

    def test_get_role_and_missing_role(self, api_client: ApiHarness) -> None:
        admin_id = self._role_id(api_client, "Admin")
        resp = api_client.client.get(f"/api/v1/roles/{admin_id}", headers=api_client.auth_headers())
        assert resp.status_code == 200
        assert {"type": "permission", "value": "user.ban"} in resp.json()["claims"]

        missing = api_client.client.get("/api/v1/roles/nope", headers=api_client.auth_headers())
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "role_not_found"

    def test_create_role_outside_allow_list(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post("/api/v1/roles", json={"name": "Wizard"}, headers=api_client.auth_headers())
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_role_name"

    def test_create_duplicate_role(self, api_client: ApiHarness) -> None:
        resp = api_client.client.post("/api/v1/roles", json={"name": "mentor"}, headers=api_client.auth_headers())
        assert resp.status_code == 409

    def test_role_write_requires_permission(self, api_client: ApiHarness) -> None:
        _register_and_confirm(api_client, "plainrole@example.com")
        token = _token_for(api_client, "plainrole@example.com")
        resp = api_client.client.post("/api/v1/roles", json={"name": "Mentor"}, headers=api_client.auth_headers(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"]["required_permission"] == "role.create"

    def test_claims_and_by_claim_lookup(self, api_client: ApiHarness) -> None:
        mentor_id = self._role_id(api_client, "Mentor")
        add = api_client.client.post(
            f"/api/v1/roles/{mentor_id}/claims",
            json={"type": "team", "value": "onboarding"},
            headers=api_client.auth_headers(),
        )
        assert add.status_code == 201
        assert add.json() == {"type": "team", "value": "onboarding"}

        found = api_client.client.get(
            "/api/v1/roles/by-claim",
            params={"type": "team", "value": "onboarding"},
            headers=api_client.auth_headers(),
        )
        assert [r["name"] for r in found.json()] == ["Mentor"]

        dup = api_client.client.post(
            f"/api/v1/roles/{mentor_id}/claims",
            json={"type": "team", "value": "onboarding"},
            headers=api_client.auth_headers(),
        )
        assert dup.status_code == 409

        removed = api_client.client.delete(
            f"/api/v1/roles/{mentor_id}/claims",
            params={"type": "team", "value": "onboarding"},
            headers=api_client.auth_headers(),
        )
        assert removed.status_code == 204

    def test_unknown_permission_claim(self, api_client: ApiHarness) -> None:
        mentor_id = self._role_id(api_client, "Mentor")
        resp = api_client.client.post(
            f"/api/v1/roles/{mentor_id}/claims",
            json={"value": "user.destroy"},
            headers=api_client.auth_headers(),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_permission"

    def test_assign_shows_in_next_token(self, api_client: ApiHarness) -> None:
        user_id = _register_and_confirm(api_client, "promoted@example.com")
        assign = api_client.client.post(
            "/api/v1/roles/assign",
            json={"user_id": user_id, "role_name": "mentor"},
            headers=api_client.auth_headers(),
        )
        assert assign.status_code == 204
        assert _login(api_client, "promoted@example.com").json()["roles"] == ["User", "Mentor"]

        mentor_id = self._role_id(api_client, "Mentor")
        members = api_client.client.get(f"/api/v1/roles/{mentor_id}/users", headers=api_client.auth_headers())
        assert user_id in [u["id"] for u in members.json()]

        remove = api_client.client.post(
            "/api/v1/roles/remove",
            json={"user_id": user_id, "role_name": "Mentor"},
            headers=api_client.auth_headers(),
        )
        assert remove.status_code == 204
        again = api_client.client.post(
            "/api/v1/roles/remove",
            json={"user_id": user_id, "role_name": "Mentor"},
            headers=api_client.auth_headers(),
        )
        assert again.status_code == 409

    def test_delete_role_refused_while_claims_attached(self, api_client: ApiHarness) -> None:
        user_role = self._role_id(api_client, "User")
        resp = api_client.client.delete(f"/api/v1/roles/{user_role}", headers=api_client.auth_headers())
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] in ("role_has_claims", "role_has_assigned_users")
