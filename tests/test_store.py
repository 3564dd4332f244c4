"""
Tests for auth/store.py -- IdentityStore persistence guards.

Uses plain sqlite:// in-memory stores (single-threaded; no TestClient). The
interesting behaviour is at the edges: case-insensitive uniqueness, the
optimistic version guard, field whitelisting, and membership ordering.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import BANNED_LOCKOUT_END, Claim, Role, User
from auth.store import IdentityStore, rotated_stamp_fields


@pytest.fixture
def bare_store():
    s = IdentityStore("sqlite://")
    yield s
    s.close()


def _user(store: IdentityStore, email: str = "alice@example.com") -> str:
    return store.create_user(User(email=email, password_hash="x", security_stamp="stamp-1"))


class TestUsers:
    def test_create_and_lookup_case_insensitive(self, bare_store):
        uid = _user(bare_store, "Alice@Example.com")
        found = bare_store.get_by_email("  alice@EXAMPLE.com ")
        assert found is not None
        assert found.id == uid
        assert found.email == "Alice@Example.com"
        assert found.version == 1
        assert found.email_confirmed is False

    def test_duplicate_email_rejected_by_unique_index(self, bare_store):
        _user(bare_store, "bob@example.com")
        with pytest.raises(IntegrityError):
            _user(bare_store, "BOB@example.com")

    def test_missing_user_returns_none(self, bare_store):
        assert bare_store.get_by_id("nope") is None
        assert bare_store.get_by_email("nobody@example.com") is None

    def test_update_bumps_version(self, bare_store):
        uid = _user(bare_store)
        assert bare_store.update_user(uid, first_name="Alice")
        user = bare_store.get_by_id(uid)
        assert user.first_name == "Alice"
        assert user.version == 2

    def test_stale_version_is_refused(self, bare_store):
        uid = _user(bare_store)
        assert bare_store.update_user(uid, expected_version=1, access_failed_count=1)
        assert not bare_store.update_user(uid, expected_version=1, access_failed_count=5)
        assert bare_store.get_by_id(uid).access_failed_count == 1

    def test_unknown_field_raises(self, bare_store):
        uid = _user(bare_store)
        with pytest.raises(ValueError, match="Unknown user fields"):
            bare_store.update_user(uid, version=99)

    def test_update_missing_user_returns_false(self, bare_store):
        assert not bare_store.update_user("nope", first_name="x")

    def test_email_update_keeps_lookup_working(self, bare_store):
        uid = _user(bare_store)
        bare_store.update_user(uid, email="New@Example.com")
        assert bare_store.get_by_email("new@example.com").id == uid
        assert bare_store.get_by_email("alice@example.com") is None

    def test_datetimes_round_trip_as_aware_utc(self, bare_store):
        uid = _user(bare_store)
        end = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        bare_store.update_user(uid, lockout_end=end, banned=True)
        user = bare_store.get_by_id(uid)
        assert user.lockout_end == end
        assert user.lockout_end.tzinfo is not None
        assert user.banned is True

    def test_ban_sentinel_round_trips(self, bare_store):
        uid = _user(bare_store)
        bare_store.update_user(uid, lockout_end=BANNED_LOCKOUT_END)
        assert bare_store.get_by_id(uid).lockout_end == BANNED_LOCKOUT_END

    def test_refresh_hash_lookup_and_stamp_rotation(self, bare_store):
        uid = _user(bare_store)
        expires = datetime.now(timezone.utc) + timedelta(days=1)
        bare_store.update_user(uid, refresh_token_hash="abc123", refresh_token_expires=expires)
        assert bare_store.get_by_refresh_token_hash("abc123").id == uid

        bare_store.update_user(uid, **rotated_stamp_fields())
        user = bare_store.get_by_id(uid)
        assert user.security_stamp != "stamp-1"
        assert user.refresh_token_hash is None
        assert bare_store.get_by_refresh_token_hash("abc123") is None

    def test_delete_removes_memberships(self, bare_store):
        uid = _user(bare_store)
        rid = bare_store.create_role(Role(name="User"))
        bare_store.add_user_to_role(uid, rid)
        assert bare_store.delete_user(uid)
        assert bare_store.get_by_id(uid) is None
        assert bare_store.count_users_in_role(rid) == 0
        assert not bare_store.delete_user(uid)


class TestRoles:
    def test_role_name_unique_case_insensitive(self, bare_store):
        bare_store.create_role(Role(name="Admin"))
        with pytest.raises(IntegrityError):
            bare_store.create_role(Role(name="admin"))

    def test_claims_keep_insertion_order(self, bare_store):
        rid = bare_store.create_role(Role(name="Admin"))
        claims = [Claim("permission", "user.ban"), Claim("permission", "role.create"), Claim("team", "ops")]
        for claim in claims:
            bare_store.add_role_claim(rid, claim)
        assert bare_store.get_role_claims(rid) == claims
        assert bare_store.get_role(rid).claims == claims

    def test_duplicate_claim_rejected_by_unique_index(self, bare_store):
        rid = bare_store.create_role(Role(name="Admin"))
        bare_store.add_role_claim(rid, Claim("permission", "user.ban"))
        with pytest.raises(IntegrityError):
            bare_store.add_role_claim(rid, Claim("permission", "user.ban"))

    def test_membership_order_is_assignment_order(self, bare_store):
        uid = _user(bare_store)
        user_role = bare_store.create_role(Role(name="User"))
        admin_role = bare_store.create_role(Role(name="Admin"))
        bare_store.add_user_to_role(uid, user_role)
        bare_store.add_user_to_role(uid, admin_role)
        assert bare_store.get_user_role_ids(uid) == [user_role, admin_role]

    def test_duplicate_membership_rejected(self, bare_store):
        uid = _user(bare_store)
        rid = bare_store.create_role(Role(name="User"))
        bare_store.add_user_to_role(uid, rid)
        with pytest.raises(IntegrityError):
            bare_store.add_user_to_role(uid, rid)

    def test_roles_with_claim_matches_exact_pair(self, bare_store):
        admin = bare_store.create_role(Role(name="Admin"))
        mentor = bare_store.create_role(Role(name="Mentor"))
        bare_store.add_role_claim(admin, Claim("permission", "user.ban"))
        bare_store.add_role_claim(mentor, Claim("label", "user.ban"))
        found = bare_store.get_roles_with_claim(Claim("permission", "user.ban"))
        assert [r.id for r in found] == [admin]

    def test_ping(self, bare_store):
        assert bare_store.ping() is True
