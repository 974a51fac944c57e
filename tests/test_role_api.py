"""
tests/test_role_api.py -- Sign-up, login and role endpoints through the app.

Covers:
  - POST /auth/signup: 201 without a session until the address is confirmed
    (with one when verification is off), MEMBER by default, 409 on reuse,
    weak or over-long password, 422 without echoing submitted values
  - POST /auth/login: same 401 for wrong password and unknown email
  - POST /auth/role: elevation, rejected downgrade, invalid role envelope,
    session re-minted with the effective role in the same response
  - GET /auth/role-intent + signup/login: pre-login choice applied once
  - GET /auth/apply-role: redirect to login without a session, else apply
  - GET /auth/me; store outage -> 503 dependency_unavailable
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import Role
from auth.tokens import verify_session_token
from core.config import get_settings
from tests.conftest import bearer, create_user


def _cookie_claim(resp):
    token = resp.cookies.get(get_settings().session_cookie_name)
    assert token, "response did not set a session cookie"
    return verify_session_token(token)


class TestSignupAndLogin:
    def test_signup_defaults_to_member(self, env):
        resp = env.client.post(
            "/api/v1/auth/signup",
            json={"email": "New@Example.com", "password": "long-password", "name": "New"},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["role"] == "MEMBER"
        assert data["verification_required"] is True
        assert get_settings().session_cookie_name not in resp.cookies
        user = env.store.get_by_email("new@example.com")
        assert user.id == data["user_id"]
        assert user.role is Role.MEMBER
        assert not user.is_verified

    def test_signup_signs_in_when_verification_is_off(self, env, monkeypatch):
        monkeypatch.setattr(get_settings(), "require_verified_email", False)
        resp = env.client.post("/api/v1/auth/signup", json={"email": "open@example.com", "password": "long-password"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert resp.headers["Cache-Control"] == "no-store"
        claim = _cookie_claim(resp)
        assert claim.user_id == data["user_id"]
        assert claim.role is Role.MEMBER
        assert env.mailer.sent == []

    def test_signup_duplicate_email(self, env):
        create_user(env.store, email="dup@example.com")
        resp = env.client.post("/api/v1/auth/signup", json={"email": "dup@example.com", "password": "long-password"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_signup_weak_password(self, env):
        resp = env.client.post("/api/v1/auth/signup", json={"email": "weak@example.com", "password": "short"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"
        assert env.store.get_by_email("weak@example.com") is None

    @pytest.mark.parametrize("password", ["x" * 100, "\U0001F600" * 20])
    def test_signup_password_over_72_bytes(self, env, password):
        resp = env.client.post("/api/v1/auth/signup", json={"email": "long@example.com", "password": password})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_too_long"
        assert env.store.get_by_email("long@example.com") is None

    def test_signup_password_of_exactly_72_bytes(self, env):
        resp = env.client.post("/api/v1/auth/signup", json={"email": "edge@example.com", "password": "y" * 72})
        assert resp.status_code == 201

    def test_login_with_over_long_password_is_bad_credentials(self, env):
        create_user(env.store, email="short-pw@example.com", password="correct-horse")
        resp = env.client.post("/api/v1/auth/login", json={"email": "short-pw@example.com", "password": "z" * 100})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_validation_error_does_not_echo_values(self, env):
        resp = env.client.post("/api/v1/auth/signup", json={"email": "not-an-email", "password": "s3cret-value"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "email" in error["detail"]
        assert "s3cret-value" not in resp.text
        assert "not-an-email" not in resp.text

    def test_login_success(self, env):
        uid = create_user(env.store, email="login@example.com", password="correct-horse", role=Role.ORGANIZER)
        resp = env.client.post("/api/v1/auth/login", json={"email": "login@example.com", "password": "correct-horse"})
        assert resp.status_code == 200
        assert resp.json()["user_id"] == uid
        assert resp.json()["role"] == "ORGANIZER"
        assert _cookie_claim(resp).role is Role.ORGANIZER

    def test_login_failures_look_the_same(self, env):
        create_user(env.store, email="same@example.com", password="correct-horse")
        wrong = env.client.post("/api/v1/auth/login", json={"email": "same@example.com", "password": "wrong-horse"})
        unknown = env.client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "x"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"


class TestRoleEndpoint:
    def test_elevation_reissues_session(self, env):
        uid = create_user(env.store, role=Role.MEMBER)
        resp = env.client.post("/api/v1/auth/role", json={"role": "ORGANIZER"}, headers=bearer(uid, Role.MEMBER))
        assert resp.status_code == 200
        assert resp.json() == {"effective_role": "ORGANIZER", "changed": True}
        claim = _cookie_claim(resp)
        assert claim.user_id == uid
        assert claim.role is Role.ORGANIZER

    def test_downgrade_answered_with_effective_role(self, env):
        uid = create_user(env.store, role=Role.ORGANIZER)
        resp = env.client.post("/api/v1/auth/role", json={"role": "MEMBER"}, headers=bearer(uid, Role.ORGANIZER))
        assert resp.status_code == 200
        assert resp.json() == {"effective_role": "ORGANIZER", "changed": False}
        assert _cookie_claim(resp).role is Role.ORGANIZER
        assert env.store.get_by_id(uid).role is Role.ORGANIZER

    def test_stale_claim_is_corrected(self, env):
        # Token still says MEMBER although the store already holds ORGANIZER.
        uid = create_user(env.store, role=Role.ORGANIZER)
        resp = env.client.post("/api/v1/auth/role", json={"role": "MEMBER"}, headers=bearer(uid, Role.MEMBER))
        assert _cookie_claim(resp).role is Role.ORGANIZER

    def test_invalid_role(self, env):
        uid = create_user(env.store, role=Role.MEMBER)
        resp = env.client.post("/api/v1/auth/role", json={"role": "ADMIN"}, headers=bearer(uid))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_role"
        assert env.store.get_by_id(uid).role is Role.MEMBER

    def test_requires_session(self, env):
        resp = env.client.post("/api/v1/auth/role", json={"role": "MEMBER"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_deleted_identity(self, env):
        resp = env.client.post("/api/v1/auth/role", json={"role": "MEMBER"}, headers=bearer("no-such-user"))
        assert resp.status_code == 401

    def test_store_outage_is_503(self, env, monkeypatch):
        uid = create_user(env.store, role=Role.MEMBER)

        def broken(*args, **kwargs):
            raise OperationalError("UPDATE users", {}, Exception("database is locked"))

        monkeypatch.setattr(env.store, "apply_role", broken)
        resp = env.client.post("/api/v1/auth/role", json={"role": "ORGANIZER"}, headers=bearer(uid))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "dependency_unavailable"
        assert "locked" not in resp.text


class TestRoleIntent:
    def test_intent_sets_cookie_and_redirects(self, env):
        resp = env.client.get("/api/v1/auth/role-intent", params={"role": "organizer", "next": "/signup?from=home"})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/signup?from=home"
        assert resp.cookies.get(get_settings().role_intent_cookie_name) == "ORGANIZER"

    def test_intent_rejects_external_next(self, env):
        resp = env.client.get("/api/v1/auth/role-intent", params={"role": "MEMBER", "next": "https://evil.example"})
        assert resp.headers["location"] == "/signup"

    def test_intent_invalid_role(self, env):
        resp = env.client.get("/api/v1/auth/role-intent", params={"role": "ADMIN"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_role"

    def test_intent_applied_at_signup(self, env):
        env.client.get("/api/v1/auth/role-intent", params={"role": "ORGANIZER"})
        resp = env.client.post("/api/v1/auth/signup", json={"email": "org@example.com", "password": "long-password"})
        assert resp.status_code == 201
        assert resp.json()["role"] == "ORGANIZER"
        assert env.store.get_by_email("org@example.com").role is Role.ORGANIZER
        assert get_settings().role_intent_cookie_name not in env.client.cookies

    def test_member_intent_cannot_downgrade_at_login(self, env):
        create_user(env.store, email="keeps@example.com", password="correct-horse", role=Role.ORGANIZER)
        env.client.get("/api/v1/auth/role-intent", params={"role": "MEMBER"})
        resp = env.client.post("/api/v1/auth/login", json={"email": "keeps@example.com", "password": "correct-horse"})
        assert resp.json()["role"] == "ORGANIZER"


class TestApplyRole:
    def test_without_session_redirects_to_login(self, env):
        resp = env.client.get("/api/v1/auth/apply-role", params={"role": "ORGANIZER", "next": "/organizer"})
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["next"] == ["/organizer"]

    def test_applies_role_and_reissues(self, env):
        uid = create_user(env.store, role=None)
        resp = env.client.get(
            "/api/v1/auth/apply-role",
            params={"role": "ORGANIZER", "next": "/organizer"},
            headers=bearer(uid, None),
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/organizer"
        assert _cookie_claim(resp).role is Role.ORGANIZER

    def test_default_target(self, env):
        uid = create_user(env.store, role=None)
        resp = env.client.get("/api/v1/auth/apply-role", params={"next": "//evil.example"}, headers=bearer(uid, None))
        assert resp.headers["location"] == get_settings().default_after_login
        assert _cookie_claim(resp).role is Role.MEMBER


class TestMe:
    def test_me(self, env):
        uid = create_user(env.store, email="me@example.com", name="Me", role=Role.MEMBER)
        resp = env.client.get("/api/v1/auth/me", headers=bearer(uid))
        assert resp.status_code == 200
        assert resp.json() == {"user_id": uid, "email": "me@example.com", "name": "Me", "role": "MEMBER"}

    def test_me_requires_session(self, env):
        assert env.client.get("/api/v1/auth/me").status_code == 401
