"""Integration tests for the authentication flow over HTTP.

Covers registration, email verification, login, refresh rotation, logout,
password reset and change, and two-step MFA login.
"""

import re

import pytest
from fastapi.testclient import TestClient

from gemvault import app as app_module
from gemvault.service.mfa import generate_totp

PASSWORD = "Sapphire2024"
NEW_PASSWORD = "Emerald2025"
_TOKEN_RE = re.compile(r"[0-9a-f]{64}")


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _last_token(outbox):
    match = _TOKEN_RE.search(outbox[-1]["text"])
    assert match
    return match.group(0)


def _register(client, email="buyer@example.com", password=PASSWORD, **extra):
    return client.post("/v1/auth/register", json={"email": email, "password": password, **extra})


def _login(client, email="buyer@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _verified_session(client, sent_emails, email="buyer@example.com"):
    _register(client, email)
    client.get(f"/v1/auth/verify-email/{_last_token(sent_emails)}")
    return _login(client, email).json()["data"]


class TestRegistration:
    def test_register_returns_pending_account(self, client, sent_emails):
        response = _register(client, "New.Buyer@Example.com", first_name=" Ada ")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email"] == "new.buyer@example.com"
        assert data["status"] == "pending"
        assert data["email_verified"] is False
        assert sent_emails[0]["to"] == "new.buyer@example.com"
        assert "/v1/auth/verify-email/" in sent_emails[0]["text"]

    def test_duplicate_is_conflict(self, client, sent_emails):
        _register(client)
        response = _register(client, "BUYER@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize("password", ["short1A", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
    def test_weak_passwords_rejected(self, client, password):
        assert _register(client, password=password).status_code == 422

    def test_register_rate_limited_per_email(self, client, runtime, sent_emails):
        limit = runtime.settings.register_rate_limit_per_minute
        responses = [_register(client) for _ in range(limit + 1)]
        last = responses[-1]
        assert last.status_code == 429
        assert last.json()["error"]["code"] == "rate_limited"
        assert int(last.headers["Retry-After"]) >= 1
        assert "X-RateLimit-Limit" in responses[0].headers


class TestLoginAndTokens:
    def test_full_session_lifecycle(self, client, sent_emails):
        _register(client)
        verified = client.get(f"/v1/auth/verify-email/{_last_token(sent_emails)}")
        assert verified.status_code == 200
        assert verified.json()["data"]["status"] == "active"

        login = _login(client)
        assert login.status_code == 200
        tokens = login.json()["data"]
        assert tokens["token_type"] == "Bearer"
        assert tokens["roles"] == ["customer"]
        assert tokens["mfa_required"] is False

        me = client.get("/v1/auth/me", headers=_auth(tokens["access_token"]))
        assert me.status_code == 200
        profile = me.json()["data"]
        assert profile["email"] == "buyer@example.com"
        assert profile["email_verified"] is True
        assert "listing:read" in profile["permissions"]

        refreshed = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]

        replay = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_token"

        logout = client.post("/v1/auth/logout", headers=_auth(new_tokens["access_token"]))
        assert logout.status_code == 200
        after_logout = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": new_tokens["refresh_token"]}
        )
        assert after_logout.status_code == 401

    def test_bad_credentials_are_indistinguishable(self, client, sent_emails):
        _register(client)
        unknown = _login(client, "ghost@example.com")
        wrong = _login(client, password="Wrong-pass-1")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_login_rate_limited(self, client, runtime):
        limit = runtime.settings.login_rate_limit_per_minute
        statuses = [_login(client, "ghost@example.com").status_code for _ in range(limit + 1)]
        assert statuses[:limit] == [401] * limit
        assert statuses[-1] == 429

    def test_verify_email_token_reuse(self, client, sent_emails):
        _register(client)
        token = _last_token(sent_emails)
        assert client.get(f"/v1/auth/verify-email/{token}").status_code == 200
        again = client.get(f"/v1/auth/verify-email/{token}")
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_token"

    def test_garbage_access_token(self, client):
        response = client.get("/v1/auth/me", headers=_auth("not.a.token"))
        assert response.status_code == 401


class TestPasswordFlows:
    def test_forgot_password_same_answer_for_unknown(self, client, sent_emails):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "buyer@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}

    def test_reset_password(self, client, sent_emails):
        session = _verified_session(client, sent_emails)
        client.post("/v1/auth/forgot-password", json={"email": "buyer@example.com"})
        token = _last_token(sent_emails)

        mismatch = client.post(
            "/v1/auth/reset-password",
            json={"token": token, "password": NEW_PASSWORD, "confirm_password": "Other2025x"},
        )
        assert mismatch.status_code == 422

        reset = client.post(
            "/v1/auth/reset-password",
            json={"token": token, "password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
        )
        assert reset.status_code == 200
        assert reset.json()["data"] == {"status": "reset"}

        stale = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": session["refresh_token"]}
        )
        assert stale.status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200

    def test_change_password(self, client, sent_emails):
        session = _verified_session(client, sent_emails)
        headers = _auth(session["access_token"])
        wrong = client.post(
            "/v1/auth/change-password",
            headers=headers,
            json={
                "current_password": "Wrong-pass-1",
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
        )
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "invalid_credentials"

        changed = client.post(
            "/v1/auth/change-password",
            headers=headers,
            json={
                "current_password": PASSWORD,
                "new_password": NEW_PASSWORD,
                "confirm_password": NEW_PASSWORD,
            },
        )
        assert changed.status_code == 200
        assert _login(client, password=NEW_PASSWORD).status_code == 200


class TestMfaFlow:
    def test_enroll_and_two_step_login(self, client, runtime, sent_emails):
        session = _verified_session(client, sent_emails)
        headers = _auth(session["access_token"])

        setup = client.post("/v1/mfa/setup", headers=headers)
        assert setup.status_code == 200
        challenge = setup.json()["data"]
        assert challenge["qr_code_url"].startswith("data:image/svg+xml;base64,")
        assert client.get("/v1/mfa/status", headers=headers).json()["data"] == {
            "enabled": False,
            "pending": True,
        }

        confirm = client.post(
            "/v1/mfa/setup/confirm",
            headers=headers,
            json={"code": generate_totp(challenge["secret"], runtime.mfa._clock())},
        )
        assert confirm.status_code == 200

        first = _login(client).json()["data"]
        assert first["mfa_required"] is True
        assert first["access_token"] is None

        bad = client.post(
            "/v1/mfa/verify", json={"mfa_token": first["mfa_token"], "code": "abcdef"}
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "invalid_mfa_code"

        verified = client.post(
            "/v1/mfa/verify",
            json={
                "mfa_token": first["mfa_token"],
                "code": generate_totp(challenge["secret"], runtime.mfa._clock()),
            },
        )
        assert verified.status_code == 200
        tokens = verified.json()["data"]
        assert tokens["access_token"]

        disable = client.post(
            "/v1/mfa/disable",
            headers=_auth(tokens["access_token"]),
            json={"code": generate_totp(challenge["secret"], runtime.mfa._clock())},
        )
        assert disable.status_code == 200
        assert _login(client).json()["data"]["mfa_required"] is False

    def test_setup_requires_auth(self, client):
        assert client.post("/v1/mfa/setup").status_code == 401


class TestProfile:
    def test_update_profile(self, client, sent_emails):
        session = _verified_session(client, sent_emails)
        headers = _auth(session["access_token"])
        response = client.put(
            "/v1/auth/me",
            headers=headers,
            json={"first_name": "  Grace ", "last_name": "Hopper", "phone": "+1 555 0100"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["first_name"] == "Grace"
        assert data["full_name"] == "Grace Hopper"
        assert data["phone"] == "+1 555 0100"
        assert data["email"] == "buyer@example.com"
        assert data["roles"] == ["customer"]

        # omitted fields are kept, null clears
        partial = client.put("/v1/auth/me", headers=headers, json={"phone": None}).json()["data"]
        assert partial["phone"] is None
        assert partial["last_name"] == "Hopper"

    def test_email_cannot_be_changed_here(self, client, sent_emails):
        session = _verified_session(client, sent_emails)
        headers = _auth(session["access_token"])
        response = client.put(
            "/v1/auth/me", headers=headers, json={"email": "other@example.com"}
        )
        assert response.status_code == 200
        me = client.get("/v1/auth/me", headers=headers).json()["data"]
        assert me["email"] == "buyer@example.com"

    def test_invalid_phone_rejected(self, client, sent_emails):
        session = _verified_session(client, sent_emails)
        response = client.put(
            "/v1/auth/me", headers=_auth(session["access_token"]), json={"phone": "call me"}
        )
        assert response.status_code == 422

    def test_requires_auth(self, client):
        assert client.put("/v1/auth/me", json={"first_name": "Grace"}).status_code == 401


class TestHeaders:
    def test_security_and_correlation_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-abc"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-abc"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
        assert response.headers["API-Version"] == app_module.__version__

    def test_health_reports_components(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}
