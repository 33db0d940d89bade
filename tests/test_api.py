"""HTTP-level tests for the /v1 auth API and the error envelope.

Every error response has the shape::

    {
        "status": "error",
        "error": {"code": "<stable_code>", "message": "...", "details": ...},
        "request_id": "<uuid>"
    }
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from civicauth.api.error_handling import _error_code_for_status
from civicauth.api.schemas import Envelope, ErrorBody, RegisterRequest
from civicauth.app import app
from civicauth.service.runtime import get_runtime

PASSWORD = "correct horse battery"


@pytest.fixture
def client():
    return TestClient(app)


def _register(client, email="ada@example.org", username="ada"):
    resp = client.post(
        "/v1/auth/register",
        json={"email": email, "password": PASSWORD, "username": username},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _auth(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


def _assert_error(resp, status_code, code):
    assert resp.status_code == status_code, resp.text
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["request_id"]
    return body["error"]


class TestEnvelopeModels:
    """Tests for the envelope and error body models."""

    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id

    @pytest.mark.parametrize(
        "status_code,code",
        [(400, "validation_error"), (401, "unauthorized"), (409, "conflict"), (418, "server_error")],
    )
    def test_status_code_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code


class TestRegisterRequest:
    """Tests for registration input validation."""

    def test_email_normalized(self):
        req = RegisterRequest(email="  Ada\u200b@Example.ORG ", password=PASSWORD)
        assert req.email == "ada@example.org"

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a b@example.org", "@example.org"])
    def test_bad_email(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(email=email, password=PASSWORD)

    def test_short_password(self):
        with pytest.raises(ValidationError):
            RegisterRequest(email="ada@example.org", password="short")

    def test_bad_username(self):
        with pytest.raises(ValidationError):
            RegisterRequest(email="ada@example.org", password=PASSWORD, username="ada lovelace")


class TestAuthEndpoints:
    """Tests for register, login, refresh, logout and me."""

    def test_register_and_me(self, client):
        data = _register(client)
        assert data["token_type"] == "bearer"
        assert data["is_new_user"] is True

        resp = client.get("/v1/auth/me", headers=_auth(data))
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "ada@example.org"

    def test_duplicate_register_conflicts(self, client):
        _register(client)
        resp = client.post(
            "/v1/auth/register", json={"email": "ada@example.org", "password": PASSWORD}
        )
        _assert_error(resp, 409, "conflict")

    def test_invalid_body_is_validation_error(self, client):
        resp = client.post("/v1/auth/register", json={"email": "ada@example.org"})
        error = _assert_error(resp, 400, "validation_error")
        assert error["details"]["errors"]

    def test_login_failures_look_identical(self, client):
        _register(client)
        wrong = client.post("/v1/auth/login", json={"identifier": "ada", "password": "wrong-pass"})
        unknown = client.post(
            "/v1/auth/login", json={"identifier": "ghost", "password": PASSWORD}
        )
        assert _assert_error(wrong, 401, "unauthorized")["message"] == "invalid credentials"
        assert _assert_error(unknown, 401, "unauthorized")["message"] == "invalid credentials"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer not-a-token"}, {"Authorization": "Token abc"}],
    )
    def test_protected_routes_reject_uniformly(self, client, headers):
        error = _assert_error(client.get("/v1/auth/me", headers=headers), 401, "unauthorized")
        assert error["message"] == "invalid credentials"

    def test_refresh_rotation_over_http(self, client):
        data = _register(client)
        resp = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert resp.status_code == 200
        rotated = resp.json()["data"]
        assert rotated["session_id"] == data["session_id"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        _assert_error(replay, 401, "unauthorized")
        assert client.get("/v1/auth/me", headers=_auth(rotated)).status_code == 200

    def test_logout_revokes_access_token(self, client):
        data = _register(client)
        resp = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=_auth(data),
        )
        assert resp.json()["data"] == {"logged_out": True}
        _assert_error(client.get("/v1/auth/me", headers=_auth(data)), 401, "unauthorized")


class TestSessionEndpoints:
    """Tests for session listing and revocation."""

    def test_list_marks_current_session(self, client):
        data = _register(client)
        client.post("/v1/auth/login", json={"identifier": "ada", "password": PASSWORD})

        sessions = client.get("/v1/auth/sessions", headers=_auth(data)).json()["data"]
        assert len(sessions) == 2
        assert [s["current"] for s in sessions].count(True) == 1

        stats = client.get("/v1/auth/sessions/stats", headers=_auth(data)).json()["data"]
        assert stats["total"] == 2

    def test_revoke_other_sessions(self, client):
        data = _register(client)
        other = client.post(
            "/v1/auth/login", json={"identifier": "ada", "password": PASSWORD}
        ).json()["data"]

        resp = client.delete("/v1/auth/sessions", headers=_auth(data))
        assert resp.json()["data"] == {"revoked": 1}
        assert client.get("/v1/auth/me", headers=_auth(data)).status_code == 200
        _assert_error(client.get("/v1/auth/me", headers=_auth(other)), 401, "unauthorized")

    def test_cannot_revoke_foreign_session(self, client):
        ada = _register(client)
        bob = _register(client, email="bob@example.org", username="bob")
        resp = client.delete(f"/v1/auth/sessions/{bob['session_id']}", headers=_auth(ada))
        _assert_error(resp, 404, "not_found")


class TestSecondFactorEndpoints:
    """Tests for the 2FA endpoints."""

    def test_setup_enable_then_login_requires_code(self, client):
        data = _register(client)
        setup = client.post("/v1/auth/2fa/setup", json={}, headers=_auth(data)).json()["data"]
        assert setup["qr_payload"].startswith("otpauth://totp/")

        code = get_runtime().auth.totp.current_code(data["user_id"])
        resp = client.post("/v1/auth/2fa/enable", json={"code": code}, headers=_auth(data))
        assert resp.json()["data"] == {"enabled": True}

        login = client.post("/v1/auth/login", json={"identifier": "ada", "password": PASSWORD})
        error = _assert_error(login, 401, "mfa_failed")
        assert error["details"] == {"mfa_required": True}

    def test_enable_with_bad_code(self, client):
        data = _register(client)
        client.post("/v1/auth/2fa/setup", json={}, headers=_auth(data))
        code = get_runtime().auth.totp.current_code(data["user_id"])
        wrong = str((int(code) + 1) % 1_000_000).zfill(6)
        resp = client.post("/v1/auth/2fa/enable", json={"code": wrong}, headers=_auth(data))
        _assert_error(resp, 401, "mfa_failed")

    def test_status(self, client):
        data = _register(client)
        status = client.get("/v1/auth/2fa/status", headers=_auth(data)).json()["data"]
        assert status == {"enabled": False, "has_secret": False, "backup_codes_remaining": 0}


class TestPasskeyEndpoints:
    """Tests for the passkey endpoints."""

    def test_register_login_and_replay(self, client):
        data = _register(client)
        challenge = client.post(
            "/v1/auth/passkeys/register/challenge", headers=_auth(data)
        ).json()["data"]["challenge"]
        resp = client.post(
            "/v1/auth/passkeys/register",
            json={"challenge": challenge, "credential_id": "cred-1", "public_key": "pk-1"},
            headers=_auth(data),
        )
        assert resp.status_code == 201

        def _login(counter):
            login_challenge = client.post("/v1/auth/passkeys/login/challenge").json()["data"]
            return client.post(
                "/v1/auth/passkeys/login",
                json={
                    "challenge": login_challenge["challenge"],
                    "credential_id": "cred-1",
                    "counter": counter,
                },
            )

        assert _login(3).status_code == 200
        _assert_error(_login(3), 401, "replay_detected")

        listed = client.get("/v1/auth/passkeys", headers=_auth(data)).json()["data"]
        assert listed[0]["counter"] == 3

    def test_delete_unknown_passkey(self, client):
        data = _register(client)
        resp = client.delete("/v1/auth/passkeys/missing", headers=_auth(data))
        _assert_error(resp, 404, "not_found")


class TestOAuthEndpoints:
    """Tests for the OAuth endpoints."""

    @pytest.fixture
    def provider_profiles(self, monkeypatch):
        """Stand in for the provider: each authorization code maps to a profile."""
        profiles = {
            "code-octo": {"id": 42, "login": "octo"},
            "code-g1": {"id": "g-1", "email": "g@example.org"},
            "code-attacker": {"id": "attacker-1", "email": "attacker@example.org"},
        }

        async def exchange_code(provider, code, redirect_uri=None):
            return dict(profiles[code])

        monkeypatch.setattr(get_runtime().auth.oauth, "exchange_code", exchange_code)
        return profiles

    def _init(self, client, provider):
        return client.post(f"/v1/auth/oauth/{provider}/init", json={}).json()["data"]

    def test_init_and_callback(self, client, provider_profiles):
        init = self._init(client, "github")
        assert init["provider"] == "github"

        resp = client.post(
            "/v1/auth/oauth/github/callback", json={"state": init["state"], "code": "code-octo"}
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["is_new_user"] is True

        accounts = client.get("/v1/auth/oauth/accounts", headers=_auth(data)).json()["data"]
        assert [a["provider"] for a in accounts] == ["github"]

    def test_client_supplied_profile_requires_code(self, client):
        _register(client, email="victim@example.org", username="victim")
        init = self._init(client, "google")
        forged = {"id": "attacker-1", "email": "victim@example.org"}

        resp = client.post(
            "/v1/auth/oauth/google/callback", json={"state": init["state"], "profile": forged}
        )
        _assert_error(resp, 400, "validation_error")
        assert get_runtime().auth.store.get_oauth_account("google", "attacker-1") is None

    def test_client_supplied_profile_is_ignored(self, client, provider_profiles):
        victim = _register(client, email="victim@example.org", username="victim")
        init = self._init(client, "google")
        forged = {"id": "attacker-1", "email": "victim@example.org"}

        resp = client.post(
            "/v1/auth/oauth/google/callback",
            json={"state": init["state"], "code": "code-attacker", "profile": forged},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user_id"] != victim["user_id"]
        assert data["is_new_user"] is True

    def test_replayed_state(self, client, provider_profiles):
        init = self._init(client, "google")
        body = {"state": init["state"], "code": "code-g1"}
        client.post("/v1/auth/oauth/google/callback", json=body)
        resp = client.post("/v1/auth/oauth/google/callback", json=body)
        _assert_error(resp, 400, "invalid_oauth_state")

    def test_unknown_provider(self, client):
        resp = client.post("/v1/auth/oauth/myspace/init", json={})
        _assert_error(resp, 400, "validation_error")

    def test_link_to_signed_in_user(self, client, provider_profiles):
        data = _register(client)
        init = self._init(client, "github")

        resp = client.post(
            "/v1/auth/oauth/github/link",
            json={"state": init["state"], "code": "code-octo"},
            headers=_auth(data),
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["provider_id"] == "42"

        accounts = client.get("/v1/auth/oauth/accounts", headers=_auth(data)).json()["data"]
        assert [a["provider_id"] for a in accounts] == ["42"]

    def test_link_requires_authentication(self, client, provider_profiles):
        init = self._init(client, "github")
        resp = client.post(
            "/v1/auth/oauth/github/link", json={"state": init["state"], "code": "code-octo"}
        )
        _assert_error(resp, 401, "unauthorized")

    def test_link_identity_owned_by_another_user(self, client, provider_profiles):
        init = self._init(client, "github")
        client.post(
            "/v1/auth/oauth/github/callback", json={"state": init["state"], "code": "code-octo"}
        )
        data = _register(client)

        init = self._init(client, "github")
        resp = client.post(
            "/v1/auth/oauth/github/link",
            json={"state": init["state"], "code": "code-octo"},
            headers=_auth(data),
        )
        _assert_error(resp, 409, "conflict")


class TestInfrastructure:
    """Tests for health, headers and correlation ids."""

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy"}
        assert body["checks"]["redis"] == {"status": "disabled"}

    def test_security_headers(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_request_id_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
