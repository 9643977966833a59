"""HTTP-level tests: envelopes, status codes, cookies and per-IP rate limits."""

import functools

import pytest
from fastapi.testclient import TestClient

from authflow.app import app
from authflow.service.runtime import set_runtime

from conftest import TEST_PASSWORD


@pytest.fixture
def client(runtime):
    set_runtime(runtime)
    with TestClient(app) as test_client:
        yield test_client


def _drain(client, runtime):
    client.portal.call(runtime.background.drain)


def _register(client, register_user, **kwargs):
    return client.portal.call(functools.partial(register_user, **kwargs))


class TestSignupEndpoints:
    def test_full_signup_sets_refresh_cookie(self, client, runtime, notifier):
        response = client.post("/v1/auth/signup/send-otp", json={"email": "Dana@Example.com"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["expiresIn"] == 300

        _drain(client, runtime)
        otp = notifier.last("signup-otp")["variables"]["otp"]
        response = client.post(
            "/v1/auth/signup/verify-otp", json={"email": "dana@example.com", "otp": otp}
        )
        session_token = response.json()["data"]["sessionToken"]

        response = client.post(
            "/v1/auth/signup/complete",
            json={
                "email": "dana@example.com",
                "password": TEST_PASSWORD,
                "fullName": "Dana Pham",
                "gender": "female",
                "dateOfBirth": "1992-07-04",
                "sessionToken": session_token,
            },
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "dana@example.com"
        assert "accessToken" in data["tokens"]
        assert "refreshToken" not in data["tokens"]

        set_cookie = response.headers["set-cookie"].lower()
        assert set_cookie.startswith("refresh_token=")
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie

    def test_cooldown_error_envelope(self, client):
        client.post("/v1/auth/signup/send-otp", json={"email": "dana@example.com"})
        response = client.post("/v1/auth/signup/send-otp", json={"email": "dana@example.com"})
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "otp_cooldown"
        assert body["error"]["details"] == {"retryAfter": 60}
        assert body["message"] == body["error"]["message"]
        assert response.headers["retry-after"] == "60"

    def test_registered_email_is_409(self, client, register_user):
        _register(client, register_user, email="dana@example.com")
        response = client.post("/v1/auth/signup/send-otp", json={"email": "dana@example.com"})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "email_registered"

    def test_invalid_body_is_400_with_field_details(self, client):
        response = client.post("/v1/auth/signup/send-otp", json={"email": "not-an-email"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"][-1] == "email"

    def test_weak_password_is_rejected_before_any_lookup(self, client):
        response = client.post(
            "/v1/auth/signup/complete",
            json={
                "email": "dana@example.com",
                "password": "letters-only",
                "fullName": "Dana Pham",
                "gender": "female",
                "dateOfBirth": "1992-07-04",
                "sessionToken": "x",
            },
        )
        assert response.status_code == 400

    def test_check_email(self, client, register_user):
        _register(client, register_user, email="taken@example.com")
        assert client.get("/v1/auth/signup/check-email/taken@example.com").json()["data"] == {
            "available": False
        }
        assert client.get("/v1/auth/signup/check-email/free@example.com").json()["data"] == {
            "available": True
        }
        assert client.get("/v1/auth/signup/check-email/nope").status_code == 400

    def test_check_email_is_rate_limited_per_ip(self, client):
        for _ in range(10):
            assert client.get("/v1/auth/signup/check-email/free@example.com").status_code == 200
        response = client.get("/v1/auth/signup/check-email/free@example.com")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["retry-after"]) >= 1

    def test_spoofed_forwarded_for_does_not_reset_the_limit(self, client):
        statuses = [
            client.get(
                "/v1/auth/signup/check-email/free@example.com",
                headers={"X-Forwarded-For": f"198.51.100.{i}"},
            ).status_code
            for i in range(11)
        ]
        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429


class TestLoginEndpoints:
    def test_login_refresh_logout(self, client, register_user, clock):
        _register(client, register_user)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": TEST_PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert "refreshToken" not in data
        assert data["user"]["email"] == "alice@example.com"
        first_cookie = client.cookies.get("refresh_token")
        assert first_cookie

        clock.advance(5)
        response = client.post("/v1/auth/token/refresh")
        assert response.status_code == 200
        assert "accessToken" in response.json()["data"]
        assert client.cookies.get("refresh_token") != first_cookie

        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None
        assert client.post("/v1/auth/token/refresh").status_code == 401

    def test_refresh_token_in_body_is_accepted(self, client, runtime, register_user, ctx):
        _register(client, register_user)
        result = client.portal.call(
            runtime.login.login, "alice@example.com", TEST_PASSWORD, ctx
        )
        response = client.post(
            "/v1/auth/token/refresh", json={"refreshToken": result.data["refreshToken"]}
        )
        assert response.status_code == 200

    def test_garbage_refresh_token_is_403(self, client):
        response = client.post("/v1/auth/token/refresh", json={"refreshToken": "a.b.c"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_token"

    def test_forged_non_ascii_refresh_token_is_403(self, client, runtime, register_user, ctx):
        _register(client, register_user)
        result = client.portal.call(
            runtime.login.login, "alice@example.com", TEST_PASSWORD, ctx
        )
        header_b64, payload_b64, _ = result.data["refreshToken"].split(".")
        forged = f"{header_b64}.{payload_b64}.\u00e9\u00e9"
        response = client.post("/v1/auth/token/refresh", json={"refreshToken": forged})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_token"
        assert client.post("/v1/auth/logout", json={"refreshToken": forged}).status_code == 200

    def test_password_whitespace_is_significant(self, client, register_user):
        _register(client, register_user, password=" spaced Pass 123 ")
        ok = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": " spaced Pass 123 "}
        )
        assert ok.status_code == 200
        trimmed = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "spaced Pass 123"}
        )
        assert trimmed.status_code == 401

    def test_bad_credentials_are_401(self, client, register_user):
        _register(client, register_user)
        response = client.post(
            "/v1/auth/login", json={"email": "alice@example.com", "password": "nope-nope-1"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_locked_account_in_vietnamese(self, client, register_user):
        _register(client, register_user)
        for _ in range(5):
            client.post(
                "/v1/auth/login", json={"email": "alice@example.com", "password": "nope-nope-1"}
            )
        response = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": TEST_PASSWORD},
            headers={"Accept-Language": "vi-VN,vi;q=0.9"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "account_locked"
        assert "giây" in body["message"]
        assert response.headers["retry-after"] == "30"

    def test_magic_link_round_trip(self, client, runtime, register_user, notifier):
        _register(client, register_user)
        assert client.post(
            "/v1/auth/login/magic-link/send", json={"email": "alice@example.com"}
        ).status_code == 200
        _drain(client, runtime)
        link = notifier.last("magic-link")["variables"]["link"]
        token = link.split("token=", 1)[1].split("&", 1)[0]
        response = client.post(
            "/v1/auth/login/magic-link/verify", json={"email": "alice@example.com", "token": token}
        )
        assert response.status_code == 200
        assert client.cookies.get("refresh_token")

    def test_unlock_round_trip(self, client, runtime, register_user, notifier):
        _register(client, register_user)
        for _ in range(5):
            client.post(
                "/v1/auth/login", json={"email": "alice@example.com", "password": "nope-nope-1"}
            )
        assert client.post(
            "/v1/auth/unlock/request", json={"email": "alice@example.com"}
        ).status_code == 200
        _drain(client, runtime)
        temp_password = notifier.last("unlock-temp-password")["variables"]["temp_password"]
        response = client.post(
            "/v1/auth/unlock/verify",
            json={"email": "alice@example.com", "tempPassword": temp_password},
        )
        assert response.status_code == 200
        assert "refreshToken" not in response.json()["data"]


class TestAppSurface:
    def test_security_and_request_id_headers(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert "no-store" in response.headers["cache-control"]

    def test_healthz_with_memory_stores(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["type"] == "memory"

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/v1/auth/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
