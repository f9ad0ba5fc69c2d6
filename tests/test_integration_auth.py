"""Integration tests for the customer authentication flow.

Covers signup, signin, token refresh, logout, password change, the
forgot/reset password flow and email verification over HTTP.
"""

import pytest
from fastapi.testclient import TestClient

from storefront_auth.app import create_app
from storefront_auth.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def outbox(monkeypatch):
    """Capture tokens the service would have mailed out."""
    runtime = get_runtime()
    sent = {"reset": [], "verify": []}

    def capture(kind):
        def _send(to_email, token):
            sent[kind].append((to_email, token))
            return True

        return _send

    monkeypatch.setattr(runtime.email, "send_password_reset", capture("reset"))
    monkeypatch.setattr(runtime.email, "send_email_verification", capture("verify"))
    return sent


def _signup(client, email="a@b.com", password="Abc12345"):
    return client.post(
        "/v1/auth/signup",
        json={"email": email, "password": password, "firstName": "A", "lastName": "B"},
    )


class TestSignupAndSignin:
    def test_signup_then_signin_returns_same_account(self, client, outbox):
        created = _signup(client)
        assert created.status_code == 201
        body = created.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["email"] == "a@b.com"
        assert user["role"] == "customer"
        assert user["first_name"] == "A"
        assert "permissions" not in user
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["expires_in"] == 3600
        assert outbox["verify"] and outbox["verify"][0][0] == "a@b.com"

        signed_in = client.post("/v1/auth/signin", json={"email": "a@b.com", "password": "Abc12345"})
        assert signed_in.status_code == 200
        assert signed_in.json()["data"]["user"]["id"] == user["id"]
        assert signed_in.json()["data"]["message"] == "Login successful"

    def test_signup_sets_session_cookies(self, client):
        response = _signup(client)
        assert response.cookies.get("access_token")
        assert response.cookies.get("refresh_token")
        assert "httponly" in response.headers.get("set-cookie", "").lower()

    def test_wrong_password_is_generic_401(self, client):
        _signup(client)
        response = client.post("/v1/auth/signin", json={"email": "a@b.com", "password": "Abc12346"})
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "Invalid email or password"

        unknown = client.post("/v1/auth/signin", json={"email": "who@b.com", "password": "Abc12345"})
        assert unknown.json()["error"]["message"] == "Invalid email or password"

    def test_duplicate_signup_conflicts(self, client):
        _signup(client)
        response = _signup(client, email="A@B.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_is_rejected(self, client):
        response = _signup(client, password="abcdefgh")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Password must contain at least one uppercase letter"

    def test_snake_case_fields_are_accepted(self, client):
        response = client.post(
            "/v1/auth/signup",
            json={"email": "s@b.com", "password": "Abc12345", "first_name": "S", "last_name": "C"},
        )
        assert response.status_code == 201

    def test_admin_must_use_admin_portal(self, client):
        response = client.post(
            "/v1/auth/signin", json={"email": "root@storefront.test", "password": "RootPass123"}
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Admin accounts must use the admin login portal"


class TestSession:
    def test_me_with_bearer_header(self, client):
        token = _signup(client).json()["data"]["access_token"]
        fresh = TestClient(create_app())
        response = fresh.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "a@b.com"

    def test_me_with_cookie(self, client):
        _signup(client)
        response = client.get("/v1/auth/me")
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "a@b.com"

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authorization token required"

    def test_refresh_token_cannot_be_used_as_access_token(self, client):
        refresh = _signup(client).json()["data"]["refresh_token"]
        fresh = TestClient(create_app())
        response = fresh.get("/v1/auth/me", headers={"Authorization": f"Bearer {refresh}"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"

    def test_refresh_with_cookie_rotates_tokens(self, client):
        original = _signup(client).json()["data"]
        response = client.post("/v1/auth/refresh")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refresh_token"] != original["refresh_token"]
        assert data["user"]["id"] == original["user"]["id"]

    def test_refresh_with_body_token(self, client):
        refresh = _signup(client).json()["data"]["refresh_token"]
        fresh = TestClient(create_app())
        response = fresh.post("/v1/auth/refresh", json={"refreshToken": refresh})
        assert response.status_code == 200

    def test_refresh_rejects_access_token(self, client):
        access = _signup(client).json()["data"]["access_token"]
        fresh = TestClient(create_app())
        response = fresh.post("/v1/auth/refresh", json={"refresh_token": access})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired refresh token"

    @pytest.mark.parametrize("path", ["/v1/auth/me", "/v1/admin/auth/me"])
    @pytest.mark.parametrize(
        "header",
        [
            "Bearer x.y.éé".encode("utf-8"),
            b"Bearer " + b"a" * 5000,
            b"Bearer W1tbW1tb.e30.sig",
        ],
    )
    def test_hostile_bearer_tokens_get_401_envelope(self, client, path, header):
        response = client.get(path, headers={"Authorization": header})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    @pytest.mark.parametrize("token", ["x.y.éé", "éW1tb.e30.sig", "W1tbW1tb.e30.sig"])
    def test_refresh_rejects_hostile_tokens(self, client, token):
        response = client.post("/v1/auth/refresh", json={"refresh_token": token})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_non_bearer_header_is_not_rescued_by_cookie(self, client):
        _signup(client)
        response = client.get("/v1/auth/me", headers={"Authorization": "Basic YTpi"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"

    def test_logout_clears_cookies(self, client):
        _signup(client)
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Logged out successfully"
        assert client.get("/v1/auth/me").status_code == 401

    def test_change_password(self, client):
        _signup(client)
        wrong = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": "Nope12345", "newPassword": "Better123"},
        )
        assert wrong.status_code == 401
        ok = client.post(
            "/v1/auth/change-password",
            json={"currentPassword": "Abc12345", "newPassword": "Better123"},
        )
        assert ok.status_code == 200
        signin = client.post("/v1/auth/signin", json={"email": "a@b.com", "password": "Better123"})
        assert signin.status_code == 200


class TestPasswordReset:
    def test_forgot_password_response_does_not_reveal_accounts(self, client, outbox):
        _signup(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "a@b.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@b.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert [to for to, _ in outbox["reset"]] == ["a@b.com"]

    def test_reset_flow(self, client, outbox):
        _signup(client)
        client.post("/v1/auth/forgot-password", json={"email": "a@b.com"})
        token = outbox["reset"][-1][1]

        check = client.get("/v1/auth/reset-password", params={"token": token})
        assert check.status_code == 200
        assert check.json()["data"]["email"] == "a@b.com"

        reset = client.post(
            "/v1/auth/reset-password", json={"token": token, "newPassword": "Changed123"}
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["message"] == "Password reset successfully"

        reused = client.post(
            "/v1/auth/reset-password", json={"token": token, "newPassword": "Another123"}
        )
        assert reused.status_code == 404
        assert reused.json()["error"]["message"] == "Invalid or expired reset token"

        old = client.post("/v1/auth/signin", json={"email": "a@b.com", "password": "Abc12345"})
        assert old.status_code == 401
        new = client.post("/v1/auth/signin", json={"email": "a@b.com", "password": "Changed123"})
        assert new.status_code == 200

    def test_verify_password_reset_accepts_code(self, client, outbox):
        _signup(client)
        client.post("/v1/auth/forgot-password", json={"email": "a@b.com"})
        token = outbox["reset"][-1][1]
        response = client.post(
            "/v1/auth/verify-password-reset", json={"code": token, "new_password": "Changed123"}
        )
        assert response.status_code == 200

    def test_unknown_reset_token(self, client):
        response = client.get("/v1/auth/reset-password", params={"token": "deadbeef"})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestEmailVerification:
    def test_verify_email(self, client, outbox):
        user = _signup(client).json()["data"]["user"]
        assert user["is_email_verified"] is False
        token = outbox["verify"][-1][1]

        response = client.post("/v1/auth/verify-email", json={"token": token})
        assert response.status_code == 200
        assert client.get("/v1/auth/me").json()["data"]["is_email_verified"] is True

        again = client.post("/v1/auth/verify-email", json={"token": token})
        assert again.status_code == 404

    def test_resend_verification(self, client, outbox):
        _signup(client)
        response = client.post("/v1/auth/resend-verification", json={"email": "a@b.com"})
        assert response.status_code == 200
        assert len(outbox["verify"]) == 2
        # The first link was superseded by the resend
        stale = client.post("/v1/auth/verify-email", json={"token": outbox["verify"][0][1]})
        assert stale.status_code == 404
