"""Integration tests for the administrative surface.

Covers admin signin, administrator management, the per-route permission
matrix and customer account management over HTTP.
"""

import pytest
from fastapi.testclient import TestClient

from storefront_auth.app import create_app

ROOT_EMAIL = "root@storefront.test"
ROOT_PASSWORD = "RootPass123"


@pytest.fixture
def client():
    return TestClient(create_app())


def _admin_headers(client, email, password):
    response = client.post("/v1/admin/auth/signin", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture
def root_headers(client):
    return _admin_headers(client, ROOT_EMAIL, ROOT_PASSWORD)


def _create_admin(client, headers, email="ops@example.com", role="admin", **extra):
    payload = {
        "email": email,
        "password": "Admin1234",
        "firstName": "Op",
        "lastName": "S",
        "role": role,
        **extra,
    }
    return client.post("/v1/admin/admins", json=payload, headers=headers)


def _signup_customer(client, email="shopper@example.com"):
    response = client.post(
        "/v1/auth/signup",
        json={"email": email, "password": "Abc12345", "firstName": "Sho", "lastName": "Pper"},
    )
    assert response.status_code == 201
    return response.json()["data"]["user"]


class TestAdminSignin:
    def test_super_admin_signin(self, client):
        response = client.post(
            "/v1/admin/auth/signin", json={"email": ROOT_EMAIL, "password": ROOT_PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Super admin login successful"
        assert data["admin"]["id"] == "super-admin"
        assert data["admin"]["is_super_admin"] is True
        assert data["admin"]["permissions"]["admins"]["delete"] is True

    def test_wrong_password(self, client):
        response = client.post(
            "/v1/admin/auth/signin", json={"email": ROOT_EMAIL, "password": "Wrong1234"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid email or password"

    def test_customer_cannot_use_admin_portal(self, client):
        _signup_customer(client)
        response = client.post(
            "/v1/admin/auth/signin", json={"email": "shopper@example.com", "password": "Abc12345"}
        )
        assert response.status_code == 401

    def test_customer_token_is_forbidden_on_admin_routes(self, client):
        _signup_customer(client)
        response = client.get("/v1/admin/auth/me")
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Admin access required"

    def test_admin_me(self, client, root_headers):
        response = client.get("/v1/admin/auth/me", headers=root_headers)
        assert response.status_code == 200
        assert response.json()["data"]["email"] == ROOT_EMAIL


class TestAdminManagement:
    def test_super_admin_creates_admin_with_default_matrix(self, client, root_headers):
        response = _create_admin(client, root_headers)
        assert response.status_code == 201
        admin = response.json()["data"]["admin"]
        assert admin["role"] == "admin"
        assert admin["permissions"]["products"]["delete"] is True
        assert admin["permissions"]["admins"]["view"] is False

        headers = _admin_headers(client, "ops@example.com", "Admin1234")
        me = client.get("/v1/admin/auth/me", headers=headers).json()["data"]
        assert me["id"] == admin["id"]
        assert me["is_super_admin"] is False

    def test_admin_cannot_open_admin_management(self, client, root_headers):
        _create_admin(client, root_headers)
        headers = _admin_headers(client, "ops@example.com", "Admin1234")
        response = client.get("/v1/admin/admins", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["details"] == {"required": "admins.view"}
        assert _create_admin(client, headers, email="x@example.com").status_code == 403

    def test_super_admin_lists_admins(self, client, root_headers):
        _create_admin(client, root_headers)
        _create_admin(client, root_headers, email="staff@example.com", role="staff")
        _signup_customer(client)
        response = client.get("/v1/admin/admins", headers=root_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert {item["email"] for item in data["items"]} == {"ops@example.com", "staff@example.com"}

    def test_duplicate_and_invalid_admins(self, client, root_headers):
        _create_admin(client, root_headers)
        duplicate = _create_admin(client, root_headers)
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["message"] == "Admin with this email already exists"
        assert _create_admin(client, root_headers, email="y@example.com", role="customer").status_code == 400
        assert _create_admin(client, root_headers, email="z@example.com", role="owner").status_code == 400

    def test_route_access_follows_permissions(self, client, root_headers):
        admin_id = _create_admin(client, root_headers, email="staff@example.com", role="staff").json()["data"]["admin"]["id"]
        headers = _admin_headers(client, "staff@example.com", "Admin1234")

        def allowed(path):
            response = client.get("/v1/admin/access", params={"path": path}, headers=headers)
            assert response.status_code == 200
            return response.json()["data"]["allowed"]

        assert allowed("/admin/orders/123")
        assert not allowed("/admin/users")
        assert not allowed("/admin/unknown-area")

        update = client.put(
            f"/v1/admin/admins/{admin_id}/permissions",
            json={"permissions": {"users": {"view": True}}},
            headers=root_headers,
        )
        assert update.status_code == 200
        assert update.json()["data"]["admin"]["permissions"]["orders"]["view"] is False
        # Same token, new matrix
        assert allowed("/admin/users")
        assert not allowed("/admin/orders")

    def test_regular_admin_cannot_be_granted_admin_management(self, client, root_headers):
        admin_id = _create_admin(client, root_headers).json()["data"]["admin"]["id"]
        response = client.put(
            f"/v1/admin/admins/{admin_id}/permissions",
            json={"permissions": {"admins": {"view": True}}},
            headers=root_headers,
        )
        assert response.status_code == 400

    def test_reset_admin_password(self, client, root_headers):
        admin_id = _create_admin(client, root_headers).json()["data"]["admin"]["id"]
        response = client.post(
            f"/v1/admin/admins/{admin_id}/reset-password",
            json={"newPassword": "Fresh1234"},
            headers=root_headers,
        )
        assert response.status_code == 200
        _admin_headers(client, "ops@example.com", "Fresh1234")

    def test_delete_admin(self, client, root_headers):
        admin_id = _create_admin(client, root_headers).json()["data"]["admin"]["id"]
        customer = _signup_customer(client)

        not_admin = client.delete(f"/v1/admin/admins/{customer['id']}", headers=root_headers)
        assert not_admin.status_code == 404
        assert not_admin.json()["error"]["message"] == "Admin not found"

        protected = client.delete("/v1/admin/admins/super-admin", headers=root_headers)
        assert protected.status_code == 403

        deleted = client.delete(f"/v1/admin/admins/{admin_id}", headers=root_headers)
        assert deleted.status_code == 200
        assert client.delete(f"/v1/admin/admins/{admin_id}", headers=root_headers).status_code == 404


class TestCustomerManagement:
    def test_admin_lists_and_suspends_customers(self, client, root_headers):
        _create_admin(client, root_headers)
        customer = _signup_customer(client)
        headers = _admin_headers(client, "ops@example.com", "Admin1234")

        listing = client.get("/v1/admin/users", params={"search": "shopper"}, headers=headers)
        assert listing.status_code == 200
        assert [item["id"] for item in listing.json()["data"]["items"]] == [customer["id"]]

        suspend = client.patch(
            f"/v1/admin/users/{customer['id']}/status",
            json={"status": "suspended"},
            headers=headers,
        )
        assert suspend.status_code == 200
        assert suspend.json()["data"]["user"]["status"] == "suspended"

        signin = client.post(
            "/v1/auth/signin", json={"email": "shopper@example.com", "password": "Abc12345"}
        )
        assert signin.status_code == 403

    def test_staff_cannot_view_customers(self, client, root_headers):
        _create_admin(client, root_headers, email="staff@example.com", role="staff")
        headers = _admin_headers(client, "staff@example.com", "Admin1234")
        assert client.get("/v1/admin/users", headers=headers).status_code == 403

    def test_invalid_status_is_rejected(self, client, root_headers):
        customer = _signup_customer(client)
        response = client.patch(
            f"/v1/admin/users/{customer['id']}/status",
            json={"status": "banished"},
            headers=root_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_delete_customer(self, client, root_headers):
        customer = _signup_customer(client)
        response = client.delete(f"/v1/admin/users/{customer['id']}", headers=root_headers)
        assert response.status_code == 200
        missing = client.delete(f"/v1/admin/users/{customer['id']}", headers=root_headers)
        assert missing.status_code == 404
