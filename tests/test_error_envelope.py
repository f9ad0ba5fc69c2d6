import pytest
from fastapi.testclient import TestClient

from storefront_auth.app import create_app


@pytest.fixture
def client():
    return TestClient(create_app())


def test_validation_errors_use_envelope(client):
    response = client.post("/v1/auth/signup", json={"email": "not-an-email", "password": "x"})
    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["message"] == "Please provide a valid email address"
    assert body["request_id"]


def test_validation_details_do_not_echo_input(client):
    response = client.post(
        "/v1/auth/signup",
        json={"email": "a@b.com", "password": "SuperSecret1", "firstName": ""},
    )
    assert response.status_code == 400
    assert "SuperSecret1" not in response.text
    for error in response.json()["error"]["details"]["errors"]:
        assert set(error) == {"loc", "msg", "type"}


def test_malformed_json_body(client):
    response = client.post(
        "/v1/auth/signin", content="{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_unknown_route_uses_envelope(client):
    response = client.get("/v1/does-not-exist")
    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"


def test_wrong_method_uses_envelope(client):
    response = client.get("/v1/auth/signin")
    assert response.status_code == 405
    assert response.json()["status"] == "error"


def test_request_id_is_echoed(client):
    response = client.get("/v1/auth/me", headers={"X-Request-ID": "trace-123"})
    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "trace-123"
    assert response.json()["request_id"] == "trace-123"


def test_request_id_is_generated(client):
    response = client.get("/healthz")
    assert response.headers["X-Request-ID"]


def test_path_ids_are_validated(client):
    signin = client.post(
        "/v1/admin/auth/signin",
        json={"email": "root@storefront.test", "password": "RootPass123"},
    )
    token = signin.json()["data"]["access_token"]
    response = client.delete(
        "/v1/admin/users/bad id!", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 400


def test_security_headers(client):
    response = client.get("/healthz")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "no-store" in response.headers["Cache-Control"]


def test_health_reports_components(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["filesystem"]["status"] == "healthy"
