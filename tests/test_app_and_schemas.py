import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from binpickup import app as app_module
from binpickup.api import schemas
from binpickup.service.runtime import get_runtime


def test_security_headers_and_health():
    client = TestClient(app_module.app)
    response = client.get(
        "/health", headers={"Origin": "http://localhost:3000", "X-Request-ID": "req-123"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["data"]["checks"]["store"]["status"] == "healthy"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_health_reports_store_outage(monkeypatch):
    async def broken():
        raise ConnectionError("store down")

    monkeypatch.setattr(get_runtime().store, "verify_connection", broken)
    client = TestClient(app_module.app)

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["data"]["checks"]["store"]["status"] == "unhealthy"


def test_dev_origins_have_no_wildcard():
    assert "http://localhost" in app_module.DEV_ORIGINS
    assert "http://127.0.0.1:5173" in app_module.DEV_ORIGINS
    assert "*" not in app_module.DEV_ORIGINS


def test_request_id_is_generated_when_absent():
    client = TestClient(app_module.app)

    first = client.get("/health").headers["X-Request-ID"]
    second = client.get("/health").headers["X-Request-ID"]

    assert first and second and first != second


def test_routes_are_mounted_under_prefix():
    paths = {route.path for route in app_module.app.routes}

    assert "/api/auth/login" in paths
    assert "/api/pickups/complete/{pickup_id}" in paths
    assert "/auth/login" not in paths


class TestRequestSchemas:
    def test_register_accepts_camel_case(self):
        body = schemas.RegisterRequest(email=" Person@Example.com ", password="Abcdef1!")

        assert body.email == "person@example.com"
        assert body.name is None

    @pytest.mark.parametrize(
        "password",
        ["Short1!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigits!!", "NoSpecial123", "A1!" + "a" * 126],
    )
    def test_password_policy(self, password):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password=password)

    def test_name_must_be_letters(self):
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password="Abcdef1!", name="R2D2")

        body = schemas.RegisterRequest(email="a@example.com", password="Abcdef1!", name="Anne-Marie O'Neil")
        assert body.name == "Anne-Marie O'Neil"

    def test_invisible_characters_are_stripped(self):
        body = schemas.RegisterRequest(email="ad\u200bmin@example.com", password="Abcdef1!")

        assert body.email == "admin@example.com"

    @pytest.mark.parametrize("email", ["plain", "@example.com", "a@localhost", "a@-bad-.com", "a b@example.com"])
    def test_invalid_emails(self, email):
        with pytest.raises(ValidationError):
            schemas.LoginRequest(email=email, password="x")

    def test_login_aliases(self):
        body = schemas.LoginRequest.model_validate(
            {"email": "a@example.com", "password": "x", "rememberMe": True}
        )
        assert body.remember_me is True

    def test_pickup_update_rejects_unknown_status(self):
        with pytest.raises(ValidationError):
            schemas.PickupUpdateRequest(status="lost")


class TestResponseSchemas:
    def test_user_response_never_exposes_credentials(self):
        from binpickup.storage.models import Account

        account = Account.new(email="u@example.com", name="U", password_hash="$argon2id$secret")
        rendered = schemas.UserResponse.from_account(account).render()

        assert "passwordHash" not in rendered
        assert "refreshTokens" not in rendered
        assert rendered["isActive"] is True
        assert rendered["createdAt"]
