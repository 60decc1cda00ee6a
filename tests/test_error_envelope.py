"""Tests for the response envelope and exception-to-status mapping.

Every response, success or error, has the shape:
{
    "status": "success" | "error",
    "message": "<human_readable>",
    "timestamp": "<iso8601>",
    "data": <optional>,
    "errors": [{"field": ..., "message": ...}]   # validation failures only
}
"""

from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from binpickup.api.error_handling import GENERIC_AUTH_MESSAGE, register_exception_handlers
from binpickup.api.schemas import Envelope, FieldProblem, ok
from binpickup.service.errors import (
    AccountLockedError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    TokenRevokedError,
)
from binpickup.storage.errors import ConstraintViolation, StoreUnavailable


class TestEnvelope:
    def test_ok_omits_empty_fields(self):
        body = ok("done")

        assert body["status"] == "success"
        assert body["message"] == "done"
        assert "data" not in body
        assert "errors" not in body
        datetime.fromisoformat(body["timestamp"])

    def test_ok_carries_data(self):
        assert ok("done", {"id": "1"})["data"] == {"id": "1"}

    def test_error_envelope_with_field_problems(self):
        envelope = Envelope(
            status="error",
            message="Validation failed",
            errors=[FieldProblem(field="email", message="invalid")],
        )

        assert envelope.render()["errors"] == [{"field": "email", "message": "invalid"}]

    def test_status_is_restricted(self):
        with pytest.raises(ValueError):
            Envelope(status="ok", message="nope")


class _Body(BaseModel):
    count: int


def _app_raising(exc: Exception) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/validate")
    async def validate(body: _Body):
        return ok("fine")

    return app


@pytest.mark.parametrize(
    "exc, status",
    [
        (ConflictError("User with this email already exists"), 400),
        (ForbiddenError("Insufficient permissions"), 403),
        (NotFoundError("Pickup not found"), 404),
        (RateLimitedError("Too many requests"), 429),
        (ConstraintViolation("email already exists", {"field": "email"}), 400),
        (StoreUnavailable(), 503),
    ],
)
def test_service_errors_map_to_status(exc, status):
    client = TestClient(_app_raising(exc))

    response = client.get("/boom")

    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["message"]


@pytest.mark.parametrize("exc", [TokenExpiredError("token expired"), TokenRevokedError("token revoked")])
def test_auth_errors_are_generic(exc):
    client = TestClient(_app_raising(exc))

    response = client.get("/boom")

    assert response.status_code == 401
    assert response.json()["message"] == GENERIC_AUTH_MESSAGE
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_lockout_reports_deadline():
    lock_until = datetime(2030, 1, 1, tzinfo=timezone.utc)
    client = TestClient(_app_raising(AccountLockedError(lock_until)))

    response = client.get("/boom")

    assert response.status_code == 423
    assert response.json()["data"] == {"lockUntil": lock_until.isoformat()}


def test_store_outage_hides_details():
    client = TestClient(_app_raising(StoreUnavailable("pool timeout on db-1:5432")))

    response = client.get("/boom")

    assert response.status_code == 503
    assert "db-1" not in response.text


def test_unhandled_error_is_500():
    client = TestClient(_app_raising(RuntimeError("secret detail")), raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json()["message"] == "Internal server error"
    assert "secret detail" not in response.text


def test_request_validation_is_400_with_fields():
    client = TestClient(_app_raising(RuntimeError()))

    response = client.post("/validate", json={"count": "many"})

    assert response.status_code == 400
    body = response.json()
    assert body["message"] == "Validation failed"
    assert body["errors"][0]["field"] == "count"


def test_unknown_route_uses_envelope():
    client = TestClient(_app_raising(RuntimeError()))

    response = client.get("/missing")

    assert response.status_code == 404
    assert response.json()["status"] == "error"
