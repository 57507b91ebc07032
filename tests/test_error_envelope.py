"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from istream.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
    service_error_response,
)
from istream.api.schemas import Envelope, ErrorBody
from istream.service import errors as service_errors
from istream.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="forbidden", message="nope")

    @pytest.mark.parametrize(
        "code",
        [
            "unauthorized",
            "not_found",
            "validation_error",
            "invalid_otp",
            "invalid_operation",
            "conflict",
            "dependency_error",
            "server_error",
        ],
    )
    def test_stable_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    def test_known_statuses(self):
        for status, code in _STATUS_TO_CODE.items():
            assert _error_code_for_status(status) == code

    def test_unknown_client_error_defaults_to_validation(self):
        assert _error_code_for_status(418) == "validation_error"

    def test_unknown_server_error_defaults_to_server_error(self):
        assert _error_code_for_status(503) == "server_error"


class TestServiceErrors:
    """Each domain error carries its status and stable code into the envelope."""

    @pytest.mark.parametrize(
        "exc_cls,status,code",
        [
            (service_errors.ValidationError, 400, "validation_error"),
            (service_errors.InvalidOtpError, 400, "invalid_otp"),
            (service_errors.InvalidOperationError, 400, "invalid_operation"),
            (service_errors.AuthenticationError, 401, "unauthorized"),
            (service_errors.NotFoundError, 404, "not_found"),
            (service_errors.ConflictError, 409, "conflict"),
            (service_errors.ServerError, 500, "server_error"),
            (service_errors.DependencyError, 502, "dependency_error"),
        ],
    )
    def test_service_error_response(self, exc_cls, status, code):
        response = service_error_response(exc_cls("boom", detail={"k": "v"}))
        body = json.loads(response.body)
        assert response.status_code == status
        assert body["status"] == "error"
        assert body["error"] == {"code": code, "message": "boom", "details": {"k": "v"}}

    def test_invalid_otp_is_a_validation_error(self):
        assert issubclass(service_errors.InvalidOtpError, service_errors.ValidationError)

    def test_error_response_drops_empty_details(self):
        body = json.loads(error_response(404, "missing", {}).body)
        assert body["error"]["details"] is None
        assert body["error"]["code"] == "not_found"


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/dependency")
    async def dependency():
        raise service_errors.DependencyError("email timed out")

    @app.get("/crash")
    async def crash():
        raise RuntimeError("secret internals")

    @app.get("/typed/{count}")
    async def typed(count: int):
        return {"count": count}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_constraint_violation_maps_to_conflict(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "username"}

    def test_dependency_error(self, client):
        response = client.get("/dependency")
        assert response.status_code == 502
        assert response.json()["error"]["code"] == "dependency_error"

    def test_unexpected_exception_is_opaque(self, client):
        response = client.get("/crash")
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["message"] == "internal server error"
        assert "secret" not in response.text

    def test_request_validation_maps_to_400(self, client):
        response = client.get("/typed/not-a-number")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
