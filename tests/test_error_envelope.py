"""Tests for the error envelope format and exception handlers.

Error responses share one shape:
{
    "status": "error",
    "message": "<human_readable>",
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
from pydantic import BaseModel, ValidationError

from otpgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from otpgate.api.schemas import Envelope, ErrorBody
from otpgate.service.errors import (
    InternalError,
    InvalidCodeError,
    NoChallengeError,
    OtpExpiredError,
    TokenExpiredError,
)
from otpgate.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Access token is required")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "otp"}],
        )
        assert len(error.details) == 2

    @pytest.mark.parametrize(
        "code", ["otp_not_found", "otp_expired", "otp_invalid", "invalid_token", "token_expired"]
    )
    def test_domain_codes_are_valid(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="x")


class TestEnvelope:
    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and second.request_id
        assert first.request_id != second.request_id


class TestStatusMapping:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _error_code_for_status(409) == "conflict"

    def test_unknown_statuses_fall_back_by_class(self):
        assert _error_code_for_status(418) == "validation_error"
        assert _error_code_for_status(503) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(400, "bad", {"field": "email"})
        body = json.loads(response.body)

        assert response.status_code == 400
        assert body["status"] == "error"
        assert body["message"] == "bad"
        assert body["error"] == {
            "code": "validation_error",
            "message": "bad",
            "details": {"field": "email"},
        }
        assert body["data"] is None
        assert body["request_id"]


class _Body(BaseModel):
    value: int


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/raise/{kind}")
    async def raise_kind(kind: str):
        errors = {
            "expired": OtpExpiredError("OTP expired"),
            "invalid": InvalidCodeError("Invalid OTP"),
            "missing": NoChallengeError("OTP not found"),
            "token": TokenExpiredError("Access token expired"),
            "internal": InternalError("Failed to send OTP email"),
            "conflict": ConstraintViolation("email already exists", {"field": "email"}),
        }
        if kind == "boom":
            raise RuntimeError("secret internals")
        raise errors[kind]

    @app.post("/body")
    async def body(payload: _Body):
        return {"ok": True}

    return app


@pytest.fixture
def client():
    return TestClient(_app(), raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "kind,status,code",
        [
            ("expired", 400, "otp_expired"),
            ("invalid", 400, "otp_invalid"),
            ("missing", 400, "otp_not_found"),
            ("token", 401, "token_expired"),
            ("internal", 500, "server_error"),
            ("conflict", 409, "conflict"),
        ],
    )
    def test_domain_errors(self, client, kind, status, code):
        response = client.get(f"/raise/{kind}")

        assert response.status_code == status
        assert response.json()["error"]["code"] == code

    def test_uncaught_exception_is_generic(self, client):
        response = client.get("/raise/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secret" not in body["message"]

    def test_request_validation_is_400_without_input_echo(self, client):
        response = client.post("/body", json={"value": "not-a-number"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "value"]
        assert "not-a-number" not in response.text
