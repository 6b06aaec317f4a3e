"""Tests for the error envelope format.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from taskpulse.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from taskpulse.api.schemas import Envelope, ErrorBody
from taskpulse.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthenticatedError,
)
from taskpulse.service.errors import ValidationError as ServiceValidationError


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid token")
        assert error.details is None

    def test_details_accept_dict_or_list(self):
        assert ErrorBody(code="validation_error", message="x", details={"field": "email"}).details
        assert len(ErrorBody(code="validation_error", message="x", details=[1, 2]).details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable code set is accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="conflict", message="email already exists"),
            request_id="req-1",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["code"] == "conflict"
        assert dumped["request_id"] == "req-1"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_status(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_response_body_and_headers(self):
        response = _error_response(
            401, "token expired", {"hint": "token_expired"}, headers={"WWW-Authenticate": "Bearer"}
        )
        body = json.loads(response.body)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "token expired",
            "details": {"hint": "token_expired"},
        }
        assert body["request_id"]


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc,status_code,code",
        [
            (ServiceValidationError("bad"), 400, "validation_error"),
            (UnauthenticatedError("missing token"), 401, "unauthorized"),
            (ForbiddenError("nope"), 403, "forbidden"),
            (NotFoundError("gone"), 404, "not_found"),
            (ConflictError("dup"), 409, "conflict"),
        ],
    )
    def test_status_and_code(self, exc, status_code, code):
        assert exc.status_code == status_code
        assert exc.error_code == code

    def test_unauthenticated_carries_hint(self):
        exc = UnauthenticatedError("token expired", hint="token_expired")
        assert exc.message == "token expired"
        assert exc.detail == {"hint": "token_expired"}
