"""Tests for the error envelope returned by every failing endpoint.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gemvault import app as app_module
from gemvault.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from gemvault.api.schemas import _VALID_ERROR_CODES, Envelope, ErrorBody
from gemvault.service import errors as service_errors


@pytest.fixture
def client():
    return TestClient(app_module.app, raise_server_exceptions=False)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid email or password")
        assert error.details is None
        with pytest.raises(ValidationError):
            ErrorBody(message="missing code")
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_details_may_be_object_or_list(self):
        assert ErrorBody(code="conflict", message="x", details={"field": "email"}).details == {
            "field": "email"
        }
        assert len(ErrorBody(code="validation_error", message="x", details=[{}, {}]).details) == 2


class TestEnvelope:
    def test_request_id_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    @pytest.mark.parametrize("status", ["pending", "success", ""])
    def test_invalid_status(self, status):
        with pytest.raises(ValidationError):
            Envelope(status=status)

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="slow down", details={"retry_after": 60}),
            request_id="req-1",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["data"] is None
        assert dumped["request_id"] == "req-1"


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (405, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid(self):
        assert set(_STATUS_TO_CODE.values()) <= _VALID_ERROR_CODES

    def test_every_service_error_code_is_valid(self):
        for name in service_errors.__all__:
            cls = getattr(service_errors, name)
            assert cls.error_code in _VALID_ERROR_CODES, name


class TestErrorResponseFactory:
    def test_basic(self):
        response = _error_response(401, "authentication required")
        data = json.loads(response.body)
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["request_id"]

    def test_code_override(self):
        data = json.loads(_error_response(400, "bad code", code="invalid_mfa_code").body)
        assert data["error"]["code"] == "invalid_mfa_code"

    def test_list_details(self):
        data = json.loads(_error_response(422, "bad", details=[{"loc": ["body"]}]).body)
        assert data["error"]["details"] == [{"loc": ["body"]}]


class TestHandlersOverHttp:
    def test_unknown_route_is_enveloped(self, client):
        response = client.get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_wrong_method_is_enveloped(self, client):
        response = client.get("/v1/auth/login")
        assert response.status_code == 405
        assert response.json()["status"] == "error"

    def test_request_validation_is_422(self, client):
        response = client.post("/v1/auth/register", json={"email": "nope", "password": "x"})
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        fields = {tuple(d["loc"]) for d in body["error"]["details"]}
        assert ("body", "email") in fields
        assert ("body", "password") in fields

    def test_missing_bearer_is_401(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_server_errors_hide_detail(self, client, runtime, monkeypatch):
        def _explode(*args, **kwargs):
            raise RuntimeError("connection string with secrets")

        monkeypatch.setattr(runtime.store, "get_account_by_email", _explode)
        response = client.post(
            "/v1/auth/forgot-password", json={"email": "someone@example.com"}
        )
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secrets" not in json.dumps(body)
