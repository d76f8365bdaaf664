"""Error responses share one envelope:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from opsflow.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from opsflow.api.schemas import Envelope, ErrorBody
from opsflow.service import errors as service_errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="not_found", message="flow not found")
        assert error.code == "not_found"
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(
            code="invalid_parameters",
            message="Parameters for search_tasks failed validation",
            details=[{"field": "limit"}, {"field": "status"}],
        )
        assert len(error.details) == 2

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_error_envelope(self):
        envelope = Envelope(status="error", error=ErrorBody(code="conflict", message="flow is busy"))
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["data"] is None
        assert dumped["error"]["code"] == "conflict"
        assert dumped["request_id"]

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorResponse:
    @pytest.mark.parametrize(
        "status_code,expected",
        [(400, "validation_error"), (403, "forbidden"), (404, "not_found"), (409, "conflict"), (418, "server_error")],
    )
    def test_code_for_status(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_status_mapping_only_uses_known_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")

    def test_response_body(self):
        response = _error_response(409, "flow is busy", {"flow_id": "f1"})
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {"code": "conflict", "message": "flow is busy", "details": {"flow_id": "f1"}}

    def test_explicit_code_wins(self):
        response = _error_response(502, "planner returned no steps", code="planning_failed")

        assert json.loads(response.body)["error"]["code"] == "planning_failed"


@pytest.mark.parametrize("name", service_errors.__all__)
def test_every_service_error_code_renders(name):
    cls = getattr(service_errors, name)

    ErrorBody(code=cls.error_code, message=name)
