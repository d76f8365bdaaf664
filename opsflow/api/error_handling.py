from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from opsflow.api.schemas import Envelope, ErrorBody
from opsflow.logging import get_correlation_id, get_logger
from opsflow.service.errors import ServiceError
from opsflow.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Fallback codes when an error carries no code of its own
_STATUS_TO_CODE = {
    400: "validation_error",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    502: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render the error envelope under the request's correlation id."""
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details),
    )
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _request_fields(request: Request) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"path": request.url.path, "method": request.method}
    for key in ("flow_id", "step_id", "slug"):
        if key in request.path_params:
            fields[key] = request.path_params[key]
    user_id = request.headers.get("X-User-Id")
    if user_id:
        fields["user_id"] = user_id
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    """Render service, storage and request errors as the shared error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        # a write that raced a cancel or completion hits a terminal flow
        code = "invalid_flow_state" if exc.message == "flow is terminal" else "conflict"
        logger.warning("flow_store_conflict", error_code=code, message=exc.message, detail=exc.detail, **_request_fields(request))
        return _error_response(409, exc.message, exc.detail, code=code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "flow_request_failed",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
            **_request_fields(request),
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(error.get("loc", [])), "msg": error.get("msg")} for error in exc.errors()]
        logger.info("flow_request_invalid", errors=errors, **_request_fields(request))
        return _error_response(400, "request validation failed", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error("http_error", status_code=exc.status_code, message=message, **_request_fields(request))
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            **_request_fields(request),
        )
        return _error_response(500, "internal server error", code="server_error")
