from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the API envelope:
    - validation_error (400)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - planning_failed (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class ForbiddenError(ServiceError):
    """Access denied - caller does not own the flow (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., illegal state transition (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class PlanningError(ServiceError):
    """The AI provider failed or returned an unusable plan; nothing was persisted."""
    status_code = 502
    error_code = "planning_failed"


class MissingDependencyError(ValidationError):
    """A placeholder expression could not be resolved against flow state.

    Never retried: the plan itself is defective.
    """

    error_code = "missing_dependency"

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(
            f"Unresolved placeholder {expression}: {reason}",
            detail={"expression": expression, "reason": reason},
        )
        self.expression = expression
        self.reason = reason


class ParameterValidationError(ValidationError):
    """Resolved parameters do not satisfy the capability's input schema."""

    error_code = "invalid_parameters"

    def __init__(self, capability: str, errors: list[str]) -> None:
        super().__init__(
            f"Parameters for {capability} failed validation: {'; '.join(errors)}",
            detail={"capability": capability, "errors": errors},
        )
        self.capability = capability
        self.errors = errors


class CapabilityNotFoundError(NotFoundError):
    """Capability is unknown or disabled for the tenant."""

    def __init__(self, slug: str) -> None:
        super().__init__(f"capability not available: {slug}", detail={"slug": slug})
        self.slug = slug


class CapabilityExecutionError(ServiceError):
    """Raised inside executors; folded into a failure envelope by the router."""

    status_code = 502
    error_code = "capability_failed"

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message, detail={"upstream_status": status_code, "body": body})
        self.upstream_status = status_code
        self.body = body


class FlowStateError(ConflictError):
    """Requested lifecycle transition is not legal for the flow's status."""
    error_code = "invalid_flow_state"


class StepNotAwaitingInputError(ConflictError):
    """A response was submitted for a step that is not waiting for one."""

    error_code = "step_not_awaiting_input"

    def __init__(self, step_id: str, status: str) -> None:
        super().__init__(
            f"step {step_id} is not awaiting user input (status: {status})",
            detail={"step_id": step_id, "status": status},
        )
        self.step_id = step_id
        self.status = status


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "PlanningError",
    "MissingDependencyError",
    "ParameterValidationError",
    "CapabilityNotFoundError",
    "CapabilityExecutionError",
    "FlowStateError",
    "StepNotAwaitingInputError",
]
