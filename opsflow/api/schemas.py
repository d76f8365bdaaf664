from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsflow.service.planner import MAX_REQUEST_LENGTH
from opsflow.storage.models import Capability, CapabilityKind, Flow, FlowLog, FlowStep

# Maximum nested JSON depth accepted in free-form payloads
MAX_JSON_DEPTH = 20
# Maximum array items accepted in free-form payloads
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON before it reaches the store.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize text and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "planning_failed",
    "missing_dependency",
    "invalid_expression",
    "invalid_parameters",
    "capability_failed",
    "invalid_flow_state",
    "step_not_awaiting_input",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# requests
class PlanCheckRequest(BaseModel):
    message: str = Field(..., max_length=MAX_REQUEST_LENGTH)


class PlanCheckResponse(BaseModel):
    should_create_flow: bool


class FlowCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request: str = Field(..., min_length=1, max_length=MAX_REQUEST_LENGTH)
    conversation_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("request")
    @classmethod
    def _clean_request(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("request must not be blank")
        return cleaned


class StepResponseRequest(BaseModel):
    response: Any

    @field_validator("response")
    @classmethod
    def _validate_response(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("response must not be null")
        _validate_json_depth(value)
        if isinstance(value, str):
            value = _normalize_unicode(value)
        return value


class StepInsertRequest(BaseModel):
    after_position: int = Field(..., ge=-1)
    step: Dict[str, Any]

    @field_validator("step")
    @classmethod
    def _validate_step(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class CapabilitySettingsRequest(BaseModel):
    enabled: bool = True
    custom_config: Optional[Dict[str, Any]] = None

    @field_validator("custom_config")
    @classmethod
    def _validate_config(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


# responses
class FlowStepResponse(BaseModel):
    id: str
    position: int
    step_type: str
    title: str
    description: Optional[str] = None
    status: str
    capability_slug: Optional[str] = None
    input_params: Dict[str, Any] = Field(default_factory=dict)
    param_mappings: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    error_message: Optional[str] = None
    prompt_type: Optional[str] = None
    prompt_message: Optional[str] = None
    prompt_options: Optional[List[Dict[str, Any]]] = None
    user_response: Optional[Any] = None
    condition: Optional[Dict[str, Any]] = None
    on_success_goto: Optional[int] = None
    on_fail_goto: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, step: FlowStep) -> "FlowStepResponse":
        return cls(
            id=step.id,
            position=step.position,
            step_type=step.step_type.value,
            title=step.title,
            description=step.description,
            status=step.status.value,
            capability_slug=step.capability_slug,
            input_params=step.input_params,
            param_mappings=step.param_mappings,
            result=step.result,
            error_message=step.error_message,
            prompt_type=step.prompt_type.value if step.prompt_type else None,
            prompt_message=step.prompt_message,
            prompt_options=step.prompt_options,
            user_response=step.user_response,
            condition=step.condition,
            on_success_goto=step.on_success_goto,
            on_fail_goto=step.on_fail_goto,
            started_at=step.started_at,
            completed_at=step.completed_at,
        )


class FlowResponse(BaseModel):
    id: str
    title: str
    status: str
    original_request: str
    conversation_id: Optional[str] = None
    current_step_id: Optional[str] = None
    total_steps: int
    completed_steps: int
    progress: float
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    flow_context: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[FlowStepResponse] = Field(default_factory=list)

    @classmethod
    def from_model(cls, flow: Flow) -> "FlowResponse":
        return cls(
            id=flow.id,
            title=flow.title,
            status=flow.status.value,
            original_request=flow.original_request,
            conversation_id=flow.conversation_id,
            current_step_id=flow.current_step_id,
            total_steps=flow.total_steps,
            completed_steps=flow.completed_steps,
            progress=flow.progress,
            retry_count=flow.retry_count,
            max_retries=flow.max_retries,
            last_error=flow.last_error,
            flow_context=flow.flow_context,
            created_at=flow.created_at,
            updated_at=flow.updated_at,
            started_at=flow.started_at,
            paused_at=flow.paused_at,
            completed_at=flow.completed_at,
            steps=[FlowStepResponse.from_model(s) for s in flow.steps],
        )


class FlowLogResponse(BaseModel):
    id: str
    log_type: str
    message: str
    actor_type: Literal["system", "user", "ai"]
    actor_id: Optional[str] = None
    step_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_model(cls, entry: FlowLog) -> "FlowLogResponse":
        return cls(
            id=entry.id,
            log_type=entry.log_type.value,
            message=entry.message,
            actor_type=entry.actor_type.value,
            actor_id=entry.actor_id,
            step_id=entry.step_id,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )


class CapabilityResponse(BaseModel):
    slug: str
    name: str
    type: str
    description: str = ""
    category: str = "general"
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    secret_fields: List[str] = Field(default_factory=list)

    @classmethod
    def from_model(cls, capability: Capability) -> "CapabilityResponse":
        return cls(
            slug=capability.slug,
            name=capability.name,
            type=CapabilityKind(capability.kind).value,
            description=capability.description,
            category=capability.category,
            input_schema=capability.input_schema,
            secret_fields=capability.secret_fields,
        )


class CapabilitySettingResponse(BaseModel):
    slug: str
    tenant_id: str
    enabled: bool
    configured: bool
    updated_at: datetime
