from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FlowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_USER = "awaiting_user"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_FLOW_STATUSES


TERMINAL_FLOW_STATUSES = frozenset(
    {FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED}
)
ACTIVE_FLOW_STATUSES = frozenset(
    {FlowStatus.PENDING, FlowStatus.RUNNING, FlowStatus.AWAITING_USER, FlowStatus.PAUSED}
)


class StepType(str, Enum):
    TOOL_CALL = "tool_call"
    AI_DECISION = "ai_decision"
    USER_PROMPT = "user_prompt"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    WAIT = "wait"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    AWAITING_USER = "awaiting_user"
    CANCELLED = "cancelled"


# Steps that count toward completed_steps.
ADVANCED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})
# At most one step per flow may hold one of these.
ACTIVE_STEP_STATUSES = frozenset({StepStatus.RUNNING, StepStatus.AWAITING_USER})


class PromptType(str, Enum):
    CHOICE = "choice"
    TEXT = "text"
    CONFIRM = "confirm"


class ActorType(str, Enum):
    SYSTEM = "system"
    USER = "user"
    AI = "ai"


class LogType(str, Enum):
    FLOW_CREATED = "flow_created"
    FLOW_STARTED = "flow_started"
    FLOW_PAUSED = "flow_paused"
    FLOW_RESUMED = "flow_resumed"
    FLOW_COMPLETED = "flow_completed"
    FLOW_FAILED = "flow_failed"
    FLOW_CANCELLED = "flow_cancelled"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_INSERTED = "step_inserted"
    STEP_DELETED = "step_deleted"
    USER_INPUT_REQUESTED = "user_input_requested"
    USER_INPUT_RECEIVED = "user_input_received"
    AI_DECISION_MADE = "ai_decision_made"
    CONTEXT_UPDATED = "context_updated"
    PARAMS_CORRECTED = "params_corrected"


class CapabilityKind(str, Enum):
    """Closed set of capability back-ends; each has exactly one executor."""

    DIRECT = "direct"
    OUTBOUND_CALL = "outbound_call"
    COMPOSITE = "composite"
    NOTIFICATION = "notification"


def initial_flow_context(request: str, available: List[str]) -> Dict[str, Any]:
    return {
        "original_intent": request,
        "available_skills": list(available),
        "resolved_entities": {},
        "created_entities": {},
        "step_results": {},
        "user_inputs": {},
    }


@dataclass
class FlowStep:
    id: str
    flow_id: str
    position: int
    step_type: StepType
    title: str
    status: StepStatus = StepStatus.PENDING
    capability_slug: Optional[str] = None
    description: Optional[str] = None
    input_params: Dict[str, Any] = field(default_factory=dict)
    param_mappings: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error_message: Optional[str] = None
    prompt_type: Optional[PromptType] = None
    prompt_message: Optional[str] = None
    prompt_options: Optional[List[Dict[str, Any]]] = None
    user_response: Any = None
    condition: Optional[Dict[str, Any]] = None
    on_success_goto: Optional[int] = None
    on_fail_goto: Optional[int] = None
    corrections: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STEP_STATUSES

    @property
    def has_response(self) -> bool:
        return self.user_response is not None


@dataclass
class Flow:
    id: str
    tenant_id: str
    user_id: str
    title: str
    original_request: str
    status: FlowStatus = FlowStatus.PENDING
    conversation_id: Optional[str] = None
    current_step_id: Optional[str] = None
    flow_context: Dict[str, Any] = field(default_factory=dict)
    total_steps: int = 0
    completed_steps: int = 0
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    planning_prompt: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: List[FlowStep] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return FlowStatus(self.status).is_terminal

    @property
    def progress(self) -> float:
        if not self.total_steps:
            return 0.0
        return round(self.completed_steps / self.total_steps * 100, 1)

    def step_by_id(self, step_id: str) -> Optional[FlowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_at(self, position: int) -> Optional[FlowStep]:
        for step in self.steps:
            if step.position == position:
                return step
        return None

    def next_pending_step(self) -> Optional[FlowStep]:
        for step in sorted(self.steps, key=lambda s: s.position):
            if step.status == StepStatus.PENDING:
                return step
        return None


@dataclass
class FlowLog:
    id: str
    flow_id: str
    log_type: LogType
    message: str
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    step_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Capability:
    slug: str
    name: str
    kind: CapabilityKind
    description: str = ""
    category: str = "general"
    input_schema: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    secret_fields: List[str] = field(default_factory=list)
    aliases: Optional[Dict[str, Dict[str, str]]] = None
    enabled: bool = True
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CapabilitySetting:
    tenant_id: str
    slug: str
    enabled: bool = True
    # Fernet token; decrypted only by the router at dispatch time.
    custom_config_encrypted: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Record:
    """Business record touched by the built-in direct handlers."""

    id: str
    tenant_id: str
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.data}
