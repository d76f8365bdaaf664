from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Outcome(str, Enum):
    """How a capability invocation ended, as seen by the driver."""

    OK = "ok"
    MULTIPLE_MATCHES = "multiple_matches"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass
class ExecutionContext:
    tenant_id: str
    user_id: str
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    conversation_id: Optional[str] = None
    custom_config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    """Normalized envelope returned by every capability back-end."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    outcome: Outcome = Outcome.OK
    message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, *, status_code: Optional[int] = None, message: Optional[str] = None) -> "ExecutionResult":
        return cls(success=True, data=data, status_code=status_code, message=message)

    @classmethod
    def failure(
        cls, error: str, *, status_code: Optional[int] = None, data: Any = None
    ) -> "ExecutionResult":
        return cls(
            success=False, error=error, status_code=status_code, data=data, outcome=Outcome.FAILED
        )

    @classmethod
    def multiple_matches(cls, matches: List[Dict[str, Any]], message: Optional[str] = None) -> "ExecutionResult":
        return cls(
            success=False,
            data=matches,
            outcome=Outcome.MULTIPLE_MATCHES,
            message=message or f"Found {len(matches)} matches. Please select one:",
        )

    @classmethod
    def not_found(cls, message: str) -> "ExecutionResult":
        return cls(success=False, data=[], outcome=Outcome.NOT_FOUND, message=message)

    @property
    def is_ambiguous(self) -> bool:
        return self.outcome == Outcome.MULTIPLE_MATCHES

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "status": self.outcome.value}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.status_code is not None:
            payload["statusCode"] = self.status_code
        if self.message is not None:
            payload["message"] = self.message
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload
