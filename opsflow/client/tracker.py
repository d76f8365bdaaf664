"""Client-side flow tracking against the HTTP API.

Events are a hint, not a source of truth: a tracker that misses one catches
up by polling with a bounded exponential backoff.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import httpx

from opsflow.logging import get_logger

logger = get_logger(__name__)

SETTLED_STATUSES = frozenset({"completed", "failed", "cancelled", "awaiting_user"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
_TRACKED_EVENTS = frozenset({"flow.step_completed", "flow.user_input_required", "flow.completed"})


class TrackerTimeout(Exception):
    """The backoff policy ran out before the flow settled."""

    def __init__(self, flow_id: str, attempts: int, elapsed: float) -> None:
        super().__init__(f"flow {flow_id} did not settle after {attempts} polls ({elapsed:.1f}s)")
        self.flow_id = flow_id
        self.attempts = attempts
        self.elapsed = elapsed


class TrackerError(Exception):
    """The API answered with an error envelope."""

    def __init__(self, status_code: int, error: Dict[str, Any]) -> None:
        super().__init__(error.get("message") or f"API error {status_code}")
        self.status_code = status_code
        self.code = error.get("code")
        self.error = error


@dataclass
class BackoffPolicy:
    initial_interval: float = 1.0
    multiplier: float = 2.0
    max_interval: float = 30.0
    max_attempts: int = 20
    max_duration: float = 300.0

    def delays(self) -> Iterator[float]:
        """Yield poll delays until the attempt or wall-clock bound is hit."""
        interval = self.initial_interval
        total = 0.0
        for _ in range(self.max_attempts):
            if total + interval > self.max_duration:
                return
            yield interval
            total += interval
            interval = min(interval * self.multiplier, self.max_interval)


class FlowTracker:
    """Keeps a local view of a user's active flows and any pending prompt."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        user_id: str,
        tenant_id: str,
        policy: Optional[BackoffPolicy] = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.client = client
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self.active_flows: Dict[str, Dict[str, Any]] = {}
        self.pending_prompt: Optional[Dict[str, Any]] = None
        self.suggestions: Dict[str, Any] = {}

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-User-Id": self.user_id, "X-Tenant-Id": self.tenant_id}

    async def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.client.request(method, path, json=json, headers=self._headers)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or body.get("status") == "error":
            raise TrackerError(response.status_code, body.get("error") or {})
        return body.get("data")

    def _remember(self, flow: Dict[str, Any]) -> Dict[str, Any]:
        flow_id = flow["id"]
        if flow.get("status") in TERMINAL_STATUSES:
            self.active_flows.pop(flow_id, None)
        else:
            self.active_flows[flow_id] = flow
        if self.pending_prompt and self.pending_prompt.get("flow_id") == flow_id:
            if flow.get("status") != "awaiting_user":
                self.pending_prompt = None
        if flow.get("status") == "awaiting_user":
            current = next(
                (s for s in flow.get("steps", []) if s.get("id") == flow.get("current_step_id")),
                None,
            )
            if current is not None:
                self.pending_prompt = {
                    "flow_id": flow_id,
                    "step_id": current["id"],
                    "prompt_type": current.get("prompt_type"),
                    "prompt_message": current.get("prompt_message"),
                    "prompt_options": current.get("prompt_options"),
                }
        return flow

    async def create(self, request: str, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"request": request}
        if conversation_id:
            payload["conversation_id"] = conversation_id
        return self._remember(await self._call("POST", "/v1/flows", payload))

    async def refresh(self, flow_id: str) -> Dict[str, Any]:
        return self._remember(await self._call("GET", f"/v1/flows/{flow_id}"))

    async def respond(self, flow_id: str, step_id: str, response: Any) -> Dict[str, Any]:
        flow = await self._call(
            "POST", f"/v1/flows/{flow_id}/steps/{step_id}/respond", {"response": response}
        )
        if self.pending_prompt and self.pending_prompt.get("step_id") == step_id:
            self.pending_prompt = None
        return self._remember(flow)

    async def cancel(self, flow_id: str) -> Dict[str, Any]:
        return self._remember(await self._call("POST", f"/v1/flows/{flow_id}/cancel"))

    def apply_event(self, message: Dict[str, Any]) -> None:
        """Fold one pushed event into local state."""
        name = message.get("event")
        data = message.get("data") or {}
        flow_id = data.get("flow_id")
        if not flow_id:
            return
        if name not in _TRACKED_EVENTS:
            logger.debug("tracker_unknown_event", event_name=name, flow_id=flow_id)
            return
        flow = self.active_flows.setdefault(flow_id, {"id": flow_id})
        if name == "flow.step_completed":
            flow.update(
                completed_steps=data.get("completed_steps"),
                total_steps=data.get("total_steps"),
                progress=data.get("progress"),
                status="running",
            )
        elif name == "flow.user_input_required":
            flow.update(
                status="awaiting_user",
                title=data.get("flow_title"),
                current_step_id=data.get("step_id"),
                completed_steps=data.get("completed_steps"),
                total_steps=data.get("total_steps"),
            )
            self.pending_prompt = {
                "flow_id": flow_id,
                "step_id": data.get("step_id"),
                "prompt_type": data.get("prompt_type"),
                "prompt_message": data.get("prompt_message"),
                "prompt_options": data.get("prompt_options"),
            }
        elif name == "flow.completed":
            self.active_flows.pop(flow_id, None)
            self.suggestions[flow_id] = data.get("suggestions") or []
            if self.pending_prompt and self.pending_prompt.get("flow_id") == flow_id:
                self.pending_prompt = None

    async def wait_until_settled(self, flow_id: str) -> Dict[str, Any]:
        """Poll until the flow is terminal or waiting on the user."""
        started = time.monotonic()
        attempts = 0
        flow = await self.refresh(flow_id)
        if flow.get("status") in SETTLED_STATUSES:
            return flow
        for delay in self.policy.delays():
            await self._sleep(delay)
            attempts += 1
            flow = await self.refresh(flow_id)
            if flow.get("status") in SETTLED_STATUSES:
                return flow
        elapsed = time.monotonic() - started
        logger.warning("tracker_wait_timeout", flow_id=flow_id, attempts=attempts, elapsed=elapsed)
        raise TrackerTimeout(flow_id, attempts, elapsed)
