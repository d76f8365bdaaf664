"""Flow lifecycle events fanned out to per-user and per-flow channels.

Delivery is best effort: a subscriber that misses an event recovers by
reading the flow. Publishing never raises into the driver.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from opsflow.logging import get_logger
from opsflow.storage.models import Flow, FlowStep, PromptType, StepType
from opsflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)

STEP_COMPLETED = "flow.step_completed"
USER_INPUT_REQUIRED = "flow.user_input_required"
FLOW_COMPLETED = "flow.completed"


def user_channel(user_id: str) -> str:
    return f"user.{user_id}"


def flow_channel(flow_id: str) -> str:
    return f"flow.{flow_id}"


class EventBus(Protocol):
    async def publish(self, channel: str, message: Dict[str, Any]) -> None: ...

    def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Dict[str, Any]]: ...


class MemoryEventBus:
    """In-process pub/sub with one asyncio queue per subscriber."""

    def __init__(self, *, history_size: int = 200, queue_size: int = 100) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self.history: List[Tuple[str, Dict[str, Any]]] = []
        self.history_size = history_size
        self.queue_size = queue_size

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        self.history.append((channel, message))
        if len(self.history) > self.history_size:
            del self.history[: len(self.history) - self.history_size]
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("event_subscriber_queue_full", channel=channel)

    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Dict[str, Any]]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        names = list(channels)
        for name in names:
            self._subscribers.setdefault(name, set()).add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            for name in names:
                subscribers = self._subscribers.get(name)
                if subscribers is not None:
                    subscribers.discard(queue)
                    if not subscribers:
                        del self._subscribers[name]

    def events(self, channel: str) -> List[Dict[str, Any]]:
        return [message for name, message in self.history if name == channel]


class RedisEventBus:
    """Redis pub/sub so subscribers on any API replica see worker events."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def publish(self, channel: str, message: Dict[str, Any]) -> None:
        await self.cache.publish(channel, message)

    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Dict[str, Any]]:
        async for message in self.cache.subscribe(channels):
            yield message


def _result_summary(result: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(result, dict):
        return None
    summary: Dict[str, Any] = {
        "success": result.get("success"),
        "status": result.get("status"),
    }
    data = result.get("data")
    if isinstance(data, list):
        summary["count"] = len(data)
    elif isinstance(data, dict):
        for key in ("id", "entity_type", "title", "name"):
            if key in data:
                summary[key] = data[key]
    if result.get("message"):
        summary["message"] = result["message"]
    return summary


class EventPublisher:
    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    async def _emit(self, flow: Flow, name: str, data: Dict[str, Any]) -> None:
        message = {
            "event": name,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for channel in (user_channel(flow.user_id), flow_channel(flow.id)):
            try:
                await self.bus.publish(channel, message)
            except Exception as exc:
                logger.warning(
                    "event_publish_failed",
                    event_name=name,
                    channel=channel,
                    flow_id=flow.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def step_completed(self, flow: Flow, step: FlowStep) -> None:
        await self._emit(
            flow,
            STEP_COMPLETED,
            {
                "flow_id": flow.id,
                "step": {
                    "id": step.id,
                    "position": step.position,
                    "title": step.title,
                    "step_type": StepType(step.step_type).value,
                    "status": step.status.value,
                    "result": _result_summary(step.result),
                },
                "completed_steps": flow.completed_steps,
                "total_steps": flow.total_steps,
                "progress": flow.progress,
            },
        )

    async def user_input_required(self, flow: Flow, step: FlowStep) -> None:
        await self._emit(
            flow,
            USER_INPUT_REQUIRED,
            {
                "flow_id": flow.id,
                "flow_title": flow.title,
                "step_id": step.id,
                "step_position": step.position,
                "step_title": step.title,
                "prompt_type": PromptType(step.prompt_type).value if step.prompt_type else None,
                "prompt_message": step.prompt_message,
                "prompt_options": step.prompt_options,
                "completed_steps": flow.completed_steps,
                "total_steps": flow.total_steps,
            },
        )

    async def flow_completed(self, flow: Flow) -> None:
        await self._emit(
            flow,
            FLOW_COMPLETED,
            {
                "flow_id": flow.id,
                "title": flow.title,
                "status": flow.status.value,
                "completed_steps": flow.completed_steps,
                "total_steps": flow.total_steps,
                "suggestions": flow.flow_context.get("suggestions", []),
            },
        )
