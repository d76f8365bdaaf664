"""Advancement queue and per-flow locks.

A queued task means "advance this flow by one step". Each flow has at most
one queued task; enqueueing it again keeps the earlier due time. Per-flow
locks serialize ticks so two workers never advance the same flow at once.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from opsflow.logging import get_logger
from opsflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class TickTask:
    flow_id: str
    attempt: int = 0
    enqueued_at: float = field(default_factory=time.time)
    due_at: float = 0.0


class WorkQueue(Protocol):
    async def enqueue(self, flow_id: str, delay: float = 0.0, *, attempt: int = 0) -> None: ...

    async def dequeue(self, timeout: float) -> Optional[TickTask]: ...

    async def ack(self, task: TickTask) -> None: ...

    async def pending(self) -> int: ...


class MemoryWorkQueue:
    """In-process delay queue; ticks are lost on restart."""

    def __init__(self) -> None:
        self._heap: List[Tuple[float, int, str]] = []
        self._tasks: Dict[str, TickTask] = {}
        self._counter = itertools.count()
        self._wakeup: Optional[asyncio.Event] = None

    def _event(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    async def enqueue(self, flow_id: str, delay: float = 0.0, *, attempt: int = 0) -> None:
        due_at = time.time() + max(0.0, delay)
        existing = self._tasks.get(flow_id)
        if existing is not None and existing.due_at <= due_at:
            return
        task = TickTask(flow_id=flow_id, attempt=attempt, due_at=due_at)
        self._tasks[flow_id] = task
        heapq.heappush(self._heap, (due_at, next(self._counter), flow_id))
        self._event().set()

    def _pop_due(self, now: float) -> Optional[TickTask]:
        while self._heap:
            due_at, _, flow_id = self._heap[0]
            task = self._tasks.get(flow_id)
            if task is None or task.due_at != due_at:
                # superseded by an earlier enqueue
                heapq.heappop(self._heap)
                continue
            if due_at > now:
                return None
            heapq.heappop(self._heap)
            del self._tasks[flow_id]
            return task
        return None

    def _next_due(self) -> Optional[float]:
        for due_at, _, flow_id in sorted(self._heap):
            task = self._tasks.get(flow_id)
            if task is not None and task.due_at == due_at:
                return due_at
        return None

    async def dequeue(self, timeout: float) -> Optional[TickTask]:
        deadline = time.time() + timeout
        while True:
            now = time.time()
            task = self._pop_due(now)
            if task is not None:
                return task
            if now >= deadline:
                return None
            wait = deadline - now
            next_due = self._next_due()
            if next_due is not None:
                wait = min(wait, max(0.0, next_due - now))
            event = self._event()
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    async def ack(self, task: TickTask) -> None:
        return None

    async def pending(self) -> int:
        return len(self._tasks)

    def queued_flow_ids(self) -> List[str]:
        return sorted(self._tasks, key=lambda fid: self._tasks[fid].due_at)


class RedisWorkQueue:
    """Durable queue on a Redis sorted set scored by due time."""

    def __init__(self, cache: RedisCache, *, poll_interval: float = 0.2) -> None:
        self.cache = cache
        self.poll_interval = poll_interval

    async def enqueue(self, flow_id: str, delay: float = 0.0, *, attempt: int = 0) -> None:
        await self.cache.enqueue_tick(flow_id, time.time() + max(0.0, delay), attempt)

    async def dequeue(self, timeout: float) -> Optional[TickTask]:
        deadline = time.time() + timeout
        while True:
            popped = await self.cache.pop_due_tick(time.time())
            if popped is not None:
                flow_id, attempt = popped
                return TickTask(flow_id=flow_id, attempt=attempt, due_at=time.time())
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, task: TickTask) -> None:
        return None

    async def pending(self) -> int:
        return await self.cache.queued_ticks()


class FlowLock(Protocol):
    async def acquire(self, flow_id: str, *, wait: float = 0.0) -> Optional[str]: ...

    async def release(self, flow_id: str, token: str) -> None: ...


class MemoryFlowLock:
    """Per-flow asyncio locks for a single process.

    A flow's lock is dropped once it is released with nobody waiting on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._owners: Dict[str, str] = {}
        self._waiting: Dict[str, int] = {}

    async def acquire(self, flow_id: str, *, wait: float = 0.0) -> Optional[str]:
        lock = self._locks.setdefault(flow_id, asyncio.Lock())
        if wait <= 0:
            if lock.locked():
                return None
            await lock.acquire()
        else:
            self._waiting[flow_id] = self._waiting.get(flow_id, 0) + 1
            try:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
            except asyncio.TimeoutError:
                return None
            finally:
                self._waiting[flow_id] -= 1
                if not self._waiting[flow_id]:
                    del self._waiting[flow_id]
                self._evict_if_idle(flow_id)
        token = uuid.uuid4().hex
        self._owners[flow_id] = token
        return token

    async def release(self, flow_id: str, token: str) -> None:
        lock = self._locks.get(flow_id)
        if lock is None or self._owners.get(flow_id) != token:
            logger.warning("flow_lock_release_not_owner", flow_id=flow_id)
            return
        del self._owners[flow_id]
        lock.release()
        self._evict_if_idle(flow_id)

    def _evict_if_idle(self, flow_id: str) -> None:
        lock = self._locks.get(flow_id)
        if lock is not None and not lock.locked() and flow_id not in self._waiting:
            del self._locks[flow_id]

    def is_locked(self, flow_id: str) -> bool:
        lock = self._locks.get(flow_id)
        return bool(lock and lock.locked())


class RedisFlowLock:
    """SET NX PX lock with a token-checked release, shared across processes."""

    def __init__(self, cache: RedisCache, *, ttl_seconds: float = 120.0, poll_interval: float = 0.05) -> None:
        self.cache = cache
        self.ttl_ms = int(ttl_seconds * 1000)
        self.poll_interval = poll_interval

    async def acquire(self, flow_id: str, *, wait: float = 0.0) -> Optional[str]:
        token = uuid.uuid4().hex
        deadline = time.time() + max(0.0, wait)
        while True:
            if await self.cache.acquire_flow_lock(flow_id, token, self.ttl_ms):
                return token
            if time.time() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def release(self, flow_id: str, token: str) -> None:
        released = await self.cache.release_flow_lock(flow_id, token)
        if not released:
            logger.warning("flow_lock_expired_before_release", flow_id=flow_id)
