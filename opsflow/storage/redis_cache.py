from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for flow locks, the tick queue and event fan-out."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    QUEUE_KEY = "opsflow:ticks"
    ATTEMPTS_KEY = "opsflow:tick_attempts"

    # Delete the lock only if we still own it.
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    # Extend the lock only if we still own it.
    _EXTEND_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
"""

    # Pop the earliest flow whose tick is due, with its attempt counter;
    # atomic across workers.
    _POP_DUE_SCRIPT = """
local items = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #items == 0 then
  return nil
end
redis.call('ZREM', KEYS[1], items[1])
local attempt = redis.call('HGET', KEYS[2], items[1])
redis.call('HDEL', KEYS[2], items[1])
return {items[1], attempt or '0'}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)
        self._extend_lock = self.client.register_script(self._EXTEND_LOCK_SCRIPT)
        self._pop_due = self.client.register_script(self._POP_DUE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def lock_key(flow_id: str) -> str:
        return f"opsflow:lock:flow:{flow_id}"

    async def acquire_flow_lock(self, flow_id: str, token: str, ttl_ms: int) -> bool:
        acquired = await self.client.set(self.lock_key(flow_id), token, nx=True, px=ttl_ms)
        return bool(acquired)

    async def extend_flow_lock(self, flow_id: str, token: str, ttl_ms: int) -> bool:
        result = await self._extend_lock(keys=[self.lock_key(flow_id)], args=[token, ttl_ms])
        return bool(result)

    async def release_flow_lock(self, flow_id: str, token: str) -> bool:
        result = await self._release_lock(keys=[self.lock_key(flow_id)], args=[token])
        return bool(result)

    async def enqueue_tick(self, flow_id: str, due_at: float, attempt: int = 0) -> None:
        """Queue one tick per flow; a second enqueue keeps the earlier due time."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zadd(self.QUEUE_KEY, {flow_id: due_at}, lt=True)
            pipe.hset(self.ATTEMPTS_KEY, flow_id, attempt)
            await pipe.execute()

    async def pop_due_tick(self, now: float) -> Optional[Tuple[str, int]]:
        raw = await self._pop_due(keys=[self.QUEUE_KEY, self.ATTEMPTS_KEY], args=[now])
        if not raw:
            return None
        flow_id, attempt = raw
        return flow_id, int(attempt or 0)

    async def queued_ticks(self) -> int:
        return int(await self.client.zcard(self.QUEUE_KEY))

    async def publish(self, channel: str, message: Dict[str, Any]) -> int:
        return int(await self.client.publish(channel, json.dumps(message, default=str)))

    async def subscribe(self, channels: Iterable[str]) -> AsyncIterator[Dict[str, Any]]:
        pubsub = self.client.pubsub()
        await pubsub.subscribe(*channels)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except (TypeError, ValueError):
                    continue
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    async def close(self) -> None:
        await self.client.aclose()
