from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from opsflow.config import QueueBackend, get_settings, reset_settings_cache
from opsflow.logging import get_logger
from opsflow.service.catalog import seed_default_capabilities
from opsflow.service.driver import FlowDriver
from opsflow.service.events import EventPublisher, MemoryEventBus, RedisEventBus
from opsflow.service.executors import (
    CompositeExecutor,
    DirectExecutor,
    NotificationExecutor,
    OutboundCallExecutor,
)
from opsflow.service.handlers import DirectHandlers
from opsflow.service.llm import LLMService
from opsflow.service.planner import FlowPlanner
from opsflow.service.queue import MemoryFlowLock, MemoryWorkQueue, RedisFlowLock, RedisWorkQueue
from opsflow.service.registry import CapabilityRegistry
from opsflow.service.router import ExecutionRouter
from opsflow.service.secrets import SecretBox
from opsflow.service.worker import FlowWorkerPool
from opsflow.storage.memory import MemoryStore
from opsflow.storage.models import CapabilityKind
from opsflow.storage.postgres import PostgresStore
from opsflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL before it reaches a log line.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the service graph for the FastAPI app and the worker pool."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            queue_backend=self.settings.queue_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(state_root=self.settings.state_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.queue_backend == QueueBackend.REDIS:
            if not self.settings.redis_url:
                raise RuntimeError("QUEUE_BACKEND=redis requires REDIS_URL")
            cache = RedisCache(self.settings.redis_url)
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise
            self.cache = cache
            self.queue = RedisWorkQueue(cache)
            self.lock = RedisFlowLock(cache, ttl_seconds=self.settings.flow_lock_ttl_seconds)
            self.bus = RedisEventBus(cache)
        else:
            self.queue = MemoryWorkQueue()
            self.lock = MemoryFlowLock()
            self.bus = MemoryEventBus()

        self.secrets = SecretBox(self.settings.secret_encryption_key)
        self.registry = CapabilityRegistry(self.store, self.secrets)
        if self.settings.use_memory_store and not self.store.list_capabilities():
            seed_default_capabilities(self.registry)

        self.handlers = DirectHandlers(self.store)
        self.router = ExecutionRouter(
            self.registry,
            {
                CapabilityKind.DIRECT: DirectExecutor(
                    self.handlers, timeout=self.settings.handler_timeout_seconds
                ),
                CapabilityKind.OUTBOUND_CALL: OutboundCallExecutor(
                    timeout=self.settings.outbound_timeout_seconds
                ),
                CapabilityKind.NOTIFICATION: NotificationExecutor(
                    source_tag=self.settings.event_source_tag,
                    timeout=self.settings.outbound_timeout_seconds,
                ),
                CapabilityKind.COMPOSITE: CompositeExecutor(self.registry),
            },
        )
        self.llm = LLMService(
            self.settings.llm_model,
            api_key=self.settings.llm_api_key,
            base_url=self.settings.llm_base_url,
            temperature=self.settings.planner_temperature,
            max_tokens=self.settings.planner_max_tokens,
        )
        self.planner = FlowPlanner(
            self.store,
            self.registry,
            self.llm,
            self.queue,
            timeout=self.settings.planner_timeout_seconds,
            max_retries=self.settings.flow_max_retries,
        )
        self.publisher = EventPublisher(self.bus)
        self.driver = FlowDriver(
            self.store,
            self.registry,
            self.router,
            self.publisher,
            self.queue,
            self.lock,
            self.planner,
            retry_backoff_seconds=self.settings.flow_retry_backoff_seconds,
        )
        self.workers = FlowWorkerPool(
            self.driver,
            self.queue,
            concurrency=self.settings.worker_concurrency,
            poll_interval=self.settings.worker_poll_interval,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            llm_configured=self.llm.is_configured,
            capabilities=len(self.registry.list_capabilities()),
            worker_concurrency=self.settings.worker_concurrency,
        )

    async def close(self) -> None:
        await self.workers.stop()
        await self.router.close()
        if self.cache is not None:
            await self.cache.close()
        closer = getattr(self.store, "close", None)
        if closer is not None:
            closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
