"""Background worker pool that drains the advancement queue.

Each worker loops dequeue -> tick -> follow-up enqueue. The pool never
busy-waits on a suspended flow: a tick that suspends simply schedules
nothing, and the user's response enqueues the next tick.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional

from opsflow.logging import get_logger, set_correlation_id
from opsflow.service.driver import TickOutcome, TickResult
from opsflow.service.queue import TickTask, WorkQueue

if TYPE_CHECKING:
    from opsflow.service.driver import FlowDriver

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_POLL_INTERVAL_SECONDS = 0.5
MAX_TICK_ATTEMPTS = 3
LOCKED_RETRY_DELAY_SECONDS = 0.25
CRASH_RETRY_DELAY_SECONDS = 1.0


class FlowWorkerPool:
    """Fixed pool of asyncio workers ticking flows pulled from a work queue."""

    def __init__(
        self,
        driver: "FlowDriver",
        queue: WorkQueue,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_tick_attempts: int = MAX_TICK_ATTEMPTS,
    ) -> None:
        self.driver = driver
        self.queue = queue
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.max_tick_attempts = max_tick_attempts
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            logger.warning("flow_worker_pool_already_running")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop(index), name=f"flow-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("flow_worker_pool_started", concurrency=self.concurrency, poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the worker tasks; an in-flight tick is cancelled."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("flow_worker_pool_stopped")

    async def _run_loop(self, index: int) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                task = await self.queue.dequeue(self.poll_interval)
                if task is not None:
                    await self.process(task)
                consecutive_errors = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "flow_worker_loop_error",
                    worker=index,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(300, self.poll_interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "flow_worker_backoff",
                        worker=index,
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)

    async def process(self, task: TickTask) -> Optional[TickResult]:
        """Run one tick and enqueue whatever follow-up its outcome calls for."""
        set_correlation_id(f"tick-{task.flow_id}")
        try:
            result = await self.driver.tick(task.flow_id)
        except Exception as exc:
            attempt = task.attempt + 1
            logger.error(
                "flow_tick_crashed",
                flow_id=task.flow_id,
                attempt=attempt,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if attempt >= self.max_tick_attempts:
                await self.driver.fail_flow(
                    task.flow_id, f"flow tick failed {attempt} times: {type(exc).__name__}"
                )
            else:
                await self.queue.enqueue(
                    task.flow_id, CRASH_RETRY_DELAY_SECONDS * 2 ** (attempt - 1), attempt=attempt
                )
            await self.queue.ack(task)
            return None

        if result.outcome == TickOutcome.ADVANCED:
            await self.queue.enqueue(task.flow_id)
        elif result.outcome == TickOutcome.RETRY_SCHEDULED:
            await self.queue.enqueue(task.flow_id, result.retry_delay or 0.0)
        elif result.outcome == TickOutcome.LOCKED:
            await self.queue.enqueue(task.flow_id, LOCKED_RETRY_DELAY_SECONDS, attempt=task.attempt)
        await self.queue.ack(task)
        logger.debug("flow_tick_processed", flow_id=task.flow_id, outcome=result.outcome.value)
        return result
