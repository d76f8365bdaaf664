import asyncio
import time

import pytest

from opsflow.service.driver import TickOutcome, TickResult
from opsflow.service.queue import MemoryFlowLock, MemoryWorkQueue, TickTask
from opsflow.service.worker import CRASH_RETRY_DELAY_SECONDS, FlowWorkerPool
from opsflow.storage.models import FlowStatus


class ScriptedDriver:
    """Driver double returning queued outcomes and recording ticks."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.ticked = []
        self.failed = []

    async def tick(self, flow_id):
        self.ticked.append(flow_id)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fail_flow(self, flow_id, reason):
        self.failed.append((flow_id, reason))


async def test_enqueue_keeps_one_task_per_flow():
    queue = MemoryWorkQueue()

    await queue.enqueue("f1", delay=10)
    await queue.enqueue("f1")
    await queue.enqueue("f1", delay=5)
    await queue.enqueue("f2")

    assert await queue.pending() == 2
    first = await queue.dequeue(0.1)
    second = await queue.dequeue(0.1)
    assert {first.flow_id, second.flow_id} == {"f1", "f2"}
    assert await queue.dequeue(0.01) is None


async def test_delayed_tasks_wait_until_due():
    queue = MemoryWorkQueue()
    await queue.enqueue("later", delay=0.05)

    assert await queue.dequeue(0.0) is None
    task = await queue.dequeue(1.0)

    assert task.flow_id == "later"


async def test_dequeue_wakes_on_enqueue():
    queue = MemoryWorkQueue()

    async def producer():
        await asyncio.sleep(0.01)
        await queue.enqueue("f1")

    producing = asyncio.create_task(producer())
    task = await queue.dequeue(1.0)
    await producing

    assert task.flow_id == "f1"


async def test_flow_lock_is_exclusive_and_token_checked():
    lock = MemoryFlowLock()

    token = await lock.acquire("f1")
    assert token is not None
    assert await lock.acquire("f1") is None
    assert await lock.acquire("f1", wait=0.01) is None

    await lock.release("f1", "not-the-token")
    assert lock.is_locked("f1")

    await lock.release("f1", token)
    assert not lock.is_locked("f1")
    assert await lock.acquire("f2") is not None


@pytest.mark.parametrize(
    "outcome,expected_pending",
    [
        (TickOutcome.ADVANCED, 1),
        (TickOutcome.RETRY_SCHEDULED, 1),
        (TickOutcome.LOCKED, 1),
        (TickOutcome.SUSPENDED, 0),
        (TickOutcome.COMPLETED, 0),
        (TickOutcome.FAILED, 0),
    ],
)
async def test_process_enqueues_follow_up_by_outcome(outcome, expected_pending):
    queue = MemoryWorkQueue()
    driver = ScriptedDriver(TickResult(outcome, "f1", retry_delay=0.5))
    pool = FlowWorkerPool(driver, queue)

    result = await pool.process(TickTask(flow_id="f1"))

    assert result.outcome == outcome
    assert await queue.pending() == expected_pending


async def test_crashing_tick_is_retried_then_fails_the_flow():
    queue = MemoryWorkQueue()
    driver = ScriptedDriver(RuntimeError("boom"), RuntimeError("boom"))
    pool = FlowWorkerPool(driver, queue, max_tick_attempts=2)

    assert await pool.process(TickTask(flow_id="f1")) is None
    assert await queue.pending() == 1
    assert queue._tasks["f1"].attempt == 1
    assert queue._tasks["f1"].due_at - time.time() > CRASH_RETRY_DELAY_SECONDS / 2

    await pool.process(TickTask(flow_id="f1", attempt=1))

    assert driver.failed == [("f1", "flow tick failed 2 times: RuntimeError")]


async def test_pool_drains_a_real_flow(runtime, use_plan):
    use_plan(
        {
            "steps": [
                {"type": "tool_call", "skill": "create_project", "params": {"name": "Launch"}},
                {"type": "wait"},
            ]
        }
    )
    flow = await runtime.planner.plan("create a project and then wait", "user-1", "acme")
    pool = FlowWorkerPool(runtime.driver, runtime.queue, concurrency=2, poll_interval=0.01)

    await pool.start()
    try:
        for _ in range(200):
            if runtime.store.get_flow(flow.id).status == FlowStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
    finally:
        await pool.stop()

    assert runtime.store.get_flow(flow.id).status == FlowStatus.COMPLETED
    assert not pool.running


async def test_flow_lock_forgets_released_flows():
    lock = MemoryFlowLock()

    token = await lock.acquire("f1")
    assert await lock.acquire("f1", wait=0.01) is None
    assert "f1" in lock._locks

    await lock.release("f1", token)
    assert lock._locks == {}
    assert lock._waiting == {}


async def test_flow_lock_hands_over_to_a_waiter():
    lock = MemoryFlowLock()
    token = await lock.acquire("f1")

    waiter = asyncio.ensure_future(lock.acquire("f1", wait=1.0))
    await asyncio.sleep(0)
    await lock.release("f1", token)
    handed = await waiter

    assert handed is not None
    assert lock.is_locked("f1")
    await lock.release("f1", handed)
    assert lock._locks == {}
