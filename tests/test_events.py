import asyncio

from opsflow.service.events import (
    STEP_COMPLETED,
    USER_INPUT_REQUIRED,
    EventPublisher,
    MemoryEventBus,
    flow_channel,
    user_channel,
)


class BrokenBus:
    async def publish(self, channel, message):
        raise ConnectionError("redis gone")


async def test_subscribers_receive_published_messages():
    bus = MemoryEventBus()
    stream = bus.subscribe([user_channel("u1")])
    receiving = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)

    await bus.publish(user_channel("u1"), {"event": "ping"})
    await bus.publish(user_channel("u2"), {"event": "other"})

    assert await asyncio.wait_for(receiving, 1.0) == {"event": "ping"}
    await stream.aclose()
    assert bus._subscribers == {}


async def test_history_is_bounded():
    bus = MemoryEventBus(history_size=3)

    for n in range(5):
        await bus.publish("c", {"n": n})

    assert [m["n"] for m in bus.events("c")] == [2, 3, 4]


async def test_driver_events_reach_user_and_flow_channels(runtime, use_plan):
    use_plan({"steps": [{"type": "wait"}, {"type": "user_prompt", "title": "Anything else?"}]})
    flow = await runtime.planner.plan("wait and then ask me", "user-1", "acme")

    await runtime.driver.run_to_suspension(flow.id)

    by_user = runtime.bus.events(user_channel("user-1"))
    by_flow = runtime.bus.events(flow_channel(flow.id))
    assert [m["event"] for m in by_user] == [STEP_COMPLETED, USER_INPUT_REQUIRED]
    assert by_user == by_flow
    completed = by_user[0]["data"]
    assert completed["completed_steps"] == 1
    assert completed["total_steps"] == 2
    assert completed["progress"] == 50.0
    prompt = by_user[1]["data"]
    assert prompt["prompt_message"] == "Anything else?"
    assert prompt["prompt_type"] == "text"


async def test_publish_failures_do_not_raise(runtime, use_plan):
    use_plan({"steps": [{"type": "wait"}]})
    flow = await runtime.planner.plan("just wait", "user-1", "acme")
    runtime.driver.publisher = EventPublisher(BrokenBus())

    result = await runtime.driver.run_to_suspension(flow.id)

    assert result.outcome.value == "completed"


async def test_ambiguous_search_reports_the_step_before_the_prompt(runtime, use_plan, seed_records):
    seed_records("task", {"title": "Landing page"}, {"title": "Landing page v2"})
    use_plan(
        {
            "steps": [
                {"type": "tool_call", "skill": "search_tasks", "title": "Find task", "params": {"title": "Landing page"}},
                {"type": "wait"},
            ]
        }
    )
    flow = await runtime.planner.plan("find the landing page task", "user-1", "acme")

    await runtime.driver.run_to_suspension(flow.id)

    messages = runtime.bus.events(flow_channel(flow.id))
    assert [m["event"] for m in messages] == [STEP_COMPLETED, USER_INPUT_REQUIRED]
    assert messages[0]["data"]["completed_steps"] == 1
    assert messages[1]["data"]["prompt_type"] == "choice"
