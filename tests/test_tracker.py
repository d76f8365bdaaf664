import httpx
import pytest

from opsflow.client.tracker import BackoffPolicy, FlowTracker, TrackerError, TrackerTimeout


def _flow(status, **extra):
    flow = {"id": "f1", "status": status, "steps": [], "current_step_id": None}
    flow.update(extra)
    return flow


class FakeApi:
    """Serves a scripted sequence of flow snapshots."""

    def __init__(self, *snapshots):
        self.snapshots = list(snapshots)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/flows/missing":
            return httpx.Response(
                404,
                json={"status": "error", "error": {"code": "not_found", "message": "flow not found"}},
            )
        snapshot = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        return httpx.Response(200, json={"status": "ok", "data": snapshot})


def _tracker(api, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api), base_url="http://api.test")
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    tracker = FlowTracker(client, user_id="user-1", tenant_id="acme", sleep=fake_sleep, **kwargs)
    return tracker, sleeps


def test_backoff_delays_are_capped():
    policy = BackoffPolicy(initial_interval=1, multiplier=2, max_interval=5, max_attempts=6, max_duration=100)

    assert list(policy.delays()) == [1, 2, 4, 5, 5, 5]


def test_backoff_stops_at_max_duration():
    policy = BackoffPolicy(initial_interval=1, multiplier=2, max_interval=30, max_attempts=20, max_duration=10)

    assert list(policy.delays()) == [1, 2, 4]


async def test_wait_until_settled_polls_with_backoff():
    api = FakeApi(_flow("pending"), _flow("running"), _flow("completed"))
    tracker, sleeps = _tracker(api, policy=BackoffPolicy(initial_interval=0.5))

    flow = await tracker.wait_until_settled("f1")

    assert flow["status"] == "completed"
    assert sleeps == [0.5, 1.0]
    assert "f1" not in tracker.active_flows
    assert api.requests[0].headers["X-User-Id"] == "user-1"


async def test_wait_until_settled_gives_up():
    api = FakeApi(_flow("running"))
    tracker, sleeps = _tracker(api, policy=BackoffPolicy(initial_interval=1, max_attempts=3))

    with pytest.raises(TrackerTimeout) as excinfo:
        await tracker.wait_until_settled("f1")

    assert excinfo.value.attempts == 3
    assert sleeps == [1, 2, 4]


async def test_awaiting_flow_exposes_pending_prompt():
    step = {"id": "s2", "prompt_type": "choice", "prompt_message": "Pick one", "prompt_options": [{"value": "1"}]}
    api = FakeApi(_flow("awaiting_user", steps=[step], current_step_id="s2"))
    tracker, _ = _tracker(api)

    await tracker.refresh("f1")

    assert tracker.pending_prompt["step_id"] == "s2"
    assert tracker.pending_prompt["prompt_options"] == [{"value": "1"}]
    assert "f1" in tracker.active_flows


async def test_error_envelope_raises_tracker_error():
    tracker, _ = _tracker(FakeApi(_flow("running")))

    with pytest.raises(TrackerError) as excinfo:
        await tracker.refresh("missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.code == "not_found"


def test_apply_event_tracks_prompts_and_completion():
    tracker, _ = _tracker(FakeApi(_flow("running")))

    tracker.apply_event(
        {"event": "flow.step_completed", "data": {"flow_id": "f1", "completed_steps": 1, "total_steps": 3, "progress": 33.3}}
    )
    assert tracker.active_flows["f1"]["progress"] == 33.3

    tracker.apply_event(
        {
            "event": "flow.user_input_required",
            "data": {"flow_id": "f1", "step_id": "s2", "prompt_type": "text", "prompt_message": "Name?"},
        }
    )
    assert tracker.active_flows["f1"]["status"] == "awaiting_user"
    assert tracker.pending_prompt["prompt_message"] == "Name?"

    tracker.apply_event({"event": "flow.completed", "data": {"flow_id": "f1", "suggestions": [{"action": "x"}]}})
    assert tracker.active_flows == {}
    assert tracker.pending_prompt is None
    assert tracker.suggestions["f1"] == [{"action": "x"}]

    tracker.apply_event({"event": "flow.unknown", "data": {}})
    assert tracker.active_flows == {}


def test_apply_event_ignores_unknown_events_for_a_flow():
    tracker, _ = _tracker(FakeApi(_flow("running")))
    tracker.apply_event({"event": "flow.step_completed", "data": {"flow_id": "f1", "progress": 10.0}})

    tracker.apply_event({"event": "flow.something_new", "data": {"flow_id": "f1", "progress": 99.0}})
    tracker.apply_event({"event": "flow.something_new", "data": {"flow_id": "f2"}})

    assert list(tracker.active_flows) == ["f1"]
    assert tracker.active_flows["f1"]["progress"] == 10.0
    assert tracker.pending_prompt is None
