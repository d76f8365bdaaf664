import json

import httpx
import pytest

from opsflow.service.errors import ParameterValidationError, ValidationError
from opsflow.service.execution import ExecutionContext, ExecutionResult, Outcome
from opsflow.service.executors import (
    CompositeExecutor,
    DirectExecutor,
    NotificationExecutor,
    OutboundCallExecutor,
)
from opsflow.service.router import ExecutionRouter
from opsflow.storage.models import Capability, CapabilityKind

TENANT = "acme"


class RecordingTransport:
    """Collects outbound requests and answers with a canned response."""

    def __init__(self, status_code=200, payload=None):
        self.requests = []
        self.status_code = status_code
        self.payload = payload if payload is not None else {"ok": True}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


def _router(runtime, transport):
    mock = httpx.MockTransport(transport)
    return ExecutionRouter(
        runtime.registry,
        {
            CapabilityKind.DIRECT: DirectExecutor(runtime.handlers),
            CapabilityKind.OUTBOUND_CALL: OutboundCallExecutor(transport=mock),
            CapabilityKind.NOTIFICATION: NotificationExecutor(source_tag="tests", transport=mock),
            CapabilityKind.COMPOSITE: CompositeExecutor(runtime.registry),
        },
    )


def _ctx(**kwargs):
    kwargs.setdefault("tenant_id", TENANT)
    kwargs.setdefault("user_id", "user-1")
    kwargs.setdefault("flow_id", "flow-1")
    return ExecutionContext(**kwargs)


@pytest.fixture
def crm_api(runtime):
    capability = runtime.registry.register(
        Capability(
            slug="crm_push",
            name="CRM push",
            kind=CapabilityKind.OUTBOUND_CALL,
            input_schema={"type": "object", "properties": {"payload": {"type": "string"}}},
            config={
                "api": {
                    "method": "POST",
                    "url": "{{api_url}}/records",
                    "headers": {"Authorization": "Bearer {{api_key}}"},
                    "body_template": {"data": "{{payload}}"},
                }
            },
            secret_fields=["api_url", "api_key"],
        )
    )
    return capability


def test_router_requires_every_kind(runtime):
    with pytest.raises(ValueError):
        ExecutionRouter(runtime.registry, {CapabilityKind.DIRECT: DirectExecutor(runtime.handlers)})


async def test_schema_violation_raises_before_dispatch(runtime):
    router = _router(runtime, RecordingTransport())
    capability = runtime.registry.get_capability("search_tasks", TENANT)

    with pytest.raises(ParameterValidationError) as excinfo:
        await router.execute(capability, {"search": "x", "limit": "many"}, _ctx())

    assert excinfo.value.error_code == "invalid_parameters"
    assert any("limit" in error for error in excinfo.value.errors)


async def test_direct_search_reports_ambiguity(runtime, seed_records):
    seed_records("task", {"title": "Landing page copy"}, {"title": "Landing page hero"})
    router = _router(runtime, RecordingTransport())
    capability = runtime.registry.get_capability("search_tasks", TENANT)

    result = await router.execute(capability, {"search": "landing"}, _ctx())

    assert result.outcome == Outcome.MULTIPLE_MATCHES
    assert result.is_ambiguous
    assert [m["title"] for m in result.data] == ["Landing page copy", "Landing page hero"]
    assert "latency_ms" in result.metadata


async def test_direct_handler_errors_become_failures(runtime):
    router = _router(runtime, RecordingTransport())
    capability = runtime.registry.get_capability("get_task", TENANT)

    result = await router.execute(capability, {"task_id": "nope"}, _ctx())

    assert result.success is False
    assert result.outcome == Outcome.FAILED
    assert result.status_code == 404


async def test_unexpected_exceptions_are_folded(runtime):
    def explode(params, ctx):
        raise RuntimeError("boom")

    runtime.handlers.register("get_task", explode)
    router = _router(runtime, RecordingTransport())
    capability = runtime.registry.get_capability("get_task", TENANT)

    result = await router.execute(capability, {"task_id": "t"}, _ctx())

    assert result.success is False
    assert "RuntimeError" in result.error


async def test_outbound_call_uses_tenant_secrets(runtime, crm_api):
    runtime.registry.configure(
        TENANT, "crm_push", custom_config={"api_url": "https://crm.example.test", "api_key": "k-123"}
    )
    transport = RecordingTransport(payload={"id": "r-9"})
    router = _router(runtime, transport)

    result = await router.execute(crm_api, {"payload": "hello"}, _ctx())

    assert result.success is True
    assert result.data == {"id": "r-9"}
    request = transport.requests[0]
    assert str(request.url) == "https://crm.example.test/records"
    assert request.headers["Authorization"] == "Bearer k-123"
    assert json.loads(request.content) == {"data": "hello"}


async def test_outbound_call_without_secrets_is_rejected(runtime, crm_api):
    router = _router(runtime, RecordingTransport())

    with pytest.raises(ParameterValidationError) as excinfo:
        await router.execute(crm_api, {"payload": "hello"}, _ctx())

    assert excinfo.value.errors == [
        "missing required secret: api_url",
        "missing required secret: api_key",
    ]


async def test_outbound_error_status_is_a_failure(runtime, crm_api):
    runtime.registry.configure(
        TENANT, "crm_push", custom_config={"api_url": "https://crm.example.test", "api_key": "k"}
    )
    router = _router(runtime, RecordingTransport(status_code=503, payload={"error": "down"}))

    result = await router.execute(crm_api, {"payload": "x"}, _ctx())

    assert result.success is False
    assert result.status_code == 503
    assert result.data == {"error": "down"}


async def test_notification_adds_metadata(runtime):
    runtime.registry.configure(
        TENANT,
        "webhook_trigger_template",
        custom_config={"webhook_url": "https://hooks.example.test/in", "webhook_secret": "s3"},
    )
    transport = RecordingTransport()
    router = _router(runtime, transport)
    capability = runtime.registry.get_capability("webhook_trigger_template", TENANT)

    result = await router.execute(capability, {"event_type": "task.done", "event_data": "t-1"}, _ctx())

    assert result.success is True
    body = json.loads(transport.requests[0].content)
    assert body["event"] == "task.done"
    assert body["data"] == "t-1"
    assert body["_metadata"]["source"] == "tests"
    assert body["_metadata"]["flow_id"] == "flow-1"
    assert body["_metadata"]["tenant_id"] == TENANT
    assert transport.requests[0].headers["X-Webhook-Secret"] == "s3"


def _composite(runtime, slug, hops):
    return runtime.registry.register(
        Capability(slug=slug, name=slug, kind=CapabilityKind.COMPOSITE, config={"composite_steps": hops})
    )


async def test_composite_stops_on_first_error(runtime):
    capability = _composite(
        runtime,
        "project_then_task",
        [
            {"skill_slug": "create_project", "params": {"name": "Launch"}},
            {"skill_slug": "get_task", "params": {"task_id": "missing"}},
            {"skill_slug": "create_project", "params": {"name": "Never"}},
        ],
    )
    router = _router(runtime, RecordingTransport())

    result = await router.execute(capability, {}, _ctx())

    assert result.success is False
    assert result.error.startswith("Step 1 (get_task) failed")
    assert [hop["skill"] for hop in result.data] == ["create_project", "get_task"]
    projects = runtime.store.search_records(TENANT, "project", match_fields=("name",))
    assert [p.data["name"] for p in projects] == ["Launch"]


async def test_composite_can_continue_past_errors(runtime):
    capability = _composite(
        runtime,
        "tolerant_chain",
        [
            {"skill_slug": "get_task", "params": {"task_id": "missing"}, "stop_on_error": False},
            {"skill_slug": "create_project", "params": {"name": "Still here"}},
        ],
    )
    router = _router(runtime, RecordingTransport())

    result = await router.execute(capability, {}, _ctx())

    assert result.success is False
    assert result.metadata["partial"] is True
    assert [hop["result"]["success"] for hop in result.data] == [False, True]


async def test_composite_passes_previous_output(runtime):
    seen = []

    def capture(params, ctx):
        seen.append(params)
        return ExecutionResult.ok([])

    runtime.handlers.register("list_projects", capture)
    capability = _composite(
        runtime,
        "chain",
        [
            {"skill_slug": "create_project", "params": {"name": "First"}},
            {"skill_slug": "list_projects", "params": {"name": "Second"}},
        ],
    )
    router = _router(runtime, RecordingTransport())

    result = await router.execute(capability, {}, _ctx())

    assert result.success is True
    assert seen[0]["_previous_output"]["name"] == "First"


async def test_nested_composites_are_rejected(runtime):
    _composite(runtime, "inner", [{"skill_slug": "create_project", "params": {"name": "x"}}])
    outer = _composite(runtime, "outer", [{"skill_slug": "inner"}])
    router = _router(runtime, RecordingTransport())

    result = await router.execute(outer, {}, _ctx())

    assert result.success is False
    assert "nested" in result.error


def test_composite_without_hops_cannot_register(runtime):
    with pytest.raises(ValidationError):
        _composite(runtime, "empty", [])
