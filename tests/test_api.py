import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from opsflow import app as app_module

HEADERS = {"X-User-Id": "user-1", "X-Tenant-Id": "acme"}

PLAN = {
    "title": "Project setup",
    "steps": [
        {"type": "tool_call", "skill": "create_project", "params": {"title": "Launch"}},
        {"type": "user_prompt", "prompt_type": "confirm", "title": "Add the kickoff task?"},
        {
            "type": "tool_call",
            "skill": "create_task",
            "params": {"title": "Kickoff"},
            "mappings": {"project_id": "{{steps.0.result.data.id}}"},
        },
    ],
}


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _create(client, use_plan, plan=PLAN):
    use_plan(plan)
    resp = client.post("/v1/flows", json={"request": "Create project Launch and then add a kickoff task"}, headers=HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_healthz(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert body["checks"]["workers"]["running"] is False


def test_plan_check(client):
    resp = client.post("/v1/flows/plan-check", json={"message": "Create a project and then invite Bob"})

    assert resp.json()["data"] == {"should_create_flow": True}
    assert resp.headers["Cache-Control"] == "no-store"


def test_missing_user_header_is_rejected(client):
    resp = client.get("/v1/flows")

    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"


def test_create_flow_requires_tenant(client, use_plan):
    use_plan(PLAN)

    resp = client.post("/v1/flows", json={"request": "do a and then b"}, headers={"X-User-Id": "user-1"})

    assert resp.status_code == 400
    assert "X-Tenant-Id" in resp.json()["error"]["message"]


def test_create_flow_rejects_blank_request(client, use_plan):
    use_plan(PLAN)

    resp = client.post("/v1/flows", json={"request": "   "}, headers=HEADERS)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_create_flow_planning_failure(client, use_plan):
    use_plan("this is not a plan")

    resp = client.post("/v1/flows", json={"request": "do a and then b"}, headers=HEADERS)

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "planning_failed"


def test_flow_lifecycle_over_http(client, runtime, use_plan):
    flow = _create(client, use_plan)
    assert flow["status"] == "pending"
    assert flow["total_steps"] == 3
    assert flow["steps"][0]["input_params"] == {"name": "Launch"}

    listed = client.get("/v1/flows", headers=HEADERS).json()["data"]
    assert [f["id"] for f in listed] == [flow["id"]]

    asyncio.run(runtime.driver.run_to_suspension(flow["id"]))
    current = client.get(f"/v1/flows/{flow['id']}", headers=HEADERS).json()["data"]
    assert current["status"] == "awaiting_user"
    prompt_id = current["current_step_id"]
    assert current["steps"][1]["id"] == prompt_id

    responded = client.post(
        f"/v1/flows/{flow['id']}/steps/{prompt_id}/respond", json={"response": "yes"}, headers=HEADERS
    )
    assert responded.status_code == 200
    assert responded.json()["data"]["status"] == "running"

    asyncio.run(runtime.driver.run_to_suspension(flow["id"]))
    done = client.get(f"/v1/flows/{flow['id']}", headers=HEADERS).json()["data"]
    assert done["status"] == "completed"
    assert done["progress"] == 100.0
    project_id = done["steps"][0]["result"]["data"]["id"]
    assert done["steps"][2]["result"]["data"]["project_id"] == project_id

    logs = client.get(f"/v1/flows/{flow['id']}/logs", headers=HEADERS).json()["data"]
    assert logs[0]["log_type"] == "flow_created"
    assert logs[-1]["log_type"] == "flow_completed"
    assert client.get("/v1/flows", headers=HEADERS).json()["data"] == []


def test_respond_to_idle_step_is_conflict(client, use_plan):
    flow = _create(client, use_plan)

    resp = client.post(
        f"/v1/flows/{flow['id']}/steps/{flow['steps'][2]['id']}/respond", json={"response": "x"}, headers=HEADERS
    )

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "step_not_awaiting_input"


def test_respond_requires_a_value(client, use_plan):
    flow = _create(client, use_plan)

    resp = client.post(
        f"/v1/flows/{flow['id']}/steps/{flow['steps'][1]['id']}/respond", json={"response": None}, headers=HEADERS
    )

    assert resp.status_code == 400


def test_other_users_cannot_read_a_flow(client, use_plan):
    flow = _create(client, use_plan)
    stranger = {"X-User-Id": "user-2", "X-Tenant-Id": "acme"}

    assert client.get(f"/v1/flows/{flow['id']}", headers=stranger).status_code == 403
    assert client.post(f"/v1/flows/{flow['id']}/cancel", headers=stranger).status_code == 403
    assert client.get("/v1/flows/nope", headers=HEADERS).status_code == 404


def test_cancel_and_retry(client, runtime, use_plan):
    flow = _create(client, use_plan)

    retry = client.post(f"/v1/flows/{flow['id']}/retry", headers=HEADERS)
    assert retry.status_code == 200
    assert retry.json()["data"]["status"] == "pending"

    cancelled = client.post(f"/v1/flows/{flow['id']}/cancel", headers=HEADERS).json()["data"]
    assert cancelled["status"] == "cancelled"
    assert {s["status"] for s in cancelled["steps"]} == {"cancelled"}

    resp = client.post(f"/v1/flows/{flow['id']}/retry", headers=HEADERS)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "invalid_flow_state"


def test_insert_and_delete_steps(client, use_plan):
    flow = _create(client, use_plan)

    inserted = client.post(
        f"/v1/flows/{flow['id']}/steps",
        json={"after_position": 0, "step": {"type": "wait", "title": "Pause"}},
        headers=HEADERS,
    )
    assert inserted.status_code == 201
    step = inserted.json()["data"]
    assert step["position"] == 1

    fresh = client.get(f"/v1/flows/{flow['id']}", headers=HEADERS).json()["data"]
    assert fresh["total_steps"] == 4
    # the mapping into step 0 is unaffected; later references would have moved
    assert fresh["steps"][3]["param_mappings"] == {"project_id": "{{steps.0.result.data.id}}"}

    deleted = client.delete(f"/v1/flows/{flow['id']}/steps/{step['id']}", headers=HEADERS)
    assert deleted.status_code == 200
    assert client.get(f"/v1/flows/{flow['id']}", headers=HEADERS).json()["data"]["total_steps"] == 3

    bad = client.post(
        f"/v1/flows/{flow['id']}/steps",
        json={"after_position": 0, "step": {"type": "tool_call", "skill": "teleport"}},
        headers=HEADERS,
    )
    assert bad.status_code == 400


def test_capabilities_and_tenant_settings(client):
    listed = client.get("/v1/capabilities", headers=HEADERS).json()["data"]
    slugs = {c["slug"] for c in listed}
    assert "search_tasks" in slugs
    assert "http_request_template" not in slugs

    assert client.get("/v1/capabilities/http_request_template", headers=HEADERS).status_code == 404

    resp = client.put(
        "/v1/capabilities/http_request_template/settings",
        json={"enabled": True, "custom_config": {"api_url": "https://crm.example.test", "api_key": "k"}},
        headers=HEADERS,
    )
    assert resp.status_code == 200
    setting = resp.json()["data"]
    assert setting == {**setting, "slug": "http_request_template", "tenant_id": "acme", "enabled": True, "configured": True}
    assert "api_key" not in resp.text

    detail = client.get("/v1/capabilities/http_request_template", headers=HEADERS).json()["data"]
    assert detail["secret_fields"] == ["api_url", "api_key"]
    other_tenant = {"X-User-Id": "user-1", "X-Tenant-Id": "globex"}
    assert client.get("/v1/capabilities/http_request_template", headers=other_tenant).status_code == 404

    missing = client.put("/v1/capabilities/nope/settings", json={"enabled": True}, headers=HEADERS)
    assert missing.status_code == 404


def test_request_id_is_echoed(client):
    resp = client.get("/v1/flows", headers={**HEADERS, "X-Request-ID": "req-123"})

    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.json()["request_id"] == "req-123"


def test_flow_event_stream_sends_snapshot(client, use_plan):
    flow = _create(client, use_plan)

    with client.websocket_connect(f"/v1/flows/{flow['id']}/events", headers=HEADERS) as ws:
        snapshot = ws.receive_json()
        ws.send_json({"action": "ping"})
        pong = ws.receive_json()

    assert snapshot["event"] == "flow.snapshot"
    assert snapshot["data"]["id"] == flow["id"]
    assert pong["event"] == "pong"


def test_flow_event_stream_rejects_strangers(client, use_plan):
    flow = _create(client, use_plan)

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"/v1/flows/{flow['id']}/events?user_id=user-2"):
            pass

    assert excinfo.value.code == 4403


def test_main_serves_the_app_on_the_configured_port(monkeypatch):
    calls = []
    monkeypatch.setattr(app_module.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    monkeypatch.setenv("HOST", "0.0.0.0")
    monkeypatch.setenv("PORT", "9100")

    app_module.main()

    assert calls == [("opsflow.app:app", {"host": "0.0.0.0", "port": 9100, "log_config": None})]
