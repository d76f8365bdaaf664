from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from typing import Iterable, List, Optional

from fastapi import APIRouter, Depends, Header, Path, WebSocket, WebSocketDisconnect

from opsflow.api.schemas import (
    CapabilityResponse,
    CapabilitySettingResponse,
    CapabilitySettingsRequest,
    Envelope,
    FlowCreateRequest,
    FlowLogResponse,
    FlowResponse,
    FlowStepResponse,
    PlanCheckRequest,
    PlanCheckResponse,
    StepInsertRequest,
    StepResponseRequest,
)
from opsflow.logging import get_correlation_id, get_logger
from opsflow.service.errors import ForbiddenError, NotFoundError, ValidationError
from opsflow.service.events import flow_channel, user_channel
from opsflow.service.planner import should_create_flow
from opsflow.service.runtime import get_runtime
from opsflow.storage.models import ACTIVE_FLOW_STATUSES, Flow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Caller:
    user_id: str
    tenant_id: str


def get_caller(
    x_user_id: Optional[str] = Header(default=None, max_length=255),
    x_tenant_id: Optional[str] = Header(default=None, max_length=255),
) -> Caller:
    if not x_user_id:
        raise ValidationError("X-User-Id header is required")
    tenant_id = x_tenant_id or get_runtime().settings.default_tenant_id
    return Caller(user_id=x_user_id, tenant_id=tenant_id)


def get_tenant_caller(
    x_user_id: Optional[str] = Header(default=None, max_length=255),
    x_tenant_id: Optional[str] = Header(default=None, max_length=255),
) -> Caller:
    if not x_tenant_id:
        raise ValidationError("X-Tenant-Id header is required")
    return get_caller(x_user_id, x_tenant_id)


def _ok(data) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return envelope


def _get_owned_flow(flow_id: str, caller: Caller) -> Flow:
    flow = get_runtime().store.get_flow(flow_id)
    if flow is None:
        raise NotFoundError("flow not found", detail={"flow_id": flow_id})
    if flow.user_id != caller.user_id:
        raise ForbiddenError("flow belongs to another user", detail={"flow_id": flow_id})
    return flow


# flows
@router.post("/flows/plan-check", response_model=Envelope, tags=["flows"])
async def plan_check(body: PlanCheckRequest):
    return _ok(PlanCheckResponse(should_create_flow=should_create_flow(body.message)))


@router.post("/flows", response_model=Envelope, status_code=201, tags=["flows"])
async def create_flow(body: FlowCreateRequest, caller: Caller = Depends(get_tenant_caller)):
    runtime = get_runtime()
    flow = await runtime.planner.plan(
        body.request,
        caller.user_id,
        caller.tenant_id,
        conversation_id=body.conversation_id,
    )
    return _ok(FlowResponse.from_model(flow))


@router.get("/flows", response_model=Envelope, tags=["flows"])
async def list_active_flows(caller: Caller = Depends(get_caller)):
    flows = get_runtime().store.list_flows(
        caller.user_id, tenant_id=caller.tenant_id, statuses=ACTIVE_FLOW_STATUSES
    )
    return _ok([FlowResponse.from_model(f) for f in flows])


@router.get("/flows/{flow_id}", response_model=Envelope, tags=["flows"])
async def get_flow(
    flow_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    return _ok(FlowResponse.from_model(_get_owned_flow(flow_id, caller)))


@router.get("/flows/{flow_id}/logs", response_model=Envelope, tags=["flows"])
async def get_flow_logs(
    flow_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    _get_owned_flow(flow_id, caller)
    entries = get_runtime().store.list_logs(flow_id)
    return _ok([FlowLogResponse.from_model(e) for e in entries])


@router.post("/flows/{flow_id}/steps/{step_id}/respond", response_model=Envelope, tags=["flows"])
async def respond_to_step(
    body: StepResponseRequest,
    flow_id: str = Path(..., max_length=255),
    step_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    flow = await get_runtime().driver.respond(flow_id, step_id, body.response, user_id=caller.user_id)
    return _ok(FlowResponse.from_model(flow))


@router.post("/flows/{flow_id}/cancel", response_model=Envelope, tags=["flows"])
async def cancel_flow(
    flow_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    flow = await get_runtime().driver.cancel(flow_id, user_id=caller.user_id)
    return _ok(FlowResponse.from_model(flow))


@router.post("/flows/{flow_id}/retry", response_model=Envelope, tags=["flows"])
async def retry_flow(
    flow_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    flow = await get_runtime().driver.retry(flow_id, user_id=caller.user_id)
    return _ok(FlowResponse.from_model(flow))


@router.post("/flows/{flow_id}/steps", response_model=Envelope, status_code=201, tags=["flows"])
async def insert_flow_step(
    body: StepInsertRequest,
    flow_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    step = await get_runtime().driver.insert_step(
        flow_id, body.after_position, body.step, user_id=caller.user_id
    )
    return _ok(FlowStepResponse.from_model(step))


@router.delete("/flows/{flow_id}/steps/{step_id}", response_model=Envelope, tags=["flows"])
async def delete_flow_step(
    flow_id: str = Path(..., max_length=255),
    step_id: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    step = await get_runtime().driver.delete_step(flow_id, step_id, user_id=caller.user_id)
    return _ok(FlowStepResponse.from_model(step))


# capabilities
@router.get("/capabilities", response_model=Envelope, tags=["capabilities"])
async def list_capabilities(caller: Caller = Depends(get_caller)):
    capabilities = get_runtime().registry.list_capabilities(caller.tenant_id)
    return _ok([CapabilityResponse.from_model(c) for c in capabilities])


@router.get("/capabilities/{slug}", response_model=Envelope, tags=["capabilities"])
async def get_capability(
    slug: str = Path(..., max_length=255),
    caller: Caller = Depends(get_caller),
):
    capability = get_runtime().registry.get_capability(slug, caller.tenant_id)
    return _ok(CapabilityResponse.from_model(capability))


@router.put("/capabilities/{slug}/settings", response_model=Envelope, tags=["capabilities"])
async def update_capability_settings(
    body: CapabilitySettingsRequest,
    slug: str = Path(..., max_length=255),
    caller: Caller = Depends(get_tenant_caller),
):
    setting = get_runtime().registry.configure(
        caller.tenant_id, slug, enabled=body.enabled, custom_config=body.custom_config
    )
    return _ok(
        CapabilitySettingResponse(
            slug=setting.slug,
            tenant_id=setting.tenant_id,
            enabled=setting.enabled,
            configured=bool(setting.custom_config_encrypted),
            updated_at=setting.updated_at,
        )
    )


# event streams
def _ws_caller(ws: WebSocket) -> Optional[Caller]:
    user_id = ws.headers.get("x-user-id") or ws.query_params.get("user_id")
    if not user_id:
        return None
    tenant_id = (
        ws.headers.get("x-tenant-id")
        or ws.query_params.get("tenant_id")
        or get_runtime().settings.default_tenant_id
    )
    return Caller(user_id=user_id, tenant_id=tenant_id)


async def _stream_events(ws: WebSocket, channels: Iterable[str]) -> None:
    """Forward bus messages to the socket until the client goes away."""
    runtime = get_runtime()
    names: List[str] = list(channels)

    async def listen_for_client():
        try:
            while True:
                message = await ws.receive_json()
                if isinstance(message, dict) and message.get("action") == "ping":
                    await ws.send_json({"event": "pong", "data": None})
        except WebSocketDisconnect:
            return
        except ValueError:
            logger.warning("websocket_invalid_json", channels=names)

    listener = asyncio.create_task(listen_for_client())
    subscription = runtime.bus.subscribe(names)
    pending_message: Optional[asyncio.Future] = None
    try:
        while True:
            pending_message = asyncio.ensure_future(subscription.__anext__())
            done, _ = await asyncio.wait(
                {pending_message, listener}, return_when=asyncio.FIRST_COMPLETED
            )
            if pending_message not in done:
                break
            await ws.send_json(pending_message.result())
            pending_message = None
    except (WebSocketDisconnect, StopAsyncIteration):
        pass
    finally:
        listener.cancel()
        if pending_message is not None and not pending_message.done():
            pending_message.cancel()
            with suppress(asyncio.CancelledError, StopAsyncIteration):
                await pending_message
        await subscription.aclose()
        logger.info("websocket_event_stream_closed", channels=names)


@router.websocket("/flows/events")
async def user_flow_events(ws: WebSocket):
    caller = _ws_caller(ws)
    if caller is None:
        await ws.close(code=4401)
        return
    await ws.accept()
    await _stream_events(ws, [user_channel(caller.user_id)])


@router.websocket("/flows/{flow_id}/events")
async def single_flow_events(ws: WebSocket, flow_id: str):
    caller = _ws_caller(ws)
    if caller is None:
        await ws.close(code=4401)
        return
    flow = get_runtime().store.get_flow(flow_id)
    if flow is None or flow.user_id != caller.user_id:
        await ws.close(code=4403)
        return
    await ws.accept()
    # a snapshot first so a late subscriber never starts from a missed event
    await ws.send_json(
        {"event": "flow.snapshot", "data": FlowResponse.from_model(flow).model_dump(mode="json")}
    )
    await _stream_events(ws, [flow_channel(flow_id)])
