"""One executor per capability kind.

Executors receive parameters that already passed schema validation and return
an :class:`ExecutionResult`. They may raise :class:`CapabilityExecutionError`;
the router folds any exception into a failure envelope.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from opsflow.logging import get_logger
from opsflow.service.errors import CapabilityExecutionError
from opsflow.service.execution import ExecutionContext, ExecutionResult
from opsflow.service.expressions import interpolate
from opsflow.service.handlers import DirectHandlers
from opsflow.storage.models import Capability, CapabilityKind

logger = get_logger(__name__)

SUPPORTED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
_BODY_METHODS = {"POST", "PUT", "PATCH"}

HopDispatch = Callable[[Capability, Dict[str, Any], ExecutionContext], Awaitable[ExecutionResult]]


class CapabilityExecutor(Protocol):
    kind: CapabilityKind

    async def execute(
        self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext
    ) -> ExecutionResult: ...


class DirectExecutor:
    kind = CapabilityKind.DIRECT

    def __init__(self, handlers: DirectHandlers, *, timeout: float = 30.0) -> None:
        self.handlers = handlers
        self.timeout = timeout

    async def execute(
        self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext
    ) -> ExecutionResult:
        handler_name = capability.config.get("handler") or capability.slug
        handler = self.handlers.get(handler_name)
        if handler is None:
            raise CapabilityExecutionError(f"no internal handler registered for {handler_name}")
        try:
            return await asyncio.wait_for(asyncio.to_thread(handler, params, ctx), self.timeout)
        except asyncio.TimeoutError as exc:
            raise CapabilityExecutionError(
                f"{capability.slug} timed out after {self.timeout:.0f}s"
            ) from exc


class _HttpExecutor:
    """Shared HTTP plumbing for outbound calls and notifications."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0)),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _merged_config(capability: Capability, ctx: ExecutionContext) -> Dict[str, Any]:
        # Tenant configuration may override any api key, including url and method.
        return {**(capability.config.get("api") or {}), **ctx.custom_config}

    @staticmethod
    def _variables(params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        # Parameters win over tenant configuration on name collision.
        return {**ctx.custom_config, **params}

    @staticmethod
    def _headers(templates: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, str]:
        headers = {key: str(interpolate(value, variables)) for key, value in (templates or {}).items()}
        if not any(key.lower() == "content-type" for key in headers):
            headers["Content-Type"] = "application/json"
        return headers

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _send(
        self,
        capability: Capability,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        if not url or "{{" in url:
            raise CapabilityExecutionError(f"{capability.slug} has no resolvable url configured")
        client = await self._get_client()
        try:
            return await client.request(
                method,
                url,
                headers=headers,
                params=params,
                json=body,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            logger.warning("capability_http_timeout", slug=capability.slug, url=url)
            raise CapabilityExecutionError(f"request to {capability.slug} timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("capability_http_error", slug=capability.slug, url=url, error=str(exc))
            raise CapabilityExecutionError(f"request to {capability.slug} failed: {exc}") from exc


class OutboundCallExecutor(_HttpExecutor):
    kind = CapabilityKind.OUTBOUND_CALL

    async def execute(
        self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext
    ) -> ExecutionResult:
        config = self._merged_config(capability, ctx)
        variables = self._variables(params, ctx)
        method = str(config.get("method") or "GET").upper()
        if method not in SUPPORTED_METHODS:
            raise CapabilityExecutionError(f"unsupported HTTP method: {method}")
        url = str(interpolate(config.get("url") or "", variables))
        headers = self._headers(config.get("headers") or {}, variables)
        body = None
        if method in _BODY_METHODS:
            body = interpolate(config.get("body_template") or {}, variables)
        response = await self._send(
            capability,
            method,
            url,
            headers=headers,
            params=params if method == "GET" else None,
            body=body,
            timeout=config.get("timeout"),
        )
        payload = self._decode(response)
        if response.is_success:
            return ExecutionResult.ok(payload, status_code=response.status_code, message="API call successful")
        return ExecutionResult.failure(
            f"API returned {response.status_code}: {response.text}",
            status_code=response.status_code,
            data=payload if not isinstance(payload, str) else None,
        )


class NotificationExecutor(_HttpExecutor):
    """Fire-and-forget POST; failures are reported, never retried here."""

    kind = CapabilityKind.NOTIFICATION

    def __init__(self, *, source_tag: str = "opsflow", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.source_tag = source_tag

    def _payload(self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext) -> Dict[str, Any]:
        template = (
            capability.config.get("payload_template")
            or (capability.config.get("api") or {}).get("payload_template")
            or (capability.config.get("api") or {}).get("body_template")
        )
        variables = self._variables(params, ctx)
        payload = interpolate(template, variables) if template else dict(params)
        if not isinstance(payload, dict):
            payload = {"data": payload}
        payload.setdefault(
            "_metadata",
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "source": self.source_tag,
                "flow_id": ctx.flow_id,
                "tenant_id": ctx.tenant_id,
            },
        )
        return payload

    async def execute(
        self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext
    ) -> ExecutionResult:
        config = self._merged_config(capability, ctx)
        variables = self._variables(params, ctx)
        url = str(interpolate(config.get("url") or "", variables))
        headers = self._headers(config.get("headers") or {}, variables)
        response = await self._send(
            capability,
            "POST",
            url,
            headers=headers,
            body=self._payload(capability, params, ctx),
            timeout=config.get("timeout"),
        )
        if response.is_success:
            payload = self._decode(response) or {"message": "Webhook sent successfully"}
            return ExecutionResult.ok(payload, status_code=response.status_code, message="Webhook triggered")
        return ExecutionResult.failure(
            f"Webhook returned {response.status_code}: {response.text}",
            status_code=response.status_code,
        )


class CompositeExecutor:
    """Runs an ordered chain of other capabilities.

    Each hop is ``{skill_slug, params, stop_on_error=True, pass_output=True}``.
    Hop params are layered over the caller's params; with ``pass_output`` the
    previous hop's data arrives as ``_previous_output``. Composite hops are
    rejected so chains never nest.
    """

    kind = CapabilityKind.COMPOSITE

    def __init__(self, registry, dispatch: Optional[HopDispatch] = None) -> None:
        self.registry = registry
        self.dispatch = dispatch

    async def execute(
        self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext
    ) -> ExecutionResult:
        if self.dispatch is None:
            raise CapabilityExecutionError("composite executor is not bound to a router")
        hops = capability.config.get("composite_steps") or []
        if not hops:
            return ExecutionResult.failure("No steps defined in composite capability")
        results = []
        current = dict(params)
        all_success = True
        for index, hop in enumerate(hops):
            slug = hop.get("skill_slug")
            if not slug:
                return ExecutionResult.failure(f"Step {index} missing skill_slug", data=results)
            target = self.registry.find(slug, ctx.tenant_id)
            if target is None:
                return ExecutionResult.failure(f"Step skill not found: {slug}", data=results)
            if CapabilityKind(target.kind) == CapabilityKind.COMPOSITE:
                return ExecutionResult.failure(
                    f"Step {index} ({slug}) is composite; nested chains are not supported",
                    data=results,
                )
            hop_params = {**current, **(hop.get("params") or {})}
            # Each hop loads its own tenant configuration.
            result = await self.dispatch(target, hop_params, replace(ctx, custom_config={}))
            results.append({"step": index, "skill": slug, "result": result.to_dict()})
            if not result.success:
                all_success = False
                if hop.get("stop_on_error", True):
                    return ExecutionResult.failure(
                        f"Step {index} ({slug}) failed: {result.error or result.message or 'unknown error'}",
                        data=results,
                    )
            if result.data is not None and hop.get("pass_output", True):
                current = {**current, "_previous_output": result.data}
        if all_success:
            return ExecutionResult.ok(results, message="Composite capability completed")
        partial = ExecutionResult.failure("one or more composite steps failed", data=results)
        partial.metadata["partial"] = True
        return partial
