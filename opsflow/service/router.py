from __future__ import annotations

import time
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from opsflow.logging import get_logger, sanitize_error_message
from opsflow.service.errors import ParameterValidationError, ServiceError
from opsflow.service.execution import ExecutionContext, ExecutionResult
from opsflow.service.executors import CapabilityExecutor, CompositeExecutor
from opsflow.storage.models import Capability, CapabilityKind

logger = get_logger(__name__)


class ExecutionRouter:
    """Dispatch a resolved step to the executor registered for its capability kind.

    Every kind in :class:`CapabilityKind` must have exactly one executor; a
    router missing one refuses to start rather than failing at dispatch time.

    Validation problems (schema mismatch, missing tenant secrets) raise
    :class:`ParameterValidationError` because they indicate a defective plan,
    not a transient failure. Anything raised by an executor is folded into a
    failure :class:`ExecutionResult`.
    """

    def __init__(self, registry, executors: Mapping[CapabilityKind, CapabilityExecutor]) -> None:
        missing = [kind.value for kind in CapabilityKind if kind not in executors]
        if missing:
            raise ValueError(f"no executor registered for capability kinds: {', '.join(missing)}")
        self.registry = registry
        self.executors: Dict[CapabilityKind, CapabilityExecutor] = dict(executors)
        composite = self.executors[CapabilityKind.COMPOSITE]
        if isinstance(composite, CompositeExecutor) and composite.dispatch is None:
            composite.dispatch = self.execute
        self._validators: Dict[str, Draft202012Validator] = {}

    def _validator(self, capability: Capability) -> Optional[Draft202012Validator]:
        schema = capability.input_schema
        if not schema:
            return None
        key = f"{capability.tenant_id or ''}:{capability.slug}"
        validator = self._validators.get(key)
        if validator is None or validator.schema != schema:
            try:
                Draft202012Validator.check_schema(schema)
            except SchemaError as exc:
                raise ParameterValidationError(
                    capability.slug, [f"capability schema is invalid: {exc.message}"]
                ) from exc
            validator = Draft202012Validator(schema)
            self._validators[key] = validator
        return validator

    def validate(self, capability: Capability, params: Dict[str, Any]) -> None:
        validator = self._validator(capability)
        if validator is None:
            return
        errors: List[str] = []
        for error in sorted(validator.iter_errors(params), key=lambda e: list(e.path)):
            location = ".".join(str(p) for p in error.path)
            errors.append(f"{location}: {error.message}" if location else error.message)
        if errors:
            raise ParameterValidationError(capability.slug, errors)

    @staticmethod
    def _check_secrets(capability: Capability, custom_config: Dict[str, Any]) -> None:
        if CapabilityKind(capability.kind) not in {CapabilityKind.OUTBOUND_CALL, CapabilityKind.NOTIFICATION}:
            return
        missing = [name for name in capability.secret_fields if not custom_config.get(name)]
        if missing:
            raise ParameterValidationError(
                capability.slug, [f"missing required secret: {name}" for name in missing]
            )

    async def execute(
        self, capability: Capability, params: Dict[str, Any], ctx: ExecutionContext
    ) -> ExecutionResult:
        kind = CapabilityKind(capability.kind)
        if not ctx.custom_config:
            ctx.custom_config = self.registry.tenant_config(ctx.tenant_id, capability.slug)
        self.validate(capability, params)
        self._check_secrets(capability, ctx.custom_config)

        executor = self.executors[kind]
        started = time.perf_counter()
        try:
            result = await executor.execute(capability, params, ctx)
        except ServiceError as exc:
            result = ExecutionResult.failure(exc.message, status_code=getattr(exc, "upstream_status", None))
        except Exception as exc:
            logger.error(
                "capability_execution_crashed",
                slug=capability.slug,
                kind=kind.value,
                flow_id=ctx.flow_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            result = ExecutionResult.failure(
                sanitize_error_message(f"{type(exc).__name__}: {exc}")
            )
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        result.metadata.setdefault("latency_ms", latency_ms)
        logger.info(
            "capability_executed",
            slug=capability.slug,
            kind=kind.value,
            flow_id=ctx.flow_id,
            step_id=ctx.step_id,
            outcome=result.outcome.value,
            success=result.success,
            latency_ms=latency_ms,
        )
        return result

    async def close(self) -> None:
        for executor in self.executors.values():
            closer = getattr(executor, "close", None)
            if closer is not None:
                await closer()
