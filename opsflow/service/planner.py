"""Turn a free-text request into a persisted, validated flow plan.

The AI provider proposes steps; everything after that is deterministic:
parameter names and enum values are corrected against each capability's
schema, placeholders are parsed, and steps that cannot possibly run are
persisted as ``failed`` so the first tick stops the flow with a clear error.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from opsflow.logging import get_logger
from opsflow.service.errors import PlanningError, ValidationError
from opsflow.service.expressions import (
    ExpressionSyntaxError,
    forward_references,
    parse_mapping,
)
from opsflow.service.registry import CapabilityRegistry
from opsflow.storage.models import (
    ActorType,
    Capability,
    Flow,
    FlowStep,
    LogType,
    PromptType,
    StepStatus,
    StepType,
    initial_flow_context,
    new_id,
)

logger = get_logger(__name__)

MULTI_STEP_CONNECTORS = (
    " and then ",
    " after that ",
    " also ",
    " additionally ",
    ", then ",
    " followed by ",
    " next ",
    " as well as ",
)
ACTION_VERBS = ("create", "add", "update", "delete", "convert", "assign", "move", "set", "send", "generate")
_VERB_PATTERNS = [re.compile(rf"\b{verb}\b", re.IGNORECASE) for verb in ACTION_VERBS]

MAX_REQUEST_LENGTH = 2000


def should_create_flow(message: str) -> bool:
    """Heuristic: does this chat message describe more than one operation?"""
    lowered = (message or "").lower()
    if any(connector in lowered for connector in MULTI_STEP_CONNECTORS):
        return True
    verbs = sum(1 for pattern in _VERB_PATTERNS if pattern.search(message or ""))
    return verbs >= 2


@dataclass
class NormalizedParams:
    params: Dict[str, Any]
    mappings: Dict[str, Any]
    corrections: List[str] = field(default_factory=list)


def normalize_value(value: Any, prop: Dict[str, Any], value_aliases: Dict[str, str]) -> Any:
    """Case-fold a string against the property's enum, then try value aliases."""
    enum = prop.get("enum") or []
    if not isinstance(value, str) or not enum:
        return value
    lowered = value.lower()
    for member in enum:
        if isinstance(member, str) and member.lower() == lowered:
            return member
    aliased = value_aliases.get(value)
    if aliased in enum:
        return aliased
    return value


def _match_key(
    key: str,
    properties: Dict[str, Any],
    param_aliases: Dict[str, str],
    *,
    partial: bool = True,
) -> Optional[str]:
    alias = param_aliases.get(key)
    if alias and alias in properties:
        return alias
    lowered = key.lower()
    for name in properties:
        if name.lower() == lowered:
            return name
    if partial:
        for name in properties:
            candidate = name.lower()
            if lowered.endswith(candidate) or lowered.startswith(candidate):
                return name
    return None


def normalize_params(
    params: Dict[str, Any],
    mappings: Dict[str, Any],
    schema: Optional[Dict[str, Any]],
    param_aliases: Dict[str, str],
    value_aliases: Dict[str, str],
) -> NormalizedParams:
    """Correct parameter names and enum values against ``schema``.

    Keys are tried in order: exact, alias (only when the alias target is in
    the schema), case-insensitive, then prefix/suffix partial match. Unknown
    keys are kept and logged. Mapping keys get the alias and case-insensitive
    passes only.
    """
    properties = (schema or {}).get("properties") or {}
    if not properties:
        return NormalizedParams(dict(params or {}), dict(mappings or {}))

    corrections: List[str] = []
    normalized: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        if key in properties:
            fixed = normalize_value(value, properties[key], value_aliases)
            if fixed != value:
                corrections.append(f"Corrected value for '{key}' from '{value}' to '{fixed}'")
            normalized[key] = fixed
            continue
        target = _match_key(key, properties, param_aliases)
        if target is None:
            logger.warning("planner_unknown_param", param=key, available=sorted(properties))
            normalized[key] = value
            continue
        corrections.append(f"Corrected param '{key}' to '{target}'")
        normalized[target] = normalize_value(value, properties[target], value_aliases)

    normalized_mappings: Dict[str, Any] = {}
    for key, value in (mappings or {}).items():
        if key in properties:
            normalized_mappings[key] = value
            continue
        target = _match_key(key, properties, param_aliases, partial=False)
        if target is None:
            normalized_mappings[key] = value
            continue
        corrections.append(f"Corrected mapping key '{key}' to '{target}'")
        normalized_mappings[target] = value

    return NormalizedParams(normalized, normalized_mappings, corrections)


def _describe_capability(capability: Capability) -> str:
    schema = capability.input_schema or {}
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    lines = [f"- **{capability.slug}**: {capability.description}"]
    if properties:
        lines.append("  Parameters:")
        for name, prop in properties.items():
            kind = prop.get("type", "string")
            enum = f" [{', '.join(str(v) for v in prop['enum'])}]" if prop.get("enum") else ""
            flag = "(REQUIRED)" if name in required else "(optional)"
            description = prop.get("description", "")
            lines.append(f"    - {name} ({kind}){enum}: {description} {flag}".rstrip())
    return "\n".join(lines)


def build_planning_prompt(capabilities: List[Capability]) -> str:
    catalogue = "\n\n".join(_describe_capability(c) for c in capabilities)
    return f"""You are a workflow planner for a business operations workspace. Break the user's request into step-by-step executable flows.

## AVAILABLE CAPABILITIES WITH EXACT PARAMETER NAMES

Use the EXACT parameter names listed below.

{catalogue}

## STEP TYPES
- tool_call: execute a capability (most common)
- ai_decision: inspect the previous step's matches and resolve a single entity
- user_prompt: pause and ask the user (prompt_type: choice, text or confirm)
- conditional: jump to on_success_goto / on_fail_goto based on a condition
- wait: no-op placeholder

## RESPONSE FORMAT (JSON)
{{
  "title": "Short descriptive title",
  "steps": [
    {{
      "type": "tool_call",
      "skill": "capability_slug",
      "title": "Human readable step title",
      "description": "What this step does",
      "params": {{"exact_param_name": "value"}},
      "mappings": {{"param_from_earlier_step": "{{{{steps.N.result.data.0.id}}}}"}},
      "condition": {{"if": "{{{{context.resolved_entities.task_id}}}}", "exists": true}},
      "on_success_goto": null,
      "on_fail_goto": null,
      "prompt_type": null,
      "prompt_message": null,
      "prompt_options": null
    }}
  ]
}}

## PLACEHOLDER SYNTAX
- {{{{steps.N.result.data.0.id}}}}: field from the result of an EARLIER step N (0-based)
- {{{{steps.N.user_response}}}}: the answer given to an earlier user_prompt step
- {{{{context.resolved_entities.task_id}}}}: entity resolved by an ai_decision step
- {{{{context.created_entities.project_id}}}}: entity created earlier in the flow
- {{{{user_input}}}}: the answer to the current step's own prompt
Never reference the current step or a later one.

## RULES
1. When the user names an entity, search for it first (search_tasks, list_projects or list_contacts with `search`).
2. Follow every search with an ai_decision step, then use context.resolved_entities in later mappings.
3. Use lowercase enum values exactly as listed.
4. Create one step per item.
5. Use only the capability slugs listed above.

Respond with valid JSON only."""


class FlowPlanner:
    """Plan, validate and persist a flow, then schedule its first tick."""

    def __init__(
        self,
        store,
        registry: CapabilityRegistry,
        llm,
        queue,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        self.store = store
        self.registry = registry
        self.llm = llm
        self.queue = queue
        self.timeout = timeout
        self.max_retries = max_retries

    async def _generate(self, system_prompt: str, request: str) -> Dict[str, Any]:
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self.llm.generate, system_prompt, request, json_mode=True),
                self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("flow_planning_timeout", timeout=self.timeout)
            raise PlanningError(f"AI provider did not answer within {self.timeout:.0f}s") from exc
        except Exception as exc:
            logger.error("flow_planning_provider_error", error_type=type(exc).__name__, error=str(exc))
            raise PlanningError(f"AI provider error: {exc}") from exc

        content = (response or {}).get("content") or ""
        try:
            plan = json.loads(content)
        except ValueError as exc:
            raise PlanningError("AI provider returned invalid JSON") from exc
        if not isinstance(plan, dict):
            raise PlanningError("AI plan must be a JSON object")
        steps = plan.get("steps")
        if not isinstance(steps, list) or not steps:
            raise PlanningError("AI plan contains no steps")
        if not all(isinstance(step, dict) for step in steps):
            raise PlanningError("AI plan steps must be objects")
        logger.info("flow_plan_generated", steps=len(steps), usage=(response or {}).get("usage"))
        return plan

    async def plan(
        self,
        request: str,
        user_id: str,
        tenant_id: str,
        conversation_id: Optional[str] = None,
    ) -> Flow:
        request = (request or "").strip()
        if not request:
            raise ValidationError("request must not be empty")
        if len(request) > MAX_REQUEST_LENGTH:
            raise ValidationError(f"request exceeds {MAX_REQUEST_LENGTH} characters")

        capabilities = self.registry.list_capabilities(tenant_id)
        system_prompt = build_planning_prompt(capabilities)
        plan = await self._generate(system_prompt, request)

        flow_id = new_id()
        steps: List[FlowStep] = []
        corrections: List[Tuple[FlowStep, List[str]]] = []
        for position, raw in enumerate(plan["steps"]):
            step = self.build_step(flow_id, position, raw, tenant_id)
            steps.append(step)
            if step.corrections:
                corrections.append((step, step.corrections))

        flow = Flow(
            id=flow_id,
            tenant_id=tenant_id,
            user_id=user_id,
            conversation_id=conversation_id,
            title=str(plan.get("title") or "AI Flow")[:200],
            original_request=request,
            flow_context=initial_flow_context(request, [c.slug for c in capabilities]),
            max_retries=self.max_retries,
            planning_prompt=system_prompt,
        )
        created = self.store.create_flow(flow, steps)
        self.store.append_log(
            created.id,
            LogType.FLOW_CREATED,
            f"Flow created with {created.total_steps} steps",
            actor_type=ActorType.USER,
            actor_id=user_id,
            metadata={"title": created.title, "request": request},
        )
        for step, fixes in corrections:
            self.store.append_log(
                created.id,
                LogType.PARAMS_CORRECTED,
                f"Corrected parameters for step {step.position + 1}",
                actor_type=ActorType.AI,
                step_id=step.id,
                metadata={"corrections": fixes},
            )
        rejected = [s for s in steps if s.status == StepStatus.FAILED]
        logger.info(
            "flow_planned",
            flow_id=created.id,
            user_id=user_id,
            tenant_id=tenant_id,
            steps=created.total_steps,
            rejected_steps=len(rejected),
        )
        await self.queue.enqueue(created.id)
        return created

    def build_step(
        self,
        flow_id: str,
        position: int,
        raw: Dict[str, Any],
        tenant_id: Optional[str],
    ) -> FlowStep:
        """Build one step from a plan descriptor; defects become a failed step."""
        raw_type = raw.get("type") or StepType.TOOL_CALL.value
        slug = raw.get("skill") or raw.get("capability") or None
        params = raw.get("params") if isinstance(raw.get("params"), dict) else {}
        mappings = raw.get("mappings") if isinstance(raw.get("mappings"), dict) else {}
        step = FlowStep(
            id=new_id(),
            flow_id=flow_id,
            position=position,
            step_type=StepType.TOOL_CALL,
            title=str(raw.get("title") or f"Step {position + 1}"),
            description=raw.get("description"),
            capability_slug=slug,
            input_params=dict(params),
            param_mappings=dict(mappings),
            condition=raw.get("condition") if isinstance(raw.get("condition"), dict) else None,
            on_success_goto=_as_position(raw.get("on_success_goto")),
            on_fail_goto=_as_position(raw.get("on_fail_goto")),
            prompt_message=raw.get("prompt_message"),
            prompt_options=raw.get("prompt_options") if isinstance(raw.get("prompt_options"), list) else None,
        )
        try:
            step.step_type = StepType(raw_type)
        except ValueError:
            return _reject(step, f"unknown step type '{raw_type}'")

        if step.step_type == StepType.PARALLEL:
            return _reject(step, "parallel steps are not supported yet")

        if step.step_type == StepType.USER_PROMPT:
            try:
                step.prompt_type = PromptType(raw.get("prompt_type") or PromptType.TEXT.value)
            except ValueError:
                return _reject(step, f"unknown prompt type '{raw.get('prompt_type')}'")
            step.prompt_message = step.prompt_message or step.title

        if step.step_type == StepType.TOOL_CALL:
            if not slug:
                return _reject(step, "tool_call step names no capability")
            capability = self.registry.find(slug, tenant_id)
            if capability is None:
                return _reject(step, f"Unknown or disabled capability '{slug}'")
            param_aliases, value_aliases = CapabilityRegistry.aliases_for(capability)
            normalized = normalize_params(
                step.input_params, step.param_mappings, capability.input_schema, param_aliases, value_aliases
            )
            step.input_params = normalized.params
            step.param_mappings = normalized.mappings
            step.corrections = normalized.corrections
            if normalized.corrections:
                logger.info("planner_params_corrected", slug=slug, position=position, corrections=normalized.corrections)
            required = (capability.input_schema or {}).get("required") or []
            missing = [
                name
                for name in required
                if name not in step.param_mappings
                and (step.input_params.get(name) is None or step.input_params.get(name) == "")
            ]
            if missing:
                return _reject(step, f"Missing required parameter(s) for {slug}: {', '.join(missing)}")

        expressions = dict(step.param_mappings)
        if step.condition and isinstance(step.condition.get("if"), str):
            expressions["__condition__"] = step.condition["if"]
        try:
            for value in expressions.values():
                if isinstance(value, str):
                    parse_mapping(value)
        except ExpressionSyntaxError as exc:
            return _reject(step, exc.message)
        forward = forward_references(expressions, position)
        if forward:
            return _reject(
                step,
                f"Step {position + 1} references a step that has not run yet: {', '.join(forward)}",
            )
        return step


def _as_position(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _reject(step: FlowStep, reason: str) -> FlowStep:
    logger.warning("planner_step_rejected", position=step.position, reason=reason)
    step.status = StepStatus.FAILED
    step.error_message = reason
    return step
