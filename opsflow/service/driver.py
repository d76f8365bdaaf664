"""Flow execution driver.

Each :meth:`FlowDriver.tick` advances a flow by at most one step and
returns. Suspending for user input means the tick simply returns without
enqueueing a follow-up; a user response or an explicit retry enqueues the
next one. Ticks for one flow are serialized by a per-flow lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from opsflow.logging import flow_log_context, get_logger, sanitize_error_message
from opsflow.service.errors import (
    ConflictError,
    FlowStateError,
    ForbiddenError,
    MissingDependencyError,
    NotFoundError,
    ParameterValidationError,
    StepNotAwaitingInputError,
    ValidationError,
)
from opsflow.service.events import EventPublisher
from opsflow.service.execution import ExecutionContext, ExecutionResult, Outcome
from opsflow.service.expressions import (
    ExpressionSyntaxError,
    ResolutionScope,
    evaluate_condition,
    resolve_params,
)
from opsflow.service.queue import FlowLock, WorkQueue
from opsflow.service.registry import CapabilityRegistry
from opsflow.service.router import ExecutionRouter
from opsflow.storage.errors import ConstraintViolation
from opsflow.storage.models import (
    ActorType,
    Flow,
    FlowStatus,
    FlowStep,
    LogType,
    PromptType,
    StepStatus,
    StepType,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

REFINE_OPTION = "refine"
REFINE_THRESHOLD = 5
_FALSE_WORDS = {"false", "no", "n", "0", "cancel", "decline", "declined"}


class TickOutcome(str, Enum):
    ADVANCED = "advanced"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"
    NOOP = "noop"
    LOCKED = "locked"


@dataclass
class TickResult:
    outcome: TickOutcome
    flow_id: str
    step_id: Optional[str] = None
    retry_delay: Optional[float] = None


class _StepFailure(Exception):
    """Internal signal: the current step failed, optionally retryable."""

    def __init__(self, message: str, *, retryable: bool, result: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.result = result


# helpers shared with the API and tests
def detect_entity_type(slug: Optional[str]) -> Optional[str]:
    lowered = (slug or "").lower()
    for entity in ("contact", "project", "task", "deal"):
        if entity in lowered:
            return entity
    return None


def extract_entity_info(match: Dict[str, Any]) -> Dict[str, Any]:
    """Map a search hit onto ``resolved_entities`` keys (task_id, contact_name, ...)."""
    if not isinstance(match, dict):
        return {}
    entity_type = match.get("entity_type")
    entities: Dict[str, Any] = {}
    if entity_type == "task" or "task_id" in match or (
        "title" in match and "status" in match and "topic_id" in match
    ):
        entities.update(
            task_id=match.get("id") or match.get("task_id"),
            task_title=match.get("title"),
            task_status=match.get("status"),
            project_id=match.get("project_id"),
            topic_id=match.get("topic_id"),
        )
    if entity_type == "contact" or "contact_id" in match or "full_name" in match or "email" in match:
        entities.update(
            contact_id=match.get("id") or match.get("contact_id"),
            contact_name=match.get("full_name") or match.get("name"),
            contact_email=match.get("email"),
            contact_type=match.get("type"),
        )
    if entity_type == "project" or (
        entity_type is None
        and ("project_id" in match or ("name" in match and "members_count" in match))
    ):
        entities.update(
            project_id=match.get("id") or match.get("project_id"),
            project_name=match.get("name") or match.get("title"),
        )
    if entity_type == "deal" or "deal_id" in match or "deal_value" in match:
        entities.update(
            deal_id=match.get("id") or match.get("deal_id"),
            deal_title=match.get("title") or match.get("name"),
            deal_value=match.get("value") or match.get("deal_value"),
        )
    if not entities and match.get("id") is not None:
        entities["entity_id"] = match["id"]
    return {key: value for key, value in entities.items() if value is not None}


def choice_options(matches: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    options: List[Dict[str, Any]] = []
    for index, match in enumerate(matches):
        if not isinstance(match, dict):
            match = {"value": match}
        label = match.get("full_name") or match.get("title") or match.get("name") or f"Option {index + 1}"
        extra = match.get("email") or match.get("organization") or match.get("status") or ""
        options.append(
            {
                "value": str(index + 1),
                "label": f"{label} ({extra})" if extra else str(label),
                "data": match,
            }
        )
    if len(matches) >= REFINE_THRESHOLD:
        options.append(
            {
                "value": REFINE_OPTION,
                "label": "None of these - let me search differently",
                "data": {"action": "refine_search"},
            }
        )
    return options


def completion_suggestions(flow: Flow) -> List[Dict[str, Any]]:
    context = flow.flow_context or {}
    resolved = context.get("resolved_entities") or {}
    created = context.get("created_entities") or {}
    suggestions: List[Dict[str, Any]] = []
    if resolved.get("contact_id") and "convert" in (flow.original_request or "").lower():
        suggestions.append(
            {
                "type": "suggestion",
                "message": "Would you like to create a deal for this new customer?",
                "action": "create_deal",
                "params": {"contact_id": resolved["contact_id"]},
            }
        )
    if created.get("project_id"):
        suggestions.append(
            {
                "type": "suggestion",
                "message": "Would you like to invite team members to this project?",
                "action": "invite_member",
                "params": {"project_id": created["project_id"]},
            }
        )
    return suggestions


def response_value(response: Any) -> Any:
    if isinstance(response, dict) and "value" in response:
        return response["value"]
    return response


def is_confirmed(response: Any) -> bool:
    value = response_value(response)
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_WORDS
    return bool(value)


def _matches_of(result: Any) -> List[Any]:
    if not isinstance(result, dict):
        return []
    data = result.get("data")
    if data is None:
        data = result.get("matches")
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return data
    return []


class FlowDriver:
    """Advance flows one step per tick and apply external lifecycle operations."""

    def __init__(
        self,
        store,
        registry: CapabilityRegistry,
        router: ExecutionRouter,
        publisher: EventPublisher,
        queue: WorkQueue,
        lock: FlowLock,
        planner=None,
        *,
        retry_backoff_seconds: float = 5.0,
        lock_wait_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.router = router
        self.publisher = publisher
        self.queue = queue
        self.lock = lock
        self.planner = planner
        self.retry_backoff_seconds = retry_backoff_seconds
        self.lock_wait_seconds = lock_wait_seconds

    # ------------------------------------------------------------------ ticks
    async def tick(self, flow_id: str) -> TickResult:
        token = await self.lock.acquire(flow_id)
        if token is None:
            logger.debug("flow_tick_locked", flow_id=flow_id)
            return TickResult(TickOutcome.LOCKED, flow_id)
        try:
            with flow_log_context(flow_id):
                try:
                    return await self._tick(flow_id)
                except ConstraintViolation:
                    # cancel() does not take the lock; a write racing it lands here
                    flow = self.store.get_flow(flow_id)
                    if flow is not None and flow.is_terminal:
                        logger.info("flow_tick_interrupted", status=flow.status.value)
                        return TickResult(self._terminal_outcome(flow), flow_id)
                    raise
        finally:
            await self.lock.release(flow_id, token)

    async def run_to_suspension(self, flow_id: str, *, max_ticks: int = 200) -> TickResult:
        """Tick inline until the flow stops advancing; retry delays are not awaited."""
        result = TickResult(TickOutcome.NOOP, flow_id)
        for _ in range(max_ticks):
            result = await self.tick(flow_id)
            if result.outcome not in {TickOutcome.ADVANCED, TickOutcome.RETRY_SCHEDULED}:
                return result
        logger.warning("flow_tick_budget_exhausted", flow_id=flow_id, max_ticks=max_ticks)
        return result

    @staticmethod
    def _terminal_outcome(flow: Flow) -> TickOutcome:
        return TickOutcome.CANCELLED if flow.status == FlowStatus.CANCELLED else TickOutcome.NOOP

    async def _tick(self, flow_id: str) -> TickResult:
        flow = self.store.get_flow(flow_id)
        if flow is None:
            logger.warning("flow_tick_missing_flow")
            return TickResult(TickOutcome.NOOP, flow_id)
        if flow.is_terminal:
            return TickResult(self._terminal_outcome(flow), flow_id)
        if flow.status in {FlowStatus.AWAITING_USER, FlowStatus.PAUSED}:
            return TickResult(TickOutcome.NOOP, flow_id)

        rejected = next((s for s in flow.steps if s.status == StepStatus.FAILED), None)
        if rejected is not None:
            reason = rejected.error_message or f"step {rejected.position + 1} failed"
            return await self._fail_flow(flow, rejected, reason)

        step = next(
            (s for s in flow.steps if s.status in {StepStatus.PENDING, StepStatus.RUNNING}),
            None,
        )
        if step is None:
            return await self._complete_flow(flow)

        changes: Dict[str, Any] = {"current_step_id": step.id, "paused_at": None}
        if flow.status == FlowStatus.PENDING:
            changes.update(status=FlowStatus.RUNNING, started_at=utcnow())
            self.store.append_log(flow.id, LogType.FLOW_STARTED, "Flow execution started")
            logger.info("flow_started", total_steps=flow.total_steps)
        elif flow.status != FlowStatus.RUNNING:
            changes["status"] = FlowStatus.RUNNING
        flow = self.store.update_flow(flow.id, **changes)

        with flow_log_context(flow.id, step_id=step.id, position=step.position):
            try:
                if step.step_type == StepType.TOOL_CALL:
                    return await self._run_tool_call(flow, step)
                if step.step_type == StepType.AI_DECISION:
                    return await self._run_ai_decision(flow, step)
                if step.step_type == StepType.USER_PROMPT:
                    return await self._run_user_prompt(flow, step)
                if step.step_type == StepType.CONDITIONAL:
                    return await self._run_conditional(flow, step)
                if step.step_type == StepType.WAIT:
                    return await self._complete_step(flow, step, {"waited": True})
                raise _StepFailure(f"unsupported step type {step.step_type.value}", retryable=False)
            except _StepFailure as failure:
                return await self._handle_failure(flow.id, step.id, failure)

    # ------------------------------------------------------------- step types
    def _scope(self, flow: Flow, step: FlowStep) -> ResolutionScope:
        results: Dict[int, Any] = {}
        responses: Dict[int, Any] = {}
        for other in flow.steps:
            if other.position >= step.position:
                continue
            if other.result is not None:
                results[other.position] = other.result
            if other.user_response is not None:
                responses[other.position] = other.user_response
        return ResolutionScope(
            position=step.position,
            flow_context=flow.flow_context,
            step_results=results,
            step_responses=responses,
            user_input=step.user_response,
        )

    def _mark_running(self, flow: Flow, step: FlowStep) -> FlowStep:
        if step.status == StepStatus.RUNNING:
            logger.info("flow_step_resumed_after_interruption")
        step = self.store.update_step(step.id, status=StepStatus.RUNNING, started_at=utcnow(), error_message=None)
        self.store.append_log(
            flow.id,
            LogType.STEP_STARTED,
            f"Started step {step.position + 1}: {step.title}",
            step_id=step.id,
            metadata={"step_type": step.step_type.value, "capability": step.capability_slug},
        )
        return step

    async def _run_tool_call(self, flow: Flow, step: FlowStep) -> TickResult:
        step = self._mark_running(flow, step)
        capability = self.registry.find(step.capability_slug or "", flow.tenant_id)
        if capability is None:
            raise _StepFailure(
                f"Unknown or disabled capability '{step.capability_slug}'", retryable=False
            )
        try:
            params = resolve_params(step.input_params, step.param_mappings, self._scope(flow, step))
        except (MissingDependencyError, ExpressionSyntaxError) as exc:
            raise _StepFailure(exc.message, retryable=False) from exc
        params.pop("source_step_id", None)

        ctx = ExecutionContext(
            tenant_id=flow.tenant_id,
            user_id=flow.user_id,
            flow_id=flow.id,
            step_id=step.id,
            conversation_id=flow.conversation_id,
        )
        try:
            result = await self.router.execute(capability, params, ctx)
        except ParameterValidationError as exc:
            raise _StepFailure(exc.message, retryable=False) from exc

        latest = self.store.get_flow(flow.id)
        if latest is None or latest.is_terminal:
            logger.info("flow_terminal_after_dispatch", slug=capability.slug)
            return TickResult(self._terminal_outcome(latest) if latest else TickOutcome.NOOP, flow.id, step.id)

        if result.success:
            return await self._complete_tool_step(latest, step, result)
        if result.outcome == Outcome.MULTIPLE_MATCHES:
            step = self.store.update_step(
                step.id, status=StepStatus.COMPLETED, result=result.to_dict(), completed_at=utcnow()
            )
            self._log_step_completed(latest, step, {"outcome": result.outcome.value})
            await self.publisher.step_completed(self.store.get_flow(flow.id), step)
            return await self._request_choice(latest, step, _matches_of(result.to_dict()), result.message, step.id)
        if result.outcome == Outcome.NOT_FOUND:
            return await self._escalate_to_text(
                latest,
                step,
                result.message or "I couldn't find what you're looking for. Please provide more details:",
            )
        raise _StepFailure(
            result.error or "capability failed", retryable=True, result=result.to_dict()
        )

    async def _complete_tool_step(self, flow: Flow, step: FlowStep, result: ExecutionResult) -> TickResult:
        payload = result.to_dict()
        created = dict((flow.flow_context or {}).get("created_entities") or {})
        data = result.data
        if isinstance(data, dict):
            entity_type = detect_entity_type(step.capability_slug)
            if data.get("id") and entity_type:
                created[f"{entity_type}_id"] = data["id"]
            if data.get("project_id"):
                created["project_id"] = data["project_id"]
            if data.get("task_id"):
                created["task_ids"] = list(created.get("task_ids") or []) + [data["task_id"]]
        self.store.merge_flow_context(
            flow.id,
            {"step_results": {step.id: payload}, "created_entities": created},
        )
        return await self._complete_step(flow, step, payload)

    async def _run_ai_decision(self, flow: Flow, step: FlowStep) -> TickResult:
        step = self._mark_running(flow, step)
        source = next(
            (
                s
                for s in sorted(flow.steps, key=lambda s: s.position, reverse=True)
                if s.position < step.position and s.status == StepStatus.COMPLETED and s.result is not None
            ),
            None,
        )
        if source is None:
            return await self._complete_step(flow, step, {"decision": "continue"})

        matches = _matches_of(source.result)
        if not matches:
            return await self._escalate_to_text(
                flow,
                step,
                "I couldn't find a match. Please provide more details to search again:",
            )
        if len(matches) == 1:
            resolved = extract_entity_info(matches[0])
            self.store.merge_flow_context(flow.id, {"resolved_entities": resolved})
            self.store.append_log(
                flow.id,
                LogType.AI_DECISION_MADE,
                f"Resolved a single match from step {source.position + 1}",
                actor_type=ActorType.AI,
                step_id=step.id,
                metadata={"resolved_entities": resolved, "source_step_id": source.id},
            )
            logger.info("flow_ai_decision_resolved", source_step_id=source.id, entities=sorted(resolved))
            return await self._complete_step(
                flow, step, {"decision": "single_match", "resolved_entities": resolved}
            )

        step = self.store.update_step(
            step.id,
            status=StepStatus.COMPLETED,
            result={"decision": "multiple_matches", "count": len(matches)},
            completed_at=utcnow(),
        )
        self.store.append_log(
            flow.id,
            LogType.AI_DECISION_MADE,
            f"{len(matches)} candidates need a user choice",
            actor_type=ActorType.AI,
            step_id=step.id,
            metadata={"count": len(matches), "source_step_id": source.id},
        )
        await self.publisher.step_completed(self.store.get_flow(flow.id), step)
        tool_source = self._nearest_tool_step(flow, step.position) or source
        return await self._request_choice(
            flow,
            step,
            matches,
            f"Found {len(matches)} matches. Please select one:",
            tool_source.id,
        )

    async def _run_user_prompt(self, flow: Flow, step: FlowStep) -> TickResult:
        if not step.has_response:
            step = self.store.update_step(
                step.id, status=StepStatus.AWAITING_USER, started_at=step.started_at or utcnow()
            )
            return await self._suspend(flow, step)

        prompt_type = PromptType(step.prompt_type or PromptType.TEXT)
        value = response_value(step.user_response)

        if prompt_type == PromptType.CHOICE:
            if str(value) == REFINE_OPTION:
                step = self.store.update_step(
                    step.id,
                    prompt_type=PromptType.TEXT,
                    prompt_message="Please provide more specific search criteria:",
                    prompt_options=None,
                    user_response=None,
                    status=StepStatus.AWAITING_USER,
                )
                return await self._suspend(flow, step)
            option = next(
                (o for o in step.prompt_options or [] if str(o.get("value")) == str(value)), None
            )
            if option is None:
                raise _StepFailure(f"selected option '{value}' is not offered", retryable=False)
            selected = option.get("data") or {}
            resolved = extract_entity_info(selected)
            self.store.merge_flow_context(
                flow.id,
                {"resolved_entities": resolved, "user_inputs": {step.id: str(value)}},
            )
            return await self._complete_step(
                flow,
                step,
                {"data": [selected], "selection": str(value), "resolved_entities": resolved},
            )

        if prompt_type == PromptType.CONFIRM:
            confirmed = is_confirmed(step.user_response)
            self.store.merge_flow_context(flow.id, {"user_inputs": {step.id: confirmed}})
            if not confirmed:
                self.store.update_step(
                    step.id, status=StepStatus.COMPLETED, result={"confirmed": False}, completed_at=utcnow()
                )
                await self.cancel(flow.id, reason="declined at confirmation", actor_id=flow.user_id)
                return TickResult(TickOutcome.CANCELLED, flow.id, step.id)
            return await self._complete_step(flow, step, {"confirmed": True})

        text = value if isinstance(value, str) else str(value)
        source_id = (step.input_params or {}).get("source_step_id")
        source = flow.step_by_id(source_id) if source_id else None
        if source is not None and source.position < step.position:
            self._rerun_from(flow, source, step, text)
            self.store.update_step(
                step.id, status=StepStatus.SKIPPED, result={"value": text}, completed_at=utcnow()
            )
            self.store.append_log(
                flow.id,
                LogType.STEP_SKIPPED,
                f"Search refined; re-running step {source.position + 1}",
                step_id=step.id,
                metadata={"source_step_id": source.id, "search": text},
            )
            return TickResult(TickOutcome.ADVANCED, flow.id, step.id)

        self.store.merge_flow_context(flow.id, {"user_inputs": {step.id: text}})
        return await self._complete_step(flow, step, {"value": text})

    async def _run_conditional(self, flow: Flow, step: FlowStep) -> TickResult:
        step = self._mark_running(flow, step)
        try:
            met = evaluate_condition(step.condition, self._scope(flow, step))
        except ExpressionSyntaxError as exc:
            raise _StepFailure(exc.message, retryable=False) from exc
        goto = step.on_success_goto if met else step.on_fail_goto
        if goto is not None:
            if goto <= step.position:
                raise _StepFailure(
                    f"conditional at step {step.position + 1} jumps backwards to step {goto + 1}",
                    retryable=False,
                )
            skipped = self.store.update_steps(
                flow.id,
                lambda s: step.position < s.position < goto and s.status == StepStatus.PENDING,
                status=StepStatus.SKIPPED,
                completed_at=utcnow(),
            )
            for other in skipped:
                self.store.append_log(
                    flow.id,
                    LogType.STEP_SKIPPED,
                    f"Skipped step {other.position + 1}: {other.title}",
                    step_id=other.id,
                    metadata={"conditional_step_id": step.id, "condition_met": met},
                )
        return await self._complete_step(flow, step, {"condition_met": met, "goto": goto})

    # ------------------------------------------------------ shared transitions
    def _log_step_completed(self, flow: Flow, step: FlowStep, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.store.append_log(
            flow.id,
            LogType.STEP_COMPLETED,
            f"Completed step {step.position + 1}: {step.title}",
            step_id=step.id,
            metadata=metadata or {},
        )

    async def _complete_step(self, flow: Flow, step: FlowStep, result: Any) -> TickResult:
        step = self.store.update_step(
            step.id,
            status=StepStatus.COMPLETED,
            result=result,
            error_message=None,
            completed_at=utcnow(),
        )
        self._log_step_completed(flow, step)
        flow = self.store.get_flow(flow.id)
        logger.info(
            "flow_step_completed",
            step_type=step.step_type.value,
            completed_steps=flow.completed_steps,
            total_steps=flow.total_steps,
        )
        await self.publisher.step_completed(flow, step)
        return TickResult(TickOutcome.ADVANCED, flow.id, step.id)

    async def _suspend(self, flow: Flow, step: FlowStep) -> TickResult:
        flow = self.store.update_flow(
            flow.id,
            status=FlowStatus.AWAITING_USER,
            current_step_id=step.id,
            paused_at=utcnow(),
        )
        self.store.append_log(
            flow.id,
            LogType.USER_INPUT_REQUESTED,
            step.prompt_message or "Waiting for user input",
            step_id=step.id,
            metadata={
                "prompt_type": PromptType(step.prompt_type).value if step.prompt_type else None,
                "options": len(step.prompt_options or []),
            },
        )
        logger.info("flow_awaiting_user", step_id=step.id)
        await self.publisher.user_input_required(flow, step)
        return TickResult(TickOutcome.SUSPENDED, flow.id, step.id)

    async def _request_choice(
        self,
        flow: Flow,
        after: FlowStep,
        matches: List[Any],
        message: Optional[str],
        source_step_id: str,
    ) -> TickResult:
        prompt = FlowStep(
            id=new_id(),
            flow_id=flow.id,
            position=after.position + 1,
            step_type=StepType.USER_PROMPT,
            title="Select the right match",
            description="Disambiguate between several matching records",
            status=StepStatus.AWAITING_USER,
            prompt_type=PromptType.CHOICE,
            prompt_message=message or "Multiple matches found. Please select one:",
            prompt_options=choice_options(matches),
            input_params={"source_step_id": source_step_id},
            started_at=utcnow(),
        )
        prompt = self.store.insert_step(flow.id, after.position, prompt)
        self.store.append_log(
            flow.id,
            LogType.STEP_INSERTED,
            f"Inserted selection prompt at step {prompt.position + 1}",
            actor_type=ActorType.AI,
            step_id=prompt.id,
            metadata={"after_step_id": after.id, "candidates": len(matches)},
        )
        logger.info("flow_ambiguity_prompt_inserted", candidates=len(matches), position=prompt.position)
        return await self._suspend(self.store.get_flow(flow.id), prompt)

    async def _escalate_to_text(self, flow: Flow, step: FlowStep, message: str) -> TickResult:
        step = self.store.update_step(
            step.id,
            status=StepStatus.AWAITING_USER,
            prompt_type=PromptType.TEXT,
            prompt_message=message,
            prompt_options=None,
            user_response=None,
        )
        return await self._suspend(flow, step)

    @staticmethod
    def _nearest_tool_step(flow: Flow, position: int) -> Optional[FlowStep]:
        for other in sorted(flow.steps, key=lambda s: s.position, reverse=True):
            if other.position < position and other.step_type == StepType.TOOL_CALL:
                return other
        return None

    def _rerun_from(self, flow: Flow, source: FlowStep, until: FlowStep, search: str) -> None:
        """Reset ``source`` with a new search term and re-open steps up to ``until``."""
        params = dict(source.input_params or {})
        params["search"] = search
        self.store.update_step(
            source.id,
            input_params=params,
            status=StepStatus.PENDING,
            result=None,
            error_message=None,
            completed_at=None,
        )
        # earlier prompts answered for the old search no longer apply
        self.store.update_steps(
            flow.id,
            lambda s: source.position < s.position < until.position and s.step_type == StepType.USER_PROMPT,
            status=StepStatus.SKIPPED,
        )
        self.store.update_steps(
            flow.id,
            lambda s: source.position < s.position < until.position and s.step_type != StepType.USER_PROMPT,
            status=StepStatus.PENDING,
            result=None,
            completed_at=None,
        )
        logger.info("flow_search_rerun", source_step_id=source.id)

    async def _handle_failure(self, flow_id: str, step_id: str, failure: _StepFailure) -> TickResult:
        flow = self.store.get_flow(flow_id)
        step = flow.step_by_id(step_id)
        error = sanitize_error_message(failure.message)
        self.store.append_log(
            flow.id,
            LogType.STEP_FAILED,
            f"Step {step.position + 1} failed: {error}",
            step_id=step.id,
            metadata={"retryable": failure.retryable, "retry_count": flow.retry_count},
        )
        if failure.retryable and flow.retry_count < flow.max_retries:
            retry_count = flow.retry_count + 1
            self.store.update_flow(flow.id, retry_count=retry_count, last_error=error)
            self.store.update_step(step.id, status=StepStatus.PENDING, error_message=error)
            delay = self.retry_backoff_seconds * 2 ** (retry_count - 1)
            logger.warning(
                "flow_step_retry_scheduled",
                retry_count=retry_count,
                max_retries=flow.max_retries,
                delay=delay,
                error=error,
            )
            return TickResult(TickOutcome.RETRY_SCHEDULED, flow.id, step.id, retry_delay=delay)
        self.store.update_step(
            step.id,
            status=StepStatus.FAILED,
            error_message=error,
            result=failure.result,
            completed_at=utcnow(),
        )
        return await self._fail_flow(flow, step, error)

    async def _fail_flow(self, flow: Flow, step: Optional[FlowStep], reason: str) -> TickResult:
        self.store.append_log(
            flow.id,
            LogType.FLOW_FAILED,
            f"Flow failed: {reason}",
            step_id=step.id if step else None,
            metadata={"retry_count": flow.retry_count},
        )
        self.store.update_flow(
            flow.id,
            status=FlowStatus.FAILED,
            last_error=reason,
            completed_at=utcnow(),
            current_step_id=None,
        )
        logger.error("flow_failed", reason=reason, retry_count=flow.retry_count)
        return TickResult(TickOutcome.FAILED, flow.id, step.id if step else None)

    async def _complete_flow(self, flow: Flow) -> TickResult:
        suggestions = completion_suggestions(flow)
        self.store.merge_flow_context(flow.id, {"suggestions": suggestions})
        flow = self.store.update_flow(
            flow.id,
            status=FlowStatus.COMPLETED,
            completed_at=utcnow(),
            current_step_id=None,
            paused_at=None,
        )
        self.store.append_log(
            flow.id,
            LogType.FLOW_COMPLETED,
            f"Flow completed: {flow.completed_steps}/{flow.total_steps} steps",
            metadata={"suggestions": [s["action"] for s in suggestions]},
        )
        logger.info("flow_completed", completed_steps=flow.completed_steps, total_steps=flow.total_steps)
        await self.publisher.flow_completed(flow)
        return TickResult(TickOutcome.COMPLETED, flow.id)

    # ----------------------------------------------------- external operations
    def _owned_flow(self, flow_id: str, user_id: Optional[str] = None) -> Flow:
        flow = self.store.get_flow(flow_id)
        if flow is None:
            raise NotFoundError("flow not found", detail={"flow_id": flow_id})
        if user_id is not None and flow.user_id != user_id:
            raise ForbiddenError("flow belongs to another user", detail={"flow_id": flow_id})
        return flow

    async def _locked(self, flow_id: str) -> str:
        token = await self.lock.acquire(flow_id, wait=self.lock_wait_seconds)
        if token is None:
            raise ConflictError("flow is busy, try again", detail={"flow_id": flow_id})
        return token

    async def respond(
        self, flow_id: str, step_id: str, response: Any, *, user_id: Optional[str] = None
    ) -> Flow:
        """Record a user's answer and schedule exactly one tick."""
        if response is None:
            raise ValidationError("response must not be null")
        self._owned_flow(flow_id, user_id)
        token = await self._locked(flow_id)
        try:
            with flow_log_context(flow_id, step_id=step_id):
                flow = self.store.get_flow(flow_id)
                step = flow.step_by_id(step_id)
                if step is None:
                    raise NotFoundError("step not found", detail={"step_id": step_id})
                if step.has_response and step.status in {
                    StepStatus.COMPLETED,
                    StepStatus.SKIPPED,
                    StepStatus.PENDING,
                }:
                    logger.info("flow_duplicate_response_ignored", status=step.status.value)
                    return flow
                if flow.is_terminal:
                    raise FlowStateError(
                        f"flow is {flow.status.value}", detail={"flow_id": flow_id, "status": flow.status.value}
                    )
                if step.status != StepStatus.AWAITING_USER:
                    raise StepNotAwaitingInputError(step.id, step.status.value)
                if step.prompt_type == PromptType.CHOICE:
                    offered = {str(o.get("value")) for o in step.prompt_options or []}
                    if str(response_value(response)) not in offered:
                        raise ValidationError(
                            "response is not one of the offered options",
                            detail={"offered": sorted(offered)},
                        )

                self.store.append_log(
                    flow.id,
                    LogType.USER_INPUT_RECEIVED,
                    f"User responded to step {step.position + 1}",
                    actor_type=ActorType.USER,
                    actor_id=user_id or flow.user_id,
                    step_id=step.id,
                    metadata={"response": response},
                )
                if step.step_type == StepType.TOOL_CALL:
                    params = dict(step.input_params or {})
                    params["search"] = str(response_value(response))
                    self.store.update_step(
                        step.id, input_params=params, user_response=response, status=StepStatus.PENDING
                    )
                elif step.step_type == StepType.AI_DECISION:
                    source = self._nearest_tool_step(flow, step.position)
                    if source is not None:
                        self._rerun_from(flow, source, step, str(response_value(response)))
                    self.store.update_step(step.id, user_response=response, status=StepStatus.PENDING)
                else:
                    self.store.update_step(step.id, user_response=response, status=StepStatus.PENDING)
                flow = self.store.update_flow(flow.id, status=FlowStatus.RUNNING, paused_at=None)
                logger.info("flow_user_input_received", step_type=step.step_type.value)
        finally:
            await self.lock.release(flow_id, token)
        await self.queue.enqueue(flow_id)
        return flow

    async def cancel(
        self, flow_id: str, *, user_id: Optional[str] = None, reason: str = "cancelled by user", actor_id: Optional[str] = None
    ) -> Flow:
        """Cancel immediately, even mid-step; the next tick observes it."""
        flow = self._owned_flow(flow_id, user_id)
        if flow.is_terminal:
            return flow
        flow = self.store.update_flow(
            flow_id, status=FlowStatus.CANCELLED, completed_at=utcnow(), current_step_id=None
        )
        self.store.update_steps(
            flow_id,
            lambda s: s.status in {StepStatus.PENDING, StepStatus.RUNNING, StepStatus.AWAITING_USER},
            allow_terminal=True,
            status=StepStatus.CANCELLED,
        )
        self.store.append_log(
            flow_id,
            LogType.FLOW_CANCELLED,
            f"Flow {reason}",
            actor_type=ActorType.USER,
            actor_id=actor_id or user_id or flow.user_id,
        )
        logger.info("flow_cancelled", flow_id=flow_id, reason=reason)
        return self.store.get_flow(flow_id)

    async def retry(self, flow_id: str, *, user_id: Optional[str] = None) -> Flow:
        """Resume a failed flow from its failed step with a fresh retry budget."""
        flow = self._owned_flow(flow_id, user_id)
        if flow.status in {FlowStatus.PENDING, FlowStatus.RUNNING}:
            return flow
        if flow.status != FlowStatus.FAILED:
            raise FlowStateError(
                f"only failed flows can be retried (status: {flow.status.value})",
                detail={"flow_id": flow_id, "status": flow.status.value},
            )
        token = await self._locked(flow_id)
        try:
            self.store.append_log(
                flow_id,
                LogType.FLOW_RESUMED,
                "Flow retried after failure",
                actor_type=ActorType.USER,
                actor_id=user_id or flow.user_id,
                metadata={"last_error": flow.last_error},
            )
            self.store.update_steps(
                flow_id,
                lambda s: s.status == StepStatus.FAILED,
                allow_terminal=True,
                status=StepStatus.PENDING,
                error_message=None,
                result=None,
                completed_at=None,
            )
            flow = self.store.update_flow(
                flow_id,
                allow_terminal=True,
                status=FlowStatus.RUNNING,
                retry_count=0,
                last_error=None,
                completed_at=None,
            )
            logger.info("flow_retried", flow_id=flow_id)
        finally:
            await self.lock.release(flow_id, token)
        await self.queue.enqueue(flow_id)
        return flow

    async def insert_step(
        self,
        flow_id: str,
        after_position: int,
        raw: Dict[str, Any],
        *,
        user_id: Optional[str] = None,
    ) -> FlowStep:
        """Splice a planner-normalized step into the still-pending part of a plan."""
        flow = self._owned_flow(flow_id, user_id)
        if flow.is_terminal:
            raise FlowStateError(f"flow is {flow.status.value}", detail={"flow_id": flow_id})
        if self.planner is None:
            raise ConflictError("step insertion is not available")
        token = await self._locked(flow_id)
        try:
            flow = self.store.get_flow(flow_id)
            if after_position < -1 or after_position >= flow.total_steps:
                raise ValidationError(
                    "after_position is out of range",
                    detail={"after_position": after_position, "total_steps": flow.total_steps},
                )
            busy = [s for s in flow.steps if s.position > after_position and s.status != StepStatus.PENDING]
            if busy:
                raise ConflictError(
                    "steps after the insert position have already started",
                    detail={"step_ids": [s.id for s in busy]},
                )
            step = self.planner.build_step(flow_id, after_position + 1, raw, flow.tenant_id)
            if step.status == StepStatus.FAILED:
                raise ValidationError(step.error_message or "invalid step", detail={"step": raw})
            inserted = self.store.insert_step(flow_id, after_position, step)
            self.store.append_log(
                flow_id,
                LogType.STEP_INSERTED,
                f"Inserted step {inserted.position + 1}: {inserted.title}",
                actor_type=ActorType.USER,
                actor_id=user_id or flow.user_id,
                step_id=inserted.id,
            )
        finally:
            await self.lock.release(flow_id, token)
        return inserted

    async def delete_step(self, flow_id: str, step_id: str, *, user_id: Optional[str] = None) -> FlowStep:
        flow = self._owned_flow(flow_id, user_id)
        if flow.is_terminal:
            raise FlowStateError(f"flow is {flow.status.value}", detail={"flow_id": flow_id})
        token = await self._locked(flow_id)
        try:
            step = self.store.get_flow(flow_id).step_by_id(step_id)
            if step is None:
                raise NotFoundError("step not found", detail={"step_id": step_id})
            if step.status != StepStatus.PENDING:
                raise ConflictError(
                    "only pending steps can be deleted",
                    detail={"step_id": step_id, "status": step.status.value},
                )
            deleted = self.store.delete_step(flow_id, step_id)
            self.store.append_log(
                flow_id,
                LogType.STEP_DELETED,
                f"Deleted step {deleted.position + 1}: {deleted.title}",
                actor_type=ActorType.USER,
                actor_id=user_id or flow.user_id,
                metadata={"step_id": deleted.id},
            )
        finally:
            await self.lock.release(flow_id, token)
        return deleted

    async def fail_flow(self, flow_id: str, reason: str) -> Optional[Flow]:
        """Mark a flow failed from outside a tick (the worker gave up on it)."""
        token = await self.lock.acquire(flow_id, wait=self.lock_wait_seconds)
        if token is None:
            # a live tick holds the flow; it owns the outcome
            logger.warning("flow_fail_skipped_locked", flow_id=flow_id, reason=reason)
            return self.store.get_flow(flow_id)
        try:
            flow = self.store.get_flow(flow_id)
            if flow is None or flow.is_terminal:
                return flow
            step = flow.step_by_id(flow.current_step_id) if flow.current_step_id else None
            if step is not None and step.status in {StepStatus.PENDING, StepStatus.RUNNING}:
                self.store.update_step(step.id, status=StepStatus.FAILED, error_message=reason)
            with flow_log_context(flow_id):
                await self._fail_flow(flow, step, reason)
            return self.store.get_flow(flow_id)
        finally:
            await self.lock.release(flow_id, token)
