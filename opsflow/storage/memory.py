from __future__ import annotations

import copy
import json
import threading
from dataclasses import asdict, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from opsflow.logging import get_logger
from opsflow.service.expressions import shift_step_references
from opsflow.storage.errors import ConstraintViolation
from opsflow.storage.models import (
    ADVANCED_STEP_STATUSES,
    ActorType,
    Capability,
    CapabilityKind,
    CapabilitySetting,
    Flow,
    FlowLog,
    FlowStatus,
    FlowStep,
    LogType,
    PromptType,
    Record,
    StepStatus,
    StepType,
    new_id,
    utcnow,
)

_DATETIME_FIELDS = {
    "created_at",
    "updated_at",
    "started_at",
    "paused_at",
    "completed_at",
}
_ENUM_FIELDS: Dict[str, type] = {
    "step_type": StepType,
    "prompt_type": PromptType,
    "log_type": LogType,
    "actor_type": ActorType,
    "kind": CapabilityKind,
}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"unserializable value: {type(value).__name__}")


def _revive(cls: type, raw: Dict[str, Any], status_enum: type | None = None) -> Any:
    names = {f.name for f in fields(cls)}
    data: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in names:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif key == "status" and status_enum is not None and value is not None:
            value = status_enum(value)
        elif key in _ENUM_FIELDS and value is not None:
            value = _ENUM_FIELDS[key](value)
        data[key] = value
    return cls(**data)


class MemoryStore:
    """In-process store for flows, capabilities and business records.

    All reads return deep copies so callers never alias stored state; every
    mutation happens under ``_data_lock``.
    """

    def __init__(self, state_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.flows: Dict[str, Flow] = {}
        self.steps: Dict[str, List[FlowStep]] = {}
        self.logs: Dict[str, List[FlowLog]] = {}
        self.capabilities: Dict[tuple[str, Optional[str]], Capability] = {}
        self.capability_settings: Dict[tuple[str, str], CapabilitySetting] = {}
        self.records: Dict[str, Record] = {}
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.state_root = Path(state_root) if state_root else None
        if self.state_root is not None:
            self.state_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # flows
    def create_flow(self, flow: Flow, steps: Iterable[FlowStep]) -> Flow:
        with self._data_lock:
            if flow.id in self.flows:
                raise ConstraintViolation("flow already exists", {"flow_id": flow.id})
            ordered = sorted((copy.deepcopy(s) for s in steps), key=lambda s: s.position)
            for index, step in enumerate(ordered):
                if step.position != index:
                    raise ConstraintViolation(
                        "step positions must be dense and start at 0",
                        {"flow_id": flow.id, "position": step.position},
                    )
                step.flow_id = flow.id
            stored = copy.deepcopy(flow)
            stored.steps = []
            self.flows[flow.id] = stored
            self.steps[flow.id] = ordered
            self.logs.setdefault(flow.id, [])
            self._recount(flow.id)
            self._persist_state()
            return self._snapshot(flow.id)

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._data_lock:
            if flow_id not in self.flows:
                return None
            return self._snapshot(flow_id)

    def list_flows(
        self,
        user_id: str,
        *,
        tenant_id: Optional[str] = None,
        statuses: Optional[Iterable[FlowStatus]] = None,
    ) -> List[Flow]:
        wanted = {FlowStatus(s) for s in statuses} if statuses else None
        with self._data_lock:
            matches = [
                f
                for f in self.flows.values()
                if f.user_id == user_id
                and (tenant_id is None or f.tenant_id == tenant_id)
                and (wanted is None or f.status in wanted)
            ]
            matches.sort(key=lambda f: f.created_at, reverse=True)
            return [self._snapshot(f.id) for f in matches]

    def update_flow(self, flow_id: str, *, allow_terminal: bool = False, **changes: Any) -> Flow:
        with self._data_lock:
            flow = self._require_flow(flow_id)
            if flow.is_terminal and not allow_terminal:
                raise ConstraintViolation(
                    "flow is terminal", {"flow_id": flow_id, "status": flow.status.value}
                )
            for key, value in changes.items():
                if key in {"id", "steps", "total_steps", "completed_steps"}:
                    raise ConstraintViolation(f"field {key} is not writable", {"field": key})
                if not hasattr(flow, key):
                    raise ConstraintViolation(f"unknown flow field {key}", {"field": key})
                setattr(flow, key, copy.deepcopy(value))
            flow.updated_at = utcnow()
            self._persist_state()
            return self._snapshot(flow_id)

    def merge_flow_context(self, flow_id: str, data: Dict[str, Any], *, allow_terminal: bool = False) -> Flow:
        """Merge dict values into existing dicts; overwrite everything else."""
        with self._data_lock:
            flow = self._require_writable(flow_id, allow_terminal)
            context = flow.flow_context
            for key, value in data.items():
                if isinstance(value, dict) and isinstance(context.get(key), dict):
                    context[key] = {**context[key], **copy.deepcopy(value)}
                else:
                    context[key] = copy.deepcopy(value)
            flow.updated_at = utcnow()
            self._persist_state()
            return self._snapshot(flow_id)

    # steps
    def update_step(self, step_id: str, *, allow_terminal: bool = False, **changes: Any) -> FlowStep:
        with self._data_lock:
            step = self._require_step(step_id)
            self._require_writable(step.flow_id, allow_terminal)
            for key, value in changes.items():
                if key in {"id", "flow_id", "position"}:
                    raise ConstraintViolation(f"field {key} is not writable", {"field": key})
                if not hasattr(step, key):
                    raise ConstraintViolation(f"unknown step field {key}", {"field": key})
                setattr(step, key, copy.deepcopy(value))
            self._recount(step.flow_id)
            self._persist_state()
            return copy.deepcopy(step)

    def update_steps(
        self,
        flow_id: str,
        predicate: Callable[[FlowStep], bool],
        *,
        allow_terminal: bool = False,
        **changes: Any,
    ) -> List[FlowStep]:
        """Apply the same change to every step of a flow matching ``predicate``."""
        with self._data_lock:
            self._require_writable(flow_id, allow_terminal)
            touched = []
            for step in self.steps.get(flow_id, []):
                if predicate(step):
                    for key, value in changes.items():
                        setattr(step, key, copy.deepcopy(value))
                    touched.append(copy.deepcopy(step))
            self._recount(flow_id)
            self._persist_state()
            return touched

    def insert_step(self, flow_id: str, after_position: int, step: FlowStep) -> FlowStep:
        """Insert ``step`` at ``after_position + 1`` and shift later positions."""
        with self._data_lock:
            flow = self._require_flow(flow_id)
            if flow.is_terminal:
                raise ConstraintViolation("flow is terminal", {"flow_id": flow_id})
            steps = self.steps.setdefault(flow_id, [])
            if after_position < -1 or after_position >= len(steps):
                raise ConstraintViolation(
                    "insert position out of range",
                    {"flow_id": flow_id, "after_position": after_position},
                )
            new_position = after_position + 1
            for existing in steps:
                if existing.position >= new_position:
                    existing.position += 1
                shift_step_references(existing, new_position, 1)
            inserted = copy.deepcopy(step)
            inserted.flow_id = flow_id
            inserted.position = new_position
            steps.append(inserted)
            steps.sort(key=lambda s: s.position)
            self._recount(flow_id)
            self._persist_state()
            return copy.deepcopy(inserted)

    def delete_step(self, flow_id: str, step_id: str) -> FlowStep:
        with self._data_lock:
            flow = self._require_flow(flow_id)
            if flow.is_terminal:
                raise ConstraintViolation("flow is terminal", {"flow_id": flow_id})
            steps = self.steps.get(flow_id, [])
            target = next((s for s in steps if s.id == step_id), None)
            if target is None:
                raise ConstraintViolation("step not found", {"step_id": step_id})
            if target.status != StepStatus.PENDING:
                raise ConstraintViolation(
                    "only pending steps can be deleted",
                    {"step_id": step_id, "status": target.status.value},
                )
            steps.remove(target)
            for existing in steps:
                if existing.position > target.position:
                    existing.position -= 1
                shift_step_references(existing, target.position + 1, -1)
            self._recount(flow_id)
            self._persist_state()
            return copy.deepcopy(target)

    # logs
    def append_log(
        self,
        flow_id: str,
        log_type: LogType,
        message: str,
        *,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        step_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FlowLog:
        entry = FlowLog(
            id=new_id(),
            flow_id=flow_id,
            log_type=log_type,
            message=message,
            actor_type=actor_type,
            actor_id=actor_id,
            step_id=step_id,
            metadata=copy.deepcopy(metadata or {}),
        )
        with self._data_lock:
            self._require_flow(flow_id)
            self.logs.setdefault(flow_id, []).append(entry)
            self._persist_state()
        return copy.deepcopy(entry)

    def list_logs(self, flow_id: str) -> List[FlowLog]:
        with self._data_lock:
            return [copy.deepcopy(entry) for entry in self.logs.get(flow_id, [])]

    # capabilities
    def upsert_capability(self, capability: Capability) -> Capability:
        with self._data_lock:
            self.capabilities[(capability.slug, capability.tenant_id)] = copy.deepcopy(capability)
            self._persist_state()
            return copy.deepcopy(capability)

    def get_capability(self, slug: str, tenant_id: Optional[str] = None) -> Optional[Capability]:
        with self._data_lock:
            found = self.capabilities.get((slug, tenant_id)) or self.capabilities.get((slug, None))
            return copy.deepcopy(found) if found else None

    def list_capabilities(self, tenant_id: Optional[str] = None) -> List[Capability]:
        with self._data_lock:
            merged: Dict[str, Capability] = {}
            for (slug, owner), capability in self.capabilities.items():
                if owner is None and slug not in merged:
                    merged[slug] = capability
                elif owner is not None and owner == tenant_id:
                    merged[slug] = capability
            return [copy.deepcopy(merged[slug]) for slug in sorted(merged)]

    def upsert_capability_setting(self, setting: CapabilitySetting) -> CapabilitySetting:
        with self._data_lock:
            setting.updated_at = utcnow()
            self.capability_settings[(setting.tenant_id, setting.slug)] = copy.deepcopy(setting)
            self._persist_state()
            return copy.deepcopy(setting)

    def get_capability_setting(self, tenant_id: str, slug: str) -> Optional[CapabilitySetting]:
        with self._data_lock:
            found = self.capability_settings.get((tenant_id, slug))
            return copy.deepcopy(found) if found else None

    # business records
    def create_record(self, tenant_id: str, kind: str, data: Dict[str, Any]) -> Record:
        record = Record(id=new_id(), tenant_id=tenant_id, kind=kind, data=copy.deepcopy(data))
        with self._data_lock:
            self.records[record.id] = record
            self._persist_state()
            return copy.deepcopy(record)

    def get_record(self, tenant_id: str, kind: str, record_id: str) -> Optional[Record]:
        with self._data_lock:
            record = self.records.get(record_id)
            if record is None or record.tenant_id != tenant_id or record.kind != kind:
                return None
            return copy.deepcopy(record)

    def update_record(
        self, tenant_id: str, kind: str, record_id: str, data: Dict[str, Any]
    ) -> Record:
        with self._data_lock:
            record = self.records.get(record_id)
            if record is None or record.tenant_id != tenant_id or record.kind != kind:
                raise ConstraintViolation(f"{kind} not found", {"id": record_id})
            record.data.update(copy.deepcopy(data))
            record.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(record)

    def search_records(
        self,
        tenant_id: str,
        kind: str,
        *,
        text: Optional[str] = None,
        match_fields: Iterable[str] = ("title", "name"),
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 50,
    ) -> List[Record]:
        needle = text.lower().strip() if text else None
        filters = filters or {}
        with self._data_lock:
            found = []
            for record in self.records.values():
                if record.tenant_id != tenant_id or record.kind != kind:
                    continue
                if any(record.data.get(k) != v for k, v in filters.items()):
                    continue
                if needle and not any(
                    needle in str(record.data.get(name, "")).lower() for name in match_fields
                ):
                    continue
                found.append(copy.deepcopy(record))
            found.sort(key=lambda r: r.created_at)
            return found[:limit]

    # internals
    def _require_flow(self, flow_id: str) -> Flow:
        flow = self.flows.get(flow_id)
        if flow is None:
            raise ConstraintViolation("flow not found", {"flow_id": flow_id})
        return flow

    def _require_writable(self, flow_id: str, allow_terminal: bool = False) -> Flow:
        flow = self._require_flow(flow_id)
        if flow.is_terminal and not allow_terminal:
            raise ConstraintViolation("flow is terminal", {"flow_id": flow_id, "status": flow.status.value})
        return flow

    def _require_step(self, step_id: str) -> FlowStep:
        for steps in self.steps.values():
            for step in steps:
                if step.id == step_id:
                    return step
        raise ConstraintViolation("step not found", {"step_id": step_id})

    def _recount(self, flow_id: str) -> None:
        flow = self.flows[flow_id]
        steps = self.steps.get(flow_id, [])
        flow.total_steps = len(steps)
        flow.completed_steps = sum(1 for s in steps if s.status in ADVANCED_STEP_STATUSES)
        flow.updated_at = utcnow()

    def _snapshot(self, flow_id: str) -> Flow:
        flow = copy.deepcopy(self.flows[flow_id])
        flow.steps = [copy.deepcopy(s) for s in sorted(self.steps.get(flow_id, []), key=lambda s: s.position)]
        return flow

    def _state_path(self) -> Optional[Path]:
        if self.state_root is None:
            return None
        return self.state_root / "opsflow_state.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "flows": [
                {k: v for k, v in asdict(f).items() if k != "steps"}
                for f in self.flows.values()
            ],
            "steps": [asdict(s) for steps in self.steps.values() for s in steps],
            "logs": [asdict(entry) for entries in self.logs.values() for entry in entries],
            "capabilities": [asdict(c) for c in self.capabilities.values()],
            "capability_settings": [asdict(s) for s in self.capability_settings.values()],
            "records": [asdict(r) for r in self.records.values()],
        }
        try:
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(state, default=_json_default, indent=2))
            tmp.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.flows = {
            raw["id"]: _revive(Flow, raw, FlowStatus) for raw in data.get("flows", [])
        }
        self.steps = {flow_id: [] for flow_id in self.flows}
        for raw in data.get("steps", []):
            step = _revive(FlowStep, raw, StepStatus)
            self.steps.setdefault(step.flow_id, []).append(step)
        for steps in self.steps.values():
            steps.sort(key=lambda s: s.position)
        self.logs = {}
        for raw in data.get("logs", []):
            entry = _revive(FlowLog, raw)
            self.logs.setdefault(entry.flow_id, []).append(entry)
        self.capabilities = {}
        for raw in data.get("capabilities", []):
            capability = _revive(Capability, raw)
            self.capabilities[(capability.slug, capability.tenant_id)] = capability
        self.capability_settings = {}
        for raw in data.get("capability_settings", []):
            setting = _revive(CapabilitySetting, raw)
            self.capability_settings[(setting.tenant_id, setting.slug)] = setting
        self.records = {raw["id"]: _revive(Record, raw) for raw in data.get("records", [])}
        self.logger.info("memory_store_loaded", flows=len(self.flows), path=str(path))
        return True
