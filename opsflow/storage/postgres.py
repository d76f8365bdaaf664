from __future__ import annotations

import json
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from opsflow.logging import get_logger
from opsflow.service.expressions import shift_step_references
from opsflow.storage.errors import ConstraintViolation
from opsflow.storage.models import (
    ADVANCED_STEP_STATUSES,
    TERMINAL_FLOW_STATUSES,
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

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ops_flow (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    conversation_id TEXT,
    title TEXT NOT NULL,
    original_request TEXT NOT NULL,
    status TEXT NOT NULL,
    current_step_id TEXT,
    flow_context JSONB NOT NULL DEFAULT '{}'::jsonb,
    total_steps INTEGER NOT NULL DEFAULT 0,
    completed_steps INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    planning_prompt TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    started_at TIMESTAMPTZ,
    paused_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS ops_flow_user_idx ON ops_flow (user_id, status);

CREATE TABLE IF NOT EXISTS ops_flow_step (
    id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL REFERENCES ops_flow(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    step_type TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    capability_slug TEXT,
    description TEXT,
    input_params JSONB NOT NULL DEFAULT '{}'::jsonb,
    param_mappings JSONB NOT NULL DEFAULT '{}'::jsonb,
    result JSONB,
    error_message TEXT,
    prompt_type TEXT,
    prompt_message TEXT,
    prompt_options JSONB,
    user_response JSONB,
    condition JSONB,
    on_success_goto INTEGER,
    on_fail_goto INTEGER,
    corrections JSONB NOT NULL DEFAULT '[]'::jsonb,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ops_flow_step_flow_idx ON ops_flow_step (flow_id, position);

CREATE TABLE IF NOT EXISTS ops_flow_log (
    id TEXT PRIMARY KEY,
    flow_id TEXT NOT NULL REFERENCES ops_flow(id) ON DELETE CASCADE,
    step_id TEXT,
    log_type TEXT NOT NULL,
    message TEXT NOT NULL,
    actor_type TEXT NOT NULL,
    actor_id TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ops_flow_log_flow_idx ON ops_flow_log (flow_id, created_at);

CREATE TABLE IF NOT EXISTS ops_capability (
    slug TEXT NOT NULL,
    tenant_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL DEFAULT 'general',
    input_schema JSONB NOT NULL DEFAULT '{}'::jsonb,
    config JSONB NOT NULL DEFAULT '{}'::jsonb,
    secret_fields JSONB NOT NULL DEFAULT '[]'::jsonb,
    aliases JSONB,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (slug, tenant_id)
);

CREATE TABLE IF NOT EXISTS ops_capability_setting (
    tenant_id TEXT NOT NULL,
    slug TEXT NOT NULL,
    enabled BOOLEAN NOT NULL DEFAULT TRUE,
    custom_config_encrypted TEXT,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, slug)
);

CREATE TABLE IF NOT EXISTS ops_record (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS ops_record_kind_idx ON ops_record (tenant_id, kind);
"""

_JSON_NOT_NULL = {"flow_context", "input_params", "param_mappings", "corrections"}
_FLOW_JSON = {"flow_context"}
_STEP_JSON = {
    "input_params",
    "param_mappings",
    "result",
    "prompt_options",
    "user_response",
    "condition",
    "corrections",
}
_FLOW_COLUMNS = (
    "id tenant_id user_id conversation_id title original_request status current_step_id "
    "flow_context total_steps completed_steps retry_count max_retries last_error "
    "planning_prompt created_at updated_at started_at paused_at completed_at"
).split()
_STEP_COLUMNS = (
    "id flow_id position step_type title status capability_slug description input_params "
    "param_mappings result error_message prompt_type prompt_message prompt_options "
    "user_response condition on_success_goto on_fail_goto corrections started_at "
    "completed_at created_at"
).split()


def _encode(column: str, value: Any, json_columns: set[str]) -> Any:
    if column in json_columns:
        if value is None:
            if column in _JSON_NOT_NULL:
                return json.dumps([] if column == "corrections" else {})
            return None
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    return value


class PostgresStore:
    """Postgres-backed store with the same surface as :class:`MemoryStore`.

    Step mutations lock the owning flow row (``SELECT ... FOR UPDATE``) and
    recompute the step counters in the same transaction.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _flow_from_row(row: Dict[str, Any]) -> Flow:
        data = {k: row[k] for k in _FLOW_COLUMNS if k in row}
        data["status"] = FlowStatus(data["status"])
        data["flow_context"] = data.get("flow_context") or {}
        return Flow(**data)

    @staticmethod
    def _step_from_row(row: Dict[str, Any]) -> FlowStep:
        data = {k: row[k] for k in _STEP_COLUMNS if k in row}
        data["status"] = StepStatus(data["status"])
        data["step_type"] = StepType(data["step_type"])
        if data.get("prompt_type"):
            data["prompt_type"] = PromptType(data["prompt_type"])
        data["input_params"] = data.get("input_params") or {}
        data["param_mappings"] = data.get("param_mappings") or {}
        data["corrections"] = data.get("corrections") or []
        return FlowStep(**data)

    @staticmethod
    def _capability_from_row(row: Dict[str, Any]) -> Capability:
        return Capability(
            slug=row["slug"],
            name=row["name"],
            kind=CapabilityKind(row["kind"]),
            description=row.get("description") or "",
            category=row.get("category") or "general",
            input_schema=row.get("input_schema") or {},
            config=row.get("config") or {},
            secret_fields=row.get("secret_fields") or [],
            aliases=row.get("aliases"),
            enabled=bool(row.get("enabled", True)),
            tenant_id=row.get("tenant_id") or None,
            created_at=row.get("created_at") or utcnow(),
        )

    def _insert_step(self, conn, step: FlowStep) -> None:
        values = [_encode(c, getattr(step, c), _STEP_JSON) for c in _STEP_COLUMNS]
        placeholders = ", ".join(["%s"] * len(_STEP_COLUMNS))
        conn.execute(
            f"INSERT INTO ops_flow_step ({', '.join(_STEP_COLUMNS)}) VALUES ({placeholders})",
            values,
        )

    def _lock_flow(self, conn, flow_id: str) -> Dict[str, Any]:
        row = conn.execute("SELECT * FROM ops_flow WHERE id = %s FOR UPDATE", (flow_id,)).fetchone()
        if not row:
            raise ConstraintViolation("flow not found", {"flow_id": flow_id})
        return row

    def _lock_writable(self, conn, flow_id: str, allow_terminal: bool = False) -> Dict[str, Any]:
        row = self._lock_flow(conn, flow_id)
        if FlowStatus(row["status"]) in TERMINAL_FLOW_STATUSES and not allow_terminal:
            raise ConstraintViolation("flow is terminal", {"flow_id": flow_id, "status": row["status"]})
        return row

    def _write_splice(self, conn, step: FlowStep) -> None:
        """Persist the position and positional references of a spliced step."""
        conn.execute(
            """
            UPDATE ops_flow_step SET
                position = %s, param_mappings = %s, condition = %s,
                on_success_goto = %s, on_fail_goto = %s
            WHERE id = %s
            """,
            (
                step.position,
                _encode("param_mappings", step.param_mappings, _STEP_JSON),
                _encode("condition", step.condition, _STEP_JSON),
                step.on_success_goto,
                step.on_fail_goto,
                step.id,
            ),
        )

    def _recount(self, conn, flow_id: str) -> None:
        advanced = [s.value for s in ADVANCED_STEP_STATUSES]
        conn.execute(
            """
            UPDATE ops_flow SET
                total_steps = (SELECT count(*) FROM ops_flow_step WHERE flow_id = %s),
                completed_steps = (
                    SELECT count(*) FROM ops_flow_step WHERE flow_id = %s AND status = ANY(%s)
                ),
                updated_at = %s
            WHERE id = %s
            """,
            (flow_id, flow_id, advanced, utcnow(), flow_id),
        )

    def _load_steps(self, conn, flow_id: str) -> List[FlowStep]:
        rows = conn.execute(
            "SELECT * FROM ops_flow_step WHERE flow_id = %s ORDER BY position", (flow_id,)
        ).fetchall()
        return [self._step_from_row(r) for r in rows]

    # flows
    def create_flow(self, flow: Flow, steps: Iterable[FlowStep]) -> Flow:
        ordered = sorted(steps, key=lambda s: s.position)
        for index, step in enumerate(ordered):
            if step.position != index:
                raise ConstraintViolation(
                    "step positions must be dense and start at 0",
                    {"flow_id": flow.id, "position": step.position},
                )
            step.flow_id = flow.id
        values = [_encode(c, getattr(flow, c), _FLOW_JSON) for c in _FLOW_COLUMNS]
        placeholders = ", ".join(["%s"] * len(_FLOW_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO ops_flow ({', '.join(_FLOW_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
                for step in ordered:
                    self._insert_step(conn, step)
                self._recount(conn, flow.id)
        except errors.UniqueViolation:
            raise ConstraintViolation("flow already exists", {"flow_id": flow.id})
        created = self.get_flow(flow.id)
        assert created is not None
        return created

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ops_flow WHERE id = %s", (flow_id,)).fetchone()
            if not row:
                return None
            flow = self._flow_from_row(row)
            flow.steps = self._load_steps(conn, flow_id)
        return flow

    def list_flows(
        self,
        user_id: str,
        *,
        tenant_id: Optional[str] = None,
        statuses: Optional[Iterable[FlowStatus]] = None,
    ) -> List[Flow]:
        query = "SELECT * FROM ops_flow WHERE user_id = %s"
        params: List[Any] = [user_id]
        if tenant_id is not None:
            query += " AND tenant_id = %s"
            params.append(tenant_id)
        if statuses:
            query += " AND status = ANY(%s)"
            params.append([FlowStatus(s).value for s in statuses])
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            flows = [self._flow_from_row(r) for r in rows]
            for flow in flows:
                flow.steps = self._load_steps(conn, flow.id)
        return flows

    def update_flow(self, flow_id: str, *, allow_terminal: bool = False, **changes: Any) -> Flow:
        for key in changes:
            if key in {"id", "steps", "total_steps", "completed_steps"} or key not in _FLOW_COLUMNS:
                raise ConstraintViolation(f"field {key} is not writable", {"field": key})
        with self._connect() as conn:
            row = self._lock_flow(conn, flow_id)
            if FlowStatus(row["status"]) in TERMINAL_FLOW_STATUSES and not allow_terminal:
                raise ConstraintViolation(
                    "flow is terminal", {"flow_id": flow_id, "status": row["status"]}
                )
            if changes:
                assignments = ", ".join(f"{key} = %s" for key in changes)
                values = [_encode(k, v, _FLOW_JSON) for k, v in changes.items()]
                conn.execute(
                    f"UPDATE ops_flow SET {assignments}, updated_at = %s WHERE id = %s",
                    [*values, utcnow(), flow_id],
                )
        updated = self.get_flow(flow_id)
        assert updated is not None
        return updated

    def merge_flow_context(self, flow_id: str, data: Dict[str, Any], *, allow_terminal: bool = False) -> Flow:
        with self._connect() as conn:
            row = self._lock_writable(conn, flow_id, allow_terminal)
            context = row.get("flow_context") or {}
            for key, value in data.items():
                if isinstance(value, dict) and isinstance(context.get(key), dict):
                    context[key] = {**context[key], **value}
                else:
                    context[key] = value
            conn.execute(
                "UPDATE ops_flow SET flow_context = %s, updated_at = %s WHERE id = %s",
                (json.dumps(context, default=str), utcnow(), flow_id),
            )
        updated = self.get_flow(flow_id)
        assert updated is not None
        return updated

    # steps
    def update_step(self, step_id: str, *, allow_terminal: bool = False, **changes: Any) -> FlowStep:
        for key in changes:
            if key in {"id", "flow_id", "position"} or key not in _STEP_COLUMNS:
                raise ConstraintViolation(f"field {key} is not writable", {"field": key})
        with self._connect() as conn:
            row = conn.execute("SELECT flow_id FROM ops_flow_step WHERE id = %s", (step_id,)).fetchone()
            if not row:
                raise ConstraintViolation("step not found", {"step_id": step_id})
            self._lock_writable(conn, row["flow_id"], allow_terminal)
            if changes:
                assignments = ", ".join(f"{key} = %s" for key in changes)
                values = [_encode(k, v, _STEP_JSON) for k, v in changes.items()]
                conn.execute(
                    f"UPDATE ops_flow_step SET {assignments} WHERE id = %s", [*values, step_id]
                )
            self._recount(conn, row["flow_id"])
            updated = conn.execute("SELECT * FROM ops_flow_step WHERE id = %s", (step_id,)).fetchone()
        return self._step_from_row(updated)

    def update_steps(
        self,
        flow_id: str,
        predicate: Callable[[FlowStep], bool],
        *,
        allow_terminal: bool = False,
        **changes: Any,
    ) -> List[FlowStep]:
        touched: List[FlowStep] = []
        with self._connect() as conn:
            self._lock_writable(conn, flow_id, allow_terminal)
            assignments = ", ".join(f"{key} = %s" for key in changes)
            values = [_encode(k, v, _STEP_JSON) for k, v in changes.items()]
            for step in self._load_steps(conn, flow_id):
                if not predicate(step):
                    continue
                conn.execute(
                    f"UPDATE ops_flow_step SET {assignments} WHERE id = %s", [*values, step.id]
                )
                for key, value in changes.items():
                    setattr(step, key, value)
                touched.append(step)
            self._recount(conn, flow_id)
        return touched

    def insert_step(self, flow_id: str, after_position: int, step: FlowStep) -> FlowStep:
        with self._connect() as conn:
            self._lock_writable(conn, flow_id)
            existing = self._load_steps(conn, flow_id)
            if after_position < -1 or after_position >= len(existing):
                raise ConstraintViolation(
                    "insert position out of range",
                    {"flow_id": flow_id, "after_position": after_position},
                )
            new_position = after_position + 1
            # Shift from the tail so positions never collide mid-update.
            for other in sorted(existing, key=lambda s: s.position, reverse=True):
                if other.position >= new_position:
                    other.position += 1
                shift_step_references(other, new_position, 1)
                self._write_splice(conn, other)
            step.flow_id = flow_id
            step.position = new_position
            self._insert_step(conn, step)
            self._recount(conn, flow_id)
        return step

    def delete_step(self, flow_id: str, step_id: str) -> FlowStep:
        with self._connect() as conn:
            self._lock_writable(conn, flow_id)
            existing = self._load_steps(conn, flow_id)
            target = next((s for s in existing if s.id == step_id), None)
            if target is None:
                raise ConstraintViolation("step not found", {"step_id": step_id})
            if target.status != StepStatus.PENDING:
                raise ConstraintViolation(
                    "only pending steps can be deleted",
                    {"step_id": step_id, "status": target.status.value},
                )
            conn.execute("DELETE FROM ops_flow_step WHERE id = %s", (step_id,))
            for other in sorted(existing, key=lambda s: s.position):
                if other.id == step_id:
                    continue
                if other.position > target.position:
                    other.position -= 1
                shift_step_references(other, target.position + 1, -1)
                self._write_splice(conn, other)
            self._recount(conn, flow_id)
        return target

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
            metadata=metadata or {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO ops_flow_log
                        (id, flow_id, step_id, log_type, message, actor_type, actor_id, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        flow_id,
                        step_id,
                        LogType(log_type).value,
                        message,
                        ActorType(actor_type).value,
                        actor_id,
                        json.dumps(entry.metadata, default=str),
                        entry.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("flow not found", {"flow_id": flow_id})
        return entry

    def list_logs(self, flow_id: str) -> List[FlowLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM ops_flow_log WHERE flow_id = %s ORDER BY created_at, id", (flow_id,)
            ).fetchall()
        return [
            FlowLog(
                id=r["id"],
                flow_id=r["flow_id"],
                step_id=r.get("step_id"),
                log_type=LogType(r["log_type"]),
                message=r["message"],
                actor_type=ActorType(r["actor_type"]),
                actor_id=r.get("actor_id"),
                metadata=r.get("metadata") or {},
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # capabilities
    def upsert_capability(self, capability: Capability) -> Capability:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ops_capability
                    (slug, tenant_id, name, kind, description, category, input_schema, config,
                     secret_fields, aliases, enabled)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (slug, tenant_id) DO UPDATE SET
                    name = EXCLUDED.name, kind = EXCLUDED.kind,
                    description = EXCLUDED.description, category = EXCLUDED.category,
                    input_schema = EXCLUDED.input_schema, config = EXCLUDED.config,
                    secret_fields = EXCLUDED.secret_fields, aliases = EXCLUDED.aliases,
                    enabled = EXCLUDED.enabled
                """,
                (
                    capability.slug,
                    capability.tenant_id or "",
                    capability.name,
                    CapabilityKind(capability.kind).value,
                    capability.description,
                    capability.category,
                    json.dumps(capability.input_schema),
                    json.dumps(capability.config),
                    json.dumps(capability.secret_fields),
                    json.dumps(capability.aliases) if capability.aliases is not None else None,
                    capability.enabled,
                ),
            )
        return capability

    def get_capability(self, slug: str, tenant_id: Optional[str] = None) -> Optional[Capability]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM ops_capability WHERE slug = %s AND tenant_id IN (%s, '')
                ORDER BY tenant_id DESC LIMIT 1
                """,
                (slug, tenant_id or ""),
            ).fetchone()
        return self._capability_from_row(row) if row else None

    def list_capabilities(self, tenant_id: Optional[str] = None) -> List[Capability]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT ON (slug) * FROM ops_capability WHERE tenant_id IN (%s, '')
                ORDER BY slug, tenant_id DESC
                """,
                (tenant_id or "",),
            ).fetchall()
        return [self._capability_from_row(r) for r in rows]

    def upsert_capability_setting(self, setting: CapabilitySetting) -> CapabilitySetting:
        setting.updated_at = utcnow()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ops_capability_setting (tenant_id, slug, enabled, custom_config_encrypted, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, slug) DO UPDATE SET
                    enabled = EXCLUDED.enabled,
                    custom_config_encrypted = EXCLUDED.custom_config_encrypted,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    setting.tenant_id,
                    setting.slug,
                    setting.enabled,
                    setting.custom_config_encrypted,
                    setting.updated_at,
                ),
            )
        return setting

    def get_capability_setting(self, tenant_id: str, slug: str) -> Optional[CapabilitySetting]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ops_capability_setting WHERE tenant_id = %s AND slug = %s",
                (tenant_id, slug),
            ).fetchone()
        if not row:
            return None
        return CapabilitySetting(
            tenant_id=row["tenant_id"],
            slug=row["slug"],
            enabled=bool(row["enabled"]),
            custom_config_encrypted=row.get("custom_config_encrypted"),
            updated_at=row["updated_at"],
        )

    # business records
    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> Record:
        return Record(
            id=row["id"],
            tenant_id=row["tenant_id"],
            kind=row["kind"],
            data=row.get("data") or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_record(self, tenant_id: str, kind: str, data: Dict[str, Any]) -> Record:
        record = Record(id=new_id(), tenant_id=tenant_id, kind=kind, data=dict(data))
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO ops_record (id, tenant_id, kind, data, created_at, updated_at) VALUES (%s, %s, %s, %s, %s, %s)",
                (record.id, tenant_id, kind, json.dumps(record.data, default=str), record.created_at, record.updated_at),
            )
        return record

    def get_record(self, tenant_id: str, kind: str, record_id: str) -> Optional[Record]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM ops_record WHERE id = %s AND tenant_id = %s AND kind = %s",
                (record_id, tenant_id, kind),
            ).fetchone()
        return self._record_from_row(row) if row else None

    def update_record(
        self, tenant_id: str, kind: str, record_id: str, data: Dict[str, Any]
    ) -> Record:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE ops_record SET data = data || %s::jsonb, updated_at = %s
                WHERE id = %s AND tenant_id = %s AND kind = %s
                RETURNING *
                """,
                (json.dumps(data, default=str), utcnow(), record_id, tenant_id, kind),
            ).fetchone()
        if not row:
            raise ConstraintViolation(f"{kind} not found", {"id": record_id})
        return self._record_from_row(row)

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
        query = "SELECT * FROM ops_record WHERE tenant_id = %s AND kind = %s"
        params: List[Any] = [tenant_id, kind]
        if filters:
            query += " AND data @> %s::jsonb"
            params.append(json.dumps(filters, default=str))
        if text:
            clauses = []
            for name in match_fields:
                clauses.append("(data ->> %s) ILIKE %s")
                params.extend([name, f"%{text.strip()}%"])
            query += " AND (" + " OR ".join(clauses) + ")"
        query += " ORDER BY created_at LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._record_from_row(r) for r in rows]
