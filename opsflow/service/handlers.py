"""Internal handlers behind ``direct`` capabilities.

Handlers run in a worker thread, receive already-validated parameters and
return an :class:`ExecutionResult`. Lookups that only have free text resolve
through a search and report ambiguity instead of guessing.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from opsflow.logging import get_logger
from opsflow.service.errors import CapabilityExecutionError
from opsflow.service.execution import ExecutionContext, ExecutionResult
from opsflow.storage.models import Record

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any], ExecutionContext], ExecutionResult]

TASK = "task"
COMMENT = "comment"
PROJECT = "project"
CONTACT = "contact"
DEAL = "deal"


def _task_view(record: Record) -> Dict[str, Any]:
    data = record.data
    return {
        "id": record.id,
        "entity_type": TASK,
        "title": data.get("title"),
        "status": data.get("status"),
        "priority": data.get("priority"),
        "project_id": data.get("project_id"),
        "topic_id": data.get("topic_id"),
    }


def _project_view(record: Record) -> Dict[str, Any]:
    return {"id": record.id, "entity_type": PROJECT, **record.data}


def _contact_view(record: Record) -> Dict[str, Any]:
    return {"id": record.id, "entity_type": CONTACT, **record.data}


class DirectHandlers:
    """Handler table keyed by capability slug."""

    def __init__(self, store) -> None:
        self.store = store
        self._handlers: Dict[str, Handler] = {
            "search_tasks": self.search_tasks,
            "get_task": self.get_task,
            "create_task": self.create_task,
            "update_task": self.update_task,
            "create_comment": self.create_comment,
            "list_projects": self.list_projects,
            "create_project": self.create_project,
            "list_contacts": self.list_contacts,
            "create_deal": self.create_deal,
        }

    def register(self, slug: str, handler: Handler) -> None:
        self._handlers[slug] = handler

    def get(self, slug: str) -> Optional[Handler]:
        return self._handlers.get(slug)

    @property
    def slugs(self) -> List[str]:
        return sorted(self._handlers)

    # helpers
    def _search(
        self,
        ctx: ExecutionContext,
        kind: str,
        search: Optional[str],
        *,
        fields: tuple = ("title", "name"),
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 20,
    ) -> List[Record]:
        return self.store.search_records(
            ctx.tenant_id,
            kind,
            text=search,
            match_fields=fields,
            filters={k: v for k, v in (filters or {}).items() if v is not None},
            limit=limit,
        )

    @staticmethod
    def _resolve_matches(
        matches: List[Dict[str, Any]], search: Optional[str], noun: str
    ) -> ExecutionResult:
        if not matches:
            return ExecutionResult.not_found(
                f"No {noun}s found matching '{search}'. Please provide more details:"
            )
        if search and len(matches) > 1:
            return ExecutionResult.multiple_matches(
                matches, f"Found {len(matches)} {noun}s matching '{search}'. Please select one:"
            )
        return ExecutionResult.ok(matches)

    def _require(self, ctx: ExecutionContext, kind: str, record_id: str) -> Record:
        record = self.store.get_record(ctx.tenant_id, kind, record_id)
        if record is None:
            raise CapabilityExecutionError(f"{kind} {record_id} not found", status_code=404)
        return record

    # tasks
    def search_tasks(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        search = params.get("search")
        records = self._search(
            ctx,
            TASK,
            search,
            fields=("title", "description"),
            filters={"status": params.get("status"), "priority": params.get("priority")},
            limit=int(params.get("limit") or 20),
        )
        return self._resolve_matches([_task_view(r) for r in records], search, "task")

    def get_task(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        return ExecutionResult.ok(_task_view(self._require(ctx, TASK, params["task_id"])))

    def create_task(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        data = {
            "title": params["title"],
            "description": params.get("description"),
            "status": params.get("status") or "new",
            "priority": params.get("priority") or "medium",
            "project_id": params.get("project_id"),
            "topic_id": params.get("topic_id"),
            "created_by": ctx.user_id,
        }
        record = self.store.create_record(ctx.tenant_id, TASK, data)
        logger.info("task_created", task_id=record.id, flow_id=ctx.flow_id)
        view = _task_view(record)
        view["task_id"] = record.id
        return ExecutionResult.ok(view, status_code=201)

    def update_task(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        self._require(ctx, TASK, params["task_id"])
        changes = {
            key: params[key]
            for key in ("title", "description", "status", "priority")
            if params.get(key) is not None
        }
        if params.get("completed") is True:
            changes["status"] = "done"
        if not changes:
            raise CapabilityExecutionError("update_task needs at least one field to change")
        record = self.store.update_record(ctx.tenant_id, TASK, params["task_id"], changes)
        return ExecutionResult.ok(_task_view(record))

    def create_comment(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        task = self._require(ctx, TASK, params["task_id"])
        record = self.store.create_record(
            ctx.tenant_id,
            COMMENT,
            {"task_id": task.id, "content": params["content"], "author_id": ctx.user_id},
        )
        return ExecutionResult.ok(record.as_dict(), status_code=201)

    # projects
    def list_projects(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        search = params.get("search")
        records = self._search(ctx, PROJECT, search, fields=("name",), limit=int(params.get("limit") or 20))
        return self._resolve_matches([_project_view(r) for r in records], search, "project")

    def create_project(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        record = self.store.create_record(
            ctx.tenant_id,
            PROJECT,
            {"name": params["name"], "description": params.get("description"), "members_count": 1},
        )
        view = _project_view(record)
        view["project_id"] = record.id
        return ExecutionResult.ok(view, status_code=201)

    # contacts / deals
    def list_contacts(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        search = params.get("search")
        records = self._search(
            ctx,
            CONTACT,
            search,
            fields=("full_name", "email", "organization"),
            filters={"type": params.get("type")},
            limit=int(params.get("limit") or 20),
        )
        return self._resolve_matches([_contact_view(r) for r in records], search, "contact")

    def create_deal(self, params: Dict[str, Any], ctx: ExecutionContext) -> ExecutionResult:
        contact = self._require(ctx, CONTACT, params["contact_id"])
        record = self.store.create_record(
            ctx.tenant_id,
            DEAL,
            {
                "title": params["title"],
                "contact_id": contact.id,
                "value": params.get("value"),
                "stage": params.get("stage") or "new",
            },
        )
        return ExecutionResult.ok({"id": record.id, "entity_type": DEAL, **record.data}, status_code=201)
