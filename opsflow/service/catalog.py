"""Built-in capability catalogue installed by ``seed_default_capabilities``."""

from __future__ import annotations

from typing import List

from opsflow.storage.models import Capability, CapabilityKind

TASK_STATUSES = ["new", "working", "question", "on_hold", "in_review", "done", "canceled"]
PRIORITIES = ["low", "medium", "high", "urgent"]


def _schema(properties: dict, required: List[str] | None = None) -> dict:
    return {
        "type": "object",
        "properties": properties,
        "required": required or [],
    }


def default_capabilities() -> List[Capability]:
    return [
        Capability(
            slug="search_tasks",
            name="Search Tasks",
            kind=CapabilityKind.DIRECT,
            category="tasks",
            description="Find tasks by title or description when only part of the name is known.",
            input_schema=_schema(
                {
                    "search": {"type": "string", "description": "Text to find in task title or description"},
                    "status": {"type": "string", "enum": TASK_STATUSES},
                    "priority": {"type": "string", "enum": PRIORITIES},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 100},
                },
                ["search"],
            ),
        ),
        Capability(
            slug="get_task",
            name="Get Task",
            kind=CapabilityKind.DIRECT,
            category="tasks",
            description="Fetch one task by id.",
            input_schema=_schema({"task_id": {"type": "string"}}, ["task_id"]),
        ),
        Capability(
            slug="create_task",
            name="Create Task",
            kind=CapabilityKind.DIRECT,
            category="tasks",
            description="Create a task. Only title is required.",
            input_schema=_schema(
                {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "topic_id": {"type": "string"},
                    "project_id": {"type": "string"},
                    "priority": {"type": "string", "enum": PRIORITIES},
                    "status": {"type": "string", "enum": TASK_STATUSES},
                },
                ["title"],
            ),
            aliases={"params": {"name": "title", "summary": "title"}, "values": None},
        ),
        Capability(
            slug="update_task",
            name="Update Task",
            kind=CapabilityKind.DIRECT,
            category="tasks",
            description="Change a task's title, description, status or priority.",
            input_schema=_schema(
                {
                    "task_id": {"type": "string"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "status": {"type": "string", "enum": TASK_STATUSES},
                    "priority": {"type": "string", "enum": PRIORITIES},
                    "completed": {"type": "boolean"},
                },
                ["task_id"],
            ),
            aliases={
                "params": {"id": "task_id", "state": "status"},
                "values": {
                    "Complete": "done",
                    "Completed": "done",
                    "Finished": "done",
                    "In Progress": "working",
                    "Cancelled": "canceled",
                },
            },
        ),
        Capability(
            slug="create_comment",
            name="Create Comment",
            kind=CapabilityKind.DIRECT,
            category="tasks",
            description="Add a comment to a task.",
            input_schema=_schema(
                {"task_id": {"type": "string"}, "content": {"type": "string"}},
                ["task_id", "content"],
            ),
        ),
        Capability(
            slug="list_projects",
            name="List Projects",
            kind=CapabilityKind.DIRECT,
            category="projects",
            description="List projects, optionally filtered by a name search.",
            input_schema=_schema(
                {"search": {"type": "string"}, "limit": {"type": "integer", "minimum": 1}}
            ),
        ),
        Capability(
            slug="create_project",
            name="Create Project",
            kind=CapabilityKind.DIRECT,
            category="projects",
            description="Create a project.",
            input_schema=_schema(
                {"name": {"type": "string"}, "description": {"type": "string"}},
                ["name"],
            ),
            aliases={"params": {"title": "name", "project_name": "name"}, "values": None},
        ),
        Capability(
            slug="list_contacts",
            name="List Contacts",
            kind=CapabilityKind.DIRECT,
            category="crm",
            description="Find contacts by name, email or organization.",
            input_schema=_schema(
                {
                    "search": {"type": "string"},
                    "type": {"type": "string", "enum": ["lead", "customer", "partner"]},
                    "limit": {"type": "integer", "minimum": 1},
                }
            ),
        ),
        Capability(
            slug="create_deal",
            name="Create Deal",
            kind=CapabilityKind.DIRECT,
            category="crm",
            description="Open a deal for a contact.",
            input_schema=_schema(
                {
                    "contact_id": {"type": "string"},
                    "title": {"type": "string"},
                    "value": {"type": "number"},
                    "stage": {"type": "string", "enum": ["new", "qualified", "proposal", "won", "lost"]},
                },
                ["contact_id", "title"],
            ),
            aliases={"params": {"name": "title", "amount": "value"}, "values": None},
        ),
        Capability(
            slug="http_request_template",
            name="HTTP Request (Template)",
            kind=CapabilityKind.OUTBOUND_CALL,
            category="integration",
            description="Call an external API endpoint. Configure api_url and api_key per tenant.",
            input_schema=_schema({"payload": {"type": "string"}}),
            config={
                "api": {
                    "method": "POST",
                    "url": "{{api_url}}",
                    "headers": {"Authorization": "Bearer {{api_key}}"},
                    "body_template": {"data": "{{payload}}"},
                }
            },
            secret_fields=["api_url", "api_key"],
            enabled=False,
        ),
        Capability(
            slug="webhook_trigger_template",
            name="Webhook Trigger (Template)",
            kind=CapabilityKind.NOTIFICATION,
            category="integration",
            description="Trigger a webhook with a custom payload.",
            input_schema=_schema(
                {"event_type": {"type": "string"}, "event_data": {"type": "string"}},
                ["event_type"],
            ),
            config={
                "api": {
                    "url": "{{webhook_url}}",
                    "headers": {"X-Webhook-Secret": "{{webhook_secret}}"},
                },
                "payload_template": {"event": "{{event_type}}", "data": "{{event_data}}"},
            },
            secret_fields=["webhook_url", "webhook_secret"],
            enabled=False,
        ),
    ]


def seed_default_capabilities(registry) -> List[Capability]:
    return [registry.register(capability) for capability in default_capabilities()]
