from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from opsflow.logging import get_logger
from opsflow.service.errors import CapabilityNotFoundError, ValidationError
from opsflow.service.secrets import SecretBox
from opsflow.storage.models import Capability, CapabilityKind, CapabilitySetting

logger = get_logger(__name__)

# Applied when a capability does not declare its own aliases. Parameter
# aliases only fire when the target name exists in the capability schema.
DEFAULT_PARAM_ALIASES: Dict[str, str] = {
    "title": "search",
    "name": "search",
    "query": "search",
    "term": "search",
    "keyword": "search",
    "comment": "content",
    "text": "content",
    "message": "content",
    "body": "content",
    "note": "content",
}

DEFAULT_VALUE_ALIASES: Dict[str, str] = {
    "Done": "done",
    "Working": "working",
    "New": "new",
    "On Hold": "on_hold",
    "In Review": "in_review",
    "Question": "question",
    "Canceled": "canceled",
    "Low": "low",
    "Medium": "medium",
    "High": "high",
    "Urgent": "urgent",
}


class CapabilityRegistry:
    """Read-mostly catalogue of invocable capabilities, scoped per tenant."""

    def __init__(self, store, secrets: SecretBox) -> None:
        self.store = store
        self.secrets = secrets

    def register(self, capability: Capability) -> Capability:
        capability.kind = CapabilityKind(capability.kind)
        if capability.kind == CapabilityKind.COMPOSITE and not capability.config.get("composite_steps"):
            raise ValidationError(
                "composite capabilities need composite_steps", detail={"slug": capability.slug}
            )
        stored = self.store.upsert_capability(capability)
        logger.info("capability_registered", slug=capability.slug, kind=capability.kind.value)
        return stored

    def find(self, slug: str, tenant_id: Optional[str] = None) -> Optional[Capability]:
        capability = self.store.get_capability(slug, tenant_id)
        if capability is None:
            return None
        enabled = capability.enabled
        if tenant_id:
            # A tenant setting overrides the catalogue default; templates
            # ship disabled until a tenant configures them.
            setting = self.store.get_capability_setting(tenant_id, slug)
            if setting is not None:
                enabled = setting.enabled
        return capability if enabled else None

    def get_capability(self, slug: str, tenant_id: Optional[str] = None) -> Capability:
        capability = self.find(slug, tenant_id)
        if capability is None:
            raise CapabilityNotFoundError(slug)
        return capability

    def list_capabilities(self, tenant_id: Optional[str] = None) -> List[Capability]:
        return [
            capability
            for capability in self.store.list_capabilities(tenant_id)
            if self.find(capability.slug, tenant_id) is not None
        ]

    def describe(self, capability: Capability) -> Dict[str, Any]:
        return {
            "slug": capability.slug,
            "name": capability.name,
            "type": CapabilityKind(capability.kind).value,
            "description": capability.description,
            "category": capability.category,
            "input_schema": capability.input_schema,
        }

    @staticmethod
    def aliases_for(capability: Optional[Capability]) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Return (parameter aliases, value aliases) owned by the capability."""
        declared = (capability.aliases if capability else None) or {}
        params = declared.get("params")
        values = declared.get("values")
        return (
            dict(DEFAULT_PARAM_ALIASES if params is None else params),
            dict(DEFAULT_VALUE_ALIASES if values is None else values),
        )

    def configure(
        self,
        tenant_id: str,
        slug: str,
        *,
        enabled: bool = True,
        custom_config: Optional[Dict[str, Any]] = None,
    ) -> CapabilitySetting:
        capability = self.store.get_capability(slug, tenant_id)
        if capability is None:
            raise CapabilityNotFoundError(slug)
        existing = self.store.get_capability_setting(tenant_id, slug)
        encrypted = existing.custom_config_encrypted if existing else None
        if custom_config is not None:
            encrypted = self.secrets.encrypt_config(custom_config)
        setting = CapabilitySetting(
            tenant_id=tenant_id,
            slug=slug,
            enabled=enabled,
            custom_config_encrypted=encrypted,
        )
        logger.info("capability_configured", slug=slug, tenant_id=tenant_id, enabled=enabled)
        return self.store.upsert_capability_setting(setting)

    def tenant_config(self, tenant_id: Optional[str], slug: str) -> Dict[str, Any]:
        if not tenant_id:
            return {}
        setting = self.store.get_capability_setting(tenant_id, slug)
        if setting is None:
            return {}
        return self.secrets.decrypt_config(setting.custom_config_encrypted)
