from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsflow.logging import get_logger

logger = get_logger(__name__)


class QueueBackend(str, Enum):
    """Where advancement tasks and flow locks live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the flow orchestration service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/opsflow", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    queue_backend: QueueBackend = env_field(
        QueueBackend.MEMORY,
        "QUEUE_BACKEND",
        description="memory keeps ticks in-process; redis survives restarts",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_root: str | None = env_field(
        None,
        "STATE_ROOT",
        description="Directory for memory store snapshots; unset disables persistence",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Disable background workers and external providers for tests.",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Planner / AI provider
    llm_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    llm_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    llm_model: str = env_field("gpt-4o-mini", "PLANNER_MODEL")
    planner_timeout_seconds: float = env_field(30.0, "PLANNER_TIMEOUT_SECONDS")
    planner_temperature: float = env_field(0.3, "PLANNER_TEMPERATURE")
    planner_max_tokens: int = env_field(2000, "PLANNER_MAX_TOKENS")

    # Driver
    flow_max_retries: int = env_field(3, "FLOW_MAX_RETRIES")
    flow_retry_backoff_seconds: float = env_field(
        5.0,
        "FLOW_RETRY_BACKOFF_SECONDS",
        description="Base delay before a failed step is re-ticked; doubles per retry",
    )
    flow_lock_ttl_seconds: float = env_field(120.0, "FLOW_LOCK_TTL_SECONDS")

    # Router
    outbound_timeout_seconds: float = env_field(30.0, "OUTBOUND_TIMEOUT_SECONDS")
    handler_timeout_seconds: float = env_field(30.0, "HANDLER_TIMEOUT_SECONDS")
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for tenant capability secrets",
    )
    event_source_tag: str = env_field("opsflow", "EVENT_SOURCE_TAG")

    # Worker pool
    worker_enabled: bool = env_field(True, "WORKER_ENABLED")
    worker_concurrency: int = env_field(4, "WORKER_CONCURRENCY")
    worker_poll_interval: float = env_field(0.5, "WORKER_POLL_INTERVAL")

    # HTTP
    cors_allow_origins: str = env_field("*", "CORS_ALLOW_ORIGINS")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("queue_backend")
    @classmethod
    def _validate_queue_backend(cls, value: QueueBackend) -> QueueBackend:
        return QueueBackend(value)

    @field_validator(
        "planner_timeout_seconds",
        "outbound_timeout_seconds",
        "handler_timeout_seconds",
        "flow_lock_ttl_seconds",
        "worker_poll_interval",
    )
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return value

    @field_validator("worker_concurrency", "planner_max_tokens")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("flow_max_retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("flow_max_retries cannot be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return normalized

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
