from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Correlation id for the current HTTP request or worker tick
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SECRET_KEY_PARTS = ("password", "secret", "token", "api_key", "apikey", "authorization", "custom_config")
_MAX_FIELD_CHARS = 2000
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _is_secret_key(key: Any) -> bool:
    lowered = str(key).lower().replace("-", "_")
    return any(part in lowered for part in _SECRET_KEY_PARTS)


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "***" if _is_secret_key(k) else _mask(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    return value


def _stamp_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-looking fields, including ones nested in params and headers."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _is_secret_key(key):
            event_dict[key] = "***"
        elif isinstance(value, (dict, list, tuple)):
            event_dict[key] = _mask(value)
    return event_dict


def _bound_payloads(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # capability results and response bodies can be arbitrarily large
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and len(value) > _MAX_FIELD_CHARS:
            event_dict[key] = value[:_MAX_FIELD_CHARS] + f"...[{len(value) - _MAX_FIELD_CHARS} more]"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True, development_mode: bool = False) -> None:
    """Install the structlog pipeline shared by the API and the flow workers.

    Console rendering is used in development mode or when JSON output is
    turned off; otherwise every line is a single JSON object carrying
    ``correlation_id`` and, inside a tick, ``flow_id``.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_correlation_id,
        _mask_secrets,
        _bound_payloads,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


# configured from the environment at import; the app reconfigures from Settings
configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def flow_log_context(flow_id: str, **extra: Any) -> Iterator[None]:
    """Bind ``flow_id`` (and extras) to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(flow_id=flow_id, **extra):
        yield


# Fragments that must not reach API callers through last_error or error bodies
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)database\s+error"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)[a-z]:\\[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key|bearer)\s*[:=]?\s*[^\s,]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]", limit: int = 500) -> str:
    """Strip credentials, paths and traces from a capability or step error."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > limit:
        error = error[: limit - 3] + "..."
    return error
