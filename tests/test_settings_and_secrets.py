import pytest
from pydantic import ValidationError as PydanticValidationError

from opsflow.config import QueueBackend, Settings, get_settings, reset_settings_cache
from opsflow.logging import flow_log_context, get_correlation_id, sanitize_error_message, set_correlation_id
from opsflow.service.errors import ServerError
from opsflow.service.llm import LLMService
from opsflow.service.secrets import SecretBox


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("FLOW_MAX_RETRIES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    reset_settings_cache()

    settings = get_settings()

    assert settings.flow_max_retries == 5
    assert settings.cors_origins == ["https://a.test", "https://b.test"]
    assert settings.log_level == "DEBUG"
    assert settings.queue_backend == QueueBackend.MEMORY
    reset_settings_cache()


@pytest.mark.parametrize(
    "field,value",
    [("worker_poll_interval", 0), ("worker_concurrency", 0), ("flow_max_retries", -1), ("log_level", "loud")],
)
def test_settings_reject_bad_values(field, value):
    with pytest.raises(PydanticValidationError):
        Settings(**{field: value})


def test_secret_box_keeps_config_opaque():
    box = SecretBox("unit-test-key")
    token = box.encrypt_config({"api_key": "sk-live-123", "api_url": "https://crm.example.test"})

    assert "sk-live-123" not in token
    assert box.decrypt_config(token)["api_key"] == "sk-live-123"
    assert box.decrypt_config(None) == {}


def test_secret_box_rejects_foreign_tokens():
    token = SecretBox("key-one").encrypt_config({"a": 1})

    with pytest.raises(ServerError):
        SecretBox("key-two").decrypt_config(token)


@pytest.mark.parametrize(
    "message,leaked",
    [
        ("request failed: api_key=sk-123456", "sk-123456"),
        ("could not read /var/lib/opsflow/state.json", "/var/lib"),
        ("Authorization: Bearer abc.def", "abc.def"),
    ],
)
def test_sanitize_error_message(message, leaked):
    assert leaked not in sanitize_error_message(message)


def test_sanitize_error_message_truncates():
    assert len(sanitize_error_message("x" * 900)) == 500
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_round_trip():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated and generated != "req-1"
    with flow_log_context("f1", step_id="s1"):
        pass


def test_llm_service_requires_a_backend():
    service = LLMService("gpt-4o-mini")

    assert not service.is_configured
    with pytest.raises(RuntimeError):
        service.generate("system", "user")
