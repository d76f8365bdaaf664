from __future__ import annotations

from typing import List, Optional, Protocol

from openai import OpenAI

from opsflow.logging import get_logger

logger = get_logger(__name__)


class ModelBackend(Protocol):
    """Interface for pluggable chat-completion backends."""

    mode: str

    def generate(
        self,
        messages: List[dict],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> dict: ...


class OpenAIChatBackend:
    """OpenAI-compatible chat completions (any base_url speaking the same API)."""

    mode = "openai"

    def __init__(self, model: str, *, api_key: str, base_url: Optional[str] = None) -> None:
        self.model = model
        self.client = OpenAI(api_key=api_key, base_url=base_url)

    def generate(
        self,
        messages: List[dict],
        *,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> dict:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("llm_completion_no_choices", model=self.model)
            content = ""
        else:
            content = first_choice.message.content or ""
        usage = getattr(completion, "usage", None)
        return {
            "content": content,
            "usage": {
                "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                "completion_tokens": getattr(usage, "completion_tokens", 0),
                "total_tokens": getattr(usage, "total_tokens", 0),
            },
            "model": self.model,
        }


class LLMService:
    """Chat generation front door used by the planner."""

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        backend: Optional[ModelBackend] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        if backend is None and api_key:
            backend = OpenAIChatBackend(model, api_key=api_key, base_url=base_url)
        self.backend = backend

    @property
    def is_configured(self) -> bool:
        return self.backend is not None

    def generate(self, system_prompt: str, user_prompt: str, *, json_mode: bool = True) -> dict:
        if self.backend is None:
            raise RuntimeError("no AI provider configured; set OPENAI_API_KEY")
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return self.backend.generate(
            messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_mode=json_mode,
        )
