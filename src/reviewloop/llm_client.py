from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
import logging
import os
import time
from typing import Any

from anthropic import Anthropic
from openai import OpenAI

from reviewloop.config import OracleConfig
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.llm_client")

DEFAULT_SYSTEM_PROMPT = (
    "You are a meticulous senior engineer reviewing pull request feedback. "
    "Answer exactly in the requested format."
)


class OracleError(RuntimeError):
    """The reasoning model could not produce a response after all retries."""


class CompletionClient(ABC):
    """One prompt in, one text response out, retried with exponential backoff."""

    def __init__(
        self,
        *,
        model: str,
        max_tokens: int = 4096,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self._sleep = sleep

    @abstractmethod
    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        """Make a single API call and return the raw text response."""

    def complete(self, prompt: str, *, system: str | None = None) -> str:
        system_prompt = system or DEFAULT_SYSTEM_PROMPT
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            started = time.monotonic()
            try:
                text = self._call_api(system_prompt, prompt)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                log_event(
                    LOGGER,
                    "llm_call_failed",
                    client=type(self).__name__,
                    model=self.model,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt == self.max_retries - 1:
                    break
                self._sleep(2**attempt)
                continue
            log_event(
                LOGGER,
                "llm_call_completed",
                client=type(self).__name__,
                model=self.model,
                prompt_chars=len(prompt),
                response_chars=len(text),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return text
        raise OracleError(
            f"{type(self).__name__} failed after {self.max_retries} attempts: {last_error}"
        ) from last_error


class AnthropicCompletionClient(CompletionClient):
    TEMPERATURE = 0.2

    def __init__(
        self,
        *,
        api_key: str | None = None,
        client: Any | None = None,
        thinking_budget: int | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._client = client if client is not None else Anthropic(api_key=api_key)
        self._thinking_budget = thinking_budget

    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        request: dict[str, Any] = {
            "model": self.model,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "max_tokens": self.max_tokens,
        }
        if self._thinking_budget is not None:
            request["thinking"] = {"type": "enabled", "budget_tokens": self._thinking_budget}
            request["max_tokens"] = self.max_tokens + self._thinking_budget
        else:
            request["temperature"] = self.TEMPERATURE
        response = self._client.messages.create(**request)
        text_blocks = [
            block.text for block in response.content if getattr(block, "type", None) == "text"
        ]
        return "".join(text_blocks).strip()


class OpenAICompletionClient(CompletionClient):
    def __init__(
        self,
        *,
        api_key: str | None = None,
        client: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._client = client if client is not None else OpenAI(api_key=api_key)

    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            max_completion_tokens=self.max_tokens,
        )
        content = response.choices[0].message.content
        return (content or "").strip()


def build_completion_client(
    config: OracleConfig,
    *,
    env: Mapping[str, str] | None = None,
    model: str | None = None,
) -> CompletionClient:
    environ = os.environ if env is None else env
    api_key = environ.get(config.api_key_env)
    if not api_key:
        raise OracleError(f"{config.api_key_env} must be set for the {config.provider} oracle")
    if config.provider == "anthropic":
        return AnthropicCompletionClient(
            api_key=api_key,
            thinking_budget=config.thinking_budget,
            model=model or config.model,
            max_tokens=config.max_tokens,
            max_retries=config.max_retries,
        )
    return OpenAICompletionClient(
        api_key=api_key,
        model=model or config.model,
        max_tokens=config.max_tokens,
        max_retries=config.max_retries,
    )
