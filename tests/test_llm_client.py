from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from reviewloop.config import OracleConfig
from reviewloop.llm_client import (
    AnthropicCompletionClient,
    OpenAICompletionClient,
    OracleError,
    build_completion_client,
)


@dataclass
class _Block:
    type: str
    text: str = ""


@dataclass
class _Response:
    content: list[_Block]


class FakeAnthropicMessages:
    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> _Response:
        self.requests.append(kwargs)
        return _Response(content=[_Block("thinking"), _Block("text", " YES: still there \n")])


class FakeAnthropic:
    def __init__(self) -> None:
        self.messages = FakeAnthropicMessages()


@dataclass
class _Message:
    content: str | None


@dataclass
class _Choice:
    message: _Message


@dataclass
class _ChatResponse:
    choices: list[_Choice]


class FakeCompletions:
    def __init__(self, content: str | None) -> None:
        self.content = content
        self.requests: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> _ChatResponse:
        self.requests.append(kwargs)
        return _ChatResponse(choices=[_Choice(_Message(self.content))])


class FakeOpenAI:
    def __init__(self, content: str | None) -> None:
        self.chat = type("Chat", (), {})()
        self.chat.completions = FakeCompletions(content)


def test_anthropic_client_joins_text_blocks_and_uses_temperature() -> None:
    fake = FakeAnthropic()
    client = AnthropicCompletionClient(client=fake, model="claude-x", max_tokens=100)

    assert client.complete("question", system="sys") == "YES: still there"
    request = fake.messages.requests[0]
    assert request["model"] == "claude-x"
    assert request["system"] == "sys"
    assert request["messages"] == [{"role": "user", "content": "question"}]
    assert request["temperature"] == AnthropicCompletionClient.TEMPERATURE
    assert "thinking" not in request


def test_anthropic_client_enables_extended_thinking() -> None:
    fake = FakeAnthropic()
    client = AnthropicCompletionClient(
        client=fake, model="claude-x", max_tokens=100, thinking_budget=50
    )

    client.complete("question")
    request = fake.messages.requests[0]
    assert request["thinking"] == {"type": "enabled", "budget_tokens": 50}
    assert request["max_tokens"] == 150
    assert "temperature" not in request


def test_openai_client_sends_system_and_user_messages() -> None:
    fake = FakeOpenAI(" NO: fixed ")
    client = OpenAICompletionClient(client=fake, model="gpt-x", max_tokens=64)

    assert client.complete("question") == "NO: fixed"
    request = fake.chat.completions.requests[0]
    assert request["model"] == "gpt-x"
    assert request["max_completion_tokens"] == 64
    assert [message["role"] for message in request["messages"]] == ["system", "user"]


def test_openai_client_handles_empty_content() -> None:
    client = OpenAICompletionClient(client=FakeOpenAI(None), model="gpt-x")
    assert client.complete("question") == ""


def test_build_completion_client_requires_api_key() -> None:
    with pytest.raises(OracleError, match="ANTHROPIC_API_KEY must be set"):
        build_completion_client(OracleConfig(), env={})


def test_build_completion_client_selects_provider() -> None:
    anthropic_client = build_completion_client(
        OracleConfig(thinking_budget=10), env={"ANTHROPIC_API_KEY": "k"}
    )
    assert isinstance(anthropic_client, AnthropicCompletionClient)

    openai_config = OracleConfig(provider="openai", model="gpt-5.2", api_key_env="OPENAI_API_KEY")
    openai_client = build_completion_client(
        openai_config, env={"OPENAI_API_KEY": "k"}, model="gpt-5-mini"
    )
    assert isinstance(openai_client, OpenAICompletionClient)
    assert openai_client.model == "gpt-5-mini"
