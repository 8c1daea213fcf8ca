from __future__ import annotations

from pathlib import Path
import json
from typing import cast

from reviewloop.agent_adapter import CommandLineRunner, RunnerStatus
from reviewloop.shell import CommandResult


class CodexRunner(CommandLineRunner):
    """Drive ``codex exec`` in full-auto mode with the prompt on stdin.

    Codex emits JSON events on stdout; the final agent message is what the
    loop inspects for a ``NO_CHANGES:`` explanation, so it is returned as the
    run output whenever one is present.
    """

    name = "codex"
    display_name = "OpenAI Codex"
    binaries = ("codex", "openai-codex")
    api_key_envs = ("OPENAI_API_KEY",)
    install_hint = "npm install -g @openai/codex"

    def _command(
        self, *, binary: str, workdir: Path, prompt: str, model: str | None
    ) -> tuple[list[str], str | None]:
        cmd = [binary, "exec", "--full-auto", "--json", "-C", str(workdir)]
        if model:
            cmd.extend(["--model", model])
        if self._extra_args:
            cmd.extend(self._extra_args)
        cmd.append("-")
        return cmd, prompt

    def _child_env(self) -> dict[str, str] | None:
        env = dict(self._environ)
        env.update({"CI": "1", "NO_COLOR": "1", "FORCE_COLOR": "0"})
        return env

    def _final_output(self, result: CommandResult) -> str:
        final_message = _extract_final_agent_message(result.stdout)
        errors = _extract_error_messages(result.stdout)
        if final_message is None and not errors:
            return result.stdout
        parts = [final_message] if final_message else []
        parts.extend(errors)
        return "\n".join(parts)

    def _extra_status_check(self, version: str | None) -> RunnerStatus:
        codex_home = self._environ.get("CODEX_HOME")
        if codex_home and not Path(codex_home).is_dir():
            return RunnerStatus(
                installed=True,
                ready=False,
                version=version,
                error="CODEX_HOME does not point at a directory",
            )
        return RunnerStatus(installed=True, ready=True, version=version)


def _extract_final_agent_message(raw_events: str) -> str | None:
    last_message: str | None = None
    for payload in _iter_events(raw_events):
        if payload.get("type") != "item.completed":
            continue
        item_obj = _as_object_dict(payload.get("item"))
        if item_obj is None:
            continue
        item_type = item_obj.get("type")
        message_text = item_obj.get("text")
        if item_type == "agent_message" and isinstance(message_text, str):
            last_message = message_text
    return last_message or None


def _extract_error_messages(raw_events: str) -> list[str]:
    messages: list[str] = []
    for payload in _iter_events(raw_events):
        event_type = payload.get("type")
        if event_type == "error":
            message = payload.get("message")
        elif event_type == "turn.failed":
            error_obj = _as_object_dict(payload.get("error"))
            message = error_obj.get("message") if error_obj is not None else None
        else:
            continue
        if isinstance(message, str) and message:
            messages.append(message)
    return messages


def _iter_events(raw_events: str) -> list[dict[str, object]]:
    events: list[dict[str, object]] = []
    for line in raw_events.splitlines():
        text = line.strip()
        if not text:
            continue
        payload = _parse_event_line(text)
        if payload is not None:
            events.append(payload)
    return events


def _parse_event_line(line: str) -> dict[str, object] | None:
    if not line.startswith("{"):
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
