from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
import shutil

from reviewloop.config import is_valid_model_name
from reviewloop.models import RunnerErrorKind
from reviewloop.observability import log_event
from reviewloop.shell import CommandResult, run_capture


LOGGER = logging.getLogger("reviewloop.agent_adapter")


DEFAULT_MODEL_ROTATIONS: dict[str, tuple[str, ...]] = {
    "cursor": (
        "claude-sonnet-4-5-20250929",
        "gpt-5.2",
        "claude-opus-4-5-20251101",
        "gpt-5-mini",
    ),
    "claude-code": (
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-5-20251101",
        "claude-haiku-4-5-20251001",
    ),
    "aider": (
        "anthropic/claude-sonnet-4-5-20250929",
        "openai/gpt-5.2",
        "anthropic/claude-opus-4-5-20251101",
        "openai/gpt-5-mini",
    ),
    "opencode": (
        "claude-sonnet-4-5-20250929",
        "gpt-5.2",
        "gpt-5-mini",
    ),
    "codex": (
        "gpt-5.2-codex",
        "gpt-5.2",
        "gpt-5-mini",
    ),
    "llm-api": (
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-5-20251101",
        "claude-haiku-4-5-20251001",
    ),
}

NO_PROMPT_ERROR = "No prompt provided (nothing to fix)"

_AUTH_PATTERN = re.compile(
    r"authentication|unauthorized|invalid.*key|api.?key|not logged in|401", re.IGNORECASE
)
_PERMISSION_PATTERN = re.compile(
    r"permission denied|cannot write|read-only|requested permissions? to write|"
    r"haven't granted it yet|unable to write.*permission",
    re.IGNORECASE,
)
_ENVIRONMENT_PATTERN = re.compile(
    r"cursor.{0,10}position.{0,10}could.{0,10}not.{0,10}be.{0,10}read|"
    r"command not found|not a tty|inappropriate ioctl",
    re.IGNORECASE,
)
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_CURSOR_POSITION = re.compile(r"cursor\s+position\s+could\s+not\s+be\s+read", re.IGNORECASE)


@dataclass(frozen=True)
class RunnerResult:
    success: bool
    output: str
    error: str | None = None
    error_kind: RunnerErrorKind | None = None
    duration_ms: int = 0

    @property
    def fatal(self) -> bool:
        return self.error_kind in {"permission", "auth", "environment"}


@dataclass(frozen=True)
class RunnerStatus:
    installed: bool
    ready: bool
    version: str | None = None
    error: str | None = None


class AgentRunner(ABC):
    name: str = ""
    display_name: str = ""

    def __init__(self, *, models: tuple[str, ...] | None = None) -> None:
        self._models = models

    @property
    def supported_models(self) -> tuple[str, ...]:
        if self._models is not None:
            return self._models
        return DEFAULT_MODEL_ROTATIONS.get(self.name, ())

    @abstractmethod
    def run(self, workdir: Path, prompt: str, *, model: str | None = None) -> RunnerResult:
        """Ask the tool to edit files under workdir; git status decides what changed."""

    @abstractmethod
    def check_status(self) -> RunnerStatus:
        """Report whether the tool is installed and ready to accept work."""


def classify_failure(output: str) -> RunnerErrorKind:
    """Map tool output to an error kind; only ``tool`` failures are worth retrying."""
    if _ENVIRONMENT_PATTERN.search(output):
        return "environment"
    if _PERMISSION_PATTERN.search(output):
        return "permission"
    if _AUTH_PATTERN.search(output):
        return "auth"
    return "tool"


class CommandLineRunner(AgentRunner):
    """An agent driven through its own CLI in non-interactive mode."""

    binaries: tuple[str, ...] = ()
    api_key_envs: tuple[str, ...] = ()
    install_hint: str = ""

    def __init__(
        self,
        *,
        models: tuple[str, ...] | None = None,
        extra_args: tuple[str, ...] = (),
        environ: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(models=models)
        self._extra_args = extra_args
        self._environ = os.environ if environ is None else environ

    def resolve_binary(self) -> str | None:
        for binary in self.binaries:
            if shutil.which(binary):
                return binary
        return None

    def check_status(self) -> RunnerStatus:
        binary = self.resolve_binary()
        if binary is None:
            detail = f" ({self.install_hint})" if self.install_hint else ""
            return RunnerStatus(installed=False, ready=False, error=f"Not installed{detail}")
        version_result = run_capture([binary, "--version"])
        version = (version_result.stdout.strip() or None) if version_result.ok else None
        if self.api_key_envs and not any(self._environ.get(key) for key in self.api_key_envs):
            return RunnerStatus(
                installed=True,
                ready=False,
                version=version,
                error=f"{' or '.join(self.api_key_envs)} not set",
            )
        return self._extra_status_check(version)

    def _extra_status_check(self, version: str | None) -> RunnerStatus:
        return RunnerStatus(installed=True, ready=True, version=version)

    def run(self, workdir: Path, prompt: str, *, model: str | None = None) -> RunnerResult:
        refusal = reject_run(prompt, model) or self._refusal()
        if refusal is not None:
            return refusal

        binary = self.resolve_binary() or self.binaries[0]
        argv, stdin_text = self._command(binary=binary, workdir=workdir, prompt=prompt, model=model)
        log_event(
            LOGGER,
            "runner_started",
            runner=self.name,
            model=model,
            prompt_chars=len(prompt),
        )
        result = run_capture(argv, cwd=workdir, input_text=stdin_text, env=self._child_env())
        output = self._final_output(result)
        log_event(
            LOGGER,
            "runner_finished",
            runner=self.name,
            model=model,
            exit_code=result.returncode,
            duration_ms=result.duration_ms,
        )

        if result.ok:
            kind = self._error_kind_on_success(result.combined_output)
            if kind is None:
                return RunnerResult(success=True, output=output, duration_ms=result.duration_ms)
            return RunnerResult(
                success=False,
                output=output,
                error=f"{self.display_name} reported a {kind} problem",
                error_kind=kind,
                duration_ms=result.duration_ms,
            )
        return RunnerResult(
            success=False,
            output=output,
            error=result.stderr.strip() or f"Process exited with code {result.returncode}",
            error_kind=classify_failure(result.combined_output),
            duration_ms=result.duration_ms,
        )

    @abstractmethod
    def _command(
        self, *, binary: str, workdir: Path, prompt: str, model: str | None
    ) -> tuple[list[str], str | None]:
        """Return argv and the text to send on stdin."""

    def _child_env(self) -> dict[str, str] | None:
        return None

    def _final_output(self, result: CommandResult) -> str:
        return result.stdout

    def _refusal(self) -> RunnerResult | None:
        return None

    def _error_kind_on_success(self, output: str) -> RunnerErrorKind | None:
        if has_terminal_error(output):
            return "environment"
        return None


def has_terminal_error(output: str) -> bool:
    cleaned = _ANSI_ESCAPE.sub("", output)
    cleaned = "".join(" " if ord(ch) < 32 and ch != "\n" else ch for ch in cleaned)
    return bool(_CURSOR_POSITION.search(cleaned))


def reject_run(prompt: str, model: str | None) -> RunnerResult | None:
    """Return a failed result for requests no runner should start on."""
    if not prompt.strip():
        return RunnerResult(success=False, output="", error=NO_PROMPT_ERROR, error_kind="tool")
    if model is not None and not is_valid_model_name(model):
        return RunnerResult(
            success=False,
            output="",
            error=f"Invalid model name: {model}",
            error_kind="tool",
        )
    return None
