from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import re
import tempfile
import time

from reviewloop.agent_adapter import (
    AgentRunner,
    CommandLineRunner,
    RunnerResult,
    RunnerStatus,
    classify_failure,
    reject_run,
)
from reviewloop.codex_adapter import CodexRunner
from reviewloop.config import (
    DEFAULT_API_KEY_ENVS,
    DEFAULT_ORACLE_MODELS,
    AgentsConfig,
    OracleConfig,
)
from reviewloop.llm_client import CompletionClient, OracleError, build_completion_client
from reviewloop.models import OracleProvider, RunnerErrorKind
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.runners")

SKIP_PERMISSIONS_ENV = "REVIEWLOOP_CLAUDE_SKIP_PERMISSIONS"
ROOT_REFUSAL = (
    "Claude Code refuses --dangerously-skip-permissions when running as root. "
    "Run as a non-root user, set REVIEWLOOP_CLAUDE_SKIP_PERMISSIONS=0, or use another tool."
)

_CLAUDE_PERMISSION_PROMPT = re.compile(
    r"requested permissions? to write|haven't granted it yet", re.IGNORECASE
)
_FILE_BLOCK = re.compile(
    r'<file\s+path="([^"]+)"(?:\s+action="([^"]+)")?>(.*?)</file>', re.DOTALL
)

_LLM_EDITOR_SYSTEM_PROMPT = """
You are an expert code editor fixing code review issues.

Rules:
1. Output ONLY file changes in the format below.
2. Make minimal, targeted changes and preserve existing style.
3. If nothing needs to change, output a single line starting with NO_CHANGES: and explain why.

For each file you modify, output its entire new content:
<file path="relative/path/to/file.ext">
file contents
</file>
""".strip()


class ClaudeCodeRunner(CommandLineRunner):
    name = "claude-code"
    display_name = "Claude Code"
    binaries = ("claude", "claude-code")
    install_hint = "npm install -g @anthropic-ai/claude-code"

    def __init__(
        self,
        *,
        models: tuple[str, ...] | None = None,
        extra_args: tuple[str, ...] = (),
        environ: Mapping[str, str] | None = None,
        is_root: Callable[[], bool] | None = None,
    ) -> None:
        super().__init__(models=models, extra_args=extra_args, environ=environ)
        self._is_root = is_root or _running_as_root

    @property
    def skip_permissions(self) -> bool:
        value = self._environ.get(SKIP_PERMISSIONS_ENV)
        return value not in {"0", "false"}

    def _extra_status_check(self, version: str | None) -> RunnerStatus:
        if self.skip_permissions and self._is_root():
            return RunnerStatus(installed=True, ready=False, version=version, error=ROOT_REFUSAL)
        return RunnerStatus(installed=True, ready=True, version=version)

    def _refusal(self) -> RunnerResult | None:
        if self.skip_permissions and self._is_root():
            return RunnerResult(
                success=False, output="", error=ROOT_REFUSAL, error_kind="permission"
            )
        return None

    def _command(
        self, *, binary: str, workdir: Path, prompt: str, model: str | None
    ) -> tuple[list[str], str | None]:
        cmd = [binary, "--print"]
        if self.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        if model:
            cmd.extend(["--model", model])
        cmd.extend(self._extra_args)
        return cmd, prompt

    def _error_kind_on_success(self, output: str) -> RunnerErrorKind | None:
        kind = super()._error_kind_on_success(output)
        if kind is None and _CLAUDE_PERMISSION_PROMPT.search(output):
            return "permission"
        return kind


class AiderRunner(CommandLineRunner):
    name = "aider"
    display_name = "Aider"
    binaries = ("aider",)
    api_key_envs = ("ANTHROPIC_API_KEY", "OPENAI_API_KEY")
    install_hint = "pip install aider-chat"

    _prompt_path: Path | None = None

    def run(self, workdir: Path, prompt: str, *, model: str | None = None) -> RunnerResult:
        rejected = reject_run(prompt, model)
        if rejected is not None:
            return rejected
        with tempfile.TemporaryDirectory(prefix="reviewloop_aider_") as tmp:
            prompt_path = Path(tmp) / "prompt.md"
            prompt_path.write_text(prompt, encoding="utf-8")
            prompt_path.chmod(0o600)
            self._prompt_path = prompt_path
            try:
                return super().run(workdir, prompt, model=model)
            finally:
                self._prompt_path = None

    def _command(
        self, *, binary: str, workdir: Path, prompt: str, model: str | None
    ) -> tuple[list[str], str | None]:
        cmd = [binary, "--yes-always"]
        if model:
            cmd.extend(["--model", model])
        cmd.extend(self._extra_args)
        if self._prompt_path is None:
            raise RuntimeError("Aider prompt file was not prepared")
        cmd.extend(["--message-file", str(self._prompt_path)])
        return cmd, None


class OpencodeRunner(CommandLineRunner):
    name = "opencode"
    display_name = "OpenCode"
    binaries = ("opencode",)
    install_hint = "npm install -g opencode-ai"

    def _command(
        self, *, binary: str, workdir: Path, prompt: str, model: str | None
    ) -> tuple[list[str], str | None]:
        cmd = [binary, "run"]
        if model:
            cmd.extend(["--model", model])
        cmd.extend(self._extra_args)
        return cmd, prompt


class CursorRunner(CommandLineRunner):
    name = "cursor"
    display_name = "Cursor Agent"
    binaries = ("cursor-agent", "cursor", "agent")
    install_hint = "curl https://cursor.com/install -fsS | bash"

    def _command(
        self, *, binary: str, workdir: Path, prompt: str, model: str | None
    ) -> tuple[list[str], str | None]:
        cmd = [binary, "--print", "--output-format", "text"]
        if model:
            cmd.extend(["--model", model])
        cmd.extend(self._extra_args)
        return cmd, prompt


class LlmApiRunner(AgentRunner):
    """Edit files by asking a model for whole-file replacements.

    The response is scanned for ``<file path="...">`` blocks; each block is
    written only when its path resolves inside the working directory.
    """

    name = "llm-api"
    display_name = "Direct LLM API"

    def __init__(
        self,
        *,
        models: tuple[str, ...] | None = None,
        environ: Mapping[str, str] | None = None,
        client_factory: Callable[[str | None], CompletionClient] | None = None,
    ) -> None:
        super().__init__(models=models)
        self._environ = os.environ if environ is None else environ
        self._client_factory = client_factory or self._default_client

    def provider(self) -> OracleProvider | None:
        if self._environ.get(DEFAULT_API_KEY_ENVS["anthropic"]):
            return "anthropic"
        if self._environ.get(DEFAULT_API_KEY_ENVS["openai"]):
            return "openai"
        return None

    @property
    def supported_models(self) -> tuple[str, ...]:
        if self._models is None and self.provider() == "openai":
            return ("gpt-5.2", "gpt-5-mini")
        return super().supported_models

    def check_status(self) -> RunnerStatus:
        provider = self.provider()
        if provider is None:
            return RunnerStatus(
                installed=False,
                ready=False,
                error="No API key found (set ANTHROPIC_API_KEY or OPENAI_API_KEY)",
            )
        return RunnerStatus(installed=True, ready=True, version=provider)

    def run(self, workdir: Path, prompt: str, *, model: str | None = None) -> RunnerResult:
        rejected = reject_run(prompt, model)
        if rejected is not None:
            return rejected
        started = time.monotonic()
        try:
            client = self._client_factory(model)
            response = client.complete(prompt, system=_LLM_EDITOR_SYSTEM_PROMPT)
        except OracleError as exc:
            return RunnerResult(
                success=False,
                output="",
                error=str(exc),
                error_kind=classify_failure(str(exc)),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        written = apply_file_blocks(workdir, response)
        log_event(
            LOGGER,
            "llm_api_files_written",
            model=model,
            count=len(written),
            files=",".join(written),
        )
        return RunnerResult(
            success=True,
            output=response,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def _default_client(self, model: str | None) -> CompletionClient:
        provider = self.provider()
        if provider is None:
            raise OracleError("No API key found (set ANTHROPIC_API_KEY or OPENAI_API_KEY)")
        config = OracleConfig(
            provider=provider,
            model=DEFAULT_ORACLE_MODELS[provider],
            api_key_env=DEFAULT_API_KEY_ENVS[provider],
            max_tokens=16_000,
        )
        return build_completion_client(config, env=self._environ, model=model)


def apply_file_blocks(workdir: Path, response: str) -> list[str]:
    root = workdir.resolve()
    written: list[str] = []
    for match in _FILE_BLOCK.finditer(response):
        rel_path, content = match.group(1), match.group(3)
        target = (root / rel_path).resolve()
        if target == root or not target.is_relative_to(root):
            log_event(LOGGER, "llm_api_path_rejected", path=rel_path)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content.strip() + "\n", encoding="utf-8")
        written.append(rel_path)
    return written


@dataclass(frozen=True)
class DetectedRunner:
    runner: AgentRunner
    status: RunnerStatus


RUNNER_TYPES: tuple[type[AgentRunner], ...] = (
    CursorRunner,
    ClaudeCodeRunner,
    AiderRunner,
    OpencodeRunner,
    CodexRunner,
    LlmApiRunner,
)


def build_runners(
    agents: AgentsConfig, *, environ: Mapping[str, str] | None = None
) -> list[AgentRunner]:
    """Instantiate every known runner, ordered by ``agents.order`` when it is set."""
    by_name: dict[str, AgentRunner] = {}
    for runner_type in RUNNER_TYPES:
        tool = runner_type.name
        models = agents.models_for(tool)
        runner: AgentRunner
        if runner_type is LlmApiRunner:
            runner = LlmApiRunner(models=models, environ=environ)
        else:
            assert issubclass(runner_type, CommandLineRunner)
            runner = runner_type(
                models=models,
                extra_args=agents.extra_args_for(tool),
                environ=environ,
            )
        by_name[tool] = runner
    if not agents.order:
        return list(by_name.values())
    ordered = [by_name[name] for name in agents.order if name in by_name]
    ordered.extend(runner for name, runner in by_name.items() if name not in agents.order)
    return ordered


def detect_runners(
    runners: Sequence[AgentRunner], *, preferred: str | None = None
) -> list[DetectedRunner]:
    """Return the ready runners, with ``preferred`` moved to the front when it is ready."""
    detected: list[DetectedRunner] = []
    for runner in runners:
        status = runner.check_status()
        log_event(
            LOGGER,
            "runner_detected",
            runner=runner.name,
            installed=status.installed,
            ready=status.ready,
            version=status.version,
            error=status.error,
        )
        if status.ready:
            detected.append(DetectedRunner(runner=runner, status=status))
    if preferred is not None:
        detected.sort(key=lambda item: item.runner.name != preferred)
    return detected


def runner_by_name(runners: Sequence[AgentRunner], name: str) -> AgentRunner | None:
    for runner in runners:
        if runner.name == name:
            return runner
    return None


def _running_as_root() -> bool:
    getuid = getattr(os, "geteuid", None)
    return getuid is not None and getuid() == 0
