from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
import logging
import subprocess
import time

from reviewloop.observability import redact_secrets


class CommandError(RuntimeError):
    pass


LOGGER = logging.getLogger("reviewloop.shell")

_PREVIEW_CHARS = 200
MISSING_EXECUTABLE_EXIT = 127


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined_output(self) -> str:
        if self.stderr and self.stdout:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr

    @property
    def command(self) -> str:
        return " ".join(self.argv)


def _preview(text: str, *, limit: int = _PREVIEW_CHARS) -> str:
    flattened = redact_secrets(text.replace("\n", "\\n").strip())
    if not flattened:
        return "<empty>"
    return flattened if len(flattened) <= limit else f"{flattened[:limit]}..."


def _execute(
    argv: Sequence[str],
    *,
    cwd: Path | None,
    input_text: str | None,
    env: Mapping[str, str] | None,
) -> CommandResult:
    started = time.monotonic()
    kwargs: dict[str, object] = {
        "cwd": str(cwd) if cwd else None,
        "input": input_text,
        "text": True,
        "capture_output": True,
        "check": False,
    }
    if env is not None:
        kwargs["env"] = dict(env)
    try:
        proc = subprocess.run(list(argv), **kwargs)  # type: ignore[call-overload]
    except FileNotFoundError as exc:
        returncode, stdout, stderr = (
            MISSING_EXECUTABLE_EXIT,
            "",
            f"command not found: {exc.filename or argv[0]}",
        )
    else:
        returncode, stdout, stderr = proc.returncode, proc.stdout or "", proc.stderr or ""
    return CommandResult(
        argv=tuple(argv),
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    """Run ``argv`` and return its stdout; raise ``CommandError`` on a non-zero exit."""
    result = _execute(argv, cwd=cwd, input_text=input_text, env=None)
    if check and not result.ok:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            result.command,
            result.returncode,
            _preview(result.stderr),
            _preview(result.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {result.command}\n"
            f"exit: {result.returncode}\n"
            f"stdout:\n{result.stdout}\n"
            f"stderr:\n{result.stderr}"
        )
    return result.stdout


def run_capture(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command and return its exit status and output without raising on failure.

    A missing executable is reported as exit code 127, the way a shell reports it.
    """
    result = _execute(argv, cwd=cwd, input_text=input_text, env=env)
    if not result.ok:
        LOGGER.warning(
            "event=command_nonzero command=%s exit_code=%s duration_ms=%s stderr=%s",
            argv[0],
            result.returncode,
            result.duration_ms,
            _preview(result.stderr),
        )
    return result
