from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import re
import sys
import threading
from typing import Final, Literal, cast


_ROOT_LOGGER: Final[str] = "reviewloop"
_MAX_VALUE_LEN: Final[int] = 120
_MAX_SEQUENCE_ITEMS: Final[int] = 10
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s pr=%(pr_ref)s %(message)s"
_NO_PR_REF: Final[str] = "-"
_REDACTED: Final[str] = "<redacted>"
_SECRET_PATTERN = re.compile(
    r"\b(?:ghp_|gho_|ghs_|github_pat_|sk-ant-|sk-)[A-Za-z0-9_\-]{8,}"
)

# Milestones shown at "low" verbosity; warnings and errors always pass.
_MILESTONE_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "session_started",
        "session_resumed",
        "fix_iteration_started",
        "issue_verified_fixed",
        "issue_dismissed",
        "rotation_switched_tool",
        "rotation_fresh_round",
        "bail_out",
        "final_audit_finished",
        "runner_failed",
        "push_failed",
        "git_push_failed",
        "conflicts_unresolved",
        "github_issue_comment_failed",
        "resolution_interrupted",
        "resolution_finished",
    }
)

_pr_context = threading.local()


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    """Route ``reviewloop.*`` loggers to stderr and, optionally, a daily log file.

    ``None``/``False`` silences everything. ``"low"`` keeps warnings and the
    milestone events; ``True``/``"high"`` keeps every event.
    """
    root = logging.getLogger(_ROOT_LOGGER)
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    mode = _verbose_mode(verbose)
    if mode is None:
        root.addHandler(logging.NullHandler())
        root.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(DailyLogFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        handler.addFilter(_attach_pr_ref)
        if mode == "low":
            handler.addFilter(_milestones_only)
        root.addHandler(handler)
    root.setLevel(logging.INFO)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    logger.log(level, format_event(event, fields))


def format_event(event: str, fields: dict[str, object]) -> str:
    """Render ``event=<name>`` followed by the fields as sorted ``key=value`` pairs."""
    rendered = [f"event={_render(event)}"]
    rendered.extend(f"{key}={_render(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


@contextmanager
def logging_pr_context(pr_ref: str) -> Iterator[None]:
    """Tag every record logged by this thread with ``pr_ref`` until exit."""
    outer = getattr(_pr_context, "value", None)
    _pr_context.value = pr_ref
    try:
        yield
    finally:
        _pr_context.value = outer


def current_pr_ref() -> str:
    value = getattr(_pr_context, "value", None)
    if isinstance(value, str) and value:
        return value
    return _NO_PR_REF


def redact_secrets(text: str) -> str:
    return _SECRET_PATTERN.sub(_REDACTED, text)


def _render(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, Path):
        text = _clip(str(value))
    elif isinstance(value, str):
        text = _clip(redact_secrets(" ".join(value.split())))
    elif isinstance(value, list | tuple | set | frozenset):
        items = sorted(value, key=str) if isinstance(value, set | frozenset) else list(value)
        shown = [str(item) for item in items[:_MAX_SEQUENCE_ITEMS]]
        if len(items) > _MAX_SEQUENCE_ITEMS:
            shown.append(f"+{len(items) - _MAX_SEQUENCE_ITEMS}")
        text = _clip(redact_secrets(",".join(shown)))
    else:
        text = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in text) or "=" in text:
        return json.dumps(text)
    return text


def _clip(text: str) -> str:
    if not text:
        return "<empty>"
    if len(text) > _MAX_VALUE_LEN:
        return f"{text[:_MAX_VALUE_LEN]}..."
    return text


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    normalized = verbose.strip().lower()
    if normalized not in {"low", "high"}:
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, normalized)


def _event_name(message: str) -> str | None:
    head, _, _rest = message.partition(" ")
    name = head.removeprefix("event=")
    if name == head or not name:
        return None
    return name


def _attach_pr_ref(record: logging.LogRecord) -> bool:
    record.pr_ref = current_pr_ref()
    return True


def _milestones_only(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return _event_name(record.getMessage()) in _MILESTONE_EVENTS


class DailyLogFileHandler(logging.FileHandler):
    """Append to ``<logs_dir>/YYYY-MM-DD.log``, switching files at UTC midnight."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = logs_dir
        self._date_key = _utc_date_key()
        super().__init__(self._path_for(self._date_key), encoding="utf-8", delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        date_key = _utc_date_key()
        if date_key != self._date_key:
            self.acquire()
            try:
                if self.stream is not None:
                    self.stream.close()
                    self.stream = None  # type: ignore[assignment]
                self._date_key = date_key
                self.baseFilename = str(self._path_for(date_key))
            finally:
                self.release()
        if self.stream is None:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        super().emit(record)

    def _path_for(self, date_key: str) -> Path:
        return self._logs_dir / f"{date_key}.log"


def _utc_date_key() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")
