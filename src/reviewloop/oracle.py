from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
import logging
import re
from typing import Generic, TypeVar

from reviewloop.llm_client import CompletionClient, OracleError
from reviewloop.models import ReviewIssue
from reviewloop.observability import log_event
from reviewloop.prompts import (
    build_audit_prompt,
    build_batch_existence_prompt,
    build_batch_verify_prompt,
    build_commit_message_prompt,
    build_direct_fix_prompt,
    build_existence_prompt,
    build_failed_fix_prompt,
    build_resolve_conflict_prompt,
    build_verify_prompt,
)


LOGGER = logging.getLogger("reviewloop.oracle")

T = TypeVar("T")

MIN_AUDIT_PARSE_RATE = 0.5
CONFLICT_MARKERS: tuple[str, ...] = ("<<<<<<<", ">>>>>>>")

_VERDICT_LINE = re.compile(
    r"^\s*(?:[-*]\s*)?(?:#+\s*)?\[?(?P<key>[A-Za-z0-9_.-]+)\]?\s*:\s*"
    r"(?P<answer>YES|NO)\b\s*[:\-]?\s*(?P<explanation>.*)$",
    re.IGNORECASE,
)
_SINGLE_VERDICT = re.compile(r"^\s*(?P<answer>YES|NO)\b\s*[:,.\-]?\s*", re.IGNORECASE)
_RECOMMENDED_MODELS = re.compile(r"^\s*RECOMMENDED_MODELS:\s*(?P<models>.+)$", re.IGNORECASE)
_MODEL_REASONING = re.compile(r"^\s*MODEL_REASONING:\s*(?P<reasoning>.+)$", re.IGNORECASE)
_FENCED_BLOCK = re.compile(r"```[^\n]*\n(?P<body>.*?)\n?```", re.DOTALL)


@dataclass(frozen=True)
class Verdict:
    answer: bool
    explanation: str


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Unparsed:
    reason: str


@dataclass(frozen=True)
class BatchCheckResult:
    verdicts: dict[str, Parsed[Verdict] | Unparsed]
    recommended_models: tuple[str, ...] = ()
    model_reasoning: str = ""


@dataclass(frozen=True)
class AuditResult:
    verdicts: dict[str, Parsed[Verdict] | Unparsed]
    parse_rate: float
    low_parse_rate: bool = field(default=False)


def verdict_or(result: Parsed[Verdict] | Unparsed, default: Verdict) -> Verdict:
    if isinstance(result, Parsed):
        return result.value
    return default


def batch_key(index: int) -> str:
    return f"issue_{index}"


def parse_single_verdict(text: str) -> Parsed[Verdict] | Unparsed:
    stripped = text.strip()
    match = _SINGLE_VERDICT.match(stripped)
    if match is None:
        return Unparsed(reason="response did not start with YES or NO")
    explanation = stripped[match.end() :].strip()
    return Parsed(Verdict(answer=match.group("answer").upper() == "YES", explanation=explanation))


def parse_verdict_lines(
    text: str, expected_keys: Sequence[str]
) -> dict[str, Parsed[Verdict] | Unparsed]:
    """Parse ``<key>: YES|NO: explanation`` lines.

    Keys are compared case-insensitively. Every expected key gets an entry:
    keys that never appear, or appear only on malformed lines, are ``Unparsed``.
    The first well-formed line for a key wins.
    """
    expected = {key.lower(): key for key in expected_keys}
    results: dict[str, Parsed[Verdict] | Unparsed] = {}
    mentioned: set[str] = set()
    for raw_line in text.splitlines():
        line = raw_line.strip().replace("**", "")
        if not line:
            continue
        match = _VERDICT_LINE.match(line)
        if match is None:
            lowered = line.lower()
            for key in expected:
                if re.match(rf"\W*{re.escape(key)}\b", lowered):
                    mentioned.add(key)
            continue
        key = match.group("key").lower()
        if key not in expected or expected[key] in results:
            continue
        results[expected[key]] = Parsed(
            Verdict(
                answer=match.group("answer").upper() == "YES",
                explanation=match.group("explanation").strip(),
            )
        )
    for lowered_key, key in expected.items():
        if key in results:
            continue
        if lowered_key in mentioned:
            results[key] = Unparsed(reason="malformed verdict line")
        else:
            results[key] = Unparsed(reason="missing from response")
    return results


def parse_recommendations(text: str) -> tuple[tuple[str, ...], str]:
    models: tuple[str, ...] = ()
    reasoning = ""
    for line in text.splitlines():
        models_match = _RECOMMENDED_MODELS.match(line)
        if models_match is not None:
            models = tuple(
                item.strip().strip("`")
                for item in models_match.group("models").split(",")
                if item.strip().strip("`")
            )
            continue
        reasoning_match = _MODEL_REASONING.match(line)
        if reasoning_match is not None:
            reasoning = reasoning_match.group("reasoning").strip()
    return models, reasoning


def extract_fenced_content(text: str) -> str | None:
    match = _FENCED_BLOCK.search(text)
    if match is None:
        return None
    return match.group("body")


def has_conflict_markers(content: str) -> bool:
    return any(
        line.startswith(marker) for line in content.splitlines() for marker in CONFLICT_MARKERS
    )


def strip_markdown_for_commit(text: str) -> str:
    lines: list[str] = []
    for raw_line in text.strip().splitlines():
        line = raw_line.rstrip()
        if line.strip().startswith("```"):
            continue
        line = re.sub(r"^#{1,6}\s+", "", line)
        line = re.sub(r"\*\*(.+?)\*\*", r"\1", line)
        line = re.sub(r"`([^`]+)`", r"\1", line)
        lines.append(line)
    while lines and not lines[0].strip():
        lines.pop(0)
    return "\n".join(lines).strip()


def fallback_commit_message(files: Sequence[str]) -> str:
    names = [path.rsplit("/", 1)[-1] for path in files]
    if not names:
        return "Address review feedback"
    if len(names) > 3:
        return f"Address review feedback in {', '.join(names[:3])} and {len(names) - 3} more"
    return f"Address review feedback in {', '.join(names)}"


def _chunk(
    items: Sequence[T], *, render: Callable[[Sequence[T]], str], max_chars: int
) -> list[list[T]]:
    batches: list[list[T]] = []
    current: list[T] = []
    for item in items:
        candidate = [*current, item]
        if current and len(render(candidate)) > max_chars:
            batches.append(current)
            current = [item]
        else:
            current = candidate
    if current:
        batches.append(current)
    return batches


class Oracle:
    """Structured questions for the reasoning model.

    Parsing never guesses: anything the response does not answer clearly comes
    back ``Unparsed`` and the caller decides the safe default.
    """

    def __init__(self, client: CompletionClient, *, max_context_chars: int = 400_000) -> None:
        self._client = client
        self._max_context_chars = max_context_chars

    def check_issue_exists(self, issue: ReviewIssue, snippet: str) -> Parsed[Verdict] | Unparsed:
        try:
            text = self._client.complete(build_existence_prompt(issue=issue, snippet=snippet))
        except OracleError as exc:
            return self._call_failed("check_issue_exists", exc)
        return parse_single_verdict(text)

    def batch_check_issues(
        self,
        issues: Sequence[ReviewIssue],
        *,
        model_context: str | None = None,
    ) -> BatchCheckResult:
        keyed = [(batch_key(index), issue) for index, issue in enumerate(issues, start=1)]
        verdicts: dict[str, Parsed[Verdict] | Unparsed] = {}
        recommended: tuple[str, ...] = ()
        reasoning = ""
        batches = _chunk(
            keyed,
            render=lambda batch: build_batch_existence_prompt(
                entries=batch, model_context=model_context
            ),
            max_chars=self._max_context_chars,
        )
        for batch in batches:
            keys = [key for key, _issue in batch]
            try:
                text = self._client.complete(
                    build_batch_existence_prompt(entries=batch, model_context=model_context)
                )
            except OracleError as exc:
                failure = self._call_failed("batch_check_issues", exc)
                parsed_batch: dict[str, Parsed[Verdict] | Unparsed] = {
                    key: failure for key in keys
                }
            else:
                parsed_batch = parse_verdict_lines(text, keys)
                if model_context and not recommended:
                    recommended, reasoning = parse_recommendations(text)
            for key, issue in batch:
                verdicts[issue.issue_id] = parsed_batch[key]
        log_event(
            LOGGER,
            "oracle_batch_check_finished",
            issues=len(issues),
            batches=len(batches),
            parsed=sum(1 for result in verdicts.values() if isinstance(result, Parsed)),
            recommended=len(recommended),
        )
        return BatchCheckResult(
            verdicts=verdicts,
            recommended_models=recommended,
            model_reasoning=reasoning,
        )

    def verify_fix(self, issue: ReviewIssue, diff: str) -> Parsed[Verdict] | Unparsed:
        try:
            text = self._client.complete(build_verify_prompt(issue=issue, diff=diff))
        except OracleError as exc:
            return self._call_failed("verify_fix", exc)
        return parse_single_verdict(text)

    def batch_verify_fixes(
        self, items: Sequence[tuple[ReviewIssue, str]]
    ) -> dict[str, Parsed[Verdict] | Unparsed]:
        keyed = [
            (batch_key(index), issue, diff) for index, (issue, diff) in enumerate(items, start=1)
        ]
        verdicts: dict[str, Parsed[Verdict] | Unparsed] = {}
        for batch in _chunk(
            keyed,
            render=lambda batch: build_batch_verify_prompt(entries=batch),
            max_chars=self._max_context_chars,
        ):
            keys = [key for key, _issue, _diff in batch]
            try:
                text = self._client.complete(build_batch_verify_prompt(entries=batch))
            except OracleError as exc:
                failure = self._call_failed("batch_verify_fixes", exc)
                parsed_batch: dict[str, Parsed[Verdict] | Unparsed] = {
                    key: failure for key in keys
                }
            else:
                parsed_batch = parse_verdict_lines(text, keys)
            for key, issue, _diff in batch:
                verdicts[issue.issue_id] = parsed_batch[key]
        return verdicts

    def final_audit(self, issues: Sequence[ReviewIssue]) -> AuditResult:
        keyed = [(batch_key(index), issue) for index, issue in enumerate(issues, start=1)]
        verdicts: dict[str, Parsed[Verdict] | Unparsed] = {}
        for batch in _chunk(
            keyed,
            render=lambda batch: build_audit_prompt(entries=batch),
            max_chars=self._max_context_chars,
        ):
            keys = [key for key, _issue in batch]
            try:
                text = self._client.complete(build_audit_prompt(entries=batch))
            except OracleError as exc:
                failure = self._call_failed("final_audit", exc)
                parsed_batch: dict[str, Parsed[Verdict] | Unparsed] = {
                    key: failure for key in keys
                }
            else:
                parsed_batch = parse_verdict_lines(text, keys)
            for key, issue in batch:
                verdicts[issue.issue_id] = parsed_batch[key]

        parsed_count = sum(1 for result in verdicts.values() if isinstance(result, Parsed))
        parse_rate = parsed_count / len(verdicts) if verdicts else 1.0
        low = parse_rate < MIN_AUDIT_PARSE_RATE
        if low:
            log_event(
                LOGGER,
                "audit_parse_rate_low",
                level=logging.WARNING,
                parsed=parsed_count,
                expected=len(verdicts),
            )
        return AuditResult(verdicts=verdicts, parse_rate=parse_rate, low_parse_rate=low)

    def analyze_failed_fix(self, issue: ReviewIssue, diff: str, rejection: str) -> str:
        try:
            text = self._client.complete(
                build_failed_fix_prompt(issue=issue, diff=diff, rejection=rejection)
            )
        except OracleError as exc:
            self._call_failed("analyze_failed_fix", exc)
            return rejection
        lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
        return lines[0] if lines else rejection

    def generate_commit_message(
        self, issues: Sequence[ReviewIssue], files: Sequence[str]
    ) -> str:
        try:
            text = self._client.complete(build_commit_message_prompt(issues=issues, files=files))
        except OracleError as exc:
            self._call_failed("generate_commit_message", exc)
            return fallback_commit_message(files)
        message = strip_markdown_for_commit(text)
        return message or fallback_commit_message(files)

    def resolve_conflict(self, path: str, content: str, *, base_branch: str) -> str | None:
        try:
            text = self._client.complete(
                build_resolve_conflict_prompt(path=path, content=content, base_branch=base_branch)
            )
        except OracleError as exc:
            self._call_failed("resolve_conflict", exc)
            return None
        resolved = extract_fenced_content(text)
        if resolved is None or has_conflict_markers(resolved):
            log_event(LOGGER, "oracle_conflict_resolution_rejected", path=path)
            return None
        return resolved if resolved.endswith("\n") else f"{resolved}\n"

    def direct_fix(self, issue: ReviewIssue, file_content: str) -> str | None:
        try:
            text = self._client.complete(
                build_direct_fix_prompt(issue=issue, file_content=file_content)
            )
        except OracleError as exc:
            self._call_failed("direct_fix", exc)
            return None
        fixed = extract_fenced_content(text)
        if fixed is None:
            return None
        if file_content.endswith("\n") and not fixed.endswith("\n"):
            fixed = f"{fixed}\n"
        return fixed

    def _call_failed(self, operation: str, exc: OracleError) -> Unparsed:
        log_event(
            LOGGER,
            "oracle_call_failed",
            operation=operation,
            error=str(exc),
        )
        return Unparsed(reason=f"oracle call failed: {exc}")
