from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Final


MIN_EXPLANATION_CHARS: Final[int] = 20
VAGUE_EXPLANATIONS: Final[frozenset[str]] = frozenset(
    {"fixed", "done", "looks good", "ok", "resolved", "already handled"}
)

_NO_CHANGES_LINE = re.compile(r"NO_CHANGES:\s*(.+)", re.IGNORECASE)
_INFERRED_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"already\s+(?:fixed|implemented|handled|present|exists?|correct)", re.IGNORECASE),
    re.compile(r"already\s+(?:has|contains|includes)", re.IGNORECASE),
    re.compile(
        r"(?:null\s+check|validation|handling|guard)\s+(?:already\s+)?exists", re.IGNORECASE
    ),
    re.compile(r"(?:code|implementation)\s+already", re.IGNORECASE),
    re.compile(
        r"no\s+(?:changes?|modifications?|updates?)\s+(?:are\s+)?(?:needed|required|necessary)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:doesn't|does\s+not)\s+(?:need|require)\s+(?:any\s+)?(?:changes?|fix(?:es)?)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:code|implementation|current\s+\w+)\s+is\s+(?:correct|fine|ok|appropriate)"
        r"(?:\s+as\s+is)?",
        re.IGNORECASE,
    ),
)
_ALREADY_HANDLED_MARKERS: Final[tuple[str, ...]] = ("already", "exists", "has", "implements")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


@dataclass(frozen=True)
class DismissalCheck:
    accepted: bool
    reason: str


def validate_dismissal_explanation(
    explanation: str | None, *, min_chars: int = MIN_EXPLANATION_CHARS
) -> DismissalCheck:
    """Decide whether an explanation is specific enough to dismiss an issue.

    Empty text, text shorter than ``min_chars`` and the vague phrases in
    ``VAGUE_EXPLANATIONS`` (case-insensitive, one trailing period tolerated) are
    rejected. A rejected explanation means the issue stays unresolved.
    """
    text = (explanation or "").strip()
    if not text:
        return DismissalCheck(accepted=False, reason="empty explanation")
    lowered = text.lower()
    if lowered in VAGUE_EXPLANATIONS or (
        lowered.endswith(".") and lowered[:-1] in VAGUE_EXPLANATIONS
    ):
        return DismissalCheck(accepted=False, reason=f"vague explanation: {text!r}")
    if len(text) < min_chars:
        return DismissalCheck(
            accepted=False,
            reason=f"explanation shorter than {min_chars} characters",
        )
    return DismissalCheck(accepted=True, reason="ok")


def is_valid_dismissal(explanation: str | None, *, min_chars: int = MIN_EXPLANATION_CHARS) -> bool:
    return validate_dismissal_explanation(explanation, min_chars=min_chars).accepted


def parse_no_changes_explanation(output: str) -> str | None:
    """Pull the agent's reason for not changing anything out of its output.

    An explicit ``NO_CHANGES: <reason>`` line wins. Otherwise the first sentence
    matching a common "already handled" phrasing is returned, prefixed with
    ``(inferred)``. Returns ``None`` when neither yields at least
    ``MIN_EXPLANATION_CHARS`` characters.
    """
    if not output:
        return None
    for line in output.splitlines():
        match = _NO_CHANGES_LINE.search(line)
        if match is None:
            continue
        explanation = match.group(1).strip()
        if len(explanation) >= MIN_EXPLANATION_CHARS:
            return explanation

    for pattern in _INFERRED_PATTERNS:
        match = pattern.search(output)
        if match is None:
            continue
        sentence = _sentence_around(output, match.start(), match.end())
        if len(sentence) >= MIN_EXPLANATION_CHARS:
            return f"(inferred) {sentence}"
    return None


def claims_already_handled(explanation: str) -> bool:
    lowered = explanation.lower()
    return any(marker in lowered for marker in _ALREADY_HANDLED_MARKERS)


def _sentence_around(text: str, start: int, end: int) -> str:
    offset = 0
    for sentence in _SENTENCE_SPLIT.split(text):
        sentence_start = text.find(sentence, offset)
        if sentence_start < 0:
            continue
        sentence_end = sentence_start + len(sentence)
        offset = sentence_end
        if sentence_start <= start and end <= sentence_end:
            return sentence.strip()
    return text[start:end].strip()
