from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
import re

from reviewloop.models import ReviewComment, ReviewIssue


CONTEXT_BEFORE = 5
CONTEXT_AFTER = 10
HEAD_LINES = 50
RANGE_WITHOUT_END = 20
UNREADABLE = "(file not found or unreadable)"

_LOCATIONS_BLOCK = re.compile(r"LOCATIONS START\s*(.*?)\s*LOCATIONS END", re.DOTALL)
_LINE_RANGE = re.compile(r"#L(\d+)(?:-L(\d+))?")


def issues_from_comments(comments: Iterable[ReviewComment]) -> list[ReviewIssue]:
    """One issue per top-level inline review comment; replies are discussion."""
    issues: list[ReviewIssue] = []
    for comment in comments:
        if comment.in_reply_to_id is not None or not comment.path:
            continue
        issues.append(
            ReviewIssue(
                issue_id=str(comment.comment_id),
                path=comment.path,
                line=comment.line,
                side=comment.side,
                author=comment.user_login,
                body=comment.body,
            )
        )
    return issues


def line_range_from_body(body: str) -> tuple[int, int] | None:
    block = _LOCATIONS_BLOCK.search(body)
    if block is None:
        return None
    for location in block.group(1).strip().splitlines():
        match = _LINE_RANGE.search(location)
        if match is None:
            continue
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start + RANGE_WITHOUT_END
        return start, end
    return None


def code_snippet(workdir: Path, path: str, line: int | None, body: str = "") -> str:
    """Numbered excerpt around ``line`` (``N: text``), or the file head when no line is known."""
    target = workdir / path
    try:
        lines = target.read_text(encoding="utf-8", errors="replace").split("\n")
    except OSError:
        return UNREADABLE

    start_line, end_line = line, line
    explicit = line_range_from_body(body) if body else None
    if explicit is not None:
        start_line, end_line = explicit

    if start_line is None:
        return "\n".join(lines[:HEAD_LINES])

    start = max(0, start_line - CONTEXT_BEFORE - 1)
    end = min(len(lines), (end_line or start_line) + CONTEXT_AFTER)
    return "\n".join(
        f"{start + offset + 1}: {text}" for offset, text in enumerate(lines[start:end])
    )


def with_snippets(workdir: Path, issues: Iterable[ReviewIssue]) -> list[ReviewIssue]:
    return [
        issue.with_snippet(code_snippet(workdir, issue.path, issue.line, issue.body))
        for issue in issues
    ]
