from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
import json
import logging
import re
from typing import Final

from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.lessons")

MAX_LESSON_CHARS: Final[int] = 400
GLOBAL_PREFIX_CHARS: Final[int] = 50
_FILE_LESSON = re.compile(r"^Fix for ([^:]+):")
_FILE_LESSON_KEY = re.compile(r"^Fix for ([^:]+:\S+)")
_MARKDOWN_LEAD = re.compile(r"^(?:#{1,6}\s+|[-*+]\s+|\d+[.)]\s+|>\s+)")
_TRANSIENT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"failed: Cannot use this model", re.IGNORECASE),
    re.compile(r"failed: Connection", re.IGNORECASE),
    re.compile(r"failed: timeout", re.IGNORECASE),
    re.compile(r"failed: ECONNREFUSED", re.IGNORECASE),
    re.compile(r"failed: ETIMEDOUT", re.IGNORECASE),
    re.compile(r"failed: rate limit", re.IGNORECASE),
    re.compile(r"failed: 5\d{2}", re.IGNORECASE),
    re.compile(r"failed: 4\d{2}", re.IGNORECASE),
    re.compile(r"tool made no changes, may need clearer", re.IGNORECASE),
)


@dataclass(frozen=True)
class LessonCounts:
    global_count: int
    file_specific: int
    files: int


@dataclass
class LessonBook:
    """Lessons learned from failed attempts, kept per repository branch.

    Lessons starting with ``Fix for <path>:`` belong to that file and replace an
    older lesson for the same ``path:line``. Everything else is global; a global
    lesson replaces an older one sharing its first 50 characters.
    """

    global_lessons: list[str] = field(default_factory=list)
    file_lessons: dict[str, list[str]] = field(default_factory=dict)
    dirty: bool = False

    def add(self, lesson: str) -> None:
        text = normalize_lesson_text(lesson)
        if not text:
            return
        match = _FILE_LESSON.match(text)
        if match is not None:
            self._add_file_lesson(match.group(1), text)
        else:
            self._add_global_lesson(text)

    def _add_global_lesson(self, lesson: str) -> None:
        if lesson in self.global_lessons:
            return
        prefix = lesson[:GLOBAL_PREFIX_CHARS]
        for index, existing in enumerate(self.global_lessons):
            if existing.startswith(prefix):
                self.global_lessons[index] = lesson
                self.dirty = True
                return
        self.global_lessons.append(lesson)
        self.dirty = True

    def _add_file_lesson(self, path: str, lesson: str) -> None:
        lessons = self.file_lessons.setdefault(path, [])
        key_match = _FILE_LESSON_KEY.match(lesson)
        if key_match is not None:
            key_prefix = f"Fix for {key_match.group(1)}"
            for index, existing in enumerate(lessons):
                if existing.startswith(key_prefix):
                    lessons[index] = lesson
                    self.dirty = True
                    return
        if lesson not in lessons:
            lessons.append(lesson)
            self.dirty = True

    def for_files(self, paths: Iterable[str]) -> list[str]:
        result = list(self.global_lessons)
        for path in dict.fromkeys(paths):
            result.extend(self.file_lessons.get(path, ()))
        return result

    def recent_for_file(self, path: str, *, limit: int = 5) -> list[str]:
        return list(self.file_lessons.get(path, ())[-limit:])

    def prune_transient(self) -> int:
        pruned = 0
        kept_global = [lesson for lesson in self.global_lessons if not _is_transient(lesson)]
        pruned += len(self.global_lessons) - len(kept_global)
        self.global_lessons = kept_global
        for path in list(self.file_lessons):
            kept = [lesson for lesson in self.file_lessons[path] if not _is_transient(lesson)]
            pruned += len(self.file_lessons[path]) - len(kept)
            if kept:
                self.file_lessons[path] = kept
            else:
                del self.file_lessons[path]
        if pruned:
            self.dirty = True
            log_event(LOGGER, "lessons_pruned", count=pruned)
        return pruned

    def compact(self, *, max_per_file: int = 10, max_global: int = 20) -> int:
        removed = 0
        if len(self.global_lessons) > max_global:
            removed += len(self.global_lessons) - max_global
            self.global_lessons = self.global_lessons[-max_global:]
        for path, lessons in self.file_lessons.items():
            if len(lessons) > max_per_file:
                removed += len(lessons) - max_per_file
                self.file_lessons[path] = lessons[-max_per_file:]
        if removed:
            self.dirty = True
        return removed

    def counts(self) -> LessonCounts:
        return LessonCounts(
            global_count=len(self.global_lessons),
            file_specific=sum(len(lessons) for lessons in self.file_lessons.values()),
            files=len(self.file_lessons),
        )

    @property
    def total(self) -> int:
        counts = self.counts()
        return counts.global_count + counts.file_specific


def normalize_lesson_text(lesson: str) -> str:
    lines: list[str] = []
    for raw_line in lesson.strip().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("```"):
            continue
        lines.append(_MARKDOWN_LEAD.sub("", line).replace("**", ""))
    text = " ".join(" ".join(lines).split())
    if len(text) > MAX_LESSON_CHARS:
        text = f"{text[: MAX_LESSON_CHARS - 3]}..."
    return text


def lessons_to_markdown(book: LessonBook, *, title: str) -> str:
    lines = [f"# Lessons: {title}", ""]
    if book.global_lessons:
        lines.append("## Global")
        lines.extend(f"- {lesson}" for lesson in book.global_lessons)
        lines.append("")
    for path in sorted(book.file_lessons):
        lines.append(f"## {path}")
        lines.extend(f"- {lesson}" for lesson in book.file_lessons[path])
        lines.append("")
    if not book.global_lessons and not book.file_lessons:
        lines.append("No lessons recorded.")
    return "\n".join(lines).rstrip() + "\n"


def lessons_to_json(book: LessonBook) -> str:
    return json.dumps(
        {"global": book.global_lessons, "files": book.file_lessons},
        indent=2,
        sort_keys=True,
    )


def _is_transient(lesson: str) -> bool:
    return any(pattern.search(lesson) for pattern in _TRANSIENT_PATTERNS)
