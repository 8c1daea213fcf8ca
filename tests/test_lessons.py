from __future__ import annotations

import json

from reviewloop.lessons import (
    LessonBook,
    MAX_LESSON_CHARS,
    lessons_to_json,
    lessons_to_markdown,
    normalize_lesson_text,
)


def test_file_lessons_are_keyed_by_path_and_replace_same_line() -> None:
    book = LessonBook()
    book.add("Fix for src/a.py:10 rejected: missed the else branch")
    book.add("Fix for src/a.py:20 rejected: wrong variable")
    book.add("Fix for src/a.py:10 rejected: still missed the else branch")

    assert book.file_lessons["src/a.py"] == [
        "Fix for src/a.py:10 rejected: still missed the else branch",
        "Fix for src/a.py:20 rejected: wrong variable",
    ]
    assert book.global_lessons == []
    assert book.dirty is True


def test_global_lessons_replace_on_shared_prefix() -> None:
    book = LessonBook()
    prefix = "codex with gpt-5 made no changes: the explanation "
    book.add(prefix + "one")
    book.add(prefix + "two")
    book.add("A different global lesson about formatting")

    assert book.global_lessons == [prefix + "two", "A different global lesson about formatting"]


def test_duplicate_global_lesson_does_not_mark_dirty() -> None:
    book = LessonBook(global_lessons=["Keep imports sorted in every module"])
    book.add("Keep imports sorted in every module")
    assert book.dirty is False


def test_for_files_includes_global_and_matching_files_only() -> None:
    book = LessonBook()
    book.add("Global lesson about tests being required")
    book.add("Fix for a.py:1 rejected: x")
    book.add("Fix for b.py:1 rejected: y")

    assert book.for_files(["a.py", "a.py"]) == [
        "Global lesson about tests being required",
        "Fix for a.py:1 rejected: x",
    ]


def test_recent_for_file_limits_to_newest() -> None:
    book = LessonBook()
    for line in range(8):
        book.add(f"Fix for a.py:{line} rejected: attempt {line}")
    assert book.recent_for_file("a.py", limit=2) == [
        "Fix for a.py:6 rejected: attempt 6",
        "Fix for a.py:7 rejected: attempt 7",
    ]
    assert book.recent_for_file("missing.py") == []


def test_prune_transient_drops_infrastructure_noise() -> None:
    book = LessonBook(
        global_lessons=[
            "claude failed: rate limit exceeded",
            "Prefer early returns in handlers",
        ],
        file_lessons={"a.py": ["Fix for a.py:3 failed: timeout after 60s"]},
    )

    assert book.prune_transient() == 2
    assert book.global_lessons == ["Prefer early returns in handlers"]
    assert book.file_lessons == {}
    assert book.dirty is True


def test_compact_keeps_newest_entries() -> None:
    book = LessonBook(
        global_lessons=[f"global {i}" for i in range(5)],
        file_lessons={"a.py": [f"Fix for a.py:{i} x" for i in range(4)]},
    )

    assert book.compact(max_per_file=2, max_global=3) == 4
    assert book.global_lessons == ["global 2", "global 3", "global 4"]
    assert book.file_lessons["a.py"] == ["Fix for a.py:2 x", "Fix for a.py:3 x"]
    counts = book.counts()
    assert (counts.global_count, counts.file_specific, counts.files) == (3, 2, 1)
    assert book.total == 5


def test_normalize_lesson_text_strips_markdown_and_truncates() -> None:
    normalized = normalize_lesson_text("## **Bold** heading\n```\n- item one\n")
    assert normalized == "Bold heading item one"
    long_text = normalize_lesson_text("word " * 200)
    assert len(long_text) == MAX_LESSON_CHARS
    assert long_text.endswith("...")


def test_empty_lesson_is_ignored() -> None:
    book = LessonBook()
    book.add("```\n```")
    assert book.total == 0
    assert book.dirty is False


def test_exports() -> None:
    book = LessonBook()
    assert "No lessons recorded." in lessons_to_markdown(book, title="o/r#1 (feature)")

    book.add("Global lesson about error handling style")
    book.add("Fix for a.py:1 rejected: wrong")
    markdown = lessons_to_markdown(book, title="o/r#1 (feature)")
    assert markdown.startswith("# Lessons: o/r#1 (feature)\n")
    assert "## Global\n- Global lesson about error handling style" in markdown
    assert "## a.py\n- Fix for a.py:1 rejected: wrong" in markdown

    payload = json.loads(lessons_to_json(book))
    assert payload == {
        "files": {"a.py": ["Fix for a.py:1 rejected: wrong"]},
        "global": ["Global lesson about error handling style"],
    }
