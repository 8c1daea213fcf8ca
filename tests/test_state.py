from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from reviewloop.lessons import LessonBook
from reviewloop.models import (
    DismissalRecord,
    PullRequestRef,
    RemainingIssue,
    ReviewIssue,
    VerificationResult,
)
from reviewloop.session import SessionState
from reviewloop.stalemate import StalemateDetector, format_bail_out
from reviewloop.state import StateStore, _parse_dismissal_category, _parse_phase, _parse_remaining


PR = PullRequestRef("o", "r", 7)


def _state() -> SessionState:
    return SessionState.fresh(PR, branch="feature", head_sha="sha1")


def _issue(issue_id: str, path: str = "a.py", line: int | None = 3) -> ReviewIssue:
    return ReviewIssue(
        issue_id=issue_id,
        path=path,
        line=line,
        side="RIGHT",
        author="reviewer",
        body=f"Please fix {issue_id}\nmore detail",
    )


def test_verification_expires_after_configured_iterations() -> None:
    state = _state()
    state.start_iteration()
    state.mark_verified_fixed("c1")
    assert state.verified["c1"] == 1

    for _ in range(5):
        state.start_iteration()
    assert state.iteration == 6
    assert state.is_stale_verification("c1", expiry_iterations=5) is False

    state.start_iteration()
    assert state.is_stale_verification("c1", expiry_iterations=5) is True
    assert state.stale_verifications(expiry_iterations=5) == ("c1",)
    assert state.is_stale_verification("unknown", expiry_iterations=5) is False


def test_unmark_and_clear_verification_cache() -> None:
    state = _state()
    state.mark_verified_fixed("c1", iteration=2)
    state.mark_verified_fixed("c2")

    state.unmark_verified("c1")
    assert state.is_verified_fixed("c1") is False
    assert state.verified_this_session == {"c2"}

    state.clear_verification_cache()
    assert state.verified == {}
    assert state.verified_this_session == {"c2"}


def test_head_change_clears_audit_and_recommendations() -> None:
    state = _state()
    state.audited_head_sha = "sha1"
    state.set_recommendations(["m1"], reasoning="r")

    assert state.update_head("sha1") is False
    assert state.audited_head_sha == "sha1"
    assert state.update_head("sha2") is True
    assert state.head_sha == "sha2"
    assert state.audited_head_sha is None
    assert state.recommended_models == []


def test_model_stats_accumulate_per_tool_and_model() -> None:
    state = _state()
    state.record_model_fix("codex", "gpt-5", 2)
    state.record_model_failure("codex", "gpt-5")
    state.record_model_no_changes("codex", None)
    state.record_model_error("codex", None)

    stats = state.model_stats[("codex", "gpt-5")]
    assert (stats.fixes, stats.failures) == (2, 1)
    default = state.model_stats[("codex", "default")]
    assert (default.no_changes, default.errors) == (1, 1)
    tool = state.tool_state("codex")
    assert (tool.fixes, tool.failures, tool.no_changes, tool.errors) == (2, 1, 1, 1)


def test_session_round_trip_preserves_resumable_state(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    assert store.load_session(PR) is None

    state = _state()
    state.start_iteration()
    state.start_iteration()
    state.set_phase("fix")
    state.mark_interrupted()
    state.tool_state("codex").model_index = 1
    state.tool_state("codex").attempted_index = 1
    state.set_runner_index(1)
    state.counters.consecutive_failures = 2
    state.counters.no_progress_cycles = 1
    state.mark_verified_fixed("c1")
    state.add_dismissed(
        DismissalRecord(
            issue_id="c2",
            reason="The guard already exists on line 9",
            category="already-fixed",
            path="b.py",
            line=None,
            body="add a guard",
        )
    )
    state.record_verification(VerificationResult("c1", True, "fixed", 2))
    state.record_model_fix("codex", "gpt-5", 1)
    state.set_recommendations(["gpt-5"], reasoning="best at python")
    state.record_push()
    state.record_exit("interrupted", "SIGINT")

    store.save_session(state)
    loaded = store.load_session(PR)

    assert loaded is not None
    assert loaded.branch == "feature"
    assert loaded.iteration == 2
    assert loaded.phase == "fix"
    assert loaded.interrupted is True
    assert loaded.interrupt_phase == "fix"
    assert loaded.runner_index == 1
    assert loaded.tools["codex"].model_index == 1
    assert loaded.tools["codex"].attempted_index == 1
    assert loaded.tools["codex"].fixes == 1
    assert loaded.counters.consecutive_failures == 2
    assert loaded.counters.no_progress_cycles == 1
    assert loaded.verified == {"c1": 2}
    assert loaded.verified_this_session == set()
    assert loaded.dismissed["c2"].category == "already-fixed"
    assert loaded.dismissed["c2"].line is None
    assert loaded.verifications == [VerificationResult("c1", True, "fixed", 2)]
    assert loaded.model_stats[("codex", "gpt-5")].fixes == 1
    assert loaded.recommended_models == ["gpt-5"]
    assert loaded.recommendation_reasoning == "best at python"
    assert loaded.push_iterations == 1
    assert loaded.exit_reason == "interrupted"
    assert loaded.exit_detail == "SIGINT"
    assert loaded.started_at == state.started_at


def test_saving_twice_is_idempotent(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    state = _state()
    state.mark_verified_fixed("c1")
    state.record_verification(VerificationResult("c1", True, "fixed", 0))

    store.save_session(state)
    store.save_session(state)
    loaded = store.load_session(PR)

    assert loaded is not None
    assert loaded.verifications == [VerificationResult("c1", True, "fixed", 0)]
    assert loaded.verified == {"c1": 0}

    loaded.record_verification(VerificationResult("c1", False, "regressed", 1))
    store.save_session(loaded)
    reloaded = store.load_session(PR)
    assert reloaded is not None
    assert [item.reason for item in reloaded.verifications] == ["fixed", "regressed"]


def test_bail_out_record_round_trips_and_formats(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    state = _state()
    state.mark_verified_fixed("c1")
    state.counters.no_progress_cycles = 3
    detector = StalemateDetector(max_stale_cycles=3)
    assert detector.should_bail(state) is True
    record = detector.build_bail_out(
        state,
        remaining=[_issue("c2"), _issue("c3", path="b.py", line=None)],
        tools=["codex", "claude"],
    )
    state.record_bail_out(record)

    store.save_session(state)
    loaded = store.load_session(PR)

    assert loaded is not None
    assert loaded.bail_out is not None
    assert loaded.bail_out.cycles == 3
    assert loaded.bail_out.fixed_count == 1
    assert loaded.bail_out.remaining == (
        RemainingIssue("c2", "a.py", 3, "Please fix c2"),
        RemainingIssue("c3", "b.py", None, "Please fix c3"),
    )
    text = format_bail_out(loaded.bail_out)
    assert text.splitlines() == [
        "Bailed out after 3 cycle(s) without progress.",
        "Fixed: 1, remaining: 2",
        "Tools exhausted: codex, claude",
        "  - [c2] a.py:3: Please fix c2",
        "  - [c3] b.py: Please fix c3",
    ]


def test_list_and_delete_sessions(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    first = _state()
    first.mark_verified_fixed("c1")
    second = SessionState.fresh(PullRequestRef("o", "other", 2), branch="b2", head_sha="s2")
    second.record_exit("bail_out", "stuck")
    store.save_session(first)
    store.save_session(second)

    summaries = {(item.repo_full_name, item.pr_number): item for item in store.list_sessions()}
    assert set(summaries) == {("o/r", 7), ("o/other", 2)}
    assert summaries[("o/r", 7)].verified_count == 1
    assert summaries[("o/other", 2)].exit_reason == "bail_out"

    store.delete_session(PR)
    assert store.load_session(PR) is None
    assert [item.pr_number for item in store.list_sessions()] == [2]


def test_lessons_persist_per_repo_branch(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    book = LessonBook()
    book.add("Global lesson about running the formatter")
    book.add("Fix for a.py:1 rejected: off by one")
    assert book.dirty is True

    store.save_lessons("o/r", "feature", book)
    assert book.dirty is False

    loaded = store.load_lessons("o/r", "feature")
    assert loaded.global_lessons == ["Global lesson about running the formatter"]
    assert loaded.file_lessons == {"a.py": ["Fix for a.py:1 rejected: off by one"]}
    assert store.load_lessons("o/r", "other").total == 0


def test_invalid_persisted_values_raise(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.save_session(_state())
    conn = sqlite3.connect(tmp_path / "state.db")
    try:
        conn.execute("UPDATE sessions SET phase = 'bogus'")
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(RuntimeError, match="Invalid session phase"):
        store.load_session(PR)
    with pytest.raises(RuntimeError, match="Invalid dismissal category"):
        _parse_dismissal_category("maybe")
    assert _parse_phase("verify") == "verify"
    assert _parse_remaining("not json") == ()
    assert _parse_remaining('[{"issue_id": "x", "path": "p", "line": "3"}]') == (
        RemainingIssue("x", "p", None, ""),
    )
