from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from textual.widgets import DataTable

from reviewloop import session_tui as tui
from reviewloop.models import BailOutRecord, PullRequestRef
from reviewloop.session import SessionState
from reviewloop.state import SessionSummary, StateStore


class FakeTable:
    def __init__(self) -> None:
        self.rows: list[tuple[object, ...]] = []

    def add_row(self, *values: object) -> None:
        self.rows.append(values)


def _summary(repo: str, number: int, *, exit_reason: str | None = None) -> SessionSummary:
    return SessionSummary(
        repo_full_name=repo,
        pr_number=number,
        branch="feature",
        head_sha="abc",
        iteration=2,
        phase="fix",
        interrupted=exit_reason is None,
        exit_reason=exit_reason,
        exit_detail="",
        verified_count=3,
        dismissed_count=1,
        no_progress_cycles=0,
        updated_at="2026-01-01T00:00:00Z",
    )


def _save(store: StateStore, pr: PullRequestRef) -> SessionState:
    state = SessionState.fresh(pr, branch="feature", head_sha="0123456789abcdef")
    state.start_iteration()
    state.record_model_fix("codex", "gpt-5.2", 2)
    store.save_session(state)
    return state


def test_session_tui_helpers() -> None:
    sessions = (
        _summary("o/a", 1),
        _summary("o/b", 2, exit_reason="bail_out"),
        _summary("o/a", 3, exit_reason="audit_passed"),
    )

    assert tui._next_repo_filter(None, ("o/a", "o/b")) == "o/a"
    assert tui._next_repo_filter("o/a", ("o/a", "o/b")) == "o/b"
    assert tui._next_repo_filter("o/b", ("o/a", "o/b")) is None
    assert tui._next_repo_filter("gone", ("o/a",)) is None
    assert [item.pr_number for item in tui._filter_sessions(sessions, "o/a")] == [1, 3]
    assert tui._filter_sessions(sessions, None) == sessions
    assert tui._pr_for_summary(sessions[1]) == PullRequestRef("o", "b", 2)

    summary = tui._summary_text(sessions=sessions, repo_filter=None)
    assert "repo=all" in summary
    assert "sessions=3" in summary
    assert "finished=2" in summary
    assert "interrupted=1" in summary
    assert "bailed_out=1" in summary

    assert tui._clip("x" * 10) == "x" * 10
    clipped = tui._clip("y" * 1000)
    assert len(clipped) == 400
    assert clipped.endswith("...")


def test_fill_helpers_render_rows_and_placeholders() -> None:
    empty_sessions = FakeTable()
    tui._fill_sessions(empty_sessions, ())  # type: ignore[arg-type]
    assert empty_sessions.rows[0][-1] == "No sessions recorded"
    assert len(empty_sessions.rows[0]) == 9

    sessions = FakeTable()
    tui._fill_sessions(sessions, (_summary("o/a", 1),))  # type: ignore[arg-type]
    assert sessions.rows[0][:4] == ("o/a#1", "feature", "2", "fix (interrupted)")
    assert sessions.rows[0][4] == "-"

    empty_models = FakeTable()
    tui._fill_model_stats(empty_models, None)  # type: ignore[arg-type]
    assert empty_models.rows == [("-", "-", "-", "-", "-", "No attempts recorded")]

    state = SessionState.fresh(PullRequestRef("o", "a", 1), branch="b", head_sha="abc")
    state.record_model_no_changes("aider", None)
    models = FakeTable()
    tui._fill_model_stats(models, state)  # type: ignore[arg-type]
    assert models.rows == [("aider", "default", "0", "0", "1", "0")]


def test_detail_text_prefers_bail_out_then_exit_detail() -> None:
    state = SessionState.fresh(
        PullRequestRef("o", "a", 1), branch="b", head_sha="0123456789abcdef"
    )
    assert tui._detail_text(None) == ""
    assert tui._detail_text(state).startswith("head=0123456789ab started_at=")

    state.record_exit("no_changes", "No changes to commit")
    assert tui._detail_text(state) == "No changes to commit"

    state.record_bail_out(
        BailOutRecord(
            reason="no-progress-cycles",
            cycles=3,
            fixed_count=0,
            remaining=(),
            tools_exhausted=("codex",),
            recorded_at="2026-01-01T00:00:00Z",
        )
    )
    assert tui._detail_text(state).startswith("Bailed out after 3 cycle(s)")


def test_session_app_loads_sessions_and_cycles_filters(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    store = StateStore(db_path)
    _save(store, PullRequestRef("o", "a", 1))
    _save(store, PullRequestRef("o", "b", 2))
    app = tui.SessionApp(db_path=db_path, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            sessions = app.query_one("#sessions-table", DataTable)
            models = app.query_one("#models-table", DataTable)
            assert sessions.row_count == 2
            assert models.row_count == 1

            app.action_cycle_repo_filter()
            assert app._repo_filter == "o/a"
            assert sessions.row_count == 1
            app.action_cycle_repo_filter()
            assert app._repo_filter == "o/b"
            app.action_cycle_repo_filter()
            assert app._repo_filter is None
            assert sessions.row_count == 2

            app.action_refresh()
            app.action_cycle_focus()
            await pilot.pause()

    asyncio.run(run_app())


def test_session_app_shows_placeholder_rows_for_empty_store(tmp_path: Path) -> None:
    app = tui.SessionApp(db_path=tmp_path / "state.db", refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.query_one("#sessions-table", DataTable).row_count == 1
            assert app.query_one("#models-table", DataTable).row_count == 1

    asyncio.run(run_app())


def test_run_session_tui_runs_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: list[tuple[Path, int]] = []

    def fake_run(self: tui.SessionApp) -> None:
        calls.append((self._db_path, self._refresh_seconds))

    monkeypatch.setattr(tui.SessionApp, "run", fake_run)

    tui.run_session_tui(db_path=tmp_path / "state.db", refresh_seconds=5)

    assert calls == [(tmp_path / "state.db", 5)]
