from __future__ import annotations

from pathlib import Path
from typing import Any

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import Screen
from textual.widgets import DataTable, Footer, Header, Static

from reviewloop.models import PullRequestRef
from reviewloop.session import SessionState
from reviewloop.stalemate import format_bail_out
from reviewloop.state import SessionSummary, StateStore


_DETAIL_MAX_CHARS = 400


class SessionApp(App[None]):
    """Read-only dashboard over the persisted resolution sessions."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("f", "cycle_repo_filter", "Repo Filter"),
        Binding("tab", "cycle_focus", "Focus"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    #detail {
        height: auto;
        max-height: 8;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, db_path: Path, refresh_seconds: int = 2) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._store: StateStore | None = None
        self._sessions: tuple[SessionSummary, ...] = ()
        self._repo_filter: str | None = None
        self._available_repos: tuple[str, ...] = ()
        self._selected_index = 0

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Sessions", classes="panel-title")
            yield DataTable(id="sessions-table")
            yield Static("Model Stats", classes="panel-title")
            yield DataTable(id="models-table")
            yield Static("", id="detail")
        yield Footer()

    def on_mount(self) -> None:
        self._init_tables()
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_repo_filter(self) -> None:
        self._repo_filter = _next_repo_filter(self._repo_filter, self._available_repos)
        self._selected_index = 0
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "sessions-table" or event.cursor_row < 0:
            return
        if event.cursor_row == self._selected_index:
            return
        self._selected_index = event.cursor_row
        self._refresh_detail()

    def _init_tables(self) -> None:
        self._base_table("#sessions-table").add_columns(
            "PR", "Branch", "Iter", "Phase", "Exit", "Verified", "Dismissed", "Stale", "Updated"
        )
        self._base_table("#models-table").add_columns(
            "Tool", "Model", "Fixes", "Failures", "No Changes", "Errors"
        )

    def _base_screen(self) -> Screen[Any]:
        if self.screen_stack:
            return self.screen_stack[0]
        return self.screen

    def _base_table(self, selector: str) -> DataTable:
        return self._base_screen().query_one(selector, DataTable)

    def _base_static(self, selector: str) -> Static:
        return self._base_screen().query_one(selector, Static)

    def _state_store(self) -> StateStore:
        if self._store is None:
            self._store = StateStore(self._db_path)
        return self._store

    def refresh_data(self) -> None:
        all_sessions = self._state_store().list_sessions()
        self._available_repos = tuple(sorted({item.repo_full_name for item in all_sessions}))
        self._sessions = _filter_sessions(all_sessions, self._repo_filter)
        if self._selected_index >= len(self._sessions):
            self._selected_index = 0
        self._base_static("#summary").update(
            _summary_text(sessions=self._sessions, repo_filter=self._repo_filter)
        )
        table = self._base_table("#sessions-table")
        table.clear(columns=False)
        _fill_sessions(table, self._sessions)
        if self._sessions:
            table.move_cursor(row=self._selected_index, animate=False)
        self._refresh_detail()

    def _refresh_detail(self) -> None:
        models_table = self._base_table("#models-table")
        models_table.clear(columns=False)
        state: SessionState | None = None
        if self._sessions:
            state = self._state_store().load_session(
                _pr_for_summary(self._sessions[self._selected_index])
            )
        _fill_model_stats(models_table, state)
        self._base_static("#detail").update(_detail_text(state))


def run_session_tui(*, db_path: Path, refresh_seconds: int = 2) -> None:
    app = SessionApp(db_path=db_path, refresh_seconds=refresh_seconds)
    app.run()


def _fill_sessions(table: DataTable, sessions: tuple[SessionSummary, ...]) -> None:
    if not sessions:
        table.add_row("-", "-", "-", "-", "-", "-", "-", "-", "No sessions recorded")
        return
    for item in sessions:
        phase = f"{item.phase} (interrupted)" if item.interrupted else item.phase
        table.add_row(
            f"{item.repo_full_name}#{item.pr_number}",
            item.branch,
            str(item.iteration),
            phase,
            item.exit_reason or "-",
            str(item.verified_count),
            str(item.dismissed_count),
            str(item.no_progress_cycles),
            item.updated_at,
        )


def _fill_model_stats(table: DataTable, state: SessionState | None) -> None:
    if state is None or not state.model_stats:
        table.add_row("-", "-", "-", "-", "-", "No attempts recorded")
        return
    for _key, stats in sorted(state.model_stats.items()):
        table.add_row(
            stats.tool,
            stats.model,
            str(stats.fixes),
            str(stats.failures),
            str(stats.no_changes),
            str(stats.errors),
        )


def _summary_text(*, sessions: tuple[SessionSummary, ...], repo_filter: str | None) -> str:
    finished = sum(1 for item in sessions if item.exit_reason is not None)
    interrupted = sum(1 for item in sessions if item.interrupted)
    bailed = sum(1 for item in sessions if item.exit_reason == "bail_out")
    return (
        " | ".join(
            [
                f"repo={repo_filter or 'all'}",
                f"sessions={len(sessions)}",
                f"finished={finished}",
                f"interrupted={interrupted}",
                f"bailed_out={bailed}",
            ]
        )
        + "\nKeys: r refresh | f repo filter | tab focus | q quit"
    )


def _detail_text(state: SessionState | None) -> str:
    if state is None:
        return ""
    if state.bail_out is not None:
        return _clip(format_bail_out(state.bail_out))
    if state.exit_detail:
        return _clip(state.exit_detail)
    return f"head={state.head_sha[:12]} started_at={state.started_at or '-'}"


def _clip(text: str) -> str:
    if len(text) <= _DETAIL_MAX_CHARS:
        return text
    return text[: _DETAIL_MAX_CHARS - 3].rstrip() + "..."


def _filter_sessions(
    sessions: tuple[SessionSummary, ...], repo_filter: str | None
) -> tuple[SessionSummary, ...]:
    if repo_filter is None:
        return sessions
    return tuple(item for item in sessions if item.repo_full_name == repo_filter)


def _next_repo_filter(current: str | None, available: tuple[str, ...]) -> str | None:
    options: tuple[str | None, ...] = (None, *available)
    if current not in options:
        return options[0]
    idx = options.index(current)
    return options[(idx + 1) % len(options)]


def _pr_for_summary(summary: SessionSummary) -> PullRequestRef:
    owner, _, name = summary.repo_full_name.partition("/")
    return PullRequestRef(owner=owner, name=name, number=summary.pr_number)
