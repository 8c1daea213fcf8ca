from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import sqlite3
import threading
from typing import cast

from reviewloop.lessons import LessonBook
from reviewloop.models import (
    BailOutRecord,
    DismissalCategory,
    DismissalRecord,
    ExitReason,
    ModelStats,
    PullRequestRef,
    RemainingIssue,
    SessionPhase,
    VerificationResult,
)
from reviewloop.observability import log_event
from reviewloop.session import CycleCounters, SessionState, ToolModelState, utc_now_iso8601


LOGGER = logging.getLogger("reviewloop.state")

_SESSION_PHASES: frozenset[str] = frozenset(
    {
        "init",
        "fetch",
        "analyze",
        "fix",
        "verify",
        "commit",
        "push",
        "wait",
        "audit",
        "conflicts",
        "done",
    }
)
_DISMISSAL_CATEGORIES: frozenset[str] = frozenset({"already-fixed", "agent-confirmed"})


@dataclass(frozen=True)
class SessionSummary:
    repo_full_name: str
    pr_number: int
    branch: str
    head_sha: str
    iteration: int
    phase: str
    interrupted: bool
    exit_reason: str | None
    exit_detail: str
    verified_count: int
    dismissed_count: int
    no_progress_cycles: int
    updated_at: str


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    branch TEXT NOT NULL,
                    head_sha TEXT NOT NULL,
                    iteration INTEGER NOT NULL DEFAULT 0,
                    phase TEXT NOT NULL DEFAULT 'init',
                    interrupted INTEGER NOT NULL DEFAULT 0,
                    interrupt_phase TEXT NULL,
                    runner_index INTEGER NOT NULL DEFAULT 0,
                    consecutive_failures INTEGER NOT NULL DEFAULT 0,
                    model_failures_in_cycle INTEGER NOT NULL DEFAULT 0,
                    models_tried_this_tool_round INTEGER NOT NULL DEFAULT 1,
                    progress_this_cycle INTEGER NOT NULL DEFAULT 0,
                    no_progress_cycles INTEGER NOT NULL DEFAULT 0,
                    recommended_models_json TEXT NOT NULL DEFAULT '[]',
                    recommended_index INTEGER NOT NULL DEFAULT 0,
                    recommendation_reasoning TEXT NOT NULL DEFAULT '',
                    audited_head_sha TEXT NULL,
                    exit_reason TEXT NULL,
                    exit_detail TEXT NOT NULL DEFAULT '',
                    push_iterations INTEGER NOT NULL DEFAULT 0,
                    started_at TEXT NOT NULL DEFAULT '',
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, pr_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tool_states (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    tool TEXT NOT NULL,
                    model_index INTEGER NOT NULL,
                    attempted_index INTEGER NOT NULL,
                    fixes INTEGER NOT NULL,
                    failures INTEGER NOT NULL,
                    no_changes INTEGER NOT NULL,
                    errors INTEGER NOT NULL,
                    PRIMARY KEY (repo_full_name, pr_number, tool)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS model_stats (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    tool TEXT NOT NULL,
                    model TEXT NOT NULL,
                    fixes INTEGER NOT NULL,
                    failures INTEGER NOT NULL,
                    no_changes INTEGER NOT NULL,
                    errors INTEGER NOT NULL,
                    PRIMARY KEY (repo_full_name, pr_number, tool, model)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS verified_issues (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    issue_id TEXT NOT NULL,
                    verified_at_iteration INTEGER NOT NULL,
                    PRIMARY KEY (repo_full_name, pr_number, issue_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS verification_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    issue_id TEXT NOT NULL,
                    passed INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    iteration INTEGER NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dismissed_issues (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    issue_id TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    category TEXT NOT NULL,
                    path TEXT NOT NULL,
                    line INTEGER NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (repo_full_name, pr_number, issue_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bail_outs (
                    repo_full_name TEXT NOT NULL,
                    pr_number INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    cycles INTEGER NOT NULL,
                    fixed_count INTEGER NOT NULL,
                    remaining_json TEXT NOT NULL,
                    tools_exhausted_json TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    PRIMARY KEY (repo_full_name, pr_number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lessons (
                    repo_full_name TEXT NOT NULL,
                    branch TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    lesson TEXT NOT NULL,
                    PRIMARY KEY (repo_full_name, branch, file_path, position)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_verification_results_issue
                ON verification_results(repo_full_name, pr_number, issue_id)
                """
            )

    def load_session(self, pr: PullRequestRef) -> SessionState | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT branch, head_sha, iteration, phase, interrupted, interrupt_phase,
                       runner_index, consecutive_failures, model_failures_in_cycle,
                       models_tried_this_tool_round, progress_this_cycle, no_progress_cycles,
                       recommended_models_json, recommended_index, recommendation_reasoning,
                       audited_head_sha, exit_reason, exit_detail, push_iterations, started_at
                FROM sessions
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (pr.full_name, pr.number),
            ).fetchone()
            if row is None:
                return None

            state = SessionState(
                pr=pr,
                branch=str(row[0]),
                head_sha=str(row[1]),
                iteration=int(row[2]),
                phase=_parse_phase(row[3]),
                interrupted=bool(row[4]),
                interrupt_phase=_parse_phase(row[5]) if row[5] is not None else None,
                runner_index=int(row[6]),
                counters=CycleCounters(
                    consecutive_failures=int(row[7]),
                    model_failures_in_cycle=int(row[8]),
                    models_tried_this_tool_round=int(row[9]),
                    progress_this_cycle=int(row[10]),
                    no_progress_cycles=int(row[11]),
                ),
                recommended_models=_parse_str_list(row[12]),
                recommended_index=int(row[13]),
                recommendation_reasoning=str(row[14]),
                audited_head_sha=cast(str | None, row[15]),
                exit_reason=cast(ExitReason | None, row[16]),
                exit_detail=str(row[17]),
                push_iterations=int(row[18]),
                started_at=str(row[19]),
            )

            for tool_row in conn.execute(
                """
                SELECT tool, model_index, attempted_index, fixes, failures, no_changes, errors
                FROM tool_states
                WHERE repo_full_name = ? AND pr_number = ?
                ORDER BY tool ASC
                """,
                (pr.full_name, pr.number),
            ).fetchall():
                tool = str(tool_row[0])
                state.tools[tool] = ToolModelState(
                    tool=tool,
                    model_index=int(tool_row[1]),
                    attempted_index=int(tool_row[2]),
                    fixes=int(tool_row[3]),
                    failures=int(tool_row[4]),
                    no_changes=int(tool_row[5]),
                    errors=int(tool_row[6]),
                )

            for stats_row in conn.execute(
                """
                SELECT tool, model, fixes, failures, no_changes, errors
                FROM model_stats
                WHERE repo_full_name = ? AND pr_number = ?
                ORDER BY tool ASC, model ASC
                """,
                (pr.full_name, pr.number),
            ).fetchall():
                stats = ModelStats(
                    tool=str(stats_row[0]),
                    model=str(stats_row[1]),
                    fixes=int(stats_row[2]),
                    failures=int(stats_row[3]),
                    no_changes=int(stats_row[4]),
                    errors=int(stats_row[5]),
                )
                state.model_stats[(stats.tool, stats.model)] = stats

            for issue_id, verified_at in conn.execute(
                """
                SELECT issue_id, verified_at_iteration
                FROM verified_issues
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (pr.full_name, pr.number),
            ).fetchall():
                state.verified[str(issue_id)] = int(verified_at)

            for result_row in conn.execute(
                """
                SELECT issue_id, passed, reason, iteration
                FROM verification_results
                WHERE repo_full_name = ? AND pr_number = ?
                ORDER BY id ASC
                """,
                (pr.full_name, pr.number),
            ).fetchall():
                state.verifications.append(
                    VerificationResult(
                        issue_id=str(result_row[0]),
                        passed=bool(result_row[1]),
                        reason=str(result_row[2]),
                        iteration=int(result_row[3]),
                    )
                )

            for dismissed_row in conn.execute(
                """
                SELECT issue_id, reason, category, path, line, body
                FROM dismissed_issues
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (pr.full_name, pr.number),
            ).fetchall():
                record = DismissalRecord(
                    issue_id=str(dismissed_row[0]),
                    reason=str(dismissed_row[1]),
                    category=_parse_dismissal_category(dismissed_row[2]),
                    path=str(dismissed_row[3]),
                    line=cast(int | None, dismissed_row[4]),
                    body=str(dismissed_row[5]),
                )
                state.dismissed[record.issue_id] = record

            bail_row = conn.execute(
                """
                SELECT reason, cycles, fixed_count, remaining_json,
                    tools_exhausted_json, recorded_at
                FROM bail_outs
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                (pr.full_name, pr.number),
            ).fetchone()
            if bail_row is not None:
                state.bail_out = BailOutRecord(
                    reason="no-progress-cycles",
                    cycles=int(bail_row[1]),
                    fixed_count=int(bail_row[2]),
                    remaining=_parse_remaining(bail_row[3]),
                    tools_exhausted=tuple(_parse_str_list(bail_row[4])),
                    recorded_at=str(bail_row[5]),
                )
        return state

    def save_session(self, state: SessionState) -> None:
        """Persist the whole session aggregate in one transaction."""
        key = (state.pr.full_name, state.pr.number)
        counters = state.counters
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions(
                    repo_full_name, pr_number, branch, head_sha, iteration, phase,
                    interrupted, interrupt_phase, runner_index, consecutive_failures,
                    model_failures_in_cycle, models_tried_this_tool_round, progress_this_cycle,
                    no_progress_cycles, recommended_models_json, recommended_index,
                    recommendation_reasoning, audited_head_sha, exit_reason, exit_detail,
                    push_iterations, started_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                       strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                ON CONFLICT(repo_full_name, pr_number) DO UPDATE SET
                    branch=excluded.branch,
                    head_sha=excluded.head_sha,
                    iteration=excluded.iteration,
                    phase=excluded.phase,
                    interrupted=excluded.interrupted,
                    interrupt_phase=excluded.interrupt_phase,
                    runner_index=excluded.runner_index,
                    consecutive_failures=excluded.consecutive_failures,
                    model_failures_in_cycle=excluded.model_failures_in_cycle,
                    models_tried_this_tool_round=excluded.models_tried_this_tool_round,
                    progress_this_cycle=excluded.progress_this_cycle,
                    no_progress_cycles=excluded.no_progress_cycles,
                    recommended_models_json=excluded.recommended_models_json,
                    recommended_index=excluded.recommended_index,
                    recommendation_reasoning=excluded.recommendation_reasoning,
                    audited_head_sha=excluded.audited_head_sha,
                    exit_reason=excluded.exit_reason,
                    exit_detail=excluded.exit_detail,
                    push_iterations=excluded.push_iterations,
                    started_at=excluded.started_at,
                    updated_at=excluded.updated_at
                """,
                (
                    *key,
                    state.branch,
                    state.head_sha,
                    state.iteration,
                    state.phase,
                    1 if state.interrupted else 0,
                    state.interrupt_phase,
                    state.runner_index,
                    counters.consecutive_failures,
                    counters.model_failures_in_cycle,
                    counters.models_tried_this_tool_round,
                    counters.progress_this_cycle,
                    counters.no_progress_cycles,
                    json.dumps(state.recommended_models),
                    state.recommended_index,
                    state.recommendation_reasoning,
                    state.audited_head_sha,
                    state.exit_reason,
                    state.exit_detail,
                    state.push_iterations,
                    state.started_at or utc_now_iso8601(),
                ),
            )

            for table in ("tool_states", "model_stats", "verified_issues", "dismissed_issues"):
                conn.execute(
                    f"DELETE FROM {table} WHERE repo_full_name = ? AND pr_number = ?",
                    key,
                )
            conn.executemany(
                """
                INSERT INTO tool_states(
                    repo_full_name, pr_number, tool, model_index, attempted_index,
                    fixes, failures, no_changes, errors
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        *key,
                        tool.tool,
                        tool.model_index,
                        tool.attempted_index,
                        tool.fixes,
                        tool.failures,
                        tool.no_changes,
                        tool.errors,
                    )
                    for tool in state.tools.values()
                ],
            )
            conn.executemany(
                """
                INSERT INTO model_stats(
                    repo_full_name, pr_number, tool, model, fixes, failures, no_changes, errors
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        *key,
                        stats.tool,
                        stats.model,
                        stats.fixes,
                        stats.failures,
                        stats.no_changes,
                        stats.errors,
                    )
                    for stats in state.model_stats.values()
                ],
            )
            conn.executemany(
                """
                INSERT INTO verified_issues(
                    repo_full_name, pr_number, issue_id, verified_at_iteration
                )
                VALUES(?, ?, ?, ?)
                """,
                [(*key, issue_id, iteration) for issue_id, iteration in state.verified.items()],
            )
            conn.executemany(
                """
                INSERT INTO dismissed_issues(
                    repo_full_name, pr_number, issue_id, reason, category, path, line, body
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        *key,
                        record.issue_id,
                        record.reason,
                        record.category,
                        record.path,
                        record.line,
                        record.body,
                    )
                    for record in state.dismissed.values()
                ],
            )

            persisted_results = conn.execute(
                """
                SELECT COUNT(*)
                FROM verification_results
                WHERE repo_full_name = ? AND pr_number = ?
                """,
                key,
            ).fetchone()
            already_saved = int(persisted_results[0]) if persisted_results else 0
            conn.executemany(
                """
                INSERT INTO verification_results(
                    repo_full_name, pr_number, issue_id, passed, reason, iteration
                )
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        *key,
                        result.issue_id,
                        1 if result.passed else 0,
                        result.reason,
                        result.iteration,
                    )
                    for result in state.verifications[already_saved:]
                ],
            )

            conn.execute(
                "DELETE FROM bail_outs WHERE repo_full_name = ? AND pr_number = ?",
                key,
            )
            if state.bail_out is not None:
                record = state.bail_out
                conn.execute(
                    """
                    INSERT INTO bail_outs(
                        repo_full_name, pr_number, reason, cycles, fixed_count,
                        remaining_json, tools_exhausted_json, recorded_at
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        *key,
                        record.reason,
                        record.cycles,
                        record.fixed_count,
                        json.dumps(
                            [
                                {
                                    "issue_id": item.issue_id,
                                    "path": item.path,
                                    "line": item.line,
                                    "excerpt": item.excerpt,
                                }
                                for item in record.remaining
                            ]
                        ),
                        json.dumps(list(record.tools_exhausted)),
                        record.recorded_at,
                    ),
                )
        log_event(
            LOGGER,
            "session_saved",
            phase=state.phase,
            iteration=state.iteration,
            verified=len(state.verified),
            dismissed=len(state.dismissed),
        )

    def delete_session(self, pr: PullRequestRef) -> None:
        key = (pr.full_name, pr.number)
        with self._lock, self._connect() as conn:
            for table in (
                "sessions",
                "tool_states",
                "model_stats",
                "verified_issues",
                "verification_results",
                "dismissed_issues",
                "bail_outs",
            ):
                conn.execute(
                    f"DELETE FROM {table} WHERE repo_full_name = ? AND pr_number = ?",
                    key,
                )

    def list_sessions(self) -> tuple[SessionSummary, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.repo_full_name, s.pr_number, s.branch, s.head_sha, s.iteration, s.phase,
                       s.interrupted, s.exit_reason, s.exit_detail,
                       (
                           SELECT COUNT(*) FROM verified_issues AS v
                           WHERE v.repo_full_name = s.repo_full_name
                             AND v.pr_number = s.pr_number
                       ),
                       (
                           SELECT COUNT(*) FROM dismissed_issues AS d
                           WHERE d.repo_full_name = s.repo_full_name
                             AND d.pr_number = s.pr_number
                       ),
                       s.no_progress_cycles, s.updated_at
                FROM sessions AS s
                ORDER BY s.updated_at DESC, s.repo_full_name ASC, s.pr_number ASC
                """
            ).fetchall()
        return tuple(
            SessionSummary(
                repo_full_name=str(row[0]),
                pr_number=int(row[1]),
                branch=str(row[2]),
                head_sha=str(row[3]),
                iteration=int(row[4]),
                phase=str(row[5]),
                interrupted=bool(row[6]),
                exit_reason=cast(str | None, row[7]),
                exit_detail=str(row[8]),
                verified_count=int(row[9]),
                dismissed_count=int(row[10]),
                no_progress_cycles=int(row[11]),
                updated_at=str(row[12]),
            )
            for row in rows
        )

    def load_lessons(self, repo_full_name: str, branch: str) -> LessonBook:
        book = LessonBook()
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT file_path, lesson
                FROM lessons
                WHERE repo_full_name = ? AND branch = ?
                ORDER BY file_path ASC, position ASC
                """,
                (repo_full_name, branch),
            ).fetchall()
        for file_path, lesson in rows:
            if file_path == "":
                book.global_lessons.append(str(lesson))
            else:
                book.file_lessons.setdefault(str(file_path), []).append(str(lesson))
        return book

    def save_lessons(self, repo_full_name: str, branch: str, book: LessonBook) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM lessons WHERE repo_full_name = ? AND branch = ?",
                (repo_full_name, branch),
            )
            rows: list[tuple[str, str, str, int, str]] = [
                (repo_full_name, branch, "", position, lesson)
                for position, lesson in enumerate(book.global_lessons)
            ]
            for file_path, lessons in book.file_lessons.items():
                rows.extend(
                    (repo_full_name, branch, file_path, position, lesson)
                    for position, lesson in enumerate(lessons)
                )
            conn.executemany(
                """
                INSERT INTO lessons(repo_full_name, branch, file_path, position, lesson)
                VALUES(?, ?, ?, ?, ?)
                """,
                rows,
            )
        book.dirty = False


def _parse_phase(value: object) -> SessionPhase:
    if isinstance(value, str) and value in _SESSION_PHASES:
        return cast(SessionPhase, value)
    raise RuntimeError(f"Invalid session phase in state DB: {value!r}")


def _parse_dismissal_category(value: object) -> DismissalCategory:
    if isinstance(value, str) and value in _DISMISSAL_CATEGORIES:
        return cast(DismissalCategory, value)
    raise RuntimeError(f"Invalid dismissal category in state DB: {value!r}")


def _parse_str_list(value: object) -> list[str]:
    if not isinstance(value, str):
        return []
    try:
        payload = json.loads(value)
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, str)]


def _parse_remaining(value: object) -> tuple[RemainingIssue, ...]:
    if not isinstance(value, str):
        return ()
    try:
        payload = json.loads(value)
    except json.JSONDecodeError:
        return ()
    if not isinstance(payload, list):
        return ()
    remaining: list[RemainingIssue] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        line = item.get("line")
        remaining.append(
            RemainingIssue(
                issue_id=str(item.get("issue_id", "")),
                path=str(item.get("path", "")),
                line=line if isinstance(line, int) else None,
                excerpt=str(item.get("excerpt", "")),
            )
        )
    return tuple(remaining)
