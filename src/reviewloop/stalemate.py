from __future__ import annotations

from collections.abc import Iterable
import logging

from reviewloop.models import BailOutRecord, RemainingIssue, ReviewIssue
from reviewloop.observability import log_event
from reviewloop.session import SessionState, utc_now_iso8601


LOGGER = logging.getLogger("reviewloop.stalemate")


class StalemateDetector:
    def __init__(self, *, max_stale_cycles: int) -> None:
        if max_stale_cycles < 1:
            raise ValueError("max_stale_cycles must be >= 1")
        self.max_stale_cycles = max_stale_cycles

    def record_progress(self, state: SessionState, verified_count: int) -> None:
        if verified_count <= 0:
            return
        state.counters.progress_this_cycle += verified_count
        if state.counters.no_progress_cycles:
            log_event(
                LOGGER,
                "stalemate_counter_reset",
                previous_cycles=state.counters.no_progress_cycles,
            )
        state.reset_no_progress_cycles()

    def complete_cycle(self, state: SessionState) -> bool:
        """Close a full rotation cycle and report whether the loop should bail out."""
        progress = state.counters.progress_this_cycle
        if progress == 0:
            cycles = state.increment_no_progress_cycles()
        else:
            state.reset_no_progress_cycles()
            cycles = 0
        state.counters.progress_this_cycle = 0
        log_event(
            LOGGER,
            "rotation_cycle_completed",
            progress=progress,
            no_progress_cycles=cycles,
            max_stale_cycles=self.max_stale_cycles,
        )
        return self.should_bail(state)

    def should_bail(self, state: SessionState) -> bool:
        return state.counters.no_progress_cycles >= self.max_stale_cycles

    def build_bail_out(
        self,
        state: SessionState,
        *,
        remaining: Iterable[ReviewIssue],
        tools: Iterable[str],
    ) -> BailOutRecord:
        return BailOutRecord(
            reason="no-progress-cycles",
            cycles=state.counters.no_progress_cycles,
            fixed_count=len(state.verified),
            remaining=tuple(
                RemainingIssue(
                    issue_id=issue.issue_id,
                    path=issue.path,
                    line=issue.line,
                    excerpt=issue.excerpt,
                )
                for issue in remaining
            ),
            tools_exhausted=tuple(tools),
            recorded_at=utc_now_iso8601(),
        )


def format_bail_out(record: BailOutRecord) -> str:
    lines = [
        f"Bailed out after {record.cycles} cycle(s) without progress.",
        f"Fixed: {record.fixed_count}, remaining: {len(record.remaining)}",
        f"Tools exhausted: {', '.join(record.tools_exhausted) or '-'}",
    ]
    for item in record.remaining:
        location = item.path if item.line is None else f"{item.path}:{item.line}"
        lines.append(f"  - [{item.issue_id}] {location}: {item.excerpt}")
    return "\n".join(lines)
