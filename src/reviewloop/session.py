from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging

from reviewloop.models import (
    BailOutRecord,
    DismissalRecord,
    ExitReason,
    ModelStats,
    PullRequestRef,
    SessionPhase,
    VerificationResult,
)
from reviewloop.observability import log_event


LOGGER = logging.getLogger("reviewloop.session")


@dataclass
class ToolModelState:
    tool: str
    model_index: int = 0
    attempted_index: int = -1
    fixes: int = 0
    failures: int = 0
    no_changes: int = 0
    errors: int = 0


@dataclass
class CycleCounters:
    consecutive_failures: int = 0
    model_failures_in_cycle: int = 0
    models_tried_this_tool_round: int = 1
    progress_this_cycle: int = 0
    no_progress_cycles: int = 0


@dataclass
class SessionState:
    """Everything a resolution run needs to resume where it left off.

    Fields are only changed through the methods below so that a save after any
    of them captures a consistent snapshot.
    """

    pr: PullRequestRef
    branch: str
    head_sha: str
    iteration: int = 0
    phase: SessionPhase = "init"
    interrupted: bool = False
    interrupt_phase: SessionPhase | None = None
    runner_index: int = 0
    tools: dict[str, ToolModelState] = field(default_factory=dict)
    counters: CycleCounters = field(default_factory=CycleCounters)
    verified: dict[str, int] = field(default_factory=dict)
    verified_this_session: set[str] = field(default_factory=set)
    dismissed: dict[str, DismissalRecord] = field(default_factory=dict)
    verifications: list[VerificationResult] = field(default_factory=list)
    model_stats: dict[tuple[str, str], ModelStats] = field(default_factory=dict)
    recommended_models: list[str] = field(default_factory=list)
    recommended_index: int = 0
    recommendation_reasoning: str = ""
    audited_head_sha: str | None = None
    bail_out: BailOutRecord | None = None
    exit_reason: ExitReason | None = None
    exit_detail: str = ""
    push_iterations: int = 0
    started_at: str = ""

    @classmethod
    def fresh(cls, pr: PullRequestRef, *, branch: str, head_sha: str) -> SessionState:
        return cls(pr=pr, branch=branch, head_sha=head_sha, started_at=utc_now_iso8601())

    def update_head(self, head_sha: str) -> bool:
        if head_sha == self.head_sha:
            return False
        log_event(
            LOGGER,
            "session_head_changed",
            previous_head_sha=self.head_sha,
            head_sha=head_sha,
        )
        self.head_sha = head_sha
        self.audited_head_sha = None
        self.clear_recommendations()
        return True

    def start_iteration(self) -> int:
        self.iteration += 1
        return self.iteration

    def set_phase(self, phase: SessionPhase) -> None:
        self.phase = phase

    def mark_interrupted(self) -> None:
        self.interrupted = True
        self.interrupt_phase = self.phase

    def clear_interrupted(self) -> None:
        self.interrupted = False
        self.interrupt_phase = None

    def clear_exit(self) -> None:
        self.exit_reason = None
        self.exit_detail = ""

    def reset_push_iterations(self) -> None:
        self.push_iterations = 0

    def record_push(self) -> int:
        self.push_iterations += 1
        return self.push_iterations

    def mark_verified_fixed(self, issue_id: str, *, iteration: int | None = None) -> None:
        self.verified[issue_id] = self.iteration if iteration is None else iteration
        self.verified_this_session.add(issue_id)

    def unmark_verified(self, issue_id: str) -> None:
        self.verified.pop(issue_id, None)
        self.verified_this_session.discard(issue_id)

    def is_verified_fixed(self, issue_id: str) -> bool:
        return issue_id in self.verified

    def is_stale_verification(self, issue_id: str, *, expiry_iterations: int) -> bool:
        verified_at = self.verified.get(issue_id)
        if verified_at is None:
            return False
        return self.iteration - verified_at > expiry_iterations

    def stale_verifications(self, *, expiry_iterations: int) -> tuple[str, ...]:
        return tuple(
            issue_id
            for issue_id in sorted(self.verified)
            if self.is_stale_verification(issue_id, expiry_iterations=expiry_iterations)
        )

    def clear_verification_cache(self) -> None:
        self.verified.clear()

    def add_dismissed(self, record: DismissalRecord) -> None:
        self.dismissed[record.issue_id] = record

    def remove_dismissed(self, issue_id: str) -> DismissalRecord | None:
        return self.dismissed.pop(issue_id, None)

    def is_dismissed(self, issue_id: str) -> bool:
        return issue_id in self.dismissed

    def record_verification(self, result: VerificationResult) -> None:
        self.verifications.append(result)

    def latest_verification(self, issue_id: str) -> VerificationResult | None:
        for result in reversed(self.verifications):
            if result.issue_id == issue_id:
                return result
        return None

    def tool_state(self, tool: str) -> ToolModelState:
        state = self.tools.get(tool)
        if state is None:
            state = ToolModelState(tool=tool)
            self.tools[tool] = state
        return state

    def set_model_index(self, tool: str, index: int) -> None:
        self.tool_state(tool).model_index = index

    def set_runner_index(self, index: int) -> None:
        self.runner_index = index

    def set_recommendations(self, models: list[str], *, reasoning: str) -> None:
        self.recommended_models = list(models)
        self.recommended_index = 0
        self.recommendation_reasoning = reasoning

    def current_recommendation(self) -> str | None:
        if self.recommended_index < len(self.recommended_models):
            return self.recommended_models[self.recommended_index]
        return None

    def clear_recommendations(self) -> None:
        self.recommended_models = []
        self.recommended_index = 0
        self.recommendation_reasoning = ""

    def increment_no_progress_cycles(self) -> int:
        self.counters.no_progress_cycles += 1
        return self.counters.no_progress_cycles

    def reset_no_progress_cycles(self) -> None:
        self.counters.no_progress_cycles = 0

    def record_bail_out(self, record: BailOutRecord) -> None:
        self.bail_out = record

    def record_exit(self, reason: ExitReason, detail: str = "") -> None:
        self.exit_reason = reason
        self.exit_detail = detail

    def record_model_fix(self, tool: str, model: str | None, count: int) -> None:
        self.tool_state(tool).fixes += count
        self._bump_stats(tool, model, fixes=count)

    def record_model_failure(self, tool: str, model: str | None, count: int = 1) -> None:
        self.tool_state(tool).failures += count
        self._bump_stats(tool, model, failures=count)

    def record_model_no_changes(self, tool: str, model: str | None) -> None:
        self.tool_state(tool).no_changes += 1
        self._bump_stats(tool, model, no_changes=1)

    def record_model_error(self, tool: str, model: str | None) -> None:
        self.tool_state(tool).errors += 1
        self._bump_stats(tool, model, errors=1)

    def _bump_stats(
        self,
        tool: str,
        model: str | None,
        *,
        fixes: int = 0,
        failures: int = 0,
        no_changes: int = 0,
        errors: int = 0,
    ) -> None:
        key = (tool, model or "default")
        current = self.model_stats.get(key) or ModelStats(tool=key[0], model=key[1])
        self.model_stats[key] = replace(
            current,
            fixes=current.fixes + fixes,
            failures=current.failures + failures,
            no_changes=current.no_changes + no_changes,
            errors=current.errors + errors,
        )


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
