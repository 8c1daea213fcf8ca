from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import random
import time

from reviewloop.agent_adapter import AgentRunner, RunnerResult
from reviewloop.config import AppConfig
from reviewloop.conflicts import ConflictResolver
from reviewloop.dismissal import (
    claims_already_handled,
    parse_no_changes_explanation,
    validate_dismissal_explanation,
)
from reviewloop.git_ops import GitRepoManager
from reviewloop.github_gateway import GitHubGateway, GitHubPollingError
from reviewloop.lessons import LessonBook
from reviewloop.models import (
    CheckStatus,
    DismissalCategory,
    DismissalRecord,
    ExitReason,
    PullRequestRef,
    ResolutionOutcome,
    ReviewIssue,
    VerificationResult,
)
from reviewloop.observability import log_event, logging_pr_context
from reviewloop.oracle import Oracle, Parsed, Unparsed, Verdict, fallback_commit_message
from reviewloop.prompts import build_fix_prompt, build_single_issue_prompt
from reviewloop.rotation import RotationStrategy
from reviewloop.session import SessionState
from reviewloop.shell import CommandError
from reviewloop.snippets import code_snippet, issues_from_comments, with_snippets
from reviewloop.stalemate import StalemateDetector, format_bail_out
from reviewloop.state import StateStore
from reviewloop.timing import CancellationToken, plan_wait, smart_wait


LOGGER = logging.getLogger("reviewloop.resolver")

SINGLE_ISSUE_PICKS = 3
SINGLE_ISSUE_LESSONS = 5
NOT_MODIFIED = "File was not modified"
NO_VERIFY_RESULT = "Verification result not found in LLM response"
NO_AUDIT_RESULT = "Audit did not return a result for this issue"
UNKNOWN_STATUS = "Unable to determine status"
WEAK_DISMISSAL = (
    "LLM indicated issue does not exist, but provided insufficient explanation to dismiss"
)
_SUCCESS_DETAILS: dict[ExitReason, str] = {
    "audit_passed": "Final audit passed - all issues verified fixed",
    "all_fixed": "All issues fixed and verified; final audit passed at the push limit",
    "all_resolved": "Final audit passed - every issue was dismissed with a reason",
}


@dataclass
class _Exit:
    reason: ExitReason
    detail: str


class _Stop(Exception):
    """Unwinds the loop once an exit reason has been recorded."""

    def __init__(self, exit_: _Exit) -> None:
        super().__init__(exit_.reason)
        self.exit = exit_


class ResolutionLoop:
    """Drive one pull request from fetched review comments to a terminal exit reason.

    The outer loop fetches comments, asks the oracle which issues still exist
    and finishes with commit and push. The inner loop runs editing agents on
    the unresolved issues, verifies their edits and rotates through
    (tool, model) pairs until every issue is fixed, the iteration limit is
    reached or the stalemate detector gives up. The session is saved after
    every phase so a later run resumes where this one stopped.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        pr: PullRequestRef,
        github: GitHubGateway,
        repo: GitRepoManager,
        oracle: Oracle,
        runners: Sequence[AgentRunner],
        state_store: StateStore,
        conflicts: ConflictResolver,
        token: CancellationToken | None = None,
        pinned_model: str | None = None,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        if not runners:
            raise ValueError("At least one editing tool is required")
        self._config = config
        self._settings = config.resolver
        self._pr = pr
        self._github = github
        self._repo = repo
        self._oracle = oracle
        self._runners = {runner.name: runner for runner in runners}
        self._store = state_store
        self._conflicts = conflicts
        self._token = token or CancellationToken()
        self._sleep = sleep
        self._clock = clock
        self._random = rng or random.Random()
        self._stalemate = StalemateDetector(max_stale_cycles=self._settings.max_stale_cycles)
        self._rotation = RotationStrategy(
            tool_models=[(runner.name, runner.supported_models) for runner in runners],
            max_models_per_tool_round=self._settings.max_models_per_tool_round,
            stalemate=self._stalemate,
            pinned_model=pinned_model or config.agents.model,
        )
        self._lessons = LessonBook()
        self._audit_failed: dict[str, str] = {}
        self._committed_ids: set[str] = set()
        self._pushed_since_wait = False
        self._rapid_failures = 0
        self._last_rapid_failure_at: float | None = None
        self._remaining: list[ReviewIssue] = []
        self._base_branch = ""

    @property
    def lessons(self) -> LessonBook:
        return self._lessons

    def run(self) -> ResolutionOutcome:
        with logging_pr_context(str(self._pr)):
            state = self._prepare()
            try:
                if self._settings.merge_base and not self._settings.dry_run:
                    self._merge_base_branch(state, self._base_branch)
                exit_ = self._run_rounds(state)
            except _Stop as stop:
                exit_ = stop.exit
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "resolution_failed",
                    iteration=state.iteration,
                    phase=state.phase,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._save(state)
                raise
            return self._finish(state, exit_)

    def _prepare(self) -> SessionState:
        snapshot = self._github.get_pull_request(self._pr.number)
        self._base_branch = snapshot.base_branch
        self._repo.ensure_checkout(snapshot.clone_url)
        head_sha = self._repo.current_head_sha()

        state = self._store.load_session(self._pr)
        if state is None:
            state = SessionState.fresh(self._pr, branch=self._repo.branch, head_sha=head_sha)
            log_event(LOGGER, "session_started", branch=self._repo.branch, head_sha=head_sha)
        else:
            if state.interrupted:
                log_event(
                    LOGGER,
                    "session_resumed",
                    iteration=state.iteration,
                    interrupted_phase=state.interrupt_phase,
                )
                state.clear_interrupted()
            state.update_head(head_sha)
        state.clear_exit()
        state.reset_push_iterations()
        self._rotation.attach(state)

        self._lessons = self._store.load_lessons(self._pr.full_name, self._repo.branch)
        self._lessons.prune_transient()
        self._lessons.compact()

        if self._settings.reverify:
            log_event(LOGGER, "verification_cache_cleared", count=len(state.verified))
            state.clear_verification_cache()

        recovered: set[str] = set()
        if not self._settings.reverify:
            recovered = self._repo.scan_committed_fixes()
        for issue_id in sorted(recovered):
            if not state.is_verified_fixed(issue_id):
                state.mark_verified_fixed(issue_id)
        self._committed_ids.update(recovered)

        state.set_phase("init")
        self._save(state)
        return state

    def _merge_base_branch(self, state: SessionState, base_branch: str) -> None:
        state.set_phase("conflicts")
        conflicted = self._repo.merge_base_branch(base_branch)
        if not conflicted:
            return
        runner = self._runners[self._rotation.current_tool(state)]
        resolution = self._conflicts.resolve(
            conflicted,
            merging_branch=f"origin/{base_branch}",
            runner=runner,
            model=self._rotation.current_model(state),
        )
        if resolution.resolved:
            self._repo.complete_merge()
            log_event(LOGGER, "merge_base_completed", base_branch=base_branch)
            return
        self._repo.abort_merge()
        self._repo.reset_to_remote()
        raise _Stop(
            _Exit(
                "conflicts_unresolved",
                f"Could not resolve conflicts with {base_branch}: "
                + ", ".join(resolution.remaining),
            )
        )

    def _run_rounds(self, state: SessionState) -> _Exit:
        max_pushes = self._settings.max_push_iterations
        idle_rounds = 0
        while True:
            self._check_cancelled(state)
            state.set_phase("fetch")
            issues = self._fetch_issues()
            if not issues:
                return _Exit("no_comments", "No review comments found on the pull request")

            unresolved = self._analyze(state, issues)
            if self._settings.dry_run:
                self._remaining = unresolved
                return _Exit(
                    "dry_run",
                    f"Dry run: {len(unresolved)} of {len(issues)} issue(s) still need fixing",
                )

            if not unresolved:
                issues, unresolved, exit_ = self._conclude(state, issues, "audit_passed")
                if exit_ is not None:
                    return exit_

            unresolved, hit_limit = self._fix_loop(state, unresolved)
            self._remaining = unresolved
            exit_ = self._commit_phase(state, issues, unresolved, hit_limit=hit_limit)
            if exit_ is not None:
                return exit_
            if not unresolved and not self._pushed_since_wait:
                # Nothing was pushed, so the next round goes straight to the audit.
                idle_rounds += 1
                if idle_rounds > 1:
                    return _Exit(
                        "no_changes", "Final audit still failing and no new changes were made"
                    )
                continue
            idle_rounds = 0
            if max_pushes and state.record_push() >= max_pushes:
                if not unresolved:
                    issues, unresolved, exit_ = self._conclude(state, issues, "all_fixed")
                    if exit_ is not None:
                        return exit_
                    self._remaining = unresolved
                return _Exit(
                    "max_iterations",
                    f"Hit max push iterations ({max_pushes}) with "
                    f"{len(unresolved)} issue(s) remaining",
                )
            self._wait_for_reviews(state)

    def _fetch_issues(self) -> list[ReviewIssue]:
        comments = self._github.list_review_comments(self._pr.number)
        issues = issues_from_comments(comments)
        log_event(
            LOGGER,
            "review_comments_fetched",
            comment_count=len(comments),
            issue_count=len(issues),
        )
        return with_snippets(self._repo.checkout_path, issues)

    def _analyze(self, state: SessionState, issues: Sequence[ReviewIssue]) -> list[ReviewIssue]:
        """Return the issues that still need a fix, dismissing the ones the oracle clears."""
        state.set_phase("analyze")
        expiry = self._settings.verification_expiry_iterations
        unresolved: list[ReviewIssue] = []
        to_check: list[ReviewIssue] = []
        for issue in issues:
            if issue.issue_id in self._audit_failed:
                unresolved.append(issue)
                continue
            if state.is_dismissed(issue.issue_id):
                continue
            if state.is_verified_fixed(issue.issue_id):
                if not state.is_stale_verification(issue.issue_id, expiry_iterations=expiry):
                    continue
                log_event(
                    LOGGER,
                    "verification_expired",
                    issue_id=issue.issue_id,
                    verified_at=state.verified.get(issue.issue_id),
                    iteration=state.iteration,
                )
                state.unmark_verified(issue.issue_id)
            to_check.append(issue)

        if to_check:
            verdicts = self._check_existence(state, to_check)
            for issue in to_check:
                if self._still_exists(state, issue, verdicts[issue.issue_id], "already-fixed"):
                    unresolved.append(issue)

        log_event(
            LOGGER,
            "issues_analyzed",
            total=len(issues),
            checked=len(to_check),
            unresolved=len(unresolved),
            verified=len(state.verified),
            dismissed=len(state.dismissed),
        )
        self._save(state)
        return unresolved

    def _check_existence(
        self, state: SessionState, issues: Sequence[ReviewIssue]
    ) -> dict[str, Parsed[Verdict] | Unparsed]:
        if not self._settings.batch_verification:
            return {
                issue.issue_id: self._oracle.check_issue_exists(issue, issue.code_snippet)
                for issue in issues
            }
        result = self._oracle.batch_check_issues(issues, model_context=self._model_context(state))
        if result.recommended_models:
            self._rotation.apply_recommendations(
                state, result.recommended_models, reasoning=result.model_reasoning
            )
        return result.verdicts

    def _still_exists(
        self,
        state: SessionState,
        issue: ReviewIssue,
        result: Parsed[Verdict] | Unparsed,
        category: DismissalCategory,
    ) -> bool:
        if isinstance(result, Unparsed):
            self._record(state, issue, passed=False, reason=UNKNOWN_STATUS)
            return True
        verdict = result.value
        if verdict.answer:
            return True
        check = validate_dismissal_explanation(
            verdict.explanation, min_chars=self._settings.dismissal_min_chars
        )
        if not check.accepted:
            log_event(
                LOGGER,
                "dismissal_rejected",
                issue_id=issue.issue_id,
                reason=check.reason,
            )
            self._record(state, issue, passed=False, reason=WEAK_DISMISSAL)
            return True
        self._audit_failed.pop(issue.issue_id, None)
        state.mark_verified_fixed(issue.issue_id)
        state.add_dismissed(
            DismissalRecord(
                issue_id=issue.issue_id,
                reason=verdict.explanation,
                category=category,
                path=issue.path,
                line=issue.line,
                body=issue.body,
            )
        )
        log_event(LOGGER, "issue_dismissed", issue_id=issue.issue_id, category=category)
        return False

    def _model_context(self, state: SessionState) -> str | None:
        if self._config.agents.model is not None:
            return None
        tool = self._rotation.current_tool(state)
        models = self._rotation.models_for(tool)
        if len(models) < 2:
            return None
        lines: list[str] = []
        for model in models:
            stats = state.model_stats.get((tool, model))
            if stats is None:
                lines.append(f"- {model} (no history)")
            else:
                lines.append(
                    f"- {model} (fixes={stats.fixes}, failures={stats.failures}, "
                    f"no_changes={stats.no_changes}, errors={stats.errors})"
                )
        return "\n".join(lines)

    def _fold_in_new_comments(
        self, state: SessionState, issues: list[ReviewIssue]
    ) -> tuple[list[ReviewIssue], list[ReviewIssue]]:
        known = {issue.issue_id for issue in issues}
        fresh = [issue for issue in self._fetch_issues() if issue.issue_id not in known]
        if not fresh:
            return issues, []
        log_event(LOGGER, "new_comments_found", count=len(fresh))
        return [*issues, *fresh], self._analyze(state, fresh)

    def _conclude(
        self, state: SessionState, issues: list[ReviewIssue], passed_reason: ExitReason
    ) -> tuple[list[ReviewIssue], list[ReviewIssue], _Exit | None]:
        """Fold in late comments and run the final audit.

        An exit is only returned when the audit passes; otherwise the issues
        that still need work come back as the second element.
        """
        issues, unresolved = self._fold_in_new_comments(state, issues)
        if unresolved:
            return issues, unresolved, None
        failed = self._final_audit(state, issues)
        if failed:
            return issues, failed, None
        if all(state.is_dismissed(issue.issue_id) for issue in issues):
            passed_reason = "all_resolved"
        return issues, [], self._commit_final(state, issues, passed_reason)

    def _final_audit(
        self, state: SessionState, issues: Sequence[ReviewIssue]
    ) -> list[ReviewIssue]:
        """Re-check every issue, dismissed ones included, and return the failures."""
        state.set_phase("audit")
        targets = with_snippets(self._repo.checkout_path, list(issues))
        state.clear_verification_cache()
        audit = self._oracle.final_audit(targets)
        failed: list[ReviewIssue] = []
        for issue in targets:
            result = audit.verdicts.get(issue.issue_id)
            if isinstance(result, Parsed) and result.value.answer:
                state.mark_verified_fixed(issue.issue_id)
                self._record(state, issue, passed=True, reason=result.value.explanation)
                continue
            if isinstance(result, Parsed):
                reason = result.value.explanation
            else:
                reason = NO_AUDIT_RESULT
            self._record(state, issue, passed=False, reason=reason)
            state.unmark_verified(issue.issue_id)
            revoked = state.remove_dismissed(issue.issue_id)
            if revoked is not None:
                log_event(
                    LOGGER,
                    "dismissal_revoked",
                    issue_id=issue.issue_id,
                    category=revoked.category,
                )
            self._audit_failed[issue.issue_id] = reason
            failed.append(issue)
        log_event(
            LOGGER,
            "final_audit_finished",
            audited=len(targets),
            failed=len(failed),
            parse_rate=f"{audit.parse_rate:.2f}",
        )
        if not failed:
            state.audited_head_sha = state.head_sha
        self._save(state)
        return failed

    def _commit_final(
        self, state: SessionState, issues: Sequence[ReviewIssue], reason: ExitReason
    ) -> _Exit:
        self._remaining = []
        if self._repo.has_changes() and not self._settings.no_commit:
            self._commit_all(state, issues)
        if (
            self._settings.auto_push
            and not self._settings.no_push
            and self._repo.has_unpushed_commits()
        ):
            self._push(state)
        return _Exit(reason, _SUCCESS_DETAILS[reason])

    def _fix_loop(
        self, state: SessionState, unresolved: list[ReviewIssue]
    ) -> tuple[list[ReviewIssue], bool]:
        limit = self._settings.max_fix_iterations
        fix_iterations = 0
        while unresolved:
            if limit and fix_iterations >= limit:
                log_event(
                    LOGGER,
                    "fix_iterations_exhausted",
                    max_fix_iterations=limit,
                    remaining=len(unresolved),
                )
                return unresolved, True
            self._check_cancelled(state)
            fix_iterations += 1
            state.start_iteration()
            self._remaining = unresolved
            unresolved = self._fix_iteration(state, unresolved)
        return unresolved, False

    def _fix_iteration(
        self, state: SessionState, unresolved: list[ReviewIssue]
    ) -> list[ReviewIssue]:
        tool = self._rotation.current_tool(state)
        model = self._rotation.current_model(state)
        runner = self._runners[tool]
        paths = list(dict.fromkeys(issue.path for issue in unresolved))
        prompt = build_fix_prompt(
            issues=unresolved,
            lessons=self._lessons.for_files(paths),
            repo_full_name=self._pr.full_name,
        )
        before = {path: self._repo.read_file(path) for path in paths}
        changed_before = set(self._repo.changed_files())

        state.set_phase("fix")
        self._rotation.record_attempt(state)
        self._save(state)
        log_event(
            LOGGER,
            "fix_iteration_started",
            iteration=state.iteration,
            tool=tool,
            model=model,
            issues=len(unresolved),
        )
        result = runner.run(self._repo.checkout_path, prompt, model=model)

        if not result.success:
            self._runner_failed(state, result, tool=tool, model=model)
            self._after_failure(state, unresolved, tool=tool, model=model)
            return self._still_unresolved(state, unresolved)
        self._rapid_failures = 0

        modified = [path for path in paths if self._repo.read_file(path) != before[path]]
        stray = sorted(set(self._repo.changed_files()) - changed_before - set(paths))
        if not modified and not stray:
            self._no_changes(state, unresolved, result, tool=tool, model=model)
            self._after_failure(state, unresolved, tool=tool, model=model)
            return self._still_unresolved(state, unresolved)

        verified = self._verify_batch(state, unresolved, modified, before)
        failed = len(unresolved) - len(verified)
        if verified:
            state.record_model_fix(tool, model, len(verified))
            self._stalemate.record_progress(state, len(verified))
            self._commit_iteration(state, verified)
        elif stray:
            self._repo.checkout_files(stray)
        if failed:
            state.record_model_failure(tool, model, failed)
        log_event(
            LOGGER,
            "fix_iteration_finished",
            iteration=state.iteration,
            tool=tool,
            model=model,
            verified=len(verified),
            failed=failed,
        )
        if verified:
            state.counters.consecutive_failures = 0
            state.counters.model_failures_in_cycle = 0
        else:
            self._after_failure(state, unresolved, tool=tool, model=model)
        self._save(state)
        return self._still_unresolved(state, unresolved)

    def _verify_batch(
        self,
        state: SessionState,
        issues: Sequence[ReviewIssue],
        modified: Sequence[str],
        before: dict[str, str | None],
    ) -> list[ReviewIssue]:
        state.set_phase("verify")
        diffs = {path: self._repo.diff_file(path) for path in modified}
        candidates: list[tuple[ReviewIssue, str]] = []
        for issue in issues:
            if issue.path in diffs:
                candidates.append((issue, diffs[issue.path]))
            else:
                self._record(state, issue, passed=False, reason=NOT_MODIFIED)

        results: dict[str, Parsed[Verdict] | Unparsed]
        if self._settings.batch_verification and len(candidates) > 1:
            results = self._oracle.batch_verify_fixes(candidates)
        else:
            results = {
                issue.issue_id: self._oracle.verify_fix(issue, diff) for issue, diff in candidates
            }

        verified: list[ReviewIssue] = []
        rejected: list[tuple[ReviewIssue, str, str]] = []
        for issue, diff in candidates:
            result = results.get(issue.issue_id)
            if isinstance(result, Parsed) and result.value.answer:
                self._mark_fixed(state, issue, result.value.explanation)
                verified.append(issue)
            elif isinstance(result, Parsed):
                rejected.append((issue, diff, result.value.explanation))
            else:
                self._record(state, issue, passed=False, reason=NO_VERIFY_RESULT)

        kept_paths = {issue.path for issue in verified}
        for issue, diff, explanation in rejected:
            self._record(state, issue, passed=False, reason=explanation)
            self._learn_from_rejection(issue, diff, explanation)
        for path in modified:
            if path not in kept_paths:
                self._restore(path, before[path])
        self._save(state)
        return verified

    def _mark_fixed(self, state: SessionState, issue: ReviewIssue, explanation: str) -> None:
        state.mark_verified_fixed(issue.issue_id)
        self._audit_failed.pop(issue.issue_id, None)
        self._record(state, issue, passed=True, reason=explanation)
        log_event(LOGGER, "issue_verified_fixed", issue_id=issue.issue_id, path=issue.path)

    def _learn_from_rejection(self, issue: ReviewIssue, diff: str, explanation: str) -> None:
        lesson = self._oracle.analyze_failed_fix(issue, diff, explanation)
        line = issue.line if issue.line is not None else "?"
        self._lessons.add(f"Fix for {issue.path}:{line} rejected: {lesson}")

    def _restore(self, path: str, original: str | None) -> None:
        if original is None:
            self._repo.checkout_files([path])
        else:
            self._repo.write_file(path, original)

    def _runner_failed(
        self, state: SessionState, result: RunnerResult, *, tool: str, model: str | None
    ) -> None:
        state.record_model_error(tool, model)
        log_event(
            LOGGER,
            "runner_failed",
            tool=tool,
            model=model,
            error_kind=result.error_kind,
            duration_ms=result.duration_ms,
            error=result.error,
        )
        if result.fatal:
            raise _Stop(
                _Exit(
                    "tool_error",
                    f"{tool} failed with a {result.error_kind} error: {result.error}",
                )
            )
        now = self._clock() * 1000
        if result.duration_ms <= self._settings.rapid_failure_ms:
            last = self._last_rapid_failure_at
            if last is not None and now - last <= self._settings.rapid_failure_window_ms:
                self._rapid_failures += 1
            else:
                self._rapid_failures = 1
            self._last_rapid_failure_at = now
        else:
            self._rapid_failures = 0
        if self._rapid_failures >= self._settings.max_rapid_failures:
            raise _Stop(
                _Exit(
                    "rapid_failure",
                    f"{self._rapid_failures} rapid failures in a row from {tool}: {result.error}",
                )
            )

    def _no_changes(
        self,
        state: SessionState,
        unresolved: Sequence[ReviewIssue],
        result: RunnerResult,
        *,
        tool: str,
        model: str | None,
    ) -> None:
        state.record_model_no_changes(tool, model)
        explanation = parse_no_changes_explanation(result.output)
        log_event(
            LOGGER,
            "runner_made_no_changes",
            tool=tool,
            model=model,
            has_explanation=explanation is not None,
        )
        if explanation is None:
            return
        self._lessons.add(f"{tool} with {model or 'default'} made no changes: {explanation}")
        if not claims_already_handled(explanation):
            return
        for issue in unresolved:
            snippet = code_snippet(self._repo.checkout_path, issue.path, issue.line, issue.body)
            verdict = self._oracle.check_issue_exists(issue, snippet)
            self._still_exists(state, issue, verdict, "agent-confirmed")

    def _after_failure(
        self,
        state: SessionState,
        unresolved: Sequence[ReviewIssue],
        *,
        tool: str,
        model: str | None,
    ) -> None:
        counters = state.counters
        counters.consecutive_failures += 1
        counters.model_failures_in_cycle += 1
        remaining = self._still_unresolved(state, unresolved)
        if not remaining:
            return
        if counters.consecutive_failures % 2 == 1 and len(remaining) > 1:
            if self._single_issue_mode(state, remaining, tool=tool, model=model):
                counters.consecutive_failures = 0
                counters.model_failures_in_cycle = 0
            return
        if self._rotation.try_rotation(state):
            self._save(state)
            return

        log_event(LOGGER, "rotation_exhausted", remaining=len(remaining))
        fixed = self._direct_fix(state, remaining)
        if fixed:
            self._stalemate.record_progress(state, fixed)
            state.reset_no_progress_cycles()
            self._rotation.start_fresh_round(state)
            self._save(state)
            return

        record = self._stalemate.build_bail_out(
            state,
            remaining=self._still_unresolved(state, remaining),
            tools=self._rotation.tool_names,
        )
        state.record_bail_out(record)
        log_event(
            LOGGER,
            "bail_out",
            cycles=record.cycles,
            fixed=record.fixed_count,
            remaining=len(record.remaining),
        )
        raise _Stop(_Exit("bail_out", format_bail_out(record)))

    def _single_issue_mode(
        self,
        state: SessionState,
        unresolved: Sequence[ReviewIssue],
        *,
        tool: str,
        model: str | None,
    ) -> int:
        runner = self._runners[tool]
        picks = self._random.sample(list(unresolved), min(SINGLE_ISSUE_PICKS, len(unresolved)))
        log_event(LOGGER, "single_issue_mode_started", tool=tool, model=model, picks=len(picks))
        verified: list[ReviewIssue] = []
        for picked in picks:
            self._check_cancelled(state)
            issue = picked.with_snippet(
                code_snippet(self._repo.checkout_path, picked.path, picked.line, picked.body)
            )
            prompt = build_single_issue_prompt(
                issue=issue,
                lessons=self._lessons.recent_for_file(issue.path, limit=SINGLE_ISSUE_LESSONS),
                repo_full_name=self._pr.full_name,
            )
            changed_before = set(self._repo.changed_files())
            original = self._repo.read_file(issue.path)
            result = runner.run(self._repo.checkout_path, prompt, model=model)
            if not result.success:
                self._runner_failed(state, result, tool=tool, model=model)
                continue

            stray = [
                path
                for path in self._repo.changed_files()
                if path != issue.path and path not in changed_before
            ]
            if stray:
                self._repo.checkout_files(stray)
                line = issue.line if issue.line is not None else "?"
                self._lessons.add(
                    f"Fix for {issue.path}:{line} edited unrelated files: {', '.join(stray)}"
                )
            if self._repo.read_file(issue.path) == original:
                state.record_model_no_changes(tool, model)
                self._record(state, issue, passed=False, reason=NOT_MODIFIED)
                continue

            diff = self._repo.diff_file(issue.path)
            verdict = self._oracle.verify_fix(issue, diff)
            if isinstance(verdict, Parsed) and verdict.value.answer:
                self._mark_fixed(state, issue, verdict.value.explanation)
                state.record_model_fix(tool, model, 1)
                verified.append(issue)
                continue
            reason = verdict.value.explanation if isinstance(verdict, Parsed) else NO_VERIFY_RESULT
            self._record(state, issue, passed=False, reason=reason)
            state.record_model_failure(tool, model)
            if isinstance(verdict, Parsed):
                self._learn_from_rejection(issue, diff, reason)
            self._restore(issue.path, original)

        if verified:
            self._stalemate.record_progress(state, len(verified))
            self._commit_iteration(state, verified)
        log_event(LOGGER, "single_issue_mode_finished", verified=len(verified))
        self._save(state)
        return len(verified)

    def _direct_fix(self, state: SessionState, unresolved: Sequence[ReviewIssue]) -> int:
        verified: list[ReviewIssue] = []
        for issue in unresolved:
            self._check_cancelled(state)
            original = self._repo.read_file(issue.path)
            if original is None:
                continue
            fixed = self._oracle.direct_fix(issue, original)
            if fixed is None or fixed == original:
                continue
            self._repo.write_file(issue.path, fixed)
            diff = self._repo.diff_file(issue.path)
            verdict = self._oracle.verify_fix(issue, diff)
            if isinstance(verdict, Parsed) and verdict.value.answer:
                self._mark_fixed(state, issue, verdict.value.explanation)
                verified.append(issue)
            else:
                reason = (
                    verdict.value.explanation if isinstance(verdict, Parsed) else NO_VERIFY_RESULT
                )
                self._record(state, issue, passed=False, reason=reason)
                self._restore(issue.path, original)
        log_event(
            LOGGER,
            "direct_fix_finished",
            attempted=len(unresolved),
            verified=len(verified),
        )
        if verified:
            self._commit_iteration(state, verified)
        return len(verified)

    def _still_unresolved(
        self, state: SessionState, issues: Sequence[ReviewIssue]
    ) -> list[ReviewIssue]:
        return [
            issue
            for issue in issues
            if issue.issue_id not in state.verified_this_session
            and not state.is_dismissed(issue.issue_id)
        ]

    def _record(
        self, state: SessionState, issue: ReviewIssue, *, passed: bool, reason: str
    ) -> None:
        state.record_verification(
            VerificationResult(
                issue_id=issue.issue_id,
                passed=passed,
                reason=reason,
                iteration=state.iteration,
            )
        )

    def _commit_iteration(self, state: SessionState, verified: Sequence[ReviewIssue]) -> None:
        if not self._settings.incremental_commits or self._settings.no_commit:
            return
        new_ids = [
            issue.issue_id for issue in verified if issue.issue_id not in self._committed_ids
        ]
        if not new_ids:
            return
        state.set_phase("commit")
        sha = self._repo.commit_iteration(
            iteration=state.iteration,
            fixed_ids=new_ids,
            summary=fallback_commit_message(sorted({issue.path for issue in verified})),
        )
        if sha is None:
            return
        self._committed_ids.update(new_ids)
        state.update_head(sha)
        if self._settings.auto_push and not self._settings.no_push:
            self._push(state)

    def _commit_all(self, state: SessionState, issues: Sequence[ReviewIssue]) -> None:
        state.set_phase("commit")
        fixed = [issue for issue in issues if state.is_verified_fixed(issue.issue_id)]
        message = self._oracle.generate_commit_message(fixed, self._repo.changed_files())
        sha = self._repo.commit_all(message)
        if sha is not None:
            self._committed_ids.update(issue.issue_id for issue in fixed)
            state.update_head(sha)
        self._save(state)

    def _push(self, state: SessionState) -> bool:
        state.set_phase("push")
        self._save(state)
        try:
            pushed = self._repo.push_with_retry(
                on_conflict=lambda paths: self._resolve_rebase_conflicts(state, paths)
            )
        except CommandError as exc:
            log_event(LOGGER, "push_failed", error=str(exc))
            return False
        if pushed:
            self._pushed_since_wait = True
            state.update_head(self._repo.current_head_sha())
        self._save(state)
        return pushed

    def _resolve_rebase_conflicts(self, state: SessionState, paths: list[str]) -> bool:
        state.set_phase("conflicts")
        resolution = self._conflicts.resolve(
            paths,
            merging_branch=f"origin/{self._repo.branch}",
            runner=self._runners[self._rotation.current_tool(state)],
            model=self._rotation.current_model(state),
        )
        return resolution.resolved

    def _commit_phase(
        self,
        state: SessionState,
        issues: Sequence[ReviewIssue],
        unresolved: Sequence[ReviewIssue],
        *,
        hit_limit: bool,
    ) -> _Exit | None:
        """Commit what is left and decide between pushing for another round or stopping."""
        if self._repo.has_changes():
            if self._settings.no_commit:
                return _Exit(
                    "no_commit_mode", "No-commit mode: changes left uncommitted in the workdir"
                )
            self._commit_all(state, issues)
        elif not self._repo.has_unpushed_commits() and not self._pushed_since_wait:
            if not unresolved:
                return None
            if hit_limit:
                return _Exit(
                    "max_iterations",
                    f"Hit max fix iterations ({self._settings.max_fix_iterations}) with "
                    f"{len(unresolved)} issue(s) remaining",
                )
            return _Exit("no_changes", "No changes to commit")

        if self._settings.no_push:
            return _Exit("no_push_mode", "No-push mode: changes committed locally only")
        if not self._settings.auto_push:
            return _Exit("committed_locally", "Changes committed locally; use --auto-push to push")
        if self._repo.has_unpushed_commits() and not self._push(state):
            return _Exit("committed_locally", "Push failed; changes are committed locally")
        return None

    def _wait_for_reviews(self, state: SessionState) -> None:
        state.set_phase("wait")
        self._save(state)
        self._pushed_since_wait = False
        head_sha = state.head_sha
        try:
            timings = self._github.bot_response_timing(self._pr.number)
            checks: CheckStatus | None = self._github.get_check_status(head_sha)
        except GitHubPollingError as exc:
            log_event(LOGGER, "wait_timing_unavailable", error=str(exc))
            timings, checks = (), None
        plan = plan_wait(
            timings=timings,
            checks=checks,
            default_seconds=self._config.runtime.poll_interval_seconds,
        )
        outcome = smart_wait(
            plan,
            token=self._token,
            status_check=lambda: self._github.get_check_status(head_sha),
            sleep=self._sleep,
        )
        if outcome == "cancelled":
            self._check_cancelled(state)

    def _check_cancelled(self, state: SessionState) -> None:
        if not self._token.cancelled:
            return
        state.mark_interrupted()
        log_event(LOGGER, "resolution_interrupted", phase=state.phase, reason=self._token.reason)
        raise _Stop(_Exit("interrupted", f"Interrupted during {state.phase}"))

    def _save(self, state: SessionState) -> None:
        self._store.save_session(state)
        if self._lessons.dirty:
            self._store.save_lessons(self._pr.full_name, self._repo.branch, self._lessons)

    def _finish(self, state: SessionState, exit_: _Exit) -> ResolutionOutcome:
        if exit_.reason != "interrupted":
            state.set_phase("done")
        state.record_exit(exit_.reason, exit_.detail)
        self._save(state)
        outcome = ResolutionOutcome(
            exit_reason=exit_.reason,
            detail=exit_.detail,
            fixed_count=len(state.verified_this_session),
            remaining_count=len(self._remaining),
            iterations=state.iteration,
        )
        log_event(
            LOGGER,
            "resolution_finished",
            exit_reason=outcome.exit_reason,
            fixed=outcome.fixed_count,
            remaining=outcome.remaining_count,
            iterations=outcome.iterations,
        )
        return outcome
