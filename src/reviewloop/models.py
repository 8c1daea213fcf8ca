from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal


IssueStatus = Literal["unresolved", "verified_fixed", "dismissed"]
DismissalCategory = Literal["already-fixed", "agent-confirmed"]
RunnerErrorKind = Literal["permission", "auth", "environment", "tool"]
OracleProvider = Literal["anthropic", "openai"]
SessionPhase = Literal[
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
]
ExitReason = Literal[
    "no_comments",
    "audit_passed",
    "all_fixed",
    "all_resolved",
    "dry_run",
    "bail_out",
    "max_iterations",
    "no_commit_mode",
    "no_push_mode",
    "committed_locally",
    "no_changes",
    "tool_error",
    "rapid_failure",
    "interrupted",
    "conflicts_unresolved",
]
BailOutReason = Literal["no-progress-cycles"]


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    name: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}#{self.number}"


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    head_branch: str
    head_sha: str
    base_branch: str
    base_sha: str
    clone_url: str
    state: str
    mergeable: bool | None
    mergeable_state: str


@dataclass(frozen=True)
class ReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None
    side: str | None
    in_reply_to_id: int | None
    user_login: str
    html_url: str
    created_at: str


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    created_at: str


@dataclass(frozen=True)
class CheckStatus:
    pending: int
    failing: int
    passing: int

    @property
    def running(self) -> bool:
        return self.pending > 0


@dataclass(frozen=True)
class BotTiming:
    login: str
    response_count: int
    average_seconds: float
    max_seconds: float


@dataclass(frozen=True)
class ReviewIssue:
    issue_id: str
    path: str
    line: int | None
    side: str | None
    author: str
    body: str
    status: IssueStatus = "unresolved"
    code_snippet: str = ""

    @property
    def location(self) -> str:
        if self.line is None:
            return self.path
        return f"{self.path}:{self.line}"

    @property
    def excerpt(self) -> str:
        lines = self.body.strip().splitlines()
        first = lines[0] if lines else ""
        return first[:100]

    def with_status(self, status: IssueStatus) -> ReviewIssue:
        return replace(self, status=status)

    def with_snippet(self, snippet: str) -> ReviewIssue:
        return replace(self, code_snippet=snippet)


@dataclass(frozen=True)
class VerificationResult:
    issue_id: str
    passed: bool
    reason: str
    iteration: int


@dataclass(frozen=True)
class DismissalRecord:
    issue_id: str
    reason: str
    category: DismissalCategory
    path: str
    line: int | None
    body: str


@dataclass(frozen=True)
class RemainingIssue:
    issue_id: str
    path: str
    line: int | None
    excerpt: str


@dataclass(frozen=True)
class BailOutRecord:
    reason: BailOutReason
    cycles: int
    fixed_count: int
    remaining: tuple[RemainingIssue, ...]
    tools_exhausted: tuple[str, ...]
    recorded_at: str


@dataclass(frozen=True)
class ModelStats:
    tool: str
    model: str
    fixes: int = 0
    failures: int = 0
    no_changes: int = 0
    errors: int = 0


@dataclass(frozen=True)
class ResolutionOutcome:
    exit_reason: ExitReason
    detail: str
    fixed_count: int
    remaining_count: int
    iterations: int
