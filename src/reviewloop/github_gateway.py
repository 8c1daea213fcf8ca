from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
import re
from typing import cast
from urllib.parse import quote, urlencode

from reviewloop.models import (
    BotTiming,
    CheckStatus,
    IssueComment,
    PullRequestRef,
    PullRequestSnapshot,
    ReviewComment,
)
from reviewloop.observability import log_event
from reviewloop.shell import run


LOGGER = logging.getLogger("reviewloop.github_gateway")

PAGE_SIZE = 100

_PR_URL = re.compile(r"^https?://github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)(?:[/?#].*)?$")
_PR_SHORTHAND = re.compile(r"^([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)#(\d+)$")
_STATUS_LINE = re.compile(r"^HTTP/\S+\s+(\d{3})\b")
_CHECK_FAILURE_CONCLUSIONS = {"failure", "timed_out", "cancelled", "action_required"}

JsonObject = dict[str, object]


class GitHubPollingError(RuntimeError):
    """A GET against the GitHub API failed; the next poll may succeed."""


class GitHubNotFoundError(GitHubPollingError):
    pass


class PullRequestRefError(ValueError):
    pass


def parse_pr_ref(text: str) -> PullRequestRef:
    """Parse ``https://github.com/o/r/pull/N`` or ``o/r#N``."""
    candidate = text.strip()
    match = _PR_URL.match(candidate) or _PR_SHORTHAND.match(candidate)
    if match is None:
        raise PullRequestRefError(
            f"Invalid pull request reference {text!r}; expected "
            "https://github.com/<owner>/<repo>/pull/<n> or <owner>/<repo>#<n>"
        )
    number = int(match.group(3))
    if number < 1:
        raise PullRequestRefError(f"Invalid pull request number in {text!r}")
    return PullRequestRef(owner=match.group(1), name=match.group(2), number=number)


@dataclass(frozen=True)
class GitHubGateway:
    """Read and write one repository through ``gh api``.

    GETs send ``If-None-Match`` for paths seen before and reuse the cached
    payload on ``304``. Every GET failure other than ``404`` surfaces as
    ``GitHubPollingError`` so polling callers can retry on their next tick.
    """

    owner: str
    name: str
    _get_cache: dict[str, tuple[str, object]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    @classmethod
    def for_pr(cls, pr: PullRequestRef) -> GitHubGateway:
        return cls(owner=pr.owner, name=pr.name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.name}/{suffix}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        pr_obj = _object(self._api_json("GET", self._repo_path(f"pulls/{pr_number}")))
        if pr_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        head = _object(pr_obj.get("head"))
        base = _object(pr_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")

        head_repo = _object(head.get("repo")) or {}
        mergeable = pr_obj.get("mergeable")
        snapshot = PullRequestSnapshot(
            number=_as_int(pr_obj.get("number"), field="number"),
            title=_text(pr_obj.get("title")),
            head_branch=_text(head.get("ref")),
            head_sha=_text(head.get("sha")),
            base_branch=_text(base.get("ref")),
            base_sha=_text(base.get("sha")),
            clone_url=_text(head_repo.get("clone_url"))
            or f"https://github.com/{self.full_name}.git",
            state=_text(pr_obj.get("state")),
            mergeable=mergeable if isinstance(mergeable, bool) else None,
            mergeable_state=_text(pr_obj.get("mergeable_state")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable=snapshot.mergeable,
        )
        return snapshot

    def list_review_comments(self, pr_number: int) -> list[ReviewComment]:
        items = self._paginate(self._repo_path(f"pulls/{pr_number}/comments"))
        comments = [_review_comment(item) for item in items]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        items = self._paginate(self._repo_path(f"issues/{issue_number}/comments"))
        comments = [
            IssueComment(
                comment_id=_as_int(item.get("id"), field="id"),
                body=_text(item.get("body")),
                user_login=_login(item),
                created_at=_text(item.get("created_at")),
            )
            for item in items
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        try:
            self._api_json(
                "POST", self._repo_path(f"issues/{issue_number}/comments"), {"body": body}
            )
        except Exception as exc:
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def get_check_status(self, head_sha: str) -> CheckStatus:
        path = self._repo_path(f"commits/{head_sha}/check-runs?per_page={PAGE_SIZE}")
        runs_obj = _object(self._api_json("GET", path))
        if runs_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for check runs")
        runs = runs_obj.get("check_runs")
        if not isinstance(runs, list):
            raise RuntimeError("Unexpected GitHub response: expected check_runs list")

        tally = {"pending": 0, "failing": 0, "passing": 0}
        for run_obj in filter(None, map(_object, runs)):
            if _text(run_obj.get("status")).strip().lower() != "completed":
                tally["pending"] += 1
            elif _text(run_obj.get("conclusion")).strip().lower() in _CHECK_FAILURE_CONCLUSIONS:
                tally["failing"] += 1
            else:
                tally["passing"] += 1
        log_event(LOGGER, "github_read", endpoint="check_runs", head_sha=head_sha, **tally)
        return CheckStatus(**tally)

    def get_file_content(self, path: str, *, ref: str) -> str | None:
        """Return the decoded file at ``ref``, or ``None`` when it does not exist there."""
        api_path = self._repo_path(f"contents/{quote(path)}?{urlencode({'ref': ref})}")
        try:
            content_obj = _object(self._api_json("GET", api_path))
        except GitHubNotFoundError:
            log_event(LOGGER, "github_read", endpoint="contents", path=path, found=False)
            return None
        if content_obj is None or content_obj.get("encoding") != "base64":
            return None
        raw = base64.b64decode(_text(content_obj.get("content")))
        log_event(LOGGER, "github_read", endpoint="contents", path=path, found=True)
        return raw.decode("utf-8", errors="replace")

    def list_pull_request_commits(self, pr_number: int) -> list[tuple[str, str]]:
        """Return ``(sha, committed_at)`` pairs in PR order."""
        commits: list[tuple[str, str]] = []
        for item in self._paginate(self._repo_path(f"pulls/{pr_number}/commits")):
            committer = _object((_object(item.get("commit")) or {}).get("committer")) or {}
            commits.append((_text(item.get("sha")), _text(committer.get("date"))))
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_commits",
            pr_number=pr_number,
            count=len(commits),
        )
        return commits

    def bot_response_timing(self, pr_number: int) -> tuple[BotTiming, ...]:
        commits = self.list_pull_request_commits(pr_number)
        comments = self.list_review_comments(pr_number)
        return compute_bot_timing(
            commit_times=[committed_at for _sha, committed_at in commits],
            comments=comments,
        )

    def _paginate(self, base_path: str) -> list[JsonObject]:
        items: list[JsonObject] = []
        page = 1
        while True:
            query = urlencode({"per_page": PAGE_SIZE, "page": page})
            batch = self._api_json("GET", f"{base_path}?{query}")
            if not isinstance(batch, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list for {base_path}")
            items.extend(filter(None, map(_object, batch)))
            if len(batch) < PAGE_SIZE:
                return items
            page += 1

    def _api_json(self, method: str, path: str, payload: JsonObject | None = None) -> object:
        verb = method.upper()
        if verb == "GET":
            return self._cached_get(path)
        cmd = ["gh", "api", "--method", verb, path]
        if payload is None:
            return json.loads(run(cmd))
        return json.loads(run([*cmd, "--input", "-"], input_text=json.dumps(payload)))

    def _cached_get(self, path: str) -> object:
        cached = self._get_cache.get(path)
        cmd = ["gh", "api", "--method", "GET"]
        if cached is not None:
            cmd += ["--header", f"If-None-Match: {cached[0]}"]
        raw = run([*cmd, "--include", path], check=False)
        try:
            status, headers, body = _parse_http_response(raw)
            if status == 404:
                raise GitHubNotFoundError(f"GitHub resource not found: {path}")
            if status == 304:
                if cached is None:
                    raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                return cached[1]
            if not 200 <= status < 300:
                raise RuntimeError(
                    f"GitHub API request failed with status {status}: {body.strip() or '<empty>'}"
                )
            decoded = json.loads(body)
        except GitHubNotFoundError:
            raise
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=raw.replace("\n", "\\n")[:240],
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc
        etag = headers.get("etag")
        if etag:
            self._get_cache[path] = (etag, decoded)
        return decoded


def is_bot_login(login: str) -> bool:
    lowered = login.strip().lower()
    return lowered.endswith("[bot]") or lowered.endswith("-bot")


def compute_bot_timing(
    *, commit_times: list[str], comments: list[ReviewComment]
) -> tuple[BotTiming, ...]:
    """Measure, per bot, how long after each commit its first review comment arrived."""
    commits = sorted(ts for ts in (_parse_timestamp(raw) for raw in commit_times) if ts)
    if not commits:
        return ()
    delays_by_bot: dict[str, list[float]] = {}
    seen: set[tuple[str, datetime]] = set()
    for comment in sorted(comments, key=lambda item: item.created_at):
        if not is_bot_login(comment.user_login):
            continue
        created = _parse_timestamp(comment.created_at)
        if created is None:
            continue
        preceding = [commit for commit in commits if commit <= created]
        if not preceding:
            continue
        commit_time = preceding[-1]
        key = (comment.user_login, commit_time)
        if key in seen:
            continue
        seen.add(key)
        delays_by_bot.setdefault(comment.user_login, []).append(
            (created - commit_time).total_seconds()
        )

    timings = [
        BotTiming(
            login=login,
            response_count=len(delays),
            average_seconds=sum(delays) / len(delays),
            max_seconds=max(delays),
        )
        for login, delays in sorted(delays_by_bot.items())
    ]
    log_event(LOGGER, "bot_timing_computed", bots=len(timings))
    return tuple(timings)


def _review_comment(item: JsonObject) -> ReviewComment:
    line = _as_optional_int(item.get("line"))
    if line is None:
        # Outdated comments only carry the line they were left on.
        line = _as_optional_int(item.get("original_line"))
    side = item.get("side")
    return ReviewComment(
        comment_id=_as_int(item.get("id"), field="id"),
        body=_text(item.get("body")),
        path=_text(item.get("path")),
        line=line,
        side=None if side is None else _text(side),
        in_reply_to_id=_as_optional_int(item.get("in_reply_to_id")),
        user_login=_login(item),
        html_url=_text(item.get("html_url")),
        created_at=_text(item.get("created_at")),
    )


def _login(item: JsonObject) -> str:
    user = _object(item.get("user")) or {}
    return _text(user.get("login"))


def _parse_timestamp(raw: str) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    """Split ``gh api --include`` output into status, lowercased headers and body.

    Only the last status line counts, so interim ``100 Continue`` blocks are skipped.
    """
    lines = raw.replace("\r\n", "\n").split("\n")
    starts = [index for index, line in enumerate(lines) if line.startswith("HTTP/")]
    if not starts:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")
    status_index = starts[-1]
    match = _STATUS_LINE.match(lines[status_index])
    if match is None:
        raise RuntimeError(f"Unexpected GitHub response status line: {lines[status_index]!r}")

    try:
        blank = lines.index("", status_index + 1)
    except ValueError:
        blank = len(lines)
    headers: dict[str, str] = {}
    for line in lines[status_index + 1 : blank]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return int(match.group(1)), headers, "\n".join(lines[blank + 1 :])


def _object(value: object) -> JsonObject | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return cast(JsonObject, value)
    return None


def _text(value: object) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_int(value: object, *, field: str) -> int:
    parsed = _as_optional_int(value, field=field)
    if parsed is None:
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    return parsed


def _as_optional_int(value: object, *, field: str = "optional int field") -> int | None:
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
