from __future__ import annotations

import base64
import json
from urllib.parse import parse_qs, urlparse

import pytest

from reviewloop.github_gateway import (
    GitHubGateway,
    GitHubNotFoundError,
    GitHubPollingError,
    PullRequestRefError,
    _as_int,
    _as_optional_int,
    _parse_http_response,
    compute_bot_timing,
    is_bot_login,
    parse_pr_ref,
)
from reviewloop.models import PullRequestRef, ReviewComment
from reviewloop.observability import configure_logging


def _http(status: str, body: str, *headers: str) -> str:
    return "\n".join((f"HTTP/2.0 {status}", *headers, "", body))


def _review_comment(comment_id: int, *, login: str, created_at: str) -> ReviewComment:
    return ReviewComment(
        comment_id=comment_id,
        body="fix",
        path="src/a.py",
        line=3,
        side="RIGHT",
        in_reply_to_id=None,
        user_login=login,
        html_url=f"https://github.com/o/r/pull/1#discussion_r{comment_id}",
        created_at=created_at,
    )


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("https://github.com/acme/widgets/pull/42", PullRequestRef("acme", "widgets", 42)),
        ("https://github.com/acme/widgets/pull/42/files", PullRequestRef("acme", "widgets", 42)),
        ("  acme/widgets.py#7 ", PullRequestRef("acme", "widgets.py", 7)),
    ],
)
def test_parse_pr_ref_accepts_url_and_shorthand(text: str, expected: PullRequestRef) -> None:
    assert parse_pr_ref(text) == expected


@pytest.mark.parametrize(
    "text", ["", "acme/widgets", "https://gitlab.com/a/b/pull/1", "acme/widgets#0", "a#1"]
)
def test_parse_pr_ref_rejects_invalid_references(text: str) -> None:
    with pytest.raises(PullRequestRefError):
        parse_pr_ref(text)


def test_get_pull_request_parses_snapshot(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = {
        "number": 5,
        "title": "Add cache",
        "state": "open",
        "mergeable": False,
        "mergeable_state": "dirty",
        "head": {"ref": "feature", "sha": "abc", "repo": {"clone_url": "https://x/fork.git"}},
        "base": {"ref": "main", "sha": "def"},
    }
    seen: list[tuple[str, str]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload_in: object = None
    ) -> object:
        _ = self, payload_in
        seen.append((method, path))
        return payload

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    snapshot = GitHubGateway.for_pr(PullRequestRef("o", "r", 5)).get_pull_request(5)

    assert seen == [("GET", "/repos/o/r/pulls/5")]
    assert snapshot.head_branch == "feature"
    assert snapshot.head_sha == "abc"
    assert snapshot.base_branch == "main"
    assert snapshot.clone_url == "https://x/fork.git"
    assert snapshot.mergeable is False
    assert snapshot.mergeable_state == "dirty"


def test_get_pull_request_defaults_clone_url_and_requires_head(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    payloads: list[object] = [
        {"number": 1, "head": {"ref": "b", "sha": "s", "repo": None}, "base": {"ref": "main"}},
        {"number": 1, "head": {"ref": "b"}},
        [],
    ]
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: payloads.pop(0)
    )
    gateway = GitHubGateway("o", "r")

    snapshot = gateway.get_pull_request(1)
    assert snapshot.clone_url == "https://github.com/o/r.git"
    assert snapshot.mergeable is None
    with pytest.raises(RuntimeError, match="missing pull request head/base"):
        gateway.get_pull_request(1)
    with pytest.raises(RuntimeError, match="expected object"):
        gateway.get_pull_request(1)


def test_list_review_comments_paginates_and_falls_back_to_original_line(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    first_page = [
        {
            "id": index,
            "body": f"comment {index}",
            "path": "src/a.py",
            "line": index,
            "side": "RIGHT",
            "user": {"login": "reviewer"},
            "html_url": "u",
            "created_at": "2024-01-01T00:00:00Z",
        }
        for index in range(1, 101)
    ]
    second_page = [
        {
            "id": "101",
            "body": "outdated",
            "path": "src/b.py",
            "line": None,
            "original_line": 9,
            "in_reply_to_id": 1,
            "user": None,
        },
        "not-an-object",
    ]
    pages: list[int] = []

    def fake_api(self: GitHubGateway, method: str, path: str, payload: object = None) -> object:
        _ = self, method, payload
        parsed = urlparse(path)
        assert parsed.path == "/repos/o/r/pulls/3/comments"
        page = int(parse_qs(parsed.query)["page"][0])
        pages.append(page)
        return first_page if page == 1 else second_page

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    comments = GitHubGateway("o", "r").list_review_comments(3)

    assert pages == [1, 2]
    assert len(comments) == 101
    last = comments[-1]
    assert last.comment_id == 101
    assert last.line == 9
    assert last.in_reply_to_id == 1
    assert last.user_login == ""
    assert last.side is None


def test_list_issue_comments_rejects_non_list(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: {"oops": 1}
    )
    with pytest.raises(RuntimeError, match="expected list"):
        GitHubGateway("o", "r").list_issue_comments(3)


def test_get_check_status_counts_runs(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = {
        "check_runs": [
            {"status": "in_progress", "conclusion": None},
            {"status": "queued"},
            {"status": "completed", "conclusion": "failure"},
            {"status": "completed", "conclusion": "timed_out"},
            {"status": "completed", "conclusion": "success"},
            {"status": "completed", "conclusion": "skipped"},
            7,
        ]
    }
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload_in=None: payload
    )

    status = GitHubGateway("o", "r").get_check_status("abc")

    assert (status.pending, status.failing, status.passing) == (2, 2, 2)
    assert status.running is True


def test_get_file_content_decodes_and_handles_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    encoded = base64.b64encode("print('hi')\n".encode("utf-8")).decode("ascii")
    paths: list[str] = []

    def fake_api(self: GitHubGateway, method: str, path: str, payload: object = None) -> object:
        _ = self, method, payload
        paths.append(path)
        if "missing" in path:
            raise GitHubNotFoundError(path)
        return {"encoding": "base64", "content": encoded}

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)
    gateway = GitHubGateway("o", "r")

    assert gateway.get_file_content("src/a b.py", ref="feature") == "print('hi')\n"
    assert paths[0] == "/repos/o/r/contents/src/a%20b.py?ref=feature"
    assert gateway.get_file_content("missing.py", ref="feature") is None


def test_post_issue_comment_logs_failures(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)

    def fake_api(self: GitHubGateway, method: str, path: str, payload: object = None) -> object:
        _ = self, path
        assert method == "POST"
        assert payload == {"body": "hello"}
        raise RuntimeError("boom")

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    with pytest.raises(RuntimeError, match="boom"):
        GitHubGateway("o", "r").post_issue_comment(4, "hello")
    err = capsys.readouterr().err
    assert "event=github_issue_comment_failed" in err
    assert "error_type=RuntimeError" in err


def test_api_json_get_uses_etag_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(
        cmd: list[str], *, cwd=None, input_text: str | None = None, check: bool = True
    ) -> str:
        _ = cwd, input_text
        assert check is False
        calls.append(cmd)
        if len(calls) == 1:
            return _http("200 OK", '{"value": 7}', 'ETag: "etag-2"')
        return _http("304 Not Modified", "")

    monkeypatch.setattr("reviewloop.github_gateway.run", fake_run)
    gateway = GitHubGateway("o", "r")

    assert gateway._api_json("GET", "/path") == {"value": 7}
    assert gateway._api_json("GET", "/path") == {"value": 7}
    assert calls[0] == ["gh", "api", "--method", "GET", "--include", "/path"]
    assert calls[1][calls[1].index("--header") + 1] == 'If-None-Match: "etag-2"'


def test_api_json_post_sends_payload_on_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], str | None, bool]] = []

    def fake_run(
        cmd: list[str], *, cwd=None, input_text: str | None = None, check: bool = True
    ) -> str:
        _ = cwd
        calls.append((cmd, input_text, check))
        return json.dumps({"ok": True})

    monkeypatch.setattr("reviewloop.github_gateway.run", fake_run)

    assert GitHubGateway("o", "r")._api_json("POST", "/path", payload={"k": "v"}) == {"ok": True}
    assert calls == [
        (["gh", "api", "--method", "POST", "/path", "--input", "-"], '{"k": "v"}', True)
    ]


@pytest.mark.parametrize(
    ("raw", "error", "match"),
    [
        (_http("404 Not Found", "{}"), GitHubNotFoundError, "not found"),
        (_http("403 Forbidden", '{"message":"no"}'), GitHubPollingError, "status 403"),
        (_http("304 Not Modified", ""), GitHubPollingError, "uncached path"),
        ("garbage", GitHubPollingError, "missing HTTP status line"),
    ],
)
def test_api_json_get_error_mapping(
    monkeypatch: pytest.MonkeyPatch, raw: str, error: type[Exception], match: str
) -> None:
    monkeypatch.setattr("reviewloop.github_gateway.run", lambda cmd, **kwargs: raw)
    with pytest.raises(error, match=match):
        GitHubGateway("o", "r")._api_json("GET", "/path")


def test_parse_http_response_uses_last_status_line() -> None:
    raw = "HTTP/1.1 100 Continue\r\n\r\nHTTP/2.0 200 OK\r\nX-Test: 1\r\n\r\n[1]"
    assert _parse_http_response(raw) == (200, {"x-test": "1"}, "[1]")
    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0 abc")


def test_bot_detection() -> None:
    assert is_bot_login("coderabbitai[bot]")
    assert is_bot_login("review-bot")
    assert not is_bot_login("alice")


def test_compute_bot_timing_measures_first_response_per_commit() -> None:
    comments = [
        _review_comment(1, login="lint[bot]", created_at="2024-01-01T00:02:00Z"),
        _review_comment(2, login="lint[bot]", created_at="2024-01-01T00:05:00Z"),
        _review_comment(3, login="lint[bot]", created_at="2024-01-01T01:04:00Z"),
        _review_comment(4, login="alice", created_at="2024-01-01T00:01:00Z"),
        _review_comment(5, login="early[bot]", created_at="2023-12-31T23:00:00Z"),
        _review_comment(6, login="lint[bot]", created_at="not a time"),
    ]
    timings = compute_bot_timing(
        commit_times=["2024-01-01T00:00:00Z", "2024-01-01T01:00:00Z", ""],
        comments=comments,
    )

    assert len(timings) == 1
    timing = timings[0]
    assert timing.login == "lint[bot]"
    assert timing.response_count == 2
    assert timing.average_seconds == 180.0
    assert timing.max_seconds == 240.0
    assert compute_bot_timing(commit_times=[], comments=comments) == ()


def test_int_helpers() -> None:
    assert _as_int("3", field="x") == 3
    assert _as_optional_int(None) is None
    with pytest.raises(RuntimeError):
        _as_int(True, field="x")
    with pytest.raises(RuntimeError):
        _as_optional_int("nope")
