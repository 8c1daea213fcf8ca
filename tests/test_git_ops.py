from __future__ import annotations

from pathlib import Path

import pytest

from reviewloop.config import RuntimeConfig
from reviewloop.git_ops import (
    GitRepoManager,
    fix_markers,
    iteration_commit_message,
    parse_fix_markers,
    workdir_for,
)
from reviewloop.models import PullRequestRef
from reviewloop.shell import CommandError, CommandResult


PR = PullRequestRef("o", "r", 12)


def _manager(tmp_path: Path) -> GitRepoManager:
    return GitRepoManager(RuntimeConfig(base_dir=tmp_path / "state"), PR, "feature")


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(argv=("git",), returncode=0, stdout=stdout, stderr="", duration_ms=1)


def _fail(stderr: str = "", stdout: str = "") -> CommandResult:
    return CommandResult(argv=("git",), returncode=1, stdout=stdout, stderr=stderr, duration_ms=1)


def _git_args(manager: GitRepoManager, cmd: list[str]) -> list[str]:
    assert cmd[:3] == ["git", "-C", str(manager.checkout_path)]
    return cmd[3:]


def test_workdir_is_stable_per_pr_and_branch(tmp_path: Path) -> None:
    first = workdir_for(tmp_path, PR, "feature")
    assert first == workdir_for(tmp_path, PR, "feature")
    assert first != workdir_for(tmp_path, PR, "other")
    assert first.parent == tmp_path
    assert _manager(tmp_path).checkout_path.parent == tmp_path / "state" / "workdirs"


def test_fix_markers_round_trip_through_commit_message() -> None:
    message = iteration_commit_message(
        summary="Guard None lookups\n\nlonger body", iteration=3, fixed_ids=["C1", "c2"]
    )
    assert message == "Guard None lookups\n\nIteration 3\n\nprr-fix:c1\nprr-fix:c2"
    assert fix_markers(["X"]) == ["prr-fix:x"]
    assert parse_fix_markers(message + "\nnoise prr-fix:C3") == {"c1", "c2", "c3"}
    assert iteration_commit_message(summary="", iteration=1, fixed_ids=[]).startswith(
        "Address review feedback\n\nIteration 1"
    )


def test_ensure_checkout_clones_when_missing(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return ""

    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)

    assert manager.ensure_checkout("https://example/o/r.git") == manager.checkout_path
    assert calls == [
        [
            "git",
            "clone",
            "--branch",
            "feature",
            "https://example/o/r.git",
            str(manager.checkout_path),
        ]
    ]
    assert manager.checkout_path.parent.exists()


def test_ensure_checkout_updates_existing_clone(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    (manager.checkout_path / ".git").mkdir(parents=True)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(_git_args(manager, cmd))
        return ""

    def fake_run_capture(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        calls.append(_git_args(manager, cmd))
        return _fail("Not possible to fast-forward")

    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)
    monkeypatch.setattr("reviewloop.git_ops.run_capture", fake_run_capture)

    manager.ensure_checkout("https://example/o/r.git")

    assert calls == [
        ["remote", "set-url", "origin", "https://example/o/r.git"],
        ["fetch", "origin", "--prune"],
        ["checkout", "feature"],
        ["merge", "--ff-only", "origin/feature"],
    ]


def test_changed_files_parses_porcelain_output(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    status = " M src/a.py\n?? new file.py\nR  old.py -> renamed.py\n M src/a.py\nxx\n"
    monkeypatch.setattr("reviewloop.git_ops.run", lambda cmd, **kwargs: status)

    assert manager.changed_files() == ("src/a.py", "new file.py", "renamed.py")
    assert manager.has_changes() is True


def test_read_and_write_file_stay_inside_checkout(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.checkout_path.mkdir(parents=True)

    manager.write_file("pkg/a.py", "x = 1\n")
    assert manager.read_file("pkg/a.py") == "x = 1\n"
    assert manager.read_file("missing.py") is None
    with pytest.raises(ValueError, match="outside the working copy"):
        manager.write_file("../escape.py", "bad")


def test_checkout_files_removes_untracked_files(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    manager.checkout_path.mkdir(parents=True)
    (manager.checkout_path / "new.py").write_text("x", encoding="utf-8")
    calls: list[list[str]] = []

    def fake_run_capture(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        args = _git_args(manager, cmd)
        calls.append(args)
        return _ok() if args[-1] == "tracked.py" else _fail("did not match any file")

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(_git_args(manager, cmd))
        return ""

    monkeypatch.setattr("reviewloop.git_ops.run_capture", fake_run_capture)
    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)

    manager.checkout_files(["tracked.py", "new.py"])

    assert ["checkout", "HEAD", "--", "tracked.py"] in calls
    assert ["rm", "--cached", "--force", "--quiet", "--ignore-unmatch", "--", "new.py"] in calls
    assert not (manager.checkout_path / "new.py").exists()


def test_commit_iteration_skips_when_nothing_staged(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        args = _git_args(manager, cmd)
        calls.append(args)
        return ""

    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)

    assert manager.commit_iteration(iteration=1, fixed_ids=["c1"], summary="x") is None
    assert not any(args[0] == "commit" for args in calls)


def test_commit_iteration_writes_markers(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        args = _git_args(manager, cmd)
        calls.append(args)
        if args[:2] == ["diff", "--cached"]:
            return "src/a.py\n"
        if args[0] == "rev-parse":
            return "newsha\n"
        return ""

    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)

    assert manager.commit_iteration(iteration=2, fixed_ids=["c1"], summary="Fix it") == "newsha"
    commit = next(args for args in calls if args[0] == "commit")
    assert commit[:3] == ["commit", "--no-verify", "-m"]
    assert "prr-fix:c1" in commit[3]


def test_push_with_retry_rebases_after_rejection(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    pushes = iter([_fail("! [rejected] feature -> feature (fetch first)"), _ok()])
    calls: list[list[str]] = []

    def fake_run_capture(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        args = _git_args(manager, cmd)
        calls.append(args)
        if args[0] == "push":
            return next(pushes)
        return _ok()

    monkeypatch.setattr("reviewloop.git_ops.run_capture", fake_run_capture)
    monkeypatch.setattr("reviewloop.git_ops.run", lambda cmd, **kwargs: "")

    assert manager.push_with_retry() is True
    assert ["rebase", "origin/feature"] in calls
    assert [args[0] for args in calls].count("push") == 2


def test_push_with_retry_resolves_rebase_conflicts(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    pushes = iter([_fail("non-fast-forward"), _ok()])
    seen: list[list[str]] = []
    run_calls: list[list[str]] = []

    def fake_run_capture(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        if cmd[3:5] == ["-c", "core.editor=true"]:
            seen.append(cmd[5:])
            return _ok()
        args = _git_args(manager, cmd)
        if args[0] == "push":
            return next(pushes)
        if args[0] == "rebase":
            return _fail("CONFLICT")
        return _ok()

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        args = _git_args(manager, cmd)
        run_calls.append(args)
        if args[:2] == ["diff", "--name-only"]:
            return "a.py\n"
        return ""

    def on_conflict(paths: list[str]) -> bool:
        seen.append(paths)
        return True

    monkeypatch.setattr("reviewloop.git_ops.run_capture", fake_run_capture)
    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)

    assert manager.push_with_retry(on_conflict=on_conflict) is True
    assert seen == [["a.py"], ["rebase", "--continue"]]
    assert ["add", "--", "a.py"] in run_calls


def test_push_with_retry_gives_up_and_raises_on_other_errors(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)

    def always_rejected(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        if _git_args(manager, cmd)[0] == "push":
            return _fail("rejected")
        return _ok()

    monkeypatch.setattr("reviewloop.git_ops.run_capture", always_rejected)
    monkeypatch.setattr("reviewloop.git_ops.run", lambda cmd, **kwargs: "")
    assert manager.push_with_retry(max_attempts=2) is False

    monkeypatch.setattr(
        "reviewloop.git_ops.run_capture",
        lambda cmd, **kwargs: _fail("fatal: Authentication failed"),
    )
    with pytest.raises(CommandError, match="git push failed"):
        manager.push_with_retry()


def test_scan_committed_fixes_uses_first_existing_base(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run_capture(cmd: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        args = _git_args(manager, cmd)
        calls.append(args)
        if args[0] == "rev-parse":
            return _ok() if args[-1] == "origin/master" else _fail()
        return _ok("Fix\n\nprr-fix:c1\n\nOther\n\nprr-fix:c2\n")

    monkeypatch.setattr("reviewloop.git_ops.run_capture", fake_run_capture)

    assert manager.scan_committed_fixes() == {"c1", "c2"}
    assert calls[-1] == ["log", "--grep=prr-fix:", "--format=%B", "origin/master..HEAD"]


def test_has_unpushed_commits(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    monkeypatch.setattr("reviewloop.git_ops.run_capture", lambda cmd, **kwargs: _ok("0\n"))
    assert manager.has_unpushed_commits() is False
    monkeypatch.setattr("reviewloop.git_ops.run_capture", lambda cmd, **kwargs: _ok("2\n"))
    assert manager.has_unpushed_commits() is True
    monkeypatch.setattr("reviewloop.git_ops.run_capture", lambda cmd, **kwargs: _fail())
    assert manager.has_unpushed_commits() is True


def test_merge_base_branch_reports_conflicts(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    monkeypatch.setattr("reviewloop.git_ops.run_capture", lambda cmd, **kwargs: _fail("CONFLICT"))
    monkeypatch.setattr(
        "reviewloop.git_ops.run",
        lambda cmd, **kwargs: "a.py\nb.lock\n" if "--diff-filter=U" in cmd else "",
    )

    assert manager.merge_base_branch("main") == ["a.py", "b.lock"]


def test_merge_base_branch_failure_without_conflicts_resets(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    manager = _manager(tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(_git_args(manager, cmd))
        return ""

    monkeypatch.setattr("reviewloop.git_ops.run_capture", lambda cmd, **kwargs: _fail("boom"))
    monkeypatch.setattr("reviewloop.git_ops.run", fake_run)

    with pytest.raises(CommandError, match="Merging origin/main failed: boom"):
        manager.merge_base_branch("main")
    assert ["reset", "--hard", "origin/feature"] in calls
    assert ["clean", "-fd"] in calls


def test_files_with_conflict_markers(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.checkout_path.mkdir(parents=True)
    manager.write_file("a.py", "<<<<<<< HEAD\nx\n=======\ny\n>>>>>>> main\n")
    manager.write_file("b.py", "clean\n")

    assert manager.files_with_conflict_markers(["a.py", "b.py", "gone.py"]) == ["a.py"]
