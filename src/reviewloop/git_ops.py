from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
import hashlib
from pathlib import Path
import logging
import re

from reviewloop.config import RuntimeConfig
from reviewloop.models import PullRequestRef
from reviewloop.observability import log_event
from reviewloop.shell import CommandError, run, run_capture


LOGGER = logging.getLogger("reviewloop.git_ops")

FIX_MARKER_PREFIX = "prr-fix:"
CONFLICT_MARKER = "<<<<<<<"
_FIX_MARKER = re.compile(r"prr-fix:(\S+)")
_BASE_CANDIDATES = ("origin/main", "origin/master", "origin/develop")
_PUSH_REJECTED = re.compile(r"rejected|non-fast-forward|fetch first|failed to push", re.IGNORECASE)

ConflictHandler = Callable[[list[str]], bool]


def workdir_for(workdirs_root: Path, pr: PullRequestRef, branch: str) -> Path:
    key = f"{pr.full_name}#{pr.number}@{branch}"
    return workdirs_root / hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


def fix_markers(issue_ids: Iterable[str]) -> list[str]:
    return [f"{FIX_MARKER_PREFIX}{issue_id.lower()}" for issue_id in issue_ids]


def iteration_commit_message(*, summary: str, iteration: int, fixed_ids: Sequence[str]) -> str:
    first_line = summary.strip().splitlines()[0] if summary.strip() else "Address review feedback"
    lines = [first_line, "", f"Iteration {iteration}"]
    markers = fix_markers(fixed_ids)
    if markers:
        lines.append("")
        lines.extend(markers)
    return "\n".join(lines)


def parse_fix_markers(log_text: str) -> set[str]:
    return {match.group(1).lower() for match in _FIX_MARKER.finditer(log_text)}


class GitRepoManager:
    """Git operations on the per-PR working copy.

    One clone per ``(pull request, branch)`` lives under the runtime's
    workdirs root; every command runs through ``git -C <checkout>``.
    """

    def __init__(self, runtime: RuntimeConfig, pr: PullRequestRef, branch: str) -> None:
        self.runtime = runtime
        self.pr = pr
        self.branch = branch
        self.checkout_path = workdir_for(runtime.workdirs_root, pr, branch)

    def _git(self, *args: str) -> list[str]:
        return ["git", "-C", str(self.checkout_path), *args]

    def ensure_checkout(self, clone_url: str) -> Path:
        if not (self.checkout_path / ".git").exists():
            self.checkout_path.parent.mkdir(parents=True, exist_ok=True)
            log_event(
                LOGGER,
                "git_checkout_cloned",
                checkout_path=str(self.checkout_path),
                branch=self.branch,
            )
            run(["git", "clone", "--branch", self.branch, clone_url, str(self.checkout_path)])
            return self.checkout_path

        log_event(
            LOGGER,
            "git_checkout_updated",
            checkout_path=str(self.checkout_path),
            branch=self.branch,
        )
        run(self._git("remote", "set-url", "origin", clone_url))
        self.fetch_origin()
        run(self._git("checkout", self.branch))
        fast_forward = run_capture(self._git("merge", "--ff-only", f"origin/{self.branch}"))
        if not fast_forward.ok:
            # Local commits not yet pushed are kept; the push step reconciles them.
            log_event(
                LOGGER,
                "git_update_not_fast_forward",
                checkout_path=str(self.checkout_path),
                branch=self.branch,
            )
        return self.checkout_path

    def fetch_origin(self) -> None:
        log_event(LOGGER, "git_fetch_origin", checkout_path=str(self.checkout_path))
        run(self._git("fetch", "origin", "--prune"))

    def current_head_sha(self) -> str:
        return run(self._git("rev-parse", "HEAD")).strip()

    def changed_files(self) -> tuple[str, ...]:
        status = run(self._git("status", "--porcelain", "--untracked-files=all"))
        files: list[str] = []
        for line in status.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip().strip('"')
            if path and path not in files:
                files.append(path)
        return tuple(files)

    def has_changes(self) -> bool:
        return bool(self.changed_files())

    def diff_file(self, path: str) -> str:
        run(self._git("add", "--intent-to-add", "--", path))
        return run(self._git("diff", "HEAD", "--", path))

    def diff_all(self) -> str:
        run(self._git("add", "--intent-to-add", "--all"))
        return run(self._git("diff", "HEAD"))

    def read_file(self, path: str) -> str | None:
        target = self.checkout_path / path
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8", errors="replace")

    def write_file(self, path: str, content: str) -> None:
        target = (self.checkout_path / path).resolve()
        if not target.is_relative_to(self.checkout_path.resolve()):
            raise ValueError(f"Refusing to write outside the working copy: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def checkout_files(self, paths: Sequence[str]) -> None:
        """Discard working-copy edits to ``paths``, deleting files that are new."""
        if not paths:
            return
        log_event(
            LOGGER,
            "git_files_reverted",
            checkout_path=str(self.checkout_path),
            count=len(paths),
        )
        for path in paths:
            restored = run_capture(self._git("checkout", "HEAD", "--", path))
            if restored.ok:
                continue
            run(self._git("rm", "--cached", "--force", "--quiet", "--ignore-unmatch", "--", path))
            target = self.checkout_path / path
            if target.is_file():
                target.unlink()

    def stage_all(self) -> tuple[str, ...]:
        run(self._git("add", "-A"))
        diff = run(self._git("diff", "--cached", "--name-only")).strip()
        if not diff:
            return ()
        return tuple(line for line in diff.splitlines() if line.strip())

    def stage(self, paths: Sequence[str]) -> None:
        if paths:
            run(self._git("add", "--", *paths))

    def commit_iteration(
        self, *, iteration: int, fixed_ids: Sequence[str], summary: str
    ) -> str | None:
        """Commit the iteration's edits with one fix marker per verified issue."""
        if not self.stage_all():
            return None
        message = iteration_commit_message(
            summary=summary, iteration=iteration, fixed_ids=fixed_ids
        )
        log_event(
            LOGGER,
            "git_commit",
            checkout_path=str(self.checkout_path),
            iteration=iteration,
            fixed_count=len(fixed_ids),
        )
        run(self._git("commit", "--no-verify", "-m", message))
        return self.current_head_sha()

    def commit_all(self, message: str) -> str | None:
        if not self.stage_all():
            return None
        log_event(
            LOGGER,
            "git_commit",
            checkout_path=str(self.checkout_path),
            has_message=bool(message.strip()),
        )
        run(self._git("commit", "--no-verify", "-m", message))
        return self.current_head_sha()

    def has_unpushed_commits(self) -> bool:
        result = run_capture(self._git("rev-list", "--count", f"origin/{self.branch}..HEAD"))
        if not result.ok:
            return True
        return result.stdout.strip() not in {"", "0"}

    def push_with_retry(
        self,
        *,
        on_conflict: ConflictHandler | None = None,
        max_attempts: int = 3,
    ) -> bool:
        """Push the branch, fetching and rebasing when the remote has moved on."""
        for attempt in range(1, max_attempts + 1):
            log_event(
                LOGGER,
                "git_push",
                checkout_path=str(self.checkout_path),
                branch=self.branch,
                attempt=attempt,
            )
            result = run_capture(self._git("push", "origin", f"HEAD:{self.branch}"))
            if result.ok:
                return True
            if not _PUSH_REJECTED.search(result.combined_output):
                log_event(
                    LOGGER,
                    "git_push_failed",
                    checkout_path=str(self.checkout_path),
                    branch=self.branch,
                    attempt=attempt,
                    error=result.stderr.strip(),
                )
                raise CommandError(f"git push failed: {result.stderr.strip()}")
            if attempt == max_attempts:
                break
            if not self._rebase_onto_remote(on_conflict):
                break
        log_event(
            LOGGER,
            "git_push_failed",
            checkout_path=str(self.checkout_path),
            branch=self.branch,
            attempts=max_attempts,
        )
        return False

    def _rebase_onto_remote(self, on_conflict: ConflictHandler | None) -> bool:
        self.fetch_origin()
        rebase = run_capture(self._git("rebase", f"origin/{self.branch}"))
        if rebase.ok:
            return True
        conflicted = self.conflicted_files()
        if conflicted and on_conflict is not None and on_conflict(conflicted):
            self.stage(conflicted)
            continued = run_capture(
                ["git", "-C", str(self.checkout_path), "-c", "core.editor=true"]
                + ["rebase", "--continue"]
            )
            if continued.ok:
                return True
        log_event(
            LOGGER,
            "git_rebase_aborted",
            checkout_path=str(self.checkout_path),
            branch=self.branch,
            conflicted=len(conflicted),
        )
        run_capture(self._git("rebase", "--abort"))
        return False

    def scan_committed_fixes(self) -> set[str]:
        """Return issue ids recorded by fix markers on this branch."""
        base: str | None = None
        for candidate in _BASE_CANDIDATES:
            if run_capture(self._git("rev-parse", "--verify", "--quiet", candidate)).ok:
                base = candidate
                break
        if base is not None:
            result = run_capture(
                self._git("log", f"--grep={FIX_MARKER_PREFIX}", "--format=%B", f"{base}..HEAD")
            )
        else:
            result = run_capture(
                self._git("log", f"--grep={FIX_MARKER_PREFIX}", "--format=%B", "-n", "100")
            )
        if not result.ok:
            return set()
        found = parse_fix_markers(result.stdout)
        log_event(
            LOGGER,
            "git_fix_markers_scanned",
            checkout_path=str(self.checkout_path),
            base=base,
            count=len(found),
        )
        return found

    def merge_base_branch(self, base_branch: str) -> list[str]:
        """Merge ``origin/<base_branch>``; return the paths left in conflict."""
        log_event(
            LOGGER,
            "git_merge_base_branch",
            checkout_path=str(self.checkout_path),
            base_branch=base_branch,
        )
        run(self._git("fetch", "origin", base_branch))
        merged = run_capture(self._git("merge", "--no-edit", f"origin/{base_branch}"))
        if merged.ok:
            return []
        conflicted = self.conflicted_files()
        if conflicted:
            return conflicted
        self.abort_merge()
        self.reset_to_remote()
        raise CommandError(f"Merging origin/{base_branch} failed: {merged.stderr.strip()}")

    def conflicted_files(self) -> list[str]:
        output = run(self._git("diff", "--name-only", "--diff-filter=U"))
        return [line.strip() for line in output.splitlines() if line.strip()]

    def files_with_conflict_markers(self, paths: Iterable[str]) -> list[str]:
        marked: list[str] = []
        for path in paths:
            content = self.read_file(path)
            if content is not None and CONFLICT_MARKER in content:
                marked.append(path)
        return marked

    def complete_merge(self) -> None:
        run(self._git("commit", "--no-edit", "--no-verify"))

    def abort_merge(self) -> None:
        log_event(LOGGER, "git_merge_aborted", checkout_path=str(self.checkout_path))
        run_capture(self._git("merge", "--abort"))

    def reset_to_remote(self) -> None:
        log_event(
            LOGGER,
            "git_reset_to_remote",
            checkout_path=str(self.checkout_path),
            branch=self.branch,
        )
        run(self._git("reset", "--hard", f"origin/{self.branch}"))
        run(self._git("clean", "-fd"))

