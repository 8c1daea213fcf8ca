from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
import logging
import os
from pathlib import Path, PurePosixPath
import subprocess

from reviewloop.agent_adapter import AgentRunner
from reviewloop.git_ops import CONFLICT_MARKER, GitRepoManager
from reviewloop.observability import log_event
from reviewloop.oracle import Oracle
from reviewloop.prompts import build_conflict_prompt


LOGGER = logging.getLogger("reviewloop.conflicts")

LOCK_FILE_COMMANDS: dict[str, tuple[str, ...]] = {
    "bun.lock": ("bun", "install"),
    "bun.lockb": ("bun", "install"),
    "package-lock.json": ("npm", "install"),
    "yarn.lock": ("yarn", "install"),
    "pnpm-lock.yaml": ("pnpm", "install"),
    "Cargo.lock": ("cargo", "generate-lockfile"),
    "Gemfile.lock": ("bundle", "install"),
    "poetry.lock": ("poetry", "lock"),
    "composer.lock": ("composer", "install"),
}
ENV_WHITELIST = (
    "PATH",
    "HOME",
    "USER",
    "LANG",
    "LC_ALL",
    "TERM",
    "SHELL",
    "CARGO_HOME",
    "RUSTUP_HOME",
    "GOPATH",
    "GOROOT",
    "NPM_TOKEN",
    "YARN_ENABLE_IMMUTABLE_INSTALLS",
)
INSTALL_SCRIPT_GUARDS = {
    "npm_config_ignore_scripts": "true",
    "YARN_ENABLE_SCRIPTS": "0",
    "BUN_INSTALL_DISABLE_POSTINSTALL": "1",
    "PNPM_DISABLE_SCRIPTS": "true",
}
FALLBACK_PATH = "/usr/bin:/bin"
REGENERATE_TIMEOUT_SECONDS = 60.0
KILL_GRACE_SECONDS = 5.0

CommandRunner = Callable[[Sequence[str], Path, dict[str, str]], None]


class SandboxError(RuntimeError):
    """A lock-file regeneration step was refused or did not finish."""


@dataclass(frozen=True)
class ConflictResolution:
    resolved: bool
    remaining: tuple[str, ...]
    regenerated: tuple[str, ...] = ()


def lock_file_command(path: str) -> tuple[str, ...] | None:
    return LOCK_FILE_COMMANDS.get(PurePosixPath(path).name)


def is_lock_file(path: str) -> bool:
    return lock_file_command(path) is not None


def validate_workdir(workdir: Path, base_dir: Path) -> Path:
    """Return the real path of ``workdir``, which must sit under ``base_dir``."""
    real_workdir = Path(os.path.realpath(workdir))
    real_base = Path(os.path.realpath(base_dir))
    if not real_workdir.is_relative_to(real_base):
        raise SandboxError(f"Workdir {real_workdir} is outside base {real_base}")
    return real_workdir


def resolve_inside(real_workdir: Path, relative: str) -> Path:
    candidate = Path(os.path.abspath(real_workdir / relative))
    if not candidate.is_relative_to(real_workdir):
        raise SandboxError(f"Path traversal detected: {relative}")
    real_candidate = Path(os.path.realpath(candidate))
    if not real_candidate.is_relative_to(real_workdir):
        raise SandboxError(f"Path resolves outside workdir: {relative}")
    return real_candidate


def safe_environment(real_workdir: Path, environ: Mapping[str, str]) -> dict[str, str]:
    """Build the minimal environment package managers run with.

    PATH keeps only absolute directories that do not resolve into the
    working copy; install scripts are disabled for every known manager.
    """
    env = {key: environ[key] for key in ENV_WHITELIST if environ.get(key)}
    if "PATH" in env:
        safe_entries: list[str] = []
        for entry in env["PATH"].split(os.pathsep):
            if not entry or not os.path.isabs(entry):
                continue
            resolved = Path(os.path.realpath(entry))
            if resolved == real_workdir or resolved.is_relative_to(real_workdir):
                continue
            safe_entries.append(entry)
        env["PATH"] = os.pathsep.join(safe_entries) if safe_entries else FALLBACK_PATH
    env.update(INSTALL_SCRIPT_GUARDS)
    return env


def run_sandboxed(
    argv: Sequence[str],
    cwd: Path,
    env: dict[str, str],
    *,
    timeout: float = REGENERATE_TIMEOUT_SECONDS,
    kill_grace: float = KILL_GRACE_SECONDS,
) -> None:
    executable = argv[0]
    if "/" in executable or "\\" in executable:
        raise SandboxError(f"Refusing executable with a path component: {executable}")
    if tuple(argv) not in LOCK_FILE_COMMANDS.values():
        raise SandboxError(f"Command is not a known lock-file regenerator: {' '.join(argv)}")
    proc = subprocess.Popen(
        list(argv),
        cwd=str(cwd),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        _stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.terminate()
        try:
            proc.communicate(timeout=kill_grace)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
        raise SandboxError(f"Timeout exceeded ({int(timeout)}s): {' '.join(argv)}")
    if proc.returncode != 0:
        raise SandboxError(f"{' '.join(argv)} exited with code {proc.returncode}: {stderr.strip()}")


def regenerate_lock_files(
    workdir: Path,
    base_dir: Path,
    lock_files: Sequence[str],
    *,
    environ: Mapping[str, str] | None = None,
    command_runner: CommandRunner | None = None,
) -> list[str]:
    """Delete conflicted lock files and rerun their package manager.

    Returns the lock files whose regeneration command completed. Failures are
    logged and skipped; a remaining conflict is reported by the caller.
    """
    runner = command_runner or run_sandboxed
    try:
        real_workdir = validate_workdir(workdir, base_dir)
    except SandboxError as exc:
        log_event(LOGGER, "lock_file_workdir_rejected", error=str(exc))
        return []
    env = safe_environment(real_workdir, os.environ if environ is None else environ)

    files_by_command: dict[tuple[str, ...], list[str]] = {}
    for lock_file in lock_files:
        command = lock_file_command(lock_file)
        if command is None:
            continue
        try:
            target = resolve_inside(real_workdir, lock_file)
        except SandboxError as exc:
            log_event(LOGGER, "lock_file_skipped", path=lock_file, error=str(exc))
            continue
        if target.exists():
            target.unlink()
        log_event(LOGGER, "lock_file_deleted", path=lock_file)
        files_by_command.setdefault(command, []).append(lock_file)

    regenerated: list[str] = []
    for command, files in files_by_command.items():
        try:
            runner(command, real_workdir, env)
        except (SandboxError, OSError) as exc:
            log_event(
                LOGGER,
                "lock_file_regenerate_failed",
                command=" ".join(command),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            continue
        log_event(LOGGER, "lock_file_regenerated", command=" ".join(command), count=len(files))
        regenerated.extend(files)
    return regenerated


class ConflictResolver:
    """Resolve merge conflicts in three stages.

    Lock files are regenerated, the editing agent gets a conflict prompt, and
    whatever still carries conflict markers goes to the oracle one file at a
    time.
    """

    def __init__(
        self,
        *,
        repo: GitRepoManager,
        oracle: Oracle,
        base_dir: Path,
        environ: Mapping[str, str] | None = None,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self._repo = repo
        self._oracle = oracle
        self._base_dir = base_dir
        self._environ = environ
        self._command_runner = command_runner

    def remaining_conflicts(self, paths: Sequence[str]) -> list[str]:
        remaining = list(self._repo.conflicted_files())
        for path in self._repo.files_with_conflict_markers(paths):
            if path not in remaining:
                remaining.append(path)
        return remaining

    def resolve(
        self,
        conflicted: Sequence[str],
        *,
        merging_branch: str,
        runner: AgentRunner | None,
        model: str | None = None,
    ) -> ConflictResolution:
        lock_files = [path for path in conflicted if is_lock_file(path)]
        code_files = [path for path in conflicted if not is_lock_file(path)]
        log_event(
            LOGGER,
            "conflicts_detected",
            count=len(conflicted),
            lock_files=len(lock_files),
            merging_branch=merging_branch,
        )

        regenerated: list[str] = []
        if lock_files:
            regenerated = regenerate_lock_files(
                self._repo.checkout_path,
                self._base_dir,
                lock_files,
                environ=self._environ,
                command_runner=self._command_runner,
            )
            self._repo.stage(
                [path for path in regenerated if (self._repo.checkout_path / path).exists()]
            )

        if code_files and runner is not None:
            prompt = build_conflict_prompt(paths=code_files, base_branch=merging_branch)
            result = runner.run(self._repo.checkout_path, prompt, model=model)
            log_event(
                LOGGER,
                "conflicts_agent_attempted",
                runner=runner.name,
                success=result.success,
            )
            if result.success:
                clean = [
                    path
                    for path in code_files
                    if path not in self._repo.files_with_conflict_markers([path])
                ]
                self._repo.stage(clean)

        remaining = self.remaining_conflicts(code_files)
        for path in list(remaining):
            if is_lock_file(path):
                continue
            content = self._repo.read_file(path)
            if content is None or CONFLICT_MARKER not in content:
                continue
            resolved = self._oracle.resolve_conflict(path, content, base_branch=merging_branch)
            if resolved is None:
                log_event(LOGGER, "conflict_oracle_failed", path=path)
                continue
            self._repo.write_file(path, resolved)
            self._repo.stage([path])
            log_event(LOGGER, "conflict_oracle_resolved", path=path)

        remaining = self.remaining_conflicts(code_files)
        resolution = ConflictResolution(
            resolved=not remaining,
            remaining=tuple(remaining),
            regenerated=tuple(regenerated),
        )
        if remaining:
            log_event(LOGGER, "conflicts_unresolved", count=len(remaining))
        return resolution
