from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import errno
import json
import os
from pathlib import Path
import secrets
from typing import Iterator

from reviewloop.models import PullRequestRef
from reviewloop.session import utc_now_iso8601


class ProcessLockError(RuntimeError):
    """Raised when another process already owns the pull request's session."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    pr: str | None
    command: str | None
    started_at: str | None
    token: str | None


_NO_OWNER = LockOwner(pid=None, pr=None, command=None, started_at=None, token=None)


def lock_path_for(workdir: Path) -> Path:
    """The lock sits beside the working copy so it never shows up in ``git status``."""
    return workdir.with_name(f"{workdir.name}.lock")


@contextmanager
def session_lock(*, lock_path: Path, pr: PullRequestRef, command: str) -> Iterator[None]:
    lock = _SessionLock(lock_path=lock_path, pr=str(pr), command=command)
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


class _SessionLock:
    def __init__(self, *, lock_path: Path, pr: str, command: str) -> None:
        self._lock_path = lock_path
        self._pr = pr
        self._command = command
        self._inode: int | None = None
        self._token: str | None = None

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_if_owner_dead():
                    continue
                raise ProcessLockError(self._busy_message()) from None
            token = secrets.token_hex(16)
            try:
                self._inode = os.fstat(fd).st_ino
                payload = {
                    "pid": os.getpid(),
                    "pr": self._pr,
                    "command": self._command,
                    "started_at": utc_now_iso8601(),
                    "token": token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                os.close(fd)
                self._lock_path.unlink(missing_ok=True)
                self._inode = None
                raise
            os.close(fd)
            self._token = token
            return
        raise ProcessLockError(self._busy_message())

    def release(self) -> None:
        inode, token = self._inode, self._token
        self._inode = None
        self._token = None
        if inode is None or token is None:
            return
        try:
            current = self._lock_path.stat()
        except FileNotFoundError:
            return
        if current.st_ino != inode or read_lock_owner(self._lock_path).token != token:
            return
        self._lock_path.unlink(missing_ok=True)

    def _clear_if_owner_dead(self) -> bool:
        owner = read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        try:
            self._lock_path.unlink(missing_ok=True)
        except OSError:
            return False
        return True

    def _busy_message(self) -> str:
        owner = read_lock_owner(self._lock_path)
        details = [
            f"{label}={value}"
            for label, value in (("pid", owner.pid), ("command", owner.command))
            if value is not None
        ]
        owner_detail = f" ({', '.join(details)})" if details else ""
        return (
            f"Another reviewloop process is already working on {self._pr}{owner_detail}. "
            f"Lock file: {self._lock_path}. If that process is gone, remove the lock file "
            "and retry."
        )


def read_lock_owner(lock_path: Path) -> LockOwner:
    try:
        payload_text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return _NO_OWNER
    if not payload_text:
        return _NO_OWNER
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return _NO_OWNER
    if not isinstance(payload, dict):
        return _NO_OWNER

    def _str_field(key: str) -> str | None:
        value = payload.get(key)
        return value if isinstance(value, str) else None

    raw_pid = payload.get("pid")
    return LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) and not isinstance(raw_pid, bool) else None,
        pr=_str_field("pr"),
        command=_str_field("command"),
        started_at=_str_field("started_at"),
        token=_str_field("token"),
    )


def pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True
