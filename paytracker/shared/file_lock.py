from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Optional

import psutil

from .errors import PersistenceError


class LockTimeout(PersistenceError):
    kind = "lock_timeout"


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


class PidLock:
    """
    Lock file that survives crashes: created with O_EXCL and holding the
    owner's pid. A lock whose pid is no longer running is stale and cleared.

    Used two ways:
      - short critical sections around read-modify-write of a shared file
        (`with PidLock(path, timeout_s=5): ...`)
      - a single-instance guard held for a whole process lifetime
        (`acquire(blocking=False)`)
    """

    def __init__(self, path: Path, timeout_s: float = 5.0, poll_s: float = 0.02):
        self.path = Path(path)
        self.timeout_s = timeout_s
        self.poll_s = poll_s
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def holder_pid(self) -> int:
        try:
            info = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            return 0
        return int(info.get("pid", 0) or 0)

    def _clear_if_stale(self) -> None:
        pid = self.holder_pid()
        if pid and pid_alive(pid):
            return
        if not pid:
            # lock being written right now, give the writer a moment
            try:
                age = time.time() - self.path.stat().st_mtime
            except OSError:
                return
            if age < 1.0:
                return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_RDWR)
        except FileExistsError:
            return False
        os.write(fd, json.dumps({"pid": os.getpid(), "started_ts": int(time.time())}).encode("utf-8"))
        self._fd = fd
        return True

    def acquire(self, blocking: bool = True) -> bool:
        if self.held:
            raise RuntimeError(f"{self.path} already held by this PidLock")
        deadline = time.monotonic() + max(0.0, self.timeout_s)
        while True:
            if self._try_create():
                return True
            self._clear_if_stale()
            if self._try_create():
                return True
            if not blocking:
                return False
            if time.monotonic() >= deadline:
                raise LockTimeout(f"Timed out waiting for {self.path} (held by pid={self.holder_pid()})")
            time.sleep(self.poll_s)

    def release(self) -> None:
        if self._fd is None:
            return
        os.close(self._fd)
        self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "PidLock":
        self.acquire(blocking=True)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
