from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..shared.errors import PersistenceError, Result
from ..shared.file_lock import PidLock
from ..shared.json_files import append_jsonl, atomic_write_json, load_json
from .models import QueuedCommand, new_id, now_ts

TERMINAL = ("done", "failed")


class CommandQueue:
    """
    Append-only FIFO of outbound game commands, shared by two processes:
      - the ledger service enqueues (payouts, withdrawals)
      - the chat watcher drains, marking entries done or retrying them

    Every read-modify-write re-reads the file inside a PidLock, so an enqueue
    racing a drain pass can no longer be lost. Entries are never deleted.
    """

    def __init__(
        self,
        path: Path,
        deadletter_path: Optional[Path] = None,
        max_attempts: int = 5,
        backoff_base_s: float = 2.0,
        backoff_max_s: float = 300.0,
        lock_timeout_s: float = 5.0,
        log: Optional[logging.Logger] = None,
    ):
        self.path = Path(path)
        self.lock = PidLock(self.path.with_suffix(".lock"), timeout_s=lock_timeout_s)
        self.deadletter_path = Path(deadletter_path) if deadletter_path else self.path.with_suffix(".deadletter.jsonl")
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_s = float(backoff_base_s)
        self.backoff_max_s = float(backoff_max_s)
        self.log = log or logging.getLogger("ledger.queue")

    # ---------- repository ----------
    def load(self) -> List[QueuedCommand]:
        raw = load_json(self.path, [])
        return [QueuedCommand.from_dict(r) for r in (raw if isinstance(raw, list) else []) if isinstance(r, dict)]

    def _persist(self, cmds: Iterable[QueuedCommand]) -> None:
        atomic_write_json(self.path, [c.to_dict() for c in cmds])

    # ---------- producer ----------
    def enqueue(self, command: str) -> Result:
        cmd = QueuedCommand(id=new_id(), command=str(command))
        try:
            with self.lock:
                cmds = self.load()
                cmds.append(cmd)
                self._persist(cmds)
        except (OSError, ValueError, PersistenceError) as e:
            self.log.exception("Failed to queue command: %s", command)
            return Result.failure(e if isinstance(e, PersistenceError) else PersistenceError(f"queue write failed: {e}"))
        self.log.info("Queued command: %s (id=%s)", cmd.command, cmd.id)
        return Result.success(cmd)

    # ---------- consumer ----------
    def drain_pending(self, now: Optional[float] = None) -> List[QueuedCommand]:
        """Pending entries due for delivery, in append order."""
        now = time.time() if now is None else now
        return [c for c in self.load() if c.status == "pending" and c.next_attempt_ts <= now]

    def backoff_seconds(self, attempts: int) -> float:
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** max(0, attempts - 1)))

    def mark_done(self, cmd_id: str, executed_by: str = "") -> bool:
        return cmd_id in self.complete_pass({cmd_id: executed_by}, {})

    def complete_pass(self, done: Dict[str, str], failed: Dict[str, str]) -> List[str]:
        """Apply one drain pass and persist once.

        `done` maps id -> executed_by, `failed` maps id -> error text.
        Only pending entries change, so a done entry never goes back to
        pending. Returns the ids flipped to done.
        """
        if not done and not failed:
            return []
        flipped: List[str] = []
        dead: List[QueuedCommand] = []
        now = now_ts()
        with self.lock:
            cmds = self.load()
            for c in cmds:
                if c.status in TERMINAL:
                    continue
                if c.id in done:
                    c.status = "done"
                    c.executed_ts = now
                    c.executed_by = done[c.id] or None
                    flipped.append(c.id)
                elif c.id in failed:
                    c.attempts += 1
                    c.last_error = str(failed[c.id])[:300]
                    if c.attempts >= self.max_attempts:
                        c.status = "failed"
                        dead.append(c)
                    else:
                        c.next_attempt_ts = now + int(self.backoff_seconds(c.attempts))
            self._persist(cmds)

        for c in dead:
            self.log.error("Command dead-lettered after %s attempts: %s (%s)", c.attempts, c.command, c.last_error)
            append_jsonl(self.deadletter_path, {"type": "dead_command", "ts": now, "record": c.to_dict()})
        return flipped
