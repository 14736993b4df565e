from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from ..bank.command_queue import CommandQueue
from ..shared.errors import LedgerError

Sender = Callable[[str], Awaitable[None]]


class CommandDrainer:
    """
    Delivers pending queue entries through the game transport.

    One pass sends everything that is due, then settles all outcomes in a
    single locked read-modify-write, so entries enqueued meanwhile survive.
    While the transport is down nothing is sent and no attempt is counted;
    an outage is not a delivery failure.
    """

    def __init__(self, queue: CommandQueue, send: Sender, executed_by: str = "",
                 is_connected: Optional[Callable[[], bool]] = None,
                 log: Optional[logging.Logger] = None):
        self.queue = queue
        self.send = send
        self.executed_by = executed_by
        self.is_connected = is_connected or (lambda: True)
        self.log = log or logging.getLogger("watcher.drainer")

    async def run_pass(self) -> List[str]:
        if not self.is_connected():
            return []
        due = await asyncio.to_thread(self.queue.drain_pending)
        if not due:
            return []
        done: Dict[str, str] = {}
        failed: Dict[str, str] = {}
        for cmd in due:
            self.log.info("Executing queued command: %s", cmd.command)
            try:
                await self.send(cmd.command)
            except (LedgerError, OSError) as e:
                reason = e.message if isinstance(e, LedgerError) else f"{type(e).__name__}: {e}"
                if not self.is_connected():
                    # lost the relay mid-pass; the rest waits for the reconnect
                    self.log.warning("Transport dropped while sending %s: %s", cmd.id, reason)
                    break
                self.log.warning("Command %s failed: %s", cmd.id, reason)
                failed[cmd.id] = reason
                continue
            done[cmd.id] = self.executed_by
        return await asyncio.to_thread(self.queue.complete_pass, done, failed)

    async def run_forever(self, interval_s: float) -> None:
        while True:
            try:
                await self.run_pass()
            except (LedgerError, OSError, ValueError):
                self.log.exception("Drain loop error")
            await asyncio.sleep(interval_s)
