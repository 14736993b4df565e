"""Chat watcher: relays payments and linking codes to the ledger and drains
the outbound command queue into the game.

Run with: python -m paytracker.services.chat_watcher
"""
from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from ..bank.command_queue import CommandQueue
from ..shared.errors import LedgerError
from ..shared.file_lock import PidLock
from ..shared.logging_setup import setup_logging
from ..shared.settings import base_dir_from_env, load_cfg, resolve_path
from ..watcher.classifier import ChatClassifier, ChatEvent, LinkEvent, PaymentEvent
from ..watcher.drainer import CommandDrainer
from ..watcher.ledger_client import LedgerClient
from ..watcher.transport import build_transport


class ChatWatcher:
    def __init__(
        self,
        classifier: ChatClassifier,
        client: LedgerClient,
        transport,
        drainer: CommandDrainer,
        reconnect_base_s: float = 2.0,
        reconnect_max_s: float = 60.0,
        reconnect_max_attempts: int = 20,
        drain_interval_s: float = 2.0,
        heartbeat_s: float = 10.0,
        keepalive_s: float = 1800.0,
        log: Optional[logging.Logger] = None,
    ):
        self.classifier = classifier
        self.client = client
        self.transport = transport
        self.drainer = drainer
        self.reconnect_base_s = float(reconnect_base_s)
        self.reconnect_max_s = float(reconnect_max_s)
        self.reconnect_max_attempts = max(1, int(reconnect_max_attempts))
        self.drain_interval_s = float(drain_interval_s)
        self.heartbeat_s = float(heartbeat_s)
        self.keepalive_s = float(keepalive_s)
        self.log = log or logging.getLogger("watcher")
        self.stats = {"lines": 0, "payments": 0, "links": 0, "duplicates": 0, "errors": 0}

    async def handle_line(self, line: str) -> Optional[ChatEvent]:
        self.stats["lines"] += 1
        self.log.debug("[CHAT] %s", line)
        ev = self.classifier.classify(line)
        if ev is None:
            return None

        if isinstance(ev, PaymentEvent):
            if self.classifier.is_duplicate(ev):
                self.stats["duplicates"] += 1
                self.log.warning("Duplicate payment line dropped: %s", ev.raw)
                return None
            self.log.info("Payment detected: %s paid %s", ev.payer, ev.amount)
            res = await asyncio.to_thread(self.client.report_payment, ev.payer, ev.amount)
            if res.ok:
                self.stats["payments"] += 1
                self.log.info("Payment reported for %s, balance now %s", ev.payer, res.value.get("user_balance"))
            else:
                self.stats["errors"] += 1
                self.log.error("Payment report failed for %s %s: %s", ev.payer, ev.amount, res.error.message)
            return ev

        if isinstance(ev, LinkEvent):
            self.log.info("Linking code from %s", ev.payer)
            res = await asyncio.to_thread(self.client.link_account, ev.payer, ev.code)
            if res.ok:
                self.stats["links"] += 1
                self.log.info("Linked %s", ev.payer)
            else:
                self.stats["errors"] += 1
                self.log.warning("Link failed for %s: %s", ev.payer, res.error.message)
        return ev

    async def read_forever(self) -> int:
        """Read chat until too many consecutive connection failures. Returns an exit code."""
        failures = 0
        backoff = self.reconnect_base_s
        while True:
            before = getattr(self.transport, "sessions", 0)
            try:
                async for line in self.transport.lines():
                    try:
                        await self.handle_line(line)
                    except LedgerError as e:
                        self.log.error("Line handling error: %s", e.message)
                self.log.warning("Transport closed")
            except Exception as e:  # handshake, DNS and close errors all end up here
                self.log.warning("Disconnected/error: %s: %s", type(e).__name__, e)

            if getattr(self.transport, "sessions", 0) != before:
                # we did connect; start counting from scratch
                failures = 0
                backoff = self.reconnect_base_s
            else:
                failures += 1
            if failures >= self.reconnect_max_attempts:
                self.log.error("Giving up after %s consecutive connection failures", failures)
                return 1
            self.log.info("Reconnecting in %.0fs (attempt %s/%s)", backoff, failures, self.reconnect_max_attempts)
            await asyncio.sleep(backoff)
            backoff = min(self.reconnect_max_s, backoff * 2)

    async def heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_s)
            self.log.info("[HEARTBEAT] still listening %s", self.stats)

    async def keepalive_once(self) -> bool:
        """Poke the game session so the account is not kicked for idling."""
        if not self.transport.connected:
            return False
        try:
            await self.transport.send_keepalive()
        except LedgerError as e:
            self.log.warning("Keep-alive failed: %s", e.message)
            return False
        return True

    async def keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_s)
            await self.keepalive_once()

    async def run(self) -> int:
        tasks = [
            asyncio.create_task(self.drainer.run_forever(self.drain_interval_s)),
            asyncio.create_task(self.heartbeat()),
        ]
        if self.keepalive_s > 0:
            tasks.append(asyncio.create_task(self.keepalive()))
        try:
            return await self.read_forever()
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


def build_watcher(cfg: dict, base_dir, log: logging.Logger) -> ChatWatcher:
    wcfg = cfg.get("watcher") or {}
    state = cfg.get("state") or {}
    qcfg = cfg.get("queue") or {}

    queue = CommandQueue(
        resolve_path(base_dir, state.get("commands_file")),
        deadletter_path=resolve_path(base_dir, state.get("deadletter_file")),
        max_attempts=int(qcfg.get("max_attempts", 5)),
        backoff_base_s=float(qcfg.get("backoff_base_seconds", 2)),
        backoff_max_s=float(qcfg.get("backoff_max_seconds", 300)),
        lock_timeout_s=float(qcfg.get("lock_timeout_seconds", 5)),
        log=log.getChild("queue"),
    )
    transport = build_transport(wcfg, base_dir, log=log.getChild("transport"))
    drainer = CommandDrainer(
        queue,
        transport.send_command,
        str(wcfg.get("executed_by") or ""),
        is_connected=lambda: transport.connected,
        log=log.getChild("drainer"),
    )
    client = LedgerClient(
        str(wcfg.get("ledger_url") or ""),
        str((cfg.get("auth") or {}).get("ingest_token") or ""),
        timeout_s=float(wcfg.get("request_timeout_seconds", 5)),
    )
    return ChatWatcher(
        ChatClassifier.from_cfg(wcfg),
        client,
        transport,
        drainer,
        reconnect_base_s=float(wcfg.get("reconnect_base_seconds", 2)),
        reconnect_max_s=float(wcfg.get("reconnect_max_seconds", 60)),
        reconnect_max_attempts=int(wcfg.get("reconnect_max_attempts", 20)),
        drain_interval_s=float(wcfg.get("poll_ms", 2000)) / 1000.0,
        heartbeat_s=float(wcfg.get("heartbeat_seconds", 10)),
        keepalive_s=float(wcfg.get("keepalive_minutes", 30)) * 60.0,
        log=log,
    )


def main() -> None:
    base_dir = base_dir_from_env()
    cfg = load_cfg()
    log = setup_logging("watcher", cfg, base_dir)

    # one drainer at a time, or commands get sent twice
    state_dir = resolve_path(base_dir, (cfg.get("state") or {}).get("dir") or "state")
    instance = PidLock(state_dir / "watcher.lock")
    if not instance.acquire(blocking=False):
        log.error("watcher.lock held by pid=%s. Another watcher is running. Exiting.", instance.holder_pid())
        sys.exit(1)

    rc = 0
    try:
        watcher = build_watcher(cfg, base_dir, log)
        log.info("Watching chat via %s; ledger at %s", (cfg.get("watcher") or {}).get("transport"), watcher.client.base_url)
        rc = asyncio.run(watcher.run())
    except KeyboardInterrupt:
        log.info("Stopping...")
    finally:
        instance.release()
    sys.exit(rc)


if __name__ == "__main__":
    main()
