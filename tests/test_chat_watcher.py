import asyncio
import logging
from typing import List, Tuple

from paytracker.bank.command_queue import CommandQueue
from paytracker.services.chat_watcher import ChatWatcher, build_watcher
from paytracker.shared.errors import IntegrationError, Result
from paytracker.shared.settings import DEFAULTS, load_cfg
from paytracker.watcher.classifier import ChatClassifier, LinkEvent, PaymentEvent
from paytracker.watcher.drainer import CommandDrainer


class FakeClient:
    base_url = "http://ledger.test/api"

    def __init__(self, fail: bool = False) -> None:
        self.calls: List[Tuple] = []
        self.fail = fail

    def report_payment(self, payer: str, amount: int) -> Result:
        self.calls.append(("payment", payer, amount))
        if self.fail:
            return Result.failure(IntegrationError("HTTP 401: Unauthorized"))
        return Result.success({"user_balance": amount})

    def link_account(self, username: str, code: str) -> Result:
        self.calls.append(("link", username, code))
        return Result.success({"success": True})


class FlakyTransport:
    """Fails to connect every time."""

    def __init__(self) -> None:
        self.sessions = 0
        self.attempts = 0

    async def lines(self):
        self.attempts += 1
        raise OSError("connection refused")
        yield  # pragma: no cover

    async def send_command(self, command: str) -> None:
        raise IntegrationError("relay not connected")


class ScriptedTransport(FlakyTransport):
    """Connects once, replays chat, then drops."""

    def __init__(self, lines: List[str]) -> None:
        super().__init__()
        self._lines = lines

    async def lines(self):
        self.attempts += 1
        if self.attempts > 1:
            raise OSError("connection refused")
        self.sessions += 1
        for line in self._lines:
            yield line


def _watcher(client, transport, queue: CommandQueue, max_attempts: int = 3, kind: str = "jsonl") -> ChatWatcher:
    return ChatWatcher(
        ChatClassifier.from_cfg({**DEFAULTS["watcher"], "transport": kind}),
        client,
        transport,
        CommandDrainer(queue, transport.send_command),
        reconnect_base_s=0.001,
        reconnect_max_s=0.002,
        reconnect_max_attempts=max_attempts,
        drain_interval_s=0.01,
        heartbeat_s=60,
        log=logging.getLogger("test.watcher"),
    )


class TestHandleLine:
    def test_payment_is_reported(self, queue: CommandQueue) -> None:
        client = FakeClient()
        w = _watcher(client, FlakyTransport(), queue)
        ev = asyncio.run(w.handle_line("Steve paid you $2.5K"))
        assert isinstance(ev, PaymentEvent)
        assert client.calls == [("payment", "Steve", 2500)]
        assert w.stats["payments"] == 1

    def test_redelivered_line_is_dropped(self, queue: CommandQueue) -> None:
        client = FakeClient()
        w = _watcher(client, FlakyTransport(), queue)

        async def twice():
            await w.handle_line("Steve paid you $100")
            await w.handle_line("Steve paid you $100")

        asyncio.run(twice())
        assert client.calls == [("payment", "Steve", 100)]
        assert w.stats["duplicates"] == 1

    def test_relay_credits_repeat_payments(self, queue: CommandQueue) -> None:
        client = FakeClient()
        w = _watcher(client, FlakyTransport(), queue, kind="websocket")

        async def twice():
            await w.handle_line("Steve paid you $100")
            await w.handle_line("Steve paid you $100")

        asyncio.run(twice())
        assert client.calls == [("payment", "Steve", 100), ("payment", "Steve", 100)]
        assert w.stats["duplicates"] == 0

    def test_link_code_is_forwarded(self, queue: CommandQueue) -> None:
        client = FakeClient()
        w = _watcher(client, FlakyTransport(), queue)
        ev = asyncio.run(w.handle_line("Alex -> YOU: QWE123"))
        assert isinstance(ev, LinkEvent)
        assert client.calls == [("link", "Alex", "QWE123")]

    def test_failed_report_is_counted(self, queue: CommandQueue) -> None:
        w = _watcher(FakeClient(fail=True), FlakyTransport(), queue)
        asyncio.run(w.handle_line("Steve paid you $100"))
        assert w.stats["errors"] == 1
        assert w.stats["payments"] == 0

    def test_plain_chat_is_ignored(self, queue: CommandQueue) -> None:
        client = FakeClient()
        w = _watcher(client, FlakyTransport(), queue)
        assert asyncio.run(w.handle_line("<Steve> gg")) is None
        assert client.calls == []


class TestReconnect:
    def test_gives_up_after_max_consecutive_failures(self, queue: CommandQueue) -> None:
        transport = FlakyTransport()
        w = _watcher(FakeClient(), transport, queue, max_attempts=3)
        assert asyncio.run(w.run()) == 1
        assert transport.attempts == 3

    def test_successful_session_resets_the_count(self, queue: CommandQueue) -> None:
        transport = ScriptedTransport(["Steve paid you $5"])
        client = FakeClient()
        w = _watcher(client, transport, queue, max_attempts=2)
        assert asyncio.run(w.read_forever()) == 1
        # one good session, then two failed reconnects
        assert transport.attempts == 3
        assert client.calls == [("payment", "Steve", 5)]


class LiveTransport(FlakyTransport):
    def __init__(self, up: bool = True) -> None:
        super().__init__()
        self.up = up
        self.pokes = 0

    @property
    def connected(self) -> bool:
        return self.up

    async def send_keepalive(self) -> None:
        if not self.up:
            raise IntegrationError("relay not connected")
        self.pokes += 1


class TestKeepAlive:
    def test_poke_sent_while_connected(self, queue: CommandQueue) -> None:
        transport = LiveTransport()
        w = _watcher(FakeClient(), transport, queue)
        assert asyncio.run(w.keepalive_once()) is True
        assert transport.pokes == 1

    def test_skipped_while_disconnected(self, queue: CommandQueue) -> None:
        transport = LiveTransport(up=False)
        w = _watcher(FakeClient(), transport, queue)
        assert asyncio.run(w.keepalive_once()) is False
        assert transport.pokes == 0


def test_build_watcher_wires_relay_state(tmp_path) -> None:
    cfg = load_cfg(tmp_path / "missing.json", overrides={"watcher": {"relay_url": "ws://127.0.0.1:1/relay"}})
    w = build_watcher(cfg, tmp_path, logging.getLogger("test.watcher"))
    # not connected yet, so the drainer holds the queue
    assert w.drainer.is_connected() is False
    assert w.classifier.dedup_window_s == 0
    assert w.keepalive_s == 1800
