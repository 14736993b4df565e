from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import AsyncIterator, Optional

import websockets

from ..shared.errors import IntegrationError
from ..shared.json_files import append_jsonl, atomic_write_json, load_json, read_new_jsonl
from ..shared.settings import resolve_path


def chat_text(frame) -> Optional[str]:
    """Relay frames are plain text lines or {"type": "chat", "text": ...}."""
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8", errors="replace")
    s = str(frame or "").strip()
    if not s:
        return None
    if s.startswith("{"):
        try:
            data = json.loads(s)
        except ValueError:
            return s
        if not isinstance(data, dict):
            return None
        if data.get("type", "chat") != "chat":
            return None
        text = data.get("text", data.get("message"))
        return text.strip() if isinstance(text, str) and text.strip() else None
    return s


class WebSocketTransport:
    """Chat lines in and commands out over one relay websocket connection."""

    def __init__(self, url: str, log: Optional[logging.Logger] = None):
        if not url:
            raise ValueError("watcher.relay_url is empty (set GAME_RELAY_URL)")
        self.url = url
        self.log = log or logging.getLogger("watcher.transport")
        self._ws = None
        self.sessions = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def lines(self) -> AsyncIterator[str]:
        """Yields chat lines until the connection drops; connection errors propagate."""
        async with websockets.connect(self.url, ping_interval=20, ping_timeout=20, close_timeout=5) as ws:
            self._ws = ws
            self.sessions += 1
            self.log.info("Connected to relay %s", self.url)
            try:
                async for frame in ws:
                    text = chat_text(frame)
                    if text:
                        yield text
            finally:
                self._ws = None

    async def _send(self, frame: dict) -> None:
        ws = self._ws
        if ws is None:
            raise IntegrationError("relay not connected")
        try:
            await ws.send(json.dumps(frame))
        except websockets.ConnectionClosed as e:
            raise IntegrationError(f"relay closed: {e}") from e

    async def send_command(self, command: str) -> None:
        await self._send({"type": "command", "command": command})

    async def send_keepalive(self) -> None:
        await self._send({"type": "keepalive"})


class JsonlTransport:
    """
    File-based transport: chat arrives as JSONL records ({"text": ...}) in
    chat_file, commands are appended to outbox_file. The read offset is kept
    next to the chat file so a restart does not replay old lines.
    """

    def __init__(self, chat_file: Path, outbox_file: Path, poll_s: float = 0.5, log: Optional[logging.Logger] = None):
        self.chat_file = Path(chat_file)
        self.outbox_file = Path(outbox_file)
        self.offset_file = self.chat_file.with_suffix(".offset.json")
        self.poll_s = float(poll_s)
        self.log = log or logging.getLogger("watcher.transport")
        self.offset = int((load_json(self.offset_file, {}) or {}).get("offset", 0) or 0)
        self.sessions = 0

    @property
    def connected(self) -> bool:
        return True

    def _save_offset(self) -> None:
        atomic_write_json(self.offset_file, {"offset": self.offset})

    def read_batch(self) -> list:
        try:
            size = self.chat_file.stat().st_size
        except FileNotFoundError:
            size = 0
        if size < self.offset:
            self.log.warning("Chat file shrank (%s < %s); rewinding", size, self.offset)
            self.offset = 0
        records, new_offset = read_new_jsonl(self.chat_file, self.offset)
        if new_offset != self.offset:
            self.offset = new_offset
            self._save_offset()
        out = []
        for rec in records:
            text = rec.get("text", rec.get("message"))
            if isinstance(text, str) and text.strip():
                out.append(text.strip())
        return out

    async def lines(self) -> AsyncIterator[str]:
        self.sessions += 1
        while True:
            for text in self.read_batch():
                yield text
            await asyncio.sleep(self.poll_s)

    async def send_command(self, command: str) -> None:
        try:
            append_jsonl(self.outbox_file, {"type": "command", "command": command})
        except OSError as e:
            raise IntegrationError(f"outbox write failed: {e}") from e

    async def send_keepalive(self) -> None:
        # nothing to keep open on a file
        return None


def build_transport(wcfg: dict, base_dir: Path, log: Optional[logging.Logger] = None):
    kind = str(wcfg.get("transport") or "websocket").lower()
    if kind == "websocket":
        return WebSocketTransport(str(wcfg.get("relay_url") or ""), log=log)
    if kind == "jsonl":
        return JsonlTransport(
            resolve_path(base_dir, wcfg.get("chat_file")),
            resolve_path(base_dir, wcfg.get("outbox_file")),
            poll_s=max(0.05, float(wcfg.get("poll_ms", 2000)) / 1000.0 / 4),
            log=log,
        )
    raise ValueError(f"unknown watcher.transport: {kind!r}")
