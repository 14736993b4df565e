from __future__ import annotations

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .json_files import load_json


_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

PACKAGE_DIR = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "config.json"

# Anything missing from config.json falls back to these.
DEFAULTS: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 3000, "public_url": "http://localhost:3000"},
    "auth": {"ingest_token": "${PAYMENT_REPORT_TOKEN}", "admin_token": "${AUTH_TOKEN}"},
    "state": {
        "dir": "state",
        "accounts_file": "state/users.json",
        "payments_file": "state/payments.json",
        "commands_file": "state/commands.json",
        "links_file": "state/pending-links.json",
        "deadletter_file": "state/commands.deadletter.jsonl",
    },
    "backup": {"dir": "state/backups", "interval_seconds": 300, "keep": 20},
    "queue": {"max_attempts": 5, "backoff_base_seconds": 2, "backoff_max_seconds": 300, "lock_timeout_seconds": 5},
    "linking": {"ttl_seconds": 86400},
    "discord": {
        "client_id": "${DISCORD_CLIENT_ID}",
        "client_secret": "${DISCORD_CLIENT_SECRET}",
        "redirect_uri": "${DISCORD_REDIRECT_URI}",
        "timeout_seconds": 10,
    },
    "watcher": {
        "ledger_url": "http://localhost:3000/api",
        "transport": "websocket",
        "relay_url": "${GAME_RELAY_URL}",
        "chat_file": "state/chat.jsonl",
        "outbox_file": "state/commands.outbox.jsonl",
        "executed_by": "PaymentBot",
        "poll_ms": 2000,
        "heartbeat_seconds": 10,
        "dedup_window_seconds": None,
        "keepalive_minutes": 30,
        "request_timeout_seconds": 5,
        "reconnect_base_seconds": 2,
        "reconnect_max_seconds": 60,
        "reconnect_max_attempts": 20,
        "payment_pattern": r"(\.?[a-zA-Z0-9_]+) paid you \$([0-9,]+(?:\.\d+)?[KMBkmb]?)",
        "link_pattern": r"^(\.?[a-zA-Z0-9_]+)\s+->.*?([A-Z0-9]{6})\s*$",
    },
    "logging": {"dir": "logs", "level": "INFO"},
}


def expand_env(s: Any) -> Any:
    """Expand ${VARS} inside strings using os.environ (missing vars -> "")."""
    if isinstance(s, str):
        return _ENV_RE.sub(lambda m: os.getenv(m.group(1), ""), s)
    if isinstance(s, dict):
        return {k: expand_env(v) for k, v in s.items()}
    if isinstance(s, list):
        return [expand_env(v) for v in s]
    return s


def _merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in (over or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def base_dir_from_env() -> Path:
    return Path(os.getenv("PAYTRACKER_HOME") or Path.cwd()).expanduser().resolve()


def load_cfg(path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load config.json (or $PAYTRACKER_CONFIG) merged over DEFAULTS.

    `.env` is loaded first so ${VARS} in the document can reference it.
    """
    load_dotenv()
    if path is None:
        env_path = (os.getenv("PAYTRACKER_CONFIG") or "").strip()
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    raw = load_json(Path(path), {})
    cfg = _merge(DEFAULTS, raw if isinstance(raw, dict) else {})
    if overrides:
        cfg = _merge(cfg, overrides)
    return expand_env(cfg)


def resolve_path(base_dir: Path, p: Any) -> Path:
    path = Path(str(p or "")).expanduser()
    if path.is_absolute():
        return path
    return (base_dir / path).resolve()
