import logging
import os
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _resolve_log_dir(base_dir: Path, cfg: Dict[str, Any]) -> Path:
    log_cfg = (cfg or {}).get("logging") or {}
    d = str(log_cfg.get("dir") or "logs").strip() or "logs"

    p = Path(os.path.expanduser(d))
    if not p.is_absolute():
        p = (base_dir / p).resolve()
    return p


def _level_from_cfg(cfg: Dict[str, Any]) -> int:
    log_cfg = (cfg or {}).get("logging") or {}
    lvl = str(log_cfg.get("level") or "INFO").strip().upper()
    return _LEVEL_MAP.get(lvl, logging.INFO)


def setup_logging(service_name: str, cfg: Dict[str, Any], base_dir: Optional[Path] = None) -> logging.Logger:
    """Configure logging for one paytracker process.

    - Console output
    - Per-service rotating log: <service>.<YYYY-MM-DD>.log
    - Shared rotating log: latest.log (both processes write here)

    Directory, level and rotation come from the config's logging block:

      "logging": { "dir": "logs", "level": "DEBUG", "max_bytes": 5242880, "backup_count": 5 }

    Children such as `ledger.store` or `watcher.drainer` propagate into the
    service logger, so components only need `logging.getLogger(...)`.
    """

    if base_dir is None:
        base_dir = Path.cwd()

    logs_dir = _resolve_log_dir(base_dir, cfg)
    logs_dir.mkdir(parents=True, exist_ok=True)

    level = _level_from_cfg(cfg)
    log_cfg = (cfg or {}).get("logging") or {}
    max_bytes = int(log_cfg.get("max_bytes") or 5 * 1024 * 1024)
    backup_count = int(log_cfg.get("backup_count") or 5)

    date_str = time.strftime("%Y-%m-%d")
    service_file = logs_dir / f"{service_name}.{date_str}.log"
    latest_file = logs_dir / "latest.log"

    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    logger.propagate = False

    # Idempotent: clear old handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    sh = logging.StreamHandler(stream=sys.stdout)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    for path in (service_file, latest_file):
        fh = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    _install_global_exception_hooks(logger)

    logger.debug(
        "Logging initialized: level=%s logs_dir=%s service_file=%s",
        logging.getLevelName(level),
        str(logs_dir),
        str(service_file),
    )

    return logger


def _install_global_exception_hooks(logger: logging.Logger) -> None:
    def _excepthook(exctype, value, tb):
        logger.critical("Unhandled exception", exc_info=(exctype, value, tb))
        sys.__excepthook__(exctype, value, tb)

    sys.excepthook = _excepthook

    def _thread_excepthook(args):
        thread = getattr(args, "thread", None)
        logger.critical(
            "Unhandled thread exception in %s",
            thread.name if thread else "(unknown)",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    threading.excepthook = _thread_excepthook
