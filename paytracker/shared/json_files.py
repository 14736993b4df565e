import json
import os
from pathlib import Path
from typing import Any, Dict, List, Tuple


def ensure_file(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    if not p.exists():
        p.write_text("", encoding="utf-8")


def load_json(p: Path, default: Any) -> Any:
    """Read a JSON document, returning `default` when it is missing or empty.

    Malformed documents raise ValueError so callers never mistake a corrupt
    ledger for an empty one.
    """
    if not p.exists():
        return default
    txt = p.read_text(encoding="utf-8")
    if not txt.strip():
        return default
    return json.loads(txt)


def atomic_write_json(p: Path, obj: Any) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(p)


def append_jsonl(p: Path, obj: Dict[str, Any]) -> None:
    ensure_file(p)
    with p.open("a", encoding="utf-8", newline="\n") as f:
        f.write(json.dumps(obj, ensure_ascii=False) + "\n")


def read_new_jsonl(p: Path, offset_bytes: int) -> Tuple[List[Dict[str, Any]], int]:
    """
    Read JSONL records since byte offset. Returns (records, new_offset).
    Safe for append-only logs.
    """
    ensure_file(p)
    items: List[Dict[str, Any]] = []
    with p.open("rb") as f:
        f.seek(offset_bytes, os.SEEK_SET)
        while True:
            line = f.readline()
            if not line:
                break
            # partial line still being written by the producer
            if not line.endswith(b"\n"):
                break
            offset_bytes += len(line)
            s = line.decode("utf-8", errors="replace").strip()
            if not s:
                continue
            try:
                rec = json.loads(s)
            except ValueError:
                # ignore malformed lines
                continue
            if isinstance(rec, dict):
                items.append(rec)
    return items, offset_bytes
