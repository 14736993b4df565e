from __future__ import annotations

import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

PREFIX = "users-backup-"


def ts_stamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S_%f")


def list_backups(backup_dir: Path) -> List[Path]:
    if not backup_dir.exists():
        return []
    return sorted(p for p in backup_dir.glob(f"{PREFIX}*.json") if p.is_file())


def backup_accounts(src: Path, backup_dir: Path, keep: int = 20) -> Optional[Path]:
    """Copy the accounts document into backup_dir and prune the oldest beyond `keep`.

    Returns the new backup path, or None when there is nothing to copy yet.
    """
    if not src.exists():
        return None
    backup_dir.mkdir(parents=True, exist_ok=True)
    dst = backup_dir / f"{PREFIX}{ts_stamp()}.json"
    shutil.copy2(src, dst)

    files = list_backups(backup_dir)
    while len(files) > max(1, keep):
        files.pop(0).unlink(missing_ok=True)
    return dst
