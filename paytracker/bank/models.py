from __future__ import annotations

import math
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from ..shared.errors import Result, ValidationError


def new_id() -> str:
    return str(uuid.uuid4())


def now_ts() -> int:
    return int(time.time())


def _from_known(cls, d: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in d.items() if k in names})


def parse_amount(raw: Any, field_name: str = "amount") -> Result:
    """Coerce a positive whole amount; integral floats and numeric strings are accepted."""
    if isinstance(raw, bool) or raw is None or raw == "":
        return Result.failure(ValidationError(f"Missing or invalid {field_name}"))
    try:
        val = float(raw)
    except (TypeError, ValueError):
        return Result.failure(ValidationError(f"Missing or invalid {field_name}"))
    if not math.isfinite(val) or val <= 0:
        return Result.failure(ValidationError(f"{field_name} must be a positive number"))
    if val != int(val):
        return Result.failure(ValidationError(f"{field_name} must be a whole number"))
    return Result.success(int(val))


@dataclass
class LedgerEvent:
    kind: str
    balance_after: int
    detail: Dict[str, Any] = field(default_factory=dict)
    ts: int = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Account:
    id: str
    username: str
    balance: int = 0
    total_wagered: int = 0
    total_won: int = 0
    total_lost: int = 0
    linked_identity: Optional[Dict[str, str]] = None
    history: List[Dict[str, Any]] = field(default_factory=list)
    created_ts: int = field(default_factory=now_ts)

    @property
    def key(self) -> str:
        return self.username.lower()

    def snapshot(self) -> tuple:
        return (self.balance, self.total_wagered, self.total_won, self.total_lost)

    def restore(self, snap: tuple) -> None:
        self.balance, self.total_wagered, self.total_won, self.total_lost = snap

    def to_dict(self, with_history: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if not with_history:
            d.pop("history", None)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Account":
        return _from_known(cls, d)


@dataclass
class PendingPayment:
    id: str
    sender: str
    amount: int
    ts: int = field(default_factory=now_ts)
    status: str = "pending"
    paid_amount: Optional[int] = None
    processed_ts: Optional[int] = None

    # "from" is a keyword, so the document key differs from the attribute
    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["from"] = d.pop("sender")
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingPayment":
        d = dict(d)
        if "from" in d:
            d["sender"] = d.pop("from")
        return _from_known(cls, d)


@dataclass
class QueuedCommand:
    id: str
    command: str
    status: str = "pending"
    created_ts: int = field(default_factory=now_ts)
    executed_ts: Optional[int] = None
    executed_by: Optional[str] = None
    attempts: int = 0
    next_attempt_ts: int = 0
    last_error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "QueuedCommand":
        return _from_known(cls, d)


@dataclass
class LinkingCode:
    code: str
    external_id: str
    tag: str
    ts: int = field(default_factory=now_ts)

    def to_dict(self) -> Dict[str, Any]:
        return {"external_id": self.external_id, "tag": self.tag, "ts": self.ts}

    @classmethod
    def from_dict(cls, code: str, d: Dict[str, Any]) -> "LinkingCode":
        return cls(code=code, external_id=str(d.get("external_id", "")), tag=str(d.get("tag", "")), ts=int(d.get("ts", 0) or 0))
