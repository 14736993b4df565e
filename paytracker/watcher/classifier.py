from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional, Union

SUFFIX_MULT = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}

# a file transport can re-read lines after a rewind; the relay never replays
JSONL_DEDUP_WINDOW_S = 60.0


@dataclass
class PaymentEvent:
    payer: str
    amount: int
    raw: str = ""


@dataclass
class LinkEvent:
    payer: str
    code: str
    raw: str = ""


ChatEvent = Union[PaymentEvent, LinkEvent]


def parse_amount_text(text: str) -> int:
    """ "1,000" -> 1000, "2.5K" -> 2500, "1M" -> 1000000. Unparseable -> 0."""
    s = str(text or "").replace(",", "").strip()
    if not s:
        return 0
    mult = 1
    suffix = s[-1].upper()
    if suffix in SUFFIX_MULT:
        mult = SUFFIX_MULT[suffix]
        s = s[:-1]
    try:
        val = float(s) * mult
    except ValueError:
        return 0
    if not math.isfinite(val) or val <= 0:
        return 0
    # half up, the way the game displays rounded amounts
    return int(math.floor(val + 0.5))


def default_dedup_window(wcfg: Dict) -> float:
    """Configured window, else 60s for the jsonl transport and off for the relay."""
    raw = wcfg.get("dedup_window_seconds")
    if raw is not None:
        return float(raw or 0)
    kind = str(wcfg.get("transport") or "websocket").lower()
    return JSONL_DEDUP_WINDOW_S if kind == "jsonl" else 0.0


class ChatClassifier:
    """
    Turns raw chat lines into payment / link events.

    Payments win over links when a line matches both. Lines that carry a
    payment already seen inside the dedup window (same payer, same amount,
    same minute) are dropped; dedup_window_s = 0 disables that.
    """

    def __init__(self, payment_pattern: str, link_pattern: str, dedup_window_s: float = 0.0):
        self.payment_re = re.compile(payment_pattern)
        self.link_re = re.compile(link_pattern)
        self.dedup_window_s = float(dedup_window_s)
        self._recent: Dict[str, float] = {}

    @classmethod
    def from_cfg(cls, wcfg: Dict) -> "ChatClassifier":
        return cls(
            payment_pattern=str(wcfg["payment_pattern"]),
            link_pattern=str(wcfg["link_pattern"]),
            dedup_window_s=default_dedup_window(wcfg),
        )

    def classify(self, line: str) -> Optional[ChatEvent]:
        text = str(line or "").strip()
        if not text:
            return None
        m = self.payment_re.search(text)
        if m:
            amount = parse_amount_text(m.group(2))
            if amount <= 0:
                return None
            return PaymentEvent(payer=m.group(1), amount=amount, raw=text)
        m = self.link_re.search(text)
        if m:
            return LinkEvent(payer=m.group(1), code=m.group(2), raw=text)
        return None

    def is_duplicate(self, ev: PaymentEvent, now: Optional[float] = None) -> bool:
        if self.dedup_window_s <= 0:
            return False
        now = time.time() if now is None else now

        cut = now - self.dedup_window_s
        for k, t0 in list(self._recent.items()):
            if t0 < cut:
                self._recent.pop(k, None)

        fp = f"{ev.payer.lower()}|{ev.amount}|{int(now // 60)}"
        if fp in self._recent:
            return True
        self._recent[fp] = now
        return False
