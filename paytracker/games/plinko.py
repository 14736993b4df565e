from __future__ import annotations
from typing import Any, Dict, List
import random

# Low-risk bucket multipliers in tenths, left edge to right edge (rows + 1 buckets).
# Kept integral so payout = floor(wager * multiplier) is exact.
TENTHS: Dict[int, List[int]] = {
    8:  [56, 21, 11, 10, 5, 10, 11, 21, 56],
    12: [100, 30, 16, 14, 11, 10, 5, 10, 11, 14, 16, 30, 100],
    16: [160, 90, 20, 14, 14, 12, 11, 10, 5, 10, 11, 12, 14, 14, 20, 90, 160],
}

# display values
MULTIPLIERS: Dict[int, List[float]] = {rows: [t / 10 for t in table] for rows, table in TENTHS.items()}

DEFAULT_ROWS = 16


def payout_for(wager: int, rows: int, bucket: int) -> int:
    return wager * TENTHS[rows][bucket] // 10


def drop_ball(rows: int, seed: int) -> Dict[str, Any]:
    """Deterministic drop: the same (rows, seed) always lands in the same bucket."""
    rng = random.Random(seed)
    path = ["R" if rng.random() < 0.5 else "L" for _ in range(rows)]
    bucket = path.count("R")
    return {"path": "".join(path), "bucket": bucket, "multiplier": MULTIPLIERS[rows][bucket]}


def play_plinko(wager: int, rows: int, rng: random.Random) -> Dict[str, Any]:
    seed = rng.getrandbits(64)
    drop = drop_ball(rows, seed)
    return {
        "seed": seed,
        "rows": rows,
        "path": drop["path"],
        "bucket": drop["bucket"],
        "multiplier": drop["multiplier"],
        "payout": payout_for(wager, rows, drop["bucket"]),
    }
