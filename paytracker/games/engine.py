from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from ..bank.models import Account
from ..bank.store import AccountStore
from ..shared.errors import InvalidWager, Result, UserNotFound, ValidationError
from .plinko import DEFAULT_ROWS, MULTIPLIERS, play_plinko

NUMBER_MIN = 1
NUMBER_MAX = 10
NUMBER_PAYOUT_MULT = 10
BLACKJACK_PAYOUT_MULT = 2

# resolve(wager) -> (payout, detail, message)
Resolver = Callable[[int], Tuple[int, Dict[str, Any], str]]


@dataclass
class GameOutcome:
    account: Account
    payout: int
    won: bool
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


def _coerce_wager(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    try:
        val = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(val) or val <= 0 or val != int(val):
        return None
    return int(val)


class GameEngine:
    """
    One self-contained wager per call:
      balance -= wager; balance += payout
      total_wagered += wager
      total_won += payout if payout > wager else total_lost += wager
    and one history event carrying the inputs, draws and payout.
    """

    def __init__(self, store: AccountStore, rng: Optional[random.Random] = None, log: Optional[logging.Logger] = None):
        self.store = store
        self.rng = rng or random.SystemRandom()
        self.log = log or logging.getLogger("ledger.games")

    def _play(self, game: str, username: str, wager: Any, resolve: Resolver) -> Result:
        acct = self.store.find_by_username(username)
        if acct is None:
            return Result.failure(UserNotFound(username))
        bet = _coerce_wager(wager)
        if bet is None or bet > acct.balance:
            return Result.failure(InvalidWager())

        box: Dict[str, Any] = {}

        def _apply(a: Account) -> Result:
            payout, detail, message = resolve(bet)
            a.balance -= bet
            a.balance += payout
            a.total_wagered += bet
            if payout > bet:
                a.total_won += payout
            else:
                a.total_lost += bet
            box.update(payout=payout, message=message, detail=detail)
            return Result.success((game, {"wager": bet, "payout": payout, **detail}))

        res = self.store.mutate(acct.username, _apply)
        if not res.ok:
            return res
        a, _event = res.value
        return Result.success(
            GameOutcome(account=a, payout=box["payout"], won=box["payout"] > bet, message=box["message"], detail=box["detail"])
        )

    def number_draw(self, username: str, wager: Any, picked: Any) -> Result:
        try:
            pick = int(picked)
        except (TypeError, ValueError, OverflowError):
            pick = 0
        if isinstance(picked, bool) or not NUMBER_MIN <= pick <= NUMBER_MAX:
            return Result.failure(ValidationError(f"Number must be between {NUMBER_MIN} and {NUMBER_MAX}"))

        def resolve(bet: int):
            drawn = self.rng.randint(NUMBER_MIN, NUMBER_MAX)
            won = drawn == pick
            payout = bet * NUMBER_PAYOUT_MULT if won else 0
            if won:
                msg = f"You picked {pick} and the number was {drawn}! You won {payout} coins!"
            else:
                msg = f"You picked {pick} but the number was {drawn}. You lost {bet} coins."
            return payout, {"picked": pick, "drawn": drawn, "won": won}, msg

        return self._play("number", username, wager, resolve)

    def blackjack(self, username: str, wager: Any, won: bool, player_value: Any = None, dealer_value: Any = None) -> Result:
        # cards are dealt client-side; only the reported result is settled here
        won = bool(won)

        def resolve(bet: int):
            payout = bet * BLACKJACK_PAYOUT_MULT if won else 0
            msg = f"Blackjack! You won {payout} coins!" if won else f"Dealer wins. You lost {bet} coins."
            return payout, {"won": won, "player_value": player_value, "dealer_value": dealer_value}, msg

        return self._play("blackjack", username, wager, resolve)

    def plinko(self, username: str, wager: Any, rows: Any = DEFAULT_ROWS) -> Result:
        try:
            n_rows = int(rows if rows is not None else DEFAULT_ROWS)
        except (TypeError, ValueError, OverflowError):
            n_rows = -1
        if n_rows not in MULTIPLIERS:
            return Result.failure(ValidationError(f"rows must be one of {sorted(MULTIPLIERS)}"))

        def resolve(bet: int):
            result = play_plinko(bet, n_rows, self.rng)
            payout = result.pop("payout")
            if payout > bet:
                msg = f"Plinko! You won {payout} coins!"
            else:
                msg = f"Plinko! You got {result['multiplier']}x."
            return payout, result, msg

        return self._play("plinko", username, wager, resolve)
