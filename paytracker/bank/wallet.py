from __future__ import annotations

import logging
from typing import Optional

from ..shared.errors import Result, UserNotFound, ValidationError
from .command_queue import CommandQueue
from .models import Account, parse_amount
from .store import AccountStore


class Wallet:
    """Deposits credit the ledger; withdrawals debit it and queue an in-game /pay."""

    def __init__(self, store: AccountStore, queue: CommandQueue, log: Optional[logging.Logger] = None):
        self.store = store
        self.queue = queue
        self.log = log or logging.getLogger("ledger.wallet")

    def deposit(self, username: str, amount) -> Result:
        username = str(username or "").strip()
        if not username:
            return Result.failure(ValidationError("Username and amount required"))
        amt = parse_amount(amount)
        if not amt.ok:
            return amt
        self.store.get_or_create(username)
        res = self.store.credit(username, amt.value, "deposit")
        if not res.ok:
            return res
        acct, _event = res.value
        return Result.success(acct)

    def withdraw(self, username: str, amount) -> Result:
        acct = self.store.find_by_username(username)
        if acct is None:
            return Result.failure(UserNotFound(username))
        amt = parse_amount(amount)
        if not amt.ok:
            return Result.failure(ValidationError("Invalid withdrawal amount"))
        value = amt.value

        def _debit(a: Account) -> Result:
            if value > a.balance:
                return Result.failure(ValidationError("Invalid withdrawal amount"))
            a.balance -= value
            return Result.success(("withdraw", {"amount": value}))

        debited = self.store.mutate(acct.username, _debit)
        if not debited.ok:
            return debited

        queued = self.queue.enqueue(f"/pay {acct.username} {value}")
        if not queued.ok:
            # compensating credit: the player must not lose money we never paid out
            self.store.credit(acct.username, value, "withdraw_refund", {"reason": queued.error.message})
            self.log.error("Withdrawal of %s for %s refunded: %s", value, acct.username, queued.error.message)
            return queued

        self.log.info("Withdrawal of %s queued for %s", value, acct.username)
        return Result.success({"account": acct, "command": queued.value})
