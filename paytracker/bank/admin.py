from __future__ import annotations

import logging
import math
from typing import List, Optional

from ..shared.errors import AuthError, Result, ValidationError
from .models import Account
from .payments import PaymentBook, token_matches
from .store import AccountStore


def _whole_number(raw, name: str) -> Result:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return Result.failure(ValidationError(f"Invalid parameters: {name} must be a whole number"))
    if isinstance(raw, float) and (not math.isfinite(raw) or raw != int(raw)):
        return Result.failure(ValidationError(f"Invalid parameters: {name} must be a whole number"))
    return Result.success(int(raw))


class AdminDesk:
    """Privileged balance overrides. Each override leaves one audit event."""

    def __init__(self, store: AccountStore, book: PaymentBook, admin_token: str, log: Optional[logging.Logger] = None):
        self.store = store
        self.book = book
        self.admin_token = admin_token
        self.log = log or logging.getLogger("ledger.admin")

    def authorize(self, token: Optional[str]) -> Result:
        if not token_matches(token, self.admin_token):
            return Result.failure(AuthError())
        return Result.success()

    def accounts(self) -> List[Account]:
        return self.store.accounts()

    def set_balance(self, username: str, balance, admin: str = "api") -> Result:
        if not isinstance(username, str):
            return Result.failure(ValidationError("Invalid parameters"))
        target = _whole_number(balance, "balance")
        if not target.ok:
            return target

        def _apply(acct: Account) -> Result:
            prev = acct.balance
            acct.balance = target.value
            return Result.success(("admin_set_balance", {"prev": prev, "new_balance": acct.balance, "admin": admin}))

        return self._audited(username, _apply)

    def adjust_balance(self, username: str, delta, admin: str = "api") -> Result:
        if not isinstance(username, str):
            return Result.failure(ValidationError("Invalid parameters"))
        d = _whole_number(delta, "delta")
        if not d.ok:
            return d

        def _apply(acct: Account) -> Result:
            prev = acct.balance
            acct.balance += d.value
            return Result.success(
                ("admin_adjust_balance", {"delta": d.value, "prev": prev, "new_balance": acct.balance, "admin": admin})
            )

        return self._audited(username, _apply)

    def _audited(self, username: str, fn) -> Result:
        res = self.store.mutate(username, fn)
        if not res.ok:
            return res
        acct, event = res.value
        self.log.warning("Admin override %s on %s: %s", event.kind, acct.username, event.detail)
        return Result.success(acct)

    def clear_payments(self) -> int:
        n = self.book.clear()
        self.log.warning("Admin cleared %s payments", n)
        return n
