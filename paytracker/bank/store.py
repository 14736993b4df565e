from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..shared.errors import PersistenceError, Result, UserNotFound, ValidationError
from ..shared.json_files import atomic_write_json, load_json
from .models import Account, LedgerEvent, new_id

# fn(account) -> Result whose value is (event_kind, event_detail)
Mutation = Callable[[Account], Result]


class AccountStore:
    """
    Sole owner of the in-memory account set.

    Every mutation writes the whole document back (accounts are few and
    writes are rare). A failed write is logged and swallowed; memory stays
    authoritative until the next successful persist.
    """

    def __init__(self, path: Path, log: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.log = log or logging.getLogger("ledger.store")
        self._accounts: Dict[str, Account] = {}
        self.reload()

    def reload(self) -> None:
        try:
            raw = load_json(self.path, [])
        except (OSError, ValueError):
            # keep what we have rather than wiping balances on a bad read
            self.log.exception("Failed to read accounts from %s", self.path)
            return
        accounts: Dict[str, Account] = {}
        for rec in raw if isinstance(raw, list) else []:
            if not isinstance(rec, dict) or not rec.get("username"):
                continue
            acct = Account.from_dict(rec)
            accounts[acct.key] = acct
        self._accounts = accounts

    def persist(self) -> bool:
        try:
            atomic_write_json(self.path, [a.to_dict() for a in self._accounts.values()])
            return True
        except OSError as e:
            err = PersistenceError(f"accounts write failed: {e}")
            self.log.exception("%s", err.message)
            return False

    # ---------- lookups ----------
    def find_by_username(self, name: str) -> Optional[Account]:
        return self._accounts.get(str(name or "").strip().lower())

    def find_by_identity(self, external_id: str) -> Optional[Account]:
        if not external_id:
            return None
        for acct in self._accounts.values():
            if (acct.linked_identity or {}).get("id") == external_id:
                return acct
        return None

    def get_or_create(self, name: str) -> Account:
        display = str(name or "").strip()
        if not display:
            raise ValueError("username must be non-empty")
        acct = self.find_by_username(display)
        if acct is None:
            acct = Account(id=new_id(), username=display)
            self._accounts[acct.key] = acct
            self.log.info("Created account %s", display)
        return acct

    def accounts(self) -> List[Account]:
        return sorted(self._accounts.values(), key=lambda a: a.balance, reverse=True)

    # ---------- mutation ----------
    def mutate(self, username: str, fn: Mutation) -> Result:
        """Apply one balance/counter update and append exactly one LedgerEvent.

        On failure the balance and counters are restored and nothing is
        appended. Success value: (account, event).
        """
        acct = self.find_by_username(username)
        if acct is None:
            return Result.failure(UserNotFound(username))

        snap = acct.snapshot()
        res = fn(acct)
        if not res.ok:
            acct.restore(snap)
            return res

        kind, detail = res.value
        event = LedgerEvent(kind=kind, balance_after=acct.balance, detail=dict(detail or {}))
        acct.history.append(event.to_dict())
        self.persist()
        self.log.info("%s %s: balance %s -> %s", kind, acct.username, snap[0], acct.balance)
        return Result.success((acct, event))

    def credit(self, username: str, amount: int, kind: str, detail: Optional[dict] = None) -> Result:
        if amount <= 0:
            return Result.failure(ValidationError("amount must be positive"))

        def _apply(acct: Account) -> Result:
            acct.balance += amount
            return Result.success((kind, {"amount": amount, **(detail or {})}))

        return self.mutate(username, _apply)
