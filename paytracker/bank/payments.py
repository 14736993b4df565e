from __future__ import annotations

import hmac
import logging
from pathlib import Path
from typing import List, Optional

from ..shared.errors import AuthError, NotFoundError, PersistenceError, Result, ValidationError
from ..shared.json_files import atomic_write_json, load_json
from .command_queue import CommandQueue
from .models import PendingPayment, new_id, now_ts, parse_amount
from .store import AccountStore


def token_matches(given: Optional[str], expected: Optional[str]) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(str(given), str(expected))


class PaymentBook:
    """Pending-payment ledger: load / append / remove / persist, whole document each write."""

    def __init__(self, path: Path, log: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.log = log or logging.getLogger("ledger.payments")
        self.items: List[PendingPayment] = []
        self.reload()

    def reload(self) -> None:
        try:
            raw = load_json(self.path, [])
        except (OSError, ValueError):
            self.log.exception("Failed to read payments from %s", self.path)
            return
        self.items = [PendingPayment.from_dict(r) for r in (raw if isinstance(raw, list) else []) if isinstance(r, dict)]

    def persist(self) -> bool:
        try:
            atomic_write_json(self.path, [p.to_dict() for p in self.items])
            return True
        except OSError as e:
            self.log.exception("%s", PersistenceError(f"payments write failed: {e}").message)
            return False

    def append(self, payment: PendingPayment) -> None:
        self.items.append(payment)
        self.persist()

    def find(self, payment_id: str) -> Optional[PendingPayment]:
        for p in self.items:
            if p.id == payment_id:
                return p
        return None

    def remove(self, payment_id: str) -> Optional[PendingPayment]:
        p = self.find(payment_id)
        if p is not None:
            self.items.remove(p)
            self.persist()
        return p

    def clear(self) -> int:
        n = len(self.items)
        self.items = []
        self.persist()
        return n


class PaymentDesk:
    """
    Payment ingestion and operator resolution.

    ingest() is deliberately not idempotent: the same chat line reported
    twice is two payments and two credits. Re-delivery is suppressed on the
    watcher side.
    """

    def __init__(
        self,
        store: AccountStore,
        book: PaymentBook,
        queue: CommandQueue,
        ingest_token: str,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.book = book
        self.queue = queue
        self.ingest_token = ingest_token
        self.log = log or logging.getLogger("ledger.payments")

    def ingest(self, payer: str, amount, auth_token: Optional[str]) -> Result:
        if not token_matches(auth_token, self.ingest_token):
            return Result.failure(AuthError())
        payer = str(payer or "").strip()
        if not payer:
            return Result.failure(ValidationError("Missing from or amount"))
        amt = parse_amount(amount)
        if not amt.ok:
            return amt

        payment = PendingPayment(id=new_id(), sender=payer, amount=amt.value)
        self.book.append(payment)

        self.store.get_or_create(payer)
        res = self.store.credit(payer, payment.amount, "payment_credit", {"payment_id": payment.id})
        if not res.ok:
            return res
        acct, _event = res.value
        self.log.info("Payment %s: %s paid %s, balance now %s", payment.id, payer, payment.amount, acct.balance)
        return Result.success({"payment": payment, "new_balance": acct.balance})

    def pay(self, payment_id: str) -> Result:
        """Double the payment back in game: queue `/pay <from> <2x>` then mark paid."""
        payment = self.book.find(payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        if payment.status == "paid":
            return Result.failure(ValidationError("Payment already paid"))

        double = payment.amount * 2
        queued = self.queue.enqueue(f"/pay {payment.sender} {double}")
        if not queued.ok:
            return queued

        payment.status = "paid"
        payment.paid_amount = double
        payment.processed_ts = now_ts()
        self.book.persist()
        self.log.info("Payment %s paid: /pay %s %s", payment.id, payment.sender, double)
        return Result.success({"payment": payment, "command": queued.value})

    def deny(self, payment_id: str) -> Result:
        payment = self.book.find(payment_id)
        if payment is None:
            return Result.failure(NotFoundError("Payment not found"))
        if payment.status == "paid":
            return Result.failure(ValidationError("Payment already paid"))
        self.book.remove(payment_id)
        self.log.info("Payment %s denied (%s, %s)", payment.id, payment.sender, payment.amount)
        return Result.success(payment)

    def payments(self) -> List[PendingPayment]:
        self.book.reload()
        return list(self.book.items)
