"""Shared test fixtures."""

import logging
import random
from pathlib import Path

import pytest

from paytracker.bank.command_queue import CommandQueue
from paytracker.bank.payments import PaymentBook, PaymentDesk
from paytracker.bank.store import AccountStore
from paytracker.services.ledger_api import Bank, build_bank
from paytracker.shared.settings import load_cfg

INGEST_TOKEN = "ingest-secret"
ADMIN_TOKEN = "admin-secret"


class FixedDraw(random.Random):
    """randint() always returns `value`; everything else is a seeded Random."""

    def __init__(self, value: int) -> None:
        super().__init__(1234)
        self.value = value

    def randint(self, a: int, b: int) -> int:
        return self.value


@pytest.fixture
def log() -> logging.Logger:
    return logging.getLogger("test.ledger")


@pytest.fixture
def store(tmp_path: Path, log: logging.Logger) -> AccountStore:
    return AccountStore(tmp_path / "users.json", log=log)


@pytest.fixture
def queue(tmp_path: Path, log: logging.Logger) -> CommandQueue:
    return CommandQueue(tmp_path / "commands.json", max_attempts=3, backoff_base_s=2, backoff_max_s=60, log=log)


@pytest.fixture
def book(tmp_path: Path, log: logging.Logger) -> PaymentBook:
    return PaymentBook(tmp_path / "payments.json", log=log)


@pytest.fixture
def desk(store: AccountStore, book: PaymentBook, queue: CommandQueue, log: logging.Logger) -> PaymentDesk:
    return PaymentDesk(store, book, queue, INGEST_TOKEN, log=log)


@pytest.fixture
def cfg(tmp_path: Path) -> dict:
    return load_cfg(
        tmp_path / "missing-config.json",
        overrides={
            "auth": {"ingest_token": INGEST_TOKEN, "admin_token": ADMIN_TOKEN},
            "discord": {"client_id": "", "client_secret": "", "redirect_uri": ""},
        },
    )


@pytest.fixture
def bank(cfg: dict, tmp_path: Path, log: logging.Logger) -> Bank:
    return build_bank(cfg, tmp_path, rng=FixedDraw(7), log=log)
