"""Ledger service: HTTP boundary over the bank components.

Run with: python -m paytracker.services.ledger_api
"""
from __future__ import annotations

import asyncio
import logging
import random
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from ..bank.admin import AdminDesk
from ..bank.backup import backup_accounts
from ..bank.command_queue import CommandQueue
from ..bank.linking import LinkingDesk
from ..bank.payments import PaymentBook, PaymentDesk, token_matches
from ..bank.store import AccountStore
from ..bank.wallet import Wallet
from ..games.engine import GameEngine
from ..shared.errors import AuthError, ForbiddenError, LedgerError, Result, UserNotFound, ValidationError
from ..shared.logging_setup import setup_logging
from ..shared.settings import base_dir_from_env, load_cfg, resolve_path
from .identity import DiscordIdentity


@dataclass
class Bank:
    """Everything the request handlers touch, built once per process."""

    cfg: Dict[str, Any]
    base_dir: Path
    store: AccountStore
    book: PaymentBook
    queue: CommandQueue
    payments: PaymentDesk
    wallet: Wallet
    games: GameEngine
    admin: AdminDesk
    linking: LinkingDesk
    identity: DiscordIdentity
    log: logging.Logger
    # game account the payouts are sent from; display only
    connected_account: Optional[str] = None

    def __post_init__(self) -> None:
        # sync handlers run on a threadpool; mutations must not interleave
        self.lock = threading.Lock()

    def run(self, fn: Callable[..., Result], *args, **kwargs) -> Any:
        with self.lock:
            res = fn(*args, **kwargs)
        return res.unwrap()


def build_bank(
    cfg: Dict[str, Any],
    base_dir: Path,
    rng: Optional[random.Random] = None,
    identity: Optional[DiscordIdentity] = None,
    log: Optional[logging.Logger] = None,
) -> Bank:
    log = log or logging.getLogger("ledger")
    auth = cfg.get("auth") or {}
    ingest_token = str(auth.get("ingest_token") or "")
    admin_token = str(auth.get("admin_token") or "")
    if ingest_token and ingest_token == admin_token:
        raise ValueError("auth.admin_token must differ from auth.ingest_token")
    if not ingest_token:
        log.warning("No ingest token configured (PAYMENT_REPORT_TOKEN); payment reports will be rejected")
    if not admin_token:
        log.warning("No admin token configured (AUTH_TOKEN); admin endpoints will be rejected")

    state = cfg.get("state") or {}
    qcfg = cfg.get("queue") or {}
    store = AccountStore(resolve_path(base_dir, state.get("accounts_file")), log=log.getChild("store"))
    book = PaymentBook(resolve_path(base_dir, state.get("payments_file")), log=log.getChild("payments"))
    queue = CommandQueue(
        resolve_path(base_dir, state.get("commands_file")),
        deadletter_path=resolve_path(base_dir, state.get("deadletter_file")),
        max_attempts=int(qcfg.get("max_attempts", 5)),
        backoff_base_s=float(qcfg.get("backoff_base_seconds", 2)),
        backoff_max_s=float(qcfg.get("backoff_max_seconds", 300)),
        lock_timeout_s=float(qcfg.get("lock_timeout_seconds", 5)),
        log=log.getChild("queue"),
    )
    return Bank(
        cfg=cfg,
        base_dir=base_dir,
        store=store,
        book=book,
        queue=queue,
        payments=PaymentDesk(store, book, queue, ingest_token, log=log.getChild("payments")),
        wallet=Wallet(store, queue, log=log.getChild("wallet")),
        games=GameEngine(store, rng=rng, log=log.getChild("games")),
        admin=AdminDesk(store, book, admin_token, log=log.getChild("admin")),
        linking=LinkingDesk(
            store,
            resolve_path(base_dir, state.get("links_file")),
            ttl_s=int((cfg.get("linking") or {}).get("ttl_seconds", 86400)),
            log=log.getChild("linking"),
        ),
        identity=identity or DiscordIdentity.from_cfg(cfg),
        log=log,
    )


# ---------------- request bodies ----------------
class ReportPaymentBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: Any = Field(None, alias="from")
    amount: Any = None


class PaymentIdBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: Any = Field(None, alias="paymentId")


class AmountBody(BaseModel):
    username: Any = None
    amount: Any = None


class NumberGameBody(BaseModel):
    username: Any = None
    wager: Any = None
    number: Any = None


class BlackjackBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: Any = None
    wager: Any = None
    won: bool = False
    player_value: Any = Field(None, alias="playerValue")
    dealer_value: Any = Field(None, alias="dealerValue")


class PlinkoBody(BaseModel):
    username: Any = None
    wager: Any = None
    rows: Optional[int] = None


class SetBalanceBody(BaseModel):
    username: Any = None
    balance: Any = None


class AdjustBalanceBody(BaseModel):
    username: Any = None
    delta: Any = None


class LinkBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: Any = None
    linking_code: Any = Field(None, alias="linkingCode")


class DiscordLoginBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    discord_id: Any = Field(None, alias="discordId")


class UsernameBody(BaseModel):
    username: Any = None


def bearer(authorization: Optional[str]) -> str:
    parts = str(authorization or "").split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return ""


def _username(raw: Any) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("Username required")
    return raw.strip()


async def _backup_loop(bank: Bank) -> None:
    bcfg = bank.cfg.get("backup") or {}
    interval = max(1.0, float(bcfg.get("interval_seconds", 300)))
    keep = int(bcfg.get("keep", 20))
    backup_dir = resolve_path(bank.base_dir, bcfg.get("dir") or "state/backups")
    while True:
        await asyncio.sleep(interval)
        try:
            dst = await asyncio.to_thread(backup_accounts, bank.store.path, backup_dir, keep)
            if dst:
                bank.log.debug("Accounts backed up to %s", dst)
        except OSError:
            bank.log.exception("User backup failed")


def create_app(bank: Bank, run_backups: bool = True) -> FastAPI:
    log = bank.log

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(_backup_loop(bank)) if run_backups else None
        log.info("Started: accounts=%s pending_payments=%s", len(bank.store.accounts()), len(bank.book.items))
        yield
        if task:
            task.cancel()
        log.info("Stopped")

    app = FastAPI(title="paytracker ledger", version="0.1.0", lifespan=lifespan)
    app.state.bank = bank

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        if exc.http_status >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=ValidationError("Invalid parameters").to_dict())

    def require_admin(authorization: Optional[str]) -> None:
        bank.run(bank.admin.authorize, bearer(authorization))

    # ---------- payments ----------
    @app.post("/api/report-payment")
    def report_payment(body: ReportPaymentBody, authorization: Optional[str] = Header(None)):
        out = bank.run(bank.payments.ingest, body.sender, body.amount, bearer(authorization))
        return {"success": True, "payment": out["payment"].to_dict(), "user_balance": out["new_balance"]}

    @app.get("/api/payments")
    def list_payments():
        with bank.lock:
            items = bank.payments.payments()
        return [p.to_dict() for p in items]

    @app.post("/api/pay")
    def pay(body: PaymentIdBody, authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        out = bank.run(bank.payments.pay, str(body.payment_id or ""))
        p, cmd = out["payment"], out["command"]
        return {
            "success": True,
            "message": f"Queued pay command for {p.sender} {p.paid_amount} coins",
            "command_id": cmd.id,
            "payment": p.to_dict(),
        }

    @app.post("/api/lose")
    def lose(body: PaymentIdBody, authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        removed = bank.run(bank.payments.deny, str(body.payment_id or ""))
        return {"success": True, "message": "Payment removed", "removed": removed.to_dict()}

    @app.post("/api/clear-all")
    def clear_all(authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        with bank.lock:
            n = bank.admin.clear_payments()
        return {"success": True, "message": f"Cleared {n} payments"}

    @app.post("/api/reset")
    def reset(authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        with bank.lock:
            n = bank.admin.clear_payments()
            bank.connected_account = None
        log.warning("System reset (%s payments dropped)", n)
        return {"success": True, "message": "System reset"}

    # ---------- bot account ----------
    @app.get("/api/account")
    def get_account():
        return {"account": bank.connected_account}

    @app.post("/api/connect-account")
    def connect_account(body: UsernameBody):
        name = _username(body.username)
        with bank.lock:
            bank.connected_account = name
        log.info("Connected account set to %s", name)
        return {"success": True, "account": name}

    # ---------- wallet ----------
    @app.post("/api/deposit")
    def deposit(body: AmountBody, authorization: Optional[str] = Header(None)):
        if not token_matches(bearer(authorization), bank.payments.ingest_token):
            raise AuthError()
        acct = bank.run(bank.wallet.deposit, body.username, body.amount)
        return {"success": True, "message": f"Deposited {body.amount} coins", "user": acct.to_dict()}

    @app.post("/api/withdraw")
    def withdraw(body: AmountBody):
        out = bank.run(bank.wallet.withdraw, _username(body.username), body.amount)
        return {"success": True, "message": f"Withdrawal of {body.amount} coins queued!", "user": out["account"].to_dict()}

    # ---------- users ----------
    @app.get("/api/user/{username}")
    def get_user(username: str):
        with bank.lock:
            acct = bank.store.find_by_username(username)
        if acct is None:
            raise UserNotFound(username)
        return {"user": acct.to_dict()}

    @app.get("/api/users")
    def leaderboard():
        with bank.lock:
            accounts = bank.store.accounts()
        return {"users": [a.to_dict(with_history=False) for a in accounts]}

    # ---------- games ----------
    def _game_response(outcome) -> dict:
        return {
            "success": True,
            "won": outcome.won,
            "payout": outcome.payout,
            "message": outcome.message,
            **outcome.detail,
            "user": outcome.account.to_dict(),
        }

    @app.post("/api/games/number")
    def number_game(body: NumberGameBody):
        outcome = bank.run(bank.games.number_draw, _username(body.username), body.wager, body.number)
        return _game_response(outcome)

    @app.post("/api/games/blackjack")
    def blackjack_game(body: BlackjackBody):
        outcome = bank.run(
            bank.games.blackjack, _username(body.username), body.wager, body.won, body.player_value, body.dealer_value
        )
        return _game_response(outcome)

    @app.post("/api/games/plinko")
    def plinko_game(body: PlinkoBody):
        outcome = bank.run(bank.games.plinko, _username(body.username), body.wager, body.rows)
        return _game_response(outcome)

    # ---------- admin ----------
    @app.get("/api/admin/users")
    def admin_users(authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        with bank.lock:
            accounts = bank.admin.accounts()
        return {"users": [a.to_dict() for a in accounts]}

    @app.post("/api/admin/set-balance")
    def admin_set_balance(body: SetBalanceBody, authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        acct = bank.run(bank.admin.set_balance, body.username, body.balance)
        return {"success": True, "user": acct.to_dict()}

    @app.post("/api/admin/adjust-balance")
    def admin_adjust_balance(body: AdjustBalanceBody, authorization: Optional[str] = Header(None)):
        require_admin(authorization)
        acct = bank.run(bank.admin.adjust_balance, body.username, body.delta)
        return {"success": True, "user": acct.to_dict()}

    # ---------- discord linking ----------
    @app.post("/api/register")
    def register():
        raise ForbiddenError("Traditional login disabled. Please use Discord login.")

    @app.get("/api/discord/auth")
    def discord_auth():
        if not bank.identity.configured:
            return JSONResponse(status_code=500, content={"error": "Discord client ID not configured", "kind": "config"})
        return RedirectResponse(bank.identity.authorize_url())

    @app.get("/api/discord/callback")
    def discord_callback(code: Optional[str] = None):
        if not code:
            return RedirectResponse("/?error=no_code")
        profile = bank.identity.resolve(code)
        if not profile.ok:
            log.error("Discord OAuth error: %s", profile.error.message)
            return RedirectResponse("/?error=oauth_failed")
        ident = profile.value
        state = bank.run(bank.linking.begin_login, ident["id"], ident["tag"])
        if state["state"] == "linked":
            return RedirectResponse(f"/?{urlencode({'discord_login': 'true', 'user': state['username']})}")
        query = urlencode({"discordId": ident["id"], "discordTag": ident["tag"], "linkingCode": state["code"]})
        return RedirectResponse(f"/?{query}")

    @app.post("/api/link-account")
    def link_account(body: LinkBody):
        acct = bank.run(bank.linking.confirm, body.username, body.linking_code)
        return {"success": True, "user": acct.to_dict()}

    @app.post("/api/discord-login")
    def discord_login(body: DiscordLoginBody):
        acct = bank.run(bank.linking.login, str(body.discord_id or ""))
        return {"user": acct.to_dict()}

    @app.post("/api/unlink-discord")
    def unlink_discord(body: UsernameBody):
        bank.run(bank.linking.unlink, _username(body.username))
        return {"success": True, "message": "Discord account unlinked"}

    @app.get("/api/pending-links")
    def pending_links():
        with bank.lock:
            return {"pending": bank.linking.pending()}

    @app.get("/api/health")
    def health():
        return {"ok": True, "accounts": len(bank.store.accounts()), "pending_payments": len(bank.book.items)}

    return app


def main() -> None:
    base_dir = base_dir_from_env()
    cfg = load_cfg()
    log = setup_logging("ledger", cfg, base_dir)
    bank = build_bank(cfg, base_dir, log=log)
    app = create_app(bank)
    server = cfg.get("server") or {}
    host = str(server.get("host") or "127.0.0.1")
    port = int(server.get("port") or 3000)
    log.info("Ledger service on http://%s:%s (state=%s)", host, port, bank.store.path.parent)
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
