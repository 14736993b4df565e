from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from paytracker.games.plinko import payout_for
from paytracker.services.ledger_api import Bank, build_bank, create_app
from paytracker.shared.errors import Result

from .conftest import ADMIN_TOKEN, INGEST_TOKEN

INGEST = {"Authorization": f"Bearer {INGEST_TOKEN}"}
ADMIN = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def client(bank: Bank) -> Iterator[TestClient]:
    with TestClient(create_app(bank, run_backups=False)) as c:
        yield c


def _report(client: TestClient, payer: str = "Alice", amount: int = 100) -> dict:
    r = client.post("/api/report-payment", json={"from": payer, "amount": amount}, headers=INGEST)
    assert r.status_code == 200, r.text
    return r.json()


class TestPayments:
    def test_report_then_pay(self, client: TestClient, bank: Bank) -> None:
        body = _report(client)
        assert body["user_balance"] == 100
        payment_id = body["payment"]["id"]
        assert body["payment"]["from"] == "Alice"

        r = client.post("/api/pay", json={"payment_id": payment_id}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["payment"]["status"] == "paid"
        assert r.json()["payment"]["paid_amount"] == 200
        cmds = bank.queue.load()
        assert [(c.command, c.status) for c in cmds] == [("/pay Alice 200", "pending")]

        listed = client.get("/api/payments").json()
        assert [p["status"] for p in listed] == ["paid"]

    def test_report_requires_ingest_token(self, client: TestClient) -> None:
        r = client.post("/api/report-payment", json={"from": "Alice", "amount": 1})
        assert r.status_code == 401
        assert r.json() == {"error": "Unauthorized", "kind": "auth"}
        r = client.post("/api/report-payment", json={"from": "Alice", "amount": 1}, headers=ADMIN)
        assert r.status_code == 401

    def test_report_bad_amount(self, client: TestClient) -> None:
        r = client.post("/api/report-payment", json={"from": "Alice", "amount": "lots"}, headers=INGEST)
        assert r.status_code == 400
        assert r.json()["kind"] == "validation"

    def test_pay_and_lose_require_admin(self, client: TestClient) -> None:
        payment_id = _report(client)["payment"]["id"]
        assert client.post("/api/pay", json={"payment_id": payment_id}, headers=INGEST).status_code == 401
        assert client.post("/api/lose", json={"payment_id": payment_id}).status_code == 401
        assert client.post("/api/clear-all").status_code == 401

    def test_lose_removes_payment(self, client: TestClient) -> None:
        payment_id = _report(client)["payment"]["id"]
        r = client.post("/api/lose", json={"paymentId": payment_id}, headers=ADMIN)
        assert r.status_code == 200
        assert client.get("/api/payments").json() == []
        assert client.post("/api/lose", json={"payment_id": payment_id}, headers=ADMIN).status_code == 404

    def test_clear_all(self, client: TestClient) -> None:
        _report(client, "Alice")
        _report(client, "Bob")
        r = client.post("/api/clear-all", headers=ADMIN)
        assert r.json()["message"] == "Cleared 2 payments"
        assert client.get("/api/payments").json() == []


class TestUsersAndWallet:
    def test_user_lookup_and_leaderboard(self, client: TestClient) -> None:
        _report(client, "Alice", 10)
        _report(client, "Bob", 30)
        r = client.get("/api/user/alice")
        assert r.status_code == 200
        assert r.json()["user"]["balance"] == 10
        assert len(r.json()["user"]["history"]) == 1

        board = client.get("/api/users").json()["users"]
        assert [u["username"] for u in board] == ["Bob", "Alice"]
        assert "history" not in board[0]

    def test_unknown_user(self, client: TestClient) -> None:
        r = client.get("/api/user/ghost")
        assert r.status_code == 404
        assert r.json() == {"error": "User not found", "kind": "user_not_found"}

    def test_deposit_requires_ingest_token(self, client: TestClient) -> None:
        assert client.post("/api/deposit", json={"username": "Eve", "amount": 5}).status_code == 401
        r = client.post("/api/deposit", json={"username": "Eve", "amount": 5}, headers=INGEST)
        assert r.json()["user"]["balance"] == 5

    def test_withdraw(self, client: TestClient, bank: Bank) -> None:
        client.post("/api/deposit", json={"username": "Eve", "amount": 50}, headers=INGEST)
        r = client.post("/api/withdraw", json={"username": "Eve", "amount": 20})
        assert r.status_code == 200
        assert r.json()["user"]["balance"] == 30
        assert [c.command for c in bank.queue.load()] == ["/pay Eve 20"]

    def test_withdraw_over_balance(self, client: TestClient, bank: Bank) -> None:
        client.post("/api/deposit", json={"username": "Eve", "amount": 50}, headers=INGEST)
        r = client.post("/api/withdraw", json={"username": "Eve", "amount": 51})
        assert r.status_code == 400
        assert r.json()["error"] == "Invalid withdrawal amount"
        assert client.get("/api/user/Eve").json()["user"]["balance"] == 50
        assert bank.queue.load() == []


class TestGames:
    def test_number_draw_forced_hit(self, client: TestClient) -> None:
        client.post("/api/deposit", json={"username": "Bob", "amount": 50}, headers=INGEST)
        r = client.post("/api/games/number", json={"username": "Bob", "wager": 40, "number": 7})
        assert r.status_code == 200
        body = r.json()
        assert body["won"] is True
        assert body["payout"] == 400
        assert body["user"]["balance"] == 410

    def test_number_draw_bad_wager(self, client: TestClient) -> None:
        client.post("/api/deposit", json={"username": "Bob", "amount": 50}, headers=INGEST)
        r = client.post("/api/games/number", json={"username": "Bob", "wager": 60, "number": 7})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid bet amount", "kind": "invalid_wager"}

    def test_number_draw_non_finite_pick(self, client: TestClient) -> None:
        client.post("/api/deposit", json={"username": "Bob", "amount": 50}, headers=INGEST)
        for raw in (b'{"username": "Bob", "wager": 5, "number": 1e999}', b'{"username": "Bob", "wager": 5, "number": NaN}'):
            r = client.post("/api/games/number", content=raw, headers={"Content-Type": "application/json"})
            assert r.status_code == 400
            assert r.json()["kind"] == "validation"

    def test_blackjack(self, client: TestClient) -> None:
        client.post("/api/deposit", json={"username": "Cara", "amount": 100}, headers=INGEST)
        r = client.post(
            "/api/games/blackjack",
            json={"username": "Cara", "wager": 25, "won": True, "player_value": 21, "dealer_value": 19},
        )
        assert r.json()["payout"] == 50
        assert r.json()["user"]["balance"] == 125

    def test_plinko_ignores_client_multiplier(self, client: TestClient) -> None:
        client.post("/api/deposit", json={"username": "Dan", "amount": 100}, headers=INGEST)
        r = client.post("/api/games/plinko", json={"username": "Dan", "wager": 10, "multiplier": 1000, "payout": 99999})
        body = r.json()
        assert r.status_code == 200
        assert body["payout"] == payout_for(10, 16, body["bucket"])
        assert body["user"]["balance"] == 90 + body["payout"]

    def test_unknown_player(self, client: TestClient) -> None:
        r = client.post("/api/games/number", json={"username": "ghost", "wager": 1, "number": 1})
        assert r.status_code == 404

    def test_missing_username(self, client: TestClient) -> None:
        r = client.post("/api/games/plinko", json={"wager": 1})
        assert r.status_code == 400


class TestAdmin:
    def test_admin_routes_need_admin_token(self, client: TestClient) -> None:
        assert client.get("/api/admin/users", headers=INGEST).status_code == 401
        assert client.post("/api/admin/set-balance", json={"username": "a", "balance": 1}).status_code == 401

    def test_set_and_adjust(self, client: TestClient) -> None:
        _report(client, "Alice", 10)
        r = client.post("/api/admin/set-balance", json={"username": "Alice", "balance": 500}, headers=ADMIN)
        assert r.json()["user"]["balance"] == 500
        r = client.post("/api/admin/adjust-balance", json={"username": "Alice", "delta": -100}, headers=ADMIN)
        user = r.json()["user"]
        assert user["balance"] == 400
        assert [e["kind"] for e in user["history"]] == ["payment_credit", "admin_set_balance", "admin_adjust_balance"]
        listed = client.get("/api/admin/users", headers=ADMIN).json()["users"]
        assert "history" in listed[0]

    def test_non_finite_balance_is_rejected(self, client: TestClient) -> None:
        _report(client, "Alice", 10)
        headers = {**ADMIN, "Content-Type": "application/json"}
        for route, raw in (
            ("/api/admin/set-balance", b'{"username": "Alice", "balance": 1e999}'),
            ("/api/admin/set-balance", b'{"username": "Alice", "balance": NaN}'),
            ("/api/admin/adjust-balance", b'{"username": "Alice", "delta": -1e999}'),
        ):
            r = client.post(route, content=raw, headers=headers)
            assert r.status_code == 400
            assert r.json()["kind"] == "validation"
        assert client.get("/api/user/Alice").json()["user"]["balance"] == 10


class TestBotAccount:
    def test_connect_and_read_back(self, client: TestClient) -> None:
        assert client.get("/api/account").json() == {"account": None}
        r = client.post("/api/connect-account", json={"username": "PaymentBot"})
        assert r.json() == {"success": True, "account": "PaymentBot"}
        assert client.get("/api/account").json() == {"account": "PaymentBot"}

    def test_connect_requires_username(self, client: TestClient) -> None:
        r = client.post("/api/connect-account", json={})
        assert r.status_code == 400
        assert r.json()["error"] == "Username required"

    def test_reset_drops_payments_and_account(self, client: TestClient, bank: Bank) -> None:
        _report(client, "Alice", 100)
        client.post("/api/connect-account", json={"username": "PaymentBot"})
        assert client.post("/api/reset", headers=INGEST).status_code == 401

        r = client.post("/api/reset", headers=ADMIN)
        assert r.json() == {"success": True, "message": "System reset"}
        assert client.get("/api/payments").json() == []
        assert client.get("/api/account").json() == {"account": None}
        # balances survive a reset
        assert bank.store.find_by_username("Alice").balance == 100

    def test_register_is_disabled(self, client: TestClient) -> None:
        r = client.post("/api/register", json={"username": "Alice"})
        assert r.status_code == 403
        assert r.json()["kind"] == "forbidden"


class TestLinking:
    def test_discord_auth_unconfigured(self, client: TestClient) -> None:
        r = client.get("/api/discord/auth", follow_redirects=False)
        assert r.status_code == 500

    def test_callback_without_code(self, client: TestClient) -> None:
        r = client.get("/api/discord/callback", follow_redirects=False)
        assert r.status_code in (302, 307)
        assert r.headers["location"] == "/?error=no_code"

    def test_callback_issues_code_then_link(self, client: TestClient, bank: Bank, monkeypatch) -> None:
        monkeypatch.setattr(bank.identity, "resolve", lambda code: Result.success({"id": "d-1", "tag": "alice"}))
        r = client.get("/api/discord/callback", params={"code": "abc"}, follow_redirects=False)
        location = r.headers["location"]
        assert "linkingCode=" in location
        code = location.split("linkingCode=")[1].split("&")[0]
        assert code in client.get("/api/pending-links").json()["pending"]

        r = client.post("/api/link-account", json={"username": "Alice", "linking_code": code})
        assert r.status_code == 200
        assert r.json()["user"]["linked_identity"] == {"id": "d-1", "tag": "alice"}

        r = client.get("/api/discord/callback", params={"code": "abc"}, follow_redirects=False)
        assert "discord_login=true" in r.headers["location"]
        assert client.post("/api/discord-login", json={"discord_id": "d-1"}).json()["user"]["username"] == "Alice"

        assert client.post("/api/unlink-discord", json={"username": "Alice"}).status_code == 200
        assert client.post("/api/discord-login", json={"discordId": "d-1"}).status_code == 404

    def test_link_with_unknown_code(self, client: TestClient) -> None:
        r = client.post("/api/link-account", json={"username": "Alice", "linkingCode": "NOPE00"})
        assert r.status_code == 404


def test_health(client: TestClient) -> None:
    r = client.get("/api/health")
    assert r.json() == {"ok": True, "accounts": 0, "pending_payments": 0}


def test_equal_tokens_are_refused(cfg: dict, tmp_path) -> None:
    cfg["auth"]["admin_token"] = cfg["auth"]["ingest_token"]
    with pytest.raises(ValueError):
        build_bank(cfg, tmp_path)
