"""
Integration tests for the Portfolio Staking API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from portfolio_staking.api import create_app
from portfolio_staking.collaborators import InMemoryNotifier
from portfolio_staking.config import StakingConfig
from portfolio_staking.storage import InMemoryStorage
from portfolio_staking.system import StakingSystem


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
USER = {"X-User-Id": "user1"}
ADMIN = {"X-Admin-Id": "admin1"}


@pytest.fixture
def system():
    """Staking system on in-memory storage with the scheduler disabled"""
    config = StakingConfig(storage_backend="memory", scheduler_enabled=False)
    return StakingSystem(config=config, storage=InMemoryStorage(), notifier=InMemoryNotifier())


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def create_wallet(client, **overrides):
    body = {
        "wallet_address": "TXyz123",
        "chain": "Tron",
        "token": "USDT",
        "qr_image_key": "wallet-qr/admin1/qr.png",
        "minimum_amount": "100",
        "maximum_amount": "1000"
    }
    body.update(overrides)
    r = client.post("/admin/wallets", json=body, headers=ADMIN)
    assert r.status_code == 201
    return r.json()["wallet"]["id"]


def upload_screenshot(client, headers=USER, tx_hash="0xabc"):
    r = client.post(
        "/transactions/screenshot",
        data={"transaction_hash": tx_hash},
        files={"file": ("proof.png", PNG, "image/png")},
        headers=headers
    )
    assert r.status_code == 201
    return r.json()["screenshot_key"]


def submit_deposit(client, wallet_id, amount="500", headers=USER):
    return client.post("/transactions/deposit", json={
        "wallet_id": wallet_id,
        "amount": amount,
        "transaction_hash": "0xabc",
        "screenshot_key": upload_screenshot(client, headers)
    }, headers=headers)


def fund(client, wallet_id, amount="500", headers=USER):
    r = submit_deposit(client, wallet_id, amount, headers)
    assert r.status_code == 201
    transaction_id = r.json()["transaction"]["id"]
    r = client.post(f"/admin/transactions/{transaction_id}/approve", headers=ADMIN)
    assert r.status_code == 200
    return transaction_id


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "endpoints" in r.json()


class TestErrorMapping:

    def test_missing_identity_headers(self, client):
        assert client.get("/portfolio").status_code == 401
        assert client.post("/admin/accrual/run").status_code == 401

    def test_not_found_body(self, client):
        r = client.get("/portfolio", headers=USER)
        assert r.status_code == 404
        assert r.json() == {
            "status": "fail",
            "error": "not_found",
            "message": "Portfolio not found for user user1"
        }

    def test_validation_error(self, client):
        r = client.post("/admin/interest", json={
            "user_id": "user1", "interest_rate": "-3", "duration": 30
        }, headers=ADMIN)
        assert r.status_code == 400
        assert r.json()["error"] == "validation_error"


class TestDepositFlow:

    def test_deposit_approval_credits_portfolio(self, client, system):
        wallet_id = create_wallet(client)

        r = submit_deposit(client, wallet_id, "500")
        assert r.status_code == 201
        transaction = r.json()["transaction"]
        assert transaction["status"] == "pending"
        assert transaction["screenshot_url"].startswith("memory://")

        r = client.post(f"/admin/transactions/{transaction['id']}/approve", headers=ADMIN)
        assert r.status_code == 200
        body = r.json()
        assert body["transaction"]["status"] == "approved"
        assert Decimal(body["portfolio"]["principal_amount"]) == Decimal('500')

        r = client.get("/portfolio", headers=USER)
        assert Decimal(r.json()["portfolio"]["principal_amount"]) == Decimal('500')
        assert system.notifier.sent[-1].subject == "Transaction approved"

    def test_deposit_outside_wallet_bounds(self, client):
        wallet_id = create_wallet(client, maximum_amount="400")

        r = submit_deposit(client, wallet_id, "500")

        assert r.status_code == 400
        assert r.json()["message"] == "Amount must be between 100 and 400"
        r = client.get("/transactions", headers=USER)
        assert r.json()["pagination"]["total"] == 0

    def test_double_approval_conflict(self, client):
        wallet_id = create_wallet(client)
        transaction_id = fund(client, wallet_id)

        r = client.post(f"/admin/transactions/{transaction_id}/approve", headers=ADMIN)

        assert r.status_code == 409
        assert r.json()["error"] == "invalid_state"

    def test_reject_with_reason(self, client):
        wallet_id = create_wallet(client)
        transaction_id = submit_deposit(client, wallet_id).json()["transaction"]["id"]

        r = client.post(
            f"/admin/transactions/{transaction_id}/reject",
            json={"reason": "Hash not found"}, headers=ADMIN
        )

        assert r.status_code == 200
        assert r.json()["transaction"]["status"] == "rejected"
        assert r.json()["transaction"]["rejection_reason"] == "Hash not found"
        assert client.get("/portfolio", headers=USER).status_code == 404

    def test_invalid_screenshot_type(self, client):
        r = client.post(
            "/transactions/screenshot",
            data={"transaction_hash": "0xabc"},
            files={"file": ("proof.pdf", b"%PDF-1.4", "application/pdf")},
            headers=USER
        )
        assert r.status_code == 400


class TestWithdrawalFlow:

    def test_withdrawal_approval_debits_principal(self, client):
        wallet_id = create_wallet(client)
        fund(client, wallet_id, "800")

        r = client.post("/transactions/withdrawal", json={
            "wallet_id": wallet_id, "amount": "300",
            "withdrawal_type": "principal", "withdrawal_address": "TUser999"
        }, headers=USER)
        assert r.status_code == 201
        transaction_id = r.json()["transaction"]["id"]

        r = client.post(f"/admin/transactions/{transaction_id}/approve", headers=ADMIN)
        assert Decimal(r.json()["portfolio"]["principal_amount"]) == Decimal('500')

    def test_withdrawal_exceeding_balance(self, client):
        wallet_id = create_wallet(client)
        fund(client, wallet_id, "200")

        r = client.post("/transactions/withdrawal", json={
            "wallet_id": wallet_id, "amount": "250",
            "withdrawal_type": "principal", "withdrawal_address": "TUser999"
        }, headers=USER)

        assert r.status_code == 400
        assert r.json()["error"] == "insufficient_funds"


class TestInterestFlow:

    def test_apply_rate_and_run_accrual(self, client):
        wallet_id = create_wallet(client)
        fund(client, wallet_id, "1000")

        r = client.post("/admin/interest", json={
            "user_id": "user1", "interest_rate": "12", "duration": 30
        }, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["portfolio"]["remaining_days"] == 30
        assert r.json()["rate_change"]["changed_by"] == "admin1"

        r = client.post("/admin/accrual/run", json={"accrual_date": "2024-03-01"}, headers=ADMIN)
        assert r.status_code == 200
        assert r.json()["result"]["credited"] == 1

        # Same day again credits nothing
        r = client.post("/admin/accrual/run", json={"accrual_date": "2024-03-01"}, headers=ADMIN)
        assert r.json()["result"]["credited"] == 0

        portfolio = client.get("/portfolio", headers=USER).json()["portfolio"]
        assert Decimal(portfolio["current_accumulated_interest"]) == Decimal('4')
        assert portfolio["remaining_days"] == 29

        history = client.get("/portfolio/interest-history", headers=USER).json()
        assert history["pagination"]["total"] == 1
        assert Decimal(history["interest_history"][0]["daily_interest"]) == Decimal('4')

        rates = client.get("/portfolio/rate-history", headers=USER).json()
        assert rates["rate_changes"][0]["new_rate"] == "12"

    def test_invalid_accrual_date(self, client):
        r = client.post("/admin/accrual/run", json={"accrual_date": "yesterday"}, headers=ADMIN)
        assert r.status_code == 400


class TestWalletEndpoints:

    def test_public_listing_hides_inactive_wallets(self, client):
        active = create_wallet(client, priority=1)
        inactive = create_wallet(client, token="BTC", chain="Bitcoin", priority=5)

        r = client.post(f"/admin/wallets/{inactive}/deactivate", headers=ADMIN)
        assert r.json()["wallet"]["is_active"] is False

        public = client.get("/wallets").json()
        assert [w["id"] for w in public["wallets"]] == [active]
        assert client.get(f"/wallets/{inactive}").status_code == 404

        everything = client.get("/admin/wallets", headers=ADMIN).json()
        assert [w["id"] for w in everything["wallets"]] == [inactive, active]

    def test_update_wallet(self, client):
        wallet_id = create_wallet(client)

        r = client.put(f"/admin/wallets/{wallet_id}", json={"maximum_amount": "5000"}, headers=ADMIN)

        assert r.status_code == 200
        assert r.json()["wallet"]["maximum_amount"] == "5000"

    def test_upload_qr(self, client):
        r = client.post(
            "/admin/wallets/qr",
            files={"file": ("qr.png", PNG, "image/png")},
            headers=ADMIN
        )
        assert r.status_code == 201
        assert r.json()["qr_image_key"].startswith("wallet-qr/admin1/")

    def test_unknown_chain(self, client):
        r = client.post("/admin/wallets", json={
            "wallet_address": "x", "chain": "Dogechain", "token": "DOGE",
            "qr_image_key": "k"
        }, headers=ADMIN)
        assert r.status_code == 400


class TestTransactionQueries:

    def test_user_only_sees_own_transactions(self, client):
        wallet_id = create_wallet(client)
        mine = submit_deposit(client, wallet_id).json()["transaction"]["id"]
        other_headers = {"X-User-Id": "user2"}
        theirs = submit_deposit(client, wallet_id, headers=other_headers).json()["transaction"]["id"]

        listed = client.get("/transactions", headers=USER).json()
        assert [t["id"] for t in listed["transactions"]] == [mine]
        assert client.get(f"/transactions/{theirs}", headers=USER).status_code == 404

        admin_view = client.get("/admin/transactions", params={"status": "pending"}, headers=ADMIN).json()
        assert admin_view["pagination"]["total"] == 2

    def test_invalid_status_filter(self, client):
        r = client.get("/transactions", params={"status": "done"}, headers=USER)
        assert r.status_code == 400

    def test_audit_chain_verifies(self, client):
        wallet_id = create_wallet(client)
        fund(client, wallet_id)

        r = client.get("/admin/audit/verify", headers=ADMIN)
        assert r.json()["valid"] is True

    def test_foreign_transaction_uses_error_body(self, client):
        wallet_id = create_wallet(client)
        theirs = submit_deposit(client, wallet_id, headers={"X-User-Id": "user2"}).json()["transaction"]["id"]

        r = client.get(f"/transactions/{theirs}", headers=USER)

        assert r.status_code == 404
        assert r.json() == {
            "status": "fail",
            "error": "not_found",
            "message": f"Transaction {theirs} not found"
        }


class TestWalletCatalogue:

    def test_inactive_wallet_uses_error_body(self, client):
        wallet_id = create_wallet(client)
        client.post(f"/admin/wallets/{wallet_id}/deactivate", headers=ADMIN)

        r = client.get(f"/wallets/{wallet_id}")

        assert r.status_code == 404
        assert r.json()["error"] == "not_found"
        assert "detail" not in r.json()

    def test_available_chains_and_tokens(self, client):
        create_wallet(client, chain="Tron", token="USDT", network_fee="2")
        create_wallet(client, chain="Ethereum", token="USDT", network_fee="4")
        create_wallet(client, chain="Ethereum", token="ETH")

        chains = client.get("/wallets/chains").json()["chains"]
        assert chains[0] == {"chain": "Ethereum", "wallet_count": 2, "available_tokens": ["ETH", "USDT"]}

        tokens = client.get("/wallets/tokens").json()["tokens"]
        assert tokens[0]["token"] == "USDT"
        assert Decimal(tokens[0]["average_network_fee"]) == Decimal('3')

        tron = client.get("/wallets/tokens", params={"chain": "Tron"}).json()["tokens"]
        assert [t["token"] for t in tron] == ["USDT"]

    def test_delete_wallet_removes_qr_image(self, client, system):
        r = client.post(
            "/admin/wallets/qr",
            files={"file": ("qr.png", PNG, "image/png")},
            headers=ADMIN
        )
        qr_key = r.json()["qr_image_key"]
        wallet_id = create_wallet(client, qr_image_key=qr_key)

        r = client.delete(f"/admin/wallets/{wallet_id}", headers=ADMIN)

        assert r.status_code == 200
        assert not system.object_store.exists(qr_key)
        assert client.get("/admin/wallets", headers=ADMIN).json()["pagination"]["total"] == 0
        assert client.delete(f"/admin/wallets/{wallet_id}", headers=ADMIN).status_code == 404
