"""
Test suite for deposit/withdrawal submission and settlement

Approval flips status pending -> approved exactly once and applies the
portfolio change in the same unit of work.
"""

import threading
import pytest
from decimal import Decimal
from datetime import date

from portfolio_staking.storage import InMemoryStorage, SQLiteStorage
from portfolio_staking.audit import AuditTrail, AuditEventType
from portfolio_staking.collaborators import InMemoryNotifier, InMemoryObjectStore, Notifier
from portfolio_staking.interest import InterestAccrualEngine
from portfolio_staking.errors import (
    InsufficientFundsError, InvalidStateError, NotFoundError, ValidationError
)
from portfolio_staking.portfolio import PortfolioLedger
from portfolio_staking.transactions import (
    SettlementService, TransactionStatus, TransactionType, WithdrawalType
)
from portfolio_staking.wallets import WalletRegistry


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class SettlementTestBase:

    def make_storage(self):
        return InMemoryStorage()

    def setup_method(self):
        self.storage = self.make_storage()
        self.audit = AuditTrail(self.storage)
        self.ledger = PortfolioLedger(self.storage, self.audit)
        self.wallets = WalletRegistry(self.storage, self.audit)
        self.object_store = InMemoryObjectStore()
        self.notifier = InMemoryNotifier()
        self.settlement = SettlementService(
            self.storage, self.ledger, self.wallets, self.audit,
            object_store=self.object_store, notifier=self.notifier
        )
        self.wallet = self.wallets.create_wallet(
            wallet_address="TXyz123",
            chain="Tron",
            token="USDT",
            qr_image_key="wallet-qr/admin1/qr.png",
            created_by="admin1",
            minimum_amount="100",
            maximum_amount="1000"
        )

    def upload(self, user_id="user1", tx_hash="0xabc"):
        return self.settlement.upload_screenshot(user_id, tx_hash, "proof.png", PNG, "image/png")

    def deposit(self, user_id="user1", amount="500", wallet_id=None):
        return self.settlement.submit_deposit(
            user_id=user_id,
            wallet_id=wallet_id or self.wallet.id,
            amount=amount,
            transaction_hash="0xabc",
            screenshot_key=self.upload(user_id)
        )

    def fund(self, user_id="user1", amount="500"):
        transaction = self.deposit(user_id, amount)
        self.settlement.approve(transaction.id, reviewed_by="admin1")

    def withdraw(self, user_id="user1", amount="100", withdrawal_type="principal"):
        return self.settlement.submit_withdrawal(
            user_id=user_id,
            wallet_id=self.wallet.id,
            amount=amount,
            withdrawal_type=withdrawal_type,
            withdrawal_address="TUser999"
        )


class TestScreenshotUpload(SettlementTestBase):

    def test_upload_returns_scoped_key(self):
        key = self.upload("user1", "0xabc")

        assert key.startswith("transaction/user1/0xabc/")
        assert key.endswith(".png")
        assert self.object_store.get(key) == PNG

    @pytest.mark.parametrize("content,content_type", [
        (b"", "image/png"),
        (PNG, "application/pdf"),
        (b"x" * (5 * 1024 * 1024 + 1), "image/jpeg"),
    ])
    def test_invalid_uploads(self, content, content_type):
        with pytest.raises(ValidationError):
            self.settlement.upload_screenshot("user1", "0xabc", "proof.png", content, content_type)


class TestDepositSubmission(SettlementTestBase):

    def test_deposit_within_bounds(self):
        transaction = self.deposit(amount="500")

        assert transaction.status == TransactionStatus.PENDING
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.amount == Decimal('500')
        assert self.settlement.get_transaction(transaction.id).transaction_hash == "0xabc"
        # Not credited until approval
        assert self.ledger.get_portfolio("user1") is None

    def test_deposit_above_wallet_maximum_creates_nothing(self):
        wallet = self.wallets.update_wallet(self.wallet.id, "admin1", maximum_amount="400")

        with pytest.raises(ValidationError, match="Amount must be between 100 and 400"):
            self.deposit(amount="500", wallet_id=wallet.id)

        assert self.storage.count("transactions") == 0

    def test_deposit_below_minimum(self):
        with pytest.raises(ValidationError):
            self.deposit(amount="99.99")

    def test_deposit_without_limits(self):
        wallet = self.wallets.create_wallet(
            wallet_address="0xopen", chain="Ethereum", token="USDC",
            qr_image_key="wallet-qr/admin1/open.png", created_by="admin1"
        )
        transaction = self.deposit(amount="1000000", wallet_id=wallet.id)
        assert transaction.amount == Decimal('1000000')

    def test_deposit_to_inactive_wallet(self):
        self.wallets.deactivate(self.wallet.id, "admin1")
        with pytest.raises(ValidationError):
            self.deposit()

    def test_deposit_to_unknown_wallet(self):
        with pytest.raises(NotFoundError):
            self.deposit(wallet_id="missing")

    def test_deposit_requires_hash_and_screenshot(self):
        key = self.upload()
        with pytest.raises(ValidationError):
            self.settlement.submit_deposit("user1", self.wallet.id, "500", "", key)
        with pytest.raises(ValidationError):
            self.settlement.submit_deposit("user1", self.wallet.id, "500", "0xabc", "")
        with pytest.raises(ValidationError):
            self.settlement.submit_deposit("user1", self.wallet.id, "500", "0xabc", "transaction/never-uploaded.png")

    @pytest.mark.parametrize("amount", ["0", "-10", "ten"])
    def test_deposit_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            self.deposit(amount=amount)


class TestWithdrawalSubmission(SettlementTestBase):

    def test_principal_withdrawal(self):
        self.fund(amount="500")

        transaction = self.withdraw(amount="200")

        assert transaction.status == TransactionStatus.PENDING
        assert transaction.withdrawal_type == WithdrawalType.PRINCIPAL
        assert transaction.withdrawal_address == "TUser999"
        # Funds are not reserved at submission
        assert self.ledger.find_by_user("user1").principal_amount == Decimal('500')

    def test_withdrawal_exceeding_principal(self):
        self.fund(amount="500")
        with pytest.raises(InsufficientFundsError):
            self.withdraw(amount="500.01")

    def test_interest_withdrawal_checks_accumulated_interest(self):
        self.fund(amount="500")
        with pytest.raises(InsufficientFundsError, match="Insufficient interest amount"):
            self.withdraw(amount="1", withdrawal_type="interest")

    def test_invalid_withdrawal_type(self):
        self.fund()
        with pytest.raises(ValidationError, match="Invalid withdrawal type"):
            self.withdraw(withdrawal_type="bonus")

    def test_withdrawal_without_portfolio(self):
        with pytest.raises(NotFoundError):
            self.withdraw(user_id="stranger")

    def test_withdrawal_requires_address(self):
        self.fund()
        with pytest.raises(ValidationError):
            self.settlement.submit_withdrawal("user1", self.wallet.id, "10", "principal", " ")


class TestApproval(SettlementTestBase):

    def test_approve_deposit_credits_principal(self):
        transaction = self.deposit(amount="500")

        approved = self.settlement.approve(transaction.id, reviewed_by="admin1")

        assert approved.status == TransactionStatus.APPROVED
        assert approved.reviewed_by == "admin1"
        assert approved.reviewed_at is not None
        assert self.ledger.find_by_user("user1").principal_amount == Decimal('500')

    def test_approve_principal_withdrawal_debits_exactly(self):
        self.fund(amount="800")
        transaction = self.withdraw(amount="300")

        self.settlement.approve(transaction.id)

        assert self.ledger.find_by_user("user1").principal_amount == Decimal('500')

    def test_approve_interest_withdrawal(self):
        self.fund(amount="900")
        portfolio = self.ledger.find_by_user("user1")
        self.ledger.apply_rate("user1", "10", 30)
        self.ledger.credit_interest(portfolio.id, Decimal('3'), portfolio.created_at.date())

        transaction = self.withdraw(amount="2", withdrawal_type="interest")
        self.settlement.approve(transaction.id)

        updated = self.ledger.find_by_user("user1")
        assert updated.current_accumulated_interest == Decimal('1')
        assert updated.total_earned_interest == Decimal('3')
        assert updated.principal_amount == Decimal('900')

    def test_second_approval_is_invalid_state(self):
        transaction = self.deposit(amount="500")
        self.settlement.approve(transaction.id)

        with pytest.raises(InvalidStateError):
            self.settlement.approve(transaction.id)

        assert self.ledger.find_by_user("user1").principal_amount == Decimal('500')

    def test_approve_rejected_transaction(self):
        transaction = self.deposit(amount="500")
        self.settlement.reject(transaction.id, reason="Hash not found on chain")

        with pytest.raises(InvalidStateError):
            self.settlement.approve(transaction.id)
        assert self.ledger.get_portfolio("user1") is None

    def test_approve_unknown_transaction(self):
        with pytest.raises(NotFoundError):
            self.settlement.approve("missing")

    def test_insufficient_funds_at_approval_keeps_pending(self):
        self.fund(amount="500")
        first = self.withdraw(amount="400")
        second = self.withdraw(amount="400")

        self.settlement.approve(first.id)
        with pytest.raises(InsufficientFundsError):
            self.settlement.approve(second.id)

        assert self.settlement.get_transaction(second.id).status == TransactionStatus.PENDING
        assert self.ledger.find_by_user("user1").principal_amount == Decimal('100')

        # Still reviewable: rejecting works
        rejected = self.settlement.reject(second.id, reason="Insufficient funds")
        assert rejected.status == TransactionStatus.REJECTED

    def test_concurrent_approvals_settle_once(self):
        self.fund(amount="500")
        transaction = self.withdraw(amount="300")

        outcomes = []
        barrier = threading.Barrier(2)

        def approve():
            barrier.wait()
            try:
                self.settlement.approve(transaction.id, reviewed_by="admin1")
                outcomes.append("approved")
            except InvalidStateError:
                outcomes.append("invalid_state")

        threads = [threading.Thread(target=approve) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["approved", "invalid_state"]
        assert self.ledger.find_by_user("user1").principal_amount == Decimal('200')

    def test_approval_audit_and_notification(self):
        transaction = self.deposit(amount="500")
        self.settlement.approve(transaction.id, reviewed_by="admin1")

        events = self.audit.get_events_for_entity("transaction", transaction.id)
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSACTION_SUBMITTED,
            AuditEventType.TRANSACTION_APPROVED
        ]
        assert self.notifier.sent[-1].user_id == "user1"
        assert self.notifier.sent[-1].subject == "Transaction approved"
        assert self.notifier.sent[-1].metadata["transaction_id"] == transaction.id

    def test_notifier_failure_does_not_undo_settlement(self):
        class BrokenNotifier(Notifier):
            def notify(self, user_id, subject, message, metadata=None):
                raise ConnectionError("mail server down")

        self.settlement.notifier = BrokenNotifier()
        transaction = self.deposit(amount="500")

        approved = self.settlement.approve(transaction.id)

        assert approved.status == TransactionStatus.APPROVED
        assert self.ledger.find_by_user("user1").principal_amount == Decimal('500')


class TestRejection(SettlementTestBase):

    def test_reject_leaves_portfolio_untouched(self):
        self.fund(amount="500")
        transaction = self.withdraw(amount="200")

        rejected = self.settlement.reject(transaction.id, reason="Address mismatch", reviewed_by="admin2")

        assert rejected.status == TransactionStatus.REJECTED
        assert rejected.rejection_reason == "Address mismatch"
        assert rejected.reviewed_by == "admin2"
        assert self.ledger.find_by_user("user1").principal_amount == Decimal('500')
        assert "Address mismatch" in self.notifier.sent[-1].message

    def test_reject_twice(self):
        transaction = self.deposit()
        self.settlement.reject(transaction.id)
        with pytest.raises(InvalidStateError):
            self.settlement.reject(transaction.id)

    def test_reject_approved(self):
        transaction = self.deposit()
        self.settlement.approve(transaction.id)
        with pytest.raises(InvalidStateError):
            self.settlement.reject(transaction.id)


class TestQueries(SettlementTestBase):

    def test_list_transactions_filters(self):
        self.fund("user1", "500")
        withdrawal = self.withdraw("user1", "100")
        other = self.deposit("user2", "300")

        mine = self.settlement.list_transactions(user_id="user1")
        assert mine.total == 2
        assert mine.items[0].id == withdrawal.id

        pending = self.settlement.list_transactions(status=TransactionStatus.PENDING)
        assert {t.id for t in pending.items} == {withdrawal.id, other.id}

        deposits = self.settlement.list_transactions(transaction_type=TransactionType.DEPOSIT)
        assert deposits.total == 2

    def test_screenshot_url(self):
        transaction = self.deposit()
        url = self.settlement.get_screenshot_url(transaction, expires_in=60)
        assert url.startswith("memory://staking/transaction/user1/0xabc/")

        self.fund("user9", "500")
        withdrawal = self.withdraw("user9", "10")
        assert self.settlement.get_screenshot_url(withdrawal) is None


class TestSQLiteSettlement(SettlementTestBase):
    """Settlement against the persistent backend"""

    def setup_method(self):
        # Wired in the fixture, the database lives under tmp_path
        pass

    def make_storage(self):
        return SQLiteStorage(self.db_path)

    @pytest.fixture(autouse=True)
    def sqlite_backend(self, tmp_path):
        self.db_path = tmp_path / "settlement.db"
        SettlementTestBase.setup_method(self)
        yield
        self.storage.close()

    def test_deposit_and_withdrawal_round(self):
        self.fund(amount="500")
        transaction = self.withdraw(amount="120")
        self.settlement.approve(transaction.id)

        assert self.ledger.find_by_user("user1").principal_amount == Decimal('380')

    def test_failed_approval_rolls_back_status(self):
        self.fund(amount="100")
        first = self.withdraw(amount="80")
        second = self.withdraw(amount="80")
        self.settlement.approve(first.id)

        with pytest.raises(InsufficientFundsError):
            self.settlement.approve(second.id)

        assert self.settlement.get_transaction(second.id).status == TransactionStatus.PENDING
        assert self.audit.verify_integrity()["valid"]

    def test_accrual_and_withdrawal_approvals_run_concurrently(self):
        engine = InterestAccrualEngine(self.storage, self.ledger, self.audit)
        accrual_date = date(2024, 3, 1)
        users = [f"user{i}" for i in range(20)]
        withdrawals = []
        for user_id in users:
            self.fund(user_id, amount="1000")
            self.ledger.apply_rate(user_id, "12", 30)
            withdrawals.append(self.withdraw(user_id, amount="100"))

        errors = []
        results = []
        barrier = threading.Barrier(2)

        def approve_all():
            barrier.wait()
            try:
                for transaction in withdrawals:
                    self.settlement.approve(transaction.id, reviewed_by="admin1")
            except Exception as e:
                errors.append(e)

        def accrue():
            barrier.wait()
            try:
                results.append(engine.run_daily_accrual(accrual_date))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=approve_all), threading.Thread(target=accrue)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert results[0].ok
        assert results[0].credited == len(users)

        for user_id in users:
            portfolio = self.ledger.find_by_user(user_id)
            history = engine.get_interest_history(user_id)
            assert history.total == 1
            credited = history.items[0].daily_interest
            # Accrual saw the principal either before or after the withdrawal
            assert credited in (Decimal('4'), Decimal('3.6'))
            assert portfolio.principal_amount == Decimal('900')
            assert portfolio.remaining_days == 29
            assert portfolio.current_accumulated_interest == credited
            assert portfolio.total_earned_interest == credited

        assert all(
            self.settlement.get_transaction(t.id).status == TransactionStatus.APPROVED
            for t in withdrawals
        )
        assert self.audit.verify_integrity()["valid"]
