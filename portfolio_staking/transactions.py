"""
Transaction Settlement Module

Users submit deposit and withdrawal requests; admins approve or reject them.
A transaction leaves ``pending`` exactly once. Approval flips the status with
a compare-and-set on ``status == pending`` and applies the portfolio credit
or debit in the same unit of work, so the portfolio is mutated exactly once
and a failed debit leaves the transaction pending.

Withdrawal funds are checked at submission but not reserved; sufficiency is
checked again, atomically, at approval time.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum
import uuid

from .amounts import Page, paginate, parse_amount
from .audit import AuditTrail, AuditEventType
from .collaborators import Notifier, ObjectStore, validate_image
from .errors import InsufficientFundsError, InvalidStateError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .portfolio import PortfolioLedger
from .storage import StorageInterface, StorageRecord
from .wallets import WalletRegistry


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(Enum):
    """pending -> approved | rejected; both terminal"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalType(Enum):
    """Which portfolio bucket a withdrawal draws from"""
    PRINCIPAL = "principal"
    INTEREST = "interest"


@dataclass
class Transaction(StorageRecord):
    """
    Deposit or withdrawal request
    """
    user_id: str
    wallet_id: str
    transaction_type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING

    # Deposit details
    transaction_hash: Optional[str] = None
    screenshot_key: Optional[str] = None

    # Withdrawal details
    withdrawal_type: Optional[WithdrawalType] = None
    withdrawal_address: Optional[str] = None

    # Review
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def is_deposit(self) -> bool:
        return self.transaction_type == TransactionType.DEPOSIT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = cls._parse_timestamps(data)
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['status'] = TransactionStatus(data['status'])
        data['amount'] = Decimal(str(data['amount']))
        if data.get('withdrawal_type'):
            data['withdrawal_type'] = WithdrawalType(data['withdrawal_type'])
        if isinstance(data.get('reviewed_at'), str):
            data['reviewed_at'] = datetime.fromisoformat(data['reviewed_at'])
        return cls(**data)


def _parse_withdrawal_type(value: Any) -> WithdrawalType:
    if isinstance(value, WithdrawalType):
        return value
    try:
        return WithdrawalType(value)
    except ValueError:
        raise ValidationError(f"Invalid withdrawal type {value!r}; expected principal or interest")


def _required(value: Optional[str], message: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(message)
    return str(value).strip()


class SettlementService:
    """
    Records deposit/withdrawal requests and settles them against portfolios
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: PortfolioLedger,
        wallets: WalletRegistry,
        audit_trail: AuditTrail,
        object_store: Optional[ObjectStore] = None,
        notifier: Optional[Notifier] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.wallets = wallets
        self.audit_trail = audit_trail
        self.object_store = object_store
        self.notifier = notifier
        self.table_name = "transactions"
        self.logger = get_logger("staking.transactions")

    # Submission

    def upload_screenshot(
        self,
        user_id: str,
        transaction_hash: str,
        filename: str,
        content: bytes,
        content_type: str
    ) -> str:
        """Store a deposit screenshot and return its object key"""
        if self.object_store is None:
            raise ValidationError("Screenshot uploads are not configured")
        validate_image(content, content_type)
        transaction_hash = _required(transaction_hash, "Transaction hash is required")
        key = self.object_store.generate_file_key(
            filename, "transaction", f"{user_id}/{transaction_hash}"
        )
        return self.object_store.upload_file(content, key, content_type)

    def submit_deposit(
        self,
        user_id: str,
        wallet_id: str,
        amount: Any,
        transaction_hash: str,
        screenshot_key: str
    ) -> Transaction:
        """
        Record a pending deposit. The portfolio is not touched until approval.

        Args:
            user_id: Depositing user
            wallet_id: Active wallet the funds were sent to
            amount: Deposited amount; must respect the wallet's bounds
            transaction_hash: On-chain hash supplied by the user
            screenshot_key: Object-storage key of the transfer screenshot

        Returns:
            Created Transaction in PENDING status
        """
        amount = parse_amount(amount)
        transaction_hash = _required(transaction_hash, "Transaction hash is required")
        screenshot_key = _required(screenshot_key, "Screenshot is required")
        if self.object_store is not None and not self.object_store.exists(screenshot_key):
            raise ValidationError(f"Screenshot {screenshot_key} has not been uploaded")

        wallet = self.wallets.get_active_wallet(wallet_id)
        self.wallets.check_amount(wallet, amount)

        return self._create(
            user_id=user_id,
            wallet_id=wallet.id,
            transaction_type=TransactionType.DEPOSIT,
            amount=amount,
            transaction_hash=transaction_hash,
            screenshot_key=screenshot_key
        )

    def submit_withdrawal(
        self,
        user_id: str,
        wallet_id: str,
        amount: Any,
        withdrawal_type: Any,
        withdrawal_address: str
    ) -> Transaction:
        """
        Record a pending withdrawal after checking the chosen bucket covers it.

        Funds are checked, not reserved.
        """
        amount = parse_amount(amount)
        withdrawal_type = _parse_withdrawal_type(withdrawal_type)
        withdrawal_address = _required(withdrawal_address, "Withdrawal address is required")

        wallet = self.wallets.get_active_wallet(wallet_id)
        portfolio = self.ledger.find_by_user(user_id)

        if withdrawal_type == WithdrawalType.PRINCIPAL:
            available = portfolio.principal_amount
        else:
            available = portfolio.current_accumulated_interest
        if amount > available:
            raise InsufficientFundsError(
                f"Insufficient {withdrawal_type.value} amount: available {available}, requested {amount}"
            )

        return self._create(
            user_id=user_id,
            wallet_id=wallet.id,
            transaction_type=TransactionType.WITHDRAWAL,
            amount=amount,
            withdrawal_type=withdrawal_type,
            withdrawal_address=withdrawal_address
        )

    def _create(self, **fields) -> Transaction:
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            **fields
        )

        with self.storage.atomic():
            self.storage.insert(self.table_name, transaction.id, transaction.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_SUBMITTED,
                entity_type="transaction",
                entity_id=transaction.id,
                user_id=transaction.user_id,
                metadata={
                    "transaction_type": transaction.transaction_type,
                    "amount": transaction.amount,
                    "wallet_id": transaction.wallet_id,
                    "withdrawal_type": transaction.withdrawal_type
                }
            )

        log_action(
            self.logger, "info", f"{transaction.transaction_type.value.capitalize()} submitted",
            user_id=transaction.user_id, action="submit_transaction",
            resource=f"transaction:{transaction.id}",
            extra={
                "amount": str(transaction.amount),
                "wallet_id": transaction.wallet_id,
                "withdrawal_type": transaction.withdrawal_type.value if transaction.withdrawal_type else None
            }
        )
        return transaction

    # Review

    def approve(self, transaction_id: str, reviewed_by: Optional[str] = None) -> Transaction:
        """
        Approve a pending transaction and settle it against the portfolio

        Raises:
            NotFoundError: unknown transaction
            InvalidStateError: transaction is no longer pending
            InsufficientFundsError: the withdrawal is no longer covered; the
                transaction stays pending
        """
        with self.storage.atomic():
            transaction = self.get_transaction(transaction_id)
            updated = self.storage.compare_and_set(
                self.table_name, transaction_id,
                expected={"status": TransactionStatus.PENDING},
                updates={
                    "status": TransactionStatus.APPROVED,
                    "reviewed_by": reviewed_by,
                    "reviewed_at": datetime.now(timezone.utc)
                }
            )
            if updated is None:
                raise self._not_pending(transaction_id, "approved")

            self._settle(transaction)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_APPROVED,
                entity_type="transaction",
                entity_id=transaction_id,
                user_id=reviewed_by,
                metadata={
                    "user_id": transaction.user_id,
                    "transaction_type": transaction.transaction_type,
                    "withdrawal_type": transaction.withdrawal_type,
                    "amount": transaction.amount
                }
            )

        approved = Transaction.from_dict(updated)
        log_action(
            self.logger, "info", "Transaction approved",
            user_id=approved.user_id, action="approve_transaction",
            resource=f"transaction:{transaction_id}",
            extra={"reviewed_by": reviewed_by, "amount": str(approved.amount)}
        )
        self._notify(
            approved, "Transaction approved",
            f"Your {approved.transaction_type.value} of {approved.amount} has been approved."
        )
        return approved

    def reject(
        self,
        transaction_id: str,
        reason: Optional[str] = None,
        reviewed_by: Optional[str] = None
    ) -> Transaction:
        """Reject a pending transaction; the portfolio is never touched"""
        with self.storage.atomic():
            self.get_transaction(transaction_id)
            updated = self.storage.compare_and_set(
                self.table_name, transaction_id,
                expected={"status": TransactionStatus.PENDING},
                updates={
                    "status": TransactionStatus.REJECTED,
                    "rejection_reason": reason,
                    "reviewed_by": reviewed_by,
                    "reviewed_at": datetime.now(timezone.utc)
                }
            )
            if updated is None:
                raise self._not_pending(transaction_id, "rejected")

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_REJECTED,
                entity_type="transaction",
                entity_id=transaction_id,
                user_id=reviewed_by,
                metadata={"reason": reason}
            )

        rejected = Transaction.from_dict(updated)
        log_action(
            self.logger, "info", "Transaction rejected",
            user_id=rejected.user_id, action="reject_transaction",
            resource=f"transaction:{transaction_id}",
            extra={"reviewed_by": reviewed_by, "reason": reason}
        )
        message = f"Your {rejected.transaction_type.value} of {rejected.amount} has been rejected."
        if reason:
            message += f" Reason: {reason}"
        self._notify(rejected, "Transaction rejected", message)
        return rejected

    def _not_pending(self, transaction_id: str, verb: str) -> InvalidStateError:
        current = self.get_transaction(transaction_id)
        return InvalidStateError(
            f"Transaction {transaction_id} is {current.status.value}; "
            f"only pending transactions can be {verb}"
        )

    def _settle(self, transaction: Transaction) -> None:
        """Apply the approved transaction to the user's portfolio"""
        if transaction.transaction_type == TransactionType.DEPOSIT:
            self.ledger.credit_principal(transaction.user_id, transaction.amount)
        elif transaction.withdrawal_type == WithdrawalType.PRINCIPAL:
            self.ledger.debit_principal(transaction.user_id, transaction.amount)
        elif transaction.withdrawal_type == WithdrawalType.INTEREST:
            self.ledger.debit_accumulated_interest(transaction.user_id, transaction.amount)
        else:
            raise ValidationError(f"Transaction {transaction.id} has no valid withdrawal type")

    def _notify(self, transaction: Transaction, subject: str, message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(
                transaction.user_id, subject, message,
                {"transaction_id": transaction.id, "status": transaction.status.value}
            )
        except Exception:
            # Settlement is already committed
            self.logger.exception("Notification failed for transaction %s", transaction.id)

    # Queries

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Get transaction by ID, raising NotFoundError if absent"""
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data)

    def list_transactions(
        self,
        user_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
        transaction_type: Optional[TransactionType] = None,
        page: int = 1,
        limit: int = 10
    ) -> Page[Transaction]:
        """Transactions matching the filters, newest first"""
        filters: Dict[str, Any] = {}
        if user_id is not None:
            filters["user_id"] = user_id
        if status is not None:
            filters["status"] = status
        if transaction_type is not None:
            filters["transaction_type"] = transaction_type

        transactions = [Transaction.from_dict(row) for row in self.storage.find(self.table_name, filters)]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return paginate(transactions, page, limit)

    def get_screenshot_url(self, transaction: Transaction, expires_in: int = 3600) -> Optional[str]:
        """Presigned URL for a deposit's screenshot, if any"""
        if not transaction.screenshot_key or self.object_store is None:
            return None
        return self.object_store.generate_presigned_url(transaction.screenshot_key, expires_in)
