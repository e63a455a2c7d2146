"""
Portfolio Ledger Module

Per-user financial state: principal, current monthly rate, accrual duration
and the interest buckets. Balance changes go through the storage layer's
atomic increment with floor guards, never through a load/mutate/save of the
whole document, so settlement and the nightly accrual cannot lose each
other's updates.

Every rate or duration change is appended to an immutable RateChange log.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .amounts import Page, paginate, parse_amount, parse_days
from .audit import AuditTrail, AuditEventType
from .errors import InsufficientFundsError, NotFoundError, PersistenceError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class PortfolioStatus(Enum):
    """Informational portfolio status; accrual is governed by remaining_days"""
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass
class Portfolio(StorageRecord):
    """
    A user's staking portfolio (one per user)

    Invariants: remaining_days <= current_duration_days, principal_amount >= 0,
    current_accumulated_interest >= 0 and total_earned_interest never decreases.
    """
    user_id: str
    principal_amount: Decimal = Decimal('0')
    current_monthly_rate: Decimal = Decimal('0')   # Percent, e.g. 10 means 10%/month
    current_duration_days: int = 0
    remaining_days: int = 0                        # Counts down nightly
    current_accumulated_interest: Decimal = Decimal('0')
    total_earned_interest: Decimal = Decimal('0')
    status: PortfolioStatus = PortfolioStatus.ACTIVE
    last_interest_credit_date: Optional[date] = None

    @property
    def is_accruing(self) -> bool:
        return self.remaining_days > 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Portfolio':
        data = cls._parse_timestamps(data)
        for key in ('principal_amount', 'current_monthly_rate',
                    'current_accumulated_interest', 'total_earned_interest'):
            data[key] = Decimal(str(data.get(key, '0')))
        data['current_duration_days'] = int(data.get('current_duration_days', 0))
        data['remaining_days'] = int(data.get('remaining_days', 0))
        data['status'] = PortfolioStatus(data.get('status', PortfolioStatus.ACTIVE.value))
        if data.get('last_interest_credit_date'):
            data['last_interest_credit_date'] = date.fromisoformat(data['last_interest_credit_date'])
        return cls(**data)


@dataclass
class RateChange(StorageRecord):
    """Immutable record of one rate/duration change applied to a portfolio"""
    portfolio_id: str
    user_id: str
    old_rate: Decimal
    new_rate: Decimal
    old_duration: int
    new_duration: int
    changed_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateChange':
        data = cls._parse_timestamps(data)
        data['old_rate'] = Decimal(str(data['old_rate']))
        data['new_rate'] = Decimal(str(data['new_rate']))
        data['old_duration'] = int(data['old_duration'])
        data['new_duration'] = int(data['new_duration'])
        return cls(**data)


class PortfolioLedger:
    """
    Owns portfolio records and the rate-change log
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        auto_provision: bool = True
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.auto_provision = auto_provision
        self.portfolios_table = "portfolios"
        self.rate_changes_table = "rate_changes"
        self.logger = get_logger("staking.portfolio")

    # Queries

    def get_portfolio(self, user_id: str) -> Optional[Portfolio]:
        """Get a user's portfolio or None"""
        rows = self.storage.find(self.portfolios_table, {"user_id": user_id})
        if rows:
            return Portfolio.from_dict(rows[0])
        return None

    def find_by_user(self, user_id: str) -> Portfolio:
        """Get a user's portfolio, raising NotFoundError if it does not exist"""
        portfolio = self.get_portfolio(user_id)
        if not portfolio:
            raise NotFoundError(f"Portfolio not found for user {user_id}")
        return portfolio

    def get_portfolio_by_id(self, portfolio_id: str) -> Optional[Portfolio]:
        data = self.storage.load(self.portfolios_table, portfolio_id)
        if data:
            return Portfolio.from_dict(data)
        return None

    def list_accruing_portfolios(self) -> List[Portfolio]:
        """All portfolios with remaining_days > 0"""
        portfolios = [Portfolio.from_dict(row) for row in self.storage.load_all(self.portfolios_table)]
        return [p for p in portfolios if p.is_accruing]

    def get_rate_history(self, user_id: str, page: int = 1, limit: int = 10) -> Page[RateChange]:
        """Rate changes for a user, newest first"""
        changes = self._rate_changes(user_id)
        changes.reverse()
        return paginate(changes, page, limit)

    # Provisioning

    def open_portfolio(self, user_id: str) -> Portfolio:
        """
        Create the user's portfolio if it does not exist yet.

        Idempotent: returns the existing portfolio when there is one.
        """
        with self.storage.atomic():
            existing = self.get_portfolio(user_id)
            if existing:
                return existing

            now = datetime.now(timezone.utc)
            portfolio = Portfolio(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id
            )
            self.storage.insert(self.portfolios_table, portfolio.id, portfolio.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PORTFOLIO_CREATED,
                entity_type="portfolio",
                entity_id=portfolio.id,
                metadata={"user_id": user_id}
            )

        log_action(
            self.logger, "info", "Portfolio created",
            user_id=user_id, action="open_portfolio", resource=f"portfolio:{portfolio.id}"
        )
        return portfolio

    def _resolve(self, user_id: str, provision: bool) -> Portfolio:
        portfolio = self.get_portfolio(user_id)
        if portfolio:
            return portfolio
        if provision and self.auto_provision:
            return self.open_portfolio(user_id)
        raise NotFoundError(f"Portfolio not found for user {user_id}")

    # Rate application

    def apply_rate(
        self,
        user_id: str,
        new_rate: Any,
        new_duration: Any,
        changed_by: Optional[str] = None
    ) -> Tuple[Portfolio, RateChange]:
        """
        Apply a monthly rate and accrual duration to a user's portfolio.

        Re-applying a rate restarts the countdown: remaining_days is reset to
        the new duration whatever its previous value was.

        Args:
            user_id: Owner of the portfolio
            new_rate: Monthly rate in percent (10 means 10%/month)
            new_duration: Accrual duration in days
            changed_by: Admin applying the change

        Returns:
            Tuple of (updated Portfolio, appended RateChange)
        """
        rate = parse_amount(new_rate, "interest rate", allow_zero=True)
        duration = parse_days(new_duration)

        with self.storage.atomic():
            portfolio = self._resolve(user_id, provision=True)

            previous = self._rate_changes(user_id)
            old_rate = previous[-1].new_rate if previous else Decimal('0')
            old_duration = previous[-1].new_duration if previous else 0

            updated = self.storage.compare_and_set(
                self.portfolios_table, portfolio.id,
                expected={"user_id": user_id},
                updates={
                    "current_monthly_rate": rate,
                    "current_duration_days": duration,
                    "remaining_days": duration
                }
            )
            if updated is None:
                raise PersistenceError(f"Portfolio {portfolio.id} changed owner or vanished")

            now = datetime.now(timezone.utc)
            rate_change = RateChange(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                portfolio_id=portfolio.id,
                user_id=user_id,
                old_rate=old_rate,
                new_rate=rate,
                old_duration=old_duration,
                new_duration=duration,
                changed_by=changed_by
            )
            record = rate_change.to_dict()
            record['sequence'] = len(previous)
            self.storage.insert(self.rate_changes_table, rate_change.id, record)

            self.audit_trail.log_event(
                event_type=AuditEventType.RATE_APPLIED,
                entity_type="portfolio",
                entity_id=portfolio.id,
                user_id=changed_by,
                metadata={
                    "user_id": user_id,
                    "old_rate": old_rate,
                    "new_rate": rate,
                    "old_duration": old_duration,
                    "new_duration": duration
                }
            )

        log_action(
            self.logger, "info", "Interest rate applied",
            user_id=user_id, action="apply_rate", resource=f"portfolio:{portfolio.id}",
            extra={
                "old_rate": str(old_rate), "new_rate": str(rate),
                "old_duration": old_duration, "new_duration": duration
            }
        )
        return Portfolio.from_dict(updated), rate_change

    def _rate_changes(self, user_id: str) -> List[RateChange]:
        rows = self.storage.find(self.rate_changes_table, {"user_id": user_id})
        rows.sort(key=lambda x: (x.get('sequence', 0), x.get('created_at', '')))
        changes = []
        for row in rows:
            row.pop('sequence', None)
            changes.append(RateChange.from_dict(row))
        return changes

    # Balance mutations

    def credit_principal(self, user_id: str, amount: Any) -> Portfolio:
        """Add to principal; provisions the portfolio on first credit if enabled"""
        amount = parse_amount(amount)

        with self.storage.atomic():
            portfolio = self._resolve(user_id, provision=True)
            updated = self.storage.increment(
                self.portfolios_table, portfolio.id, {"principal_amount": amount}
            )
            if updated is None:
                raise PersistenceError(f"Portfolio {portfolio.id} vanished during credit")

            self.audit_trail.log_event(
                event_type=AuditEventType.PRINCIPAL_CREDITED,
                entity_type="portfolio",
                entity_id=portfolio.id,
                metadata={"user_id": user_id, "amount": amount}
            )

        log_action(
            self.logger, "info", "Principal credited",
            user_id=user_id, action="credit_principal", resource=f"portfolio:{portfolio.id}",
            extra={"amount": str(amount)}
        )
        return Portfolio.from_dict(updated)

    def debit_principal(self, user_id: str, amount: Any) -> Portfolio:
        """Subtract from principal; InsufficientFundsError if it would go negative"""
        return self._debit(
            user_id, amount, "principal_amount", "principal",
            AuditEventType.PRINCIPAL_DEBITED
        )

    def debit_accumulated_interest(self, user_id: str, amount: Any) -> Portfolio:
        """Subtract from accumulated interest; total_earned_interest is untouched"""
        return self._debit(
            user_id, amount, "current_accumulated_interest", "interest",
            AuditEventType.INTEREST_DEBITED
        )

    def _debit(
        self,
        user_id: str,
        amount: Any,
        field_name: str,
        label: str,
        event_type: AuditEventType
    ) -> Portfolio:
        amount = parse_amount(amount)

        with self.storage.atomic():
            portfolio = self._resolve(user_id, provision=False)
            updated = self.storage.increment(
                self.portfolios_table, portfolio.id,
                {field_name: -amount},
                floors={field_name: Decimal('0')}
            )
            if updated is None:
                current = self.get_portfolio_by_id(portfolio.id)
                available = getattr(current, field_name) if current else Decimal('0')
                raise InsufficientFundsError(
                    f"Insufficient {label} amount: available {available}, requested {amount}"
                )

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="portfolio",
                entity_id=portfolio.id,
                metadata={"user_id": user_id, "amount": amount}
            )

        log_action(
            self.logger, "info", f"{label.capitalize()} debited",
            user_id=user_id, action=f"debit_{label}", resource=f"portfolio:{portfolio.id}",
            extra={"amount": str(amount)}
        )
        return Portfolio.from_dict(updated)

    def credit_interest(self, portfolio_id: str, amount: Decimal, accrual_date: date) -> Optional[Portfolio]:
        """
        Credit one day of interest and consume one remaining day.

        Returns:
            Updated Portfolio, or None if the portfolio no longer has any
            remaining days (nothing is written in that case)
        """
        amount = parse_amount(amount, "daily interest", allow_zero=True)
        updated = self.storage.increment(
            self.portfolios_table, portfolio_id,
            {
                "current_accumulated_interest": amount,
                "total_earned_interest": amount,
                "remaining_days": -1
            },
            floors={"remaining_days": 0},
            values={"last_interest_credit_date": accrual_date}
        )
        if updated is None:
            return None
        return Portfolio.from_dict(updated)

    def set_status(self, user_id: str, status: PortfolioStatus, changed_by: Optional[str] = None) -> Portfolio:
        """Mark a portfolio active or paused (informational only)"""
        with self.storage.atomic():
            portfolio = self.find_by_user(user_id)
            updated = self.storage.compare_and_set(
                self.portfolios_table, portfolio.id,
                expected={"user_id": user_id},
                updates={"status": status}
            )
            if updated is None:
                raise PersistenceError(f"Portfolio {portfolio.id} changed owner or vanished")

            self.audit_trail.log_event(
                event_type=AuditEventType.PORTFOLIO_STATUS_CHANGED,
                entity_type="portfolio",
                entity_id=portfolio.id,
                user_id=changed_by,
                metadata={"old_status": portfolio.status, "new_status": status}
            )

        log_action(
            self.logger, "info", "Portfolio status changed",
            user_id=user_id, action="set_status", resource=f"portfolio:{portfolio.id}",
            extra={"status": status.value, "changed_by": changed_by}
        )
        return Portfolio.from_dict(updated)
