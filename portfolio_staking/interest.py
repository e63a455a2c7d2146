"""
Interest Engine Module

Runs the daily interest accrual over every portfolio that still has remaining
days, and keeps the per-day InterestHistory log used for statements.

Daily interest is simple interest on principal with a flat 30-day month:

    daily_interest = principal * (monthly_rate / 100) / 30

Calendar month length is ignored. Interest never compounds: accumulated
interest is not added to principal.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from .amounts import Page, paginate
from .audit import AuditTrail, AuditEventType
from .errors import PersistenceError
from .logging_config import get_logger, log_action
from .portfolio import Portfolio, PortfolioLedger
from .storage import StorageInterface, StorageRecord


@dataclass
class InterestHistory(StorageRecord):
    """Interest credited to one portfolio for one day"""
    portfolio_id: str
    user_id: str
    principal_amount: Decimal   # Principal used for the computation
    monthly_rate: Decimal       # Percent
    daily_interest: Decimal
    date: date

    @staticmethod
    def record_id(portfolio_id: str, accrual_date: date) -> str:
        """One row per portfolio per day"""
        return f"{portfolio_id}:{accrual_date.isoformat()}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InterestHistory':
        data = cls._parse_timestamps(data)
        data['principal_amount'] = Decimal(str(data['principal_amount']))
        data['monthly_rate'] = Decimal(str(data['monthly_rate']))
        data['daily_interest'] = Decimal(str(data['daily_interest']))
        data['date'] = date.fromisoformat(data['date'])
        return cls(**data)


@dataclass
class AccrualRunResult:
    """Outcome of one run_daily_accrual call"""
    accrual_date: date
    eligible: int = 0
    credited: int = 0
    skipped: int = 0
    total_interest: Decimal = Decimal('0')
    failures: Dict[str, str] = field(default_factory=dict)  # portfolio_id -> error

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accrual_date": self.accrual_date.isoformat(),
            "eligible": self.eligible,
            "credited": self.credited,
            "skipped": self.skipped,
            "total_interest": str(self.total_interest),
            "failures": dict(self.failures)
        }


def calculate_daily_interest(principal: Decimal, monthly_rate: Decimal, days_per_month: int = 30) -> Decimal:
    """Simple daily interest for a monthly percentage rate"""
    return principal * (monthly_rate / Decimal(100)) / Decimal(days_per_month)


class InterestAccrualEngine:
    """
    Credits one day of interest to every portfolio with remaining days.

    Each portfolio is processed in its own unit of work. A portfolio already
    credited for the accrual date is skipped, so invoking the run twice on
    the same day does not double-credit.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: PortfolioLedger,
        audit_trail: AuditTrail,
        days_per_month: int = 30,
        timezone_name: str = "UTC"
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.days_per_month = days_per_month
        self.timezone = ZoneInfo(timezone_name)
        self.history_table = "interest_history"
        self.logger = get_logger("staking.interest")

    def today(self) -> date:
        return datetime.now(self.timezone).date()

    def run_daily_accrual(self, accrual_date: Optional[date] = None) -> AccrualRunResult:
        """
        Run daily interest accrual for all eligible portfolios

        Args:
            accrual_date: Day being credited (defaults to today in the
                configured timezone)

        Returns:
            AccrualRunResult with counts and any per-portfolio failures
        """
        if not accrual_date:
            accrual_date = self.today()

        result = AccrualRunResult(accrual_date=accrual_date)
        portfolios = self.ledger.list_accruing_portfolios()
        result.eligible = len(portfolios)

        self.logger.info(
            "Starting interest accrual for %s (%d eligible portfolios)",
            accrual_date.isoformat(), result.eligible
        )

        for portfolio in portfolios:
            try:
                entry = self._accrue_portfolio(portfolio.id, accrual_date)
            except Exception as e:
                # Isolate the failure; the remaining portfolios still run
                result.failures[portfolio.id] = str(e)
                self.logger.exception(
                    "Interest accrual failed for portfolio %s", portfolio.id
                )
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCRUAL_FAILED,
                    entity_type="portfolio",
                    entity_id=portfolio.id,
                    metadata={
                        "accrual_date": accrual_date,
                        "error": str(e)
                    }
                )
                continue

            if entry is None:
                result.skipped += 1
            else:
                result.credited += 1
                result.total_interest += entry.daily_interest

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCRUAL_RUN_COMPLETED,
            entity_type="accrual_run",
            entity_id=accrual_date.isoformat(),
            metadata=result.to_dict()
        )

        level = "info" if result.ok else "error"
        log_action(
            self.logger, level,
            f"Interest accrual completed: {result.credited} credited, "
            f"{result.skipped} skipped, {len(result.failures)} failed",
            action="run_daily_accrual", resource=f"accrual_run:{accrual_date.isoformat()}",
            extra=result.to_dict()
        )
        return result

    def _accrue_portfolio(self, portfolio_id: str, accrual_date: date) -> Optional[InterestHistory]:
        """
        Credit one day to a single portfolio.

        Returns:
            The InterestHistory row written, or None when the portfolio was
            already credited for this date or has no remaining days left
        """
        history_id = InterestHistory.record_id(portfolio_id, accrual_date)

        with self.storage.atomic():
            if self.storage.exists(self.history_table, history_id):
                return None

            portfolio = self.ledger.get_portfolio_by_id(portfolio_id)
            if portfolio is None or not portfolio.is_accruing:
                return None

            daily_interest = calculate_daily_interest(
                portfolio.principal_amount,
                portfolio.current_monthly_rate,
                self.days_per_month
            )

            now = datetime.now(timezone.utc)
            entry = InterestHistory(
                id=history_id,
                created_at=now,
                updated_at=now,
                portfolio_id=portfolio.id,
                user_id=portfolio.user_id,
                principal_amount=portfolio.principal_amount,
                monthly_rate=portfolio.current_monthly_rate,
                daily_interest=daily_interest,
                date=accrual_date
            )
            credited = self.ledger.credit_interest(portfolio.id, daily_interest, accrual_date)
            if credited is None:
                return None

            if not self.storage.insert(self.history_table, history_id, entry.to_dict()):
                # Rolls back the credit above
                raise PersistenceError(
                    f"Interest for portfolio {portfolio_id} on {accrual_date} already recorded"
                )

            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_ACCRUED,
                entity_type="portfolio",
                entity_id=portfolio.id,
                metadata={
                    "user_id": portfolio.user_id,
                    "accrual_date": accrual_date,
                    "principal_amount": portfolio.principal_amount,
                    "monthly_rate": portfolio.current_monthly_rate,
                    "daily_interest": daily_interest,
                    "remaining_days": credited.remaining_days
                }
            )

        return entry

    def get_interest_history(self, user_id: str, page: int = 1, limit: int = 10) -> Page[InterestHistory]:
        """Interest credits for a user, newest first"""
        rows = self.storage.find(self.history_table, {"user_id": user_id})
        entries = [InterestHistory.from_dict(row) for row in rows]
        entries.sort(key=lambda e: (e.date, e.created_at), reverse=True)
        return paginate(entries, page, limit)

    def get_portfolio_history(self, portfolio: Portfolio) -> List[InterestHistory]:
        """All interest credits for one portfolio, oldest first"""
        rows = self.storage.find(self.history_table, {"portfolio_id": portfolio.id})
        entries = [InterestHistory.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.date)
        return entries
