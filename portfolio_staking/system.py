"""
Component wiring
"""

from typing import Optional

from .audit import AuditTrail
from .collaborators import InMemoryObjectStore, LoggingNotifier, Notifier, ObjectStore
from .config import StakingConfig, get_config
from .interest import InterestAccrualEngine
from .portfolio import PortfolioLedger
from .scheduler import AccrualScheduler
from .storage import StorageInterface, create_storage
from .transactions import SettlementService
from .wallets import WalletRegistry


class StakingSystem:
    """Portfolio staking core with all components initialized"""

    def __init__(
        self,
        config: Optional[StakingConfig] = None,
        storage: Optional[StorageInterface] = None,
        object_store: Optional[ObjectStore] = None,
        notifier: Optional[Notifier] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(self.config.storage_backend, self.config.sqlite_path)
        self.storage = storage

        # Collaborators
        self.object_store = object_store or InMemoryObjectStore()
        self.notifier = notifier or LoggingNotifier()

        # Core components
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = PortfolioLedger(
            self.storage, self.audit_trail,
            auto_provision=self.config.auto_provision_portfolios
        )
        self.wallet_registry = WalletRegistry(self.storage, self.audit_trail)
        self.interest_engine = InterestAccrualEngine(
            self.storage, self.ledger, self.audit_trail,
            days_per_month=self.config.days_per_month,
            timezone_name=self.config.accrual_timezone
        )
        self.settlement = SettlementService(
            self.storage, self.ledger, self.wallet_registry, self.audit_trail,
            object_store=self.object_store,
            notifier=self.notifier
        )
        self.scheduler = AccrualScheduler(
            self.interest_engine,
            hour=self.config.accrual_hour,
            minute=self.config.accrual_minute,
            timezone=self.config.accrual_timezone
        )

    def start(self) -> None:
        if self.config.scheduler_enabled:
            self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.storage.close()
