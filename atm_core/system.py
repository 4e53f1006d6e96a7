"""
ATM System Module

Wires the storage backend, account store, ledger, audit trail and services
from an AtmConfig.
"""

from datetime import datetime
from typing import Callable, Optional

from .account_service import AccountService
from .admin_service import AdminService
from .analytics import AnalyticsService
from .audit import AuditEventType, AuditTrail
from .config import AtmConfig, get_config
from .ledger import TransactionLedger
from .locks import KeyedLockManager
from .logging_config import get_logger, setup_logging
from .repository import StorageAccountStore
from .security import PinHasher
from .storage import InMemoryStorage, JSONFileStorage, StorageInterface
from .validator import AccountValidator


class AtmSystem:
    """ATM engine with all components initialized"""

    def __init__(
        self,
        config: Optional[AtmConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        if self.config.configure_logging:
            setup_logging(
                self.config.log_level, logger_name="atm",
                log_format=self.config.log_format, log_file=self.config.log_file
            )
        self.logger = get_logger("atm.system")

        # Initialize storage
        self.storage = storage or self._create_storage()
        self.hasher = PinHasher(
            n=self.config.pin_hash_n, r=self.config.pin_hash_r, p=self.config.pin_hash_p
        )

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = TransactionLedger(self.storage, clock=clock)
        self.store = StorageAccountStore(self.storage, self.config, self.hasher)
        self.validator = AccountValidator(self.store, self.config, self.hasher)
        self.lock_manager = KeyedLockManager()

        self.account_service = AccountService(
            self.store, self.validator, self.ledger, self.audit_trail,
            lock_manager=self.lock_manager, config=self.config,
            hasher=self.hasher, clock=clock
        )
        self.admin_service = AdminService(
            self.store, self.validator, self.audit_trail,
            lock_manager=self.lock_manager, config=self.config, hasher=self.hasher,
            ledger=self.ledger
        )
        self.analytics = AnalyticsService(self.ledger, self.store, self.config, clock=clock)

        self._bootstrap()

    def _create_storage(self) -> StorageInterface:
        """Create the storage backend named by configuration"""
        backend = self.config.storage_backend.lower()
        if backend == "memory":
            return InMemoryStorage()
        if backend == "json":
            return JSONFileStorage(self.config.data_dir)
        raise ValueError(f"Unknown storage backend: {self.config.storage_backend}")

    def _bootstrap(self) -> None:
        result = self.store.initialize()
        if not result:
            self.logger.error(f"Account store bootstrap failed: {result.error_message}")
            return
        if result.value and self.config.enable_audit_logging:
            self.audit_trail.log_event(
                AuditEventType.ADMIN_BOOTSTRAPPED, self.config.admin_card_number
            )

    def close(self) -> None:
        self.storage.close()
