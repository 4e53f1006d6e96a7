"""
Account Store Module

Keyed lookup, persist, delete and listing of accounts. The store is the
single owner of account records: services load, modify and put back
through it, and every put is written through to the storage backend
before it reports success.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from .accounts import Account
from .config import AtmConfig, get_config
from .logging_config import get_logger, log_action, mask_card
from .results import ErrorKind, OperationResult
from .security import PinHasher, get_hasher
from .storage import StorageError, StorageInterface


# Demo accounts seeded into an empty store when seed_demo_accounts is set
DEMO_ACCOUNTS = [
    # card number, pin, holder, balance, withdraw limit, locked
    ("1234567890123456", "1234", "Zhang San", "50000.00", "20000.00", False),
    ("2345678901234567", "2345", "Li Si", "100000.00", "30000.00", False),
    ("3456789012345678", "3456", "Wang Wu", "75000.00", "25000.00", True),
]


class AccountStore(ABC):
    """
    Abstract account store

    ``get``, ``list`` and ``exists`` raise StorageError when the backend
    cannot be read; ``put`` and ``remove`` report failure as a result.
    """

    @abstractmethod
    def get(self, card_number: str) -> Optional[Account]:
        """Load an account by card number"""
        pass

    @abstractmethod
    def put(self, account: Account) -> OperationResult:
        """Persist an account under its card number"""
        pass

    @abstractmethod
    def remove(self, card_number: str) -> OperationResult:
        """Delete an account"""
        pass

    @abstractmethod
    def list(self) -> List[Account]:
        """All accounts"""
        pass

    @abstractmethod
    def exists(self, card_number: str) -> bool:
        """Check if an account exists"""
        pass


class StorageAccountStore(AccountStore):
    """Account store backed by a StorageInterface table"""

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[AtmConfig] = None,
        hasher: Optional[PinHasher] = None,
        table_name: str = "accounts"
    ):
        self.storage = storage
        self.config = config or get_config()
        self.hasher = hasher or get_hasher()
        self.table_name = table_name
        self.logger = get_logger("atm.store")
        self._dirty = False

    @property
    def is_dirty(self) -> bool:
        """True while a bootstrapped change has not been flushed"""
        return self._dirty

    def get(self, card_number: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, card_number)
        if data:
            return Account.from_dict(data)
        return None

    def put(self, account: Account) -> OperationResult:
        if not account.is_valid():
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Account data is invalid")

        try:
            self.storage.save(self.table_name, account.card_number, account.to_dict())
        except StorageError as e:
            log_action(
                self.logger, "error", f"Failed to persist account: {e}",
                card_number=account.card_number, action="put", resource="account"
            )
            return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to save account data")

        return OperationResult.ok()

    def remove(self, card_number: str) -> OperationResult:
        try:
            removed = self.storage.delete(self.table_name, card_number)
        except StorageError as e:
            log_action(
                self.logger, "error", f"Failed to delete account: {e}",
                card_number=card_number, action="remove", resource="account"
            )
            return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to save account data")

        if not removed:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Account not found")
        return OperationResult.ok()

    def list(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def exists(self, card_number: str) -> bool:
        return self.storage.exists(self.table_name, card_number)

    def initialize(self) -> OperationResult:
        """
        Bootstrap the store after load

        Seeds demo accounts into an empty store when configured, and makes
        sure the well-known admin card resolves to a valid admin account,
        synthesizing it with the default PIN when it is missing. Any
        synthesized record is saved immediately.
        """
        try:
            if self.config.seed_demo_accounts and self.storage.count(self.table_name) == 0:
                self._seed_demo_accounts()

            admin = self.get(self.config.admin_card_number)
        except StorageError as e:
            self.logger.error(f"Failed to load accounts: {e}")
            return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")

        if admin is not None and admin.is_admin and admin.is_valid():
            return OperationResult.ok(False)

        self.logger.warning(
            f"Admin account {mask_card(self.config.admin_card_number)} missing or invalid, creating default"
        )
        admin = Account.create(
            card_number=self.config.admin_card_number,
            pin=self.config.admin_default_pin,
            holder_name=self.config.admin_holder_name,
            balance=Decimal(self.config.admin_default_balance),
            withdraw_limit=Decimal(self.config.admin_default_withdraw_limit),
            is_admin=True,
            hasher=self.hasher
        )
        self._dirty = True
        result = self.put(admin)
        if not result:
            return result
        self._dirty = False
        return OperationResult.ok(True)

    def _seed_demo_accounts(self) -> None:
        for card_number, pin, holder, balance, limit, locked in DEMO_ACCOUNTS:
            account = Account.create(
                card_number=card_number,
                pin=pin,
                holder_name=holder,
                balance=Decimal(balance),
                withdraw_limit=Decimal(limit),
                is_locked=locked,
                hasher=self.hasher
            )
            self.storage.save(self.table_name, account.card_number, account.to_dict())
        self.logger.info(f"Seeded {len(DEMO_ACCOUNTS)} demo accounts")
