"""
Shared fixtures for the ATM core test suite
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Set, Tuple

from atm_core.accounts import Account
from atm_core.config import AtmConfig
from atm_core.security import PinHasher, set_hasher
from atm_core.storage import InMemoryStorage, StorageError
from atm_core.system import AtmSystem


CARD_A = "1111222233334444"
CARD_B = "5555666677778888"
CARD_C = "9000800070006000"
ADMIN_CARD = "9999888877776666"


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FlakyStorage(InMemoryStorage):
    """In-memory storage that can be told to fail specific writes or reads"""

    def __init__(self):
        super().__init__()
        self.failing_records: Set[Tuple[str, str]] = set()
        self.failing_tables: Set[str] = set()
        self.save_budget: Dict[str, int] = {}
        self.fail_reads = False

    def limit_saves(self, table: str, allowed: int) -> None:
        """Let ``allowed`` more saves into ``table`` succeed, then fail"""
        self.save_budget[table] = allowed

    def save(self, table, record_id, data):
        if table in self.failing_tables or (table, record_id) in self.failing_records:
            raise StorageError(f"Simulated write failure on {table}/{record_id}")
        if table in self.save_budget:
            if self.save_budget[table] <= 0:
                raise StorageError(f"Simulated write failure on {table}/{record_id}")
            self.save_budget[table] -= 1
        super().save(table, record_id, data)

    def load(self, table, record_id):
        if self.fail_reads:
            raise StorageError(f"Simulated read failure on {table}/{record_id}")
        return super().load(table, record_id)

    def exists(self, table, record_id):
        if self.fail_reads:
            raise StorageError(f"Simulated read failure on {table}/{record_id}")
        return super().exists(table, record_id)


@pytest.fixture(autouse=True)
def fast_hasher():
    """Cheap scrypt parameters for the process-wide hasher"""
    hasher = PinHasher(n=2, r=1, p=1)
    set_hasher(hasher)
    yield hasher
    set_hasher(None)


@pytest.fixture
def config():
    return AtmConfig(storage_backend="memory", pin_hash_n=2, pin_hash_r=1, pin_hash_p=1,
                     configure_logging=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return FlakyStorage()


@pytest.fixture
def system(config, storage, clock):
    return AtmSystem(config=config, storage=storage, clock=clock)


@pytest.fixture
def make_account(system):
    """Put an account straight into the system's store"""
    def _make(card_number=CARD_A, pin="1234", holder_name="Test Holder",
              balance="500.00", withdraw_limit="200.00", is_locked=False, is_admin=False):
        account = Account.create(
            card_number=card_number,
            pin=pin,
            holder_name=holder_name,
            balance=Decimal(balance),
            withdraw_limit=Decimal(withdraw_limit),
            is_locked=is_locked,
            is_admin=is_admin,
            hasher=system.hasher
        )
        assert system.store.put(account)
        return account
    return _make
