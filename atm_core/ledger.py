"""
Transaction Ledger Module

Append-only history of completed operations. Records are immutable, kept
in insertion order and never updated or deleted; a record is on storage
before the operation that produced it reports success.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
import threading
import uuid

from .logging_config import get_logger, log_action
from .results import ErrorKind, OperationResult
from .storage import StorageError, StorageInterface


class TransactionType(Enum):
    """Types of ledger entries"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BALANCE_INQUIRY = "balance_inquiry"
    TRANSFER = "transfer"
    OTHER = "other"


# Entry types that move money and therefore need a positive amount
MONEY_TYPES = {TransactionType.DEPOSIT, TransactionType.WITHDRAWAL, TransactionType.TRANSFER}


@dataclass(frozen=True)
class Transaction:
    """
    Immutable ledger entry

    ``card_number`` is the account the entry belongs to and
    ``balance_after`` is that account's balance once the entry applied.
    ``target_card_number`` names the counterparty of a transfer.
    """
    id: str
    sequence: int
    card_number: str
    timestamp: datetime
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str = ""
    target_card_number: Optional[str] = None

    def __post_init__(self):
        if not self.card_number:
            raise ValueError("Transaction must belong to a card number")
        if self.transaction_type in MONEY_TYPES and self.amount <= 0:
            raise ValueError("Transaction amount must be positive")
        if self.amount < 0:
            raise ValueError("Transaction amount cannot be negative")

    def involves(self, card_number: str) -> bool:
        """True when the card is the source or the target of this entry"""
        return self.card_number == card_number or self.target_card_number == card_number

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'card_number': self.card_number,
            'timestamp': self.timestamp.isoformat(),
            'transaction_type': self.transaction_type.value,
            'amount': str(self.amount),
            'balance_after': str(self.balance_after),
            'description': self.description,
            'target_card_number': self.target_card_number
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            sequence=int(data['sequence']),
            card_number=data['card_number'],
            timestamp=datetime.fromisoformat(data['timestamp']),
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            balance_after=Decimal(data['balance_after']),
            description=data.get('description', ""),
            target_card_number=data.get('target_card_number') or None
        )


@dataclass(frozen=True)
class PendingTransaction:
    """Entry content before the ledger assigns id, sequence and timestamp"""
    card_number: str
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str = ""
    target_card_number: Optional[str] = None


class TransactionLedger:
    """Append-only, storage backed transaction history"""

    def __init__(
        self,
        storage: StorageInterface,
        table_name: str = "transactions",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("atm.ledger")
        self._lock = threading.Lock()
        self._next_sequence = self._load_next_sequence()

    def _load_next_sequence(self) -> int:
        records = self.storage.load_all(self.table_name)
        if not records:
            return 1
        return max(int(r.get('sequence', 0)) for r in records) + 1

    @staticmethod
    def _record_key(sequence: int) -> str:
        return f"{sequence:012d}"

    def append(self, entry: PendingTransaction) -> OperationResult:
        """Add one entry; the stored Transaction is the result value"""
        result = self.append_many([entry])
        if result:
            return OperationResult.ok(result.value[0])
        return result

    def append_many(self, entries: Sequence[PendingTransaction]) -> OperationResult:
        """
        Add several entries as one unit

        Either every entry is stored or none is: entries already written
        when a later write fails are removed again before returning.
        """
        with self._lock:
            now = self.clock()
            written: List[Transaction] = []
            try:
                for offset, entry in enumerate(entries):
                    sequence = self._next_sequence + offset
                    transaction = Transaction(
                        id=str(uuid.uuid4()),
                        sequence=sequence,
                        card_number=entry.card_number,
                        timestamp=now,
                        transaction_type=entry.transaction_type,
                        amount=Decimal(entry.amount),
                        balance_after=Decimal(entry.balance_after),
                        description=entry.description,
                        target_card_number=entry.target_card_number
                    )
                    self.storage.save(self.table_name, self._record_key(sequence), transaction.to_dict())
                    written.append(transaction)
            except StorageError as e:
                self._discard(written)
                log_action(
                    self.logger, "error", f"Failed to append ledger entries: {e}",
                    action="append", resource="ledger"
                )
                return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to record transaction")

            self._next_sequence += len(written)
            for transaction in written:
                log_action(
                    self.logger, "debug",
                    f"Recorded {transaction.transaction_type.value} of {transaction.amount}",
                    card_number=transaction.card_number, action="append", resource="ledger"
                )
            return OperationResult.ok(written)

    def _discard(self, written: List[Transaction]) -> None:
        """Remove entries of a unit that did not complete"""
        for transaction in reversed(written):
            try:
                self.storage.delete(self.table_name, self._record_key(transaction.sequence))
            except StorageError as e:
                self.logger.error(f"Failed to discard partial ledger entry {transaction.id}: {e}")

    def all(self) -> List[Transaction]:
        """Every entry in insertion order"""
        transactions = [Transaction.from_dict(d) for d in self.storage.load_all(self.table_name)]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def for_card(self, card_number: str) -> List[Transaction]:
        """Entries where the card is source or target, in insertion order"""
        return [t for t in self.all() if t.involves(card_number)]

    def recent(self, card_number: str, count: int) -> List[Transaction]:
        """Last ``count`` entries for the card, most recent first"""
        if count <= 0:
            return []
        transactions = self.for_card(card_number)
        return list(reversed(transactions[-count:]))

    def count(self) -> int:
        return self.storage.count(self.table_name)
