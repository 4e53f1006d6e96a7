"""
Account Analytics Module

Forecasts and activity summaries derived from the transaction ledger.
Deposits (including the credit side of a transfer) count as inflow,
withdrawals and outgoing transfers as outflow. Only entries recorded
against the card itself are used, so a transfer is counted once per side.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .config import AtmConfig, get_config
from .ledger import Transaction, TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .repository import AccountStore
from .results import ErrorKind, OperationResult
from .storage import StorageError


INFLOW_TYPES = {TransactionType.DEPOSIT}
OUTFLOW_TYPES = {TransactionType.WITHDRAWAL, TransactionType.TRANSFER}

CENT = Decimal("0.01")


@dataclass
class AccountTrend:
    """Per-day inflow and outflow totals, one key per day in the period"""
    card_number: str
    income: Dict[date, Decimal] = field(default_factory=dict)
    expense: Dict[date, Decimal] = field(default_factory=dict)

    @property
    def total_income(self) -> Decimal:
        return sum(self.income.values(), Decimal("0"))

    @property
    def total_expense(self) -> Decimal:
        return sum(self.expense.values(), Decimal("0"))


class AnalyticsService:
    """
    Balance forecasting over ledger history

    The current balance comes from the account store when one is supplied,
    otherwise from the most recent ledger entry for the card.
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        store: Optional[AccountStore] = None,
        config: Optional[AtmConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.ledger = ledger
        self.store = store
        self.config = config or get_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("atm.analytics")

    def _own_entries(self, card_number: str) -> List[Transaction]:
        return [t for t in self.ledger.for_card(card_number) if t.card_number == card_number]

    def _current_balance(self, card_number: str, entries: List[Transaction]) -> OperationResult:
        if self.store is not None:
            account = self.store.get(card_number)
            if account is None:
                return OperationResult.fail(ErrorKind.NOT_FOUND, "Account not found")
            return OperationResult.ok(account.balance)
        if entries:
            return OperationResult.ok(entries[-1].balance_after)
        return OperationResult.ok(Decimal("0"))

    @staticmethod
    def _net_flow(entries: Iterable[Transaction]) -> Tuple[Decimal, Decimal]:
        income = Decimal("0")
        expense = Decimal("0")
        for transaction in entries:
            if transaction.transaction_type in INFLOW_TYPES:
                income += transaction.amount
            elif transaction.transaction_type in OUTFLOW_TYPES:
                expense += transaction.amount
        return income, expense

    def _forecast_basis(self, card_number: str) -> OperationResult:
        """
        Current balance and average daily delta for a card

        Fewer than two entries give a zero delta, so every forecast equals
        the current balance.
        """
        try:
            entries = self._own_entries(card_number)
            result = self._current_balance(card_number, entries)
        except StorageError as e:
            self.logger.error(f"Failed to load history for forecast: {e}")
            return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")
        if not result:
            return result
        current = result.value

        if len(entries) < 2:
            return OperationResult.ok((current, Decimal("0")))

        window = entries[-self.config.analytics_window_size:]
        income, expense = self._net_flow(window)
        days = max(1, self.config.analytics_averaging_days)
        return OperationResult.ok((current, (income - expense) / Decimal(days)))

    @staticmethod
    def _project(current: Decimal, daily_delta: Decimal, days_ahead: int) -> Decimal:
        if days_ahead == 0:
            return current
        predicted = current + daily_delta * days_ahead
        if predicted < 0:
            return Decimal("0.00")
        return predicted.quantize(CENT, rounding=ROUND_HALF_UP)

    def predict_balance(self, card_number: str, days_ahead: int) -> OperationResult:
        """Linear projection of the balance ``days_ahead`` days out, floored at zero"""
        if days_ahead < 0:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Forecast horizon cannot be negative")

        basis = self._forecast_basis(card_number)
        if not basis:
            return basis
        current, daily_delta = basis.value

        predicted = self._project(current, daily_delta, days_ahead)
        log_action(
            self.logger, "debug", f"Predicted balance {predicted} in {days_ahead} days",
            card_number=card_number, action="predict_balance", resource="analytics"
        )
        return OperationResult.ok(predicted)

    def predict_multi_day(self, card_number: str, days_list: Iterable[int]) -> OperationResult:
        """
        One projection per requested horizon, all from the same daily delta

        The result value maps each day count to its predicted balance.
        """
        days_list = list(days_list)
        if any(days < 0 for days in days_list):
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Forecast horizon cannot be negative")

        basis = self._forecast_basis(card_number)
        if not basis:
            return basis
        current, daily_delta = basis.value

        return OperationResult.ok({
            days: self._project(current, daily_delta, days) for days in days_list
        })

    def _period(self, days: int) -> Tuple[date, date]:
        end = self.clock().date()
        return end - timedelta(days=days - 1), end

    def account_trend(self, card_number: str, days: int) -> OperationResult:
        """Daily inflow and outflow over the last ``days`` days, today included"""
        if days <= 0:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Analysis period must be positive")

        try:
            if self.store is not None and not self.store.exists(card_number):
                return OperationResult.fail(ErrorKind.NOT_FOUND, "Account not found")
            entries = self._own_entries(card_number)
        except StorageError as e:
            self.logger.error(f"Failed to load history for trend: {e}")
            return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")

        start, end = self._period(days)
        trend = AccountTrend(card_number=card_number)
        for offset in range(days):
            day = start + timedelta(days=offset)
            trend.income[day] = Decimal("0")
            trend.expense[day] = Decimal("0")

        for transaction in entries:
            day = transaction.timestamp.date()
            if not start <= day <= end:
                continue
            if transaction.transaction_type in INFLOW_TYPES:
                trend.income[day] += transaction.amount
            elif transaction.transaction_type in OUTFLOW_TYPES:
                trend.expense[day] += transaction.amount

        return OperationResult.ok(trend)

    def transaction_frequency(self, card_number: str, days: int) -> float:
        """Average number of ledger entries per day over the last ``days`` days"""
        if days <= 0:
            return 0.0

        try:
            if self.store is not None and not self.store.exists(card_number):
                return 0.0
            entries = self._own_entries(card_number)
        except StorageError as e:
            self.logger.error(f"Failed to load history for frequency: {e}")
            return 0.0

        start, end = self._period(days)
        count = sum(1 for t in entries if start <= t.timestamp.date() <= end)
        return count / days
