"""
Account Validation Module

Precondition checks shared by every mutating operation. Each check returns
an OperationResult naming the specific reason and never mutates state.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from .accounts import Account
from .config import AtmConfig, get_config
from .repository import AccountStore
from .results import ErrorKind, OperationResult
from .security import PinHasher, get_hasher


def parse_amount(value: Any) -> Optional[Decimal]:
    """Convert a caller supplied amount to Decimal, None when unparseable"""
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None


def format_minutes(remaining) -> int:
    """Whole minutes left on a lockout, rounded up"""
    seconds = int(remaining.total_seconds())
    return max(1, -(-seconds // 60))


class AccountValidator:
    """Stateless precondition checks backed by the account store for lookups"""

    def __init__(self, store: AccountStore, config: Optional[AtmConfig] = None,
                 hasher: Optional[PinHasher] = None):
        self.store = store
        self.config = config or get_config()
        self.hasher = hasher or get_hasher()

    @staticmethod
    def run_checks(checks: Iterable[Callable[[], OperationResult]]) -> OperationResult:
        """Run checks in order, stopping at the first failure"""
        for check in checks:
            result = check()
            if not result.success:
                return result
        return OperationResult.ok()

    # Format checks

    def validate_card_number_format(self, card_number: Optional[str]) -> OperationResult:
        length = self.config.card_number_length
        if not card_number:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Card number is required")
        if len(card_number) != length or not card_number.isdigit() or not card_number.isascii():
            return OperationResult.fail(
                ErrorKind.INVALID_FORMAT,
                f"Invalid card number format, must be {length} digits"
            )
        return OperationResult.ok()

    def validate_pin_format(self, pin: Optional[str]) -> OperationResult:
        low, high = self.config.pin_min_length, self.config.pin_max_length
        if not pin:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "PIN is required")
        if not (low <= len(pin) <= high) or not pin.isdigit() or not pin.isascii():
            span = f"{low}" if low == high else f"{low}-{high}"
            return OperationResult.fail(
                ErrorKind.INVALID_FORMAT,
                f"Invalid PIN format, must be {span} digits"
            )
        return OperationResult.ok()

    def validate_amount(self, amount: Any) -> OperationResult:
        """Strictly positive, finite; the parsed Decimal is the result value"""
        value = parse_amount(amount)
        if value is None or not value.is_finite():
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Amount must be a finite number")
        if value <= 0:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Amount must be positive")
        return OperationResult.ok(value)

    # Account state checks

    def validate_account_usable(self, account: Account, now: Optional[datetime] = None) -> OperationResult:
        """Reject administratively or temporarily locked accounts"""
        if account.is_locked:
            return OperationResult.fail(
                ErrorKind.ACCOUNT_LOCKED,
                "This account has been locked, please contact the administrator"
            )
        if account.is_temporarily_locked(now):
            minutes = format_minutes(account.lockout_remaining(now))
            return OperationResult.fail(
                ErrorKind.TEMPORARILY_LOCKED,
                f"Account is temporarily locked after repeated failed logins, try again in {minutes} minutes"
            )
        return OperationResult.ok()

    def validate_account_exists(self, card_number: str) -> OperationResult:
        if not card_number:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Card number is required")
        if not self.store.exists(card_number):
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Account not found")
        return OperationResult.ok()

    def validate_target_account(self, target_card_number: str) -> OperationResult:
        """Format check, then existence and lock state via the store"""
        result = self.validate_card_number_format(target_card_number)
        if not result:
            return result

        target = self.store.get(target_card_number)
        if target is None:
            return OperationResult.fail(ErrorKind.NOT_FOUND, "Target account not found")
        if target.is_locked:
            return OperationResult.fail(ErrorKind.ACCOUNT_LOCKED, "Target account is locked")
        return OperationResult.ok()

    # Money movement checks

    def validate_withdrawal(self, account: Account, amount: Any) -> OperationResult:
        result = self.validate_amount(amount)
        if not result:
            return result
        value = result.value

        if value > account.withdraw_limit:
            return OperationResult.fail(
                ErrorKind.LIMIT_EXCEEDED,
                f"Amount exceeds the per-transaction withdrawal limit of {account.withdraw_limit}"
            )
        if value > account.balance:
            return OperationResult.fail(ErrorKind.INSUFFICIENT_FUNDS, "Insufficient funds")
        return OperationResult.ok(value)

    def validate_deposit(self, amount: Any) -> OperationResult:
        result = self.validate_amount(amount)
        if not result:
            return result

        max_deposit = Decimal(self.config.max_deposit_amount)
        if result.value > max_deposit:
            return OperationResult.fail(
                ErrorKind.LIMIT_EXCEEDED,
                f"A single deposit cannot exceed {max_deposit}"
            )
        return result

    def validate_transfer(self, source: Account, target_card_number: str, amount: Any) -> OperationResult:
        """Target format and distinctness, then withdrawal-style amount checks"""
        result = self.validate_card_number_format(target_card_number)
        if not result:
            return result

        if target_card_number == source.card_number:
            return OperationResult.fail(
                ErrorKind.INVALID_FORMAT,
                "Source and target card numbers cannot be the same"
            )

        result = self.validate_withdrawal(source, amount)
        if not result:
            return result

        max_transfer = Decimal(self.config.max_transfer_amount)
        if result.value > max_transfer:
            return OperationResult.fail(
                ErrorKind.LIMIT_EXCEEDED,
                f"A single transfer cannot exceed {max_transfer}"
            )
        return result

    # Credential checks

    def validate_pin_change(self, account: Account, current_pin: str, new_pin: str,
                            confirm_pin: Optional[str] = None) -> OperationResult:
        return self.run_checks([
            lambda: self._check_current_pin(account, current_pin),
            lambda: self._check_new_pin_format(new_pin),
            lambda: self._check_confirmation(new_pin, confirm_pin),
            lambda: self._check_pin_differs(account, new_pin),
        ])

    def _check_current_pin(self, account: Account, current_pin: str) -> OperationResult:
        if not current_pin or not account.verify_pin(current_pin, self.hasher):
            return OperationResult.fail(ErrorKind.INVALID_CREDENTIALS, "Current PIN is incorrect")
        return OperationResult.ok()

    def _check_new_pin_format(self, new_pin: str) -> OperationResult:
        result = self.validate_pin_format(new_pin)
        if not result:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, f"New PIN: {result.error_message}")
        return result

    @staticmethod
    def _check_confirmation(new_pin: str, confirm_pin: Optional[str]) -> OperationResult:
        # An empty confirmation means the caller did not ask for one
        if confirm_pin and confirm_pin != new_pin:
            return OperationResult.fail(ErrorKind.CONFIRMATION_MISMATCH, "The new PIN entries do not match")
        return OperationResult.ok()

    def _check_pin_differs(self, account: Account, new_pin: str) -> OperationResult:
        if account.verify_pin(new_pin, self.hasher):
            return OperationResult.fail(
                ErrorKind.INVALID_FORMAT,
                "New PIN must differ from the current PIN"
            )
        return OperationResult.ok()

    # Admin profile checks

    def validate_new_account(self, card_number: str, pin: str, holder_name: str,
                             balance: Any, withdraw_limit: Any) -> OperationResult:
        def check_unique():
            if self.store.exists(card_number):
                return OperationResult.fail(ErrorKind.DUPLICATE_ACCOUNT, "An account with this card number already exists")
            return OperationResult.ok()

        return self.run_checks([
            lambda: self.validate_card_number_format(card_number),
            check_unique,
            lambda: self.validate_pin_format(pin),
            lambda: self.validate_profile(holder_name, balance, withdraw_limit),
        ])

    def validate_profile(self, holder_name: str, balance: Any, withdraw_limit: Any) -> OperationResult:
        if not holder_name or not holder_name.strip():
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Holder name cannot be empty")

        balance_value = parse_amount(balance)
        if balance_value is None or not balance_value.is_finite() or balance_value < 0:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Balance cannot be negative")

        return self.validate_withdraw_limit(withdraw_limit)

    def validate_withdraw_limit(self, withdraw_limit: Any) -> OperationResult:
        limit_value = parse_amount(withdraw_limit)
        if limit_value is None or not limit_value.is_finite() or limit_value <= 0:
            return OperationResult.fail(ErrorKind.INVALID_FORMAT, "Withdrawal limit must be positive")
        return OperationResult.ok(limit_value)
