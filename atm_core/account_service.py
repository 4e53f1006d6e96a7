"""
Account Service Module

Authenticated login and the money-moving operations of a card account:
withdraw, deposit, transfer and PIN change. Every mutation is a
load-modify-persist sequence against the account store, serialized per
card, and any persistence failure rolls the balance change back before
the failure is returned.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple

from .accounts import Account
from .audit import AuditEventType, AuditTrail
from .config import AtmConfig, get_config
from .ledger import PendingTransaction, Transaction, TransactionLedger, TransactionType
from .locks import KeyedLockManager
from .logging_config import get_logger, log_action
from .repository import AccountStore
from .results import ErrorKind, LoginResult, OperationResult, Session
from .security import PinHasher, get_hasher
from .storage import StorageError
from .validator import AccountValidator, format_minutes


class AccountService:
    """
    Card holder operations

    The caller's session is passed explicitly: ``login`` returns a Session
    and every other operation takes the card number it acts on.
    """

    def __init__(
        self,
        store: AccountStore,
        validator: AccountValidator,
        ledger: TransactionLedger,
        audit_trail: Optional[AuditTrail] = None,
        lock_manager: Optional[KeyedLockManager] = None,
        config: Optional[AtmConfig] = None,
        hasher: Optional[PinHasher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.validator = validator
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.locks = lock_manager or KeyedLockManager()
        self.config = config or get_config()
        self.hasher = hasher or get_hasher()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("atm.accounts")

    def _audit(self, event_type: AuditEventType, card_number: str, **metadata) -> None:
        if self.audit_trail and self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, card_number, metadata)

    def _reject(self, result, card_number: str, action: str):
        log_action(
            self.logger, "warning", f"{action} rejected: {result.error_message}",
            card_number=card_number, action=action, resource="account",
            extra={"error_kind": result.error_kind.value if result.error_kind else None}
        )
        return result

    def _load(self, card_number: str) -> Tuple[Optional[Account], Optional[OperationResult]]:
        """Fetch an account, translating a storage read failure into a result"""
        try:
            account = self.store.get(card_number)
        except StorageError as e:
            self.logger.error(f"Failed to load account: {e}")
            return None, OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")
        if account is None:
            return None, OperationResult.fail(ErrorKind.NOT_FOUND, "Account not found")
        return account, None

    def _restore(self, account: Account, balance: Decimal, action: str) -> None:
        """Put back a balance that was already written by a failed operation"""
        account.balance = balance
        result = self.store.put(account)
        if not result:
            log_action(
                self.logger, "critical",
                f"{action} rollback could not be persisted: {result.error_message}",
                card_number=account.card_number, action=action, resource="account"
            )

    # Authentication

    def login(self, card_number: str, pin: str) -> LoginResult:
        """
        Authenticate a card holder

        A temporarily locked account is rejected without looking at the
        PIN. A wrong PIN counts towards the lockout; a correct one clears
        the failed-login state.
        """
        if not pin:
            return LoginResult.fail(ErrorKind.INVALID_FORMAT, "PIN is required")
        result = self.validator.validate_card_number_format(card_number)
        if not result:
            return LoginResult.fail(result.error_kind, result.error_message)

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                if failure.error_kind == ErrorKind.NOT_FOUND:
                    self._audit(AuditEventType.LOGIN_FAILED, card_number, reason="not_found")
                    return self._reject(
                        LoginResult.fail(ErrorKind.NOT_FOUND, "Incorrect card number or PIN"),
                        card_number, "login"
                    )
                return LoginResult.fail(failure.error_kind, failure.error_message)

            now = self.clock()

            if account.is_locked:
                self._audit(AuditEventType.LOGIN_FAILED, card_number, reason="locked")
                return self._reject(
                    LoginResult.fail(
                        ErrorKind.ACCOUNT_LOCKED,
                        "This account has been locked, please contact the administrator"
                    ),
                    card_number, "login"
                )

            if account.is_temporarily_locked(now):
                remaining = account.lockout_remaining(now)
                self._audit(AuditEventType.LOGIN_FAILED, card_number, reason="temporarily_locked")
                return self._reject(
                    LoginResult.fail(
                        ErrorKind.TEMPORARILY_LOCKED,
                        f"Account is temporarily locked after repeated failed logins, "
                        f"try again in {format_minutes(remaining)} minutes",
                        lockout_remaining=remaining
                    ),
                    card_number, "login"
                )

            if not account.verify_pin(pin, self.hasher):
                return self._handle_failed_login(account, now)

            account.reset_failed_login_attempts()
            saved = self.store.put(account)
            if not saved:
                return LoginResult.fail(saved.error_kind, saved.error_message)

            session = Session(card_number=card_number, is_admin=account.is_admin, authenticated_at=now)
            self._audit(AuditEventType.LOGIN_SUCCESS, card_number, is_admin=account.is_admin)
            log_action(self.logger, "info", "Login succeeded", card_number=card_number, action="login")

            return LoginResult.ok(
                session=session,
                holder_name=account.holder_name,
                balance=account.balance,
                withdraw_limit=account.withdraw_limit
            )

    def _handle_failed_login(self, account: Account, now: datetime) -> LoginResult:
        max_attempts = self.config.max_failed_attempts
        locked_now = account.record_failed_login(
            now=now,
            max_attempts=max_attempts,
            lock_duration=timedelta(minutes=self.config.temp_lock_minutes)
        )

        saved = self.store.put(account)
        if not saved:
            return LoginResult.fail(saved.error_kind, saved.error_message)

        self._audit(
            AuditEventType.LOGIN_FAILED, account.card_number,
            reason="invalid_pin", failed_attempts=account.failed_login_attempts
        )

        if locked_now:
            self._audit(
                AuditEventType.ACCOUNT_TEMPORARILY_LOCKED, account.card_number,
                locked_until=account.temporary_lock_until
            )
            return self._reject(
                LoginResult.fail(
                    ErrorKind.TEMPORARILY_LOCKED,
                    f"Incorrect PIN, account temporarily locked after repeated failed logins, "
                    f"try again in {self.config.temp_lock_minutes} minutes",
                    lockout_remaining=account.lockout_remaining(now)
                ),
                account.card_number, "login"
            )

        remaining = max(0, max_attempts - account.failed_login_attempts)
        return self._reject(
            LoginResult.fail(
                ErrorKind.INVALID_CREDENTIALS,
                f"Incorrect card number or PIN, {remaining} attempts remaining",
                remaining_attempts=remaining
            ),
            account.card_number, "login"
        )

    def logout(self, session: Session) -> OperationResult:
        """End a session; the engine holds no session state to clear"""
        self._audit(AuditEventType.LOGOUT, session.card_number)
        log_action(self.logger, "info", "Logged out", card_number=session.card_number, action="logout")
        return OperationResult.ok()

    # Money movement

    def withdraw(self, card_number: str, amount: Any) -> OperationResult:
        """Debit the account; bounded by balance and the withdraw limit"""
        result = self.validator.validate_card_number_format(card_number)
        if result:
            result = self.validator.validate_amount(amount)
        if not result:
            return self._reject(result, card_number, "withdraw")

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return self._reject(failure, card_number, "withdraw")

            result = self.validator.validate_account_usable(account, self.clock())
            if result:
                result = self.validator.validate_withdrawal(account, amount)
            if not result:
                return self._reject(result, card_number, "withdraw")
            value = result.value

            previous = account.balance
            account.balance = previous - value
            saved = self.store.put(account)
            if not saved:
                account.balance = previous
                return saved

            recorded = self.ledger.append(PendingTransaction(
                card_number=card_number,
                transaction_type=TransactionType.WITHDRAWAL,
                amount=value,
                balance_after=account.balance,
                description="Withdrawal"
            ))
            if not recorded:
                self._restore(account, previous, "withdraw")
                return recorded

            log_action(
                self.logger, "info", f"Withdrew {value}", card_number=card_number,
                action="withdraw", extra={"balance_after": str(account.balance)}
            )
            return OperationResult.ok(account.balance)

    def deposit(self, card_number: str, amount: Any) -> OperationResult:
        """Credit the account"""
        result = self.validator.validate_card_number_format(card_number)
        if result:
            result = self.validator.validate_deposit(amount)
        if not result:
            return self._reject(result, card_number, "deposit")
        value = result.value

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return self._reject(failure, card_number, "deposit")

            result = self.validator.validate_account_usable(account, self.clock())
            if not result:
                return self._reject(result, card_number, "deposit")

            previous = account.balance
            account.balance = previous + value
            saved = self.store.put(account)
            if not saved:
                account.balance = previous
                return saved

            recorded = self.ledger.append(PendingTransaction(
                card_number=card_number,
                transaction_type=TransactionType.DEPOSIT,
                amount=value,
                balance_after=account.balance,
                description="Deposit"
            ))
            if not recorded:
                self._restore(account, previous, "deposit")
                return recorded

            log_action(
                self.logger, "info", f"Deposited {value}", card_number=card_number,
                action="deposit", extra={"balance_after": str(account.balance)}
            )
            return OperationResult.ok(account.balance)

    def transfer(self, from_card_number: str, to_card_number: str, amount: Any) -> OperationResult:
        """
        Move funds between two accounts

        Both card locks are taken in ascending order. The source is written
        first; if the target write or the ledger append fails, every write
        already made is compensated so callers see either both balances
        moved with two ledger entries, or neither.
        """
        result = self.validator.validate_card_number_format(from_card_number)
        if result:
            result = self.validator.validate_card_number_format(to_card_number)
        if result:
            result = self.validator.validate_amount(amount)
        if not result:
            return self._reject(result, from_card_number, "transfer")

        with self.locks.acquire(from_card_number, to_card_number):
            source, failure = self._load(from_card_number)
            if failure:
                return self._reject(failure, from_card_number, "transfer")

            result = self.validator.validate_account_usable(source, self.clock())
            if result:
                result = self.validator.validate_transfer(source, to_card_number, amount)
            if not result:
                return self._reject(result, from_card_number, "transfer")
            value = result.value

            try:
                result = self.validator.validate_target_account(to_card_number)
            except StorageError as e:
                self.logger.error(f"Failed to load target account: {e}")
                result = OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")
            if not result:
                return self._reject(result, from_card_number, "transfer")

            target, failure = self._load(to_card_number)
            if failure:
                return self._reject(failure, from_card_number, "transfer")

            source_before = source.balance
            target_before = target.balance
            source.balance = source_before - value
            target.balance = target_before + value

            saved = self.store.put(source)
            if not saved:
                source.balance = source_before
                target.balance = target_before
                return saved

            saved = self.store.put(target)
            if not saved:
                target.balance = target_before
                self._restore(source, source_before, "transfer")
                log_action(
                    self.logger, "error", "Transfer rolled back after target write failed",
                    card_number=from_card_number, action="transfer"
                )
                return saved

            recorded = self.ledger.append_many([
                PendingTransaction(
                    card_number=from_card_number,
                    transaction_type=TransactionType.TRANSFER,
                    amount=value,
                    balance_after=source.balance,
                    description=f"Transfer to {target.holder_name}",
                    target_card_number=to_card_number
                ),
                PendingTransaction(
                    card_number=to_card_number,
                    transaction_type=TransactionType.DEPOSIT,
                    amount=value,
                    balance_after=target.balance,
                    description=f"Transfer from {source.holder_name}"
                ),
            ])
            if not recorded:
                self._restore(target, target_before, "transfer")
                self._restore(source, source_before, "transfer")
                return recorded

            log_action(
                self.logger, "info", f"Transferred {value}", card_number=from_card_number,
                action="transfer", extra={"balance_after": str(source.balance)}
            )
            return OperationResult.ok(source.balance)

    # Credentials

    def change_pin(self, card_number: str, current_pin: str, new_pin: str,
                   confirm_pin: Optional[str] = None) -> OperationResult:
        """
        Re-hash a new PIN under a fresh salt

        The change is recorded in the ledger as an OTHER entry with a zero
        amount; if that append fails the previous PIN is put back.
        """
        result = self.validator.validate_card_number_format(card_number)
        if not result:
            return self._reject(result, card_number, "change_pin")

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return self._reject(failure, card_number, "change_pin")

            result = self.validator.validate_account_usable(account, self.clock())
            if result:
                result = self.validator.validate_pin_change(account, current_pin, new_pin, confirm_pin)
            if not result:
                return self._reject(result, card_number, "change_pin")

            previous_hash, previous_salt = account.pin_hash, account.salt
            account.set_pin(new_pin, self.hasher)
            saved = self.store.put(account)
            if not saved:
                account.pin_hash, account.salt = previous_hash, previous_salt
                return saved

            recorded = self.ledger.append(PendingTransaction(
                card_number=card_number,
                transaction_type=TransactionType.OTHER,
                amount=Decimal("0"),
                balance_after=account.balance,
                description="PIN change"
            ))
            if not recorded:
                account.pin_hash, account.salt = previous_hash, previous_salt
                restored = self.store.put(account)
                if not restored:
                    log_action(
                        self.logger, "critical",
                        f"change_pin rollback could not be persisted: {restored.error_message}",
                        card_number=card_number, action="change_pin", resource="account"
                    )
                return recorded

            self._audit(AuditEventType.PIN_CHANGED, card_number)
            log_action(self.logger, "info", "PIN changed", card_number=card_number, action="change_pin")
            return OperationResult.ok()

    # Queries

    def balance_inquiry(self, card_number: str) -> OperationResult:
        """Report the balance and record the inquiry in the ledger"""
        result = self.validator.validate_card_number_format(card_number)
        if not result:
            return result

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return failure

            recorded = self.ledger.append(PendingTransaction(
                card_number=card_number,
                transaction_type=TransactionType.BALANCE_INQUIRY,
                amount=Decimal("0"),
                balance_after=account.balance,
                description="Balance inquiry"
            ))
            if not recorded:
                return recorded
            return OperationResult.ok(account.balance)

    def get_balance(self, card_number: str) -> Decimal:
        account = self.store.get(card_number)
        return account.balance if account else Decimal("0")

    def get_holder_name(self, card_number: str) -> str:
        account = self.store.get(card_number)
        return account.holder_name if account else ""

    def get_withdraw_limit(self, card_number: str) -> Decimal:
        account = self.store.get(card_number)
        return account.withdraw_limit if account else Decimal("0")

    def is_account_locked(self, card_number: str) -> bool:
        account = self.store.get(card_number)
        return account.is_locked if account else False

    def transaction_history(self, card_number: str, count: Optional[int] = None) -> List[Transaction]:
        """
        Entries recorded against the card, most recent first

        The counterparty's side of a transfer is left out, so every entry
        carries this card's own ``balance_after``.
        """
        if count is not None and count <= 0:
            return []
        own = [t for t in self.ledger.for_card(card_number) if t.card_number == card_number]
        own.reverse()
        return own if count is None else own[:count]
