"""
Admin Service Module

Privileged create, update and delete of card accounts. The service does not
re-authenticate the caller: each operation takes the admin-authorization
flag established by the caller's login and rejects the call when it is not
set.
"""

from decimal import Decimal
from typing import Any, List, Optional

from .accounts import Account
from .account_service import AccountService
from .audit import AuditEventType, AuditTrail
from .config import AtmConfig, get_config
from .ledger import PendingTransaction, TransactionLedger, TransactionType
from .locks import KeyedLockManager
from .logging_config import get_logger, log_action
from .repository import AccountStore
from .results import ErrorKind, LoginResult, OperationResult
from .security import PinHasher, get_hasher
from .storage import StorageError
from .validator import AccountValidator, parse_amount


UNAUTHORIZED = OperationResult.fail(ErrorKind.UNAUTHORIZED, "This operation requires administrator rights")


class AdminService:
    """Account administration gated by an admin-authorization flag"""

    def __init__(
        self,
        store: AccountStore,
        validator: AccountValidator,
        audit_trail: Optional[AuditTrail] = None,
        lock_manager: Optional[KeyedLockManager] = None,
        config: Optional[AtmConfig] = None,
        hasher: Optional[PinHasher] = None,
        ledger: Optional[TransactionLedger] = None
    ):
        self.store = store
        self.validator = validator
        self.audit_trail = audit_trail
        self.ledger = ledger
        self.locks = lock_manager or KeyedLockManager()
        self.config = config or get_config()
        self.hasher = hasher or get_hasher()
        self.logger = get_logger("atm.admin")

    def _log_admin_operation(self, event_type: AuditEventType, card_number: str,
                             actor: Optional[str], **metadata) -> None:
        log_action(
            self.logger, "info", f"Admin operation {event_type.value}",
            card_number=card_number, action=event_type.value, resource="account"
        )
        if self.audit_trail and self.config.enable_audit_logging:
            self.audit_trail.log_event(event_type, card_number, metadata, actor=actor)

    def _load(self, card_number: str):
        try:
            account = self.store.get(card_number)
        except StorageError as e:
            self.logger.error(f"Failed to load account: {e}")
            return None, OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")
        if account is None:
            return None, OperationResult.fail(ErrorKind.NOT_FOUND, "Account not found")
        return account, None

    def admin_login(self, account_service: AccountService, card_number: str, pin: str) -> LoginResult:
        """Log in through the account service and require the admin role"""
        result = account_service.login(card_number, pin)
        if result and not result.is_admin:
            log_action(self.logger, "warning", "Admin login by non-admin account",
                       card_number=card_number, action="admin_login")
            return LoginResult.fail(ErrorKind.UNAUTHORIZED, "This account has no administrator rights")
        return result

    def create_account(
        self,
        authorized: bool,
        card_number: str,
        pin: str,
        holder_name: str,
        balance: Any,
        withdraw_limit: Any,
        is_admin: bool = False,
        actor: Optional[str] = None
    ) -> OperationResult:
        """Create a new, unlocked account with a freshly hashed PIN"""
        if not authorized:
            return UNAUTHORIZED

        with self.locks.acquire(card_number):
            try:
                result = self.validator.validate_new_account(
                    card_number, pin, holder_name, balance, withdraw_limit
                )
            except StorageError as e:
                self.logger.error(f"Failed to check for existing account: {e}")
                result = OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")
            if not result:
                return result

            account = Account.create(
                card_number=card_number,
                pin=pin,
                holder_name=holder_name.strip(),
                balance=parse_amount(balance),
                withdraw_limit=parse_amount(withdraw_limit),
                is_admin=is_admin,
                hasher=self.hasher
            )
            saved = self.store.put(account)
            if not saved:
                return saved

            self._log_admin_operation(
                AuditEventType.ACCOUNT_CREATED, card_number, actor,
                holder_name=account.holder_name, balance=account.balance, is_admin=is_admin
            )
            return OperationResult.ok(account)

    def update_account(
        self,
        authorized: bool,
        card_number: str,
        holder_name: str,
        balance: Any,
        withdraw_limit: Any,
        is_locked: bool,
        actor: Optional[str] = None
    ) -> OperationResult:
        """
        Overwrite the mutable profile fields; PIN and salt are untouched

        The update is recorded in the ledger as an OTHER entry whose
        description carries the balance adjustment.
        """
        if not authorized:
            return UNAUTHORIZED

        result = self.validator.validate_profile(holder_name, balance, withdraw_limit)
        if not result:
            return result

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return failure

            if account.is_admin and is_locked:
                return OperationResult.fail(ErrorKind.FORBIDDEN_OPERATION, "Administrator accounts cannot be locked")

            previous = (account.holder_name, account.balance, account.withdraw_limit, account.is_locked)
            account.holder_name = holder_name.strip()
            account.balance = parse_amount(balance)
            account.withdraw_limit = parse_amount(withdraw_limit)
            account.is_locked = is_locked
            saved = self.store.put(account)
            if not saved:
                return saved

            if self.ledger is not None:
                delta = account.balance - previous[1]
                recorded = self.ledger.append(PendingTransaction(
                    card_number=card_number,
                    transaction_type=TransactionType.OTHER,
                    amount=Decimal("0"),
                    balance_after=account.balance,
                    description=f"Account updated by administrator, balance adjusted by {delta:+}"
                ))
                if not recorded:
                    account.holder_name, account.balance, account.withdraw_limit, account.is_locked = previous
                    restored = self.store.put(account)
                    if not restored:
                        log_action(
                            self.logger, "critical",
                            f"update_account rollback could not be persisted: {restored.error_message}",
                            card_number=card_number, action="update_account", resource="account"
                        )
                    return recorded

            self._log_admin_operation(
                AuditEventType.ACCOUNT_UPDATED, card_number, actor,
                holder_name=account.holder_name, balance=account.balance,
                withdraw_limit=account.withdraw_limit, is_locked=is_locked
            )
            return OperationResult.ok(account)

    def delete_account(self, authorized: bool, card_number: str,
                       actor: Optional[str] = None) -> OperationResult:
        """Remove a non-admin account from the store"""
        if not authorized:
            return UNAUTHORIZED

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return failure

            if account.is_admin:
                return OperationResult.fail(ErrorKind.FORBIDDEN_OPERATION, "Administrator accounts cannot be deleted")

            removed = self.store.remove(card_number)
            if not removed:
                return removed

            self._log_admin_operation(
                AuditEventType.ACCOUNT_DELETED, card_number, actor, holder_name=account.holder_name
            )
            return OperationResult.ok()

    def set_account_lock_status(self, authorized: bool, card_number: str, locked: bool,
                                actor: Optional[str] = None) -> OperationResult:
        """Lock or unlock an account; unlocking also clears failed-login state"""
        if not authorized:
            return UNAUTHORIZED

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return failure

            if account.is_admin and locked:
                return OperationResult.fail(ErrorKind.FORBIDDEN_OPERATION, "Administrator accounts cannot be locked")

            account.is_locked = locked
            if not locked:
                account.reset_failed_login_attempts()
            saved = self.store.put(account)
            if not saved:
                return saved

            event_type = AuditEventType.ACCOUNT_LOCKED if locked else AuditEventType.ACCOUNT_UNLOCKED
            self._log_admin_operation(event_type, card_number, actor)
            return OperationResult.ok()

    def reset_pin(self, authorized: bool, card_number: str, new_pin: str,
                  actor: Optional[str] = None) -> OperationResult:
        """Set a new PIN under a fresh salt and clear any lockout"""
        if not authorized:
            return UNAUTHORIZED

        result = self.validator.validate_pin_format(new_pin)
        if not result:
            return result

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return failure

            account.set_pin(new_pin, self.hasher)
            account.reset_failed_login_attempts()
            saved = self.store.put(account)
            if not saved:
                return saved

            self._log_admin_operation(AuditEventType.PIN_RESET, card_number, actor)
            return OperationResult.ok()

    def set_withdraw_limit(self, authorized: bool, card_number: str, limit: Any,
                           actor: Optional[str] = None) -> OperationResult:
        if not authorized:
            return UNAUTHORIZED

        result = self.validator.validate_withdraw_limit(limit)
        if not result:
            return result
        value: Decimal = result.value

        with self.locks.acquire(card_number):
            account, failure = self._load(card_number)
            if failure:
                return failure

            account.withdraw_limit = value
            saved = self.store.put(account)
            if not saved:
                return saved

            self._log_admin_operation(AuditEventType.WITHDRAW_LIMIT_CHANGED, card_number, actor, limit=value)
            return OperationResult.ok()

    def list_accounts(self, authorized: bool) -> OperationResult:
        """All accounts, ordered by card number"""
        if not authorized:
            return UNAUTHORIZED
        try:
            accounts: List[Account] = self.store.list()
        except StorageError as e:
            self.logger.error(f"Failed to list accounts: {e}")
            return OperationResult.fail(ErrorKind.PERSISTENCE_FAILURE, "Unable to load account data")
        return OperationResult.ok(sorted(accounts, key=lambda a: a.card_number))
