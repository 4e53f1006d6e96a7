"""
Operation Result Module

Tagged outcomes returned by every engine operation. Failures carry a
human readable reason and an ErrorKind; they are values, never raised.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    """Failure taxonomy"""
    NOT_FOUND = "not_found"
    INVALID_FORMAT = "invalid_format"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    LIMIT_EXCEEDED = "limit_exceeded"
    ACCOUNT_LOCKED = "account_locked"            # Administrative lock
    TEMPORARILY_LOCKED = "temporarily_locked"    # Failed-login cooldown
    UNAUTHORIZED = "unauthorized"
    PERSISTENCE_FAILURE = "persistence_failure"
    INVALID_CREDENTIALS = "invalid_credentials"
    DUPLICATE_ACCOUNT = "duplicate_account"
    CONFIRMATION_MISMATCH = "confirmation_mismatch"
    FORBIDDEN_OPERATION = "forbidden_operation"


@dataclass(frozen=True)
class OperationResult:
    """Success, or failure with a reason"""
    success: bool
    error_message: str = ""
    error_kind: Optional[ErrorKind] = None
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None) -> 'OperationResult':
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> 'OperationResult':
        return cls(success=False, error_message=message, error_kind=kind)

    def __bool__(self) -> bool:
        return self.success


@dataclass(frozen=True)
class Session:
    """
    Authenticated session context

    Returned by a successful login and handed back explicitly by callers;
    the engine keeps no implicit "current card" state.
    """
    card_number: str
    is_admin: bool
    authenticated_at: datetime


@dataclass(frozen=True)
class LoginResult:
    """Login outcome; success carries the role flag and account summary"""
    success: bool
    error_message: str = ""
    error_kind: Optional[ErrorKind] = None
    is_admin: bool = False
    holder_name: str = ""
    balance: Decimal = Decimal("0")
    withdraw_limit: Decimal = Decimal("0")
    session: Optional[Session] = None
    lockout_remaining: Optional[timedelta] = None
    remaining_attempts: Optional[int] = None

    @classmethod
    def ok(cls, session: Session, holder_name: str, balance: Decimal,
           withdraw_limit: Decimal) -> 'LoginResult':
        return cls(
            success=True,
            is_admin=session.is_admin,
            holder_name=holder_name,
            balance=balance,
            withdraw_limit=withdraw_limit,
            session=session
        )

    @classmethod
    def fail(cls, kind: ErrorKind, message: str,
             lockout_remaining: Optional[timedelta] = None,
             remaining_attempts: Optional[int] = None) -> 'LoginResult':
        return cls(
            success=False,
            error_message=message,
            error_kind=kind,
            lockout_remaining=lockout_remaining,
            remaining_attempts=remaining_attempts
        )

    def __bool__(self) -> bool:
        return self.success
