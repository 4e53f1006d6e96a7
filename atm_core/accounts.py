"""
Account Entity Module

Card account data with its per-entity invariants: validity, administrative
lock, and the failed-login counter driving the temporary lockout window.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional

from .security import PinHasher, get_hasher


MAX_FAILED_ATTEMPTS = 5
TEMP_LOCK_DURATION = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Account:
    """
    Card account

    The card number is the unique key. Balances and limits are Decimal;
    the PIN exists only as a salted digest.
    """
    card_number: str
    pin_hash: str
    salt: str
    holder_name: str
    balance: Decimal
    withdraw_limit: Decimal
    is_locked: bool = False        # Administrative lock
    is_admin: bool = False
    failed_login_attempts: int = 0
    last_failed_login: Optional[datetime] = None
    temporary_lock_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            self.balance = Decimal(str(self.balance))
        if not isinstance(self.withdraw_limit, Decimal):
            self.withdraw_limit = Decimal(str(self.withdraw_limit))

    @classmethod
    def create(
        cls,
        card_number: str,
        pin: str,
        holder_name: str,
        balance: Decimal,
        withdraw_limit: Decimal,
        is_locked: bool = False,
        is_admin: bool = False,
        hasher: Optional[PinHasher] = None
    ) -> 'Account':
        """Build a new account, hashing the PIN with a fresh salt"""
        hasher = hasher or get_hasher()
        salt = hasher.generate_salt()
        return cls(
            card_number=card_number,
            pin_hash=hasher.hash(pin, salt),
            salt=salt,
            holder_name=holder_name,
            balance=Decimal(str(balance)),
            withdraw_limit=Decimal(str(withdraw_limit)),
            is_locked=is_locked,
            is_admin=is_admin
        )

    def is_valid(self) -> bool:
        """Card number and PIN hash present, balance >= 0, withdraw limit > 0"""
        return (
            bool(self.card_number)
            and bool(self.pin_hash)
            and self.balance >= 0
            and self.withdraw_limit > 0
        )

    def set_pin(self, pin: str, hasher: Optional[PinHasher] = None) -> None:
        """Re-hash the PIN under a freshly generated salt"""
        hasher = hasher or get_hasher()
        self.salt = hasher.generate_salt()
        self.pin_hash = hasher.hash(pin, self.salt)

    def verify_pin(self, pin: str, hasher: Optional[PinHasher] = None) -> bool:
        """Compare the digest of a supplied PIN with the stored one"""
        hasher = hasher or get_hasher()
        return hasher.verify(pin, self.salt, self.pin_hash)

    def is_temporarily_locked(self, now: Optional[datetime] = None) -> bool:
        """True while the failed-login cooldown has not elapsed"""
        if self.temporary_lock_until is None:
            return False
        now = now or _utcnow()
        return now < self.temporary_lock_until

    def lockout_remaining(self, now: Optional[datetime] = None) -> timedelta:
        """Time left on the temporary lockout (zero when not locked)"""
        if not self.is_temporarily_locked(now):
            return timedelta(0)
        now = now or _utcnow()
        return self.temporary_lock_until - now

    def record_failed_login(
        self,
        now: Optional[datetime] = None,
        max_attempts: int = MAX_FAILED_ATTEMPTS,
        lock_duration: timedelta = TEMP_LOCK_DURATION
    ) -> bool:
        """
        Count a failed login

        Returns True when this failure triggered the temporary lockout.
        An expired lockout is cleared here, so the counter starts over.
        """
        now = now or _utcnow()

        if self.temporary_lock_until is not None and now >= self.temporary_lock_until:
            self.failed_login_attempts = 0
            self.temporary_lock_until = None

        self.failed_login_attempts += 1
        self.last_failed_login = now
        self.updated_at = now

        if self.failed_login_attempts >= max_attempts and self.temporary_lock_until is None:
            self.temporary_lock_until = now + lock_duration
            return True
        return False

    def reset_failed_login_attempts(self) -> None:
        """Zero the counter and clear any temporary lockout"""
        self.failed_login_attempts = 0
        self.last_failed_login = None
        self.temporary_lock_until = None
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['balance'] = str(self.balance)
        result['withdraw_limit'] = str(self.withdraw_limit)
        for key in ('last_failed_login', 'temporary_lock_until', 'created_at', 'updated_at'):
            value = getattr(self, key)
            result[key] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from a stored dictionary"""
        return cls(
            card_number=data['card_number'],
            pin_hash=data.get('pin_hash', ""),
            salt=data.get('salt', ""),
            holder_name=data.get('holder_name', ""),
            balance=Decimal(str(data.get('balance', "0"))),
            withdraw_limit=Decimal(str(data.get('withdraw_limit', "0"))),
            is_locked=bool(data.get('is_locked', False)),
            # Older records may predate the admin flag
            is_admin=bool(data.get('is_admin', False)),
            failed_login_attempts=int(data.get('failed_login_attempts', 0)),
            last_failed_login=_parse_datetime(data.get('last_failed_login')),
            temporary_lock_until=_parse_datetime(data.get('temporary_lock_until')),
            created_at=_parse_datetime(data.get('created_at')) or _utcnow(),
            updated_at=_parse_datetime(data.get('updated_at')) or _utcnow()
        )
