"""
Credential Hashing Module

Salted, one-way hashing of card PINs. A PIN is never stored or compared in
plaintext: verification re-derives the digest from the supplied PIN and the
account's stored salt and compares digests in constant time.
"""

import hashlib
import hmac
import secrets
from typing import Optional


DEFAULT_SCRYPT_N = 16384
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1


class PinHasher:
    """Derives PIN digests with scrypt using configurable cost parameters"""

    def __init__(self, n: int = DEFAULT_SCRYPT_N, r: int = DEFAULT_SCRYPT_R, p: int = DEFAULT_SCRYPT_P):
        if n < 2 or n & (n - 1):
            raise ValueError("scrypt n must be a power of two greater than 1")
        self.n = n
        self.r = r
        self.p = p

    def generate_salt(self) -> str:
        """Generate random salt for PIN hashing"""
        return secrets.token_hex(16)

    def hash(self, pin: str, salt: str) -> str:
        """Hash PIN with salt using scrypt"""
        return hashlib.scrypt(
            pin.encode(),
            salt=salt.encode(),
            n=self.n, r=self.r, p=self.p
        ).hex()

    def verify(self, pin: str, salt: str, expected_hash: str) -> bool:
        """Check a supplied PIN against a stored digest"""
        if not expected_hash or not salt or pin is None:
            return False
        return hmac.compare_digest(self.hash(pin, salt), expected_hash)


_default_hasher: Optional[PinHasher] = None


def get_hasher() -> PinHasher:
    """Get the process-wide hasher built from configuration"""
    global _default_hasher
    if _default_hasher is None:
        from .config import get_config
        config = get_config()
        _default_hasher = PinHasher(config.pin_hash_n, config.pin_hash_r, config.pin_hash_p)
    return _default_hasher


def set_hasher(hasher: Optional[PinHasher]) -> None:
    """Replace the process-wide hasher (None rebuilds it from configuration)"""
    global _default_hasher
    _default_hasher = hasher


def generate_salt() -> str:
    """Produce a fresh per-account salt"""
    return get_hasher().generate_salt()


def hash_pin(pin: str, salt: str) -> str:
    """Deterministic salted digest of a PIN"""
    return get_hasher().hash(pin, salt)


def verify_pin(pin: str, salt: str, expected_hash: str) -> bool:
    """Compare the digest of a supplied PIN with a stored digest"""
    return get_hasher().verify(pin, salt, expected_hash)
