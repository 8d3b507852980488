"""Authentication: Argon2id password hashes, TOTP, and login lockout."""

import time

from argon2 import PasswordHasher
from argon2.exceptions import VerificationError, InvalidHashError
import pyotp

from segterm.config import ServerConfig


_ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
)


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return _ph.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Verify a password against an Argon2id hash."""
    try:
        return _ph.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def totp_provisioning_uri(secret: str, username: str = "owner") -> str:
    """URI for authenticator apps, usually rendered as a QR code."""
    return pyotp.TOTP(secret).provisioning_uri(name=username, issuer_name="segterm")


def verify_totp(secret: str, code: str) -> bool:
    """Verify a TOTP code, allowing +-1 time window for clock drift."""
    return pyotp.TOTP(secret).verify(code, valid_window=1)


def check_credentials(sc: ServerConfig, password: str, totp_code: str) -> str | None:
    """Check a login against the server configuration.

    Returns None on success, otherwise a short reason for the server log.
    The client is only ever told that authentication failed.
    """
    if not sc.password_hash or not verify_password(sc.password_hash, password):
        return "bad password"
    if sc.totp_enabled:
        if not totp_code or not verify_totp(sc.totp_secret, totp_code):
            return "bad TOTP"
    return None


class AuthTracker:
    """Track failed authentication attempts per remote address."""

    def __init__(self, max_failures: int, lockout_seconds: int):
        self.max_failures = max_failures
        self.lockout_seconds = lockout_seconds
        # ip -> (failure_count, first_failure_time)
        self._failures: dict[str, tuple[int, float]] = {}

    def is_locked(self, ip: str) -> bool:
        entry = self._failures.get(ip)
        if entry is None:
            return False
        count, first_time = entry
        if count < self.max_failures:
            return False
        if time.monotonic() - first_time < self.lockout_seconds:
            return True
        del self._failures[ip]
        return False

    def record_failure(self, ip: str) -> None:
        now = time.monotonic()
        count, first_time = self._failures.get(ip, (0, now))
        if now - first_time > self.lockout_seconds:
            count, first_time = 0, now
        self._failures[ip] = (count + 1, first_time)

    def clear(self, ip: str) -> None:
        self._failures.pop(ip, None)
