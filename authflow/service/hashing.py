from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authflow.config import Settings
from authflow.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Slow hashing for passwords and OTPs, fast digests for random tokens.

    Passwords and OTPs use separate argon2id parameter sets so that the
    short-lived six digit codes do not pay the full password cost. Long
    random tokens (magic links, refresh tokens) carry enough entropy that a
    SHA-256 digest is sufficient.
    """

    def __init__(self, settings: Settings) -> None:
        self._pwd_hasher = PasswordHasher(
            type=Type.ID,
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.hash_memory_cost_kib,
        )
        self._otp_hasher = PasswordHasher(
            type=Type.ID,
            time_cost=settings.otp_hash_time_cost,
            memory_cost=settings.hash_memory_cost_kib,
        )
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        return self._verify(self._pwd_hasher, stored_hash, password, kind="password")

    def verify_dummy_password(self, password: str) -> bool:
        """Spend one password verification for a caller with no account."""
        self._verify(self._pwd_hasher, self._dummy_hash, password, kind="dummy")
        return False

    def hash_otp(self, code: str) -> str:
        return self._otp_hasher.hash(code)

    def verify_otp(self, stored_hash: Optional[str], code: str) -> bool:
        return self._verify(self._otp_hasher, stored_hash, code, kind="otp")

    @staticmethod
    def _verify(
        hasher: PasswordHasher, stored_hash: Optional[str], candidate: str, *, kind: str
    ) -> bool:
        if not stored_hash or candidate is None:
            return False
        try:
            return hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("hash_verification_error", kind=kind)
            return False


def digest_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8", "surrogatepass")).hexdigest()


def tokens_match(candidate: Optional[str], stored_digest: Optional[str]) -> bool:
    """Compare a presented token against a stored digest in constant time.

    Both sides are reduced to fixed-length digests first, so the comparison
    cost does not depend on the candidate's length or on where it differs.
    """
    if not candidate or not stored_digest:
        return False
    return hmac.compare_digest(digest_token(candidate), stored_digest)


def secrets_match(candidate: Optional[str], stored: Optional[str]) -> bool:
    """Constant-time comparison of two plain secrets, e.g. signup session tokens."""
    if not candidate or not stored:
        return False
    return hmac.compare_digest(digest_token(candidate), digest_token(stored))


__all__ = ["CredentialHasher", "digest_token", "tokens_match", "secrets_match"]
