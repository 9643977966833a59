"""One-time codes, opaque tokens and temporary passwords.

All randomness flows through a :class:`RandomSource` so tests can inject a
deterministic generator; production uses :mod:`secrets`.
"""

from __future__ import annotations

import secrets
import string
from typing import Protocol

UPPERCASE = string.ascii_uppercase
LOWERCASE = string.ascii_lowercase
DIGITS = string.digits
SPECIAL = "!@#$%^&*"
TEMP_PASSWORD_ALPHABET = UPPERCASE + LOWERCASE + DIGITS + SPECIAL
TEMP_PASSWORD_MIN_LENGTH = 12


class RandomSource(Protocol):
    def token_bytes(self, nbytes: int) -> bytes: ...

    def randbelow(self, upper: int) -> int: ...


class SystemRandomSource:
    """CSPRNG-backed source."""

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)


_default_source = SystemRandomSource()


def generate_otp(length: int = 6, rng: RandomSource | None = None) -> str:
    """Return ``length`` decimal digits drawn uniformly from ``[0, 10**length)``."""
    if length < 1:
        raise ValueError("OTP length must be positive")
    rng = rng or _default_source
    return str(rng.randbelow(10**length)).zfill(length)


def generate_secure_token(length_chars: int = 64, rng: RandomSource | None = None) -> str:
    """Hex token of exactly ``length_chars`` characters."""
    if length_chars < 2 or length_chars % 2:
        raise ValueError("token length must be a positive even number of hex characters")
    rng = rng or _default_source
    return rng.token_bytes(length_chars // 2).hex()


def generate_session_token(nbytes: int = 32, rng: RandomSource | None = None) -> str:
    rng = rng or _default_source
    return rng.token_bytes(nbytes).hex()


def generate_temp_password(length: int = 16, rng: RandomSource | None = None) -> str:
    """Random password containing at least one character from every class.

    One character is drawn from each of upper, lower, digit and special; the
    rest come uniformly from the full alphabet, then a Fisher-Yates shuffle
    removes the positional pattern.
    """
    if length < TEMP_PASSWORD_MIN_LENGTH:
        raise ValueError(f"temporary password length must be at least {TEMP_PASSWORD_MIN_LENGTH}")
    rng = rng or _default_source
    chars = [cls[rng.randbelow(len(cls))] for cls in (UPPERCASE, LOWERCASE, DIGITS, SPECIAL)]
    chars.extend(
        TEMP_PASSWORD_ALPHABET[rng.randbelow(len(TEMP_PASSWORD_ALPHABET))]
        for _ in range(length - len(chars))
    )
    for i in range(len(chars) - 1, 0, -1):
        j = rng.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]
    return "".join(chars)


__all__ = [
    "RandomSource",
    "SystemRandomSource",
    "generate_otp",
    "generate_secure_token",
    "generate_session_token",
    "generate_temp_password",
    "SPECIAL",
    "TEMP_PASSWORD_ALPHABET",
]
