"""Ephemeral key families.

Every key is ``{family}:{normalized email}``. The family names are shared
with existing deployments and must not change.
"""

from __future__ import annotations

from enum import Enum

from authflow.storage.common import normalize_email


class KeyFamily(str, Enum):
    SIGNUP_OTP = "otp-signup"
    SIGNUP_OTP_COOLDOWN = "otp-signup-cooldown"
    SIGNUP_OTP_FAILED_ATTEMPTS = "otp-failed-attempts"
    SIGNUP_OTP_RESEND_COUNT = "otp-resend-count"
    SIGNUP_SESSION = "session-signup"
    LOGIN_FAILED_ATTEMPTS = "login-failed-attempts"
    LOGIN_LOCKOUT = "login-lockout"
    LOGIN_OTP = "otp-login"
    LOGIN_OTP_COOLDOWN = "otp-login-cooldown"
    LOGIN_OTP_FAILED_ATTEMPTS = "otp-login-failed-attempts"
    LOGIN_OTP_RESEND_COUNT = "otp-login-resend-count"
    MAGIC_LINK = "magic-link-login"
    MAGIC_LINK_COOLDOWN = "magic-link-login-cooldown"
    UNLOCK_COOLDOWN = "login-unlock-cooldown"
    UNLOCK_RATE = "login-unlock-rate"


def make_key(family: KeyFamily, email: str) -> str:
    return f"{family.value}:{normalize_email(email)}"


SIGNUP_FAMILIES = (
    KeyFamily.SIGNUP_OTP,
    KeyFamily.SIGNUP_OTP_COOLDOWN,
    KeyFamily.SIGNUP_OTP_FAILED_ATTEMPTS,
    KeyFamily.SIGNUP_OTP_RESEND_COUNT,
)
LOGIN_OTP_FAMILIES = (
    KeyFamily.LOGIN_OTP,
    KeyFamily.LOGIN_OTP_COOLDOWN,
    KeyFamily.LOGIN_OTP_FAILED_ATTEMPTS,
    KeyFamily.LOGIN_OTP_RESEND_COUNT,
)
LOCKOUT_FAMILIES = (KeyFamily.LOGIN_FAILED_ATTEMPTS, KeyFamily.LOGIN_LOCKOUT)


def keys_for(email: str, families: tuple[KeyFamily, ...]) -> list[str]:
    return [make_key(family, email) for family in families]
