from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from authflow.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_LANGUAGES = ("en", "vi")

CATALOGS: Dict[str, Dict[str, str]] = {
    "en": {
        "common.serviceUnavailable": "Service temporarily unavailable, please try again later",
        "common.rateLimited": "Too many requests, please try again in {duration}",
        "common.invalidRequest": "Invalid request",
        "common.internalError": "Internal server error",
        "signup.otpCooldown": "Please wait {seconds} seconds before requesting a new code",
        "signup.emailRegistered": "This email is already registered",
        "signup.otpSent": "Verification code sent to your email",
        "signup.otpResent": "Verification code resent to your email",
        "signup.resendLimitExceeded": "You have requested too many codes, please try again later",
        "signup.otpAttemptsExceeded": "Too many incorrect attempts, please request a new code",
        "signup.otpInvalid": "Incorrect verification code, {remaining} attempts remaining",
        "signup.otpExpired": "Verification code has expired, please request a new one",
        "signup.otpVerified": "Email verified successfully",
        "signup.sessionInvalid": "Signup session is invalid or has expired",
        "signup.completed": "Account created successfully",
        "signup.emailAvailable": "Email is available",
        "signup.emailUnavailable": "Email is already in use",
        "login.invalidCredentials": "Invalid email or password",
        "login.accountLocked": (
            "Account locked after {attempts} failed attempts, try again in {duration}"
        ),
        "login.success": "Logged in successfully",
        "login.invalidEmail": "This email cannot be used to sign in",
        "login.otpCooldown": "Please wait {seconds} seconds before requesting a new code",
        "login.otpResendLimit": "You have requested too many codes, please try again later",
        "login.otpSent": "Login code sent to your email",
        "login.otpLocked": "Too many incorrect attempts, please try again later",
        "login.otpInvalid": "Incorrect login code, {remaining} attempts remaining",
        "login.magicLinkCooldown": "Please wait {seconds} seconds before requesting a new link",
        "login.magicLinkSent": "Login link sent to your email",
        "login.invalidMagicLink": "Login link is invalid or has expired",
        "unlock.cooldown": "Please wait {seconds} seconds before requesting again",
        "unlock.tooManyRequests": "Too many unlock requests, please try again later",
        "unlock.requested": (
            "If the account exists and is locked, a temporary password has been sent"
        ),
        "unlock.accountDisabled": "This account has been disabled",
        "unlock.accountNotLocked": "This account is not locked",
        "unlock.invalidTempPassword": "Temporary password is invalid or has expired",
        "unlock.success": "Account unlocked successfully",
        "session.refreshMissing": "Refresh token is required",
        "session.refreshInvalid": "Refresh token is invalid or has expired",
        "session.refreshed": "Tokens refreshed",
        "session.loggedOut": "Logged out successfully",
        "email.signupOtp.subject": "Your verification code",
        "email.signupOtp.body": (
            "Your verification code is {otp}. It expires in {expires_minutes} minutes."
        ),
        "email.loginOtp.subject": "Your login code",
        "email.loginOtp.body": "Your login code is {otp}. It expires in {expires_minutes} minutes.",
        "email.magicLink.subject": "Your login link",
        "email.magicLink.body": (
            "Click the link below to log in. It expires in {expires_minutes} minutes.\n\n{link}"
        ),
        "email.unlock.subject": "Unlock your account",
        "email.unlock.body": (
            "Your temporary password is {temp_password}. "
            "It expires in {expires_minutes} minutes and can be used once."
        ),
    },
    "vi": {
        "common.serviceUnavailable": "Dịch vụ tạm thời không khả dụng, vui lòng thử lại sau",
        "common.rateLimited": "Quá nhiều yêu cầu, vui lòng thử lại sau {duration}",
        "common.invalidRequest": "Yêu cầu không hợp lệ",
        "common.internalError": "Lỗi máy chủ nội bộ",
        "signup.otpCooldown": "Vui lòng đợi {seconds} giây trước khi yêu cầu mã mới",
        "signup.emailRegistered": "Email này đã được đăng ký",
        "signup.otpSent": "Mã xác thực đã được gửi đến email của bạn",
        "signup.otpResent": "Mã xác thực đã được gửi lại đến email của bạn",
        "signup.resendLimitExceeded": "Bạn đã yêu cầu quá nhiều mã, vui lòng thử lại sau",
        "signup.otpAttemptsExceeded": "Nhập sai quá nhiều lần, vui lòng yêu cầu mã mới",
        "signup.otpInvalid": "Mã xác thực không đúng, còn {remaining} lần thử",
        "signup.otpExpired": "Mã xác thực đã hết hạn, vui lòng yêu cầu mã mới",
        "signup.otpVerified": "Xác thực email thành công",
        "signup.sessionInvalid": "Phiên đăng ký không hợp lệ hoặc đã hết hạn",
        "signup.completed": "Tạo tài khoản thành công",
        "signup.emailAvailable": "Email có thể sử dụng",
        "signup.emailUnavailable": "Email đã được sử dụng",
        "login.invalidCredentials": "Email hoặc mật khẩu không đúng",
        "login.accountLocked": (
            "Tài khoản bị khóa sau {attempts} lần thử sai, vui lòng thử lại sau {duration}"
        ),
        "login.success": "Đăng nhập thành công",
        "login.invalidEmail": "Email này không thể dùng để đăng nhập",
        "login.otpCooldown": "Vui lòng đợi {seconds} giây trước khi yêu cầu mã mới",
        "login.otpResendLimit": "Bạn đã yêu cầu quá nhiều mã, vui lòng thử lại sau",
        "login.otpSent": "Mã đăng nhập đã được gửi đến email của bạn",
        "login.otpLocked": "Nhập sai quá nhiều lần, vui lòng thử lại sau",
        "login.otpInvalid": "Mã đăng nhập không đúng, còn {remaining} lần thử",
        "login.magicLinkCooldown": "Vui lòng đợi {seconds} giây trước khi yêu cầu liên kết mới",
        "login.magicLinkSent": "Liên kết đăng nhập đã được gửi đến email của bạn",
        "login.invalidMagicLink": "Liên kết đăng nhập không hợp lệ hoặc đã hết hạn",
        "unlock.cooldown": "Vui lòng đợi {seconds} giây trước khi yêu cầu lại",
        "unlock.tooManyRequests": "Quá nhiều yêu cầu mở khóa, vui lòng thử lại sau",
        "unlock.requested": (
            "Nếu tài khoản tồn tại và đang bị khóa, mật khẩu tạm thời đã được gửi"
        ),
        "unlock.accountDisabled": "Tài khoản đã bị vô hiệu hóa",
        "unlock.accountNotLocked": "Tài khoản không bị khóa",
        "unlock.invalidTempPassword": "Mật khẩu tạm thời không hợp lệ hoặc đã hết hạn",
        "unlock.success": "Mở khóa tài khoản thành công",
        "session.refreshMissing": "Thiếu refresh token",
        "session.refreshInvalid": "Refresh token không hợp lệ hoặc đã hết hạn",
        "session.refreshed": "Làm mới token thành công",
        "session.loggedOut": "Đăng xuất thành công",
        "email.signupOtp.subject": "Mã xác thực của bạn",
        "email.signupOtp.body": "Mã xác thực của bạn là {otp}. Mã hết hạn sau {expires_minutes} phút.",
        "email.loginOtp.subject": "Mã đăng nhập của bạn",
        "email.loginOtp.body": "Mã đăng nhập của bạn là {otp}. Mã hết hạn sau {expires_minutes} phút.",
        "email.magicLink.subject": "Liên kết đăng nhập của bạn",
        "email.magicLink.body": (
            "Nhấn vào liên kết dưới đây để đăng nhập. Liên kết hết hạn sau "
            "{expires_minutes} phút.\n\n{link}"
        ),
        "email.unlock.subject": "Mở khóa tài khoản của bạn",
        "email.unlock.body": (
            "Mật khẩu tạm thời của bạn là {temp_password}. "
            "Mật khẩu hết hạn sau {expires_minutes} phút và chỉ dùng được một lần."
        ),
    },
}


class Translator(Protocol):
    language: str

    def t(self, key: str, **params: Any) -> str: ...


class CatalogTranslator:
    """Looks keys up in the language catalog, falling back to English, then the key."""

    def __init__(self, language: str = "en") -> None:
        self.language = language if language in CATALOGS else "en"

    def t(self, key: str, **params: Any) -> str:
        template = CATALOGS[self.language].get(key) or CATALOGS["en"].get(key)
        if template is None:
            logger.warning("translation_missing", key=key, language=self.language)
            return key
        try:
            return template.format(**params)
        except (KeyError, IndexError):
            logger.warning("translation_params_missing", key=key, language=self.language)
            return template


def negotiate_language(accept_language: Optional[str], default: str = "en") -> str:
    """Pick the first supported language from an ``Accept-Language`` header."""
    if not accept_language:
        return default
    ranked = []
    for index, part in enumerate(accept_language.split(",")):
        tag, _, params = part.strip().partition(";")
        quality = 1.0
        if params.strip().startswith("q="):
            try:
                quality = float(params.strip()[2:])
            except ValueError:
                quality = 0.0
        ranked.append((-quality, index, tag.strip().lower()[:2]))
    for _, _, language in sorted(ranked):
        if language in SUPPORTED_LANGUAGES:
            return language
    return default


def get_translator(language: Optional[str]) -> CatalogTranslator:
    return CatalogTranslator(language or "en")
