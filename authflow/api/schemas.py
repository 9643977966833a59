from __future__ import annotations

import re
import unicodedata
from datetime import date
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator

from authflow.storage.models import Gender

MAX_NAME_LENGTH = 100
MAX_ADDRESS_LENGTH = 255

# Credentials are taken verbatim; every other text field is trimmed
_Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    Folds compatibility characters and combining diacritics, then strips
    zero-width characters so look-alike addresses collapse to one key.
    """
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(
        ch for ch in normalized if unicodedata.category(ch) != "Cf"
    )


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
        raise ValueError("password must contain letters and digits")
    return value


class _Request(BaseModel):
    # Clients send camelCase; snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True)


class EmailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class OtpVerifyRequest(EmailRequest):
    otp: _Trimmed = Field(..., pattern=r"^\d{4,8}$")


class CompleteSignupRequest(EmailRequest):
    password: str
    full_name: _Trimmed = Field(..., alias="fullName", min_length=1, max_length=MAX_NAME_LENGTH)
    gender: Gender
    date_of_birth: date = Field(..., alias="dateOfBirth")
    session_token: _Trimmed = Field(..., alias="sessionToken", min_length=1, max_length=256)
    phone: Optional[_Trimmed] = Field(default=None, pattern=r"^\+?[0-9 ()-]{6,20}$")
    address: Optional[_Trimmed] = Field(default=None, max_length=MAX_ADDRESS_LENGTH)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("full_name")
    @classmethod
    def _normalize_full_name(cls, value: str) -> str:
        return _normalize_unicode(value)

    @field_validator("date_of_birth")
    @classmethod
    def _validate_date_of_birth(cls, value: date) -> date:
        if value >= date.today():
            raise ValueError("date of birth must be in the past")
        if value.year < 1900:
            raise ValueError("date of birth is out of range")
        return value


class LoginRequest(EmailRequest):
    # Length rules apply at signup only; any stored password must stay usable
    password: str = Field(..., min_length=1, max_length=128)


class MagicLinkVerifyRequest(EmailRequest):
    token: _Trimmed = Field(..., min_length=1, max_length=256)


class UnlockVerifyRequest(EmailRequest):
    temp_password: str = Field(..., alias="tempPassword", min_length=1, max_length=128)


class TokenRefreshRequest(_Request):
    refresh_token: Optional[_Trimmed] = Field(default=None, alias="refreshToken", max_length=2048)
