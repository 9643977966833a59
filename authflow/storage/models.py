from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class LoginMethod(str, Enum):
    PASSWORD = "password"
    OTP = "otp"
    MAGIC_LINK = "magic-link"
    UNLOCK = "unlock"


class LoginStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class LoginFailReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    INVALID_OTP = "invalid_otp"
    OTP_EXPIRED = "otp_expired"
    INVALID_MAGIC_LINK = "invalid_magic_link"
    MAGIC_LINK_EXPIRED = "magic_link_expired"
    INVALID_TEMP_PASSWORD = "invalid_temp_password"
    PASSWORDLESS_ACCOUNT = "passwordless_account"


class ClientType(str, Enum):
    WEB = "web"
    MOBILE_IOS = "mobile_ios"
    MOBILE_ANDROID = "mobile_android"


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class AuthRecord:
    """Durable credential record, one per identity.

    ``temp_password_used`` is only ever true while ``temp_password_hash`` is
    kept, so a consumed temporary password stays auditable until the next
    unlock request overwrites it.
    """

    id: str
    email: str
    password_hash: Optional[str] = None
    verified_email: bool = False
    roles: Role = Role.USER
    is_active: bool = True
    refresh_token_hash: Optional[str] = None
    temp_password_hash: Optional[str] = None
    temp_password_expires_at: Optional[datetime] = None
    temp_password_used: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: Optional[str],
        *,
        verified_email: bool = True,
        roles: Role = Role.USER,
    ) -> "AuthRecord":
        return cls(
            id=new_id(),
            email=email.strip().lower(),
            password_hash=password_hash,
            verified_email=verified_email,
            roles=roles,
        )


@dataclass
class UserProfile:
    id: str
    auth_id: str
    full_name: str
    gender: Gender
    date_of_birth: date
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginHistoryEntry:
    id: str
    username_attempted: str
    method: LoginMethod
    status: LoginStatus
    auth_id: Optional[str] = None
    fail_reason: Optional[LoginFailReason] = None
    ip: str = "unknown"
    country: str = "unknown"
    city: str = "unknown"
    device_type: str = "unknown"
    os: str = "unknown"
    browser: str = "unknown"
    user_agent: str = ""
    client_type: ClientType = ClientType.WEB
    created_at: datetime = field(default_factory=utcnow)


# Fields ``update_auth`` accepts; everything else on AuthRecord is immutable.
AUTH_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "verified_email",
        "roles",
        "is_active",
        "refresh_token_hash",
        "temp_password_hash",
        "temp_password_expires_at",
        "temp_password_used",
        "last_login",
    }
)
