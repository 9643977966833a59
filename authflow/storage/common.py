"""Common storage contracts shared between memory and mongo implementations.

Both durable backends normalize addresses and validate record patches the
same way; the helpers live here so behavior cannot drift between them.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Optional, Protocol

from authflow.storage.models import (
    AUTH_MUTABLE_FIELDS,
    AuthRecord,
    LoginHistoryEntry,
    UserProfile,
)


class IdentityStore(Protocol):
    """Durable identity persistence consumed by the authentication flows."""

    async def find_by_email(self, email: str) -> Optional[AuthRecord]: ...

    async def find_by_id(self, auth_id: str) -> Optional[AuthRecord]: ...

    async def exists_by_email(self, email: str) -> bool: ...

    async def create_auth(self, record: AuthRecord) -> AuthRecord: ...

    async def update_auth(self, auth_id: str, patch: Dict[str, Any]) -> Optional[AuthRecord]: ...

    async def consume_temp_password(self, auth_id: str, temp_password_hash: str) -> bool:
        """Mark an unused temp password used; False if it was already consumed or replaced."""
        ...

    async def create_profile(self, profile: UserProfile) -> UserProfile: ...

    async def find_profile_by_auth_id(self, auth_id: str) -> Optional[UserProfile]: ...

    async def create_login_history(self, entry: LoginHistoryEntry) -> None: ...

    async def close(self) -> None: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_auth_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown or immutable fields before any backend write."""
    unknown = set(patch) - AUTH_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"cannot update auth fields: {sorted(unknown)}")
    return dict(patch)


def apply_auth_patch(record: AuthRecord, patch: Dict[str, Any]) -> AuthRecord:
    updated = replace(record, **validate_auth_patch(patch))
    if updated.temp_password_used and updated.temp_password_hash is None:
        raise ValueError("temp_password_used requires a retained temp_password_hash")
    return updated


__all__ = [
    "IdentityStore",
    "normalize_email",
    "validate_auth_patch",
    "apply_auth_patch",
]
