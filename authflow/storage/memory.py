from __future__ import annotations

import math
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from authflow.logging import get_logger
from authflow.storage.common import apply_auth_patch, normalize_email
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import AuthRecord, LoginHistoryEntry, UserProfile


class MemoryStore:
    """In-memory durable identity store for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.auths: Dict[str, AuthRecord] = {}
        self.profiles: Dict[str, UserProfile] = {}
        self.login_history: List[LoginHistoryEntry] = []
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    async def find_by_email(self, email: str) -> Optional[AuthRecord]:
        normalized = normalize_email(email)
        with self._data_lock:
            for record in self.auths.values():
                if record.email == normalized:
                    return replace(record)
        return None

    async def find_by_id(self, auth_id: str) -> Optional[AuthRecord]:
        with self._data_lock:
            record = self.auths.get(auth_id)
            return replace(record) if record else None

    async def exists_by_email(self, email: str) -> bool:
        return await self.find_by_email(email) is not None

    async def create_auth(self, record: AuthRecord) -> AuthRecord:
        stored = replace(record, email=normalize_email(record.email))
        with self._data_lock:
            if any(existing.email == stored.email for existing in self.auths.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.auths[stored.id] = stored
        return replace(stored)

    async def update_auth(self, auth_id: str, patch: Dict[str, Any]) -> Optional[AuthRecord]:
        with self._data_lock:
            record = self.auths.get(auth_id)
            if record is None:
                return None
            updated = apply_auth_patch(record, patch)
            self.auths[auth_id] = updated
            return replace(updated)

    async def consume_temp_password(self, auth_id: str, temp_password_hash: str) -> bool:
        with self._data_lock:
            record = self.auths.get(auth_id)
            if (
                record is None
                or record.temp_password_used
                or record.temp_password_hash != temp_password_hash
            ):
                return False
            self.auths[auth_id] = replace(record, temp_password_used=True)
            return True

    async def create_profile(self, profile: UserProfile) -> UserProfile:
        with self._data_lock:
            if profile.auth_id in self.profiles:
                raise ConstraintViolation("profile already exists", {"field": "auth_id"})
            self.profiles[profile.auth_id] = profile
        return profile

    async def find_profile_by_auth_id(self, auth_id: str) -> Optional[UserProfile]:
        with self._data_lock:
            return self.profiles.get(auth_id)

    async def create_login_history(self, entry: LoginHistoryEntry) -> None:
        with self._data_lock:
            self.login_history.append(entry)

    async def close(self) -> None:
        return None


class MemoryCache:
    """Process-local ephemeral store with the same contract as ``RedisCache``.

    ``clock`` returns seconds and defaults to ``time.monotonic``; tests pass a
    fake clock to advance expiry without sleeping. Being in-process it never
    becomes unavailable, so ``critical`` is accepted and ignored.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or time.monotonic
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._data_lock = threading.RLock()

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str, *, critical: bool = False) -> Optional[str]:
        with self._data_lock:
            self._purge(key)
            return self._values.get(key)

    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, critical: bool = False
    ) -> None:
        with self._data_lock:
            self._values[key] = str(value)
            self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    async def set_if_absent(
        self, key: str, value: str, ttl_seconds: int, *, critical: bool = False
    ) -> bool:
        with self._data_lock:
            self._purge(key)
            if key in self._values:
                return False
            self._values[key] = str(value)
            self._expiry[key] = self._clock() + max(1, int(ttl_seconds))
            return True

    async def delete(self, *keys: str, critical: bool = False) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                self._purge(key)
                if self._values.pop(key, None) is not None:
                    removed += 1
                self._expiry.pop(key, None)
        return removed

    async def delete_if_equals(self, key: str, value: str, *, critical: bool = False) -> bool:
        with self._data_lock:
            self._purge(key)
            if self._values.get(key) != value:
                return False
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return True

    async def exists(self, key: str, *, critical: bool = False) -> int:
        with self._data_lock:
            self._purge(key)
            return 1 if key in self._values else 0

    async def increment(self, key: str, *, critical: bool = False) -> int:
        with self._data_lock:
            self._purge(key)
            try:
                current = int(self._values.get(key, "0"))
            except ValueError as exc:
                raise ValueError(f"value at {key.split(':', 1)[0]} is not an integer") from exc
            current += 1
            self._values[key] = str(current)
            return current

    async def increment_with_window(
        self, key: str, window_seconds: int, *, critical: bool = False
    ) -> int:
        with self._data_lock:
            count = await self.increment(key)
            if count == 1:
                self._expiry[key] = self._clock() + max(1, int(window_seconds))
            return count

    async def set_expiry(self, key: str, seconds: int, *, critical: bool = False) -> bool:
        with self._data_lock:
            self._purge(key)
            if key not in self._values:
                return False
            self._expiry[key] = self._clock() + max(1, int(seconds))
            return True

    async def remaining_ttl(self, key: str, *, critical: bool = False) -> int:
        """Seconds left on ``key``; -1 when it has no expiry, -2 when absent."""
        with self._data_lock:
            self._purge(key)
            if key not in self._values:
                return -2
            deadline = self._expiry.get(key)
            if deadline is None:
                return -1
            return max(1, math.ceil(deadline - self._clock()))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket mirroring the Redis Lua script."""
        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        cost = max(1, cost)
        with self._data_lock:
            tokens, last = self._buckets.get(key, (float(limit), now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < cost:
                self._buckets[key] = (tokens, now)
                reset_after = math.ceil((cost - tokens) / refill_rate)
                allowed, remaining, reset_seconds = False, int(tokens), reset_after
            else:
                tokens -= cost
                self._buckets[key] = (tokens, now)
                allowed, remaining, reset_seconds = True, int(tokens), 0
        if return_remaining:
            return (allowed, max(0, remaining), reset_seconds)
        return allowed

    async def close(self) -> None:
        return None
