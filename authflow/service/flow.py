from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from authflow.config import Settings
from authflow.logging import get_logger, redact_email
from authflow.service.background import BackgroundTasks
from authflow.service.codes import RandomSource, SystemRandomSource
from authflow.service.context import RequestContext
from authflow.service.email import Notifier
from authflow.service.errors import ServiceUnavailableError
from authflow.service.hashing import CredentialHasher
from authflow.service.keys import KeyFamily, keys_for, make_key
from authflow.service.login_history import LoginHistoryRecorder
from authflow.service.tokens import TokenService
from authflow.storage.common import IdentityStore
from authflow.storage.errors import EphemeralStoreUnavailable
from authflow.storage.redis_cache import EphemeralStore

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FlowDeps:
    """Collaborators shared by every flow, injected once at startup."""

    settings: Settings
    store: IdentityStore
    cache: EphemeralStore
    hasher: CredentialHasher
    tokens: TokenService
    notifier: Notifier
    background: BackgroundTasks
    history: LoginHistoryRecorder
    rng: RandomSource = field(default_factory=SystemRandomSource)
    clock: Callable[[], datetime] = _utcnow


def flow_entry(func: F) -> F:
    """Turn an unreachable ephemeral store into a translated 503."""

    @functools.wraps(func)
    async def wrapper(self: "FlowBase", *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except EphemeralStoreUnavailable as exc:
            ctx = kwargs.get("ctx") or next(
                (arg for arg in args if isinstance(arg, RequestContext)), RequestContext()
            )
            logger.error(
                "flow_failed_closed",
                flow=func.__qualname__,
                operation=exc.operation,
            )
            raise ServiceUnavailableError(ctx.t("common.serviceUnavailable")) from exc

    return wrapper  # type: ignore[return-value]


class FlowBase:
    def __init__(self, deps: FlowDeps) -> None:
        self.deps = deps
        self.settings = deps.settings
        self.store = deps.store
        self.cache = deps.cache
        self.hasher = deps.hasher
        self.logger = get_logger(type(self).__module__)

    def _now(self) -> datetime:
        return self.deps.clock()

    async def _cooldown_remaining(self, family: KeyFamily, email: str) -> int:
        """Seconds left on a cooldown marker, 0 when none is active."""
        ttl = await self.cache.remaining_ttl(make_key(family, email), critical=True)
        return ttl if ttl > 0 else 0

    async def _claim_cooldown(self, family: KeyFamily, email: str, seconds: int) -> int:
        """Atomically start a cooldown; return 0 on success or the seconds left on a rival's."""
        key = make_key(family, email)
        if await self.cache.set_if_absent(key, "1", seconds, critical=True):
            return 0
        remaining = await self.cache.remaining_ttl(key, critical=True)
        return remaining if remaining > 0 else 1

    async def _counter(self, family: KeyFamily, email: str) -> int:
        raw = await self.cache.get(make_key(family, email), critical=True)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            self.logger.warning("counter_value_corrupt", family=family.value)
            return 0

    async def _cleanup(self, email: str, *families: KeyFamily) -> None:
        await self.cache.delete(*keys_for(email, families))

    def _notify(
        self,
        to: str,
        template_name: str,
        variables: Dict[str, Any],
        ctx: RequestContext,
    ) -> None:
        notifier = self.deps.notifier
        self.deps.background.fire_and_forget(
            lambda: notifier.send_templated(to, template_name, variables, ctx.language),
            f"email_{template_name}",
            {"recipient": redact_email(to)},
        )


__all__ = ["FlowDeps", "FlowBase", "flow_entry"]
