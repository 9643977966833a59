from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from authflow.config import Settings, get_settings, reset_settings_cache
from authflow.logging import get_logger
from authflow.service.background import BackgroundTasks
from authflow.service.geo import GeoLocator
from authflow.service.codes import RandomSource, SystemRandomSource
from authflow.service.email import EmailService, Notifier
from authflow.service.flow import FlowDeps
from authflow.service.hashing import CredentialHasher
from authflow.service.login import LoginService
from authflow.service.login_history import LoginHistoryRecorder
from authflow.service.session import SessionService
from authflow.service.signup import SignupService
from authflow.service.tokens import TokenService
from authflow.service.unlock import UnlockService
from authflow.storage.common import IdentityStore
from authflow.storage.memory import MemoryCache, MemoryStore
from authflow.storage.redis_cache import EphemeralStore, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired service instances for the FastAPI app.

    Every collaborator can be passed in; anything omitted is built from
    settings (Mongo + Redis, or in-memory stores when ``USE_MEMORY_STORE``).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[IdentityStore] = None,
        cache: Optional[EphemeralStore] = None,
        notifier: Optional[Notifier] = None,
        background: Optional[BackgroundTasks] = None,
        rng: Optional[RandomSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            store = self._build_store()
        if cache is None:
            cache = self._build_cache()
        self.store = store
        self.cache = cache

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        if not self.email.is_configured and notifier is None:
            logger.warning("email_not_configured", message="emails will be logged, not sent")

        self.background = background or BackgroundTasks(self.settings.retry)
        self.tokens = TokenService(self.settings, clock=clock)
        self.geo = GeoLocator(self.settings.geoip_database_path)
        deps = FlowDeps(
            settings=self.settings,
            store=self.store,
            cache=self.cache,
            hasher=CredentialHasher(self.settings),
            tokens=self.tokens,
            notifier=notifier or self.email,
            background=self.background,
            history=LoginHistoryRecorder(self.store, self.background, self.geo),
            rng=rng or SystemRandomSource(),
        )
        if clock is not None:
            deps.clock = clock
        self.deps = deps
        self.sessions = SessionService(deps)
        self.signup = SignupService(deps, self.sessions)
        self.login = LoginService(deps, self.sessions)
        self.unlock = UnlockService(deps, self.sessions)
        logger.info("runtime_init_completed")

    def _build_store(self) -> IdentityStore:
        store_type = "memory" if self.settings.use_memory_store else "mongo"
        try:
            if self.settings.use_memory_store:
                store: IdentityStore = MemoryStore()
            else:
                from authflow.storage.mongo import MongoStore

                store = MongoStore(self.settings.mongo_url, self.settings.mongo_database)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                mongo_url=_mask_url_password(self.settings.mongo_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> EphemeralStore:
        if self.settings.use_memory_store:
            logger.warning(
                "redis_disabled_memory_cache",
                message="cooldowns, counters and OTPs are process-local",
            )
            return MemoryCache()
        cache = RedisCache(self.settings.redis_url)
        logger.info("runtime_cache_initialized", redis_url=_mask_url_password(self.settings.redis_url))
        return cache

    async def startup(self) -> None:
        if isinstance(self.cache, RedisCache):
            self.cache.verify_connection()
        ensure_indexes = getattr(self.store, "ensure_indexes", None)
        if ensure_indexes is not None:
            await ensure_indexes()

    async def shutdown(self) -> None:
        await self.background.drain(timeout=10.0)
        await self.cache.close()
        await self.store.close()
        self.geo.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining
    )
