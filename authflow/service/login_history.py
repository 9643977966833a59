from __future__ import annotations

from typing import Optional

from authflow.logging import get_logger
from authflow.service.background import BackgroundTasks
from authflow.service.context import RequestContext
from authflow.service.geo import GeoLocator
from authflow.storage.common import IdentityStore
from authflow.storage.models import (
    LoginFailReason,
    LoginHistoryEntry,
    LoginMethod,
    LoginStatus,
    new_id,
)

logger = get_logger(__name__)


class LoginHistoryRecorder:
    """Append-only login audit trail written off the request path."""

    def __init__(
        self,
        store: IdentityStore,
        background: BackgroundTasks,
        geo: Optional[GeoLocator] = None,
    ) -> None:
        self.store = store
        self.background = background
        self.geo = geo or GeoLocator()

    def _entry(
        self,
        ctx: RequestContext,
        *,
        email: str,
        auth_id: Optional[str],
        method: LoginMethod,
        status: LoginStatus,
        fail_reason: Optional[LoginFailReason] = None,
    ) -> LoginHistoryEntry:
        location = self.geo.lookup(ctx.ip)
        return LoginHistoryEntry(
            id=new_id(),
            auth_id=auth_id,
            username_attempted=email,
            method=method,
            status=status,
            fail_reason=fail_reason,
            ip=ctx.ip,
            country=location.country,
            city=location.city,
            device_type=ctx.device.device_type,
            os=ctx.device.os,
            browser=ctx.device.browser,
            user_agent=ctx.user_agent,
            client_type=ctx.client_type,
        )

    def record_success(
        self, ctx: RequestContext, *, email: str, auth_id: str, method: LoginMethod
    ) -> None:
        entry = self._entry(
            ctx, email=email, auth_id=auth_id, method=method, status=LoginStatus.SUCCESS
        )
        self.background.fire_and_forget(
            lambda: self.store.create_login_history(entry),
            "login_history_success",
            {"auth_id": auth_id, "method": method.value},
        )

    def record_failure(
        self,
        ctx: RequestContext,
        *,
        email: str,
        auth_id: Optional[str],
        method: LoginMethod,
        reason: LoginFailReason,
    ) -> None:
        # Failures are only recorded against known accounts
        if not auth_id:
            logger.info("login_history_skipped_unknown_account", method=method.value, reason=reason.value)
            return
        entry = self._entry(
            ctx,
            email=email,
            auth_id=auth_id,
            method=method,
            status=LoginStatus.FAILED,
            fail_reason=reason,
        )
        self.background.fire_and_forget(
            lambda: self.store.create_login_history(entry),
            "login_history_failure",
            {"auth_id": auth_id, "method": method.value, "reason": reason.value},
        )
