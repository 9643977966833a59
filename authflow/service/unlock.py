from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from authflow.logging import redact_email
from authflow.service.codes import generate_temp_password
from authflow.service.context import FlowResult, RequestContext
from authflow.service.errors import BadRequestError, TooManyRequestsError, UnauthorizedError
from authflow.service.flow import FlowBase, FlowDeps, flow_entry
from authflow.service.keys import LOCKOUT_FAMILIES, KeyFamily, make_key
from authflow.service.session import SessionService
from authflow.storage.common import normalize_email
from authflow.storage.models import AuthRecord, LoginFailReason, LoginMethod


class UnlockService(FlowBase):
    """Self-service unlock of a locked-out account with a one-time temporary password."""

    def __init__(self, deps: FlowDeps, sessions: SessionService) -> None:
        super().__init__(deps)
        self.sessions = sessions
        self.policy = deps.settings.unlock

    @flow_entry
    async def request_unlock(self, email: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        remaining = await self._cooldown_remaining(KeyFamily.UNLOCK_COOLDOWN, email)
        if remaining:
            raise BadRequestError(
                ctx.t("unlock.cooldown", seconds=remaining),
                error_code="unlock_cooldown",
                detail={"retryAfter": remaining},
            )
        requests = await self.cache.increment_with_window(
            make_key(KeyFamily.UNLOCK_RATE, email),
            self.policy.request_window_seconds,
            critical=True,
        )
        if requests > self.policy.max_requests:
            self.logger.warning("unlock_rate_exceeded", email=redact_email(email), requests=requests)
            raise TooManyRequestsError(ctx.t("unlock.tooManyRequests"), error_code="unlock_rate_limited")

        accepted = FlowResult(message=ctx.t("unlock.requested"), data={"success": True})
        auth = await self.store.find_by_email(email)
        if auth is None:
            # Same answer and same cooldown as a real account
            await self._set_cooldown(email)
            self.logger.info("unlock_requested_unknown_email")
            return accepted
        if not auth.is_active:
            raise BadRequestError(ctx.t("unlock.accountDisabled"), error_code="account_disabled")
        locked_for = await self.cache.remaining_ttl(
            make_key(KeyFamily.LOGIN_LOCKOUT, email), critical=True
        )
        if locked_for <= 0:
            raise BadRequestError(ctx.t("unlock.accountNotLocked"), error_code="account_not_locked")

        temp_password = generate_temp_password(self.policy.temp_password_length, self.deps.rng)
        expires_at = self._now() + timedelta(seconds=self.policy.temp_password_expiry_seconds)
        await self.store.update_auth(
            auth.id,
            {
                "temp_password_hash": self.hasher.hash_password(temp_password),
                "temp_password_expires_at": expires_at,
                "temp_password_used": False,
            },
        )
        self._notify(
            email,
            "unlock-temp-password",
            {
                "temp_password": temp_password,
                "expires_minutes": self.policy.temp_password_expiry_seconds // 60,
            },
            ctx,
        )
        await self._set_cooldown(email)
        self.logger.info("unlock_temp_password_issued", auth_id=auth.id)
        return accepted

    async def _set_cooldown(self, email: str) -> None:
        await self.cache.set_with_ttl(
            make_key(KeyFamily.UNLOCK_COOLDOWN, email), "1", self.policy.cooldown_seconds, critical=True
        )

    @flow_entry
    async def verify_unlock(self, email: str, temp_password: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        auth = await self.store.find_by_email(email)
        reason = None
        if auth is None:
            self.hasher.verify_dummy_password(temp_password)
            reason = "unknown_email"
        elif not auth.temp_password_hash:
            self.hasher.verify_dummy_password(temp_password)
            reason = "no_temp_password"
        elif auth.temp_password_used:
            self.hasher.verify_dummy_password(temp_password)
            reason = "temp_password_used"
        elif auth.temp_password_expires_at is None or _as_utc(
            auth.temp_password_expires_at
        ) <= self._now():
            self.hasher.verify_dummy_password(temp_password)
            reason = "temp_password_expired"
        elif not auth.is_active:
            self.hasher.verify_dummy_password(temp_password)
            reason = "account_inactive"
        elif not self.hasher.verify_password(auth.temp_password_hash, temp_password):
            reason = "temp_password_mismatch"

        if reason is not None:
            raise self._rejected(email, auth, reason, ctx)

        # A concurrent verify of the same temp password loses here
        if not await self.store.consume_temp_password(auth.id, auth.temp_password_hash):
            raise self._rejected(email, auth, "temp_password_used", ctx)
        await self._cleanup(email, *LOCKOUT_FAMILIES)
        self.logger.info("account_unlocked", auth_id=auth.id)
        data = await self.sessions.complete_login(auth, LoginMethod.UNLOCK, ctx)
        return FlowResult(message=ctx.t("unlock.success"), data=data)

    def _rejected(
        self, email: str, auth: Optional[AuthRecord], reason: str, ctx: RequestContext
    ) -> UnauthorizedError:
        self.logger.warning("unlock_verify_rejected", reason=reason, email=redact_email(email))
        if auth is not None:
            self.deps.history.record_failure(
                ctx,
                email=email,
                auth_id=auth.id,
                method=LoginMethod.UNLOCK,
                reason=LoginFailReason.INVALID_TEMP_PASSWORD,
            )
        return UnauthorizedError(
            ctx.t("unlock.invalidTempPassword"), error_code="invalid_temp_password"
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
