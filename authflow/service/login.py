from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from authflow.logging import redact_email
from authflow.service.codes import generate_otp, generate_secure_token
from authflow.service.context import FlowResult, RequestContext
from authflow.service.errors import BadRequestError, UnauthorizedError
from authflow.service.flow import FlowBase, FlowDeps, flow_entry
from authflow.service.hashing import digest_token, tokens_match
from authflow.service.keys import LOGIN_OTP_FAMILIES, KeyFamily, make_key
from authflow.service.policy import format_duration, lockout_duration
from authflow.service.session import SessionService
from authflow.storage.common import normalize_email
from authflow.storage.models import AuthRecord, LoginFailReason, LoginMethod


class LoginService(FlowBase):
    """Password, one-time code and magic link authentication."""

    def __init__(self, deps: FlowDeps, sessions: SessionService) -> None:
        super().__init__(deps)
        self.sessions = sessions
        self.lockout = deps.settings.lockout
        self.otp_policy = deps.settings.login_otp
        self.link_policy = deps.settings.magic_link

    def _invalid_credentials(self, ctx: RequestContext) -> UnauthorizedError:
        return UnauthorizedError(ctx.t("login.invalidCredentials"), error_code="invalid_credentials")

    async def _raise_if_locked(self, email: str, ctx: RequestContext) -> None:
        lockout_key = make_key(KeyFamily.LOGIN_LOCKOUT, email)
        remaining = await self.cache.remaining_ttl(lockout_key, critical=True)
        if remaining <= 0:
            return
        attempts = await self._counter(KeyFamily.LOGIN_LOCKOUT, email)
        self.logger.info("login_rejected_locked", email=redact_email(email), remaining=remaining)
        raise self._locked(attempts, remaining, ctx)

    def _locked(self, attempts: int, seconds: int, ctx: RequestContext) -> BadRequestError:
        return BadRequestError(
            ctx.t(
                "login.accountLocked",
                attempts=attempts,
                duration=format_duration(seconds, ctx.language),
            ),
            error_code="account_locked",
            detail={"retryAfter": seconds, "failedAttempts": attempts},
        )

    async def _record_failed_password(self, email: str) -> tuple[int, int]:
        """Count a wrong password and start a lockout when the table says so.

        Returns ``(attempts, lockout_seconds)``; the duration is 0 when no
        lockout was started.
        """
        attempts = await self.cache.increment_with_window(
            make_key(KeyFamily.LOGIN_FAILED_ATTEMPTS, email),
            self.lockout.reset_window_seconds,
            critical=True,
        )
        duration = lockout_duration(attempts, self.lockout)
        if duration > 0:
            await self.cache.set_with_ttl(
                make_key(KeyFamily.LOGIN_LOCKOUT, email), str(attempts), duration, critical=True
            )
            self.logger.warning(
                "login_lockout_started",
                email=redact_email(email),
                attempts=attempts,
                lockout_seconds=duration,
            )
        return attempts, duration

    @flow_entry
    async def login(self, email: str, password: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        await self._raise_if_locked(email, ctx)

        auth = await self.store.find_by_email(email)
        reason: Optional[LoginFailReason] = None
        if auth is None:
            self.hasher.verify_dummy_password(password)
            reason = LoginFailReason.INVALID_CREDENTIALS
        elif not auth.is_active:
            self.hasher.verify_dummy_password(password)
            reason = LoginFailReason.ACCOUNT_INACTIVE
        elif not auth.verified_email:
            self.hasher.verify_dummy_password(password)
            reason = LoginFailReason.EMAIL_NOT_VERIFIED
        elif not auth.password_hash:
            self.hasher.verify_dummy_password(password)
            reason = LoginFailReason.PASSWORDLESS_ACCOUNT
        elif not self.hasher.verify_password(auth.password_hash, password):
            reason = LoginFailReason.INVALID_CREDENTIALS

        if reason is not None:
            # Unknown emails are counted too, so lockout cannot reveal which accounts exist
            attempts, locked_for = await self._record_failed_password(email)
            self.logger.warning(
                "login_failed",
                email=redact_email(email),
                reason=reason.value,
                account_exists=auth is not None,
                attempts=attempts,
            )
            self.deps.history.record_failure(
                ctx,
                email=email,
                auth_id=auth.id if auth else None,
                method=LoginMethod.PASSWORD,
                reason=reason,
            )
            if locked_for > 0:
                raise self._locked(attempts, locked_for, ctx)
            raise self._invalid_credentials(ctx)

        data = await self.sessions.complete_login(auth, LoginMethod.PASSWORD, ctx)
        return FlowResult(message=ctx.t("login.success"), data=data)

    async def _eligible_account(
        self, email: str, method: LoginMethod, ctx: RequestContext
    ) -> AuthRecord:
        """Account that may receive a passwordless credential, else a generic 401."""
        auth = await self.store.find_by_email(email)
        reason: Optional[LoginFailReason] = None
        if auth is None:
            self.logger.info("passwordless_rejected", method=method.value, reason="unknown_email")
        elif not auth.is_active:
            reason = LoginFailReason.ACCOUNT_INACTIVE
        elif not auth.verified_email:
            reason = LoginFailReason.EMAIL_NOT_VERIFIED
        else:
            return auth
        if auth is not None and reason is not None:
            self.logger.info("passwordless_rejected", method=method.value, reason=reason.value)
            self.deps.history.record_failure(
                ctx, email=email, auth_id=auth.id, method=method, reason=reason
            )
        raise UnauthorizedError(ctx.t("login.invalidEmail"), error_code="invalid_email")

    @flow_entry
    async def send_login_otp(self, email: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        remaining = await self._cooldown_remaining(KeyFamily.LOGIN_OTP_COOLDOWN, email)
        if remaining:
            raise BadRequestError(
                ctx.t("login.otpCooldown", seconds=remaining),
                error_code="otp_cooldown",
                detail={"retryAfter": remaining},
            )
        await self._eligible_account(email, LoginMethod.OTP, ctx)
        resend_count = await self._counter(KeyFamily.LOGIN_OTP_RESEND_COUNT, email)
        if resend_count >= self.otp_policy.max_resend_count:
            raise BadRequestError(ctx.t("login.otpResendLimit"), error_code="resend_limit_exceeded")

        remaining = await self._claim_cooldown(
            KeyFamily.LOGIN_OTP_COOLDOWN, email, self.otp_policy.cooldown_seconds
        )
        if remaining:
            raise BadRequestError(
                ctx.t("login.otpCooldown", seconds=remaining),
                error_code="otp_cooldown",
                detail={"retryAfter": remaining},
            )
        otp = generate_otp(self.otp_policy.length, self.deps.rng)
        otp_key = make_key(KeyFamily.LOGIN_OTP, email)
        await self.cache.delete(otp_key, critical=True)
        await self.cache.set_with_ttl(
            otp_key, self.hasher.hash_otp(otp), self.otp_policy.expiry_seconds, critical=True
        )
        await self.cache.increment_with_window(
            make_key(KeyFamily.LOGIN_OTP_RESEND_COUNT, email),
            self.otp_policy.resend_window_seconds,
            critical=True,
        )
        self._notify(
            email,
            "login-otp",
            {"otp": otp, "expires_minutes": self.otp_policy.expiry_seconds // 60},
            ctx,
        )
        self.logger.info("login_otp_sent", email=redact_email(email))
        return FlowResult(
            message=ctx.t("login.otpSent"),
            data={
                "success": True,
                "expiresIn": self.otp_policy.expiry_seconds,
                "cooldown": self.otp_policy.cooldown_seconds,
            },
        )

    @flow_entry
    async def verify_login_otp(self, email: str, otp: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        failed = await self._counter(KeyFamily.LOGIN_OTP_FAILED_ATTEMPTS, email)
        if failed >= self.otp_policy.max_failed_attempts:
            raise BadRequestError(ctx.t("login.otpLocked"), error_code="otp_locked")

        auth = await self._eligible_account(email, LoginMethod.OTP, ctx)
        stored_hash = await self.cache.get(make_key(KeyFamily.LOGIN_OTP, email), critical=True)
        if not self.hasher.verify_otp(stored_hash, otp):
            failed = await self.cache.increment_with_window(
                make_key(KeyFamily.LOGIN_OTP_FAILED_ATTEMPTS, email),
                self.otp_policy.failed_attempts_window_seconds,
                critical=True,
            )
            reason = LoginFailReason.OTP_EXPIRED if stored_hash is None else LoginFailReason.INVALID_OTP
            self.deps.history.record_failure(
                ctx, email=email, auth_id=auth.id, method=LoginMethod.OTP, reason=reason
            )
            remaining = self.otp_policy.max_failed_attempts - failed
            self.logger.warning(
                "login_otp_failed", auth_id=auth.id, reason=reason.value, failed_attempts=failed
            )
            if remaining <= 0:
                raise BadRequestError(ctx.t("login.otpLocked"), error_code="otp_locked")
            raise UnauthorizedError(
                ctx.t("login.otpInvalid", remaining=remaining),
                error_code="otp_invalid",
                detail={"remainingAttempts": remaining},
            )

        await self._cleanup(email, *LOGIN_OTP_FAMILIES)
        data = await self.sessions.complete_login(auth, LoginMethod.OTP, ctx)
        return FlowResult(message=ctx.t("login.success"), data=data)

    @flow_entry
    async def send_magic_link(self, email: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        remaining = await self._cooldown_remaining(KeyFamily.MAGIC_LINK_COOLDOWN, email)
        if remaining:
            raise BadRequestError(
                ctx.t("login.magicLinkCooldown", seconds=remaining),
                error_code="magic_link_cooldown",
                detail={"retryAfter": remaining},
            )
        await self._eligible_account(email, LoginMethod.MAGIC_LINK, ctx)
        remaining = await self._claim_cooldown(
            KeyFamily.MAGIC_LINK_COOLDOWN, email, self.link_policy.cooldown_seconds
        )
        if remaining:
            raise BadRequestError(
                ctx.t("login.magicLinkCooldown", seconds=remaining),
                error_code="magic_link_cooldown",
                detail={"retryAfter": remaining},
            )

        token = generate_secure_token(self.link_policy.token_length, self.deps.rng)
        link_key = make_key(KeyFamily.MAGIC_LINK, email)
        await self.cache.delete(link_key, critical=True)
        await self.cache.set_with_ttl(
            link_key, digest_token(token), self.link_policy.expiry_seconds, critical=True
        )
        link = self._magic_link_url(token, email)
        self._notify(
            email,
            "magic-link",
            {"link": link, "expires_minutes": self.link_policy.expiry_seconds // 60},
            ctx,
        )
        self.logger.info("magic_link_sent", email=redact_email(email))
        return FlowResult(
            message=ctx.t("login.magicLinkSent"),
            data={
                "success": True,
                "expiresIn": self.link_policy.expiry_seconds,
                "cooldown": self.link_policy.cooldown_seconds,
            },
        )

    def _magic_link_url(self, token: str, email: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        return f"{base}/auth/magic-link?{urlencode({'token': token, 'email': email})}"

    @flow_entry
    async def verify_magic_link(self, email: str, token: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        auth = await self.store.find_by_email(email)
        if auth is None:
            self.logger.info("magic_link_rejected", reason="unknown_email")
            raise UnauthorizedError(ctx.t("login.invalidMagicLink"), error_code="invalid_magic_link")

        link_key = make_key(KeyFamily.MAGIC_LINK, email)
        stored_digest = await self.cache.get(link_key, critical=True)
        if not tokens_match(token, stored_digest):
            reason = (
                LoginFailReason.MAGIC_LINK_EXPIRED
                if stored_digest is None
                else LoginFailReason.INVALID_MAGIC_LINK
            )
            self.logger.warning("magic_link_rejected", auth_id=auth.id, reason=reason.value)
            self.deps.history.record_failure(
                ctx, email=email, auth_id=auth.id, method=LoginMethod.MAGIC_LINK, reason=reason
            )
            raise UnauthorizedError(ctx.t("login.invalidMagicLink"), error_code="invalid_magic_link")
        if not auth.is_active or not auth.verified_email:
            reason = (
                LoginFailReason.ACCOUNT_INACTIVE
                if not auth.is_active
                else LoginFailReason.EMAIL_NOT_VERIFIED
            )
            self.logger.warning("magic_link_rejected", auth_id=auth.id, reason=reason.value)
            self.deps.history.record_failure(
                ctx, email=email, auth_id=auth.id, method=LoginMethod.MAGIC_LINK, reason=reason
            )
            raise UnauthorizedError(ctx.t("login.invalidMagicLink"), error_code="invalid_magic_link")

        # Single use: only the request that removes the stored digest signs in
        if not await self.cache.delete_if_equals(link_key, stored_digest, critical=True):
            self.logger.warning("magic_link_rejected", auth_id=auth.id, reason="already_used")
            self.deps.history.record_failure(
                ctx,
                email=email,
                auth_id=auth.id,
                method=LoginMethod.MAGIC_LINK,
                reason=LoginFailReason.INVALID_MAGIC_LINK,
            )
            raise UnauthorizedError(ctx.t("login.invalidMagicLink"), error_code="invalid_magic_link")
        await self.cache.delete(make_key(KeyFamily.MAGIC_LINK_COOLDOWN, email), critical=True)
        data = await self.sessions.complete_login(auth, LoginMethod.MAGIC_LINK, ctx)
        return FlowResult(message=ctx.t("login.success"), data=data)
