"""Email-verified signup.

The flow moves through four states, all of them encoded in ephemeral keys
scoped to the email address::

    NoOtpSent -> OtpSent -> OtpVerified (signup session) -> Completed

``send_otp``/``resend_otp`` enter ``OtpSent``, ``verify_otp`` trades a
correct code for a short-lived signup session token, and ``complete_signup``
trades that token for a durable account and a first set of tokens.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from authflow.logging import redact_email
from authflow.service.codes import generate_otp, generate_session_token
from authflow.service.context import FlowResult, RequestContext
from authflow.service.errors import BadRequestError, ConflictError
from authflow.service.flow import FlowBase, FlowDeps, flow_entry
from authflow.service.hashing import digest_token, tokens_match
from authflow.service.keys import SIGNUP_FAMILIES, KeyFamily, keys_for, make_key
from authflow.service.session import SessionService
from authflow.storage.common import normalize_email
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import AuthRecord, Gender, Role, UserProfile, new_id


class SignupService(FlowBase):
    def __init__(self, deps: FlowDeps, sessions: SessionService) -> None:
        super().__init__(deps)
        self.sessions = sessions
        self.policy = deps.settings.signup_otp

    async def _ensure_cooldown_clear(self, email: str, ctx: RequestContext) -> None:
        remaining = await self._cooldown_remaining(KeyFamily.SIGNUP_OTP_COOLDOWN, email)
        if remaining:
            raise BadRequestError(
                ctx.t("signup.otpCooldown", seconds=remaining),
                error_code="otp_cooldown",
                detail={"retryAfter": remaining},
            )

    async def _ensure_not_registered(self, email: str, ctx: RequestContext) -> None:
        if await self.store.exists_by_email(email):
            self.logger.info("signup_rejected_registered", email=redact_email(email))
            raise ConflictError(ctx.t("signup.emailRegistered"), error_code="email_registered")

    async def _issue_otp(self, email: str, ctx: RequestContext) -> None:
        remaining = await self._claim_cooldown(
            KeyFamily.SIGNUP_OTP_COOLDOWN, email, self.policy.cooldown_seconds
        )
        if remaining:
            raise BadRequestError(
                ctx.t("signup.otpCooldown", seconds=remaining),
                error_code="otp_cooldown",
                detail={"retryAfter": remaining},
            )
        otp = generate_otp(self.policy.length, self.deps.rng)
        otp_key = make_key(KeyFamily.SIGNUP_OTP, email)
        try:
            await self.cache.delete(otp_key, critical=True)
            await self.cache.set_with_ttl(
                otp_key, self.hasher.hash_otp(otp), self.policy.expiry_seconds, critical=True
            )
        except Exception:
            # Give the cooldown back so the caller can retry once the store recovers
            await self.cache.delete(make_key(KeyFamily.SIGNUP_OTP_COOLDOWN, email))
            raise
        self._notify(
            email,
            "signup-otp",
            {"otp": otp, "expires_minutes": self.policy.expiry_seconds // 60},
            ctx,
        )

    @flow_entry
    async def send_otp(self, email: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        await self._ensure_cooldown_clear(email, ctx)
        await self._ensure_not_registered(email, ctx)
        await self._issue_otp(email, ctx)
        self.logger.info("signup_otp_sent", email=redact_email(email))
        return FlowResult(
            message=ctx.t("signup.otpSent"),
            data={
                "success": True,
                "expiresIn": self.policy.expiry_seconds,
                "cooldownSeconds": self.policy.cooldown_seconds,
            },
        )

    @flow_entry
    async def resend_otp(self, email: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        await self._ensure_cooldown_clear(email, ctx)
        resend_count = await self._counter(KeyFamily.SIGNUP_OTP_RESEND_COUNT, email)
        if resend_count >= self.policy.max_resend_count:
            self.logger.warning("signup_resend_limit", email=redact_email(email), count=resend_count)
            raise BadRequestError(
                ctx.t("signup.resendLimitExceeded"), error_code="resend_limit_exceeded"
            )
        await self._ensure_not_registered(email, ctx)
        await self._issue_otp(email, ctx)
        resend_count = await self.cache.increment_with_window(
            make_key(KeyFamily.SIGNUP_OTP_RESEND_COUNT, email),
            self.policy.resend_window_seconds,
            critical=True,
        )
        self.logger.info("signup_otp_resent", email=redact_email(email), count=resend_count)
        return FlowResult(
            message=ctx.t("signup.otpResent"),
            data={
                "success": True,
                "expiresIn": self.policy.expiry_seconds,
                "cooldownSeconds": self.policy.cooldown_seconds,
                "resendCount": resend_count,
                "maxResends": self.policy.max_resend_count,
                "remainingResends": max(0, self.policy.max_resend_count - resend_count),
            },
        )

    @flow_entry
    async def verify_otp(self, email: str, otp: str, ctx: RequestContext) -> FlowResult:
        email = normalize_email(email)
        failed = await self._counter(KeyFamily.SIGNUP_OTP_FAILED_ATTEMPTS, email)
        if failed >= self.policy.max_failed_attempts:
            raise BadRequestError(
                ctx.t("signup.otpAttemptsExceeded"), error_code="otp_attempts_exceeded"
            )

        stored_hash = await self.cache.get(make_key(KeyFamily.SIGNUP_OTP, email), critical=True)
        if stored_hash is None:
            raise BadRequestError(ctx.t("signup.otpExpired"), error_code="otp_expired")

        if not self.hasher.verify_otp(stored_hash, otp):
            failed = await self.cache.increment_with_window(
                make_key(KeyFamily.SIGNUP_OTP_FAILED_ATTEMPTS, email),
                self.policy.failed_attempts_window_seconds,
                critical=True,
            )
            remaining = self.policy.max_failed_attempts - failed
            self.logger.warning(
                "signup_otp_mismatch", email=redact_email(email), failed_attempts=failed
            )
            if remaining > 0:
                raise BadRequestError(
                    ctx.t("signup.otpInvalid", remaining=remaining),
                    error_code="otp_invalid",
                    detail={"remainingAttempts": remaining},
                )
            raise BadRequestError(
                ctx.t("signup.otpAttemptsExceeded"), error_code="otp_attempts_exceeded"
            )

        session_token = generate_session_token(self.policy.session_token_bytes, self.deps.rng)
        await self.cache.set_with_ttl(
            make_key(KeyFamily.SIGNUP_SESSION, email),
            digest_token(session_token),
            self.policy.session_expiry_seconds,
            critical=True,
        )
        await self._cleanup(email, *SIGNUP_FAMILIES)
        self.logger.info("signup_otp_verified", email=redact_email(email))
        return FlowResult(
            message=ctx.t("signup.otpVerified"),
            data={
                "success": True,
                "sessionToken": session_token,
                "expiresIn": self.policy.session_expiry_seconds,
            },
        )

    @flow_entry
    async def complete_signup(
        self,
        *,
        email: str,
        password: str,
        full_name: str,
        gender: Gender,
        date_of_birth: date,
        session_token: str,
        ctx: RequestContext,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> FlowResult:
        email = normalize_email(email)
        session_key = make_key(KeyFamily.SIGNUP_SESSION, email)
        stored_digest = await self.cache.get(session_key, critical=True)
        if not tokens_match(session_token, stored_digest):
            self.logger.warning("signup_session_rejected", email=redact_email(email))
            raise BadRequestError(ctx.t("signup.sessionInvalid"), error_code="session_invalid")
        await self._ensure_not_registered(email, ctx)

        record = AuthRecord.new(
            email, self.hasher.hash_password(password), verified_email=True, roles=Role.USER
        )
        try:
            auth = await self.store.create_auth(record)
        except ConstraintViolation as exc:
            self.logger.info("signup_rejected_duplicate", email=redact_email(email))
            raise ConflictError(ctx.t("signup.emailRegistered"), error_code="email_registered") from exc

        # Not atomic with create_auth: a failure here leaves an auth record
        # without profile, which logins tolerate (user id falls back to auth id).
        profile = await self.store.create_profile(
            UserProfile(
                id=new_id(),
                auth_id=auth.id,
                full_name=full_name.strip(),
                gender=Gender(gender),
                date_of_birth=date_of_birth,
                phone=phone,
                address=address,
            )
        )
        tokens = await self.sessions.issue_for(auth, user_id=profile.id)
        await self.cache.delete(session_key, *keys_for(email, SIGNUP_FAMILIES))
        self.logger.info("signup_completed", auth_id=auth.id, email=redact_email(email))
        return FlowResult(
            message=ctx.t("signup.completed"),
            data={
                "success": True,
                "user": {"id": profile.id, "email": auth.email, "fullName": profile.full_name},
                "tokens": tokens.as_dict(),
            },
        )

    async def check_email(self, email: str, ctx: RequestContext) -> FlowResult:
        available = not await self.store.exists_by_email(normalize_email(email))
        key = "signup.emailAvailable" if available else "signup.emailUnavailable"
        return FlowResult(message=ctx.t(key), data={"available": available})
