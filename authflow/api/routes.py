from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Path, Request, Response
from pydantic import ValidationError as PydanticValidationError

from authflow.api.schemas import (
    CompleteSignupRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    MagicLinkVerifyRequest,
    OtpVerifyRequest,
    TokenRefreshRequest,
    UnlockVerifyRequest,
)
from authflow.logging import get_logger
from authflow.service.context import FlowResult, RequestContext
from authflow.service.errors import TooManyRequestsError, ValidationError
from authflow.service.i18n import negotiate_language
from authflow.service.policy import format_duration
from authflow.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


async def request_context(request: Request, runtime: Runtime = Depends(get_runtime)) -> RequestContext:
    language = negotiate_language(
        request.headers.get("accept-language"), runtime.settings.default_language
    )
    peer = request.client.host if request.client else None
    return RequestContext.from_headers(
        request.headers,
        peer=peer,
        language=language,
        trusted_proxies=runtime.settings.trusted_proxies,
    )


async def _enforce_rate_limit(
    runtime: Runtime, scope: str, ctx: RequestContext, limit: int, window_seconds: int
) -> None:
    """Per-IP token bucket; raises 429 with the wait time in the caller's language."""
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, f"{scope}:{ctx.ip}", limit, window_seconds, return_remaining=True
    )
    if allowed:
        return
    retry_after = max(1, reset_seconds)
    logger.warning("rate_limit_exceeded", scope=scope, retry_after=retry_after)
    raise TooManyRequestsError(
        ctx.t("common.rateLimited", duration=format_duration(retry_after, ctx.language)),
        detail={"retryAfter": retry_after},
    )


def _set_refresh_cookie(response: Response, runtime: Runtime, refresh_token: str) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        runtime.settings.refresh_cookie_name,
        path="/",
        secure=runtime.settings.refresh_cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _ok(result: FlowResult) -> Envelope:
    return Envelope(status="ok", message=result.message, data=result.data)


def _ok_with_session(result: FlowResult, response: Response, runtime: Runtime) -> Envelope:
    """Move the refresh token out of the body into the HTTP-only cookie."""
    data: Dict[str, Any] = dict(result.data)
    holder = data
    if isinstance(data.get("tokens"), dict):
        holder = data["tokens"] = dict(data["tokens"])
    refresh_token = holder.pop("refreshToken", None)
    if refresh_token:
        _set_refresh_cookie(response, runtime, refresh_token)
    return Envelope(status="ok", message=result.message, data=data)


@router.post("/signup/send-otp", response_model=Envelope)
async def signup_send_otp(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    """Send a signup verification code to an unregistered email."""
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "signup", ctx, settings.signup_rate_limit, settings.signup_rate_window_seconds
    )
    return _ok(await runtime.signup.send_otp(body.email, ctx))


@router.post("/signup/resend-otp", response_model=Envelope)
async def signup_resend_otp(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "signup", ctx, settings.signup_rate_limit, settings.signup_rate_window_seconds
    )
    return _ok(await runtime.signup.resend_otp(body.email, ctx))


@router.post("/signup/verify-otp", response_model=Envelope)
async def signup_verify_otp(
    body: OtpVerifyRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    """Trade a correct signup code for a short-lived signup session token."""
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "passwordless",
        ctx,
        settings.passwordless_rate_limit,
        settings.passwordless_rate_window_seconds,
    )
    return _ok(await runtime.signup.verify_otp(body.email, body.otp, ctx))


@router.post("/signup/complete", response_model=Envelope, status_code=201)
async def signup_complete(
    body: CompleteSignupRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    """Create the account and profile, then sign the new user in.

    Raises:
        400: If the signup session token is missing, wrong or expired
        409: If the email was registered in the meantime
    """
    result = await runtime.signup.complete_signup(
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        gender=body.gender,
        date_of_birth=body.date_of_birth,
        session_token=body.session_token,
        phone=body.phone,
        address=body.address,
        ctx=ctx,
    )
    return _ok_with_session(result, response, runtime)


@router.get("/signup/check-email/{email}", response_model=Envelope)
async def signup_check_email(
    email: str = Path(..., max_length=254),
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "check-email",
        ctx,
        settings.check_email_rate_limit,
        settings.check_email_rate_window_seconds,
    )
    try:
        body = EmailRequest(email=email)
    except PydanticValidationError as exc:
        raise ValidationError(ctx.t("common.invalidRequest")) from exc
    return _ok(await runtime.signup.check_email(body.email, ctx))


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    """Authenticate with email and password.

    Raises:
        400: If the account is locked after repeated failures
        401: If credentials are invalid
        429: If the per-IP rate limit is exceeded
    """
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "login", ctx, settings.login_rate_limit, settings.login_rate_window_seconds
    )
    result = await runtime.login.login(body.email, body.password, ctx)
    return _ok_with_session(result, response, runtime)


@router.post("/login/otp/send", response_model=Envelope)
async def login_otp_send(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "passwordless",
        ctx,
        settings.passwordless_rate_limit,
        settings.passwordless_rate_window_seconds,
    )
    return _ok(await runtime.login.send_login_otp(body.email, ctx))


@router.post("/login/otp/verify", response_model=Envelope)
async def login_otp_verify(
    body: OtpVerifyRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "passwordless",
        ctx,
        settings.passwordless_rate_limit,
        settings.passwordless_rate_window_seconds,
    )
    result = await runtime.login.verify_login_otp(body.email, body.otp, ctx)
    return _ok_with_session(result, response, runtime)


@router.post("/login/magic-link/send", response_model=Envelope)
async def magic_link_send(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "passwordless",
        ctx,
        settings.passwordless_rate_limit,
        settings.passwordless_rate_window_seconds,
    )
    return _ok(await runtime.login.send_magic_link(body.email, ctx))


@router.post("/login/magic-link/verify", response_model=Envelope)
async def magic_link_verify(
    body: MagicLinkVerifyRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime,
        "passwordless",
        ctx,
        settings.passwordless_rate_limit,
        settings.passwordless_rate_window_seconds,
    )
    result = await runtime.login.verify_magic_link(body.email, body.token, ctx)
    return _ok_with_session(result, response, runtime)


@router.post("/unlock/request", response_model=Envelope)
async def unlock_request(
    body: EmailRequest,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    """Email a one-time temporary password to a locked account."""
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "login", ctx, settings.login_rate_limit, settings.login_rate_window_seconds
    )
    return _ok(await runtime.unlock.request_unlock(body.email, ctx))


@router.post("/unlock/verify", response_model=Envelope)
async def unlock_verify(
    body: UnlockVerifyRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "login", ctx, settings.login_rate_limit, settings.login_rate_window_seconds
    )
    result = await runtime.unlock.verify_unlock(body.email, body.temp_password, ctx)
    return _ok_with_session(result, response, runtime)


def _presented_refresh_token(
    request: Request, runtime: Runtime, body: Optional[TokenRefreshRequest]
) -> Optional[str]:
    cookie_value = request.cookies.get(runtime.settings.refresh_cookie_name)
    if cookie_value:
        return cookie_value
    return body.refresh_token if body else None


@router.post("/token/refresh", response_model=Envelope)
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    """Rotate the refresh token; the cookie wins over a body value.

    Raises:
        401: If no refresh token was presented
        403: If the token is invalid, expired, revoked or superseded
    """
    refresh_token = _presented_refresh_token(request, runtime, body)
    result = await runtime.sessions.refresh(refresh_token, ctx)
    return _ok_with_session(result, response, runtime)


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
    ctx: RequestContext = Depends(request_context),
):
    refresh_token = _presented_refresh_token(request, runtime, body)
    result = await runtime.sessions.logout(refresh_token, ctx)
    _clear_refresh_cookie(response, runtime)
    return _ok(result)
