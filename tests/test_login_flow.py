"""Tests for password login with progressive lockout, login OTP and magic links."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest

from authflow.service.context import RequestContext
from authflow.service.errors import BadRequestError, UnauthorizedError
from authflow.service.hashing import digest_token
from authflow.service.keys import KeyFamily, make_key
from authflow.service.runtime import Runtime
from authflow.service.tokens import TokenKind
from authflow.storage.memory import MemoryCache
from authflow.storage.models import LoginFailReason, LoginMethod, LoginStatus

from conftest import TEST_PASSWORD

EMAIL = "alice@example.com"


async def _fail_password(runtime, ctx, email=EMAIL, times=1):
    for _ in range(times):
        # The failure that starts a lockout reports it instead of the generic 401
        with pytest.raises((UnauthorizedError, BadRequestError)):
            await runtime.login.login(email, "wrong-password-1", ctx)


class _YieldingCache(MemoryCache):
    """Suspends after each read so concurrent requests interleave."""

    async def get(self, key, *, critical=False):
        value = await super().get(key, critical=critical)
        await asyncio.sleep(0)
        return value


class TestPasswordLogin:
    async def test_success_returns_user_and_tokens(self, runtime, register_user, store, clock, ctx):
        auth = await register_user()
        result = await runtime.login.login("  ALICE@example.com", TEST_PASSWORD, ctx)

        profile = await store.find_profile_by_auth_id(auth.id)
        assert result.data["user"] == {
            "id": profile.id,
            "authId": auth.id,
            "email": EMAIL,
            "fullName": "Alice Nguyen",
            "roles": "user",
        }
        assert runtime.tokens.verify(result.data["accessToken"], TokenKind.ACCESS).auth_id == auth.id
        assert runtime.tokens.verify(result.data["idToken"], TokenKind.ID).user_id == profile.id

        updated = await store.find_by_id(auth.id)
        assert updated.last_login == clock()
        assert updated.refresh_token_hash == digest_token(result.data["refreshToken"])

    async def test_success_is_recorded_in_login_history(self, runtime, register_user, store, ctx):
        auth = await register_user()
        await runtime.login.login(EMAIL, TEST_PASSWORD, ctx)
        await runtime.background.drain()

        (entry,) = store.login_history
        assert entry.auth_id == auth.id
        assert entry.status is LoginStatus.SUCCESS
        assert entry.method is LoginMethod.PASSWORD
        assert entry.ip == "203.0.113.7"
        assert entry.browser == "Chrome"
        assert entry.os == "Windows"
        # Documentation range addresses are not geolocated
        assert (entry.country, entry.city) == ("unknown", "unknown")

    async def test_wrong_password_and_unknown_email_look_identical(self, runtime, register_user, ctx):
        await register_user()
        with pytest.raises(UnauthorizedError) as wrong:
            await runtime.login.login(EMAIL, "not-the-password-1", ctx)
        with pytest.raises(UnauthorizedError) as unknown:
            await runtime.login.login("nobody@example.com", "not-the-password-1", ctx)
        assert wrong.value.message == unknown.value.message
        assert wrong.value.error_code == unknown.value.error_code == "invalid_credentials"

    async def test_failure_history_only_for_known_accounts(self, runtime, register_user, store, ctx):
        auth = await register_user()
        await _fail_password(runtime, ctx)
        await _fail_password(runtime, ctx, email="nobody@example.com")
        await runtime.background.drain()

        (entry,) = store.login_history
        assert entry.auth_id == auth.id
        assert entry.status is LoginStatus.FAILED
        assert entry.fail_reason is LoginFailReason.INVALID_CREDENTIALS

    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"is_active": False}, LoginFailReason.ACCOUNT_INACTIVE),
            ({"verified_email": False}, LoginFailReason.EMAIL_NOT_VERIFIED),
            ({"password_hash": None}, LoginFailReason.PASSWORDLESS_ACCOUNT),
        ],
    )
    async def test_ineligible_accounts_get_the_generic_failure(
        self, runtime, register_user, store, ctx, overrides, reason
    ):
        await register_user(**overrides)
        with pytest.raises(UnauthorizedError) as exc_info:
            await runtime.login.login(EMAIL, TEST_PASSWORD, ctx)
        assert exc_info.value.error_code == "invalid_credentials"
        await runtime.background.drain()
        assert store.login_history[-1].fail_reason is reason

    async def test_success_clears_failed_attempts(self, runtime, register_user, cache, ctx):
        await register_user()
        await _fail_password(runtime, ctx, times=3)
        await runtime.login.login(EMAIL, TEST_PASSWORD, ctx)
        assert await cache.get(make_key(KeyFamily.LOGIN_FAILED_ATTEMPTS, EMAIL)) is None


class TestLockout:
    async def test_fifth_failure_reports_the_lockout(self, runtime, register_user, ctx):
        await register_user()
        for _ in range(4):
            with pytest.raises(UnauthorizedError):
                await runtime.login.login(EMAIL, "wrong-password-1", ctx)

        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.login(EMAIL, "wrong-password-1", ctx)
        assert exc_info.value.error_code == "account_locked"
        assert exc_info.value.detail == {"retryAfter": 30, "failedAttempts": 5}
        assert "30 seconds" in exc_info.value.message

    async def test_locked_account_rejects_even_the_right_password(
        self, runtime, register_user, store, ctx
    ):
        await register_user()
        await _fail_password(runtime, ctx, times=5)
        await runtime.background.drain()
        history_before = len(store.login_history)

        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.login(EMAIL, TEST_PASSWORD, ctx)
        assert exc_info.value.error_code == "account_locked"
        assert exc_info.value.detail == {"retryAfter": 30, "failedAttempts": 5}
        # Rejected on the lockout check alone, before any credential work
        await runtime.background.drain()
        assert len(store.login_history) == history_before

    async def test_correct_password_works_after_lockout_expires(self, runtime, register_user, clock, ctx):
        await register_user()
        await _fail_password(runtime, ctx, times=5)
        clock.advance(31)
        result = await runtime.login.login(EMAIL, TEST_PASSWORD, ctx)
        assert result.data["user"]["email"] == EMAIL

    async def test_lockout_grows_with_each_further_failure(self, runtime, register_user, clock, ctx):
        await register_user()
        await _fail_password(runtime, ctx, times=5)
        clock.advance(31)
        await _fail_password(runtime, ctx)

        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.login(EMAIL, TEST_PASSWORD, ctx)
        assert exc_info.value.detail["retryAfter"] == 60
        assert exc_info.value.detail["failedAttempts"] == 6

    async def test_unknown_emails_lock_out_like_real_ones(self, runtime, ctx):
        await _fail_password(runtime, ctx, email="ghost@example.com", times=5)
        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.login("ghost@example.com", "anything-1", ctx)
        assert exc_info.value.error_code == "account_locked"

    async def test_lockout_message_is_translated(self, runtime, register_user, ctx):
        await register_user()
        await _fail_password(runtime, ctx, times=5)
        vi_ctx = RequestContext.from_headers({}, language="vi")
        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.login(EMAIL, TEST_PASSWORD, vi_ctx)
        assert "30 giây" in exc_info.value.message


class TestLoginOtp:
    async def _sent_otp(self, runtime, notifier):
        await runtime.background.drain()
        return notifier.last("login-otp")["variables"]["otp"]

    async def test_send_and_verify(self, runtime, register_user, notifier, cache, ctx):
        auth = await register_user()
        result = await runtime.login.send_login_otp(EMAIL, ctx)
        assert result.data == {"success": True, "expiresIn": 300, "cooldown": 60}

        otp = await self._sent_otp(runtime, notifier)
        result = await runtime.login.verify_login_otp(EMAIL, otp, ctx)
        assert result.data["user"]["authId"] == auth.id
        assert await cache.get(make_key(KeyFamily.LOGIN_OTP, EMAIL)) is None
        assert await cache.get(make_key(KeyFamily.LOGIN_OTP_RESEND_COUNT, EMAIL)) is None

    async def test_unknown_or_inactive_accounts_get_generic_error(self, runtime, register_user, ctx):
        await register_user("inactive@example.com", is_active=False)
        for email in ("nobody@example.com", "inactive@example.com"):
            with pytest.raises(UnauthorizedError) as exc_info:
                await runtime.login.send_login_otp(email, ctx)
            assert exc_info.value.error_code == "invalid_email"

    async def test_cooldown_between_sends(self, runtime, register_user, clock, ctx):
        await register_user()
        await runtime.login.send_login_otp(EMAIL, ctx)
        clock.advance(45)
        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.send_login_otp(EMAIL, ctx)
        assert exc_info.value.detail == {"retryAfter": 15}

    async def test_send_limit_per_window(self, runtime, register_user, clock, ctx):
        await register_user()
        for _ in range(3):
            await runtime.login.send_login_otp(EMAIL, ctx)
            clock.advance(61)
        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.send_login_otp(EMAIL, ctx)
        assert exc_info.value.error_code == "resend_limit_exceeded"

    async def test_wrong_code_then_lock(self, runtime, register_user, notifier, ctx):
        await register_user()
        await runtime.login.send_login_otp(EMAIL, ctx)
        otp = await self._sent_otp(runtime, notifier)
        wrong = "000000" if otp != "000000" else "111111"

        with pytest.raises(UnauthorizedError) as exc_info:
            await runtime.login.verify_login_otp(EMAIL, wrong, ctx)
        assert exc_info.value.detail == {"remainingAttempts": 4}
        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                await runtime.login.verify_login_otp(EMAIL, wrong, ctx)
        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.verify_login_otp(EMAIL, wrong, ctx)
        assert exc_info.value.error_code == "otp_locked"
        with pytest.raises(BadRequestError):
            await runtime.login.verify_login_otp(EMAIL, otp, ctx)

    async def test_expired_code_is_recorded_as_expired(
        self, runtime, register_user, notifier, store, clock, ctx
    ):
        await register_user()
        await runtime.login.send_login_otp(EMAIL, ctx)
        otp = await self._sent_otp(runtime, notifier)
        clock.advance(301)
        with pytest.raises(UnauthorizedError):
            await runtime.login.verify_login_otp(EMAIL, otp, ctx)
        await runtime.background.drain()
        assert store.login_history[-1].fail_reason is LoginFailReason.OTP_EXPIRED


class TestMagicLink:
    async def _link_params(self, runtime, notifier):
        await runtime.background.drain()
        link = notifier.last("magic-link")["variables"]["link"]
        parsed = urlparse(link)
        assert link.startswith("https://app.example.com/auth/magic-link?")
        params = parse_qs(parsed.query)
        return params["email"][0], params["token"][0]

    async def test_send_and_verify(self, runtime, register_user, notifier, cache, ctx):
        auth = await register_user()
        await runtime.login.send_magic_link(EMAIL, ctx)
        email, token = await self._link_params(runtime, notifier)
        assert email == EMAIL
        assert len(token) == 64
        assert await cache.get(make_key(KeyFamily.MAGIC_LINK, EMAIL)) == digest_token(token)

        result = await runtime.login.verify_magic_link(email, token, ctx)
        assert result.data["user"]["authId"] == auth.id

    async def test_link_is_single_use(self, runtime, register_user, notifier, ctx):
        await register_user()
        await runtime.login.send_magic_link(EMAIL, ctx)
        email, token = await self._link_params(runtime, notifier)
        await runtime.login.verify_magic_link(email, token, ctx)
        with pytest.raises(UnauthorizedError) as exc_info:
            await runtime.login.verify_magic_link(email, token, ctx)
        assert exc_info.value.error_code == "invalid_magic_link"

    async def test_concurrent_verifies_sign_in_once(
        self, settings, register_user, store, notifier, clock, ctx
    ):
        racing = Runtime(
            settings,
            store=store,
            cache=_YieldingCache(clock=clock.monotonic),
            notifier=notifier,
            clock=clock,
        )
        await register_user()
        await racing.login.send_magic_link(EMAIL, ctx)
        email, token = await self._link_params(racing, notifier)

        results = await asyncio.gather(
            racing.login.verify_magic_link(email, token, ctx),
            racing.login.verify_magic_link(email, token, ctx),
            return_exceptions=True,
        )
        rejected = [r for r in results if isinstance(r, UnauthorizedError)]
        signed_in = [r for r in results if not isinstance(r, BaseException)]
        assert len(rejected) == 1
        assert len(signed_in) == 1

    async def test_wrong_token_or_email_is_rejected(self, runtime, register_user, notifier, ctx):
        await register_user()
        await register_user("bob@example.com")
        await runtime.login.send_magic_link(EMAIL, ctx)
        _email, token = await self._link_params(runtime, notifier)
        with pytest.raises(UnauthorizedError):
            await runtime.login.verify_magic_link(EMAIL, "0" * 64, ctx)
        with pytest.raises(UnauthorizedError):
            await runtime.login.verify_magic_link("bob@example.com", token, ctx)
        result = await runtime.login.verify_magic_link(EMAIL, token, ctx)
        assert result.data["user"]["email"] == EMAIL

    async def test_link_expires(self, runtime, register_user, notifier, clock, ctx):
        await register_user()
        await runtime.login.send_magic_link(EMAIL, ctx)
        email, token = await self._link_params(runtime, notifier)
        clock.advance(15 * 60 + 1)
        with pytest.raises(UnauthorizedError):
            await runtime.login.verify_magic_link(email, token, ctx)

    async def test_new_link_replaces_the_old_one(self, runtime, register_user, notifier, clock, ctx):
        await register_user()
        await runtime.login.send_magic_link(EMAIL, ctx)
        _email, first = await self._link_params(runtime, notifier)
        clock.advance(61)
        await runtime.login.send_magic_link(EMAIL, ctx)
        _email, second = await self._link_params(runtime, notifier)
        with pytest.raises(UnauthorizedError):
            await runtime.login.verify_magic_link(EMAIL, first, ctx)
        await runtime.login.verify_magic_link(EMAIL, second, ctx)

    async def test_send_cooldown(self, runtime, register_user, ctx):
        await register_user()
        await runtime.login.send_magic_link(EMAIL, ctx)
        with pytest.raises(BadRequestError) as exc_info:
            await runtime.login.send_magic_link(EMAIL, ctx)
        assert exc_info.value.error_code == "magic_link_cooldown"
        assert exc_info.value.detail == {"retryAfter": 60}
