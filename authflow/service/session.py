from __future__ import annotations

from typing import Any, Dict, Optional

from authflow.logging import redact_email
from authflow.service.context import FlowResult, RequestContext
from authflow.service.errors import ForbiddenError, UnauthorizedError
from authflow.service.flow import FlowBase, flow_entry
from authflow.service.hashing import digest_token, tokens_match
from authflow.service.keys import LOCKOUT_FAMILIES
from authflow.service.tokens import IssuedTokens, TokenError, TokenExpired, TokenKind, TokenPayload
from authflow.storage.models import AuthRecord, LoginMethod


class SessionService(FlowBase):
    """Token issuance for authenticated identities, refresh rotation and logout."""

    async def issue_for(self, auth: AuthRecord, *, user_id: Optional[str] = None) -> IssuedTokens:
        """Issue a token triple and remember the refresh token's digest."""
        if user_id is None:
            profile = await self.store.find_profile_by_auth_id(auth.id)
            user_id = profile.id if profile else auth.id
        payload = TokenPayload(
            user_id=user_id,
            auth_id=auth.id,
            email=auth.email,
            roles=auth.roles.value,
        )
        tokens = self.deps.tokens.issue(payload)
        await self.store.update_auth(auth.id, {"refresh_token_hash": digest_token(tokens.refresh_token)})
        return tokens

    async def complete_login(
        self, auth: AuthRecord, method: LoginMethod, ctx: RequestContext
    ) -> Dict[str, Any]:
        """Shared tail of every successful authentication."""
        await self._cleanup(auth.email, *LOCKOUT_FAMILIES)
        await self.store.update_auth(auth.id, {"last_login": self._now()})
        self.deps.history.record_success(ctx, email=auth.email, auth_id=auth.id, method=method)
        profile = await self.store.find_profile_by_auth_id(auth.id)
        user_id = profile.id if profile else auth.id
        tokens = await self.issue_for(auth, user_id=user_id)
        self.logger.info("login_succeeded", auth_id=auth.id, method=method.value)
        return {
            "user": {
                "id": user_id,
                "authId": auth.id,
                "email": auth.email,
                "fullName": profile.full_name if profile else None,
                "roles": auth.roles.value,
            },
            **tokens.as_dict(),
        }

    @flow_entry
    async def refresh(self, refresh_token: Optional[str], ctx: RequestContext) -> FlowResult:
        if not refresh_token:
            raise UnauthorizedError(ctx.t("session.refreshMissing"))
        try:
            payload = self.deps.tokens.verify(refresh_token, TokenKind.REFRESH)
        except TokenExpired:
            self.logger.info("refresh_rejected_expired")
            raise ForbiddenError(ctx.t("session.refreshInvalid"), error_code="invalid_token")
        except TokenError as exc:
            self.logger.warning("refresh_rejected_invalid", reason=str(exc))
            raise ForbiddenError(ctx.t("session.refreshInvalid"), error_code="invalid_token")

        auth = await self.store.find_by_id(payload.auth_id)
        if auth is None or not auth.is_active:
            self.logger.warning("refresh_rejected_account", auth_id=payload.auth_id)
            raise ForbiddenError(ctx.t("session.refreshInvalid"), error_code="invalid_token")
        if not tokens_match(refresh_token, auth.refresh_token_hash):
            # Superseded or revoked; a replayed old token lands here
            self.logger.warning("refresh_rejected_revoked", auth_id=auth.id)
            raise ForbiddenError(ctx.t("session.refreshInvalid"), error_code="invalid_token")

        tokens = await self.issue_for(auth, user_id=payload.user_id)
        self.logger.info("tokens_refreshed", auth_id=auth.id, email=redact_email(auth.email))
        return FlowResult(message=ctx.t("session.refreshed"), data=tokens.as_dict())

    @flow_entry
    async def logout(self, refresh_token: Optional[str], ctx: RequestContext) -> FlowResult:
        if refresh_token:
            try:
                payload = self.deps.tokens.verify(refresh_token, TokenKind.REFRESH)
            except TokenError:
                payload = None
            if payload is not None:
                auth = await self.store.find_by_id(payload.auth_id)
                if auth and tokens_match(refresh_token, auth.refresh_token_hash):
                    await self.store.update_auth(auth.id, {"refresh_token_hash": None})
                    self.logger.info("logout_revoked_refresh", auth_id=auth.id)
        return FlowResult(message=ctx.t("session.loggedOut"), data={"success": True})
