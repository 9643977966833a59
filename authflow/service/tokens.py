from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import ForbiddenError

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    ID = "id"


class TokenError(Exception):
    """Token could not be accepted; never shown to clients directly."""


class TokenExpired(TokenError):
    pass


class TokenInvalid(TokenError):
    pass


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    auth_id: str
    email: str
    roles: str


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    id_token: str
    expires_in: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "idToken": self.id_token,
            "expiresIn": self.expires_in,
        }


class TokenService:
    """HS256 JWTs with a distinct secret and lifetime per token kind."""

    def __init__(
        self, settings: Settings, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)
        self._secrets = {
            TokenKind.ACCESS: settings.access_token_secret,
            TokenKind.REFRESH: settings.refresh_token_secret,
            TokenKind.ID: settings.id_token_secret,
        }
        self._ttls = {
            TokenKind.ACCESS: settings.access_token_ttl_seconds,
            TokenKind.REFRESH: settings.refresh_token_ttl_seconds,
            TokenKind.ID: settings.id_token_ttl_seconds,
        }

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: TokenKind, signing_input: str) -> str:
        signature = hmac.new(
            self._secrets[kind].encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode(self, kind: TokenKind, payload: TokenPayload) -> str:
        now = self._clock()
        claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": payload.user_id,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._ttls[kind])).timestamp()),
            "token_type": kind.value,
            "user_id": payload.user_id,
            "auth_id": payload.auth_id,
            "email": payload.email,
            "roles": payload.roles,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def issue(self, payload: TokenPayload) -> IssuedTokens:
        return IssuedTokens(
            access_token=self._encode(TokenKind.ACCESS, payload),
            refresh_token=self._encode(TokenKind.REFRESH, payload),
            id_token=self._encode(TokenKind.ID, payload),
            expires_in=self._ttls[TokenKind.ACCESS],
        )

    def verify(self, token: str, kind: TokenKind) -> TokenPayload:
        """Return the payload of a valid token of ``kind``.

        Raises:
            TokenExpired: signature is valid but ``exp`` has passed.
            TokenInvalid: anything else wrong with the token.
        """
        try:
            if not token.isascii():
                raise ValueError("non-ascii token")
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError) as exc:
            raise TokenInvalid("malformed token") from exc

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenInvalid("undecodable header") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("bad signature")
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenInvalid("undecodable payload") from exc
        if not isinstance(claims, dict):
            raise TokenInvalid("payload is not an object")
        if claims.get("token_type") != kind.value:
            raise TokenInvalid("wrong token kind")
        if claims.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("wrong issuer")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid("wrong audience")
        try:
            exp_ts = float(claims["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("missing expiry") from exc
        if exp_ts <= self._clock().timestamp() - self._clock_skew_leeway.total_seconds():
            raise TokenExpired("token expired")
        try:
            return TokenPayload(
                user_id=str(claims["user_id"]),
                auth_id=str(claims["auth_id"]),
                email=str(claims["email"]),
                roles=str(claims["roles"]),
            )
        except KeyError as exc:
            raise TokenInvalid("missing claim") from exc

    def verify_or_forbid(
        self, token: str, kind: TokenKind, message: str = "token expired or invalid"
    ) -> TokenPayload:
        """Like :meth:`verify` but collapses every failure into ``ForbiddenError``."""
        try:
            return self.verify(token, kind)
        except TokenExpired:
            logger.info("token_rejected_expired", kind=kind.value)
            raise ForbiddenError(message, error_code="invalid_token")
        except TokenInvalid as exc:
            logger.warning("token_rejected_invalid", kind=kind.value, reason=str(exc))
            raise ForbiddenError(message, error_code="invalid_token")
