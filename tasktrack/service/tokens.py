from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from tasktrack.config import Settings
from tasktrack.logging import get_logger
from tasktrack.service.cache import CacheBackend
from tasktrack.service.errors import (
    AuthenticationFailure,
    InvalidRefreshToken,
    TokenCreationFailure,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def refresh_record_key(token_id: str) -> str:
    return f"auth:refresh:{token_id}"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"


class TokenService:
    """Mints access/refresh pairs and redeems refresh tokens exactly once.

    Access tokens carry the user id as ``sub`` and are stateless. Refresh
    tokens carry a random token id as ``sub`` plus a ``user_id`` claim, and
    are only valid while ``auth:refresh:<token_id>`` exists in the cache.
    """

    def __init__(
        self,
        cache: CacheBackend,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._secret = settings.jwt_secret.encode()
        self._timeout = settings.cache_operation_timeout_seconds

    # JWT helpers
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, claims: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any signature/format/expiry problem."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # reject alg confusion (e.g. "none")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        return payload

    def _claims(self, subject: str, token_type: str, ttl_seconds: int, **extra: Any) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "token_type": token_type,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": str(uuid.uuid4()),
            **extra,
        }

    async def _mint(self, claims: dict[str, Any]) -> str:
        return await asyncio.to_thread(self.encode, claims)

    async def issue_pair(self, user_id: str) -> TokenPair:
        token_id = secrets.token_urlsafe(32)
        refresh_ttl = self.settings.refresh_token_ttl_seconds
        access_token, refresh_token = await asyncio.gather(
            self._mint(self._claims(user_id, ACCESS, self.settings.access_token_ttl_seconds)),
            self._mint(self._claims(token_id, REFRESH, refresh_ttl, user_id=user_id)),
        )
        try:
            await asyncio.wait_for(
                self.cache.set(refresh_record_key(token_id), user_id, refresh_ttl),
                self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("refresh_record_store_timeout", user_id=user_id)
            raise TokenCreationFailure("unable to persist refresh token") from exc
        except Exception as exc:
            logger.error("refresh_record_store_failed", user_id=user_id, error=str(exc))
            raise TokenCreationFailure("unable to persist refresh token") from exc
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    async def redeem_refresh(self, token: str) -> str:
        """Consume a refresh token and return its user id.

        Expired, already used and forged tokens all fail the same way.
        """
        payload = self.decode(token)
        if not payload or payload.get("token_type") != REFRESH:
            raise InvalidRefreshToken("invalid refresh token")
        token_id = payload.get("sub")
        claimed_user = payload.get("user_id")
        if not token_id or not claimed_user:
            raise InvalidRefreshToken("invalid refresh token")
        try:
            stored_user = await asyncio.wait_for(
                self.cache.getdel(refresh_record_key(token_id)), self._timeout
            )
        except asyncio.TimeoutError as exc:
            logger.error("refresh_record_redeem_timeout")
            raise AuthenticationFailure("unable to validate refresh token") from exc
        except Exception as exc:
            logger.error("refresh_record_redeem_failed", error=str(exc))
            raise AuthenticationFailure("unable to validate refresh token") from exc
        if stored_user is None:
            raise InvalidRefreshToken("invalid refresh token")
        if not hmac.compare_digest(str(stored_user).encode(), str(claimed_user).encode()):
            logger.warning("refresh_record_user_mismatch")
            raise InvalidRefreshToken("invalid refresh token")
        return str(stored_user)

    def authenticate_access(self, token: str) -> str:
        payload = self.decode(token)
        if not payload or payload.get("token_type") != ACCESS or not payload.get("sub"):
            raise AuthenticationFailure("invalid access token")
        return str(payload["sub"])
