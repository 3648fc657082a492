from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from flamingo.config import Settings
from flamingo.logging import get_logger
from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.storage.models import Session, User

logger = get_logger(__name__)

DEFAULT_DURATION_SECONDS = 3600
_DURATION_UNITS = {"d": 86400, "h": 3600, "m": 60}


def duration_string_to_seconds(
    value: Optional[str], default: int = DEFAULT_DURATION_SECONDS
) -> int:
    """Parse ``7d``/``1h``/``30m``/``45`` into seconds.

    A trailing d, h or m selects the unit; anything else is read as plain
    seconds. Unparseable or negative magnitudes fall back to ``default``.
    """
    text = str(value).strip().lower() if value is not None else ""
    multiplier = 1
    if text and text[-1] in _DURATION_UNITS:
        multiplier = _DURATION_UNITS[text[-1]]
        text = text[:-1]
    try:
        magnitude = int(text)
    except ValueError:
        logger.warning("duration_parse_failed", value=value, fallback=default)
        return default
    if magnitude < 0:
        logger.warning("duration_negative", value=value, fallback=default)
        return default
    return magnitude * multiplier


class SessionStore(Protocol):
    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def create_session(self, session: Session) -> Session: ...

    async def enforce_session_limit(self, user_id: int, max_sessions: int) -> int: ...

    async def list_active_sessions(self) -> List[Session]: ...

    async def delete_session(self, session_id: str) -> bool: ...


@dataclass
class AccessToken:
    token: str
    expires_in: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str


@dataclass
class AccessClaims:
    user_id: int
    email: str
    issued_at: int
    expires_at: int


class TokenService:
    """Signed access tokens plus opaque, hash-stored refresh tokens."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        refresh_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET is required to issue tokens")
        self.store = store
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self.access_ttl_seconds = duration_string_to_seconds(settings.jwt_access_expires_in)
        self.refresh_ttl_seconds = duration_string_to_seconds(settings.jwt_refresh_expires_in)
        # Refresh tokens carry 256 bits of entropy, so a lighter argon2 profile suffices
        self._refresh_hasher = refresh_hasher or PasswordHasher(
            time_cost=2, memory_cost=19 * 1024, parallelism=1, type=Type.ID
        )

    # -- access tokens -----------------------------------------------------

    def issue_access_token(self, user: User) -> AccessToken:
        now = int(time.time())
        payload = {
            "id": user.id,
            "email": user.email,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        return AccessToken(token=self._encode_jwt(payload), expires_in=self.access_ttl_seconds)

    def decode_access_token(self, token: str) -> AccessClaims:
        """Verify signature and expiry.

        Raises:
            ServiceError: TOKEN_EXPIRED when past ``exp``, INVALID_TOKEN otherwise
        """
        payload = self._decode_jwt(token)
        try:
            exp = int(payload["exp"])
            claims = AccessClaims(
                user_id=int(payload["id"]),
                email=str(payload["email"]),
                issued_at=int(payload.get("iat", 0)),
                expires_at=exp,
            )
        except (KeyError, TypeError, ValueError):
            raise ServiceError(ErrorCode.INVALID_TOKEN)
        if exp <= time.time():
            raise ServiceError(ErrorCode.TOKEN_EXPIRED)
        return claims

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise ServiceError(ErrorCode.INVALID_TOKEN)

        # Reject anything but HS256 so "none" or RS/HS confusion cannot pass
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise ServiceError(ErrorCode.INVALID_TOKEN)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise ServiceError(ErrorCode.INVALID_TOKEN)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise ServiceError(ErrorCode.INVALID_TOKEN)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise ServiceError(ErrorCode.INVALID_TOKEN)
        if not isinstance(payload, dict):
            raise ServiceError(ErrorCode.INVALID_TOKEN)
        return payload

    # -- refresh tokens ----------------------------------------------------

    async def issue_token_pair(
        self, user: User, device: Optional[str], ip: Optional[str]
    ) -> TokenPair:
        """Issue an access token and persist a new refresh session.

        The session cap is applied before the insert. Any storage failure
        surfaces as INTERNAL_SERVER_ERROR.
        """
        access = self.issue_access_token(user)
        raw_refresh = secrets.token_hex(32)
        try:
            digest = await asyncio.to_thread(self._refresh_hasher.hash, raw_refresh)
            await self.store.enforce_session_limit(user.id, self.settings.max_sessions)
            session = Session.new(
                user_id=user.id,
                refresh_token_hash=digest,
                ttl_seconds=self.refresh_ttl_seconds,
                device_info=device,
                ip_address=ip,
            )
            await self.store.create_session(session)
        except Exception as exc:
            raise ServiceError(ErrorCode.INTERNAL_SERVER_ERROR) from exc
        logger.info("session_created", user_id=user.id, session_id=session.id)
        return TokenPair(
            access_token=access.token,
            refresh_token=raw_refresh,
            expires_in=access.expires_in,
            session_id=session.id,
        )

    def _refresh_matches(self, stored_hash: str, presented: str) -> bool:
        try:
            return self._refresh_hasher.verify(stored_hash, presented)
        except (InvalidHash, VerificationError):
            return False

    async def find_session(self, presented: str) -> Optional[Session]:
        """Scan live sessions and return the one whose hash matches ``presented``.

        Cost grows with the number of live sessions across all users, since
        no index can be derived from the raw token without leaking it.
        """
        if not presented:
            return None
        for session in await self.store.list_active_sessions():
            if await asyncio.to_thread(
                self._refresh_matches, session.refresh_token_hash, presented
            ):
                return session
        return None

    async def refresh_access_token(self, presented: str) -> AccessToken:
        """Exchange a refresh token for a new access token without rotating it."""
        session = await self.find_session(presented)
        if not session:
            raise ServiceError(ErrorCode.INVALID_REFRESH_TOKEN)
        if session.is_expired():
            await self.store.delete_session(session.id)
            raise ServiceError(ErrorCode.INVALID_REFRESH_TOKEN)
        user = await self.store.get_user(session.user_id)
        if not user:
            raise ServiceError(ErrorCode.INVALID_REFRESH_TOKEN)
        return self.issue_access_token(user)

    async def revoke_refresh_token(self, presented: str) -> bool:
        session = await self.find_session(presented)
        if not session:
            return False
        await self.store.delete_session(session.id)
        logger.info("session_revoked", user_id=session.user_id, session_id=session.id)
        return True
