from __future__ import annotations

import asyncio
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from urllib.parse import urlencode

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from flamingo.config import Settings
from flamingo.logging import get_logger
from flamingo.service.background import BackgroundTaskRunner
from flamingo.service.email import EmailService
from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.service.tokens import AccessToken, TokenPair, TokenService
from flamingo.storage.errors import TransactionFailed
from flamingo.storage.models import (
    EmailVerification,
    NewUser,
    User,
    UserStatus,
    UserType,
)
from flamingo.storage.redis_cache import RedisCache

GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


class AuthStore(Protocol):
    async def create_user(self, new_user: NewUser) -> User: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[User]: ...

    async def update_user_provider(
        self, user_id: int, provider: str, provider_id: str
    ) -> Optional[User]: ...

    async def update_last_login(self, user_id: int) -> None: ...

    async def increment_failed_attempts(self, user_id: int) -> int: ...

    async def lock_account(self, user_id: int, minutes: int) -> None: ...

    async def reset_login_attempts(self, user_id: int) -> None: ...

    async def create_email_verification(
        self, user_id: int, token: str, expires_at: datetime
    ) -> EmailVerification: ...

    async def get_email_verification(self, token: str) -> Optional[EmailVerification]: ...

    async def confirm_email_verification(
        self, verification_id: int, user_id: int
    ) -> User: ...


@dataclass
class AuthContext:
    user_id: int
    email: str
    user: User


@dataclass
class RegistrationResult:
    user: User
    verification: EmailVerification


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthService:
    """Registration, verification, login lockout and social sign-in."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        *,
        email: EmailService,
        background: BackgroundTaskRunner,
        cache: Optional[RedisCache] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.settings = settings
        self.email = email
        self.background = background
        self.cache = cache
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # In-process sign-in state when Redis is not configured
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- passwords ---------------------------------------------------------

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    def _password_matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        return await asyncio.to_thread(self._password_matches, user.password_hash, password)

    # -- registration ------------------------------------------------------

    async def register(
        self,
        *,
        email: str,
        password: str,
        name: str,
        user_type: UserType,
        agree_terms: bool,
        agree_privacy: bool,
        agree_marketing: bool = False,
    ) -> RegistrationResult:
        """Create a pending account and send its verification link.

        Raises:
            ServiceError: REQUIRED_PRIVACY, EMAIL_ALREADY_EXISTS
        """
        if not (agree_terms and agree_privacy):
            raise ServiceError(ErrorCode.REQUIRED_PRIVACY)
        if await self.store.get_user_by_email(email):
            raise ServiceError(ErrorCode.EMAIL_ALREADY_EXISTS)
        password_hash = await self.hash_password(password)
        user = await self.store.create_user(
            NewUser(
                email=email,
                name=name,
                password_hash=password_hash,
                user_type=UserType(user_type),
                agree_terms=agree_terms,
                agree_privacy=agree_privacy,
                agree_marketing=agree_marketing,
            )
        )
        if user.password_hash != password_hash:
            # a concurrent registration won the unique-email race
            raise ServiceError(ErrorCode.EMAIL_ALREADY_EXISTS)
        verification = await self.store.create_email_verification(
            user.id,
            EmailVerification.generate_token(),
            self._now() + timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        self.background.submit(
            "send_verification_email",
            self._deliver_verification,
            user.email,
            verification.token,
            user_id=user.id,
        )
        self.logger.info("user_registered", user_id=user.id, user_type=user.user_type.value)
        return RegistrationResult(user=user, verification=verification)

    async def _deliver_verification(self, to_email: str, token: str) -> None:
        await asyncio.to_thread(self.email.send_verification_email, to_email, token)

    async def check_email_available(self, email: str) -> bool:
        return await self.store.get_user_by_email(email) is None

    async def verify_email(self, token: str) -> User:
        """Consume a verification token and activate its account.

        Raises:
            ServiceError: VERIFICATION_TOKEN_NOT_FOUND, VERIFICATION_TOKEN_ALREADY_USED,
                VERIFICATION_TOKEN_EXPIRED, INTERNAL_SERVER_ERROR
        """
        record = await self.store.get_email_verification(token) if token else None
        if not record:
            raise ServiceError(ErrorCode.VERIFICATION_TOKEN_NOT_FOUND)
        if record.is_used:
            raise ServiceError(ErrorCode.VERIFICATION_TOKEN_ALREADY_USED)
        if record.is_expired(self._now()):
            raise ServiceError(ErrorCode.VERIFICATION_TOKEN_EXPIRED)
        try:
            user = await self.store.confirm_email_verification(record.id, record.user_id)
        except TransactionFailed as exc:
            raise ServiceError(ErrorCode.INTERNAL_SERVER_ERROR) from exc
        self.logger.info("email_verified", user_id=user.id)
        return user

    # -- login -------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        """Password login with lockout.

        Checks run in a fixed order: active lock, unknown account or missing
        password, password mismatch (counted toward the lock), then account
        status. Only a wrong password moves the failure counter.

        Raises:
            ServiceError: ACCOUNT_LOCKED, LOGIN_FAILED, ACCOUNT_NOT_ACTIVE
        """
        user = await self.store.get_user_by_email(email)
        now = self._now()
        if user and user.is_locked(now):
            raise ServiceError(ErrorCode.ACCOUNT_LOCKED)
        if not user or not user.password_hash:
            raise ServiceError(ErrorCode.LOGIN_FAILED)
        if user.locked_until is not None:
            # lock window has passed; the counter starts over with it
            await self.store.reset_login_attempts(user.id)
            user.failed_attempts = 0
            user.locked_until = None

        if not await self.verify_password(user, password):
            attempts = await self.store.increment_failed_attempts(user.id)
            if attempts >= self.settings.max_login_attempts:
                await self.store.lock_account(user.id, self.settings.lockout_duration_minutes)
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_attempts=attempts,
                    minutes=self.settings.lockout_duration_minutes,
                )
                raise ServiceError(ErrorCode.ACCOUNT_LOCKED)
            raise ServiceError(ErrorCode.LOGIN_FAILED)

        if user.status != UserStatus.ACTIVE:
            raise ServiceError(ErrorCode.ACCOUNT_NOT_ACTIVE)

        if user.failed_attempts > 0:
            self.background.submit(
                "reset_login_attempts",
                self.store.reset_login_attempts,
                user.id,
                user_id=user.id,
            )
        return await self._complete_login(user, user_agent=user_agent, ip_addr=ip_addr)

    async def _complete_login(
        self, user: User, *, user_agent: Optional[str], ip_addr: Optional[str]
    ) -> LoginResult:
        tokens = await self.tokens.issue_token_pair(
            user, user_agent or "Unknown Device", ip_addr
        )
        self.background.submit(
            "update_last_login", self.store.update_last_login, user.id, user_id=user.id
        )
        self.logger.info("login_succeeded", user_id=user.id, provider=user.provider)
        return LoginResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: str) -> AccessToken:
        return await self.tokens.refresh_access_token(refresh_token)

    async def logout(self, refresh_token: str) -> None:
        """Revoke the session behind ``refresh_token``.

        Raises:
            ServiceError: INVALID_REFRESH_TOKEN when no live session matches
        """
        if not await self.tokens.revoke_refresh_token(refresh_token):
            raise ServiceError(ErrorCode.INVALID_REFRESH_TOKEN)

    # -- bearer authentication --------------------------------------------

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve the caller from an ``Authorization: Bearer`` header.

        Raises:
            ServiceError: UNAUTHORIZED, TOKEN_EXPIRED, INVALID_TOKEN
        """
        token = _extract_bearer(authorization)
        if not token:
            raise ServiceError(ErrorCode.UNAUTHORIZED)
        claims = self.tokens.decode_access_token(token)
        user = await self.store.get_user(claims.user_id)
        if not user:
            raise ServiceError(ErrorCode.UNAUTHORIZED)
        return AuthContext(user_id=user.id, email=user.email, user=user)

    async def get_profile(self, user_id: int) -> User:
        user = await self.store.get_user(user_id)
        if not user:
            raise ServiceError(ErrorCode.PROFILE_NOT_FOUND)
        return user

    # -- Google sign-in ----------------------------------------------------

    @property
    def google_configured(self) -> bool:
        return bool(
            self.settings.google_client_id
            and self.settings.google_client_secret
            and self.settings.google_callback_url
        )

    async def start_google_signin(self) -> dict:
        """Build the Google consent URL and remember its state value."""
        if not self.google_configured:
            self.logger.warning("oauth_not_configured", provider="google")
            raise ServiceError(ErrorCode.NOT_FOUND, details={"provider": "google"})
        self.cleanup_expired_states()
        state = secrets.token_urlsafe(24)
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, "google", expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = ("google", expires_at)
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_callback_url,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return {
            "authorization_url": f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}",
            "state": state,
        }

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [s for s, (_, exp) in self._oauth_states.items() if exp <= now]
            for state in expired:
                self._oauth_states.pop(state, None)
        return len(expired)

    async def _pop_state(self, state: str) -> Optional[tuple[str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._oauth_states.pop(state, None)

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an already-exchanged identity for offline or test flows."""
        self._oauth_code_registry[(provider, code)] = payload

    async def complete_google_signin(
        self,
        code: str,
        state: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        """Finish the Google flow and log the matching account in.

        Raises:
            ServiceError: UNAUTHORIZED, ACCOUNT_LOCKED, ACCOUNT_NOT_ACTIVE
        """
        stored = await self._pop_state(state)
        if not stored or stored[0] != "google" or stored[1] <= self._now():
            raise ServiceError(ErrorCode.UNAUTHORIZED, details={"reason": "invalid_state"})
        identity = await self._exchange_google_code(code)
        if not identity:
            raise ServiceError(ErrorCode.UNAUTHORIZED, details={"reason": "exchange_failed"})
        user = await self._resolve_social_user("google", identity)
        if user.is_locked(self._now()):
            raise ServiceError(ErrorCode.ACCOUNT_LOCKED)
        if user.status != UserStatus.ACTIVE:
            raise ServiceError(ErrorCode.ACCOUNT_NOT_ACTIVE)
        return await self._complete_login(user, user_agent=user_agent, ip_addr=ip_addr)

    async def _exchange_google_code(self, code: str) -> Optional[dict]:
        """Trade an authorization code for the Google profile.

        Registered codes short-circuit the network call.
        """
        registered = self._oauth_code_registry.pop(("google", code), None)
        if registered:
            return self._parse_google_userinfo(registered)

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.google_callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider="google")
                    return None
                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.error("oauth_exchange_error", provider="google", error=str(exc))
            return None
        if not isinstance(userinfo, dict):
            self.logger.error("oauth_userinfo_invalid_format", provider="google")
            return None
        return self._parse_google_userinfo(userinfo)

    def _parse_google_userinfo(self, userinfo: dict) -> Optional[dict]:
        provider_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        if not provider_id or not email:
            self.logger.error("oauth_identity_incomplete", provider="google")
            return None
        return {
            "provider_id": str(provider_id),
            "email": email,
            "name": userinfo.get("name") or email.split("@")[0],
        }

    async def _resolve_social_user(self, provider: str, identity: dict) -> User:
        user = await self.store.get_user_by_provider(provider, identity["provider_id"])
        if user:
            return user
        existing = await self.store.get_user_by_email(identity["email"])
        if existing:
            linked = await self.store.update_user_provider(
                existing.id, provider, identity["provider_id"]
            )
            self.logger.info("oauth_provider_linked", user_id=existing.id, provider=provider)
            return linked or existing
        user = await self.store.create_user(
            NewUser(
                email=identity["email"],
                name=identity["name"],
                provider=provider,
                provider_id=identity["provider_id"],
                status=UserStatus.ACTIVE,
                email_verified=True,
                agree_terms=True,
                agree_privacy=True,
            )
        )
        self.logger.info("oauth_user_created", user_id=user.id, provider=provider)
        return user
