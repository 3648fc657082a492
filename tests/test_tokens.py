"""Unit tests for access tokens, refresh sessions and duration parsing."""

import base64
import json
import time
from datetime import timedelta

import pytest

from conftest import fast_hasher
from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.service.tokens import TokenService, duration_string_to_seconds
from flamingo.storage.models import NewUser, UserStatus, utcnow


async def _make_user(store, email="tokens@example.com"):
    return await store.create_user(
        NewUser(email=email, name="Token User", status=UserStatus.ACTIVE)
    )


class TestDurationParsing:
    """Tests for duration_string_to_seconds."""

    @pytest.mark.parametrize(
        "value,expected",
        [("7d", 604800), ("1h", 3600), ("30m", 1800), ("45", 45), ("0", 0)],
    )
    def test_units(self, value, expected):
        """Trailing d/h/m select the unit; bare numbers are seconds."""
        assert duration_string_to_seconds(value) == expected

    @pytest.mark.parametrize("value", ["abc", "", None, "-5", "1w", "h"])
    def test_invalid_falls_back(self, value):
        """Unparseable or negative values fall back to one hour."""
        assert duration_string_to_seconds(value) == 3600

    def test_custom_default(self):
        assert duration_string_to_seconds("nope", default=60) == 60


class TestAccessTokens:
    """Tests for JWT issuance and verification."""

    async def test_round_trip_claims(self, token_service, memory_store):
        """Issued tokens decode to the user's id and email."""
        user = await _make_user(memory_store)
        access = token_service.issue_access_token(user)
        claims = token_service.decode_access_token(access.token)

        assert access.expires_in == 3600
        assert claims.user_id == user.id
        assert claims.email == user.email
        assert claims.expires_at - claims.issued_at == 3600

    async def test_tampered_signature_rejected(self, token_service, memory_store):
        user = await _make_user(memory_store)
        token = token_service.issue_access_token(user).token
        header, payload, sig = token.split(".")
        tampered = f"{header}.{payload}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"

        with pytest.raises(ServiceError) as exc:
            token_service.decode_access_token(tampered)
        assert exc.value.code == ErrorCode.INVALID_TOKEN

    def test_none_algorithm_rejected(self, token_service):
        """Tokens declaring another algorithm are invalid."""
        header = base64.urlsafe_b64encode(
            json.dumps({"alg": "none", "typ": "JWT"}).encode()
        ).decode().rstrip("=")
        payload = base64.urlsafe_b64encode(
            json.dumps({"id": 1, "email": "x@example.com", "exp": time.time() + 60}).encode()
        ).decode().rstrip("=")

        with pytest.raises(ServiceError) as exc:
            token_service.decode_access_token(f"{header}.{payload}.")
        assert exc.value.code == ErrorCode.INVALID_TOKEN

    def test_garbage_rejected(self, token_service):
        with pytest.raises(ServiceError) as exc:
            token_service.decode_access_token("not-a-jwt")
        assert exc.value.code == ErrorCode.INVALID_TOKEN

    def test_expired_token(self, token_service):
        """A past exp yields TOKEN_EXPIRED rather than INVALID_TOKEN."""
        now = int(time.time())
        token = token_service._encode_jwt(
            {"id": 1, "email": "old@example.com", "iat": now - 120, "exp": now - 60}
        )
        with pytest.raises(ServiceError) as exc:
            token_service.decode_access_token(token)
        assert exc.value.code == ErrorCode.TOKEN_EXPIRED

    def test_missing_secret_refused(self, memory_store, settings):
        blank = settings.model_copy(update={"jwt_secret": ""})
        with pytest.raises(RuntimeError):
            TokenService(memory_store, blank)


class TestRefreshSessions:
    """Tests for refresh token persistence and exchange."""

    async def test_refresh_hash_stored_not_raw(self, token_service, memory_store):
        user = await _make_user(memory_store)
        pair = await token_service.issue_token_pair(user, "pytest", "127.0.0.1")
        sessions = await memory_store.list_user_sessions(user.id)

        assert len(sessions) == 1
        assert sessions[0].refresh_token_hash != pair.refresh_token
        assert sessions[0].device_info == "pytest"
        assert len(pair.refresh_token) == 64

    async def test_refresh_is_repeatable(self, token_service, memory_store):
        """The same refresh token works more than once; it is not rotated."""
        user = await _make_user(memory_store)
        pair = await token_service.issue_token_pair(user, None, None)

        first = await token_service.refresh_access_token(pair.refresh_token)
        second = await token_service.refresh_access_token(pair.refresh_token)

        assert token_service.decode_access_token(first.token).user_id == user.id
        assert token_service.decode_access_token(second.token).user_id == user.id

    async def test_unknown_refresh_token(self, token_service):
        with pytest.raises(ServiceError) as exc:
            await token_service.refresh_access_token("0" * 64)
        assert exc.value.code == ErrorCode.INVALID_REFRESH_TOKEN

    async def test_expired_session_rejected(self, token_service, memory_store):
        user = await _make_user(memory_store)
        pair = await token_service.issue_token_pair(user, None, None)
        stored = memory_store.sessions[pair.session_id]
        stored.expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(ServiceError) as exc:
            await token_service.refresh_access_token(pair.refresh_token)
        assert exc.value.code == ErrorCode.INVALID_REFRESH_TOKEN

    async def test_session_cap_keeps_newest(self, token_service, memory_store, settings):
        """A fourth login evicts the oldest of three sessions."""
        user = await _make_user(memory_store)
        pairs = [
            await token_service.issue_token_pair(user, f"device-{i}", None)
            for i in range(settings.max_sessions + 1)
        ]
        live_ids = {s.id for s in await memory_store.list_user_sessions(user.id)}

        assert len(live_ids) == settings.max_sessions
        assert pairs[0].session_id not in live_ids
        assert live_ids == {p.session_id for p in pairs[1:]}
        with pytest.raises(ServiceError):
            await token_service.refresh_access_token(pairs[0].refresh_token)

    async def test_revoke(self, token_service, memory_store):
        user = await _make_user(memory_store)
        pair = await token_service.issue_token_pair(user, None, None)

        assert await token_service.revoke_refresh_token(pair.refresh_token) is True
        assert await token_service.revoke_refresh_token(pair.refresh_token) is False

    async def test_storage_failure_is_internal_error(self, memory_store, settings):
        """Session persistence failures surface as INTERNAL_SERVER_ERROR."""
        user = await _make_user(memory_store)

        async def broken_create(session):
            raise OSError("disk full")

        memory_store.create_session = broken_create
        service = TokenService(memory_store, settings, refresh_hasher=fast_hasher())
        with pytest.raises(ServiceError) as exc:
            await service.issue_token_pair(user, None, None)
        assert exc.value.code == ErrorCode.INTERNAL_SERVER_ERROR
        assert isinstance(exc.value.__cause__, OSError)
