import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment defaults must be in place before flamingo reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from flamingo.config import Settings  # noqa: E402
from flamingo.service.auth import AuthService  # noqa: E402
from flamingo.service.background import BackgroundTaskRunner  # noqa: E402
from flamingo.service.email import EmailService  # noqa: E402
from flamingo.service.tokens import TokenService  # noqa: E402
from flamingo.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Flamingo-Pass1!"


def fast_hasher() -> PasswordHasher:
    """Minimal argon2 cost so tests do not spend seconds hashing."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        global_rate_limit=10_000,
        auth_rate_limit=10_000,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def background():
    return BackgroundTaskRunner()


@pytest.fixture
def token_service(memory_store, settings):
    return TokenService(memory_store, settings, refresh_hasher=fast_hasher())


@pytest.fixture
def auth_service(memory_store, token_service, settings, background):
    return AuthService(
        memory_store,
        token_service,
        settings,
        email=EmailService(),
        background=background,
        password_hasher=fast_hasher(),
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture
def client(settings):
    from fastapi.testclient import TestClient

    from flamingo.app import create_app

    with TestClient(create_app(settings)) as test_client:
        yield test_client


def register_and_verify(client, email, name="Tester", user_type="artist"):
    """Register over HTTP, then consume the stored verification token."""
    resp = client.post(
        "/api/v1/auth/register",
        json={
            "email": email,
            "password": TEST_PASSWORD,
            "name": name,
            "user_type": user_type,
            "agree_terms": True,
            "agree_privacy": True,
        },
    )
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["data"]["user_id"]
    store = client.app.state.runtime.store
    token = next(v.token for v in store.email_verifications.values() if v.user_id == user_id)
    verified = client.post("/api/v1/auth/verify-email", json={"token": token})
    assert verified.status_code == 200, verified.text
    return user_id


def login(client, email, password=TEST_PASSWORD):
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["token"]


def bearer(token_body):
    return {"Authorization": f"Bearer {token_body['access_token']}"}
