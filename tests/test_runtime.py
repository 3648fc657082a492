from types import SimpleNamespace

import pytest

from flamingo.service.runtime import Runtime, _mask_url_password, check_rate_limit


class TestMaskUrlPassword:
    def test_masks_password(self):
        assert (
            _mask_url_password("redis://:hunter2@cache:6379/0")
            == "redis://:***@cache:6379/0"
        )

    def test_keeps_username(self):
        assert (
            _mask_url_password("postgresql://app:pw@db:5432/flamingo")
            == "postgresql://app:***@db:5432/flamingo"
        )

    def test_no_password_unchanged(self):
        assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
        assert _mask_url_password(None) is None


class TestRuntime:
    def test_memory_runtime_without_redis(self, settings):
        runtime = Runtime(settings)
        assert runtime.cache is None
        assert runtime.auth.tokens is runtime.tokens
        assert runtime.projects.permissions is runtime.permissions

    def test_redis_required_outside_test_mode(self, settings):
        strict = settings.model_copy(
            update={"test_mode": False, "allow_redis_fallback_dev": False, "redis_url": None}
        )
        with pytest.raises(RuntimeError):
            Runtime(strict)

    async def test_local_rate_limit(self, settings):
        runtime = Runtime(settings)
        results = [
            await check_rate_limit(runtime, "login:1.2.3.4", 3, 60) for _ in range(4)
        ]
        assert results == [True, True, True, False]

        allowed, remaining, reset = await check_rate_limit(
            runtime, "login:1.2.3.4", 3, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert reset > 0

    async def test_keys_are_independent(self, settings):
        runtime = Runtime(settings)
        assert await check_rate_limit(runtime, "a", 1, 60) is True
        assert await check_rate_limit(runtime, "b", 1, 60) is True
        assert await check_rate_limit(runtime, "a", 1, 60) is False

    async def test_zero_limit_disables(self, settings):
        runtime = Runtime(settings)
        assert await check_rate_limit(runtime, "k", 0, 60) is True

    async def test_refilled_buckets_swept(self, settings, monkeypatch):
        import flamingo.service.runtime as runtime_module

        clock = [100.0]
        monkeypatch.setattr(runtime_module, "time", SimpleNamespace(monotonic=lambda: clock[0]))
        monkeypatch.setattr(runtime_module, "LOCAL_BUCKET_SWEEP_THRESHOLD", 2)
        runtime = Runtime(settings)

        for ip in ("10.0.0.1", "10.0.0.2"):
            assert await check_rate_limit(runtime, ip, 5, 60) is True
        assert set(runtime._local_rate_limits) == {"10.0.0.1", "10.0.0.2"}

        clock[0] += 3600
        assert await check_rate_limit(runtime, "10.0.0.3", 5, 60) is True
        assert set(runtime._local_rate_limits) == {"10.0.0.3"}

    async def test_draining_buckets_kept(self, settings, monkeypatch):
        import flamingo.service.runtime as runtime_module

        monkeypatch.setattr(runtime_module, "LOCAL_BUCKET_SWEEP_THRESHOLD", 1)
        runtime = Runtime(settings)
        for _ in range(3):
            await check_rate_limit(runtime, "busy", 3, 60)
        await check_rate_limit(runtime, "other", 3, 60)
        assert await check_rate_limit(runtime, "busy", 3, 60) is False

    async def test_close_drains_background(self, settings):
        runtime = Runtime(settings)
        await runtime.start()
        ran = []

        async def job():
            ran.append(True)

        runtime.background.submit("job", job)
        await runtime.close()
        assert ran == [True]
