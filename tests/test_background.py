import asyncio

from flamingo.service.background import BackgroundTaskRunner


class TestBackgroundTaskRunner:
    async def test_runs_submitted_work(self):
        runner = BackgroundTaskRunner()
        seen = []

        async def job(value):
            seen.append(value)

        runner.submit("job", job, 5)
        await runner.drain()

        assert seen == [5]
        assert runner.pending == 0

    async def test_failure_is_counted_not_raised(self):
        runner = BackgroundTaskRunner()

        async def boom():
            raise ValueError("nope")

        task = runner.submit("boom", boom, user_id=3)
        await runner.drain()

        assert task.exception() is None
        assert runner.failures == 1

    async def test_drain_cancels_stragglers(self):
        runner = BackgroundTaskRunner()

        async def slow():
            await asyncio.sleep(10)

        task = runner.submit("slow", slow)
        await runner.drain(timeout=0.01)

        assert task.cancelled()
        assert runner.pending == 0

    async def test_drain_without_tasks(self):
        await BackgroundTaskRunner().drain()
