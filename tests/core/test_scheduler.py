import asyncio

from core.scheduler import Scheduler


def test_every_keeps_running_after_a_failure():
    calls = []

    def job():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("boom")

    async def scenario():
        scheduler = Scheduler()
        scheduler.every("job", 0.01, job)
        await asyncio.sleep(0.1)
        await scheduler.shutdown()

    asyncio.run(scenario())

    assert len(calls) >= 2


def test_every_accepts_coroutine_jobs():
    calls = []

    async def job():
        calls.append(True)

    async def scenario():
        scheduler = Scheduler()
        scheduler.every("async-job", 0.01, job)
        await asyncio.sleep(0.05)
        await scheduler.shutdown()

    asyncio.run(scenario())

    assert calls


def test_duplicate_job_name_is_ignored():
    async def scenario():
        scheduler = Scheduler()
        first = scheduler.every("flush", 10, lambda: None)
        second = scheduler.every("flush", 10, lambda: None)
        names = scheduler.job_names
        await scheduler.shutdown()
        return first, second, names

    first, second, names = asyncio.run(scenario())

    assert first is second
    assert names == ["flush"]


def test_call_later_fires_once():
    fired = []

    async def scenario():
        scheduler = Scheduler()
        scheduler.call_later(0.01, lambda: fired.append("x"))
        assert scheduler.pending_callbacks == 1
        await asyncio.sleep(0.05)
        pending = scheduler.pending_callbacks
        await scheduler.shutdown()
        return pending

    assert asyncio.run(scenario()) == 0
    assert fired == ["x"]


def test_shutdown_cancels_pending_work():
    fired = []

    async def scenario():
        scheduler = Scheduler()
        scheduler.call_later(0.05, lambda: fired.append("late"))
        scheduler.every("slow", 0.05, lambda: fired.append("tick"))
        await scheduler.shutdown()
        await asyncio.sleep(0.1)
        assert scheduler.every("after", 0.01, lambda: None) is None
        assert scheduler.job_names == []

    asyncio.run(scenario())

    assert fired == []


def test_shutdown_can_run_pending_callbacks():
    fired = []

    async def scenario():
        scheduler = Scheduler()
        scheduler.call_later(10, lambda: fired.append("deferred"))
        await scheduler.shutdown(run_pending=True)
        return scheduler.pending_callbacks

    assert asyncio.run(scenario()) == 0
    assert fired == ["deferred"]


def test_failing_pending_callback_does_not_block_shutdown():
    fired = []

    def broken():
        raise RuntimeError("sink down")

    async def scenario():
        scheduler = Scheduler()
        scheduler.call_later(10, broken)
        scheduler.call_later(10, lambda: fired.append("second"))
        scheduler.every("job", 10, lambda: None)
        await scheduler.shutdown(run_pending=True)
        return scheduler.job_names

    assert asyncio.run(scenario()) == []
    assert fired == ["second"]
