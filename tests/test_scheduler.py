"""Tests for the background scheduler.

The scheduler gets a fake clock and a fake sleep: each sleep advances the
clock by the requested delay, and after a fixed number of sleeps the
trigger parks until it is cancelled.
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from taskpulse.api.routes import get_user, refresh_tokens
from taskpulse.api.schemas import TokenRefreshRequest
from taskpulse.config import Settings
from taskpulse.service.runtime import get_runtime
from taskpulse.service.scheduler import (
    NOTIFICATION_DISPATCH,
    SESSION_SWEEP,
    TASK_PURGE,
    Scheduler,
    Trigger,
    build_scheduler,
)

START = datetime(2024, 5, 1, 10, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FlakyClock(FakeClock):
    def __init__(self, now: datetime, failures: int):
        super().__init__(now)
        self.failures = failures

    def __call__(self) -> datetime:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("clock unavailable")
        return self.now


class FakeSleep:
    def __init__(self, clock: FakeClock, limit: int):
        self.clock = clock
        self.limit = limit
        self.calls = 0

    async def __call__(self, delay: float) -> None:
        self.calls += 1
        if self.calls > self.limit:
            await asyncio.Event().wait()
        self.clock.now += timedelta(seconds=delay)
        for _ in range(5):
            await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestTrigger:
    def test_hourly_next_fire_is_top_of_next_hour(self):
        assert Trigger().next_after(START) == datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)

    def test_next_fire_is_strictly_after(self):
        on_the_hour = datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)
        assert Trigger().next_after(on_the_hour) == on_the_hour + timedelta(hours=1)

    def test_daily_trigger_rolls_to_next_day(self):
        trigger = Trigger(hour=3)
        assert trigger.next_after(START) == datetime(2024, 5, 2, 3, 0, tzinfo=timezone.utc)
        early = datetime(2024, 5, 1, 2, 59, 59, tzinfo=timezone.utc)
        assert trigger.next_after(early) == datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

    def test_non_utc_input_is_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        moment = datetime(2024, 5, 1, 5, 30, tzinfo=plus_two)  # 03:30 UTC
        assert Trigger(hour=4).next_after(moment) == datetime(2024, 5, 1, 4, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("kwargs", [{"hour": 24}, {"hour": -1}, {"minute": 60}])
    def test_invalid_trigger(self, kwargs):
        with pytest.raises(ValueError):
            Trigger(**kwargs)


class TestScheduler:
    async def test_hourly_job_fires_once_per_slot(self):
        clock = FakeClock(START)
        sleep = FakeSleep(clock, limit=3)
        fired = []

        async def handler(now):
            fired.append(now)

        scheduler = Scheduler(clock=clock, sleep=sleep)
        scheduler.add_job("hourly", Trigger(), handler)
        await scheduler.start()
        await wait_for(lambda: len(fired) == 3)
        await scheduler.stop()

        assert fired == [
            datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc),
        ]
        assert not scheduler.running

    async def test_failing_handler_does_not_stop_later_ticks(self):
        clock = FakeClock(START)
        sleep = FakeSleep(clock, limit=3)
        calls = []

        async def flaky(now):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("boom")

        scheduler = Scheduler(clock=clock, sleep=sleep)
        scheduler.add_job("flaky", Trigger(), flaky)
        await scheduler.start()
        await wait_for(lambda: len(calls) == 3)

        assert scheduler.running
        assert scheduler.active_triggers == 1
        await scheduler.stop()

    async def test_tick_skipped_while_previous_run_in_flight(self):
        clock = FakeClock(START)
        sleep = FakeSleep(clock, limit=2)
        release = asyncio.Event()
        started = []
        finished = []

        async def slow(now):
            started.append(now)
            await release.wait()
            finished.append(now)

        scheduler = Scheduler(clock=clock, sleep=sleep)
        scheduler.add_job("slow", Trigger(), slow)
        await scheduler.start()
        await wait_for(lambda: sleep.calls == 3)

        assert len(started) == 1
        assert scheduler.in_flight("slow")

        await scheduler.stop()
        # stop leaves the in-flight run alone
        release.set()
        await scheduler.drain()
        assert finished == started

    async def test_restart_does_not_duplicate_triggers(self):
        clock = FakeClock(START)
        sleep = FakeSleep(clock, limit=0)
        scheduler = Scheduler(clock=clock, sleep=sleep)

        async def noop(now):
            return None

        scheduler.add_job("a", Trigger(), noop)
        scheduler.add_job("b", Trigger(hour=3), noop)

        await scheduler.start()
        await scheduler.start()
        assert scheduler.active_triggers == 2
        await scheduler.stop()
        assert scheduler.active_triggers == 0

    async def test_stop_cancels_future_ticks(self):
        clock = FakeClock(START)
        fired = []

        async def handler(now):
            fired.append(now)

        scheduler = Scheduler(clock=clock, sleep=FakeSleep(clock, limit=0))
        scheduler.add_job("hourly", Trigger(), handler)
        await scheduler.start()
        await scheduler.stop()
        await asyncio.sleep(0.01)

        assert fired == []

    async def test_sync_handler_runs_off_the_event_loop(self):
        loop_thread = threading.get_ident()
        seen = []

        def blocking(now):
            seen.append(threading.get_ident())
            return 7

        scheduler = Scheduler(clock=FakeClock(START))
        scheduler.add_job("blocking", Trigger(), blocking)

        assert await scheduler.run_now("blocking") == 7
        assert seen and seen[0] != loop_thread

    async def test_run_now_isolates_errors(self):
        def broken(now):
            raise ValueError("nope")

        scheduler = Scheduler(clock=FakeClock(START))
        scheduler.add_job("broken", Trigger(), broken)

        assert await scheduler.run_now("broken") is None

    async def test_trigger_survives_clock_failure(self):
        clock = FlakyClock(START, failures=1)
        sleep = FakeSleep(clock, limit=2)
        fired = []

        async def handler(now):
            fired.append(now)

        scheduler = Scheduler(clock=clock, sleep=sleep)
        scheduler.add_job("hourly", Trigger(), handler)
        await scheduler.start()
        await wait_for(lambda: len(fired) == 1)

        assert fired == [datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)]
        assert scheduler.active_triggers == 1
        await scheduler.stop()

    def test_duplicate_job_name_rejected(self):
        scheduler = Scheduler()
        scheduler.add_job("x", Trigger(), lambda now: None)

        with pytest.raises(ValueError):
            scheduler.add_job("x", Trigger(), lambda now: None)


class RecordingStore:
    def __init__(self):
        self.purge_cutoffs = []

    def purge_soft_deleted_tasks(self, cutoff):
        self.purge_cutoffs.append(cutoff)
        return 4


class RecordingRegistry:
    def __init__(self):
        self.sweeps = []

    def sweep_expired(self, now=None):
        self.sweeps.append(now)
        return 2


class RecordingDispatch:
    def __init__(self):
        self.runs = []

    def run(self, now=None):
        self.runs.append(now)
        return 3


class TestDefaultSchedule:
    def _build(self):
        settings = Settings(jwt_secret="x" * 40)
        store, registry, dispatch = RecordingStore(), RecordingRegistry(), RecordingDispatch()
        scheduler = build_scheduler(
            settings,
            store=store,
            registry=registry,
            dispatch=dispatch,
            clock=FakeClock(START),
        )
        return scheduler, store, registry, dispatch

    def test_default_triggers(self):
        scheduler, *_ = self._build()
        triggers = {job.name: job.trigger for job in scheduler.jobs}

        assert triggers == {
            NOTIFICATION_DISPATCH: Trigger(hour=None, minute=0),
            TASK_PURGE: Trigger(hour=3, minute=0),
            SESSION_SWEEP: Trigger(hour=4, minute=0),
        }

    async def test_purge_uses_thirty_day_retention(self):
        scheduler, store, registry, dispatch = self._build()
        now = datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)

        assert await scheduler.run_now(TASK_PURGE, now) == 4
        assert store.purge_cutoffs == [now - timedelta(days=30)]

    async def test_sweep_and_dispatch_receive_fire_time(self):
        scheduler, store, registry, dispatch = self._build()
        now = datetime(2024, 5, 1, 4, 0, tzinfo=timezone.utc)

        assert await scheduler.run_now(SESSION_SWEEP, now) == 2
        assert await scheduler.run_now(NOTIFICATION_DISPATCH, now) == 3
        assert registry.sweeps == [now]
        assert dispatch.runs == [now]


class TestRequestsDoNotBlockTicks:
    """Store calls made while serving a request run off the event loop."""

    async def _tick_while_store_blocked(self, blocked_method, request_coro_factory):
        runtime = get_runtime()
        entered = threading.Event()
        release = threading.Event()
        original = getattr(runtime.store, blocked_method)

        def slow(*args, **kwargs):
            entered.set()
            release.wait(timeout=5)
            return original(*args, **kwargs)

        setattr(runtime.store, blocked_method, slow)
        ticked = asyncio.Event()

        async def handler(now):
            ticked.set()

        clock = FakeClock(START)
        scheduler = Scheduler(clock=clock, sleep=FakeSleep(clock, limit=1))
        scheduler.add_job("tick", Trigger(), handler)

        request = asyncio.create_task(request_coro_factory())
        try:
            assert await asyncio.to_thread(entered.wait, 5)
            await scheduler.start()
            await asyncio.wait_for(ticked.wait(), timeout=2)
            assert not request.done()
        finally:
            release.set()
            await scheduler.stop()
        return await request

    async def test_bearer_lookup_runs_off_loop(self):
        runtime = get_runtime()
        user = runtime.store.create_user("slow@example.com")
        tokens = runtime.sessions.login(user.id)

        ctx = await self._tick_while_store_blocked(
            "get_user", lambda: get_user(f"Bearer {tokens.access_token}")
        )
        assert ctx.user_id == user.id

    async def test_refresh_runs_off_loop(self):
        runtime = get_runtime()
        user = runtime.store.create_user("slow@example.com")
        tokens = runtime.sessions.login(user.id)
        body = TokenRefreshRequest(refresh_token=tokens.refresh_token)

        envelope = await self._tick_while_store_blocked(
            "get_session_by_token", lambda: refresh_tokens(body)
        )
        assert envelope.data.user_id == user.id
