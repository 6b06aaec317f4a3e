"""Process-lifetime scheduler for the periodic maintenance and dispatch jobs.

Each registered job gets its own asyncio trigger task that sleeps until the
next fire time and then launches the handler in a separate task, so a slow
or failing handler never delays or cancels the trigger itself. Sync
handlers run in a worker thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from taskpulse.config import Settings
from taskpulse.logging import get_logger, job_context
from taskpulse.storage.models import utcnow

logger = get_logger(__name__)

NOTIFICATION_DISPATCH = "notification_dispatch"
TASK_PURGE = "task_purge"
SESSION_SWEEP = "session_sweep"

TRIGGER_RETRY_SECONDS = 60.0


@dataclass(frozen=True)
class Trigger:
    """Fire-time rule in UTC: daily at ``hour:minute``, or hourly when ``hour`` is None."""

    hour: Optional[int] = None
    minute: int = 0

    def __post_init__(self) -> None:
        if self.hour is not None and not 0 <= self.hour <= 23:
            raise ValueError("trigger hour must be between 0 and 23")
        if not 0 <= self.minute <= 59:
            raise ValueError("trigger minute must be between 0 and 59")

    def next_after(self, moment: datetime) -> datetime:
        """First fire time strictly later than ``moment``."""
        moment = moment.astimezone(timezone.utc) if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
        base = moment.replace(second=0, microsecond=0)
        if self.hour is None:
            candidate = base.replace(minute=self.minute)
            step = timedelta(hours=1)
        else:
            candidate = base.replace(hour=self.hour, minute=self.minute)
            step = timedelta(days=1)
        while candidate <= moment:
            candidate += step
        return candidate


Handler = Callable[[datetime], Any]


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    trigger: Trigger
    handler: Handler


class Scheduler:
    def __init__(
        self,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._clock = clock or utcnow
        self._sleep = sleep or asyncio.sleep
        self._jobs: Dict[str, ScheduledJob] = {}
        self._running = False
        self._triggers: Dict[str, asyncio.Task] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    def add_job(self, name: str, trigger: Trigger, handler: Handler) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"job already registered: {name}")
        job = ScheduledJob(name=name, trigger=trigger, handler=handler)
        self._jobs[name] = job
        return job

    @property
    def running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    @property
    def active_triggers(self) -> int:
        return sum(1 for task in self._triggers.values() if not task.done())

    def in_flight(self, name: str) -> bool:
        task = self._inflight.get(name)
        return task is not None and not task.done()

    async def start(self) -> None:
        """Register one trigger task per job; a second call restarts cleanly."""
        if self._running:
            logger.info("scheduler_restarting")
            await self.stop()

        self._running = True
        for job in self._jobs.values():
            self._triggers[job.name] = asyncio.create_task(
                self._run_trigger(job), name=f"scheduler:{job.name}"
            )
        logger.info("scheduler_started", jobs=sorted(self._jobs))

    async def stop(self) -> None:
        """Cancel future ticks. Handler runs already started keep going."""
        self._running = False
        triggers = list(self._triggers.values())
        self._triggers.clear()
        for task in triggers:
            task.cancel()
        for task in triggers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info(
            "scheduler_stopped",
            in_flight=[name for name in self._inflight if self.in_flight(name)],
        )

    async def drain(self) -> None:
        pending = [task for task in self._inflight.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def run_now(self, name: str, now: Optional[datetime] = None) -> Any:
        """Invoke a job immediately, outside its trigger; failures are logged."""
        job = self._jobs[name]
        return await self._invoke(job, now or self._clock())

    async def _run_trigger(self, job: ScheduledJob) -> None:
        last_fire: Optional[datetime] = None
        while self._running:
            try:
                now = self._clock()
                # never earlier than the previous fire, so one slot cannot fire twice
                fire_at = job.trigger.next_after(max(last_fire or now, now))
                delay = (fire_at - now).total_seconds()
                if delay > 0:
                    await self._sleep(delay)
                if self._clock() < fire_at:
                    continue
                last_fire = fire_at
                self._fire(job, fire_at)
            except Exception as exc:
                logger.error(
                    "scheduler_trigger_error",
                    job=job.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    retry_in_s=TRIGGER_RETRY_SECONDS,
                )
                await self._sleep(TRIGGER_RETRY_SECONDS)

    def _fire(self, job: ScheduledJob, fire_at: datetime) -> None:
        if self.in_flight(job.name):
            logger.warning(
                "scheduler_tick_skipped",
                job=job.name,
                fire_at=fire_at.isoformat(),
                reason="previous_run_in_flight",
            )
            return
        task = asyncio.create_task(self._invoke(job, fire_at), name=f"job:{job.name}")
        self._inflight[job.name] = task
        task.add_done_callback(lambda t, name=job.name: self._forget(name, t))

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._inflight.get(name) is task:
            del self._inflight[name]

    async def _invoke(self, job: ScheduledJob, now: datetime) -> Any:
        started = time.monotonic()
        try:
            with job_context(job.name, now):
                if inspect.iscoroutinefunction(job.handler):
                    result = await job.handler(now)
                else:
                    result = await asyncio.to_thread(job.handler, now)
                    if inspect.isawaitable(result):
                        result = await result
        except Exception as exc:
            logger.error(
                "scheduler_job_failed",
                job=job.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None
        logger.info(
            "scheduler_job_complete",
            job=job.name,
            result=result if isinstance(result, (int, bool)) else None,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return result


def build_scheduler(
    settings: Settings,
    *,
    store: Any,
    registry: Any,
    dispatch: Any,
    clock: Optional[Callable[[], datetime]] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> Scheduler:
    """Scheduler with the hourly dispatch, daily purge and daily sweep jobs."""
    retention = timedelta(days=settings.soft_delete_retention_days)

    def purge(now: datetime) -> int:
        return store.purge_soft_deleted_tasks(now - retention)

    scheduler = Scheduler(clock=clock, sleep=sleep)
    scheduler.add_job(NOTIFICATION_DISPATCH, Trigger(hour=None, minute=0), dispatch.run)
    scheduler.add_job(TASK_PURGE, Trigger(hour=settings.task_purge_hour), purge)
    scheduler.add_job(
        SESSION_SWEEP, Trigger(hour=settings.session_sweep_hour), registry.sweep_expired
    )
    return scheduler
