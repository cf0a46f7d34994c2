import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class DailyJob:
    """A job that fires once a day at a wall-clock time in the scheduler's timezone"""
    name: str
    run_at: time
    action: Callable[[], Awaitable[Any]]
    state: JobState = JobState.IDLE
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    skipped_fires: int = 0


def parse_time_of_day(value: str) -> time:
    """'16:00' -> time(16, 0)"""
    hour, minute = value.strip().split(":")
    return time(int(hour), int(minute))


@dataclass
class DailyScheduler:
    """
    Fires registered jobs at static daily times.

    Each job is single-flight: a fire that arrives while the previous run of
    the same job is still going is a no-op. Nothing is persisted; a missed
    fire (process down) is simply skipped.
    """
    timezone: str = "UTC"
    jobs: Dict[str, DailyJob] = field(default_factory=dict)
    on_failure: Optional[Callable[[str, Exception], Awaitable[None]]] = None

    def __post_init__(self):
        self.tz = ZoneInfo(self.timezone)
        self.shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._fired_tasks: Set[asyncio.Task] = set()
        self.logger = logging.getLogger(__name__)

    def add_job(self, name: str, run_at: time, action: Callable[[], Awaitable[Any]]) -> DailyJob:
        job = DailyJob(name=name, run_at=run_at, action=action)
        self.jobs[name] = job
        return job

    def calculate_next_run_time(self, job: DailyJob, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now(self.tz)
        next_run = now.replace(hour=job.run_at.hour, minute=job.run_at.minute, second=0, microsecond=0)
        if next_run <= now:
            next_run = (now + timedelta(days=1)).replace(
                hour=job.run_at.hour, minute=job.run_at.minute, second=0, microsecond=0
            )
        return next_run

    async def fire(self, name: str) -> bool:
        """
        Run a job now unless it is already running.

        Returns:
            True if the job ran, False if the fire was dropped
        """
        job = self.jobs[name]
        if job.state == JobState.RUNNING:
            job.skipped_fires += 1
            self.logger.info(f"⏳ Job '{name}' still running; ignoring fire")
            return False

        job.state = JobState.RUNNING
        job.last_started = datetime.now(self.tz)
        job.last_error = None
        self.logger.info(f"▶️ Job '{name}' started")
        try:
            await job.action()
            job.runs += 1
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            self.logger.error(f"❌ Job '{name}' failed: {e}", exc_info=True)
            if self.on_failure is not None:
                try:
                    await self.on_failure(name, e)
                except Exception as alert_error:
                    self.logger.error(f"Failure alert for job '{name}' failed: {alert_error}")
        finally:
            job.state = JobState.IDLE
            job.last_finished = datetime.now(self.tz)
        return True

    def spawn_fire(self, name: str) -> asyncio.Task:
        """Fire a job in the background; the task is tracked until it finishes."""
        task = asyncio.create_task(self.fire(name))
        self._fired_tasks.add(task)
        task.add_done_callback(self._fired_tasks.discard)
        return task

    async def _wait_until(self, next_run: datetime) -> None:
        while not self.shutdown_event.is_set():
            delay = (next_run - datetime.now(self.tz)).total_seconds()
            if delay <= 0:
                break
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=min(delay, 60.0))
            except asyncio.TimeoutError:
                continue

    async def _job_loop(self, job: DailyJob) -> None:
        while not self.shutdown_event.is_set():
            next_run = self.calculate_next_run_time(job)
            self.logger.info(f"🕐 Job '{job.name}' next run at {next_run.isoformat()}")
            await self._wait_until(next_run)
            if self.shutdown_event.is_set():
                break
            # Fire in the background so a long run never delays the next day's schedule
            self.spawn_fire(job.name)
            await asyncio.sleep(1)

    async def run_forever(self) -> None:
        self._tasks = [asyncio.create_task(self._job_loop(job)) for job in self.jobs.values()]
        try:
            await self.shutdown_event.wait()
        finally:
            pending = self._tasks + list(self._fired_tasks)
            for task in pending:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self.logger.info("Scheduler stopped")

    def shutdown(self) -> None:
        self.shutdown_event.set()

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "state": job.state.value,
                "run_at": job.run_at.strftime("%H:%M"),
                "next_run": self.calculate_next_run_time(job).isoformat(),
                "last_started": job.last_started.isoformat() if job.last_started else None,
                "last_error": job.last_error,
                "runs": job.runs,
                "skipped_fires": job.skipped_fires,
            }
            for name, job in self.jobs.items()
        }
