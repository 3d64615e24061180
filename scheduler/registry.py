"""
Scheduler - Job Registry.

============================================================
PURPOSE
============================================================
Named periodic jobs with operator controls.

RESPONSIBILITIES:
- register / start / stop the ticker of each job
- pause / resume (the ticker stops after its current run;
  resume restarts it)
- execute_now regardless of the pause state
- persist every run in scheduled_job_runs
- run statistics for operator visibility

RULES:
- A job never overlaps itself; a tick that finds the job
  still running is skipped
- A failing run is recorded as FAILED and never stops the
  ticker
- pause never cuts a run short; only stop() cancels tickers
- next_execution = last finished + interval (None when paused)

============================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import case, func, select

from core.clock import ClockProtocol, SystemClock
from core.exceptions import SchedulerError, SchedulerJobNotFound
from database.engine import Database
from storage.models import ScheduledJobRunModel


logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class RunStatus(Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class RunTrigger(Enum):
    SCHEDULE = "SCHEDULE"
    MANUAL = "MANUAL"


# ============================================================
# JOB CONFIGURATION
# ============================================================

@dataclass
class SchedulerJobConfig:
    """Configuration of one periodic job."""

    name: str
    interval_sec: float
    enabled: bool = True
    timeout_sec: Optional[float] = None
    """Run is recorded as TIMEOUT when exceeded."""

    run_on_start: bool = False
    description: str = ""

    def __post_init__(self):
        if self.interval_sec <= 0:
            raise ValueError(f"Job {self.name}: interval_sec must be positive")


@dataclass
class JobRunResult:
    """Outcome of one run."""

    job_name: str
    trigger: RunTrigger
    status: RunStatus
    started_at: datetime
    duration_ms: int
    error: Optional[str] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class _RegisteredJob:
    config: SchedulerJobConfig
    func: JobFunc
    task: Optional[asyncio.Task] = None
    running: bool = False
    last_result: Optional[JobRunResult] = None
    runs: int = 0


# ============================================================
# JOB REGISTRY
# ============================================================

class JobRegistry:
    """
    Map of job name to (config, enabled flag, ticker task, run stats).

    Usage:
        registry = JobRegistry(db)
        registry.register("risk_exit", monitor.tick, interval_sec=10)
        await registry.start()
    """

    def __init__(self, db: Database, clock: Optional[ClockProtocol] = None):
        self._db = db
        self._clock = clock or SystemClock()
        self._jobs: Dict[str, _RegisteredJob] = {}
        self._started = False

    # --------------------------------------------------------
    # REGISTRATION
    # --------------------------------------------------------

    def register(
        self,
        name: str,
        func: JobFunc,
        interval_sec: float,
        enabled: bool = True,
        timeout_sec: Optional[float] = None,
        run_on_start: bool = False,
        description: str = "",
    ) -> SchedulerJobConfig:
        """
        Raises:
            ValueError: name already registered
        """
        if name in self._jobs:
            raise ValueError(f"Job {name} already registered")
        config = SchedulerJobConfig(
            name=name,
            interval_sec=interval_sec,
            enabled=enabled,
            timeout_sec=timeout_sec,
            run_on_start=run_on_start,
            description=description,
        )
        self._jobs[name] = _RegisteredJob(config=config, func=func)
        logger.info(f"Registered job {name} (every {interval_sec}s, enabled={enabled})")
        if self._started and enabled:
            self._spawn(self._jobs[name])
        return config

    def _get(self, name: str) -> _RegisteredJob:
        job = self._jobs.get(name)
        if job is None:
            raise SchedulerJobNotFound(name)
        return job

    @property
    def names(self) -> List[str]:
        return list(self._jobs)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for job in self._jobs.values():
            if job.config.enabled:
                self._spawn(job)
        logger.info(f"Scheduler started with {len(self._jobs)} jobs")

    async def stop(self) -> None:
        tasks = [job.task for job in self._jobs.values() if job.task]
        for job in self._jobs.values():
            self._cancel(job)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._started = False
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    def _spawn(self, job: _RegisteredJob) -> None:
        if job.task is None or job.task.done():
            job.task = asyncio.create_task(self._ticker(job), name=f"job-{job.config.name}")

    def _cancel(self, job: _RegisteredJob) -> None:
        if job.task is not None:
            job.task.cancel()
            job.task = None

    async def _ticker(self, job: _RegisteredJob) -> None:
        if job.config.run_on_start and job.config.enabled:
            await self._safe_run(job, RunTrigger.SCHEDULE)
        while job.config.enabled:
            await asyncio.sleep(job.config.interval_sec)
            # Re-checked after the sleep: pause only takes effect between runs
            if not job.config.enabled:
                break
            await self._safe_run(job, RunTrigger.SCHEDULE)
        logger.debug(f"Job {job.config.name} ticker exited")

    async def _safe_run(self, job: _RegisteredJob, trigger: RunTrigger) -> None:
        try:
            await self._run(job, trigger)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Job {job.config.name}: run bookkeeping failed: {e}")

    # --------------------------------------------------------
    # OPERATOR CONTROLS
    # --------------------------------------------------------

    def pause(self, name: str) -> SchedulerJobConfig:
        job = self._get(name)
        job.config.enabled = False
        logger.info(f"Job {name} paused" + (", current run will finish" if job.running else ""))
        return job.config

    def resume(self, name: str) -> SchedulerJobConfig:
        job = self._get(name)
        job.config.enabled = True
        if self._started:
            self._spawn(job)
        logger.info(f"Job {name} resumed")
        return job.config

    async def execute_now(self, name: str) -> JobRunResult:
        """
        Run a job immediately, even when paused.

        Raises:
            SchedulerJobNotFound
            SchedulerError: the job is already running
        """
        job = self._get(name)
        if job.running:
            raise SchedulerError(f"Job {name} is already running", context={"job": name})
        return await self._run(job, RunTrigger.MANUAL)

    # --------------------------------------------------------
    # RUN
    # --------------------------------------------------------

    async def _run(self, job: _RegisteredJob, trigger: RunTrigger) -> Optional[JobRunResult]:
        name = job.config.name
        if job.running:
            logger.warning(f"Job {name} still running, skipping {trigger.value.lower()} run")
            return None

        job.running = True
        started_at = self._clock.now()
        t0 = time.monotonic()
        try:
            run_id = await self._record_start(name, trigger, started_at)
        except BaseException:
            job.running = False
            raise

        status = RunStatus.SUCCESS
        error: Optional[str] = None
        result: Any = None
        try:
            if job.config.timeout_sec:
                result = await asyncio.wait_for(job.func(), timeout=job.config.timeout_sec)
            else:
                result = await job.func()
        except asyncio.TimeoutError:
            status = RunStatus.TIMEOUT
            error = f"Timed out after {job.config.timeout_sec}s"
            logger.error(f"Job {name}: {error}")
        except asyncio.CancelledError:
            await self._record_finish(run_id, RunStatus.FAILED, int((time.monotonic() - t0) * 1000), "Cancelled")
            job.running = False
            raise
        except Exception as e:
            status = RunStatus.FAILED
            error = str(e)
            logger.error(f"Job {name} failed: {e}")
        finally:
            job.running = False

        duration_ms = int((time.monotonic() - t0) * 1000)
        await self._record_finish(run_id, status, duration_ms, error)

        job.runs += 1
        job.last_result = JobRunResult(
            job_name=name,
            trigger=trigger,
            status=status,
            started_at=started_at,
            duration_ms=duration_ms,
            error=error,
            result=result,
        )
        logger.debug(f"Job {name} {status.value} in {duration_ms}ms")
        return job.last_result

    async def _record_start(self, name: str, trigger: RunTrigger, started_at: datetime) -> int:
        async with self._db.session_scope() as session:
            row = ScheduledJobRunModel(
                job_name=name,
                trigger=trigger.value,
                status=RunStatus.RUNNING.value,
                started_at=started_at,
            )
            session.add(row)
            await session.flush()
            return row.id

    async def _record_finish(self, run_id: int, status: RunStatus, duration_ms: int, error: Optional[str]) -> None:
        async with self._db.session_scope() as session:
            row = await session.get(ScheduledJobRunModel, run_id)
            row.status = status.value
            row.finished_at = self._clock.now()
            row.duration_ms = duration_ms
            row.error = error

    # --------------------------------------------------------
    # STATISTICS
    # --------------------------------------------------------

    async def stats(self, name: str) -> Dict[str, Any]:
        """
        Raises:
            SchedulerJobNotFound
        """
        job = self._get(name)
        stmt = select(
            func.count(ScheduledJobRunModel.id),
            func.sum(case((ScheduledJobRunModel.status == RunStatus.SUCCESS.value, 1), else_=0)),
            func.avg(ScheduledJobRunModel.duration_ms),
            func.max(ScheduledJobRunModel.started_at),
            func.max(ScheduledJobRunModel.finished_at),
        ).where(ScheduledJobRunModel.job_name == name)

        async with self._db.session_scope() as session:
            total, successes, avg_ms, last_started, last_finished = (await session.execute(stmt)).one()

        total = total or 0
        next_execution = None
        if job.config.enabled and last_finished is not None:
            next_execution = last_finished + timedelta(seconds=job.config.interval_sec)

        return {
            "name": name,
            "description": job.config.description,
            "interval_sec": job.config.interval_sec,
            "enabled": job.config.enabled,
            "running": job.running,
            "total_runs": total,
            "success_rate": round((successes or 0) / total * 100, 2) if total else None,
            "avg_duration_ms": round(float(avg_ms), 1) if avg_ms is not None else None,
            "last_execution": last_started.isoformat() if last_started else None,
            "next_execution": next_execution.isoformat() if next_execution else None,
            "last_status": job.last_result.status.value if job.last_result else None,
            "last_error": job.last_result.error if job.last_result else None,
        }

    async def all_stats(self) -> List[Dict[str, Any]]:
        return [await self.stats(name) for name in self._jobs]
