"""APScheduler runtime that drives the periodic ledger jobs."""

from __future__ import annotations

import asyncio
import inspect
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from points_ledger.observability.scheduler import SchedulerObservabilityStore, get_scheduler_store
from points_ledger.services.notifications import NotificationService

from .config import JobDefinition, ScheduleConfig, load_job_definitions

JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(task: str) -> JobCallable:
    """Import ``package.module.function`` and check it is a coroutine function."""

    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


class LedgerJobScheduler:
    """Register the configured ledger jobs on an ``AsyncIOScheduler``."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any],
        config_path: Path,
        notifications: NotificationService | None = None,
        observability: SchedulerObservabilityStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._notifications = notifications
        self._observability = observability or get_scheduler_store()
        self._sleep = sleep
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.enabled_jobs:
            scheduler.add_job(
                self.build_runner(job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
            )
            logger.info("Registered ledger job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Ledger job scheduler started", jobs=len(config.enabled_jobs))

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Ledger job scheduler stopped")

    def build_runner(self, job: JobDefinition) -> Callable[[], Awaitable[bool]]:
        """Wrap the job task with retries; the returned coroutine reports success."""

        func = resolve_task(job.task)
        policy = job.retry
        store = self._observability
        context: dict[str, Any] = {"session_factory": self._session_factory}
        if self._notifications is not None:
            context["notifications"] = self._notifications

        async def _run() -> bool:
            store.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()
            attempt = 0
            while True:
                attempt += 1
                try:
                    await func(**context, **job.kwargs)
                except Exception as exc:
                    error = str(exc) or exc.__class__.__name__
                    store.record_attempt_failure(job.id, job.task, attempts=attempt, error=error)
                    if attempt >= policy.max_attempts:
                        store.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=error,
                        )
                        logger.exception("Ledger job failed", job_id=job.id, attempts=attempt, error=error)
                        return False
                    delay = policy.delay_for(attempt)
                    store.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                    logger.warning("Ledger job retrying", job_id=job.id, attempt=attempt + 1, delay_seconds=delay)
                    if delay:
                        await self._sleep(delay)
                    continue

                runtime = time.perf_counter() - started_at
                store.record_success(job.id, job.task, runtime_seconds=runtime, attempts=attempt)
                logger.info("Ledger job completed", job_id=job.id, attempts=attempt, runtime_seconds=runtime)
                return True

        return _run

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.enabled_jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "retry": job.retry.as_dict(),
                    "metrics": snapshot.jobs[job.id].as_dict() if job.id in snapshot.jobs else None,
                }
                for job in jobs
            ],
        }


__all__ = ["LedgerJobScheduler", "resolve_task"]
