"""Standalone worker that runs the ledger maintenance jobs."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from points_ledger import __version__
from points_ledger.core.logging import configure_logging
from points_ledger.core.settings import Settings, settings
from points_ledger.db.session import async_session, init_models
from points_ledger.scheduling import LedgerJobScheduler
from points_ledger.services.notifications import NotificationService, UserDirectory


def resolve_schedule_path(config: Settings) -> Path:
    schedule_path = Path(config.points_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(
    config: Settings = settings,
    *,
    engine: AsyncEngine | None = None,
    session_factory: Callable[[], AsyncSession] = async_session,
    directory: UserDirectory | None = None,
    notifications: NotificationService | None = None,
) -> AsyncIterator[LedgerJobScheduler]:
    await init_models(engine)

    notifications = notifications or NotificationService(directory=directory)
    if not notifications.can_deliver:
        logger.warning("Ledger notifications cannot be delivered; expiry warnings will stay queued")

    job_scheduler = LedgerJobScheduler(
        session_factory=session_factory,
        config_path=resolve_schedule_path(config),
        notifications=notifications,
    )
    if config.points_scheduler_enabled:
        job_scheduler.start()
    else:
        logger.info("Ledger job scheduler disabled", reason="points_scheduler_enabled is false")

    try:
        yield job_scheduler
    finally:
        if job_scheduler.is_running:
            await job_scheduler.stop()


async def _serve() -> None:
    async with lifespan():
        await asyncio.Event().wait()


def main() -> None:
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=__version__,
    )
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Ledger worker stopped")


if __name__ == "__main__":
    main()
