"""Jobs that lapse expired points and warn members before their points expire."""

# meta: job: points-expiry

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.core.settings import get_settings
from points_ledger.observability.ledger import get_ledger_store
from points_ledger.services.errors import LedgerError
from points_ledger.services.expiry import ExpiryScheduler
from points_ledger.services.ledger import BalanceLedger
from points_ledger.services.notifications import LedgerEvent, LedgerEventKind, NotificationService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


async def run_points_expiry_sweep(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    reference_time: dt.datetime | None = None,
    notifications: NotificationService | None = None,
) -> Dict[str, Any]:
    """Expire every scheduled batch that is due; each batch commits on its own."""

    now = reference_time or dt.datetime.now(dt.timezone.utc)
    limit = limit if limit is not None else get_settings().points_expiry_sweep_limit
    session = await _open_session(session_factory)

    async with session as managed_session:
        ledger = BalanceLedger(managed_session, notifications=notifications)
        due = await ExpiryScheduler(managed_session).due(now, limit=limit)
        expired_entries = 0
        expired_points = 0
        failed = 0
        for record in due:
            try:
                points = await ledger.expire_points(record.id)
            except LedgerError as exc:
                failed += 1
                logger.warning("Points expiration failed", expiration_id=str(record.id), error=str(exc))
                continue
            if points:
                expired_entries += 1
                expired_points += points

    get_ledger_store().record_expiry_sweep(entries=expired_entries, points=expired_points)
    summary = {
        "due": len(due),
        "expired_entries": expired_entries,
        "expired_points": expired_points,
        "failed": failed,
    }
    logger.bind(summary=summary).info("Points expiry sweep completed")
    return summary


async def run_expiry_warnings(
    *,
    session_factory: SessionFactory,
    reference_time: dt.datetime | None = None,
    limit: int | None = None,
    notifications: NotificationService | None = None,
) -> Dict[str, Any]:
    """Notify members whose scheduled points reach their warning date.

    Rows are only marked as warned when a notifier can deliver; otherwise they
    stay due for the next run.
    """

    if not get_settings().points_expiry_warning_enabled:
        logger.info("Points expiry warnings disabled")
        return {"warned": 0, "skipped": True}

    now = reference_time or dt.datetime.now(dt.timezone.utc)
    notifier = notifications or NotificationService()
    if not notifier.can_deliver:
        logger.warning("Points expiry warnings held back; notification delivery is not configured")
        return {"warned": 0, "skipped": True}

    session = await _open_session(session_factory)

    async with session as managed_session:
        records = await ExpiryScheduler(managed_session).due_for_warning(now, limit=limit)
        events = []
        for record in records:
            record.warned_at = now
            events.append(
                LedgerEvent(
                    LedgerEventKind.POINTS_EXPIRING,
                    record.user_id,
                    {"points": record.remaining_points, "expires_at": record.expires_at.isoformat()},
                )
            )
        await managed_session.commit()

    for event in events:
        notifier.publish(event)

    summary = {"warned": len(events), "skipped": False}
    logger.bind(summary=summary).info("Points expiry warnings dispatched")
    return summary


__all__ = ["run_expiry_warnings", "run_points_expiry_sweep"]
