"""Expiry engine: pure expiry date arithmetic plus the persisted expiry schedule."""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models import (
    ExpiryMode,
    ExpiryRule,
    ExpiryType,
    PointsExpiration,
    PointsExpirationStatus,
    PointsHistory,
)

from .errors import InvalidRuleConfiguration

_PERIOD_MONTHS = {
    ExpiryMode.END_OF_MONTH: 1,
    ExpiryMode.END_OF_QUARTER: 3,
    ExpiryMode.END_OF_YEAR: 12,
}

_VALID_MODES = {
    ExpiryType.RELATIVE_DURATION: {ExpiryMode.DAYS_AFTER_EARN},
    ExpiryType.FIXED_DATE: {
        ExpiryMode.END_OF_MONTH,
        ExpiryMode.END_OF_QUARTER,
        ExpiryMode.END_OF_YEAR,
        ExpiryMode.DAY_OF_MONTH,
    },
}


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _period_end(year: int, month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime.combine(date(year, month, last_day), time.max, tzinfo=timezone.utc)


def _next_period_end(earned_at: datetime, months: int) -> datetime:
    end_month = ((earned_at.month - 1) // months + 1) * months
    candidate = _period_end(earned_at.year, end_month)
    if candidate <= earned_at:
        candidate = _period_end(*_shift_month(earned_at.year, end_month, months))
    return candidate


def _day_in_month(year: int, month: int, day: int) -> datetime:
    clamped = min(day, calendar.monthrange(year, month)[1])
    return datetime(year, month, clamped, tzinfo=timezone.utc)


def _next_day_of_month(earned_at: datetime, day: int) -> datetime:
    candidate = _day_in_month(earned_at.year, earned_at.month, day)
    if candidate <= earned_at:
        candidate = _day_in_month(*_shift_month(earned_at.year, earned_at.month, 1), day)
    return candidate


def validate_rule_settings(rule: ExpiryRule) -> tuple[ExpiryType, ExpiryMode]:
    """Check the type/mode pairing and the day counts; return the parsed enums."""

    if rule.expiry_type is None or rule.expiry_mode is None:
        raise InvalidRuleConfiguration(f"Expiry rule {rule.name!r} has no expiry type or mode set")
    try:
        expiry_type = ExpiryType(rule.expiry_type)
        expiry_mode = ExpiryMode(rule.expiry_mode)
    except ValueError as exc:
        raise InvalidRuleConfiguration(str(exc)) from exc

    if expiry_mode not in _VALID_MODES[expiry_type]:
        raise InvalidRuleConfiguration(
            f"Expiry mode {expiry_mode.value} cannot be combined with expiry type {expiry_type.value}"
        )

    expiry_days = rule.expiry_days or 0
    grace_days = rule.grace_period_days or 0
    warning_days = rule.warning_days_before or 0
    if min(expiry_days, grace_days, warning_days) < 0:
        raise InvalidRuleConfiguration("Expiry, grace and warning days cannot be negative")
    if expiry_mode is ExpiryMode.DAYS_AFTER_EARN:
        if expiry_days <= 0:
            raise InvalidRuleConfiguration("Relative expiry rules need a positive number of expiry days")
        if warning_days >= expiry_days:
            raise InvalidRuleConfiguration("Warning days before must be less than expiry days")
    if expiry_mode is ExpiryMode.DAY_OF_MONTH and not 1 <= (rule.fixed_day_of_month or 0) <= 31:
        raise InvalidRuleConfiguration("Day-of-month expiry needs a fixed day between 1 and 31")
    return expiry_type, expiry_mode


def calculate_expiry_date(rule: ExpiryRule, earned_at: datetime) -> datetime:
    """Return when points earned at ``earned_at`` lapse under ``rule``.

    Relative rules add ``expiry_days`` to the earn time. Fixed-date rules pick
    the next calendar anchor strictly after the earn time: the last instant of
    the month, quarter or year, or midnight on ``fixed_day_of_month`` (clamped to
    short months). Grace days are added to the anchor.
    """

    if not rule.active:
        raise InvalidRuleConfiguration(f"Expiry rule {rule.name!r} is inactive")
    _, expiry_mode = validate_rule_settings(rule)
    earned = as_utc(earned_at)

    if expiry_mode is ExpiryMode.DAYS_AFTER_EARN:
        expires_at = earned + timedelta(days=rule.expiry_days)
    elif expiry_mode is ExpiryMode.DAY_OF_MONTH:
        expires_at = _next_day_of_month(earned, rule.fixed_day_of_month)
    else:
        expires_at = _next_period_end(earned, _PERIOD_MONTHS[expiry_mode])

    return expires_at + timedelta(days=rule.grace_period_days or 0)


def calculate_warning_date(rule: ExpiryRule, expires_at: datetime) -> datetime | None:
    if not rule.send_expiry_notifications or not rule.warning_days_before:
        return None
    return as_utc(expires_at) - timedelta(days=rule.warning_days_before)


class ExpiryScheduler:
    """Persists and queries the expiry schedule; never commits on its own."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def schedule(
        self,
        entry: PointsHistory,
        rule: ExpiryRule,
        *,
        earned_at: datetime | None = None,
    ) -> PointsExpiration:
        expires_at = calculate_expiry_date(rule, earned_at or entry.created_at or datetime.now(timezone.utc))
        record = PointsExpiration(
            user_id=entry.user_id,
            history_entry_id=entry.id,
            expiry_rule_id=rule.id,
            points=entry.points,
            confirmed_points=0,
            consumed_points=0,
            expires_at=expires_at,
            warn_at=calculate_warning_date(rule, expires_at),
            status=PointsExpirationStatus.SCHEDULED,
        )
        entry.expires_at = expires_at
        self._db.add(record)
        await self._db.flush()
        logger.debug(
            "Scheduled points expiration",
            user_id=str(entry.user_id),
            points=entry.points,
            expires_at=expires_at.isoformat(),
        )
        return record

    async def get(self, expiration_id: UUID) -> PointsExpiration | None:
        return await self._db.get(PointsExpiration, expiration_id)

    async def for_entry(self, history_entry_id: UUID) -> PointsExpiration | None:
        stmt = (
            select(PointsExpiration)
            .where(PointsExpiration.history_entry_id == history_entry_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def due(self, reference_time: datetime | None = None, *, limit: int | None = None) -> list[PointsExpiration]:
        """Scheduled rows whose expiry has passed, oldest first.

        Batches whose only remaining points are still unconfirmed are left out
        until a confirmation makes them expirable.
        """

        horizon = as_utc(reference_time or datetime.now(timezone.utc))
        stmt = (
            select(PointsExpiration)
            .where(
                PointsExpiration.status == PointsExpirationStatus.SCHEDULED,
                PointsExpiration.expires_at <= horizon,
                or_(
                    PointsExpiration.confirmed_points > PointsExpiration.consumed_points,
                    PointsExpiration.confirmed_points >= PointsExpiration.points,
                ),
            )
            .order_by(PointsExpiration.expires_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def due_for_warning(
        self,
        reference_time: datetime | None = None,
        *,
        limit: int | None = None,
    ) -> list[PointsExpiration]:
        horizon = as_utc(reference_time or datetime.now(timezone.utc))
        stmt = (
            select(PointsExpiration)
            .where(
                PointsExpiration.status == PointsExpirationStatus.SCHEDULED,
                PointsExpiration.warn_at.is_not(None),
                PointsExpiration.warn_at <= horizon,
                PointsExpiration.warned_at.is_(None),
                PointsExpiration.expires_at > horizon,
            )
            .order_by(PointsExpiration.expires_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def consume(self, user_id: UUID, points: int) -> int:
        """Draw redeemed points from the soonest-expiring batches; return the amount drawn.

        Only the confirmed part of a batch can be spent, so pending batches are
        left untouched.
        """

        stmt = (
            select(PointsExpiration)
            .where(
                PointsExpiration.user_id == user_id,
                PointsExpiration.status == PointsExpirationStatus.SCHEDULED,
            )
            .order_by(PointsExpiration.expires_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        remaining = points
        for record in result.scalars().all():
            if remaining <= 0:
                break
            take = min(record.expirable_points, remaining)
            if take <= 0:
                continue
            record.consumed_points = (record.consumed_points or 0) + take
            remaining -= take
            if record.remaining_points == 0:
                record.status = PointsExpirationStatus.CONSUMED
        await self._db.flush()
        return points - remaining

    async def mark_confirmed(self, history_entry_id: UUID, points: int) -> None:
        """Count confirmed points against the batch so they become spendable and expirable."""

        stmt = (
            update(PointsExpiration)
            .where(PointsExpiration.history_entry_id == history_entry_id)
            .values(confirmed_points=PointsExpiration.confirmed_points + points)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def shrink_for_reversal(self, history_entry_id: UUID, points: int) -> PointsExpiration | None:
        """Remove reversed pending points from the batch's schedule."""

        record = await self.for_entry(history_entry_id)
        if record is None or record.status is not PointsExpirationStatus.SCHEDULED:
            return record
        record.points = max(int(record.points) - points, int(record.consumed_points or 0))
        if record.remaining_points == 0:
            record.status = PointsExpirationStatus.CANCELLED
        await self._db.flush()
        return record


__all__ = [
    "ExpiryScheduler",
    "as_utc",
    "calculate_expiry_date",
    "calculate_warning_date",
    "validate_rule_settings",
]
