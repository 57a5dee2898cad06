"""Tier resolver plus tier, benefit and tier-benefit administration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models import Benefit, Tier, TierBenefit, UserPointsBalance

from .common import apply_changes, get_or_raise
from .errors import (
    DuplicateEntity,
    InvalidRuleConfiguration,
    TierHierarchyViolation,
    TierInactive,
    TierNotFound,
)

_TIER_FIELDS = ("name", "tier_level", "color", "min_points", "multiplier", "active")
_BENEFIT_FIELDS = ("name", "description", "active")


class TierLike(Protocol):
    tier_level: int
    min_points: int
    active: bool


@dataclass(frozen=True)
class _TierView:
    id: UUID | None
    tier_level: int
    min_points: int
    active: bool


def resolve_tier(tiers: Iterable[Tier], points: int) -> Tier | None:
    """Active tier with the highest threshold at or below ``points``; equal thresholds go to the higher level."""

    best: Tier | None = None
    for tier in tiers:
        if not tier.active or tier.min_points > points:
            continue
        if best is None or (tier.min_points, tier.tier_level) > (best.min_points, best.tier_level):
            best = tier
    return best


def validate_hierarchy(tiers: Iterable[TierLike]) -> None:
    """Active tiers ordered by level must require strictly increasing points."""

    active = sorted((tier for tier in tiers if tier.active), key=lambda tier: tier.tier_level)
    for lower, higher in zip(active, active[1:]):
        if lower.tier_level == higher.tier_level:
            raise DuplicateEntity(f"Tier level {higher.tier_level} is assigned twice")
        if higher.min_points <= lower.min_points:
            raise TierHierarchyViolation(lower.tier_level, higher.tier_level)


def _check_tier_values(name: Any, tier_level: Any, min_points: Any, multiplier: Any) -> None:
    if not name or not str(name).strip():
        raise InvalidRuleConfiguration("Tier name cannot be empty")
    if tier_level is None or int(tier_level) < 1:
        raise InvalidRuleConfiguration("Tier level must be at least 1")
    if min_points is None or int(min_points) < 0:
        raise InvalidRuleConfiguration("Minimum points cannot be negative")
    if Decimal(str(multiplier)) < 1:
        raise InvalidRuleConfiguration("Tier multiplier cannot be below 1")


class TierService:
    """Tier CRUD; every write keeps the active hierarchy monotonic and members on the right tier."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create(
        self,
        *,
        name: str,
        tier_level: int,
        min_points: int = 0,
        multiplier: Decimal | int = 1,
        color: str | None = None,
        active: bool = True,
    ) -> Tier:
        _check_tier_values(name, tier_level, min_points, multiplier)
        existing = await self.list_all()
        if any(tier.tier_level == tier_level for tier in existing):
            raise DuplicateEntity(f"Tier level {tier_level} already exists")
        validate_hierarchy(
            [_view(tier) for tier in existing] + [_TierView(None, tier_level, min_points, active)]
        )

        tier = Tier(
            name=name,
            tier_level=tier_level,
            min_points=min_points,
            multiplier=Decimal(str(multiplier)),
            color=color,
            active=active,
        )
        self._db.add(tier)
        await self._commit_unique(f"Tier level {tier_level} already exists")
        logger.info("Created tier", tier_id=str(tier.id), tier_level=tier_level, min_points=min_points)
        return tier

    async def get(self, tier_id: UUID) -> Tier:
        tier = await self._db.get(Tier, tier_id)
        if tier is None:
            raise TierNotFound(f"Tier {tier_id} not found")
        return tier

    async def list_all(self) -> list[Tier]:
        result = await self._db.execute(select(Tier).order_by(Tier.tier_level.asc()))
        return list(result.scalars().all())

    async def list_active(self) -> list[Tier]:
        stmt = select(Tier).where(Tier.active.is_(True)).order_by(Tier.tier_level.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def find_by_level(self, tier_level: int) -> Tier | None:
        result = await self._db.execute(select(Tier).where(Tier.tier_level == tier_level))
        return result.scalar_one_or_none()

    async def find_tier_for_points(self, points: int) -> Tier | None:
        return resolve_tier(await self.list_active(), points)

    async def require_active(self, tier_id: UUID) -> Tier:
        tier = await self.get(tier_id)
        if not tier.active:
            raise TierInactive(f"Tier {tier_id} is inactive")
        return tier

    async def update(self, tier_id: UUID, **changes: Any) -> Tier:
        tier = await self.get(tier_id)
        candidate = {
            field: changes.get(field, getattr(tier, field))
            for field in ("name", "tier_level", "min_points", "multiplier")
        }
        _check_tier_values(**candidate)

        views = []
        for other in await self.list_all():
            if other.id != tier.id:
                views.append(_view(other))
                continue
            views.append(
                _TierView(
                    other.id,
                    int(changes.get("tier_level", other.tier_level)),
                    int(changes.get("min_points", other.min_points)),
                    bool(changes.get("active", other.active)),
                )
            )
        if sum(1 for view in views if view.tier_level == candidate["tier_level"]) > 1:
            raise DuplicateEntity(f"Tier level {candidate['tier_level']} already exists")
        validate_hierarchy(views)

        applied = apply_changes(tier, changes, _TIER_FIELDS)
        await self._commit_unique(f"Tier level {tier.tier_level} already exists")
        logger.info("Updated tier", tier_id=str(tier_id), fields=sorted(applied))
        return tier

    async def activate(self, tier_id: UUID) -> Tier:
        return await self.update(tier_id, active=True)

    async def deactivate(self, tier_id: UUID) -> Tier:
        return await self.update(tier_id, active=False)

    async def delete(self, tier_id: UUID) -> None:
        tier = await self.get(tier_id)
        await self._db.execute(delete(TierBenefit).where(TierBenefit.tier_id == tier_id))
        await self._db.execute(
            update(UserPointsBalance)
            .where(UserPointsBalance.current_tier_id == tier_id)
            .values(current_tier_id=None)
            .execution_options(synchronize_session=False)
        )
        await self._db.delete(tier)
        await self._db.flush()
        await self.resync_members()
        await self._db.commit()
        logger.info("Deleted tier", tier_id=str(tier_id))

    async def reorder_tiers(self, ordered_ids: Sequence[UUID]) -> list[Tier]:
        """Assign levels 1..N in the given order; either every tier moves or none does."""

        tiers = {tier.id: tier for tier in await self.list_all()}
        if len(ordered_ids) != len(set(ordered_ids)):
            raise InvalidRuleConfiguration("Tier reorder lists a tier more than once")
        missing = [tier_id for tier_id in ordered_ids if tier_id not in tiers]
        if missing:
            raise TierNotFound(f"Tier {missing[0]} not found")
        if len(ordered_ids) != len(tiers):
            raise InvalidRuleConfiguration("All tiers must be included in a reorder")

        validate_hierarchy(
            _TierView(tier_id, level, tiers[tier_id].min_points, tiers[tier_id].active)
            for level, tier_id in enumerate(ordered_ids, start=1)
        )

        try:
            # levels are unique, so park every tier on a negative level first
            for offset, tier_id in enumerate(ordered_ids, start=1):
                tiers[tier_id].tier_level = -offset
            await self._db.flush()
            for level, tier_id in enumerate(ordered_ids, start=1):
                tiers[tier_id].tier_level = level
            await self._db.flush()
            await self.resync_members()
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        logger.info("Reordered tiers", count=len(ordered_ids))
        return [tiers[tier_id] for tier_id in ordered_ids]

    async def resync_members(self) -> int:
        """Re-resolve every member's tier against the active hierarchy; returns the rows moved.

        Runs inside the caller's transaction. Members below the lowest active
        threshold lose their tier.
        """

        ladder = sorted(await self.list_active(), key=lambda tier: (tier.min_points, tier.tier_level))
        now = datetime.now(timezone.utc)
        moved = 0

        untiered = update(UserPointsBalance).where(UserPointsBalance.current_tier_id.is_not(None))
        if ladder:
            untiered = untiered.where(UserPointsBalance.available_points < ladder[0].min_points)
        result = await self._db.execute(
            untiered.values(current_tier_id=None, updated_at=now).execution_options(synchronize_session=False)
        )
        moved += result.rowcount

        for tier, above in zip(ladder, [*ladder[1:], None]):
            stmt = update(UserPointsBalance).where(
                UserPointsBalance.available_points >= tier.min_points,
                or_(UserPointsBalance.current_tier_id.is_(None), UserPointsBalance.current_tier_id != tier.id),
            )
            if above is not None:
                stmt = stmt.where(UserPointsBalance.available_points < above.min_points)
            result = await self._db.execute(
                stmt.values(current_tier_id=tier.id, updated_at=now).execution_options(synchronize_session=False)
            )
            moved += result.rowcount

        if moved:
            logger.info("Re-resolved member tiers", members=moved, active_tiers=len(ladder))
        return moved

    async def _commit_unique(self, message: str) -> None:
        try:
            await self._db.flush()
            await self.resync_members()
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicateEntity(message) from exc


def _view(tier: Tier) -> _TierView:
    return _TierView(tier.id, tier.tier_level, tier.min_points, tier.active)


class BenefitService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create(self, *, name: str, description: str | None = None, active: bool = True) -> Benefit:
        if not name or not name.strip():
            raise InvalidRuleConfiguration("Benefit name cannot be empty")
        benefit = Benefit(name=name, description=description, active=active)
        self._db.add(benefit)
        await self._db.commit()
        logger.info("Created benefit", benefit_id=str(benefit.id), name=name)
        return benefit

    async def get(self, benefit_id: UUID) -> Benefit:
        return await get_or_raise(self._db, Benefit, benefit_id, "Benefit")

    async def list_all(self) -> list[Benefit]:
        result = await self._db.execute(select(Benefit).order_by(Benefit.name.asc()))
        return list(result.scalars().all())

    async def list_active(self) -> list[Benefit]:
        result = await self._db.execute(select(Benefit).where(Benefit.active.is_(True)).order_by(Benefit.name.asc()))
        return list(result.scalars().all())

    async def update(self, benefit_id: UUID, **changes: Any) -> Benefit:
        benefit = await self.get(benefit_id)
        applied = apply_changes(benefit, changes, _BENEFIT_FIELDS)
        await self._db.commit()
        logger.info("Updated benefit", benefit_id=str(benefit_id), fields=sorted(applied))
        return benefit

    async def activate(self, benefit_id: UUID) -> Benefit:
        return await self.update(benefit_id, active=True)

    async def deactivate(self, benefit_id: UUID) -> Benefit:
        return await self.update(benefit_id, active=False)

    async def delete(self, benefit_id: UUID) -> None:
        benefit = await self.get(benefit_id)
        await self._db.execute(delete(TierBenefit).where(TierBenefit.benefit_id == benefit_id))
        await self._db.delete(benefit)
        await self._db.commit()
        logger.info("Deleted benefit", benefit_id=str(benefit_id))


class TierBenefitService:
    """Links benefits to tiers; a (tier, benefit) pair exists at most once."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def link(self, tier_id: UUID, benefit_id: UUID, *, active: bool = True) -> TierBenefit:
        await TierService(self._db).get(tier_id)
        await get_or_raise(self._db, Benefit, benefit_id, "Benefit")
        existing = await self._db.execute(
            select(TierBenefit.id).where(TierBenefit.tier_id == tier_id, TierBenefit.benefit_id == benefit_id)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateEntity(f"Benefit {benefit_id} is already linked to tier {tier_id}")

        link = TierBenefit(tier_id=tier_id, benefit_id=benefit_id, active=active)
        self._db.add(link)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicateEntity(f"Benefit {benefit_id} is already linked to tier {tier_id}") from exc
        logger.info("Linked benefit to tier", tier_id=str(tier_id), benefit_id=str(benefit_id))
        return link

    async def get(self, link_id: UUID) -> TierBenefit:
        return await get_or_raise(self._db, TierBenefit, link_id, "Tier benefit")

    async def unlink(self, link_id: UUID) -> None:
        link = await self.get(link_id)
        await self._db.delete(link)
        await self._db.commit()
        logger.info("Unlinked tier benefit", link_id=str(link_id))

    async def activate(self, link_id: UUID) -> TierBenefit:
        return await self._set_active(link_id, True)

    async def deactivate(self, link_id: UUID) -> TierBenefit:
        return await self._set_active(link_id, False)

    async def list_for_tier(self, tier_id: UUID, *, active_only: bool = False) -> list[TierBenefit]:
        stmt = select(TierBenefit).where(TierBenefit.tier_id == tier_id)
        if active_only:
            stmt = stmt.where(TierBenefit.active.is_(True))
        result = await self._db.execute(stmt.order_by(TierBenefit.created_at.asc()))
        return list(result.scalars().all())

    async def list_for_benefit(self, benefit_id: UUID) -> list[TierBenefit]:
        result = await self._db.execute(select(TierBenefit).where(TierBenefit.benefit_id == benefit_id))
        return list(result.scalars().all())

    async def benefits_for_user_tier(self, user_id: UUID) -> list[Benefit]:
        """Active benefits of the user's current tier; empty when the user has no tier."""

        tier_id = (
            await self._db.execute(
                select(UserPointsBalance.current_tier_id).where(UserPointsBalance.user_id == user_id)
            )
        ).scalar_one_or_none()
        if tier_id is None:
            return []
        stmt = (
            select(Benefit)
            .join(TierBenefit, TierBenefit.benefit_id == Benefit.id)
            .join(Tier, Tier.id == TierBenefit.tier_id)
            .where(
                TierBenefit.tier_id == tier_id,
                TierBenefit.active.is_(True),
                Benefit.active.is_(True),
                Tier.active.is_(True),
            )
            .order_by(Benefit.name.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _set_active(self, link_id: UUID, active: bool) -> TierBenefit:
        link = await self.get(link_id)
        link.active = active
        await self._db.commit()
        return link


__all__ = [
    "BenefitService",
    "TierBenefitService",
    "TierService",
    "resolve_tier",
    "validate_hierarchy",
]
