"""Referral reward configs, their slots and the slot allocator."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models import ReferralRewardConfig, ReferralSlotAllocation, ReferralSlotReward
from points_ledger.observability.ledger import LedgerObservabilityStore, get_ledger_store

from .common import apply_changes, get_or_raise
from .errors import DuplicateSlotNumber, InvalidRuleConfiguration, NoSlotsAvailable, ReferralNotEligible
from .expiry import as_utc
from .ledger import BalanceLedger, KeyedLocks
from .notifications import LedgerEvent, LedgerEventKind, NotificationService

_CONFIG_FIELDS = (
    "name",
    "enabled",
    "start_date",
    "end_date",
    "signup_points",
    "first_purchase_points",
    "min_purchase_amount",
    "one_reward_per_referred_user",
)
_SLOT_FIELDS = ("slot_number", "title", "description", "reward_amount", "quantity", "active")

config_locks = KeyedLocks()


class ReferralConfigService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    @staticmethod
    def validate_amounts(config: ReferralRewardConfig) -> None:
        if (config.signup_points or 0) < 0:
            raise InvalidRuleConfiguration("Signup points cannot be negative")
        if (config.first_purchase_points or 0) < 0:
            raise InvalidRuleConfiguration("First purchase points cannot be negative")
        if Decimal(config.min_purchase_amount or 0) < 0:
            raise InvalidRuleConfiguration("Minimum purchase amount cannot be negative")
        if config.start_date and config.end_date and as_utc(config.end_date) <= as_utc(config.start_date):
            raise InvalidRuleConfiguration("Referral config end date must be after its start date")

    @staticmethod
    def is_open(config: ReferralRewardConfig, at: datetime | None = None) -> bool:
        """Enabled and inside its optional start/end window."""

        moment = as_utc(at or datetime.now(timezone.utc))
        if not config.enabled:
            return False
        if config.start_date and as_utc(config.start_date) > moment:
            return False
        if config.end_date and as_utc(config.end_date) < moment:
            return False
        return True

    async def create(
        self,
        *,
        name: str = "default",
        enabled: bool = True,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        signup_points: int = 0,
        first_purchase_points: int = 0,
        min_purchase_amount: Decimal | int = 0,
        one_reward_per_referred_user: bool = True,
    ) -> ReferralRewardConfig:
        config = ReferralRewardConfig(
            name=name,
            enabled=enabled,
            start_date=start_date,
            end_date=end_date,
            signup_points=signup_points,
            first_purchase_points=first_purchase_points,
            min_purchase_amount=Decimal(str(min_purchase_amount)),
            one_reward_per_referred_user=one_reward_per_referred_user,
        )
        self.validate_amounts(config)
        self._db.add(config)
        await self._db.commit()
        logger.info("Created referral reward config", config_id=str(config.id), name=name)
        return config

    async def get(self, config_id: UUID) -> ReferralRewardConfig:
        return await get_or_raise(self._db, ReferralRewardConfig, config_id, "Referral reward config")

    async def list_all(self) -> list[ReferralRewardConfig]:
        result = await self._db.execute(select(ReferralRewardConfig).order_by(ReferralRewardConfig.created_at.asc()))
        return list(result.scalars().all())

    async def list_enabled(self) -> list[ReferralRewardConfig]:
        stmt = select(ReferralRewardConfig).where(ReferralRewardConfig.enabled.is_(True))
        result = await self._db.execute(stmt.order_by(ReferralRewardConfig.created_at.asc()))
        return list(result.scalars().all())

    async def update(self, config_id: UUID, **changes: Any) -> ReferralRewardConfig:
        config = await self.get(config_id)
        if "min_purchase_amount" in changes:
            changes["min_purchase_amount"] = Decimal(str(changes["min_purchase_amount"]))
        applied = apply_changes(config, changes, _CONFIG_FIELDS)
        try:
            self.validate_amounts(config)
        except InvalidRuleConfiguration:
            await self._db.rollback()
            raise
        await self._db.commit()
        logger.info("Updated referral reward config", config_id=str(config_id), fields=sorted(applied))
        return config

    async def delete(self, config_id: UUID) -> None:
        config = await self.get(config_id)
        allocations = await self._db.execute(
            select(func.count(ReferralSlotAllocation.id)).where(ReferralSlotAllocation.reward_config_id == config_id)
        )
        if allocations.scalar_one():
            raise InvalidRuleConfiguration("Referral config has granted rewards; disable it instead of deleting")
        await self._db.execute(delete(ReferralSlotReward).where(ReferralSlotReward.reward_config_id == config_id))
        await self._db.delete(config)
        await self._db.commit()
        logger.info("Deleted referral reward config", config_id=str(config_id))

    async def enable(self, config_id: UUID) -> ReferralRewardConfig:
        return await self.update(config_id, enabled=True)

    async def disable(self, config_id: UUID) -> ReferralRewardConfig:
        return await self.update(config_id, enabled=False)

    async def update_min_purchase_amount(self, config_id: UUID, amount: Decimal | int) -> ReferralRewardConfig:
        return await self.update(config_id, min_purchase_amount=amount)

    async def toggle_one_reward_per_user(self, config_id: UUID) -> ReferralRewardConfig:
        config = await self.get(config_id)
        return await self.update(config_id, one_reward_per_referred_user=not config.one_reward_per_referred_user)


class ReferralSlotService:
    """Slot CRUD; slot numbers are unique within their config."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def validate_slot_number(self, slot_number: int, config_id: UUID, exclude_id: UUID | None = None) -> None:
        if slot_number is None or slot_number < 1:
            raise InvalidRuleConfiguration("Slot number must be at least 1")
        stmt = select(ReferralSlotReward.id).where(
            ReferralSlotReward.reward_config_id == config_id,
            ReferralSlotReward.slot_number == slot_number,
        )
        if exclude_id is not None:
            stmt = stmt.where(ReferralSlotReward.id != exclude_id)
        result = await self._db.execute(stmt)
        if result.first() is not None:
            raise DuplicateSlotNumber(slot_number, config_id)

    async def create(
        self,
        config_id: UUID,
        *,
        slot_number: int,
        title: str,
        reward_amount: int = 0,
        quantity: int = 0,
        description: str | None = None,
        active: bool = True,
    ) -> ReferralSlotReward:
        await ReferralConfigService(self._db).get(config_id)
        await self.validate_slot_number(slot_number, config_id)
        _check_slot_values(reward_amount, quantity)
        slot = ReferralSlotReward(
            reward_config_id=config_id,
            slot_number=slot_number,
            title=title,
            description=description,
            reward_amount=reward_amount,
            quantity=quantity,
            active=active,
        )
        self._db.add(slot)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicateSlotNumber(slot_number, config_id) from exc
        logger.info("Created referral slot", config_id=str(config_id), slot_number=slot_number, quantity=quantity)
        return slot

    async def get(self, slot_id: UUID) -> ReferralSlotReward:
        return await get_or_raise(self._db, ReferralSlotReward, slot_id, "Referral slot")

    async def list_for_config(self, config_id: UUID) -> list[ReferralSlotReward]:
        stmt = (
            select(ReferralSlotReward)
            .where(ReferralSlotReward.reward_config_id == config_id)
            .order_by(ReferralSlotReward.slot_number.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_active_for_config(self, config_id: UUID) -> list[ReferralSlotReward]:
        return [slot for slot in await self.list_for_config(config_id) if slot.active]

    async def find_by_slot_number(self, config_id: UUID, slot_number: int) -> ReferralSlotReward | None:
        result = await self._db.execute(
            select(ReferralSlotReward).where(
                ReferralSlotReward.reward_config_id == config_id,
                ReferralSlotReward.slot_number == slot_number,
            )
        )
        return result.scalar_one_or_none()

    async def update(self, slot_id: UUID, **changes: Any) -> ReferralSlotReward:
        slot = await self.get(slot_id)
        if "slot_number" in changes:
            await self.validate_slot_number(changes["slot_number"], slot.reward_config_id, exclude_id=slot.id)
        _check_slot_values(changes.get("reward_amount", slot.reward_amount), changes.get("quantity", slot.quantity))
        applied = apply_changes(slot, changes, _SLOT_FIELDS)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicateSlotNumber(slot.slot_number, slot.reward_config_id) from exc
        logger.info("Updated referral slot", slot_id=str(slot_id), fields=sorted(applied))
        return slot

    async def delete(self, slot_id: UUID) -> None:
        slot = await self.get(slot_id)
        await self._db.delete(slot)
        await self._db.commit()
        logger.info("Deleted referral slot", slot_id=str(slot_id))

    async def activate(self, slot_id: UUID) -> ReferralSlotReward:
        return await self.update(slot_id, active=True)

    async def deactivate(self, slot_id: UUID) -> ReferralSlotReward:
        return await self.update(slot_id, active=False)

    async def update_quantity(self, slot_id: UUID, quantity: int) -> ReferralSlotReward:
        return await self.update(slot_id, quantity=quantity)


def _check_slot_values(reward_amount: int, quantity: int) -> None:
    if reward_amount is None or reward_amount < 0:
        raise InvalidRuleConfiguration("Slot reward amount cannot be negative")
    if quantity is None or quantity < 0:
        raise InvalidRuleConfiguration("Slot quantity cannot be negative")


class ReferralSlotAllocator:
    """Grants quantity-limited referral slots and credits the referrer.

    A slot is taken with a single ``UPDATE ... SET quantity = quantity - 1
    WHERE quantity > 0``. Losing that race moves on to the next slot; running
    out of slots raises ``NoSlotsAvailable`` before the ledger is touched. The
    decrement, the allocation record and the ledger credit commit together.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: BalanceLedger | None = None,
        notifications: NotificationService | None = None,
        observability: LedgerObservabilityStore | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._db = db_session
        self._notifications = notifications or NotificationService()
        self._ledger = ledger or BalanceLedger(db_session, notifications=self._notifications)
        self._observability = observability or get_ledger_store()
        self._locks = locks or config_locks
        self._configs = ReferralConfigService(db_session)
        self._slots = ReferralSlotService(db_session)

    async def find_next_available_slot(self, config_id: UUID) -> ReferralSlotReward:
        """Lowest-numbered active slot with quantity left."""

        for slot in await self._slots.list_active_for_config(config_id):
            if slot.quantity > 0:
                return slot
        raise NoSlotsAvailable(config_id)

    async def allocate(
        self,
        config_id: UUID,
        referrer_user_id: UUID,
        referred_user_id: UUID,
        *,
        purchase_amount: Decimal | None = None,
        at: datetime | None = None,
    ) -> ReferralSlotAllocation:
        async with self._locks(config_id):
            try:
                config = await self._configs.get(config_id)
                await self._check_eligibility(config, referrer_user_id, referred_user_id, purchase_amount, at)
                slot = await self._take_slot(config_id)
                allocation = ReferralSlotAllocation(
                    reward_config_id=config_id,
                    slot_id=slot.id,
                    slot_number=slot.slot_number,
                    referrer_user_id=referrer_user_id,
                    referred_user_id=referred_user_id,
                    points_awarded=0,
                )
                self._db.add(allocation)
                await self._db.flush()
                if slot.reward_amount > 0:
                    _, entry = await self._ledger.earn(
                        referrer_user_id,
                        slot.reward_amount,
                        source_type="referral",
                        source_id=str(allocation.id),
                        description=f"Referral slot {slot.slot_number}: {slot.title}",
                        metadata={"referred_user_id": str(referred_user_id), "slot_number": slot.slot_number},
                        commit=False,
                    )
                    allocation.points_awarded = slot.reward_amount
                    allocation.history_entry_id = entry.id
                await self._db.commit()
            except Exception as exc:
                await self._db.rollback()
                self._ledger.discard_events()
                self._observability.record_failure("allocate_slot", type(exc).__name__)
                if isinstance(exc, NoSlotsAvailable):
                    self._observability.record_slot_event("exhausted")
                logger.info(
                    "Referral slot not granted",
                    config_id=str(config_id),
                    referrer_user_id=str(referrer_user_id),
                    error=type(exc).__name__,
                )
                raise

        self._observability.record_slot_event("granted")
        self._ledger.publish_events()
        self._notifications.publish(
            LedgerEvent(
                LedgerEventKind.REFERRAL_REWARDED,
                referrer_user_id,
                {"points": allocation.points_awarded, "slot_number": allocation.slot_number},
            )
        )
        logger.info(
            "Referral slot granted",
            config_id=str(config_id),
            slot_number=allocation.slot_number,
            referrer_user_id=str(referrer_user_id),
            points=allocation.points_awarded,
        )
        return allocation

    async def list_allocations(self, config_id: UUID) -> list[ReferralSlotAllocation]:
        stmt = (
            select(ReferralSlotAllocation)
            .where(ReferralSlotAllocation.reward_config_id == config_id)
            .order_by(ReferralSlotAllocation.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _take_slot(self, config_id: UUID) -> ReferralSlotReward:
        candidates = [slot for slot in await self._slots.list_active_for_config(config_id) if slot.quantity > 0]
        for slot in candidates:
            result = await self._db.execute(
                update(ReferralSlotReward)
                .where(
                    ReferralSlotReward.id == slot.id,
                    ReferralSlotReward.active.is_(True),
                    ReferralSlotReward.quantity > 0,
                )
                .values(quantity=ReferralSlotReward.quantity - 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self._db.refresh(slot)
                return slot
            self._observability.record_slot_event("retried")
            logger.debug("Lost referral slot race", config_id=str(config_id), slot_number=slot.slot_number)
        raise NoSlotsAvailable(config_id)

    async def _check_eligibility(
        self,
        config: ReferralRewardConfig,
        referrer_user_id: UUID,
        referred_user_id: UUID,
        purchase_amount: Decimal | None,
        at: datetime | None,
    ) -> None:
        if referrer_user_id == referred_user_id:
            raise ReferralNotEligible("Users cannot refer themselves")
        if not self._configs.is_open(config, at):
            raise ReferralNotEligible(f"Referral config {config.id} is not open")
        minimum = Decimal(config.min_purchase_amount or 0)
        if minimum > 0 and (purchase_amount is None or Decimal(str(purchase_amount)) < minimum):
            raise ReferralNotEligible(f"Purchase amount below the referral minimum of {minimum}")
        if config.one_reward_per_referred_user:
            existing = await self._db.execute(
                select(ReferralSlotAllocation.id).where(
                    ReferralSlotAllocation.reward_config_id == config.id,
                    ReferralSlotAllocation.referred_user_id == referred_user_id,
                )
            )
            if existing.first() is not None:
                raise ReferralNotEligible(f"Referred user {referred_user_id} was already rewarded")


__all__ = [
    "ReferralConfigService",
    "ReferralSlotAllocator",
    "ReferralSlotService",
    "config_locks",
]
