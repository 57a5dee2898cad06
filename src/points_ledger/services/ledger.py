"""Balance ledger: the only writer of per-user point balances.

Every mutation runs under a per-user ``asyncio.Lock`` and applies its counter
change as one guarded ``UPDATE ... WHERE counter >= :points`` statement, so a
competing writer in another process cannot drive a counter negative either.
A guarded update that matches no row means the precondition failed; the
transaction is rolled back and a typed error raised. Each mutation appends one
``PointsHistory`` entry whose ``sequence`` is the balance version after the
write, which makes the history replayable in order.
"""

from __future__ import annotations

import asyncio
from collections.abc import Hashable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, TypeVar
from uuid import UUID
from weakref import WeakKeyDictionary

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models import (
    EarningRule,
    ExpiryRule,
    PointsConfig,
    PointsExpirationStatus,
    PointsHistory,
    PointsTransactionType,
    Tier,
    UserPointsBalance,
)
from points_ledger.observability.ledger import LedgerObservabilityStore, get_ledger_store

from .abuse_flags import AbuseFlagWorkflow
from .errors import (
    InsufficientAvailableBalance,
    InsufficientPendingBalance,
    InvalidAmount,
    InvalidRuleConfiguration,
    NotFound,
    ProgramDisabled,
)
from .expiry import ExpiryScheduler
from .notifications import LedgerEvent, LedgerEventKind, NotificationService
from .rules import EarningRuleService
from .tiers import TierService, resolve_tier

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyedLocks:
    """One ``asyncio.Lock`` per key and event loop."""

    def __init__(self) -> None:
        self._by_loop: WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Hashable, asyncio.Lock]] = (
            WeakKeyDictionary()
        )

    def __call__(self, key: Hashable) -> asyncio.Lock:
        locks = self._by_loop.setdefault(asyncio.get_running_loop(), {})
        lock = locks.get(key)
        if lock is None:
            lock = locks[key] = asyncio.Lock()
        return lock


user_locks = KeyedLocks()


@dataclass(frozen=True)
class ReplayedBalance:
    available_points: int = 0
    pending_points: int = 0
    lifetime_earned: int = 0
    lifetime_redeemed: int = 0

    @classmethod
    def of(cls, balance: UserPointsBalance | None) -> "ReplayedBalance":
        if balance is None:
            return cls()
        return cls(
            available_points=balance.available_points,
            pending_points=balance.pending_points,
            lifetime_earned=balance.lifetime_earned,
            lifetime_redeemed=balance.lifetime_redeemed,
        )


def replay_history(entries: Iterable[PointsHistory]) -> ReplayedBalance:
    """Rebuild a balance from its history, applied in sequence order."""

    available = pending = earned = redeemed = 0
    for entry in sorted(entries, key=lambda item: item.sequence):
        kind = PointsTransactionType(entry.transaction_type)
        points = int(entry.points)
        if kind is PointsTransactionType.EARN:
            pending += points
            earned += points
        elif kind is PointsTransactionType.CONFIRM:
            pending -= points
            available += points
        elif kind is PointsTransactionType.ADJUST:
            pending -= points
            earned += int(entry.lifetime_earned_delta or 0)
        elif kind is PointsTransactionType.REDEEM:
            available -= points
            redeemed += points
        elif kind is PointsTransactionType.EXPIRE:
            available -= points
        else:
            raise ValueError(f"Unhandled transaction type: {kind}")
    return ReplayedBalance(
        available_points=available,
        pending_points=pending,
        lifetime_earned=earned,
        lifetime_redeemed=redeemed,
    )


def _open_points() -> Any:
    return PointsHistory.points - PointsHistory.reversed_points - PointsHistory.confirmed_points


def _require_positive(points: Any) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise InvalidAmount(points)
    return points


class BalanceLedger:
    """Atomic mutation of a user's available, pending and lifetime counters."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        notifications: NotificationService | None = None,
        abuse_flags: AbuseFlagWorkflow | None = None,
        observability: LedgerObservabilityStore | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._db = db_session
        self._notifications = notifications or NotificationService()
        self._abuse_flags = abuse_flags or AbuseFlagWorkflow(db_session)
        self._observability = observability or get_ledger_store()
        self._locks = locks or user_locks
        self._expiry = ExpiryScheduler(db_session)
        self._tiers = TierService(db_session)
        self._events: list[LedgerEvent] = []

    async def get_balance(self, user_id: UUID) -> UserPointsBalance | None:
        return await self._load_balance(user_id)

    async def increment_pending_points(
        self,
        user_id: UUID,
        points: int,
        *,
        source_type: str | None = None,
        source_id: str | None = None,
        earning_rule: EarningRule | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        admin_user_id: UUID | None = None,
        screen_abuse: bool = True,
        commit: bool = True,
    ) -> UserPointsBalance:
        balance, _ = await self.earn(
            user_id,
            points,
            source_type=source_type,
            source_id=source_id,
            earning_rule=earning_rule,
            description=description,
            metadata=metadata,
            admin_user_id=admin_user_id,
            screen_abuse=screen_abuse,
            commit=commit,
        )
        return balance

    async def earn(
        self,
        user_id: UUID,
        points: int,
        *,
        source_type: str | None = None,
        source_id: str | None = None,
        earning_rule: EarningRule | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        admin_user_id: UUID | None = None,
        screen_abuse: bool = True,
        commit: bool = True,
    ) -> tuple[UserPointsBalance, PointsHistory]:
        """Credit pending points and return the balance with its new earn entry."""

        points = _require_positive(points)

        async def _body() -> tuple[UserPointsBalance, PointsHistory]:
            await self._check_program(earning=True)
            if screen_abuse:
                await self._abuse_flags.assert_can_earn(user_id)
            await self._ensure_balance(user_id, commit=commit)
            await self._guarded_update(
                user_id,
                pending_points=UserPointsBalance.pending_points + points,
                lifetime_earned=UserPointsBalance.lifetime_earned + points,
            )
            balance = await self._reload(user_id)
            entry = await self._append(
                balance,
                PointsTransactionType.EARN,
                points,
                lifetime_earned_delta=points,
                source_type=source_type,
                source_id=source_id,
                earning_rule_id=earning_rule.id if earning_rule else None,
                description=description,
                metadata=metadata,
                admin_user_id=admin_user_id,
            )
            if earning_rule is not None and earning_rule.expiry_rule_id is not None:
                await self._schedule_expiry(entry, earning_rule.expiry_rule_id)
            return balance, entry

        return await self._mutate("increment_pending", user_id, commit, _body)

    async def confirm_pending_points(
        self,
        user_id: UUID,
        points: int,
        *,
        earn_entry_id: UUID | None = None,
        source_id: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> UserPointsBalance:
        """Move pending points to available.

        The confirmation is attributed to ``earn_entry_id`` when given, otherwise
        to the user's oldest earn batches that still hold unconfirmed points.
        Only attributed points count as confirmed on the batch's expiry schedule.
        """

        points = _require_positive(points)

        async def _body() -> UserPointsBalance:
            if earn_entry_id is not None:
                await self._settle_entry(user_id, earn_entry_id, PointsHistory.confirmed_points, points)
            moved = await self._guarded_update(
                user_id,
                UserPointsBalance.pending_points >= points,
                pending_points=UserPointsBalance.pending_points - points,
                available_points=UserPointsBalance.available_points + points,
            )
            if not moved:
                raise InsufficientPendingBalance(user_id, points, await self._current(user_id, "pending_points"))
            if earn_entry_id is not None:
                await self._expiry.mark_confirmed(earn_entry_id, points)
            else:
                for entry_id, take in await self._settle_oldest(user_id, PointsHistory.confirmed_points, points):
                    await self._expiry.mark_confirmed(entry_id, take)
            balance = await self._reload(user_id)
            await self._append(
                balance,
                PointsTransactionType.CONFIRM,
                points,
                related_entry_id=earn_entry_id,
                source_id=source_id,
                description=description,
            )
            await self._sync_tier(balance)
            return balance

        return await self._mutate("confirm_pending", user_id, commit, _body)

    async def deduct_pending_points(
        self,
        user_id: UUID,
        points: int,
        *,
        earn_entry_id: UUID | None = None,
        source_id: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> UserPointsBalance:
        """Reverse unconfirmed points.

        With ``earn_entry_id`` the reversal is attributed to that earn batch:
        lifetime earned drops by the reversed amount and the batch's expiry
        schedule shrinks. Without it the reversal is matched to the oldest
        pending batches and lifetime earned is left untouched.
        """

        points = _require_positive(points)

        async def _body() -> UserPointsBalance:
            if earn_entry_id is not None:
                await self._settle_entry(user_id, earn_entry_id, PointsHistory.reversed_points, points)

            guards = [UserPointsBalance.pending_points >= points]
            values: dict[str, Any] = {"pending_points": UserPointsBalance.pending_points - points}
            if earn_entry_id is not None:
                guards.append(UserPointsBalance.lifetime_earned >= points)
                values["lifetime_earned"] = UserPointsBalance.lifetime_earned - points
            if not await self._guarded_update(user_id, *guards, **values):
                raise InsufficientPendingBalance(user_id, points, await self._current(user_id, "pending_points"))

            balance = await self._reload(user_id)
            await self._append(
                balance,
                PointsTransactionType.ADJUST,
                points,
                lifetime_earned_delta=-points if earn_entry_id is not None else 0,
                related_entry_id=earn_entry_id,
                source_id=source_id,
                description=description or "Pending points reversed",
            )
            if earn_entry_id is not None:
                await self._expiry.shrink_for_reversal(earn_entry_id, points)
            else:
                for entry_id, take in await self._settle_oldest(user_id, PointsHistory.reversed_points, points):
                    await self._expiry.shrink_for_reversal(entry_id, take)
            return balance

        return await self._mutate("deduct_pending", user_id, commit, _body)

    async def deduct_available_points(
        self,
        user_id: UUID,
        points: int,
        *,
        source_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> UserPointsBalance:
        points = _require_positive(points)

        async def _body() -> UserPointsBalance:
            await self._check_program(redemption=True)
            redeemed = await self._guarded_update(
                user_id,
                UserPointsBalance.available_points >= points,
                available_points=UserPointsBalance.available_points - points,
                lifetime_redeemed=UserPointsBalance.lifetime_redeemed + points,
            )
            if not redeemed:
                raise InsufficientAvailableBalance(user_id, points, await self._current(user_id, "available_points"))
            balance = await self._reload(user_id)
            await self._append(
                balance,
                PointsTransactionType.REDEEM,
                points,
                source_id=source_id,
                description=description,
                metadata=metadata,
            )
            await self._expiry.consume(user_id, points)
            await self._sync_tier(balance)
            return balance

        return await self._mutate("deduct_available", user_id, commit, _body)

    async def update_current_tier(
        self,
        user_id: UUID,
        tier_id: UUID,
        *,
        admin_user_id: UUID | None = None,
        commit: bool = True,
    ) -> UserPointsBalance:
        """Administrative override of the user's tier."""

        async def _body() -> UserPointsBalance:
            tier = await self._tiers.require_active(tier_id)
            balance = await self._load_balance(user_id)
            if balance is None:
                raise NotFound("Points balance", user_id)
            previous_tier_id = balance.current_tier_id
            await self._guarded_update(user_id, current_tier_id=tier.id)
            balance = await self._reload(user_id)
            logger.info(
                "Tier overridden",
                user_id=str(user_id),
                tier_id=str(tier.id),
                admin_user_id=str(admin_user_id) if admin_user_id else None,
            )
            if previous_tier_id != tier.id:
                self._queue_tier_event(balance, tier)
            return balance

        return await self._mutate("update_tier", user_id, commit, _body)

    async def expire_points(
        self,
        expiration_id: UUID,
        *,
        commit: bool = True,
    ) -> int:
        """Expire what is left of one scheduled batch; returns the points removed.

        Only confirmed points of the batch can lapse, capped by the current
        available balance. A batch with unconfirmed points stays scheduled so
        those points lapse once they are confirmed. Rows that are no longer
        scheduled are skipped.
        """

        record = await self._expiry.get(expiration_id)
        if record is None:
            raise NotFound("Points expiration", expiration_id)
        user_id = record.user_id

        async def _body() -> int:
            await self._db.refresh(record)
            if record.status is not PointsExpirationStatus.SCHEDULED:
                return 0
            balance = await self._load_balance(user_id)
            expirable = record.expirable_points
            amount = min(expirable, balance.available_points if balance else 0)
            if amount > 0:
                expired = await self._guarded_update(
                    user_id,
                    UserPointsBalance.available_points >= amount,
                    available_points=UserPointsBalance.available_points - amount,
                )
                if not expired:
                    available = await self._current(user_id, "available_points")
                    raise InsufficientAvailableBalance(user_id, amount, available)
                balance = await self._reload(user_id)
                await self._append(
                    balance,
                    PointsTransactionType.EXPIRE,
                    amount,
                    related_entry_id=record.history_entry_id,
                    description="Points expired",
                    metadata={"expiration_id": str(record.id)},
                )
                await self._sync_tier(balance)
                self._events.append(
                    LedgerEvent(
                        LedgerEventKind.POINTS_EXPIRED,
                        user_id,
                        {"points": amount, "expired_at": record.expires_at.isoformat()},
                    )
                )
            if expirable > amount:
                logger.warning(
                    "Expiration exceeded available balance",
                    expiration_id=str(record.id),
                    user_id=str(user_id),
                    unexpired=expirable - amount,
                )
            record.consumed_points = int(record.consumed_points or 0) + amount
            awaiting = min(record.unconfirmed_points, balance.pending_points if balance else 0)
            if awaiting > 0:
                # lapses on the first sweep after confirmation
                logger.info(
                    "Deferred expiry of unconfirmed points",
                    expiration_id=str(record.id),
                    user_id=str(user_id),
                    unconfirmed=awaiting,
                )
            else:
                record.status = PointsExpirationStatus.EXPIRED
            await self._db.flush()
            return amount

        return await self._mutate("expire", user_id, commit, _body)

    async def earn_from_rule(
        self,
        user_id: UUID,
        rule_id: UUID,
        *,
        units: Decimal | int | None = None,
        source_id: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> UserPointsBalance:
        """Credit the points an enabled earning rule awards, scaled by the user's tier multiplier."""

        rule = await EarningRuleService(self._db).get(rule_id)
        if not rule.enabled:
            raise InvalidRuleConfiguration(f"Earning rule {rule.rule_name!r} is disabled")
        multiplier = await self._tier_multiplier(user_id)
        points = EarningRuleService.calculate_points(rule, units, multiplier=multiplier)
        if points <= 0:
            raise InvalidAmount(points, f"Earning rule {rule.rule_name!r} awards no points for this event")
        return await self.increment_pending_points(
            user_id,
            points,
            source_type=rule.source_type.value,
            source_id=source_id,
            earning_rule=rule,
            description=description or rule.rule_name,
            metadata={"units": str(units)} if units is not None else None,
            commit=commit,
        )

    async def list_history(
        self,
        user_id: UUID,
        *,
        transaction_type: PointsTransactionType | None = None,
        limit: int | None = None,
    ) -> list[PointsHistory]:
        stmt = select(PointsHistory).where(PointsHistory.user_id == user_id)
        if transaction_type is not None:
            stmt = stmt.where(PointsHistory.transaction_type == PointsTransactionType(transaction_type))
        stmt = stmt.order_by(PointsHistory.sequence.asc())
        if limit:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def replay(self, user_id: UUID) -> ReplayedBalance:
        return replay_history(await self.list_history(user_id))

    def publish_events(self) -> None:
        """Hand queued events to the notifier; used after an outer commit."""

        events, self._events = self._events, []
        for event in events:
            self._notifications.publish(event)

    def discard_events(self) -> None:
        self._events.clear()

    async def _mutate(
        self,
        operation: str,
        user_id: UUID,
        commit: bool,
        body: Callable[[], Awaitable[T]],
    ) -> T:
        async with self._locks(user_id):
            try:
                result = await body()
                if commit:
                    await self._db.commit()
            except Exception as exc:
                if commit:
                    await self._db.rollback()
                    self.discard_events()
                self._observability.record_failure(operation, type(exc).__name__)
                logger.info(
                    "Ledger operation rejected",
                    operation=operation,
                    user_id=str(user_id),
                    error=type(exc).__name__,
                )
                raise
        self._observability.record_operation(operation)
        logger.info("Ledger operation applied", operation=operation, user_id=str(user_id))
        if commit:
            self.publish_events()
        return result

    async def _load_balance(self, user_id: UUID) -> UserPointsBalance | None:
        stmt = (
            select(UserPointsBalance)
            .where(UserPointsBalance.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _reload(self, user_id: UUID) -> UserPointsBalance:
        balance = await self._load_balance(user_id)
        if balance is None:
            raise NotFound("Points balance", user_id)
        return balance

    async def _current(self, user_id: UUID, column: str) -> int:
        result = await self._db.execute(
            select(getattr(UserPointsBalance, column)).where(UserPointsBalance.user_id == user_id)
        )
        return int(result.scalar_one_or_none() or 0)

    async def _ensure_balance(self, user_id: UUID, *, commit: bool) -> None:
        exists = await self._db.execute(
            select(UserPointsBalance.user_id).where(UserPointsBalance.user_id == user_id)
        )
        if exists.scalar_one_or_none() is not None:
            return
        self._db.add(
            UserPointsBalance(
                user_id=user_id,
                available_points=0,
                pending_points=0,
                lifetime_earned=0,
                lifetime_redeemed=0,
                version=0,
            )
        )
        try:
            await self._db.flush()
            logger.info("Created points balance", user_id=str(user_id))
        except IntegrityError:
            # a composed transaction cannot be rolled back from here
            if not commit:
                raise
            await self._db.rollback()
            logger.warning("Detected race when creating points balance", user_id=str(user_id))

    async def _guarded_update(self, user_id: UUID, *guards: Any, **values: Any) -> bool:
        now = _utcnow()
        stmt = (
            update(UserPointsBalance)
            .where(UserPointsBalance.user_id == user_id, *guards)
            .values(
                version=UserPointsBalance.version + 1,
                last_transaction_at=now,
                updated_at=now,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def _append(
        self,
        balance: UserPointsBalance,
        transaction_type: PointsTransactionType,
        points: int,
        *,
        lifetime_earned_delta: int = 0,
        source_type: str | None = None,
        source_id: str | None = None,
        earning_rule_id: UUID | None = None,
        related_entry_id: UUID | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        admin_user_id: UUID | None = None,
    ) -> PointsHistory:
        entry = PointsHistory(
            user_id=balance.user_id,
            sequence=balance.version,
            transaction_type=transaction_type,
            points=points,
            lifetime_earned_delta=lifetime_earned_delta,
            available_after=balance.available_points,
            pending_after=balance.pending_points,
            source_type=source_type,
            source_id=source_id,
            earning_rule_id=earning_rule_id,
            related_entry_id=related_entry_id,
            reversed_points=0,
            confirmed_points=0,
            description=description,
            metadata_json=metadata or {},
            admin_adjusted=admin_user_id is not None,
            admin_user_id=admin_user_id,
            created_at=_utcnow(),
        )
        self._db.add(entry)
        await self._db.flush()
        return entry

    async def _load_earn_entry(self, user_id: UUID, entry_id: UUID) -> PointsHistory:
        entry = await self._db.get(PointsHistory, entry_id)
        if (
            entry is None
            or entry.user_id != user_id
            or PointsTransactionType(entry.transaction_type) is not PointsTransactionType.EARN
        ):
            raise NotFound("Earn entry", entry_id)
        return entry

    async def _settle(self, entry_id: UUID, column: Any, points: int) -> bool:
        """Move ``points`` of an earn entry's open remainder into ``column`` with one guarded statement."""

        stmt = (
            update(PointsHistory)
            .where(PointsHistory.id == entry_id, _open_points() >= points)
            .values({column.key: column + points})
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def _settle_entry(self, user_id: UUID, entry_id: UUID, column: Any, points: int) -> None:
        await self._load_earn_entry(user_id, entry_id)
        if not await self._settle(entry_id, column, points):
            entry = await self._db.get(PointsHistory, entry_id, populate_existing=True)
            remaining = int(entry.points) - int(entry.reversed_points) - int(entry.confirmed_points)
            raise InvalidAmount(
                points,
                f"Cannot settle {points} points; only {remaining} of entry {entry_id} are still pending",
            )

    async def _settle_oldest(self, user_id: UUID, column: Any, points: int) -> list[tuple[UUID, int]]:
        """Spread ``points`` over the user's oldest earn entries that still hold pending points."""

        open_points = _open_points()
        stmt = (
            select(PointsHistory.id, open_points)
            .where(
                PointsHistory.user_id == user_id,
                PointsHistory.transaction_type == PointsTransactionType.EARN,
                open_points > 0,
            )
            .order_by(PointsHistory.sequence.asc())
        )
        settled: list[tuple[UUID, int]] = []
        remaining = points
        for entry_id, available in (await self._db.execute(stmt)).all():
            if remaining <= 0:
                break
            take = min(int(available), remaining)
            if await self._settle(entry_id, column, take):
                settled.append((entry_id, take))
                remaining -= take
        if remaining > 0:
            logger.debug("Pending points not matched to an earn entry", user_id=str(user_id), points=remaining)
        return settled

    async def _schedule_expiry(self, entry: PointsHistory, expiry_rule_id: UUID) -> None:
        rule = await self._db.get(ExpiryRule, expiry_rule_id)
        if rule is None or not rule.active:
            logger.warning(
                "Skipping expiry scheduling for missing or inactive rule",
                entry_id=str(entry.id),
                expiry_rule_id=str(expiry_rule_id),
            )
            return
        await self._expiry.schedule(entry, rule, earned_at=entry.created_at)

    async def _check_program(self, *, earning: bool = False, redemption: bool = False) -> None:
        result = await self._db.execute(
            select(PointsConfig).where(PointsConfig.is_active.is_(True)).order_by(PointsConfig.version.desc())
        )
        config = result.scalars().first()
        if config is None:
            return
        if earning and not config.points_enabled:
            raise ProgramDisabled("The points program is disabled")
        if redemption and not config.redemption_enabled:
            raise ProgramDisabled("Points redemption is disabled")

    async def _tier_multiplier(self, user_id: UUID) -> Decimal:
        balance = await self._load_balance(user_id)
        if balance is None or balance.current_tier_id is None:
            return Decimal("1")
        tier = await self._db.get(Tier, balance.current_tier_id)
        if tier is None or not tier.active:
            return Decimal("1")
        return Decimal(tier.multiplier)

    async def _sync_tier(self, balance: UserPointsBalance) -> None:
        """Move the user to the tier their available points qualify for."""

        tier = resolve_tier(await self._tiers.list_active(), balance.available_points)
        new_tier_id = tier.id if tier else None
        if new_tier_id == balance.current_tier_id:
            return
        previous_tier_id = balance.current_tier_id
        balance.current_tier_id = new_tier_id
        await self._db.flush()
        logger.info(
            "Tier changed",
            user_id=str(balance.user_id),
            previous_tier_id=str(previous_tier_id) if previous_tier_id else None,
            tier_id=str(new_tier_id) if new_tier_id else None,
        )
        self._queue_tier_event(balance, tier)

    def _queue_tier_event(self, balance: UserPointsBalance, tier: Tier | None) -> None:
        self._events.append(
            LedgerEvent(
                LedgerEventKind.TIER_CHANGED,
                balance.user_id,
                {
                    "tier_id": str(tier.id) if tier else None,
                    "tier_name": tier.name if tier else None,
                    "available_points": balance.available_points,
                },
            )
        )


__all__ = [
    "BalanceLedger",
    "KeyedLocks",
    "ReplayedBalance",
    "replay_history",
    "user_locks",
]
