import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from points_ledger.models import PointsHistory, PointsTransactionType, ReferralSlotAllocation
from points_ledger.services.errors import InsufficientAvailableBalance, InvalidAmount, NoSlotsAvailable
from points_ledger.services.ledger import BalanceLedger, KeyedLocks, ReplayedBalance
from points_ledger.services.referrals import ReferralConfigService, ReferralSlotAllocator, ReferralSlotService


async def _fund(session_factory, user_id, points: int) -> None:
    async with session_factory() as session:
        ledger = BalanceLedger(session)
        await ledger.increment_pending_points(user_id, points)
        await ledger.confirm_pending_points(user_id, points)


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(file_session_factory) -> None:
    user_id = uuid4()
    await _fund(file_session_factory, user_id, 100)

    async def redeem(index: int) -> bool:
        async with file_session_factory() as session:
            try:
                await BalanceLedger(session).deduct_available_points(user_id, 10, source_id=f"redeem-{index}")
            except InsufficientAvailableBalance:
                return False
            return True

    results = await asyncio.gather(*(redeem(index) for index in range(20)))

    assert results.count(True) == 10
    async with file_session_factory() as session:
        ledger = BalanceLedger(session)
        balance = await ledger.get_balance(user_id)
        assert balance.available_points == 0
        assert balance.lifetime_redeemed == 100
        assert await ledger.replay(user_id) == ReplayedBalance.of(balance)
        redemptions = await ledger.list_history(user_id, transaction_type=PointsTransactionType.REDEEM)
        assert len(redemptions) == 10


@pytest.mark.asyncio
async def test_guarded_update_holds_without_shared_locks(file_session_factory) -> None:
    """Writers in separate processes do not share asyncio locks; the store still serializes them."""

    user_id = uuid4()
    await _fund(file_session_factory, user_id, 50)

    async def redeem() -> bool:
        async with file_session_factory() as session:
            try:
                await BalanceLedger(session, locks=KeyedLocks()).deduct_available_points(user_id, 10)
            except InsufficientAvailableBalance:
                return False
            return True

    results = await asyncio.gather(*(redeem() for _ in range(8)))

    assert results.count(True) == 5
    async with file_session_factory() as session:
        balance = await BalanceLedger(session).get_balance(user_id)
        assert balance.available_points == 0
        sequences = (
            await session.execute(
                select(PointsHistory.sequence).where(PointsHistory.user_id == user_id).order_by(PointsHistory.sequence)
            )
        ).scalars().all()
        assert len(sequences) == len(set(sequences)) == 7


@pytest.mark.asyncio
async def test_concurrent_reversals_of_one_entry_apply_once(file_session_factory) -> None:
    user_id = uuid4()
    async with file_session_factory() as session:
        ledger = BalanceLedger(session)
        _, entry = await ledger.earn(user_id, 10)
        entry_id = entry.id
        await ledger.earn(user_id, 40)

    async def reverse() -> bool:
        async with file_session_factory() as session:
            ledger = BalanceLedger(session, locks=KeyedLocks())
            try:
                await ledger.deduct_pending_points(user_id, 10, earn_entry_id=entry_id)
            except InvalidAmount:
                return False
            return True

    results = await asyncio.gather(*(reverse() for _ in range(4)))

    assert results.count(True) == 1
    async with file_session_factory() as session:
        ledger = BalanceLedger(session)
        balance = await ledger.get_balance(user_id)
        assert (balance.pending_points, balance.lifetime_earned) == (40, 40)
        assert (await session.get(PointsHistory, entry_id)).reversed_points == 10
        assert await ledger.replay(user_id) == ReplayedBalance.of(balance)


@pytest.mark.asyncio
async def test_concurrent_mixed_operations_keep_counters_consistent(file_session_factory) -> None:
    user_id = uuid4()
    await _fund(file_session_factory, user_id, 30)

    async def earn_and_confirm() -> None:
        async with file_session_factory() as session:
            ledger = BalanceLedger(session)
            await ledger.increment_pending_points(user_id, 5)
            await ledger.confirm_pending_points(user_id, 5)

    async def redeem() -> None:
        async with file_session_factory() as session:
            try:
                await BalanceLedger(session).deduct_available_points(user_id, 7)
            except InsufficientAvailableBalance:
                pass

    tasks = [earn_and_confirm() for _ in range(10)] + [redeem() for _ in range(10)]
    await asyncio.gather(*tasks)

    async with file_session_factory() as session:
        ledger = BalanceLedger(session)
        balance = await ledger.get_balance(user_id)
        assert balance.pending_points == 0
        assert balance.lifetime_earned == 80
        assert balance.available_points == 80 - balance.lifetime_redeemed
        assert balance.available_points >= 0
        assert await ledger.replay(user_id) == ReplayedBalance.of(balance)


async def _referral_config(session_factory, quantities: list[int]):
    async with session_factory() as session:
        config = await ReferralConfigService(session).create(name="launch")
        slots = ReferralSlotService(session)
        for number, quantity in enumerate(quantities, start=1):
            await slots.create(
                config.id, slot_number=number, title=f"Slot {number}", reward_amount=25, quantity=quantity
            )
        return config.id


@pytest.mark.asyncio
@pytest.mark.parametrize("shared_locks", [True, False])
async def test_concurrent_slot_allocation_respects_quantity(file_session_factory, shared_locks) -> None:
    config_id = await _referral_config(file_session_factory, [2, 1])

    async def allocate() -> bool:
        async with file_session_factory() as session:
            locks = None if shared_locks else KeyedLocks()
            allocator = ReferralSlotAllocator(session, locks=locks)
            try:
                await allocator.allocate(config_id, uuid4(), uuid4())
            except NoSlotsAvailable:
                return False
            return True

    results = await asyncio.gather(*(allocate() for _ in range(8)))

    assert results.count(True) == 3
    async with file_session_factory() as session:
        slots = await ReferralSlotService(session).list_for_config(config_id)
        assert [slot.quantity for slot in slots] == [0, 0]
        granted = (
            await session.execute(
                select(ReferralSlotAllocation.slot_number, func.count())
                .where(ReferralSlotAllocation.reward_config_id == config_id)
                .group_by(ReferralSlotAllocation.slot_number)
                .order_by(ReferralSlotAllocation.slot_number)
            )
        ).all()
        assert [tuple(row) for row in granted] == [(1, 2), (2, 1)]
