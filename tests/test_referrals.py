from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from points_ledger.models import AbuseFlagSeverity, AbuseFlagType, PointsHistory
from points_ledger.observability.ledger import get_ledger_store
from points_ledger.services.abuse_flags import AbuseFlagWorkflow
from points_ledger.services.errors import (
    CreditBlocked,
    DuplicateSlotNumber,
    InvalidRuleConfiguration,
    NoSlotsAvailable,
    NotFound,
    ReferralNotEligible,
)
from points_ledger.services.ledger import BalanceLedger
from points_ledger.services.referrals import ReferralConfigService, ReferralSlotAllocator, ReferralSlotService


async def _config_with_slots(session, slots, **config_kwargs):
    config = await ReferralConfigService(session).create(name="spring", **config_kwargs)
    service = ReferralSlotService(session)
    for number, (reward, quantity) in enumerate(slots, start=1):
        await service.create(
            config.id, slot_number=number, title=f"Tier {number} reward", reward_amount=reward, quantity=quantity
        )
    return config.id


@pytest.mark.asyncio
async def test_allocation_skips_empty_slots_and_credits_referrer(session_factory) -> None:
    referrer, second_referrer = uuid4(), uuid4()
    async with session_factory() as session:
        config_id = await _config_with_slots(session, [(50, 0), (30, 1)])
        allocator = ReferralSlotAllocator(session)

        next_slot = await allocator.find_next_available_slot(config_id)
        assert next_slot.slot_number == 2

        allocation = await allocator.allocate(config_id, referrer, uuid4())
        assert allocation.slot_number == 2
        assert allocation.points_awarded == 30

        entry = await session.get(PointsHistory, allocation.history_entry_id)
        assert entry.source_type == "referral"
        assert entry.source_id == str(allocation.id)

        balance = await BalanceLedger(session).get_balance(referrer)
        assert balance.pending_points == 30

        slots = await ReferralSlotService(session).list_for_config(config_id)
        assert [slot.quantity for slot in slots] == [0, 0]

        with pytest.raises(NoSlotsAvailable):
            await allocator.allocate(config_id, second_referrer, uuid4())
        with pytest.raises(NoSlotsAvailable):
            await allocator.find_next_available_slot(config_id)

        assert await BalanceLedger(session).get_balance(second_referrer) is None
        assert len(await allocator.list_allocations(config_id)) == 1

    slots_metrics = get_ledger_store().snapshot().slots
    assert slots_metrics["granted"] == 1
    assert slots_metrics["exhausted"] == 1


@pytest.mark.asyncio
async def test_zero_point_slot_records_benefit_without_ledger_entry(session_factory) -> None:
    referrer = uuid4()
    async with session_factory() as session:
        config_id = await _config_with_slots(session, [(0, 1)])
        allocation = await ReferralSlotAllocator(session).allocate(config_id, referrer, uuid4())

        assert allocation.points_awarded == 0
        assert allocation.history_entry_id is None
        assert await BalanceLedger(session).get_balance(referrer) is None


@pytest.mark.asyncio
async def test_blocked_referrer_keeps_slot_quantity(session_factory) -> None:
    referrer = uuid4()
    async with session_factory() as session:
        config_id = await _config_with_slots(session, [(40, 1)])
        await AbuseFlagWorkflow(session).create_flag(
            user_id=referrer,
            flag_type=AbuseFlagType.VELOCITY_ABUSE,
            severity=AbuseFlagSeverity.HIGH,
            details={"event_count": 12, "window_minutes": 5},
            detection_method="velocity-check",
        )
        allocator = ReferralSlotAllocator(session)

        with pytest.raises(CreditBlocked):
            await allocator.allocate(config_id, referrer, uuid4())

        slots = await ReferralSlotService(session).list_for_config(config_id)
        assert slots[0].quantity == 1
        assert await allocator.list_allocations(config_id) == []


@pytest.mark.asyncio
async def test_referral_eligibility_rules(session_factory) -> None:
    referrer, referred = uuid4(), uuid4()
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        config_id = await _config_with_slots(session, [(10, 5)], min_purchase_amount=Decimal("20"))
        configs = ReferralConfigService(session)
        allocator = ReferralSlotAllocator(session)

        with pytest.raises(ReferralNotEligible):
            await allocator.allocate(config_id, referrer, referrer, purchase_amount=Decimal("50"))
        with pytest.raises(ReferralNotEligible):
            await allocator.allocate(config_id, referrer, referred)
        with pytest.raises(ReferralNotEligible):
            await allocator.allocate(config_id, referrer, referred, purchase_amount=Decimal("19.99"))

        await allocator.allocate(config_id, referrer, referred, purchase_amount=Decimal("20"))
        with pytest.raises(ReferralNotEligible):
            await allocator.allocate(config_id, uuid4(), referred, purchase_amount=Decimal("20"))

        await configs.toggle_one_reward_per_user(config_id)
        await allocator.allocate(config_id, uuid4(), referred, purchase_amount=Decimal("20"))

        await configs.disable(config_id)
        with pytest.raises(ReferralNotEligible):
            await allocator.allocate(config_id, uuid4(), uuid4(), purchase_amount=Decimal("20"))

        await configs.update(config_id, enabled=True, start_date=now + timedelta(days=1))
        with pytest.raises(ReferralNotEligible):
            await allocator.allocate(config_id, uuid4(), uuid4(), purchase_amount=Decimal("20"))
        await allocator.allocate(
            config_id, uuid4(), uuid4(), purchase_amount=Decimal("20"), at=now + timedelta(days=2)
        )

        slots = await ReferralSlotService(session).list_for_config(config_id)
        assert slots[0].quantity == 2


@pytest.mark.asyncio
async def test_referral_notification(session_factory, notifications, user_directory, email_backend) -> None:
    referrer = uuid4()
    user_directory.add(referrer, "referrer@example.com")
    async with session_factory() as session:
        config_id = await _config_with_slots(session, [(15, 1)])
        await ReferralSlotAllocator(session, notifications=notifications).allocate(config_id, referrer, uuid4())

    await notifications.drain()
    assert [message["Subject"] for message in email_backend.sent_messages] == ["Your referral earned a reward"]
    assert "15 pending points" in email_backend.sent_messages[0].get_content()


@pytest.mark.asyncio
async def test_slot_number_validation(session_factory) -> None:
    async with session_factory() as session:
        config_id = await _config_with_slots(session, [(10, 1), (20, 1)])
        slots = ReferralSlotService(session)

        with pytest.raises(InvalidRuleConfiguration):
            await slots.create(config_id, slot_number=0, title="Zero")
        with pytest.raises(DuplicateSlotNumber):
            await slots.create(config_id, slot_number=2, title="Again")
        with pytest.raises(InvalidRuleConfiguration):
            await slots.create(config_id, slot_number=3, title="Negative", quantity=-1)
        with pytest.raises(NotFound):
            await slots.create(uuid4(), slot_number=1, title="Orphan")

        first = await slots.find_by_slot_number(config_id, 1)
        first_id = first.id
        with pytest.raises(DuplicateSlotNumber):
            await slots.update(first_id, slot_number=2)
        await slots.validate_slot_number(1, config_id, exclude_id=first_id)

        updated = await slots.update(first_id, slot_number=3, title="Renumbered")
        assert updated.slot_number == 3

        with pytest.raises(InvalidRuleConfiguration):
            await slots.update_quantity(first_id, -2)
        assert (await slots.update_quantity(first_id, 7)).quantity == 7

        await slots.deactivate(first_id)
        active = await slots.list_active_for_config(config_id)
        assert [slot.slot_number for slot in active] == [2]


@pytest.mark.asyncio
async def test_referral_config_management(session_factory) -> None:
    async with session_factory() as session:
        configs = ReferralConfigService(session)

        with pytest.raises(InvalidRuleConfiguration):
            await configs.create(signup_points=-1)
        with pytest.raises(InvalidRuleConfiguration):
            await configs.create(min_purchase_amount=-5)

        config = await configs.create(name="summer", signup_points=25, first_purchase_points=100)
        config_id = config.id
        assert [item.name for item in await configs.list_enabled()] == ["summer"]

        with pytest.raises(InvalidRuleConfiguration):
            await configs.update_min_purchase_amount(config_id, -1)
        updated = await configs.update_min_purchase_amount(config_id, Decimal("12.50"))
        assert Decimal(updated.min_purchase_amount) == Decimal("12.50")

        with pytest.raises(InvalidRuleConfiguration):
            await configs.update(config_id, unknown_field=1)

        await configs.disable(config_id)
        assert await configs.list_enabled() == []

        await ReferralSlotService(session).create(config_id, slot_number=1, title="Free month", quantity=1)
        await configs.enable(config_id)
        await ReferralSlotAllocator(session).allocate(config_id, uuid4(), uuid4(), purchase_amount=Decimal("13"))
        with pytest.raises(InvalidRuleConfiguration):
            await configs.delete(config_id)

        other = await configs.create(name="unused")
        other_id = other.id
        await ReferralSlotService(session).create(other_id, slot_number=1, title="Unused", quantity=3)
        await configs.delete(other_id)
        with pytest.raises(NotFound):
            await configs.get(other_id)
        assert await ReferralSlotService(session).list_for_config(other_id) == []
