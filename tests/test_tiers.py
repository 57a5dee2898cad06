from decimal import Decimal
from uuid import uuid4

import pytest

from points_ledger.models import UserPointsBalance
from points_ledger.services.errors import (
    DuplicateEntity,
    InvalidRuleConfiguration,
    NotFound,
    TierHierarchyViolation,
    TierNotFound,
)
from points_ledger.services.ledger import BalanceLedger
from points_ledger.services.tiers import BenefitService, TierBenefitService, TierService, resolve_tier


async def _ladder(session):
    tiers = TierService(session)
    bronze = await tiers.create(name="Bronze", tier_level=1, min_points=0)
    silver = await tiers.create(name="Silver", tier_level=2, min_points=500, multiplier=Decimal("1.25"))
    gold = await tiers.create(name="Gold", tier_level=3, min_points=2000, multiplier=2, color="#FFD700")
    return bronze.id, silver.id, gold.id


@pytest.mark.asyncio
async def test_tier_lookup_by_points(session_factory) -> None:
    async with session_factory() as session:
        bronze_id, silver_id, gold_id = await _ladder(session)
        tiers = TierService(session)

        assert (await tiers.find_tier_for_points(0)).id == bronze_id
        assert (await tiers.find_tier_for_points(499)).id == bronze_id
        assert (await tiers.find_tier_for_points(500)).id == silver_id
        assert (await tiers.find_tier_for_points(10_000)).id == gold_id

        await tiers.deactivate(silver_id)
        assert (await tiers.find_tier_for_points(1000)).id == bronze_id
        assert [tier.name for tier in await tiers.list_active()] == ["Bronze", "Gold"]
        assert (await tiers.find_by_level(2)).id == silver_id


def test_resolve_tier_ignores_inactive_and_prefers_higher_threshold() -> None:
    class _Tier:
        def __init__(self, name, tier_level, min_points, active=True):
            self.name, self.tier_level, self.min_points, self.active = name, tier_level, min_points, active

    ladder = [_Tier("a", 1, 0), _Tier("b", 2, 100), _Tier("c", 3, 200, active=False)]
    assert resolve_tier(ladder, 250).name == "b"
    assert resolve_tier(ladder, 99).name == "a"
    assert resolve_tier([_Tier("x", 1, 10)], 5) is None


@pytest.mark.asyncio
async def test_hierarchy_must_increase_with_level(session_factory) -> None:
    async with session_factory() as session:
        bronze_id, silver_id, _ = await _ladder(session)
        tiers = TierService(session)

        with pytest.raises(TierHierarchyViolation):
            await tiers.create(name="Platinum", tier_level=4, min_points=1500)
        with pytest.raises(DuplicateEntity):
            await tiers.create(name="Copper", tier_level=1, min_points=0)
        with pytest.raises(TierHierarchyViolation):
            await tiers.update(silver_id, min_points=3000)
        with pytest.raises(InvalidRuleConfiguration):
            await tiers.update(bronze_id, multiplier=Decimal("0.5"))
        with pytest.raises(InvalidRuleConfiguration):
            await tiers.create(name="", tier_level=5, min_points=9000)
        with pytest.raises(TierNotFound):
            await tiers.get(uuid4())

        inactive = await tiers.create(name="Legacy", tier_level=5, min_points=100, active=False)
        with pytest.raises(TierHierarchyViolation):
            await tiers.activate(inactive.id)

        updated = await tiers.update(silver_id, min_points=800, name="Silver Plus")
        assert (updated.min_points, updated.name) == (800, "Silver Plus")


@pytest.mark.asyncio
async def test_reorder_tiers(session_factory) -> None:
    async with session_factory() as session:
        tiers = TierService(session)
        low = (await tiers.create(name="Low", tier_level=1, min_points=0)).id
        high = (await tiers.create(name="High", tier_level=2, min_points=100)).id

        with pytest.raises(TierHierarchyViolation):
            await tiers.reorder_tiers([high, low])
        assert [tier.name for tier in await tiers.list_all()] == ["Low", "High"]

        await tiers.deactivate(low)
        reordered = await tiers.reorder_tiers([high, low])
        assert [(tier.name, tier.tier_level) for tier in reordered] == [("High", 1), ("Low", 2)]

        with pytest.raises(InvalidRuleConfiguration):
            await tiers.reorder_tiers([high])
        with pytest.raises(InvalidRuleConfiguration):
            await tiers.reorder_tiers([high, high])
        with pytest.raises(TierNotFound):
            await tiers.reorder_tiers([high, uuid4()])


@pytest.mark.asyncio
async def test_delete_tier_moves_members_and_drops_links(session_factory) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        bronze_id, silver_id, _ = await _ladder(session)
        benefit = await BenefitService(session).create(name="Free shipping")
        links = TierBenefitService(session)
        await links.link(silver_id, benefit.id)

        ledger = BalanceLedger(session)
        await ledger.increment_pending_points(user_id, 600)
        await ledger.confirm_pending_points(user_id, 600)
        assert (await ledger.get_balance(user_id)).current_tier_id == silver_id

        await TierService(session).delete(silver_id)

    async with session_factory() as session:
        balance = await session.get(UserPointsBalance, user_id)
        assert balance.current_tier_id == bronze_id
        assert await TierBenefitService(session).list_for_benefit(benefit.id) == []


@pytest.mark.asyncio
async def test_tier_changes_re_resolve_members(session_factory) -> None:
    saver, spender = uuid4(), uuid4()
    async with session_factory() as session:
        bronze_id, silver_id, gold_id = await _ladder(session)
        tiers = TierService(session)
        ledger = BalanceLedger(session)
        for user_id, points in ((saver, 900), (spender, 100)):
            await ledger.increment_pending_points(user_id, points)
            await ledger.confirm_pending_points(user_id, points)

        async def tier_of(user_id):
            return (await session.get(UserPointsBalance, user_id, populate_existing=True)).current_tier_id

        assert (await tier_of(saver), await tier_of(spender)) == (silver_id, bronze_id)

        await tiers.update(silver_id, min_points=1000)
        assert await tier_of(saver) == bronze_id

        await tiers.update(silver_id, min_points=800)
        assert await tier_of(saver) == silver_id

        await tiers.deactivate(silver_id)
        assert await tier_of(saver) == bronze_id
        await tiers.activate(silver_id)
        assert await tier_of(saver) == silver_id

        await tiers.update(bronze_id, min_points=200)
        assert await tier_of(spender) is None
        await tiers.create(name="Starter", tier_level=4, min_points=50, active=False)
        assert await tiers.resync_members() == 0

        await tiers.update(gold_id, min_points=900)
        assert await tier_of(saver) == gold_id


@pytest.mark.asyncio
async def test_benefits_follow_current_tier(session_factory) -> None:
    user_id = uuid4()
    async with session_factory() as session:
        bronze_id, silver_id, _ = await _ladder(session)
        benefits = BenefitService(session)
        links = TierBenefitService(session)
        shipping = await benefits.create(name="Free shipping")
        lounge = await benefits.create(name="Lounge access", description="Airport lounge")
        await links.link(bronze_id, shipping.id)
        silver_shipping = await links.link(silver_id, shipping.id)
        await links.link(silver_id, lounge.id)

        with pytest.raises(DuplicateEntity):
            await links.link(silver_id, lounge.id)

        assert await links.benefits_for_user_tier(user_id) == []

        ledger = BalanceLedger(session)
        await ledger.increment_pending_points(user_id, 700)
        await ledger.confirm_pending_points(user_id, 700)
        names = [benefit.name for benefit in await links.benefits_for_user_tier(user_id)]
        assert names == ["Free shipping", "Lounge access"]

        await links.deactivate(silver_shipping.id)
        await benefits.deactivate(lounge.id)
        assert await links.benefits_for_user_tier(user_id) == []
        assert len(await links.list_for_tier(silver_id)) == 2
        assert await links.list_for_tier(silver_id, active_only=True) != []

        await links.unlink(silver_shipping.id)
        with pytest.raises(NotFound):
            await links.get(silver_shipping.id)
        assert len(await links.list_for_tier(silver_id)) == 1

        await ledger.deduct_available_points(user_id, 300)
        names = [benefit.name for benefit in await links.benefits_for_user_tier(user_id)]
        assert names == ["Free shipping"]

        await benefits.delete(shipping.id)
        with pytest.raises(NotFound):
            await benefits.get(shipping.id)
        assert await links.list_for_tier(bronze_id) == []
