from decimal import Decimal
from uuid import uuid4

import pytest

from points_ledger.models import EarningRule, EarningSourceType, ExpiryMode, ExpiryType
from points_ledger.services.errors import DuplicateEntity, InvalidRuleConfiguration, NotFound
from points_ledger.services.rules import EarningRuleService, ExpiryRuleService, PointsConfigService


@pytest.mark.asyncio
async def test_earning_rule_crud(session_factory) -> None:
    async with session_factory() as session:
        rules = EarningRuleService(session)

        with pytest.raises(InvalidRuleConfiguration):
            await rules.create(rule_name="Broken", source_type=EarningSourceType.SIGNUP, points_awarded=-1)
        with pytest.raises(NotFound):
            await rules.create(rule_name="Orphan", source_type=EarningSourceType.SIGNUP, expiry_rule_id=uuid4())

        signup = await rules.create(rule_name="Signup", source_type="signup", points_awarded=100)
        purchase = await rules.create(
            rule_name="Purchase",
            source_type=EarningSourceType.PURCHASE,
            points_per_unit=Decimal("2.5"),
            enabled=True,
        )
        signup_id, purchase_id = signup.id, purchase.id

        assert [rule.rule_name for rule in await rules.list_enabled()] == ["Purchase"]
        assert [rule.id for rule in await rules.find_by_source_type("signup")] == [signup_id]

        await rules.enable(signup_id)
        assert len(await rules.list_enabled()) == 2

        with pytest.raises(InvalidRuleConfiguration):
            await rules.update(signup_id, points_awarded=-10)
        assert (await rules.get(signup_id)).points_awarded == 100

        with pytest.raises(InvalidRuleConfiguration):
            await rules.update(signup_id, colour="red")

        updated = await rules.update(signup_id, points_awarded=150, description="Welcome bonus")
        assert updated.points_awarded == 150

        await rules.delete(purchase_id)
        with pytest.raises(NotFound):
            await rules.get(purchase_id)


def test_calculate_points() -> None:
    flat = EarningRule(rule_name="flat", source_type=EarningSourceType.REVIEW, points_awarded=10)
    per_unit = EarningRule(
        rule_name="per unit", source_type=EarningSourceType.PURCHASE, points_awarded=5, points_per_unit=Decimal("1.5")
    )

    assert EarningRuleService.calculate_points(flat) == 10
    assert EarningRuleService.calculate_points(flat, Decimal("99")) == 10
    assert EarningRuleService.calculate_points(flat, multiplier=Decimal("1.25")) == 12
    assert EarningRuleService.calculate_points(per_unit, Decimal("10.99")) == 16
    assert EarningRuleService.calculate_points(per_unit) == 5
    assert EarningRuleService.calculate_points(per_unit, 4, multiplier=2) == 12


@pytest.mark.asyncio
async def test_expiry_rule_management(session_factory) -> None:
    async with session_factory() as session:
        expiry_rules = ExpiryRuleService(session)
        earning_rules = EarningRuleService(session)

        with pytest.raises(InvalidRuleConfiguration):
            await expiry_rules.create(
                name="Mismatch", expiry_type=ExpiryType.RELATIVE_DURATION, expiry_mode=ExpiryMode.END_OF_YEAR
            )

        draft = await expiry_rules.create(name="Draft")
        assert draft.expiry_type is None

        yearly = await expiry_rules.create(
            name="Yearly", expiry_type=ExpiryType.FIXED_DATE, expiry_mode=ExpiryMode.END_OF_YEAR
        )
        yearly_id = yearly.id
        rolling = await expiry_rules.create(
            name="Rolling",
            expiry_type=ExpiryType.RELATIVE_DURATION,
            expiry_mode=ExpiryMode.DAYS_AFTER_EARN,
            expiry_days=365,
        )
        rolling_id = rolling.id

        assert [rule.id for rule in await expiry_rules.find_by_expiry_type(ExpiryType.FIXED_DATE)] == [yearly_id]
        assert [rule.name for rule in await expiry_rules.find_by_expiry_mode("days_after_earn")] == ["Rolling"]

        with pytest.raises(InvalidRuleConfiguration):
            await expiry_rules.update(yearly_id, expiry_mode=ExpiryMode.DAYS_AFTER_EARN)
        assert (await expiry_rules.get(yearly_id)).expiry_mode is ExpiryMode.END_OF_YEAR

        muted = await expiry_rules.toggle_notifications(rolling_id, False)
        assert muted.send_expiry_notifications is False
        assert (await expiry_rules.deactivate(rolling_id)).active is False

        bonus = await earning_rules.create(
            rule_name="Bonus", source_type=EarningSourceType.BONUS, points_awarded=5, expiry_rule_id=yearly_id
        )
        bonus_id = bonus.id
        assert [rule.id for rule in await earning_rules.find_by_expiry_rule(yearly_id)] == [bonus_id]

        await expiry_rules.delete(yearly_id)

    async with session_factory() as session:
        assert (await EarningRuleService(session).get(bonus_id)).expiry_rule_id is None
        with pytest.raises(NotFound):
            await ExpiryRuleService(session).get(yearly_id)


@pytest.mark.asyncio
async def test_points_config_versions(session_factory) -> None:
    async with session_factory() as session:
        configs = PointsConfigService(session)

        first = await configs.create(is_active=True, allow_stack_with_discounts=True)
        first_id = first.id
        assert first.version == 1
        with pytest.raises(DuplicateEntity):
            await configs.create(is_active=True)
        with pytest.raises(DuplicateEntity):
            await configs.create(version=1)

        second = await configs.create(redemption_enabled=False)
        second_id = second.id
        assert second.version == 2
        assert (await configs.get_active()).id == first_id

        await configs.activate(second_id)
        active = await configs.get_active()
        assert active.id == second_id
        assert (await configs.get(first_id)).is_active is False

        with pytest.raises(InvalidRuleConfiguration):
            await configs.delete(second_id)
        with pytest.raises(InvalidRuleConfiguration):
            await configs.update(second_id, version=7)

        clone = await configs.clone(first_id, created_by=uuid4())
        assert clone.version == 3
        assert clone.allow_stack_with_discounts is True
        assert clone.is_active is False

        assert [config.version for config in await configs.history()] == [3, 2, 1]
        assert (await configs.find_by_version(2)).id == second_id

        await configs.deactivate(second_id)
        assert await configs.get_active() is None
        await configs.delete(first_id)
        assert [config.version for config in await configs.list_all()] == [2, 3]
