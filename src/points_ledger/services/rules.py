"""Rule store: earning rules, expiry rules and the versioned program switch."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.models import (
    EarningRule,
    EarningSourceType,
    ExpiryMode,
    ExpiryRule,
    ExpiryType,
    PointsConfig,
)

from .common import apply_changes, get_or_raise
from .errors import DuplicateEntity, InvalidRuleConfiguration
from .expiry import validate_rule_settings

_EARNING_RULE_FIELDS = (
    "rule_name",
    "source_type",
    "enabled",
    "points_awarded",
    "points_per_unit",
    "expiry_rule_id",
    "description",
)

_EXPIRY_RULE_FIELDS = (
    "name",
    "expiry_type",
    "expiry_mode",
    "expiry_days",
    "fixed_day_of_month",
    "grace_period_days",
    "warning_days_before",
    "send_expiry_notifications",
    "active",
)

_POINTS_CONFIG_FIELDS = (
    "points_enabled",
    "redemption_enabled",
    "allow_stack_with_discounts",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EarningRuleService:
    """CRUD and lookups for earning rules."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create(
        self,
        *,
        rule_name: str,
        source_type: EarningSourceType,
        points_awarded: int = 0,
        points_per_unit: Decimal | None = None,
        expiry_rule_id: UUID | None = None,
        enabled: bool = False,
        description: str | None = None,
    ) -> EarningRule:
        rule = EarningRule(
            rule_name=rule_name,
            source_type=EarningSourceType(source_type),
            points_awarded=points_awarded,
            points_per_unit=points_per_unit,
            expiry_rule_id=expiry_rule_id,
            enabled=enabled,
            description=description,
        )
        await self._validate(rule)
        self._db.add(rule)
        await self._db.commit()
        logger.info("Created earning rule", rule_id=str(rule.id), source_type=rule.source_type.value)
        return rule

    async def get(self, rule_id: UUID) -> EarningRule:
        return await get_or_raise(self._db, EarningRule, rule_id, "Earning rule")

    async def list_all(self) -> list[EarningRule]:
        result = await self._db.execute(select(EarningRule).order_by(EarningRule.created_at.asc()))
        return list(result.scalars().all())

    async def list_enabled(self) -> list[EarningRule]:
        stmt = select(EarningRule).where(EarningRule.enabled.is_(True)).order_by(EarningRule.created_at.asc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def find_by_source_type(self, source_type: EarningSourceType) -> list[EarningRule]:
        stmt = select(EarningRule).where(EarningRule.source_type == EarningSourceType(source_type))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def find_by_expiry_rule(self, expiry_rule_id: UUID) -> list[EarningRule]:
        stmt = select(EarningRule).where(EarningRule.expiry_rule_id == expiry_rule_id)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def update(self, rule_id: UUID, **changes: Any) -> EarningRule:
        rule = await self.get(rule_id)
        if "source_type" in changes:
            changes["source_type"] = EarningSourceType(changes["source_type"])
        applied = apply_changes(rule, changes, _EARNING_RULE_FIELDS)
        try:
            await self._validate(rule)
        except Exception:
            await self._db.rollback()
            raise
        await self._db.commit()
        logger.info("Updated earning rule", rule_id=str(rule.id), fields=sorted(applied))
        return rule

    async def delete(self, rule_id: UUID) -> None:
        rule = await self.get(rule_id)
        await self._db.delete(rule)
        await self._db.commit()
        logger.info("Deleted earning rule", rule_id=str(rule_id))

    async def enable(self, rule_id: UUID) -> EarningRule:
        return await self.update(rule_id, enabled=True)

    async def disable(self, rule_id: UUID) -> EarningRule:
        return await self.update(rule_id, enabled=False)

    @staticmethod
    def calculate_points(
        rule: EarningRule,
        units: Decimal | int | None = None,
        *,
        multiplier: Decimal | int = 1,
    ) -> int:
        """Flat ``points_awarded``, or ``floor(units * points_per_unit)`` when both are given."""

        if rule.points_per_unit is not None and units is not None:
            base = Decimal(str(units)) * Decimal(rule.points_per_unit)
        else:
            base = Decimal(rule.points_awarded or 0)
        points = (base * Decimal(str(multiplier))).to_integral_value(rounding=ROUND_FLOOR)
        return max(int(points), 0)

    async def _validate(self, rule: EarningRule) -> None:
        if (rule.points_awarded or 0) < 0:
            raise InvalidRuleConfiguration("Earning rules cannot award negative points")
        if rule.points_per_unit is not None and Decimal(rule.points_per_unit) < 0:
            raise InvalidRuleConfiguration("Points per unit cannot be negative")
        if rule.expiry_rule_id is not None:
            await get_or_raise(self._db, ExpiryRule, rule.expiry_rule_id, "Expiry rule")


class ExpiryRuleService:
    """CRUD, lookups and settings validation for expiry rules."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    @staticmethod
    def validate_settings(rule: ExpiryRule) -> None:
        """A rule may be saved before its type and mode are chosen; day counts must still be sane."""

        if rule.expiry_type is None and rule.expiry_mode is None:
            if min(rule.expiry_days or 0, rule.grace_period_days or 0, rule.warning_days_before or 0) < 0:
                raise InvalidRuleConfiguration("Expiry, grace and warning days cannot be negative")
            return
        validate_rule_settings(rule)

    async def create(
        self,
        *,
        name: str,
        expiry_type: ExpiryType | None = None,
        expiry_mode: ExpiryMode | None = None,
        expiry_days: int = 0,
        fixed_day_of_month: int | None = None,
        grace_period_days: int = 0,
        warning_days_before: int = 7,
        send_expiry_notifications: bool = True,
        active: bool = True,
    ) -> ExpiryRule:
        rule = ExpiryRule(
            name=name,
            expiry_type=expiry_type,
            expiry_mode=expiry_mode,
            expiry_days=expiry_days,
            fixed_day_of_month=fixed_day_of_month,
            grace_period_days=grace_period_days,
            warning_days_before=warning_days_before,
            send_expiry_notifications=send_expiry_notifications,
            active=active,
        )
        self.validate_settings(rule)
        self._db.add(rule)
        await self._db.commit()
        logger.info("Created expiry rule", rule_id=str(rule.id), name=name)
        return rule

    async def get(self, rule_id: UUID) -> ExpiryRule:
        return await get_or_raise(self._db, ExpiryRule, rule_id, "Expiry rule")

    async def list_all(self) -> list[ExpiryRule]:
        result = await self._db.execute(select(ExpiryRule).order_by(ExpiryRule.created_at.asc()))
        return list(result.scalars().all())

    async def find_by_expiry_type(self, expiry_type: ExpiryType) -> list[ExpiryRule]:
        stmt = select(ExpiryRule).where(ExpiryRule.expiry_type == ExpiryType(expiry_type))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def find_by_expiry_mode(self, expiry_mode: ExpiryMode) -> list[ExpiryRule]:
        stmt = select(ExpiryRule).where(ExpiryRule.expiry_mode == ExpiryMode(expiry_mode))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def update(self, rule_id: UUID, **changes: Any) -> ExpiryRule:
        rule = await self.get(rule_id)
        if changes.get("expiry_type") is not None:
            changes["expiry_type"] = ExpiryType(changes["expiry_type"])
        if changes.get("expiry_mode") is not None:
            changes["expiry_mode"] = ExpiryMode(changes["expiry_mode"])
        applied = apply_changes(rule, changes, _EXPIRY_RULE_FIELDS)
        try:
            self.validate_settings(rule)
        except InvalidRuleConfiguration:
            await self._db.rollback()
            raise
        await self._db.commit()
        logger.info("Updated expiry rule", rule_id=str(rule.id), fields=sorted(applied))
        return rule

    async def delete(self, rule_id: UUID) -> None:
        rule = await self.get(rule_id)
        await self._db.execute(
            update(EarningRule)
            .where(EarningRule.expiry_rule_id == rule_id)
            .values(expiry_rule_id=None)
            .execution_options(synchronize_session=False)
        )
        await self._db.delete(rule)
        await self._db.commit()
        logger.info("Deleted expiry rule", rule_id=str(rule_id))

    async def activate(self, rule_id: UUID) -> ExpiryRule:
        return await self.update(rule_id, active=True)

    async def deactivate(self, rule_id: UUID) -> ExpiryRule:
        return await self.update(rule_id, active=False)

    async def toggle_notifications(self, rule_id: UUID, enabled: bool) -> ExpiryRule:
        return await self.update(rule_id, send_expiry_notifications=enabled)


class PointsConfigService:
    """Versioned program configuration with at most one active version."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create(
        self,
        *,
        version: int | None = None,
        points_enabled: bool = True,
        redemption_enabled: bool = True,
        allow_stack_with_discounts: bool = False,
        created_by: UUID | None = None,
        is_active: bool = False,
    ) -> PointsConfig:
        if is_active and await self.get_active() is not None:
            raise DuplicateEntity("An active points configuration already exists; deactivate it first")
        if version is None:
            version = await self._next_version()
        elif await self.find_by_version(version) is not None:
            raise DuplicateEntity(f"Points configuration version {version} already exists")

        config = PointsConfig(
            version=version,
            points_enabled=points_enabled,
            redemption_enabled=redemption_enabled,
            allow_stack_with_discounts=allow_stack_with_discounts,
            created_by=created_by,
            is_active=is_active,
            activated_at=_utcnow() if is_active else None,
        )
        self._db.add(config)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise DuplicateEntity(f"Points configuration version {version} already exists") from exc
        logger.info("Created points configuration", config_id=str(config.id), version=version, active=is_active)
        return config

    async def get(self, config_id: UUID) -> PointsConfig:
        return await get_or_raise(self._db, PointsConfig, config_id, "Points configuration")

    async def list_all(self) -> list[PointsConfig]:
        result = await self._db.execute(select(PointsConfig).order_by(PointsConfig.version.asc()))
        return list(result.scalars().all())

    async def history(self) -> list[PointsConfig]:
        result = await self._db.execute(select(PointsConfig).order_by(PointsConfig.version.desc()))
        return list(result.scalars().all())

    async def find_by_version(self, version: int) -> PointsConfig | None:
        result = await self._db.execute(select(PointsConfig).where(PointsConfig.version == version))
        return result.scalar_one_or_none()

    async def get_active(self) -> PointsConfig | None:
        stmt = select(PointsConfig).where(PointsConfig.is_active.is_(True)).order_by(PointsConfig.version.desc())
        result = await self._db.execute(stmt)
        return result.scalars().first()

    async def update(self, config_id: UUID, **changes: Any) -> PointsConfig:
        config = await self.get(config_id)
        applied = apply_changes(config, changes, _POINTS_CONFIG_FIELDS)
        await self._db.commit()
        logger.info("Updated points configuration", config_id=str(config_id), fields=sorted(applied))
        return config

    async def delete(self, config_id: UUID) -> None:
        config = await self.get(config_id)
        if config.is_active:
            raise InvalidRuleConfiguration("Cannot delete the active points configuration; deactivate it first")
        await self._db.delete(config)
        await self._db.commit()
        logger.info("Deleted points configuration", config_id=str(config_id))

    async def activate(self, config_id: UUID) -> PointsConfig:
        """Make ``config_id`` the only active version."""

        config = await self.get(config_id)
        now = _utcnow()
        result = await self._db.execute(
            select(PointsConfig).where(PointsConfig.is_active.is_(True), PointsConfig.id != config_id)
        )
        for previous in result.scalars().all():
            previous.is_active = False
            previous.deactivated_at = now
        config.is_active = True
        config.activated_at = now
        config.deactivated_at = None
        await self._db.commit()
        logger.info("Activated points configuration", config_id=str(config_id), version=config.version)
        return config

    async def deactivate(self, config_id: UUID) -> PointsConfig:
        config = await self.get(config_id)
        config.is_active = False
        config.deactivated_at = _utcnow()
        await self._db.commit()
        logger.info("Deactivated points configuration", config_id=str(config_id))
        return config

    async def clone(self, config_id: UUID, *, created_by: UUID | None = None) -> PointsConfig:
        source = await self.get(config_id)
        return await self.create(
            points_enabled=source.points_enabled,
            redemption_enabled=source.redemption_enabled,
            allow_stack_with_discounts=source.allow_stack_with_discounts,
            created_by=created_by,
        )

    async def _next_version(self) -> int:
        result = await self._db.execute(select(func.max(PointsConfig.version)))
        return int(result.scalar_one_or_none() or 0) + 1


__all__ = ["EarningRuleService", "ExpiryRuleService", "PointsConfigService"]
