"""Rule store tables: earning rules, expiry rules and the program switch."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID

from points_ledger.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EarningSourceType(str, Enum):
    """Events that can earn points."""

    PURCHASE = "purchase"
    REFERRAL = "referral"
    REVIEW = "review"
    ENGAGEMENT = "engagement"
    SIGNUP = "signup"
    CAMPAIGN = "campaign"
    BONUS = "bonus"


class ExpiryType(str, Enum):
    """Whether points lapse on a calendar anchor or after a duration."""

    FIXED_DATE = "fixed_date"
    RELATIVE_DURATION = "relative_duration"


class ExpiryMode(str, Enum):
    DAYS_AFTER_EARN = "days_after_earn"
    END_OF_MONTH = "end_of_month"
    END_OF_QUARTER = "end_of_quarter"
    END_OF_YEAR = "end_of_year"
    DAY_OF_MONTH = "day_of_month"


class ExpiryRule(Base):
    """Configuration determining when a batch of earned points lapses."""

    __tablename__ = "expiry_rules"
    __table_args__ = (
        CheckConstraint("expiry_days >= 0", name="ck_expiry_rules_days_non_negative"),
        CheckConstraint("grace_period_days >= 0", name="ck_expiry_rules_grace_non_negative"),
        CheckConstraint("warning_days_before >= 0", name="ck_expiry_rules_warning_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    expiry_type = Column(SqlEnum(ExpiryType, name="expiry_type"), nullable=True, index=True)
    expiry_mode = Column(SqlEnum(ExpiryMode, name="expiry_mode"), nullable=True, index=True)
    expiry_days = Column(Integer, nullable=False, default=0, server_default="0")
    fixed_day_of_month = Column(Integer, nullable=True)
    grace_period_days = Column(Integer, nullable=False, default=0, server_default="0")
    warning_days_before = Column(Integer, nullable=False, default=7, server_default="7")
    send_expiry_notifications = Column(Boolean, nullable=False, default=True, server_default="true")
    active = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class EarningRule(Base):
    """Maps a source event to a point amount and an optional expiry rule."""

    __tablename__ = "earning_rules"
    __table_args__ = (
        CheckConstraint("points_awarded >= 0", name="ck_earning_rules_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    rule_name = Column(String, nullable=False)
    source_type = Column(SqlEnum(EarningSourceType, name="earning_source_type"), nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=False, server_default="false", index=True)
    points_awarded = Column(Integer, nullable=False, default=0, server_default="0")
    points_per_unit = Column(Numeric(10, 4), nullable=True)
    expiry_rule_id = Column(
        UUID(as_uuid=True), ForeignKey("expiry_rules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class PointsConfig(Base):
    """Versioned program configuration; at most one version is active."""

    __tablename__ = "points_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    version = Column(Integer, nullable=False, unique=True)
    is_active = Column(Boolean, nullable=False, default=False, server_default="false", index=True)
    points_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    redemption_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    allow_stack_with_discounts = Column(Boolean, nullable=False, default=False, server_default="false")
    created_by = Column(UUID(as_uuid=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
