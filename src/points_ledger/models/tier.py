"""Tier hierarchy and the benefits attached to each tier."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from points_ledger.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tier(Base):
    """Threshold level unlocked by available points."""

    __tablename__ = "tiers"
    __table_args__ = (
        UniqueConstraint("tier_level", name="uq_tiers_tier_level"),
        CheckConstraint("min_points >= 0", name="ck_tiers_min_points_non_negative"),
        CheckConstraint("multiplier >= 1", name="ck_tiers_multiplier_floor"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    tier_level = Column(Integer, nullable=False)
    color = Column(String(7), nullable=True)
    min_points = Column(Integer, nullable=False, default=0, server_default="0", index=True)
    multiplier = Column(Numeric(5, 2), nullable=False, default=Decimal("1.00"), server_default="1.00")
    active = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Benefit(Base):
    __tablename__ = "benefits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    active = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class TierBenefit(Base):
    """Association between a tier and a benefit with its own active flag."""

    __tablename__ = "tier_benefits"
    __table_args__ = (
        UniqueConstraint("tier_id", "benefit_id", name="uq_tier_benefits_tier_benefit"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id", ondelete="CASCADE"), nullable=False, index=True)
    benefit_id = Column(UUID(as_uuid=True), ForeignKey("benefits.id", ondelete="CASCADE"), nullable=False)
    active = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
