"""Referral reward configuration and its quantity-limited slots."""

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


class ReferralRewardConfig(Base):
    """Campaign-level referral settings."""

    __tablename__ = "referral_reward_configs"
    __table_args__ = (
        CheckConstraint("signup_points >= 0", name="ck_referral_configs_signup_non_negative"),
        CheckConstraint("first_purchase_points >= 0", name="ck_referral_configs_purchase_non_negative"),
        CheckConstraint("min_purchase_amount >= 0", name="ck_referral_configs_min_purchase_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, default="default")
    enabled = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    signup_points = Column(Integer, nullable=False, default=0, server_default="0")
    first_purchase_points = Column(Integer, nullable=False, default=0, server_default="0")
    min_purchase_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"), server_default="0")
    one_reward_per_referred_user = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class ReferralSlotReward(Base):
    """Discrete, quantity-limited reward unit within a config."""

    __tablename__ = "referral_slot_rewards"
    __table_args__ = (
        UniqueConstraint("reward_config_id", "slot_number", name="uq_referral_slots_config_slot_number"),
        CheckConstraint("slot_number >= 1", name="ck_referral_slots_slot_number_positive"),
        CheckConstraint("quantity >= 0", name="ck_referral_slots_quantity_non_negative"),
        CheckConstraint("reward_amount >= 0", name="ck_referral_slots_reward_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reward_config_id = Column(
        UUID(as_uuid=True),
        ForeignKey("referral_reward_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot_number = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    reward_amount = Column(Integer, nullable=False, default=0, server_default="0")
    quantity = Column(Integer, nullable=False, default=0, server_default="0")
    active = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class ReferralSlotAllocation(Base):
    """A granted slot; doubles as the benefit record for zero-point slots."""

    __tablename__ = "referral_slot_allocations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reward_config_id = Column(
        UUID(as_uuid=True),
        ForeignKey("referral_reward_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot_id = Column(UUID(as_uuid=True), ForeignKey("referral_slot_rewards.id", ondelete="SET NULL"), nullable=True)
    slot_number = Column(Integer, nullable=False)
    referrer_user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    referred_user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    points_awarded = Column(Integer, nullable=False, default=0, server_default="0")
    history_entry_id = Column(UUID(as_uuid=True), ForeignKey("points_history.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
