"""Per-user points balance, the append-only history and the expiry schedule."""

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
    String,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from points_ledger.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserPointsBalance(Base):
    """One row per user, mutated only through the balance ledger."""

    __tablename__ = "user_points_balances"
    __table_args__ = (
        CheckConstraint("available_points >= 0", name="ck_balance_available_non_negative"),
        CheckConstraint("pending_points >= 0", name="ck_balance_pending_non_negative"),
        CheckConstraint("lifetime_earned >= 0", name="ck_balance_lifetime_earned_non_negative"),
        CheckConstraint("lifetime_redeemed >= 0", name="ck_balance_lifetime_redeemed_non_negative"),
    )

    user_id = Column(UUID(as_uuid=True), primary_key=True)
    available_points = Column(Integer, nullable=False, default=0, server_default="0")
    pending_points = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    current_tier_id = Column(
        UUID(as_uuid=True), ForeignKey("tiers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    last_transaction_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class PointsTransactionType(str, Enum):
    """Kinds of history entries; each moves exactly one pair of counters."""

    EARN = "earn"
    CONFIRM = "confirm"
    REDEEM = "redeem"
    EXPIRE = "expire"
    ADJUST = "adjust"


class PointsHistory(Base):
    """Append-only audit trail; replaying it reconstructs the balance."""

    __tablename__ = "points_history"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_points_history_user_sequence"),
        CheckConstraint("points > 0", name="ck_points_history_points_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    transaction_type = Column(
        SqlEnum(PointsTransactionType, name="points_transaction_type"),
        nullable=False,
        index=True,
    )
    points = Column(Integer, nullable=False)
    lifetime_earned_delta = Column(Integer, nullable=False, default=0, server_default="0")
    available_after = Column(Integer, nullable=False)
    pending_after = Column(Integer, nullable=False)
    source_type = Column(String, nullable=True)
    source_id = Column(String, nullable=True, index=True)
    earning_rule_id = Column(
        UUID(as_uuid=True), ForeignKey("earning_rules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    related_entry_id = Column(UUID(as_uuid=True), ForeignKey("points_history.id"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    reversed_points = Column(Integer, nullable=False, default=0, server_default="0")
    confirmed_points = Column(Integer, nullable=False, default=0, server_default="0")
    description = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    admin_adjusted = Column(Boolean, nullable=False, default=False, server_default="false")
    admin_user_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PointsExpirationStatus(str, Enum):
    """Lifecycle of a scheduled expiry."""

    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"


class PointsExpiration(Base):
    """Expiry schedule row keyed by the earn entry that produced the points."""

    __tablename__ = "points_expirations"
    __table_args__ = (
        CheckConstraint("consumed_points <= points", name="ck_expiration_consumed_within_points"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    history_entry_id = Column(
        UUID(as_uuid=True), ForeignKey("points_history.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    expiry_rule_id = Column(UUID(as_uuid=True), ForeignKey("expiry_rules.id", ondelete="SET NULL"), nullable=True)
    points = Column(Integer, nullable=False)
    confirmed_points = Column(Integer, nullable=False, default=0, server_default="0")
    consumed_points = Column(Integer, nullable=False, default=0, server_default="0")
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    warn_at = Column(DateTime(timezone=True), nullable=True)
    warned_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        SqlEnum(PointsExpirationStatus, name="points_expiration_status"),
        nullable=False,
        default=PointsExpirationStatus.SCHEDULED,
        server_default=PointsExpirationStatus.SCHEDULED.value,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def remaining_points(self) -> int:
        return max(int(self.points or 0) - int(self.consumed_points or 0), 0)

    @property
    def expirable_points(self) -> int:
        """Confirmed points of the batch that have not been spent or expired yet."""
        confirmed = min(int(self.confirmed_points or 0), int(self.points or 0))
        return max(confirmed - int(self.consumed_points or 0), 0)

    @property
    def unconfirmed_points(self) -> int:
        return max(int(self.points or 0) - int(self.confirmed_points or 0), 0)
