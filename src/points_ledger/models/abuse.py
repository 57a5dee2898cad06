"""Fraud-suspicion records reviewed before points actions are trusted."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, String, Text, JSON
from sqlalchemy.dialects.postgresql import UUID

from points_ledger.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbuseFlagType(str, Enum):
    SUSPICIOUS_REFERRAL = "suspicious_referral"
    VELOCITY_ABUSE = "velocity_abuse"
    REDEMPTION_ABUSE = "redemption_abuse"
    REVIEW_ABUSE = "review_abuse"
    DEVICE_FRAUD = "device_fraud"
    OTHER = "other"


class AbuseFlagSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AbuseFlagStatus(str, Enum):
    """Review workflow: pending -> reviewed -> resolved | dismissed."""

    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class AbuseFlag(Base):
    __tablename__ = "abuse_flags"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    flag_type = Column(SqlEnum(AbuseFlagType, name="abuse_flag_type"), nullable=False, index=True)
    severity = Column(SqlEnum(AbuseFlagSeverity, name="abuse_flag_severity"), nullable=False, index=True)
    status = Column(
        SqlEnum(AbuseFlagStatus, name="abuse_flag_status"),
        nullable=False,
        default=AbuseFlagStatus.PENDING,
        server_default=AbuseFlagStatus.PENDING.value,
        index=True,
    )
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    detection_method = Column(String, nullable=False)
    flag_details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String, nullable=True, index=True)
    device_fingerprint = Column(String, nullable=True, index=True)
    reviewed_by = Column(UUID(as_uuid=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    review_notes = Column(Text, nullable=True)
    is_valid = Column(Boolean, nullable=True)
    action_taken = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
