"""Abuse flag review workflow and the credit screening the ledger relies on."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Mapping
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from points_ledger.core.settings import get_settings
from points_ledger.models import AbuseFlag, AbuseFlagSeverity, AbuseFlagStatus, AbuseFlagType
from points_ledger.observability.ledger import LedgerObservabilityStore, get_ledger_store

from .common import get_or_raise
from .errors import CreditBlocked, InvalidFlagDetails, InvalidFlagReview, InvalidStateTransition

ACTIVE_FLAG_STATUSES = (AbuseFlagStatus.PENDING, AbuseFlagStatus.REVIEWED)


class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SuspiciousReferralDetails(_Details):
    flag_type: Literal["suspicious_referral"]
    referrer_user_id: UUID | None = None
    referred_user_id: UUID | None = None
    referral_count: int | None = Field(default=None, ge=0)
    shared_signals: list[str] = Field(default_factory=list)


class VelocityAbuseDetails(_Details):
    flag_type: Literal["velocity_abuse"]
    event_count: int = Field(gt=0)
    window_minutes: int = Field(gt=0)
    threshold: int | None = Field(default=None, gt=0)


class RedemptionAbuseDetails(_Details):
    flag_type: Literal["redemption_abuse"]
    redemption_count: int = Field(ge=0)
    points_redeemed: int = Field(ge=0)
    window_minutes: int | None = Field(default=None, gt=0)


class ReviewAbuseDetails(_Details):
    flag_type: Literal["review_abuse"]
    review_ids: list[str] = Field(min_length=1)
    reason: str


class DeviceFraudDetails(_Details):
    flag_type: Literal["device_fraud"]
    linked_user_ids: list[UUID] = Field(default_factory=list)
    signals: list[str] = Field(default_factory=list)


class OtherDetails(_Details):
    flag_type: Literal["other"]
    description: str
    extra: dict[str, Any] = Field(default_factory=dict)


FlagDetails = Annotated[
    SuspiciousReferralDetails
    | VelocityAbuseDetails
    | RedemptionAbuseDetails
    | ReviewAbuseDetails
    | DeviceFraudDetails
    | OtherDetails,
    Field(discriminator="flag_type"),
]

_DETAILS_ADAPTER: TypeAdapter[FlagDetails] = TypeAdapter(FlagDetails)


def parse_flag_details(flag_type: AbuseFlagType | str, details: Mapping[str, Any] | BaseModel) -> FlagDetails:
    """Validate ``details`` against the payload shape of ``flag_type``."""

    flag_type = AbuseFlagType(flag_type)
    payload = details.model_dump() if isinstance(details, BaseModel) else dict(details)
    declared = payload.setdefault("flag_type", flag_type.value)
    if declared != flag_type.value:
        raise InvalidFlagDetails(f"Details for {declared} cannot be attached to a {flag_type.value} flag")
    try:
        return _DETAILS_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise InvalidFlagDetails(f"Invalid details for {flag_type.value} flag: {exc}") from exc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbuseFlagWorkflow:
    """State machine over abuse flags: pending -> reviewed -> resolved | dismissed."""

    _ALLOWED_TRANSITIONS: dict[AbuseFlagStatus, set[AbuseFlagStatus]] = {
        AbuseFlagStatus.PENDING: {
            AbuseFlagStatus.REVIEWED,
            AbuseFlagStatus.RESOLVED,
            AbuseFlagStatus.DISMISSED,
        },
        AbuseFlagStatus.REVIEWED: {
            AbuseFlagStatus.RESOLVED,
            AbuseFlagStatus.DISMISSED,
        },
        AbuseFlagStatus.RESOLVED: set(),
        AbuseFlagStatus.DISMISSED: set(),
    }

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        blocking_severities: list[str] | None = None,
        observability: LedgerObservabilityStore | None = None,
    ) -> None:
        self._db = db_session
        severities = get_settings().abuse_blocking_severities if blocking_severities is None else blocking_severities
        self._blocking = {AbuseFlagSeverity(value) for value in severities}
        self._observability = observability or get_ledger_store()

    async def create_flag(
        self,
        *,
        user_id: UUID,
        flag_type: AbuseFlagType,
        severity: AbuseFlagSeverity,
        details: Mapping[str, Any] | BaseModel,
        detection_method: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        ip_address: str | None = None,
        device_fingerprint: str | None = None,
    ) -> AbuseFlag:
        parsed = parse_flag_details(flag_type, details)
        flag = AbuseFlag(
            user_id=user_id,
            flag_type=AbuseFlagType(flag_type),
            severity=AbuseFlagSeverity(severity),
            status=AbuseFlagStatus.PENDING,
            flag_details=parsed.model_dump(mode="json"),
            detection_method=detection_method,
            entity_type=entity_type,
            entity_id=entity_id,
            ip_address=ip_address,
            device_fingerprint=device_fingerprint,
        )
        self._db.add(flag)
        await self._db.commit()
        self._observability.record_flag_transition(AbuseFlagStatus.PENDING.value)
        logger.warning(
            "Abuse flag raised",
            flag_id=str(flag.id),
            user_id=str(user_id),
            flag_type=flag.flag_type.value,
            severity=flag.severity.value,
        )
        return flag

    async def get_flag(self, flag_id: UUID) -> AbuseFlag:
        return await get_or_raise(self._db, AbuseFlag, flag_id, "Abuse flag")

    @staticmethod
    def details(flag: AbuseFlag) -> FlagDetails:
        return parse_flag_details(flag.flag_type, flag.flag_details or {})

    async def update_details(self, flag_id: UUID, details: Mapping[str, Any] | BaseModel) -> AbuseFlag:
        flag = await self.get_flag(flag_id)
        flag.flag_details = parse_flag_details(flag.flag_type, details).model_dump(mode="json")
        await self._db.commit()
        return flag

    async def delete_flag(self, flag_id: UUID) -> None:
        flag = await self.get_flag(flag_id)
        await self._db.delete(flag)
        await self._db.commit()
        logger.info("Deleted abuse flag", flag_id=str(flag_id))

    async def review_flag(self, flag_id: UUID, reviewer_id: UUID, notes: str) -> AbuseFlag:
        _require_review(reviewer_id, notes)
        flag = await self.get_flag(flag_id)
        return await self._transition(flag, AbuseFlagStatus.REVIEWED, reviewer_id=reviewer_id, notes=notes)

    async def resolve_flag(
        self,
        flag_id: UUID,
        reviewer_id: UUID,
        notes: str,
        *,
        is_valid: bool,
        action_taken: str | None = None,
    ) -> AbuseFlag:
        _require_review(reviewer_id, notes)
        if is_valid and not (action_taken and action_taken.strip()):
            raise InvalidFlagReview("Resolving a valid flag requires the action taken")
        flag = await self.get_flag(flag_id)
        return await self._transition(
            flag,
            AbuseFlagStatus.RESOLVED,
            reviewer_id=reviewer_id,
            notes=notes,
            is_valid=is_valid,
            action_taken=action_taken,
        )

    async def dismiss_flag(self, flag_id: UUID, reviewer_id: UUID, notes: str) -> AbuseFlag:
        _require_review(reviewer_id, notes)
        flag = await self.get_flag(flag_id)
        return await self._transition(
            flag, AbuseFlagStatus.DISMISSED, reviewer_id=reviewer_id, notes=notes, is_valid=False
        )

    async def update_status(
        self,
        flag_id: UUID,
        status: AbuseFlagStatus,
        *,
        reviewer_id: UUID | None = None,
        notes: str | None = None,
        is_valid: bool | None = None,
        action_taken: str | None = None,
    ) -> AbuseFlag:
        """Route a raw status change through the guarded operations."""

        status = AbuseFlagStatus(status)
        if status is AbuseFlagStatus.REVIEWED:
            return await self.review_flag(flag_id, reviewer_id, notes)
        if status is AbuseFlagStatus.RESOLVED:
            return await self.resolve_flag(
                flag_id, reviewer_id, notes, is_valid=bool(is_valid), action_taken=action_taken
            )
        if status is AbuseFlagStatus.DISMISSED:
            return await self.dismiss_flag(flag_id, reviewer_id, notes)
        flag = await self.get_flag(flag_id)
        raise InvalidStateTransition(flag.status, status)

    async def find_by_user(self, user_id: UUID) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.user_id == user_id)

    async def find_by_type(self, flag_type: AbuseFlagType) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.flag_type == AbuseFlagType(flag_type))

    async def find_by_status(self, status: AbuseFlagStatus) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.status == AbuseFlagStatus(status))

    async def find_by_severity(self, severity: AbuseFlagSeverity) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.severity == AbuseFlagSeverity(severity))

    async def find_pending(self) -> list[AbuseFlag]:
        return await self.find_by_status(AbuseFlagStatus.PENDING)

    async def find_by_ip_address(self, ip_address: str) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.ip_address == ip_address)

    async def find_by_device_fingerprint(self, device_fingerprint: str) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.device_fingerprint == device_fingerprint)

    async def find_active_flags_for_user(self, user_id: UUID) -> list[AbuseFlag]:
        return await self._find(AbuseFlag.user_id == user_id, AbuseFlag.status.in_(ACTIVE_FLAG_STATUSES))

    async def blocking_flags(self, user_id: UUID) -> list[AbuseFlag]:
        if not self._blocking:
            return []
        return await self._find(
            AbuseFlag.user_id == user_id,
            AbuseFlag.status.in_(ACTIVE_FLAG_STATUSES),
            AbuseFlag.severity.in_(sorted(self._blocking, key=lambda severity: severity.value)),
        )

    async def has_blocking_flags(self, user_id: UUID) -> bool:
        return bool(await self.blocking_flags(user_id))

    async def assert_can_earn(self, user_id: UUID) -> None:
        flags = await self.blocking_flags(user_id)
        if flags:
            logger.warning("Credit blocked by abuse flags", user_id=str(user_id), flags=len(flags))
            raise CreditBlocked(user_id, [flag.id for flag in flags])

    async def _find(self, *criteria: Any) -> list[AbuseFlag]:
        stmt = select(AbuseFlag).where(*criteria).order_by(AbuseFlag.created_at.desc())
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def _transition(
        self,
        flag: AbuseFlag,
        target: AbuseFlagStatus,
        *,
        reviewer_id: UUID,
        notes: str,
        is_valid: bool | None = None,
        action_taken: str | None = None,
    ) -> AbuseFlag:
        current = AbuseFlagStatus(flag.status)
        if target not in self._ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(current, target)

        flag.status = target
        flag.reviewed_by = reviewer_id
        flag.reviewed_at = _utcnow()
        flag.review_notes = notes
        if is_valid is not None:
            flag.is_valid = is_valid
        if action_taken is not None:
            flag.action_taken = action_taken
        await self._db.commit()
        self._observability.record_flag_transition(target.value)
        logger.info(
            "Abuse flag transitioned",
            flag_id=str(flag.id),
            from_status=current.value,
            to_status=target.value,
            reviewer_id=str(reviewer_id),
        )
        return flag


def _require_review(reviewer_id: UUID | None, notes: str | None) -> None:
    if reviewer_id is None:
        raise InvalidFlagReview("A reviewer is required")
    if not notes or not notes.strip():
        raise InvalidFlagReview("Review notes are required")


__all__ = [
    "ACTIVE_FLAG_STATUSES",
    "AbuseFlagWorkflow",
    "DeviceFraudDetails",
    "FlagDetails",
    "OtherDetails",
    "RedemptionAbuseDetails",
    "ReviewAbuseDetails",
    "SuspiciousReferralDetails",
    "VelocityAbuseDetails",
    "parse_flag_details",
]
