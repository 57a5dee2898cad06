"""Typed failures surfaced by the ledger core.

Every error is recoverable and user-visible: the transaction that raised it has
already been rolled back and no partial state remains.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class LedgerError(RuntimeError):
    """Base exception for ledger core failures."""


class InvalidAmount(LedgerError):
    """Raised for non-positive point quantities."""

    def __init__(self, points: Any, message: str | None = None) -> None:
        super().__init__(message or f"Point amount must be a positive integer, got {points!r}")
        self.points = points


class _InsufficientBalance(LedgerError):
    bucket = "points"

    def __init__(self, user_id: UUID, requested: int, available: int) -> None:
        super().__init__(
            f"User {user_id} has {available} {self.bucket} points, cannot take {requested}"
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class InsufficientPendingBalance(_InsufficientBalance):
    bucket = "pending"


class InsufficientAvailableBalance(_InsufficientBalance):
    bucket = "available"


class TierHierarchyViolation(LedgerError):
    """Raised when active tiers would stop increasing in min points with level."""

    def __init__(self, lower_level: int, higher_level: int, message: str | None = None) -> None:
        super().__init__(
            message
            or f"Tier level {higher_level} must require more points than tier level {lower_level}"
        )
        self.lower_level = lower_level
        self.higher_level = higher_level


class TierNotFound(LedgerError):
    pass


class TierInactive(LedgerError):
    pass


class DuplicateSlotNumber(LedgerError):
    def __init__(self, slot_number: int, config_id: UUID) -> None:
        super().__init__(f"Slot number {slot_number} already exists for referral config {config_id}")
        self.slot_number = slot_number
        self.config_id = config_id


class NoSlotsAvailable(LedgerError):
    def __init__(self, config_id: UUID) -> None:
        super().__init__(f"No referral reward slots remain for config {config_id}")
        self.config_id = config_id


class InvalidRuleConfiguration(LedgerError):
    pass


class InvalidFlagDetails(LedgerError):
    """Raised when flag details do not match the payload shape of the flag type."""


class InvalidFlagReview(LedgerError):
    """Raised when a review step is missing its reviewer, notes or action."""


class InvalidStateTransition(LedgerError):
    """Raised when an abuse flag transition violates the review workflow."""

    def __init__(self, current_status: Any, requested_status: Any) -> None:
        current = getattr(current_status, "value", current_status)
        requested = getattr(requested_status, "value", requested_status)
        super().__init__(f"Cannot transition abuse flag from {current} to {requested}")
        self.current_status = current_status
        self.requested_status = requested_status


class NotFound(LedgerError):
    def __init__(self, entity: str, identifier: Any) -> None:
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class DuplicateEntity(LedgerError):
    pass


class CreditBlocked(LedgerError):
    """Raised when an active high-severity abuse flag blocks new credits."""

    def __init__(self, user_id: UUID, flag_ids: list[UUID]) -> None:
        super().__init__(f"User {user_id} has blocking abuse flags; new points cannot be credited")
        self.user_id = user_id
        self.flag_ids = flag_ids


class ProgramDisabled(LedgerError):
    pass


class ReferralNotEligible(LedgerError):
    pass


__all__ = [
    "CreditBlocked",
    "DuplicateEntity",
    "DuplicateSlotNumber",
    "InsufficientAvailableBalance",
    "InsufficientPendingBalance",
    "InvalidAmount",
    "InvalidFlagDetails",
    "InvalidFlagReview",
    "InvalidRuleConfiguration",
    "InvalidStateTransition",
    "LedgerError",
    "NoSlotsAvailable",
    "NotFound",
    "ProgramDisabled",
    "ReferralNotEligible",
    "TierHierarchyViolation",
    "TierInactive",
    "TierNotFound",
]
