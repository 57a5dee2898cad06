"""Small helpers shared by the rule store services."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, TypeVar
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidRuleConfiguration, NotFound

ModelT = TypeVar("ModelT")


async def get_or_raise(db: AsyncSession, model: type[ModelT], identifier: UUID, entity: str) -> ModelT:
    instance = await db.get(model, identifier)
    if instance is None:
        raise NotFound(entity, identifier)
    return instance


def apply_changes(instance: Any, changes: Mapping[str, Any], allowed: Iterable[str]) -> dict[str, Any]:
    """Assign whitelisted attributes; unknown keys are rejected, not ignored."""

    allowed_fields = set(allowed)
    unknown = sorted(set(changes) - allowed_fields)
    if unknown:
        raise InvalidRuleConfiguration(f"Unsupported fields for {type(instance).__name__}: {', '.join(unknown)}")
    applied: dict[str, Any] = {}
    for key, value in changes.items():
        if getattr(instance, key) != value:
            setattr(instance, key, value)
            applied[key] = value
    return applied


__all__ = ["apply_changes", "get_or_raise"]
