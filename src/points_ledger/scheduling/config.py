"""TOML loader for the recurring ledger jobs (expiry sweep, expiry warnings)."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff between attempts of a single scheduled run."""

    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0

    @classmethod
    def from_mapping(cls, payload: dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
            base_backoff_seconds=max(float(payload.get("base_backoff_seconds", 5.0) or 0), 0.0),
            backoff_multiplier=max(float(payload.get("backoff_multiplier", 2.0) or 1), 1.0),
            max_backoff_seconds=max(float(payload.get("max_backoff_seconds", 60.0) or 0), 0.0),
            jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retrying after ``attempt`` failed."""

        delay = self.base_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return max(delay, 0.0)

    def as_dict(self) -> dict[str, float | int]:
        return {
            "max_attempts": self.max_attempts,
            "base_seconds": self.base_backoff_seconds,
            "multiplier": self.backoff_multiplier,
            "max_seconds": self.max_backoff_seconds,
            "jitter_seconds": self.jitter_seconds,
        }


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    @property
    def enabled_jobs(self) -> list[JobDefinition]:
        return [job for job in self.jobs if job.enabled]


def _parse_job(key: str, payload: Any) -> JobDefinition | None:
    if not isinstance(payload, dict):
        return None
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or not isinstance(cron, str):
        return None
    kwargs = payload.get("kwargs", {})
    return JobDefinition(
        id=str(payload.get("id") or key),
        task=task,
        cron=cron,
        kwargs=kwargs if isinstance(kwargs, dict) else {},
        enabled=bool(payload.get("enabled", True)),
        retry=RetryPolicy.from_mapping(payload),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse ``config_path``; malformed job tables are skipped."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs = [
        job
        for job in (_parse_job(key, payload) for key, payload in data.get("jobs", {}).items())
        if job is not None
    ]
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "RetryPolicy", "ScheduleConfig", "load_job_definitions"]
