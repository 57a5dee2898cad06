"""Recurring ledger maintenance jobs."""

from .config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions
from .runner import LedgerJobScheduler, resolve_task

__all__ = [
    "JobDefinition",
    "LedgerJobScheduler",
    "RetryPolicy",
    "ScheduleConfig",
    "load_job_definitions",
    "resolve_task",
]
