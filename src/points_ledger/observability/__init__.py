from .ledger import LedgerObservabilityStore, LedgerSnapshot, get_ledger_store
from .scheduler import SchedulerObservabilityStore, get_scheduler_store

__all__ = [
    "LedgerObservabilityStore",
    "LedgerSnapshot",
    "SchedulerObservabilityStore",
    "get_ledger_store",
    "get_scheduler_store",
]
