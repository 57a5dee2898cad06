from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LedgerSnapshot:
    operations: Dict[str, int]
    failures: Dict[str, int]
    slots: Dict[str, int]
    flags: Dict[str, int]
    expiry: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "operations": dict(self.operations),
            "failures": dict(self.failures),
            "slots": dict(self.slots),
            "flags": dict(self.flags),
            "expiry": dict(self.expiry),
        }


class LedgerObservabilityStore:
    """Collect ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._operations: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._slots: Dict[str, int] = defaultdict(int)
        self._flags: Dict[str, int] = defaultdict(int)
        self._expiry: Dict[str, int] = defaultdict(int)

    def record_operation(self, operation: str) -> None:
        with self._lock:
            self._operations[operation] += 1

    def record_failure(self, operation: str, error: str) -> None:
        with self._lock:
            self._failures["total"] += 1
            self._failures[f"{operation}:{error}"] += 1

    def record_slot_event(self, event: str) -> None:
        with self._lock:
            self._slots[event] += 1

    def record_flag_transition(self, status: str) -> None:
        with self._lock:
            self._flags[status] += 1

    def record_expiry_sweep(self, *, entries: int, points: int) -> None:
        with self._lock:
            self._expiry["sweeps"] += 1
            self._expiry["entries"] += entries
            self._expiry["points"] += points

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(
                operations=dict(self._operations),
                failures=dict(self._failures),
                slots=dict(self._slots),
                flags=dict(self._flags),
                expiry=dict(self._expiry),
            )

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._failures.clear()
            self._slots.clear()
            self._flags.clear()
            self._expiry.clear()


_STORE = LedgerObservabilityStore()


def get_ledger_store() -> LedgerObservabilityStore:
    return _STORE


__all__ = ["get_ledger_store", "LedgerObservabilityStore", "LedgerSnapshot"]
