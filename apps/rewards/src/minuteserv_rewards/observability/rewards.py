from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RewardsSnapshot:
    ledger: Dict[str, int]
    promo_validations: Dict[str, int]
    reconciliation: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "promo_validations": dict(self.promo_validations),
            "reconciliation": dict(self.reconciliation),
        }


class RewardsObservabilityStore:
    """Collect ledger, promo and reconciliation telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._promo_validations: Dict[str, int] = defaultdict(int)
        self._reconciliation: Dict[str, int] = defaultdict(int)

    def record_ledger_event(self, event: str, *, points: int = 0) -> None:
        with self._lock:
            self._ledger[f"{event}:count"] += 1
            if points:
                self._ledger[f"{event}:points"] += abs(points)

    def record_promo_validation(self, outcome: str) -> None:
        with self._lock:
            self._promo_validations["total"] += 1
            self._promo_validations[f"outcome:{outcome}"] += 1

    def record_reconciliation_run(self, *, scanned: int, updated: int, failed: int) -> None:
        with self._lock:
            self._reconciliation["runs"] += 1
            self._reconciliation["codes_scanned"] += scanned
            self._reconciliation["codes_updated"] += updated
            self._reconciliation["codes_failed"] += failed

    def record_reconciliation_drift(self, delta: int) -> None:
        with self._lock:
            self._reconciliation["drift_total"] += abs(delta)

    def snapshot(self) -> RewardsSnapshot:
        with self._lock:
            return RewardsSnapshot(
                ledger=dict(self._ledger),
                promo_validations=dict(self._promo_validations),
                reconciliation=dict(self._reconciliation),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._promo_validations.clear()
            self._reconciliation.clear()


_STORE = RewardsObservabilityStore()


def get_rewards_store() -> RewardsObservabilityStore:
    return _STORE


__all__ = ["get_rewards_store", "RewardsObservabilityStore", "RewardsSnapshot"]
