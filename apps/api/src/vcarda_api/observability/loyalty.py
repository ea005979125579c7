from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    ledger: Dict[str, int]
    tokens: Dict[str, Dict[str, int]]
    provisioning: Dict[str, int]
    notifications: Dict[str, int]
    reconciliation: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "ledger": dict(self.ledger),
            "tokens": {key: dict(value) for key, value in self.tokens.items()},
            "provisioning": dict(self.provisioning),
            "notifications": dict(self.notifications),
            "reconciliation": dict(self.reconciliation),
        }


class LoyaltyObservabilityStore:
    """Collect ledger and token telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._ledger: Dict[str, int] = defaultdict(int)
        self._token_issued: Dict[str, int] = defaultdict(int)
        self._token_outcomes: Dict[str, int] = defaultdict(int)
        self._provisioning: Dict[str, int] = defaultdict(int)
        self._notifications: Dict[str, int] = defaultdict(int)
        self._reconciliation: Dict[str, int] = defaultdict(int)

    def record_award(self, *, source: str, delta: int, applied: bool) -> None:
        with self._lock:
            if not applied:
                self._ledger["replays"] += 1
                return
            if delta < 0:
                self._ledger["redemptions"] += 1
                self._ledger["points_redeemed"] += -delta
            else:
                self._ledger["awards"] += 1
                self._ledger["points_awarded"] += delta
            self._ledger[f"source:{source}"] += 1

    def record_insufficient_balance(self) -> None:
        with self._lock:
            self._ledger["insufficient_balance"] += 1

    def record_store_unavailable(self, operation: str) -> None:
        with self._lock:
            self._ledger["store_unavailable"] += 1
            self._ledger[f"store_unavailable:{operation}"] += 1

    def record_token_issued(self, subject_kind: str) -> None:
        with self._lock:
            self._token_issued[subject_kind] += 1

    def record_token_outcome(self, outcome: str) -> None:
        with self._lock:
            self._token_outcomes[outcome] += 1

    def record_provisioning(self, event: str) -> None:
        with self._lock:
            self._provisioning[event] += 1

    def record_notification(self, status: str) -> None:
        with self._lock:
            self._notifications[status] += 1

    def record_reconciliation(self, *, discrepancies: int, repaired: int) -> None:
        with self._lock:
            self._reconciliation["runs"] += 1
            self._reconciliation["discrepancies"] += discrepancies
            self._reconciliation["repaired"] += repaired

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                ledger=dict(self._ledger),
                tokens={
                    "issued": dict(self._token_issued),
                    "outcomes": dict(self._token_outcomes),
                },
                provisioning=dict(self._provisioning),
                notifications=dict(self._notifications),
                reconciliation=dict(self._reconciliation),
            )

    def reset(self) -> None:
        with self._lock:
            self._ledger.clear()
            self._token_issued.clear()
            self._token_outcomes.clear()
            self._provisioning.clear()
            self._notifications.clear()
            self._reconciliation.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
