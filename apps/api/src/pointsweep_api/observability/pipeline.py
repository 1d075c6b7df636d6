"""In-memory counters for sweeps, webhook deliveries and broker callbacks."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class SweepEventLog:
    last_run_at: datetime | None = None
    last_run_id: str | None = None
    last_market_closed_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None


@dataclass
class DeliveryEventLog:
    last_sent_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_failure_target: str | None = None
    last_failure_reason: str | None = None


@dataclass
class PipelineObservabilitySnapshot:
    sweep_totals: Dict[str, int]
    delivery_totals: Dict[str, Dict[str, int]]
    callback_totals: Dict[str, Dict[str, int]]
    sweep_events: SweepEventLog
    delivery_events: DeliveryEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "sweeps": {
                "totals": self.sweep_totals,
                "events": {
                    "last_run_at": _iso(self.sweep_events.last_run_at),
                    "last_run_id": self.sweep_events.last_run_id,
                    "last_market_closed_at": _iso(self.sweep_events.last_market_closed_at),
                    "last_error_at": _iso(self.sweep_events.last_error_at),
                    "last_error": self.sweep_events.last_error,
                },
            },
            "deliveries": {
                "totals": self.delivery_totals,
                "events": {
                    "last_sent_at": _iso(self.delivery_events.last_sent_at),
                    "last_failure_at": _iso(self.delivery_events.last_failure_at),
                    "last_failure_target": self.delivery_events.last_failure_target,
                    "last_failure_reason": self.delivery_events.last_failure_reason,
                },
            },
            "callbacks": {"totals": self.callback_totals},
        }


@dataclass
class PipelineObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _sweep_totals: Counter = field(default_factory=Counter)
    _sweep_events: SweepEventLog = field(default_factory=SweepEventLog)
    _delivery_totals: Dict[str, Counter] = field(default_factory=lambda: {"sent": Counter(), "failed": Counter()})
    _delivery_events: DeliveryEventLog = field(default_factory=DeliveryEventLog)
    _callback_totals: Dict[str, Counter] = field(default_factory=dict)

    def record_sweep(self, run_id: str, *, orders_processed: int, orders_failed: int, group_errors: int) -> None:
        with self._lock:
            self._sweep_totals["runs"] += 1
            self._sweep_totals["orders_processed"] += orders_processed
            self._sweep_totals["orders_failed"] += orders_failed
            self._sweep_totals["group_errors"] += group_errors
            self._sweep_events.last_run_at = _utcnow()
            self._sweep_events.last_run_id = run_id

    def record_market_closed(self) -> None:
        with self._lock:
            self._sweep_totals["market_closed"] += 1
            self._sweep_events.last_market_closed_at = _utcnow()

    def record_sweep_error(self, error: str) -> None:
        with self._lock:
            self._sweep_totals["errors"] += 1
            self._sweep_events.last_error_at = _utcnow()
            self._sweep_events.last_error = error

    def record_delivery(self, event_type: str, *, success: bool, target: str | None, error: str | None) -> None:
        with self._lock:
            bucket = "sent" if success else "failed"
            self._delivery_totals[bucket][event_type] += 1
            now = _utcnow()
            if success:
                self._delivery_events.last_sent_at = now
            else:
                self._delivery_events.last_failure_at = now
                self._delivery_events.last_failure_target = target
                self._delivery_events.last_failure_reason = error

    def record_callback(self, event_type: str, outcome: str, count: int = 1) -> None:
        with self._lock:
            self._callback_totals.setdefault(outcome, Counter())[event_type] += count

    def snapshot(self) -> PipelineObservabilitySnapshot:
        with self._lock:
            return PipelineObservabilitySnapshot(
                sweep_totals=dict(self._sweep_totals),
                delivery_totals={bucket: dict(counter) for bucket, counter in self._delivery_totals.items()},
                callback_totals={bucket: dict(counter) for bucket, counter in self._callback_totals.items()},
                sweep_events=SweepEventLog(**vars(self._sweep_events)),
                delivery_events=DeliveryEventLog(**vars(self._delivery_events)),
            )

    def reset(self) -> None:
        with self._lock:
            self._sweep_totals.clear()
            for counter in self._delivery_totals.values():
                counter.clear()
            self._callback_totals.clear()
            self._sweep_events = SweepEventLog()
            self._delivery_events = DeliveryEventLog()


_PIPELINE_STORE = PipelineObservabilityStore()


def get_pipeline_store() -> PipelineObservabilityStore:
    return _PIPELINE_STORE
