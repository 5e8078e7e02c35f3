"""Dispatch metrics for the rewards job scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobMetrics:
    """Mutable per-job counters; only touched under the store lock."""

    job_id: str
    task: str
    runs: int = 0
    successes: int = 0
    run_failures: int = 0
    attempt_failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    total_runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_retry_delay_seconds: float | None = None
    last_result: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {
                "runs": self.runs,
                "success": self.successes,
                "run_failures": self.run_failures,
                "attempt_failures": self.attempt_failures,
                "retries": self.retries,
                "consecutive_failures": self.consecutive_failures,
            },
            "total_runtime_seconds": self.total_runtime_seconds,
            "last_started_at": _iso(self.last_started_at),
            "last_finished_at": _iso(self.last_finished_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_retry_delay_seconds": self.last_retry_delay_seconds,
            "last_result": dict(self.last_result),
        }


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, Dict[str, object]]

    def as_dict(self) -> Dict[str, object]:
        return {"totals": dict(self.totals), "jobs": dict(self.jobs)}


class SchedulerObservabilityStore:
    """Thread-safe record of scheduled job dispatches, retries and outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobMetrics] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _metrics(self, job_id: str, task: str) -> JobMetrics:
        metrics = self._jobs.setdefault(job_id, JobMetrics(job_id=job_id, task=task))
        metrics.task = task
        return metrics

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            metrics = self._metrics(job_id, task)
            metrics.runs += 1
            metrics.last_started_at = _utcnow()
            metrics.last_finished_at = None
            metrics.last_attempts = 0
            metrics.last_retry_delay_seconds = None

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            metrics = self._metrics(job_id, task)
            metrics.attempt_failures += 1
            metrics.consecutive_failures += 1
            metrics.last_attempts = attempts
            metrics.last_error = error
            metrics.last_error_at = _utcnow()

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            metrics = self._metrics(job_id, task)
            metrics.retries += 1
            metrics.last_attempts = attempts
            metrics.last_retry_delay_seconds = delay_seconds

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        attempts: int,
        result: Dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            metrics = self._metrics(job_id, task)
            finished = _utcnow()
            metrics.successes += 1
            metrics.consecutive_failures = 0
            metrics.total_runtime_seconds += runtime_seconds
            metrics.last_finished_at = finished
            metrics.last_success_at = finished
            metrics.last_attempts = attempts
            metrics.last_error = None
            metrics.last_error_at = None
            metrics.last_result = dict(result or {})

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            metrics = self._metrics(job_id, task)
            finished = _utcnow()
            metrics.run_failures += 1
            metrics.total_runtime_seconds += runtime_seconds
            metrics.last_finished_at = finished
            metrics.last_error_at = finished
            metrics.last_error = error
            metrics.last_attempts = attempts

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: metrics.as_dict() for job_id, metrics in self._jobs.items()}
            states = list(self._jobs.values())
        totals = {
            "runs": sum(state.runs for state in states),
            "success": sum(state.successes for state in states),
            "run_failures": sum(state.run_failures for state in states),
            "attempt_failures": sum(state.attempt_failures for state in states),
            "retries": sum(state.retries for state in states),
        }
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = ["JobMetrics", "SchedulerObservabilityStore", "SchedulerSnapshot", "get_scheduler_store"]
