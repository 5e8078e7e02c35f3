"""TOML schedule loader for rewards maintenance jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib


@dataclass(slots=True)
class JobDefinition:
    """A cron-scheduled async task with retry policy."""

    id: str
    task: str
    cron: str
    enabled: bool = True
    description: str | None = None
    kwargs: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0
    misfire_grace_seconds: int = 300


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    def get(self, job_id: str) -> JobDefinition | None:
        return next((job for job in self.jobs if job.id == job_id), None)


def _number(payload: Mapping[str, Any], key: str, default: float, *, floor: float) -> float:
    raw = payload.get(key, default)
    try:
        value = float(raw if raw is not None else default)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for {key}: {raw!r}") from exc
    return max(value, floor)


def parse_schedule(data: Mapping[str, Any]) -> ScheduleConfig:
    """Build a schedule from decoded TOML; entries without task or cron are rejected."""

    entries = data.get("jobs", {})
    if not isinstance(entries, Mapping):
        raise ValueError("[jobs] must be a table")

    jobs: list[JobDefinition] = []
    for key, payload in entries.items():
        if not isinstance(payload, Mapping):
            raise ValueError(f"Job {key} must be a table")
        task = payload.get("task")
        cron = payload.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            raise ValueError(f"Job {key} requires string 'task' and 'cron' entries")
        kwargs = payload.get("kwargs") or {}
        if not isinstance(kwargs, Mapping):
            raise ValueError(f"Job {key} kwargs must be a table")

        jobs.append(
            JobDefinition(
                id=str(payload.get("id") or key),
                task=task,
                cron=cron,
                enabled=bool(payload.get("enabled", True)),
                description=payload.get("description"),
                kwargs=dict(kwargs),
                max_attempts=int(_number(payload, "max_attempts", 1, floor=1)),
                base_backoff_seconds=_number(payload, "base_backoff_seconds", 5.0, floor=0.0),
                backoff_multiplier=_number(payload, "backoff_multiplier", 2.0, floor=1.0),
                max_backoff_seconds=_number(payload, "max_backoff_seconds", 60.0, floor=0.0),
                jitter_seconds=_number(payload, "jitter_seconds", 1.0, floor=0.0),
                misfire_grace_seconds=int(_number(payload, "misfire_grace_seconds", 300, floor=1)),
            )
        )

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")
    return parse_schedule(tomllib.loads(config_path.read_text()))


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions", "parse_schedule"]
