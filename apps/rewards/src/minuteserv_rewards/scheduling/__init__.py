"""Scheduling utilities for recurring rewards maintenance."""

from .config import JobDefinition, ScheduleConfig, load_job_definitions, parse_schedule
from .runner import RewardsJobScheduler, compute_backoff

__all__ = [
    "JobDefinition",
    "RewardsJobScheduler",
    "ScheduleConfig",
    "compute_backoff",
    "load_job_definitions",
    "parse_schedule",
]
