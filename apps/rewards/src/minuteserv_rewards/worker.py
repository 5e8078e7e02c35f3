"""Long-running scheduler process for rewards maintenance jobs."""

from __future__ import annotations

import asyncio
import signal
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from .core.logging import configure_logging
from .core.settings import settings
from .db.session import async_session, engine
from .observability.tracing import configure_tracing
from .scheduling import RewardsJobScheduler


def _session_factory() -> AsyncSession:
    return async_session()


def resolve_schedule_path(raw: str | None = None) -> Path:
    path = Path(raw or settings.job_schedule_path)
    if not path.is_absolute():
        # apps/rewards/<path>
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


@asynccontextmanager
async def scheduler_lifespan(schedule_path: Path | None = None) -> AsyncIterator[RewardsJobScheduler | None]:
    """Start the job scheduler for the duration of the context."""

    if not settings.job_scheduler_enabled:
        logger.info("Rewards job scheduler disabled", reason="job_scheduler_enabled is false")
        yield None
        return

    path = schedule_path or resolve_schedule_path()
    scheduler = RewardsJobScheduler(session_factory=_session_factory, config_path=path)
    try:
        scheduler.start()
    except FileNotFoundError as exc:
        logger.exception("Rewards job scheduler failed to start", error=str(exc))
        yield None
        return

    logger.info("Rewards job scheduler enabled", schedule_path=str(path))
    try:
        yield scheduler
    finally:
        if scheduler.is_running:
            await scheduler.stop()


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    stop = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    try:
        async with scheduler_lifespan():
            await stop.wait()
    finally:
        await engine.dispose()
        logger.info("Rewards worker stopped")


def main() -> None:
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=settings.service_version,
        level=settings.log_level,
        json_logs=settings.log_json,
    )
    configure_tracing(
        service_name=settings.service_name,
        service_version=settings.service_version,
        environment=settings.environment,
    )
    asyncio.run(run_worker())


__all__ = ["main", "resolve_schedule_path", "run_worker", "scheduler_lifespan"]
