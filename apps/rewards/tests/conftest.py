import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from minuteserv_rewards.db.base import Base, import_models  # noqa: E402
from minuteserv_rewards.db.session import build_engine  # noqa: E402
from minuteserv_rewards.observability.rewards import get_rewards_store  # noqa: E402
from minuteserv_rewards.observability.scheduler import get_scheduler_store  # noqa: E402


async def _create_factory(database_url: str, **engine_kwargs):
    engine = build_engine(database_url, **engine_kwargs)
    import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    # One shared in-memory connection: sessions must be used one at a time.
    engine, factory = await _create_factory("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path: Path):
    """File-backed database where every session gets its own connection."""

    engine, factory = await _create_factory(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_observability():
    get_rewards_store().reset()
    get_scheduler_store().reset()
    yield
