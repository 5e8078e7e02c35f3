"""Seed the default loyalty tier catalog into the rewards database."""

from __future__ import annotations

import asyncio

from minuteserv_rewards.db.session import build_engine, build_session_factory
from minuteserv_rewards.services.loyalty import DEFAULT_TIERS, seed_tiers


async def main() -> None:
    engine = build_engine()
    session_factory = build_session_factory(engine)

    try:
        async with session_factory() as session:
            async with session.begin():
                written = await seed_tiers(session, DEFAULT_TIERS)
        print(f"Loyalty tiers ready ({written}) ✅")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
