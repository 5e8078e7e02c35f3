"""Explicit atomicity boundaries for ledger mutations."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run the enclosed block as one all-or-nothing unit.

    An idle session gets a real transaction that commits on exit. When a
    transaction is already open the block becomes a SAVEPOINT, so primitives
    compose inside a caller's unit of work and only the outer commit makes
    them durable. Any exception rolls the block back and propagates.
    """

    if session.in_transaction():
        async with session.begin_nested():
            yield session
    else:
        async with session.begin():
            yield session


async def run_in_transaction(
    session: AsyncSession,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Functional form of :func:`atomic`: ``await fn(session, ...)`` atomically."""

    async with atomic(session) as tx_session:
        return await fn(tx_session, *args, **kwargs)


__all__ = ["atomic", "run_in_transaction"]
