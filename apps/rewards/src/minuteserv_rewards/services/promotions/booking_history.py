"""Booking history sources for first-time-only promo checks."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence
from uuid import UUID

from sqlalchemy import column, func, select, table
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.types import String

from minuteserv_rewards.core.settings import settings
from minuteserv_rewards.models.loyalty import PointsSourceType, PointsTransaction, PointsTransactionType
from minuteserv_rewards.models.promotions import PromoCodeUsage


class BookingHistory(Protocol):
    """Protocol for counting a user's completed or confirmed bookings."""

    async def count_completed_bookings(self, user_id: UUID) -> int:
        ...


class LedgerBookingHistory:
    """Counts distinct bookings the rewards engine has already seen for a user.

    A booking shows up either as a booking-sourced earn row or as a promo usage
    row, so this works without access to the booking system's own tables.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def count_completed_bookings(self, user_id: UUID) -> int:
        earned = await self._session.execute(
            select(PointsTransaction.source_id).where(
                PointsTransaction.user_id == user_id,
                PointsTransaction.transaction_type == PointsTransactionType.EARN,
                PointsTransaction.source_type == PointsSourceType.BOOKING,
                PointsTransaction.source_id.is_not(None),
            )
        )
        used = await self._session.execute(
            select(PromoCodeUsage.booking_id).where(
                PromoCodeUsage.user_id == user_id,
                PromoCodeUsage.booking_id.is_not(None),
            )
        )
        return len(_distinct_refs([*earned.scalars().all(), *used.scalars().all()]))


class BookingsTableHistory:
    """Counts rows in a host ``bookings`` table with a completed/confirmed status."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        table_name: str = "bookings",
        statuses: Sequence[str] | None = None,
    ) -> None:
        self._session = session
        self._bookings = table(
            table_name,
            column("user_id", PG_UUID(as_uuid=True)),
            column("status", String()),
        )
        self._statuses = list(statuses if statuses is not None else settings.promo_completed_booking_statuses)

    async def count_completed_bookings(self, user_id: UUID) -> int:
        if not self._statuses:
            return 0
        stmt = (
            select(func.count())
            .select_from(self._bookings)
            .where(
                self._bookings.c.user_id == user_id,
                self._bookings.c.status.in_(self._statuses),
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)


def build_booking_history(session: AsyncSession) -> BookingHistory:
    """Booking history source selected by ``promo_booking_history_source``."""

    if settings.promo_booking_history_source == "ledger":
        return LedgerBookingHistory(session)
    return BookingsTableHistory(session, table_name=settings.promo_bookings_table)


def _distinct_refs(values: Iterable[object]) -> set[str]:
    refs: set[str] = set()
    for value in values:
        if value is None:
            continue
        try:
            refs.add(str(UUID(str(value))))
        except ValueError:
            refs.add(str(value))
    return refs


__all__ = ["BookingHistory", "BookingsTableHistory", "LedgerBookingHistory", "build_booking_history"]
