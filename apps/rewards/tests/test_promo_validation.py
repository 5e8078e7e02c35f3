"""Tests for promo code validation and usage recording."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError

from minuteserv_rewards.core.settings import settings
from minuteserv_rewards.models.loyalty import PointsSourceType
from minuteserv_rewards.models.promotions import PromoCode, PromoCodeUsage, PromoDiscountType
from minuteserv_rewards.observability.rewards import get_rewards_store
from minuteserv_rewards.services.errors import NotFoundError
from minuteserv_rewards.services.loyalty import PointsLedger
from minuteserv_rewards.services.promotions import (
    BookingsTableHistory,
    LedgerBookingHistory,
    PromoRejectionReason,
    PromoService,
    build_booking_history,
)


async def _create_promo(session_factory, **overrides) -> PromoCode:
    values = {
        "code": "SAVE10",
        "discount_type": PromoDiscountType.PERCENTAGE,
        "discount_value": Decimal("10"),
        "applicable_services": [],
        "applicable_categories": [],
        "usage_limit_per_user": None,
    }
    values.update(overrides)
    async with session_factory() as session:
        async with session.begin():
            promo = PromoCode(**values)
            session.add(promo)
    return promo


async def _add_usages(session_factory, promo_id: UUID, *user_ids: UUID) -> None:
    async with session_factory() as session:
        async with session.begin():
            for user_id in user_ids:
                session.add(
                    PromoCodeUsage(
                        promo_code_id=promo_id,
                        user_id=user_id,
                        booking_id=uuid4(),
                        discount_amount=Decimal("10.00"),
                        order_amount=Decimal("100.00"),
                    )
                )


class _FailingHistory:
    async def count_completed_bookings(self, user_id: UUID) -> int:
        raise OperationalError("SELECT count(*) FROM bookings", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_percentage_code_is_case_insensitive(session_factory) -> None:
    promo = await _create_promo(session_factory)

    async with session_factory() as session:
        result = await PromoService(session).validate_promo_code("  save10 ", 250)

    assert result.valid is True
    assert result.discount == Decimal("25.00")
    assert result.promo_code == "SAVE10"
    assert result.promo_code_id == promo.id
    assert result.discount_type == PromoDiscountType.PERCENTAGE
    assert result.message is None


@pytest.mark.asyncio
async def test_flat_code_below_minimum_reports_minimum(session_factory) -> None:
    await _create_promo(
        session_factory,
        code="FLAT50",
        discount_type=PromoDiscountType("fixed"),
        discount_value=Decimal("50"),
        min_order_amount=Decimal("100"),
    )

    async with session_factory() as session:
        service = PromoService(session)
        rejected = await service.validate_promo_code("FLAT50", 80)
        accepted = await service.validate_promo_code("FLAT50", 100)

    assert rejected.valid is False
    assert rejected.discount == Decimal("0")
    assert rejected.message == "Minimum order amount is ₹100"
    assert rejected.reason == PromoRejectionReason.BELOW_MINIMUM
    assert accepted.valid is True
    assert accepted.discount == Decimal("50.00")
    assert accepted.discount_type == PromoDiscountType.FLAT


@pytest.mark.asyncio
async def test_expiry_is_reported_before_minimum_amount(session_factory) -> None:
    now = datetime.now(timezone.utc)
    await _create_promo(
        session_factory,
        code="OLD",
        valid_until=now - timedelta(days=1),
        min_order_amount=Decimal("500"),
    )
    await _create_promo(session_factory, code="SOON", valid_from=now + timedelta(days=1))

    async with session_factory() as session:
        service = PromoService(session)
        expired = await service.validate_promo_code("OLD", 100, now=now)
        upcoming = await service.validate_promo_code("SOON", 100, now=now)

    assert expired.message == "Promo code expired"
    assert expired.reason == PromoRejectionReason.EXPIRED
    assert upcoming.message == "Promo code not yet valid"
    assert upcoming.reason == PromoRejectionReason.NOT_YET_VALID


@pytest.mark.asyncio
async def test_unknown_and_inactive_codes_are_invalid(session_factory) -> None:
    await _create_promo(session_factory, code="PAUSED", is_active=False)

    async with session_factory() as session:
        service = PromoService(session)
        unknown = await service.validate_promo_code("NOPE", 100)
        paused = await service.validate_promo_code("PAUSED", 100)
        empty = await service.validate_promo_code("   ", 100)
        negative = await service.validate_promo_code("SAVE10", -1)

    assert unknown.message == paused.message == "Invalid promo code"
    assert unknown.reason == PromoRejectionReason.NOT_FOUND
    assert empty.valid is False
    assert empty.reason == PromoRejectionReason.MISSING_CODE
    assert negative.valid is False
    assert negative.reason == PromoRejectionReason.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_max_discount_caps_percentage(session_factory) -> None:
    await _create_promo(
        session_factory,
        code="BIG20",
        discount_value=Decimal("20"),
        max_discount=Decimal("100"),
    )

    async with session_factory() as session:
        result = await PromoService(session).validate_promo_code("BIG20", 1000)

    assert result.valid is True
    assert result.discount == Decimal("100.00")


@pytest.mark.asyncio
async def test_discount_is_floored_to_two_decimals(session_factory) -> None:
    await _create_promo(session_factory, code="ODD", discount_value=Decimal("12.5"))

    async with session_factory() as session:
        result = await PromoService(session).validate_promo_code("ODD", Decimal("99.99"))

    assert result.discount == Decimal("12.49")


@pytest.mark.asyncio
async def test_per_user_limit_counts_usage_rows(session_factory) -> None:
    user_id = uuid4()
    promo = await _create_promo(session_factory, code="ONCE", usage_limit_per_user=1)
    await _add_usages(session_factory, promo.id, user_id)

    async with session_factory() as session:
        service = PromoService(session)
        repeat = await service.validate_promo_code("ONCE", 200, user_id)
        other_user = await service.validate_promo_code("ONCE", 200, uuid4())
        anonymous = await service.validate_promo_code("ONCE", 200)

    assert repeat.valid is False
    assert repeat.message == "You have already used this promo code"
    assert repeat.reason == PromoRejectionReason.USER_LIMIT_REACHED
    assert other_user.valid is True
    assert anonymous.valid is True


@pytest.mark.asyncio
async def test_first_time_only_uses_booking_history_from_ledger(session_factory) -> None:
    returning = uuid4()
    await _create_promo(session_factory, code="WELCOME", first_time_only=True)

    async with session_factory() as session:
        await PointsLedger(session).award_points(returning, 300, PointsSourceType.BOOKING, uuid4())

    async with session_factory() as session:
        service = PromoService(session, booking_history=LedgerBookingHistory(session))
        rejected = await service.validate_promo_code("WELCOME", 300, returning)
        accepted = await service.validate_promo_code("WELCOME", 300, uuid4())
        anonymous = await service.validate_promo_code("WELCOME", 300)

    assert rejected.message == "This promo code is only valid for first-time users"
    assert rejected.reason == PromoRejectionReason.FIRST_TIME_ONLY
    assert accepted.valid is True
    assert anonymous.valid is True


async def _create_bookings(session_factory, *rows: tuple[UUID, str]) -> None:
    async with session_factory() as session:
        async with session.begin():
            await session.execute(text("CREATE TABLE bookings (id TEXT PRIMARY KEY, user_id CHAR(32), status TEXT)"))
            await session.execute(
                text("INSERT INTO bookings (id, user_id, status) VALUES (:id, :user_id, :status)"),
                [
                    {"id": f"b{index}", "user_id": user_id.hex, "status": status}
                    for index, (user_id, status) in enumerate(rows, start=1)
                ],
            )


@pytest.mark.asyncio
async def test_first_time_only_with_bookings_table(session_factory) -> None:
    returning = uuid4()
    cancelled_only = uuid4()
    await _create_promo(session_factory, code="WELCOME", first_time_only=True)
    await _create_bookings(session_factory, (returning, "completed"), (cancelled_only, "cancelled"))

    async with session_factory() as session:
        service = PromoService(session)
        rejected = await service.validate_promo_code("WELCOME", 300, returning)
        accepted = await service.validate_promo_code("WELCOME", 300, cancelled_only)

    assert rejected.reason == PromoRejectionReason.FIRST_TIME_ONLY
    assert accepted.valid is True


@pytest.mark.asyncio
async def test_confirmed_booking_without_promo_is_not_first_time(session_factory) -> None:
    # No earn row and no promo usage exist for this user; only the bookings table knows.
    confirmed = uuid4()
    await _create_promo(session_factory, code="WELCOME", first_time_only=True)
    await _create_bookings(session_factory, (confirmed, "confirmed"))

    async with session_factory() as session:
        result = await PromoService(session).validate_promo_code("WELCOME", 300, confirmed)

    assert result.valid is False
    assert result.reason == PromoRejectionReason.FIRST_TIME_ONLY


@pytest.mark.asyncio
async def test_booking_history_source_follows_settings(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        monkeypatch.setattr(settings, "promo_booking_history_source", "ledger")
        assert isinstance(build_booking_history(session), LedgerBookingHistory)
        monkeypatch.setattr(settings, "promo_booking_history_source", "bookings_table")
        assert isinstance(build_booking_history(session), BookingsTableHistory)


@pytest.mark.asyncio
async def test_total_limit_uses_usage_log_not_cached_counter(session_factory) -> None:
    exhausted = await _create_promo(session_factory, code="LIMITED", total_usage_limit=2, used_count=0)
    await _add_usages(session_factory, exhausted.id, uuid4(), uuid4())
    await _create_promo(session_factory, code="STALE", total_usage_limit=2, used_count=5)

    async with session_factory() as session:
        service = PromoService(session)
        limited = await service.validate_promo_code("LIMITED", 200, uuid4())
        stale = await service.validate_promo_code("STALE", 200, uuid4())

    assert limited.valid is False
    assert limited.message == "Promo code usage limit reached"
    assert limited.reason == PromoRejectionReason.USAGE_LIMIT_REACHED
    assert stale.valid is True


@pytest.mark.asyncio
async def test_applicability_only_checked_when_selection_given(session_factory) -> None:
    await _create_promo(session_factory, code="FACIAL15", applicable_categories=["facial"])

    async with session_factory() as session:
        service = PromoService(session)
        mismatch = await service.validate_promo_code("FACIAL15", 500, categories=["massage"])
        match = await service.validate_promo_code("FACIAL15", 500, categories=["Facial"])
        unspecified = await service.validate_promo_code("FACIAL15", 500)

    assert mismatch.valid is False
    assert mismatch.reason == PromoRejectionReason.NOT_APPLICABLE
    assert match.valid is True
    assert unspecified.valid is True


@pytest.mark.asyncio
async def test_database_failure_is_reported_not_raised(session_factory) -> None:
    await _create_promo(session_factory, code="WELCOME", first_time_only=True)

    async with session_factory() as session:
        service = PromoService(session, booking_history=_FailingHistory())
        result = await service.validate_promo_code("WELCOME", 300, uuid4())

    assert result.valid is False
    assert result.message == "Error validating promo code"
    assert result.reason == PromoRejectionReason.ERROR


@pytest.mark.asyncio
async def test_validation_outcomes_are_counted(session_factory) -> None:
    await _create_promo(session_factory)

    async with session_factory() as session:
        service = PromoService(session)
        await service.validate_promo_code("SAVE10", 100)
        await service.validate_promo_code("MISSING", 100)

    counts = get_rewards_store().snapshot().promo_validations
    assert counts["total"] == 2
    assert counts["outcome:valid"] == 1
    assert counts["outcome:not_found"] == 1


@pytest.mark.asyncio
async def test_record_usage_is_idempotent_per_booking(session_factory) -> None:
    promo = await _create_promo(session_factory)
    user_id = uuid4()
    booking_id = uuid4()

    async with session_factory() as session:
        service = PromoService(session)
        first = await service.record_promo_code_usage(promo.id, user_id, booking_id, Decimal("25.00"), Decimal("250"))
        again = await service.record_promo_code_usage(promo.id, user_id, booking_id, Decimal("25.00"), Decimal("250"))
        assert first.id == again.id

        with pytest.raises(NotFoundError):
            await service.record_promo_code_usage(uuid4(), user_id, uuid4(), Decimal("1"), Decimal("10"))

    async with session_factory() as session:
        usages = (
            await session.execute(select(PromoCodeUsage).where(PromoCodeUsage.promo_code_id == promo.id))
        ).scalars().all()
        stored = await session.get(PromoCode, promo.id)

    assert len(usages) == 1
    assert usages[0].discount_amount == Decimal("25.00")
    assert stored.used_count == 1
