"""Tests for the points ledger."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from minuteserv_rewards.models.loyalty import (
    PointsAccount,
    PointsSourceType,
    PointsTransaction,
    PointsTransactionType,
)
from minuteserv_rewards.observability.rewards import get_rewards_store
from minuteserv_rewards.services.errors import (
    AccountError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from minuteserv_rewards.services.loyalty import PointsLedger, TierDefinition, seed_tiers

TEST_TIERS = (
    TierDefinition("bronze", 0, 499, Decimal("5.00"), ("basic_rewards",)),
    TierDefinition("silver", 500, 1499, Decimal("10.00"), ("priority_booking",)),
    TierDefinition("gold", 1500, None, Decimal("15.00"), ("exclusive_services",)),
)


async def _seed_tiers(session_factory, tiers=TEST_TIERS) -> None:
    async with session_factory() as session:
        async with session.begin():
            await seed_tiers(session, tiers)


async def _ledger_rows(session, user_id):
    result = await session.execute(
        select(PointsTransaction)
        .where(PointsTransaction.user_id == user_id)
        .order_by(PointsTransaction.created_at.asc())
    )
    return list(result.scalars().all())


def test_calculate_points_floors_booking_amount() -> None:
    assert PointsLedger.calculate_points(499.99) == 499
    assert PointsLedger.calculate_points(Decimal("1200.50")) == 1200
    assert PointsLedger.calculate_points("0") == 0

    with pytest.raises(ValidationError):
        PointsLedger.calculate_points(-10)
    with pytest.raises(ValidationError):
        PointsLedger.calculate_points("not-a-number")


@pytest.mark.asyncio
async def test_award_points_creates_account_and_logs_earn(session_factory) -> None:
    await _seed_tiers(session_factory)
    user_id = uuid4()
    booking_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        new_balance = await ledger.award_points(
            user_id,
            450,
            PointsSourceType.BOOKING,
            booking_id,
            "Points earned from booking",
        )
        assert new_balance == 450

        account = (
            await session.execute(select(PointsAccount).where(PointsAccount.user_id == user_id))
        ).scalar_one()
        assert account.balance == 450
        assert account.lifetime_earned == 450
        assert account.lifetime_redeemed == 0
        assert account.current_tier == "bronze"

        rows = await _ledger_rows(session, user_id)
        assert len(rows) == 1
        assert rows[0].transaction_type == PointsTransactionType.EARN
        assert rows[0].points == 450
        assert rows[0].balance_after == 450
        assert rows[0].source_id == str(booking_id)

    snapshot = get_rewards_store().snapshot()
    assert snapshot.ledger["earn:count"] == 1
    assert snapshot.ledger["earn:points"] == 450


@pytest.mark.asyncio
async def test_award_points_upgrades_tier_with_adjustment_row(session_factory) -> None:
    await _seed_tiers(session_factory)
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 300)
        await ledger.award_points(user_id, 300)

        account = (
            await session.execute(select(PointsAccount).where(PointsAccount.user_id == user_id))
        ).scalar_one()
        assert account.current_tier == "silver"
        assert account.tier_updated_at is not None

        rows = await _ledger_rows(session, user_id)
        adjustments = [row for row in rows if row.transaction_type == PointsTransactionType.ADJUSTMENT]
        assert len(adjustments) == 1
        assert adjustments[0].points == 0
        assert adjustments[0].source_type == PointsSourceType.TIER_UPGRADE
        assert adjustments[0].balance_after == 600
        assert adjustments[0].metadata_json == {"from_tier": "bronze", "to_tier": "silver"}


@pytest.mark.asyncio
async def test_balance_reports_next_tier_distance(session_factory) -> None:
    await _seed_tiers(session_factory, TEST_TIERS[:2])
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 450)
        snapshot = await ledger.get_balance(user_id)

    assert snapshot.balance == 450
    assert snapshot.current_tier == "bronze"
    assert snapshot.tier_info is not None
    assert snapshot.tier_info.cashback_percentage == Decimal("5.00")
    assert snapshot.next_tier is not None
    assert snapshot.next_tier.tier_name == "silver"
    assert snapshot.points_to_next_tier == 50
    assert snapshot.is_max_tier is False
    assert snapshot.can_redeem is True


@pytest.mark.asyncio
async def test_get_balance_creates_empty_account_once(session_factory) -> None:
    await _seed_tiers(session_factory)
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        first = await ledger.get_balance(user_id)
        second = await ledger.get_balance(user_id)

        count = (
            await session.execute(select(func.count(PointsAccount.id)).where(PointsAccount.user_id == user_id))
        ).scalar_one()

    assert first.balance == second.balance == 0
    assert first.current_tier == "bronze"
    assert first.can_redeem is False
    assert count == 1


@pytest.mark.asyncio
async def test_redeem_points_returns_discount_and_debits_balance(session_factory) -> None:
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 500)
        result = await ledger.redeem_points(user_id, 200)

        assert result.points_used == 200
        assert result.discount_amount == Decimal("20.00")
        assert result.new_balance == 300

        account = (
            await session.execute(select(PointsAccount).where(PointsAccount.user_id == user_id))
        ).scalar_one()
        assert account.balance == 300
        assert account.lifetime_redeemed == 200

        rows = await _ledger_rows(session, user_id)
        redeem_rows = [row for row in rows if row.transaction_type == PointsTransactionType.REDEEM]
        assert len(redeem_rows) == 1
        assert redeem_rows[0].points == -200
        assert redeem_rows[0].balance_after == 300
        assert redeem_rows[0].description == "Points redeemed for ₹20.00"


@pytest.mark.asyncio
@pytest.mark.parametrize("points", [150, 99, 0, -100])
async def test_redeem_rejects_amounts_off_the_step(session_factory, points) -> None:
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 1000)

        with pytest.raises(ValidationError):
            await ledger.redeem_points(user_id, points)

        snapshot = await ledger.get_balance(user_id)
        assert snapshot.balance == 1000
        rows = await _ledger_rows(session, user_id)
        assert all(row.transaction_type != PointsTransactionType.REDEEM for row in rows)


@pytest.mark.asyncio
async def test_redeem_more_than_balance_fails_without_side_effects(session_factory) -> None:
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 100)

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.redeem_points(user_id, 200)

        assert excinfo.value.available == 100
        assert excinfo.value.requested == 200
        assert str(excinfo.value) == "Insufficient points. Available: 100, Requested: 200"

        snapshot = await ledger.get_balance(user_id)
        assert snapshot.balance == 100
        assert snapshot.lifetime_redeemed == 0


@pytest.mark.asyncio
async def test_failed_redeem_leaves_loaded_rows_readable(session_factory) -> None:
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 100)
        earned = (await ledger.get_history(user_id)).transactions[0]

        with pytest.raises(InsufficientBalanceError):
            await ledger.redeem_points(user_id, 200)

        assert earned.points == 100
        assert earned.transaction_type == PointsTransactionType.EARN


@pytest.mark.asyncio
async def test_redeem_without_account_reports_zero_available(session_factory) -> None:
    async with session_factory() as session:
        ledger = PointsLedger(session)
        with pytest.raises(InsufficientBalanceError) as excinfo:
            await ledger.redeem_points(uuid4(), 100)

    assert excinfo.value.available == 0


@pytest.mark.asyncio
async def test_refund_points_restores_redeemed_balance(session_factory) -> None:
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 500)
        await ledger.redeem_points(user_id, 300)

        new_balance = await ledger.refund_points(user_id, 100)
        assert new_balance == 300

        with pytest.raises(ValidationError):
            await ledger.refund_points(user_id, 300)
        with pytest.raises(NotFoundError):
            await ledger.refund_points(uuid4(), 100)

        snapshot = await ledger.get_balance(user_id)
        assert snapshot.balance == 300
        assert snapshot.lifetime_redeemed == 200
        assert snapshot.lifetime_earned == 500


@pytest.mark.asyncio
async def test_award_points_rejects_non_positive_amounts(session_factory) -> None:
    async with session_factory() as session:
        ledger = PointsLedger(session)
        for bad in (0, -5, 1.5, True):
            with pytest.raises(ValidationError):
                await ledger.award_points(uuid4(), bad)
        with pytest.raises(ValidationError):
            await ledger.award_points(uuid4(), 10, source_type="lottery")


@pytest.mark.asyncio
async def test_history_paginates_newest_first_and_filters(session_factory) -> None:
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        for _ in range(3):
            await ledger.award_points(user_id, 100)
        await ledger.redeem_points(user_id, 100)

        page = await ledger.get_history(user_id, page=1, limit=2)
        assert page.total == 4
        assert page.total_pages == 2
        assert len(page.transactions) == 2
        assert page.transactions[0].transaction_type == PointsTransactionType.REDEEM

        second = await ledger.get_history(user_id, page=2, limit=2)
        assert len(second.transactions) == 2
        assert {row.id for row in page.transactions}.isdisjoint({row.id for row in second.transactions})

        redeemed = await ledger.get_history(user_id, transaction_type="redeem")
        assert redeemed.total == 1

        clamped = await ledger.get_history(user_id, page=0, limit=500)
        assert clamped.page == 1
        assert clamped.limit == 100

        with pytest.raises(ValidationError):
            await ledger.get_history(user_id, transaction_type="bogus")


@pytest.mark.asyncio
async def test_tier_progress_between_and_at_top_tier(session_factory) -> None:
    await _seed_tiers(session_factory)
    climbing = uuid4()
    topped = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(climbing, 1000)
        await ledger.award_points(topped, 2000)

        progress = await ledger.get_tier_progress(climbing)
        assert progress.current_tier == "silver"
        assert progress.next_tier == "gold"
        assert progress.next_tier_points == 1500
        assert progress.points_to_next_tier == 500
        assert progress.progress_percentage == 50
        assert progress.is_max_tier is False

        top = await ledger.get_tier_progress(topped)
        assert top.current_tier == "gold"
        assert top.is_max_tier is True
        assert top.progress_percentage == 100

        tiers = await ledger.list_tiers()
        assert [tier.tier_name for tier in tiers] == ["bronze", "silver", "gold"]


@pytest.mark.asyncio
async def test_ledger_rows_sum_to_account_balance(session_factory) -> None:
    await _seed_tiers(session_factory)
    user_id = uuid4()

    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(user_id, 700)
        await ledger.redeem_points(user_id, 200)
        await ledger.award_points(user_id, 50)
        await ledger.refund_points(user_id, 100)

        total = (
            await session.execute(
                select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(
                    PointsTransaction.user_id == user_id
                )
            )
        ).scalar_one()
        account = (
            await session.execute(select(PointsAccount).where(PointsAccount.user_id == user_id))
        ).scalar_one()

    assert total == account.balance == 650
    assert account.balance == account.lifetime_earned - account.lifetime_redeemed


@pytest.mark.asyncio
async def test_history_wraps_database_errors(session_factory, monkeypatch) -> None:
    async with session_factory() as session:
        ledger = PointsLedger(session)
        await ledger.award_points(uuid4(), 100)

        async def failing(statement, *args, **kwargs):
            raise OperationalError(str(statement), {}, Exception("database is locked"))

        monkeypatch.setattr(session, "execute", failing)
        with pytest.raises(AccountError) as excinfo:
            await ledger.get_history(uuid4())

    assert isinstance(excinfo.value.__cause__, OperationalError)
