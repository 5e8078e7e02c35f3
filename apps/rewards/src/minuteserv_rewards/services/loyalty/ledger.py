"""Points ledger: per-user balances, the append-only transaction log and tier upkeep."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, NamedTuple
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from minuteserv_rewards.core.settings import settings
from minuteserv_rewards.db.transaction import atomic
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
    RewardsError,
    ValidationError,
)
from minuteserv_rewards.services.loyalty.tiers import TierCatalog, TierDefinition

CENT = Decimal("0.01")


@dataclass
class TierInfo:
    """Benefits of the tier an account currently holds."""

    tier_name: str
    cashback_percentage: Decimal
    benefits: list[str]
    badge_color: str | None
    badge_icon: str | None


@dataclass
class NextTierInfo:
    tier_name: str
    min_points: int
    points_to_next_tier: int


@dataclass
class PointsBalanceSnapshot:
    """Serializable balance overview for clients."""

    user_id: UUID
    balance: int
    lifetime_earned: int
    lifetime_redeemed: int
    current_tier: str | None
    tier_info: TierInfo | None
    next_tier: NextTierInfo | None
    points_to_next_tier: int | None
    is_max_tier: bool
    can_redeem: bool
    redemption_rate: Decimal


@dataclass
class PointsRedemptionResult:
    points_used: int
    discount_amount: Decimal
    new_balance: int


@dataclass
class PointsHistoryPage:
    transactions: list[PointsTransaction]
    page: int
    limit: int
    total: int
    total_pages: int


@dataclass
class TierProgress:
    current_tier: str | None
    current_points: int
    next_tier: str | None = None
    next_tier_points: int | None = None
    points_to_next_tier: int | None = None
    progress_percentage: int = 100
    is_max_tier: bool = False
    tiers: list[TierDefinition] = field(default_factory=list)


class _AccountState(NamedTuple):
    id: UUID
    balance: int
    lifetime_earned: int
    lifetime_redeemed: int
    current_tier: str | None


class PointsLedger:
    """Atomic earn/redeem primitives over points accounts and their ledger."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        tier_catalog: TierCatalog | None = None,
    ) -> None:
        self._db = db_session
        self._tier_catalog = tier_catalog
        self._redemption_rate = Decimal(str(settings.loyalty_redemption_rate))
        self._min_redeem_points = settings.loyalty_min_redeem_points
        self._redeem_step_points = settings.loyalty_redeem_step_points
        self._telemetry = get_rewards_store()

    @property
    def redemption_rate(self) -> Decimal:
        return self._redemption_rate

    @staticmethod
    def calculate_points(booking_amount: Any) -> int:
        """One point per whole currency unit spent."""

        try:
            amount = Decimal(str(booking_amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError("Booking amount must be numeric") from exc
        if not amount.is_finite() or amount < 0:
            raise ValidationError("Booking amount must be a non-negative number")
        return int(amount.to_integral_value(rounding=ROUND_FLOOR))

    def discount_for(self, points: int) -> Decimal:
        return (Decimal(points) * self._redemption_rate).quantize(CENT)

    def validate_redeem_amount(self, points: Any) -> int:
        if isinstance(points, bool) or not isinstance(points, int):
            raise ValidationError("Points to redeem must be a whole number")
        if points < self._min_redeem_points or points % self._redeem_step_points != 0:
            raise ValidationError(
                f"Points must be a multiple of {self._redeem_step_points} "
                f"(minimum {self._min_redeem_points} points)"
            )
        return points

    async def award_points(
        self,
        user_id: UUID,
        points: int,
        source_type: PointsSourceType | str = PointsSourceType.BOOKING,
        source_id: str | UUID | None = None,
        description: str | None = None,
    ) -> int:
        """Credit points, log the earn row and recompute the tier in one transaction."""

        points = self._require_positive(points)
        source = self._coerce_source(source_type)

        try:
            async with atomic(self._db):
                catalog = await self._catalog()
                await self._ensure_account_row(user_id, catalog)
                account = await self._account_state(user_id, lock=True)
                if account is None:  # pragma: no cover - row was just ensured
                    raise AccountError(f"Points account missing for user {user_id}")

                await self._db.execute(
                    update(PointsAccount)
                    .where(PointsAccount.id == account.id)
                    .values(
                        balance=PointsAccount.balance + points,
                        lifetime_earned=PointsAccount.lifetime_earned + points,
                    )
                    .execution_options(synchronize_session=False)
                )
                updated = await self._account_state(user_id)
                self._append(
                    user_id,
                    transaction_type=PointsTransactionType.EARN,
                    points=points,
                    balance_after=updated.balance,
                    source_type=source,
                    source_id=source_id,
                    description=description or f"Points earned from {source.value}",
                )
                await self._sync_tier(user_id, updated, catalog)
                await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to award points", user_id=str(user_id), points=points)
            raise AccountError(f"Failed to award points: {exc}") from exc

        self._telemetry.record_ledger_event("earn", points=points)
        logger.info(
            "Awarded loyalty points",
            user_id=str(user_id),
            points=points,
            source_type=source.value,
            source_id=str(source_id) if source_id else None,
            new_balance=updated.balance,
        )
        return updated.balance

    async def redeem_points(self, user_id: UUID, points_to_redeem: int) -> PointsRedemptionResult:
        """Debit points for a discount; balance check and decrement share one transaction."""

        points = self.validate_redeem_amount(points_to_redeem)
        discount = self.discount_for(points)
        failure: InsufficientBalanceError | None = None

        # A shortfall writes nothing and is raised only after the block has closed.
        try:
            async with atomic(self._db):
                account = await self._account_state(user_id, lock=True)
                available = account.balance if account else 0
                updated = await self._debit(user_id, points) if available >= points else None
                if updated is None:
                    failure = InsufficientBalanceError(available, points)
                else:
                    self._append(
                        user_id,
                        transaction_type=PointsTransactionType.REDEEM,
                        points=-points,
                        balance_after=updated.balance,
                        source_type=PointsSourceType.REDEMPTION,
                        source_id=None,
                        description=f"Points redeemed for {settings.currency_symbol}{discount}",
                    )
                    await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to redeem points", user_id=str(user_id), points=points)
            raise AccountError(f"Failed to redeem points: {exc}") from exc

        if failure is not None:
            raise failure

        self._telemetry.record_ledger_event("redeem", points=points)
        logger.info(
            "Redeemed loyalty points",
            user_id=str(user_id),
            points=points,
            discount_amount=str(discount),
            new_balance=updated.balance,
        )
        return PointsRedemptionResult(points_used=points, discount_amount=discount, new_balance=updated.balance)

    async def refund_points(
        self,
        user_id: UUID,
        points: int,
        *,
        source_type: PointsSourceType | str = PointsSourceType.REFUND,
        source_id: str | UUID | None = None,
        description: str | None = None,
    ) -> int:
        """Return previously redeemed points to the balance."""

        points = self._require_positive(points)
        source = self._coerce_source(source_type)
        failure: RewardsError | None = None

        try:
            async with atomic(self._db):
                account = await self._account_state(user_id, lock=True)
                if account is None:
                    failure = NotFoundError(f"No points account for user {user_id}")
                elif account.lifetime_redeemed < points:
                    failure = ValidationError(
                        f"Cannot refund {points} points; only {account.lifetime_redeemed} were redeemed"
                    )
                else:
                    await self._db.execute(
                        update(PointsAccount)
                        .where(PointsAccount.id == account.id)
                        .values(
                            balance=PointsAccount.balance + points,
                            lifetime_redeemed=PointsAccount.lifetime_redeemed - points,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    updated = await self._account_state(user_id)
                    self._append(
                        user_id,
                        transaction_type=PointsTransactionType.REFUND,
                        points=points,
                        balance_after=updated.balance,
                        source_type=source,
                        source_id=source_id,
                        description=description or "Redeemed points refunded",
                    )
                    await self._db.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to refund points", user_id=str(user_id), points=points)
            raise AccountError(f"Failed to refund points: {exc}") from exc

        if failure is not None:
            raise failure

        self._telemetry.record_ledger_event("refund", points=points)
        logger.info("Refunded loyalty points", user_id=str(user_id), points=points, new_balance=updated.balance)
        return updated.balance

    async def get_balance(self, user_id: UUID) -> PointsBalanceSnapshot:
        """Return balance and tier details, creating the account on first access."""

        try:
            async with atomic(self._db):
                catalog = await self._catalog()
                await self._ensure_account_row(user_id, catalog)
                account = await self._account_state(user_id)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load points balance", user_id=str(user_id))
            raise AccountError(f"Failed to get balance: {exc}") from exc

        if account is None:  # pragma: no cover - row was just ensured
            raise AccountError(f"Points account missing for user {user_id}")

        current = catalog.get(account.current_tier)
        if current is None and account.current_tier:
            logger.warning("Tier not found in catalog", tier=account.current_tier, user_id=str(user_id))

        upcoming = catalog.next_tier(account.lifetime_earned)
        next_tier: NextTierInfo | None = None
        points_to_next: int | None = None
        if upcoming is not None:
            points_to_next = max(0, upcoming.min_points - account.lifetime_earned)
            next_tier = NextTierInfo(
                tier_name=upcoming.tier_name,
                min_points=upcoming.min_points,
                points_to_next_tier=points_to_next,
            )

        return PointsBalanceSnapshot(
            user_id=user_id,
            balance=account.balance,
            lifetime_earned=account.lifetime_earned,
            lifetime_redeemed=account.lifetime_redeemed,
            current_tier=account.current_tier,
            tier_info=(
                TierInfo(
                    tier_name=current.tier_name,
                    cashback_percentage=current.cashback_percentage,
                    benefits=list(current.benefits),
                    badge_color=current.badge_color,
                    badge_icon=current.badge_icon,
                )
                if current
                else None
            ),
            next_tier=next_tier,
            points_to_next_tier=points_to_next,
            is_max_tier=upcoming is None,
            can_redeem=account.balance >= self._min_redeem_points,
            redemption_rate=self._redemption_rate,
        )

    async def get_history(
        self,
        user_id: UUID,
        *,
        page: int = 1,
        limit: int = 20,
        transaction_type: PointsTransactionType | str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> PointsHistoryPage:
        """Return a newest-first page of the user's ledger rows."""

        page = max(1, int(page))
        limit = max(1, min(int(limit), settings.loyalty_history_max_page_size))

        filters = [PointsTransaction.user_id == user_id]
        if transaction_type:
            try:
                filters.append(PointsTransaction.transaction_type == PointsTransactionType(transaction_type))
            except ValueError as exc:
                raise ValidationError(f"Unknown transaction type: {transaction_type}") from exc
        if start_date:
            filters.append(PointsTransaction.created_at >= _to_utc(start_date))
        if end_date:
            filters.append(PointsTransaction.created_at <= _to_utc(end_date))

        stmt = (
            select(PointsTransaction)
            .where(*filters)
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        try:
            async with atomic(self._db):
                total_result = await self._db.execute(select(func.count(PointsTransaction.id)).where(*filters))
                total = int(total_result.scalar_one() or 0)
                result = await self._db.execute(stmt)
                transactions = list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.exception("Failed to load points history", user_id=str(user_id))
            raise AccountError(f"Failed to get points history: {exc}") from exc

        return PointsHistoryPage(
            transactions=transactions,
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def list_tiers(self) -> list[TierDefinition]:
        async with atomic(self._db):
            catalog = await self._catalog()
        return list(catalog.tiers)

    async def get_tier_progress(self, user_id: UUID) -> TierProgress:
        """Progress of the account towards its next tier."""

        snapshot = await self.get_balance(user_id)
        catalog = await self._catalog()
        tiers = list(catalog.tiers)
        lifetime = snapshot.lifetime_earned

        if snapshot.next_tier is None:
            return TierProgress(
                current_tier=snapshot.current_tier,
                current_points=lifetime,
                is_max_tier=True,
                tiers=tiers,
            )

        current = catalog.get(snapshot.current_tier) or catalog.resolve(lifetime)
        floor_points = current.min_points if current else 0
        span = max(snapshot.next_tier.min_points - floor_points, 1)
        progress = min(100.0, max(0.0, (lifetime - floor_points) / span * 100))
        return TierProgress(
            current_tier=snapshot.current_tier,
            current_points=lifetime,
            next_tier=snapshot.next_tier.tier_name,
            next_tier_points=snapshot.next_tier.min_points,
            points_to_next_tier=snapshot.next_tier.points_to_next_tier,
            progress_percentage=int(round(progress)),
            tiers=tiers,
        )

    async def _catalog(self) -> TierCatalog:
        if self._tier_catalog is None:
            self._tier_catalog = await TierCatalog.load(self._db)
        return self._tier_catalog

    async def _ensure_account_row(self, user_id: UUID, catalog: TierCatalog) -> None:
        """Idempotent insert of a zero-balance account."""

        initial = catalog.resolve(0)
        values = {
            "id": uuid4(),
            "user_id": user_id,
            "balance": 0,
            "lifetime_earned": 0,
            "lifetime_redeemed": 0,
            "current_tier": initial.tier_name if initial else settings.loyalty_default_tier,
        }

        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(PointsAccount).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        elif dialect == "sqlite":
            stmt = sqlite_insert(PointsAccount).values(**values).on_conflict_do_nothing(index_elements=["user_id"])
        else:
            await self._ensure_account_row_fallback(user_id, values)
            return

        result = await self._db.execute(stmt)
        if result.rowcount:
            logger.info("Created points account", user_id=str(user_id))

    async def _ensure_account_row_fallback(self, user_id: UUID, values: dict[str, Any]) -> None:
        if await self._account_state(user_id) is not None:
            return
        try:
            async with self._db.begin_nested():
                self._db.add(PointsAccount(**values))
                await self._db.flush()
            logger.info("Created points account", user_id=str(user_id))
        except IntegrityError:
            logger.warning("Detected race when creating points account", user_id=str(user_id))

    async def _account_state(self, user_id: UUID, *, lock: bool = False) -> _AccountState | None:
        stmt = select(
            PointsAccount.id,
            PointsAccount.balance,
            PointsAccount.lifetime_earned,
            PointsAccount.lifetime_redeemed,
            PointsAccount.current_tier,
        ).where(PointsAccount.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return _AccountState(
            id=row.id,
            balance=int(row.balance or 0),
            lifetime_earned=int(row.lifetime_earned or 0),
            lifetime_redeemed=int(row.lifetime_redeemed or 0),
            current_tier=row.current_tier,
        )

    async def _debit(self, user_id: UUID, points: int) -> _AccountState | None:
        """Guarded decrement; returns None when the balance no longer covers ``points``."""

        # The balance guard keeps this correct where row locks are unavailable.
        result = await self._db.execute(
            update(PointsAccount)
            .where(PointsAccount.user_id == user_id, PointsAccount.balance >= points)
            .values(
                balance=PointsAccount.balance - points,
                lifetime_redeemed=PointsAccount.lifetime_redeemed + points,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self._account_state(user_id)

    async def _sync_tier(self, user_id: UUID, account: _AccountState, catalog: TierCatalog) -> None:
        target = catalog.resolve(account.lifetime_earned)
        if target is None or target.tier_name == account.current_tier:
            return

        await self._db.execute(
            update(PointsAccount)
            .where(PointsAccount.id == account.id)
            .values(current_tier=target.tier_name, tier_updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self._append(
            user_id,
            transaction_type=PointsTransactionType.ADJUSTMENT,
            points=0,
            balance_after=account.balance,
            source_type=PointsSourceType.TIER_UPGRADE,
            source_id=None,
            description=f"Tier upgraded to {target.tier_name}",
            metadata={"from_tier": account.current_tier, "to_tier": target.tier_name},
        )
        logger.info(
            "Updated loyalty tier",
            account_id=str(account.id),
            from_tier=account.current_tier,
            to_tier=target.tier_name,
        )

    def _append(
        self,
        user_id: UUID,
        *,
        transaction_type: PointsTransactionType,
        points: int,
        balance_after: int,
        source_type: PointsSourceType | None,
        source_id: str | UUID | None,
        description: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> PointsTransaction:
        entry = PointsTransaction(
            user_id=user_id,
            transaction_type=transaction_type,
            points=points,
            balance_after=balance_after,
            source_type=source_type,
            source_id=str(source_id) if source_id is not None else None,
            description=description,
            metadata_json=metadata or None,
        )
        self._db.add(entry)
        return entry

    @staticmethod
    def _require_positive(points: Any) -> int:
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError("Points must be a positive whole number")
        return points

    @staticmethod
    def _coerce_source(source_type: PointsSourceType | str) -> PointsSourceType:
        try:
            return PointsSourceType(source_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown points source type: {source_type}") from exc


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = [
    "NextTierInfo",
    "PointsBalanceSnapshot",
    "PointsHistoryPage",
    "PointsLedger",
    "PointsRedemptionResult",
    "TierInfo",
    "TierProgress",
]
