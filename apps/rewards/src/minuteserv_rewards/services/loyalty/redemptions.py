"""Redemption manager: vouchers and booking discounts bought with points."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from minuteserv_rewards.core.settings import settings
from minuteserv_rewards.db.transaction import atomic
from minuteserv_rewards.models.loyalty import (
    PointsSourceType,
    Redemption,
    RedemptionStatus,
    RedemptionType,
)
from minuteserv_rewards.observability.rewards import get_rewards_store
from minuteserv_rewards.services.errors import (
    AccountError,
    InsufficientBalanceError,
    InvalidRedemptionStateError,
    NotFoundError,
    RewardsError,
    ValidationError,
    VoucherCodeExhaustedError,
)
from minuteserv_rewards.services.loyalty.ledger import PointsLedger

Clock = Callable[[], datetime]


def generate_voucher_code() -> str:
    """Random ``LOYALTY`` + N digit code."""

    digits = settings.voucher_code_digits
    return f"{settings.voucher_code_prefix}{secrets.randbelow(10 ** digits):0{digits}d}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VoucherIssue:
    redemption: Redemption
    points_used: int
    discount_amount: Decimal
    new_balance: int

    @property
    def voucher_code(self) -> str | None:
        return self.redemption.voucher_code

    @property
    def expires_at(self) -> datetime:
        return self.redemption.expires_at


class RedemptionService:
    """Create, apply and cancel redemptions on behalf of a user."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        code_factory: Callable[[], str] = generate_voucher_code,
        clock: Clock = _utcnow,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or PointsLedger(db_session)
        self._code_factory = code_factory
        self._clock = clock
        self._telemetry = get_rewards_store()

    async def create_redemption(
        self,
        user_id: UUID,
        points_used: int,
        discount_amount: Decimal | float | str,
        redemption_type: RedemptionType | str = RedemptionType.DISCOUNT_VOUCHER,
        booking_id: UUID | None = None,
    ) -> Redemption:
        """Persist a redemption; vouchers get a unique code backed by the storage constraint."""

        points = self._ledger.validate_redeem_amount(points_used)
        discount = _coerce_discount(discount_amount)
        try:
            kind = RedemptionType(redemption_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown redemption type: {redemption_type}") from exc

        now = self._clock()
        issues_voucher = kind == RedemptionType.DISCOUNT_VOUCHER
        max_attempts = settings.voucher_code_max_attempts if issues_voucher else 1

        try:
            async with atomic(self._db):
                redemption: Redemption | None = None
                for attempt in range(1, max_attempts + 1):
                    candidate = Redemption(
                        user_id=user_id,
                        points_used=points,
                        discount_amount=discount,
                        redemption_type=kind,
                        voucher_code=self._code_factory() if issues_voucher else None,
                        booking_id=booking_id,
                        status=RedemptionStatus.APPLIED if booking_id else RedemptionStatus.PENDING,
                        applied_at=now if booking_id else None,
                        expires_at=now + timedelta(days=settings.voucher_ttl_days),
                    )
                    try:
                        async with self._db.begin_nested():
                            self._db.add(candidate)
                            await self._db.flush()
                    except IntegrityError:
                        if not issues_voucher:
                            raise
                        logger.warning(
                            "Voucher code collision; regenerating",
                            user_id=str(user_id),
                            attempt=attempt,
                        )
                        continue
                    redemption = candidate
                    break

                if redemption is None:
                    self._telemetry.record_ledger_event("voucher_exhausted")
                    raise VoucherCodeExhaustedError(max_attempts)
        except SQLAlchemyError as exc:
            logger.exception("Failed to create redemption", user_id=str(user_id))
            raise AccountError(f"Failed to create redemption: {exc}") from exc

        logger.info(
            "Created redemption",
            redemption_id=str(redemption.id),
            user_id=str(user_id),
            redemption_type=kind.value,
            points_used=points,
            status=redemption.status.value,
        )
        return redemption

    async def redeem_points_for_voucher(
        self,
        user_id: UUID,
        points: int,
        redemption_type: RedemptionType | str = RedemptionType.DISCOUNT_VOUCHER,
        booking_id: UUID | None = None,
    ) -> VoucherIssue:
        """Deduct points and materialise the redemption; both or neither persist."""

        self._ledger.validate_redeem_amount(points)
        failure: InsufficientBalanceError | None = None

        try:
            async with atomic(self._db):
                try:
                    result = await self._ledger.redeem_points(user_id, points)
                except InsufficientBalanceError as exc:
                    failure = exc
                else:
                    redemption = await self.create_redemption(
                        user_id,
                        result.points_used,
                        result.discount_amount,
                        redemption_type=redemption_type,
                        booking_id=booking_id,
                    )
        except SQLAlchemyError as exc:
            logger.exception("Failed to redeem points for voucher", user_id=str(user_id))
            raise AccountError(f"Failed to redeem points: {exc}") from exc

        if failure is not None:
            raise failure

        return VoucherIssue(
            redemption=redemption,
            points_used=result.points_used,
            discount_amount=result.discount_amount,
            new_balance=result.new_balance,
        )

    async def apply_redemption(self, redemption_id: UUID, booking_id: UUID, *, user_id: UUID) -> Redemption:
        """Pending -> applied, exactly once and only before expiry."""

        now = self._clock()
        failure: RewardsError | None = None

        try:
            async with atomic(self._db):
                redemption = await self._load_owned(redemption_id, user_id)
                if redemption is None:
                    failure = NotFoundError("Redemption not found")
                else:
                    failure = await self._unusable_reason(redemption, now)
                if failure is None:
                    result = await self._db.execute(
                        update(Redemption)
                        .where(
                            Redemption.id == redemption.id,
                            Redemption.status == RedemptionStatus.PENDING,
                            Redemption.expires_at > now,
                        )
                        .values(status=RedemptionStatus.APPLIED, booking_id=booking_id, applied_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        failure = await self._lost_race(redemption.id)
                    else:
                        await self._db.refresh(redemption)
        except SQLAlchemyError as exc:
            logger.exception("Failed to apply redemption", redemption_id=str(redemption_id))
            raise AccountError(f"Failed to apply redemption: {exc}") from exc

        if failure is not None:
            raise failure

        logger.info(
            "Applied redemption",
            redemption_id=str(redemption.id),
            booking_id=str(booking_id),
            user_id=str(user_id),
        )
        return redemption

    async def cancel_redemption(self, redemption_id: UUID, *, user_id: UUID) -> Redemption:
        """Cancel an unused redemption and give the points back."""

        now = self._clock()
        failure: RewardsError | None = None

        try:
            async with atomic(self._db):
                redemption = await self._load_owned(redemption_id, user_id)
                if redemption is None:
                    failure = NotFoundError("Redemption not found")
                else:
                    failure = await self._unusable_reason(redemption, now)
                if failure is None:
                    result = await self._db.execute(
                        update(Redemption)
                        .where(Redemption.id == redemption.id, Redemption.status == RedemptionStatus.PENDING)
                        .values(status=RedemptionStatus.CANCELLED, cancelled_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        failure = await self._lost_race(redemption.id)
                    else:
                        await self._ledger.refund_points(
                            user_id,
                            redemption.points_used,
                            source_type=PointsSourceType.REFUND,
                            source_id=redemption.id,
                            description="Points refunded for cancelled redemption",
                        )
                        await self._db.refresh(redemption)
        except SQLAlchemyError as exc:
            logger.exception("Failed to cancel redemption", redemption_id=str(redemption_id))
            raise AccountError(f"Failed to cancel redemption: {exc}") from exc

        if failure is not None:
            raise failure

        logger.info("Cancelled redemption", redemption_id=str(redemption.id), user_id=str(user_id))
        return redemption

    async def get_redemption(self, redemption_id: UUID, *, user_id: UUID | None = None) -> Redemption:
        try:
            async with atomic(self._db):
                redemption = await self._db.get(Redemption, redemption_id, populate_existing=True)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load redemption", redemption_id=str(redemption_id))
            raise AccountError(f"Failed to get redemption: {exc}") from exc
        if redemption is None or (user_id is not None and redemption.user_id != user_id):
            raise NotFoundError("Redemption not found")
        return redemption

    async def list_redemptions(
        self,
        user_id: UUID,
        status: RedemptionStatus | str | None = None,
    ) -> list[Redemption]:
        """Newest first; ``status`` filters on the lazily-expired status."""

        now = self._clock()
        stmt = select(Redemption).where(Redemption.user_id == user_id)
        if status:
            try:
                wanted = RedemptionStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Unknown redemption status: {status}") from exc
            if wanted == RedemptionStatus.PENDING:
                stmt = stmt.where(Redemption.status == RedemptionStatus.PENDING, Redemption.expires_at > now)
            elif wanted == RedemptionStatus.EXPIRED:
                stmt = stmt.where(
                    or_(
                        Redemption.status == RedemptionStatus.EXPIRED,
                        and_(Redemption.status == RedemptionStatus.PENDING, Redemption.expires_at <= now),
                    )
                )
            else:
                stmt = stmt.where(Redemption.status == wanted)
        stmt = stmt.order_by(Redemption.created_at.desc(), Redemption.id.desc())

        try:
            async with atomic(self._db):
                result = await self._db.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.exception("Failed to list redemptions", user_id=str(user_id))
            raise AccountError(f"Failed to list redemptions: {exc}") from exc

    async def find_voucher(self, voucher_code: str, *, user_id: UUID) -> Redemption:
        code = (voucher_code or "").strip().upper()
        if not code:
            raise ValidationError("Voucher code is required")
        try:
            async with atomic(self._db):
                result = await self._db.execute(
                    select(Redemption).where(Redemption.voucher_code == code, Redemption.user_id == user_id)
                )
                redemption = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.exception("Failed to look up voucher", user_id=str(user_id))
            raise AccountError(f"Failed to find voucher: {exc}") from exc
        if redemption is None:
            raise NotFoundError("Voucher not found")
        return redemption

    async def _load_owned(self, redemption_id: UUID, user_id: UUID) -> Redemption | None:
        result = await self._db.execute(
            select(Redemption)
            .where(Redemption.id == redemption_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        redemption = result.scalar_one_or_none()
        # Foreign redemptions read as missing.
        if redemption is None or redemption.user_id != user_id:
            return None
        return redemption

    async def _lost_race(self, redemption_id: UUID) -> InvalidRedemptionStateError:
        """Report the status another writer left behind after a failed conditional update."""

        current = (
            await self._db.execute(select(Redemption.status).where(Redemption.id == redemption_id))
        ).scalar_one_or_none()
        return InvalidRedemptionStateError(
            redemption_id,
            current.value if current is not None else "unknown",
            "Redemption already applied or expired",
        )

    async def _unusable_reason(self, redemption: Redemption, now: datetime) -> InvalidRedemptionStateError | None:
        if redemption.is_usable(now):
            return None

        if redemption.status == RedemptionStatus.PENDING:
            await self._db.execute(
                update(Redemption)
                .where(Redemption.id == redemption.id, Redemption.status == RedemptionStatus.PENDING)
                .values(status=RedemptionStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            await self._db.refresh(redemption)
            logger.info("Marked redemption expired", redemption_id=str(redemption.id))
            return InvalidRedemptionStateError(redemption.id, RedemptionStatus.EXPIRED.value, "Redemption expired")

        reasons = {
            RedemptionStatus.APPLIED: "Redemption already applied",
            RedemptionStatus.CANCELLED: "Redemption cancelled",
            RedemptionStatus.EXPIRED: "Redemption expired",
        }
        return InvalidRedemptionStateError(
            redemption.id,
            redemption.status.value,
            reasons.get(redemption.status, "Redemption already applied or expired"),
        )


def _coerce_discount(value: Any) -> Decimal:
    try:
        discount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("Discount amount must be numeric") from exc
    if not discount.is_finite() or discount <= 0:
        raise ValidationError("Discount amount must be positive")
    return discount


__all__ = ["RedemptionService", "VoucherIssue", "generate_voucher_code"]
