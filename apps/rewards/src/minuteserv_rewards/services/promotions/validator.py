"""Promo code validation and usage recording."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from minuteserv_rewards.core.settings import settings
from minuteserv_rewards.db.transaction import atomic
from minuteserv_rewards.models.promotions import (
    PromoCode,
    PromoCodeUsage,
    PromoDiscountType,
    normalize_promo_code,
)
from minuteserv_rewards.observability.rewards import get_rewards_store
from minuteserv_rewards.services.errors import AccountError, NotFoundError, ValidationError
from minuteserv_rewards.services.promotions.booking_history import BookingHistory, build_booking_history

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PromoRejectionReason(str, Enum):
    MISSING_CODE = "missing_code"
    INVALID_AMOUNT = "invalid_amount"
    NOT_FOUND = "not_found"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    BELOW_MINIMUM = "below_minimum"
    USER_LIMIT_REACHED = "user_limit_reached"
    FIRST_TIME_ONLY = "first_time_only"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    NOT_APPLICABLE = "not_applicable"
    ERROR = "error"


@dataclass
class PromoValidation:
    """Outcome of a promo check; ``discount`` is zero unless ``valid``."""

    valid: bool
    discount: Decimal = ZERO
    message: str | None = None
    reason: PromoRejectionReason | None = None
    promo_code: str | None = None
    promo_code_id: UUID | None = None
    discount_type: PromoDiscountType | None = None
    discount_value: Decimal | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid, "discount": float(self.discount)}
        if self.message:
            payload["message"] = self.message
        if self.reason:
            payload["reason"] = self.reason.value
        if self.valid:
            payload.update(
                promo_code=self.promo_code,
                promo_code_id=str(self.promo_code_id) if self.promo_code_id else None,
                discount_type=self.discount_type.value if self.discount_type else None,
                discount_value=float(self.discount_value) if self.discount_value is not None else None,
            )
        return payload


def compute_discount(promo: PromoCode, order_amount: Decimal) -> Decimal:
    """Percentage or flat discount, capped by ``max_discount`` and floored to cents."""

    value = Decimal(str(promo.discount_value or 0))
    if PromoDiscountType(promo.discount_type) == PromoDiscountType.PERCENTAGE:
        discount = order_amount * value / Decimal(100)
    else:
        discount = value

    cap = Decimal(str(promo.max_discount)) if promo.max_discount is not None else None
    if cap and discount > cap:
        discount = cap
    return discount.quantize(CENT, rounding=ROUND_FLOOR)


class PromoService:
    """Validate promo codes against their constraints and record confirmed usage."""

    def __init__(self, session: AsyncSession, *, booking_history: BookingHistory | None = None) -> None:
        self._db = session
        self._booking_history = booking_history or build_booking_history(session)
        self._telemetry = get_rewards_store()

    async def validate_promo_code(
        self,
        code: str | None,
        order_amount: Any,
        user_id: UUID | None = None,
        *,
        service_ids: Sequence[str | UUID] | None = None,
        categories: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> PromoValidation:
        normalized = normalize_promo_code(code) if isinstance(code, str) else ""
        if not normalized:
            return self._reject(PromoRejectionReason.MISSING_CODE, "Promo code is required")

        amount = _coerce_amount(order_amount)
        if amount is None:
            return self._reject(PromoRejectionReason.INVALID_AMOUNT, "Order amount must be a non-negative number")

        moment = _to_utc(now) if now else datetime.now(timezone.utc)
        try:
            async with atomic(self._db):
                outcome = await self._evaluate(normalized, amount, user_id, service_ids, categories, moment)
        except SQLAlchemyError:
            logger.exception("Validate promo code error", code=normalized)
            return self._reject(PromoRejectionReason.ERROR, "Error validating promo code")

        if outcome.valid:
            self._telemetry.record_promo_validation("valid")
            logger.debug("Promo code accepted", code=normalized, discount=str(outcome.discount))
        return outcome

    async def record_promo_code_usage(
        self,
        promo_code_id: UUID,
        user_id: UUID,
        booking_id: UUID | None,
        discount_amount: Any,
        order_amount: Any,
    ) -> PromoCodeUsage:
        """Insert the usage row for a confirmed booking; repeats for one booking are no-ops."""

        discount = _coerce_amount(discount_amount)
        order = _coerce_amount(order_amount)
        if discount is None or order is None:
            raise ValidationError("Discount and order amounts must be non-negative numbers")

        created = False
        try:
            async with atomic(self._db):
                promo = await self._db.get(PromoCode, promo_code_id)
                if promo is None:
                    raise NotFoundError("Promo code not found")

                usage = await self._find_usage(promo_code_id, booking_id)
                if usage is None:
                    candidate = PromoCodeUsage(
                        promo_code_id=promo_code_id,
                        user_id=user_id,
                        booking_id=booking_id,
                        discount_amount=discount,
                        order_amount=order,
                    )
                    try:
                        async with self._db.begin_nested():
                            self._db.add(candidate)
                            await self._db.flush()
                        usage, created = candidate, True
                    except IntegrityError:
                        usage = await self._find_usage(promo_code_id, booking_id)
                        if usage is None:
                            raise
        except SQLAlchemyError as exc:
            logger.exception("Record promo code usage error", promo_code_id=str(promo_code_id))
            raise AccountError(f"Failed to record promo code usage: {exc}") from exc

        if not created:
            logger.info(
                "Promo code usage already recorded",
                promo_code_id=str(promo_code_id),
                booking_id=str(booking_id),
            )
            return usage

        logger.info(
            "Recorded promo code usage",
            promo_code_id=str(promo_code_id),
            user_id=str(user_id),
            booking_id=str(booking_id) if booking_id else None,
            discount_amount=str(discount),
        )
        await self._bump_used_count(promo_code_id)
        return usage

    async def _evaluate(
        self,
        code: str,
        amount: Decimal,
        user_id: UUID | None,
        service_ids: Sequence[str | UUID] | None,
        categories: Sequence[str] | None,
        now: datetime,
    ) -> PromoValidation:
        result = await self._db.execute(
            select(PromoCode).where(PromoCode.code == code, PromoCode.is_active.is_(True))
        )
        promo = result.scalar_one_or_none()
        if promo is None:
            return self._reject(PromoRejectionReason.NOT_FOUND, "Invalid promo code")

        if promo.valid_from and now < _to_utc(promo.valid_from):
            return self._reject(PromoRejectionReason.NOT_YET_VALID, "Promo code not yet valid")
        if promo.valid_until and now > _to_utc(promo.valid_until):
            return self._reject(PromoRejectionReason.EXPIRED, "Promo code expired")

        minimum = Decimal(str(promo.min_order_amount)) if promo.min_order_amount is not None else None
        if minimum and amount < minimum:
            return self._reject(
                PromoRejectionReason.BELOW_MINIMUM,
                f"Minimum order amount is {settings.currency_symbol}{_format_amount(minimum)}",
            )

        if user_id is not None and promo.usage_limit_per_user:
            if await self._count_usages(promo.id, user_id=user_id) >= promo.usage_limit_per_user:
                return self._reject(PromoRejectionReason.USER_LIMIT_REACHED, "You have already used this promo code")

        if user_id is not None and promo.first_time_only:
            if await self._booking_history.count_completed_bookings(user_id) > 0:
                return self._reject(
                    PromoRejectionReason.FIRST_TIME_ONLY,
                    "This promo code is only valid for first-time users",
                )

        # Ground truth is the usage log; used_count may lag.
        if promo.total_usage_limit:
            if await self._count_usages(promo.id) >= promo.total_usage_limit:
                return self._reject(PromoRejectionReason.USAGE_LIMIT_REACHED, "Promo code usage limit reached")

        if not _is_applicable(promo, service_ids, categories):
            return self._reject(
                PromoRejectionReason.NOT_APPLICABLE,
                "Promo code is not applicable to the selected services",
            )

        return PromoValidation(
            valid=True,
            discount=compute_discount(promo, amount),
            promo_code=promo.code,
            promo_code_id=promo.id,
            discount_type=PromoDiscountType(promo.discount_type),
            discount_value=Decimal(str(promo.discount_value)),
        )

    async def _count_usages(self, promo_code_id: UUID, *, user_id: UUID | None = None) -> int:
        stmt = select(func.count(PromoCodeUsage.id)).where(PromoCodeUsage.promo_code_id == promo_code_id)
        if user_id is not None:
            stmt = stmt.where(PromoCodeUsage.user_id == user_id)
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def _find_usage(self, promo_code_id: UUID, booking_id: UUID | None) -> PromoCodeUsage | None:
        if booking_id is None:
            return None
        result = await self._db.execute(
            select(PromoCodeUsage).where(
                PromoCodeUsage.promo_code_id == promo_code_id,
                PromoCodeUsage.booking_id == booking_id,
            )
        )
        return result.scalar_one_or_none()

    async def _bump_used_count(self, promo_code_id: UUID) -> None:
        try:
            async with atomic(self._db):
                await self._db.execute(
                    update(PromoCode)
                    .where(PromoCode.id == promo_code_id)
                    .values(used_count=PromoCode.used_count + 1)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError:
            # The usage row is committed; the reconciler repairs the counter.
            logger.exception("Failed to increment promo used_count", promo_code_id=str(promo_code_id))

    def _reject(self, reason: PromoRejectionReason, message: str) -> PromoValidation:
        self._telemetry.record_promo_validation(reason.value)
        logger.debug("Promo code rejected", reason=reason.value, message=message)
        return PromoValidation(valid=False, discount=ZERO, message=message, reason=reason)


def _is_applicable(
    promo: PromoCode,
    service_ids: Sequence[str | UUID] | None,
    categories: Sequence[str] | None,
) -> bool:
    if service_ids is None and categories is None:
        return True

    allowed_services = {str(item) for item in (promo.applicable_services or [])}
    allowed_categories = {str(item).lower() for item in (promo.applicable_categories or [])}
    if not allowed_services and not allowed_categories:
        return True

    if allowed_services & {str(item) for item in (service_ids or [])}:
        return True
    return bool(allowed_categories & {str(item).lower() for item in (categories or [])})


def _coerce_amount(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def _format_amount(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return f"{value.quantize(CENT)}"


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["PromoRejectionReason", "PromoService", "PromoValidation", "compute_discount"]
