"""Promo code and usage-log models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, validates

from minuteserv_rewards.db.base import Base


class PromoDiscountType(str, Enum):
    """How a promo code's ``discount_value`` is interpreted."""

    PERCENTAGE = "percentage"
    FLAT = "flat"

    @classmethod
    def _missing_(cls, value: object) -> "PromoDiscountType | None":
        # Older seed data used "fixed" for flat amounts.
        if isinstance(value, str) and value.strip().lower() in {"fixed", "flat"}:
            return cls.FLAT
        return None


def normalize_promo_code(code: str) -> str:
    return code.strip().upper()


class PromoCode(Base):
    """Promo code definition with a cached usage counter."""

    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("discount_value >= 0", name="ck_promo_codes_discount_value"),
        CheckConstraint("used_count >= 0", name="ck_promo_codes_used_count"),
        Index("ix_promo_codes_validity", "is_active", "valid_from", "valid_until"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(Text, nullable=True)
    discount_type = Column(
        SqlEnum(
            PromoDiscountType,
            name="promo_discount_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_order_amount = Column(Numeric(10, 2), nullable=True)
    max_discount = Column(Numeric(10, 2), nullable=True)
    total_usage_limit = Column(Integer, nullable=True)
    usage_limit_per_user = Column(Integer, nullable=True, default=1, server_default="1")
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    first_time_only = Column(Boolean, nullable=False, default=False, server_default="false")
    applicable_services = Column(JSON, nullable=False, default=list)
    applicable_categories = Column(JSON, nullable=False, default=list)
    # Denormalised read cache over promo_code_usage; repaired by reconciliation.
    used_count = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    usages = relationship("PromoCodeUsage", back_populates="promo_code", cascade="all, delete-orphan")

    @validates("code")
    def _normalize_code(self, key: str, value: str) -> str:
        return normalize_promo_code(value)


class PromoCodeUsage(Base):
    """Ground-truth record of one promo redemption on a confirmed booking."""

    __tablename__ = "promo_code_usage"
    __table_args__ = (
        UniqueConstraint("promo_code_id", "booking_id", name="uq_promo_code_usage_promo_booking"),
        Index("ix_promo_code_usage_user_code", "user_id", "promo_code_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    promo_code_id = Column(
        UUID(as_uuid=True),
        ForeignKey("promo_codes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(UUID(as_uuid=True), nullable=False)
    booking_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    order_amount = Column(Numeric(10, 2), nullable=False)
    used_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    promo_code = relationship("PromoCode", back_populates="usages")


__all__ = ["PromoCode", "PromoCodeUsage", "PromoDiscountType", "normalize_promo_code"]
