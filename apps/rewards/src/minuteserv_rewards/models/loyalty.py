"""Loyalty points domain models."""

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
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from minuteserv_rewards.db.base import Base


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LoyaltyTier(Base):
    """Static tier catalog keyed by lifetime points earned."""

    __tablename__ = "loyalty_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tier_name = Column(String(20), nullable=False, unique=True, index=True)
    min_points = Column(Integer, nullable=False)
    max_points = Column(Integer, nullable=True)
    cashback_percentage = Column(Numeric(5, 2), nullable=False, default=0, server_default="0")
    benefits = Column(JSON, nullable=False, default=list)
    badge_color = Column(String(7), nullable=True)
    badge_icon = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points"),
        CheckConstraint(
            "cashback_percentage >= 0 AND cashback_percentage <= 100",
            name="ck_loyalty_tiers_cashback_range",
        ),
    )


class PointsAccount(Base):
    """Per-user points balance. Mutated only through the ledger."""

    __tablename__ = "points_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", name="uq_points_accounts_user_id"),
        CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),
        CheckConstraint("lifetime_earned >= 0", name="ck_points_accounts_lifetime_earned"),
        CheckConstraint("lifetime_redeemed >= 0", name="ck_points_accounts_lifetime_redeemed"),
        CheckConstraint(
            "balance = lifetime_earned - lifetime_redeemed",
            name="ck_points_accounts_balance_matches_lifetime",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    current_tier = Column(String(20), nullable=True)
    tier_updated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PointsTransactionType(str, Enum):
    """Kinds of balance-affecting ledger events."""

    EARN = "earn"
    REDEEM = "redeem"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class PointsSourceType(str, Enum):
    """What caused a ledger event."""

    BOOKING = "booking"
    REFUND = "refund"
    REDEMPTION = "redemption"
    MANUAL = "manual"
    TIER_UPGRADE = "tier_upgrade"


class PointsTransaction(Base):
    """Append-only points ledger row."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_points_transactions_balance_after"),
        Index("ix_points_transactions_user_created", "user_id", "created_at"),
        Index("ix_points_transactions_source", "source_type", "source_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    transaction_type = Column(
        SqlEnum(
            PointsTransactionType,
            name="points_transaction_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source_type = Column(
        SqlEnum(
            PointsSourceType,
            name="points_source_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=True,
    )
    source_id = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )


class RedemptionType(str, Enum):
    """How redeemed points are delivered to the user."""

    DISCOUNT_VOUCHER = "discount_voucher"
    APPLY_TO_BOOKING = "apply_to_booking"


class RedemptionStatus(str, Enum):
    """Lifecycle statuses for point redemptions."""

    PENDING = "pending"
    APPLIED = "applied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Redemption(Base):
    """A point deduction materialised as a one-time-use discount."""

    __tablename__ = "points_redemptions"
    __table_args__ = (
        UniqueConstraint("voucher_code", name="uq_points_redemptions_voucher_code"),
        CheckConstraint("points_used > 0", name="ck_points_redemptions_points_used"),
        CheckConstraint("discount_amount > 0", name="ck_points_redemptions_discount_amount"),
        Index("ix_points_redemptions_user_status", "user_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    points_used = Column(Integer, nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    redemption_type = Column(
        SqlEnum(
            RedemptionType,
            name="points_redemption_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=RedemptionType.DISCOUNT_VOUCHER,
    )
    status = Column(
        SqlEnum(
            RedemptionStatus,
            name="points_redemption_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.value,
    )
    voucher_code = Column(String(50), nullable=True)
    booking_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    applied_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    def is_expired(self, now: datetime) -> bool:
        return _as_utc(self.expires_at) <= now

    def effective_status(self, now: datetime) -> RedemptionStatus:
        """Status with lazy expiry applied: pending past ``expires_at`` reads as expired."""

        if self.status == RedemptionStatus.PENDING and self.is_expired(now):
            return RedemptionStatus.EXPIRED
        return self.status

    def is_usable(self, now: datetime) -> bool:
        return self.effective_status(now) == RedemptionStatus.PENDING


__all__ = [
    "LoyaltyTier",
    "PointsAccount",
    "PointsSourceType",
    "PointsTransaction",
    "PointsTransactionType",
    "Redemption",
    "RedemptionStatus",
    "RedemptionType",
]
