"""Loyalty points, redemptions and promo code tables.

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union
from uuid import uuid4

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = sa.dialects.postgresql.UUID(as_uuid=True)

TRANSACTION_TYPE = sa.Enum("earn", "redeem", "refund", "adjustment", name="points_transaction_type")
SOURCE_TYPE = sa.Enum("booking", "refund", "redemption", "manual", "tier_upgrade", name="points_source_type")
REDEMPTION_TYPE = sa.Enum("discount_voucher", "apply_to_booking", name="points_redemption_type")
REDEMPTION_STATUS = sa.Enum("pending", "applied", "expired", "cancelled", name="points_redemption_status")
DISCOUNT_TYPE = sa.Enum("percentage", "flat", name="promo_discount_type")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    tiers = op.create_table(
        "loyalty_tiers",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("tier_name", sa.String(length=20), nullable=False),
        sa.Column("min_points", sa.Integer(), nullable=False),
        sa.Column("max_points", sa.Integer(), nullable=True),
        sa.Column("cashback_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.Column("badge_color", sa.String(length=7), nullable=True),
        sa.Column("badge_icon", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points"),
        sa.CheckConstraint(
            "cashback_percentage >= 0 AND cashback_percentage <= 100",
            name="ck_loyalty_tiers_cashback_range",
        ),
    )
    op.create_index("ix_loyalty_tiers_tier_name", "loyalty_tiers", ["tier_name"], unique=True)

    op.create_table(
        "points_accounts",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_tier", sa.String(length=20), nullable=True),
        sa.Column("tier_updated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_points_accounts_user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),
        sa.CheckConstraint("lifetime_earned >= 0", name="ck_points_accounts_lifetime_earned"),
        sa.CheckConstraint("lifetime_redeemed >= 0", name="ck_points_accounts_lifetime_redeemed"),
        sa.CheckConstraint(
            "balance = lifetime_earned - lifetime_redeemed",
            name="ck_points_accounts_balance_matches_lifetime",
        ),
    )

    op.create_table(
        "points_transactions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("transaction_type", TRANSACTION_TYPE, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("source_type", SOURCE_TYPE, nullable=True),
        sa.Column("source_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("balance_after >= 0", name="ck_points_transactions_balance_after"),
    )
    op.create_index("ix_points_transactions_user_created", "points_transactions", ["user_id", "created_at"])
    op.create_index("ix_points_transactions_source", "points_transactions", ["source_type", "source_id"])

    op.create_table(
        "points_redemptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("points_used", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("redemption_type", REDEMPTION_TYPE, nullable=False),
        sa.Column("status", REDEMPTION_STATUS, nullable=False, server_default="pending"),
        sa.Column("voucher_code", sa.String(length=50), nullable=True),
        sa.Column("booking_id", UUID, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("voucher_code", name="uq_points_redemptions_voucher_code"),
        sa.CheckConstraint("points_used > 0", name="ck_points_redemptions_points_used"),
        sa.CheckConstraint("discount_amount > 0", name="ck_points_redemptions_discount_amount"),
    )
    op.create_index("ix_points_redemptions_user_status", "points_redemptions", ["user_id", "status"])
    op.create_index("ix_points_redemptions_booking_id", "points_redemptions", ["booking_id"])

    op.create_table(
        "promo_codes",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("discount_type", DISCOUNT_TYPE, nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("min_order_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("max_discount", sa.Numeric(10, 2), nullable=True),
        sa.Column("total_usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_limit_per_user", sa.Integer(), nullable=True, server_default="1"),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_time_only", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("applicable_services", sa.JSON(), nullable=False),
        sa.Column("applicable_categories", sa.JSON(), nullable=False),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("discount_value >= 0", name="ck_promo_codes_discount_value"),
        sa.CheckConstraint("used_count >= 0", name="ck_promo_codes_used_count"),
    )
    op.create_index("ix_promo_codes_code", "promo_codes", ["code"], unique=True)
    op.create_index("ix_promo_codes_validity", "promo_codes", ["is_active", "valid_from", "valid_until"])

    op.create_table(
        "promo_code_usage",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("promo_code_id", UUID, nullable=False),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("booking_id", UUID, nullable=True),
        sa.Column("discount_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("order_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["promo_code_id"], ["promo_codes.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("promo_code_id", "booking_id", name="uq_promo_code_usage_promo_booking"),
    )
    op.create_index("ix_promo_code_usage_promo_code_id", "promo_code_usage", ["promo_code_id"])
    op.create_index("ix_promo_code_usage_booking_id", "promo_code_usage", ["booking_id"])
    op.create_index("ix_promo_code_usage_user_code", "promo_code_usage", ["user_id", "promo_code_id"])

    op.bulk_insert(
        tiers,
        [
            {
                "id": uuid4(),
                "tier_name": "bronze",
                "min_points": 0,
                "max_points": 5000,
                "cashback_percentage": 5,
                "benefits": ["basic_rewards"],
                "badge_color": "#CD7F32",
                "badge_icon": "bronze-medal",
                "is_active": True,
            },
            {
                "id": uuid4(),
                "tier_name": "silver",
                "min_points": 5000,
                "max_points": 15000,
                "cashback_percentage": 10,
                "benefits": ["priority_booking", "birthday_bonus"],
                "badge_color": "#C0C0C0",
                "badge_icon": "silver-medal",
                "is_active": True,
            },
            {
                "id": uuid4(),
                "tier_name": "gold",
                "min_points": 15000,
                "max_points": 30000,
                "cashback_percentage": 15,
                "benefits": ["priority_booking", "birthday_bonus", "exclusive_services"],
                "badge_color": "#FFD700",
                "badge_icon": "gold-medal",
                "is_active": True,
            },
            {
                "id": uuid4(),
                "tier_name": "platinum",
                "min_points": 30000,
                "max_points": None,
                "cashback_percentage": 20,
                "benefits": ["priority_booking", "birthday_bonus", "exclusive_services", "vip_concierge"],
                "badge_color": "#E5E4E2",
                "badge_icon": "platinum-medal",
                "is_active": True,
            },
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_promo_code_usage_user_code", table_name="promo_code_usage")
    op.drop_index("ix_promo_code_usage_booking_id", table_name="promo_code_usage")
    op.drop_index("ix_promo_code_usage_promo_code_id", table_name="promo_code_usage")
    op.drop_table("promo_code_usage")
    op.drop_index("ix_promo_codes_validity", table_name="promo_codes")
    op.drop_index("ix_promo_codes_code", table_name="promo_codes")
    op.drop_table("promo_codes")
    op.drop_index("ix_points_redemptions_booking_id", table_name="points_redemptions")
    op.drop_index("ix_points_redemptions_user_status", table_name="points_redemptions")
    op.drop_table("points_redemptions")
    op.drop_index("ix_points_transactions_source", table_name="points_transactions")
    op.drop_index("ix_points_transactions_user_created", table_name="points_transactions")
    op.drop_table("points_transactions")
    op.drop_table("points_accounts")
    op.drop_index("ix_loyalty_tiers_tier_name", table_name="loyalty_tiers")
    op.drop_table("loyalty_tiers")

    bind = op.get_bind()
    for enum in (DISCOUNT_TYPE, REDEMPTION_STATUS, REDEMPTION_TYPE, SOURCE_TYPE, TRANSACTION_TYPE):
        enum.drop(bind, checkfirst=True)
