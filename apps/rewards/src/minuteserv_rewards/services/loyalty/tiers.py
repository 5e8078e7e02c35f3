"""Loyalty tier catalog: static reference data and tier resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Sequence

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from minuteserv_rewards.models.loyalty import LoyaltyTier


@dataclass(frozen=True)
class TierDefinition:
    """Immutable view of a tier row."""

    tier_name: str
    min_points: int
    max_points: int | None
    cashback_percentage: Decimal
    benefits: tuple[str, ...] = field(default_factory=tuple)
    badge_color: str | None = None
    badge_icon: str | None = None

    @classmethod
    def from_model(cls, tier: LoyaltyTier) -> "TierDefinition":
        return cls(
            tier_name=tier.tier_name,
            min_points=int(tier.min_points or 0),
            max_points=int(tier.max_points) if tier.max_points is not None else None,
            cashback_percentage=Decimal(str(tier.cashback_percentage or 0)),
            benefits=tuple(tier.benefits or ()),
            badge_color=tier.badge_color,
            badge_icon=tier.badge_icon,
        )


DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    TierDefinition("bronze", 0, 5000, Decimal("5.00"), ("basic_rewards",), "#CD7F32", "bronze-medal"),
    TierDefinition(
        "silver",
        5000,
        15000,
        Decimal("10.00"),
        ("priority_booking", "birthday_bonus"),
        "#C0C0C0",
        "silver-medal",
    ),
    TierDefinition(
        "gold",
        15000,
        30000,
        Decimal("15.00"),
        ("priority_booking", "birthday_bonus", "exclusive_services"),
        "#FFD700",
        "gold-medal",
    ),
    TierDefinition(
        "platinum",
        30000,
        None,
        Decimal("20.00"),
        ("priority_booking", "birthday_bonus", "exclusive_services", "vip_concierge"),
        "#E5E4E2",
        "platinum-medal",
    ),
)


class TierCatalog:
    """Ordered, read-only set of active tiers."""

    def __init__(self, tiers: Iterable[TierDefinition]) -> None:
        self._tiers: tuple[TierDefinition, ...] = tuple(sorted(tiers, key=lambda tier: tier.min_points))

    @classmethod
    async def load(cls, session: AsyncSession) -> "TierCatalog":
        stmt = (
            select(LoyaltyTier)
            .where(LoyaltyTier.is_active.is_(True))
            .order_by(LoyaltyTier.min_points.asc())
        )
        result = await session.execute(stmt)
        tiers = [TierDefinition.from_model(row) for row in result.scalars().all()]
        logger.debug("Loaded loyalty tier catalog", count=len(tiers))
        return cls(tiers)

    @property
    def tiers(self) -> tuple[TierDefinition, ...]:
        return self._tiers

    def __bool__(self) -> bool:
        return bool(self._tiers)

    def get(self, tier_name: str | None) -> TierDefinition | None:
        if tier_name is None:
            return None
        return next((tier for tier in self._tiers if tier.tier_name == tier_name), None)

    def resolve(self, lifetime_points: int) -> TierDefinition | None:
        """Highest tier whose threshold the lifetime total has reached."""

        eligible = [tier for tier in self._tiers if tier.min_points <= lifetime_points]
        return eligible[-1] if eligible else None

    def next_tier(self, lifetime_points: int) -> TierDefinition | None:
        return next((tier for tier in self._tiers if tier.min_points > lifetime_points), None)


async def seed_tiers(session: AsyncSession, tiers: Sequence[TierDefinition] = DEFAULT_TIERS) -> int:
    """Insert or update catalog rows by ``tier_name``. Returns rows written."""

    result = await session.execute(select(LoyaltyTier))
    existing = {tier.tier_name: tier for tier in result.scalars().all()}
    written = 0
    for definition in tiers:
        row = existing.get(definition.tier_name)
        if row is None:
            row = LoyaltyTier(tier_name=definition.tier_name)
            session.add(row)
        row.min_points = definition.min_points
        row.max_points = definition.max_points
        row.cashback_percentage = definition.cashback_percentage
        row.benefits = list(definition.benefits)
        row.badge_color = definition.badge_color
        row.badge_icon = definition.badge_icon
        row.is_active = True
        written += 1
    await session.flush()
    logger.info("Seeded loyalty tiers", count=written)
    return written


__all__ = ["DEFAULT_TIERS", "TierCatalog", "TierDefinition", "seed_tiers"]
