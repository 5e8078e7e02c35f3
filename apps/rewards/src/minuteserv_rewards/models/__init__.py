"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyTier,
    PointsAccount,
    PointsSourceType,
    PointsTransaction,
    PointsTransactionType,
    Redemption,
    RedemptionStatus,
    RedemptionType,
)
from .promotions import (  # noqa: F401
    PromoCode,
    PromoCodeUsage,
    PromoDiscountType,
    normalize_promo_code,
)
