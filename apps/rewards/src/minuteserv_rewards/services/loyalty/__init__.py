"""Loyalty service exports."""

from .ledger import (  # noqa: F401
    NextTierInfo,
    PointsBalanceSnapshot,
    PointsHistoryPage,
    PointsLedger,
    PointsRedemptionResult,
    TierInfo,
    TierProgress,
)
from .redemptions import RedemptionService, VoucherIssue, generate_voucher_code  # noqa: F401
from .tiers import DEFAULT_TIERS, TierCatalog, TierDefinition, seed_tiers  # noqa: F401
