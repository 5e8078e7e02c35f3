"""Promotion service exports."""

from .booking_history import (  # noqa: F401
    BookingHistory,
    BookingsTableHistory,
    LedgerBookingHistory,
    build_booking_history,
)
from .reconciliation import (  # noqa: F401
    PromoReconciliationFailure,
    PromoReconciliationResult,
    PromoUsageDrift,
    PromoUsageReconciler,
    ReconciliationSummary,
)
from .validator import PromoRejectionReason, PromoService, PromoValidation, compute_discount  # noqa: F401
