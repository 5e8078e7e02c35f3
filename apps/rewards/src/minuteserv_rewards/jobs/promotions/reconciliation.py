"""Hourly promo usage reconciliation job."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from minuteserv_rewards.core.settings import settings
from minuteserv_rewards.services.promotions import PromoUsageReconciler

# meta: job: promo-usage-reconciliation

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_promo_usage_reconciliation(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Bring cached promo ``used_count`` values back in line with the usage log."""

    if not settings.promo_reconciliation_enabled:
        logger.info(
            "Promo usage reconciliation skipped",
            reason="promo_reconciliation_enabled is false",
        )
        return {"total_promo_codes": 0, "updated_count": 0, "skipped": True}

    summary = await PromoUsageReconciler(session_factory).reconcile_promo_code_usage()
    payload = summary.as_dict()
    if summary.failures:
        logger.warning("Promo usage reconciliation finished with failures", failures=len(summary.failures))
    return payload


__all__ = ["run_promo_usage_reconciliation"]
