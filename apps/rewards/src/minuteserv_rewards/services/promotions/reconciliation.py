"""Repair drift between promo ``used_count`` caches and the usage log."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List
from uuid import UUID

from loguru import logger
from opentelemetry import trace
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from minuteserv_rewards.models.promotions import PromoCode, PromoCodeUsage
from minuteserv_rewards.observability.rewards import get_rewards_store
from minuteserv_rewards.services.errors import AccountError, NotFoundError, RewardsError

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

_tracer = trace.get_tracer(__name__)


@dataclass
class PromoUsageDrift:
    promo_code_id: UUID
    code: str
    old_count: int
    new_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "promo_code_id": str(self.promo_code_id),
            "code": self.code,
            "old_count": self.old_count,
            "new_count": self.new_count,
        }


@dataclass
class PromoReconciliationFailure:
    promo_code_id: UUID
    error: str


@dataclass
class PromoReconciliationResult:
    promo_code: str
    promo_code_id: UUID
    old_count: int
    new_count: int
    updated: bool


@dataclass
class ReconciliationSummary:
    total_promo_codes: int = 0
    updated_count: int = 0
    updates: List[PromoUsageDrift] = field(default_factory=list)
    failures: List[PromoReconciliationFailure] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_promo_codes": self.total_promo_codes,
            "updated_count": self.updated_count,
            "updates": [drift.as_dict() for drift in self.updates],
            "failures": [
                {"promo_code_id": str(failure.promo_code_id), "error": failure.error}
                for failure in self.failures
            ],
        }


class PromoUsageReconciler:
    """Recount usage rows per promo code, one short transaction per code."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._telemetry = get_rewards_store()

    async def reconcile_promo_code_usage(self) -> ReconciliationSummary:
        summary = ReconciliationSummary()

        with _tracer.start_as_current_span("promo_usage.reconcile_all") as span:
            session = await self._open_session()
            async with session as managed_session:
                result = await managed_session.execute(select(PromoCode.id).order_by(PromoCode.code))
                promo_ids = list(result.scalars().all())

            summary.total_promo_codes = len(promo_ids)
            for promo_code_id in promo_ids:
                try:
                    outcome = await self.reconcile_single_promo_code(promo_code_id)
                except NotFoundError:
                    logger.info("Promo code removed during reconciliation", promo_code_id=str(promo_code_id))
                    continue
                except RewardsError as exc:
                    logger.error(
                        "Promo usage reconciliation failed for code",
                        promo_code_id=str(promo_code_id),
                        error=str(exc),
                    )
                    summary.failures.append(PromoReconciliationFailure(promo_code_id, str(exc)))
                    continue

                if outcome.updated:
                    summary.updated_count += 1
                    summary.updates.append(
                        PromoUsageDrift(
                            promo_code_id=outcome.promo_code_id,
                            code=outcome.promo_code,
                            old_count=outcome.old_count,
                            new_count=outcome.new_count,
                        )
                    )

            span.set_attribute("promo.codes_scanned", summary.total_promo_codes)
            span.set_attribute("promo.codes_updated", summary.updated_count)
            span.set_attribute("promo.codes_failed", len(summary.failures))

        self._telemetry.record_reconciliation_run(
            scanned=summary.total_promo_codes,
            updated=summary.updated_count,
            failed=len(summary.failures),
        )
        logger.bind(summary={k: v for k, v in summary.as_dict().items() if k != "updates"}).info(
            "Promo usage reconciliation completed"
        )
        return summary

    async def reconcile_single_promo_code(self, promo_code_id: UUID) -> PromoReconciliationResult:
        with _tracer.start_as_current_span("promo_usage.reconcile_code") as span:
            span.set_attribute("promo.id", str(promo_code_id))
            try:
                outcome = await self._reconcile(promo_code_id)
            except SQLAlchemyError as exc:
                raise AccountError(f"Failed to reconcile promo code {promo_code_id}: {exc}") from exc

        if outcome.updated:
            self._telemetry.record_reconciliation_drift(outcome.new_count - outcome.old_count)
            logger.info(
                "Reconciled promo code usage",
                promo_code_id=str(promo_code_id),
                code=outcome.promo_code,
                old_count=outcome.old_count,
                new_count=outcome.new_count,
            )
        return outcome

    async def _reconcile(self, promo_code_id: UUID) -> PromoReconciliationResult:
        session = await self._open_session()
        async with session as managed_session:
            async with managed_session.begin():
                row = (
                    await managed_session.execute(
                        select(PromoCode.code, PromoCode.used_count)
                        .where(PromoCode.id == promo_code_id)
                        .with_for_update()
                    )
                ).one_or_none()
                if row is None:
                    raise NotFoundError("Promo code not found")

                actual = (
                    await managed_session.execute(
                        select(func.count(PromoCodeUsage.id)).where(PromoCodeUsage.promo_code_id == promo_code_id)
                    )
                ).scalar_one()
                old_count = int(row.used_count or 0)
                new_count = int(actual or 0)
                updated = old_count != new_count
                if updated:
                    await managed_session.execute(
                        update(PromoCode)
                        .where(PromoCode.id == promo_code_id)
                        .values(used_count=new_count)
                        .execution_options(synchronize_session=False)
                    )

        return PromoReconciliationResult(
            promo_code=row.code,
            promo_code_id=promo_code_id,
            old_count=old_count,
            new_count=new_count,
            updated=updated,
        )

    async def _open_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = [
    "PromoReconciliationFailure",
    "PromoReconciliationResult",
    "PromoUsageDrift",
    "PromoUsageReconciler",
    "ReconciliationSummary",
]
