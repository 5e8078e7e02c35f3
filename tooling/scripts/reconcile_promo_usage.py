#!/usr/bin/env python3
"""Reconcile cached promo code usage counters against the usage log.

Example:
    python tooling/scripts/reconcile_promo_usage.py
    python tooling/scripts/reconcile_promo_usage.py --promo-code-id <uuid> --format json

The scheduler runs the same reconciliation hourly; this script is for
on-demand repairs after incidents or bulk imports.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile promo code used_count caches")
    parser.add_argument(
        "--promo-code-id",
        type=UUID,
        help="Reconcile a single promo code instead of all codes.",
    )
    parser.add_argument(
        "--format",
        choices=("json", "text"),
        default="text",
        help="Output format for the reconciliation report.",
    )
    return parser.parse_args()


async def _run(promo_code_id: UUID | None) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    rewards_src = repo_root / "apps" / "rewards" / "src"
    if str(rewards_src) not in sys.path:
        sys.path.insert(0, str(rewards_src))

    from minuteserv_rewards.db.session import async_session, engine  # type: ignore import-position
    from minuteserv_rewards.services.promotions import PromoUsageReconciler  # type: ignore import-position

    reconciler = PromoUsageReconciler(async_session)
    try:
        if promo_code_id is not None:
            result = await reconciler.reconcile_single_promo_code(promo_code_id)
            return {
                "total_promo_codes": 1,
                "updated_count": int(result.updated),
                "updates": [
                    {
                        "promo_code_id": str(result.promo_code_id),
                        "code": result.promo_code,
                        "old_count": result.old_count,
                        "new_count": result.new_count,
                    }
                ]
                if result.updated
                else [],
                "failures": [],
            }
        summary = await reconciler.reconcile_promo_code_usage()
        return summary.as_dict()
    finally:
        await engine.dispose()


def _render_text(report: dict[str, Any]) -> str:
    lines = [
        f"Promo codes scanned: {report['total_promo_codes']}",
        f"Counters corrected: {report['updated_count']}",
    ]
    for update in report["updates"]:
        lines.append(f"  {update['code']}: {update['old_count']} -> {update['new_count']}")
    for failure in report["failures"]:
        lines.append(f"  FAILED {failure['promo_code_id']}: {failure['error']}")
    return "\n".join(lines)


def main() -> int:
    args = parse_args()
    report = asyncio.run(_run(args.promo_code_id))
    if args.format == "json":
        print(json.dumps(report, indent=2))
    else:
        print(_render_text(report))
    logger.success(
        "Promo usage reconciliation completed",
        updated=report["updated_count"],
        failures=len(report["failures"]),
    )
    return 1 if report["failures"] else 0


if __name__ == "__main__":
    sys.exit(main())
