from __future__ import annotations

import json
import sys

from loguru import logger

from minuteserv_rewards.core.logging import configure_logging
from minuteserv_rewards.observability.rewards import get_rewards_store
from minuteserv_rewards.observability.scheduler import get_scheduler_store
from minuteserv_rewards.observability.tracing import _parse_headers


def test_rewards_store_aggregates_events() -> None:
    store = get_rewards_store()

    store.record_ledger_event("earn", points=300)
    store.record_ledger_event("redeem", points=-200)
    store.record_ledger_event("redeem", points=-100)
    store.record_promo_validation("valid")
    store.record_promo_validation("expired")
    store.record_reconciliation_run(scanned=4, updated=1, failed=0)
    store.record_reconciliation_drift(-3)

    snapshot = store.snapshot().as_dict()
    assert snapshot["ledger"] == {
        "earn:count": 1,
        "earn:points": 300,
        "redeem:count": 2,
        "redeem:points": 300,
    }
    assert snapshot["promo_validations"] == {"total": 2, "outcome:valid": 1, "outcome:expired": 1}
    assert snapshot["reconciliation"]["codes_scanned"] == 4
    assert snapshot["reconciliation"]["drift_total"] == 3

    store.reset()
    assert store.snapshot().ledger == {}


def test_scheduler_store_snapshot_is_detached() -> None:
    store = get_scheduler_store()
    store.record_dispatch("job", "module.task")
    store.record_success("job", "module.task", runtime_seconds=0.5, attempts=1, result={"updated_count": 2})

    snapshot = store.snapshot()
    snapshot.jobs["job"]["last_result"]["updated_count"] = 99

    fresh = store.snapshot().as_dict()
    assert fresh["jobs"]["job"]["last_result"] == {"updated_count": 2}
    assert fresh["totals"]["success"] == 1


def test_parse_otlp_headers() -> None:
    assert _parse_headers(None) is None
    assert _parse_headers("") is None
    assert _parse_headers("authorization=Bearer abc, x-team = rewards,broken") == {
        "authorization": "Bearer abc",
        "x-team": "rewards",
    }


def test_configure_logging_emits_structured_json(capsys) -> None:
    configure_logging(service_name="rewards-test", environment="test", version="0.0.1")
    try:
        logger.bind(job_id="promo_usage_reconciliation").info("Rewards job completed")
    finally:
        logger.remove()
        logger.add(sys.stderr)

    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    payload = json.loads(lines[-1])
    assert payload["message"] == "Rewards job completed"
    assert payload["service"] == "rewards-test"
    assert payload["environment"] == "test"
    assert payload["job_id"] == "promo_usage_reconciliation"
    assert "trace_id" not in payload
