"""
Backfill execution tests.

Guards against:
1. One failed chunk aborting the rest of the backfill
2. Chunks fired back to back without the pause
3. Missing audit rows in backfill_logs
4. Cooldowns being logged as chunk failures when the caller wants to defer
"""
import asyncio
from datetime import date

import pytest

from marketsync.errors import RateLimitedError
from marketsync.models.base import SessionLocal
from marketsync.models.etl import BackfillLog
from marketsync.services.backfill_service import BackfillService
from marketsync.services.gap_detection import DataGap


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


class ScriptedSyncer:
    """Range syncer that fails on chosen start dates."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    async def __call__(self, tenant_id, platform, start, end):
        self.calls.append((platform, start, end))
        if start in self.failures:
            raise self.failures[start]
        return (end - start).days + 1


def _service(syncer, sleeps, **kwargs):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    params = dict(chunk_delay=5, max_chunk_days=10, sleep=fake_sleep)
    params.update(kwargs)
    return BackfillService(syncer, **params)


def _logs():
    db = SessionLocal()
    try:
        return [row.to_dict() for row in db.query(BackfillLog).order_by(BackfillLog.id).all()]
    finally:
        db.close()


def test_failed_chunk_does_not_stop_the_rest():
    gaps = [DataGap("meta", date(2024, 1, 1), date(2024, 1, 25)), DataGap("shopify", date(2024, 2, 1), date(2024, 2, 3))]
    syncer = ScriptedSyncer({date(2024, 1, 6): RuntimeError("HTTP 500")})
    sleeps = []

    result = _run(_service(syncer, sleeps).execute("acme", gaps, trigger="auto"))

    # 25 days in chunks of 10 (newest first) plus the 3-day shopify gap
    assert [c[1] for c in syncer.calls] == [date(2024, 1, 16), date(2024, 1, 6), date(2024, 1, 1), date(2024, 2, 1)]
    assert result["success"] is False
    assert result["chunks_processed"] == 4
    assert result["records_added"] == 10 + 5 + 3
    assert result["remaining_gaps"] == [
        {"platform": "meta", "start_date": "2024-01-06", "end_date": "2024-01-15", "day_count": 10}
    ]
    assert sleeps == [5, 5, 5]

    logs = _logs()
    assert len(logs) == 4
    assert [log["success"] for log in logs] == [True, False, True, True]
    assert logs[1]["error"] == "HTTP 500"


def test_no_pause_for_a_single_chunk():
    sleeps = []
    result = _run(_service(ScriptedSyncer(), sleeps).execute("acme", [DataGap("meta", date(2024, 1, 1), date(2024, 1, 2))]))
    assert result["success"] is True
    assert sleeps == []


def test_rate_limit_is_logged_or_raised():
    chunk = DataGap("meta", date(2024, 1, 1), date(2024, 1, 2))
    syncer = ScriptedSyncer({date(2024, 1, 1): RateLimitedError("meta rate limit reached", 120)})
    service = _service(syncer, [])

    outcome = _run(service.run_chunk("acme", chunk))
    assert outcome.success is False
    assert len(_logs()) == 1

    with pytest.raises(RateLimitedError):
        _run(service.run_chunk("acme", chunk, raise_rate_limited=True))
    assert len(_logs()) == 1


def test_audit_below_threshold_does_nothing(make_connection):
    make_connection(platform="meta")
    syncer = ScriptedSyncer()

    class TwoDayGap:
        def detect_gaps(self, tenant_id, lookback_days=None):
            return [DataGap("meta", date(2024, 1, 1), date(2024, 1, 2))]

    result = _run(_service(syncer, [], detector=TwoDayGap()).audit_tenant("acme", threshold_days=3))

    assert result["executed"] is False
    assert result["plan"]["total_missing_days"] == 2
    assert syncer.calls == []

    forced = _run(_service(syncer, [], detector=TwoDayGap()).audit_tenant("acme", threshold_days=3, force=True))
    assert forced["executed"] is True
    assert forced["records_added"] == 2
