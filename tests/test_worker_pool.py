"""
Worker pool tests.

Guards against:
1. Handler outcomes mapping to the wrong queue transition
2. Ledger records stuck in running after a failure or deferral
3. A hung handler blocking the worker forever
4. More handlers running at once than the configured concurrency
"""
import asyncio

import pytest

from marketsync.errors import JobDeferred, PermanentSyncError, RateLimitedError
from marketsync.models.base import SessionLocal
from marketsync.models.connection import CONNECTION_DEGRADED, PlatformConnection, SYNC_COMPLETED
from marketsync.models.etl import ETL_COMPLETED, ETL_FAILED, ETL_QUEUED, ETL_RUNNING
from marketsync.models.sync_job import JOB_COMPLETED, JOB_FAILED, JOB_QUEUED
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.job_queue import JobQueue
from marketsync.services.worker import (
    OUTCOME_COMPLETED,
    OUTCOME_DEFERRED,
    OUTCOME_FAILED,
    OUTCOME_RETRY,
    OUTCOME_SKIPPED,
    JobResult,
    WorkerPool,
)


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


@pytest.fixture
def queue(now):
    return JobQueue(clock=now)


@pytest.fixture
def ledger():
    return EtlLedger()


@pytest.fixture
def pool(queue, ledger):
    return WorkerPool(queue=queue, ledger=ledger, concurrency=2, worker_id="test-worker")


def _enqueue(queue, ledger, kind="recent_sync", platform="meta", **kwargs):
    record_id = ledger.create_record("acme", platform, "recent_sync", "recent")
    job_id = queue.enqueue("acme", platform, kind, etl_job_id=record_id, **kwargs)
    return job_id, record_id


# ---------------------------------------------------------------------------
# Outcome mapping
# ---------------------------------------------------------------------------

def test_success_completes_job_and_ledger(pool, queue, ledger, make_connection):
    make_connection(platform="meta")
    job_id, record_id = _enqueue(queue, ledger)

    async def handler(job):
        return JobResult(rows_written=42)

    pool.register("recent_sync", handler)
    summary = _run(pool.process_available())

    assert summary == {"claimed": 1, OUTCOME_COMPLETED: 1}
    assert queue.get_job(job_id)["status"] == JOB_COMPLETED
    record = ledger.get_record(record_id)
    assert record["status"] == ETL_COMPLETED
    assert record["rows_written"] == 42
    assert record["progress_pct"] == 100

    db = SessionLocal()
    connection = db.query(PlatformConnection).filter(PlatformConnection.platform == "meta").first()
    assert connection.sync_status == SYNC_COMPLETED
    assert connection.last_synced_at is not None
    db.close()


def test_handler_can_leave_ledger_open(pool, queue, ledger):
    job_id, record_id = _enqueue(queue, ledger, kind="bulk_orders", platform="shopify")

    async def handler(job):
        return JobResult(complete_ledger=False, ledger_fields={"bulk_state": "polling", "bulk_operation_id": "gid://1"})

    pool.register("bulk_orders", handler)
    _run(pool.process_available())

    assert queue.get_job(job_id)["status"] == JOB_COMPLETED
    record = ledger.get_record(record_id)
    assert record["status"] == ETL_RUNNING
    assert record["bulk_state"] == "polling"


@pytest.mark.parametrize("error", [
    JobDeferred("bulk export busy", delay_seconds=120),
    RateLimitedError("meta rate limit", retry_after_seconds=60),
])
def test_deferral_requeues_without_spending_attempt(pool, queue, ledger, error):
    job_id, record_id = _enqueue(queue, ledger)

    async def handler(job):
        raise error

    pool.register("recent_sync", handler)
    summary = _run(pool.process_available())

    assert summary[OUTCOME_DEFERRED] == 1
    job = queue.get_job(job_id)
    assert job["status"] == JOB_QUEUED
    assert job["attempts"] == 0
    assert ledger.get_record(record_id)["status"] == ETL_QUEUED


def test_permanent_error_fails_and_degrades_connection(pool, queue, ledger, make_connection):
    make_connection(platform="meta")
    job_id, record_id = _enqueue(queue, ledger)

    async def handler(job):
        raise PermanentSyncError("Invalid OAuth access token", degrade_connection=True)

    pool.register("recent_sync", handler)
    outcome = _run(pool.run_job(queue.claim("w")[0]))

    assert outcome == OUTCOME_FAILED
    assert queue.get_job(job_id)["status"] == JOB_FAILED
    record = ledger.get_record(record_id)
    assert record["status"] == ETL_FAILED
    assert "Invalid OAuth" in record["error_message"]

    db = SessionLocal()
    connection = db.query(PlatformConnection).filter(PlatformConnection.platform == "meta").first()
    assert connection.status == CONNECTION_DEGRADED
    db.close()


def test_unexpected_error_retries_until_budget_spent(pool, queue, ledger, now):
    job_id, record_id = _enqueue(queue, ledger, max_attempts=2)

    async def handler(job):
        raise RuntimeError("connection reset")

    pool.register("recent_sync", handler)

    assert _run(pool.run_job(queue.claim("w")[0])) == OUTCOME_RETRY
    assert ledger.get_record(record_id)["status"] == ETL_QUEUED
    assert ledger.get_record(record_id)["error_message"] == "connection reset"

    now.advance(3600)
    assert _run(pool.run_job(queue.claim("w")[0])) == OUTCOME_FAILED
    assert queue.get_job(job_id)["status"] == JOB_FAILED
    assert ledger.get_record(record_id)["status"] == ETL_FAILED


def test_unknown_kind_is_skipped_and_failed(pool, queue, ledger):
    job_id, record_id = _enqueue(queue, ledger, kind="mystery")

    summary = _run(pool.process_available())

    assert summary[OUTCOME_SKIPPED] == 1
    assert queue.get_job(job_id)["status"] == JOB_FAILED
    assert ledger.get_record(record_id)["status"] == ETL_FAILED


def test_hung_handler_times_out_into_stall_path(pool, queue, ledger):
    job_id, record_id = _enqueue(queue, ledger)

    async def handler(job):
        await asyncio.sleep(10)
        return JobResult()

    pool.register("recent_sync", handler)
    job = queue.claim("w")[0]
    job.timeout_seconds = 0.05

    assert _run(pool.run_job(job)) == OUTCOME_RETRY

    row = queue.get_job(job_id)
    assert row["status"] == JOB_QUEUED
    assert row["stalled_count"] == 1
    assert row["attempts"] == 0
    assert "timeout" in row["last_error"]
    assert ledger.get_record(record_id)["status"] == ETL_QUEUED


# ---------------------------------------------------------------------------
# Pool behaviour
# ---------------------------------------------------------------------------

def test_concurrency_is_bounded(pool, queue, ledger):
    for _ in range(6):
        _enqueue(queue, ledger)

    running = {"now": 0, "peak": 0}

    async def handler(job):
        running["now"] += 1
        running["peak"] = max(running["peak"], running["now"])
        await asyncio.sleep(0.01)
        running["now"] -= 1
        return JobResult(rows_written=1)

    pool.register("recent_sync", handler)
    summary = _run(pool.process_available(limit=6))

    assert summary[OUTCOME_COMPLETED] == 6
    assert running["peak"] == 2


def test_drain_runs_follow_up_jobs(pool, queue, ledger):
    _enqueue(queue, ledger)
    seen = []

    async def first(job):
        seen.append(job.kind)
        queue.enqueue(job.tenant_id, job.platform, "second")
        return JobResult()

    async def second(job):
        seen.append(job.kind)
        return JobResult()

    pool.register("recent_sync", first)
    pool.register("second", second)
    totals = _run(pool.drain())

    assert seen == ["recent_sync", "second"]
    assert totals["claimed"] == 2


def test_empty_queue_reports_nothing_claimed(pool):
    assert _run(pool.process_available()) == {"claimed": 0}


def test_reclaim_stalled_settles_ledger(pool, queue, ledger, now):
    job_id, record_id = _enqueue(queue, ledger, timeout_seconds=10)
    queue.claim("dead-worker")
    ledger.mark_running(record_id)

    now.advance(3600)
    reclaimed = pool.reclaim_stalled()

    assert [r["id"] for r in reclaimed] == [job_id]
    assert ledger.get_record(record_id)["status"] == ETL_QUEUED
