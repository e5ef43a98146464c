"""
Bulk operation poller tests.

Guards against:
1. Exports polled past their budget, or given up on before it
2. Completed exports not being downloaded and ingested
3. Illegal state jumps (e.g. completed -> polling)
4. A late duplicate poll re-ingesting a settled export
5. A stuck export left running on Shopify after it is abandoned
"""
import asyncio

import pytest

from marketsync.connectors.base_client import ApiResponse
from marketsync.errors import RateLimitedError, TransientSyncError
from marketsync.models.base import SessionLocal
from marketsync.models.shopify import ShopifyOrder
from marketsync.models.sync_job import KIND_POLL_BULK
from marketsync.services import bulk_poller
from marketsync.services.bulk_poller import (
    BulkOperationPoller,
    BulkState,
    InvalidTransition,
    transition,
)
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.job_queue import JobQueue, QueuedJob

OPERATION_ID = "gid://shopify/BulkOperation/1"
RESULT = (
    '{"id": "gid://shopify/Order/1", "createdAt": "2024-03-01T10:00:00Z"}\n'
    '{"id": "gid://shopify/Order/2", "createdAt": "2024-03-02T10:00:00Z"}\n'
)


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


class FakeShopify:
    """Reports a scripted sequence of bulk statuses."""

    def __init__(self, *statuses, download=None, cancel=None):
        self.statuses = list(statuses)
        self.status_calls = 0
        self.downloads = 0
        self.cancelled = []
        self.download = download or ApiResponse(success=True, data=RESULT)
        self.cancel = cancel or ApiResponse(success=True, data={"status": "CANCELING"})

    async def cancel_bulk_operation(self, tenant_id, operation_id):
        self.cancelled.append(operation_id)
        return self.cancel

    async def get_bulk_operation(self, tenant_id, operation_id):
        status = self.statuses[min(self.status_calls, len(self.statuses) - 1)]
        self.status_calls += 1
        if isinstance(status, ApiResponse):
            return status
        operation = {"id": operation_id, "status": status, "objectCount": "2", "errorCode": None,
                     "url": "https://storage.example.com/result.jsonl" if status == "COMPLETED" else None}
        if status == "FAILED":
            operation["errorCode"] = "ACCESS_DENIED"
        return ApiResponse(success=True, data=operation)

    async def download_bulk_result(self, tenant_id, url):
        self.downloads += 1
        return self.download


@pytest.fixture
def queue(now):
    return JobQueue(clock=now)


@pytest.fixture
def ledger():
    return EtlLedger()


@pytest.fixture
def poller(queue, ledger):
    return BulkOperationPoller(queue=queue, ledger=ledger, max_attempts=3,
                               initial_delay=10, delay_growth=2, max_delay=30)


def _start(poller, ledger):
    record_id = ledger.create_record("acme", "shopify", "orders", "bulk")
    export_job = QueuedJob(id=0, tenant_id="acme", platform="shopify", kind="bulk_orders",
                           claim_token="t", etl_job_id=record_id)
    poller.start(export_job, OPERATION_ID, "orders", extra={"chain": ["customers"]})
    return record_id


def _next_poll(queue, now, seconds):
    now.advance(seconds)
    jobs = queue.claim("w")
    assert len(jobs) == 1 and jobs[0].kind == KIND_POLL_BULK
    queue.complete(jobs[0])
    return jobs[0]


def _orders():
    db = SessionLocal()
    try:
        return db.query(ShopifyOrder).count()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

def test_transition_rules():
    assert transition(BulkState.CREATED, BulkState.POLLING) == BulkState.POLLING
    assert transition(BulkState.READY, BulkState.INGESTING) == BulkState.INGESTING
    with pytest.raises(InvalidTransition):
        transition(BulkState.COMPLETED, BulkState.POLLING)
    with pytest.raises(InvalidTransition):
        transition(BulkState.POLLING, BulkState.COMPLETED)


def test_module_doc_shows_the_transitions_plainly():
    doc = bulk_poller.__doc__
    assert "\\" not in doc
    assert "any state before completed -> failed" in doc
    assert "created | polling -> abandoned" in doc


def test_poll_delays_grow_and_cap(poller):
    assert [poller.delay_for(n) for n in (1, 2, 3, 4)] == [10, 20, 30, 30]


def test_start_schedules_first_poll(poller, queue, ledger, now):
    record_id = _start(poller, ledger)

    record = ledger.get_record(record_id)
    assert record["bulk_state"] == "created"

    now.advance(9)
    assert queue.claim("w") == []
    job = _next_poll(queue, now, 1)
    assert job.payload["operation_id"] == OPERATION_ID
    assert job.payload["poll_attempt"] == 1
    assert job.payload["max_poll_attempts"] == 3
    assert job.payload["chain"] == ["customers"]
    assert job.etl_job_id == record_id


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

def test_abandoned_after_exactly_the_budget(poller, queue, ledger, now):
    record_id = _start(poller, ledger)
    client = FakeShopify("RUNNING")

    outcomes = []
    delay = poller.delay_for(1)
    for _ in range(3):
        job = _next_poll(queue, now, delay)
        outcome = _run(poller.poll(job, client))
        outcomes.append(outcome)
        delay = outcome.next_delay_seconds or 0

    assert [o.state for o in outcomes] == [BulkState.POLLING, BulkState.POLLING, BulkState.ABANDONED]
    assert client.status_calls == 3
    assert outcomes[-1].next_poll_job_id is None

    now.advance(3600)
    assert queue.claim("w") == []

    record = ledger.get_record(record_id)
    assert record["bulk_state"] == "abandoned"
    assert "3 polls" in record["error_message"]

    # The export is stopped on Shopify so the next one can start
    assert client.cancelled == [OPERATION_ID]


def test_abandon_still_settles_when_cancel_fails(poller, queue, ledger, now):
    record_id = _start(poller, ledger)
    client = FakeShopify("RUNNING", cancel=ApiResponse(success=False, error="Bulk operation is not running"))

    delay = poller.delay_for(1)
    for _ in range(3):
        job = _next_poll(queue, now, delay)
        outcome = _run(poller.poll(job, client))
        delay = outcome.next_delay_seconds or 0

    assert outcome.state == BulkState.ABANDONED
    assert client.cancelled == [OPERATION_ID]
    assert "cancel failed" in ledger.get_record(record_id)["error_message"]


def test_completed_export_is_downloaded_and_ingested(poller, queue, ledger, now):
    record_id = _start(poller, ledger)
    client = FakeShopify("RUNNING", "COMPLETED")

    first = _run(poller.poll(_next_poll(queue, now, 10), client))
    second = _run(poller.poll(_next_poll(queue, now, first.next_delay_seconds), client))

    assert second.state == BulkState.COMPLETED
    assert second.rows_written == 2
    assert second.poll_attempt == 2
    assert client.downloads == 1
    assert _orders() == 2
    assert ledger.get_record(record_id)["bulk_state"] == "ingesting"


def test_failed_export(poller, queue, ledger, now):
    record_id = _start(poller, ledger)

    outcome = _run(poller.poll(_next_poll(queue, now, 10), FakeShopify("FAILED")))

    assert outcome.state == BulkState.FAILED
    assert "ACCESS_DENIED" in outcome.error
    assert ledger.get_record(record_id)["bulk_state"] == "failed"


def test_unknown_operation_fails(poller, queue, ledger, now):
    _start(poller, ledger)
    client = FakeShopify(ApiResponse(success=True, data=None))

    outcome = _run(poller.poll(_next_poll(queue, now, 10), client))
    assert outcome.state == BulkState.FAILED
    assert "not found" in outcome.error


def test_rate_limited_status_check_raises(poller, queue, ledger, now):
    _start(poller, ledger)
    client = FakeShopify(ApiResponse(success=False, rate_limited=True, retry_after_seconds=45))

    with pytest.raises(RateLimitedError) as exc:
        _run(poller.poll(_next_poll(queue, now, 10), client))
    assert exc.value.delay_seconds == 45


def test_download_failure_keeps_export_ready_for_retry(poller, queue, ledger, now):
    record_id = _start(poller, ledger)
    client = FakeShopify("COMPLETED", download=ApiResponse(success=False, error="HTTP 503", retryable=True))
    job = _next_poll(queue, now, 10)

    with pytest.raises(TransientSyncError):
        _run(poller.poll(job, client))
    assert ledger.get_record(record_id)["bulk_state"] == "ready"

    client.download = ApiResponse(success=True, data=RESULT)
    outcome = _run(poller.poll(job, client))
    assert outcome.state == BulkState.COMPLETED
    assert _orders() == 2


def test_settled_export_is_not_polled_again(poller, queue, ledger, now):
    record_id = _start(poller, ledger)
    job = _next_poll(queue, now, 10)
    ledger.update_progress(record_id, bulk_state="completed")
    client = FakeShopify("COMPLETED")

    outcome = _run(poller.poll(job, client))

    assert outcome.skipped is True
    assert outcome.state == BulkState.COMPLETED
    assert client.status_calls == 0
    assert _orders() == 0
