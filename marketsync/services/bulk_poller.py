"""
Bulk Operation Poller

Tracks a Shopify bulk export to completion as an explicit state machine:

    created -> polling -> ready -> ingesting -> completed
    any state before completed -> failed
    created | polling -> abandoned (poll budget exhausted)

Each poll is its own delayed poll_bulk job, so waiting never holds a worker
slot. The poll budget is a constructor parameter and travels in the job
payload. The poll that exhausts it cancels the export on Shopify, which
frees the shop's single bulk slot, and moves it to abandoned; the ledger
keeps it visible until a retry supersedes it.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from marketsync.config import get_settings
from marketsync.connectors.shopify_client import (
    BULK_ACTIVE_STATUSES,
    BULK_COMPLETED,
    ShopifyClient,
)
from marketsync.errors import PermanentSyncError, RateLimitedError, TransientSyncError
from marketsync.models.base import SessionLocal
from marketsync.models.sync_job import KIND_POLL_BULK, PRIORITY_POLL
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.ingestion import ingest_bulk_result, parse_jsonl
from marketsync.services.job_queue import JobQueue, QueuedJob
from marketsync.utils.logger import log


class BulkState(str, Enum):
    CREATED = "created"
    POLLING = "polling"
    READY = "ready"
    INGESTING = "ingesting"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


TERMINAL_STATES = {BulkState.COMPLETED, BulkState.FAILED, BulkState.ABANDONED}

ALLOWED_TRANSITIONS = {
    BulkState.CREATED: {BulkState.POLLING, BulkState.READY, BulkState.FAILED, BulkState.ABANDONED},
    BulkState.POLLING: {BulkState.POLLING, BulkState.READY, BulkState.FAILED, BulkState.ABANDONED},
    BulkState.READY: {BulkState.INGESTING, BulkState.FAILED},
    BulkState.INGESTING: {BulkState.COMPLETED, BulkState.FAILED},
}


class InvalidTransition(ValueError):
    pass


def transition(current: BulkState, target: BulkState) -> BulkState:
    """Validate a state change"""
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Bulk export cannot go from {current.value} to {target.value}")
    return target


@dataclass
class PollOutcome:
    state: BulkState
    poll_attempt: int
    rows_written: int = 0
    total_rows: Optional[int] = None
    next_poll_job_id: Optional[int] = None
    next_delay_seconds: Optional[float] = None
    error: Optional[str] = None
    skipped: bool = False  # export was already settled by an earlier poll

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class BulkOperationPoller:
    """Drives one bulk export per poll_bulk job"""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        ledger: Optional[EtlLedger] = None,
        session_factory=SessionLocal,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        delay_growth: Optional[float] = None,
        max_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.ledger = ledger or EtlLedger(session_factory)
        self.max_attempts = max_attempts or settings.bulk_poll_max_attempts
        self.initial_delay = initial_delay if initial_delay is not None else settings.bulk_poll_initial_delay_seconds
        self.delay_growth = delay_growth or settings.bulk_poll_delay_growth
        self.max_delay = max_delay if max_delay is not None else settings.bulk_poll_max_delay_seconds
        self.batch_size = batch_size or settings.ingest_batch_size

    def delay_for(self, poll_attempt: int) -> float:
        """Delay before poll number `poll_attempt` (1-indexed), gently increasing"""
        delay = self.initial_delay * (self.delay_growth ** max(poll_attempt - 1, 0))
        return min(delay, max(self.max_delay, self.initial_delay))

    def _enqueue_poll(self, job_or_context, payload: dict, poll_attempt: int, etl_job_id: Optional[int]) -> int:
        delay = self.delay_for(poll_attempt)
        return self.queue.enqueue(
            tenant_id=job_or_context.tenant_id,
            platform=job_or_context.platform,
            kind=KIND_POLL_BULK,
            payload={**payload, "poll_attempt": poll_attempt},
            priority=PRIORITY_POLL,
            delay_seconds=delay,
            connection_id=job_or_context.connection_id,
            etl_job_id=etl_job_id,
        )

    def start(self, job: QueuedJob, operation_id: str, entity: str, extra: Optional[dict] = None) -> int:
        """
        Register a freshly created export and schedule its first poll.

        Returns:
            id of the poll_bulk job
        """
        self.ledger.update_progress(
            job.etl_job_id,
            bulk_operation_id=operation_id,
            bulk_state=BulkState.CREATED.value,
            poll_attempts=0,
        )
        payload = {
            **(extra or {}),
            "operation_id": operation_id,
            "entity": entity,
            "max_poll_attempts": self.max_attempts,
        }
        poll_job_id = self._enqueue_poll(job, payload, 1, job.etl_job_id)
        log.info(f"Bulk export {operation_id} ({entity}) for {job.tenant_id} created; first poll in {self.delay_for(1):.0f}s")
        return poll_job_id

    def _current_state(self, etl_job_id: Optional[int]) -> BulkState:
        record = self.ledger.get_record(etl_job_id) if etl_job_id else None
        if record and record.get("bulk_state"):
            return BulkState(record["bulk_state"])
        return BulkState.CREATED

    async def cancel(self, client: ShopifyClient, tenant_id: str, operation_id: str) -> bool:
        """Ask Shopify to stop an export; a failed cancel is logged and left to the busy-slot checks"""
        response = await client.cancel_bulk_operation(tenant_id, operation_id)
        if not response.success:
            log.warning(f"Could not cancel bulk export {operation_id} for {tenant_id}: {response.error}")
            return False
        log.info(f"Cancelled bulk export {operation_id} for {tenant_id}")
        return True

    def _abandon(self, job: QueuedJob, state: BulkState, poll_attempt: int, budget: int, cancelled: bool) -> PollOutcome:
        transition(state, BulkState.ABANDONED)
        error = f"Bulk export abandoned after {poll_attempt} polls (budget {budget})"
        if not cancelled:
            error += "; cancel failed"
        self.ledger.update_progress(
            job.etl_job_id,
            bulk_state=BulkState.ABANDONED.value,
            poll_attempts=poll_attempt,
            error_message=error,
        )
        log.error(f"{error}: {job.payload.get('operation_id')} for {job.tenant_id}")
        return PollOutcome(state=BulkState.ABANDONED, poll_attempt=poll_attempt, error=error)

    async def poll(self, job: QueuedJob, client: ShopifyClient, tz_name: Optional[str] = None) -> PollOutcome:
        """
        Check the export once and advance the state machine.

        Raises:
            RateLimitedError: tenant is cooling down (poll not consumed)
            TransientSyncError: status check or download failed transiently
        """
        payload = job.payload
        operation_id = payload["operation_id"]
        entity = payload["entity"]
        poll_attempt = int(payload.get("poll_attempt", 1))
        budget = int(payload.get("max_poll_attempts", self.max_attempts))
        state = self._current_state(job.etl_job_id)

        if state in TERMINAL_STATES:
            log.warning(f"Poll for {operation_id} skipped; export already {state.value}")
            return PollOutcome(state=state, poll_attempt=poll_attempt, skipped=True)
        if state in (BulkState.READY, BulkState.INGESTING):
            # Resume after an interrupted download or ingest
            state = BulkState.POLLING

        response = await client.get_bulk_operation(job.tenant_id, operation_id)
        if response.rate_limited:
            raise RateLimitedError(response.error or "Rate limited", response.retry_after_seconds)
        if not response.success:
            if response.retryable:
                raise TransientSyncError(f"Bulk status check failed: {response.error}")
            raise PermanentSyncError(f"Bulk status check failed: {response.error}")

        operation = response.data
        if not operation:
            error = f"Bulk operation {operation_id} not found"
            self.ledger.update_progress(job.etl_job_id, bulk_state=transition(state, BulkState.FAILED).value,
                                        poll_attempts=poll_attempt, error_message=error)
            return PollOutcome(state=BulkState.FAILED, poll_attempt=poll_attempt, error=error)

        status = operation.get("status")

        if status in BULK_ACTIVE_STATUSES:
            if poll_attempt >= budget:
                cancelled = await self.cancel(client, job.tenant_id, operation_id)
                return self._abandon(job, state, poll_attempt, budget, cancelled)

            state = transition(state, BulkState.POLLING)
            self.ledger.update_progress(
                job.etl_job_id,
                bulk_state=state.value,
                poll_attempts=poll_attempt,
                total_rows=int(operation["objectCount"]) if operation.get("objectCount") else None,
            )
            next_attempt = poll_attempt + 1
            next_job_id = self._enqueue_poll(job, payload, next_attempt, job.etl_job_id)
            return PollOutcome(
                state=state,
                poll_attempt=poll_attempt,
                next_poll_job_id=next_job_id,
                next_delay_seconds=self.delay_for(next_attempt),
            )

        if status != BULK_COMPLETED:
            error = f"Bulk operation {operation_id} ended {status}"
            if operation.get("errorCode"):
                error += f" ({operation['errorCode']})"
            self.ledger.update_progress(job.etl_job_id, bulk_state=transition(state, BulkState.FAILED).value,
                                        poll_attempts=poll_attempt, error_message=error)
            log.error(f"{error} for {job.tenant_id}/{entity}")
            return PollOutcome(state=BulkState.FAILED, poll_attempt=poll_attempt, error=error)

        state = transition(state, BulkState.READY)
        self.ledger.update_progress(job.etl_job_id, bulk_state=state.value, poll_attempts=poll_attempt)

        url = operation.get("url")
        records = []
        if url:
            download = await client.download_bulk_result(job.tenant_id, url)
            if download.rate_limited:
                raise RateLimitedError(download.error or "Rate limited", download.retry_after_seconds)
            if not download.success:
                # Export stays ready; the retried poll downloads again
                raise TransientSyncError(f"Bulk result download failed: {download.error}")
            records = parse_jsonl(download.data or "")

        state = transition(state, BulkState.INGESTING)
        self.ledger.update_progress(job.etl_job_id, bulk_state=state.value, total_rows=len(records))

        db = self.session_factory()
        try:
            rows_written = ingest_bulk_result(db, job.tenant_id, entity, records, tz_name, self.batch_size)
        finally:
            db.close()

        state = transition(state, BulkState.COMPLETED)
        log.info(f"Bulk export {operation_id} ({entity}) for {job.tenant_id} ingested {rows_written} rows after {poll_attempt} polls")
        return PollOutcome(
            state=state,
            poll_attempt=poll_attempt,
            rows_written=rows_written,
            total_rows=rows_written,
        )
