"""
Worker Pool

Claims due jobs from the queue, dispatches each to the handler registered
for its kind under a hard wall-clock timeout, and maps the outcome onto
queue transitions and the ETL ledger:

- success              -> completed (ledger completed unless the handler defers it)
- JobDeferred          -> requeued after the delay, attempt not spent
- PermanentSyncError   -> failed, connection optionally degraded
- anything else        -> retried with backoff until max_attempts
- timeout              -> stalled-retry path
- unknown kind         -> failed without retry
"""
import asyncio
import os
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from marketsync.config import get_settings
from marketsync.errors import JobDeferred, PermanentSyncError
from marketsync.models.base import SessionLocal
from marketsync.models.connection import CONNECTION_DEGRADED, PlatformConnection
from marketsync.models.sync_job import JOB_FAILED
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.job_queue import JobQueue, QueuedJob
from marketsync.utils.logger import job_logger, log

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRY = "retry"
OUTCOME_DEFERRED = "deferred"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass
class JobResult:
    """What a handler reports back"""
    rows_written: int = 0
    total_rows: Optional[int] = None
    complete_ledger: bool = True  # False while a follow-up job owns the ledger record
    ledger_fields: Dict = field(default_factory=dict)
    details: Dict = field(default_factory=dict)


Handler = Callable[[QueuedJob], Awaitable[JobResult]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class WorkerPool:
    """Consumes the sync job queue"""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        ledger: Optional[EtlLedger] = None,
        session_factory=SessionLocal,
        concurrency: Optional[int] = None,
        worker_id: Optional[str] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.ledger = ledger or EtlLedger(session_factory)
        self.concurrency = concurrency or settings.worker_concurrency
        self.worker_id = worker_id or settings.worker_id or default_worker_id()
        self.batch_size = settings.worker_batch_size
        self.poll_interval = settings.worker_poll_interval_seconds
        self.handlers: Dict[str, Handler] = {}

    def register(self, kind: str, handler: Handler):
        self.handlers[kind] = handler

    def _degrade_connection(self, job: QueuedJob, error: str):
        db = self.session_factory()
        try:
            connection = db.query(PlatformConnection).filter(
                PlatformConnection.tenant_id == job.tenant_id,
                PlatformConnection.platform == job.platform,
            ).first()
            if connection:
                connection.status = CONNECTION_DEGRADED
                connection.last_error = error[:2000]
                db.commit()
                log.warning(f"Connection {job.tenant_id}/{job.platform} marked degraded: {error}")
        finally:
            db.close()

    def _record_retry(self, job: QueuedJob, outcome: str, error: str) -> str:
        if outcome == JOB_FAILED:
            self.ledger.mark_failed(job.etl_job_id, error)
            return OUTCOME_FAILED
        self.ledger.mark_queued(job.etl_job_id, error)
        return OUTCOME_RETRY

    async def run_job(self, job: QueuedJob) -> str:
        """Execute one claimed job and settle it; returns the outcome"""
        job_log = job_logger(job)
        handler = self.handlers.get(job.kind)
        if handler is None:
            error = f"Unknown job kind: {job.kind}"
            job_log.warning(f"Skipping job {job.id}: {error}")
            self.queue.fail(job, error, retryable=False)
            self.ledger.mark_failed(job.etl_job_id, error)
            return OUTCOME_SKIPPED

        job_log.info(f"Running {job.kind} job {job.id} for {job.tenant_id}/{job.platform} (attempt {job.attempts}/{job.max_attempts})")
        self.ledger.mark_running(job.etl_job_id)

        try:
            result = await asyncio.wait_for(handler(job), timeout=job.timeout_seconds)

        except asyncio.TimeoutError:
            error = f"Job exceeded {job.timeout_seconds}s timeout"
            job_log.error(f"{job.kind} job {job.id}: {error}")
            outcome = self._record_retry(job, self.queue.timed_out(job, error), error)

        except JobDeferred as e:
            self.queue.defer(job, e.delay_seconds, str(e))
            self.ledger.mark_queued(job.etl_job_id, str(e))
            outcome = OUTCOME_DEFERRED

        except PermanentSyncError as e:
            error = str(e)
            self.queue.fail(job, error, retryable=False)
            self.ledger.mark_failed(job.etl_job_id, error)
            if e.degrade_connection:
                self._degrade_connection(job, error)
            outcome = OUTCOME_FAILED

        except Exception as e:
            error = str(e) or type(e).__name__
            job_log.error(f"{job.kind} job {job.id} error: {error}")
            outcome = self._record_retry(job, self.queue.fail(job, error, retryable=True), error)

        else:
            self.queue.complete(job, {"rows_written": result.rows_written, **result.details})
            if result.complete_ledger:
                self.ledger.mark_completed(
                    job.etl_job_id,
                    rows_written=result.rows_written,
                    total_rows=result.total_rows,
                    **result.ledger_fields
                )
            elif result.ledger_fields:
                self.ledger.update_progress(job.etl_job_id, **result.ledger_fields)
            job_log.info(f"{job.kind} job {job.id} completed ({result.rows_written} rows)")
            outcome = OUTCOME_COMPLETED

        if job.etl_job_id:
            self.ledger.refresh_connection_status(job.tenant_id, job.platform)
        return outcome

    async def process_available(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Claim and run due jobs, at most `concurrency` at a time.

        Returns:
            Count of jobs per outcome
        """
        jobs = self.queue.claim(self.worker_id, limit or self.batch_size)
        summary: Dict[str, int] = {"claimed": len(jobs)}
        if not jobs:
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(job: QueuedJob) -> str:
            async with semaphore:
                return await self.run_job(job)

        outcomes: List[str] = await asyncio.gather(*(_run(job) for job in jobs))
        for outcome in outcomes:
            summary[outcome] = summary.get(outcome, 0) + 1
        return summary

    async def drain(self, max_rounds: int = 100) -> Dict[str, int]:
        """Keep processing until nothing is due (or max_rounds)"""
        totals: Dict[str, int] = {}
        for _ in range(max_rounds):
            summary = await self.process_available()
            if not summary.get("claimed"):
                break
            for key, value in summary.items():
                totals[key] = totals.get(key, 0) + value
        return totals

    def reclaim_stalled(self) -> List[dict]:
        """Requeue jobs whose worker died and settle their ledger records"""
        reclaimed = self.queue.reclaim_stalled()
        for job in reclaimed:
            if job["outcome"] == JOB_FAILED:
                self.ledger.mark_failed(job["etl_job_id"], "Job stalled too many times")
            else:
                self.ledger.mark_queued(job["etl_job_id"], "Job stalled; requeued")
        return reclaimed

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Poll the queue until stop_event is set"""
        stop_event = stop_event or asyncio.Event()
        log.info(f"Worker {self.worker_id} started (concurrency {self.concurrency})")
        while not stop_event.is_set():
            try:
                summary = await self.process_available()
            except Exception as e:
                log.error(f"Worker loop error: {e}")
                summary = {}
            if not summary.get("claimed"):
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        log.info(f"Worker {self.worker_id} stopped")
