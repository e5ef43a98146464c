"""
Durable, priority-aware job queue backed by the sync_jobs table.

Jobs move queued -> active -> completed | failed. A failed attempt returns
to queued with exponential backoff until max_attempts is spent. Claims are
made with a conditional UPDATE (status must still be 'queued') and carry a
unique claim token, so concurrent workers in separate processes can share
the table safely and a reclaimed job can't be finished by its old worker.
"""
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update

from marketsync.config import get_settings
from marketsync.models.base import SessionLocal
from marketsync.models.connection import PlatformConnection
from marketsync.models.sync_job import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_QUEUED,
    PRIORITY_BULK,
    SyncJob,
)
from marketsync.utils.helpers import utcnow
from marketsync.utils.logger import log
from marketsync.utils.retry import calculate_backoff


@dataclass
class QueuedJob:
    """Detached snapshot of a claimed job handed to a handler"""
    id: int
    tenant_id: str
    platform: str
    kind: str
    claim_token: str
    connection_id: Optional[int] = None
    priority: int = PRIORITY_BULK
    attempts: int = 1
    max_attempts: int = 5
    timeout_seconds: int = 1800
    stalled_count: int = 0
    deferrals: int = 0
    exclusive: bool = False
    etl_job_id: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, job: SyncJob) -> "QueuedJob":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            platform=job.platform,
            kind=job.kind,
            claim_token=job.locked_by,
            connection_id=job.connection_id,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            timeout_seconds=job.timeout_seconds,
            stalled_count=job.stalled_count,
            deferrals=job.deferrals or 0,
            exclusive=bool(job.exclusive),
            etl_job_id=job.etl_job_id,
            payload=dict(job.payload or {}),
        )


def backoff_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before retry number `attempts` (non-decreasing, capped)"""
    return calculate_backoff(attempts, base_delay=base_seconds, max_delay=max_seconds, jitter=False)


class JobQueue:
    """Queue operations over sync_jobs"""

    def __init__(self, session_factory=SessionLocal, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    def enqueue(
        self,
        tenant_id: str,
        platform: str,
        kind: str,
        payload: Optional[dict] = None,
        priority: int = PRIORITY_BULK,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None,
        connection_id: Optional[int] = None,
        etl_job_id: Optional[int] = None,
        exclusive: bool = False,
        timeout_seconds: Optional[int] = None,
    ) -> int:
        """Add a job; returns its id"""
        now = self.clock()
        db = self.session_factory()
        try:
            job = SyncJob(
                tenant_id=tenant_id,
                platform=platform,
                kind=kind,
                payload=payload or {},
                priority=priority,
                status=JOB_QUEUED,
                run_at=now + timedelta(seconds=delay_seconds),
                attempts=0,
                max_attempts=max_attempts or self.settings.queue_default_max_attempts,
                backoff_base_seconds=self.settings.queue_backoff_base_seconds,
                backoff_max_seconds=self.settings.queue_backoff_max_seconds,
                timeout_seconds=timeout_seconds or self.settings.queue_job_timeout_seconds,
                connection_id=connection_id,
                etl_job_id=etl_job_id,
                exclusive=exclusive,
                created_at=now,
            )
            db.add(job)
            db.commit()
            log.debug(f"Enqueued {kind} job {job.id} for {tenant_id}/{platform} (priority {priority}, delay {delay_seconds}s)")
            return job.id
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def _lock_cutoff(self, now):
        return now - timedelta(seconds=self.settings.reconnect_lock_ttl_seconds)

    def _locked_pairs(self, db, now) -> set:
        """(tenant, platform) pairs currently held by a reconnect"""
        rows = db.query(PlatformConnection.tenant_id, PlatformConnection.platform).filter(
            PlatformConnection.reconnect_lock.isnot(None),
            PlatformConnection.reconnect_locked_at >= self._lock_cutoff(now),
        ).all()
        return {(r.tenant_id, r.platform) for r in rows}

    def _pair_unlocked(self, tenant_id: str, platform: str, now):
        """Claim condition: no live reconnect lock on the pair at UPDATE time"""
        return ~select(PlatformConnection.id).where(
            PlatformConnection.tenant_id == tenant_id,
            PlatformConnection.platform == platform,
            PlatformConnection.reconnect_lock.isnot(None),
            PlatformConnection.reconnect_locked_at >= self._lock_cutoff(now),
        ).exists()

    def claim(self, worker_id: str, limit: int = 1) -> List[QueuedJob]:
        """
        Claim up to `limit` due jobs, highest priority first.

        Non-exclusive jobs for a tenant/platform that is mid-reconnect are
        left in the queue until the lock is released.
        """
        now = self.clock()
        claimed: List[QueuedJob] = []
        db = self.session_factory()
        try:
            candidates = (
                db.query(SyncJob)
                .filter(SyncJob.status == JOB_QUEUED, SyncJob.run_at <= now)
                .order_by(SyncJob.priority.desc(), SyncJob.run_at.asc(), SyncJob.id.asc())
                .limit(max(limit * 5, limit))
                .all()
            )
            if not candidates:
                return claimed

            locked = self._locked_pairs(db, now)
            for candidate in candidates:
                if len(claimed) >= limit:
                    break
                if not candidate.exclusive and (candidate.tenant_id, candidate.platform) in locked:
                    continue

                conditions = [SyncJob.id == candidate.id, SyncJob.status == JOB_QUEUED]
                if not candidate.exclusive:
                    # A reconnect may have locked the pair since the read above
                    conditions.append(self._pair_unlocked(candidate.tenant_id, candidate.platform, now))

                token = f"{worker_id}:{uuid.uuid4().hex[:12]}"
                result = db.execute(
                    update(SyncJob)
                    .where(*conditions)
                    .values(
                        status=JOB_ACTIVE,
                        locked_by=token,
                        locked_at=now,
                        attempts=SyncJob.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if result.rowcount != 1:
                    continue  # Another worker won the race

                job = db.query(SyncJob).filter(SyncJob.id == candidate.id).first()
                db.refresh(job)
                claimed.append(QueuedJob.from_model(job))

            return claimed
        finally:
            db.close()

    def _finish(self, job: QueuedJob, **values) -> bool:
        """Apply a transition only while this claim still owns the job"""
        db = self.session_factory()
        try:
            result = db.execute(
                update(SyncJob)
                .where(
                    SyncJob.id == job.id,
                    SyncJob.status == JOB_ACTIVE,
                    SyncJob.locked_by == job.claim_token,
                )
                .values(updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                log.warning(f"Job {job.id} ({job.kind}) is no longer owned by {job.claim_token}; transition dropped")
                return False
            return True
        finally:
            db.close()

    def complete(self, job: QueuedJob, result: Optional[dict] = None) -> bool:
        return self._finish(
            job,
            status=JOB_COMPLETED,
            result=result,
            last_error=None,
            locked_by=None,
            locked_at=None,
            finished_at=self.clock(),
        )

    def fail(self, job: QueuedJob, error: str, retryable: bool = True) -> str:
        """
        Record a failed attempt.

        Returns:
            'queued' when the job will be retried after backoff, else 'failed'
        """
        if retryable and job.attempts < job.max_attempts:
            db = self.session_factory()
            try:
                row = db.query(SyncJob.backoff_base_seconds, SyncJob.backoff_max_seconds).filter(SyncJob.id == job.id).first()
            finally:
                db.close()
            base = row.backoff_base_seconds if row else self.settings.queue_backoff_base_seconds
            cap = row.backoff_max_seconds if row else self.settings.queue_backoff_max_seconds
            delay = backoff_delay(job.attempts, base, cap)
            moved = self._finish(
                job,
                status=JOB_QUEUED,
                run_at=self.clock() + timedelta(seconds=delay),
                last_error=error,
                locked_by=None,
                locked_at=None,
            )
            if moved:
                log.warning(f"Job {job.id} ({job.kind}) attempt {job.attempts}/{job.max_attempts} failed: {error}. Retrying in {delay:.0f}s")
            return JOB_QUEUED

        self._finish(
            job,
            status=JOB_FAILED,
            last_error=error,
            locked_by=None,
            locked_at=None,
            finished_at=self.clock(),
        )
        log.error(f"Job {job.id} ({job.kind}) failed permanently after {job.attempts} attempt(s): {error}")
        return JOB_FAILED

    def defer(self, job: QueuedJob, delay_seconds: float, reason: str) -> bool:
        """Put a job back without spending an attempt (rate limits, busy exports)"""
        moved = self._finish(
            job,
            status=JOB_QUEUED,
            run_at=self.clock() + timedelta(seconds=delay_seconds),
            attempts=SyncJob.attempts - 1,
            deferrals=func.coalesce(SyncJob.deferrals, 0) + 1,
            last_error=reason,
            locked_by=None,
            locked_at=None,
        )
        if moved:
            log.info(f"Job {job.id} ({job.kind}) deferred {delay_seconds:.0f}s: {reason}")
        return moved

    def timed_out(self, job: QueuedJob, error: str) -> str:
        """
        A job ran past its wall-clock timeout.

        Counts against the stalled-retry cap rather than the attempt budget.
        """
        if job.stalled_count + 1 > self.settings.queue_max_stalled:
            self._finish(
                job,
                status=JOB_FAILED,
                stalled_count=SyncJob.stalled_count + 1,
                last_error=error,
                locked_by=None,
                locked_at=None,
                finished_at=self.clock(),
            )
            log.error(f"Job {job.id} ({job.kind}) timed out too many times: {error}")
            return JOB_FAILED

        self._finish(
            job,
            status=JOB_QUEUED,
            stalled_count=SyncJob.stalled_count + 1,
            attempts=SyncJob.attempts - 1,
            run_at=self.clock(),
            last_error=error,
            locked_by=None,
            locked_at=None,
        )
        log.warning(f"Job {job.id} ({job.kind}) timed out; requeued ({job.stalled_count + 1}/{self.settings.queue_max_stalled})")
        return JOB_QUEUED

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reclaim_stalled(self) -> List[dict]:
        """
        Requeue active jobs whose worker stopped reporting.

        A job is stalled once it has been active longer than its timeout
        plus a grace period. Jobs stalled more than queue_max_stalled times
        are failed.
        """
        now = self.clock()
        grace = self.settings.queue_stall_grace_seconds
        reclaimed = []
        db = self.session_factory()
        try:
            active = db.query(SyncJob).filter(SyncJob.status == JOB_ACTIVE, SyncJob.locked_at.isnot(None)).all()
            for job in active:
                deadline = job.locked_at + timedelta(seconds=(job.timeout_seconds or 0) + grace)
                if deadline > now:
                    continue

                stalled_count = (job.stalled_count or 0) + 1
                give_up = stalled_count > self.settings.queue_max_stalled
                values = dict(
                    stalled_count=stalled_count,
                    locked_by=None,
                    locked_at=None,
                    updated_at=now,
                )
                if give_up:
                    values.update(status=JOB_FAILED, finished_at=now, last_error="Job stalled too many times")
                else:
                    values.update(status=JOB_QUEUED, run_at=now, attempts=max((job.attempts or 1) - 1, 0),
                                  last_error="Job stalled; worker stopped responding")

                result = db.execute(
                    update(SyncJob)
                    .where(SyncJob.id == job.id, SyncJob.status == JOB_ACTIVE, SyncJob.locked_by == job.locked_by)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if result.rowcount == 1:
                    outcome = JOB_FAILED if give_up else JOB_QUEUED
                    reclaimed.append({"id": job.id, "kind": job.kind, "etl_job_id": job.etl_job_id, "outcome": outcome})
                    log.warning(f"Reclaimed stalled job {job.id} ({job.kind}) -> {outcome}")
            return reclaimed
        finally:
            db.close()

    def cleanup(
        self,
        completed_older_than_hours: Optional[int] = None,
        failed_older_than_days: Optional[int] = None,
    ) -> int:
        """Delete finished jobs past retention; returns rows removed"""
        now = self.clock()
        completed_cutoff = now - timedelta(
            hours=completed_older_than_hours or self.settings.queue_completed_retention_hours
        )
        failed_cutoff = now - timedelta(days=failed_older_than_days or self.settings.queue_failed_retention_days)
        db = self.session_factory()
        try:
            removed = db.query(SyncJob).filter(
                or_(
                    and_(SyncJob.status == JOB_COMPLETED, SyncJob.finished_at < completed_cutoff),
                    and_(SyncJob.status == JOB_FAILED, SyncJob.finished_at < failed_cutoff),
                )
            ).delete(synchronize_session=False)
            db.commit()
            if removed:
                log.info(f"Queue cleanup removed {removed} finished jobs")
            return removed
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def counts(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        db = self.session_factory()
        try:
            query = db.query(SyncJob.status, func.count(SyncJob.id))
            if tenant_id:
                query = query.filter(SyncJob.tenant_id == tenant_id)
            counts = {status: 0 for status in (JOB_QUEUED, JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED)}
            for status, count in query.group_by(SyncJob.status).all():
                counts[status] = count
            return counts
        finally:
            db.close()

    def pending_jobs(
        self,
        tenant_id: str,
        platform: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        statuses: Sequence[str] = (JOB_QUEUED, JOB_ACTIVE),
        exclude_id: Optional[int] = None,
    ) -> List[dict]:
        db = self.session_factory()
        try:
            query = db.query(SyncJob).filter(SyncJob.tenant_id == tenant_id, SyncJob.status.in_(list(statuses)))
            if platform:
                query = query.filter(SyncJob.platform == platform)
            if kinds:
                query = query.filter(SyncJob.kind.in_(list(kinds)))
            if exclude_id:
                query = query.filter(SyncJob.id != exclude_id)
            return [job.to_dict() for job in query.order_by(SyncJob.id).all()]
        finally:
            db.close()

    def get_job(self, job_id: int) -> Optional[dict]:
        db = self.session_factory()
        try:
            job = db.query(SyncJob).filter(SyncJob.id == job_id).first()
            return job.to_dict() if job else None
        finally:
            db.close()

    def remove_pending(self, tenant_id: str, platform: str, exclude_id: Optional[int] = None) -> int:
        """Drop queued jobs for a tenant/platform (disconnect, reconnect)"""
        db = self.session_factory()
        try:
            query = db.query(SyncJob).filter(
                SyncJob.tenant_id == tenant_id,
                SyncJob.platform == platform,
                SyncJob.status == JOB_QUEUED,
            )
            if exclude_id:
                query = query.filter(SyncJob.id != exclude_id)
            removed = query.delete(synchronize_session=False)
            db.commit()
            return removed
        finally:
            db.close()
