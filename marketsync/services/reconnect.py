"""
Full reconnect: wipe and rebuild under mutual exclusion

A reconnect moves a connection through explicit states:

    idle -> reconnecting (lock held, pending jobs dropped, data wiped)
         -> rebuilding  (lock released, rebuild jobs queued)
         -> idle        (once the rebuild's ledger records settle)

The lock is an advisory column on platform_connections, taken with a
compare-and-set UPDATE. While it is held the queue will not hand out
non-exclusive jobs for the same tenant/platform, and a second reconnect
waits for it to be released.
"""
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy import or_, update

from marketsync.config import get_settings
from marketsync.errors import JobDeferred, PermanentSyncError
from marketsync.models.base import SessionLocal
from marketsync.models.connection import (
    CONNECTION_ACTIVE,
    CONNECTION_REVOKED,
    PLATFORM_META,
    PLATFORM_SHOPIFY,
    PlatformConnection,
)
from marketsync.models.etl import EtlCursor, EtlJobRecord, SyncDay
from marketsync.models.meta import MetaAdInsight, MetaAdSet, MetaCampaign, MetaDemographic
from marketsync.models.shopify import (
    ShopifyCheckout,
    ShopifyCustomer,
    ShopifyOrder,
    ShopifyOrderItem,
    ShopifyProduct,
)
from marketsync.models.sync_job import JOB_ACTIVE
from marketsync.services.job_queue import JobQueue, QueuedJob
from marketsync.utils.helpers import utcnow
from marketsync.utils.logger import log

# Derived tables per platform, children before parents
PLATFORM_TABLES = {
    PLATFORM_META: [MetaAdInsight, MetaDemographic, MetaAdSet, MetaCampaign],
    PLATFORM_SHOPIFY: [ShopifyOrderItem, ShopifyOrder, ShopifyCustomer, ShopifyProduct, ShopifyCheckout],
}

# Incremental cursors per platform
PLATFORM_CURSORS = {
    PLATFORM_META: ["meta_insights"],
    PLATFORM_SHOPIFY: ["shopify_orders", "shopify_customers", "shopify_checkouts"],
}

ACTIVE_JOBS_RETRY_SECONDS = 30
LOCK_BUSY_RETRY_SECONDS = 60


class ReconnectState(str, Enum):
    IDLE = "idle"
    RECONNECTING = "reconnecting"
    REBUILDING = "rebuilding"


def purge_platform_data(
    db,
    tenant_id: str,
    platform: str,
    keep_etl_ids: Iterable[int] = (),
) -> Dict[str, int]:
    """
    Delete everything derived from a tenant's platform connection.

    Returns:
        Rows removed per table
    """
    removed: Dict[str, int] = {}
    for model in PLATFORM_TABLES.get(platform, []):
        removed[model.__tablename__] = db.query(model).filter(
            model.tenant_id == tenant_id
        ).delete(synchronize_session=False)

    removed[SyncDay.__tablename__] = db.query(SyncDay).filter(
        SyncDay.tenant_id == tenant_id,
        SyncDay.platform == platform,
    ).delete(synchronize_session=False)

    removed[EtlCursor.__tablename__] = db.query(EtlCursor).filter(
        EtlCursor.tenant_id == tenant_id,
        EtlCursor.entity.in_(PLATFORM_CURSORS.get(platform, [])),
    ).delete(synchronize_session=False)

    records = db.query(EtlJobRecord).filter(
        EtlJobRecord.tenant_id == tenant_id,
        EtlJobRecord.platform == platform,
    )
    keep = list(keep_etl_ids)
    if keep:
        records = records.filter(EtlJobRecord.id.notin_(keep))
    removed[EtlJobRecord.__tablename__] = records.delete(synchronize_session=False)

    db.commit()
    return removed


class ReconnectService:
    """Owns the reconnect lock and the wipe-then-rebuild cycle"""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        session_factory=SessionLocal,
        rebuild: Optional[Callable[[dict], dict]] = None,
        lock_ttl_seconds: Optional[int] = None,
        clock: Callable = utcnow,
        before_wipe: Optional[Callable[[str, str], Awaitable[Optional[str]]]] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.rebuild = rebuild
        self.before_wipe = before_wipe  # stops platform-side work (e.g. a running bulk export)
        self.lock_ttl_seconds = lock_ttl_seconds or settings.reconnect_lock_ttl_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    def acquire(self, tenant_id: str, platform: str, token: str) -> bool:
        """
        Take the reconnect lock.

        Succeeds when the lock is free, expired, or already held by `token`.
        """
        now = self.clock()
        expired = now - timedelta(seconds=self.lock_ttl_seconds)
        db = self.session_factory()
        try:
            result = db.execute(
                update(PlatformConnection)
                .where(
                    PlatformConnection.tenant_id == tenant_id,
                    PlatformConnection.platform == platform,
                    or_(
                        PlatformConnection.reconnect_lock.is_(None),
                        PlatformConnection.reconnect_locked_at < expired,
                        PlatformConnection.reconnect_lock == token,
                    ),
                )
                .values(
                    reconnect_lock=token,
                    reconnect_locked_at=now,
                    reconnect_state=ReconnectState.RECONNECTING.value,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            acquired = result.rowcount == 1
            if acquired:
                log.info(f"Reconnect lock acquired for {tenant_id}/{platform} by {token}")
            return acquired
        finally:
            db.close()

    def release(self, tenant_id: str, platform: str, token: str, state: ReconnectState = ReconnectState.IDLE) -> bool:
        db = self.session_factory()
        try:
            result = db.execute(
                update(PlatformConnection)
                .where(
                    PlatformConnection.tenant_id == tenant_id,
                    PlatformConnection.platform == platform,
                    PlatformConnection.reconnect_lock == token,
                )
                .values(reconnect_lock=None, reconnect_locked_at=None, reconnect_state=state.value)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        finally:
            db.close()

    def is_locked(self, tenant_id: str, platform: str) -> bool:
        expired = self.clock() - timedelta(seconds=self.lock_ttl_seconds)
        db = self.session_factory()
        try:
            return db.query(PlatformConnection.id).filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
                PlatformConnection.reconnect_lock.isnot(None),
                PlatformConnection.reconnect_locked_at >= expired,
            ).first() is not None
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Wipe & rebuild
    # ------------------------------------------------------------------

    def wipe(self, tenant_id: str, platform: str, keep_etl_ids: Iterable[int] = ()) -> Dict[str, int]:
        db = self.session_factory()
        try:
            removed = purge_platform_data(db, tenant_id, platform, keep_etl_ids)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        log.warning(f"Reconnect wipe for {tenant_id}/{platform}: " + ", ".join(f"{t}={n}" for t, n in removed.items()))
        return removed

    def _activate(self, tenant_id: str, platform: str) -> dict:
        db = self.session_factory()
        try:
            connection = db.query(PlatformConnection).filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
            ).first()
            if not connection or connection.status == CONNECTION_REVOKED:
                raise PermanentSyncError(f"No usable {platform} connection for {tenant_id}")
            connection.status = CONNECTION_ACTIVE
            connection.last_error = None
            connection.sync_progress = 0
            db.commit()
            return {
                "id": connection.id,
                "tenant_id": connection.tenant_id,
                "platform": connection.platform,
                "timezone": connection.timezone,
            }
        finally:
            db.close()

    def _wait_for_running(self, job: QueuedJob, token: str):
        running = self.queue.pending_jobs(job.tenant_id, job.platform, statuses=(JOB_ACTIVE,), exclude_id=job.id)
        if running:
            self.release(job.tenant_id, job.platform, token)
            raise JobDeferred(
                f"Waiting for {len(running)} running job(s) on {job.tenant_id}/{job.platform}",
                ACTIVE_JOBS_RETRY_SECONDS,
            )

    async def run_reconnect(self, job: QueuedJob) -> dict:
        """
        Execute a reconnect_full_sync job.

        Raises:
            JobDeferred: another reconnect holds the lock, or other jobs
                for the pair are still running
        """
        tenant_id, platform = job.tenant_id, job.platform
        token = job.claim_token

        if not self.acquire(tenant_id, platform, token):
            raise JobDeferred(f"Reconnect already in progress for {tenant_id}/{platform}", LOCK_BUSY_RETRY_SECONDS)

        try:
            self._wait_for_running(job, token)
            cancelled_export = await self.before_wipe(tenant_id, platform) if self.before_wipe else None

            dropped = self.queue.remove_pending(tenant_id, platform, exclude_id=job.id)
            # A claim that raced the lock would show up here
            self._wait_for_running(job, token)
            keep = [job.etl_job_id] if job.etl_job_id else []
            removed = self.wipe(tenant_id, platform, keep)
            connection = self._activate(tenant_id, platform)
            rebuild = self.rebuild(connection) if self.rebuild else {}
        except JobDeferred:
            raise
        except Exception:
            self.release(tenant_id, platform, token)
            raise

        self.release(tenant_id, platform, token, ReconnectState.REBUILDING)
        log.info(f"Reconnect for {tenant_id}/{platform} queued rebuild: {rebuild}")
        return {
            "dropped_jobs": dropped,
            "rows_removed": removed,
            "cancelled_export": cancelled_export,
            "rebuild": rebuild,
        }
