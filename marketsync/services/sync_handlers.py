"""
Job handlers

One coroutine per job kind. Handlers load a snapshot of the connection,
call the platform through its client, write rows through the idempotent
upsert layer, and turn unsuccessful ApiResponses into the error taxonomy the
worker pool understands.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional

from marketsync.config import get_settings
from marketsync.connectors.base_client import ApiResponse, PlatformClient
from marketsync.connectors.meta_client import MetaAdsClient
from marketsync.connectors.shopify_client import (
    BULK_ACTIVE_STATUSES,
    BULK_CANCELING,
    BULK_CREATED,
    BULK_RUNNING,
    ShopifyClient,
)
from marketsync.errors import (
    JobDeferred,
    PermanentSyncError,
    RateLimitedError,
    SyncError,
    TransientSyncError,
)
from marketsync.models.base import SessionLocal
from marketsync.models.connection import (
    CONNECTION_ACTIVE,
    CONNECTION_REVOKED,
    PLATFORM_META,
    PLATFORM_SHOPIFY,
    PlatformConnection,
)
from marketsync.models.meta import MetaAdInsight
from marketsync.models.sync_job import (
    BULK_KINDS,
    KIND_BACKFILL_CHUNK,
    KIND_DAILY_SYNC,
    KIND_DEMOGRAPHICS_SYNC,
    KIND_META_HISTORY,
    KIND_POLL_BULK,
    KIND_RECENT_SYNC,
    KIND_RECONNECT,
    PRIORITY_BACKFILL,
    PRIORITY_BULK,
)
from marketsync.services.backfill_service import BackfillService
from marketsync.services.bulk_poller import BulkOperationPoller, BulkState
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.gap_detection import DataGap
from marketsync.services.ingestion import (
    count_by_day,
    get_cursor,
    meta_insight_row,
    order_from_rest,
    record_sync_days,
    update_cursor,
    upsert_rows,
    write_meta_campaign_tree,
    write_meta_demographics,
    write_shopify_checkouts,
    write_shopify_customers,
    write_shopify_orders,
)
from marketsync.services.job_queue import JobQueue, QueuedJob
from marketsync.services.reconnect import ReconnectService
from marketsync.services.sync_orchestrator import SyncOrchestrator
from marketsync.services.worker import JobResult, WorkerPool
from marketsync.utils.helpers import day_bounds_utc, iter_days, parse_day, parse_timestamp, tenant_today
from marketsync.utils.logger import log

BULK_ALREADY_RUNNING = "already in progress"


@dataclass
class ConnectionSnapshot:
    """Connection fields a handler needs, detached from the session"""
    id: int
    tenant_id: str
    platform: str
    access_token: Optional[str]
    external_account_id: Optional[str]
    timezone: str
    status: str


def default_client_factory(connection: ConnectionSnapshot) -> PlatformClient:
    if connection.platform == PLATFORM_META:
        return MetaAdsClient(connection.access_token)
    if connection.platform == PLATFORM_SHOPIFY:
        return ShopifyClient(connection.external_account_id, connection.access_token)
    raise PermanentSyncError(f"Unsupported platform: {connection.platform}")


def raise_for_response(response: ApiResponse, context: str):
    """Map an unsuccessful ApiResponse onto the error taxonomy"""
    if response.success:
        return
    message = f"{context}: {response.error}"
    if response.rate_limited:
        raise RateLimitedError(message, response.retry_after_seconds)
    if response.retryable:
        raise TransientSyncError(message)
    raise PermanentSyncError(message, degrade_connection=response.status_code in (401, 403))


class SyncHandlers:
    """Handlers for every job kind, sharing one queue/ledger/poller"""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        ledger: Optional[EtlLedger] = None,
        session_factory=SessionLocal,
        client_factory: Callable[[ConnectionSnapshot], PlatformClient] = default_client_factory,
        poller: Optional[BulkOperationPoller] = None,
        orchestrator: Optional[SyncOrchestrator] = None,
        backfill: Optional[BackfillService] = None,
    ):
        self.settings = get_settings()
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.ledger = ledger or EtlLedger(session_factory)
        self.client_factory = client_factory
        self.poller = poller or BulkOperationPoller(self.queue, self.ledger, session_factory)
        self.orchestrator = orchestrator or SyncOrchestrator(self.queue, self.ledger, session_factory)
        self.reconnect = ReconnectService(
            self.queue, session_factory, rebuild=self.orchestrator.plan_rebuild, before_wipe=self.cancel_running_export
        )
        self.backfill = backfill or BackfillService(self.sync_range, session_factory)

    def handlers(self) -> dict:
        handlers = {
            KIND_RECENT_SYNC: self.handle_recent_sync,
            KIND_DAILY_SYNC: self.handle_recent_sync,
            KIND_POLL_BULK: self.handle_poll_bulk,
            KIND_DEMOGRAPHICS_SYNC: self.handle_demographics,
            KIND_META_HISTORY: self.handle_meta_history,
            KIND_BACKFILL_CHUNK: self.handle_backfill_chunk,
            KIND_RECONNECT: self.handle_reconnect,
        }
        for kind in BULK_KINDS:
            handlers[kind] = self.handle_bulk_export
        return handlers

    # ------------------------------------------------------------------
    # Connection & client
    # ------------------------------------------------------------------

    def load_connection(self, tenant_id: str, platform: str, require_active: bool = True) -> ConnectionSnapshot:
        db = self.session_factory()
        try:
            connection = db.query(PlatformConnection).filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
            ).first()
            if not connection:
                raise PermanentSyncError(f"No {platform} connection for {tenant_id}")
            if connection.status == CONNECTION_REVOKED:
                raise PermanentSyncError(f"{platform} connection for {tenant_id} was revoked")
            if require_active and connection.status != CONNECTION_ACTIVE:
                raise PermanentSyncError(f"{platform} connection for {tenant_id} is {connection.status}")
            return ConnectionSnapshot(
                id=connection.id,
                tenant_id=connection.tenant_id,
                platform=connection.platform,
                access_token=connection.access_token,
                external_account_id=connection.external_account_id,
                timezone=connection.timezone or "UTC",
                status=connection.status,
            )
        finally:
            db.close()

    def _account_id(self, connection: ConnectionSnapshot) -> str:
        if not connection.external_account_id:
            raise PermanentSyncError(f"No ad account selected for {connection.tenant_id}")
        return connection.external_account_id

    # ------------------------------------------------------------------
    # Range sync (recent, history, backfill)
    # ------------------------------------------------------------------

    async def sync_range(self, tenant_id: str, platform: str, start: date, end: date) -> int:
        """
        Fetch and upsert one platform's daily facts for [start, end].

        Every day in the range is recorded in the day ledger, as succeeded
        or failed, so zero-activity days stop showing up as gaps.
        """
        connection = self.load_connection(tenant_id, platform)
        client = self.client_factory(connection)
        days = list(iter_days(start, end))
        try:
            if platform == PLATFORM_META:
                written, counts = await self._sync_meta_range(connection, client, start, end)
            elif platform == PLATFORM_SHOPIFY:
                written, counts = await self._sync_shopify_range(connection, client, start, end)
            else:
                raise PermanentSyncError(f"Unsupported platform: {platform}")
        except SyncError:
            db = self.session_factory()
            try:
                record_sync_days(db, tenant_id, platform, days, succeeded=False)
            finally:
                db.close()
            raise

        db = self.session_factory()
        try:
            record_sync_days(db, tenant_id, platform, days, succeeded=True, row_counts=counts)
        finally:
            db.close()
        return written

    async def _sync_meta_range(self, connection: ConnectionSnapshot, client: MetaAdsClient, start: date, end: date):
        response = await client.fetch_insights(connection.tenant_id, self._account_id(connection), start, end)
        raise_for_response(response, "Meta insights")
        rows = [
            meta_insight_row(connection.tenant_id, r)
            for r in response.data or [] if r.get("ad_id") and r.get("date_start")
        ]
        db = self.session_factory()
        try:
            written = upsert_rows(db, MetaAdInsight, rows, batch_size=self.settings.ingest_batch_size)
            update_cursor(db, connection.tenant_id, "meta_insights", end.isoformat())
        finally:
            db.close()
        return written, count_by_day(rows, "date")

    async def _sync_shopify_range(self, connection: ConnectionSnapshot, client: ShopifyClient, start: date, end: date):
        created_min, created_max = day_bounds_utc(start, end, connection.timezone)
        response = await client.fetch_orders(
            connection.tenant_id,
            created_at_min=created_min,
            created_at_max=created_max,
        )
        raise_for_response(response, "Shopify orders")
        raw_orders = response.data or []
        db = self.session_factory()
        try:
            written = write_shopify_orders(
                db, connection.tenant_id, raw_orders, connection.timezone, self.settings.ingest_batch_size
            )
            latest = max((o.get("updated_at") for o in raw_orders if o.get("updated_at")), default=None)
            if latest:
                update_cursor(db, connection.tenant_id, "shopify_orders", parse_timestamp(latest).isoformat())
        finally:
            db.close()
        rows = [order_from_rest(connection.tenant_id, o, connection.timezone) for o in raw_orders if o.get("created_at")]
        return written, count_by_day(rows, "order_date")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_recent_sync(self, job: QueuedJob) -> JobResult:
        """recent_sync / daily_sync: last N days plus the platform's small entities"""
        connection = self.load_connection(job.tenant_id, job.platform)
        days = int(job.payload.get("days") or self.settings.recent_sync_days)
        end = tenant_today(connection.timezone)
        start = end - timedelta(days=days - 1)

        rows = await self.sync_range(job.tenant_id, job.platform, start, end)
        details = {"range": [start.isoformat(), end.isoformat()]}
        client = self.client_factory(connection)

        if job.platform == PLATFORM_META:
            account_id = self._account_id(connection)
            tree = await client.fetch_campaign_tree(job.tenant_id, account_id)
            raise_for_response(tree, "Meta campaign tree")
            db = self.session_factory()
            try:
                details["campaign_rows"] = write_meta_campaign_tree(db, job.tenant_id, account_id, tree.data or {})
            finally:
                db.close()

        elif job.platform == PLATFORM_SHOPIFY:
            details.update(await self._sync_shopify_small_entities(connection, client, start))

        return JobResult(rows_written=rows, total_rows=rows, details=details)

    async def _sync_shopify_small_entities(self, connection: ConnectionSnapshot, client: ShopifyClient, start: date) -> dict:
        db = self.session_factory()
        try:
            customers_since = parse_timestamp(get_cursor(db, connection.tenant_id, "shopify_customers"))
        finally:
            db.close()

        customers = await client.fetch_customers(connection.tenant_id, updated_at_min=customers_since)
        raise_for_response(customers, "Shopify customers")
        checkouts_since, _ = day_bounds_utc(start, start, connection.timezone)
        checkouts = await client.fetch_checkouts(connection.tenant_id, created_at_min=checkouts_since)
        raise_for_response(checkouts, "Shopify checkouts")

        db = self.session_factory()
        try:
            customer_rows = write_shopify_customers(db, connection.tenant_id, customers.data or [], self.settings.ingest_batch_size)
            checkout_rows = write_shopify_checkouts(db, connection.tenant_id, checkouts.data or [], self.settings.ingest_batch_size)
            latest = max((c.get("updated_at") for c in customers.data or [] if c.get("updated_at")), default=None)
            if latest:
                update_cursor(db, connection.tenant_id, "shopify_customers", parse_timestamp(latest).isoformat())
        finally:
            db.close()
        return {"customer_rows": customer_rows, "checkout_rows": checkout_rows}

    async def handle_bulk_export(self, job: QueuedJob) -> JobResult:
        """bulk_orders / bulk_customers / bulk_products: start an export and hand it to the poller"""
        entity = BULK_KINDS[job.kind]
        connection = self.load_connection(job.tenant_id, job.platform)
        if connection.platform != PLATFORM_SHOPIFY:
            raise PermanentSyncError(f"Bulk exports are not supported for {connection.platform}")
        client = self.client_factory(connection)

        current = await client.get_current_bulk_operation(job.tenant_id)
        raise_for_response(current, "Shopify current bulk operation")
        if current.data and current.data.get("status") in BULK_ACTIVE_STATUSES:
            await self._bulk_slot_busy(job, client, current.data)

        since = parse_day(job.payload.get("since"))
        started = await client.start_bulk_export(job.tenant_id, entity, since)
        if not started.success and BULK_ALREADY_RUNNING in (started.error or "").lower():
            self._defer_for_busy_slot(job, started.error)
        raise_for_response(started, f"Shopify bulk {entity}")

        operation_id = started.data["id"]
        poll_job_id = self.poller.start(
            job,
            operation_id,
            entity,
            extra={
                "chain": job.payload.get("chain", []),
                "ledger_ids": job.payload.get("ledger_ids", {}),
                "since": job.payload.get("since"),
            },
        )
        return JobResult(
            complete_ledger=False,
            details={"operation_id": operation_id, "poll_job_id": poll_job_id},
        )

    def _defer_for_busy_slot(self, job: QueuedJob, reason: str):
        """
        Wait for the shop's bulk slot. Past bulk_busy_max_deferrals each
        busy check spends an attempt, so a slot that never frees up ends
        in a failed job instead of an endless wait.
        """
        if job.deferrals >= self.settings.bulk_busy_max_deferrals:
            raise TransientSyncError(f"{reason} (slot busy after {job.deferrals} deferrals)")
        raise JobDeferred(reason, self.settings.bulk_busy_retry_seconds)

    async def _bulk_slot_busy(self, job: QueuedJob, client: ShopifyClient, running: dict):
        operation_id = running.get("id")
        if running.get("status") != BULK_CANCELING and self.ledger.is_abandoned_operation(job.tenant_id, operation_id):
            # An export we gave up on is still holding the slot
            await self.poller.cancel(client, job.tenant_id, operation_id)
            raise JobDeferred(
                f"Cancelling abandoned bulk export {operation_id} for {job.tenant_id}",
                self.settings.bulk_cancel_retry_seconds,
            )
        self._defer_for_busy_slot(job, f"Bulk export {operation_id} still running for {job.tenant_id}")

    async def cancel_running_export(self, tenant_id: str, platform: str) -> Optional[str]:
        """Stop whatever bulk export the shop is running; returns its id when one was cancelled"""
        if platform != PLATFORM_SHOPIFY:
            return None
        connection = self.load_connection(tenant_id, platform, require_active=False)
        client = self.client_factory(connection)
        current = await client.get_current_bulk_operation(tenant_id)
        if not current.success:
            log.warning(f"Could not check running bulk export for {tenant_id}: {current.error}")
            return None
        running = current.data or {}
        if running.get("status") not in (BULK_CREATED, BULK_RUNNING):
            return None
        cancelled = await self.poller.cancel(client, tenant_id, running.get("id"))
        return running.get("id") if cancelled else None

    def _chain_next_export(self, job: QueuedJob) -> Optional[int]:
        chain: List[str] = list(job.payload.get("chain") or [])
        if not chain:
            return None
        entity, rest = chain[0], chain[1:]
        ledger_ids = job.payload.get("ledger_ids") or {}
        etl_job_id = ledger_ids.get(entity) or self.ledger.create_record(
            job.tenant_id, job.platform, entity, f"bulk_{entity}"
        )
        return self.queue.enqueue(
            tenant_id=job.tenant_id,
            platform=job.platform,
            kind=f"bulk_{entity}",
            payload={"chain": rest, "ledger_ids": ledger_ids, "since": job.payload.get("since")},
            priority=PRIORITY_BULK,
            delay_seconds=1,
            connection_id=job.connection_id,
            etl_job_id=etl_job_id,
        )

    async def handle_poll_bulk(self, job: QueuedJob) -> JobResult:
        connection = self.load_connection(job.tenant_id, job.platform)
        client = self.client_factory(connection)
        outcome = await self.poller.poll(job, client, connection.timezone)

        if outcome.skipped:
            return JobResult(complete_ledger=False, details={"state": outcome.state.value, "skipped": True})

        if outcome.state == BulkState.COMPLETED:
            next_job_id = self._chain_next_export(job)
            return JobResult(
                rows_written=outcome.rows_written,
                total_rows=outcome.total_rows,
                ledger_fields={"bulk_state": BulkState.COMPLETED.value, "poll_attempts": outcome.poll_attempt},
                details={"state": outcome.state.value, "next_job_id": next_job_id},
            )

        if not outcome.is_terminal:
            return JobResult(
                complete_ledger=False,
                details={"state": outcome.state.value, "next_poll_job_id": outcome.next_poll_job_id},
            )

        # failed or abandoned: the rest of the chain still runs
        self._chain_next_export(job)
        raise PermanentSyncError(outcome.error or f"Bulk export {outcome.state.value}")

    async def handle_demographics(self, job: QueuedJob) -> JobResult:
        connection = self.load_connection(job.tenant_id, job.platform)
        if connection.platform != PLATFORM_META:
            raise PermanentSyncError("Demographics are only available for Meta")
        end = parse_day(job.payload.get("end")) or tenant_today(connection.timezone) - timedelta(days=1)
        start = parse_day(job.payload.get("start")) or end - timedelta(days=29)
        account_id = self._account_id(connection)

        client = self.client_factory(connection)
        response = await client.fetch_demographics(job.tenant_id, account_id, start, end)
        raise_for_response(response, "Meta demographics")
        db = self.session_factory()
        try:
            rows = write_meta_demographics(db, job.tenant_id, account_id, response.data or [])
        finally:
            db.close()
        return JobResult(rows_written=rows, total_rows=rows)

    async def handle_meta_history(self, job: QueuedJob) -> JobResult:
        start = parse_day(job.payload["start"])
        end = parse_day(job.payload["end"])
        rows = await self.sync_range(job.tenant_id, job.platform, start, end)
        return JobResult(rows_written=rows, total_rows=rows, details={"range": [start.isoformat(), end.isoformat()]})

    async def handle_backfill_chunk(self, job: QueuedJob) -> JobResult:
        """
        Run one backfill chunk, then queue the next one in the chain.

        The ledger record spans the whole chain; it settles when the last
        chunk has run.
        """
        payload = job.payload
        chunk = DataGap(job.platform, parse_day(payload["start"]), parse_day(payload["end"]))
        outcome = await self.backfill.run_chunk(
            job.tenant_id, chunk, payload.get("trigger", "manual"), raise_rate_limited=True
        )

        rows_so_far = int(payload.get("rows_so_far", 0)) + outcome.records_added
        failed_chunks = int(payload.get("failed_chunks", 0)) + (0 if outcome.success else 1)
        chain = list(payload.get("chain") or [])

        if chain:
            (next_start, next_end), rest = chain[0], chain[1:]
            self.queue.enqueue(
                tenant_id=job.tenant_id,
                platform=job.platform,
                kind=KIND_BACKFILL_CHUNK,
                payload={
                    **payload,
                    "start": next_start,
                    "end": next_end,
                    "chain": rest,
                    "rows_so_far": rows_so_far,
                    "failed_chunks": failed_chunks,
                },
                priority=PRIORITY_BACKFILL,
                delay_seconds=self.backfill.chunk_delay,
                connection_id=job.connection_id,
                etl_job_id=job.etl_job_id,
            )
            self.ledger.update_progress(
                job.etl_job_id,
                rows_written=rows_so_far,
                progress_pct=int(100 * (int(payload.get("total_chunks", 1)) - len(chain)) / max(int(payload.get("total_chunks", 1)), 1)),
            )
            return JobResult(rows_written=outcome.records_added, complete_ledger=False, details=outcome.to_dict())

        if failed_chunks:
            self.ledger.mark_failed(
                job.etl_job_id,
                f"{failed_chunks} backfill chunk(s) failed",
                rows_written=rows_so_far,
            )
            return JobResult(rows_written=outcome.records_added, complete_ledger=False, details=outcome.to_dict())

        return JobResult(rows_written=rows_so_far, total_rows=rows_so_far, details=outcome.to_dict())

    async def handle_reconnect(self, job: QueuedJob) -> JobResult:
        self.load_connection(job.tenant_id, job.platform, require_active=False)
        result = await self.reconnect.run_reconnect(job)
        return JobResult(details=result)


def create_worker_pool(
    session_factory=SessionLocal,
    client_factory: Callable[[ConnectionSnapshot], PlatformClient] = default_client_factory,
    concurrency: Optional[int] = None,
    worker_id: Optional[str] = None,
) -> WorkerPool:
    """Worker pool with every sync handler registered"""
    queue = JobQueue(session_factory)
    ledger = EtlLedger(session_factory)
    pool = WorkerPool(queue, ledger, session_factory, concurrency, worker_id)
    handlers = SyncHandlers(queue, ledger, session_factory, client_factory)
    for kind, handler in handlers.handlers().items():
        pool.register(kind, handler)
    log.debug(f"Worker pool ready with handlers: {', '.join(sorted(pool.handlers))}")
    return pool
