"""
Sync Orchestrator

Single entry point for every trigger (scheduled, connection established,
user refresh, reconnect). request_sync(tenant_id, scope) resolves a scope
into ledger records plus queued jobs; it never calls a platform itself.

Scopes:
- recent:       last N days for each active platform (interactive priority)
- daily:        scheduled refresh of the last N days, deduplicated
- full:         recent + Shopify bulk chain (orders -> customers -> products)
                + Meta history chunks and demographics
- demographics: Meta age/gender breakdown
- backfill:     detected gaps (or a manual range) in chunked jobs
- reconnect:    destructive wipe and rebuild of one platform
"""
from datetime import date, timedelta
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta

from marketsync.config import get_settings
from marketsync.errors import ConnectionNotFoundError, ReconnectInProgressError
from marketsync.models.base import SessionLocal
from marketsync.models.connection import (
    CONNECTION_ACTIVE,
    CONNECTION_REVOKED,
    PLATFORM_META,
    PLATFORM_SHOPIFY,
    PLATFORMS,
    PlatformConnection,
    SYNC_IDLE,
)
from marketsync.models.sync_job import (
    BULK_KINDS,
    JOB_ACTIVE,
    JOB_QUEUED,
    KIND_BACKFILL_CHUNK,
    KIND_BULK_ORDERS,
    KIND_DAILY_SYNC,
    KIND_DEMOGRAPHICS_SYNC,
    KIND_META_HISTORY,
    KIND_RECENT_SYNC,
    KIND_RECONNECT,
    PRIORITY_BACKFILL,
    PRIORITY_BULK,
    PRIORITY_DAILY,
    PRIORITY_DEMOGRAPHICS,
    PRIORITY_HISTORY,
    PRIORITY_INTERACTIVE,
    PRIORITY_RECONNECT,
)
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.gap_detection import DataGap, GapDetector, plan_backfill, split_gap
from marketsync.services.job_queue import JobQueue
from marketsync.services.reconnect import ReconnectService, purge_platform_data
from marketsync.utils.helpers import create_date_chunks, month_chunks, tenant_today, utcnow
from marketsync.utils.logger import log

SCOPE_RECENT = "recent"
SCOPE_DAILY = "daily"
SCOPE_FULL = "full"
SCOPE_DEMOGRAPHICS = "demographics"
SCOPE_BACKFILL = "backfill"
SCOPE_RECONNECT = "reconnect"
SCOPES = (SCOPE_RECENT, SCOPE_DAILY, SCOPE_FULL, SCOPE_DEMOGRAPHICS, SCOPE_BACKFILL, SCOPE_RECONNECT)

BULK_CHAIN = ["orders", "customers", "products"]
DEMOGRAPHICS_DAYS = 30


class SyncOrchestrator:
    """Turns sync requests into ledger records and queued jobs"""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        ledger: Optional[EtlLedger] = None,
        session_factory=SessionLocal,
        detector: Optional[GapDetector] = None,
        reconnect: Optional[ReconnectService] = None,
    ):
        self.settings = get_settings()
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.ledger = ledger or EtlLedger(session_factory)
        self.detector = detector or GapDetector(session_factory)
        self.reconnect = reconnect or ReconnectService(self.queue, session_factory, rebuild=self.plan_rebuild)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register_connection(
        self,
        tenant_id: str,
        platform: str,
        access_token: str,
        external_account_id: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> dict:
        """Create or refresh a connection after a credential exchange"""
        if platform not in PLATFORMS:
            raise ValueError(f"Unsupported platform: {platform}")
        db = self.session_factory()
        try:
            connection = db.query(PlatformConnection).filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
            ).first()
            if connection is None:
                connection = PlatformConnection(tenant_id=tenant_id, platform=platform, sync_status=SYNC_IDLE)
                db.add(connection)
            connection.access_token = access_token
            connection.external_account_id = external_account_id
            connection.timezone = timezone or connection.timezone or "UTC"
            connection.status = CONNECTION_ACTIVE
            connection.last_error = None
            db.commit()
            db.refresh(connection)
            log.info(f"Registered {platform} connection for {tenant_id}")
            return connection.to_dict()
        finally:
            db.close()

    def _connections(self, tenant_id: str, platform: Optional[str] = None, include_inactive: bool = False) -> List[dict]:
        db = self.session_factory()
        try:
            query = db.query(PlatformConnection).filter(PlatformConnection.tenant_id == tenant_id)
            if platform:
                query = query.filter(PlatformConnection.platform == platform)
            if include_inactive:
                query = query.filter(PlatformConnection.status != CONNECTION_REVOKED)
            else:
                query = query.filter(PlatformConnection.status == CONNECTION_ACTIVE)
            return [
                {"id": c.id, "tenant_id": c.tenant_id, "platform": c.platform, "timezone": c.timezone}
                for c in query.all()
            ]
        finally:
            db.close()

    def active_tenants(self) -> List[str]:
        db = self.session_factory()
        try:
            rows = db.query(PlatformConnection.tenant_id).filter(
                PlatformConnection.status == CONNECTION_ACTIVE
            ).distinct().all()
            return sorted(r.tenant_id for r in rows)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Job planning
    # ------------------------------------------------------------------

    def plan_recent(
        self,
        connection: dict,
        kind: str = KIND_RECENT_SYNC,
        priority: int = PRIORITY_INTERACTIVE,
        days: Optional[int] = None,
    ) -> int:
        days = days or self.settings.recent_sync_days
        end = tenant_today(connection["timezone"])
        start = end - timedelta(days=days - 1)
        record_id = self.ledger.create_record(
            connection["tenant_id"], connection["platform"], "recent_sync", kind, start, end
        )
        return self.queue.enqueue(
            tenant_id=connection["tenant_id"],
            platform=connection["platform"],
            kind=kind,
            payload={"days": days},
            priority=priority,
            connection_id=connection["id"],
            etl_job_id=record_id,
        )

    def plan_bulk_chain(self, connection: dict, since: Optional[date] = None, delay_seconds: float = 1) -> int:
        """
        Queue the Shopify bulk exports as one chain.

        Ledger records for every entity are created up front so the
        dashboard shows all milestones as queued; each finished export
        enqueues the next.
        """
        tenant_id, platform = connection["tenant_id"], connection["platform"]
        ledger_ids = {
            entity: self.ledger.create_record(tenant_id, platform, entity, f"bulk_{entity}", since, None)
            for entity in BULK_CHAIN
        }
        return self.queue.enqueue(
            tenant_id=tenant_id,
            platform=platform,
            kind=KIND_BULK_ORDERS,
            payload={
                "chain": BULK_CHAIN[1:],
                "ledger_ids": ledger_ids,
                "since": since.isoformat() if since else None,
            },
            priority=PRIORITY_BULK,
            delay_seconds=delay_seconds,
            connection_id=connection["id"],
            etl_job_id=ledger_ids[BULK_CHAIN[0]],
        )

    def plan_meta_history(self, connection: dict, months: Optional[int] = None, monthly: bool = False) -> List[int]:
        """One meta_history job per date chunk, newest first"""
        months = min(months or self.settings.history_max_months, self.settings.history_max_months)
        end = tenant_today(connection["timezone"]) - timedelta(days=1)
        if monthly:
            chunks = month_chunks(end, months)
        else:
            start = end - relativedelta(months=months) + timedelta(days=1)
            chunks = list(reversed(create_date_chunks(start, end, self.settings.history_chunk_days)))

        job_ids = []
        for chunk_start, chunk_end in chunks:
            record_id = self.ledger.create_record(
                connection["tenant_id"], connection["platform"], "meta_history", KIND_META_HISTORY, chunk_start, chunk_end
            )
            job_ids.append(self.queue.enqueue(
                tenant_id=connection["tenant_id"],
                platform=connection["platform"],
                kind=KIND_META_HISTORY,
                payload={"start": chunk_start.isoformat(), "end": chunk_end.isoformat()},
                priority=PRIORITY_HISTORY,
                connection_id=connection["id"],
                etl_job_id=record_id,
            ))
        return job_ids

    def plan_demographics(self, connection: dict, days: int = DEMOGRAPHICS_DAYS) -> int:
        end = tenant_today(connection["timezone"]) - timedelta(days=1)
        start = end - timedelta(days=days - 1)
        record_id = self.ledger.create_record(
            connection["tenant_id"], connection["platform"], "demographics", KIND_DEMOGRAPHICS_SYNC, start, end
        )
        return self.queue.enqueue(
            tenant_id=connection["tenant_id"],
            platform=connection["platform"],
            kind=KIND_DEMOGRAPHICS_SYNC,
            payload={"start": start.isoformat(), "end": end.isoformat()},
            priority=PRIORITY_DEMOGRAPHICS,
            connection_id=connection["id"],
            etl_job_id=record_id,
        )

    def plan_backfill_jobs(self, tenant_id: str, gaps: List[DataGap], trigger: str = "manual") -> List[int]:
        """
        One backfill job chain per platform. Chunks run one after another;
        each chunk job enqueues the next after the chunk delay.
        """
        by_platform: Dict[str, List[DataGap]] = {}
        for gap in gaps:
            for chunk in split_gap(gap, self.settings.backfill_max_chunk_days):
                by_platform.setdefault(chunk.platform, []).append(chunk)

        job_ids = []
        for platform, chunks in by_platform.items():
            connection = self._connections(tenant_id, platform)
            connection_id = connection[0]["id"] if connection else None
            record_id = self.ledger.create_record(
                tenant_id, platform, "backfill", KIND_BACKFILL_CHUNK,
                min(c.start_date for c in chunks), max(c.end_date for c in chunks),
            )
            first, rest = chunks[0], chunks[1:]
            job_ids.append(self.queue.enqueue(
                tenant_id=tenant_id,
                platform=platform,
                kind=KIND_BACKFILL_CHUNK,
                payload={
                    "start": first.start_date.isoformat(),
                    "end": first.end_date.isoformat(),
                    "chain": [[c.start_date.isoformat(), c.end_date.isoformat()] for c in rest],
                    "trigger": trigger,
                    "total_chunks": len(chunks),
                    "rows_so_far": 0,
                    "failed_chunks": 0,
                },
                priority=PRIORITY_BACKFILL,
                connection_id=connection_id,
                etl_job_id=record_id,
            ))
        return job_ids

    def plan_export_retries(self, tenant_id: str, connections: List[dict]) -> List[dict]:
        """
        Re-queue bulk exports that were abandoned, one entity at a time.

        Each retry asks for a smaller range than the export it replaces: at
        most bulk_retry_window_days back, or the original start if that is
        later. Only the newest abandoned record per entity is retried.
        """
        by_platform = {c["platform"]: c for c in connections}
        latest: Dict[tuple, dict] = {}
        for record in self.ledger.find_abandoned_exports(tenant_id):
            if record["platform"] in by_platform and f"bulk_{record['entity']}" in BULK_KINDS:
                latest[(record["platform"], record["entity"])] = record

        retries = []
        for (platform, entity), record in latest.items():
            connection = by_platform[platform]
            since = tenant_today(connection["timezone"]) - timedelta(days=self.settings.bulk_retry_window_days)
            if record.get("range_start"):
                since = max(since, date.fromisoformat(record["range_start"]))
            kind = f"bulk_{entity}"
            record_id = self.ledger.create_record(tenant_id, platform, entity, kind, since, None)
            job_id = self.queue.enqueue(
                tenant_id=tenant_id,
                platform=platform,
                kind=kind,
                payload={"chain": [], "ledger_ids": {}, "since": since.isoformat(), "retry_of": record["id"]},
                priority=PRIORITY_BULK,
                connection_id=connection["id"],
                etl_job_id=record_id,
            )
            log.warning(f"Retrying abandoned {entity} export for {tenant_id} since {since} (job {job_id})")
            retries.append({"entity": entity, "platform": platform, "since": since.isoformat(), "job_id": job_id})
        return retries

    def plan_rebuild(self, connection: dict) -> dict:
        """Jobs that repopulate a platform after a reconnect wipe"""
        rebuild = {"recent": self.plan_recent(connection, priority=PRIORITY_RECONNECT)}
        if connection["platform"] == PLATFORM_SHOPIFY:
            rebuild["bulk"] = self.plan_bulk_chain(connection)
        elif connection["platform"] == PLATFORM_META:
            rebuild["history"] = self.plan_meta_history(
                connection, self.settings.reconnect_history_months, monthly=True
            )
            rebuild["demographics"] = self.plan_demographics(connection)
        return rebuild

    # ------------------------------------------------------------------
    # requestSync
    # ------------------------------------------------------------------

    def request_sync(
        self,
        tenant_id: str,
        scope: str = SCOPE_RECENT,
        platform: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        force: bool = False,
        lookback_days: Optional[int] = None,
        trigger: str = "manual",
    ) -> dict:
        """
        Enqueue the jobs for a sync request.

        Raises:
            ValueError: unknown scope, or reconnect without a platform
            ConnectionNotFoundError: tenant has no usable connection
            ReconnectInProgressError: a reconnect for the pair is pending or running
        """
        if scope not in SCOPES:
            raise ValueError(f"Unknown sync scope: {scope}")
        if scope == SCOPE_RECONNECT:
            return self._request_reconnect(tenant_id, platform)

        connections = self._connections(tenant_id, platform)
        if not connections:
            raise ConnectionNotFoundError(f"No active connection for {tenant_id}" + (f"/{platform}" if platform else ""))

        result = {"tenant_id": tenant_id, "scope": scope, "jobs": []}

        if scope == SCOPE_BACKFILL:
            result.update(self._request_backfill(tenant_id, connections, start_date, end_date, force, lookback_days, trigger))
            log.info(f"requestSync {tenant_id} backfill: {len(result['jobs'])} job(s)")
            return result

        for connection in connections:
            if scope == SCOPE_DAILY:
                pending = self.queue.pending_jobs(tenant_id, connection["platform"], kinds=[KIND_DAILY_SYNC])
                if pending:
                    log.debug(f"Daily sync already pending for {tenant_id}/{connection['platform']}")
                    continue
                result["jobs"].append(self.plan_recent(connection, KIND_DAILY_SYNC, PRIORITY_DAILY))

            elif scope == SCOPE_DEMOGRAPHICS:
                if connection["platform"] == PLATFORM_META:
                    result["jobs"].append(self.plan_demographics(connection))

            else:
                result["jobs"].append(self.plan_recent(connection))
                if scope == SCOPE_FULL:
                    if connection["platform"] == PLATFORM_SHOPIFY:
                        result["jobs"].append(self.plan_bulk_chain(connection, start_date))
                    elif connection["platform"] == PLATFORM_META:
                        result["jobs"].extend(self.plan_meta_history(connection))
                        result["jobs"].append(self.plan_demographics(connection))

        log.info(f"requestSync {tenant_id} {scope}: {len(result['jobs'])} job(s) queued")
        return result

    def _request_backfill(
        self,
        tenant_id: str,
        connections: List[dict],
        start_date: Optional[date],
        end_date: Optional[date],
        force: bool,
        lookback_days: Optional[int],
        trigger: str,
    ) -> dict:
        if start_date and end_date:
            if start_date > end_date:
                raise ValueError("start_date must not be after end_date")
            gaps = [DataGap(c["platform"], start_date, end_date) for c in connections]
            plan = plan_backfill(gaps, force=True)
        else:
            gaps = []
            for connection in connections:
                gaps.extend(self.detector.detect_gaps(tenant_id, lookback_days, connection["platform"]))
            plan = plan_backfill(gaps, force=force)

        jobs = self.plan_backfill_jobs(tenant_id, plan.critical_gaps, trigger) if plan.should_backfill else []
        # Gap detection covers daily facts; abandoned bulk exports are retried separately
        retries = [] if start_date and end_date else self.plan_export_retries(tenant_id, connections)
        return {"plan": plan.to_dict(), "jobs": jobs + [r["job_id"] for r in retries], "export_retries": retries}

    def _request_reconnect(self, tenant_id: str, platform: Optional[str]) -> dict:
        if not platform:
            raise ValueError("reconnect requires a platform")
        connections = self._connections(tenant_id, platform, include_inactive=True)
        if not connections:
            raise ConnectionNotFoundError(f"No connection for {tenant_id}/{platform}")

        pending = self.queue.pending_jobs(tenant_id, platform, kinds=[KIND_RECONNECT], statuses=(JOB_QUEUED, JOB_ACTIVE))
        if pending or self.reconnect.is_locked(tenant_id, platform):
            raise ReconnectInProgressError(f"Reconnect already in progress for {tenant_id}/{platform}")

        connection = connections[0]
        record_id = self.ledger.create_record(tenant_id, platform, "reconnect", KIND_RECONNECT)
        job_id = self.queue.enqueue(
            tenant_id=tenant_id,
            platform=platform,
            kind=KIND_RECONNECT,
            priority=PRIORITY_RECONNECT,
            connection_id=connection["id"],
            etl_job_id=record_id,
            exclusive=True,
        )
        log.warning(f"Full reconnect requested for {tenant_id}/{platform} (job {job_id})")
        return {"tenant_id": tenant_id, "scope": SCOPE_RECONNECT, "jobs": [job_id]}

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    def disconnect_platform(self, tenant_id: str, platform: str) -> dict:
        """Revoke a connection and purge everything derived from it"""
        db = self.session_factory()
        try:
            connection = db.query(PlatformConnection).filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
            ).first()
            if not connection:
                raise ConnectionNotFoundError(f"No connection for {tenant_id}/{platform}")
            connection.status = CONNECTION_REVOKED
            connection.access_token = None
            connection.sync_status = SYNC_IDLE
            connection.sync_progress = 0
            connection.updated_at = utcnow()
            db.commit()

            dropped = self.queue.remove_pending(tenant_id, platform)
            removed = purge_platform_data(db, tenant_id, platform)
        finally:
            db.close()

        log.warning(f"Disconnected {tenant_id}/{platform}: dropped {dropped} queued job(s), removed {sum(removed.values())} row(s)")
        return {"tenant_id": tenant_id, "platform": platform, "dropped_jobs": dropped, "rows_removed": removed}


def request_sync(tenant_id: str, scope: str = SCOPE_RECENT, **kwargs) -> dict:
    """Module-level shortcut used by the scheduler and API"""
    return SyncOrchestrator().request_sync(tenant_id, scope, **kwargs)
