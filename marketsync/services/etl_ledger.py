"""
Sync Status / ETL Ledger

Durable record of each logical sync's lifecycle. Dashboards and the gap
detector read this instead of the queue, so queue retry mechanics never
leak out.
"""
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func

from marketsync.models.base import SessionLocal
from marketsync.models.connection import (
    PlatformConnection,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_IDLE,
    SYNC_IN_PROGRESS,
)
from marketsync.models.etl import (
    EtlJobRecord,
    ETL_COMPLETED,
    ETL_FAILED,
    ETL_QUEUED,
    ETL_RUNNING,
)
from marketsync.utils.helpers import utcnow
from marketsync.utils.logger import log

# Dashboard milestone order
MILESTONE_ENTITIES = ("recent_sync", "orders", "customers", "products")


def overall_status(statuses: Iterable[str]) -> str:
    """
    Collapse ledger statuses into the dashboard's aggregate status.

    any failed -> failed, any queued/running -> in_progress,
    all completed -> completed, nothing -> idle
    """
    statuses = list(statuses)
    if not statuses:
        return SYNC_IDLE
    if ETL_FAILED in statuses:
        return SYNC_FAILED
    if ETL_QUEUED in statuses or ETL_RUNNING in statuses:
        return SYNC_IN_PROGRESS
    if all(s == ETL_COMPLETED for s in statuses):
        return SYNC_COMPLETED
    return SYNC_IN_PROGRESS


class EtlLedger:
    """Reads and writes EtlJobRecord rows"""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def create_record(
        self,
        tenant_id: str,
        platform: str,
        entity: str,
        job_type: str,
        range_start: Optional[date] = None,
        range_end: Optional[date] = None,
    ) -> int:
        db = self.session_factory()
        try:
            record = EtlJobRecord(
                tenant_id=tenant_id,
                platform=platform,
                entity=entity,
                job_type=job_type,
                status=ETL_QUEUED,
                range_start=range_start,
                range_end=range_end,
            )
            db.add(record)
            db.commit()
            return record.id
        finally:
            db.close()

    def _update(self, record_id: Optional[int], **fields) -> Optional[dict]:
        if not record_id:
            return None
        db = self.session_factory()
        try:
            record = db.query(EtlJobRecord).filter(EtlJobRecord.id == record_id).first()
            if not record:
                log.warning(f"ETL record {record_id} not found for update")
                return None
            for key, value in fields.items():
                setattr(record, key, value)
            db.commit()
            return record.to_dict()
        finally:
            db.close()

    def mark_running(self, record_id: Optional[int]) -> Optional[dict]:
        db = self.session_factory()
        try:
            record = db.query(EtlJobRecord).filter(EtlJobRecord.id == record_id).first() if record_id else None
            if not record:
                return None
            record.status = ETL_RUNNING
            record.error_message = None
            if record.started_at is None:
                record.started_at = utcnow()
            db.commit()
            return record.to_dict()
        finally:
            db.close()

    def update_progress(self, record_id: Optional[int], **fields) -> Optional[dict]:
        """Set rows_written, total_rows, progress_pct, bulk_state, ..."""
        return self._update(record_id, **fields)

    def mark_completed(
        self,
        record_id: Optional[int],
        rows_written: int = 0,
        total_rows: Optional[int] = None,
        **fields
    ) -> Optional[dict]:
        return self._update(
            record_id,
            status=ETL_COMPLETED,
            rows_written=rows_written,
            total_rows=total_rows if total_rows is not None else rows_written,
            progress_pct=100,
            error_message=None,
            completed_at=utcnow(),
            **fields
        )

    def mark_failed(self, record_id: Optional[int], error: str, **fields) -> Optional[dict]:
        return self._update(
            record_id,
            status=ETL_FAILED,
            error_message=(error or "")[:2000],
            completed_at=utcnow(),
            **fields
        )

    def mark_queued(self, record_id: Optional[int], error: Optional[str] = None) -> Optional[dict]:
        """Back to queued while the queue retries; keeps the last error visible"""
        return self._update(record_id, status=ETL_QUEUED, error_message=error)

    def get_record(self, record_id: int) -> Optional[dict]:
        db = self.session_factory()
        try:
            record = db.query(EtlJobRecord).filter(EtlJobRecord.id == record_id).first()
            return record.to_dict() if record else None
        finally:
            db.close()

    def latest_by_entity(self, tenant_id: str, platform: Optional[str] = None) -> Dict[str, dict]:
        """Most recent record per entity"""
        db = self.session_factory()
        try:
            latest = db.query(
                EtlJobRecord.entity,
                func.max(EtlJobRecord.id).label("max_id"),
            ).filter(EtlJobRecord.tenant_id == tenant_id)
            if platform:
                latest = latest.filter(EtlJobRecord.platform == platform)
            latest_ids = [row.max_id for row in latest.group_by(EtlJobRecord.entity).all()]
            if not latest_ids:
                return {}
            records = db.query(EtlJobRecord).filter(EtlJobRecord.id.in_(latest_ids)).all()
            return {r.entity: r.to_dict() for r in records}
        finally:
            db.close()

    def get_sync_status(self, tenant_id: str) -> dict:
        """
        Milestones (recent_sync, orders, customers, products) plus overall status.
        """
        latest = self.latest_by_entity(tenant_id)
        milestones = []
        for entity in MILESTONE_ENTITIES:
            record = latest.get(entity)
            if record:
                milestones.append({
                    "entity": entity,
                    "status": record["status"],
                    "progress_pct": record["progress_pct"],
                    "rows_written": record["rows_written"],
                    "error_message": record["error_message"],
                    "started_at": record["started_at"],
                    "completed_at": record["completed_at"],
                })
        other = [r for entity, r in latest.items() if entity not in MILESTONE_ENTITIES]

        return {
            "tenant_id": tenant_id,
            "overall_status": overall_status(m["status"] for m in milestones),
            "milestones": milestones,
            "other_jobs": other,
        }

    def find_abandoned_exports(self, tenant_id: str, since: Optional[datetime] = None) -> List[dict]:
        """
        Bulk exports that ran out of poll budget and have not been superseded.

        A newer record for the same entity supersedes an abandoned one once
        it has completed, or while it is still queued or running.
        """
        db = self.session_factory()
        try:
            query = db.query(EtlJobRecord).filter(
                EtlJobRecord.tenant_id == tenant_id,
                EtlJobRecord.bulk_state == "abandoned",
            )
            if since:
                query = query.filter(EtlJobRecord.created_at >= since)
            abandoned = query.order_by(EtlJobRecord.id).all()
            result = []
            for record in abandoned:
                superseded = db.query(EtlJobRecord.id).filter(
                    EtlJobRecord.tenant_id == tenant_id,
                    EtlJobRecord.platform == record.platform,
                    EtlJobRecord.entity == record.entity,
                    EtlJobRecord.status.in_([ETL_COMPLETED, ETL_QUEUED, ETL_RUNNING]),
                    EtlJobRecord.id > record.id,
                ).first()
                if not superseded:
                    result.append(record.to_dict())
            return result
        finally:
            db.close()

    def is_abandoned_operation(self, tenant_id: str, operation_id: Optional[str]) -> bool:
        """True when a bulk operation id belongs to an export this tenant gave up on"""
        if not operation_id:
            return False
        db = self.session_factory()
        try:
            return db.query(EtlJobRecord.id).filter(
                EtlJobRecord.tenant_id == tenant_id,
                EtlJobRecord.bulk_operation_id == operation_id,
                EtlJobRecord.bulk_state == "abandoned",
            ).first() is not None
        finally:
            db.close()

    def refresh_connection_status(self, tenant_id: str, platform: str) -> Optional[str]:
        """
        Recompute a connection's aggregate sync status and progress from
        the latest ledger record of each of its entities.
        """
        latest = self.latest_by_entity(tenant_id, platform)
        statuses = [r["status"] for r in latest.values()]
        status = overall_status(statuses)
        completed = sum(1 for s in statuses if s == ETL_COMPLETED)
        progress = int(round(100 * completed / len(statuses))) if statuses else 0

        db = self.session_factory()
        try:
            connection = db.query(PlatformConnection).filter(
                PlatformConnection.tenant_id == tenant_id,
                PlatformConnection.platform == platform,
            ).first()
            if not connection:
                return None
            connection.sync_status = status
            connection.sync_progress = progress
            if status == SYNC_COMPLETED:
                connection.last_synced_at = utcnow()
            if connection.reconnect_state == "rebuilding" and status in (SYNC_COMPLETED, SYNC_FAILED):
                connection.reconnect_state = "idle"
            db.commit()
            log.debug(f"Connection {tenant_id}/{platform} sync status -> {status} ({progress}%)")
            return status
        finally:
            db.close()
