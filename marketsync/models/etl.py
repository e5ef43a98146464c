"""
ETL ledger models

EtlJobRecord is the durable audit trail of a sync job's lifecycle, independent
of queue retries. BackfillLog, SyncDay and EtlCursor support gap detection and
incremental syncs.
"""
from sqlalchemy import Column, Integer, String, DateTime, Date, Text, Boolean, UniqueConstraint
from marketsync.utils.helpers import utcnow

from marketsync.models.base import Base

ETL_QUEUED = "queued"
ETL_RUNNING = "running"
ETL_COMPLETED = "completed"
ETL_FAILED = "failed"


class EtlJobRecord(Base):
    """
    Ledger entry for one logical sync (may span many SyncJob attempts)
    """
    __tablename__ = "etl_jobs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    platform = Column(String, index=True, nullable=False)
    entity = Column(String, index=True, nullable=False)  # recent_sync, orders, customers, products, insights...
    job_type = Column(String, index=True)  # recent, bulk, backfill, history, reconnect

    status = Column(String, index=True, default=ETL_QUEUED)  # queued, running, completed, failed
    rows_written = Column(Integer, default=0)
    total_rows = Column(Integer, nullable=True)
    progress_pct = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)

    # Bulk export tracking
    bulk_operation_id = Column(String, nullable=True)
    bulk_state = Column(String, nullable=True)  # created, polling, ready, ingesting, completed, failed, abandoned
    poll_attempts = Column(Integer, default=0)

    # Requested range (backfill / history chunks)
    range_start = Column(Date, nullable=True)
    range_end = Column(Date, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "platform": self.platform,
            "entity": self.entity,
            "job_type": self.job_type,
            "status": self.status,
            "rows_written": self.rows_written,
            "total_rows": self.total_rows,
            "progress_pct": self.progress_pct,
            "error_message": self.error_message,
            "bulk_state": self.bulk_state,
            "range_start": self.range_start.isoformat() if self.range_start else None,
            "range_end": self.range_end.isoformat() if self.range_end else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class EtlCursor(Base):
    """Incremental high-water mark per tenant and entity"""
    __tablename__ = "etl_cursors"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity", name="uq_etl_cursors_tenant_entity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    entity = Column(String, nullable=False)
    last_value = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SyncDay(Base):
    """
    Per-day sync attempt ledger

    Separates "a sync covered this day" from "this day has rows", so a day
    with genuinely zero activity is not re-backfilled forever while a failed
    sync still leaves the day open.
    """
    __tablename__ = "sync_days"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "day", name="uq_sync_days_tenant_platform_day"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    platform = Column(String, index=True, nullable=False)
    day = Column(Date, index=True, nullable=False)

    attempted_at = Column(DateTime, nullable=True)
    succeeded = Column(Boolean, default=False)
    row_count = Column(Integer, default=0)


class BackfillLog(Base):
    """Audit row for one backfill chunk"""
    __tablename__ = "backfill_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    platform = Column(String, index=True, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    day_count = Column(Integer, default=0)
    records_added = Column(Integer, default=0)
    success = Column(Boolean, default=False)
    error = Column(Text, nullable=True)
    trigger = Column(String, default="manual")  # manual, auto, scheduled
    created_at = Column(DateTime, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "day_count": self.day_count,
            "records_added": self.records_added,
            "success": self.success,
            "error": self.error,
        }
