"""
Sync job queue model

Each row is one unit of work on the durable job queue. Status transitions:
queued -> active -> completed | failed, with failed attempts returning to
queued until max_attempts is reached.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean, Float, ForeignKey, Index
from marketsync.utils.helpers import utcnow

from marketsync.models.base import Base

JOB_QUEUED = "queued"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

# Job kinds
KIND_RECENT_SYNC = "recent_sync"
KIND_BULK_ORDERS = "bulk_orders"
KIND_BULK_CUSTOMERS = "bulk_customers"
KIND_BULK_PRODUCTS = "bulk_products"
KIND_POLL_BULK = "poll_bulk"
KIND_DEMOGRAPHICS_SYNC = "demographics_sync"
KIND_META_HISTORY = "meta_history"
KIND_BACKFILL_CHUNK = "backfill_chunk"
KIND_DAILY_SYNC = "daily_sync"
KIND_RECONNECT = "reconnect_full_sync"

BULK_KINDS = {
    KIND_BULK_ORDERS: "orders",
    KIND_BULK_CUSTOMERS: "customers",
    KIND_BULK_PRODUCTS: "products",
}

# Higher runs first
PRIORITY_INTERACTIVE = 10
PRIORITY_RECONNECT = 9
PRIORITY_POLL = 8
PRIORITY_DAILY = 7
PRIORITY_BULK = 5
PRIORITY_DEMOGRAPHICS = 4
PRIORITY_HISTORY = 3
PRIORITY_BACKFILL = 1


class SyncJob(Base):
    """
    Queued sync work for one tenant/platform
    """
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_claim", "status", "priority", "run_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="SET NULL"), nullable=True)
    platform = Column(String, index=True, nullable=False)
    kind = Column(String, index=True, nullable=False)

    priority = Column(Integer, default=PRIORITY_BULK)
    status = Column(String, index=True, default=JOB_QUEUED)
    run_at = Column(DateTime, index=True, default=utcnow)  # Not eligible before this time

    # Retry policy
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    backoff_base_seconds = Column(Float, default=5.0)
    backoff_max_seconds = Column(Float, default=300.0)
    timeout_seconds = Column(Integer, default=1800)
    stalled_count = Column(Integer, default=0)
    deferrals = Column(Integer, default=0)  # times put back without spending an attempt
    exclusive = Column(Boolean, default=False)

    payload = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    etl_job_id = Column(Integer, ForeignKey("etl_jobs.id", ondelete="SET NULL"), nullable=True, index=True)

    # Claim bookkeeping
    locked_by = Column(String, nullable=True)
    locked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    finished_at = Column(DateTime, nullable=True, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "platform": self.platform,
            "kind": self.kind,
            "priority": self.priority,
            "status": self.status,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "stalled_count": self.stalled_count,
            "deferrals": self.deferrals or 0,
            "exclusive": self.exclusive,
            "payload": self.payload,
            "last_error": self.last_error,
            "result": self.result,
            "etl_job_id": self.etl_job_id,
        }
