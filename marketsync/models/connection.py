"""
Platform connection model

One row per (tenant, platform). Holds the credential reference, sync status
shown to the dashboard, and the advisory lock used by full reconnects.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint
from marketsync.utils.helpers import utcnow

from marketsync.models.base import Base

PLATFORM_META = "meta"
PLATFORM_SHOPIFY = "shopify"
PLATFORMS = (PLATFORM_META, PLATFORM_SHOPIFY)

# Connection status
CONNECTION_PENDING = "pending"
CONNECTION_ACTIVE = "active"
CONNECTION_DEGRADED = "degraded"
CONNECTION_REVOKED = "revoked"

# Aggregate sync status
SYNC_IDLE = "idle"
SYNC_IN_PROGRESS = "in_progress"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"


class PlatformConnection(Base):
    """
    A tenant's connection to an external platform

    Created on credential exchange, mutated by every sync cycle,
    revoked on disconnect.
    """
    __tablename__ = "platform_connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", name="uq_platform_connections_tenant_platform"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    platform = Column(String, index=True, nullable=False)  # meta, shopify

    # Credentials
    access_token = Column(Text, nullable=True)
    external_account_id = Column(String, nullable=True)  # act_123 / shop.myshopify.com
    timezone = Column(String, default="UTC")

    status = Column(String, index=True, default=CONNECTION_PENDING)  # pending, active, degraded, revoked
    last_error = Column(Text, nullable=True)

    # Sync status for dashboards
    sync_status = Column(String, index=True, default=SYNC_IDLE)  # idle, in_progress, completed, failed
    sync_progress = Column(Integer, default=0)  # 0-100
    last_synced_at = Column(DateTime, nullable=True)

    # Reconnect advisory lock
    reconnect_state = Column(String, default="idle")  # idle, reconnecting, rebuilding
    reconnect_lock = Column(String, nullable=True)
    reconnect_locked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "platform": self.platform,
            "external_account_id": self.external_account_id,
            "status": self.status,
            "sync_status": self.sync_status,
            "sync_progress": self.sync_progress,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "reconnect_state": self.reconnect_state,
        }
