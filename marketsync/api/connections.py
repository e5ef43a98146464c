"""
Connection endpoints
"""
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from marketsync.errors import ConnectionNotFoundError
from marketsync.models.base import SessionLocal
from marketsync.models.connection import PLATFORMS, PlatformConnection
from marketsync.services.sync_orchestrator import SCOPE_FULL, SyncOrchestrator

router = APIRouter(prefix="/connections", tags=["connections"])


class ConnectionRequest(BaseModel):
    tenant_id: str
    platform: str
    access_token: str
    external_account_id: Optional[str] = None
    timezone: Optional[str] = None
    start_sync: bool = True


@router.post("")
def register_connection(body: ConnectionRequest):
    """
    Store credentials after the OAuth exchange and kick off the first full sync.
    """
    if body.platform not in PLATFORMS:
        raise HTTPException(status_code=400, detail=f"Unknown platform: {body.platform}")

    orchestrator = SyncOrchestrator()
    connection = orchestrator.register_connection(
        body.tenant_id,
        body.platform,
        body.access_token,
        body.external_account_id,
        body.timezone,
    )
    result = {"connection": connection, "sync": None}
    if body.start_sync:
        try:
            result["sync"] = orchestrator.request_sync(body.tenant_id, SCOPE_FULL, platform=body.platform)
        except ConnectionNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
    return result


@router.get("/{tenant_id}")
def list_connections(tenant_id: str):
    db = SessionLocal()
    try:
        connections = db.query(PlatformConnection).filter(PlatformConnection.tenant_id == tenant_id).all()
        return {"tenant_id": tenant_id, "connections": [c.to_dict() for c in connections]}
    finally:
        db.close()
