"""
Data synchronization endpoints

Every trigger resolves to request_sync; the work itself runs in the queue.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query
from pydantic import BaseModel

from marketsync.errors import ConnectionNotFoundError, ReconnectInProgressError
from marketsync.models.connection import PLATFORMS
from marketsync.services.advisories import get_advisory
from marketsync.services.etl_ledger import EtlLedger
from marketsync.services.gap_detection import GapDetector
from marketsync.services.job_queue import JobQueue
from marketsync.services.rate_limiter import get_rate_limiter
from marketsync.services.sync_orchestrator import SCOPE_BACKFILL, SCOPE_RECENT, SCOPE_RECONNECT, SyncOrchestrator
from marketsync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncRequest(BaseModel):
    scope: str = SCOPE_RECENT
    platform: Optional[str] = None


class BackfillRequest(BaseModel):
    platform: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    force: bool = False
    lookback_days: Optional[int] = None


def _check_platform(platform: Optional[str]):
    if platform and platform not in PLATFORMS:
        raise HTTPException(status_code=400, detail=f"Unknown platform: {platform}")


def _request(tenant_id: str, scope: str, **kwargs) -> dict:
    try:
        return SyncOrchestrator().request_sync(tenant_id, scope, **kwargs)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReconnectInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _drain_queue():
    """Background task: run due jobs now."""
    from marketsync.scheduler import get_worker_pool

    try:
        summary = await get_worker_pool().drain()
        log.info(f"Manual queue drain: {summary}")
    except Exception as e:
        log.error(f"Manual queue drain error: {str(e)}")


# Queue routes come first so "queue" is never read as a tenant id

@router.get("/queue")
def queue_status(tenant_id: Optional[str] = Query(None, description="Limit to one tenant")):
    """Job counts per status"""
    return {"tenant_id": tenant_id, "counts": JobQueue().counts(tenant_id)}


@router.post("/queue/process")
async def process_queue(background_tasks: BackgroundTasks):
    """
    Drain the queue in the background.
    Check progress at GET /sync/queue
    """
    background_tasks.add_task(_drain_queue)
    return {"message": "Queue processing started in background", "check_progress": "/sync/queue"}


@router.post("/{tenant_id}")
def request_sync(tenant_id: str, body: Optional[SyncRequest] = None):
    """
    Enqueue a sync for a tenant.

    Example: POST /sync/acme {"scope": "full"}
    """
    body = body or SyncRequest()
    _check_platform(body.platform)
    return _request(tenant_id, body.scope, platform=body.platform)


@router.get("/{tenant_id}/status")
def sync_status(tenant_id: str):
    """Milestones, overall status and the cooldown advisory (if any)"""
    status = EtlLedger().get_sync_status(tenant_id)
    status["queue"] = JobQueue().counts(tenant_id)
    status["rate_limit"] = get_rate_limiter().get_status(tenant_id)
    status["rate_limit_advisory"] = get_advisory(tenant_id)
    return status


@router.get("/{tenant_id}/gaps")
def sync_gaps(
    tenant_id: str,
    platform: Optional[str] = Query(None),
    lookback_days: Optional[int] = Query(None, ge=1, le=730),
):
    """Missing date ranges per platform"""
    _check_platform(platform)
    detector = GapDetector()
    platforms = [platform] if platform else list(PLATFORMS)
    reports = [detector.gap_report(tenant_id, p, lookback_days) for p in platforms]
    return {
        "tenant_id": tenant_id,
        "platforms": reports,
        "total_missing_days": sum(r["total_missing_days"] for r in reports),
    }


@router.post("/{tenant_id}/backfill")
def sync_backfill(tenant_id: str, body: Optional[BackfillRequest] = None):
    """
    Queue a backfill: detected gaps, or a manual range when start/end are given.

    Example: POST /sync/acme/backfill {"force": true}
    """
    body = body or BackfillRequest()
    _check_platform(body.platform)
    if (body.start_date is None) != (body.end_date is None):
        raise HTTPException(status_code=400, detail="start_date and end_date must be given together")
    return _request(
        tenant_id,
        SCOPE_BACKFILL,
        platform=body.platform,
        start_date=body.start_date,
        end_date=body.end_date,
        force=body.force,
        lookback_days=body.lookback_days,
    )


@router.post("/{tenant_id}/reconnect/{platform}")
def sync_reconnect(tenant_id: str, platform: str):
    """Wipe and rebuild one platform; 409 while another reconnect is in flight"""
    _check_platform(platform)
    return _request(tenant_id, SCOPE_RECONNECT, platform=platform)


@router.delete("/{tenant_id}/connections/{platform}")
def disconnect(tenant_id: str, platform: str):
    """Revoke a connection and purge its data"""
    _check_platform(platform)
    try:
        return SyncOrchestrator().disconnect_platform(tenant_id, platform)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
