"""
Health check and status endpoints
"""
from fastapi import APIRouter
from marketsync.config import get_settings
from marketsync.services.job_queue import JobQueue
from marketsync.services.rate_limiter import get_rate_limiter
from marketsync.utils.helpers import utcnow
from marketsync import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
def get_status():
    """Get system status"""
    limiter = get_rate_limiter()
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "features": {
            "scheduler": settings.enable_scheduler,
        },
        "rate_limit": {
            "max_requests": limiter.max_requests,
            "window_seconds": limiter.window_seconds,
            "min_interval_seconds": limiter.min_interval_seconds,
        },
        "queue": JobQueue().counts(),
        "timestamp": utcnow().isoformat()
    }
