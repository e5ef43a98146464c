"""
marketsync
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from marketsync.config import get_settings
from marketsync.utils.logger import log
from marketsync import __version__

# Import routers
from marketsync.api import connections, health, sync

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from marketsync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for automated syncs and queue processing
    scheduler_started = False
    if settings.enable_scheduler:
        try:
            from marketsync.scheduler import start_scheduler
            start_scheduler()
            scheduler_started = True
            log.info("Scheduler started successfully")
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if scheduler_started:
        from marketsync.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Sync orchestration for ads and commerce platform data

    - Per-tenant rate limit guard in front of every platform call
    - Persistent priority job queue with retries, deferrals and timeouts
    - Shopify bulk export polling
    - Gap detection and chunked backfill
    - Full reconnect (wipe and rebuild) under mutual exclusion
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(connections.router)
app.include_router(sync.router)


@app.get("/")
async def root():
    """API overview"""
    return {
        "name": settings.app_name,
        "version": __version__,
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "register_connection": "POST /connections",
            "request_sync": "POST /sync/{tenant_id}",
            "sync_status": "GET /sync/{tenant_id}/status",
            "gaps": "GET /sync/{tenant_id}/gaps",
            "backfill": "POST /sync/{tenant_id}/backfill",
            "reconnect": "POST /sync/{tenant_id}/reconnect/{platform}",
            "disconnect": "DELETE /sync/{tenant_id}/connections/{platform}",
            "queue": "GET /sync/queue",
            "process_queue": "POST /sync/queue/process"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "marketsync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
