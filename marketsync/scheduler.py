"""
Scheduler for automated sync triggers

Uses APScheduler to enqueue the daily refresh, audit tenants for gaps, and
keep the job queue moving (drain, stalled reclamation, cleanup).
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import asyncio
from typing import Optional

import pytz

from marketsync.config import get_settings
from marketsync.services.job_queue import JobQueue
from marketsync.services.sync_handlers import create_worker_pool
from marketsync.services.sync_orchestrator import SCOPE_BACKFILL, SCOPE_DAILY, SyncOrchestrator
from marketsync.services.worker import WorkerPool
from marketsync.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()

_worker_pool: Optional[WorkerPool] = None


def get_worker_pool() -> WorkerPool:
    global _worker_pool
    if _worker_pool is None:
        _worker_pool = create_worker_pool()
    return _worker_pool


# Scheduled functions

async def daily_sync_all():
    """Enqueue the daily refresh for every tenant with an active connection"""
    orchestrator = SyncOrchestrator()
    tenants = orchestrator.active_tenants()
    log.info(f"Daily sync: {len(tenants)} tenant(s)")

    queued = 0
    for tenant_id in tenants:
        try:
            result = orchestrator.request_sync(tenant_id, SCOPE_DAILY, trigger="scheduled")
            queued += len(result["jobs"])
        except Exception as e:
            log.error(f"Daily sync enqueue failed for {tenant_id}: {str(e)}")

    log.info(f"Daily sync queued {queued} job(s)")
    return {"tenants": len(tenants), "jobs_queued": queued}


async def gap_audit_all():
    """Detect gaps for every tenant and queue backfills that clear the threshold"""
    orchestrator = SyncOrchestrator()
    tenants = orchestrator.active_tenants()
    log.info(f"Gap audit: {len(tenants)} tenant(s)")

    summary = {"tenants": len(tenants), "backfills_queued": 0, "abandoned_exports": 0}
    for index, tenant_id in enumerate(tenants):
        if index > 0 and settings.backfill_tenant_delay_seconds:
            await asyncio.sleep(settings.backfill_tenant_delay_seconds)
        try:
            result = orchestrator.request_sync(tenant_id, SCOPE_BACKFILL, trigger="auto")
            retries = result.get("export_retries", [])
            summary["backfills_queued"] += len(result["jobs"]) - len(retries)
            summary["abandoned_exports"] += len(retries)
            if retries:
                log.warning(
                    f"Tenant {tenant_id}: retrying {len(retries)} abandoned bulk export(s): "
                    + ", ".join(r["entity"] for r in retries)
                )
        except Exception as e:
            log.error(f"Gap audit failed for {tenant_id}: {str(e)}")

    log.info(f"Gap audit done: {summary}")
    return summary


async def process_queue():
    """Run whatever is due"""
    summary = await get_worker_pool().process_available()
    if summary.get("claimed"):
        log.info(f"Queue drain: {summary}")
    return summary


async def reclaim_stalled_jobs():
    return get_worker_pool().reclaim_stalled()


async def cleanup_queue():
    return {"removed": JobQueue().cleanup()}


def setup_scheduler():
    """
    Configure the scheduler.

    - Daily sync:        daily_sync_hour   (last N days per active connection)
    - Gap audit:         gap_audit_hour    (detect + backfill, per-tenant delay)
    - Queue drain:       every worker_poll_interval_seconds
    - Stalled reclaim:   every 5 minutes
    - Queue cleanup:     hourly
    """
    tz = pytz.timezone(settings.scheduler_timezone)

    scheduler.add_job(
        daily_sync_all,
        trigger=CronTrigger(hour=settings.daily_sync_hour, minute=0, timezone=tz),
        id='daily_sync',
        name='Daily Sync (all tenants)',
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        gap_audit_all,
        trigger=CronTrigger(hour=settings.gap_audit_hour, minute=0, timezone=tz),
        id='gap_audit',
        name='Gap Detection & Backfill',
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        process_queue,
        trigger=IntervalTrigger(seconds=settings.worker_poll_interval_seconds),
        id='process_queue',
        name='Sync Queue Worker',
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        reclaim_stalled_jobs,
        trigger=IntervalTrigger(minutes=5),
        id='reclaim_stalled',
        name='Reclaim Stalled Jobs',
        replace_existing=True,
        max_instances=1
    )

    scheduler.add_job(
        cleanup_queue,
        trigger=IntervalTrigger(hours=1),
        id='queue_cleanup',
        name='Queue Cleanup',
        replace_existing=True,
        max_instances=1
    )

    log.info(f"Scheduler configured with all sync jobs (timezone: {settings.scheduler_timezone})")


def start_scheduler():
    """Start the scheduler (needs a running event loop)"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
    log.info("Scheduler stopped")


SCHEDULED_FUNCTIONS = {
    'daily_sync': daily_sync_all,
    'gap_audit': gap_audit_all,
    'process_queue': process_queue,
    'reclaim_stalled': reclaim_stalled_jobs,
    'queue_cleanup': cleanup_queue,
}


def run_job_now(job_name: str) -> dict:
    """
    Manually run one scheduled function

    Args:
        job_name: daily_sync, gap_audit, process_queue, reclaim_stalled, queue_cleanup

    Returns:
        Dict with the function's result
    """
    if job_name not in SCHEDULED_FUNCTIONS:
        return {
            'success': False,
            'error': f'Unknown job: {job_name}. Valid options: {", ".join(SCHEDULED_FUNCTIONS.keys())}'
        }

    try:
        log.info(f"Manually triggering {job_name}...")
        result = asyncio.run(SCHEDULED_FUNCTIONS[job_name]())
        return {
            'success': True,
            'message': f'{job_name} completed',
            'result': result
        }

    except Exception as e:
        log.error(f"Error running {job_name}: {str(e)}")
        return {
            'success': False,
            'error': str(e)
        }


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


async def _serve():
    start_scheduler()
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()


# CLI for manual runs

USAGE = f"""Usage: python -m marketsync.scheduler <command> [job_name]

Commands:
  start          Run the scheduler until interrupted
  run <job>      Run one scheduled function now
  drain          Process the queue until nothing is due
  list           Show scheduled jobs and their next run

Jobs: {', '.join(SCHEDULED_FUNCTIONS)}"""


if __name__ == "__main__":
    import sys

    from marketsync.models.base import init_db

    args = sys.argv[1:]
    if not args:
        print(USAGE)
        sys.exit(1)

    command = args[0]
    init_db()

    if command == "start":
        print(f"Scheduler running (timezone {settings.scheduler_timezone}); Ctrl+C to stop")
        try:
            asyncio.run(_serve())
        except (KeyboardInterrupt, SystemExit):
            print("Scheduler stopped")

    elif command == "run":
        if len(args) < 2:
            print(USAGE)
            sys.exit(1)
        result = run_job_now(args[1])
        if not result['success']:
            print(f"✗ {result['error']}")
            sys.exit(1)
        print(f"✓ {result['message']}: {result['result']}")

    elif command == "drain":
        summary = asyncio.run(get_worker_pool().drain())
        print(f"Queue drained: {summary or 'nothing due'}")

    elif command == "list":
        setup_scheduler()
        jobs = get_scheduled_jobs()
        if not jobs:
            print("No jobs scheduled")
        for job in jobs:
            print(f"{job['id']:<18} {job['name']:<28} {job['trigger']}")

    else:
        print(f"Unknown command: {command}\n")
        print(USAGE)
        sys.exit(1)
