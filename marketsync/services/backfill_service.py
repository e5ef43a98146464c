"""
Backfill execution

Runs gap chunks one at a time with a pause between them. A failed chunk
never stops the rest; every outcome is written to backfill_logs, and failed
chunks come back as remaining gaps for the next audit.
"""
import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, List, Optional, Sequence

from marketsync.config import get_settings
from marketsync.errors import RateLimitedError
from marketsync.models.base import SessionLocal
from marketsync.models.etl import BackfillLog
from marketsync.services.gap_detection import DataGap, GapDetector, plan_backfill, split_gap
from marketsync.utils.logger import log

# (tenant_id, platform, start, end) -> rows written
RangeSyncer = Callable[[str, str, date, date], Awaitable[int]]


@dataclass
class ChunkOutcome:
    platform: str
    start_date: date
    end_date: date
    day_count: int
    records_added: int = 0
    success: bool = False
    error: Optional[str] = None

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


class BackfillService:
    """Sequential gap repair"""

    def __init__(
        self,
        range_syncer: RangeSyncer,
        session_factory=SessionLocal,
        detector: Optional[GapDetector] = None,
        chunk_delay: Optional[float] = None,
        max_chunk_days: Optional[int] = None,
        sleep: Callable = asyncio.sleep,
    ):
        settings = get_settings()
        self.range_syncer = range_syncer
        self.session_factory = session_factory
        self.detector = detector or GapDetector(session_factory)
        self.chunk_delay = chunk_delay if chunk_delay is not None else settings.backfill_chunk_delay_seconds
        self.max_chunk_days = max_chunk_days or settings.backfill_max_chunk_days
        self.sleep = sleep

    def chunk_gaps(self, gaps: Sequence[DataGap]) -> List[DataGap]:
        chunks: List[DataGap] = []
        for gap in gaps:
            chunks.extend(split_gap(gap, self.max_chunk_days))
        return chunks

    def _log_chunk(self, tenant_id: str, outcome: ChunkOutcome, trigger: str):
        db = self.session_factory()
        try:
            db.add(BackfillLog(
                tenant_id=tenant_id,
                platform=outcome.platform,
                start_date=outcome.start_date,
                end_date=outcome.end_date,
                day_count=outcome.day_count,
                records_added=outcome.records_added,
                success=outcome.success,
                error=outcome.error,
                trigger=trigger,
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            log.error(f"Failed to write backfill log for {tenant_id}: {e}")
        finally:
            db.close()

    async def run_chunk(
        self,
        tenant_id: str,
        chunk: DataGap,
        trigger: str = "manual",
        raise_rate_limited: bool = False,
    ) -> ChunkOutcome:
        """
        Sync one chunk and record the outcome.

        With raise_rate_limited the cooldown propagates (queued chunks are
        deferred instead of logged as failures).
        """
        outcome = ChunkOutcome(chunk.platform, chunk.start_date, chunk.end_date, chunk.day_count)
        try:
            outcome.records_added = await self.range_syncer(tenant_id, chunk.platform, chunk.start_date, chunk.end_date)
            outcome.success = True
            log.info(
                f"Backfill {tenant_id}/{chunk.platform} {chunk.start_date}..{chunk.end_date}: "
                f"{outcome.records_added} records"
            )
        except RateLimitedError as e:
            if raise_rate_limited:
                raise
            outcome.error = str(e)
        except Exception as e:
            outcome.error = str(e) or type(e).__name__
        if not outcome.success:
            log.error(f"Backfill chunk {tenant_id}/{chunk.platform} {chunk.start_date}..{chunk.end_date} failed: {outcome.error}")

        self._log_chunk(tenant_id, outcome, trigger)
        return outcome

    async def execute(self, tenant_id: str, gaps: Sequence[DataGap], trigger: str = "manual") -> dict:
        """
        Backfill gaps sequentially.

        Returns:
            Dict with per-chunk results, total records added and the gaps
            that are still open
        """
        chunks = self.chunk_gaps(gaps)
        results: List[ChunkOutcome] = []

        for index, chunk in enumerate(chunks):
            if index > 0 and self.chunk_delay:
                await self.sleep(self.chunk_delay)
            results.append(await self.run_chunk(tenant_id, chunk, trigger))

        remaining = [
            DataGap(r.platform, r.start_date, r.end_date).to_dict()
            for r in results if not r.success
        ]
        return {
            "tenant_id": tenant_id,
            "success": all(r.success for r in results),
            "chunks_processed": len(results),
            "records_added": sum(r.records_added for r in results),
            "results": [r.to_dict() for r in results],
            "remaining_gaps": remaining,
        }

    async def audit_tenant(
        self,
        tenant_id: str,
        lookback_days: Optional[int] = None,
        force: bool = False,
        threshold_days: Optional[int] = None,
        trigger: str = "auto",
    ) -> dict:
        """Detect, plan and (if warranted) execute a backfill for one tenant"""
        gaps = self.detector.detect_gaps(tenant_id, lookback_days)
        plan = plan_backfill(gaps, threshold_days, force)
        result = {"tenant_id": tenant_id, "plan": plan.to_dict(), "executed": False}
        if not plan.should_backfill:
            log.info(f"Tenant {tenant_id}: {plan.total_missing_days} missing day(s), below backfill threshold")
            return result
        result.update(await self.execute(tenant_id, plan.critical_gaps, trigger))
        result["executed"] = True
        return result
