"""
Gap Detector & Backfill Planner

Scans each platform's daily fact table for days with no (or too few) rows
over a lookback window, merges the missing days into contiguous ranges, and
decides whether a backfill is worth running.

A day counts as covered when it has enough rows, or when a range sync
succeeded for that day (genuine zero activity). Days whose last sync failed
stay open.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func

from marketsync.config import get_settings
from marketsync.models.base import SessionLocal
from marketsync.models.connection import (
    CONNECTION_ACTIVE,
    PLATFORM_META,
    PLATFORM_SHOPIFY,
    PlatformConnection,
)
from marketsync.models.etl import SyncDay
from marketsync.models.meta import MetaAdInsight
from marketsync.models.shopify import ShopifyOrder
from marketsync.utils.helpers import iter_days, tenant_today
from marketsync.utils.logger import log

# Daily-granularity column per platform
DAILY_COLUMNS = {
    PLATFORM_META: MetaAdInsight.date,
    PLATFORM_SHOPIFY: ShopifyOrder.order_date,
}
TENANT_COLUMNS = {
    PLATFORM_META: MetaAdInsight.tenant_id,
    PLATFORM_SHOPIFY: ShopifyOrder.tenant_id,
}


@dataclass
class DataGap:
    platform: str
    start_date: date
    end_date: date

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "day_count": self.day_count,
        }


@dataclass
class BackfillPlan:
    should_backfill: bool
    critical_gaps: List[DataGap] = field(default_factory=list)
    total_missing_days: int = 0

    def to_dict(self) -> dict:
        return {
            "should_backfill": self.should_backfill,
            "critical_gaps": [g.to_dict() for g in self.critical_gaps],
            "total_missing_days": self.total_missing_days,
        }


def merge_missing_days(days: Sequence[date]) -> List[Tuple[date, date]]:
    """Collapse individual missing days into contiguous inclusive ranges"""
    ranges: List[Tuple[date, date]] = []
    for day in sorted(set(days)):
        if ranges and day - ranges[-1][1] == timedelta(days=1):
            ranges[-1] = (ranges[-1][0], day)
        else:
            ranges.append((day, day))
    return ranges


def split_gap(gap: DataGap, max_days: int) -> List[DataGap]:
    """Break a long gap into chunks of at most max_days, newest first"""
    chunks = []
    end = gap.end_date
    while end >= gap.start_date:
        start = max(gap.start_date, end - timedelta(days=max_days - 1))
        chunks.append(DataGap(gap.platform, start, end))
        end = start - timedelta(days=1)
    return chunks


def plan_backfill(
    gaps: Sequence[DataGap],
    threshold_days: Optional[int] = None,
    force: bool = False,
) -> BackfillPlan:
    """
    Decide whether gaps warrant a backfill.

    A backfill is planned when the total number of missing days reaches
    threshold_days, or when forced. Below the threshold the gaps are
    treated as noise. Critical gaps are returned newest first.
    """
    if threshold_days is None:
        threshold_days = get_settings().backfill_threshold_days
    total = sum(g.day_count for g in gaps)
    should = bool(gaps) and (force or total >= threshold_days)
    critical = sorted(gaps, key=lambda g: g.end_date, reverse=True) if should else []
    return BackfillPlan(should_backfill=should, critical_gaps=critical, total_missing_days=total)


class GapDetector:
    """Finds missing daily data per tenant and platform"""

    def __init__(self, session_factory=SessionLocal, min_rows_per_day: Optional[int] = None):
        settings = get_settings()
        self.session_factory = session_factory
        self.min_rows_per_day = min_rows_per_day if min_rows_per_day is not None else settings.backfill_min_rows_per_day
        self.default_lookback = settings.gap_lookback_days

    def _platforms(self, db, tenant_id: str, platform: Optional[str]) -> List[Tuple[str, str]]:
        """(platform, timezone) for the tenant's active connections"""
        query = db.query(PlatformConnection).filter(
            PlatformConnection.tenant_id == tenant_id,
            PlatformConnection.status == CONNECTION_ACTIVE,
        )
        if platform:
            query = query.filter(PlatformConnection.platform == platform)
        return [(c.platform, c.timezone) for c in query.all() if c.platform in DAILY_COLUMNS]

    def _window(self, lookback_days: int, end_date: Optional[date], tz_name: Optional[str]) -> Tuple[date, date]:
        # Today is still accumulating, so the window ends yesterday
        end = end_date or (tenant_today(tz_name) - timedelta(days=1))
        return end - timedelta(days=lookback_days - 1), end

    def daily_counts(self, db, tenant_id: str, platform: str, start: date, end: date) -> Dict[date, int]:
        column = DAILY_COLUMNS[platform]
        rows = db.query(column, func.count()).filter(
            TENANT_COLUMNS[platform] == tenant_id,
            column >= start,
            column <= end,
        ).group_by(column).all()
        return {day: count for day, count in rows}

    def covered_days(self, db, tenant_id: str, platform: str, start: date, end: date) -> set:
        rows = db.query(SyncDay.day).filter(
            SyncDay.tenant_id == tenant_id,
            SyncDay.platform == platform,
            SyncDay.day >= start,
            SyncDay.day <= end,
            SyncDay.succeeded.is_(True),
        ).all()
        return {r.day for r in rows}

    def detect_gaps(
        self,
        tenant_id: str,
        lookback_days: Optional[int] = None,
        platform: Optional[str] = None,
        end_date: Optional[date] = None,
    ) -> List[DataGap]:
        """
        Missing date ranges for every active platform of a tenant.

        Args:
            tenant_id: Tenant to scan
            lookback_days: Window length ending at end_date
            platform: Limit to one platform
            end_date: Last day of the window (default: yesterday in tenant time)
        """
        lookback_days = lookback_days or self.default_lookback
        gaps: List[DataGap] = []
        db = self.session_factory()
        try:
            for platform_name, tz_name in self._platforms(db, tenant_id, platform):
                start, end = self._window(lookback_days, end_date, tz_name)
                counts = self.daily_counts(db, tenant_id, platform_name, start, end)
                covered = self.covered_days(db, tenant_id, platform_name, start, end)
                missing = [
                    d for d in iter_days(start, end)
                    if counts.get(d, 0) < self.min_rows_per_day and d not in covered
                ]
                for range_start, range_end in merge_missing_days(missing):
                    gaps.append(DataGap(platform_name, range_start, range_end))
        finally:
            db.close()

        if gaps:
            log.info(f"Tenant {tenant_id}: {len(gaps)} gap(s), {sum(g.day_count for g in gaps)} missing day(s)")
        return gaps

    def gap_report(
        self,
        tenant_id: str,
        platform: str,
        lookback_days: Optional[int] = None,
        end_date: Optional[date] = None,
    ) -> dict:
        """Gaps for one platform plus the data's first/last dates"""
        gaps = self.detect_gaps(tenant_id, lookback_days, platform, end_date)
        column = DAILY_COLUMNS[platform]
        db = self.session_factory()
        try:
            earliest, latest = db.query(func.min(column), func.max(column)).filter(
                TENANT_COLUMNS[platform] == tenant_id
            ).one()
        finally:
            db.close()
        return {
            "platform": platform,
            "has_gaps": bool(gaps),
            "gaps": [g.to_dict() for g in gaps],
            "total_missing_days": sum(g.day_count for g in gaps),
            "earliest_data_date": earliest.isoformat() if earliest else None,
            "last_data_date": latest.isoformat() if latest else None,
        }
