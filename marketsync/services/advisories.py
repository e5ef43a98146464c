"""
User-visible cooldown advisories.

The rate limiter publishes here when a tenant enters cooldown; the status
endpoint reads it back. Advisories live in process memory and expire on
their own once the retry time passes.
"""
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from marketsync.utils.helpers import utcnow
from marketsync.utils.logger import log

_advisories: Dict[str, dict] = {}
_lock = threading.Lock()


def publish_advisory(tenant_id: str, retry_after_seconds: float, platform: Optional[str] = None) -> dict:
    """Record (or extend) a cooldown advisory for a tenant."""
    retry_at = utcnow() + timedelta(seconds=retry_after_seconds)
    minutes = max(1, int(round(retry_after_seconds / 60)))
    source = f"{platform} " if platform else ""
    advisory = {
        "tenant_id": tenant_id,
        "platform": platform,
        "message": (
            f"The {source}API rate limit was reached. "
            f"Data refresh will resume in about {minutes} minute{'s' if minutes != 1 else ''}."
        ),
        "retry_at": retry_at,
    }
    with _lock:
        existing = _advisories.get(tenant_id)
        if existing and existing["retry_at"] > retry_at:
            return existing
        _advisories[tenant_id] = advisory
    log.warning(f"Rate limit advisory for tenant {tenant_id}: retry at {retry_at.isoformat()}")
    return advisory


def get_advisory(tenant_id: str, now: Optional[datetime] = None) -> Optional[dict]:
    """Return the active advisory for a tenant, dropping it once expired."""
    now = now or utcnow()
    with _lock:
        advisory = _advisories.get(tenant_id)
        if advisory and advisory["retry_at"] <= now:
            del _advisories[tenant_id]
            return None
    if not advisory:
        return None
    return {
        "message": advisory["message"],
        "platform": advisory["platform"],
        "retry_at": advisory["retry_at"].isoformat(),
    }


def clear_advisory(tenant_id: str):
    with _lock:
        _advisories.pop(tenant_id, None)
