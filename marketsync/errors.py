"""
Sync error taxonomy.

The worker pool maps each class to a queue transition: transient errors are
retried with backoff, deferrals are rescheduled without consuming an attempt,
permanent errors fail the job immediately.
"""
from typing import Optional

from marketsync.config import get_settings


class SyncError(Exception):
    """Base error for marketsync."""


class TransientSyncError(SyncError):
    """Timeout, 5xx or network failure; retried up to the job's max attempts."""


class PermanentSyncError(SyncError):
    """Bad credentials, revoked connection or invalid payload; never retried."""

    def __init__(self, message: str, degrade_connection: bool = False):
        super().__init__(message)
        self.degrade_connection = degrade_connection


class JobDeferred(SyncError):
    """Job cannot run yet; reschedule after `delay_seconds` without spending an attempt."""

    def __init__(self, message: str, delay_seconds: float):
        super().__init__(message)
        self.delay_seconds = delay_seconds


class RateLimitedError(JobDeferred):
    """Tenant is cooling down after a platform rate-limit response."""

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None, default_seconds: Optional[float] = None):
        if default_seconds is None:
            default_seconds = get_settings().rate_limit_default_cooldown_seconds
        super().__init__(message, retry_after_seconds if retry_after_seconds else default_seconds)
        self.retry_after_seconds = retry_after_seconds


class ReconnectInProgressError(SyncError):
    """A destructive reconnect already holds the tenant/platform lock."""


class UnknownJobKindError(SyncError):
    """No handler registered for a job kind."""


class ConnectionNotFoundError(SyncError):
    """No platform connection for the tenant/platform pair."""
