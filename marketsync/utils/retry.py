"""
Backoff and retry classification.

Platform clients use these for inline retries of one HTTP call; the job
queue uses calculate_backoff for the delay between attempts of a job.
Rate-limit responses never reach this module: the clients hand them to the
rate limit guard first.
"""
import random
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Type

import httpx

# Status codes worth another attempt of the same request
RETRYABLE_STATUS_CODES: Tuple[int, ...] = (408, 500, 502, 503, 504)

# Network-level failures worth another attempt
RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)

_TRANSIENT_MARKERS = ("timed out", "timeout", "connection reset", "connection refused", "connection failed")

MAX_RECORDED_ERRORS = 5


@dataclass
class RetryStats:
    """Attempts and waits spent on one platform call"""
    attempts: int = 0
    waits: List[float] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    last_status: Optional[int] = None
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0, status_code: Optional[int] = None):
        self.attempts += 1
        if delay:
            self.waits.append(round(delay, 2))
        if status_code is not None:
            self.last_status = status_code
        if error is not None and len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(f"{type(error).__name__}: {error}")

    def mark_success(self):
        self.success = True

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "waited_seconds": round(sum(self.waits), 2),
            "waits": list(self.waits),
            "last_status": self.last_status,
            "last_error": self.last_error,
            "success": self.success,
        }


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    factor: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Exponential delay before retry number `attempt` (1-indexed).

    base_delay * factor^(attempt-1), capped at max_delay. Jitter adds up to
    25% but never pushes the result past the cap.
    """
    delay = min(base_delay * (factor ** (max(attempt, 1) - 1)), max_delay)
    if jitter:
        delay = min(delay * (1 + random.uniform(0, 0.25)), max_delay)
    return delay


def is_retryable_error(error: Exception) -> bool:
    """True for 408/5xx responses, network failures and timeouts"""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True

    message = str(error).lower()
    if any(f"http {code}" in message for code in RETRYABLE_STATUS_CODES):
        return True
    return any(marker in message for marker in _TRANSIENT_MARKERS)
