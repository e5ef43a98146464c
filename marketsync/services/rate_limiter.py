"""
Per-tenant rate limit guard for outbound platform API calls.

Three gates, checked in order:
1. Cooldown - after a rate-limit response the tenant is blocked until the
   cooldown expires.
2. Minimum spacing between consecutive requests.
3. Sliding window - at most N requests in the trailing window.

State is in-process and advisory. Call sites depend on the RateLimiter
interface so a shared-counter implementation can replace the in-memory one.
"""
import asyncio
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Deque, Dict, Optional

from marketsync.config import get_settings
from marketsync.services import advisories
from marketsync.utils.logger import log

REASON_COOLDOWN = "cooldown"
REASON_MIN_INTERVAL = "min_interval"
REASON_WINDOW_FULL = "window_full"


@dataclass
class RateLimitDecision:
    """Answer to "may this tenant call the platform now?"."""
    allowed: bool
    wait_ms: int = 0
    reason: Optional[str] = None


@dataclass
class RateLimitState:
    """Per-tenant throttling state. Never persisted."""
    last_request_at: Optional[float] = None
    request_times: Deque[float] = field(default_factory=deque)
    cooldown_until: Optional[float] = None


class RateLimiter(ABC):
    """Interface the platform clients depend on."""

    @abstractmethod
    def can_proceed(self, tenant_id: str) -> RateLimitDecision:
        """Check without recording anything."""

    @abstractmethod
    def record_attempt(self, tenant_id: str):
        """Record that a request is being sent now."""

    @abstractmethod
    def record_rate_limited(
        self,
        tenant_id: str,
        retry_after_seconds: Optional[float] = None,
        platform: Optional[str] = None,
    ) -> float:
        """Enter cooldown; returns the cooldown length in seconds."""

    @abstractmethod
    def get_status(self, tenant_id: str) -> dict:
        """Snapshot for status endpoints and logs."""

    @abstractmethod
    def reset(self, tenant_id: Optional[str] = None):
        """Forget state for one tenant, or all tenants."""

    def acquire(self, tenant_id: str) -> RateLimitDecision:
        """Check and, when allowed, record the attempt."""
        decision = self.can_proceed(tenant_id)
        if decision.allowed:
            self.record_attempt(tenant_id)
        return decision

    async def wait_for_availability(
        self,
        tenant_id: str,
        max_wait_seconds: float = 60.0,
        sleep: Callable = asyncio.sleep,
    ) -> bool:
        """
        Block until the tenant may proceed, up to max_wait_seconds.

        Explicit opt-in for single last-resort calls. Never waits out a
        cooldown; batch loops must reschedule instead.
        """
        waited = 0.0
        while True:
            decision = self.can_proceed(tenant_id)
            if decision.allowed:
                return True
            if decision.reason == REASON_COOLDOWN:
                return False
            delay = decision.wait_ms / 1000.0
            if waited + delay > max_wait_seconds:
                return False
            await sleep(delay)
            waited += delay


class InMemoryRateLimiter(RateLimiter):
    """Single-process implementation backed by a dict keyed by tenant."""

    def __init__(
        self,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        min_interval_seconds: float = 2.0,
        default_cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        notifier: Optional[Callable[..., object]] = advisories.publish_advisory,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self.default_cooldown_seconds = default_cooldown_seconds
        self.clock = clock
        self.notifier = notifier
        self._states: Dict[str, RateLimitState] = {}
        self._lock = threading.RLock()

    def _state(self, tenant_id: str) -> RateLimitState:
        state = self._states.get(tenant_id)
        if state is None:
            state = RateLimitState()
            self._states[tenant_id] = state
        return state

    def _prune(self, state: RateLimitState, now: float):
        while state.request_times and now - state.request_times[0] >= self.window_seconds:
            state.request_times.popleft()

    def can_proceed(self, tenant_id: str) -> RateLimitDecision:
        with self._lock:
            now = self.clock()
            state = self._state(tenant_id)

            if state.cooldown_until is not None:
                if now < state.cooldown_until:
                    return RateLimitDecision(
                        allowed=False,
                        wait_ms=int(math.ceil((state.cooldown_until - now) * 1000)),
                        reason=REASON_COOLDOWN,
                    )
                state.cooldown_until = None

            if state.last_request_at is not None:
                elapsed = now - state.last_request_at
                if elapsed < self.min_interval_seconds:
                    return RateLimitDecision(
                        allowed=False,
                        wait_ms=int(math.ceil((self.min_interval_seconds - elapsed) * 1000)),
                        reason=REASON_MIN_INTERVAL,
                    )

            self._prune(state, now)
            if len(state.request_times) >= self.max_requests:
                oldest = state.request_times[0]
                return RateLimitDecision(
                    allowed=False,
                    wait_ms=int(math.ceil((oldest + self.window_seconds - now) * 1000)),
                    reason=REASON_WINDOW_FULL,
                )

            return RateLimitDecision(allowed=True)

    def record_attempt(self, tenant_id: str):
        with self._lock:
            now = self.clock()
            state = self._state(tenant_id)
            self._prune(state, now)
            state.request_times.append(now)
            state.last_request_at = now

    def acquire(self, tenant_id: str) -> RateLimitDecision:
        with self._lock:
            return super().acquire(tenant_id)

    def record_rate_limited(
        self,
        tenant_id: str,
        retry_after_seconds: Optional[float] = None,
        platform: Optional[str] = None,
    ) -> float:
        cooldown = float(retry_after_seconds) if retry_after_seconds else float(self.default_cooldown_seconds)
        with self._lock:
            now = self.clock()
            state = self._state(tenant_id)
            until = now + cooldown
            # A shorter hint never cuts an existing cooldown short
            if state.cooldown_until is None or until > state.cooldown_until:
                state.cooldown_until = until

        log.warning(f"Tenant {tenant_id} rate limited{f' by {platform}' if platform else ''}; cooling down for {cooldown:.0f}s")
        if self.notifier:
            try:
                self.notifier(tenant_id, cooldown, platform=platform)
            except Exception as e:
                log.error(f"Failed to publish rate limit advisory for {tenant_id}: {e}")
        return cooldown

    def get_status(self, tenant_id: str) -> dict:
        with self._lock:
            now = self.clock()
            state = self._state(tenant_id)
            self._prune(state, now)
            in_cooldown = state.cooldown_until is not None and now < state.cooldown_until
            return {
                "tenant_id": tenant_id,
                "requests_in_window": len(state.request_times),
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
                "in_cooldown": in_cooldown,
                "cooldown_remaining_seconds": (
                    int(math.ceil(state.cooldown_until - now)) if in_cooldown else 0
                ),
            }

    def reset(self, tenant_id: Optional[str] = None):
        with self._lock:
            if tenant_id is None:
                self._states.clear()
            else:
                self._states.pop(tenant_id, None)


@lru_cache()
def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter built from settings"""
    settings = get_settings()
    return InMemoryRateLimiter(
        max_requests=settings.rate_limit_max_requests_per_window,
        window_seconds=settings.rate_limit_window_seconds,
        min_interval_seconds=settings.rate_limit_min_interval_seconds,
        default_cooldown_seconds=settings.rate_limit_default_cooldown_seconds,
    )
