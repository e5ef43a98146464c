"""
Base class for the external platform API clients

Every request goes through the tenant's rate limit guard, carries a hard
timeout, and is retried with exponential backoff on transient failures.
Rate-limit responses are never retried here: the tenant is put into
cooldown and the caller gets rate_limited=True so it can reschedule.
"""
import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from marketsync.config import get_settings
from marketsync.services.rate_limit_errors import detect_rate_limit
from marketsync.services.rate_limiter import RateLimiter, REASON_COOLDOWN, get_rate_limiter
from marketsync.utils.logger import log
from marketsync.utils.retry import RetryStats, calculate_backoff, is_retryable_error


@dataclass
class ApiRequest:
    """One outbound call"""
    url: str
    method: str = "GET"
    params: Optional[Dict[str, Any]] = None
    json: Optional[Any] = None
    headers: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None
    max_attempts: Optional[int] = None
    skip_rate_limit: bool = False  # Last-resort single calls only
    cache_bust: bool = True
    expect_json: bool = True
    auth: bool = True  # Send the client's default (auth) headers


@dataclass
class ApiResponse:
    """Result of PlatformClient.call(); clients never raise for HTTP failures"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    retryable: bool = False
    next_url: Optional[str] = None
    retry_stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "rate_limited": self.rate_limited,
            "retry_after_seconds": self.retry_after_seconds,
        }


class PlatformClient:
    """Thin retrying HTTP client shared by the platform integrations"""

    platform = "generic"

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        max_throttle_wait: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable = asyncio.sleep,
    ):
        settings = get_settings()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.timeout = timeout if timeout is not None else settings.api_timeout_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.api_max_retries
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.api_retry_base_delay
        self.retry_max_delay = retry_max_delay if retry_max_delay is not None else settings.api_retry_max_delay
        # Longest spacing/window wait absorbed inline; cooldowns are never waited out
        self.max_throttle_wait = (
            max_throttle_wait if max_throttle_wait is not None else settings.rate_limit_window_seconds
        )
        self.transport = transport
        self.sleep = sleep

    def _default_headers(self) -> Dict[str, str]:
        return {}

    def _payload_error(self, body: Any) -> Optional[str]:
        """Subclasses report errors carried inside a 200 response."""
        return None

    async def _gate(self, tenant_id: str, request: ApiRequest) -> Optional[ApiResponse]:
        """Pass the rate limit guard, or return the short-circuit response."""
        if request.skip_rate_limit:
            self.rate_limiter.record_attempt(tenant_id)
            return None

        while True:
            decision = self.rate_limiter.acquire(tenant_id)
            if decision.allowed:
                return None

            wait_seconds = decision.wait_ms / 1000.0
            if decision.reason == REASON_COOLDOWN or wait_seconds > self.max_throttle_wait:
                log.info(f"{self.platform} call for {tenant_id} blocked by rate limit guard ({decision.reason}, {wait_seconds:.1f}s)")
                return ApiResponse(
                    success=False,
                    error=f"Rate limited: {decision.reason}",
                    rate_limited=True,
                    retry_after_seconds=max(1, int(math.ceil(wait_seconds))),
                )
            await self.sleep(wait_seconds)

    async def call(self, tenant_id: str, request: ApiRequest) -> ApiResponse:
        """
        Execute a request for a tenant

        Args:
            tenant_id: Tenant whose quota the call counts against
            request: What to send

        Returns:
            ApiResponse (success, data, error, rate_limited, retry_after_seconds)
        """
        max_attempts = request.max_attempts or self.max_attempts
        timeout = request.timeout if request.timeout is not None else self.timeout
        headers = {**(self._default_headers() if request.auth else {}), **(request.headers or {})}
        params = dict(request.params or {})
        if request.method.upper() == "GET" and request.cache_bust:
            params["_t"] = f"{int(time.time() * 1000)}{uuid.uuid4().hex[:6]}"

        stats = RetryStats()

        for attempt in range(1, max_attempts + 1):
            blocked = await self._gate(tenant_id, request)
            if blocked:
                blocked.retry_stats = stats.to_dict()
                return blocked

            status_code = None
            try:
                async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                    response = await client.request(
                        request.method.upper(),
                        request.url,
                        params=params or None,
                        json=request.json,
                        headers=headers,
                    )
                status_code = response.status_code
                body = self._decode(response, request.expect_json)

                signal = detect_rate_limit(
                    status_code=status_code,
                    headers=response.headers,
                    body=body if isinstance(body, dict) else None,
                )
                if signal.is_rate_limited:
                    cooldown = self.rate_limiter.record_rate_limited(
                        tenant_id, signal.retry_after_seconds, platform=self.platform
                    )
                    stats.record_attempt(status_code=status_code)
                    return ApiResponse(
                        success=False,
                        error=f"{self.platform} rate limit reached",
                        status_code=status_code,
                        rate_limited=True,
                        retry_after_seconds=int(math.ceil(cooldown)),
                        retry_stats=stats.to_dict(),
                    )

                if response.is_error:
                    raise httpx.HTTPStatusError(
                        f"HTTP {status_code}: {self._error_message(body)}",
                        request=response.request,
                        response=response,
                    )

                payload_error = self._payload_error(body)
                if payload_error:
                    stats.record_attempt(status_code=status_code)
                    return ApiResponse(
                        success=False,
                        error=payload_error,
                        status_code=status_code,
                        retry_stats=stats.to_dict(),
                    )

                stats.record_attempt(status_code=status_code)
                stats.mark_success()
                return ApiResponse(
                    success=True,
                    data=body,
                    status_code=status_code,
                    next_url=response.links.get("next", {}).get("url"),
                    retry_stats=stats.to_dict(),
                )

            except (httpx.HTTPError, ValueError) as e:
                retryable = is_retryable_error(e)
                if attempt >= max_attempts or not retryable:
                    stats.record_attempt(error=e, status_code=status_code)
                    log.error(f"{self.platform} {request.method} {request.url} failed after {attempt} attempt(s): {e}")
                    return ApiResponse(
                        success=False,
                        error=str(e) or type(e).__name__,
                        status_code=status_code,
                        retryable=retryable,
                        retry_stats=stats.to_dict(),
                    )

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.retry_base_delay,
                    max_delay=self.retry_max_delay,
                    jitter=False,
                )
                stats.record_attempt(error=e, delay=delay, status_code=status_code)
                log.warning(f"{self.platform} attempt {attempt} failed: {e}. Retrying in {delay:.1f}s...")
                await self.sleep(delay)

        # max_attempts < 1
        return ApiResponse(success=False, error="No attempts made", retry_stats=stats.to_dict())

    async def get(self, tenant_id: str, url: str, params: Optional[dict] = None, **kwargs) -> ApiResponse:
        return await self.call(tenant_id, ApiRequest(url=url, method="GET", params=params, **kwargs))

    async def post(self, tenant_id: str, url: str, json: Any = None, **kwargs) -> ApiResponse:
        return await self.call(tenant_id, ApiRequest(url=url, method="POST", json=json, **kwargs))

    @staticmethod
    def _decode(response: httpx.Response, expect_json: bool) -> Any:
        if not expect_json:
            return response.text
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            if response.is_error:
                return response.text
            raise

    @staticmethod
    def _error_message(body: Any) -> str:
        if isinstance(body, dict):
            error = body.get("error") or body.get("errors")
            if isinstance(error, dict):
                return error.get("message") or str(error)
            if error:
                return str(error)
        return str(body)[:300] if body else ""
