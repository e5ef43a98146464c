"""
Rate-limit response detection for the Meta Graph API and the Shopify Admin API.

Kept separate from the rate limiter so new error shapes can be added here
without touching the guard. Every shape listed here has a row in
tests/test_rate_limit_errors.py.
"""
import json
import math
import re
from dataclasses import dataclass
from datetime import timezone
from typing import Any, Mapping, Optional

from dateutil import parser as date_parser

from marketsync.utils.helpers import utcnow

# Meta Graph API throttling codes
# 4: application limit, 17: user limit, 32: page limit, 613: custom limit,
# 80000-80014: business use case limits
META_RATE_LIMIT_CODES = frozenset({4, 17, 32, 613} | set(range(80000, 80015)))
META_RATE_LIMIT_SUBCODES = frozenset({2446079, 1487742})

RATE_LIMIT_MESSAGE_PATTERNS = (
    "user request limit reached",
    "application request limit reached",
    "rate limited",
    "rate limit exceeded",
    "too many calls",
    "too many requests",
    "api rate limit",
    "request limit exceeded",
    "throttled",
    "code 17",
    "(#17)",
    "(#4)",
    "(#32)",
    "(#613)",
    "subcode 2446079",
)

_WAIT_PATTERNS = (
    re.compile(r"wait (\d+)\s*s\b", re.IGNORECASE),
    re.compile(r"wait (\d+) seconds?", re.IGNORECASE),
    re.compile(r"retry after (\d+)", re.IGNORECASE),
    re.compile(r"try again in (\d+) minutes?", re.IGNORECASE),
)


@dataclass
class RateLimitSignal:
    """Outcome of inspecting one API response or error."""
    is_rate_limited: bool = False
    retry_after_seconds: Optional[int] = None


def is_rate_limit_message(message: Optional[str]) -> bool:
    """True when an error message matches a known throttling phrase."""
    if not message:
        return False
    lowered = message.lower()
    return any(pattern in lowered for pattern in RATE_LIMIT_MESSAGE_PATTERNS)


def _meta_error(body: Any) -> Optional[dict]:
    if isinstance(body, Mapping) and isinstance(body.get("error"), Mapping):
        return body["error"]
    return None


def _graphql_errors(body: Any) -> list:
    if isinstance(body, Mapping) and isinstance(body.get("errors"), list):
        return body["errors"]
    return []


def is_rate_limit_body(body: Any) -> bool:
    """Check a decoded JSON error body from either platform."""
    meta_error = _meta_error(body)
    if meta_error:
        if meta_error.get("code") in META_RATE_LIMIT_CODES:
            return True
        if meta_error.get("error_subcode") in META_RATE_LIMIT_SUBCODES:
            return True
        if is_rate_limit_message(meta_error.get("message")):
            return True

    for error in _graphql_errors(body):
        if not isinstance(error, Mapping):
            continue
        extensions = error.get("extensions") or {}
        if extensions.get("code") == "THROTTLED":
            return True
        if is_rate_limit_message(error.get("message")):
            return True

    return False


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _retry_after_header(value: str) -> Optional[int]:
    try:
        return max(int(math.ceil(float(value))), 0)
    except ValueError:
        pass
    # HTTP-date form
    try:
        retry_at = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if retry_at.tzinfo is not None:
        retry_at = retry_at.astimezone(timezone.utc).replace(tzinfo=None)
    return max(int(math.ceil((retry_at - utcnow()).total_seconds())), 0)


def _business_usage_wait(value: str) -> Optional[int]:
    """Meta X-Business-Use-Case-Usage: estimated_time_to_regain_access is in minutes."""
    try:
        usage = json.loads(value)
    except (TypeError, ValueError):
        return None
    minutes = [
        entry.get("estimated_time_to_regain_access", 0)
        for entries in usage.values() if isinstance(entries, list)
        for entry in entries if isinstance(entry, Mapping)
    ]
    longest = max(minutes, default=0)
    return int(longest) * 60 if longest else None


def _graphql_throttle_wait(body: Any) -> Optional[int]:
    """Shopify GraphQL cost extension: wait until enough points are restored."""
    if not isinstance(body, Mapping):
        return None
    cost = (body.get("extensions") or {}).get("cost") or {}
    throttle = cost.get("throttleStatus") or {}
    requested = cost.get("requestedQueryCost")
    available = throttle.get("currentlyAvailable")
    restore_rate = throttle.get("restoreRate")
    if requested is None or available is None or not restore_rate:
        return None
    deficit = requested - available
    if deficit <= 0:
        return 1
    return int(math.ceil(deficit / restore_rate))


def extract_retry_after(
    headers: Optional[Mapping[str, str]] = None,
    message: Optional[str] = None,
    body: Any = None,
) -> Optional[int]:
    """
    Work out how long the platform asked us to wait, in seconds.

    Checks the Retry-After header, Meta's business use case header, the
    Shopify GraphQL cost extension, then "wait Ns" style hints in the message.
    """
    value = _header(headers, "retry-after")
    if value:
        seconds = _retry_after_header(value.strip())
        if seconds is not None:
            return seconds

    value = _header(headers, "x-business-use-case-usage")
    if value:
        seconds = _business_usage_wait(value)
        if seconds:
            return seconds

    seconds = _graphql_throttle_wait(body)
    if seconds is not None:
        return seconds

    texts = [message] if message else []
    meta_error = _meta_error(body)
    if meta_error and meta_error.get("message"):
        texts.append(meta_error["message"])
    for text in texts:
        for pattern in _WAIT_PATTERNS:
            match = pattern.search(text)
            if match:
                amount = int(match.group(1))
                return amount * 60 if "minute" in pattern.pattern else amount

    return None


def detect_rate_limit(
    status_code: Optional[int] = None,
    headers: Optional[Mapping[str, str]] = None,
    body: Any = None,
    message: Optional[str] = None,
) -> RateLimitSignal:
    """Classify a response (or raised error) as throttled or not."""
    limited = (
        status_code == 429
        or is_rate_limit_body(body)
        or is_rate_limit_message(message)
    )
    if not limited:
        return RateLimitSignal()
    return RateLimitSignal(
        is_rate_limited=True,
        retry_after_seconds=extract_retry_after(headers=headers, message=message, body=body),
    )
