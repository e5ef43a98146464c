"""
Rate-limit detection table.

Guards against:
1. A platform throttling shape being treated as an ordinary failure (and retried hot)
2. Ordinary errors being mistaken for throttling (and parking the tenant for 5 minutes)
3. Wait hints being ignored or mis-scaled (minutes vs seconds)
4. A hint-less throttle ignoring the configured cooldown
"""
import json
from datetime import timedelta

import pytest

from marketsync.config import get_settings
from marketsync.errors import RateLimitedError
from marketsync.services.rate_limit_errors import (
    detect_rate_limit,
    extract_retry_after,
    is_rate_limit_body,
    is_rate_limit_message,
)
from marketsync.utils.helpers import utcnow


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------

RATE_LIMITED_BODIES = [
    {"error": {"code": 4, "message": "Application request limit reached"}},
    {"error": {"code": 17, "message": "User request limit reached"}},
    {"error": {"code": 32, "message": "Page request limit reached"}},
    {"error": {"code": 613, "message": "Calls to this api have exceeded the rate limit."}},
    {"error": {"code": 80004, "message": "There have been too many calls to this ad-account."}},
    {"error": {"code": 100, "error_subcode": 2446079, "message": "Invalid parameter"}},
    {"error": {"code": 1, "error_subcode": 1487742, "message": "An unknown error occurred"}},
    {"error": {"code": 2, "message": "(#17) User request limit reached"}},
    {"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]},
    {"errors": [{"message": "Exceeded 2 calls per second for api client. Reduce request rates. Too many requests"}]},
]

ORDINARY_BODIES = [
    {"error": {"code": 190, "message": "Error validating access token: Session has expired"}},
    {"error": {"code": 100, "message": "Invalid parameter"}},
    {"errors": [{"message": "Field 'foo' doesn't exist on type 'Order'"}]},
    {"errors": "[API] Invalid API key or access token"},
    {"data": []},
    None,
    "plain text",
]


@pytest.mark.parametrize("body", RATE_LIMITED_BODIES)
def test_rate_limited_bodies(body):
    assert is_rate_limit_body(body)
    assert detect_rate_limit(status_code=400, body=body).is_rate_limited


@pytest.mark.parametrize("body", ORDINARY_BODIES)
def test_ordinary_bodies(body):
    assert not is_rate_limit_body(body)
    assert not detect_rate_limit(status_code=400, body=body).is_rate_limited


def test_429_is_always_rate_limited():
    assert detect_rate_limit(status_code=429).is_rate_limited
    assert detect_rate_limit(status_code=429, body={"error": {"code": 100}}).is_rate_limited


def test_5xx_is_not_rate_limited():
    assert not detect_rate_limit(status_code=503, body={"errors": "Service unavailable"}).is_rate_limited


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("message", [
    "User request limit reached",
    "Application Request Limit Reached",
    "Rate limited, please slow down",
    "Rate limit exceeded",
    "There have been too many calls from this ad-account",
    "HTTP 429: Too Many Requests",
    "API rate limit hit",
    "Request limit exceeded for this shop",
    "Query was THROTTLED",
    "Meta error code 17",
    "(#4) Application request limit reached",
    "(#32) Page request limit reached",
    "(#613) Calls within one hour have exceeded the limit",
    "error subcode 2446079",
])
def test_rate_limit_messages(message):
    assert is_rate_limit_message(message)


@pytest.mark.parametrize("message", [
    None,
    "",
    "Invalid OAuth access token",
    "Connection reset by peer",
    "HTTP 500: Internal Server Error",
    "Unsupported get request",
])
def test_ordinary_messages(message):
    assert not is_rate_limit_message(message)


# ---------------------------------------------------------------------------
# Wait hints
# ---------------------------------------------------------------------------

def test_retry_after_seconds_header():
    assert extract_retry_after(headers={"Retry-After": "30"}) == 30
    assert extract_retry_after(headers={"retry-after": "2.5"}) == 3


def test_retry_after_http_date_header():
    retry_at = utcnow() + timedelta(seconds=120)
    header = retry_at.strftime("%a, %d %b %Y %H:%M:%S GMT")
    seconds = extract_retry_after(headers={"Retry-After": header})
    assert 110 <= seconds <= 121


def test_retry_after_date_in_past_is_zero():
    assert extract_retry_after(headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) == 0


def test_business_use_case_header_is_minutes():
    usage = {"123": [{"type": "ads_insights", "call_count": 100, "estimated_time_to_regain_access": 5}]}
    assert extract_retry_after(headers={"X-Business-Use-Case-Usage": json.dumps(usage)}) == 300


def test_business_use_case_header_without_wait_falls_through():
    usage = {"123": [{"type": "ads_insights", "call_count": 20, "estimated_time_to_regain_access": 0}]}
    assert extract_retry_after(headers={"X-Business-Use-Case-Usage": json.dumps(usage)}) is None


def test_shopify_cost_extension():
    body = {
        "errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}],
        "extensions": {
            "cost": {
                "requestedQueryCost": 101,
                "throttleStatus": {"maximumAvailable": 1000, "currentlyAvailable": 1, "restoreRate": 50},
            }
        },
    }
    signal = detect_rate_limit(status_code=200, body=body)
    assert signal.is_rate_limited
    assert signal.retry_after_seconds == 2


@pytest.mark.parametrize("message, expected", [
    ("Rate limited, wait 45s", 45),
    ("Too many requests. Please wait 20 seconds", 20),
    ("Rate limit exceeded, retry after 90", 90),
    ("User request limit reached, try again in 2 minutes", 120),
    ("User request limit reached", None),
])
def test_message_wait_hints(message, expected):
    assert extract_retry_after(message=message) == expected


def test_header_beats_message_hint():
    assert extract_retry_after(headers={"Retry-After": "10"}, message="wait 99s") == 10


def test_meta_error_message_hint():
    body = {"error": {"code": 17, "message": "User request limit reached, try again in 1 minute"}}
    assert detect_rate_limit(status_code=400, body=body).retry_after_seconds == 60


# ---------------------------------------------------------------------------
# Deferral
# ---------------------------------------------------------------------------

def test_rate_limited_error_without_hint_uses_configured_cooldown(monkeypatch):
    assert RateLimitedError("throttled").delay_seconds == get_settings().rate_limit_default_cooldown_seconds

    monkeypatch.setattr(get_settings(), "rate_limit_default_cooldown_seconds", 900)
    assert RateLimitedError("throttled").delay_seconds == 900


def test_rate_limited_error_hint_beats_configured_cooldown(monkeypatch):
    monkeypatch.setattr(get_settings(), "rate_limit_default_cooldown_seconds", 900)
    error = RateLimitedError("throttled", retry_after_seconds=42)
    assert error.delay_seconds == 42
    assert error.retry_after_seconds == 42
