"""
Platform client tests (httpx.MockTransport, no network).

Guards against:
1. A tenant in cooldown still reaching the platform
2. Rate-limit responses being retried inline instead of handed back
3. 5xx / timeouts not being retried, or 4xx being retried
4. Cached GET responses (missing cache-buster) and broken pagination
"""
import asyncio
from datetime import date

import httpx

from marketsync.connectors.base_client import ApiRequest, PlatformClient
from marketsync.connectors.meta_client import MetaAdsClient, normalize_account_id
from marketsync.connectors.shopify_client import ShopifyClient
from marketsync.services.rate_limiter import REASON_COOLDOWN, InMemoryRateLimiter


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


def _limiter(clock, **kwargs):
    params = dict(max_requests=100, window_seconds=60, min_interval_seconds=0, clock=clock, notifier=None)
    params.update(kwargs)
    return InMemoryRateLimiter(**params)


class Recorder:
    """MockTransport handler that replays queued responses and keeps requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(recorder, limiter, sleeps=None, **kwargs):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return PlatformClient(
        rate_limiter=limiter,
        transport=httpx.MockTransport(recorder),
        max_attempts=3,
        retry_base_delay=1,
        retry_max_delay=5,
        sleep=fake_sleep,
        **kwargs
    )


URL = "https://api.example.com/v1/things"


# ---------------------------------------------------------------------------
# Rate limit guard integration
# ---------------------------------------------------------------------------

def test_cooldown_short_circuits_without_network(clock):
    limiter = _limiter(clock)
    limiter.record_rate_limited("acme", 120)
    recorder = Recorder(httpx.Response(200, json={"ok": True}))

    response = _run(_client(recorder, limiter).get("acme", URL))

    assert response.success is False
    assert response.rate_limited is True
    assert response.retry_after_seconds == 120
    assert recorder.requests == []


def test_spacing_wait_is_slept_inline(clock):
    limiter = _limiter(clock, min_interval_seconds=2)
    recorder = Recorder(httpx.Response(200, json={"ok": True}))
    sleeps = []

    async def advancing_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    client = PlatformClient(rate_limiter=limiter, transport=httpx.MockTransport(recorder), sleep=advancing_sleep)
    assert _run(client.get("acme", URL)).success
    assert _run(client.get("acme", URL)).success
    assert sleeps == [2.0]
    assert len(recorder.requests) == 2


def test_long_window_wait_is_handed_back(clock):
    limiter = _limiter(clock, max_requests=1, window_seconds=600)
    recorder = Recorder(httpx.Response(200, json={"ok": True}))
    client = _client(recorder, limiter, max_throttle_wait=60)

    assert _run(client.get("acme", URL)).success
    second = _run(client.get("acme", URL))
    assert second.rate_limited is True
    assert second.retry_after_seconds == 600
    assert len(recorder.requests) == 1


def test_429_enters_cooldown_without_retry(clock):
    limiter = _limiter(clock)
    recorder = Recorder(httpx.Response(429, headers={"Retry-After": "30"}, json={"errors": "Too Many Requests"}))
    sleeps = []

    response = _run(_client(recorder, limiter, sleeps).get("acme", URL))

    assert response.rate_limited is True
    assert response.retry_after_seconds == 30
    assert len(recorder.requests) == 1
    assert sleeps == []
    assert limiter.can_proceed("acme").reason == REASON_COOLDOWN


def test_meta_throttle_body_on_400(clock):
    limiter = _limiter(clock, default_cooldown_seconds=300)
    body = {"error": {"code": 17, "message": "User request limit reached"}}
    recorder = Recorder(httpx.Response(400, json=body))

    response = _run(_client(recorder, limiter).get("acme", URL))

    assert response.rate_limited is True
    assert response.retry_after_seconds == 300


def test_shopify_throttled_graphql_on_200(clock):
    limiter = _limiter(clock)
    body = {"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}
    recorder = Recorder(httpx.Response(200, json=body))
    client = ShopifyClient("acme.myshopify.com", "shpat", rate_limiter=limiter, transport=httpx.MockTransport(recorder))

    response = _run(client.get_current_bulk_operation("acme"))
    assert response.rate_limited is True


def test_skip_rate_limit_still_records_attempt(clock):
    limiter = _limiter(clock, max_requests=1)
    limiter.record_rate_limited("acme", 60)
    recorder = Recorder(httpx.Response(200, json={"ok": True}))

    response = _run(_client(recorder, limiter).call("acme", ApiRequest(url=URL, skip_rate_limit=True)))
    assert response.success
    assert len(recorder.requests) == 1


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

def test_5xx_retried_with_backoff_then_succeeds(clock):
    recorder = Recorder(
        httpx.Response(503, text="unavailable"),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json={"data": [1, 2]}),
    )
    sleeps = []

    response = _run(_client(recorder, _limiter(clock), sleeps).get("acme", URL))

    assert response.success is True
    assert response.data == {"data": [1, 2]}
    assert len(recorder.requests) == 3
    assert sleeps == [1.0, 2.0]
    assert response.retry_stats["attempts"] == 3


def test_5xx_exhausted_is_retryable_failure(clock):
    recorder = Recorder(httpx.Response(500, json={"error": {"message": "boom"}}))

    response = _run(_client(recorder, _limiter(clock), []).get("acme", URL))

    assert response.success is False
    assert response.retryable is True
    assert response.status_code == 500
    assert len(recorder.requests) == 3


def test_4xx_is_not_retried(clock):
    recorder = Recorder(httpx.Response(401, json={"error": {"message": "Invalid OAuth access token"}}))

    response = _run(_client(recorder, _limiter(clock), []).get("acme", URL))

    assert response.success is False
    assert response.retryable is False
    assert response.status_code == 401
    assert "Invalid OAuth access token" in response.error
    assert len(recorder.requests) == 1


def test_timeout_is_retried(clock):
    request = httpx.Request("GET", URL)
    recorder = Recorder(httpx.ReadTimeout("timed out", request=request))
    sleeps = []

    response = _run(_client(recorder, _limiter(clock), sleeps).get("acme", URL))

    assert response.success is False
    assert response.retryable is True
    assert len(recorder.requests) == 3
    assert sleeps == [1.0, 2.0]


# ---------------------------------------------------------------------------
# Request shape & pagination
# ---------------------------------------------------------------------------

def test_get_requests_carry_unique_cache_buster(clock):
    recorder = Recorder(httpx.Response(200, json={}))
    client = _client(recorder, _limiter(clock))

    _run(client.get("acme", URL, params={"a": 1}))
    _run(client.get("acme", URL, params={"a": 1}))

    first, second = (r.url.params for r in recorder.requests)
    assert first["a"] == "1"
    assert first["_t"] and second["_t"]
    assert first["_t"] != second["_t"]


def test_post_requests_have_no_cache_buster(clock):
    recorder = Recorder(httpx.Response(200, json={}))
    _run(_client(recorder, _limiter(clock)).post("acme", URL, json={"q": 1}))
    assert "_t" not in recorder.requests[0].url.params


def test_meta_pagination_follows_next(clock):
    next_url = "https://graph.facebook.com/v18.0/act_123/insights?after=abc"
    recorder = Recorder(
        httpx.Response(200, json={"data": [{"ad_id": "1"}], "paging": {"next": next_url}}),
        httpx.Response(200, json={"data": [{"ad_id": "2"}], "paging": {}}),
    )
    client = MetaAdsClient("meta-token", rate_limiter=_limiter(clock), transport=httpx.MockTransport(recorder))

    response = _run(client.fetch_insights("acme", "123", date(2024, 1, 1), date(2024, 1, 7)))

    assert response.success
    assert [r["ad_id"] for r in response.data] == ["1", "2"]
    first, second = recorder.requests
    assert first.url.path == "/v18.0/act_123/insights"
    assert first.url.params["access_token"] == "meta-token"
    assert first.url.params["time_increment"] == "1"
    assert second.url.params["after"] == "abc"


def test_meta_error_payload_is_failure(clock):
    recorder = Recorder(httpx.Response(200, json={"error": {"code": 100, "message": "Unsupported get request"}}))
    client = MetaAdsClient("tok", rate_limiter=_limiter(clock), transport=httpx.MockTransport(recorder))

    response = _run(client.fetch_campaign_tree("acme", "act_123"))
    assert response.success is False
    assert response.rate_limited is False
    assert "Unsupported get request" in response.error


def test_normalize_account_id():
    assert normalize_account_id("123") == "act_123"
    assert normalize_account_id("act_123") == "act_123"


def test_shopify_rest_pagination_uses_link_header(clock):
    next_link = '<https://acme.myshopify.com/admin/api/2024-01/orders.json?page_info=xyz&limit=250>; rel="next"'
    recorder = Recorder(
        httpx.Response(200, headers={"Link": next_link}, json={"orders": [{"id": 1}]}),
        httpx.Response(200, json={"orders": [{"id": 2}]}),
    )
    client = ShopifyClient("acme.myshopify.com", "shpat", rate_limiter=_limiter(clock), transport=httpx.MockTransport(recorder))

    response = _run(client.fetch_orders("acme"))

    assert response.success
    assert [o["id"] for o in response.data] == [1, 2]
    first, second = recorder.requests
    assert first.headers["X-Shopify-Access-Token"] == "shpat"
    assert first.url.params["status"] == "any"
    assert second.url.params["page_info"] == "xyz"
    assert "_t" not in second.url.params
    assert "status" not in second.url.params


def test_shopify_bulk_user_errors_are_failures(clock):
    body = {"data": {"bulkOperationRunQuery": {
        "bulkOperation": None,
        "userErrors": [{"field": None, "message": "A bulk query operation for this app and shop is already in progress"}],
    }}}
    recorder = Recorder(httpx.Response(200, json=body))
    client = ShopifyClient("acme.myshopify.com", "shpat", rate_limiter=_limiter(clock), transport=httpx.MockTransport(recorder))

    response = _run(client.start_bulk_export("acme", "orders"))
    assert response.success is False
    assert "already in progress" in response.error


def test_bulk_result_download_sends_no_auth_header(clock):
    recorder = Recorder(httpx.Response(200, text='{"id": "gid://shopify/Order/1"}\n'))
    client = ShopifyClient("acme.myshopify.com", "shpat", rate_limiter=_limiter(clock), transport=httpx.MockTransport(recorder))

    response = _run(client.download_bulk_result("acme", "https://storage.example.com/result.jsonl?sig=1"))

    assert response.success
    assert response.data.startswith('{"id"')
    assert "X-Shopify-Access-Token" not in recorder.requests[0].headers
    assert "_t" not in recorder.requests[0].url.params
