"""
Meta Marketing (Graph) API client

Account discovery, daily ad-level insights over a date range, the
campaign/ad set tree, and age/gender demographic breakdowns.
"""
import json
from datetime import date
from typing import Any, Dict, List, Optional

from marketsync.config import get_settings
from marketsync.connectors.base_client import ApiRequest, ApiResponse, PlatformClient
from marketsync.utils.logger import log

INSIGHT_FIELDS = [
    "account_id",
    "campaign_id",
    "adset_id",
    "ad_id",
    "ad_name",
    "spend",
    "impressions",
    "clicks",
    "reach",
    "actions",
    "action_values",
    "date_start",
    "date_stop",
]

DEMOGRAPHIC_FIELDS = ["account_id", "spend", "impressions", "clicks", "date_start"]


def normalize_account_id(account_id: str) -> str:
    """Graph API ad account ids are addressed as act_<id>"""
    account_id = str(account_id)
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


class MetaAdsClient(PlatformClient):
    """Client for the Meta Graph API"""

    platform = "meta"
    MAX_PAGES = 100

    def __init__(
        self,
        access_token: str,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        settings = get_settings()
        self.access_token = access_token
        self.api_version = api_version or settings.meta_graph_api_version
        self.base_url = (base_url or settings.meta_graph_base_url).rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    def _payload_error(self, body: Any) -> Optional[str]:
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return body["error"].get("message") or "Graph API error"
        return None

    async def _get_paginated(self, tenant_id: str, path: str, params: Dict[str, Any]) -> ApiResponse:
        """Follow paging.next until exhausted; returns all rows in data"""
        rows: List[dict] = []
        url = self._url(path)
        request_params: Optional[Dict[str, Any]] = {**params, "access_token": self.access_token}
        pages = 0
        last: Optional[ApiResponse] = None

        while url and pages < self.MAX_PAGES:
            last = await self.call(tenant_id, ApiRequest(url=url, params=request_params))
            if not last.success:
                # Partial pages are discarded; the whole range is retried later
                return last
            body = last.data or {}
            rows.extend(body.get("data", []))
            url = (body.get("paging") or {}).get("next")
            request_params = None  # next links carry every parameter
            pages += 1

        if url:
            log.warning(f"Meta pagination for {path} stopped at {self.MAX_PAGES} pages")

        return ApiResponse(
            success=True,
            data=rows,
            status_code=last.status_code if last else None,
            retry_stats=last.retry_stats if last else {},
        )

    async def list_ad_accounts(self, tenant_id: str) -> ApiResponse:
        """Discover ad accounts the token can read"""
        return await self._get_paginated(
            tenant_id,
            "me/adaccounts",
            {"fields": "id,account_id,name,account_status,currency,timezone_name", "limit": 100},
        )

    async def fetch_insights(
        self,
        tenant_id: str,
        account_id: str,
        since: date,
        until: date,
        level: str = "ad",
    ) -> ApiResponse:
        """Daily insights (time_increment=1) for every ad in [since, until]"""
        return await self._get_paginated(
            tenant_id,
            f"{normalize_account_id(account_id)}/insights",
            {
                "fields": ",".join(INSIGHT_FIELDS),
                "level": level,
                "time_increment": 1,
                "time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()}),
                "limit": 500,
            },
        )

    async def fetch_campaign_tree(self, tenant_id: str, account_id: str) -> ApiResponse:
        """Campaigns and ad sets for an account"""
        account = normalize_account_id(account_id)
        campaigns = await self._get_paginated(
            tenant_id,
            f"{account}/campaigns",
            {"fields": "id,name,status,objective,daily_budget,lifetime_budget", "limit": 200},
        )
        if not campaigns.success:
            return campaigns

        adsets = await self._get_paginated(
            tenant_id,
            f"{account}/adsets",
            {"fields": "id,name,status,campaign_id,daily_budget", "limit": 200},
        )
        if not adsets.success:
            return adsets

        return ApiResponse(success=True, data={"campaigns": campaigns.data, "adsets": adsets.data})

    async def fetch_demographics(
        self,
        tenant_id: str,
        account_id: str,
        since: date,
        until: date,
    ) -> ApiResponse:
        """Account-level daily insights broken down by age and gender"""
        return await self._get_paginated(
            tenant_id,
            f"{normalize_account_id(account_id)}/insights",
            {
                "fields": ",".join(DEMOGRAPHIC_FIELDS),
                "level": "account",
                "breakdowns": "age,gender",
                "time_increment": 1,
                "time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()}),
                "limit": 500,
            },
        )
