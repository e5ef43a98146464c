"""Platform API clients"""

from marketsync.connectors.base_client import ApiRequest, ApiResponse, PlatformClient
from marketsync.connectors.meta_client import MetaAdsClient
from marketsync.connectors.shopify_client import ShopifyClient

__all__ = [
    "ApiRequest",
    "ApiResponse",
    "PlatformClient",
    "MetaAdsClient",
    "ShopifyClient",
]
