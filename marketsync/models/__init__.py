"""Database models for marketsync"""

from marketsync.models.base import Base, SessionLocal, engine, init_db, reset_db
from marketsync.models.connection import PlatformConnection
from marketsync.models.etl import EtlJobRecord, EtlCursor, SyncDay, BackfillLog
from marketsync.models.sync_job import SyncJob
from marketsync.models.meta import MetaAdInsight, MetaCampaign, MetaAdSet, MetaDemographic
from marketsync.models.shopify import (
    ShopifyOrder,
    ShopifyOrderItem,
    ShopifyCustomer,
    ShopifyProduct,
    ShopifyCheckout,
)

__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "reset_db",
    "init_db",
    "PlatformConnection",
    "EtlJobRecord",
    "EtlCursor",
    "SyncDay",
    "BackfillLog",
    "SyncJob",
    "MetaAdInsight",
    "MetaCampaign",
    "MetaAdSet",
    "MetaDemographic",
    "ShopifyOrder",
    "ShopifyOrderItem",
    "ShopifyCustomer",
    "ShopifyProduct",
    "ShopifyCheckout",
]
