"""
Shopify Data Models

Stores data pulled from the Shopify Admin API (REST for recent windows,
GraphQL bulk exports for history).
"""
from sqlalchemy import Column, Integer, String, DateTime, Date, Numeric, UniqueConstraint

from marketsync.utils.helpers import utcnow
from marketsync.models.base import Base


class ShopifyOrder(Base):
    """
    Shopify orders

    order_date is the order's calendar day and drives gap detection.
    """
    __tablename__ = "shopify_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_id", name="uq_shopify_orders_tenant_order"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    order_id = Column(String, nullable=False)  # Numeric id, gid prefix stripped
    order_name = Column(String, nullable=True)  # "#1001"
    email = Column(String, nullable=True)
    customer_id = Column(String, index=True, nullable=True)

    financial_status = Column(String, index=True, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    currency = Column(String, nullable=True)
    total_price = Column(Numeric(12, 2), default=0)
    subtotal_price = Column(Numeric(12, 2), default=0)
    total_tax = Column(Numeric(12, 2), default=0)
    total_discounts = Column(Numeric(12, 2), default=0)

    order_created_at = Column(DateTime, index=True)
    order_updated_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    order_date = Column(Date, index=True, nullable=False)

    synced_at = Column(DateTime, default=utcnow)


class ShopifyOrderItem(Base):
    """Order line items (bulk exports link them via __parentId)"""
    __tablename__ = "shopify_order_items"
    __table_args__ = (
        UniqueConstraint("tenant_id", "line_item_id", name="uq_shopify_order_items_tenant_line_item"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    order_id = Column(String, index=True, nullable=False)
    line_item_id = Column(String, nullable=False)
    product_id = Column(String, index=True, nullable=True)
    variant_id = Column(String, nullable=True)
    sku = Column(String, nullable=True)
    title = Column(String, nullable=True)
    quantity = Column(Integer, default=0)
    price = Column(Numeric(12, 2), default=0)
    synced_at = Column(DateTime, default=utcnow)


class ShopifyCustomer(Base):
    """Shopify customers"""
    __tablename__ = "shopify_customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", name="uq_shopify_customers_tenant_customer"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    customer_id = Column(String, nullable=False)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    orders_count = Column(Integer, default=0)
    total_spent = Column(Numeric(12, 2), default=0)
    customer_created_at = Column(DateTime, nullable=True)
    customer_updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=utcnow)


class ShopifyProduct(Base):
    """Shopify products"""
    __tablename__ = "shopify_products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", name="uq_shopify_products_tenant_product"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    product_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    status = Column(String, nullable=True)
    product_created_at = Column(DateTime, nullable=True)
    product_updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=utcnow)


class ShopifyCheckout(Base):
    """Abandoned checkouts (REST only)"""
    __tablename__ = "shopify_checkouts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "checkout_id", name="uq_shopify_checkouts_tenant_checkout"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    checkout_id = Column(String, nullable=False)
    email = Column(String, nullable=True)
    total_price = Column(Numeric(12, 2), default=0)
    checkout_created_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, default=utcnow)
