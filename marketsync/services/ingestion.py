"""
Idempotent writers for synced platform data

Every fact row is written with INSERT ... ON CONFLICT DO UPDATE against the
table's natural-key unique constraint, so re-ingesting a range never creates
duplicates and the last writer wins.
"""
import json
from collections import defaultdict
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from marketsync.models.etl import EtlCursor, SyncDay
from marketsync.models.meta import MetaAdInsight, MetaAdSet, MetaCampaign, MetaDemographic
from marketsync.models.shopify import (
    ShopifyCheckout,
    ShopifyCustomer,
    ShopifyOrder,
    ShopifyOrderItem,
    ShopifyProduct,
)
from marketsync.utils.helpers import (
    chunk_list,
    local_day,
    parse_day,
    parse_timestamp,
    safe_float,
    safe_int,
    utcnow,
)
from marketsync.utils.logger import log

PURCHASE_ACTION_TYPES = ("purchase", "omni_purchase", "offsite_conversion.fb_pixel_purchase")

# Natural keys (tenant first) per fact table
NATURAL_KEYS = {
    MetaAdInsight: ["tenant_id", "ad_id", "date"],
    MetaCampaign: ["tenant_id", "campaign_id"],
    MetaAdSet: ["tenant_id", "adset_id"],
    MetaDemographic: ["tenant_id", "account_id", "date", "age", "gender"],
    ShopifyOrder: ["tenant_id", "order_id"],
    ShopifyOrderItem: ["tenant_id", "line_item_id"],
    ShopifyCustomer: ["tenant_id", "customer_id"],
    ShopifyProduct: ["tenant_id", "product_id"],
    ShopifyCheckout: ["tenant_id", "checkout_id"],
    SyncDay: ["tenant_id", "platform", "day"],
}


# ----------------------------------------------------------------------
# Upsert
# ----------------------------------------------------------------------

def _upsert_generic(db: Session, model, rows: List[dict], keys: Sequence[str]):
    """Query-then-update fallback for dialects without ON CONFLICT"""
    for row in rows:
        existing = db.query(model).filter_by(**{k: row[k] for k in keys}).first()
        if existing:
            for column, value in row.items():
                setattr(existing, column, value)
        else:
            db.add(model(**row))


def upsert_rows(
    db: Session,
    model,
    rows: List[dict],
    conflict_columns: Optional[Sequence[str]] = None,
    batch_size: int = 100,
) -> int:
    """
    Insert or update rows keyed by the model's natural key.

    Args:
        db: Database session (committed here)
        model: Mapped class
        rows: Column dicts; every dict must have the same keys
        conflict_columns: Natural key (defaults to NATURAL_KEYS[model])
        batch_size: Rows per statement

    Returns:
        Number of rows written
    """
    if not rows:
        return 0

    keys = list(conflict_columns or NATURAL_KEYS[model])
    dialect = db.get_bind().dialect.name

    for batch in chunk_list(rows, batch_size):
        if dialect in ("postgresql", "sqlite"):
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(model).values(batch)
            update_columns = [c for c in batch[0].keys() if c not in keys]
            stmt = stmt.on_conflict_do_update(
                index_elements=keys,
                set_={c: stmt.excluded[c] for c in update_columns},
            )
            db.execute(stmt)
        else:
            _upsert_generic(db, model, batch, keys)
        db.commit()

    return len(rows)


# ----------------------------------------------------------------------
# Value helpers
# ----------------------------------------------------------------------

def strip_gid(value) -> Optional[str]:
    """gid://shopify/Order/123 -> 123"""
    if value is None:
        return None
    return str(value).rsplit("/", 1)[-1]


def to_decimal(value) -> Decimal:
    if isinstance(value, dict):
        value = (value.get("shopMoney") or value).get("amount")
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _action_value(actions: Optional[list]) -> float:
    if not actions:
        return 0.0
    by_type = {a.get("action_type"): a.get("value") for a in actions if isinstance(a, dict)}
    for action_type in PURCHASE_ACTION_TYPES:
        if action_type in by_type:
            return safe_float(by_type[action_type])
    return 0.0


def parse_jsonl(text: str) -> List[dict]:
    """Parse a bulk operation result file (one JSON object per line)"""
    records = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except ValueError:
            log.warning(f"Skipping malformed JSONL line {line_number}")
    return records


# ----------------------------------------------------------------------
# Meta
# ----------------------------------------------------------------------

def meta_insight_row(tenant_id: str, raw: dict) -> dict:
    return {
        "tenant_id": tenant_id,
        "account_id": str(raw.get("account_id") or ""),
        "campaign_id": raw.get("campaign_id"),
        "adset_id": raw.get("adset_id"),
        "ad_id": str(raw.get("ad_id")),
        "ad_name": raw.get("ad_name"),
        "date": parse_day(raw.get("date_start")),
        "spend": safe_float(raw.get("spend")),
        "impressions": safe_int(raw.get("impressions")),
        "clicks": safe_int(raw.get("clicks")),
        "reach": safe_int(raw.get("reach")),
        "purchases": int(_action_value(raw.get("actions"))),
        "purchase_value": _action_value(raw.get("action_values")),
        "synced_at": utcnow(),
    }


def write_meta_insights(db: Session, tenant_id: str, raw_rows: Iterable[dict], batch_size: int = 100) -> int:
    rows = [meta_insight_row(tenant_id, r) for r in raw_rows if r.get("ad_id") and r.get("date_start")]
    return upsert_rows(db, MetaAdInsight, rows, batch_size=batch_size)


def write_meta_campaign_tree(db: Session, tenant_id: str, account_id: str, tree: dict) -> int:
    now = utcnow()
    campaigns = [
        {
            "tenant_id": tenant_id,
            "account_id": account_id,
            "campaign_id": str(c["id"]),
            "name": c.get("name"),
            "status": c.get("status"),
            "objective": c.get("objective"),
            # Graph budgets are in minor units
            "daily_budget": safe_float(c.get("daily_budget")) / 100 if c.get("daily_budget") else None,
            "lifetime_budget": safe_float(c.get("lifetime_budget")) / 100 if c.get("lifetime_budget") else None,
            "synced_at": now,
        }
        for c in tree.get("campaigns", []) if c.get("id")
    ]
    adsets = [
        {
            "tenant_id": tenant_id,
            "campaign_id": a.get("campaign_id"),
            "adset_id": str(a["id"]),
            "name": a.get("name"),
            "status": a.get("status"),
            "daily_budget": safe_float(a.get("daily_budget")) / 100 if a.get("daily_budget") else None,
            "synced_at": now,
        }
        for a in tree.get("adsets", []) if a.get("id")
    ]
    return upsert_rows(db, MetaCampaign, campaigns) + upsert_rows(db, MetaAdSet, adsets)


def write_meta_demographics(db: Session, tenant_id: str, account_id: str, raw_rows: Iterable[dict]) -> int:
    now = utcnow()
    rows = [
        {
            "tenant_id": tenant_id,
            "account_id": account_id,
            "date": parse_day(r.get("date_start")),
            "age": r.get("age") or "unknown",
            "gender": r.get("gender") or "unknown",
            "spend": safe_float(r.get("spend")),
            "impressions": safe_int(r.get("impressions")),
            "clicks": safe_int(r.get("clicks")),
            "synced_at": now,
        }
        for r in raw_rows if r.get("date_start")
    ]
    return upsert_rows(db, MetaDemographic, rows)


# ----------------------------------------------------------------------
# Shopify (REST payloads)
# ----------------------------------------------------------------------

def _order_row(tenant_id: str, order_id, created_at, tz_name: Optional[str], **fields) -> dict:
    created = parse_timestamp(created_at)
    return {
        "tenant_id": tenant_id,
        "order_id": strip_gid(order_id),
        "order_name": fields.get("order_name"),
        "email": fields.get("email"),
        "customer_id": strip_gid(fields.get("customer_id")),
        "financial_status": fields.get("financial_status"),
        "fulfillment_status": fields.get("fulfillment_status"),
        "currency": fields.get("currency"),
        "total_price": to_decimal(fields.get("total_price")),
        "subtotal_price": to_decimal(fields.get("subtotal_price")),
        "total_tax": to_decimal(fields.get("total_tax")),
        "total_discounts": to_decimal(fields.get("total_discounts")),
        "order_created_at": created,
        "order_updated_at": parse_timestamp(fields.get("updated_at")),
        "cancelled_at": parse_timestamp(fields.get("cancelled_at")),
        "order_date": local_day(created, tz_name),
        "synced_at": utcnow(),
    }


def _line_item_row(tenant_id: str, order_id, line_item_id, **fields) -> dict:
    return {
        "tenant_id": tenant_id,
        "order_id": strip_gid(order_id),
        "line_item_id": strip_gid(line_item_id),
        "product_id": strip_gid(fields.get("product_id")),
        "variant_id": strip_gid(fields.get("variant_id")),
        "sku": fields.get("sku"),
        "title": fields.get("title"),
        "quantity": safe_int(fields.get("quantity")),
        "price": to_decimal(fields.get("price")),
        "synced_at": utcnow(),
    }


def order_from_rest(tenant_id: str, raw: dict, tz_name: Optional[str] = None) -> dict:
    customer = raw.get("customer") or {}
    return _order_row(
        tenant_id,
        raw.get("id"),
        raw.get("created_at"),
        tz_name,
        order_name=raw.get("name"),
        email=raw.get("email"),
        customer_id=customer.get("id"),
        financial_status=raw.get("financial_status"),
        fulfillment_status=raw.get("fulfillment_status"),
        currency=raw.get("currency"),
        total_price=raw.get("total_price"),
        subtotal_price=raw.get("subtotal_price"),
        total_tax=raw.get("total_tax"),
        total_discounts=raw.get("total_discounts"),
        updated_at=raw.get("updated_at"),
        cancelled_at=raw.get("cancelled_at"),
    )


def write_shopify_orders(
    db: Session,
    tenant_id: str,
    raw_orders: List[dict],
    tz_name: Optional[str] = None,
    batch_size: int = 100,
) -> int:
    orders = [order_from_rest(tenant_id, o, tz_name) for o in raw_orders if o.get("id") and o.get("created_at")]
    items = [
        _line_item_row(
            tenant_id,
            o["id"],
            li.get("id"),
            product_id=li.get("product_id"),
            variant_id=li.get("variant_id"),
            sku=li.get("sku"),
            title=li.get("title"),
            quantity=li.get("quantity"),
            price=li.get("price"),
        )
        for o in raw_orders if o.get("id")
        for li in o.get("line_items", []) if li.get("id")
    ]
    written = upsert_rows(db, ShopifyOrder, orders, batch_size=batch_size)
    upsert_rows(db, ShopifyOrderItem, items, batch_size=batch_size)
    return written


def write_shopify_customers(db: Session, tenant_id: str, raw_customers: List[dict], batch_size: int = 100) -> int:
    rows = [
        {
            "tenant_id": tenant_id,
            "customer_id": strip_gid(c["id"]),
            "email": c.get("email"),
            "first_name": c.get("first_name"),
            "last_name": c.get("last_name"),
            "orders_count": safe_int(c.get("orders_count")),
            "total_spent": to_decimal(c.get("total_spent")),
            "customer_created_at": parse_timestamp(c.get("created_at")),
            "customer_updated_at": parse_timestamp(c.get("updated_at")),
            "synced_at": utcnow(),
        }
        for c in raw_customers if c.get("id")
    ]
    return upsert_rows(db, ShopifyCustomer, rows, batch_size=batch_size)


def write_shopify_checkouts(db: Session, tenant_id: str, raw_checkouts: List[dict], batch_size: int = 100) -> int:
    rows = [
        {
            "tenant_id": tenant_id,
            "checkout_id": strip_gid(c.get("id") or c.get("token")),
            "email": c.get("email"),
            "total_price": to_decimal(c.get("total_price")),
            "checkout_created_at": parse_timestamp(c.get("created_at")),
            "completed_at": parse_timestamp(c.get("completed_at")),
            "synced_at": utcnow(),
        }
        for c in raw_checkouts if c.get("id") or c.get("token")
    ]
    return upsert_rows(db, ShopifyCheckout, rows, batch_size=batch_size)


# ----------------------------------------------------------------------
# Shopify (bulk JSONL)
# ----------------------------------------------------------------------

def _bulk_order_row(tenant_id: str, node: dict, tz_name: Optional[str]) -> dict:
    return _order_row(
        tenant_id,
        node["id"],
        node.get("createdAt"),
        tz_name,
        order_name=node.get("name"),
        email=node.get("email"),
        customer_id=(node.get("customer") or {}).get("id"),
        financial_status=(node.get("displayFinancialStatus") or "").lower() or None,
        fulfillment_status=(node.get("displayFulfillmentStatus") or "").lower() or None,
        currency=node.get("currencyCode"),
        total_price=node.get("totalPriceSet"),
        subtotal_price=node.get("subtotalPriceSet"),
        total_tax=node.get("totalTaxSet"),
        total_discounts=node.get("totalDiscountsSet"),
        updated_at=node.get("updatedAt"),
        cancelled_at=node.get("cancelledAt"),
    )


def ingest_bulk_result(
    db: Session,
    tenant_id: str,
    entity: str,
    records: List[dict],
    tz_name: Optional[str] = None,
    batch_size: int = 100,
) -> int:
    """
    Upsert a parsed bulk export.

    Order exports interleave child line items (carrying __parentId) after
    their parent order. Returns the number of top-level records written.
    """
    parents = [r for r in records if "__parentId" not in r]
    children = [r for r in records if "__parentId" in r]

    if entity == "orders":
        orders = [_bulk_order_row(tenant_id, r, tz_name) for r in parents if r.get("id") and r.get("createdAt")]
        items = [
            _line_item_row(
                tenant_id,
                r["__parentId"],
                r.get("id"),
                product_id=(r.get("product") or {}).get("id"),
                variant_id=(r.get("variant") or {}).get("id"),
                sku=r.get("sku"),
                title=r.get("title"),
                quantity=r.get("quantity"),
                price=r.get("originalUnitPriceSet"),
            )
            for r in children if r.get("id")
        ]
        written = upsert_rows(db, ShopifyOrder, orders, batch_size=batch_size)
        upsert_rows(db, ShopifyOrderItem, items, batch_size=batch_size)
        return written

    if entity == "customers":
        rows = [
            {
                "tenant_id": tenant_id,
                "customer_id": strip_gid(r["id"]),
                "email": r.get("email"),
                "first_name": r.get("firstName"),
                "last_name": r.get("lastName"),
                "orders_count": safe_int(r.get("numberOfOrders")),
                "total_spent": to_decimal(r.get("amountSpent")),
                "customer_created_at": parse_timestamp(r.get("createdAt")),
                "customer_updated_at": parse_timestamp(r.get("updatedAt")),
                "synced_at": utcnow(),
            }
            for r in parents if r.get("id")
        ]
        return upsert_rows(db, ShopifyCustomer, rows, batch_size=batch_size)

    if entity == "products":
        rows = [
            {
                "tenant_id": tenant_id,
                "product_id": strip_gid(r["id"]),
                "title": r.get("title"),
                "vendor": r.get("vendor"),
                "product_type": r.get("productType"),
                "status": (r.get("status") or "").lower() or None,
                "product_created_at": parse_timestamp(r.get("createdAt")),
                "product_updated_at": parse_timestamp(r.get("updatedAt")),
                "synced_at": utcnow(),
            }
            for r in parents if r.get("id")
        ]
        return upsert_rows(db, ShopifyProduct, rows, batch_size=batch_size)

    raise ValueError(f"Unknown bulk entity: {entity}")


# ----------------------------------------------------------------------
# Day ledger & cursors
# ----------------------------------------------------------------------

def count_by_day(rows: Iterable[dict], key: str) -> Dict[date, int]:
    counts: Dict[date, int] = defaultdict(int)
    for row in rows:
        day = row.get(key)
        if day is not None:
            counts[day] += 1
    return dict(counts)


def record_sync_days(
    db: Session,
    tenant_id: str,
    platform: str,
    days: Iterable[date],
    succeeded: bool,
    row_counts: Optional[Dict[date, int]] = None,
) -> int:
    """
    Mark days as attempted by a range sync.

    A failed attempt never downgrades a day that an earlier sync covered.
    """
    now = utcnow()
    row_counts = row_counts or {}
    days = list(days)
    if not succeeded:
        covered = {
            d for (d,) in db.query(SyncDay.day).filter(
                SyncDay.tenant_id == tenant_id,
                SyncDay.platform == platform,
                SyncDay.day.in_(days),
                SyncDay.succeeded.is_(True),
            )
        }
        days = [d for d in days if d not in covered]

    rows = [
        {
            "tenant_id": tenant_id,
            "platform": platform,
            "day": d,
            "attempted_at": now,
            "succeeded": succeeded,
            "row_count": row_counts.get(d, 0),
        }
        for d in days
    ]
    return upsert_rows(db, SyncDay, rows)


def get_cursor(db: Session, tenant_id: str, entity: str) -> Optional[str]:
    cursor = db.query(EtlCursor).filter(EtlCursor.tenant_id == tenant_id, EtlCursor.entity == entity).first()
    return cursor.last_value if cursor else None


def update_cursor(db: Session, tenant_id: str, entity: str, value: Optional[str]):
    """Advance an entity's high-water mark (never moves backwards)"""
    if value is None:
        return
    cursor = db.query(EtlCursor).filter(EtlCursor.tenant_id == tenant_id, EtlCursor.entity == entity).first()
    if cursor is None:
        db.add(EtlCursor(tenant_id=tenant_id, entity=entity, last_value=value))
    elif cursor.last_value is None or value > cursor.last_value:
        cursor.last_value = value
    db.commit()
