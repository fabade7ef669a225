"""
Upstream Response Normalization

Converts the differently-shaped upstream payloads (ShopifyQL table data,
GraphQL order connections, REST product lists and Link headers) into domain
records. Parsers are lenient: missing or malformed values become zero/None.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from pagelens.analytics.models import AnalyticsRow, CatalogEntity, LineItem, OrderRecord

GID_PATTERN = re.compile(r"/(\d+)$")
NEXT_PAGE_INFO_PATTERN = re.compile(r'<[^>]*[?&]page_info=([^>&]*)[^>]*>;\s*rel="next"')


def parse_gid(value: Any) -> Optional[int]:
    """Numeric id from a GraphQL global id (gid://shopify/Product/123) or plain id."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    if text.isdigit():
        return int(text)
    match = GID_PATTERN.search(text)
    return int(match.group(1)) if match else None


def parse_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def parse_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        return int(float(str(value).replace(",", "")))
    except ValueError:
        return 0


def parse_float(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return 0.0


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware datetime."""
    if not value:
        return None
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def split_tags(value: Any) -> frozenset:
    """Tags arrive as a list (GraphQL) or a comma-separated string (REST)."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[str] = value.split(",")
    else:
        items = value
    return frozenset(t.strip() for t in items if t and t.strip())


# =============================================================================
# SHOPIFYQL
# =============================================================================

def table_rows(table_data: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Rows of a ShopifyQL tableData block as dicts.

    Newer API versions return each row as an object keyed by column name,
    older ones as positional lists described by `columns`.
    """
    if not table_data:
        return []
    rows = table_data.get("rows") or []
    columns = [c.get("name") for c in table_data.get("columns") or []]

    normalized = []
    for row in rows:
        if isinstance(row, dict):
            normalized.append(row)
        elif isinstance(row, (list, tuple)) and columns:
            normalized.append(dict(zip(columns, row)))
    return normalized


def parse_analytics_rows(table_data: Optional[Dict[str, Any]], group_column: str) -> List[AnalyticsRow]:
    rows = []
    for row in table_rows(table_data):
        key = str(row.get(group_column) or "").strip()
        if not key:
            continue
        conversion_rate = min(max(parse_float(row.get("conversion_rate")), 0.0), 1.0)
        rows.append(
            AnalyticsRow(
                group_key=key.lower(),
                session_count=parse_int(row.get("sessions")),
                conversion_rate=conversion_rate,
            )
        )
    return rows


# =============================================================================
# ORDERS
# =============================================================================

def _money(price_set: Optional[Dict[str, Any]]) -> Decimal:
    return parse_decimal(((price_set or {}).get("shopMoney") or {}).get("amount"))


def parse_line_item(node: Dict[str, Any]) -> LineItem:
    product = node.get("product") or {}
    return LineItem(
        title=node.get("title") or "",
        unit_price=_money(node.get("originalUnitPriceSet")),
        quantity=parse_int(node.get("quantity")),
        product_id=parse_gid(product.get("id")),
    )


def parse_order_node(node: Dict[str, Any], catalog_entity_id: Optional[int] = None) -> OrderRecord:
    line_nodes = (node.get("lineItems") or {}).get("nodes") or []
    return OrderRecord(
        id=str(node.get("id") or ""),
        total_amount=_money(node.get("totalPriceSet")),
        created_at=parse_datetime(node.get("createdAt")) or datetime.now(timezone.utc),
        tags=split_tags(node.get("tags")),
        catalog_entity_id=catalog_entity_id,
        cancelled_at=parse_datetime(node.get("cancelledAt")),
        line_items=tuple(parse_line_item(item) for item in line_nodes),
    )


def has_more_line_items(node: Dict[str, Any]) -> bool:
    """True when the order node holds only the first page of its line items."""
    page_info = (node.get("lineItems") or {}).get("pageInfo") or {}
    return bool(page_info.get("hasNextPage"))


# =============================================================================
# CATALOG
# =============================================================================

def parse_product(payload: Dict[str, Any]) -> Optional[CatalogEntity]:
    product_id = parse_gid(payload.get("id"))
    handle = payload.get("handle")
    if product_id is None or not handle:
        return None
    return CatalogEntity(id=product_id, title=payload.get("title") or "", slug=handle)


def next_page_info(link_header: Optional[str]) -> Optional[str]:
    """page_info cursor of the rel="next" link, if any."""
    if not link_header:
        return None
    for part in link_header.split(","):
        match = NEXT_PAGE_INFO_PATTERN.search(part.strip())
        if match and match.group(1):
            return match.group(1)
    return None
