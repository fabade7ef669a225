"""
Metric Engine

Pure functions turning resolved sessions and order records into the page
metric set:

- Order eligibility (cancellation, rebill exclusion, tag filter)
- Revenue attribution strategies (full order total, line items only)
- Derived metrics with a single rounding step
- Group aggregation over unrounded page totals
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence

from pagelens.analytics.matcher import titles_match
from pagelens.analytics.models import (
    CatalogEntity,
    GroupMetrics,
    LineItem,
    OrderRecord,
    PageMetrics,
    PageTotals,
    TagFilter,
    TagLogic,
    UrlGroup,
)

REBILL_TAG = "Subscription Recurring Order"

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENTS = Decimal("0.01")


# =============================================================================
# ELIGIBILITY
# =============================================================================

def _fold(tag: str) -> str:
    return tag.strip().casefold()


def has_tag(order: OrderRecord, tag: str) -> bool:
    """Trimmed, case-insensitive exact tag membership."""
    wanted = _fold(tag)
    return any(_fold(t) == wanted for t in order.tags)


def tag_filter_matches(order: OrderRecord, tag_filter: Optional[TagFilter]) -> bool:
    """
    AND requires every filter tag on the order, OR requires at least one.
    An inactive filter matches everything.
    """
    if tag_filter is None or not tag_filter.is_active:
        return True

    order_tags = {_fold(t) for t in order.tags}
    wanted = [_fold(t) for t in tag_filter.tags if t.strip()]

    if tag_filter.logic == TagLogic.AND:
        return all(t in order_tags for t in wanted)
    return any(t in order_tags for t in wanted)


def is_eligible(order: OrderRecord, tag_filter: Optional[TagFilter] = None) -> bool:
    return (
        not order.is_cancelled
        and not has_tag(order, REBILL_TAG)
        and tag_filter_matches(order, tag_filter)
    )


def eligible_orders(
    orders: Iterable[OrderRecord],
    tag_filter: Optional[TagFilter] = None,
) -> List[OrderRecord]:
    return [order for order in orders if is_eligible(order, tag_filter)]


# =============================================================================
# ATTRIBUTION STRATEGIES
# =============================================================================

def line_item_matches(item: LineItem, entity: CatalogEntity) -> bool:
    """Match by product id; fall back to title for lines without one."""
    if item.product_id is not None:
        return item.product_id == entity.id
    return titles_match(item.title, entity.title)


def order_contains(order: OrderRecord, entity: CatalogEntity) -> bool:
    if order.catalog_entity_id == entity.id:
        return True
    return any(line_item_matches(item, entity) for item in order.line_items)


class AttributionStrategy(ABC):
    """How much of an order's value a page is credited with"""

    name: str

    @abstractmethod
    def attributed_revenue(self, order: OrderRecord, entity: CatalogEntity) -> Decimal:
        """Revenue of `order` credited to `entity`."""


class FullOrderTotalStrategy(AttributionStrategy):
    """
    Credit the entire order total of every order containing the product.

    AOV then reflects the real cart value of customers who bought it.
    """

    name = "full_order_total"

    def attributed_revenue(self, order: OrderRecord, entity: CatalogEntity) -> Decimal:
        return order.total_amount


class LineItemOnlyStrategy(AttributionStrategy):
    """
    Credit unit price x quantity of the matching line items only.

    AOV then reflects the product's own contribution to the cart.
    """

    name = "line_item_only"

    def attributed_revenue(self, order: OrderRecord, entity: CatalogEntity) -> Decimal:
        return sum(
            (item.subtotal for item in order.line_items if line_item_matches(item, entity)),
            ZERO,
        )


STRATEGIES: Dict[str, AttributionStrategy] = {
    FullOrderTotalStrategy.name: FullOrderTotalStrategy(),
    LineItemOnlyStrategy.name: LineItemOnlyStrategy(),
}


def get_strategy(name: str) -> AttributionStrategy:
    try:
        return STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown attribution strategy: {name}") from None


# =============================================================================
# DERIVED METRICS
# =============================================================================

def round_money(value: Decimal) -> Decimal:
    """Two decimal places, half away from zero."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def derive(totals: PageTotals) -> Dict[str, Decimal]:
    """Derived metrics from unrounded totals; rounding happens here only."""
    sessions = Decimal(totals.sessions)
    orders = Decimal(totals.order_count)

    revenue_per_visitor = totals.revenue / sessions if totals.sessions > 0 else ZERO
    conversion_rate = HUNDRED * orders / sessions if totals.sessions > 0 else ZERO
    average_order_value = totals.revenue / orders if totals.order_count > 0 else ZERO

    return {
        "total_revenue": round_money(totals.revenue),
        "revenue_per_visitor": round_money(revenue_per_visitor),
        "conversion_rate": round_money(conversion_rate),
        "average_order_value": round_money(average_order_value),
    }


def page_totals(
    sessions: int,
    entity: Optional[CatalogEntity],
    orders: Sequence[OrderRecord],
    strategy: AttributionStrategy,
    tag_filter: Optional[TagFilter] = None,
) -> PageTotals:
    """
    Sum eligible orders containing `entity` under `strategy`.

    A page without a product reports zero metrics, sessions included.
    """
    if entity is None:
        return PageTotals()

    revenue = ZERO
    order_count = 0
    for order in eligible_orders(orders, tag_filter):
        if not order_contains(order, entity):
            continue
        order_count += 1
        revenue += strategy.attributed_revenue(order, entity)

    return PageTotals(sessions=sessions, revenue=revenue, order_count=order_count)


def build_page_metrics(url: str, title: str, totals: PageTotals) -> PageMetrics:
    return PageMetrics(
        url=url,
        title=title,
        sessions=totals.sessions,
        order_count=totals.order_count,
        totals=totals,
        **derive(totals),
    )


def compute_page_metrics(
    url: str,
    title: str,
    sessions: int,
    entity: Optional[CatalogEntity],
    orders: Sequence[OrderRecord],
    strategy: AttributionStrategy,
    tag_filter: Optional[TagFilter] = None,
) -> PageMetrics:
    """Metric set for one page."""
    totals = page_totals(sessions, entity, orders, strategy, tag_filter)
    return build_page_metrics(url, title, totals)


def aggregate_group(group: UrlGroup, pages: Sequence[PageMetrics]) -> GroupMetrics:
    """Aggregate member pages from their unrounded totals, then round once."""
    members = set(group.urls)
    totals = PageTotals()
    for page in pages:
        if page.url in members:
            totals = totals + page.totals

    return GroupMetrics(
        name=group.name,
        urls=group.urls,
        sessions=totals.sessions,
        order_count=totals.order_count,
        **derive(totals),
    )
