"""
Upstream Gateway

Async client for the two upstream data surfaces of a shop:

- Catalog/order records: REST (Link-header pagination) and GraphQL
  (cursor pagination)
- Analytics: ShopifyQL text queries submitted through GraphQL

Every call carries its own timeout and a bounded retry for 429/5xx.
Sub-call failures are logged and degrade to empty results; only
programming errors propagate.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
import structlog
from prometheus_client import Counter, Histogram
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from pagelens.analytics.errors import UpstreamDegradedError
from pagelens.analytics.matcher import extract_slug, match_rows, normalize_path
from pagelens.analytics.metrics import REBILL_TAG
from pagelens.analytics.models import (
    CatalogEntity,
    DateRange,
    MatchOutcome,
    OrderRecord,
    ShopCredentials,
    UNMATCHED,
)
from pagelens.config.settings import ShopifySettings
from pagelens.gateway.parsing import (
    has_more_line_items,
    next_page_info,
    parse_analytics_rows,
    parse_order_node,
    parse_product,
    split_tags,
)
from pagelens.gateway.shopifyql import (
    QueryBuildError,
    SHOPIFYQL_DOCUMENT,
    landing_page_sessions_query,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

UPSTREAM_CALLS = Counter(
    "pagelens_upstream_calls_total",
    "Upstream API calls by operation and outcome",
    ["operation", "outcome"],
)

UPSTREAM_LATENCY = Histogram(
    "pagelens_upstream_call_seconds",
    "Upstream API call latency including retries",
    ["operation"],
)


ORDERS_DOCUMENT = """
query ProductOrders($first: Int!, $after: String, $query: String!, $lineItems: Int!) {
  orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT) {
    edges {
      cursor
      node {
        id
        createdAt
        cancelledAt
        tags
        totalPriceSet { shopMoney { amount } }
        lineItems(first: $lineItems) {
          nodes {
            title
            quantity
            originalUnitPriceSet { shopMoney { amount } }
            product { id }
          }
          pageInfo { hasNextPage }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


class _RetryableResponse(Exception):
    """429 or 5xx; retried by tenacity"""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"Retryable HTTP status {response.status_code}")


def orders_search_query(entity_id: int, date_range: DateRange) -> str:
    """Order search syntax for one product over a date range, rebills excluded."""
    return (
        f"product_id:{int(entity_id)} "
        f"created_at:>={date_range.start.isoformat()} "
        f"created_at:<={date_range.end.isoformat()} "
        f"-tag:'{REBILL_TAG}'"
    )


class ShopifyGateway:
    """
    Typed client for one shop's upstream APIs.

    Example:
        async with ShopifyGateway(credentials, settings.shopify) as gateway:
            entities = await gateway.resolve_entities(["/products/a"])
    """

    def __init__(
        self,
        credentials: ShopCredentials,
        config: ShopifySettings,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.credentials = credentials
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)
        self._sleep = sleep

    async def __aenter__(self) -> "ShopifyGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.credentials.access_token,
            "Content-Type": "application/json",
        }

    def _rest_url(self, endpoint: str) -> str:
        return f"https://{self.credentials.shop}/admin/api/{self.config.api_version}{endpoint}"

    def _graphql_url(self, version: Optional[str] = None) -> str:
        return f"https://{self.credentials.shop}/admin/api/{version or self.config.api_version}/graphql.json"

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        One upstream call with timeout and retry.

        Raises:
            UpstreamDegradedError: on timeout, transport error or non-2xx status
        """
        retrying = AsyncRetrying(
            stop=(
                stop_after_attempt(max(self.config.max_retries, 1))
                | stop_after_delay(self.config.retry_max_seconds)
            ),
            wait=wait_exponential(multiplier=0.5, max=self.config.retry_backoff_max_seconds),
            retry=retry_if_exception_type(_RetryableResponse),
            sleep=self._sleep,
            reraise=True,
        )
        started = time.perf_counter()
        try:
            async for attempt in retrying:
                with attempt:
                    response = await asyncio.wait_for(
                        self._client.request(
                            method,
                            url,
                            headers=self._headers,
                            timeout=self.config.request_timeout_seconds,
                            **kwargs,
                        ),
                        self.config.request_timeout_seconds,
                    )
                    if response.status_code == 429 or response.status_code >= 500:
                        raise _RetryableResponse(response)
        except _RetryableResponse as exc:
            response = exc.response
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            UPSTREAM_CALLS.labels(operation=operation, outcome="timeout").inc()
            logger.warning("Upstream call timed out", operation=operation, shop=self.credentials.shop)
            raise UpstreamDegradedError(f"{operation} timed out", operation=operation) from exc
        except httpx.HTTPError as exc:
            UPSTREAM_CALLS.labels(operation=operation, outcome="transport_error").inc()
            logger.warning(
                "Upstream transport error",
                operation=operation,
                shop=self.credentials.shop,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UpstreamDegradedError(f"{operation} failed", operation=operation) from exc
        finally:
            UPSTREAM_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)

        if response.is_error:
            UPSTREAM_CALLS.labels(operation=operation, outcome="http_error").inc()
            logger.warning(
                "Upstream returned error status",
                operation=operation,
                shop=self.credentials.shop,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamDegradedError(
                f"{operation} returned HTTP {response.status_code}",
                operation=operation,
                status_code=response.status_code,
            )

        UPSTREAM_CALLS.labels(operation=operation, outcome="ok").inc()
        return response

    async def _rest_get(self, operation: str, endpoint: str, params: Dict[str, str]) -> httpx.Response:
        return await self._send(operation, "GET", self._rest_url(endpoint), params=params)

    async def _graphql(
        self,
        operation: str,
        document: str,
        variables: Dict[str, Any],
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        response = await self._send(
            operation,
            "POST",
            self._graphql_url(version),
            json={"query": document, "variables": variables},
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamDegradedError(f"{operation} returned invalid JSON", operation=operation) from exc

        if payload.get("errors"):
            logger.warning("GraphQL errors", operation=operation, errors=payload["errors"])
            raise UpstreamDegradedError(f"{operation} returned GraphQL errors", operation=operation)
        return payload.get("data") or {}

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    async def fetch_product_by_slug(self, slug: str) -> Optional[CatalogEntity]:
        response = await self._rest_get(
            "product_by_handle",
            "/products.json",
            {"handle": slug, "fields": "id,title,handle", "limit": "1"},
        )
        products = response.json().get("products") or []
        return parse_product(products[0]) if products else None

    async def resolve_entities(self, urls: Sequence[str]) -> Dict[str, CatalogEntity]:
        """
        Resolve page URLs to catalog products by slug.

        Unresolvable URLs are omitted. Lookups run sequentially with a
        fixed pause between them.
        """
        entities: Dict[str, CatalogEntity] = {}

        for index, url in enumerate(urls):
            slug = extract_slug(normalize_path(url))
            if not slug:
                logger.warning("Could not extract product slug", url=url)
                continue

            if index > 0:
                await self._sleep(self.config.pacing_delay_seconds)

            try:
                entity = await self.fetch_product_by_slug(slug)
            except (UpstreamDegradedError, ValueError):
                entity = None

            if entity is None:
                logger.warning("No product found for slug", url=url, slug=slug)
                continue

            entities[url] = entity
            logger.info("Resolved page URL", url=url, product_id=entity.id, title=entity.title)

        return entities

    async def list_products(self) -> List[CatalogEntity]:
        """
        Every product of the shop, following Link-header pagination.

        Raises:
            UpstreamDegradedError: if any page fails
        """
        products: List[CatalogEntity] = []
        page_info: Optional[str] = None

        while True:
            params = {"limit": str(self.config.products_page_size), "fields": "id,title,handle"}
            if page_info:
                params["page_info"] = page_info

            response = await self._rest_get("list_products", "/products.json", params)
            for payload in response.json().get("products") or []:
                entity = parse_product(payload)
                if entity is not None:
                    products.append(entity)

            page_info = next_page_info(response.headers.get("Link"))
            if not page_info:
                break
            await self._sleep(self.config.pacing_delay_seconds)

        logger.info("Listed products", shop=self.credentials.shop, count=len(products))
        return products

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    async def run_shopifyql(self, query_text: str) -> Optional[Dict[str, Any]]:
        """
        Submit a ShopifyQL query and return its tableData block.

        Returns None on parse errors.

        Raises:
            UpstreamDegradedError: on transport or GraphQL errors
        """
        data = await self._graphql(
            "shopifyql",
            SHOPIFYQL_DOCUMENT,
            {"query": query_text},
            version=self.config.analytics_api_version,
        )
        result = data.get("shopifyqlQuery") or {}
        if result.get("parseErrors"):
            UPSTREAM_CALLS.labels(operation="shopifyql", outcome="parse_error").inc()
            logger.warning("ShopifyQL parse errors", query=query_text, errors=result["parseErrors"])
            return None
        return result.get("tableData")

    async def query_analytics(self, paths: Sequence[str], date_range: DateRange) -> Dict[str, MatchOutcome]:
        """
        Sessions and conversion rate per requested landing page path.

        Query, parse and transport errors degrade to an all-Unmatched map.
        """
        unmatched: Dict[str, MatchOutcome] = {path: UNMATCHED for path in paths}
        if not paths:
            return unmatched

        try:
            query_text = landing_page_sessions_query(
                date_range.start,
                date_range.end,
                self.config.analytics_row_limit,
            ).render()
        except QueryBuildError as exc:
            logger.error("Could not build analytics query", error=str(exc))
            return unmatched

        try:
            table_data = await self.run_shopifyql(query_text)
        except UpstreamDegradedError:
            return unmatched
        if table_data is None:
            return unmatched

        rows = parse_analytics_rows(table_data, "landing_page_path")
        logger.info("Analytics rows fetched", paths=len(paths), rows=len(rows))
        return match_rows(paths, rows)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def fetch_orders(
        self,
        entity_id: int,
        date_range: DateRange,
        max_orders: Optional[int] = None,
    ) -> List[OrderRecord]:
        """
        Orders containing a product within the date range.

        Pages through the cursor connection until exhausted or `max_orders`
        is reached. Rebills are excluded in the search query; the metric
        engine excludes them again because upstream tag negation is not
        reliable. A failing page ends pagination with what was read so far.
        """
        cap = max_orders if max_orders is not None else self.config.max_orders_per_product
        orders: List[OrderRecord] = []
        truncated = 0
        cursor: Optional[str] = None
        search = orders_search_query(entity_id, date_range)

        while len(orders) < cap:
            variables = {
                "first": min(self.config.orders_page_size, cap - len(orders)),
                "after": cursor,
                "query": search,
                "lineItems": self.config.line_items_page_size,
            }
            try:
                data = await self._graphql("product_orders", ORDERS_DOCUMENT, variables)
            except UpstreamDegradedError:
                logger.warning(
                    "Order pagination stopped early",
                    product_id=entity_id,
                    orders_read=len(orders),
                )
                break

            connection = data.get("orders") or {}
            for edge in connection.get("edges") or []:
                node = edge.get("node") or {}
                if has_more_line_items(node):
                    truncated += 1
                orders.append(parse_order_node(node, catalog_entity_id=entity_id))
                if len(orders) >= cap:
                    break

            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                break
            await self._sleep(self.config.pacing_delay_seconds)

        if truncated:
            logger.warning(
                "Orders have more line items than were read",
                product_id=entity_id,
                orders=truncated,
                line_items_read=self.config.line_items_page_size,
            )
        logger.info("Orders fetched", product_id=entity_id, count=len(orders), cap=cap)
        return orders

    async def list_order_tags(self) -> List[str]:
        """Distinct tags of the most recent orders, sorted; empty on failure."""
        try:
            response = await self._rest_get(
                "order_tags",
                "/orders.json",
                {"limit": str(self.config.tags_sample_size), "fields": "tags", "status": "any"},
            )
        except UpstreamDegradedError:
            return []

        tags = set()
        for order in response.json().get("orders") or []:
            tags.update(split_tags(order.get("tags")))
        return sorted(tags)

    async def fetch_timezone(self) -> str:
        """IANA timezone of the shop, or the configured default."""
        try:
            response = await self._rest_get("shop_timezone", "/shop.json", {"fields": "iana_timezone"})
            timezone_name = (response.json().get("shop") or {}).get("iana_timezone")
        except (UpstreamDegradedError, ValueError):
            timezone_name = None
        return timezone_name or self.config.default_timezone
