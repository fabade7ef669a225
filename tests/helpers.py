"""
Test doubles for Redis and the upstream shop APIs
"""
import asyncio
import json
import re
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional

import httpx

SHOP = "test-shop.myshopify.com"


async def no_sleep(_seconds: float) -> None:
    return None


# =============================================================================
# IN-MEMORY REDIS
# =============================================================================

class FakeRedis:
    """Subset of the redis.asyncio client used by the comparison cache"""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                deleted += 1
            self.ttls.pop(key, None)
        return deleted

    async def scan_iter(self, match: str = "*"):
        self._check()
        for key in list(self.store):
            if fnmatch(key, match):
                yield key

    async def ping(self) -> bool:
        self._check()
        return True


# =============================================================================
# FAKE UPSTREAM
# =============================================================================

def order_node(
    order_id: int,
    amount: str,
    product_id: Optional[int] = None,
    tags: Optional[List[str]] = None,
    cancelled: bool = False,
    line_items: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """GraphQL order node as returned by the orders connection"""
    if line_items is None:
        line_items = [line_item("Product", amount, product_id)]
    return {
        "id": f"gid://shopify/Order/{order_id}",
        "createdAt": "2024-01-15T10:00:00Z",
        "cancelledAt": "2024-01-16T10:00:00Z" if cancelled else None,
        "tags": tags or [],
        "totalPriceSet": {"shopMoney": {"amount": amount}},
        "lineItems": {"nodes": line_items},
    }


def line_item(title: str, unit_price: str, product_id: Optional[int], quantity: int = 1) -> Dict[str, Any]:
    return {
        "title": title,
        "quantity": quantity,
        "originalUnitPriceSet": {"shopMoney": {"amount": unit_price}},
        "product": {"id": f"gid://shopify/Product/{product_id}"} if product_id else None,
    }


class FakeShopify:
    """
    httpx.MockTransport handler serving products, ShopifyQL tables, orders,
    order tags and shop details for one shop.
    """

    def __init__(self):
        self.products: Dict[str, Dict[str, Any]] = {}
        self.analytics_rows: List[Dict[str, Any]] = []
        self.parse_errors: List[str] = []
        self.orders: Dict[int, List[Dict[str, Any]]] = {}
        self.rest_orders: List[Dict[str, Any]] = []
        self.timezone: Optional[str] = "Europe/London"
        self.delay = 0.0
        self.graphql_delay = 0.0
        self.handle_delays: Dict[str, float] = {}
        self.fail_analytics = False
        self.requests: List[httpx.Request] = []

    def add_product(self, product_id: int, handle: str, title: str) -> None:
        self.products[handle] = {"id": product_id, "title": title, "handle": handle}

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        path = request.url.path
        if path.endswith("/products.json"):
            handle = request.url.params.get("handle")
            if handle is not None:
                if handle in self.handle_delays:
                    await asyncio.sleep(self.handle_delays[handle])
                product = self.products.get(handle)
                return httpx.Response(200, json={"products": [product] if product else []})
            return httpx.Response(200, json={"products": list(self.products.values())})

        if path.endswith("/orders.json"):
            return httpx.Response(200, json={"orders": self.rest_orders})

        if path.endswith("/shop.json"):
            return httpx.Response(200, json={"shop": {"iana_timezone": self.timezone}})

        if path.endswith("/graphql.json"):
            if self.graphql_delay:
                await asyncio.sleep(self.graphql_delay)
            body = json.loads(request.content)
            if "shopifyqlQuery" in body["query"]:
                if self.fail_analytics:
                    return httpx.Response(500, json={"errors": "internal"})
                return httpx.Response(200, json={"data": {"shopifyqlQuery": {
                    "tableData": {
                        "columns": [
                            {"name": "landing_page_path", "dataType": "STRING"},
                            {"name": "sessions", "dataType": "INTEGER"},
                            {"name": "conversion_rate", "dataType": "PERCENT"},
                        ],
                        "rows": self.analytics_rows,
                    },
                    "parseErrors": self.parse_errors,
                }}})
            if "orders(" in body["query"]:
                match = re.search(r"product_id:(\d+)", body["variables"]["query"])
                nodes = self.orders.get(int(match.group(1)), []) if match else []
                return httpx.Response(200, json={"data": {"orders": {
                    "edges": [{"cursor": f"c{i}", "node": node} for i, node in enumerate(nodes)],
                    "pageInfo": {"hasNextPage": False, "endCursor": None},
                }}})

        return httpx.Response(404, json={"errors": "Not Found"})


