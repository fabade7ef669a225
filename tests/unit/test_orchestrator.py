"""
Unit Tests - Analytics Orchestrator
"""
import asyncio
from datetime import date

import pytest
import structlog

from pagelens.analytics.errors import (
    AuthRequiredError,
    InvalidRequestError,
    UnexpectedError,
    UpstreamTimeoutError,
)
from pagelens.analytics.metrics import REBILL_TAG
from pagelens.analytics.models import DateRange, TagFilter, TagLogic, UrlGroup
from pagelens.analytics.orchestrator import AnalyticsOrchestrator, ComparisonRequest
from pagelens.config import PipelineSettings, ShopifySettings
from pagelens.gateway.client import ShopifyGateway

from tests.helpers import SHOP, no_sleep, order_node

TOKEN = "valid-session"
JANUARY = DateRange(start=date(2024, 1, 1), end=date(2024, 1, 31))


@pytest.fixture
def session_loader(credentials):
    async def load(token):
        return credentials if token == TOKEN else None

    return load


@pytest.fixture
def seeded_shopify(fake_shopify):
    """Two products: /products/a with 100 sessions and five $100 orders, /products/b with none"""
    fake_shopify.analytics_rows = [
        {"landing_page_path": "/products/a", "sessions": 100, "conversion_rate": 0.05},
        {"landing_page_path": "/products/b", "sessions": 0, "conversion_rate": 0},
    ]
    fake_shopify.orders[1] = [order_node(i, "100.00", 1) for i in range(5)]
    return fake_shopify


@pytest.fixture
def orchestrator(session_loader, gateway_factory, cache, pipeline_settings):
    return AnalyticsOrchestrator(session_loader, gateway_factory, cache, pipeline_settings)


def request_for(*urls, **kwargs):
    return lambda: ComparisonRequest(urls=tuple(urls), date_range=JANUARY, **kwargs)


def page(payload, url):
    return next(p for p in payload["pages"] if p["url"] == url)


class TestPipeline:
    """End-to-end pipeline behavior against fake upstreams"""

    async def test_reference_scenario(self, orchestrator, seeded_shopify):
        outcome = await orchestrator.run(TOKEN, request_for("/products/a", "/products/b"))

        a = page(outcome.payload, "/products/a")
        assert a == {
            "url": "/products/a",
            "productTitle": "Product A",
            "sessions": 100,
            "totalRevenue": 500.0,
            "revenuePerVisitor": 5.0,
            "conversionRate": 5.0,
            "aov": 100.0,
            "orderCount": 5,
        }
        b = page(outcome.payload, "/products/b")
        assert b["sessions"] == 0
        assert b["orderCount"] == 0
        assert b["totalRevenue"] == 0.0
        assert outcome.payload["dateRange"] == {"start": "2024-01-01", "end": "2024-01-31"}
        assert outcome.payload["attribution"] == "full_order_total"
        assert outcome.payload["lastUpdated"].endswith("Z")
        assert "tagFilter" not in outcome.payload
        assert outcome.cache_hit is False

    async def test_tag_filter_scenario(self, orchestrator, seeded_shopify):
        tag_filter = TagFilter(tags=("wholesale",), logic=TagLogic.OR)

        outcome = await orchestrator.run(TOKEN, request_for("/products/a", tag_filter=tag_filter))

        a = page(outcome.payload, "/products/a")
        assert a["orderCount"] == 0
        assert a["totalRevenue"] == 0.0
        assert a["sessions"] == 100
        assert outcome.payload["tagFilter"] == {"tags": ["wholesale"], "logic": "OR"}

    async def test_rebills_excluded_even_if_returned(self, orchestrator, seeded_shopify):
        seeded_shopify.orders[1].append(order_node(99, "1000.00", 1, tags=[REBILL_TAG]))

        outcome = await orchestrator.run(TOKEN, request_for("/products/a"))

        assert page(outcome.payload, "/products/a")["orderCount"] == 5

    async def test_pages_in_request_order(self, orchestrator, seeded_shopify):
        outcome = await orchestrator.run(TOKEN, request_for("/products/b", "/pages/about", "/products/a"))

        assert [p["url"] for p in outcome.payload["pages"]] == ["/products/b", "/pages/about", "/products/a"]

    async def test_unresolved_url_reports_zero(self, orchestrator, seeded_shopify):
        outcome = await orchestrator.run(TOKEN, request_for("/products/missing"))

        missing = page(outcome.payload, "/products/missing")
        assert missing["productTitle"] == "Unknown Product"
        assert missing["orderCount"] == 0
        assert missing["totalRevenue"] == 0.0

    async def test_unresolved_page_with_traffic_reports_zero_sessions(self, orchestrator, seeded_shopify):
        seeded_shopify.analytics_rows.append(
            {"landing_page_path": "/pages/about", "sessions": 40, "conversion_rate": 0.01}
        )

        outcome = await orchestrator.run(TOKEN, request_for("/products/a", "/pages/about"))

        about = page(outcome.payload, "/pages/about")
        assert about["sessions"] == 0
        assert about["conversionRate"] == 0.0
        assert page(outcome.payload, "/products/a")["sessions"] == 100

    async def test_trailing_slash_url(self, orchestrator, seeded_shopify):
        outcome = await orchestrator.run(TOKEN, request_for("https://test-shop.myshopify.com/products/a/"))

        result = outcome.payload["pages"][0]
        assert result["sessions"] == 100
        assert result["orderCount"] == 5

    async def test_groups(self, orchestrator, seeded_shopify):
        group = UrlGroup(name="Both", urls=("/products/a", "/products/b"))

        outcome = await orchestrator.run(TOKEN, request_for("/products/a", "/products/b", groups=(group,)))

        assert outcome.payload["groups"] == [{
            "name": "Both",
            "urls": ["/products/a", "/products/b"],
            "sessions": 100,
            "totalRevenue": 500.0,
            "revenuePerVisitor": 5.0,
            "conversionRate": 5.0,
            "aov": 100.0,
            "orderCount": 5,
        }]


    async def test_binds_shop_to_log_context(self, orchestrator, seeded_shopify):
        structlog.contextvars.clear_contextvars()

        await orchestrator.run(TOKEN, request_for("/products/a"))

        assert structlog.contextvars.get_contextvars()["shop"] == SHOP


class TestCaching:
    """Cache interaction"""

    async def test_second_call_served_from_cache(self, orchestrator, seeded_shopify):
        first = await orchestrator.run(TOKEN, request_for("/products/a", "/products/b"))
        await orchestrator.flush()
        calls_after_first = seeded_shopify.call_count

        second = await orchestrator.run(TOKEN, request_for("/products/a", "/products/b"))

        assert second.cache_hit is True
        assert second.payload == first.payload
        assert seeded_shopify.call_count == calls_after_first

    async def test_refresh_bypasses_and_clears_cache(self, orchestrator, seeded_shopify, fake_redis):
        await orchestrator.run(TOKEN, request_for("/products/a"))
        await orchestrator.run(TOKEN, request_for("/products/b"))
        await orchestrator.flush()
        assert len(fake_redis.store) == 2
        calls_before = seeded_shopify.call_count

        refreshed = await orchestrator.run(TOKEN, request_for("/products/a", refresh=True))
        await orchestrator.flush()

        assert refreshed.cache_hit is False
        assert seeded_shopify.call_count > calls_before
        assert len(fake_redis.store) == 1

    async def test_cache_outage_does_not_fail_request(self, orchestrator, seeded_shopify, fake_redis):
        fake_redis.fail = True

        outcome = await orchestrator.run(TOKEN, request_for("/products/a"))
        await orchestrator.flush()

        assert page(outcome.payload, "/products/a")["sessions"] == 100

    async def test_different_filters_use_different_entries(self, orchestrator, seeded_shopify, fake_redis):
        await orchestrator.run(TOKEN, request_for("/products/a"))
        await orchestrator.run(
            TOKEN, request_for("/products/a", tag_filter=TagFilter(tags=("vip",), logic=TagLogic.AND))
        )
        await orchestrator.flush()

        assert len(fake_redis.store) == 2


class TestFailures:
    """Session, validation and upstream failures"""

    async def test_missing_session(self, orchestrator, seeded_shopify):
        built = []

        def factory():
            built.append(True)
            return ComparisonRequest(urls=("/products/a",), date_range=JANUARY)

        with pytest.raises(AuthRequiredError):
            await orchestrator.run(None, factory)
        with pytest.raises(AuthRequiredError):
            await orchestrator.run("forged", factory)

        assert built == []
        assert seeded_shopify.call_count == 0

    async def test_session_lookup_timeout(self, gateway_factory, cache):
        async def slow_loader(token):
            await asyncio.sleep(1)

        orchestrator = AnalyticsOrchestrator(
            slow_loader, gateway_factory, cache, PipelineSettings(session_timeout_seconds=0.01)
        )

        with pytest.raises(UnexpectedError):
            await orchestrator.run(TOKEN, request_for("/products/a"))

    async def test_session_store_failure(self, gateway_factory, cache, pipeline_settings):
        async def broken_loader(token):
            raise RuntimeError("database down")

        orchestrator = AnalyticsOrchestrator(broken_loader, gateway_factory, cache, pipeline_settings)

        with pytest.raises(UnexpectedError):
            await orchestrator.run(TOKEN, request_for("/products/a"))

    async def test_empty_urls_rejected(self, orchestrator):
        with pytest.raises(InvalidRequestError):
            await orchestrator.run(TOKEN, request_for("  "))

    async def test_fetch_timeout(self, session_loader, gateway_factory, cache, seeded_shopify):
        seeded_shopify.graphql_delay = 1.0
        orchestrator = AnalyticsOrchestrator(
            session_loader, gateway_factory, cache, PipelineSettings(fetch_timeout_seconds=0.05)
        )

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await orchestrator.run(TOKEN, request_for("/products/a"))

        assert exc_info.value.status_code == 504
        assert "shorter date range" in exc_info.value.message

    async def test_resolve_timeout(self, session_loader, gateway_factory, cache, seeded_shopify):
        seeded_shopify.delay = 1.0
        orchestrator = AnalyticsOrchestrator(
            session_loader, gateway_factory, cache, PipelineSettings(resolve_timeout_seconds=0.05)
        )

        with pytest.raises(UpstreamTimeoutError):
            await orchestrator.run(TOKEN, request_for("/products/a"))

    async def test_slow_lookup_degrades_only_its_page(self, session_loader, http_client, cache, seeded_shopify):
        seeded_shopify.handle_delays["a"] = 1.0
        config = ShopifySettings(max_retries=2, pacing_delay_seconds=0, request_timeout_seconds=0.05)

        def factory(creds):
            return ShopifyGateway(creds, config, client=http_client, sleep=no_sleep)

        orchestrator = AnalyticsOrchestrator(
            session_loader, factory, cache, PipelineSettings(resolve_timeout_seconds=0.5)
        )

        outcome = await orchestrator.run(TOKEN, request_for("/products/a", "/products/b"))

        a = page(outcome.payload, "/products/a")
        assert a["productTitle"] == "Unknown Product"
        assert a["sessions"] == 0
        assert a["orderCount"] == 0
        assert page(outcome.payload, "/products/b")["productTitle"] == "Product B"

    async def test_analytics_failure_degrades_page(self, orchestrator, seeded_shopify):
        seeded_shopify.fail_analytics = True

        outcome = await orchestrator.run(TOKEN, request_for("/products/a"))

        a = page(outcome.payload, "/products/a")
        assert a["sessions"] == 0
        assert a["orderCount"] == 5
        assert a["conversionRate"] == 0.0
        assert a["aov"] == 100.0

    async def test_timed_out_result_not_cached(self, session_loader, gateway_factory, cache, seeded_shopify, fake_redis):
        seeded_shopify.graphql_delay = 1.0
        orchestrator = AnalyticsOrchestrator(
            session_loader, gateway_factory, cache, PipelineSettings(fetch_timeout_seconds=0.05)
        )

        with pytest.raises(UpstreamTimeoutError):
            await orchestrator.run(TOKEN, request_for("/products/a"))
        await orchestrator.flush()

        assert fake_redis.store == {}


class TestComparisonRequest:

    def test_requires_a_url(self):
        with pytest.raises(InvalidRequestError):
            ComparisonRequest(urls=(), date_range=JANUARY)

    def test_cache_params(self):
        request = ComparisonRequest(urls=("/products/a",), date_range=JANUARY)

        assert request.cache_params("full_order_total") == {
            "urls": ["/products/a"],
            "dateRange": {"start": "2024-01-01", "end": "2024-01-31"},
            "tagFilter": None,
            "attribution": "full_order_total",
        }
