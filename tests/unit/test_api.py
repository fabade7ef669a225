"""
Unit Tests - HTTP API
"""
import hashlib
import hmac
from datetime import date, datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from pagelens.analytics.errors import AuthRequiredError
from pagelens.analytics.models import ComparisonResult, DateRange, ShopCredentials
from pagelens.analytics.orchestrator import AnalyticsOrchestrator, ComparisonOutcome
from pagelens.analytics.schemas import comparison_payload
from pagelens.config import get_settings
from pagelens.gateway.client import ShopifyGateway
from pagelens.main import create_app
from pagelens.serving.api.dependencies import (
    get_gateway_factory,
    get_http_client,
    get_orchestrator,
    get_session_loader,
    get_shop_store,
)
from pagelens.serving.auth import verify_session

from tests.helpers import SHOP, no_sleep

TOKEN = "valid-session"
COOKIE = get_settings().security.session_cookie_name
BODY = {"urls": ["/products/a"], "dateRange": {"start": "2024-01-01", "end": "2024-01-31"}}


class StubOrchestrator:
    """Checks the session like the real pipeline, then returns a canned outcome"""

    def __init__(self, outcome=None, error=None):
        self.outcome = outcome
        self.error = error
        self.requests = []

    async def run(self, session_token, request_factory):
        if session_token != TOKEN:
            raise AuthRequiredError()
        self.requests.append(request_factory())
        if self.error:
            raise self.error
        return self.outcome


class RecordingStore:
    def __init__(self):
        self.saved = []

    async def save(self, shop, access_token, scope, timezone):
        self.saved.append((shop, access_token, scope, timezone))


def canned_outcome(cache_hit=False) -> ComparisonOutcome:
    result = ComparisonResult(
        pages=(),
        groups=(),
        date_range=DateRange(start=date(2024, 1, 1), end=date(2024, 1, 31)),
        tag_filter=None,
        attribution="full_order_total",
        computed_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
    )
    return ComparisonOutcome(payload=comparison_payload(result), cache_hit=cache_hit)


def sign_callback(params):
    secret = get_settings().shopify.api_secret.get_secret_value()
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    return {**params, "hmac": hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def upstream(fake_shopify):
    """Shared HTTP client that also answers the token exchange"""

    async def handler(request):
        if request.url.path == "/admin/oauth/access_token":
            return httpx.Response(200, json={"access_token": "shpat_new", "scope": "read_orders"})
        return await fake_shopify(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def app(upstream, store, credentials, shopify_settings):
    async def load(token):
        return credentials if token == TOKEN else None

    def factory(creds: ShopCredentials) -> ShopifyGateway:
        return ShopifyGateway(creds, shopify_settings, client=upstream, sleep=no_sleep)

    application = create_app()
    application.dependency_overrides[get_session_loader] = lambda: load
    application.dependency_overrides[get_gateway_factory] = lambda: factory
    application.dependency_overrides[get_http_client] = lambda: upstream
    application.dependency_overrides[get_shop_store] = lambda: store
    return application


@pytest.fixture
def client(app):
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def authed_client(client):
    client.cookies.set(COOKIE, TOKEN)
    return client


# =============================================================================
# TESTS
# =============================================================================

class TestAnalyticsEndpoint:
    """Tests for POST /analytics"""

    def test_miss(self, app, authed_client):
        stub = StubOrchestrator(canned_outcome(cache_hit=False))
        app.dependency_overrides[get_orchestrator] = lambda: stub

        response = authed_client.post("/analytics", json=BODY)

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"
        assert response.json()["dateRange"] == {"start": "2024-01-01", "end": "2024-01-31"}
        assert stub.requests[0].urls == ("/products/a",)

    def test_hit(self, app, authed_client):
        app.dependency_overrides[get_orchestrator] = lambda: StubOrchestrator(canned_outcome(cache_hit=True))

        response = authed_client.post("/analytics", json=BODY)

        assert response.headers["X-Cache"] == "HIT"

    def test_inactive_tag_filter_dropped(self, app, authed_client):
        stub = StubOrchestrator(canned_outcome())
        app.dependency_overrides[get_orchestrator] = lambda: stub

        authed_client.post("/analytics", json={**BODY, "tagFilter": {"tags": [" "], "logic": "AND"}})

        assert stub.requests[0].tag_filter is None

    def test_unauthenticated_before_validation(self, app, client, cache, pipeline_settings):
        async def load(token):
            return None

        def no_gateway(creds):
            raise AssertionError("upstream must not be reached")

        orchestrator = AnalyticsOrchestrator(load, no_gateway, cache, pipeline_settings)
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator

        response = client.post("/analytics", json={"urls": [], "dateRange": None})

        assert response.status_code == 401
        assert response.json() == {
            "error": "Not authenticated. Please reconnect your store.",
            "code": "auth_required",
        }

    @pytest.mark.parametrize("content", [
        b'{"urls": "not-a-list"}',
        b"not json",
        b"",
    ])
    def test_unauthenticated_malformed_body(self, app, client, content):
        stub = StubOrchestrator(canned_outcome())
        app.dependency_overrides[get_orchestrator] = lambda: stub

        response = client.post("/analytics", content=content, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert response.json()["code"] == "auth_required"
        assert stub.requests == []

    @pytest.mark.parametrize("body,message", [
        ({"urls": [], "dateRange": BODY["dateRange"]}, "At least one URL is required"),
        ({"urls": [" "], "dateRange": BODY["dateRange"]}, "At least one URL is required"),
        ({"urls": ["/products/a"]}, "Date range is required"),
        ({"urls": ["/products/a"], "dateRange": {"start": "2024-01-01"}}, "Date range is required"),
    ])
    def test_invalid_requests(self, app, authed_client, body, message):
        app.dependency_overrides[get_orchestrator] = lambda: StubOrchestrator(canned_outcome())

        response = authed_client.post("/analytics", json=body)

        assert response.status_code == 400
        assert response.json()["error"] == message

    def test_malformed_body(self, app, authed_client):
        app.dependency_overrides[get_orchestrator] = lambda: StubOrchestrator(canned_outcome())

        response = authed_client.post("/analytics", json={"urls": "not-a-list"})

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_non_json_body(self, app, authed_client):
        app.dependency_overrides[get_orchestrator] = lambda: StubOrchestrator(canned_outcome())

        response = authed_client.post("/analytics", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid request body", "code": "validation_error"}

    def test_unexpected_failure(self, app, authed_client):
        app.dependency_overrides[get_orchestrator] = lambda: StubOrchestrator(error=RuntimeError("boom"))

        response = authed_client.post("/analytics", json=BODY)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch analytics data", "code": "unexpected_error"}


class TestAuthEndpoints:
    """Tests for the install handshake"""

    def test_begin_install_redirects(self, client):
        response = client.get("/auth", params={"shop": SHOP})

        assert response.status_code == 307
        location = response.headers["location"]
        assert location.startswith(f"https://{SHOP}/admin/oauth/authorize?")
        assert "redirect_uri=https%3A%2F%2Fapp.example.com%2Fauth%2Fcallback" in location

    @pytest.mark.parametrize("params", [
        {},
        {"shop": "evil.example.com"},
        {"shop": "evil.example/x.myshopify.com"},
    ])
    def test_begin_install_rejects_bad_shop(self, client, params):
        assert client.get("/auth", params=params).status_code == 400

    def test_callback_completes_install(self, client, store):
        params = sign_callback({"shop": SHOP, "code": "auth-code", "timestamp": "1700000000"})

        response = client.get("/auth/callback", params=params)

        assert response.status_code == 302
        assert response.headers["location"] == "https://app.example.com/dashboard"
        assert store.saved == [(SHOP, "shpat_new", "read_orders", "Europe/London")]

        secret = get_settings().security.secret_key.get_secret_value()
        assert verify_session(response.cookies[COOKIE], secret) == SHOP
        cookie = response.headers["set-cookie"]
        assert "HttpOnly" in cookie
        assert "Path=/" in cookie
        assert "Max-Age=2592000" in cookie
        assert "samesite=lax" in cookie.lower()

    def test_callback_signature_mismatch(self, client, store):
        params = sign_callback({"shop": SHOP, "code": "auth-code"})
        params["code"] = "swapped"

        response = client.get("/auth/callback", params=params)

        assert response.status_code == 403
        assert response.json()["error"] == "HMAC validation failed"
        assert store.saved == []

    def test_callback_missing_parameters(self, client):
        assert client.get("/auth/callback", params={"shop": SHOP}).status_code == 400


class TestCatalogEndpoints:

    def test_products_sorted_by_title(self, authed_client, fake_shopify):
        fake_shopify.add_product(3, "c", "apple")

        response = authed_client.get("/products")

        assert response.status_code == 200
        assert [p["title"] for p in response.json()["products"]] == ["apple", "Product A", "Product B"]
        assert response.json()["products"][0] == {"title": "apple", "handle": "c", "url": "/products/c"}
        assert response.headers["Cache-Control"] == "private, max-age=300"

    def test_products_requires_session(self, client):
        assert client.get("/products").status_code == 401

    def test_tags(self, authed_client, fake_shopify):
        fake_shopify.rest_orders = [{"tags": "vip, wholesale"}, {"tags": "vip"}]

        response = authed_client.get("/tags")

        assert response.json() == {"tags": ["vip", "wholesale"]}


class TestExportEndpoint:

    def test_pdf_attachment(self, authed_client):
        body = {
            "pages": [{
                "url": "/products/a",
                "productTitle": "Product A",
                "sessions": 100,
                "totalRevenue": 500.0,
                "revenuePerVisitor": 5.0,
                "conversionRate": 5.0,
                "aov": 100.0,
                "orderCount": 5,
            }],
            "dateRange": BODY["dateRange"],
            "attribution": "full_order_total",
        }

        response = authed_client.post("/export", json=body)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == (
            'attachment; filename="pagelens-analytics-2024-01-01-to-2024-01-31.pdf"'
        )
        assert response.content.startswith(b"%PDF")

    def test_no_pages(self, authed_client):
        response = authed_client.post("/export", json={"pages": [], "dateRange": BODY["dateRange"]})

        assert response.status_code == 400
        assert response.json()["error"] == "No data to export"

    def test_requires_session(self, client):
        assert client.post("/export", json={"pages": []}).status_code == 401


class TestOperationalEndpoints:

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.json() == {"status": "alive"}
        assert "X-Request-ID" in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "pagelens_pipeline_stage_seconds" in response.text
