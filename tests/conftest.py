"""
Test Suite Configuration
"""
import os
from typing import AsyncGenerator

os.environ["APP_ENV"] = "testing"
os.environ["APP_URL"] = "https://app.example.com"
os.environ["SECRET_KEY"] = "test-session-secret"
os.environ["SHOPIFY_API_KEY"] = "test-api-key"
os.environ["SHOPIFY_API_SECRET"] = "test-api-secret"
os.environ["LOG_FORMAT"] = "text"

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from pagelens.analytics.models import ShopCredentials
from pagelens.config import Settings, ShopifySettings, PipelineSettings, get_settings
from pagelens.database.models import Base
from pagelens.gateway.client import ShopifyGateway
from pagelens.serving.cache import ComparisonCache

get_settings.cache_clear()

from tests.helpers import SHOP, FakeRedis, FakeShopify, no_sleep


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(APP_ENV="testing", DEBUG=True)


@pytest.fixture
def shopify_settings() -> ShopifySettings:
    return ShopifySettings(max_retries=2, pacing_delay_seconds=0, request_timeout_seconds=5)


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings()


@pytest.fixture
def credentials() -> ShopCredentials:
    return ShopCredentials(shop=SHOP, access_token="shpat_test")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis) -> ComparisonCache:
    return ComparisonCache(namespace="test", default_ttl=1800, client_factory=lambda: fake_redis)


@pytest.fixture
def fake_shopify() -> FakeShopify:
    shopify = FakeShopify()
    shopify.add_product(1, "a", "Product A")
    shopify.add_product(2, "b", "Product B")
    return shopify


@pytest.fixture
async def http_client(fake_shopify) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_shopify))
    yield client
    await client.aclose()


@pytest.fixture
def gateway_factory(http_client, shopify_settings):
    def factory(creds: ShopCredentials) -> ShopifyGateway:
        return ShopifyGateway(creds, shopify_settings, client=http_client, sleep=no_sleep)

    return factory


@pytest.fixture
def gateway(gateway_factory, credentials) -> ShopifyGateway:
    return gateway_factory(credentials)


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def test_db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session"""
    session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()
