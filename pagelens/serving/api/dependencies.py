"""
FastAPI dependencies

Process-wide collaborators (shared HTTP client, comparison cache,
orchestrator) are created at startup and handed to routes through
overridable dependency functions.
"""

from typing import Callable, Optional

import httpx
import structlog
from fastapi import Depends, Request

from pagelens.analytics.errors import AuthRequiredError
from pagelens.analytics.models import ShopCredentials
from pagelens.analytics.orchestrator import AnalyticsOrchestrator
from pagelens.config import get_settings
from pagelens.config.logging import bind_shop
from pagelens.gateway.client import ShopifyGateway
from pagelens.serving.auth import SessionLoader, ShopStore
from pagelens.serving.cache import ComparisonCache

logger = structlog.get_logger(__name__)

GatewayFactory = Callable[[ShopCredentials], ShopifyGateway]

_http_client: Optional[httpx.AsyncClient] = None
_orchestrator: Optional[AnalyticsOrchestrator] = None


async def init_http_client() -> httpx.AsyncClient:
    """Create the shared upstream HTTP client"""
    global _http_client

    if _http_client is None:
        settings = get_settings()
        _http_client = httpx.AsyncClient(timeout=settings.shopify.request_timeout_seconds)
    return _http_client


async def close_http_client() -> None:
    global _http_client

    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def get_http_client() -> httpx.AsyncClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized. Call init_http_client() first.")
    return _http_client


def get_shop_store() -> ShopStore:
    return ShopStore()


def get_session_loader(store: ShopStore = Depends(get_shop_store)) -> SessionLoader:
    settings = get_settings()
    return SessionLoader(store, settings.security.secret_key.get_secret_value())


def get_gateway_factory(client: httpx.AsyncClient = Depends(get_http_client)) -> GatewayFactory:
    settings = get_settings()

    def factory(credentials: ShopCredentials) -> ShopifyGateway:
        return ShopifyGateway(credentials, settings.shopify, client=client)

    return factory


def build_orchestrator() -> AnalyticsOrchestrator:
    """Process-wide orchestrator; built once the HTTP client exists"""
    global _orchestrator

    if _orchestrator is None:
        settings = get_settings()
        _orchestrator = AnalyticsOrchestrator(
            session_loader=SessionLoader(ShopStore(), settings.security.secret_key.get_secret_value()),
            gateway_factory=get_gateway_factory(get_http_client()),
            cache=ComparisonCache(),
            config=settings.pipeline,
        )
    return _orchestrator


async def shutdown_orchestrator() -> None:
    """Wait for background cache writes, then drop the orchestrator"""
    global _orchestrator

    if _orchestrator is not None:
        await _orchestrator.flush()
        _orchestrator = None


def get_orchestrator() -> AnalyticsOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not initialized. Call build_orchestrator() first.")
    return _orchestrator


def session_token(request: Request) -> Optional[str]:
    """Raw session cookie value"""
    return request.cookies.get(get_settings().security.session_cookie_name)


async def require_credentials(
    request: Request,
    loader: SessionLoader = Depends(get_session_loader),
) -> ShopCredentials:
    """Credentials of the session's shop; 401 otherwise."""
    credentials = await loader(session_token(request))
    if credentials is None:
        raise AuthRequiredError()
    bind_shop(credentials.shop)
    return credentials
