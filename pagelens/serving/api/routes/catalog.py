"""
Catalog API Endpoints

Autocomplete sources for the dashboard: product page URLs and order tags.
"""

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from pagelens.analytics.errors import UnexpectedError, UpstreamDegradedError
from pagelens.analytics.models import ShopCredentials
from pagelens.analytics.schemas import ProductListResponse, ProductOut, TagListResponse
from pagelens.config import get_settings
from pagelens.serving.api.dependencies import GatewayFactory, get_gateway_factory, require_credentials

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/products", response_model=ProductListResponse)
async def list_products(
    credentials: ShopCredentials = Depends(require_credentials),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
) -> JSONResponse:
    """All products of the shop with their page URLs, sorted by title."""
    settings = get_settings()

    async with gateway_factory(credentials) as gateway:
        try:
            entities = await gateway.list_products()
        except UpstreamDegradedError as e:
            logger.error("Failed to fetch products", shop=credentials.shop, error=str(e))
            raise UnexpectedError("Failed to fetch products") from e

    products = sorted(
        (ProductOut(title=e.title, handle=e.slug, url=e.url) for e in entities),
        key=lambda p: p.title.casefold(),
    )
    payload = ProductListResponse(products=products)

    return JSONResponse(
        content=payload.model_dump(mode="json"),
        headers={"Cache-Control": f"private, max-age={settings.cache.products_max_age_seconds}"},
    )


@router.get("/tags", response_model=TagListResponse)
async def list_tags(
    credentials: ShopCredentials = Depends(require_credentials),
    gateway_factory: GatewayFactory = Depends(get_gateway_factory),
) -> TagListResponse:
    """Distinct tags of recent orders."""
    async with gateway_factory(credentials) as gateway:
        tags = await gateway.list_order_tags()
    return TagListResponse(tags=tags)
