"""
OAuth Install Endpoints

GET /auth starts the install handshake; GET /auth/callback verifies the
signed callback, stores the shop's access token and opens a session.
"""

from typing import Optional

import httpx
import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from pagelens.analytics.errors import (
    InvalidRequestError,
    SignatureMismatchError,
    UnexpectedError,
    UpstreamDegradedError,
)
from pagelens.analytics.models import ShopCredentials
from pagelens.config import get_settings
from pagelens.gateway.client import ShopifyGateway
from pagelens.gateway.oauth import (
    build_authorize_url,
    exchange_code_for_token,
    is_valid_shop_domain,
    verify_hmac,
)
from pagelens.serving.api.dependencies import get_http_client, get_shop_store
from pagelens.serving.auth import ShopStore, set_session_cookie

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/auth")
async def begin_install(shop: Optional[str] = None) -> RedirectResponse:
    """Redirect to the shop's authorization page."""
    settings = get_settings()
    if not is_valid_shop_domain(shop, settings.shopify.shop_domain_suffix):
        raise InvalidRequestError("Missing or invalid shop parameter")

    redirect_uri = f"{settings.app_url}/auth/callback"
    logger.info("OAuth install started", shop=shop)
    return RedirectResponse(build_authorize_url(shop, redirect_uri, settings.shopify))


@router.get("/auth/callback")
async def complete_install(
    request: Request,
    client: httpx.AsyncClient = Depends(get_http_client),
    store: ShopStore = Depends(get_shop_store),
) -> RedirectResponse:
    """
    Finish the install handshake.

    Raises:
        InvalidRequestError: missing parameters or malformed shop
        SignatureMismatchError: HMAC does not verify
        UnexpectedError: token exchange failed
    """
    settings = get_settings()
    params = list(request.query_params.multi_items())
    query = dict(params)
    shop, code = query.get("shop"), query.get("code")

    if not shop or not code or not query.get("hmac"):
        raise InvalidRequestError("Missing required parameters")
    if not is_valid_shop_domain(shop, settings.shopify.shop_domain_suffix):
        raise InvalidRequestError("Missing or invalid shop parameter")
    if not verify_hmac(params, settings.shopify.api_secret.get_secret_value()):
        logger.warning("OAuth callback HMAC mismatch", shop=shop)
        raise SignatureMismatchError()

    try:
        token = await exchange_code_for_token(client, shop, code, settings.shopify)
    except UpstreamDegradedError as e:
        raise UnexpectedError("Failed to complete authentication") from e

    credentials = ShopCredentials(shop=shop, access_token=token["access_token"])
    async with ShopifyGateway(credentials, settings.shopify, client=client) as gateway:
        timezone = await gateway.fetch_timezone()

    await store.save(shop, token["access_token"], token["scope"], timezone)
    logger.info("OAuth install completed", shop=shop, timezone=timezone)

    response = RedirectResponse(f"{settings.app_url}/dashboard", status_code=302)
    set_session_cookie(response, shop, settings)
    return response
