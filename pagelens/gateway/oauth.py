"""
OAuth install handshake against the storefront platform.
"""

import hashlib
import hmac
import re
from typing import Dict, Iterable, Optional, Tuple
from urllib.parse import urlencode

import httpx
import structlog

from pagelens.analytics.errors import UpstreamDegradedError
from pagelens.config.settings import ShopifySettings

logger = structlog.get_logger(__name__)


def is_valid_shop_domain(shop: Optional[str], suffix: str) -> bool:
    """A bare `<name><suffix>` hostname: no scheme, path, port or extra labels."""
    if not shop:
        return False
    pattern = rf"[a-z0-9][a-z0-9-]*{re.escape(suffix)}"
    return re.fullmatch(pattern, shop, flags=re.IGNORECASE) is not None


def build_authorize_url(shop: str, redirect_uri: str, config: ShopifySettings) -> str:
    query = urlencode({
        "client_id": config.api_key,
        "scope": config.scopes,
        "redirect_uri": redirect_uri,
    })
    return f"https://{shop}/admin/oauth/authorize?{query}"


def compute_hmac(params: Iterable[Tuple[str, str]], secret: str) -> str:
    """
    HMAC-SHA256 hex digest over sorted key=value pairs joined with '&',
    leaving out the hmac parameter itself.
    """
    entries = sorted((k, v) for k, v in params if k != "hmac")
    message = "&".join(f"{k}={v}" for k, v in entries)
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_hmac(params: Iterable[Tuple[str, str]], secret: str) -> bool:
    """Constant-time check of the callback signature."""
    params = list(params)
    received = next((v for k, v in params if k == "hmac"), None)
    if not secret or not received:
        return False
    expected = compute_hmac(params, secret)
    return hmac.compare_digest(expected.encode(), received.encode())


async def exchange_code_for_token(
    client: httpx.AsyncClient,
    shop: str,
    code: str,
    config: ShopifySettings,
) -> Dict[str, str]:
    """
    Trade an authorization code for an offline access token.

    Returns:
        {"access_token": ..., "scope": ...}

    Raises:
        UpstreamDegradedError: if the exchange fails
    """
    try:
        response = await client.post(
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": config.api_key,
                "client_secret": config.api_secret.get_secret_value(),
                "code": code,
            },
            timeout=config.request_timeout_seconds,
        )
    except httpx.HTTPError as exc:
        logger.error("Token exchange transport error", shop=shop, error=str(exc))
        raise UpstreamDegradedError("Token exchange failed", shop=shop) from exc

    if response.is_error:
        logger.error("Token exchange rejected", shop=shop, status_code=response.status_code, body=response.text[:500])
        raise UpstreamDegradedError("Token exchange failed", shop=shop, status_code=response.status_code)

    payload = response.json()
    if not payload.get("access_token"):
        raise UpstreamDegradedError("Token exchange returned no access token", shop=shop)
    return {"access_token": payload["access_token"], "scope": payload.get("scope", "")}
