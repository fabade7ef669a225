"""
Shop Session Management

The session cookie is an HS256 JWT keyed by SECRET_KEY whose subject is the
shop domain and whose expiry matches the cookie lifetime. Credentials
themselves never leave the database.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import Response
from jose import JWTError, jwt

from pagelens.analytics.models import ShopCredentials
from pagelens.config.settings import Settings
from pagelens.database.connection import get_db
from pagelens.database.repository import ShopRepository

logger = structlog.get_logger(__name__)


SESSION_ALGORITHM = "HS256"
DEFAULT_SESSION_LIFETIME = timedelta(days=30)


def sign_session(
    shop: str,
    secret: str,
    lifetime: timedelta = DEFAULT_SESSION_LIFETIME,
    now: Optional[datetime] = None,
) -> str:
    """Session token for a shop, valid for `lifetime` from `now`."""
    issued_at = now or datetime.now(timezone.utc)
    claims = {"sub": shop, "iat": issued_at, "exp": issued_at + lifetime}
    return jwt.encode(claims, secret, algorithm=SESSION_ALGORITHM)


def verify_session(token: Optional[str], secret: str) -> Optional[str]:
    """Shop domain of a session token, or None if missing, tampered or expired."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, secret, algorithms=[SESSION_ALGORITHM])
    except JWTError:
        return None
    shop = claims.get("sub")
    return shop if isinstance(shop, str) and shop else None


def set_session_cookie(response: Response, shop: str, settings: Settings) -> None:
    lifetime = timedelta(days=settings.security.session_max_age_days)
    response.set_cookie(
        key=settings.security.session_cookie_name,
        value=sign_session(shop, settings.security.secret_key.get_secret_value(), lifetime),
        max_age=int(lifetime.total_seconds()),
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


class ShopStore:
    """Database-backed credential storage."""

    async def load(self, shop: str) -> Optional[ShopCredentials]:
        async with get_db() as db:
            record = await ShopRepository(db).get_by_domain(shop)
            if record is None:
                return None
            return ShopCredentials(shop=record.domain, access_token=record.access_token)

    async def save(self, shop: str, access_token: str, scope: Optional[str], timezone: str) -> None:
        async with get_db() as db:
            await ShopRepository(db).upsert(shop, access_token, scope, timezone)


class SessionLoader:
    """
    Resolves a session cookie value to shop credentials.

    Returns None for a missing, tampered, expired or unknown session; storage errors
    propagate to the caller.
    """

    def __init__(self, store: ShopStore, secret: str):
        self.store = store
        self._secret = secret

    async def __call__(self, token: Optional[str]) -> Optional[ShopCredentials]:
        shop = verify_session(token, self._secret)
        if shop is None:
            if token:
                logger.warning("Rejected invalid or expired session cookie")
            return None
        credentials = await self.store.load(shop)
        if credentials is None:
            logger.info("Session refers to unknown shop", shop=shop)
        return credentials
