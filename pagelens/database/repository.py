"""
Shop credential repository.
"""

from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pagelens.database.models import Shop

logger = structlog.get_logger(__name__)


class ShopRepository:
    """Reads and upserts Shop rows within a caller-owned session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_domain(self, domain: str) -> Optional[Shop]:
        result = await self.session.execute(select(Shop).where(Shop.domain == domain))
        return result.scalar_one_or_none()

    async def upsert(self, domain: str, access_token: str, scope: Optional[str], timezone: str) -> Shop:
        """Insert a shop or overwrite the credentials of an existing one."""
        shop = await self.get_by_domain(domain)
        if shop is None:
            shop = Shop(domain=domain, access_token=access_token, scope=scope, timezone=timezone)
            self.session.add(shop)
            logger.info("Shop installed", shop=domain)
        else:
            shop.access_token = access_token
            shop.scope = scope
            shop.timezone = timezone
            logger.info("Shop credentials updated", shop=domain)

        await self.session.flush()
        return shop
