"""
Analytics Orchestrator

Runs one comparison request through

    SessionCheck -> CacheCheck -> Resolve -> FetchData -> Compute -> CacheWrite -> Respond

Session, cache, resolve and fetch stages each have their own time budget.
Resolve/fetch failures surface as a single UpstreamTimeoutError; sub-call
failures inside the fetch fan-out degrade the affected page to zero. The
cache write runs in the background and never gates the response.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

import structlog
from prometheus_client import Histogram

from pagelens.analytics import metrics
from pagelens.analytics.errors import (
    AuthRequiredError,
    InvalidRequestError,
    UnexpectedError,
    UpstreamTimeoutError,
)
from pagelens.analytics.matcher import build_page_request
from pagelens.analytics.models import (
    CatalogEntity,
    ComparisonResult,
    DateRange,
    MatchOutcome,
    OrderRecord,
    PageRequest,
    ShopCredentials,
    TagFilter,
    UNMATCHED,
    UrlGroup,
)
from pagelens.analytics.schemas import comparison_payload
from pagelens.config.logging import bind_shop
from pagelens.config.settings import PipelineSettings
from pagelens.gateway.client import ShopifyGateway
from pagelens.serving.cache import ComparisonCache, cache_key

logger = structlog.get_logger(__name__)

STAGE_DURATION = Histogram(
    "pagelens_pipeline_stage_seconds",
    "Duration of analytics pipeline stages",
    ["stage"],
)

SessionLoader = Callable[[Optional[str]], Awaitable[Optional[ShopCredentials]]]
GatewayFactory = Callable[[ShopCredentials], ShopifyGateway]


@dataclass(frozen=True)
class ComparisonRequest:
    """Validated analytics request"""
    urls: Tuple[str, ...]
    date_range: DateRange
    tag_filter: Optional[TagFilter] = None
    groups: Tuple[UrlGroup, ...] = ()
    refresh: bool = False

    def __post_init__(self) -> None:
        if not any(url.strip() for url in self.urls):
            raise InvalidRequestError("At least one URL is required")

    def cache_params(self, attribution: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "urls": list(self.urls),
            "dateRange": self.date_range.as_dict(),
            "tagFilter": self.tag_filter.as_dict() if self.tag_filter else None,
            "attribution": attribution,
        }
        if self.groups:
            params["groups"] = [{"name": g.name, "urls": list(g.urls)} for g in self.groups]
        return params


@dataclass
class ComparisonOutcome:
    payload: Dict[str, Any]
    cache_hit: bool = False


@dataclass
class FetchedData:
    analytics: Dict[str, MatchOutcome] = field(default_factory=dict)
    orders: Dict[int, List[OrderRecord]] = field(default_factory=dict)


class AnalyticsOrchestrator:
    """
    Sequences resolver, gateway, metric engine and cache for one request.

    Example:
        orchestrator = AnalyticsOrchestrator(load_session, make_gateway, cache, settings.pipeline)
        outcome = await orchestrator.run(cookie_value, request)
    """

    def __init__(
        self,
        session_loader: SessionLoader,
        gateway_factory: GatewayFactory,
        cache: ComparisonCache,
        config: PipelineSettings,
    ):
        self._session_loader = session_loader
        self._gateway_factory = gateway_factory
        self._cache = cache
        self.config = config
        self.strategy = metrics.get_strategy(config.attribution_strategy)
        self._pending_writes: Set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def run(self, session_token: Optional[str], request_factory: Callable[[], ComparisonRequest]) -> ComparisonOutcome:
        """
        Execute the pipeline.

        `request_factory` builds the validated request; it runs after the
        session check so unauthenticated callers never reach validation.

        Raises:
            AuthRequiredError, InvalidRequestError, UpstreamTimeoutError, UnexpectedError
        """
        started = time.perf_counter()
        credentials = await self._check_session(session_token)
        request = request_factory()
        tenant = credentials.shop
        log = logger.bind(urls=len(request.urls))
        log.info(
            "Analytics request started",
            start=request.date_range.start.isoformat(),
            end=request.date_range.end.isoformat(),
            refresh=request.refresh,
        )

        key = cache_key(request.cache_params(self.strategy.name))

        if request.refresh:
            await self._invalidate(tenant)
        else:
            cached = await self._cache_lookup(tenant, key)
            if cached is not None:
                log.info("Cache hit", duration_ms=round((time.perf_counter() - started) * 1000, 2))
                return ComparisonOutcome(payload=cached, cache_hit=True)

        gateway = self._gateway_factory(credentials)
        try:
            pages = [build_page_request(url) for url in request.urls]
            entities = await self._resolve(gateway, request)
            fetched = await self._fetch(gateway, request, pages, entities)
        finally:
            await gateway.aclose()

        with STAGE_DURATION.labels(stage="compute").time():
            result = self.compute(request, pages, entities, fetched)
            payload = comparison_payload(result)

        self._schedule_cache_write(tenant, key, payload)
        log.info("Analytics response ready", duration_ms=round((time.perf_counter() - started) * 1000, 2))
        return ComparisonOutcome(payload=payload, cache_hit=False)

    async def flush(self) -> None:
        """Wait for background cache writes."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _check_session(self, session_token: Optional[str]) -> ShopCredentials:
        if not session_token:
            raise AuthRequiredError()
        try:
            with STAGE_DURATION.labels(stage="session").time():
                credentials = await asyncio.wait_for(
                    self._session_loader(session_token),
                    timeout=self.config.session_timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            logger.error("Session lookup timed out", timeout=self.config.session_timeout_seconds)
            raise UnexpectedError("Session lookup failed. Please reconnect your store.") from e
        except Exception as e:
            logger.exception("Session lookup failed")
            raise UnexpectedError("Session lookup failed. Please reconnect your store.") from e
        if credentials is None:
            raise AuthRequiredError()
        bind_shop(credentials.shop)
        return credentials

    async def _cache_lookup(self, tenant: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            with STAGE_DURATION.labels(stage="cache").time():
                return await asyncio.wait_for(
                    self._cache.get(tenant, key),
                    timeout=self.config.cache_timeout_seconds,
                )
        except Exception as e:
            logger.warning("Cache lookup failed, proceeding without cache", error=str(e), error_type=type(e).__name__)
            return None

    async def _invalidate(self, tenant: str) -> None:
        try:
            await asyncio.wait_for(
                self._cache.invalidate_all(tenant),
                timeout=self.config.cache_timeout_seconds,
            )
        except Exception as e:
            logger.warning("Cache clear failed", error=str(e), error_type=type(e).__name__)

    async def _resolve(self, gateway: ShopifyGateway, request: ComparisonRequest) -> Dict[str, CatalogEntity]:
        try:
            with STAGE_DURATION.labels(stage="resolve").time():
                entities = await asyncio.wait_for(
                    gateway.resolve_entities(list(request.urls)),
                    timeout=self.config.resolve_timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            logger.error("Product resolution timed out", timeout=self.config.resolve_timeout_seconds)
            raise UpstreamTimeoutError(stage="resolve") from e
        except Exception as e:
            logger.exception("Product resolution failed")
            raise UpstreamTimeoutError(stage="resolve") from e

        logger.info("Products resolved", resolved=len(entities), requested=len(request.urls))
        return entities

    async def _fetch(
        self,
        gateway: ShopifyGateway,
        request: ComparisonRequest,
        pages: Sequence[PageRequest],
        entities: Dict[str, CatalogEntity],
    ) -> FetchedData:
        paths = list(dict.fromkeys(page.normalized_path for page in pages))
        unique_entities = list({entity.id: entity for entity in entities.values()}.values())

        try:
            with STAGE_DURATION.labels(stage="fetch").time():
                results = await asyncio.wait_for(
                    asyncio.gather(
                        self._analytics_for(gateway, paths, request.date_range),
                        *(self._orders_for(gateway, entity, request.date_range) for entity in unique_entities),
                    ),
                    timeout=self.config.fetch_timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            logger.error("Data fetch timed out", timeout=self.config.fetch_timeout_seconds)
            raise UpstreamTimeoutError(stage="fetch") from e
        except Exception as e:
            logger.exception("Data fetch failed")
            raise UpstreamTimeoutError(stage="fetch") from e

        analytics, order_lists = results[0], results[1:]
        return FetchedData(
            analytics=analytics,
            orders={entity.id: orders for entity, orders in zip(unique_entities, order_lists)},
        )

    async def _analytics_for(
        self,
        gateway: ShopifyGateway,
        paths: List[str],
        date_range: DateRange,
    ) -> Dict[str, MatchOutcome]:
        try:
            return await gateway.query_analytics(paths, date_range)
        except Exception as e:
            logger.warning("Analytics query degraded", error=str(e), error_type=type(e).__name__)
            return {path: UNMATCHED for path in paths}

    async def _orders_for(
        self,
        gateway: ShopifyGateway,
        entity: CatalogEntity,
        date_range: DateRange,
    ) -> List[OrderRecord]:
        try:
            return await gateway.fetch_orders(entity.id, date_range)
        except Exception as e:
            logger.warning(
                "Order fetch degraded",
                product_id=entity.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return []

    def compute(
        self,
        request: ComparisonRequest,
        pages: Sequence[PageRequest],
        entities: Dict[str, CatalogEntity],
        fetched: FetchedData,
    ) -> ComparisonResult:
        """Metric set for every requested page, in request order."""
        page_metrics = []
        for page in pages:
            entity = entities.get(page.url)
            outcome = fetched.analytics.get(page.normalized_path, UNMATCHED)
            orders = fetched.orders.get(entity.id, []) if entity else []

            if entity is None:
                logger.info("No product for page", url=page.url)

            page_metrics.append(
                metrics.compute_page_metrics(
                    url=page.url,
                    title=entity.title if entity else "Unknown Product",
                    sessions=outcome.sessions,
                    entity=entity,
                    orders=orders,
                    strategy=self.strategy,
                    tag_filter=request.tag_filter,
                )
            )

        groups = tuple(metrics.aggregate_group(group, page_metrics) for group in request.groups)
        return ComparisonResult(
            pages=tuple(page_metrics),
            groups=groups,
            date_range=request.date_range,
            tag_filter=request.tag_filter,
            attribution=self.strategy.name,
            computed_at=datetime.now(timezone.utc),
        )

    # -------------------------------------------------------------------------
    # Cache write
    # -------------------------------------------------------------------------

    def _schedule_cache_write(self, tenant: str, key: str, payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(self._write_cache(tenant, key, payload))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _write_cache(self, tenant: str, key: str, payload: Dict[str, Any]) -> None:
        try:
            stored = await self._cache.set(tenant, key, payload)
        except Exception as e:
            logger.warning("Failed to cache results", error=str(e))
            return
        if stored:
            logger.debug("Results cached", shop=tenant, key=key)
