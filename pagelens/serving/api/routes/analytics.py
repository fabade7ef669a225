"""
Analytics API Endpoints

Page comparison: sessions, revenue and conversion metrics for a set of
landing pages over a date range.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from pagelens.analytics.errors import InvalidRequestError, PageLensError, UnexpectedError
from pagelens.analytics.orchestrator import AnalyticsOrchestrator, ComparisonRequest
from pagelens.analytics.schemas import AnalyticsRequest, AnalyticsResponse
from pagelens.serving.api.dependencies import get_orchestrator, session_token

logger = structlog.get_logger(__name__)
router = APIRouter()


def to_comparison_request(body: AnalyticsRequest) -> ComparisonRequest:
    """
    Validate a request body into the pipeline's request type.

    Raises:
        InvalidRequestError: no URLs, or an incomplete or inverted date range
    """
    urls = tuple(url.strip() for url in body.urls if url and url.strip())
    if not urls:
        raise InvalidRequestError("At least one URL is required")
    if body.date_range is None:
        raise InvalidRequestError("Date range is required")

    tag_filter = body.tag_filter.to_domain() if body.tag_filter else None
    return ComparisonRequest(
        urls=urls,
        date_range=body.date_range.to_domain(),
        tag_filter=tag_filter if tag_filter is not None and tag_filter.is_active else None,
        groups=tuple(group.to_domain() for group in body.groups),
        refresh=body.refresh,
    )


def parse_comparison_request(raw: bytes) -> ComparisonRequest:
    """
    Parse and validate a raw JSON request body.

    Raises:
        InvalidRequestError: malformed JSON, wrong field types, or any check
            of `to_comparison_request`
    """
    try:
        body = AnalyticsRequest.model_validate_json(raw)
    except ValidationError as e:
        logger.info("Request body rejected", error_count=e.error_count())
        raise InvalidRequestError("Invalid request body") from e
    return to_comparison_request(body)


@router.post("/analytics", response_model=AnalyticsResponse)
async def compare_pages(
    request: Request,
    orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """
    Compare landing pages.

    The body is parsed only after the session check, so an unauthenticated
    caller gets 401 whatever it sent. Cached results are returned as stored;
    `refresh` clears the shop's cache first. The X-Cache header reports HIT
    or MISS.
    """
    raw = await request.body()
    try:
        outcome = await orchestrator.run(session_token(request), lambda: parse_comparison_request(raw))
    except PageLensError:
        raise
    except Exception as e:
        logger.exception("Analytics pipeline failed")
        raise UnexpectedError() from e

    return JSONResponse(
        content=outcome.payload,
        headers={"X-Cache": "HIT" if outcome.cache_hit else "MISS"},
    )
