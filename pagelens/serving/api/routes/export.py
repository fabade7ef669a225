"""
Report Export Endpoint
"""

import structlog
from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from pagelens.analytics.errors import InvalidRequestError, UnexpectedError
from pagelens.analytics.models import ShopCredentials
from pagelens.analytics.schemas import ExportRequest
from pagelens.reporting.pdf import render_comparison_pdf, report_filename
from pagelens.serving.api.dependencies import require_credentials

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/export")
async def export_report(
    body: ExportRequest,
    credentials: ShopCredentials = Depends(require_credentials),
) -> Response:
    """Render the displayed comparison as a PDF attachment."""
    if not body.pages:
        raise InvalidRequestError("No data to export")
    if body.date_range is None:
        raise InvalidRequestError("Date range is required")

    date_range = body.date_range.to_domain()
    tag_filter = body.tag_filter.to_domain() if body.tag_filter else None

    try:
        content = await run_in_threadpool(
            render_comparison_pdf,
            body.pages,
            date_range,
            body.attribution,
            tag_filter,
        )
    except Exception as e:
        logger.exception("PDF export failed", shop=credentials.shop)
        raise UnexpectedError("Failed to generate PDF") from e

    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{report_filename(date_range)}"'},
    )
