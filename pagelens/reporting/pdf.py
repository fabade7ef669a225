"""
PDF Report Rendering

Landscape A4 comparison report: header block, one table row per page, best
and worst value of each metric highlighted when more than one page is shown.
"""

import io
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from pagelens.analytics.models import DateRange, TagFilter
from pagelens.analytics.schemas import PageMetricsOut

logger = structlog.get_logger(__name__)

REPORT_TITLE = "PageLens Analytics Report"

COLUMNS = ["URL", "Sessions", "Revenue", "Rev/Visitor", "Conv. Rate", "AOV", "Orders"]
COLUMN_WIDTHS_MM = [80, 28, 32, 32, 28, 28, 24]

# Column label -> PageMetricsOut attribute
RANKED_COLUMNS = {
    "Sessions": "sessions",
    "Revenue": "total_revenue",
    "Rev/Visitor": "revenue_per_visitor",
    "Conv. Rate": "conversion_rate",
    "AOV": "aov",
    "Orders": "order_count",
}

ATTRIBUTION_LABELS = {
    "full_order_total": "Full order total",
    "line_item_only": "Product line items only",
}

# RGB 0..1
TEXT = (60 / 255, 60 / 255, 60 / 255)
MUTED = (100 / 255, 100 / 255, 100 / 255)
BEST = (22 / 255, 163 / 255, 74 / 255)
WORST = (220 / 255, 38 / 255, 38 / 255)
HEADER_FILL = (245 / 255, 245 / 255, 245 / 255)
STRIPE_FILL = (250 / 255, 250 / 255, 250 / 255)

MARGIN = 14 * mm
ROW_HEIGHT = 10 * mm


def report_filename(date_range: DateRange) -> str:
    return f"pagelens-analytics-{date_range.start.isoformat()}-to-{date_range.end.isoformat()}.pdf"


def truncate_url(url: str, max_length: int = 40) -> str:
    if len(url) <= max_length:
        return url
    return url[: max_length - 3] + "..."


def find_best_worst(pages: Sequence[PageMetricsOut]) -> Tuple[Dict[str, int], Dict[str, int]]:
    """
    Row index of the highest and lowest value per metric column.

    Columns where every row ties are left out; nothing is ranked for fewer
    than two rows. The first row wins ties.
    """
    best: Dict[str, int] = {}
    worst: Dict[str, int] = {}
    if len(pages) < 2:
        return best, worst

    for column, attribute in RANKED_COLUMNS.items():
        best_idx = worst_idx = 0
        for i, page in enumerate(pages):
            value = getattr(page, attribute)
            if value > getattr(pages[best_idx], attribute):
                best_idx = i
            if value < getattr(pages[worst_idx], attribute):
                worst_idx = i
        if best_idx != worst_idx:
            best[column] = best_idx
            worst[column] = worst_idx

    return best, worst


def format_row(page: PageMetricsOut) -> List[str]:
    return [
        truncate_url(page.url),
        f"{page.sessions:,}",
        f"${page.total_revenue:,.2f}",
        f"${page.revenue_per_visitor:.2f}",
        f"{page.conversion_rate:.2f}%",
        f"${page.aov:.2f}",
        f"{page.order_count:,}",
    ]


def _header_lines(
    date_range: DateRange,
    attribution: Optional[str],
    tag_filter: Optional[TagFilter],
    generated_at: datetime,
) -> List[str]:
    lines = [f"Date Range: {date_range.start.isoformat()} to {date_range.end.isoformat()}"]
    if attribution:
        lines.append(f"Attribution: {ATTRIBUTION_LABELS.get(attribution, attribution)}")
    if tag_filter is not None and tag_filter.is_active:
        lines.append(f"Tag Filter: {f' {tag_filter.logic.value} '.join(tag_filter.tags)}")
    lines.append(f"Generated: {generated_at.strftime('%Y-%m-%d %H:%M UTC')}")
    return lines


class _ReportCanvas:
    """Cursor-based drawing over a landscape A4 canvas"""

    def __init__(self, buffer: io.BytesIO):
        self.canvas = canvas.Canvas(buffer, pagesize=landscape(A4))
        self.width, self.height = landscape(A4)
        self.page_number = 1
        self.y = self.height - 20 * mm

    def text(self, value: str, x: float, size: int = 8, bold: bool = False, color=TEXT) -> None:
        self.canvas.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.canvas.setFillColorRGB(*color)
        self.canvas.drawString(x, self.y, value)

    def band(self, fill) -> None:
        self.canvas.setFillColorRGB(*fill)
        self.canvas.rect(MARGIN, self.y - 3 * mm, self.width - 2 * MARGIN, ROW_HEIGHT, stroke=0, fill=1)

    def footer(self) -> None:
        self.canvas.setFont("Helvetica", 8)
        self.canvas.setFillColorRGB(150 / 255, 150 / 255, 150 / 255)
        self.canvas.drawString(MARGIN, 10 * mm, "PageLens Analytics")
        self.canvas.drawRightString(self.width - MARGIN, 10 * mm, f"Page {self.page_number}")

    def new_page(self) -> None:
        self.footer()
        self.canvas.showPage()
        self.page_number += 1
        self.y = self.height - 20 * mm

    def finish(self) -> None:
        self.footer()
        self.canvas.save()


def _draw_table_header(report: _ReportCanvas) -> None:
    report.band(HEADER_FILL)
    x = MARGIN
    for column, width in zip(COLUMNS, COLUMN_WIDTHS_MM):
        report.text(column, x + 2 * mm, size=9, bold=True)
        x += width * mm
    report.y -= ROW_HEIGHT + 4 * mm


def render_comparison_pdf(
    pages: Sequence[PageMetricsOut],
    date_range: DateRange,
    attribution: Optional[str] = None,
    tag_filter: Optional[TagFilter] = None,
    generated_at: Optional[datetime] = None,
) -> bytes:
    """
    Render a comparison table to PDF bytes.

    Args:
        pages: Page metrics in display order
        date_range: Reported date range
        attribution: Revenue attribution strategy name
        tag_filter: Order tag filter applied to the figures
        generated_at: Timestamp printed in the header (defaults to now)
    """
    generated_at = generated_at or datetime.now(timezone.utc)
    buffer = io.BytesIO()
    report = _ReportCanvas(buffer)

    report.text(REPORT_TITLE, MARGIN, size=20, bold=True)
    report.y -= 8 * mm
    for line in _header_lines(date_range, attribution, tag_filter, generated_at):
        report.text(line, MARGIN, size=10, color=MUTED)
        report.y -= 6 * mm

    report.canvas.setStrokeColorRGB(200 / 255, 200 / 255, 200 / 255)
    report.canvas.line(MARGIN, report.y, report.width - MARGIN, report.y)
    report.y -= 8 * mm

    _draw_table_header(report)
    best, worst = find_best_worst(pages)

    for row_index, page in enumerate(pages):
        if report.y < 20 * mm:
            report.new_page()
            _draw_table_header(report)

        if row_index % 2 == 0:
            report.band(STRIPE_FILL)

        x = MARGIN
        for i, (value, width) in enumerate(zip(format_row(page), COLUMN_WIDTHS_MM)):
            column = COLUMNS[i]
            if best.get(column) == row_index:
                color = BEST
            elif worst.get(column) == row_index:
                color = WORST
            else:
                color = TEXT
            report.text(value, x + 2 * mm, color=color)
            x += width * mm
        report.y -= ROW_HEIGHT

    report.finish()
    logger.info("PDF report rendered", pages=len(pages), report_pages=report.page_number)
    return buffer.getvalue()
