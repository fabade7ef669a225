"""
Wire Schemas

Pydantic models for the analytics request/response payloads. Field names
follow the dashboard's camelCase wire format; Python code uses snake_case.
"""

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pagelens.analytics.errors import InvalidRequestError
from pagelens.analytics.models import (
    ComparisonResult,
    DateRange,
    GroupMetrics,
    PageMetrics,
    TagFilter,
    TagLogic,
    UrlGroup,
)


class WireModel(BaseModel):
    """Base for camelCase payloads"""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# REQUEST
# =============================================================================

class DateRangeIn(WireModel):
    """Date range as sent by the dashboard; completeness is checked later"""
    start: Optional[date] = None
    end: Optional[date] = None

    def to_domain(self) -> DateRange:
        if self.start is None or self.end is None:
            raise InvalidRequestError("Date range is required")
        try:
            return DateRange(start=self.start, end=self.end)
        except ValueError as e:
            raise InvalidRequestError(str(e)) from e


class TagFilterIn(WireModel):
    tags: List[str] = Field(default_factory=list)
    logic: TagLogic = TagLogic.OR

    def to_domain(self) -> TagFilter:
        return TagFilter(tags=tuple(self.tags), logic=self.logic)


class UrlGroupIn(WireModel):
    name: str
    urls: List[str] = Field(default_factory=list)

    def to_domain(self) -> UrlGroup:
        return UrlGroup(name=self.name, urls=tuple(self.urls))


class AnalyticsRequest(WireModel):
    """POST /analytics body"""
    urls: List[str] = Field(default_factory=list)
    date_range: Optional[DateRangeIn] = Field(default=None, alias="dateRange")
    tag_filter: Optional[TagFilterIn] = Field(default=None, alias="tagFilter")
    groups: List[UrlGroupIn] = Field(default_factory=list)
    refresh: bool = False


# =============================================================================
# RESPONSE
# =============================================================================

class DateRangeOut(WireModel):
    start: str
    end: str


class PageMetricsOut(WireModel):
    url: str
    product_title: str = Field(alias="productTitle")
    sessions: int
    total_revenue: float = Field(alias="totalRevenue")
    revenue_per_visitor: float = Field(alias="revenuePerVisitor")
    conversion_rate: float = Field(alias="conversionRate")
    aov: float
    order_count: int = Field(alias="orderCount")

    @classmethod
    def from_domain(cls, page: PageMetrics) -> "PageMetricsOut":
        return cls(
            url=page.url,
            product_title=page.title,
            sessions=page.sessions,
            total_revenue=float(page.total_revenue),
            revenue_per_visitor=float(page.revenue_per_visitor),
            conversion_rate=float(page.conversion_rate),
            aov=float(page.average_order_value),
            order_count=page.order_count,
        )


class GroupMetricsOut(WireModel):
    name: str
    urls: List[str]
    sessions: int
    total_revenue: float = Field(alias="totalRevenue")
    revenue_per_visitor: float = Field(alias="revenuePerVisitor")
    conversion_rate: float = Field(alias="conversionRate")
    aov: float
    order_count: int = Field(alias="orderCount")

    @classmethod
    def from_domain(cls, group: GroupMetrics) -> "GroupMetricsOut":
        return cls(
            name=group.name,
            urls=list(group.urls),
            sessions=group.sessions,
            total_revenue=float(group.total_revenue),
            revenue_per_visitor=float(group.revenue_per_visitor),
            conversion_rate=float(group.conversion_rate),
            aov=float(group.average_order_value),
            order_count=group.order_count,
        )


class TagFilterOut(WireModel):
    tags: List[str]
    logic: str


class AnalyticsResponse(WireModel):
    """POST /analytics response; also the cached payload"""
    pages: List[PageMetricsOut]
    groups: List[GroupMetricsOut] = Field(default_factory=list)
    date_range: DateRangeOut = Field(alias="dateRange")
    tag_filter: Optional[TagFilterOut] = Field(default=None, alias="tagFilter")
    attribution: str
    last_updated: str = Field(alias="lastUpdated")


def comparison_payload(result: ComparisonResult) -> dict:
    """JSON-ready payload of a comparison result."""
    response = AnalyticsResponse(
        pages=[PageMetricsOut.from_domain(p) for p in result.pages],
        groups=[GroupMetricsOut.from_domain(g) for g in result.groups],
        date_range=DateRangeOut(**result.date_range.as_dict()),
        tag_filter=TagFilterOut(**result.tag_filter.as_dict()) if result.tag_filter else None,
        attribution=result.attribution,
        last_updated=result.computed_at.isoformat().replace("+00:00", "Z"),
    )
    return response.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# CATALOG / EXPORT
# =============================================================================

class ProductOut(WireModel):
    title: str
    handle: str
    url: str


class ProductListResponse(WireModel):
    products: List[ProductOut]


class TagListResponse(WireModel):
    tags: List[str]


class ExportRequest(WireModel):
    """POST /export body"""
    pages: List[PageMetricsOut] = Field(default_factory=list)
    date_range: Optional[DateRangeIn] = Field(default=None, alias="dateRange")
    tag_filter: Optional[TagFilterIn] = Field(default=None, alias="tagFilter")
    attribution: Optional[str] = None
