"""
Analytics Module
"""
from .errors import PageLensError, AuthRequiredError, InvalidRequestError, UpstreamTimeoutError
from .models import DateRange, TagFilter, TagLogic, PageMetrics, ComparisonResult

__all__ = [
    "PageLensError",
    "AuthRequiredError",
    "InvalidRequestError",
    "UpstreamTimeoutError",
    "DateRange",
    "TagFilter",
    "TagLogic",
    "PageMetrics",
    "ComparisonResult",
]
