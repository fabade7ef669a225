"""
Analytics Domain Model

Request-scoped records used by the reconciliation pipeline:

- Request shape: ShopCredentials, DateRange, TagFilter, UrlGroup, PageRequest
- Upstream records: CatalogEntity, AnalyticsRow, LineItem, OrderRecord
- Match outcome: Matched | Unmatched
- Output: PageTotals, PageMetrics, GroupMetrics, ComparisonResult
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional, Tuple, Union


# =============================================================================
# REQUEST SHAPE
# =============================================================================

@dataclass(frozen=True)
class ShopCredentials:
    """Opaque tenant credentials handed to the gateway"""
    shop: str
    access_token: str = field(repr=False)


class TagLogic(str, Enum):
    """How filter tags combine"""
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class DateRange:
    """Inclusive reporting window in shop-local calendar days"""
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Date range start {self.start} is after end {self.end}")

    def as_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class TagFilter:
    """Order tag predicate; an empty tag list disables filtering"""
    tags: Tuple[str, ...] = ()
    logic: TagLogic = TagLogic.OR

    @property
    def is_active(self) -> bool:
        return any(tag.strip() for tag in self.tags)

    def as_dict(self) -> dict:
        return {"tags": list(self.tags), "logic": self.logic.value}


@dataclass(frozen=True)
class UrlGroup:
    """Named set of requested URLs reported as one aggregate row"""
    name: str
    urls: Tuple[str, ...]


@dataclass(frozen=True)
class PageRequest:
    """A requested URL and its routable path"""
    url: str
    normalized_path: str


# =============================================================================
# UPSTREAM RECORDS
# =============================================================================

@dataclass(frozen=True)
class CatalogEntity:
    """Catalog product resolved from a page slug"""
    id: int
    title: str
    slug: str

    @property
    def url(self) -> str:
        return f"/products/{self.slug}"


@dataclass(frozen=True)
class AnalyticsRow:
    """One group-by bucket of an analytics query"""
    group_key: str  # case-folded path or title
    session_count: int
    conversion_rate: float  # 0..1


@dataclass(frozen=True)
class LineItem:
    """Order line; product_id is missing for deleted or custom products"""
    title: str
    unit_price: Decimal
    quantity: int
    product_id: Optional[int] = None

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class OrderRecord:
    """Order as read from the order record surface"""
    id: str
    total_amount: Decimal
    created_at: datetime
    tags: FrozenSet[str] = frozenset()
    catalog_entity_id: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    line_items: Tuple[LineItem, ...] = ()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None


# =============================================================================
# MATCH OUTCOME
# =============================================================================

@dataclass(frozen=True)
class Matched:
    """An upstream row was found for the requested key"""
    row: AnalyticsRow

    @property
    def sessions(self) -> int:
        return self.row.session_count

    @property
    def conversion_rate(self) -> float:
        return self.row.conversion_rate


@dataclass(frozen=True)
class Unmatched:
    """No upstream row matched; reads as zero"""

    @property
    def sessions(self) -> int:
        return 0

    @property
    def conversion_rate(self) -> float:
        return 0.0


UNMATCHED = Unmatched()

MatchOutcome = Union[Matched, Unmatched]


# =============================================================================
# OUTPUT
# =============================================================================

@dataclass(frozen=True)
class PageTotals:
    """Unrounded per-page inputs to the derived metrics"""
    sessions: int = 0
    revenue: Decimal = Decimal("0")
    order_count: int = 0

    def __add__(self, other: "PageTotals") -> "PageTotals":
        return PageTotals(
            sessions=self.sessions + other.sessions,
            revenue=self.revenue + other.revenue,
            order_count=self.order_count + other.order_count,
        )


@dataclass(frozen=True)
class PageMetrics:
    """Derived metric set for one requested URL"""
    url: str
    title: str
    sessions: int
    total_revenue: Decimal
    revenue_per_visitor: Decimal
    conversion_rate: Decimal  # percent
    average_order_value: Decimal
    order_count: int
    totals: PageTotals = field(default_factory=PageTotals, compare=False, repr=False)


@dataclass(frozen=True)
class GroupMetrics:
    """Derived metric set for a named group of URLs"""
    name: str
    urls: Tuple[str, ...]
    sessions: int
    total_revenue: Decimal
    revenue_per_visitor: Decimal
    conversion_rate: Decimal
    average_order_value: Decimal
    order_count: int


@dataclass(frozen=True)
class ComparisonResult:
    """The unit that is cached and returned"""
    pages: Tuple[PageMetrics, ...]
    date_range: DateRange
    attribution: str
    computed_at: datetime
    tag_filter: Optional[TagFilter] = None
    groups: Tuple[GroupMetrics, ...] = ()
