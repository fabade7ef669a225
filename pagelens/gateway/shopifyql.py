"""
ShopifyQL Query Builder

Builds analytics query text from validated parts so malformed identifiers or
dates fail here with a clear message instead of as an upstream parse error.
"""

import re
from dataclasses import dataclass, replace
from datetime import date
from typing import Optional, Tuple

IDENTIFIER_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")

SESSIONS_DATASET = "sessions"


class QueryBuildError(ValueError):
    """Raised when a query part cannot be serialized safely."""


def _identifier(value: str) -> str:
    if not IDENTIFIER_PATTERN.match(value):
        raise QueryBuildError(f"Invalid ShopifyQL identifier: {value!r}")
    return value


@dataclass(frozen=True)
class ShopifyQLQuery:
    """
    FROM <dataset> SHOW <columns> [GROUP BY <columns>] SINCE <d> UNTIL <d> [LIMIT n]

    Example:
        query = (
            ShopifyQLQuery("sessions")
            .show("sessions", "conversion_rate")
            .group_by("landing_page_path")
            .between(date(2024, 1, 1), date(2024, 1, 31))
            .limit(1000)
        )
        text = query.render()
    """

    dataset: str
    columns: Tuple[str, ...] = ()
    grouping: Tuple[str, ...] = ()
    since: Optional[date] = None
    until: Optional[date] = None
    row_limit: Optional[int] = None

    def show(self, *columns: str) -> "ShopifyQLQuery":
        return replace(self, columns=self.columns + tuple(columns))

    def group_by(self, *columns: str) -> "ShopifyQLQuery":
        return replace(self, grouping=self.grouping + tuple(columns))

    def between(self, since: date, until: date) -> "ShopifyQLQuery":
        return replace(self, since=since, until=until)

    def limit(self, row_limit: int) -> "ShopifyQLQuery":
        return replace(self, row_limit=row_limit)

    def render(self) -> str:
        """Serialize to query text, validating every part."""
        if not self.columns:
            raise QueryBuildError("A ShopifyQL query needs at least one SHOW column")
        if self.since is None or self.until is None:
            raise QueryBuildError("A ShopifyQL query needs SINCE and UNTIL dates")
        if not isinstance(self.since, date) or not isinstance(self.until, date):
            raise QueryBuildError("SINCE and UNTIL must be dates")
        if self.since > self.until:
            raise QueryBuildError(f"SINCE {self.since} is after UNTIL {self.until}")

        parts = [
            f"FROM {_identifier(self.dataset)}",
            "SHOW " + ", ".join(_identifier(c) for c in self.columns),
        ]
        if self.grouping:
            parts.append("GROUP BY " + ", ".join(_identifier(c) for c in self.grouping))
        parts.append(f"SINCE {self.since.isoformat()} UNTIL {self.until.isoformat()}")
        if self.row_limit is not None:
            if not isinstance(self.row_limit, int) or isinstance(self.row_limit, bool) or self.row_limit <= 0:
                raise QueryBuildError(f"LIMIT must be a positive integer, got {self.row_limit!r}")
            parts.append(f"LIMIT {self.row_limit}")
        return " ".join(parts)


def landing_page_sessions_query(since: date, until: date, row_limit: int) -> ShopifyQLQuery:
    """Sessions and conversion rate per landing page path."""
    return (
        ShopifyQLQuery(SESSIONS_DATASET)
        .show("sessions", "conversion_rate")
        .group_by("landing_page_path")
        .between(since, until)
        .limit(row_limit)
    )


# Submitted as a GraphQL variable so query text never needs escaping.
SHOPIFYQL_DOCUMENT = """
query RunShopifyQL($query: String!) {
  shopifyqlQuery(query: $query) {
    tableData {
      rows
      columns { name dataType }
    }
    parseErrors
  }
}
"""
