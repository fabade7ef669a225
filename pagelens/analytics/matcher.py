"""
URL and Row Matching

Maps user-supplied URLs to catalog slugs and analytics rows. Matching is
case-insensitive and tolerates one trailing-slash difference; no other
fuzzing is attempted and anything else is reported as Unmatched.
"""

import re
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import structlog

from pagelens.analytics.models import (
    AnalyticsRow,
    Matched,
    MatchOutcome,
    PageRequest,
    UNMATCHED,
)

logger = structlog.get_logger(__name__)

PRODUCT_SLUG_PATTERN = re.compile(r"^/products/([^/?#]+)")


def _ensure_leading_slash(value: str) -> str:
    return value if value.startswith("/") else f"/{value}"


def normalize_path(url: str) -> str:
    """
    Reduce a URL to its routable path.

    Absolute http(s) URLs keep only their path; anything else, including
    strings urlsplit rejects, gets a leading slash.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return _ensure_leading_slash(url)
    if parts.scheme.lower() in ("http", "https") and parts.netloc:
        return parts.path or "/"
    return _ensure_leading_slash(url)


def build_page_request(url: str) -> PageRequest:
    return PageRequest(url=url, normalized_path=normalize_path(url))


def extract_slug(path: str) -> Optional[str]:
    """Product slug from a /products/<slug> path, or None."""
    match = PRODUCT_SLUG_PATTERN.match(_ensure_leading_slash(path))
    return match.group(1) if match else None


def paths_match(target: str, candidate: str) -> bool:
    """
    Case-insensitive path equality allowing one trailing-slash mismatch.

    /products/foo matches /products/foo/ and vice versa, but never
    /products/foobar.
    """
    target = target.lower()
    candidate = candidate.lower()
    return (
        candidate == target
        or candidate == target + "/"
        or candidate + "/" == target
    )


def titles_match(left: str, right: str) -> bool:
    """Case-insensitive, whitespace-trimmed title equality."""
    return left.strip().casefold() == right.strip().casefold()


def _merge_rows(existing: AnalyticsRow, row: AnalyticsRow) -> AnalyticsRow:
    """Sum sessions of path variants; conversion rate is session-weighted."""
    sessions = existing.session_count + row.session_count
    if sessions > 0:
        conversion_rate = (
            existing.session_count * existing.conversion_rate
            + row.session_count * row.conversion_rate
        ) / sessions
    else:
        conversion_rate = 0.0
    return AnalyticsRow(
        group_key=existing.group_key,
        session_count=sessions,
        conversion_rate=conversion_rate,
    )


def match_rows(paths: Iterable[str], rows: Iterable[AnalyticsRow]) -> Dict[str, MatchOutcome]:
    """
    Attribute analytics rows to requested paths.

    Every requested path appears in the result; paths with no row are
    Unmatched. Several rows matching one path (e.g. "/a" and "/a/") are merged.
    Rows matching no requested path are dropped.
    """
    requested: List[str] = list(paths)
    merged: Dict[str, AnalyticsRow] = {}

    for row in rows:
        for path in requested:
            if not paths_match(path, row.group_key):
                continue
            current = merged.get(path)
            if current is None:
                merged[path] = AnalyticsRow(
                    group_key=path.lower(),
                    session_count=row.session_count,
                    conversion_rate=row.conversion_rate,
                )
            else:
                merged[path] = _merge_rows(current, row)

    outcomes: Dict[str, MatchOutcome] = {}
    for path in requested:
        row = merged.get(path)
        outcomes[path] = Matched(row) if row is not None else UNMATCHED

    logger.debug(
        "Analytics rows matched",
        requested=len(requested),
        matched=len(merged),
    )
    return outcomes
