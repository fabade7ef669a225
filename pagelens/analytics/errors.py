"""
Error taxonomy surfaced by the analytics pipeline.

Each user-facing error carries the HTTP status and stable code the API layer
renders; UpstreamDegradedError never leaves the gateway.
"""

from typing import Any, Dict, Optional


class PageLensError(Exception):
    """Base class for pipeline errors with an HTTP mapping"""

    status_code: int = 500
    code: str = "unexpected_error"
    default_message: str = "Failed to fetch analytics data"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.message, "code": self.code}


class AuthRequiredError(PageLensError):
    status_code = 401
    code = "auth_required"
    default_message = "Not authenticated. Please reconnect your store."


class InvalidRequestError(PageLensError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class UpstreamTimeoutError(PageLensError):
    status_code = 504
    code = "upstream_timeout"
    default_message = "Shopify API request timed out. Try a shorter date range or fewer URLs."


class UpstreamDegradedError(PageLensError):
    """A single upstream sub-call failed; callers convert it to empty data."""

    status_code = 502
    code = "upstream_degraded"
    default_message = "Upstream call failed"


class UnexpectedError(PageLensError):
    status_code = 500
    code = "unexpected_error"
    default_message = "Failed to fetch analytics data"


class SignatureMismatchError(PageLensError):
    status_code = 403
    code = "invalid_signature"
    default_message = "HMAC validation failed"
