"""
Shared error handling for the upstream item proxy.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    ok: bool = False
    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ProxyException(Exception):
    """Base exception for proxy services."""

    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details,
        )


class InvalidRequestError(ProxyException):
    """Missing or empty required input. The caller's fault, never retried."""

    status_code = 400

    def __init__(self, message: str = "Invalid request", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_REQUEST", message, details)


class UpstreamError(ProxyException):
    """Transient upstream failure (5xx or network fault) that survived every retry."""

    status_code = 502

    def __init__(
        self,
        message: str = "Upstream proxy failure",
        *,
        url: Optional[str] = None,
        upstream_status: Optional[int] = None,
        cause: Optional[BaseException] = None,
        attempts: Optional[int] = None,
    ):
        self.url = url
        self.upstream_status = upstream_status
        self.cause = cause
        self.attempts = attempts
        details: Dict[str, Any] = {}
        if url is not None:
            details["url"] = url
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        if cause is not None:
            details["cause"] = f"{type(cause).__name__}: {cause}"
        if attempts is not None:
            details["attempts"] = attempts
        super().__init__("UPSTREAM_ERROR", message, details)


class UpstreamRejection(ProxyException):
    """Permanent upstream refusal (4xx). Surfaced with the upstream status."""

    def __init__(self, upstream_status: int, url: str, body: Optional[str] = None):
        self.upstream_status = upstream_status
        self.url = url
        details: Dict[str, Any] = {"url": url, "upstream_status": upstream_status}
        if body:
            details["body"] = body[:2048]
        super().__init__(
            "UPSTREAM_REJECTION",
            f"Upstream rejected request with status {upstream_status}",
            details,
            status_code=upstream_status,
        )


class PartialAggregationFailure(ProxyException):
    """A sub-collection failed; the aggregate is still returned.

    Recorded and logged by the aggregation pipeline, never raised to callers.
    """

    status_code = 200

    def __init__(
        self,
        source: str,
        reason: str,
        *,
        records_collected: int = 0,
        cause: Optional[BaseException] = None,
    ):
        self.source = source
        self.reason = reason
        self.records_collected = records_collected
        self.cause = cause
        details: Dict[str, Any] = {
            "source": source,
            "reason": reason,
            "records_collected": records_collected,
        }
        if cause is not None:
            details["cause"] = str(cause)
        super().__init__("PARTIAL_AGGREGATION", f"{source}: {reason}", details)
