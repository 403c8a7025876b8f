"""Coded errors for the compose and run-creation stages.

Each error carries a stable ``error_code`` that the HTTP layer returns as
``code`` and the HTTP status it maps to. Poll reconciliation never raises
these; transient poll failures are downgraded to ``queued`` instead.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(eq=False)
class ResearchError(Exception):
    message: str
    error_code: str = "upstream_error"
    http_status: int = 502
    details: Optional[str] = None
    retry_after: Optional[int] = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.error_code}
        if self.details:
            body["details"] = self.details
        if self.retry_after is not None:
            body["retryAfterSec"] = self.retry_after
        return body


class NotConfigured(ResearchError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, error_code="not_configured", http_status=500)


class NoModelCandidates(ResearchError):
    def __init__(self, message: str = "No compose models configured") -> None:
        super().__init__(message=message, error_code="no_candidates", http_status=502)


class ComposeExhausted(ResearchError):
    """Every model candidate failed; ``message`` is the last candidate's error text."""

    def __init__(self, last_error: str, attempts: int = 0) -> None:
        super().__init__(message=last_error, error_code="compose_exhausted", http_status=502)
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "All models failed", "code": self.error_code, "details": self.message}


class UpstreamRateLimited(ResearchError):
    def __init__(self, details: Optional[str] = None, retry_after: Optional[int] = None) -> None:
        super().__init__(
            message="Rate limited by task API",
            error_code="rate_limited",
            http_status=429,
            details=details,
            retry_after=retry_after,
        )


class UpstreamUnauthorized(ResearchError):
    def __init__(self, details: Optional[str] = None) -> None:
        super().__init__(
            message="Unauthorized with task API",
            error_code="unauthorized",
            http_status=401,
            details=details,
        )


class UpstreamForbidden(ResearchError):
    def __init__(self, details: Optional[str] = None) -> None:
        super().__init__(
            message="Forbidden by task API",
            error_code="forbidden",
            http_status=403,
            details=details,
        )


class UpstreamInvalidRequest(ResearchError):
    def __init__(self, details: Optional[str] = None) -> None:
        super().__init__(
            message="Invalid request to task API",
            error_code="invalid_request",
            http_status=422,
            details=details,
        )


class UpstreamUnavailable(ResearchError):
    def __init__(self, details: Optional[str] = None, message: str = "Failed to create task run") -> None:
        super().__init__(message=message, error_code="upstream_error", http_status=502, details=details)


class MissingRunId(ResearchError):
    def __init__(self, details: Optional[str] = None) -> None:
        super().__init__(message="missing run id", error_code="upstream_error", http_status=502, details=details)
