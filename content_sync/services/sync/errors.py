"""
Exception hierarchy for the sync pipeline.
"""
from typing import Any, Mapping, Optional


class ContentSyncError(Exception):
    """Base class for every sync error."""


class RequestError(ContentSyncError):
    """An outbound content API call failed.

    Carries the response headers, when a response was received, so the rate
    limit tracker can still learn from error responses.
    """

    def __init__(self, message: str, status: Optional[int] = None,
                 headers: Optional[Mapping[str, str]] = None):
        super().__init__(message)
        self.status = status
        self.headers = headers


class TransientRequestError(RequestError):
    """Network error, timeout, 408 or 5xx. Retried with backoff."""


class RateLimitedError(RequestError):
    """Upstream answered 429 Too Many Requests."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 headers: Optional[Mapping[str, str]] = None):
        super().__init__(message, status=429, headers=headers)
        self.retry_after = retry_after


class PermanentRequestError(RequestError):
    """Any other 4xx. Retrying cannot help."""


class RequestFailedError(ContentSyncError):
    """Terminal failure of a queued request after its retry budget is spent."""

    def __init__(self, target: Any, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"Request {target} failed after {attempts} attempt(s): {last_error}"
        )
        self.target = target
        self.attempts = attempts
        self.last_error = last_error


class SafetyThresholdExceeded(ContentSyncError):
    """Reconciliation would delete too large a share of the index."""

    def __init__(self, report):
        super().__init__(
            f"SAFETY THRESHOLD EXCEEDED: would delete {report.orphan_count}/{report.index_count} "
            f"{report.entity_type} ({report.deletion_fraction:.0%}), "
            f"threshold {report.safety_threshold:.0%}"
        )
        self.report = report


class SearchIndexError(ContentSyncError):
    """A search index call failed after its retries."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CollectionNotConfiguredError(ContentSyncError):
    """The requested collection slug or id is not in CONTENT_COLLECTIONS."""


class WebhookValidationError(ContentSyncError):
    """Inbound webhook payload is malformed or of an unsupported type."""
