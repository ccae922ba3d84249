"""
Exception hierarchy shared by the worker pool, the analysis engine and the
persistence layer.
"""
from __future__ import annotations
from typing import Optional


class SiteProbeError(Exception):
    """Base class for all SiteProbe errors."""
    pass


class ValidationError(SiteProbeError):
    """Raised when a submitted URL or identifier is malformed."""
    pass


class QueueFull(SiteProbeError):
    """Raised when the job queue is at capacity."""
    pass


class PoolStopped(SiteProbeError):
    """Raised when a job is submitted after the pool began stopping."""
    pass


class UnhandledJobType(SiteProbeError):
    """No handler is registered for the job's type."""
    pass


class RetryableError(SiteProbeError):
    """Failures the worker pool is allowed to retry."""
    pass


class FetchError(RetryableError):
    """The page itself could not be fetched."""

    def __init__(self, message: str, url: str = "", status_code: int = 0):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RedirectLimitExceeded(FetchError):
    pass


class JobTimeout(RetryableError):
    pass


class LinkProbeError(SiteProbeError):
    """A single outbound link could not be probed."""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class RecordNotFound(SiteProbeError):
    pass


class PersistenceError(SiteProbeError):
    """A storage call failed or ran past its deadline."""
    pass
