"""
Exception taxonomy for the catalog crawler.

Per-URL problems (FetchError, ExtractionError) are retried and contained by the
runner. PersistenceError and ConfigurationError always reach the caller.
"""
from typing import Optional


class CrawlError(Exception):
    """Base class for every error raised by the crawler."""


class ConfigurationError(CrawlError):
    """Unknown site key, invalid product URL pattern, bad run mode or ramp."""


class FetchError(CrawlError):
    """
    A URL could not be fetched: connection failure, timeout or a non-2xx status.

    :param status: HTTP status when a response was received.
    :param retry_after: seconds from a Retry-After header, if the server sent one.
    """

    THROTTLE_STATUSES = (429, 503)

    def __init__(self, url: str, message: str = "", status: Optional[int] = None,
                 retry_after: Optional[float] = None):
        self.url = url
        self.status = status
        self.retry_after = retry_after
        if not message:
            message = f"HTTP {status} for {url}" if status is not None else f"fetch failed for {url}"
        super().__init__(message)

    def __reduce__(self):
        return type(self), (self.url, str(self), self.status, self.retry_after)

    @property
    def is_throttle(self) -> bool:
        return self.status in self.THROTTLE_STATUSES


class ExtractionError(CrawlError):
    """The page had no usable product data."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"extraction failed for {url}: {reason}")

    def __reduce__(self):
        return type(self), (self.url, self.reason)


class PersistenceError(CrawlError):
    """Writing to durable storage failed. Aborts the run."""
