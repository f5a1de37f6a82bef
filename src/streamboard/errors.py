"""Exception hierarchy for streamboard.

Only fetch and store failures escalate out of a refresh pipeline. Parse
rejections are counted, and enrichment misses (including `MetadataError`)
are returned as ``None``.
"""

from __future__ import annotations


class StreamboardError(Exception):
    """Base class for all streamboard errors."""


class FetchError(StreamboardError):
    """A chart page could not be fetched (transport failure or non-2xx status)."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.status_code = status_code


class StoreError(StreamboardError):
    """The persistence layer failed. Fatal for the current refresh cycle."""


class AuthorizationError(StreamboardError):
    """A refresh trigger was rejected because the shared secret did not match."""


class MetadataError(StreamboardError):
    """A metadata API response did not have the expected shape. Treated as an enrichment miss."""
