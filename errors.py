#!/usr/bin/env python3
"""Common error types shared across modules.

Kept in a leaf module so the fetcher, storage and task layers can raise and
catch each other's failures without circular imports.
"""

from typing import Optional


class FeedArchiverError(Exception):
    """Base class for all pipeline errors."""


class FetchError(FeedArchiverError):
    """Raised when a feed URL cannot be resolved to feed content.

    Attributes:
        reason: Machine-readable reason such as "blocked-by-bot-protection",
                "no-rss-link-found" or "upstream-error-503".
        url: The URL that was being fetched.
    """

    def __init__(self, reason: str, url: Optional[str] = None):
        super().__init__(f"{reason} ({url})" if url else reason)
        self.reason = reason
        self.url = url


class MalformedFeedError(FeedArchiverError):
    """Raised when feed bytes are not well-formed XML or have no channel element."""


class PersistenceError(FeedArchiverError):
    """Raised when a relational store or blob store operation fails."""


class PartialPersistenceError(PersistenceError):
    """Raised when only one half of a feed file save succeeded.

    Both the metadata row and the blob write are always attempted; the flags
    record which of them actually landed.
    """

    def __init__(self, message: str, metadata_stored: bool, blob_stored: bool):
        super().__init__(message)
        self.metadata_stored = metadata_stored
        self.blob_stored = blob_stored


class IngestionError(FeedArchiverError):
    """Raised when a fetched feed file cannot be turned into entities."""


class QueueError(FeedArchiverError):
    """Raised for invalid ordered queue operations (e.g. non-podcast items)."""


__all__ = [
    "FeedArchiverError",
    "FetchError",
    "MalformedFeedError",
    "PersistenceError",
    "PartialPersistenceError",
    "IngestionError",
    "QueueError",
]
