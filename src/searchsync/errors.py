"""
SearchSync Errors
=================

Exception types raised by SearchSync. Cluster failures are normally caught
and logged at the boundary of each public operation; these are the few
cases that do propagate.
"""

from typing import Any, List, Optional


class SearchSyncError(Exception):
    """Base class for all SearchSync errors."""


class IndexingError(SearchSyncError):
    """
    A synchronous bulk request failed and ``fail_on_indexing_errors`` is set.

    Attributes:
        failures: Failed bulk items as returned by the cluster (may be empty
            when the whole request failed)
    """

    def __init__(self, message: str, failures: Optional[List[Any]] = None):
        super().__init__(message)
        self.failures = failures or []


class QueryParseError(SearchSyncError, ValueError):
    """The query string does not follow the query grammar."""

    def __init__(self, message: str, position: int = -1):
        if position >= 0:
            message = f"{message} (at position {position})"
        super().__init__(message)
        self.position = position


class QueryDepthError(SearchSyncError, ValueError):
    """A compound query is nested deeper than the rewrite allows."""
