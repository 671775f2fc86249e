"""
SearchSync — Search Index Synchronization for Multi-Tenant Applications
=======================================================================

Keeps one Elasticsearch index per application in sync with a primary data
store and translates a small boolean query language into Elasticsearch
query DSL.

Key Features:
- One alias per application, zero-downtime rebuild-and-switch
- Optional flattened ("nested") schema for free-form custom properties
- Synchronous or batched asynchronous bulk writes with retry
- Search-after cursor paging

Usage:
    from searchsync import SearchConfig, SearchService, DomainObject

    with SearchService(SearchConfig(nested_mode=True), store=store) as search:
        search.index(DomainObject(id="1", type="product", properties={"color": "red"}))
        results = search.find_query("product", "properties.color:red")

License: MIT
"""

__version__ = "0.1.0"

from .config import SearchConfig
from .errors import IndexingError, QueryDepthError, QueryParseError, SearchSyncError
from .models import App, DomainObject
from .pager import Pager
from .store import DataStore, MemoryStore
from .codec import DocumentCodec
from .translator import QueryTranslator
from .bulk import BackoffPolicy, BulkExecutor, BulkProcessor, FailureCounters
from .indices import IndexManager
from .service import SearchService

__all__ = [
    "SearchConfig",
    "SearchSyncError",
    "IndexingError",
    "QueryParseError",
    "QueryDepthError",
    "App",
    "DomainObject",
    "Pager",
    "DataStore",
    "MemoryStore",
    "DocumentCodec",
    "QueryTranslator",
    "BackoffPolicy",
    "BulkExecutor",
    "BulkProcessor",
    "FailureCounters",
    "IndexManager",
    "SearchService",
]
