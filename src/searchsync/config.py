"""
SearchSync Config — Connection and Indexing Options
===================================================

All options are plain attributes of ``SearchConfig`` and are passed into
the service explicitly. ``from_dict`` accepts the dotted option names used
in configuration files (``bulk.action_limit``, ``es.shards``, ...) and
``from_env`` reads the same options from environment variables.
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Tuple

from elasticsearch import Elasticsearch


# Dotted option name -> SearchConfig attribute
OPTION_NAMES: Dict[str, str] = {
    "use_nested_custom_fields": "nested_mode",
    "async_enabled": "async_enabled",
    "bulk.flush_immediately": "bulk_flush_immediately",
    "bulk.size_limit_mb": "bulk_size_limit_mb",
    "bulk.action_limit": "bulk_action_limit",
    "bulk.concurrent_requests": "bulk_concurrent_requests",
    "bulk.flush_interval_ms": "bulk_flush_interval_ms",
    "bulk.backoff_initial_delay_ms": "bulk_backoff_initial_delay_ms",
    "bulk.max_num_retries": "bulk_max_num_retries",
    "fail_on_indexing_errors": "fail_on_indexing_errors",
    "shards": "shards",
    "replicas": "replicas",
    "shards_for_child_apps": "shards_for_child_apps",
    "replicas_for_child_apps": "replicas_for_child_apps",
    "auto_expand_replicas": "auto_expand_replicas",
    "root_index_sharing_enabled": "root_index_sharing_enabled",
    "root_appid": "root_appid",
    "reindex_batch_size": "reindex_batch_size",
    "unindex_batch_size": "unindex_batch_size",
    "read_from_index": "read_from_index",
    "max_pages": "max_pages",
    "close_timeout_s": "close_timeout_s",
    "hosts": "hosts",
    "api_key": "api_key",
    "verify_certs": "verify_certs",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class SearchConfig:
    """
    Configuration for a SearchSync service.

    Example:
        config = SearchConfig.from_dict({
            "es.use_nested_custom_fields": True,
            "es.bulk.action_limit": 500,
        })
    """

    # Connection
    hosts: List[str] = field(default_factory=lambda: ["http://localhost:9200"])
    api_key: Optional[str] = None
    basic_auth: Optional[Tuple[str, str]] = None
    verify_certs: bool = True

    # Indexing mode
    nested_mode: bool = False
    async_enabled: bool = False
    fail_on_indexing_errors: bool = False
    read_from_index: bool = False

    # Asynchronous bulk processor
    bulk_flush_immediately: bool = True
    bulk_size_limit_mb: int = 5
    bulk_action_limit: int = 1000
    bulk_concurrent_requests: int = 1
    bulk_flush_interval_ms: int = 5000
    bulk_backoff_initial_delay_ms: int = 50
    bulk_max_num_retries: int = 8

    # Index layout
    root_appid: str = "root"
    root_index_sharing_enabled: bool = False
    shards: int = 2
    replicas: int = 0
    shards_for_child_apps: int = 2
    replicas_for_child_apps: int = 0
    auto_expand_replicas: str = "0-1"

    # Batching and paging
    reindex_batch_size: Optional[int] = None
    unindex_batch_size: int = 1000
    max_pages: int = 10000
    close_timeout_s: float = 600.0

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "SearchConfig":
        """
        Build a config from dotted option names.

        Args:
            options: Mapping such as ``{"es.bulk.action_limit": 500}``. The
                ``es.`` prefix is optional; unknown keys are ignored.

        Returns:
            A new SearchConfig
        """
        types = {f.name: f.type for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = key[3:] if key.startswith("es.") else key
            attr = OPTION_NAMES.get(name)
            if attr is None or value is None:
                continue
            kwargs[attr] = _coerce(value, types[attr])
        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = "SEARCHSYNC_",
                 environ: Optional[Mapping[str, str]] = None) -> "SearchConfig":
        """
        Build a config from environment variables.

        ``SEARCHSYNC_BULK_ACTION_LIMIT=500`` sets ``bulk.action_limit``;
        ``SEARCHSYNC_HOSTS`` is a comma-separated list.
        """
        env = os.environ if environ is None else environ
        options: Dict[str, Any] = {}
        for name in OPTION_NAMES:
            var = prefix + name.replace(".", "_").upper()
            if var in env:
                options[name] = env[var]
        return cls.from_dict(options)

    def connection_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for the Elasticsearch client constructor."""
        conn_kwargs: Dict[str, Any] = {
            "hosts": self.hosts or ["http://localhost:9200"],
            "verify_certs": self.verify_certs
        }
        if self.api_key:
            conn_kwargs["api_key"] = self.api_key
        elif self.basic_auth:
            conn_kwargs["basic_auth"] = self.basic_auth
        return conn_kwargs

    def create_client(self) -> Elasticsearch:
        """Create the shared Elasticsearch client."""
        return Elasticsearch(**self.connection_kwargs())


def _coerce(value: Any, annotation: Any) -> Any:
    """Convert a raw option value (often a string) to the attribute type."""
    hint = str(annotation)
    if not isinstance(value, str):
        return value
    if "bool" in hint:
        return value.strip().lower() in _TRUE_VALUES
    if "List" in hint:
        return [v.strip() for v in value.split(",") if v.strip()]
    if "float" in hint:
        return float(value)
    if "int" in hint:
        return int(value)
    return value
