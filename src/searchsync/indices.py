"""
SearchSync Indices — Index and Alias Lifecycle
==============================================

Each application (tenant) is served by an alias named after its appid that
points to exactly one physical index:

    alias "shop"  ->  index "shop_1"              (after creation)
    alias "shop"  ->  index "shop_1718031200000"  (after a rebuild)

A rebuild fills a brand-new physical index from the primary data store
and then moves the alias in a single atomic ``update_aliases`` request, so
searches never see a half-built index.

Applications sharing the root index get a routed, filtered alias on the
root application's index instead of an index of their own.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional

from elasticsearch import ApiError, Elasticsearch, TransportError

from .bulk import BulkExecutor, index_action
from .codec import PROPS_JSON, DocumentCodec
from .config import SearchConfig
from .models import App
from .pager import DOCID_FIELD, PROPS_FIELD, Pager
from .store import DataStore

logger = logging.getLogger(__name__)

DATE_FORMAT = "epoch_millis||epoch_second||yyyy-MM-dd HH:mm:ss||yyyy-MM-dd||yyyy/MM/dd||yyyyMMdd||yyyy"

KEYWORD_FIELDS = (
    "id", "key", "name", "type", "tag", "tags", "token", "email", "appid",
    "groups", "password", "parentid", "creatorid", "identifier",
)

CLUSTER_ERRORS = (ApiError, TransportError)

_WHITESPACE = re.compile(r"\s")


def default_mapping(nested_mode: bool = False) -> Dict[str, Any]:
    """
    The field mapping every index is created with.

    Args:
        nested_mode: Map ``properties`` as the nested key/value array
            instead of a dynamic object

    Returns:
        The ``mappings`` section of an index creation request
    """
    properties: Dict[str, Any] = {name: {"type": "keyword"} for name in KEYWORD_FIELDS}
    properties.update({
        "latlng": {"type": "geo_point"},
        "timestamp": {"type": "date", "format": DATE_FORMAT},
        "updated": {"type": "date", "format": DATE_FORMAT},
        "nstd": {"type": "nested"},
        PROPS_FIELD: {"type": "nested" if nested_mode else "object"},
        DOCID_FIELD: {"type": "long", "index": False},
        PROPS_JSON: {"type": "text", "index": False},
    })
    return {"properties": properties}


def index_name_with_wildcard(index: str) -> str:
    """``name`` -> ``name_*`` so that a bare appid matches its physical index."""
    if index and "_" not in index:
        return index + "_*"
    return index


class IndexManager:
    """
    Creates, deletes, aliases and rebuilds application indices.

    Example:
        manager = IndexManager(client, SearchConfig(), executor, DocumentCodec())
        manager.create_index("shop")         # index shop_1, alias shop
        manager.rebuild_index(store, App("shop"))
    """

    def __init__(self, client: Elasticsearch, config: SearchConfig,
                 executor: BulkExecutor, codec: DocumentCodec):
        self._client = client
        self.config = config
        self.executor = executor
        self.codec = codec

    def _is_root(self, appid: str) -> bool:
        return appid == self.config.root_appid

    def index_settings(self, shards: int, replicas: int) -> Dict[str, Any]:
        return {
            "number_of_shards": shards,
            "number_of_replicas": replicas,
            "auto_expand_replicas": self.config.auto_expand_replicas,
            "analysis": {
                "analyzer": {
                    "default": {"type": "standard"}
                }
            }
        }

    def create_index(self, appid: str, shards: Optional[int] = None,
                     replicas: Optional[int] = None) -> bool:
        """
        Create the physical index ``{appid}_1`` and the alias ``appid``.

        Args:
            appid: Application identifier
            shards: Primary shards (config default if None or <= 0)
            replicas: Replicas (config default if None or < 0)

        Returns:
            True if the index was created
        """
        if not appid or not appid.strip() or _WHITESPACE.search(appid) or self.exists_index(appid):
            return False
        if shards is None or shards <= 0:
            shards = self.config.shards
        if replicas is None or replicas < 0:
            replicas = self.config.replicas

        name = f"{appid}_1"
        if not self.create_index_without_alias(name, shards, replicas):
            return False
        if self._is_root(appid) and self.config.root_index_sharing_enabled:
            self.add_index_alias_with_routing(name, appid)
        else:
            self.add_index_alias(name, appid)
        return True

    def create_index_without_alias(self, name: str, shards: Optional[int] = None,
                                   replicas: Optional[int] = None) -> bool:
        if not name or not name.strip():
            return False
        if shards is None or shards <= 0:
            shards = self.config.shards
        if replicas is None or replicas < 0:
            replicas = self.config.replicas
        try:
            self._client.indices.create(
                index=name,
                settings=self.index_settings(shards, replicas),
                mappings=default_mapping(self.config.nested_mode)
            )
            logger.info("Created a new index '%s' with %d shards, %d replicas.", name, shards, replicas)
            return True
        except CLUSTER_ERRORS as e:
            logger.warning("Failed to create index '%s': %s", name, e)
            return False

    def delete_index(self, appid: str) -> bool:
        """Delete the physical index behind an alias. False if missing."""
        if not appid or not appid.strip() or not self.exists_index(appid):
            return False
        name = self.get_index_name_for_alias(appid)
        try:
            self._client.indices.delete(index=name)
            logger.info("Deleted index '%s'.", name)
            return True
        except CLUSTER_ERRORS as e:
            logger.warning("Failed to delete index '%s': %s", name, e)
            return False

    def exists_index(self, appid: str) -> bool:
        if not appid or not appid.strip():
            return False
        try:
            return bool(self._client.indices.exists(index=appid))
        except CLUSTER_ERRORS as e:
            logger.warning("Failed to check if index '%s' exists: %s", appid, e)
            return False

    def get_index_name_for_alias(self, alias: str) -> str:
        """The physical index an alias points to, or ``alias`` itself."""
        if not alias or not alias.strip():
            return alias
        try:
            response = self._client.indices.get(index=alias)
            for name in response:
                return name
        except CLUSTER_ERRORS as e:
            logger.debug("No index found for alias '%s': %s", alias, e)
        return alias

    def new_index_name(self, appid: str, old_name: Optional[str] = None) -> str:
        """A fresh physical name: old name minus its suffix, plus ``_{unix_ms}``."""
        if old_name and "_" in old_name:
            prefix = old_name.rsplit("_", 1)[0]
        else:
            prefix = appid
        return f"{prefix}_{int(time.time() * 1000)}"

    # Aliases

    def add_index_alias(self, index: str, alias: str, with_routing: bool = False) -> bool:
        """
        Point an alias at an index.

        Args:
            index: Index name (a bare appid is expanded to ``appid_*``)
            alias: Alias name
            with_routing: Route and filter by ``appid == alias``

        Returns:
            True if the alias was added
        """
        if not index or not alias or not index.strip() or not alias.strip():
            return False
        action: Dict[str, Any] = {"index": index_name_with_wildcard(index), "alias": alias}
        if with_routing:
            action["routing"] = alias
            action["filter"] = {"term": {"appid": alias}}
        try:
            self._client.indices.update_aliases(actions=[{"add": action}])
            return True
        except CLUSTER_ERRORS as e:
            logger.error("Failed to add alias '%s' to index '%s': %s", alias, index, e)
            return False

    def add_index_alias_with_routing(self, index: str, alias: str) -> bool:
        return self.add_index_alias(index, alias, with_routing=True)

    def remove_index_alias(self, index: str, alias: str) -> bool:
        if not index or not alias or not index.strip() or not alias.strip():
            return False
        try:
            self._client.indices.update_aliases(actions=[
                {"remove": {"index": index_name_with_wildcard(index), "alias": alias}}
            ])
            return True
        except CLUSTER_ERRORS as e:
            logger.error("Failed to remove alias '%s' from index '%s': %s", alias, index, e)
            return False

    def exists_index_alias(self, index: str, alias: str) -> bool:
        if not index or not alias or not index.strip() or not alias.strip():
            return False
        try:
            return bool(self._client.indices.exists_alias(index=index_name_with_wildcard(index), name=alias))
        except CLUSTER_ERRORS as e:
            logger.warning("Failed to check alias '%s' on index '%s': %s", alias, index, e)
            return False

    def switch_index_to_alias(self, old_index: str, new_index: str, alias: str,
                              delete_old: bool = False) -> bool:
        """
        Atomically move an alias from one physical index to another.

        Args:
            old_index: Index the alias points to now
            new_index: Index the alias should point to
            alias: Alias name
            delete_old: Delete ``old_index`` after the switch

        Returns:
            True if the alias was moved
        """
        if not old_index or not new_index or not alias:
            return False
        try:
            logger.info("Switching index aliases {%s->%s} to {%s->%s}",
                        alias, old_index, alias, new_index)
            self._client.indices.update_aliases(actions=[
                {"remove": {"index": old_index, "alias": alias}},
                {"add": {"index": new_index, "alias": alias}}
            ])
            if delete_old and old_index != new_index:
                logger.info("Deleting old index '%s'.", old_index)
                self._client.indices.delete(index=old_index)
            return True
        except CLUSTER_ERRORS as e:
            logger.error("Failed to switch index alias '%s' to '%s': %s", alias, new_index, e)
            return False

    # Maintenance

    def refresh_index(self, appid: str) -> bool:
        """Send queued async writes, then make them searchable."""
        if not appid or not appid.strip():
            return False
        self.executor.flush(wait=True)
        try:
            self._client.indices.refresh(index=appid)
            return True
        except CLUSTER_ERRORS as e:
            logger.warning("Failed to refresh index '%s': %s", appid, e)
            return False

    def is_cluster_ok(self) -> bool:
        try:
            health = self._client.cluster.health()
            return health["status"] != "red"
        except CLUSTER_ERRORS as e:
            logger.error("Cluster health check failed: %s", e)
            return False

    def rebuild_index(self, store: DataStore, app: App,
                      destination_index: Optional[str] = None,
                      pager: Optional[Pager] = None) -> bool:
        """
        Rebuild an application's index from the primary data store.

        All stored objects are read page by page and bulk-indexed into a
        new physical index (or ``destination_index``), which then takes
        over the alias. Apps sharing the root index are reindexed in place
        through their routed alias.

        Args:
            store: Primary data store
            app: Application to rebuild
            destination_index: Physical index to fill instead of a new one
            pager: Paging state for the store scan

        Returns:
            True on success; on failure the alias is left untouched

        Raises:
            ValueError: If store or app is None
        """
        if store is None or app is None:
            raise ValueError("A data store and an app are required to rebuild an index")
        appid = app.appid
        sharing = app.sharing_index and not self._is_root(appid)
        try:
            if not self.exists_index(appid):
                if sharing:
                    logger.info("Creating alias for app '%s' in the root index.", appid)
                    self.add_index_alias_with_routing(self.config.root_appid, appid)
                else:
                    logger.info("Creating index '%s' because it doesn't exist.", appid)
                    self.create_index(appid, *self._shards_and_replicas(appid))

            old_name = self.get_index_name_for_alias(appid)
            new_name = appid
            if not sharing:
                new_name = destination_index or self.new_index_name(appid, old_name)
                if new_name != old_name and not self._client.indices.exists(index=new_name):
                    if not self.create_index_without_alias(new_name, *self._shards_and_replicas(appid)):
                        return False

            pager = pager or Pager(limit=self.config.reindex_batch_size or 100)
            batch_size = self.config.reindex_batch_size or pager.limit
            count = self._reindex_all(store, appid, new_name, pager, batch_size)
            logger.info("rebuild_index(): %d objects reindexed in '%s' [appid: %s].", count, new_name, appid)

            if not sharing:
                return self.switch_index_to_alias(old_name, new_name, appid, True)
            return True
        except Exception as e:
            logger.error("Failed to rebuild index for app '%s': %s", appid, e)
            return False

    def _reindex_all(self, store: DataStore, appid: str, index: str,
                     pager: Pager, batch_size: int) -> int:
        actions: List[Dict[str, Any]] = []
        count = 0
        while True:
            page = store.read_page(appid, pager)
            if not page:
                break
            for obj in page:
                if not obj.stored:
                    continue
                actions.append(index_action(index, obj.id, self.codec.to_document(obj)))
                if len(actions) >= batch_size:
                    self.executor.execute(actions)
                    count += len(actions)
                    actions = []
        if actions:
            self.executor.execute(actions)
            count += len(actions)
        self.executor.flush(wait=True)
        return count

    def _shards_and_replicas(self, appid: str) -> tuple:
        if self._is_root(appid):
            return self.config.shards, self.config.replicas
        return self.config.shards_for_child_apps, self.config.replicas_for_child_apps
