"""
SearchSync Service — Search Facade
==================================

``SearchService`` owns the shared Elasticsearch client and the bulk
processor, and exposes the index/unindex/find/count operations the
application layer calls.

Example:
    config = SearchConfig.from_dict({"es.use_nested_custom_fields": True})
    with SearchService(config, store=store) as search:
        search.index(DomainObject(id="1", type="product", properties={"color": "red"}))
        search.find_query("product", "properties.color:red")
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from elasticsearch import Elasticsearch, NotFoundError

from .bulk import BulkExecutor, FailureCounters, delete_action, index_action
from .codec import DocumentCodec
from .config import SearchConfig
from .indices import CLUSTER_ERRORS, IndexManager
from .models import App, DomainObject
from .pager import DOCID_FIELD, Pager, sort_order
from .store import DataStore
from .translator import QueryTranslator, is_blank, is_digits, match_all

logger = logging.getLogger(__name__)

ADDRESS_TYPE = "address"
TAG_TYPE = "tag"
MAX_ITEMS_PER_PAGE = 500


class SearchService:
    """
    Keeps application indices in sync with the primary data store and
    answers queries against them.

    Args:
        config: Service configuration (defaults if None)
        client: Elasticsearch client; created from ``config`` on ``start()``
            if None, and then also closed by ``stop()``
        store: Primary data store, used for rebuilds and to re-fetch search
            results unless ``read_from_index`` is set
    """

    def __init__(self, config: Optional[SearchConfig] = None,
                 client: Optional[Elasticsearch] = None,
                 store: Optional[DataStore] = None):
        self.config = config or SearchConfig()
        self.store = store
        self._client = client
        self._owns_client = client is None
        self.codec = DocumentCodec(self.config.nested_mode)
        self.translator = QueryTranslator(self.config.nested_mode)
        self.counters = FailureCounters()
        self.bulk: Optional[BulkExecutor] = None
        self.indices: Optional[IndexManager] = None
        self._started = False

    # Lifecycle

    def start(self) -> "SearchService":
        """Connect, start the bulk processor and create the root index if missing."""
        if self._started:
            return self
        if self._client is None:
            self._client = self.config.create_client()
        self.bulk = BulkExecutor(self._client, self.config, counters=self.counters)
        self.bulk.start()
        self.indices = IndexManager(self._client, self.config, self.bulk, self.codec)
        root = self.config.root_appid
        if not self.indices.exists_index(root):
            self.indices.create_index(root)
        self._started = True
        return self

    def stop(self) -> None:
        """Drain the bulk processor, then close the client."""
        if not self._started:
            return
        if not self.bulk.close(self.config.close_timeout_s):
            logger.warning("Bulk processor was force-closed, some requests may have been lost.")
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None
        self._started = False

    def __enter__(self) -> "SearchService":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    @property
    def client(self) -> Optional[Elasticsearch]:
        return self._client

    @property
    def started(self) -> bool:
        return self._started

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("SearchService is not started")

    def _appid(self, appid: Optional[str]) -> str:
        return self.config.root_appid if is_blank(appid) else appid

    # Writes

    def index(self, obj: DomainObject, appid: Optional[str] = None) -> None:
        self.index_all([obj], appid)

    def unindex(self, obj: DomainObject, appid: Optional[str] = None) -> None:
        self.unindex_all([obj], appid)

    def index_all(self, objects: Iterable[DomainObject], appid: Optional[str] = None) -> None:
        """
        Index objects into an application's index.

        Objects without an id or not marked ``stored`` are skipped.
        """
        self._require_started()
        index = self._appid(appid)
        actions = [
            index_action(index, obj.id, self.codec.to_document(obj))
            for obj in objects or []
            if obj is not None and not is_blank(obj.id) and obj.stored
        ]
        self.bulk.execute(actions)

    def unindex_all(self, objects: Iterable[DomainObject], appid: Optional[str] = None) -> None:
        self._require_started()
        index = self._appid(appid)
        actions = [
            delete_action(index, obj.id)
            for obj in objects or []
            if obj is not None and not is_blank(obj.id)
        ]
        self.bulk.execute(actions)

    def unindex_by_terms(self, terms: Optional[Dict[str, Any]] = None,
                         must_match_all: bool = True, appid: Optional[str] = None) -> int:
        """
        Delete every document matching a terms query (all of them if
        ``terms`` is empty).

        Returns:
            Number of documents deleted
        """
        self._require_started()
        if terms:
            query = self.translator.build_terms_query(terms, must_match_all)
            if query is None:
                return 0
        else:
            query = match_all()
        index = self._appid(appid)
        try:
            return self.bulk.scroll_delete_by_query(index, query)
        except NotFoundError:
            logger.warning("Index '%s' not found, nothing to unindex.", index)
        except CLUSTER_ERRORS as e:
            logger.error("Failed to unindex documents from '%s': %s", index, e)
        return 0

    # Reads

    def find_by_id(self, id: str, appid: Optional[str] = None) -> Optional[DomainObject]:
        self._require_started()
        if is_blank(id):
            return None
        index = self._appid(appid)
        try:
            response = self._client.get(index=index, id=id)
        except NotFoundError:
            return None
        except CLUSTER_ERRORS as e:
            logger.error("Failed to read document '%s' from '%s': %s", id, index, e)
            return None
        return self.codec.from_document(response["_source"])

    def find_by_ids(self, ids: Iterable[str], appid: Optional[str] = None) -> List[DomainObject]:
        ids = [i for i in ids or [] if not is_blank(i)]
        if not ids:
            return []
        return self._search(appid, None, self.translator.ids_query(ids), Pager(limit=len(ids)))

    def find_term_in_list(self, type: Optional[str], field: str, terms: List[Any],
                          pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        if is_blank(field) or not terms:
            return []
        return self._search(appid, type, self.translator.terms_in_list_query(field, terms), pager)

    def find_prefix(self, type: Optional[str], field: str, prefix: str,
                    pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        if is_blank(field) or is_blank(prefix):
            return []
        return self._search(appid, type, self.translator.prefix_query(field, prefix), pager)

    def find_query(self, type: Optional[str], query: str,
                   pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        """
        Search with a query string.

        A blank query finds nothing and a malformed one matches everything.
        With nested custom fields, queries on ``properties.*`` are rewritten
        for the flattened schema.
        """
        if is_blank(query):
            return []
        return self._search(appid, type, self.translator.string_query(query), pager)

    def find_nested_query(self, type: Optional[str], field: str, query: str,
                          pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        if is_blank(field):
            return []
        query = "*" if is_blank(query) else query
        return self._search(appid, type, self.translator.nested_object_query(field, query), pager)

    def find_wildcard(self, type: Optional[str], field: str, wildcard: str,
                      pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        if is_blank(field) or is_blank(wildcard):
            return []
        return self._search(appid, type, self.translator.wildcard_query(field, wildcard), pager)

    def find_tagged(self, type: Optional[str], tags: List[str],
                    pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        tags = [t for t in tags or [] if not is_blank(t)]
        if not tags:
            return []
        return self._search(appid, type, self.translator.tagged_query(tags), pager)

    def find_terms(self, type: Optional[str], terms: Dict[str, Any], must_match_all: bool = True,
                   pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        if not terms:
            return []
        query = self.translator.build_terms_query(terms, must_match_all)
        if query is None:
            return []
        return self._search(appid, type, query, pager)

    def find_similar(self, type: Optional[str], filter_key: Optional[str], fields: Optional[List[str]],
                     liketext: str, pager: Optional[Pager] = None,
                     appid: Optional[str] = None) -> List[DomainObject]:
        if is_blank(liketext):
            return []
        query = self.translator.similar_query(liketext, fields, filter_key)
        return self._search(appid, type, query, pager)

    def find_tags(self, keyword: Optional[str], pager: Optional[Pager] = None,
                  appid: Optional[str] = None) -> List[DomainObject]:
        if is_blank(keyword):
            return []
        return self._search(appid, TAG_TYPE, self.translator.tags_query(keyword), pager)

    def find_nearby(self, type: str, query: Optional[str], radius_km: int, lat: float, lng: float,
                    pager: Optional[Pager] = None, appid: Optional[str] = None) -> List[DomainObject]:
        """
        Find objects of ``type`` whose addresses lie within ``radius_km``.

        Addresses are found first; their parent objects are then matched
        against ``query``. When ``type`` is ``address`` the addresses
        themselves are returned.
        """
        if is_blank(type):
            return []
        query = "*" if is_blank(query) else query
        geo = self.translator.geo_distance_query(lat, lng, radius_km)
        hits = self._search_raw(appid, ADDRESS_TYPE, geo, Pager(limit=MAX_ITEMS_PER_PAGE, sortby=""))
        if type == ADDRESS_TYPE:
            return self._to_objects(appid, hits)
        parent_ids = [hit["_source"].get("parentid") for hit in hits]
        parent_ids = [p for p in parent_ids if not is_blank(p)]
        if not parent_ids:
            return []
        parents = {"bool": {
            "must": [self.translator.query_string_query(query)],
            "filter": [{"ids": {"values": parent_ids}}]
        }}
        return self._search(appid, type, parents, pager)

    def get_count(self, type: Optional[str] = None, appid: Optional[str] = None) -> int:
        return self._count(appid, self.translator.with_type(match_all(), type))

    def get_count_by_terms(self, type: Optional[str], terms: Dict[str, Any],
                           must_match_all: bool = True, appid: Optional[str] = None) -> int:
        if not terms:
            return 0
        query = self.translator.build_terms_query(terms, must_match_all)
        if query is None:
            return 0
        return self._count(appid, self.translator.with_type(query, type))

    def is_valid_query_string(self, query: str) -> bool:
        return self.translator.is_valid_query_string(query)

    # Index maintenance

    def rebuild_index(self, app: Optional[App] = None, destination_index: Optional[str] = None,
                      pager: Optional[Pager] = None) -> bool:
        self._require_started()
        app = app or App(self.config.root_appid)
        return self.indices.rebuild_index(self.store, app, destination_index, pager)

    def on_app_created(self, app: App) -> None:
        """Give a new application an index, or a routed alias on the root index."""
        self._require_started()
        if app is None or is_blank(app.appid):
            return
        if app.sharing_index and not app.is_root(self.config.root_appid):
            self.indices.add_index_alias_with_routing(self.config.root_appid, app.appid)
        elif app.is_root(self.config.root_appid):
            self.indices.create_index(app.appid, self.config.shards, self.config.replicas)
        else:
            self.indices.create_index(app.appid, self.config.shards_for_child_apps,
                                      self.config.replicas_for_child_apps)

    def on_app_deleted(self, app: App) -> None:
        """Remove an application's index, or its documents and alias when sharing."""
        self._require_started()
        if app is None or is_blank(app.appid):
            return
        if app.sharing_index and not app.is_root(self.config.root_appid):
            self.unindex_by_terms({"appid": app.appid}, appid=app.appid)
            self.indices.remove_index_alias(self.config.root_appid, app.appid)
        else:
            self.indices.delete_index(app.appid)

    # Search core

    def _search(self, appid: Optional[str], type: Optional[str],
                query: Optional[Dict[str, Any]], pager: Optional[Pager]) -> List[DomainObject]:
        hits = self._search_raw(appid, type, query, pager or Pager())
        return self._to_objects(appid, hits)

    def _search_raw(self, appid: Optional[str], type: Optional[str],
                    query: Optional[Dict[str, Any]], pager: Pager) -> List[Dict[str, Any]]:
        """
        Run a search and update ``pager`` with the hit count and cursor.

        The first page continues after ``pager.last_key`` when it is set;
        any other page is read by offset.
        """
        self._require_started()
        if query is None:
            return []
        index = self._appid(appid)
        request: Dict[str, Any] = {
            "index": index,
            "query": self.translator.with_type(query, type),
            "size": pager.limit,
            "search_type": "dfs_query_then_fetch",
            "track_total_hits": True,
        }
        if pager.uses_cursor() and is_digits(pager.last_key.strip()):
            request["search_after"] = [int(pager.last_key.strip())]
            request["sort"] = [{DOCID_FIELD: {"order": sort_order(pager.desc)}}]
        else:
            request["from_"] = pager.offset(self.config.max_pages)
            request["sort"] = self.translator.sort_fields(pager)

        try:
            response = self._client.search(**request)
        except NotFoundError as e:
            logger.warning("No search results, index '%s' not found: %s", index, e)
            return []
        except CLUSTER_ERRORS as e:
            logger.error("Search on index '%s' failed: %s", index, e)
            return []

        hits = response["hits"]["hits"]
        pager.count = response["hits"]["total"]["value"]
        if hits:
            last_key = hits[-1].get("_source", {}).get(DOCID_FIELD)
            if last_key is not None:
                pager.last_key = str(last_key)
        return list(hits)

    def _to_objects(self, appid: Optional[str], hits: List[Dict[str, Any]]) -> List[DomainObject]:
        if not hits:
            return []
        if self.config.read_from_index or self.store is None:
            objects = [self.codec.from_document(hit.get("_source")) for hit in hits]
            return [obj for obj in objects if obj is not None]

        appid = self._appid(appid)
        found = self.store.read_all(appid, [hit["_id"] for hit in hits])
        objects = []
        missing = []
        for hit in hits:
            obj = found.get(hit["_id"])
            if obj is None:
                # not in the store, fall back to the indexed copy
                obj = self.codec.from_document(hit.get("_source"))
                if obj is None:
                    continue
                if obj.appid == appid and obj.stored:
                    missing.append(obj.id)
            objects.append(obj)
        if missing:
            logger.warning("Found %d objects that are indexed but no longer exist in the data store: %s",
                           len(missing), missing)
        return objects

    def _count(self, appid: Optional[str], query: Dict[str, Any]) -> int:
        self._require_started()
        index = self._appid(appid)
        try:
            return int(self._client.count(index=index, query=query)["count"])
        except NotFoundError:
            logger.warning("Index '%s' not found, count is 0.", index)
        except CLUSTER_ERRORS as e:
            logger.error("Count on index '%s' failed: %s", index, e)
        return 0
