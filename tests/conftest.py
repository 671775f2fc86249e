"""Shared fixtures: an in-memory stand-in for the Elasticsearch client."""

import fnmatch
import itertools

import pytest
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import NotFoundError

import searchsync.bulk
from searchsync.config import SearchConfig
from searchsync.models import DomainObject
from searchsync.store import MemoryStore


def api_error(cls, status, message):
    meta = ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )
    return cls(message=message, meta=meta, body={"error": message})


class FakeIndices:
    """The subset of ``client.indices`` used by SearchSync."""

    def __init__(self, es):
        self.es = es
        self.calls = []

    def create(self, index, settings=None, mappings=None, **kwargs):
        self.calls.append(("create", index))
        self.es.docs[index] = {}
        self.es.settings[index] = settings
        self.es.mappings[index] = mappings
        return {"acknowledged": True, "index": index}

    def exists(self, index, **kwargs):
        return bool(self.es.resolve(index))

    def get(self, index, **kwargs):
        names = self.es.resolve(index)
        if not names:
            raise api_error(NotFoundError, 404, f"no such index [{index}]")
        return {name: {"settings": self.es.settings.get(name)} for name in names}

    def delete(self, index, **kwargs):
        self.calls.append(("delete", index))
        names = self.es.resolve(index)
        if not names:
            raise api_error(NotFoundError, 404, f"no such index [{index}]")
        for name in names:
            del self.es.docs[name]
            for targets in self.es.aliases.values():
                targets.pop(name, None)
        return {"acknowledged": True}

    def update_aliases(self, actions, **kwargs):
        self.calls.append(("update_aliases", actions))
        for action in actions:
            for op, spec in action.items():
                names = fnmatch.filter(self.es.docs, spec["index"])
                targets = self.es.aliases.setdefault(spec["alias"], {})
                for name in names:
                    if op == "add":
                        targets[name] = {k: v for k, v in spec.items() if k not in ("index", "alias")}
                    else:
                        targets.pop(name, None)
        return {"acknowledged": True}

    def exists_alias(self, name, index=None, **kwargs):
        targets = self.es.aliases.get(name, {})
        if index is None:
            return bool(targets)
        return any(fnmatch.fnmatch(t, index) for t in targets)

    def refresh(self, index, **kwargs):
        self.calls.append(("refresh", index))
        return {}


class FakeCluster:
    def __init__(self):
        self.status = "green"
        self.error = None

    def health(self, **kwargs):
        if self.error is not None:
            raise self.error
        return {"status": self.status}


class FakeElasticsearch:
    """
    Keeps documents per physical index and resolves aliases.

    Searches ignore the query and return every document of the target
    index ordered by ``_docid``; requests are recorded for inspection.
    """

    def __init__(self):
        self.docs = {}
        self.settings = {}
        self.mappings = {}
        self.aliases = {}
        self.indices = FakeIndices(self)
        self.cluster = FakeCluster()
        self.searches = []
        self.scrolls = {}
        self.cleared_scrolls = []
        self.closed = False
        self._scroll_ids = itertools.count(1)

    def resolve(self, index):
        if index in self.docs:
            return [index]
        targets = self.aliases.get(index)
        if targets:
            return list(targets)
        return fnmatch.filter(self.docs, index) if "*" in index else []

    def _documents(self, index):
        names = self.resolve(index)
        if not names:
            raise api_error(NotFoundError, 404, f"no such index [{index}]")
        hits = []
        for name in names:
            for doc_id, source in self.docs[name].items():
                hits.append({"_index": name, "_id": doc_id, "_score": 1.0, "_source": source})
        return sorted(hits, key=lambda h: h["_source"].get("_docid", 0))

    def apply(self, action):
        names = self.resolve(action["_index"])
        if not names:
            raise api_error(NotFoundError, 404, f"no such index [{action['_index']}]")
        target = self.docs[names[0]]
        if action["_op_type"] == "delete":
            target.pop(action["_id"], None)
        else:
            target[action["_id"]] = action["_source"]

    def search(self, index, query=None, size=10, from_=0, scroll=None,
               search_after=None, sort=None, **kwargs):
        self.searches.append(dict(index=index, query=query, size=size, from_=from_,
                                  scroll=scroll, search_after=search_after, sort=sort, **kwargs))
        hits = self._documents(index)
        if search_after:
            hits = [h for h in hits if h["_source"].get("_docid", 0) > search_after[0]]
        response = {"hits": {"total": {"value": len(hits)}, "hits": hits[from_:from_ + size]}}
        if scroll:
            scroll_id = f"scroll-{next(self._scroll_ids)}"
            self.scrolls[scroll_id] = (hits, size, size)
            response["_scroll_id"] = scroll_id
        return response

    def scroll(self, scroll_id, scroll=None, **kwargs):
        hits, size, offset = self.scrolls[scroll_id]
        self.scrolls[scroll_id] = (hits, size, offset + size)
        return {"_scroll_id": scroll_id, "hits": {"total": {"value": len(hits)},
                                                  "hits": hits[offset:offset + size]}}

    def clear_scroll(self, scroll_id=None, **kwargs):
        self.cleared_scrolls.append(scroll_id)
        self.scrolls.pop(scroll_id, None)
        return {"succeeded": True}

    def get(self, index, id, **kwargs):
        for hit in self._documents(index):
            if hit["_id"] == id:
                return hit
        raise api_error(NotFoundError, 404, f"document [{id}] not found")

    def count(self, index, query=None, **kwargs):
        return {"count": len(self._documents(index))}

    def close(self):
        self.closed = True


@pytest.fixture
def es():
    return FakeElasticsearch()


@pytest.fixture
def bulk_calls(es, monkeypatch):
    """Patch ``searchsync.bulk.bulk`` to apply actions to the fake client."""
    calls = []

    def fake_bulk(client, actions, **kwargs):
        actions = list(actions)
        calls.append(actions)
        for action in actions:
            es.apply(action)
        return len(actions), []

    monkeypatch.setattr(searchsync.bulk, "bulk", fake_bulk)
    return calls


@pytest.fixture
def config():
    return SearchConfig(bulk_flush_interval_ms=0)


@pytest.fixture
def store():
    memory = MemoryStore()
    for i in range(1, 6):
        memory.write(DomainObject(id=f"obj{i}", appid="root", type="product",
                                  name=f"Object {i}", properties={"rank": i}))
    return memory
