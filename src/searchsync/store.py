"""
SearchSync Store — Primary Data Store Interface
===============================================

The primary data store is the source of truth; the index only mirrors it.
SearchSync needs two reads from it: paged scans (for rebuilding an index)
and batch reads by id (for turning search hits back into objects).
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .models import DomainObject
from .pager import Pager


class DataStore(ABC):
    """Abstract primary data store."""

    @abstractmethod
    def read_page(self, appid: str, pager: Pager) -> List[DomainObject]:
        """
        Read the next page of objects for an application.

        Implementations advance ``pager`` so that repeated calls walk the
        whole store; an empty list means the scan is complete.
        """

    @abstractmethod
    def read_all(self, appid: str, ids: List[str]) -> Dict[str, DomainObject]:
        """Read objects by id. Missing ids are absent from the result."""


class MemoryStore(DataStore):
    """In-memory data store, keyed by appid and then object id."""

    def __init__(self):
        self._data: Dict[str, Dict[str, DomainObject]] = {}

    def write(self, obj: DomainObject) -> None:
        self._data.setdefault(obj.appid, {})[obj.id] = obj

    def delete(self, appid: str, id: str) -> bool:
        return self._data.get(appid, {}).pop(id, None) is not None

    def read(self, appid: str, id: str) -> Optional[DomainObject]:
        return self._data.get(appid, {}).get(id)

    def read_page(self, appid: str, pager: Pager) -> List[DomainObject]:
        # ids are the cursor; pager.last_key holds the last id returned
        keys = sorted(self._data.get(appid, {}))
        if pager.last_key:
            keys = [k for k in keys if k > pager.last_key]
        page = [self._data[appid][k] for k in keys[:pager.limit]]
        if page:
            pager.last_key = page[-1].id
        return page

    def read_all(self, appid: str, ids: List[str]) -> Dict[str, DomainObject]:
        objects = self._data.get(appid, {})
        return {i: objects[i] for i in ids if i in objects}
