"""
SearchSync Codec — Domain Objects <-> Index Documents
=====================================================

Converts ``DomainObject`` instances to the document stored in the index and
back again.

In nested (flattened) mode the free-form ``properties`` map is rewritten to
an array of key/value pairs so that custom fields never add new entries to
the index mapping:

    {"color": "red", "size": {"w": 10}, "tags": ["a", "b"]}

becomes

    [{"k": "color", "v": "red"}, {"k": "size-w", "vn": 10},
     {"k": "tags-0", "v": "a"}, {"k": "tags-1", "v": "b"}]

The original map is kept verbatim in ``_properties_json`` so that reading a
document back yields exactly what was written.
"""

import copy
import json
import logging
import threading
import time
from dataclasses import fields
from enum import Enum
from numbers import Number
from typing import Any, Dict, List, Mapping, Optional

from .models import DomainObject
from .pager import DOCID_FIELD, PROPS_FIELD

logger = logging.getLogger(__name__)

PROPS_JSON = "_properties_json"

# Never indexed
IGNORED_FIELDS = (
    "settings",
    "datatypes",
    "deviceState",
    "deviceMetadata",
    "resourcePermissions",
    "validationConstraints",
)

_OBJECT_FIELDS = tuple(f.name for f in fields(DomainObject) if f.name != "extra")


class PropertyKind(Enum):
    """The shape of a custom property value."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    MAP = "map"


def kind_of(value: Any) -> PropertyKind:
    """Classify a property value. Unknown types are indexed as strings."""
    if value is None:
        return PropertyKind.NULL
    if isinstance(value, bool):
        return PropertyKind.BOOL
    if isinstance(value, Number):
        return PropertyKind.NUMBER
    if isinstance(value, Mapping):
        return PropertyKind.MAP
    if isinstance(value, (list, tuple)):
        return PropertyKind.LIST
    return PropertyKind.STRING


def flatten_properties(properties: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flatten a properties map to a list of ``{k, v}`` / ``{k, vn}`` pairs.

    Nested maps contribute a hyphen-joined key prefix and list elements an
    index suffix. Walks the structure with an explicit stack.

    Args:
        properties: Custom properties of an object

    Returns:
        Key/value pairs in document order
    """
    if not properties:
        return []
    pairs: List[Dict[str, Any]] = []
    stack: List[tuple] = [("", properties)]
    while stack:
        prefix, value = stack.pop()
        kind = kind_of(value)
        if kind is PropertyKind.MAP:
            pre = prefix + "-" if prefix else ""
            for key, child in reversed(list(value.items())):
                stack.append((pre + str(key), child))
        elif kind is PropertyKind.LIST:
            for i in reversed(range(len(value))):
                stack.append((f"{prefix}-{i}", value[i]))
        elif kind is PropertyKind.NUMBER:
            pairs.append({"k": prefix, "vn": value})
        elif kind is PropertyKind.BOOL:
            pairs.append({"k": prefix, "v": "true" if value else "false"})
        elif kind is PropertyKind.STRING:
            pairs.append({"k": prefix, "v": str(value)})
        elif kind is PropertyKind.NULL:
            continue
        else:
            raise ValueError(f"Unhandled property kind: {kind}")
    return pairs


class DocIdGenerator:
    """Thread-safe generator of strictly increasing, time-ordered 64-bit ids."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last = 0

    def next_id(self) -> int:
        with self._lock:
            candidate = int(time.time() * 1000) << 12
            self._last = max(candidate, self._last + 1)
            return self._last


class DocumentCodec:
    """
    Converts between domain objects and index documents.

    Args:
        nested_mode: Flatten ``properties`` into key/value pairs
        id_generator: Source of ``_docid`` values (a new one if None)
    """

    def __init__(self, nested_mode: bool = False,
                 id_generator: Optional[DocIdGenerator] = None):
        self.nested_mode = nested_mode
        self._ids = id_generator or DocIdGenerator()

    def to_document(self, obj: Optional[DomainObject]) -> Dict[str, Any]:
        """
        Build the index document for an object.

        Args:
            obj: The object to index

        Returns:
            Field map ready to be used as a document ``_source``
        """
        if obj is None:
            return {}
        source: Dict[str, Any] = dict(obj.extra)
        for name in _OBJECT_FIELDS:
            source[name] = copy.deepcopy(getattr(obj, name))

        props = source.get(PROPS_FIELD)
        if self.nested_mode and isinstance(props, Mapping):
            try:
                props_json = json.dumps(props)
                # overwrite the properties object with the flattened array
                source[PROPS_FIELD] = flatten_properties(props)
                source[PROPS_JSON] = props_json
            except (TypeError, ValueError) as e:
                logger.error("Failed to flatten properties of object '%s': %s", obj.id, e)

        for name in IGNORED_FIELDS:
            source.pop(name, None)
        # sort key for search-after paging
        source[DOCID_FIELD] = self._ids.next_id()
        return source

    def from_document(self, source: Optional[Mapping[str, Any]]) -> Optional[DomainObject]:
        """
        Rebuild an object from a document ``_source``.

        Args:
            source: Field map read from the index

        Returns:
            A DomainObject, or None if source is None
        """
        if source is None:
            return None
        data = dict(source)
        if self.nested_mode and PROPS_JSON in data:
            try:
                data[PROPS_FIELD] = json.loads(data[PROPS_JSON])
            except (TypeError, ValueError) as e:
                logger.error("Failed to read '%s' of document '%s': %s",
                             PROPS_JSON, data.get("id"), e)
            data.pop(PROPS_JSON)
        data.pop(DOCID_FIELD, None)

        kwargs = {name: data.pop(name) for name in _OBJECT_FIELDS if name in data}
        kwargs.setdefault("id", "")
        if not isinstance(kwargs.get(PROPS_FIELD, {}), Mapping):
            # the flattened array is write-only
            kwargs[PROPS_FIELD] = {}
        if kwargs.get("tags") is None:
            kwargs.pop("tags", None)
        return DomainObject(extra=data, **kwargs)
