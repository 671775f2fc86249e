"""
SearchSync Pager — Paging and Sorting State
===========================================

A ``Pager`` travels with a search request and is updated with the total
hit count and the ``_docid`` of the last hit, which the next request can
use as a search-after cursor.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

PROPS_FIELD = "properties"
PROPS_PREFIX = PROPS_FIELD + "."
DOCID_FIELD = "_docid"


@dataclass
class Pager:
    """
    Paging state for a search or a data store scan.

    Attributes:
        page: 1-based page number; offset paging is used when > 1
        limit: Page size
        sortby: Comma-separated sort fields, each optionally suffixed
            with ``:asc`` or ``:desc``, e.g. ``"name:asc,timestamp"``
        desc: Default sort order for fields without a suffix
        last_key: Cursor (``_docid`` of the last hit seen)
        count: Total hits, filled in after a search
    """

    page: int = 1
    limit: int = 30
    sortby: str = "timestamp"
    desc: bool = True
    last_key: Optional[str] = None
    count: int = 0

    def uses_cursor(self) -> bool:
        """Cursor paging is only honored on the first page."""
        return self.page <= 1 and bool(self.last_key and self.last_key.strip())

    def offset(self, max_pages: int) -> int:
        if self.page < 1 or self.page > max_pages:
            return 0
        return (self.page - 1) * self.limit


def sort_order(desc: bool) -> str:
    return "desc" if desc else "asc"


def nested_field_sort(field_name: str, order: str) -> Dict[str, Any]:
    # nested sorting only works on the numeric value field
    key = field_name[len(PROPS_PREFIX):] if field_name.startswith(PROPS_PREFIX) else field_name
    return {
        PROPS_PREFIX + "vn": {
            "order": order,
            "nested": {
                "path": PROPS_FIELD,
                "filter": {"term": {PROPS_PREFIX + "k": key}}
            }
        }
    }


def get_sort_fields(pager: Optional[Pager], nested_mode: bool = False) -> List[Dict[str, Any]]:
    """
    Translate ``pager.sortby`` into Elasticsearch sort clauses.

    Args:
        pager: Pager holding the sort spec (a default Pager if None)
        nested_mode: Sort ``properties.*`` fields through the flattened
            key/value array

    Returns:
        List of sort clauses; ``[{"_score": ...}]`` when no field is given
    """
    pager = pager or Pager()
    default_order = sort_order(pager.desc)
    sortby = (pager.sortby or "").strip()
    if not sortby:
        return [{"_score": {"order": "desc"}}]

    sort_fields = []
    for spec in sortby.split(","):
        spec = spec.strip()
        if not spec:
            continue
        if spec.endswith(":asc"):
            order, name = "asc", spec[:-len(":asc")].strip()
        elif spec.endswith(":desc"):
            order, name = "desc", spec[:-len(":desc")].strip()
        else:
            order, name = default_order, spec
        if nested_mode and name.startswith(PROPS_PREFIX):
            sort_fields.append(nested_field_sort(name, order))
        else:
            sort_fields.append({name: {"order": order}})
    return sort_fields
