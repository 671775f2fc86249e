"""
SearchSync Models
=================

The domain objects SearchSync indexes. ``DomainObject`` is a generic
attribute bag: a handful of well-known fields plus arbitrary custom
``properties`` and any ``extra`` attributes a caller attaches.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class DomainObject:
    """
    An object stored in the primary data store and mirrored in the index.

    Example:
        obj = DomainObject(
            id="42",
            appid="shop",
            type="product",
            properties={"color": "red", "size": {"width": 10}}
        )
    """

    id: str
    appid: str = ""
    type: str = "sysprop"
    name: str = ""
    parentid: Optional[str] = None
    creatorid: Optional[str] = None
    timestamp: Optional[int] = None
    updated: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    latlng: Optional[str] = None
    stored: bool = True
    properties: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class App:
    """
    An application (tenant). Its identifier is also its index alias.

    Attributes:
        appid: Application identifier
        sharing_index: True if the app keeps its documents in the root
            application's index behind a routed alias
    """

    appid: str
    sharing_index: bool = False

    def is_root(self, root_appid: str) -> bool:
        return self.appid == root_appid
