from searchsync.models import DomainObject
from searchsync.pager import Pager, get_sort_fields
from searchsync.store import MemoryStore


def test_cursor_only_on_first_page():
    assert Pager(last_key="123").uses_cursor()
    assert not Pager(page=2, last_key="123").uses_cursor()
    assert not Pager(last_key="  ").uses_cursor()


def test_offset_is_capped():
    assert Pager(page=3, limit=10).offset(max_pages=100) == 20
    assert Pager(page=101, limit=10).offset(max_pages=100) == 0
    assert Pager(page=0, limit=10).offset(max_pages=100) == 0


def test_default_sort():
    assert get_sort_fields(None) == [{"timestamp": {"order": "desc"}}]
    assert get_sort_fields(Pager(sortby="")) == [{"_score": {"order": "desc"}}]


def test_sort_with_explicit_orders():
    pager = Pager(sortby="name:asc, timestamp ,rank:desc", desc=False)
    assert get_sort_fields(pager) == [
        {"name": {"order": "asc"}},
        {"timestamp": {"order": "asc"}},
        {"rank": {"order": "desc"}},
    ]


def test_nested_sort():
    pager = Pager(sortby="properties.size:asc")
    assert get_sort_fields(pager, nested_mode=True) == [{
        "properties.vn": {
            "order": "asc",
            "nested": {"path": "properties", "filter": {"term": {"properties.k": "size"}}}
        }
    }]
    assert get_sort_fields(pager) == [{"properties.size": {"order": "asc"}}]


def test_memory_store_pages_by_cursor():
    store = MemoryStore()
    for i in range(5):
        store.write(DomainObject(id=f"id{i}", appid="app"))
    pager = Pager(limit=2)
    pages = []
    while True:
        page = store.read_page("app", pager)
        if not page:
            break
        pages.append([obj.id for obj in page])
    assert pages == [["id0", "id1"], ["id2", "id3"], ["id4"]]
    assert set(store.read_all("app", ["id1", "missing"])) == {"id1"}
