import pytest

from searchsync.errors import QueryDepthError
from searchsync.query import BooleanNode, BoostNode, Clause, Occur, TermNode
from searchsync.translator import (
    MAX_QUERY_DEPTH,
    QueryTranslator,
    key_value_bool_query,
    nested_key,
    nested_props_query,
    numeric_value,
    value_field_name,
    value_field_name_from_range,
)


@pytest.fixture
def plain():
    return QueryTranslator()


@pytest.fixture
def nested():
    return QueryTranslator(nested_mode=True)


def key_match(key):
    return {"match": {"properties.k": {"query": key, "operator": "and"}}}


def test_nested_key_flattens_paths():
    assert nested_key("properties.a.b[2]") == "a-b-2"
    assert nested_key("properties.color") == "color"
    assert nested_key("name") == "name"


def test_value_field_name():
    assert value_field_name("42") == "properties.vn"
    assert value_field_name("4.2") == "properties.v"
    assert value_field_name("red") == "properties.v"
    assert value_field_name_from_range(None, None) == "properties.vn"
    assert value_field_name_from_range("a", "10") == "properties.vn"
    assert value_field_name_from_range("a", "z") == "properties.v"


def test_numeric_value():
    assert numeric_value("42") == 42
    assert numeric_value("-42") == "-42"
    assert numeric_value("x") == "x"


def test_key_value_bool_query_wildcard_value_matches_key_only():
    assert key_value_bool_query("properties.color", "*") == {"bool": {"must": [key_match("color")]}}
    assert key_value_bool_query("", "x") == {"match_all": {}}


def test_terms_query_empty(plain):
    assert plain.build_terms_query({}) is None
    assert plain.build_terms_query({"": "x", "a": None, "b": " ", "c": [1]}) is None


def test_terms_query_single_term_is_unwrapped(plain):
    assert plain.build_terms_query({"name": "alice"}) == {"term": {"name": "alice"}}


def test_terms_query_combines_clauses(plain):
    terms = {"name": "alice", "active": True}
    assert plain.build_terms_query(terms) == {"bool": {"must": [
        {"term": {"name": "alice"}},
        {"term": {"active": "true"}},
    ]}}
    assert "should" in plain.build_terms_query(terms, must_match_all=False)["bool"]


def test_terms_query_ranges(plain):
    assert plain.build_terms_query({"price>": 10}) == {"range": {"price": {"gt": 10}}}
    assert plain.build_terms_query({"price <=": "9"}) == {"range": {"price": {"lte": 9}}}
    assert plain.build_terms_query({"name>=": "m"}) == {"range": {"name": {"gte": "m"}}}


def test_terms_query_nested(nested):
    assert nested.build_terms_query({"properties.color": "red"}) == nested_props_query({"bool": {"must": [
        key_match("color"),
        {"match": {"properties.v": {"query": "red", "operator": "and"}}},
    ]}})
    assert nested.build_terms_query({"properties.size>=": 5}) == nested_props_query({"bool": {"must": [
        key_match("size"),
        {"range": {"properties.vn": {"gte": 5}}},
    ]}})
    assert nested.build_terms_query({"type": "product"}) == {"term": {"type": "product"}}


def test_range_query_rejects_unknown_operator(plain):
    with pytest.raises(ValueError):
        plain.range_query("=", "a", "1")


@pytest.mark.parametrize("query, expected", [
    (None, "*"),
    ("", "*"),
    ("*", "*"),
    ("  name:alice  ", "name:alice"),
    ("*abc", "abc"),
    ("(a", "*"),
    ("a AND", "*"),
])
def test_parse_and_validate(plain, query, expected):
    assert plain.parse_and_validate(query) == expected


def test_is_valid_query_string(plain):
    assert plain.is_valid_query_string("*")
    assert plain.is_valid_query_string("a AND b")
    assert not plain.is_valid_query_string("a AND")
    assert not plain.is_valid_query_string("")


def test_string_query(plain, nested):
    expected = {"query_string": {"query": "name:alice", "allow_leading_wildcard": False}}
    assert plain.string_query("name:alice") == expected
    assert nested.string_query("name:alice") == expected
    assert plain.string_query("properties.a:1") == {
        "query_string": {"query": "properties.a:1", "allow_leading_wildcard": False}
    }
    assert "nested" in nested.string_query("properties.a:1")


def test_rewrite_nested_term_and_range(nested):
    assert nested.convert_query_string_to_nested_query("properties.a.b[2]:x") == nested_props_query(
        {"bool": {"must": [key_match("a-b-2"), {"match": {"properties.v": {"query": "x", "operator": "and"}}}]}}
    )
    assert nested.convert_query_string_to_nested_query("properties.price:[10 TO 20}") == nested_props_query(
        {"bool": {"must": [key_match("price"), {"range": {"properties.vn": {"gte": 10, "lt": 20}}}]}}
    )


def test_rewrite_unbounded_ranges(nested):
    assert nested.convert_query_string_to_nested_query("properties.price:[* TO *]") == nested_props_query(
        {"bool": {"must": [key_match("price")]}}
    )
    assert nested.convert_query_string_to_nested_query("price:[* TO *]") == {"match_all": {}}


def test_rewrite_field_exists(nested):
    assert nested.convert_query_string_to_nested_query("properties.color:*") == nested_props_query(
        {"bool": {"must": [key_match("color")]}}
    )


def test_rewrite_boolean(nested):
    query = nested.convert_query_string_to_nested_query("properties.a:1 AND NOT type:user")
    assert set(query["bool"]) == {"must", "must_not"}
    assert query["bool"]["must_not"] == [{"term": {"type": "user"}}]
    assert query["bool"]["must"][0]["nested"]["path"] == "properties"


def test_rewrite_blank_field_searches_values_and_document(nested):
    query = nested.rewrite(TermNode("", "red"))
    props, whole = query["bool"]["should"]
    assert props == nested_props_query({"bool": {"must": [
        {"match_all": {}}, {"match": {"properties.v": "red"}}
    ]}})
    assert whole == {"multi_match": {"query": "red", "lenient": True}}


def test_rewrite_plain_leaves(nested):
    assert nested.convert_query_string_to_nested_query("name:jo*") == {"prefix": {"name": "jo"}}
    assert nested.convert_query_string_to_nested_query("name:j?n") == {"wildcard": {"name": "j?n"}}
    assert nested.convert_query_string_to_nested_query("name:jon~1") == {
        "fuzzy": {"name": {"value": "jon", "fuzziness": 1}}
    }
    assert nested.convert_query_string_to_nested_query('title:"a b"') == {"match_phrase": {"title": "a b"}}


def test_rewrite_boost(nested):
    assert nested.rewrite(BoostNode(TermNode("name", "x"), 2.0)) == {
        "bool": {"must": [{"term": {"name": "x"}}], "boost": 2.0}
    }


def test_malformed_query_matches_all(nested):
    assert nested.convert_query_string_to_nested_query("properties.a:(x") == {"match_all": {}}


def _deep(levels):
    node = TermNode("name", "x")
    for _ in range(levels):
        node = BooleanNode([Clause(Occur.MUST, node)])
    return node


def test_rewrite_depth_limit(nested):
    nested.rewrite(_deep(MAX_QUERY_DEPTH))
    with pytest.raises(QueryDepthError):
        nested.rewrite(_deep(MAX_QUERY_DEPTH + 1))


def test_too_deep_query_string_is_dropped(nested):
    query = "properties.x:1"
    for i in range(MAX_QUERY_DEPTH + 1):
        query = f"(a{i} AND {query})"
    assert nested.convert_query_string_to_nested_query(query) is None


def test_similar_query(plain, nested):
    assert plain.similar_query("text", None, "42") == {"bool": {
        "must_not": [{"term": {"id": "42"}}],
        "filter": [{"more_like_this": {"like": ["text"], "min_doc_freq": 1, "min_term_freq": 1}}],
    }}
    query = nested.similar_query("text", ["properties.bio"])
    inner = query["bool"]["should"][0]["nested"]["query"]["bool"]["must"]
    assert inner[0] == {"match": {"properties.k": "bio"}}
    assert inner[1]["more_like_this"]["fields"] == ["properties.v"]


def test_builders(plain):
    assert plain.tagged_query(["a", "b"]) == {"bool": {"must": [{"term": {"tags": "a"}}, {"term": {"tags": "b"}}]}}
    assert plain.tags_query("py") == {"wildcard": {"tag": "py*"}}
    assert plain.geo_distance_query(1.5, 2.5, 10) == {
        "geo_distance": {"distance": "10km", "latlng": {"lat": 1.5, "lon": 2.5}}
    }
    assert plain.with_type(None, "user") == {"bool": {"must": [{"match_all": {}}, {"term": {"type": "user"}}]}}
    assert plain.with_type({"match_all": {}}, None) == {"match_all": {}}
    assert plain.nested_object_query("author", "bob")["nested"]["path"] == "nstd"


def test_deeply_nested_groups_fall_back_to_match_all(plain, nested):
    query = "(" * 600 + "a" + ")" * 600
    assert plain.parse_and_validate(query) == "*"
    assert plain.parse(query) is None
    assert not plain.is_valid_query_string(query)
    assert nested.convert_query_string_to_nested_query("properties.a:1 AND " + query) == {"match_all": {}}
    assert plain.parse_and_validate("(" * 50 + "a" + ")" * 50) != "*"
