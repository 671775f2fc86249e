import pytest

from searchsync.errors import QueryParseError
from searchsync.query import (
    BooleanNode,
    BoostNode,
    Clause,
    FuzzyNode,
    MAX_GROUP_DEPTH,
    MatchAllNode,
    Occur,
    PhraseNode,
    PrefixNode,
    QueryLexer,
    QueryParser,
    RangeNode,
    TermNode,
    WildcardNode,
)


@pytest.fixture
def parser():
    return QueryParser()


def test_lexer_keywords_need_boundaries():
    tokens = QueryLexer().tokenize("ANDROID AND TOP")
    assert [t.type for t in tokens] == ["TERM", "AND", "TERM"]


def test_single_term(parser):
    assert parser.parse("hello") == TermNode("", "hello")
    assert parser.parse("name:alice") == TermNode("name", "alice")


def test_escaped_colon_stays_in_term(parser):
    assert parser.parse(r"url:http\://x") == TermNode("url", "http://x")


def test_phrase(parser):
    assert parser.parse('title:"hello world"') == PhraseNode("title", "hello world")


def test_default_operator_is_or(parser):
    node = parser.parse("a b")
    assert node == BooleanNode([
        Clause(Occur.SHOULD, TermNode("", "a")),
        Clause(Occur.SHOULD, TermNode("", "b")),
    ])


def test_and_makes_both_required(parser):
    node = parser.parse("a AND b")
    assert [c.occur for c in node.clauses] == [Occur.MUST, Occur.MUST]
    node = parser.parse("a && b")
    assert [c.occur for c in node.clauses] == [Occur.MUST, Occur.MUST]


def test_prohibited_clauses(parser):
    for query in ("a NOT b", "a -b", "a !b"):
        node = parser.parse(query)
        assert [c.occur for c in node.clauses] == [Occur.SHOULD, Occur.MUST_NOT]


def test_single_prohibited_clause_keeps_wrapper(parser):
    node = parser.parse("-a")
    assert node == BooleanNode([Clause(Occur.MUST_NOT, TermNode("", "a"))])


def test_required_modifier(parser):
    node = parser.parse("+a b")
    assert [c.occur for c in node.clauses] == [Occur.MUST, Occur.SHOULD]


def test_grouping(parser):
    node = parser.parse("(a OR b) AND c")
    assert node.clauses[0].occur is Occur.MUST
    assert isinstance(node.clauses[0].query, BooleanNode)
    assert node.clauses[1].query == TermNode("", "c")


def test_field_group(parser):
    node = parser.parse("color:(red blue)")
    assert [c.query for c in node.clauses] == [TermNode("color", "red"), TermNode("color", "blue")]


def test_ranges(parser):
    assert parser.parse("price:[10 TO 20]") == RangeNode("price", "10", "20", True, True)
    assert parser.parse("price:{10 TO *]") == RangeNode("price", "10", None, False, True)
    assert parser.parse("t:[-5 TO 5}") == RangeNode("t", "-5", "5", True, False)


def test_comparisons(parser):
    assert parser.parse("age:>=18") == RangeNode("age", lower="18", include_lower=True)
    assert parser.parse("age:<18") == RangeNode("age", upper="18", include_upper=False)


def test_prefix_wildcard_fuzzy_boost(parser):
    assert parser.parse("name:jo*") == PrefixNode("name", "jo")
    assert parser.parse("name:j?n*s") == WildcardNode("name", "j?n*s")
    assert parser.parse("name:jon~1") == FuzzyNode("name", "jon", 1)
    assert parser.parse("name:jon~") == FuzzyNode("name", "jon", 2)
    assert parser.parse("name:jon^2") == BoostNode(TermNode("name", "jon"), 2.0)


def test_match_all_and_field_exists(parser):
    assert parser.parse("*:*") == MatchAllNode()
    assert parser.parse("name:*") == PrefixNode("name", "")


@pytest.mark.parametrize("query", [
    "",
    "   ",
    "AND a",
    "a AND",
    "a OR OR b",
    "(a b",
    "a b)",
    "*abc",
    "name:?abc",
    "price:[10 20]",
    "price:[10 TO 20",
    "a^x",
    "a -",
])
def test_malformed_queries(parser, query):
    with pytest.raises(QueryParseError):
        parser.parse(query)


def test_leading_wildcard_allowed_when_enabled():
    assert QueryParser(allow_leading_wildcard=True).parse("*abc") == WildcardNode("", "*abc")


def test_group_depth_is_bounded(parser):
    depth = MAX_GROUP_DEPTH
    assert parser.parse("(" * depth + "a" + ")" * depth) == TermNode("", "a")
    with pytest.raises(QueryParseError):
        parser.parse("(" * (depth + 1) + "a" + ")" * (depth + 1))
    assert parser.parse("(b)") == TermNode("", "b")
