"""
SearchSync Translator — Query Strings and Terms to Elasticsearch DSL
====================================================================

Builds the Elasticsearch queries behind every find* operation.

With nested custom fields enabled, ``properties.*`` fields do not exist in
the index mapping. Every clause on such a field is rewritten to a nested
query over the flattened key/value array:

    properties.color:red
        -> nested(properties, bool(match properties.k "color",
                                   match properties.v "red"))

Numeric-looking values go to ``properties.vn`` so that ranges compare
numbers, everything else to ``properties.v``.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import QueryDepthError, QueryParseError
from .pager import PROPS_FIELD, PROPS_PREFIX, Pager, get_sort_fields
from .query import (
    BooleanNode,
    BoostNode,
    FuzzyNode,
    MatchAllNode,
    PhraseNode,
    PrefixNode,
    QueryNode,
    QueryParser,
    RangeNode,
    TermNode,
    WildcardNode,
)

logger = logging.getLogger(__name__)

# recursive depth limit for compound queries (bool, boost)
MAX_QUERY_DEPTH = 10

PROPS_REGEX = re.compile(r"(^|.*\W)" + PROPS_FIELD + r"[.:].+", re.DOTALL)
NESTED_OBJECTS_FIELD = "nstd"
TAGS_FIELD = "tags"
TYPE_FIELD = "type"
ID_FIELD = "id"

_OPERATOR_SUFFIX = re.compile(r".*(<|>|<=|>=)", re.DOTALL)
_TRAILING_OPERATOR = re.compile(r"[<>=\s]+$")
_ARRAY_INDEX = re.compile(r"\[(\d+)\]")
_DIGITS = re.compile(r"[0-9]+")

_RANGE_OPERATORS = {">": "gt", "<": "lt", ">=": "gte", "<=": "lte"}


def match_all() -> Dict[str, Any]:
    return {"match_all": {}}


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def is_digits(value: Optional[str]) -> bool:
    return value is not None and _DIGITS.fullmatch(value) is not None


def numeric_value(value: str) -> Any:
    """The integer value of a digits-only token, else the token itself."""
    return int(value) if is_digits(value) else value


def is_props_field(field: Optional[str]) -> bool:
    return field is not None and PROPS_REGEX.fullmatch(field) is not None


def nested_key(key: str) -> str:
    """Translate ``properties.path.to[2].key`` to ``path-to-2-key``."""
    if key and key.startswith(PROPS_PREFIX):
        key = key[len(PROPS_PREFIX):]
        return _ARRAY_INDEX.sub(r"-\1", key).replace(".", "-")
    return key


def value_field_name(value: Optional[str]) -> str:
    """``properties.vn`` for numeric values, ``properties.v`` otherwise."""
    return PROPS_PREFIX + ("vn" if is_digits(value) else "v")


def value_field_name_from_range(lower: Optional[str], upper: Optional[str]) -> str:
    if (lower is None and upper is None) or is_digits(lower) or is_digits(upper):
        return PROPS_PREFIX + "vn"
    return PROPS_PREFIX + "v"


def nested_props_query(query: Dict[str, Any]) -> Dict[str, Any]:
    return {"nested": {"path": PROPS_FIELD, "query": query, "score_mode": "avg"}}


def key_value_bool_query(key: str, value: Optional[str] = None,
                         query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    A composite query matching one flattened property.

    Args:
        key: Property path, e.g. ``properties.size.w``
        value: Value to match (ignored when ``query`` is given)
        query: Query for the value field

    Returns:
        ``bool(must: [match(key), value clause])``, or a key-only match when
        the value is ``*`` or the value query matches everything
    """
    if is_blank(key) or (query is None and is_blank(value)):
        return match_all()
    k_query = {"match": {PROPS_PREFIX + "k": {"query": nested_key(key), "operator": "and"}}}
    if value == "*" or query == match_all():
        return {"bool": {"must": [k_query]}}
    if query is None:
        query = {"match": {value_field_name(value): {"query": numeric_value(value), "operator": "and"}}}
    return {"bool": {"must": [k_query, query]}}


class QueryTranslator:
    """
    Translates query strings and term maps into Elasticsearch queries.

    Args:
        nested_mode: Rewrite ``properties.*`` clauses for the flattened
            key/value schema
    """

    def __init__(self, nested_mode: bool = False):
        self.nested_mode = nested_mode
        self._parser = QueryParser(allow_leading_wildcard=False)

    # Structured terms

    def build_terms_query(self, terms: Mapping[str, Any],
                          must_match_all: bool = True) -> Optional[Dict[str, Any]]:
        """
        Build a query from a map of field terms.

        A key ending in ``<``, ``>``, ``<=`` or ``>=`` becomes a range
        clause, any other key an exact term clause.

        Args:
            terms: Field name -> scalar value
            must_match_all: AND the clauses if True, else OR them

        Returns:
            The query, the single clause itself if there is only one, or
            None if no valid term was given
        """
        clauses = []
        for key, value in (terms or {}).items():
            if is_blank(key) or value is None or not isinstance(value, (str, int, float, bool)):
                continue
            string_value = str(value).lower() if isinstance(value, bool) else str(value)
            if is_blank(string_value):
                continue
            match = _OPERATOR_SUFFIX.fullmatch(key.strip())
            if match:
                clause = self.range_query(match.group(1), key, string_value)
            elif self.nested_mode:
                clause = self._term(TermNode(key, string_value))
            else:
                clause = {"term": {key: string_value}}
            clauses.append(clause)

        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        occur = "must" if must_match_all else "should"
        return {"bool": {occur: clauses}}

    def range_query(self, operator: str, field: str, value: str) -> Dict[str, Any]:
        """
        A one-sided range query, e.g. ``range_query(">=", "price>=", "10")``.

        Raises:
            ValueError: On an unknown operator
        """
        if operator not in _RANGE_OPERATORS:
            raise ValueError(f"Unknown range operator '{operator}'")
        key = _TRAILING_OPERATOR.sub("", field)
        nested = self.nested_mode and field.startswith(PROPS_PREFIX)
        bounds = {_RANGE_OPERATORS[operator]: numeric_value(value)}
        query = {"range": {value_field_name(value) if nested else key: bounds}}
        if nested:
            return nested_props_query(key_value_bool_query(key, query=query))
        return query

    # Query strings

    def parse_and_validate(self, query: Optional[str]) -> str:
        """
        Validate a query string for use in a ``query_string`` query.

        Returns:
            The trimmed query without a leading ``*``, or ``*`` (match
            everything) if the query is blank or cannot be parsed
        """
        if is_blank(query) or query.strip() == "*":
            return "*"
        query = query.strip()
        if len(query) > 1 and query.startswith("*"):
            query = query[1:]
        try:
            self._parser.parse(query)
        except QueryParseError:
            logger.warning("Failed to parse query string '%s'.", query)
            return "*"
        return query.strip()

    def parse(self, query: Optional[str]) -> Optional[QueryNode]:
        """Parse a query string; None if blank, ``*`` or invalid."""
        if is_blank(query) or query.strip() == "*":
            return None
        try:
            return self._parser.parse(query)
        except QueryParseError:
            logger.warning("Failed to parse query string '%s'.", query)
        return None

    def is_valid_query_string(self, query: Optional[str]) -> bool:
        if is_blank(query):
            return False
        if query.strip() == "*":
            return True
        try:
            self._parser.parse(query)
            return True
        except QueryParseError:
            return False

    def query_string_query(self, query: Optional[str]) -> Dict[str, Any]:
        return {"query_string": {"query": self.parse_and_validate(query),
                                 "allow_leading_wildcard": False}}

    def convert_query_string_to_nested_query(self, query: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Rewrite a query string for the flattened properties schema.

        Returns:
            The rewritten query, match-all if the query cannot be parsed,
            or None if it is nested too deeply
        """
        query_str = _ARRAY_INDEX.sub(r"-\1", (query or "").strip())
        node = self.parse(query_str)
        if node is None:
            return match_all()
        try:
            return self.rewrite(node)
        except QueryDepthError as e:
            logger.warning(str(e))
            return None

    def string_query(self, query: str) -> Optional[Dict[str, Any]]:
        """The query for ``find_query``: nested rewrite or query_string."""
        if self.nested_mode and PROPS_REGEX.fullmatch(query):
            return self.convert_query_string_to_nested_query(query)
        return self.query_string_query(query)

    # Rewriting

    def rewrite(self, node: QueryNode, depth: int = 0) -> Dict[str, Any]:
        """
        Rewrite a parsed query tree into an Elasticsearch query.

        Args:
            node: Root of the parsed tree
            depth: Current compound nesting depth

        Returns:
            Elasticsearch query DSL

        Raises:
            QueryDepthError: If compound queries nest deeper than
                MAX_QUERY_DEPTH
        """
        if depth > MAX_QUERY_DEPTH:
            raise QueryDepthError(f"Query depth exceeded! Max depth: {MAX_QUERY_DEPTH}")
        if isinstance(node, BooleanNode):
            body: Dict[str, List[Dict[str, Any]]] = {}
            for clause in node.clauses:
                body.setdefault(clause.occur.value, []).append(self.rewrite(clause.query, depth + 1))
            return {"bool": body}
        if isinstance(node, BoostNode):
            return {"bool": {"must": [self.rewrite(node.query, depth + 1)], "boost": node.boost}}
        if isinstance(node, RangeNode):
            return self._term_range(node)
        if isinstance(node, TermNode):
            return self._term(node)
        if isinstance(node, PhraseNode):
            return self._phrase(node)
        if isinstance(node, FuzzyNode):
            return self._fuzzy(node)
        if isinstance(node, PrefixNode):
            return self._prefix(node)
        if isinstance(node, WildcardNode):
            return self._wildcard(node)
        if not isinstance(node, MatchAllNode):
            logger.warning("Unknown query type in nested mode query syntax: %s", type(node).__name__)
        return match_all()

    def _free_text(self, value: str, value_query: Dict[str, Any]) -> Dict[str, Any]:
        # a blank field searches property values or the whole document
        props = nested_props_query({"bool": {"must": [match_all(), value_query]}})
        return {"bool": {"should": [props, {"multi_match": {"query": value, "lenient": True}}]}}

    def _term_range(self, node: RangeNode) -> Dict[str, Any]:
        if is_blank(node.field):
            return match_all()
        nested = is_props_field(node.field)
        if node.lower is None and node.upper is None:
            query = match_all()
        else:
            bounds: Dict[str, Any] = {}
            if node.lower is not None:
                bounds["gte" if node.include_lower else "gt"] = numeric_value(node.lower)
            if node.upper is not None:
                bounds["lte" if node.include_upper else "lt"] = numeric_value(node.upper)
            name = value_field_name_from_range(node.lower, node.upper) if nested else node.field
            query = {"range": {name: bounds}}
        if nested:
            return nested_props_query(key_value_bool_query(node.field, query=query))
        return query

    def _term(self, node: TermNode) -> Dict[str, Any]:
        field, value = node.field, node.text
        if is_blank(field):
            return self._free_text(value, {"match": {value_field_name(value): numeric_value(value)}})
        if is_props_field(field):
            return nested_props_query(key_value_bool_query(field, value))
        return {"term": {field: value}}

    def _phrase(self, node: PhraseNode) -> Dict[str, Any]:
        field, value = node.field, node.text
        value_query = {"match_phrase": {PROPS_PREFIX + "v": value}}
        if is_blank(field):
            return self._free_text(value, value_query)
        if is_props_field(field):
            return nested_props_query(key_value_bool_query(field, query=value_query))
        return {"match_phrase": {field: value}}

    def _fuzzy(self, node: FuzzyNode) -> Dict[str, Any]:
        field, value = node.field, node.text

        def fuzzy(name: str) -> Dict[str, Any]:
            return {"fuzzy": {name: {"value": value, "fuzziness": node.max_edits}}}

        if is_blank(field):
            return self._free_text(value, fuzzy(value_field_name(value)))
        if is_props_field(field):
            return nested_props_query(key_value_bool_query(field, query=fuzzy(value_field_name(value))))
        return fuzzy(field)

    def _prefix(self, node: PrefixNode) -> Dict[str, Any]:
        field, value = node.field, node.prefix
        if is_blank(field):
            return self._free_text(value, {"prefix": {value_field_name(value): value}})
        if is_props_field(field):
            if not value:
                return nested_props_query(key_value_bool_query(field, "*"))
            return nested_props_query(key_value_bool_query(field, query={"prefix": {value_field_name(value): value}}))
        return {"prefix": {field: value}}

    def _wildcard(self, node: WildcardNode) -> Dict[str, Any]:
        field, value = node.field, node.pattern
        if is_blank(field):
            return self._free_text(value, {"wildcard": {value_field_name(value): value}})
        if is_props_field(field):
            return nested_props_query(key_value_bool_query(field, query={"wildcard": {value_field_name(value): value}}))
        return {"wildcard": {field: value}}

    # Builders for the find* operations

    def terms_in_list_query(self, field: str, terms: List[Any]) -> Dict[str, Any]:
        if self.nested_mode and field.startswith(PROPS_PREFIX):
            clauses = [key_value_bool_query(field, str(term)) for term in terms]
            inner = clauses[0] if len(clauses) == 1 else {"bool": {"should": clauses}}
            return nested_props_query(inner)
        return {"terms": {field: list(terms)}}

    def prefix_query(self, field: str, prefix: str) -> Dict[str, Any]:
        if self.nested_mode and field.startswith(PROPS_PREFIX):
            return nested_props_query(key_value_bool_query(field, query={"prefix": {value_field_name(prefix): prefix}}))
        return {"prefix": {field: prefix}}

    def wildcard_query(self, field: str, wildcard: str) -> Dict[str, Any]:
        if self.nested_mode and field.startswith(PROPS_PREFIX):
            return nested_props_query(key_value_bool_query(field, query={"wildcard": {value_field_name(wildcard): wildcard}}))
        return {"wildcard": {field: wildcard}}

    def tagged_query(self, tags: Iterable[str]) -> Dict[str, Any]:
        return {"bool": {"must": [{"term": {TAGS_FIELD: tag}} for tag in tags]}}

    def tags_query(self, keyword: str) -> Dict[str, Any]:
        return {"wildcard": {"tag": keyword + "*"}}

    def nested_object_query(self, field: str, query: str) -> Dict[str, Any]:
        query_string = f"{NESTED_OBJECTS_FIELD}.{field}:{query}"
        return {"nested": {
            "path": NESTED_OBJECTS_FIELD,
            "query": self.query_string_query(query_string),
            "score_mode": "avg"
        }}

    def similar_query(self, liketext: str, fields: Optional[List[str]] = None,
                      filter_key: Optional[str] = None) -> Dict[str, Any]:
        """
        A "more like this" query, optionally excluding one object id.

        Args:
            liketext: Text to find similar documents for
            fields: Fields to compare (all fields if empty)
            filter_key: Id of an object to exclude from the results
        """
        def more_like_this(names: Optional[List[str]]) -> Dict[str, Any]:
            mlt: Dict[str, Any] = {"like": [liketext], "min_doc_freq": 1, "min_term_freq": 1}
            if names:
                mlt["fields"] = names
            return {"more_like_this": mlt}

        if not fields:
            query = more_like_this(None)
        elif self.nested_mode and any(f.startswith(PROPS_PREFIX) for f in fields):
            query = {"bool": {"should": [
                nested_props_query({"bool": {"must": [
                    {"match": {PROPS_PREFIX + "k": nested_key(f)}},
                    more_like_this([PROPS_PREFIX + "v"])
                ]}})
                for f in fields
            ]}}
        else:
            query = more_like_this(list(fields))

        if not is_blank(filter_key):
            query = {"bool": {"must_not": [{"term": {ID_FIELD: filter_key}}], "filter": [query]}}
        return query

    def geo_distance_query(self, lat: float, lng: float, radius_km: int) -> Dict[str, Any]:
        return {"geo_distance": {"distance": f"{radius_km}km", "latlng": {"lat": lat, "lon": lng}}}

    def ids_query(self, ids: List[str]) -> Dict[str, Any]:
        return {"terms": {ID_FIELD: list(ids)}}

    def with_type(self, query: Optional[Dict[str, Any]], type: Optional[str]) -> Dict[str, Any]:
        """Restrict a query to one object type."""
        if query is None:
            query = match_all()
        if is_blank(type):
            return query
        return {"bool": {"must": [query, {"term": {TYPE_FIELD: type}}]}}

    def sort_fields(self, pager: Optional[Pager]) -> List[Dict[str, Any]]:
        return get_sort_fields(pager, self.nested_mode)
