"""
SearchSync Query — Query String Parsing
=======================================

Parses the boolean query-string mini-language into a tree of ``QueryNode``
objects. The tree is a plain tagged union, independent of any search
engine; ``searchsync.translator`` turns it into Elasticsearch query DSL.

Syntax:
    term                 Term in the default (blank) field
    field:term           Term in a field
    "a phrase"           Phrase
    term*                Prefix
    te?m, t*rm           Wildcard (no leading wildcard)
    term~, term~1        Fuzzy
    [a TO b], {a TO b}   Inclusive / exclusive range, * for unbounded
    field:>5, field:<=5  One-sided range
    term^2               Boost
    a AND b, a && b      Both required
    a OR b, a || b, a b  Either (default operator OR)
    NOT a, !a, -a        Prohibited
    +a                   Required
    (a OR b) AND c       Grouping, also field:(a b)
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .errors import QueryParseError


class Occur(Enum):
    """How a clause participates in a boolean query."""

    MUST = "must"
    SHOULD = "should"
    MUST_NOT = "must_not"
    FILTER = "filter"


class QueryNode:
    """Base class of all parsed query nodes."""


@dataclass
class TermNode(QueryNode):
    field: str
    text: str


@dataclass
class PhraseNode(QueryNode):
    field: str
    text: str


@dataclass
class RangeNode(QueryNode):
    """A range; a bound of None means unbounded on that side."""

    field: str
    lower: Optional[str] = None
    upper: Optional[str] = None
    include_lower: bool = True
    include_upper: bool = True


@dataclass
class PrefixNode(QueryNode):
    field: str
    prefix: str


@dataclass
class WildcardNode(QueryNode):
    field: str
    pattern: str


@dataclass
class FuzzyNode(QueryNode):
    field: str
    text: str
    max_edits: int = 2


@dataclass
class BoostNode(QueryNode):
    query: QueryNode
    boost: float


@dataclass
class MatchAllNode(QueryNode):
    pass


@dataclass
class Clause:
    occur: Occur
    query: QueryNode


@dataclass
class BooleanNode(QueryNode):
    clauses: List[Clause] = field(default_factory=list)


class Token:
    """Lexer token."""

    def __init__(self, token_type: str, value: str, position: int):
        self.type = token_type
        self.value = value
        self.position = position

    def __repr__(self) -> str:
        return f"Token({self.type}, {self.value!r})"


_BOUNDARY = r"(?![^\s()])"


class QueryLexer:
    """Splits a query string into tokens."""

    PATTERNS = [
        ("WHITESPACE", r"\s+"),
        ("PHRASE", r'"(?:\\.|[^"\\])*"'),
        ("AND", r"AND" + _BOUNDARY + r"|&&"),
        ("OR", r"OR" + _BOUNDARY + r"|\|\|"),
        ("NOT", r"NOT" + _BOUNDARY + r"|!"),
        ("TO", r"TO(?![^\s\]}])"),
        ("COMPARATOR", r">=|<=|>|<"),
        ("LPAREN", r"\("),
        ("RPAREN", r"\)"),
        ("LBRACKET", r"\["),
        ("RBRACKET", r"\]"),
        ("LBRACE", r"\{"),
        ("RBRACE", r"\}"),
        ("COLON", r":"),
        ("CARET", r"\^"),
        ("TILDE", r"~"),
        ("PLUS", r"\+"),
        ("MINUS", r"-"),
        ("TERM", r'(?:\\.|[^\s()\[\]{}:^~"+\-!<>=\\])(?:\\.|[^\s()\[\]{}:^~"\\])*'),
    ]

    def __init__(self):
        self._patterns = [(name, re.compile(pattern)) for name, pattern in self.PATTERNS]

    def tokenize(self, query: str) -> List[Token]:
        """
        Tokenize a query string.

        Raises:
            QueryParseError: On a character no token can start with
        """
        tokens = []
        position = 0
        while position < len(query):
            for token_type, pattern in self._patterns:
                match = pattern.match(query, position)
                if match:
                    if token_type != "WHITESPACE":
                        tokens.append(Token(token_type, match.group(0), position))
                    position = match.end()
                    break
            else:
                raise QueryParseError(f"Unexpected character {query[position]!r}", position)
        return tokens


_UNESCAPED_WILDCARD = re.compile(r"(?<!\\)[*?]")
_ESCAPE = re.compile(r"\\(.)")
_NUMBER = re.compile(r"\d+(\.\d+)?")

# parenthesized groups deeper than this are rejected
MAX_GROUP_DEPTH = 100


def unescape(text: str) -> str:
    return _ESCAPE.sub(r"\1", text)


class QueryParser:
    """
    Recursive-descent parser for query strings.

    Clause occurrence follows the classic Lucene rules with OR as the
    default operator: ``AND`` makes both neighbours required, ``+`` makes a
    clause required, ``NOT``/``-``/``!`` prohibits it, anything else is
    optional. A query of exactly one non-prohibited clause is returned
    without a BooleanNode wrapper.

    Example:
        parser = QueryParser()
        node = parser.parse('properties.color:red AND price:[10 TO *]')
    """

    def __init__(self, allow_leading_wildcard: bool = False):
        self.allow_leading_wildcard = allow_leading_wildcard
        self._lexer = QueryLexer()
        self._tokens: List[Token] = []
        self._position = 0
        self._depth = 0

    def parse(self, query: str, default_field: str = "") -> QueryNode:
        """
        Parse a query string.

        Args:
            query: Query string
            default_field: Field for terms without a ``field:`` prefix

        Returns:
            Root of the parsed tree

        Raises:
            QueryParseError: If the query is malformed
        """
        if query is None or not query.strip():
            raise QueryParseError("Empty query")
        self._tokens = self._lexer.tokenize(query)
        self._position = 0
        self._depth = 0
        node = self._parse_query(default_field)
        token = self._current()
        if token is not None:
            raise QueryParseError(f"Unexpected '{token.value}'", token.position)
        return node

    def _current(self) -> Optional[Token]:
        if self._position < len(self._tokens):
            return self._tokens[self._position]
        return None

    def _peek(self, offset: int = 1) -> Optional[Token]:
        pos = self._position + offset
        if pos < len(self._tokens):
            return self._tokens[pos]
        return None

    def _advance(self) -> Token:
        token = self._current()
        if token is None:
            raise QueryParseError("Unexpected end of query")
        self._position += 1
        return token

    def _at(self, *token_types: str) -> bool:
        token = self._current()
        return token is not None and token.type in token_types

    def _parse_query(self, field: str) -> QueryNode:
        clauses: List[Clause] = []
        while self._current() is not None and not self._at("RPAREN"):
            conj = None
            if self._at("AND", "OR"):
                token = self._advance()
                if not clauses:
                    raise QueryParseError(f"Dangling operator '{token.value}'", token.position)
                conj = token.type
            modifier = None
            if self._at("PLUS"):
                modifier = "REQ"
                self._advance()
            elif self._at("MINUS", "NOT"):
                modifier = "NOT"
                self._advance()
            if self._current() is None or self._at("RPAREN", "AND", "OR"):
                raise QueryParseError("Operator without an operand")
            self._add_clause(clauses, conj, modifier, self._parse_clause(field))

        if not clauses:
            raise QueryParseError("Empty query or group")
        if len(clauses) == 1 and clauses[0].occur is not Occur.MUST_NOT:
            return clauses[0].query
        return BooleanNode(clauses)

    @staticmethod
    def _add_clause(clauses: List[Clause], conj: Optional[str],
                    modifier: Optional[str], query: QueryNode) -> None:
        if clauses and conj == "AND" and clauses[-1].occur is not Occur.MUST_NOT:
            clauses[-1].occur = Occur.MUST
        prohibited = modifier == "NOT"
        required = modifier == "REQ" or (conj == "AND" and not prohibited)
        if required:
            occur = Occur.MUST
        elif prohibited:
            occur = Occur.MUST_NOT
        else:
            occur = Occur.SHOULD
        clauses.append(Clause(occur, query))

    def _parse_clause(self, field: str) -> QueryNode:
        token = self._current()
        next_token = self._peek()
        if token.type == "TERM" and next_token is not None and next_token.type == "COLON":
            field = unescape(token.value)
            self._position += 2

        if self._at("LPAREN"):
            opening = self._advance()
            if self._depth >= MAX_GROUP_DEPTH:
                raise QueryParseError("Query nested too deeply", opening.position)
            self._depth += 1
            try:
                node = self._parse_query(field)
            finally:
                self._depth -= 1
            if not self._at("RPAREN"):
                raise QueryParseError("Unbalanced parentheses", opening.position)
            self._advance()
        else:
            node = self._parse_term(field)

        if self._at("CARET"):
            self._advance()
            token = self._advance()
            if token.type != "TERM" or not _NUMBER.fullmatch(token.value):
                raise QueryParseError(f"Invalid boost '{token.value}'", token.position)
            node = BoostNode(node, float(token.value))
        return node

    def _parse_term(self, field: str) -> QueryNode:
        token = self._advance()
        if token.type in ("LBRACKET", "LBRACE"):
            return self._parse_range(field, token)
        if token.type == "COMPARATOR":
            return self._parse_comparison(field, token.value)
        if token.type == "PHRASE":
            if self._at("TILDE"):
                self._advance()
                if self._at("TERM") and _NUMBER.fullmatch(self._current().value):
                    self._advance()
            return PhraseNode(field, unescape(token.value[1:-1]))
        if token.type in ("TERM", "TO"):
            if self._at("TILDE"):
                self._advance()
                max_edits = 2
                if self._at("TERM") and _NUMBER.fullmatch(self._current().value):
                    edits = float(self._advance().value)
                    # legacy similarity values (0.0-1.0) fall back to the default
                    max_edits = min(int(edits), 2) if edits >= 1 else 2
                return FuzzyNode(field, unescape(token.value), max_edits)
            return self._term_node(field, token)
        raise QueryParseError(f"Unexpected '{token.value}'", token.position)

    def _term_node(self, field: str, token: Token) -> QueryNode:
        raw = token.value
        if field == "*" and raw == "*":
            return MatchAllNode()
        if raw == "*" and field:
            return PrefixNode(field, "")
        wildcards = [m.start() for m in _UNESCAPED_WILDCARD.finditer(raw)]
        if not wildcards:
            return TermNode(field, unescape(raw))
        if wildcards[0] == 0 and not self.allow_leading_wildcard:
            raise QueryParseError("Leading wildcard not allowed", token.position)
        if wildcards == [len(raw) - 1] and raw.endswith("*"):
            return PrefixNode(field, unescape(raw[:-1]))
        return WildcardNode(field, raw)

    def _bound(self) -> Optional[str]:
        token = self._advance()
        text = token.value
        if token.type == "MINUS" and self._at("TERM"):
            text = "-" + self._advance().value
        elif token.type == "PHRASE":
            return unescape(text[1:-1])
        elif token.type not in ("TERM", "TO"):
            raise QueryParseError(f"Invalid range bound '{text}'", token.position)
        return None if text == "*" else unescape(text)

    def _parse_range(self, field: str, opening: Token) -> RangeNode:
        lower = self._bound()
        token = self._advance()
        if token.type != "TO":
            raise QueryParseError("Expected 'TO' in range", token.position)
        upper = self._bound()
        closing = self._advance()
        if closing.type not in ("RBRACKET", "RBRACE"):
            raise QueryParseError("Unterminated range", opening.position)
        return RangeNode(
            field,
            lower=lower,
            upper=upper,
            include_lower=opening.type == "LBRACKET",
            include_upper=closing.type == "RBRACKET"
        )

    def _parse_comparison(self, field: str, operator: str) -> RangeNode:
        value = self._bound()
        if operator == ">":
            return RangeNode(field, lower=value, include_lower=False)
        if operator == ">=":
            return RangeNode(field, lower=value, include_lower=True)
        if operator == "<":
            return RangeNode(field, upper=value, include_upper=False)
        return RangeNode(field, upper=value, include_upper=True)
