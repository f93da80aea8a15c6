""".. currentmodule:: pgdeadlock.fingerprint

Query fingerprinting and relation extraction.

Two queries sharing the same structure but different literal values get the
same fingerprint. Pagination is ignored too, so that a query paged by a client
groups with its unpaged variant.

.. code-block:: python

    >>> fingerprint("SELECT * FROM t WHERE id = 1")[1]
    'SELECT * FROM t WHERE id = $1'
    >>> extract_relation('UPDATE public."Accounts" SET balance = 0')
    'Accounts'

.. autofunction:: fingerprint
.. autofunction:: normalize
.. autofunction:: strip_limit_offset
.. autofunction:: extract_relation
"""

import logging
import re
from typing import Iterator, List, Optional, Tuple

import sqlparse
import xxhash
from sqlparse import tokens as T
from sqlparse.exceptions import SQLParseError
from sqlparse.sql import Token

logger = logging.getLogger(__name__)

# LIMIT and OFFSET with placeholders at end of query, in any order.
_limit_offset_re = re.compile(
    r"\s+(LIMIT\s+\$\d+(\s+OFFSET\s+\$\d+)?|OFFSET\s+\$\d+(\s+LIMIT\s+\$\d+)?)\s*$",
    re.IGNORECASE,
)
_placeholder_re = re.compile(r"^\$(\d+)$")

# Keyword introducing the target relation, per statement type.
_relation_keywords = {
    "DELETE": "FROM",
    "INSERT": "INTO",
    "SELECT": "FROM",
    "UPDATE": "UPDATE",
}
# Keywords which can't be a relation name.
_stop_keywords = {
    "AS",
    "DEFAULT",
    "LATERAL",
    "SELECT",
    "SET",
    "USING",
    "VALUES",
    "WHERE",
}


def _tokens(query: str) -> Iterator[Token]:
    for statement in sqlparse.parse(query):
        yield from statement.flatten()


def _is_literal(token: Token) -> bool:
    return token.ttype in T.Number or token.ttype in T.String.Single


def normalize(query: str) -> str:
    """Replace literal values by positional placeholders.

    Numbering starts after the highest placeholder already present in query.

    :raises sqlparse.exceptions.SQLParseError: if query can't be tokenized.
    """
    tokens = list(_tokens(query))
    position = 0
    for token in tokens:
        m = _placeholder_re.match(token.value)
        if m:
            position = max(position, int(m.group(1)))

    chunks: List[str] = []
    for token in tokens:
        if _is_literal(token):
            position += 1
            chunks.append("$%d" % position)
        else:
            chunks.append(token.value)
    return "".join(chunks).strip()


def strip_limit_offset(query: str) -> str:
    """Remove trailing LIMIT and OFFSET clauses of a normalized query."""
    return _limit_offset_re.sub("", query)


def fingerprint(query: str) -> Tuple[int, str]:
    """Compute a stable hash of query structure.

    :param query: SQL query text, as logged.
    :returns: a tuple of 64-bit unsigned hash and normalized query text.
    """
    # Some log formats keep the terminating semicolon, some don't.
    query = query.strip()
    if query.endswith(";"):
        query = query[:-1].rstrip()

    try:
        normalized = normalize(query)
    except SQLParseError as e:
        logger.debug("Failed to normalize %.32r: %s.", query, e)
        normalized = query

    normalized = strip_limit_offset(normalized)
    return xxhash.xxh3_64_intdigest(normalized.encode("utf-8")), normalized


def query_fingerprint(query: str) -> Optional[int]:
    # Fingerprint or None for empty query.
    if not query.strip():
        return None
    return fingerprint(query)[0]


def _unquote(name: str) -> str:
    if len(name) > 1 and name[0] == name[-1] == '"':
        return name[1:-1].replace('""', '"')
    return name


def extract_relation(query: str) -> Optional[str]:
    """Returns the first table referenced by a DML statement.

    This is the target of UPDATE, DELETE or INSERT, or the first table in
    FROM clause of a SELECT. Schema qualification is dropped.

    :returns: ``None`` if query can't be parsed or has no relation.
    """
    try:
        statements = sqlparse.parse(query)
    except SQLParseError:
        return None

    for statement in statements:
        keyword = _relation_keywords.get(statement.get_type())
        if keyword is None:
            continue
        name = _name_after(list(statement.flatten()), keyword)
        if name:
            return name
    return None


def _name_after(tokens: List[Token], keyword: str) -> Optional[str]:
    # Returns the last part of the dotted name following keyword.
    for i, token in enumerate(tokens):
        if token.is_keyword and token.normalized == keyword:
            break
    else:
        return None

    parts: List[str] = []
    for token in tokens[i + 1 :]:
        if token.is_whitespace or token.ttype in T.Comment:
            if parts:
                break
            continue
        if token.ttype in T.Punctuation and token.value == ".":
            continue
        if token.is_keyword and not parts and token.normalized == "ONLY":
            continue
        if token.is_keyword and token.normalized in _stop_keywords:
            break
        if token.ttype in T.Name or token.ttype in T.String.Symbol:
            parts.append(token.value)
        elif token.is_keyword and token.ttype not in T.DML:
            parts.append(token.value)
        else:
            break
    if not parts:
        return None
    return _unquote(parts[-1])
