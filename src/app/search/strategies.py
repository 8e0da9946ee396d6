"""Ranking strategy selection.

Two interchangeable ranking algorithms sit behind one query interface:

- TOKEN: full-text match on the weighted ``tsv`` column, scored by ts_rank,
  with a trigram match on the primary field so misspellings still land
- FUZZY: pg_trgm similarity over the primary text fields, with an ILIKE
  substring safety net

The choice is a pure function of the query text; stored data is never consulted.
"""

from __future__ import annotations

import re
from enum import Enum

# Approximates the 'simple' text search parser: runs of letters and digits.
# Underscores are separators, and a bare "or" is a websearch operator.
_TERM_RE = re.compile(r"[^\W_]+", re.UNICODE)
_OPERATOR_WORDS = frozenset({"or"})

MIN_TOKEN_QUERY_LENGTH = 2


class RankingStrategy(str, Enum):
    TOKEN = "token"
    FUZZY = "fuzzy"


def extract_terms(query: str) -> list[str]:
    """Lower-cased terms websearch_to_tsquery('simple', ...) would keep."""
    terms = (term.lower() for term in _TERM_RE.findall(query))
    return [term for term in terms if term not in _OPERATOR_WORDS]


def choose_strategy(query: str) -> RankingStrategy:
    """TOKEN for queries of two or more characters yielding a term, else FUZZY."""
    if len(query) >= MIN_TOKEN_QUERY_LENGTH and extract_terms(query):
        return RankingStrategy.TOKEN
    return RankingStrategy.FUZZY
