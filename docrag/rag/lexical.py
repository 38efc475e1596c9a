from __future__ import annotations

"""Lexical query normalization and Okapi BM25 scoring."""

import math
import re
from collections import Counter
from dataclasses import dataclass

_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def normalize_query_terms(query: str) -> list[str]:
    """Lowercase, replace punctuation with spaces and split on whitespace."""
    cleaned = _PUNCT_RE.sub(" ", query.lower())
    return [term for term in _WS_RE.split(cleaned) if term]


def build_or_query(terms: list[str]) -> str:
    """OR-combine terms into a tsquery expression (``a | b``)."""
    return " | ".join(terms)


def tokenize(text: str) -> list[str]:
    """Tokenize document text with the same rules as queries."""
    return normalize_query_terms(text)


@dataclass(frozen=True)
class BM25Params:
    k1: float = 1.5
    b: float = 0.75


def bm25_scores(
    query_terms: list[str],
    documents: list[tuple[str, Counter[str], int]],
    params: BM25Params = BM25Params(),
) -> list[tuple[str, float]]:
    """Score documents against OR-combined query terms.

    ``documents`` holds ``(key, term_frequencies, length)`` tuples. Only
    documents matching at least one term are returned, best first; equal
    scores keep input order.
    """
    terms = list(dict.fromkeys(query_terms))
    if not terms or not documents:
        return []
    total = len(documents)
    avg_length = sum(length for _, _, length in documents) / total or 1.0
    doc_freq = {
        term: sum(1 for _, freqs, _ in documents if freqs.get(term)) for term in terms
    }
    scored: list[tuple[str, float]] = []
    for key, freqs, length in documents:
        score = 0.0
        matched = False
        for term in terms:
            tf = freqs.get(term, 0)
            if not tf:
                continue
            matched = True
            df = doc_freq[term]
            idf = math.log(1.0 + (total - df + 0.5) / (df + 0.5))
            norm = tf + params.k1 * (1.0 - params.b + params.b * length / avg_length)
            score += idf * tf * (params.k1 + 1.0) / norm
        if matched:
            scored.append((key, score))
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored
