"""Solr query construction for hybrid (kNN + phrase) and keyword search."""

from __future__ import annotations

import re
from collections.abc import Sequence

VECTOR_FIELD = "vector"
CONTENT_FIELD = "content"
TITLE_FIELD = "title"

CONTENT_BOOST = 2.0
TITLE_BOOST = 3.0

RESULT_FIELDS = "id,title,content,file_path,score,meta_*"

# Lucene query syntax characters that must not reach the parser unescaped
_RESERVED = re.compile(r'([+\-!(){}\[\]^"~*?:\\/])')


def escape_query(text: str) -> str:
    """Backslash-escape every reserved query character in `text`."""
    return _RESERVED.sub(r"\\\1", text)


def phrase_clause(field: str, text: str, boost: float | None = None) -> str:
    clause = f'{field}:"{escape_query(text)}"'
    if boost is None:
        return clause
    return f"({clause})^{boost}"


def knn_clause(vector: Sequence[float], top_k: int) -> str:
    """kNN clause over the dense vector field, fetching 2x candidates for fusion."""
    values = ",".join(repr(float(v)) for v in vector)
    return f"{{!knn f={VECTOR_FIELD} topK={top_k * 2}}}[{values}]"


def build_hybrid_params(text: str, vector: Sequence[float], top_k: int) -> dict[str, str]:
    """Request parameters for a fused kNN + phrase query.

    Each leg goes in its own parameter and `q` ORs them together through a
    bool query, so the kNN parser only ever sees its own vector.
    """
    return {
        "q": "{!bool should=$vq should=$cq should=$tq}",
        "vq": knn_clause(vector, top_k),
        "cq": phrase_clause(CONTENT_FIELD, text, CONTENT_BOOST),
        "tq": phrase_clause(TITLE_FIELD, text, TITLE_BOOST),
    }


def build_keyword_query(text: str) -> str:
    """Phrase match on content and title with the same boosts as hybrid search."""
    return " OR ".join(
        [
            phrase_clause(CONTENT_FIELD, text, CONTENT_BOOST),
            phrase_clause(TITLE_FIELD, text, TITLE_BOOST),
        ]
    )


def build_source_query(source_path: str) -> str:
    return phrase_clause("file_path", source_path)
