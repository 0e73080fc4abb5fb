"""Solr-backed hybrid (dense vector + keyword) search index."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

import httpx
import numpy as np

from core.config import settings
from core.errors import GenerationError, IndexFailure, SearchIndexError
from core.models import Chunk, IndexedChunk, SearchResult
from retrieval.query_builder import (
    RESULT_FIELDS,
    build_hybrid_params,
    build_keyword_query,
    build_source_query,
)

if TYPE_CHECKING:
    from generation.inference import InferenceService

logger = logging.getLogger(__name__)

META_PREFIX = "meta_"
VECTOR_FIELD_TYPE = "knn_vector"


class HybridSearchClient:
    """Stores chunk/embedding pairs in a Solr core and runs fused kNN + phrase queries."""

    def __init__(
        self,
        inference: InferenceService | None = None,
        base_url: str | None = None,
        core: str | None = None,
        dimension: int | None = None,
        http_client: httpx.Client | None = None,
    ):
        base_url = base_url or settings.solr_url
        self.core = core or settings.solr_core
        self.dimension = dimension or settings.embedding_dimensions
        self._core_url = f"{base_url.rstrip('/')}/{self.core}"
        self._inference = inference
        self._client = http_client or httpx.Client(timeout=settings.solr_timeout)

    def close(self) -> None:
        self._client.close()

    # -- writes -------------------------------------------------------------

    def store(self, chunk: Chunk, embedding: Sequence[float]) -> None:
        """Upsert a single chunk. Not committed until `commit()`."""
        doc = self._to_solr_doc(chunk, self._validate_embedding(chunk.id, embedding))
        self._update([doc])

    def store_batch(self, pairs: Iterable[tuple[Chunk, Sequence[float]]]) -> int:
        """Upsert all pairs in one request and commit.

        Every embedding is validated first, so a bad vector rejects the whole
        batch before anything is sent.
        """
        docs = [
            self._to_solr_doc(chunk, self._validate_embedding(chunk.id, embedding))
            for chunk, embedding in pairs
        ]
        if not docs:
            return 0

        self._update(docs)
        self.commit()
        logger.info("Stored %d chunks in Solr core '%s'", len(docs), self.core)
        return len(docs)

    def store_indexed(self, chunks: Iterable[IndexedChunk]) -> int:
        """Batch-store chunks that already carry their embeddings."""
        return self.store_batch((chunk, chunk.embedding) for chunk in chunks)

    def delete_by_source(self, source_path: str) -> None:
        self._update({"delete": {"query": build_source_query(source_path)}})
        self.commit()
        logger.info("Deleted chunks for source: %s", source_path)

    def clear_all(self) -> None:
        self._update({"delete": {"query": "*:*"}})
        self.commit()
        logger.info("Cleared all documents from Solr core '%s'", self.core)

    def commit(self) -> None:
        self._update({"commit": {}})

    def init_schema(self) -> None:
        """Install the dense vector field type and document fields.

        Safe to re-run: Solr rejects duplicates with an "already exists"
        error, which is ignored here.
        """
        commands = [
            {
                "add-field-type": {
                    "name": VECTOR_FIELD_TYPE,
                    "class": "solr.DenseVectorField",
                    "vectorDimension": self.dimension,
                    "similarityFunction": "cosine",
                }
            },
            {"add-field": {"name": "title", "type": "text_general", "stored": True}},
            {"add-field": {"name": "content", "type": "text_general", "stored": True}},
            {"add-field": {"name": "file_path", "type": "string", "stored": True}},
            {"add-field": {"name": "vector", "type": VECTOR_FIELD_TYPE, "stored": True}},
            {"add-field": {"name": "has_ocr", "type": "boolean", "stored": True}},
            {"add-field": {"name": "ocr_confidence", "type": "pfloat", "stored": True}},
            {
                "add-dynamic-field": {
                    "name": f"{META_PREFIX}*",
                    "type": "string",
                    "stored": True,
                    "multiValued": False,
                }
            },
        ]
        for command in commands:
            response = self._send("POST", "/schema", IndexFailure.WRITE_REJECTED, json=command)
            if response.status_code >= 400 and "already exists" not in response.text:
                raise SearchIndexError(
                    f"Schema update rejected: {response.text[:200]}",
                    kind=IndexFailure.WRITE_REJECTED,
                    status=response.status_code,
                )
        logger.info("Solr schema initialized for core '%s' (dim=%d)", self.core, self.dimension)

    # -- queries ------------------------------------------------------------

    def search(self, query_text: str, top_k: int | None = None) -> list[SearchResult]:
        """Hybrid search: kNN over the query embedding fused with boosted phrase matches."""
        if top_k is None:
            top_k = settings.top_k
        if self._inference is None:
            raise SearchIndexError(
                "Hybrid search requires an inference service for query embeddings",
                kind=IndexFailure.QUERY_FAILED,
            )

        try:
            query_vector = self._inference.embed(query_text)
        except GenerationError as e:
            raise SearchIndexError(
                f"Query embedding failed: {e}", kind=IndexFailure.QUERY_FAILED
            ) from e

        results = self._select(build_hybrid_params(query_text, query_vector, top_k), top_k)
        logger.info("Found %d results for query: %s", len(results), query_text[:50])
        return results

    def keyword_search(self, query_text: str, top_k: int | None = None) -> list[SearchResult]:
        """Phrase search on content and title only; no embedding call."""
        if top_k is None:
            top_k = settings.top_k
        return self._select({"q": build_keyword_query(query_text)}, top_k)

    def count(self) -> int:
        data = self._query({"q": "*:*", "rows": 0})
        return int(data.get("response", {}).get("numFound", 0))

    # -- internals ----------------------------------------------------------

    def _validate_embedding(self, chunk_id: str, embedding: Sequence[float]) -> list[float]:
        try:
            vector = np.asarray(embedding, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise SearchIndexError(
                f"Embedding for chunk {chunk_id} is not numeric: {e}",
                kind=IndexFailure.WRITE_REJECTED,
            ) from e

        if vector.ndim != 1 or vector.shape[0] != self.dimension:
            raise SearchIndexError(
                f"Embedding for chunk {chunk_id} has dimension {vector.size}, "
                f"index expects {self.dimension}",
                kind=IndexFailure.WRITE_REJECTED,
                details={"chunk_id": chunk_id},
            )
        if not np.all(np.isfinite(vector)):
            raise SearchIndexError(
                f"Embedding for chunk {chunk_id} contains non-finite values",
                kind=IndexFailure.WRITE_REJECTED,
                details={"chunk_id": chunk_id},
            )
        return vector.tolist()

    def _to_solr_doc(self, chunk: Chunk, vector: list[float]) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "id": chunk.id,
            "title": chunk.title,
            "content": chunk.content,
            "file_path": chunk.source_path,
            "vector": vector,
        }
        for key, value in chunk.metadata.items():
            field = key if key.startswith(META_PREFIX) else f"{META_PREFIX}{key}"
            doc[field] = value

        if "has_ocr" in chunk.metadata:
            doc["has_ocr"] = chunk.metadata["has_ocr"] == "true"
        if "ocr_confidence" in chunk.metadata:
            try:
                doc["ocr_confidence"] = float(chunk.metadata["ocr_confidence"])
            except ValueError:
                logger.warning("Ignoring non-numeric ocr_confidence on chunk %s", chunk.id)
        return doc

    def _update(self, payload: Any) -> None:
        response = self._send("POST", "/update", IndexFailure.WRITE_REJECTED, json=payload)
        if response.status_code >= 400:
            raise SearchIndexError(
                f"Solr update rejected: {response.text[:200]}",
                kind=IndexFailure.WRITE_REJECTED,
                status=response.status_code,
            )

    def _select(self, params: dict[str, str], top_k: int) -> list[SearchResult]:
        data = self._query({**params, "rows": top_k, "fl": RESULT_FIELDS})
        docs = data.get("response", {}).get("docs", [])
        results = [self._to_search_result(doc) for doc in docs]
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def _query(self, params: dict[str, Any]) -> dict[str, Any]:
        # Form-encoded POST keeps long kNN vectors out of the URL
        response = self._send(
            "POST", "/select", IndexFailure.QUERY_FAILED, data={**params, "wt": "json"}
        )
        if response.status_code >= 400:
            raise SearchIndexError(
                f"Solr query failed: {response.text[:200]}",
                kind=IndexFailure.QUERY_FAILED,
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise SearchIndexError(
                f"Solr returned invalid JSON: {e}", kind=IndexFailure.QUERY_FAILED
            ) from e

    def _send(self, method: str, path: str, failure: IndexFailure, **kwargs) -> httpx.Response:
        url = f"{self._core_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise SearchIndexError(f"Solr request to {url} failed: {e}", kind=failure) from e

    @staticmethod
    def _to_search_result(doc: dict[str, Any]) -> SearchResult:
        metadata = {}
        for field, value in doc.items():
            if not field.startswith(META_PREFIX):
                continue
            if isinstance(value, list):
                value = value[0] if value else ""
            metadata[field[len(META_PREFIX):]] = str(value)

        return SearchResult(
            id=str(doc.get("id", "")),
            title=_first(doc.get("title")),
            content=_first(doc.get("content")),
            source_path=_first(doc.get("file_path")),
            score=float(doc.get("score") or 0.0),
            metadata=metadata,
        )


def _first(value: Any) -> str:
    """Solr text_general fields may come back multi-valued."""
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return "" if value is None else str(value)
