"""Unit tests for the Solr hybrid search client."""

from __future__ import annotations

import json
import re
from urllib.parse import parse_qs
from unittest.mock import Mock

import httpx
import numpy as np
import pytest

from core.errors import GenerationError, GenerationFailure, IndexFailure, SearchIndexError
from core.models import Chunk, IndexedChunk
from storage.hybrid_index import HybridSearchClient

BASE_URL = "http://solr:8983/solr"
DIM = 4


class SolrStub:
    """Records requests and answers with canned responses."""

    def __init__(self, select_docs=None, num_found=0, update_status=200, select_status=200):
        self.requests: list[httpx.Request] = []
        self.select_docs = select_docs or []
        self.num_found = num_found
        self.update_status = update_status
        self.select_status = select_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/update"):
            return httpx.Response(self.update_status, json={"responseHeader": {"status": 0}})
        if path.endswith("/select"):
            if self.select_status >= 400:
                return httpx.Response(self.select_status, text="undefined field vector")
            return httpx.Response(
                200,
                json={"response": {"numFound": self.num_found, "docs": self.select_docs}},
            )
        if path.endswith("/schema"):
            body = json.loads(request.content)
            if "add-field-type" in body:
                return httpx.Response(
                    400, json={"error": {"msg": "Field type 'knn_vector' already exists."}}
                )
            return httpx.Response(200, json={"responseHeader": {"status": 0}})
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def update_bodies(self) -> list:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("/update")]

    def select_params(self, i: int = -1) -> dict[str, str]:
        selects = [r for r in self.requests if r.url.path.endswith("/select")]
        return {k: v[0] for k, v in parse_qs(selects[i].content.decode()).items()}


class ScoringSolr:
    """Evaluates hybrid selects over an in-memory corpus.

    Each leg of the bool query is scored the way Solr would: kNN hits add
    the cosine similarity mapped to [0, 1], phrase legs add their boost when
    the field contains the phrase. A document's score is the sum of its legs.
    """

    BOOL = re.compile(r"\{!bool((?: should=\$\w+)+)\}")
    KNN = re.compile(r"\{!knn f=(\w+) topK=(\d+)\}\[([^\[\]]*)\]")
    PHRASE = re.compile(r'\((\w+):"((?:[^"\\]|\\.)*)"\)\^([\d.]+)')

    def __init__(self, docs: list[dict]):
        self.docs = docs

    def __call__(self, request: httpx.Request) -> httpx.Response:
        params = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        legs = re.findall(r"should=\$(\w+)", self.BOOL.fullmatch(params["q"]).group(1))
        scores: dict[str, float] = {}
        for leg in legs:
            for doc_id, score in self._score_leg(params[leg]).items():
                scores[doc_id] = scores.get(doc_id, 0.0) + score

        ranked = sorted(scores, key=scores.get, reverse=True)[: int(params["rows"])]
        by_id = {d["id"]: d for d in self.docs}
        docs = [
            {k: v for k, v in by_id[i].items() if k != "vector"} | {"score": scores[i]}
            for i in ranked
        ]
        return httpx.Response(200, json={"response": {"numFound": len(docs), "docs": docs}})

    def _score_leg(self, clause: str) -> dict[str, float]:
        knn = self.KNN.fullmatch(clause)
        if knn:
            field, top_k, values = knn.groups()
            query = np.array([float(v) for v in values.split(",")])
            similarities = {}
            for doc in self.docs:
                vec = np.array(doc[field])
                cosine = float(vec @ query / (np.linalg.norm(vec) * np.linalg.norm(query)))
                similarities[doc["id"]] = (1 + cosine) / 2
            nearest = sorted(similarities, key=similarities.get, reverse=True)[: int(top_k)]
            return {i: similarities[i] for i in nearest}

        phrase = self.PHRASE.fullmatch(clause)
        assert phrase is not None, f"unparseable leg: {clause}"
        field, text, boost = phrase.groups()
        text = re.sub(r"\\(.)", r"\1", text).lower()
        return {d["id"]: float(boost) for d in self.docs if text in d[field].lower()}


def make_client(stub, inference=None) -> HybridSearchClient:
    return HybridSearchClient(
        inference=inference,
        base_url=BASE_URL,
        core="documents",
        dimension=DIM,
        http_client=httpx.Client(transport=httpx.MockTransport(stub)),
    )


def make_chunk(i: int = 0, **metadata: str) -> Chunk:
    return Chunk(
        id=f"chunk-{i}",
        source_path="/docs/a.pdf",
        title=f"a.pdf (chunk {i})",
        content=f"Paragraph {i} " * 10,
        chunk_index=i,
        metadata=metadata,
    )


class TestWrites:
    def test_dimension_mismatch_rejected_before_network(self):
        stub = SolrStub()
        client = make_client(stub)

        with pytest.raises(SearchIndexError) as exc_info:
            client.store(make_chunk(), [0.1, 0.2, 0.3])

        assert exc_info.value.kind == IndexFailure.WRITE_REJECTED
        assert stub.requests == []

    def test_batch_with_one_bad_vector_sends_nothing(self):
        stub = SolrStub()
        client = make_client(stub)
        pairs = [(make_chunk(0), [0.1] * DIM), (make_chunk(1), [0.1] * (DIM + 1))]

        with pytest.raises(SearchIndexError):
            client.store_batch(pairs)

        assert stub.requests == []

    def test_non_finite_embedding_rejected(self):
        stub = SolrStub()
        client = make_client(stub)

        with pytest.raises(SearchIndexError):
            client.store(make_chunk(), [0.1, float("nan"), 0.3, 0.4])

        assert stub.requests == []

    def test_store_batch_single_upsert_then_commit(self):
        stub = SolrStub()
        client = make_client(stub)
        pairs = [(make_chunk(i, file_name="a.pdf", has_ocr="true"), [0.1] * DIM) for i in range(3)]

        stored = client.store_batch(pairs)

        assert stored == 3
        bodies = stub.update_bodies()
        assert len(bodies) == 2
        docs, commit = bodies
        assert [d["id"] for d in docs] == ["chunk-0", "chunk-1", "chunk-2"]
        assert docs[0]["file_path"] == "/docs/a.pdf"
        assert docs[0]["meta_file_name"] == "a.pdf"
        assert docs[0]["has_ocr"] is True
        assert len(docs[0]["vector"]) == DIM
        assert commit == {"commit": {}}
        assert all(p == "/solr/documents/update" for p in stub.paths())

    def test_store_indexed_uses_carried_embeddings(self):
        stub = SolrStub()
        client = make_client(stub)
        chunk = IndexedChunk(**make_chunk(0).model_dump(), embedding=[0.5] * DIM)

        assert client.store_indexed([chunk]) == 1

        docs = stub.update_bodies()[0]
        assert docs[0]["vector"] == [0.5] * DIM

    def test_store_does_not_commit(self):
        stub = SolrStub()
        client = make_client(stub)

        client.store(make_chunk(), [0.0, 0.1, 0.2, 0.3])

        assert len(stub.update_bodies()) == 1
        assert isinstance(stub.update_bodies()[0], list)

    def test_rejected_update_raises(self):
        stub = SolrStub(update_status=400)
        client = make_client(stub)

        with pytest.raises(SearchIndexError) as exc_info:
            client.store_batch([(make_chunk(), [0.1] * DIM)])

        assert exc_info.value.kind == IndexFailure.WRITE_REJECTED
        assert exc_info.value.status == 400
        assert len(stub.requests) == 1  # no commit after a rejected batch

    def test_delete_by_source_commits(self):
        stub = SolrStub()
        client = make_client(stub)

        client.delete_by_source("/docs/a.pdf")

        delete, commit = stub.update_bodies()
        assert delete == {"delete": {"query": 'file_path:"\\/docs\\/a.pdf"'}}
        assert commit == {"commit": {}}

    def test_clear_all(self):
        stub = SolrStub()
        client = make_client(stub)

        client.clear_all()

        assert stub.update_bodies()[0] == {"delete": {"query": "*:*"}}

    def test_init_schema_tolerates_existing(self):
        stub = SolrStub()
        client = make_client(stub)

        client.init_schema()

        field_type = json.loads(stub.requests[0].content)["add-field-type"]
        assert field_type["vectorDimension"] == DIM
        assert field_type["similarityFunction"] == "cosine"
        assert all(p.endswith("/schema") for p in stub.paths())


class TestQueries:
    def test_search_orders_by_fused_score(self):
        docs = [
            {"id": "b", "title": "B", "content": "b", "file_path": "/b", "score": 0.4},
            {"id": "a", "title": "A", "content": "a", "file_path": "/a", "score": 2.7,
             "meta_page_count": "3"},
            {"id": "c", "title": ["C"], "content": ["c"], "file_path": "/c", "score": 1.1},
        ]
        stub = SolrStub(select_docs=docs)
        inference = Mock()
        inference.embed.return_value = [0.1, 0.2, 0.3, 0.4]
        client = make_client(stub, inference)

        results = client.search("capital", top_k=3)

        assert [r.id for r in results] == ["a", "c", "b"]
        assert results[0].metadata == {"page_count": "3"}
        assert results[1].title == "C"
        assert results[0].source_path == "/a"
        inference.embed.assert_called_once_with("capital")

        params = stub.select_params()
        assert params["rows"] == "3"
        assert params["fl"] == "id,title,content,file_path,score,meta_*"
        assert params["q"] == "{!bool should=$vq should=$cq should=$tq}"
        assert params["vq"] == "{!knn f=vector topK=6}[0.1,0.2,0.3,0.4]"
        assert params["cq"] == '(content:"capital")^2.0'
        assert params["tq"] == '(title:"capital")^3.0'

    def test_fusion_ranks_title_over_content_over_vector(self):
        vector = [0.5, 0.5, 0.5, 0.5]
        corpus = [
            ("vector-only", "Rivers", "The Seine flows north"),
            ("content-hit", "Notes", "Paris is the capital of France"),
            ("title-hit", "Capital cities", "Paris and Rome"),
        ]
        solr = ScoringSolr(
            [
                {"id": i, "title": t, "content": c, "file_path": f"/{i}", "vector": vector}
                for i, t, c in corpus
            ]
        )
        inference = Mock()
        inference.embed.return_value = vector
        client = make_client(solr, inference)

        results = client.search("capital", top_k=3)

        assert [r.id for r in results] == ["title-hit", "content-hit", "vector-only"]
        assert results[0].score == pytest.approx(4.0)
        assert results[1].score == pytest.approx(3.0)
        assert results[2].score == pytest.approx(1.0)
        assert results[0].content == "Paris and Rome"

    def test_keyword_search_skips_embedding(self):
        stub = SolrStub(select_docs=[{"id": "x", "score": 1.0}])
        inference = Mock()
        client = make_client(stub, inference)

        results = client.keyword_search("solr", top_k=2)

        assert [r.id for r in results] == ["x"]
        inference.embed.assert_not_called()
        assert "knn" not in stub.select_params()["q"]

    def test_query_failure_raises(self):
        stub = SolrStub(select_status=500)
        client = make_client(stub)

        with pytest.raises(SearchIndexError) as exc_info:
            client.keyword_search("anything")

        assert exc_info.value.kind == IndexFailure.QUERY_FAILED
        assert exc_info.value.status == 500

    def test_embedding_failure_is_query_failure(self):
        stub = SolrStub()
        inference = Mock()
        inference.embed.side_effect = GenerationError("down", kind=GenerationFailure.BACKEND_ERROR)
        client = make_client(stub, inference)

        with pytest.raises(SearchIndexError) as exc_info:
            client.search("q")

        assert exc_info.value.kind == IndexFailure.QUERY_FAILED
        assert stub.requests == []

    def test_count(self):
        stub = SolrStub(num_found=42)
        client = make_client(stub)

        assert client.count() == 42
        params = stub.select_params()
        assert params["q"] == "*:*"
        assert params["rows"] == "0"

    def test_transport_error_maps_to_index_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = HybridSearchClient(
            base_url=BASE_URL,
            core="documents",
            dimension=DIM,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(SearchIndexError) as exc_info:
            client.count()

        assert exc_info.value.kind == IndexFailure.QUERY_FAILED
