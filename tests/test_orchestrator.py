"""Unit tests for the retrieval orchestrator."""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from core.errors import (
    GenerationError,
    GenerationFailure,
    IndexFailure,
    QAError,
    SearchIndexError,
    StoreError,
)
from core.models import ConversationTurn, QAStage, SearchResult
from agent.orchestrator import QAState, RetrievalOrchestrator

QUESTION = "What is the capital of France?"


@pytest.fixture
def results():
    return [
        SearchResult(id="1", title="geo (chunk 0)", content="Paris is the capital of France.",
                     source_path="/docs/geo.pdf", score=2.0),
        SearchResult(id="2", title="geo (chunk 4)", content="France is in Europe.",
                     source_path="/docs/geo.pdf", score=1.5),
        SearchResult(id="3", title="travel (chunk 1)", content="Visit Paris in spring.",
                     source_path="/docs/travel.md", score=0.9),
    ]


@pytest.fixture
def index(results):
    index = Mock()
    index.search.return_value = results
    return index


@pytest.fixture
def inference():
    inference = Mock()
    inference.model_name = "test-model"
    inference.generate.return_value = "Paris is the capital of France."
    return inference


@pytest.fixture
def store():
    store = Mock()
    store.append.return_value = "turn-1"
    store.history.return_value = []
    return store


class TestAsk:
    def test_full_exchange(self, index, inference, store):
        orchestrator = RetrievalOrchestrator(index, inference, store, top_k=3)

        answer = orchestrator.ask(QUESTION, session_id="s1")

        assert answer.answer == "Paris is the capital of France."
        assert answer.session_id == "s1"
        assert answer.turn_id == "turn-1"
        assert answer.persisted
        assert answer.sources == ["/docs/geo.pdf", "/docs/travel.md"]
        assert len(answer.results) == 3
        index.search.assert_called_once_with(QUESTION, 3)
        store.append.assert_called_once_with(
            "s1",
            QUESTION,
            "Paris is the capital of France.",
            ["/docs/geo.pdf", "/docs/travel.md"],
            model="test-model",
        )

    def test_new_session_when_none_given(self, index, inference, store):
        answer = RetrievalOrchestrator(index, inference, store).ask(QUESTION)
        assert answer.session_id

    def test_empty_retrieval_still_answers(self, index, inference, store):
        index.search.return_value = []

        answer = RetrievalOrchestrator(index, inference, store).ask(QUESTION, "s1")

        assert answer.answer
        assert answer.sources == []
        inference.generate.assert_called_once()

    def test_persistence_failure_is_best_effort(self, index, inference, store):
        store.append.side_effect = StoreError("CouchDB returned HTTP 503", status=503)

        answer = RetrievalOrchestrator(index, inference, store).ask(QUESTION, "s1")

        assert answer.answer == "Paris is the capital of France."
        assert answer.turn_id is None
        assert not answer.persisted
        assert "503" in answer.persistence_error

    def test_generation_timeout_fails_without_persisting(self, index, inference, store):
        inference.generate.side_effect = GenerationError(
            "timed out", kind=GenerationFailure.TIMEOUT
        )
        orchestrator = RetrievalOrchestrator(index, inference, store, generation_timeout=1.0)

        with pytest.raises(QAError) as exc_info:
            orchestrator.ask(QUESTION, "s1")

        assert exc_info.value.stage == "generation"
        assert isinstance(exc_info.value.cause, GenerationError)
        store.append.assert_not_called()
        assert inference.generate.call_args.kwargs["timeout"] == 1.0

    def test_retrieval_failure(self, index, inference, store):
        index.search.side_effect = SearchIndexError("down", kind=IndexFailure.QUERY_FAILED)

        with pytest.raises(QAError) as exc_info:
            RetrievalOrchestrator(index, inference, store).ask(QUESTION, "s1")

        assert exc_info.value.stage == "retrieval"
        inference.generate.assert_not_called()
        store.append.assert_not_called()

    def test_works_without_store(self, index, inference):
        answer = RetrievalOrchestrator(index, inference, store=None).ask(QUESTION, "s1")
        assert answer.answer
        assert answer.turn_id is None


class TestHistory:
    def test_prior_turns_included_oldest_first(self, index, inference, store):
        store.history.return_value = [
            ConversationTurn(id="t2", session_id="s1", question="second?", answer="b",
                             timestamp="2024-01-01T00:02:00.000000Z"),
            ConversationTurn(id="t1", session_id="s1", question="first?", answer="a",
                             timestamp="2024-01-01T00:01:00.000000Z"),
        ]
        orchestrator = RetrievalOrchestrator(index, inference, store, history_turns=2)

        orchestrator.ask(QUESTION, "s1")

        store.history.assert_called_once_with("s1", 2)
        prompt = inference.generate.call_args.args[0]
        assert prompt.index("first?") < prompt.index("second?") < prompt.index(QUESTION)

    def test_history_disabled_by_default(self, index, inference, store):
        RetrievalOrchestrator(index, inference, store, history_turns=0).ask(QUESTION, "s1")
        store.history.assert_not_called()

    def test_history_failure_ignored(self, index, inference, store):
        store.history.side_effect = StoreError("unavailable")

        answer = RetrievalOrchestrator(index, inference, store, history_turns=3).ask(QUESTION, "s1")

        assert answer.answer


class TestStages:
    def test_stage_transitions(self, index, inference, store):
        orchestrator = RetrievalOrchestrator(index, inference, store)
        state = QAState(question=QUESTION, session_id="s1")
        assert state.stage == QAStage.RECEIVED

        state = orchestrator.retrieve(state)
        assert state.stage == QAStage.CONTEXT_RETRIEVED
        state = orchestrator.generate(state)
        assert state.stage == QAStage.ANSWER_GENERATED
        state = orchestrator.persist(state)
        assert state.stage == QAStage.PERSISTED

    def test_failed_stage_recorded(self, index, inference, store):
        inference.generate.side_effect = GenerationError(
            "empty", kind=GenerationFailure.EMPTY_RESPONSE
        )
        orchestrator = RetrievalOrchestrator(index, inference, store)
        state = QAState(question=QUESTION, session_id="s1")

        with pytest.raises(QAError):
            orchestrator.generate(state)

        assert state.stage == QAStage.FAILED
        assert state.failed_stage == "generation"
