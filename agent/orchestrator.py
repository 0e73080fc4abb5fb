"""Question answering over the index: retrieve, generate, persist."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from core.config import settings
from core.errors import QAError, RagError
from core.models import Answer, ConversationTurn, QAStage, SearchResult
from generation.generator import generate_answer

if TYPE_CHECKING:
    from generation.inference import InferenceService
    from storage.conversation_store import ConversationStore
    from storage.hybrid_index import HybridSearchClient

logger = logging.getLogger(__name__)

RETRIEVAL = "retrieval"
GENERATION = "generation"


@dataclass
class QAState:
    """State carried through one question/answer exchange."""

    question: str = ""
    session_id: str = ""
    stage: QAStage = QAStage.RECEIVED
    failed_stage: str | None = None
    results: list[SearchResult] = field(default_factory=list)
    history: list[ConversationTurn] = field(default_factory=list)
    answer: str = ""
    turn_id: str | None = None
    persistence_error: str | None = None

    @property
    def sources(self) -> list[str]:
        """Source identifiers of the retrieved chunks, first occurrence wins."""
        return list(dict.fromkeys(r.source_path for r in self.results if r.source_path))


class RetrievalOrchestrator:
    """Runs received -> context_retrieved -> answer_generated -> persisted -> done.

    Any retrieval or generation failure moves the exchange to `failed` and
    raises `QAError` naming the stage. Persistence is best-effort: the
    answer is returned even when the conversation store is unavailable.
    """

    def __init__(
        self,
        index: HybridSearchClient,
        inference: InferenceService,
        store: ConversationStore | None = None,
        top_k: int | None = None,
        history_turns: int | None = None,
        generation_timeout: float | None = None,
    ):
        self.index = index
        self.inference = inference
        self.store = store
        self.top_k = top_k if top_k is not None else settings.top_k
        self.history_turns = (
            history_turns if history_turns is not None else settings.history_turns
        )
        self.generation_timeout = (
            generation_timeout if generation_timeout is not None else settings.generation_timeout
        )

    def retrieve(self, state: QAState) -> QAState:
        try:
            state.results = self.index.search(state.question, self.top_k)
        except RagError as e:
            self._fail(state, RETRIEVAL, e)
        state.stage = QAStage.CONTEXT_RETRIEVED
        logger.info("Retrieved %d chunks", len(state.results))
        return state

    def load_history(self, state: QAState) -> QAState:
        if self.store is None or self.history_turns <= 0:
            return state
        try:
            turns = self.store.history(state.session_id, self.history_turns)
        except RagError as e:
            logger.warning("Could not load history for session %s: %s", state.session_id, e)
            return state
        state.history = list(reversed(turns))
        return state

    def generate(self, state: QAState) -> QAState:
        try:
            state.answer = generate_answer(
                state.question,
                state.results,
                self.inference,
                history=state.history,
                timeout=self.generation_timeout,
            )
        except RagError as e:
            self._fail(state, GENERATION, e)
        state.stage = QAStage.ANSWER_GENERATED
        return state

    def persist(self, state: QAState) -> QAState:
        if self.store is None:
            return state
        try:
            state.turn_id = self.store.append(
                state.session_id,
                state.question,
                state.answer,
                state.sources,
                model=getattr(self.inference, "model_name", None),
            )
        except RagError as e:
            logger.error("Failed to persist conversation turn: %s", e)
            state.persistence_error = str(e)
            return state
        state.stage = QAStage.PERSISTED
        return state

    def ask(self, question: str, session_id: str | None = None) -> Answer:
        """Answer a question from indexed documents.

        Flow: retrieve → history → generate → persist

        Raises:
            QAError: retrieval or generation failed; nothing was persisted.
        """
        state = QAState(question=question, session_id=session_id or str(uuid.uuid4()))
        logger.info("Question received (session %s): %s", state.session_id, question[:80])

        state = self.retrieve(state)
        state = self.load_history(state)
        state = self.generate(state)
        state = self.persist(state)
        state.stage = QAStage.DONE

        return Answer(
            question=state.question,
            answer=state.answer,
            session_id=state.session_id,
            sources=state.sources,
            results=state.results,
            turn_id=state.turn_id,
            persistence_error=state.persistence_error,
        )

    @staticmethod
    def _fail(state: QAState, stage: str, cause: Exception) -> None:
        state.stage = QAStage.FAILED
        state.failed_stage = stage
        logger.error("Question answering failed during %s: %s", stage, cause)
        raise QAError(stage, cause) from cause
