"""Retrieval-augmented prompt assembly and answer generation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.models import ConversationTurn, SearchResult

if TYPE_CHECKING:
    from generation.inference import InferenceService

logger = logging.getLogger(__name__)

ANSWER_INSTRUCTION = (
    "Please provide a comprehensive answer based on the provided information:"
)


def build_prompt(
    question: str,
    results: list[SearchResult],
    history: list[ConversationTurn] | None = None,
) -> str:
    """Assemble the generation prompt.

    Layout: one "From <source>:" block per retrieved chunk, then prior turns
    of the session (oldest first), then the question and the answer
    instruction.
    """
    parts = ["Based on the following information:\n\n"]
    for result in results:
        source = result.title or result.source_path or result.id
        parts.append(f"From {source}:\n{result.content}\n\n")

    if history:
        parts.append("Previous conversation:\n\n")
        for turn in history:
            parts.append(f"Q: {turn.question}\nA: {turn.answer}\n\n")

    parts.append(f"Question: {question}\n\n")
    parts.append(ANSWER_INSTRUCTION)
    return "".join(parts)


def generate_answer(
    question: str,
    results: list[SearchResult],
    inference: InferenceService,
    history: list[ConversationTurn] | None = None,
    timeout: float | None = None,
) -> str:
    """Generate an answer from retrieved chunks.

    Args:
        question: User question
        results: Retrieved search results, best first
        inference: Backend used for generation
        history: Prior turns of the session, oldest first
        timeout: Generation timeout in seconds

    Raises:
        GenerationError: on timeout, backend error or empty response
    """
    if not results:
        logger.warning("No context retrieved for question: %s", question[:80])

    prompt = build_prompt(question, results, history)
    logger.info("Generating answer for question: %s", question[:80])
    answer = inference.generate(prompt, timeout=timeout)
    logger.info("Generated answer: %s", answer[:100])
    return answer
