"""Paragraph chunker with a single-chunk fallback for short documents."""

from __future__ import annotations

import hashlib
import logging
import re

from core.config import settings
from core.models import Chunk, RawDocument

logger = logging.getLogger(__name__)

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def chunk_id(source_path: str, chunk_index: int) -> str:
    """Stable id for the chunk at `chunk_index` of `source_path`."""
    return hashlib.md5(f"{source_path}:{chunk_index}".encode()).hexdigest()


def chunk_title(display_name: str, chunk_index: int) -> str:
    return f"{display_name} (chunk {chunk_index})"


def split_paragraphs(text: str) -> list[str]:
    """Split text on blank-line paragraph boundaries."""
    return PARAGRAPH_BREAK.split(text)


def chunk_document(
    document: RawDocument,
    min_length: int | None = None,
    fallback_min_length: int | None = None,
) -> list[Chunk]:
    """Split a document into paragraph chunks.

    Strategy:
    1. Split on blank lines
    2. Keep paragraphs whose trimmed length exceeds `min_length`; headers,
       page numbers and OCR noise fall below it
    3. If nothing survives but the trimmed text is longer than `fallback_min_length`,
       emit the entire text as one chunk at index 0

    The chunk index is the paragraph's position in the split, so the id of a
    paragraph does not depend on which of its neighbours were dropped.
    """
    if min_length is None:
        min_length = settings.chunk_min_length
    if fallback_min_length is None:
        fallback_min_length = settings.chunk_fallback_min_length

    text = document.extracted_text
    if not text or not text.strip():
        logger.warning("Empty content for document: %s", document.display_name)
        return []

    chunks: list[Chunk] = []
    for index, paragraph in enumerate(split_paragraphs(text)):
        paragraph = paragraph.strip()
        if len(paragraph) > min_length:
            chunks.append(_create_chunk(document, paragraph, index))

    if not chunks and len(text.strip()) > fallback_min_length:
        chunks.append(_create_chunk(document, text, 0))

    logger.info("Created %d chunks for: %s", len(chunks), document.display_name)
    return chunks


def _create_chunk(document: RawDocument, content: str, index: int) -> Chunk:
    return Chunk(
        id=chunk_id(document.source_path, index),
        source_path=document.source_path,
        title=chunk_title(document.display_name, index),
        content=content,
        chunk_index=index,
        metadata={**document.metadata, "chunk_index": str(index)},
    )
