"""Data models for the document QA pipeline."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ExtractionMethod(str, Enum):
    GENERIC_EXTRACTION = "generic_extraction"
    IMAGE_OCR = "image_ocr"


class RawDocument(BaseModel):
    """Text and metadata extracted from one source file."""

    model_config = ConfigDict(frozen=True)

    source_path: str
    display_name: str
    extracted_text: str
    metadata: dict[str, str] = Field(default_factory=dict)
    extraction_method: ExtractionMethod = ExtractionMethod.GENERIC_EXTRACTION


class Chunk(BaseModel):
    """A retrievable unit of document text."""

    id: str
    source_path: str
    title: str
    content: str = Field(min_length=1)
    chunk_index: int = Field(ge=0)
    metadata: dict[str, str] = Field(default_factory=dict)


class IndexedChunk(Chunk):
    """Chunk paired with its embedding; score is set only on retrieval."""

    embedding: list[float] = Field(default_factory=list)
    score: float | None = None


class SearchResult(BaseModel):
    """A single ranked hit from the search index."""

    id: str
    title: str = ""
    content: str = ""
    source_path: str = ""
    score: float = 0.0
    metadata: dict[str, str] = Field(default_factory=dict)


class ConversationTurn(BaseModel):
    """One persisted question/answer exchange."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    session_id: str
    question: str
    answer: str
    timestamp: str
    sources: list[str] = Field(default_factory=list)
    model: str | None = None


class DatabaseInfo(BaseModel):
    """Conversation store database statistics."""

    name: str
    doc_count: int = 0
    deleted_doc_count: int = 0
    disk_size: int = 0


class QAStage(str, Enum):
    RECEIVED = "received"
    CONTEXT_RETRIEVED = "context_retrieved"
    ANSWER_GENERATED = "answer_generated"
    PERSISTED = "persisted"
    DONE = "done"
    FAILED = "failed"


class Answer(BaseModel):
    """Final answer returned by the orchestrator."""

    question: str
    answer: str
    session_id: str
    sources: list[str] = Field(default_factory=list)
    results: list[SearchResult] = Field(default_factory=list)
    turn_id: str | None = None
    persistence_error: str | None = None

    @property
    def persisted(self) -> bool:
        return self.turn_id is not None


class FileOutcome(BaseModel):
    """Result of ingesting a single file."""

    source_path: str
    succeeded: bool
    chunk_count: int = 0
    error: str | None = None


class IngestReport(BaseModel):
    """Per-file tally for a batch ingestion run."""

    outcomes: list[FileOutcome] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def chunk_count(self) -> int:
        return sum(o.chunk_count for o in self.outcomes)


class IngestEventKind(str, Enum):
    STARTED = "started"
    FILE_DONE = "file_done"
    FILE_FAILED = "file_failed"
    CANCELLED = "cancelled"
    FINISHED = "finished"


class IngestEvent(BaseModel):
    """Progress event emitted by a running ingestion task."""

    kind: IngestEventKind
    completed: int = 0
    total: int = 0
    source_path: str | None = None
    message: str = ""
