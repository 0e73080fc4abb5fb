"""File ingestion: extract -> chunk -> embed -> index, one commit per file."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import TYPE_CHECKING

from core.config import settings
from core.errors import RagError
from core.models import FileOutcome, IndexedChunk, IngestEvent, IngestEventKind, IngestReport
from ingestion.chunker import chunk_document

if TYPE_CHECKING:
    from generation.inference import InferenceService
    from ingestion.extractor import Extractor
    from storage.hybrid_index import HybridSearchClient

logger = logging.getLogger(__name__)


def collect_files(directory: str | Path) -> list[Path]:
    """All regular files under `directory`, recursively, in sorted order."""
    root = Path(directory)
    if root.is_file():
        return [root]
    return sorted(p for p in root.rglob("*") if p.is_file() and not p.name.startswith("."))


class IngestionPipeline:
    """Turns files into indexed chunks.

    Files are processed in parallel and each file's chunks are embedded on a
    second bounded pool. A file's chunks reach the index in a single batch
    that is committed only when every chunk embedded successfully.
    """

    def __init__(
        self,
        extractor: Extractor,
        index: HybridSearchClient,
        inference: InferenceService,
        max_workers: int | None = None,
        embed_workers: int | None = None,
    ):
        self.extractor = extractor
        self.index = index
        self.inference = inference
        self.max_workers = max_workers or settings.ingest_workers
        self.embed_workers = embed_workers or settings.embed_workers

    def ingest(self, path: str | Path) -> FileOutcome:
        """Ingest one file. Failures are reported, never raised."""
        source = str(path)
        try:
            document = self.extractor.extract(path)
            source = document.source_path
            chunks = chunk_document(document)
            if not chunks:
                logger.warning("No chunks produced for %s", path)
                return FileOutcome(source_path=source, succeeded=True, chunk_count=0)

            with ThreadPoolExecutor(max_workers=self.embed_workers) as pool:
                embeddings = list(pool.map(lambda c: self.inference.embed(c.content), chunks))

            indexed = [
                IndexedChunk(**chunk.model_dump(), embedding=embedding)
                for chunk, embedding in zip(chunks, embeddings)
            ]
            stored = self.index.store_indexed(indexed)
        except RagError as e:
            logger.error("Failed to ingest %s: %s", path, e)
            return FileOutcome(source_path=source, succeeded=False, error=str(e))

        logger.info("Ingested %s (%d chunks)", path, stored)
        return FileOutcome(source_path=source, succeeded=True, chunk_count=stored)

    def ingest_many(
        self,
        paths: Iterable[str | Path],
        cancel_event: threading.Event | None = None,
        on_outcome: Callable[[FileOutcome, int, int], None] | None = None,
    ) -> IngestReport:
        """Ingest files in parallel and tally the outcomes.

        New files stop being scheduled once `cancel_event` is set; files
        already in flight run to completion. `on_outcome(outcome, completed,
        total)` is called as each file finishes.
        """
        pending_paths = list(paths)
        total = len(pending_paths)
        outcomes: dict[int, FileOutcome] = {}
        cancelled = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            in_flight: dict[Future, int] = {}
            next_index = 0

            while next_index < total or in_flight:
                while next_index < total and len(in_flight) < self.max_workers:
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break
                    future = pool.submit(self.ingest, pending_paths[next_index])
                    in_flight[future] = next_index
                    next_index += 1

                if cancelled and not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    position = in_flight.pop(future)
                    outcome = self._outcome_of(future, pending_paths[position])
                    outcomes[position] = outcome
                    if on_outcome is not None:
                        on_outcome(outcome, len(outcomes), total)

                if cancelled:
                    next_index = total

        report = IngestReport(
            outcomes=[outcomes[i] for i in sorted(outcomes)],
            cancelled=cancelled,
        )
        logger.info(
            "Ingestion finished: %d succeeded, %d failed, %d chunks%s",
            report.succeeded,
            report.failed,
            report.chunk_count,
            " (cancelled)" if cancelled else "",
        )
        return report

    def start(self, paths: Iterable[str | Path]) -> IngestionTask:
        """Run `ingest_many` on a background thread."""
        task = IngestionTask(self, list(paths))
        task.start()
        return task

    @staticmethod
    def _outcome_of(future: Future, path: str | Path) -> FileOutcome:
        try:
            return future.result()
        except Exception as e:
            logger.exception("Unexpected error ingesting %s", path)
            return FileOutcome(source_path=str(path), succeeded=False, error=str(e))


class IngestionTask:
    """Background batch ingestion with a progress event channel.

    Events are delivered through a queue and always end with FINISHED.
    """

    def __init__(self, pipeline: IngestionPipeline, paths: list[str | Path]):
        self._pipeline = pipeline
        self._paths = paths
        self._events: queue.Queue[IngestEvent] = queue.Queue()
        self._cancel = threading.Event()
        self._report: IngestReport | None = None
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name="ingestion-task", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        """Stop scheduling new files; in-flight files still finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def events(self, timeout: float | None = None) -> Iterator[IngestEvent]:
        """Yield progress events until the task finishes."""
        while True:
            event = self._events.get(timeout=timeout)
            yield event
            if event.kind == IngestEventKind.FINISHED:
                return

    def result(self, timeout: float | None = None) -> IngestReport:
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("Ingestion task still running")
        if self._error is not None:
            raise self._error
        if self._report is None:
            raise RuntimeError("Ingestion task finished without a report")
        return self._report

    def _run(self) -> None:
        total = len(self._paths)
        self._emit(IngestEventKind.STARTED, 0, total, message=f"Ingesting {total} files")
        completed = 0
        try:
            report = self._pipeline.ingest_many(
                self._paths, cancel_event=self._cancel, on_outcome=self._on_outcome
            )
            completed = len(report.outcomes)
            self._report = report
            if report.cancelled:
                self._emit(
                    IngestEventKind.CANCELLED,
                    completed,
                    total,
                    message=f"Cancelled after {completed} of {total} files",
                )
            summary = f"{report.succeeded} succeeded, {report.failed} failed"
        except Exception as e:
            logger.exception("Ingestion task crashed")
            self._error = e
            summary = f"Ingestion aborted: {e}"
        self._emit(IngestEventKind.FINISHED, completed, total, message=summary)

    def _on_outcome(self, outcome: FileOutcome, completed: int, total: int) -> None:
        kind = IngestEventKind.FILE_DONE if outcome.succeeded else IngestEventKind.FILE_FAILED
        message = (
            f"{outcome.chunk_count} chunks" if outcome.succeeded else outcome.error or "failed"
        )
        self._emit(kind, completed, total, source_path=outcome.source_path, message=message)

    def _emit(
        self,
        kind: IngestEventKind,
        completed: int,
        total: int,
        source_path: str | None = None,
        message: str = "",
    ) -> None:
        self._events.put(
            IngestEvent(
                kind=kind,
                completed=completed,
                total=total,
                source_path=source_path,
                message=message,
            )
        )
