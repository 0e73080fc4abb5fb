#!/usr/bin/env python3
"""CLI for the document QA pipeline: index documents, ask questions, browse history."""

import argparse
import logging
import sys
from pathlib import Path

from core.config import settings
from core.errors import RagError


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def build_index(inference=None):
    from storage.hybrid_index import HybridSearchClient

    return HybridSearchClient(inference=inference)


def build_store():
    from storage.conversation_store import ConversationStore

    return ConversationStore()


def print_turns(turns) -> None:
    if not turns:
        print("No conversations found.")
        return
    for turn in turns:
        print(f"[{turn.timestamp}] ({turn.session_id})")
        print(f"  Q: {turn.question}")
        print(f"  A: {turn.answer[:200].replace(chr(10), ' ')}")
        if turn.sources:
            print(f"  Sources: {', '.join(turn.sources)}")


def cmd_init(args: argparse.Namespace) -> None:
    """Install the search index schema and the conversation store."""
    index = build_index()
    print(f"Configuring Solr core '{index.core}' (dim={index.dimension})...")
    index.init_schema()
    index.close()

    store = build_store()
    print(f"Initializing CouchDB database '{store.database}'...")
    store.initialize()
    store.close()
    print("Done!")


def cmd_ingest(args: argparse.Namespace) -> None:
    """Index files and directories."""
    from generation.inference import create_inference_service
    from ingestion.extractor import Extractor
    from ingestion.pipeline import IngestionPipeline, collect_files

    paths: list[Path] = []
    for target in args.paths or [settings.documents_path]:
        paths.extend(collect_files(target))
    if not paths:
        print("No files to ingest.")
        return

    inference = create_inference_service()
    index = build_index(inference)
    pipeline = IngestionPipeline(
        Extractor(use_gpu=args.gpu),
        index,
        inference,
        max_workers=args.workers,
    )

    print(f"Ingesting {len(paths)} files...")
    if args.progress:
        task = pipeline.start(paths)
        try:
            for event in task.events():
                name = Path(event.source_path).name if event.source_path else ""
                print(f"  [{event.completed}/{event.total}] {event.kind.value} {name} {event.message}")
        except KeyboardInterrupt:
            print("Cancelling, waiting for in-flight files...")
            task.cancel()
        report = task.result()
    else:
        report = pipeline.ingest_many(paths)

    for outcome in report.outcomes:
        status = f"ok ({outcome.chunk_count} chunks)" if outcome.succeeded else f"FAILED: {outcome.error}"
        print(f"  {outcome.source_path}: {status}")

    print(
        f"\nDone! {report.succeeded} succeeded, {report.failed} failed, "
        f"{report.chunk_count} chunks stored"
    )
    print(f"Total chunks in index: {index.count()}")
    index.close()


def cmd_ask(args: argparse.Namespace) -> None:
    """Ask a question over the indexed documents."""
    from agent.orchestrator import RetrievalOrchestrator
    from generation.inference import create_inference_service

    inference = create_inference_service()
    index = build_index(inference)
    store = build_store()
    orchestrator = RetrievalOrchestrator(
        index,
        inference,
        store,
        top_k=args.top_k,
        history_turns=args.history,
    )

    print(f"Question: {args.question}")
    answer = orchestrator.ask(args.question, session_id=args.session)

    print(f"\nAnswer: {answer.answer}")
    if answer.results:
        print(f"\nSources ({len(answer.results)}):")
        for i, result in enumerate(answer.results, 1):
            preview = result.content[:100].replace("\n", " ")
            print(f"  {i}. [{result.score:.3f}] {result.title}: {preview}...")
    print(f"\nSession: {answer.session_id}")
    if not answer.persisted:
        print(f"Warning: conversation not saved ({answer.persistence_error})")

    index.close()
    store.close()


def cmd_search(args: argparse.Namespace) -> None:
    """Search the index without generating an answer."""
    if args.keyword:
        index = build_index()
        results = index.keyword_search(args.query, args.top_k)
    else:
        from generation.inference import create_inference_service

        index = build_index(create_inference_service())
        results = index.search(args.query, args.top_k)

    if not results:
        print("No results.")
    for i, result in enumerate(results, 1):
        preview = result.content[:150].replace("\n", " ")
        print(f"{i}. [{result.score:.3f}] {result.title} ({result.source_path})")
        print(f"   {preview}")
    index.close()


def cmd_history(args: argparse.Namespace) -> None:
    store = build_store()
    print_turns(store.history(args.session, args.limit))
    store.close()


def cmd_recent(args: argparse.Namespace) -> None:
    store = build_store()
    print_turns(store.recent(args.limit))
    store.close()


def cmd_find_turns(args: argparse.Namespace) -> None:
    store = build_store()
    print_turns(store.search_by_keyword(args.keyword, args.limit))
    store.close()


def cmd_delete(args: argparse.Namespace) -> None:
    """Remove every chunk of one source document."""
    index = build_index()
    source = args.source
    if Path(source).exists():
        source = str(Path(source).resolve())
    index.delete_by_source(source)
    print(f"Deleted chunks for {source}")
    index.close()


def cmd_clear(args: argparse.Namespace) -> None:
    """Clear all chunks from the index."""
    index = build_index()
    index.clear_all()
    print("Cleared all chunks from the index")
    index.close()


def cmd_stats(args: argparse.Namespace) -> None:
    """Show index and conversation store statistics."""
    index = build_index()
    print(f"Total chunks in index: {index.count()}")
    index.close()

    store = build_store()
    info = store.database_info()
    print(f"Conversation store '{info.name}': {info.doc_count} documents, {info.disk_size} bytes")
    store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Document QA Pipeline CLI")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init", help="Configure the Solr schema and CouchDB database")

    p_ingest = subparsers.add_parser("ingest", help="Index files or directories")
    p_ingest.add_argument("paths", nargs="*", help="Files or directories (default: documents_path)")
    p_ingest.add_argument("--workers", type=int, default=None, help="Parallel files")
    p_ingest.add_argument("--gpu", action="store_true", help="Use GPU for PDF conversion")
    p_ingest.add_argument("--progress", action="store_true", help="Stream per-file progress")

    p_ask = subparsers.add_parser("ask", help="Ask a question")
    p_ask.add_argument("question", help="Question to ask")
    p_ask.add_argument("--session", default=None, help="Session id (new session if omitted)")
    p_ask.add_argument(
        "--history", type=int, default=None, help="Prior turns of the session to include"
    )
    p_ask.add_argument("--top-k", type=int, default=None, help="Chunks to retrieve")

    p_search = subparsers.add_parser("search", help="Search indexed chunks")
    p_search.add_argument("query", help="Search text")
    p_search.add_argument("--keyword", action="store_true", help="Keyword-only search")
    p_search.add_argument("--top-k", type=int, default=None, help="Results to return")

    p_history = subparsers.add_parser("history", help="Show a session's conversation")
    p_history.add_argument("session", help="Session id")
    p_history.add_argument("--limit", type=int, default=10)

    p_recent = subparsers.add_parser("recent", help="Show recent conversations")
    p_recent.add_argument("--limit", type=int, default=10)

    p_find = subparsers.add_parser("find-turns", help="Search conversations by keyword")
    p_find.add_argument("keyword", help="Keyword to look for")
    p_find.add_argument("--limit", type=int, default=100, help="Recent turns to scan")

    p_delete = subparsers.add_parser("delete", help="Delete a document's chunks")
    p_delete.add_argument("source", help="Source file path")

    subparsers.add_parser("clear", help="Clear all chunks")
    subparsers.add_parser("stats", help="Show index and store statistics")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "init": cmd_init,
        "ingest": cmd_ingest,
        "ask": cmd_ask,
        "search": cmd_search,
        "history": cmd_history,
        "recent": cmd_recent,
        "find-turns": cmd_find_turns,
        "delete": cmd_delete,
        "clear": cmd_clear,
        "stats": cmd_stats,
    }
    try:
        commands[args.command](args)
    except RagError as e:
        logging.getLogger(__name__).debug("Command failed", exc_info=True)
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
