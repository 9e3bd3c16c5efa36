"""Command-line interface for SourceQuery."""

import argparse
import asyncio
import sys
from pathlib import Path

import structlog
import uvicorn

from source_query.api.service import Services, build_services
from source_query.config import get_settings
from source_query.errors import SourceQueryError
from source_query.models import BulkResult, Source, SourceStatus
from source_query.observability import configure_logging
from source_query.storage import init_database

logger = structlog.get_logger()


async def _with_services(coro_fn):
    """Run *coro_fn(services)* with storage initialised and the pool drained after."""
    services = build_services()
    await init_database(services.engine)
    await services.orchestrator.recover_interrupted()
    services.pool.start()
    try:
        return await coro_fn(services)
    finally:
        await services.orchestrator.shutdown(drain=True)
        await services.engine.dispose()


def _run(coro_fn):
    try:
        return asyncio.run(_with_services(coro_fn))
    except SourceQueryError as e:
        logger.error("command_failed", code=e.code, error=e.message)
        sys.exit(1)


def _principal(args) -> str:
    return args.principal or get_settings().default_principal


def _print_source(source: Source):
    label = source.origin if source.kind == "website" else f"[document] {source.title}"
    print(f"{source.id}  {source.status.value:<10}  {label}")
    detail = source.status_detail
    if detail and detail.last_error:
        print(f"    error: {detail.last_error}")
    if source.embeddings:
        print(f"    vectors: {source.embeddings.count}")


def _print_bulk(result: BulkResult):
    print(
        f"\n Sources: {result.total_sources} | Processed: {result.processed} | "
        f"Contents deleted: {result.deleted_contents} | "
        f"Index cleared: {result.vector_index_cleared}\n"
    )
    for item in result.results:
        mark = "ok" if item.success else "failed"
        line = f"{item.id}  {mark}"
        if item.error:
            line += f"  ({item.error})"
        print(line)


def cmd_serve(args):
    """Start the API server."""
    settings = get_settings()
    host = args.host or settings.host
    port = args.port or settings.port

    logger.info("starting_server", host=host, port=port)

    uvicorn.run(
        "source_query.api.app:app",
        host=host,
        port=port,
        reload=args.reload,
    )


def cmd_register(args):
    """Register a web page."""

    async def run(services: Services):
        return await services.orchestrator.register_source(_principal(args), args.url)

    _print_source(_run(run))


def cmd_add_document(args):
    """Register a text file as a document source."""
    path = Path(args.file)
    if not path.exists():
        logger.error("file_not_found", path=str(path))
        sys.exit(1)
    content = path.read_text(encoding="utf-8")

    async def run(services: Services):
        return await services.orchestrator.register_document(
            _principal(args), args.title or path.stem, content, args.description
        )

    _print_source(_run(run))


def cmd_ingest(args):
    """Ingest one source in the foreground."""

    async def run(services: Services):
        principal = _principal(args)
        await services.orchestrator.trigger_ingestion(principal, args.source_id)
        await services.pool.join()
        return await services.orchestrator.get_source(principal, args.source_id)

    source = _run(run)
    _print_source(source)
    if source.status != SourceStatus.ACTIVE:
        sys.exit(1)


def cmd_reingest_all(args):
    """Clear derived data and ingest every source again."""

    async def run(services: Services):
        return await services.orchestrator.reingest_all(_principal(args))

    _print_bulk(_run(run))


def cmd_delete_all(args):
    """Clear derived data without re-ingesting."""
    if not args.yes:
        answer = input("Delete all scraped content and vectors? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return

    async def run(services: Services):
        return await services.orchestrator.delete_all(_principal(args))

    _print_bulk(_run(run))


def cmd_delete(args):
    """Delete one source."""

    async def run(services: Services):
        await services.orchestrator.delete_source(_principal(args), args.source_id)

    _run(run)
    print(f"Deleted {args.source_id}")


def cmd_list(args):
    """List sources and their status."""

    async def run(services: Services):
        return await services.orchestrator.list_sources(_principal(args))

    sources = _run(run)
    if not sources:
        print("No sources registered")
    for source in sources:
        _print_source(source)


def cmd_ask(args):
    """Answer a question from the command line."""

    async def run(services: Services):
        return await services.query_engine.answer(args.question, args.top_k)

    result = _run(run)

    print(f"\n Question: {args.question}\n")
    print(result.answer)
    if result.sources:
        print("\n Sources:")
        for i, source in enumerate(result.sources, 1):
            print(f"{i}. {source.title} ({source.score:.4f})")
            print(f"    {source.description}")
    if result.follow_up_questions:
        print("\n You might also ask:")
        for question in result.follow_up_questions:
            print(f"  - {question}")
    print()


def main():
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="source-query",
        description="Source ingestion and retrieval-augmented answering",
    )
    parser.add_argument("--principal", "-p", help="Act as this principal")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", type=str, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    serve_parser.set_defaults(func=cmd_serve)

    # register command
    register_parser = subparsers.add_parser("register", help="Register a web page")
    register_parser.add_argument("url", help="Page URL")
    register_parser.set_defaults(func=cmd_register)

    # add-document command
    document_parser = subparsers.add_parser("add-document", help="Register a text file")
    document_parser.add_argument("file", help="Path to a UTF-8 text file")
    document_parser.add_argument("--title", "-t", help="Title (defaults to file name)")
    document_parser.add_argument("--description", "-d", help="Short description")
    document_parser.set_defaults(func=cmd_add_document)

    # ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Ingest one source now")
    ingest_parser.add_argument("source_id", help="Source ID")
    ingest_parser.set_defaults(func=cmd_ingest)

    # reingest-all command
    reingest_parser = subparsers.add_parser("reingest-all", help="Re-ingest every source")
    reingest_parser.set_defaults(func=cmd_reingest_all)

    # delete-all command
    delete_all_parser = subparsers.add_parser(
        "delete-all", help="Delete all scraped content and vectors"
    )
    delete_all_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    delete_all_parser.set_defaults(func=cmd_delete_all)

    # delete command
    delete_parser = subparsers.add_parser("delete", help="Delete one source")
    delete_parser.add_argument("source_id", help="Source ID")
    delete_parser.set_defaults(func=cmd_delete)

    # list command
    list_parser = subparsers.add_parser("list", help="List sources")
    list_parser.set_defaults(func=cmd_list)

    # ask command
    ask_parser = subparsers.add_parser("ask", help="Ask a question")
    ask_parser.add_argument("question", help="Question text")
    ask_parser.add_argument("--top-k", "-k", type=int, default=None, help="Number of chunks")
    ask_parser.set_defaults(func=cmd_ask)

    args = parser.parse_args()
    configure_logging(args.debug or get_settings().debug)
    args.func(args)


if __name__ == "__main__":
    main()
