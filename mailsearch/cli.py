#!/usr/bin/env python3
"""
Command-line interface for the search engine.

Usage:
    # Create tables (and pg_trgm/pgvector extensions on PostgreSQL)
    mailsearch init-db

    # Index a JSON file of documents for owner 42 and generate embeddings
    mailsearch index 42 documents.json

    # Lexical search
    mailsearch search 42 "invoice" --sort relevance --page-size 20

    # Semantic search
    mailsearch semantic 42 "payment reminders"

    # Generate missing embeddings
    mailsearch backfill 42 --limit 500

    # Index statistics
    mailsearch status 42

The documents file holds a list of objects with the SearchDocument fields
(camelCase or snake_case): id, subject, senderName, senderEmail, snippet,
bodyText, receivedAt, status.
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from mailsearch.core.config import get_settings
from mailsearch.core.database.connection import create_tables, init_db
from mailsearch.core.search.models import SearchDocument, SearchFilters, SortMode
from mailsearch.core.search.service import SearchService

logger = logging.getLogger(__name__)


def setup_logging(level: str, fmt: str):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=fmt)

    # Suppress verbose HTTP and model-loading logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("sentence_transformers").setLevel(logging.WARNING)


def load_documents(path: Path) -> list:
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, dict):
        payload = [payload]
    return [SearchDocument.model_validate(item) for item in payload]


def build_filters(args) -> SearchFilters:
    return SearchFilters(unread_only=args.unread, sender=args.sender, status=args.status)


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


async def run(args) -> int:
    settings = get_settings()
    session_factory = init_db(settings)

    if args.command == "init-db":
        create_tables()
        print("Database initialized")
        return 0

    service = SearchService(session_factory, settings=settings)
    try:
        if args.command == "index":
            try:
                documents = load_documents(args.file)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.error(f"Could not read documents from {args.file}: {e}")
                return 1

            await service.start()
            stats = await service.index_documents(args.owner, documents)
            stats["embedded"] = await service.flush(args.owner)
            print_json(stats)
            return 0 if stats["failed"] == 0 else 1

        if args.command == "search":
            result = await service.search_lexical(
                args.owner, args.query, page=args.page, page_size=args.page_size,
                filters=build_filters(args), sort=SortMode(args.sort),
            )
            print_json(result.to_dict())
            return 0

        if args.command == "semantic":
            await service.start()
            if not service.is_embedding_service_available():
                logger.warning("Embedding service unavailable, semantic search returns no results")
            result = await service.search_semantic(
                args.owner, args.query, page=args.page, page_size=args.page_size,
                filters=build_filters(args),
            )
            print_json(result.to_dict())
            return 0

        if args.command == "backfill":
            await service.start()
            scheduled = await service.backfill(args.owner, args.limit)
            embedded = await service.flush(args.owner)
            print_json({"scheduled": scheduled, "embedded": embedded})
            return 0

        if args.command == "status":
            print_json(service.stats(args.owner))
            return 0

        return 2
    finally:
        await service.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailsearch",
        description="Email search: lexical and semantic indexing and queries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create tables and extensions")

    index = subparsers.add_parser("index", help="Index documents from a JSON file")
    index.add_argument("owner", type=int, help="Owner id")
    index.add_argument("file", type=Path, help="JSON file with a list of documents")

    for name, help_text in (("search", "Lexical search"), ("semantic", "Semantic search")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("owner", type=int, help="Owner id")
        sub.add_argument("query", help="Search query")
        sub.add_argument("--page", type=int, default=1, help="1-based page number")
        sub.add_argument("--page-size", type=int, default=None, help="Results per page")
        sub.add_argument("--sender", default=None, help="Only messages whose sender name/email contains this")
        sub.add_argument("--status", default=None, help="Only messages with this status")
        sub.add_argument("--unread", action="store_true", help="Only unread (inbox) messages")
        if name == "search":
            sub.add_argument("--sort", choices=[m.value for m in SortMode], default=SortMode.RELEVANCE.value,
                             help="Result ordering")

    backfill = subparsers.add_parser("backfill", help="Generate missing or stale embeddings")
    backfill.add_argument("owner", type=int, help="Owner id")
    backfill.add_argument("--limit", type=int, default=None, help="Maximum documents to embed")

    status = subparsers.add_parser("status", help="Show index statistics")
    status.add_argument("owner", type=int, help="Owner id")

    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    try:
        return asyncio.run(run(args))
    except RuntimeError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
