#!/usr/bin/env python3
"""
CLI runner for visual match searches.

Provides command-line interface for:
- Initializing the local status database
- Running a search synchronously
- Checking request status

Usage:
    python cli.py init                          # Initialize database
    python cli.py search photo.jpg              # Search with a local image
    python cli.py search https://x/y.jpg --name "Jane Doe" --location Austin
    python cli.py status <request-id>           # Show stored status
    python cli.py status <request-id> --records # ...with stored match rows
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import structlog

from config import get_settings

# Configure logging before imports
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(get_settings().log_level_number)
)

logger = structlog.get_logger()

from image_processing.normalizer import is_url
from pipeline.models import IdentityMetadata, SearchRequest
from pipeline.orchestrator import build_orchestrator
from services.search_service import status_payload
from storage.status_store import SqlStatusStore, build_status_store


def load_image(source: str):
    """Bytes of a local file, or the URL itself."""
    if is_url(source):
        return source
    path = Path(source)
    if not path.is_file():
        raise FileNotFoundError(f"Image not found: {source}")
    return path.read_bytes()


def cmd_init():
    """Initialize database."""
    settings = get_settings()
    logger.info("Initializing database", database_url=settings.database_url)
    SqlStatusStore.from_url(settings.database_url)
    logger.info("Database initialized")


async def run_search(image, identity: Optional[IdentityMetadata]) -> dict:
    settings = get_settings()
    orchestrator = build_orchestrator(settings)
    try:
        request = SearchRequest.create(image=image, identity=identity)
        logger.info("Running search", request_id=request.request_id)
        status = await orchestrator.run(request)
    finally:
        await orchestrator.aclose()
    return {"requestId": status.request_id, **status_payload(status)}


def cmd_search(source: str, name: Optional[str], location: Optional[str], employer: Optional[str]) -> int:
    """Run one search to completion and print the final status."""
    settings = get_settings()

    # Validate settings
    issues = settings.validate_settings()
    if issues:
        for issue in issues:
            logger.warning(f"Configuration issue: {issue}")

    try:
        image = load_image(source)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1

    identity = None
    if name or location or employer:
        identity = IdentityMetadata(name=name, location=location, employer=employer)
    result = asyncio.run(run_search(image, identity))

    print(json.dumps(result, indent=2))
    return 0 if result["status"] == "completed" else 2


def match_record_rows(store: SqlStatusStore, request_id: str) -> list[dict]:
    """Stored match rows of a request, oldest first."""
    rows = sorted(store.list_matches(request_id), key=lambda row: row.timestamp)
    return [
        {
            "resultId": row.result_id,
            "candidateId": row.candidate_id,
            "hostPageUrl": row.host_page_url,
            "targetUrl": row.target_url,
            "similarity": row.similarity,
            "timestamp": row.timestamp,
        }
        for row in rows
    ]


def cmd_status(request_id: str, records: bool = False) -> int:
    """Show stored status of a request, optionally with its match rows."""
    store = build_status_store(get_settings())
    status = asyncio.run(store.get(request_id))
    if status is None:
        print(f"No request found with id {request_id}", file=sys.stderr)
        return 1

    result = {"requestId": request_id, **status_payload(status)}
    if records:
        if isinstance(store, SqlStatusStore):
            result["matchRecords"] = match_record_rows(store, request_id)
        else:
            print("Match rows are only listed for the SQL backend", file=sys.stderr)

    print(json.dumps(result, indent=2))
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Visual Match CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  init      Initialize database
  search    Run a search for an image path or URL
  status    Show status of a request

Examples:
  python cli.py init
  python cli.py search photo.jpg --name "Jane Doe"
  python cli.py status 3f2b...
        """
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Initialize database")

    search_parser = subparsers.add_parser("search", help="Run a search synchronously")
    search_parser.add_argument("image", help="Local image path or http(s) URL")
    search_parser.add_argument("--name", help="Subject name for text queries")
    search_parser.add_argument("--location", help="Subject location for text queries")
    search_parser.add_argument("--employer", help="Subject employer for text queries")

    status_parser = subparsers.add_parser("status", help="Show status of a request")
    status_parser.add_argument("request_id", help="Request id returned by a search")
    status_parser.add_argument("--records", action="store_true", help="Also list stored match rows (SQL backend)")

    args = parser.parse_args()

    if args.command == "init":
        cmd_init()
        return 0
    elif args.command == "search":
        return cmd_search(args.image, args.name, args.location, args.employer)
    elif args.command == "status":
        return cmd_status(args.request_id, args.records)
    return 1


if __name__ == "__main__":
    sys.exit(main())
