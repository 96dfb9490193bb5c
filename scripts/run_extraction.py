#!/usr/bin/env python3
"""Concept extraction CLI script.

Commands:
- import: load lesson documents from a JSON file into the store
- run: extract concepts from one lesson end to end
- resume: continue a session that stopped part way
- sessions: list extraction sessions
- cleanup: apply the session retention policy

Usage:
    python scripts/run_extraction.py import data/lessons.json
    python scripts/run_extraction.py run lesson-42
    python scripts/run_extraction.py sessions --status extracted --limit 50
    python scripts/run_extraction.py cleanup --dry-run
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from loguru import logger
from rich.console import Console
from rich.table import Table

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from conceptkb.pipeline.orchestrator import OrchestrationResult  # noqa: E402
from conceptkb.services import ConceptServices, build_services  # noqa: E402
from conceptkb.storage.repositories import SessionFilter  # noqa: E402
from conceptkb.storage.schemas import LessonDocument, SessionStatus  # noqa: E402
from conceptkb.utils.config import load_config  # noqa: E402
from conceptkb.utils.logging_setup import configure_logging  # noqa: E402

console = Console()


def _print_result(result: OrchestrationResult) -> int:
    if result.success and result.statistics is not None:
        stats = result.statistics
        table = Table(title=f"Extraction for {result.document_id}")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        table.add_row("Session", result.session_id or "-")
        table.add_row("Concepts", str(stats.total_concepts))
        table.add_row("Average confidence", f"{stats.average_confidence:.2f}")
        table.add_row("High confidence (>0.8)", str(stats.high_confidence_count))
        table.add_row("Categories", str(stats.concept_categories))
        table.add_row("With similar concepts", str(stats.concepts_with_matches))
        table.add_row("Processing time", f"{result.processing_time:.1f}s")
        console.print(table)
        return 0

    error = result.error
    console.print(
        f"[bold red]Failed during {result.phase.value}[/bold red]: "
        f"{error.message if error else 'unknown error'}"
    )
    if result.session_id:
        console.print(f"[dim]Session kept for resumption:[/dim] {result.session_id}")
    return 1


def cmd_import(services: ConceptServices, args: argparse.Namespace) -> int:
    payload = json.loads(Path(args.path).read_text(encoding="utf-8"))
    records = payload if isinstance(payload, list) else [payload]
    for record in records:
        document = LessonDocument.model_validate(record)
        services.lessons.save(document)
        logger.info(f"Imported lesson {document.document_id}")
    console.print(f"[bold green]Imported {len(records)} lesson(s)[/bold green]")
    return 0


def cmd_run(services: ConceptServices, args: argparse.Namespace) -> int:
    return _print_result(services.orchestrator.run(args.document_id))


def cmd_resume(services: ConceptServices, args: argparse.Namespace) -> int:
    return _print_result(services.orchestrator.resume(args.session_id))


def cmd_sessions(services: ConceptServices, args: argparse.Namespace) -> int:
    statuses = [SessionStatus(s) for s in args.status] or None
    result = services.session_service.list_sessions(
        SessionFilter(document_id=args.document_id, statuses=statuses), args.page, args.limit
    )
    if not result.success or result.data is None:
        console.print(f"[bold red]{result.error.message if result.error else 'failed'}[/bold red]")
        return 1

    page = result.data
    table = Table(title=f"Sessions (page {page.page}/{max(page.pages, 1)}, {page.total} total)")
    for column in ("Session", "Document", "Status", "Chunks", "Concepts", "Checked", "Reviewed"):
        table.add_column(column)
    for session in page.items:
        progress = session.progress
        table.add_row(
            session.id,
            session.document_id,
            session.status.value,
            f"{progress.processed_chunks}/{progress.total_chunks}",
            str(len(session.extracted_concepts)),
            str(progress.similarity_checked_count),
            f"{session.review_progress.reviewed_count}/{session.review_progress.total_concepts}",
        )
    console.print(table)
    return 0


def cmd_cleanup(services: ConceptServices, args: argparse.Namespace) -> int:
    stats = services.cleanup.stats()
    if stats.success and stats.data is not None:
        logger.info(f"Sessions by status: {stats.data.by_status}")

    result = services.cleanup.run(dry_run=args.dry_run)
    if not result.success or result.data is None:
        console.print(f"[bold red]{result.error.message if result.error else 'failed'}[/bold red]")
        return 1

    outcome = result.data
    label = "Would" if outcome.dry_run else "Did"
    console.print(f"{label} delete {outcome.deleted_archived} archived session(s)")
    console.print(f"{label} delete {outcome.deleted_stale} stale session(s)")
    console.print(f"{label} archive {outcome.archived_reviewed} reviewed session(s)")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Extract learning concepts from lesson documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import lesson documents from JSON")
    import_parser.add_argument("path", type=Path, help="JSON file with one lesson or a list")
    import_parser.set_defaults(handler=cmd_import)

    run_parser = subparsers.add_parser("run", help="Run the full extraction for a lesson")
    run_parser.add_argument("document_id", help="Lesson document id")
    run_parser.set_defaults(handler=cmd_run)

    resume_parser = subparsers.add_parser("resume", help="Resume an interrupted session")
    resume_parser.add_argument("session_id", help="Extraction session id")
    resume_parser.set_defaults(handler=cmd_resume)

    sessions_parser = subparsers.add_parser("sessions", help="List extraction sessions")
    sessions_parser.add_argument("--document-id", default=None, help="Only this lesson")
    sessions_parser.add_argument(
        "--status",
        action="append",
        default=[],
        choices=[s.value for s in SessionStatus],
        help="Include status (repeatable; default: all)",
    )
    sessions_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    sessions_parser.add_argument("--limit", type=int, default=20, help="Sessions per page")
    sessions_parser.set_defaults(handler=cmd_sessions)

    cleanup_parser = subparsers.add_parser("cleanup", help="Apply session retention policy")
    cleanup_parser.add_argument(
        "--dry-run", action="store_true", help="Report counts without changing anything"
    )
    cleanup_parser.set_defaults(handler=cmd_cleanup)

    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.logging, verbose=args.verbose)

    services = build_services(config)
    sys.exit(args.handler(services, args))


if __name__ == "__main__":
    main()
