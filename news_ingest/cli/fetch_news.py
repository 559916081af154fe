# news_ingest/cli/fetch_news.py
"""
CLI for manual ingestion runs.

Usage:
    python -m news_ingest.cli.fetch_news                 # 50 items incrementally
    python -m news_ingest.cli.fetch_news -l 100          # 100 items
    python -m news_ingest.cli.fetch_news -l 200 -b 25    # 200 items in pages of 25
    python -m news_ingest.cli.fetch_news -f -l 50        # force, ignore duplicates
    python -m news_ingest.cli.fetch_news -s              # system status only
"""

import argparse
import math
import sys

from dotenv import load_dotenv

load_dotenv()


def get_db_session():
    """Get a database session."""
    from news_ingest.database import SessionLocal

    return SessionLocal()


def _setup_logging():
    from news_ingest.config import get_settings
    from news_ingest.logging_config import configure_logging

    settings = get_settings()
    configure_logging(json_format=settings.LOG_JSON, level=settings.LOG_LEVEL)


def _print_metrics(metrics):
    summary = metrics.get_summary()
    if not summary["operations"]:
        return
    print("\nPerformance Metrics:")
    for operation, stats in summary["operations"].items():
        print(f"  {operation}: {stats['count']} ops, {round(stats['avg_ms'])}ms avg, {stats['failures']} failed")


def _print_errors(error_details, limit=10):
    if not error_details:
        return
    print("\nErrors:")
    for detail in error_details[:limit]:
        print(f"  - [{detail.get('code')}] {detail.get('item')}: {detail.get('error')}")
    if len(error_details) > limit:
        print(f"  ... and {len(error_details) - limit} more")


def cmd_status(args):
    """Show upstream health, database connectivity and import history."""
    from news_ingest.services.ingestion import IngestionService

    db = get_db_session()
    try:
        with IngestionService() as service:
            status = service.get_system_status(db)

        print("\n=== System Status ===\n")
        print(f"API Healthy: {'yes' if status.api_healthy else 'NO'}")
        print(f"Database Connected: {'yes' if status.database_connected else 'NO'}")
        print(f"Total News: {status.total_news}")
        print(f"Last Import: {status.last_import.isoformat() if status.last_import else 'Never'}")
        print()
    finally:
        db.close()


def cmd_fetch(args):
    """Run an incremental, force or batch ingestion."""
    from news_ingest.errors import JobAlreadyRunningError
    from news_ingest.schemas.upstream import FetchFilters
    from news_ingest.services.ingestion import IngestionService
    from news_ingest.services.job_manager import get_job_manager

    filters = FetchFilters(status=args.item_status) if args.item_status else None
    job_manager = get_job_manager()

    print("\nStarting news fetch")
    print(f"Options: limit={args.limit}, offset={args.offset}, force={args.force}, batch={args.batch}")

    with IngestionService() as service:
        try:
            if args.batch and args.limit > args.batch:
                print(f"Using batch processing: {math.ceil(args.limit / args.batch)} batches of {args.batch}")
                results = job_manager.run_exclusive(
                    "ingest_batch",
                    service.run_batch,
                    total_limit=args.limit,
                    batch_size=args.batch,
                    force=args.force,
                    filters=filters,
                    cancel=service.ctx.cancel,
                )
                result = service.aggregate(results)

                print("\n=== Batch Results ===\n")
                print(f"Batches Processed: {len(results)}")
            else:
                print("Using incremental fetch")
                result = job_manager.run_exclusive(
                    "ingest_incremental",
                    service.run_incremental,
                    limit=args.limit,
                    offset=args.offset,
                    force=args.force,
                    filters=filters,
                    cancel=service.ctx.cancel,
                )

                print("\n=== Fetch Results ===\n")
                print(f"Processed: {result.total_processed}")
        except JobAlreadyRunningError as e:
            print(f"Error: {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            service.ctx.cancel.cancel("interrupted")
            print("\nInterrupted")
            sys.exit(130)

        print(f"Imported: {result.imported}")
        print(f"Skipped: {result.skipped}")
        print(f"Errors: {result.errors}")
        print(f"Duration: {result.duration_ms}ms")

        _print_errors(result.error_details)
        _print_metrics(service.ctx.metrics)

    if not result.success:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="News ingestion CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Fetch 50 items incrementally
  python -m news_ingest.cli.fetch_news

  # Fetch 200 items in batches of 25
  python -m news_ingest.cli.fetch_news -l 200 -b 25

  # Re-import items that are already stored
  python -m news_ingest.cli.fetch_news -f -l 50

  # Show system status
  python -m news_ingest.cli.fetch_news -s
        """,
    )
    parser.add_argument("-l", "--limit", type=int, default=50, help="Number of items to fetch (default: 50)")
    parser.add_argument("-o", "--offset", type=int, default=0, help="Offset for pagination (default: 0)")
    parser.add_argument("-b", "--batch", type=int, default=None, help="Page size for batch processing")
    parser.add_argument("-f", "--force", action="store_true", help="Force fetch (ignore duplicates)")
    parser.add_argument("-s", "--status", action="store_true", help="Show system status only")
    parser.add_argument(
        "--item-status",
        default=None,
        help="Only fetch upstream items with this status (e.g. published)",
    )

    args = parser.parse_args()

    if args.limit < 1:
        parser.error("--limit must be at least 1")
    if args.batch is not None and args.batch < 1:
        parser.error("--batch must be at least 1")

    _setup_logging()

    if args.status:
        cmd_status(args)
    else:
        cmd_fetch(args)


if __name__ == "__main__":
    main()
