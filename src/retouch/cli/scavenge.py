"""CLI command for failing jobs stuck in an active status.

Usage:
    python -m retouch.cli.scavenge [OPTIONS]

Examples:
    # Fail jobs active for more than 10 minutes
    python -m retouch.cli.scavenge

    # Use a 30 minute threshold
    python -m retouch.cli.scavenge --threshold-minutes 30

    # Dry run (no database writes)
    python -m retouch.cli.scavenge --dry-run

    # Verbose logging
    python -m retouch.cli.scavenge -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError

from retouch.core import timezone  # noqa: F401
from retouch.core.config import Settings, configure_logging
from retouch.core.database import setup_db_session
from retouch.services.scavenger import sweep_stuck_jobs
from retouch.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Fail jobs stuck in processing or retrying",
        epilog="Same sweep as the /scavenger endpoint, run directly against the database",
    )

    parser.add_argument(
        "--threshold-minutes",
        type=int,
        help="Age after which an active job is considered stuck (default: SCAVENGER_THRESHOLD_MINUTES)",
    )

    parser.add_argument(
        "--limit",
        type=int,
        help="Maximum number of jobs to fail (default: SCAVENGER_BATCH_LIMIT)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List stuck jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    threshold = args.threshold_minutes or settings.scavenger_threshold_minutes
    limit = args.limit or settings.scavenger_batch_limit
    logger.info("cli.started", threshold_minutes=threshold, limit=limit, dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        result = await sweep_stuck_jobs(
            uow_factory,
            threshold_minutes=threshold,
            limit=limit,
            dry_run=args.dry_run,
        )
    except SQLAlchemyError as e:
        logger.error("cli.database_error", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nScavenger interrupted by user", file=sys.stderr)
        return 130

    print("\n" + "=" * 60)
    print("Scavenger Summary")
    print("=" * 60)
    print(f"Stuck jobs found: {len(result.candidate_ids)}")
    for job_id in result.candidate_ids[:10]:
        print(f"  - {job_id}")
    if len(result.candidate_ids) > 10:
        print(f"  ... and {len(result.candidate_ids) - 10} more")
    print(f"Jobs failed: {result.cleaned_count}")
    print(f"Duration: {result.duration_ms} ms")
    if args.dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")

    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
