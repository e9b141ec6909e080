"""CLI command for a one-shot pending job sweep.

Usage:
    python -m mediagen.cli.sweep_jobs [OPTIONS]

Examples:
    # Delete expired jobs and fail timed-out ones
    python -m mediagen.cli.sweep_jobs

    # Dry run (no database writes)
    python -m mediagen.cli.sweep_jobs --dry-run

    # Verbose logging
    python -m mediagen.cli.sweep_jobs -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from mediagen.core import timezone  # noqa: F401
from mediagen.core.config import Settings, configure_logging
from mediagen.core.database import setup_db_session
from mediagen.uow import create_uow_factory
from mediagen.workers.sweep_worker import build_job_store, sweep_once

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Delete expired pending jobs and fail timed-out ones",
        epilog="Retention and timeouts come from JOB_RETENTION_DAYS, IMAGE_TIMEOUT_MINUTES "
        "and VIDEO_TIMEOUT_MINUTES",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report affected jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command="sweep_jobs", dry_run=args.dry_run)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        report = await sweep_once(uow_factory, build_job_store(settings), dry_run=args.dry_run)
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nSweep interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1
    finally:
        await session_factory.kw["bind"].dispose()

    print("\n" + "=" * 60)
    print("Pending Job Sweep Summary")
    print("=" * 60)
    print(f"Expired jobs {'found' if report.dry_run else 'deleted'}: {report.expired}")
    print(f"Timed-out jobs {'found' if report.dry_run else 'failed'}: {len(report.timed_out)}")
    for task_id in report.timed_out[:10]:
        print(f"  - {task_id}")
    if len(report.timed_out) > 10:
        print(f"  ... and {len(report.timed_out) - 10} more")
    if report.dry_run:
        print("\n[DRY RUN] No changes were persisted to database")
    print("=" * 60 + "\n")

    logger.info("cli.success", expired=report.expired, timed_out=len(report.timed_out))
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
