"""CLI command for auditing a user's credit ledger.

Recomputes the balance from the transaction ledger and compares it with the
cached balance.

Usage:
    python -m mediagen.cli.audit_ledger --user-id USER_ID [--user-id ...]

Exit codes:
    0: every audited ledger is consistent
    1: at least one mismatch (or an error)
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from mediagen.core import timezone  # noqa: F401
from mediagen.core.config import Settings, configure_logging
from mediagen.core.database import setup_db_session
from mediagen.services.credit_ledger import CreditLedger
from mediagen.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Compare cached credit balances with the ledger sum")

    parser.add_argument(
        "--user-id",
        dest="user_ids",
        action="append",
        required=True,
        help="User to audit (repeatable)",
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
        Exit code: 0 (consistent), 1 (mismatch or error)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    ledger = CreditLedger()

    mismatches = 0
    try:
        for user_id in args.user_ids:
            async with await uow_factory() as uow:
                audit = await ledger.audit(uow, user_id)
            marker = "OK" if audit.consistent else "MISMATCH"
            print(f"{user_id}: balance={audit.balance} ledger_sum={audit.ledger_sum} [{marker}]")
            if not audit.consistent:
                mismatches += 1
    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1
    finally:
        await session_factory.kw["bind"].dispose()

    if mismatches:
        logger.error("cli.ledger_mismatch", users=mismatches)
        return 1

    logger.info("cli.success", users=len(args.user_ids))
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
