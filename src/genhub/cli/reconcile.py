"""CLI command for running one reconciliation sweep over detached jobs.

Usage:
    python -m genhub.cli [OPTIONS]

Examples:
    # Sweep with the configured batch size
    python -m genhub.cli

    # Sweep at most 100 jobs per kind
    python -m genhub.cli --limit 100

    # Verbose logging
    python -m genhub.cli -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import httpx
import structlog

from genhub.core.config import Settings, configure_logging
from genhub.core.database import setup_db_session
from genhub.services.orchestrator import GenerationOrchestrator, ReconcileSummary
from genhub.services.providers.registry import AdapterRegistry
from genhub.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Finalize detached generation jobs",
        epilog="Polls each pending detached job once and bills completed ones",
    )

    parser.add_argument(
        "--limit",
        type=int,
        help="Maximum number of jobs per kind (default: RECONCILE_BATCH_SIZE)",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def exit_code_for(summary: ReconcileSummary) -> int:
    """0 when every finalized job billed cleanly, 2 when any conflict was recorded."""
    return 2 if summary.conflicts else 0


def print_summary(summary: ReconcileSummary) -> None:
    print("\n" + "=" * 60)
    print("Reconciliation Summary")
    print("=" * 60)
    print(f"Jobs checked: {len(summary.job_ids)}")
    print(f"Completed and billed: {summary.completed}")
    print(f"Failed: {summary.failed}")
    print(f"Still pending: {summary.pending}")
    print(f"Billing conflicts: {summary.conflicts}")
    print(f"Already finalized: {summary.skipped}")
    print("=" * 60 + "\n")


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (billing conflicts)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    limit = args.limit or settings.reconcile_batch_size
    logger.info("cli.started", limit=limit)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)

    try:
        async with httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds) as client:
            orchestrator = GenerationOrchestrator(
                uow_factory=create_uow_factory(session_factory),
                registry=AdapterRegistry.from_settings(settings, client=client),
                settings=settings,
            )
            summary = await orchestrator.reconcile_pending(limit=limit)

        print_summary(summary)
        code = exit_code_for(summary)
        logger.info("cli.finished", exit_code=code)
        return code

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nReconciliation interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await session_factory.kw["bind"].dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
