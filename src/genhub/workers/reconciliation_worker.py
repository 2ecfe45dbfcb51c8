"""Reconciliation worker for detached generation jobs.

Jobs submitted with detach=true return to the caller right after provider
submission. This worker sweeps pending detached rows on an interval, checks
each job's status once per sweep and finalizes the ones that reached a
terminal state (billing completed jobs, failing failed or expired ones).

The batch query takes FOR UPDATE SKIP LOCKED only for the short read that
loads it, so two concurrent sweepers may both poll the same job. Billing
re-locks the row with lock_by_id and skips rows already terminal, so a job
is still billed at most once.
"""

import asyncio

import structlog

from genhub.core.config import Settings
from genhub.services.orchestrator import GenerationOrchestrator, ReconcileSummary

logger = structlog.get_logger(__name__)


async def process_sweep(orchestrator: GenerationOrchestrator, settings: Settings) -> ReconcileSummary:
    """Run one reconciliation sweep over a batch of detached jobs."""
    return await orchestrator.reconcile_pending(limit=settings.reconcile_batch_size)


async def run_reconciliation_worker(
    orchestrator: GenerationOrchestrator,
    settings: Settings,
) -> None:
    """Main worker loop for detached job reconciliation.

    Workflow:
    1. Sweep pending detached jobs
    2. Wait RECONCILE_INTERVAL_SECONDS
    3. Handle CancelledError for graceful shutdown

    Args:
        orchestrator: Orchestrator providing reconcile_pending
        settings: Application settings (interval, batch size)
    """
    logger.info(
        "worker.started",
        worker="reconciliation",
        interval=settings.reconcile_interval_seconds,
        batch_size=settings.reconcile_batch_size,
    )

    try:
        while True:
            try:
                await process_sweep(orchestrator, settings)
                await asyncio.sleep(settings.reconcile_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="reconciliation",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="reconciliation")
        raise


async def supervise_reconciliation_worker(
    orchestrator: GenerationOrchestrator,
    settings: Settings,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1.0,
) -> None:
    """Keep the worker loop alive until shutdown.

    A crash (or an unexpected return) is logged and the loop is started again
    after restart_delay seconds. Cancellation propagates.
    """
    while not shutdown_event.is_set():
        try:
            await run_reconciliation_worker(orchestrator, settings)
            logger.warning(
                "worker.stopped_unexpectedly",
                worker="reconciliation",
                retry_in_seconds=restart_delay,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "worker.crashed",
                worker="reconciliation",
                error=str(e),
                error_type=type(e).__name__,
                retry_in_seconds=restart_delay,
                exc_info=e,
            )

        await asyncio.sleep(restart_delay)
        if not shutdown_event.is_set():
            logger.info("worker.restarting", worker="reconciliation")
