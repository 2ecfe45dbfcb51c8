"""Background workers for async processing tasks."""

from genhub.workers.reconciliation_worker import (
    process_sweep,
    run_reconciliation_worker,
    supervise_reconciliation_worker,
)

__all__ = [
    "process_sweep",
    "run_reconciliation_worker",
    "supervise_reconciliation_worker",
]
