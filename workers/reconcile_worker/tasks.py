"""Reconcile worker tasks."""

from __future__ import annotations

from workers.reconcile_worker.worker import (
    ReconcileRunResult,
    ReconcileWorkerSettings,
    load_settings,
    run_reconcile_with_retries,
)


def reconcile_tick(settings: ReconcileWorkerSettings | None = None) -> ReconcileRunResult:
    """Run one sweep, for cron-style schedulers that own the interval."""
    return run_reconcile_with_retries(settings or load_settings())
