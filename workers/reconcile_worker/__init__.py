"""Reconcile worker module exports."""

from .worker import (
    ReconcileRunResult,
    ReconcileWorkerSettings,
    build_request,
    load_settings,
    run_forever,
    run_reconcile_once,
    run_reconcile_with_retries,
)

__all__ = [
    "ReconcileRunResult",
    "ReconcileWorkerSettings",
    "build_request",
    "load_settings",
    "run_forever",
    "run_reconcile_once",
    "run_reconcile_with_retries",
]
