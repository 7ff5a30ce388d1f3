"""Reconciliation worker: periodically settles pending orders whose webhook never landed."""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger("foodiefi.reconcile_worker")

_REPORT_FIELDS = ("examined", "materialized", "failed", "still_pending", "errors")


@dataclass(frozen=True)
class ReconcileWorkerSettings:
    api_base_url: str
    interval_s: int
    timeout_s: float
    older_than_s: int | None
    batch_size: int | None
    auth_token: str | None
    max_retries: int
    retry_backoff_s: float


@dataclass(frozen=True)
class ReconcileRunResult:
    ok: bool
    report: dict[str, int] = field(default_factory=dict)
    status_code: int | None = None
    error: str | None = None
    attempts: int = 1


def _optional_positive_int(source: dict[str, str], name: str, minimum: int) -> int | None:
    value = source.get(name)
    if value is None or value.strip() == "":
        return None
    parsed = int(value)
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return parsed


def load_settings(env: dict[str, str] | None = None) -> ReconcileWorkerSettings:
    source = env if env is not None else os.environ
    api_base_url = source.get(
        "FOODIEFI_RECONCILE_WORKER_API_BASE_URL", "http://localhost:8000"
    ).strip()
    interval_s = int(source.get("FOODIEFI_RECONCILE_WORKER_INTERVAL_S", "300"))
    timeout_s = float(source.get("FOODIEFI_RECONCILE_WORKER_TIMEOUT_S", "30"))
    max_retries = int(source.get("FOODIEFI_RECONCILE_WORKER_MAX_RETRIES", "2"))
    retry_backoff_s = float(source.get("FOODIEFI_RECONCILE_WORKER_RETRY_BACKOFF_S", "1"))

    if not api_base_url.startswith(("http://", "https://")):
        raise ValueError("FOODIEFI_RECONCILE_WORKER_API_BASE_URL must be an http(s) URL")
    if interval_s < 1:
        raise ValueError("FOODIEFI_RECONCILE_WORKER_INTERVAL_S must be >= 1")
    if timeout_s <= 0:
        raise ValueError("FOODIEFI_RECONCILE_WORKER_TIMEOUT_S must be > 0")
    if max_retries < 0:
        raise ValueError("FOODIEFI_RECONCILE_WORKER_MAX_RETRIES must be >= 0")
    if retry_backoff_s < 0:
        raise ValueError("FOODIEFI_RECONCILE_WORKER_RETRY_BACKOFF_S must be >= 0")

    return ReconcileWorkerSettings(
        api_base_url=api_base_url.rstrip("/"),
        interval_s=interval_s,
        timeout_s=timeout_s,
        older_than_s=_optional_positive_int(source, "FOODIEFI_RECONCILE_WORKER_OLDER_THAN_S", 0),
        batch_size=_optional_positive_int(source, "FOODIEFI_RECONCILE_WORKER_BATCH_SIZE", 1),
        auth_token=source.get("FOODIEFI_RECONCILE_WORKER_AUTH_TOKEN") or None,
        max_retries=max_retries,
        retry_backoff_s=retry_backoff_s,
    )


def _decode_report(raw: str) -> tuple[dict[str, int], str | None]:
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        return {}, "Invalid JSON in reconcile response"
    if not isinstance(body, dict):
        return {}, "Reconcile response must be an object"

    report: dict[str, int] = {}
    for name in _REPORT_FIELDS:
        try:
            value = int(body.get(name, 0))
        except (TypeError, ValueError):
            return {}, f"Invalid {name} value in reconcile response"
        if value < 0:
            return {}, f"{name} must be >= 0 in reconcile response"
        report[name] = value
    return report, None


def build_request(settings: ReconcileWorkerSettings) -> urllib.request.Request:
    payload: dict[str, int] = {}
    if settings.older_than_s is not None:
        payload["older_than_s"] = settings.older_than_s
    if settings.batch_size is not None:
        payload["limit"] = settings.batch_size

    headers = {"Content-Type": "application/json"}
    if settings.auth_token:
        headers["Authorization"] = f"Bearer {settings.auth_token}"
    return urllib.request.Request(
        url=f"{settings.api_base_url}/api/v1/payments/reconcile",
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers=headers,
    )


def run_reconcile_once(
    settings: ReconcileWorkerSettings,
    opener: Callable[..., object] = urllib.request.urlopen,
) -> ReconcileRunResult:
    try:
        with opener(build_request(settings), timeout=settings.timeout_s) as response:
            report, error = _decode_report(response.read().decode("utf-8"))
            return ReconcileRunResult(
                ok=error is None,
                report=report,
                status_code=getattr(response, "status", 200),
                error=error,
            )
    except urllib.error.HTTPError as exc:
        return ReconcileRunResult(ok=False, status_code=exc.code, error=f"HTTPError: {exc.code}")
    except urllib.error.URLError as exc:
        return ReconcileRunResult(ok=False, error=f"URLError: {exc.reason}")


def _is_retryable(result: ReconcileRunResult) -> bool:
    if result.ok:
        return False
    if result.status_code is None:
        return True
    return result.status_code in {408, 429} or result.status_code >= 500


def run_reconcile_with_retries(
    settings: ReconcileWorkerSettings,
    opener: Callable[..., object] = urllib.request.urlopen,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileRunResult:
    attempts = 0
    while True:
        attempts += 1
        result = run_reconcile_once(settings, opener=opener)
        if result.ok or not _is_retryable(result) or attempts > settings.max_retries:
            return ReconcileRunResult(
                ok=result.ok,
                report=result.report,
                status_code=result.status_code,
                error=result.error,
                attempts=attempts,
            )
        sleep(settings.retry_backoff_s * (2 ** (attempts - 1)))


def run_forever(
    settings: ReconcileWorkerSettings,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    while True:
        result = run_reconcile_with_retries(settings, sleep=sleep)
        if result.ok:
            logger.info("reconcile_tick_completed %s", result.report)
        else:
            logger.warning(
                "reconcile_tick_failed status=%s error=%s attempts=%s",
                result.status_code,
                result.error,
                result.attempts,
            )
        sleep(settings.interval_s)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_forever(load_settings())
