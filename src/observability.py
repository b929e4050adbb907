from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any

import httpx
from postgrest.exceptions import APIError


logger = logging.getLogger("corecomm_webhooks")


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalize(v) for v in value]
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


class MetricsStore:
    """Process-local counter store.

    One instance per process; swap it for an external atomic-counter store when
    running more than one replica.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter: Counter[str] = Counter()

    def incr(self, name: str, value: int = 1, **labels: Any) -> None:
        key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
        with self._lock:
            self._counter[key] += value

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counter)

    def total(self, prefix: str) -> int:
        with self._lock:
            return sum(
                value for key, value in self._counter.items() if key == prefix or key.startswith(f"{prefix}|")
            )

    def subtract(self, counts: dict[str, int]) -> None:
        with self._lock:
            self._counter.subtract(counts)
            for key in [key for key, value in self._counter.items() if value <= 0]:
                del self._counter[key]

    def reset(self) -> None:
        with self._lock:
            self._counter.clear()


metrics = MetricsStore()


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    metrics.incr(name, value, **labels)


def metrics_snapshot() -> dict[str, int]:
    return metrics.snapshot()


def reset_metrics() -> None:
    metrics.reset()


def _export_snapshot(
    snapshot: dict[str, int],
    *,
    url: str,
    bearer_token: str | None,
    timeout_seconds: float,
    source: str,
    request_id: str | None,
) -> bool:
    headers = {"Content-Type": "application/json"}
    if bearer_token:
        headers["Authorization"] = f"Bearer {bearer_token}"
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            response = client.post(
                url,
                headers=headers,
                json={"source": source, "request_id": request_id, "counters": snapshot},
            )
    except httpx.HTTPError as exc:
        log_event("metrics_export_failed", level=logging.WARNING, request_id=request_id, source=source, error=str(exc))
        return False
    if response.status_code >= 400:
        log_event(
            "metrics_export_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return False
    return True


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    reset_after_persist: bool = False,
    export_url: str | None = None,
    export_bearer_token: str | None = None,
    export_timeout_seconds: float = 3.0,
) -> bool:
    """Store the current counters; the export sink is best effort and never fails the call.

    With ``reset_after_persist`` only the persisted counts are subtracted, so
    increments racing the insert survive into the next snapshot.
    """
    snapshot = metrics.snapshot()
    try:
        supabase_client.table("observability_metric_snapshots").insert(
            {"source": source, "request_id": request_id, "counters": snapshot}
        ).execute()
    except (APIError, httpx.HTTPError) as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    exported = None
    if export_url:
        exported = _export_snapshot(
            snapshot,
            url=export_url,
            bearer_token=export_bearer_token,
            timeout_seconds=export_timeout_seconds,
            source=source,
            request_id=request_id,
        )
    if reset_after_persist:
        metrics.subtract(snapshot)
    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(snapshot),
        exported=exported,
    )
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    for key, value in fields.items():
        payload[key] = _normalize(value)
    logger.log(level, json.dumps(payload, sort_keys=True))
