from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from postgrest.exceptions import APIError

from src.db import supabase
from src.domain.persistence import is_unique_violation, now_iso, run_query
from src.domain.webhook_errors import MutationError
from src.observability import incr_metric, log_event


ProviderName = Literal["payments", "voice", "sms_voice_carrier"]
EventStatus = Literal["received", "processed", "failed"]

_TABLE = "webhook_events"
_EVENT_COLUMNS = (
    "id, provider, external_event_id, event_type, status, payload, raw_body, last_error, "
    "retryable, duplicate_count, replay_count, received_at, processed_at"
)


@dataclass(frozen=True)
class RecordResult:
    is_new: bool
    event_id: str
    status: EventStatus
    retryable: bool = False


def record_if_new(
    *,
    provider: ProviderName,
    external_event_id: str,
    event_type: str,
    payload: dict[str, Any],
    raw_body: bytes,
    request_id: str | None = None,
) -> RecordResult:
    """Insert the event unless ``(provider, external_event_id)`` already exists.

    The unique constraint is the arbiter between racing deliveries: exactly one
    insert succeeds, every other one lands in the duplicate branch.
    """
    row = {
        "provider": provider,
        "external_event_id": external_event_id,
        "event_type": event_type,
        "status": "received",
        "payload": payload,
        "raw_body": raw_body.decode("utf-8", errors="replace"),
        "last_error": None,
        "retryable": False,
        "duplicate_count": 0,
        "replay_count": 0,
        "received_at": now_iso(),
        "processed_at": None,
    }
    try:
        inserted = run_query(supabase.table(_TABLE).insert(row), operation="webhook_event_insert")
    except APIError as exc:
        if not is_unique_violation(exc):
            raise MutationError(f"webhook event insert failed: {exc}") from exc
        existing = get_event(provider, external_event_id)
        if not existing:
            raise MutationError(
                f"webhook event {provider}:{external_event_id} reported duplicate but was not found"
            ) from exc
        _note_duplicate(existing, request_id=request_id)
        return RecordResult(
            is_new=False,
            event_id=existing["id"],
            status=existing["status"],
            retryable=bool(existing.get("retryable")),
        )

    if not inserted.data:
        raise MutationError(f"webhook event insert returned no row for {provider}:{external_event_id}")
    incr_metric("webhook.events.recorded", provider=provider)
    return RecordResult(is_new=True, event_id=inserted.data[0]["id"], status="received")


def _note_duplicate(existing: dict[str, Any], *, request_id: str | None) -> None:
    incr_metric("webhook.duplicate_ignored", provider=existing.get("provider"))
    log_event(
        "webhook_duplicate_received",
        request_id=request_id,
        provider=existing.get("provider"),
        external_event_id=existing.get("external_event_id"),
        status=existing.get("status"),
    )
    try:
        supabase.table(_TABLE).update(
            {"duplicate_count": int(existing.get("duplicate_count") or 0) + 1}
        ).eq("id", existing["id"]).execute()
    except (APIError, httpx.HTTPError) as exc:
        log_event(
            "webhook_duplicate_count_update_failed",
            level=logging.WARNING,
            request_id=request_id,
            event_id=existing["id"],
            error=str(exc),
        )


def mark_processed(
    event_id: str,
    status: Literal["processed", "failed"],
    *,
    error: str | None = None,
    retryable: bool = False,
) -> bool:
    """Move a ``received`` event to its terminal status. Returns False when it was already terminal."""
    update = {
        "status": status,
        "processed_at": now_iso(),
        "last_error": error,
        "retryable": retryable if status == "failed" else False,
    }
    result = run_query(
        supabase.table(_TABLE).update(update).eq("id", event_id).eq("status", "received"),
        operation="webhook_event_mark",
    )
    changed = bool(result.data)
    if changed:
        incr_metric(f"webhook.events.{status}")
    return changed


def claim_for_retry(event_id: str) -> bool:
    """Reopen a failed event whose outcome was ambiguous. Only one concurrent caller wins."""
    result = run_query(
        supabase.table(_TABLE)
        .update({"status": "received", "retryable": False, "last_error": None})
        .eq("id", event_id)
        .eq("status", "failed")
        .eq("retryable", True),
        operation="webhook_event_claim",
    )
    claimed = bool(result.data)
    if claimed:
        incr_metric("webhook.events.reclaimed")
    return claimed


def mark_replayed(event_row: dict[str, Any]) -> bool:
    result = run_query(
        supabase.table(_TABLE)
        .update(
            {
                "status": "processed",
                "processed_at": now_iso(),
                "last_error": None,
                "retryable": False,
                "replay_count": int(event_row.get("replay_count") or 0) + 1,
            }
        )
        .eq("id", event_row["id"])
        .eq("status", "failed"),
        operation="webhook_event_replay_mark",
    )
    return bool(result.data)


def record_replay_failure(event_row: dict[str, Any], error: str) -> None:
    run_query(
        supabase.table(_TABLE)
        .update(
            {
                "last_error": error,
                "processed_at": now_iso(),
                "replay_count": int(event_row.get("replay_count") or 0) + 1,
            }
        )
        .eq("id", event_row["id"]),
        operation="webhook_event_replay_failure",
    )


def get_event(provider: str, external_event_id: str) -> dict[str, Any] | None:
    result = run_query(
        supabase.table(_TABLE)
        .select(_EVENT_COLUMNS)
        .eq("provider", provider)
        .eq("external_event_id", external_event_id),
        operation="webhook_event_lookup",
    )
    if not result.data:
        return None
    return result.data[0]


def list_events(
    *,
    provider: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    query = supabase.table(_TABLE).select(_EVENT_COLUMNS)
    if provider:
        query = query.eq("provider", provider)
    if status:
        query = query.eq("status", status)
    result = run_query(
        query.order("received_at", desc=True).limit(limit),
        operation="webhook_event_list",
    )
    return result.data or []
