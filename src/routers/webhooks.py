from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.db import supabase
from src.domain import event_router, event_store
from src.domain.event_router import InboundEvent
from src.domain.providers import (
    CARRIER_SMS,
    CARRIER_VOICE,
    PAYMENTS,
    VOICE,
    PayloadError,
    WebhookProvider,
)
from src.domain.webhook_errors import (
    AuthenticityError,
    MutationError,
    PersistenceTimeoutError,
    SignatureConfigurationError,
    WebhookError,
)
from src.models.webhooks import (
    MetricsFlushResponse,
    WebhookEventListItem,
    WebhookEventListResponse,
    WebhookReplayResponse,
)
from src.observability import incr_metric, log_event, metrics_snapshot, persist_metrics_snapshot


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _public_url(request: Request) -> str:
    """URL the carrier signed. Behind a proxy the scheme/host seen here differ from the public one."""
    if not settings.webhook_public_base_url:
        return str(request.url)
    url = settings.webhook_public_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def _mark_failed(event_id: str, error: str, *, retryable: bool, request_id: str | None) -> None:
    try:
        event_store.mark_processed(event_id, "failed", error=error, retryable=retryable)
    except (PersistenceTimeoutError, MutationError) as exc:
        # Row stays "received"; it still carries the payload for operator follow-up.
        log_event(
            "webhook_mark_failed_error",
            level=logging.ERROR,
            request_id=request_id,
            event_id=event_id,
            error=str(exc),
        )


def _verify(
    provider: WebhookProvider,
    *,
    raw_body: bytes,
    url: str,
    headers: Mapping[str, str],
    request_id: str | None,
) -> None:
    """Raise when the delivery must not be recorded; the message is the rejection reason."""
    if not raw_body:
        raise AuthenticityError("empty_body")

    if not provider.secret_configured():
        if settings.webhook_allow_unsigned and not settings.is_production:
            incr_metric("webhook.signature.skipped", provider=provider.name)
            log_event(
                "webhook_signature_skipped",
                level=logging.WARNING,
                request_id=request_id,
                provider=provider.name,
                app_env=settings.app_env,
            )
            return
        raise SignatureConfigurationError("signature_secret_not_configured")

    if not provider.verify(raw_body=raw_body, url=url, headers=headers):
        raise AuthenticityError("invalid_signature")
    incr_metric("webhook.signature.verified", provider=provider.name)


def ingest_webhook(
    provider: WebhookProvider,
    *,
    raw_body: bytes,
    url: str,
    headers: Mapping[str, str],
    request_id: str | None = None,
) -> Response:
    """verify -> parse -> record -> route -> mark -> ack.

    The event row is written before any ledger mutation; a crash between the
    two leaves a row that makes redeliveries skip instead of double-applying.
    """
    incr_metric("webhook.events.received", provider=provider.name)

    try:
        _verify(provider, raw_body=raw_body, url=url, headers=headers, request_id=request_id)
    except SignatureConfigurationError as exc:
        incr_metric("webhook.signature.config_error", provider=provider.name)
        log_event(
            "webhook_signature_config_error",
            level=logging.ERROR,
            request_id=request_id,
            provider=provider.name,
            message="Webhook secret is not configured",
        )
        return provider.retry_later(reason=str(exc))
    except AuthenticityError as exc:
        incr_metric("webhook.events.rejected", provider=provider.name, reason=str(exc))
        log_event(
            "webhook_signature_rejected",
            level=logging.WARNING,
            request_id=request_id,
            provider=provider.name,
            reason=str(exc),
        )
        return provider.unauthorized(reason=str(exc))

    try:
        parsed = provider.parse(raw_body)
    except PayloadError as exc:
        incr_metric("webhook.events.rejected", provider=provider.name, reason="invalid_payload")
        log_event(
            "webhook_payload_invalid",
            level=logging.WARNING,
            request_id=request_id,
            provider=provider.name,
            error=str(exc),
        )
        return provider.bad_payload(message=str(exc))

    log_event(
        "webhook_received",
        request_id=request_id,
        provider=provider.name,
        event_type=parsed.event_type,
        external_event_id=parsed.external_event_id,
    )

    try:
        recorded = event_store.record_if_new(
            provider=provider.name,
            external_event_id=parsed.external_event_id,
            event_type=parsed.event_type,
            payload=parsed.payload,
            raw_body=raw_body,
            request_id=request_id,
        )
        if not recorded.is_new:
            reclaimed = (
                recorded.status == "failed"
                and recorded.retryable
                and event_store.claim_for_retry(recorded.event_id)
            )
            if not reclaimed:
                return provider.ack(outcome="duplicate", external_event_id=parsed.external_event_id)
            log_event(
                "webhook_event_reclaimed",
                request_id=request_id,
                provider=provider.name,
                external_event_id=parsed.external_event_id,
            )
    except (PersistenceTimeoutError, MutationError) as exc:
        incr_metric("webhook.events.record_failed", provider=provider.name, category=exc.category)
        log_event(
            "webhook_record_failed",
            level=logging.ERROR,
            request_id=request_id,
            provider=provider.name,
            external_event_id=parsed.external_event_id,
            error=str(exc),
        )
        return provider.retry_later(reason="event_store_unavailable")

    event = InboundEvent(
        provider=provider.name,
        external_event_id=parsed.external_event_id,
        event_type=parsed.event_type,
        payload=parsed.payload,
        received_at=datetime.now(timezone.utc),
        event_id=recorded.event_id,
    )
    try:
        outcome = event_router.route(event, request_id=request_id)
    except PersistenceTimeoutError as exc:
        _mark_failed(recorded.event_id, str(exc), retryable=True, request_id=request_id)
        log_event(
            "webhook_event_outcome_unknown",
            level=logging.ERROR,
            request_id=request_id,
            provider=provider.name,
            event_type=event.event_type,
            external_event_id=event.external_event_id,
            error=str(exc),
        )
        return provider.retry_later(reason="persistence_timeout")
    except WebhookError as exc:
        _mark_failed(recorded.event_id, str(exc), retryable=False, request_id=request_id)
        log_event(
            "webhook_event_failed",
            level=logging.ERROR,
            request_id=request_id,
            provider=provider.name,
            event_type=event.event_type,
            external_event_id=event.external_event_id,
            category=exc.category,
            error=str(exc),
        )
        return provider.failed_ack(external_event_id=event.external_event_id)
    except Exception as exc:
        _mark_failed(recorded.event_id, f"{type(exc).__name__}: {exc}", retryable=False, request_id=request_id)
        log_event(
            "webhook_handler_crashed",
            level=logging.ERROR,
            request_id=request_id,
            provider=provider.name,
            event_type=event.event_type,
            external_event_id=event.external_event_id,
            error=f"{type(exc).__name__}: {exc}",
        )
        return provider.failed_ack(external_event_id=event.external_event_id)

    try:
        event_store.mark_processed(recorded.event_id, "processed")
    except (PersistenceTimeoutError, MutationError) as exc:
        # Side effects are committed and idempotent; a redelivery is acknowledged as a duplicate.
        log_event(
            "webhook_mark_processed_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider=provider.name,
            external_event_id=event.external_event_id,
            error=str(exc),
        )
    return provider.ack(
        outcome="ignored" if outcome.action == "ignored" else "processed",
        external_event_id=event.external_event_id,
    )


async def _ingest_request(provider: WebhookProvider, request: Request) -> Response:
    raw_body = await request.body()
    # The Supabase client blocks; keep it off the event loop.
    return await run_in_threadpool(
        ingest_webhook,
        provider,
        raw_body=raw_body,
        url=_public_url(request),
        headers=request.headers,
        request_id=_request_id(request),
    )


@router.post("/flutterwave")
async def ingest_flutterwave_webhook(request: Request):
    return await _ingest_request(PAYMENTS, request)


@router.post("/vapi")
async def ingest_vapi_webhook(request: Request):
    return await _ingest_request(VOICE, request)


@router.get("/twilio/voice", response_class=PlainTextResponse)
async def twilio_voice_health():
    return "OK"


@router.post("/twilio/voice")
async def ingest_twilio_voice_webhook(request: Request):
    return await _ingest_request(CARRIER_VOICE, request)


@router.get("/twilio/sms", response_class=PlainTextResponse)
async def twilio_sms_health():
    return "OK"


@router.post("/twilio/sms")
async def ingest_twilio_sms_webhook(request: Request):
    return await _ingest_request(CARRIER_SMS, request)


@router.get("/events", response_model=WebhookEventListResponse)
def list_webhook_events(
    provider: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    _: SuperAdminContext = Depends(get_current_super_admin),
):
    rows = event_store.list_events(provider=provider, status=status_filter, limit=limit)
    return WebhookEventListResponse(events=[WebhookEventListItem(**row) for row in rows])


def _replay_failure(
    row: dict,
    *,
    provider: str,
    external_event_id: str,
    error: str,
    retryable: bool,
    request_id: str | None,
) -> HTTPException:
    try:
        event_store.record_replay_failure(row, error)
    except (PersistenceTimeoutError, MutationError) as exc:
        log_event(
            "webhook_replay_failure_not_recorded",
            level=logging.ERROR,
            request_id=request_id,
            provider=provider,
            external_event_id=external_event_id,
            error=str(exc),
        )
    incr_metric("webhook.replays.failed", provider=provider)
    log_event(
        "webhook_replay_failed",
        level=logging.WARNING,
        request_id=request_id,
        provider=provider,
        external_event_id=external_event_id,
        error=error,
    )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE if retryable else status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "type": "webhook_replay_failed",
            "provider": provider,
            "external_event_id": external_event_id,
            "reason": error,
            "retryable": retryable,
        },
    )


@router.post("/replay/{provider}/{external_event_id}", response_model=WebhookReplayResponse)
def replay_webhook_event(
    provider: str,
    external_event_id: str,
    request: Request,
    _: SuperAdminContext = Depends(get_current_super_admin),
):
    req_id = _request_id(request)
    try:
        row = event_store.get_event(provider, external_event_id)
    except PersistenceTimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "type": "webhook_replay_failed",
                "provider": provider,
                "external_event_id": external_event_id,
                "reason": str(exc),
                "retryable": True,
            },
        ) from exc
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook event not found")
    if row.get("status") != "failed":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "type": "webhook_replay_not_allowed",
                "status": row.get("status"),
                "message": "Only failed events can be replayed",
            },
        )

    received_at = row.get("received_at")
    event = InboundEvent(
        provider=row["provider"],
        external_event_id=row["external_event_id"],
        event_type=row.get("event_type") or "unknown",
        payload=row.get("payload") or {},
        received_at=(
            datetime.fromisoformat(received_at.replace("Z", "+00:00"))
            if isinstance(received_at, str)
            else datetime.now(timezone.utc)
        ),
        event_id=row["id"],
    )
    failure = {"provider": provider, "external_event_id": external_event_id, "request_id": req_id}
    try:
        outcome = event_router.route(event, request_id=req_id)
    except WebhookError as exc:
        raise _replay_failure(row, error=str(exc), retryable=exc.retryable, **failure) from exc
    except Exception as exc:
        raise _replay_failure(row, error=f"{type(exc).__name__}: {exc}", retryable=False, **failure) from exc

    event_store.mark_replayed(row)
    incr_metric("webhook.replays.processed", provider=provider)
    log_event(
        "webhook_replay_processed",
        request_id=req_id,
        provider=provider,
        external_event_id=external_event_id,
        action=outcome.action,
    )
    return WebhookReplayResponse(
        status="replayed",
        provider=row["provider"],
        external_event_id=external_event_id,
        event_type=event.event_type,
        action=outcome.action,
        company_id=outcome.company_id,
    )


@router.post("/metrics/flush", response_model=MetricsFlushResponse)
def flush_webhook_metrics(
    request: Request,
    _: SuperAdminContext = Depends(get_current_super_admin),
):
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=supabase,
        source="webhooks_metrics_flush",
        request_id=_request_id(request),
        reset_after_persist=False,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsFlushResponse(persisted=persisted, counter_count=counter_count)
