from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from postgrest.exceptions import APIError

from src.config import settings
from src.db import supabase
from src.domain import ledger
from src.domain.normalization import (
    normalize_subscription_status,
    parse_timestamp,
    to_minor_units,
    to_utc_iso,
)
from src.domain.persistence import is_unique_violation, now_iso, run_query
from src.domain.webhook_errors import MappingError, MutationError
from src.observability import incr_metric, log_event


_SUCCESSFUL_CHARGE_STATUSES = {"successful", "success", "succeeded", "completed"}


@dataclass(frozen=True)
class InboundEvent:
    provider: str
    external_event_id: str
    event_type: str
    payload: dict[str, Any]
    received_at: datetime
    event_id: str | None = None


@dataclass(frozen=True)
class RouteOutcome:
    action: str
    company_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[InboundEvent], RouteOutcome]


def _payments_data(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    return data if isinstance(data, dict) else payload


def _payments_meta(data: dict[str, Any]) -> dict[str, Any]:
    meta = data.get("meta") or data.get("metadata") or data.get("meta_data") or {}
    if isinstance(meta, list):
        # [{"metaname": ..., "metavalue": ...}] form used by older charge payloads.
        return {
            str(item.get("metaname")): item.get("metavalue")
            for item in meta
            if isinstance(item, dict) and item.get("metaname")
        }
    return meta if isinstance(meta, dict) else {}


def _company_id(meta: dict[str, Any]) -> str | None:
    value = meta.get("companyId") or meta.get("company_id") or meta.get("client_reference_id")
    return str(value) if value else None


def _payments_subscription_id(data: dict[str, Any]) -> str | None:
    value = data.get("subscription") or data.get("subscription_id") or data.get("id") or data.get("flw_ref")
    return str(value) if value is not None else None


def _payments_customer_id(data: dict[str, Any]) -> str | None:
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    value = customer.get("id") or customer.get("customer_id") or data.get("customer_id")
    return str(value) if value is not None else None


def _event_at(event: InboundEvent, data: dict[str, Any]) -> str:
    for candidate in (data.get("created_at"), event.payload.get("created_at"), data.get("timestamp")):
        parsed = to_utc_iso(candidate)
        if parsed:
            return parsed
    return event.received_at.isoformat()


def get_subscription_by_company(company_id: str) -> dict[str, Any] | None:
    result = run_query(
        supabase.table("billing_subscriptions")
        .select(
            "company_id, provider_subscription_id, provider_customer_id, plan_id, status, "
            "current_period_end, last_event_at"
        )
        .eq("company_id", company_id),
        operation="subscription_lookup",
    )
    if not result.data:
        return None
    return result.data[0]


def _upsert_subscription(company_id: str, fields: dict[str, Any], event_at: str) -> bool:
    """Write the company's subscription row unless a newer event already did."""
    row = {**fields, "company_id": company_id, "last_event_at": event_at, "updated_at": now_iso()}
    table = "billing_subscriptions"
    try:
        updated = run_query(
            supabase.table(table).update(row).eq("company_id", company_id).lte("last_event_at", event_at),
            operation="subscription_update",
        )
        if updated.data:
            return True
        if get_subscription_by_company(company_id):
            return False
        try:
            run_query(supabase.table(table).insert(row), operation="subscription_insert")
            return True
        except APIError as exc:
            if not is_unique_violation(exc):
                raise
        # Lost the insert race to a concurrent event for the same company.
        updated = run_query(
            supabase.table(table).update(row).eq("company_id", company_id).lte("last_event_at", event_at),
            operation="subscription_update",
        )
        return bool(updated.data)
    except APIError as exc:
        raise MutationError(f"subscription upsert failed for company {company_id}: {exc}") from exc


def _update_subscription_by_provider_id(
    provider_subscription_id: str,
    fields: dict[str, Any],
    event_at: str,
) -> tuple[str | None, bool]:
    table = "billing_subscriptions"
    try:
        updated = run_query(
            supabase.table(table)
            .update({**fields, "last_event_at": event_at, "updated_at": now_iso()})
            .eq("provider_subscription_id", provider_subscription_id)
            .lte("last_event_at", event_at),
            operation="subscription_update",
        )
    except APIError as exc:
        raise MutationError(f"subscription update failed for {provider_subscription_id}: {exc}") from exc
    if updated.data:
        return updated.data[0].get("company_id"), True
    existing = run_query(
        supabase.table(table).select("company_id").eq("provider_subscription_id", provider_subscription_id),
        operation="subscription_lookup",
    )
    if not existing.data:
        raise MappingError(f"No local subscription for provider subscription {provider_subscription_id}")
    return existing.data[0].get("company_id"), False


def _handle_charge_completed(event: InboundEvent) -> RouteOutcome:
    data = _payments_data(event.payload)
    meta = _payments_meta(data)
    company_id = _company_id(meta)
    if not company_id:
        raise MappingError("charge event is missing meta.companyId")

    charge_status = str(data.get("status") or "").strip().lower()
    if charge_status and charge_status not in _SUCCESSFUL_CHARGE_STATUSES:
        return RouteOutcome(action="ignored", company_id=company_id, detail={"reason": f"charge_status:{charge_status}"})

    mode = str(meta.get("mode") or "payment").strip().lower()
    if mode == "subscription":
        subscription_id = _payments_subscription_id(data)
        if not subscription_id:
            raise MappingError("subscription charge is missing a subscription id")
        applied = _upsert_subscription(
            company_id,
            {
                "provider_subscription_id": subscription_id,
                "provider_customer_id": _payments_customer_id(data),
                "plan_id": meta.get("planId") or meta.get("priceId") or "starter",
                "status": "active",
                "current_period_end": to_utc_iso(data.get("current_period_end") or data.get("next_billing_date")),
            },
            _event_at(event, data),
        )
        return RouteOutcome(
            action="subscription_activated" if applied else "stale_ignored",
            company_id=company_id,
            detail={"provider_subscription_id": subscription_id},
        )

    raw_amount = data.get("amount") or data.get("amount_paid") or data.get("amount_settled") or 0
    try:
        amount_cents = to_minor_units(raw_amount)
    except ValueError as exc:
        raise MappingError(str(exc)) from exc
    if amount_cents <= 0:
        return RouteOutcome(action="ignored", company_id=company_id, detail={"reason": "non_positive_amount"})

    charge_reference = data.get("id") or data.get("tx_ref") or data.get("flw_ref") or event.external_event_id
    wallet = ledger.get_or_create_wallet(company_id)
    balance = ledger.apply_delta(
        wallet["id"],
        amount_cents,
        "top_up",
        "Credit Top-up (Flutterwave)",
        reference_id=f"payments:{charge_reference}",
    )
    return RouteOutcome(
        action="wallet_top_up",
        company_id=company_id,
        detail={"amount_cents": amount_cents, "balance_cents": balance, "wallet_id": wallet["id"]},
    )


def _handle_subscription_created(event: InboundEvent) -> RouteOutcome:
    data = _payments_data(event.payload)
    meta = _payments_meta(data)
    company_id = _company_id(meta)
    if not company_id:
        raise MappingError("subscription.created is missing meta.companyId")
    subscription_id = _payments_subscription_id(data)
    if not subscription_id:
        raise MappingError("subscription.created is missing a subscription id")
    plan = data.get("plan")
    plan_id = plan.get("id") if isinstance(plan, dict) else plan
    applied = _upsert_subscription(
        company_id,
        {
            "provider_subscription_id": subscription_id,
            "provider_customer_id": _payments_customer_id(data),
            "plan_id": meta.get("planId") or plan_id or "starter",
            "status": "trialing",
            "current_period_end": to_utc_iso(data.get("current_period_end") or data.get("next_billing_date")),
        },
        _event_at(event, data),
    )
    return RouteOutcome(
        action="subscription_trialing" if applied else "stale_ignored",
        company_id=company_id,
        detail={"provider_subscription_id": subscription_id},
    )


def _handle_subscription_cancelled(event: InboundEvent) -> RouteOutcome:
    data = _payments_data(event.payload)
    subscription_id = _payments_subscription_id(data)
    if not subscription_id:
        raise MappingError("subscription cancellation is missing a subscription id")
    company_id, applied = _update_subscription_by_provider_id(
        subscription_id, {"status": "canceled"}, _event_at(event, data)
    )
    return RouteOutcome(
        action="subscription_canceled" if applied else "stale_ignored",
        company_id=company_id,
        detail={"provider_subscription_id": subscription_id},
    )


def _handle_subscription_updated(event: InboundEvent) -> RouteOutcome:
    data = _payments_data(event.payload)
    subscription_id = _payments_subscription_id(data)
    if not subscription_id:
        raise MappingError("subscription.updated is missing a subscription id")
    fields: dict[str, Any] = {"status": normalize_subscription_status(data.get("status"))}
    period_end = to_utc_iso(data.get("current_period_end") or data.get("next_billing_date"))
    if period_end:
        fields["current_period_end"] = period_end
    company_id, applied = _update_subscription_by_provider_id(subscription_id, fields, _event_at(event, data))
    return RouteOutcome(
        action="subscription_updated" if applied else "stale_ignored",
        company_id=company_id,
        detail={"provider_subscription_id": subscription_id, "status": fields["status"]},
    )


def _call_duration_seconds(message: dict[str, Any], call: dict[str, Any]) -> float:
    for candidate in (message.get("durationSeconds"), call.get("duration"), message.get("duration")):
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
            return float(candidate)
    started = parse_timestamp(message.get("startedAt") or call.get("startedAt"))
    ended = parse_timestamp(message.get("endedAt") or call.get("endedAt"))
    if started and ended:
        return max(0.0, (ended - started).total_seconds())
    return 0.0


def _resolve_voice_company(call: dict[str, Any]) -> str | None:
    metadata = call.get("metadata") if isinstance(call.get("metadata"), dict) else {}
    company_id = metadata.get("companyId") or metadata.get("company_id")
    if company_id:
        return str(company_id)
    phone = call.get("phoneNumber") if isinstance(call.get("phoneNumber"), dict) else {}
    number = phone.get("number")
    if not number:
        return None
    result = run_query(
        supabase.table("vapi_phone_numbers").select("company_id").eq("phone_number", number),
        operation="voice_number_lookup",
    )
    if not result.data:
        return None
    return result.data[0].get("company_id")


def _handle_end_of_call_report(event: InboundEvent) -> RouteOutcome:
    message = event.payload.get("message") if isinstance(event.payload.get("message"), dict) else {}
    call = message.get("call") if isinstance(message.get("call"), dict) else {}
    call_id = call.get("id")
    if not call_id:
        raise MappingError("end-of-call-report is missing call.id")

    duration = _call_duration_seconds(message, call)
    if duration <= 0:
        return RouteOutcome(action="ignored", detail={"reason": "zero_duration", "call_id": call_id})

    company_id = _resolve_voice_company(call)
    if not company_id:
        raise MappingError(f"No company mapped to call {call_id}")

    minutes = math.ceil(duration / 60)
    cost_cents = minutes * settings.voice_rate_per_minute_cents
    balance = ledger.debit_wallet(
        company_id,
        cost_cents,
        "usage_charge",
        f"Voice Call Usage ({minutes} min)",
        reference_id=f"voice:{call_id}",
    )
    return RouteOutcome(
        action="usage_charged",
        company_id=company_id,
        detail={"call_id": call_id, "minutes": minutes, "amount_cents": -cost_cents, "balance_cents": balance},
    )


def _handle_carrier_inbound(event: InboundEvent) -> RouteOutcome:
    return RouteOutcome(
        action="recorded",
        detail={"from": event.payload.get("From"), "to": event.payload.get("To")},
    )


_HANDLERS: dict[tuple[str, str], Handler] = {
    ("payments", "charge.completed"): _handle_charge_completed,
    ("payments", "charge.success"): _handle_charge_completed,
    ("payments", "subscription.created"): _handle_subscription_created,
    ("payments", "subscription.cancelled"): _handle_subscription_cancelled,
    ("payments", "subscription.deleted"): _handle_subscription_cancelled,
    ("payments", "subscription.updated"): _handle_subscription_updated,
    ("voice", "end-of-call-report"): _handle_end_of_call_report,
    ("sms_voice_carrier", "voice.inbound"): _handle_carrier_inbound,
    ("sms_voice_carrier", "sms.inbound"): _handle_carrier_inbound,
}


def route(event: InboundEvent, *, request_id: str | None = None) -> RouteOutcome:
    """Run the single handler for ``event``; unknown event types are acknowledged without mutation."""
    handler = _HANDLERS.get((event.provider, event.event_type))
    if handler is None:
        incr_metric("webhook.events.unhandled", provider=event.provider)
        log_event(
            "webhook_event_unhandled",
            request_id=request_id,
            provider=event.provider,
            event_type=event.event_type,
            external_event_id=event.external_event_id,
        )
        return RouteOutcome(action="ignored", detail={"reason": "unsupported_event_type"})

    outcome = handler(event)
    incr_metric("webhook.events.routed", provider=event.provider, action=outcome.action)
    log_event(
        "webhook_event_routed",
        level=logging.INFO,
        request_id=request_id,
        provider=event.provider,
        event_type=event.event_type,
        external_event_id=event.external_event_id,
        action=outcome.action,
        company_id=outcome.company_id,
    )
    return outcome
