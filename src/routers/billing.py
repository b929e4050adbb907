from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from postgrest.exceptions import APIError

from src.auth import AuthContext, get_current_user, require_permission
from src.auth.permissions import BILLING_MANAGE
from src.config import settings
from src.db import supabase
from src.domain import ledger
from src.domain.event_router import get_subscription_by_company
from src.domain.pricing import ADD_ONS, PRICING_TIERS
from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.domain.webhook_errors import InsufficientFundsError, MutationError, PersistenceTimeoutError
from src.models.billing import (
    AddonPurchaseRequest,
    AddonPurchaseResponse,
    CheckoutRequest,
    CheckoutResponse,
    SubscriptionCancelResponse,
    WalletResponse,
    WalletTransactionItem,
)
from src.observability import incr_metric, log_event
from src.providers.flutterwave.client import (
    FlutterwaveProviderError,
    cancel_subscription as flutterwave_cancel_subscription,
    create_payment_link as flutterwave_create_payment_link,
)


router = APIRouter(prefix="/api/billing", tags=["billing"])


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _raise_provider_http_error(operation: str, exc: FlutterwaveProviderError, request_id: str | None = None) -> None:
    incr_metric(
        "billing.provider_requests.failed",
        operation=operation,
        provider="flutterwave",
        category=exc.category,
        retryable=exc.retryable,
    )
    log_event(
        "billing_provider_request_failed",
        level=logging.WARNING,
        request_id=request_id,
        operation=operation,
        provider="flutterwave",
        category=exc.category,
        retryable=exc.retryable,
        error=str(exc),
    )
    raise HTTPException(
        status_code=provider_error_http_status(exc),
        detail=provider_error_detail(provider="flutterwave", operation=operation, exc=exc),
    ) from exc


def _raise_persistence_error(operation: str, exc: MutationError | PersistenceTimeoutError) -> None:
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"type": "billing_persistence_error", "operation": operation, "message": str(exc)},
    ) from exc


def _require_flutterwave_key() -> str:
    if not settings.flutterwave_secret_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments provider not configured",
        )
    return settings.flutterwave_secret_key


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(auth: AuthContext = Depends(get_current_user)):
    try:
        wallet = ledger.get_wallet_by_company(auth.company_id)
        if not wallet:
            return WalletResponse(company_id=auth.company_id, balance_cents=0)
        transactions = ledger.list_transactions(wallet["id"])
    except PersistenceTimeoutError as exc:
        _raise_persistence_error("wallet_read", exc)
    return WalletResponse(
        company_id=auth.company_id,
        wallet_id=wallet["id"],
        balance_cents=int(wallet["balance"]),
        transactions=[WalletTransactionItem(**row) for row in transactions],
    )


@router.post("/purchase-addon", response_model=AddonPurchaseResponse)
async def purchase_addon(
    data: AddonPurchaseRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission(BILLING_MANAGE)),
):
    req_id = _request_id(request)
    addon = ADD_ONS.get(data.addon_id)
    if not addon:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid add-on ID")
    cost_cents = int(addon["price"]) * 100

    try:
        balance = ledger.debit_wallet(
            auth.company_id,
            cost_cents,
            "addon_purchase",
            f"Purchase: {addon['name']}",
            reference_id=f"addon:{uuid4()}",
        )
    except InsufficientFundsError as exc:
        incr_metric("billing.addon_purchase.insufficient_funds", addon_id=data.addon_id)
        log_event(
            "billing_addon_purchase_rejected",
            level=logging.WARNING,
            request_id=req_id,
            company_id=auth.company_id,
            addon_id=data.addon_id,
            required_cents=exc.required_cents,
            available_cents=exc.available_cents,
        )
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail={
                "type": exc.category,
                "required_cents": exc.required_cents,
                "available_cents": exc.available_cents,
                "message": "Insufficient funds. Please top up your wallet.",
            },
        ) from exc
    except (MutationError, PersistenceTimeoutError) as exc:
        _raise_persistence_error("addon_purchase", exc)

    try:
        supabase.table("billing_addons").insert(
            {
                "company_id": auth.company_id,
                "type": data.addon_id,
                "quantity": 1,
                "cost_cents": cost_cents,
                "status": "active",
            }
        ).execute()
    except APIError as exc:
        # Wallet was debited; the add-on row is reconciled from the transaction description.
        log_event(
            "billing_addon_record_failed",
            level=logging.ERROR,
            request_id=req_id,
            company_id=auth.company_id,
            addon_id=data.addon_id,
            error=str(exc),
        )

    incr_metric("billing.addon_purchase.succeeded", addon_id=data.addon_id)
    log_event(
        "billing_addon_purchased",
        request_id=req_id,
        company_id=auth.company_id,
        addon_id=data.addon_id,
        cost_cents=cost_cents,
        balance_cents=balance,
    )
    return AddonPurchaseResponse(
        success=True,
        addon_id=data.addon_id,
        cost_cents=cost_cents,
        balance_cents=balance,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    data: CheckoutRequest,
    request: Request,
    auth: AuthContext = Depends(require_permission(BILLING_MANAGE)),
):
    secret_key = _require_flutterwave_key()
    tx_ref = f"corecomm-{auth.company_id}-{uuid4().hex[:12]}"
    meta: dict[str, Any] = {"companyId": auth.company_id, "mode": data.mode}
    payload: dict[str, Any] = {
        "tx_ref": tx_ref,
        "currency": "USD",
        "redirect_url": data.redirect_url or settings.flutterwave_redirect_url,
        "customer": {"email": auth.email or f"{auth.user_id}@users.corecomm.invalid"},
        "meta": meta,
    }
    if data.mode == "subscription":
        tier = PRICING_TIERS.get(data.plan_id or "")
        if not tier:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan ID")
        meta["planId"] = data.plan_id
        payload["amount"] = tier["price"]
        payload["payment_plan"] = tier["flutterwave_plan_id"]
    else:
        payload["amount"] = round(int(data.amount_cents) / 100, 2)

    try:
        body = flutterwave_create_payment_link(
            secret_key,
            payload,
            base_url=settings.flutterwave_api_base,
        )
    except FlutterwaveProviderError as exc:
        _raise_provider_http_error("create_payment_link", exc, _request_id(request))

    link = body["data"].get("link")
    if not link:
        _raise_provider_http_error(
            "create_payment_link",
            FlutterwaveProviderError("Unexpected Flutterwave response shape for /payments"),
            _request_id(request),
        )
    log_event(
        "billing_checkout_created",
        request_id=_request_id(request),
        company_id=auth.company_id,
        mode=data.mode,
        tx_ref=tx_ref,
    )
    return CheckoutResponse(mode=data.mode, tx_ref=tx_ref, link=link)


@router.post("/subscription/{subscription_id}/cancel", response_model=SubscriptionCancelResponse)
async def cancel_subscription(
    subscription_id: str,
    request: Request,
    auth: AuthContext = Depends(require_permission(BILLING_MANAGE)),
):
    """Ask the provider to cancel; local status changes when its cancellation webhook arrives."""
    subscription = get_subscription_by_company(auth.company_id)
    if not subscription or subscription.get("provider_subscription_id") != subscription_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")

    try:
        flutterwave_cancel_subscription(
            _require_flutterwave_key(),
            subscription_id,
            base_url=settings.flutterwave_api_base,
        )
    except FlutterwaveProviderError as exc:
        _raise_provider_http_error("cancel_subscription", exc, _request_id(request))

    log_event(
        "billing_subscription_cancel_requested",
        request_id=_request_id(request),
        company_id=auth.company_id,
        provider_subscription_id=subscription_id,
    )
    return SubscriptionCancelResponse(
        cancel_requested=True,
        provider_subscription_id=subscription_id,
        status="pending_provider_confirmation",
    )
