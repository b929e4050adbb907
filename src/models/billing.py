from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class WalletTransactionItem(BaseModel):
    id: str
    amount: int
    type: Literal["top_up", "addon_purchase", "usage_charge"]
    description: str | None = None
    reference_id: str | None = None
    created_at: datetime | None = None


class WalletResponse(BaseModel):
    company_id: str
    wallet_id: str | None = None
    balance_cents: int
    transactions: list[WalletTransactionItem] = Field(default_factory=list)


class AddonPurchaseRequest(BaseModel):
    addon_id: str


class AddonPurchaseResponse(BaseModel):
    success: bool
    addon_id: str
    cost_cents: int
    balance_cents: int


class CheckoutRequest(BaseModel):
    mode: Literal["payment", "subscription"]
    amount_cents: int | None = Field(default=None, ge=100)
    plan_id: str | None = None
    redirect_url: str | None = None

    @model_validator(mode="after")
    def _check_mode_fields(self) -> "CheckoutRequest":
        if self.mode == "payment" and self.amount_cents is None:
            raise ValueError("amount_cents is required for payment mode")
        if self.mode == "subscription" and not self.plan_id:
            raise ValueError("plan_id is required for subscription mode")
        return self


class CheckoutResponse(BaseModel):
    mode: Literal["payment", "subscription"]
    tx_ref: str
    link: str


class SubscriptionCancelResponse(BaseModel):
    cancel_requested: bool
    provider_subscription_id: str
    status: Literal["pending_provider_confirmation"]
