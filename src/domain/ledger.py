from __future__ import annotations

from typing import Any, Literal

from postgrest.exceptions import APIError

from src.db import supabase
from src.domain.persistence import run_query
from src.domain.webhook_errors import InsufficientFundsError, MutationError
from src.observability import incr_metric, log_event


TransactionType = Literal["top_up", "addon_purchase", "usage_charge"]
TRANSACTION_TYPES: frozenset[str] = frozenset({"top_up", "addon_purchase", "usage_charge"})
_CHECK_VIOLATION_CODE = "23514"


def get_wallet_by_company(company_id: str) -> dict[str, Any] | None:
    result = run_query(
        supabase.table("wallets").select("id, company_id, balance").eq("company_id", company_id),
        operation="wallet_lookup",
    )
    if not result.data:
        return None
    return result.data[0]


def get_or_create_wallet(company_id: str) -> dict[str, Any]:
    wallet = get_wallet_by_company(company_id)
    if wallet:
        return wallet
    try:
        run_query(
            supabase.table("wallets").upsert(
                {"company_id": company_id, "balance": 0},
                on_conflict="company_id",
                ignore_duplicates=True,
            ),
            operation="wallet_create",
        )
    except APIError as exc:
        raise MutationError(f"wallet create failed for company {company_id}: {exc}") from exc
    wallet = get_wallet_by_company(company_id)
    if not wallet:
        raise MutationError(f"wallet for company {company_id} missing after create")
    return wallet


def _rpc_scalar(data: Any) -> int:
    if isinstance(data, list):
        if not data:
            raise MutationError("apply_wallet_delta returned no rows")
        data = data[0]
    if isinstance(data, dict):
        data = data.get("apply_wallet_delta", data.get("balance"))
    if data is None:
        raise MutationError("apply_wallet_delta returned no balance")
    return int(data)


def apply_delta(
    wallet_id: str,
    delta_cents: int,
    transaction_type: TransactionType,
    description: str,
    *,
    reference_id: str | None = None,
) -> int:
    """Apply a signed balance change and its transaction row atomically.

    Runs as the ``apply_wallet_delta`` Postgres function: the balance update and
    the transaction insert commit together. A repeated ``reference_id`` for the
    same wallet changes nothing and returns the current balance.
    """
    if isinstance(delta_cents, bool) or not isinstance(delta_cents, int):
        raise ValueError("delta_cents must be an integer number of cents")
    if delta_cents == 0:
        raise ValueError("delta_cents must be non-zero")
    if transaction_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unsupported transaction type: {transaction_type}")

    try:
        result = run_query(
            supabase.rpc(
                "apply_wallet_delta",
                {
                    "p_wallet_id": wallet_id,
                    "p_amount": delta_cents,
                    "p_type": transaction_type,
                    "p_description": description,
                    "p_reference_id": reference_id,
                },
            ),
            operation="wallet_apply_delta",
        )
    except APIError as exc:
        incr_metric("ledger.delta.failed", transaction_type=transaction_type)
        if getattr(exc, "code", None) == _CHECK_VIOLATION_CODE:
            raise MutationError(f"wallet {wallet_id} balance would go negative") from exc
        raise MutationError(f"apply_wallet_delta failed for wallet {wallet_id}: {exc}") from exc

    balance = _rpc_scalar(result.data)
    incr_metric("ledger.delta.applied", transaction_type=transaction_type)
    log_event(
        "wallet_delta_applied",
        wallet_id=wallet_id,
        delta_cents=delta_cents,
        transaction_type=transaction_type,
        reference_id=reference_id,
        balance_cents=balance,
    )
    return balance


def find_transaction(wallet_id: str, reference_id: str) -> dict[str, Any] | None:
    result = run_query(
        supabase.table("wallet_transactions")
        .select("id, wallet_id, amount, type, reference_id")
        .eq("wallet_id", wallet_id)
        .eq("reference_id", reference_id)
        .limit(1),
        operation="wallet_transaction_lookup",
    )
    if not result.data:
        return None
    return result.data[0]


def debit_wallet(
    company_id: str,
    amount_cents: int,
    transaction_type: TransactionType,
    description: str,
    *,
    reference_id: str | None = None,
) -> int:
    """Pre-check funds, then debit. Raises InsufficientFundsError without touching the ledger.

    A ``reference_id`` that already has a transaction on the wallet is a re-run
    of a committed debit: it returns the current balance and skips the funds check.
    """
    if amount_cents <= 0:
        raise ValueError("amount_cents must be positive")
    wallet = get_wallet_by_company(company_id)
    available = int(wallet["balance"]) if wallet else 0
    if wallet and reference_id and find_transaction(wallet["id"], reference_id):
        incr_metric("ledger.debit.already_applied", transaction_type=transaction_type)
        return available
    if wallet is None or available < amount_cents:
        incr_metric("ledger.debit.insufficient_funds", transaction_type=transaction_type)
        raise InsufficientFundsError(
            company_id=company_id,
            required_cents=amount_cents,
            available_cents=available,
        )
    try:
        return apply_delta(
            wallet["id"],
            -amount_cents,
            transaction_type,
            description,
            reference_id=reference_id,
        )
    except MutationError as exc:
        # Lost a race with a concurrent debit; the CHECK constraint rolled it back.
        if isinstance(exc.__cause__, APIError) and getattr(exc.__cause__, "code", None) == _CHECK_VIOLATION_CODE:
            raise InsufficientFundsError(
                company_id=company_id,
                required_cents=amount_cents,
                available_cents=available,
            ) from exc
        raise


def list_transactions(wallet_id: str, *, limit: int = 50) -> list[dict[str, Any]]:
    result = run_query(
        supabase.table("wallet_transactions")
        .select("id, wallet_id, amount, type, description, reference_id, created_at")
        .eq("wallet_id", wallet_id)
        .order("created_at", desc=True)
        .limit(limit),
        operation="wallet_transactions_list",
    )
    return result.data or []
