from __future__ import annotations

import random
import time
from typing import Any
from urllib.parse import quote

import httpx


FLUTTERWAVE_API_BASE = "https://api.flutterwave.com/v3"
# Only statuses where Flutterwave did not act on the request; POSTs are not safely repeatable otherwise.
_RETRYABLE_STATUS_CODES = {429, 503}
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0

_EP_PAYMENTS = "/payments"
_EP_PAYMENT_PLANS = "/payment-plans"
_EP_SUBSCRIPTIONS = "/subscriptions"


class FlutterwaveProviderError(Exception):
    """Provider-level exception for Flutterwave integration failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if (
            "connectivity error" in message
            or "http 429" in message
            or "http 500" in message
            or "http 502" in message
            or "http 503" in message
            or "http 504" in message
        ):
            return "transient"
        if (
            "invalid flutterwave secret key" in message
            or "missing flutterwave secret key" in message
            or "endpoint not found" in message
            or "unexpected flutterwave" in message
            or "http 400" in message
        ):
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def _build_base_url(base_url: str | None) -> str:
    return (base_url or FLUTTERWAVE_API_BASE).rstrip("/")


def _retry_delay(attempt: int) -> float:
    delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
    return delay + random.uniform(0, delay * 0.2)


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    json_payload: dict[str, Any] | None = None,
) -> httpx.Response:
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(method=method, url=url, headers=headers, json=json_payload)
        except httpx.ConnectError:
            # Never reached Flutterwave, so repeating cannot double-create.
            if attempt >= _MAX_RETRY_ATTEMPTS:
                raise
            time.sleep(_retry_delay(attempt))
            continue

        if response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            time.sleep(_retry_delay(attempt))
            continue
        return response

    assert response is not None
    return response


def _request_json(
    *,
    method: str,
    path: str,
    secret_key: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
    json_payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    if not secret_key:
        raise FlutterwaveProviderError("Missing Flutterwave secret key")

    headers = {
        "Authorization": f"Bearer {secret_key}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    url = f"{_build_base_url(base_url)}{path}"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            headers=headers,
            timeout_seconds=timeout_seconds,
            json_payload=json_payload,
        )
    except httpx.HTTPError as exc:
        raise FlutterwaveProviderError(f"Flutterwave connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise FlutterwaveProviderError("Invalid Flutterwave secret key")
    if response.status_code == 404:
        raise FlutterwaveProviderError(f"Flutterwave endpoint not found: {path}")
    if response.status_code >= 400:
        raise FlutterwaveProviderError(
            f"Flutterwave API returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        body = response.json()
    except ValueError as exc:
        raise FlutterwaveProviderError("Flutterwave returned non-JSON response") from exc
    if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
        raise FlutterwaveProviderError(f"Unexpected Flutterwave response shape for {path}")
    return body


def create_payment_link(
    secret_key: str,
    payload: dict[str, Any],
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    """Hosted checkout; include ``payment_plan`` in the payload for a subscription's first charge."""
    return _request_json(
        method="POST",
        path=_EP_PAYMENTS,
        secret_key=secret_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )


def create_plan(
    secret_key: str,
    payload: dict[str, Any],
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    return _request_json(
        method="POST",
        path=_EP_PAYMENT_PLANS,
        secret_key=secret_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )


def create_subscription(
    secret_key: str,
    payload: dict[str, Any],
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    return _request_json(
        method="POST",
        path=_EP_SUBSCRIPTIONS,
        secret_key=secret_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
    )


def cancel_subscription(
    secret_key: str,
    subscription_id: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    if not subscription_id:
        raise FlutterwaveProviderError("Subscription id is required")
    return _request_json(
        method="PUT",
        path=f"{_EP_SUBSCRIPTIONS}/{quote(str(subscription_id), safe='')}/cancel",
        secret_key=secret_key,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload={},
    )
