from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal


NormalizedSubscriptionStatus = Literal["trialing", "active", "canceled"]


def normalize_subscription_status(value: str | None) -> NormalizedSubscriptionStatus:
    if not value:
        return "active"
    key = str(value).strip().lower().replace("-", "_")
    mapping = {
        "trialing": "trialing",
        "trial": "trialing",
        "in_trial": "trialing",
        "active": "active",
        "activated": "active",
        "paid": "active",
        "successful": "active",
        "canceled": "canceled",
        "cancelled": "canceled",
        "cancel": "canceled",
        "deleted": "canceled",
        "deactivated": "canceled",
    }
    return mapping.get(key, "active")


def to_minor_units(amount: Any) -> int:
    """Convert a provider amount in major currency units to integer cents (50 -> 5000)."""
    if isinstance(amount, bool) or amount is None:
        raise ValueError(f"Invalid amount: {amount!r}")
    try:
        major = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {amount!r}") from exc
    if not major.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return int((major * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        # Millisecond epochs show up in some voice payloads.
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    text = str(value).strip()
    if text.isdigit():
        return parse_timestamp(int(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_utc_iso(value: Any) -> str | None:
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None
