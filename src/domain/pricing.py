from __future__ import annotations

from typing import Final


PRICING_TIERS: Final[dict[str, dict]] = {
    "starter": {"name": "Starter", "price": 99, "flutterwave_plan_id": 152249},
    "professional": {"name": "Professional", "price": 299, "flutterwave_plan_id": 152250},
    "professional_plus": {"name": "Professional+", "price": 899, "flutterwave_plan_id": 152251},
}

ADD_ONS: Final[dict[str, dict]] = {
    "phone_number": {"name": "Additional Phone Number", "price": 15},
    "call_recording": {"name": "Call Recording Storage", "price": 29},
    "analytics": {"name": "Advanced Analytics", "price": 49},
    "custom_voice_training": {"name": "Custom Voice Training", "price": 149},
    "priority_support": {"name": "Priority Support (SLA)", "price": 99},
}
