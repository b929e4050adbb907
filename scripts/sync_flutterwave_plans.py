#!/usr/bin/env python3
"""
Create Flutterwave payment plans for each pricing tier.

Prints the plan ids so they can be copied into src/domain/pricing.py.
Run from project root: python scripts/sync_flutterwave_plans.py
"""

import sys
import os

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.config import settings
from src.domain.pricing import PRICING_TIERS
from src.providers.flutterwave.client import FlutterwaveProviderError, create_plan


def main():
    if not settings.flutterwave_secret_key:
        print("Error: FLUTTERWAVE_SECRET_KEY must be set in .env")
        sys.exit(1)

    for tier_id, tier in PRICING_TIERS.items():
        try:
            body = create_plan(
                settings.flutterwave_secret_key,
                {
                    "name": f"CoreComm {tier['name']}",
                    "amount": tier["price"],
                    "interval": "monthly",
                    "currency": "USD",
                },
                base_url=settings.flutterwave_api_base,
            )
        except FlutterwaveProviderError as exc:
            print(f"{tier_id}: failed ({exc.category}): {exc}")
            continue
        print(f"{tier_id}: flutterwave_plan_id={body['data'].get('id')}")


if __name__ == "__main__":
    main()
