#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

import requests

SAMPLE_ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "street_line1": "1 Market St",
    "city": "San Francisco",
    "state_province": "CA",
    "postal_code": "94105",
    "country": "US",
    "phone": "4155550100",
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one checkout against a running orderflow API and ship it")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--email", default="ada@example.com")
    parser.add_argument("--promo-code", default=None)
    args = parser.parse_args()

    checkout_resp = requests.post(
        f"{args.base_url}/orders/checkout",
        json={
            "customer_email": args.email,
            "customer_phone": SAMPLE_ADDRESS["phone"],
            "billing_address": SAMPLE_ADDRESS,
            "shipping_address": SAMPLE_ADDRESS,
            "items": [
                {
                    "product_id": "prod_lamp",
                    "product_sku": "LAMP-01",
                    "product_name": "Desk Lamp",
                    "unit_price": 4500,
                    "quantity": 2,
                }
            ],
            "promo_code": args.promo_code,
        },
        timeout=60,
    )
    checkout_resp.raise_for_status()
    payload = checkout_resp.json()
    print("Checkout:")
    print(json.dumps(payload, indent=2, ensure_ascii=False))

    order = payload.get("order")
    if payload.get("cancelled") or not order or order["status"] != "paid":
        return

    ship_resp = requests.post(
        f"{args.base_url}/orders/{order['id']}/tracking",
        json={"carrier": "UPS", "tracking_number": f"1Z{order['order_number']}"},
        timeout=60,
    )
    ship_resp.raise_for_status()
    print("\nShipped:")
    print(json.dumps({k: ship_resp.json()[k] for k in ("order_number", "status", "fulfillment_status")}, indent=2))

    metrics_resp = requests.get(f"{args.base_url}/reports/orders/metrics", timeout=60)
    metrics_resp.raise_for_status()
    print("\nMetrics:")
    print(json.dumps(metrics_resp.json(), indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
