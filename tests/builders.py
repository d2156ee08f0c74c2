from __future__ import annotations

from datetime import datetime, timezone

from orderflow.core.config import get_settings
from orderflow.domain.orders.aggregates import Order, OrderStatus, PaymentStatus
from orderflow.domain.orders.commands import AddressInput, CreateOrderRequest, OrderItemInput
from orderflow.domain.orders.creation import build_order
from orderflow.domain.orders.discounts import DiscountResolver
from orderflow.domain.orders.lifecycle import OrderStateMachine
from orderflow.domain.orders.pricing import PricingCalculator

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_address(state: str = "CA", country: str = "US") -> AddressInput:
    return AddressInput(
        first_name="Ada",
        last_name="Lovelace",
        street_line1="1 Market St",
        city="Springfield",
        state_province=state,
        postal_code="94105",
        country=country,
        phone="415-555-0100",
    )


def make_item(unit_price: int = 10000, quantity: int = 1, sku: str = "SKU-1") -> OrderItemInput:
    return OrderItemInput(
        product_id=f"prod_{sku.lower()}",
        product_sku=sku,
        product_name=f"Product {sku}",
        unit_price=unit_price,
        quantity=quantity,
    )


def make_request(
    items: list[OrderItemInput] | None = None,
    state: str = "CA",
    country: str = "US",
    email: str = "ada@example.com",
    **overrides,
) -> CreateOrderRequest:
    data = {
        "customer_email": email,
        "customer_phone": "(415) 555-0100",
        "billing_address": make_address(state, country),
        "shipping_address": make_address(state, country),
        "items": items if items is not None else [make_item()],
    }
    data.update(overrides)
    return CreateOrderRequest(**data)


def order_payload(state: str = "CA", **overrides) -> dict:
    return make_request(state=state, **overrides).model_dump(mode="json")


def draft_order(request: CreateOrderRequest | None = None, order_number: str = "NP00000001") -> Order:
    settings = get_settings()
    return build_order(
        request or make_request(),
        order_number=order_number,
        calculator=PricingCalculator(settings),
        resolver=DiscountResolver(settings),
        now=NOW,
    )


def paid_order(request: CreateOrderRequest | None = None) -> Order:
    order = draft_order(request)
    machine = OrderStateMachine(clock=lambda: NOW)
    machine.transition(order, OrderStatus.PROCESSING)
    machine.set_payment_status(order, PaymentStatus.COMPLETED)
    return order


def five_thousand_order() -> Order:
    # Untaxed state, standard shipping waived at the threshold: total is exactly 5000.
    return paid_order(make_request(items=[make_item(unit_price=5000)], state="OR"))
