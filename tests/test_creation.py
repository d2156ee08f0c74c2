from __future__ import annotations

import pytest

from builders import draft_order, make_address, make_item, make_request
from orderflow.core.errors import ValidationError
from orderflow.domain.orders.aggregates import DiscountKind, FulfillmentStatus, OrderStatus, PaymentStatus
from orderflow.domain.orders.money import Money


def test_scenario_b_order_totals():
    order = draft_order(make_request(items=[make_item(unit_price=2000)], state="TX", promo_code="SAVE1234"))
    assert order.subtotal == Money(2000)
    assert order.discount_total == Money(200)
    assert order.tax_total == Money(113)
    assert order.shipping_total == Money(999)
    assert order.total == Money(2912)
    assert order.payment.amount == order.total
    assert order.active_discount.code == "SAVE1234"


def test_new_order_starts_pending_everywhere():
    order = draft_order()
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.fulfillment_status == FulfillmentStatus.UNFULFILLED
    assert order.total_refunded == Money(0)
    assert order.discounts == []
    assert order.shipping.estimated_delivery_days == 5


def test_item_level_discount_and_tax_sum_to_order_figures():
    order = draft_order(
        make_request(
            items=[make_item(unit_price=4500, sku="A"), make_item(unit_price=1000, quantity=2, sku="B")],
            promo_code="SAVE1234",
        )
    )
    assert order.subtotal == Money(6500)
    assert order.discount_total == Money(650)
    assert order.tax_total == Money(512)
    assert [item.discount_amount.amount for item in order.items] == [450, 200]
    assert sum(item.tax_amount.amount for item in order.items) == 512
    order.check_invariants()


def test_free_shipping_code_waives_shipping():
    order = draft_order(make_request(items=[make_item(unit_price=2000)], promo_code="FREESHIP"))
    assert order.shipping_total == Money(0)
    assert order.discount_total == Money(0)
    assert order.total == Money(2175)
    assert order.active_discount.kind == DiscountKind.FREE_SHIPPING
    assert order.active_discount.amount_saved == Money(999)


def test_international_order_carries_surcharge():
    order = draft_order(make_request(items=[make_item(unit_price=2000)], state="BC", country="ca"))
    assert order.shipping_total == Money(1999)
    assert order.shipping_address.country == "CA"


def test_email_is_normalized():
    order = draft_order(make_request(email="  Ada@Example.COM "))
    assert order.customer_email == "ada@example.com"


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"items": []}, "items"),
        ({"email": "not-an-email"}, "customer_email"),
        ({"customer_phone": "555-0100"}, "customer_phone"),
        ({"items": [make_item(quantity=0)]}, "items[0].quantity"),
        ({"items": [make_item(unit_price=-1)]}, "items[0].unit_price"),
    ],
)
def test_invalid_requests_are_rejected(overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        draft_order(make_request(**overrides))
    assert exc_info.value.field == field


def test_missing_address_field_is_rejected():
    address = make_address()
    address.city = "  "
    with pytest.raises(ValidationError) as exc_info:
        draft_order(make_request(shipping_address=address))
    assert exc_info.value.field == "shipping_address.city"
