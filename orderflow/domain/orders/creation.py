from __future__ import annotations

from datetime import datetime

from orderflow.core.errors import ValidationError
from orderflow.domain.orders.aggregates import (
    Address,
    Order,
    OrderItem,
    PaymentRecord,
    ShippingMethod,
    ShippingRecord,
)
from orderflow.domain.orders.commands import AddressInput, CreateOrderRequest, OrderItemInput
from orderflow.domain.orders.discounts import DiscountResolver
from orderflow.domain.orders.money import Money
from orderflow.domain.orders.pricing import CartLine, PricingCalculator

MIN_PHONE_DIGITS = 10


def _validate_phone(phone: str, field: str) -> None:
    digits = sum(1 for ch in phone or "" if ch.isdigit())
    if digits < MIN_PHONE_DIGITS:
        raise ValidationError(f"phone number needs at least {MIN_PHONE_DIGITS} digits", field=field)


def _validate_address(address: AddressInput, prefix: str) -> None:
    data = address.model_dump()
    for name in Address.REQUIRED_FIELDS:
        value = data.get(name)
        if value is None or not str(value).strip():
            raise ValidationError(f"{prefix} {name} is required", field=f"{prefix}.{name}")


def _validate_items(items: list[OrderItemInput]) -> None:
    if not items:
        raise ValidationError("order must contain at least one item", field="items")
    for index, item in enumerate(items):
        if item.quantity <= 0:
            raise ValidationError("item quantity must be positive", field=f"items[{index}].quantity")
        if item.unit_price < 0:
            raise ValidationError("item price cannot be negative", field=f"items[{index}].unit_price")
        if not item.product_id.strip() or not item.product_sku.strip():
            raise ValidationError("item product_id and product_sku are required", field=f"items[{index}]")


def validate_create_request(request: CreateOrderRequest) -> None:
    _validate_items(request.items)
    email = (request.customer_email or "").strip()
    if "@" not in email:
        raise ValidationError("customer email must contain '@'", field="customer_email")
    _validate_phone(request.customer_phone, "customer_phone")
    _validate_address(request.billing_address, "billing_address")
    _validate_address(request.shipping_address, "shipping_address")


def cart_lines(items: list[OrderItemInput], currency: str) -> list[CartLine]:
    return [
        CartLine(product_id=item.product_id, unit_price=Money(item.unit_price, currency), quantity=item.quantity)
        for item in items
    ]


def build_order(
    request: CreateOrderRequest,
    *,
    order_number: str,
    calculator: PricingCalculator,
    resolver: DiscountResolver,
    now: datetime,
    source: str = "mobile_app",
) -> Order:
    """Price a validated cart into a PENDING order; nothing is persisted here."""
    validate_create_request(request)
    currency = calculator.currency
    method = ShippingMethod(request.shipping_method)
    shipping_address = request.shipping_address.to_address()
    cart = cart_lines(request.items, currency)

    subtotal = calculator.subtotal(cart)
    shipping_quote = calculator.quote_shipping(subtotal, shipping_address, method)
    resolution = resolver.resolve(
        subtotal,
        promo_code=request.promo_code,
        referral_eligible=request.referral_eligible,
        shipping_cost=shipping_quote.cost,
    )
    quote = calculator.calculate(
        cart,
        shipping_address,
        method,
        discount=resolution.discount_amount,
        shipping_waived=resolution.shipping_waived,
    )
    discount = resolution.discount_amount
    total = quote.subtotal + quote.shipping_cost + quote.tax_amount - discount

    line_subtotals = [line.line_subtotal for line in cart]
    item_discounts = discount.allocate([money.amount for money in line_subtotals])
    taxable = [sub - disc for sub, disc in zip(line_subtotals, item_discounts)]
    item_taxes = quote.tax_amount.allocate([money.amount for money in taxable])

    items = []
    for item, line_subtotal, item_discount, item_tax in zip(request.items, line_subtotals, item_discounts, item_taxes):
        items.append(
            OrderItem(
                product_id=item.product_id,
                product_sku=item.product_sku,
                product_name=item.product_name,
                product_image=item.product_image,
                variant_id=item.variant_id,
                variant_title=item.variant_title,
                unit_price=Money(item.unit_price, currency),
                compare_at_price=Money(item.compare_at_price, currency) if item.compare_at_price is not None else None,
                quantity=item.quantity,
                subtotal=line_subtotal,
                discount_amount=item_discount,
                tax_amount=item_tax,
                total=line_subtotal - item_discount + item_tax,
            )
        )

    discounts = []
    record = resolution.to_record()
    if record is not None:
        discounts.append(record)

    order = Order(
        order_number=order_number,
        customer_email=request.customer_email.strip().lower(),
        customer_phone=request.customer_phone.strip(),
        customer_id=request.customer_id,
        customer_note=request.customer_note,
        currency=currency,
        subtotal=quote.subtotal,
        shipping_total=quote.shipping_cost,
        tax_total=quote.tax_amount,
        discount_total=discount,
        total=total,
        billing_address=request.billing_address.to_address(),
        shipping_address=shipping_address,
        payment=PaymentRecord(method=request.payment_method, amount=total),
        shipping=ShippingRecord(
            method=method,
            cost=quote.shipping_cost,
            estimated_delivery_days=shipping_quote.estimated_delivery_days,
        ),
        items=items,
        discounts=discounts,
        source=request.source or source,
        tags=list(request.tags),
        created_at=now,
        updated_at=now,
    )
    order.check_invariants()
    return order
