from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Request

from orderflow.domain.orders.aggregates import Address, Order
from orderflow.services.orders import OrderService


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_period(period: str) -> tuple[datetime, datetime]:
    """Parse ``start/end`` ISO timestamps; both bounds are inclusive."""
    if "/" not in period:
        raise ValueError("period must be start/end")
    start_text, end_text = period.split("/", 1)
    start = _as_utc(datetime.fromisoformat(start_text.replace("Z", "+00:00")))
    end = _as_utc(datetime.fromisoformat(end_text.replace("Z", "+00:00")))
    if not end > start:
        raise ValueError("period end must be greater than start")
    return start, end


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _as_utc(value).isoformat().replace("+00:00", "Z")


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def _address(address: Address) -> dict:
    return {
        "first_name": address.first_name,
        "last_name": address.last_name,
        "company": address.company,
        "street_line1": address.street_line1,
        "street_line2": address.street_line2,
        "city": address.city,
        "state_province": address.state_province,
        "postal_code": address.postal_code,
        "country": address.country,
        "phone": address.phone,
        "is_residential": address.is_residential,
    }


def serialize_order(order: Order) -> dict:
    """Full order view; every amount is int minor units of ``currency``."""
    return {
        "id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "customer_note": order.customer_note,
        "currency": order.currency,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "fulfillment_status": order.fulfillment_status.value,
        "subtotal": order.subtotal.amount,
        "shipping_total": order.shipping_total.amount,
        "tax_total": order.tax_total.amount,
        "discount_total": order.discount_total.amount,
        "total": order.total.amount,
        "total_refunded": order.total_refunded.amount,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "product_sku": item.product_sku,
                "product_name": item.product_name,
                "product_image": item.product_image,
                "variant_id": item.variant_id,
                "variant_title": item.variant_title,
                "unit_price": item.unit_price.amount,
                "compare_at_price": item.compare_at_price.amount if item.compare_at_price else None,
                "quantity": item.quantity,
                "subtotal": item.subtotal.amount,
                "discount_amount": item.discount_amount.amount,
                "tax_amount": item.tax_amount.amount,
                "total": item.total.amount,
                "fulfillment_status": item.fulfillment_status.value,
                "fulfilled_quantity": item.fulfilled_quantity,
            }
            for item in order.items
        ],
        "billing_address": _address(order.billing_address),
        "shipping_address": _address(order.shipping_address),
        "payment": {
            "method": order.payment.method.value,
            "status": order.payment.status.value,
            "amount": order.payment.amount.amount,
            "payment_intent_id": order.payment.payment_intent_id,
            "charge_id": order.payment.charge_id,
            "card_brand": order.payment.card_brand,
            "card_last4": order.payment.card_last4,
            "receipt_url": order.payment.receipt_url,
            "paid_at": iso(order.payment.paid_at),
        },
        "shipping": {
            "method": order.shipping.method.value,
            "cost": order.shipping.cost.amount,
            "carrier": order.shipping.carrier,
            "tracking_number": order.shipping.tracking_number,
            "tracking_url": order.shipping.tracking_url,
            "estimated_delivery_days": order.shipping.estimated_delivery_days,
            "shipped_at": iso(order.shipping.shipped_at),
            "delivered_at": iso(order.shipping.delivered_at),
        },
        "discounts": [
            {
                "code": discount.code,
                "kind": discount.kind.value,
                "value": discount.value,
                "amount_saved": discount.amount_saved.amount,
                "description": discount.description,
                "active": discount.active,
            }
            for discount in order.discounts
        ],
        "refunds": [
            {
                "refund_id": refund.refund_id,
                "amount": refund.amount.amount,
                "reason": refund.reason,
                "status": refund.status,
                "notes": refund.notes,
                "created_at": iso(refund.created_at),
            }
            for refund in order.refunds
        ],
        "source": order.source,
        "tags": list(order.tags),
        "admin_notes": order.admin_notes,
        "created_at": iso(order.created_at),
        "updated_at": iso(order.updated_at),
        "processed_at": iso(order.processed_at),
    }
