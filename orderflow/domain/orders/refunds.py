from __future__ import annotations

from datetime import datetime

from orderflow.core.errors import InvalidTransition, ValidationError
from orderflow.domain.orders.aggregates import Order, OrderStatus, PaymentStatus, RefundRecord
from orderflow.domain.orders.lifecycle import REFUND_TRANSITIONS, payment_captured
from orderflow.domain.orders.money import Money


def validate_refund(order: Order, amount: Money) -> None:
    if amount.currency != order.currency:
        raise ValidationError(
            f"refund currency {amount.currency} does not match order currency {order.currency}",
            field="amount",
        )
    if amount.amount <= 0:
        raise ValidationError("refund amount must be positive", field="amount")
    if order.status not in REFUND_TRANSITIONS or not payment_captured(order):
        raise InvalidTransition(
            f"order {order.order_number} cannot be refunded while {order.status.value} "
            f"(payment {order.payment_status.value})",
            from_state=order.status.value,
            to_state=OrderStatus.REFUNDED.value,
        )
    if order.total_refunded + amount > order.total:
        raise ValidationError(
            f"refund of {amount.amount} exceeds refundable remainder {order.remaining_refundable.amount}",
            field="amount",
        )


def apply_refund(
    order: Order,
    refund_id: str,
    amount: Money,
    reason: str,
    now: datetime,
    notes: str | None = None,
    status: str = "succeeded",
) -> Order:
    """Record a refund and move order/payment status to match the new totals.

    A refund id already present on the order is a replay and changes nothing.
    """
    if order.find_refund(refund_id) is not None:
        return order
    validate_refund(order, amount)

    refund = RefundRecord(
        refund_id=refund_id,
        amount=amount,
        reason=reason,
        status=status,
        notes=notes,
        created_at=now,
        processed_at=now,
    )
    order.refunds.append(refund)
    order.total_refunded = Money.sum((r.amount for r in order.refunds), order.currency)

    if order.total_refunded == order.total:
        order.status = OrderStatus.REFUNDED
        order.payment_status = PaymentStatus.REFUNDED
    else:
        order.status = OrderStatus.PARTIALLY_REFUNDED
        order.payment_status = PaymentStatus.PARTIALLY_REFUNDED
    order.payment.status = order.payment_status
    order.updated_at = now
    return order


def refund_idempotency_key(order: Order, amount: Money) -> str:
    """Key for a provider refund that is not yet recorded on ``order``.

    Retrying the same refund after a failed write yields the same key; the
    next refund on the order yields a new one because the count moves.
    """
    return f"refund-{order.id}-{len(order.refunds)}-{amount.amount}"
