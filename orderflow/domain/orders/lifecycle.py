"""Central transition tables for order, payment and fulfillment status.

Callers never assign status fields directly; every change goes through
``OrderStateMachine`` which validates the whole change before touching the
order, so a rejected transition leaves it exactly as it was.

An order becomes PAID when its payment completes. REFUNDED and
PARTIALLY_REFUNDED follow from recorded refund money (``refunds.apply_refund``)
and are rejected as direct targets.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from orderflow.core.errors import InvalidTransition
from orderflow.domain.orders.aggregates import (
    FulfillmentStatus,
    Order,
    OrderStatus,
    PaymentStatus,
)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED}),
    OrderStatus.PARTIALLY_REFUNDED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# Refunds may also move a PAID order to PARTIALLY_REFUNDED and record further
# partial refunds on an already partially refunded order.
REFUND_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAID: frozenset({OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}),
    OrderStatus.PARTIALLY_REFUNDED: frozenset({OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED}),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

FULFILLMENT_TRANSITIONS: dict[FulfillmentStatus, frozenset[FulfillmentStatus]] = {
    FulfillmentStatus.UNFULFILLED: frozenset(
        {FulfillmentStatus.PARTIALLY_FULFILLED, FulfillmentStatus.FULFILLED, FulfillmentStatus.SHIPPED}
    ),
    FulfillmentStatus.PARTIALLY_FULFILLED: frozenset({FulfillmentStatus.FULFILLED, FulfillmentStatus.SHIPPED}),
    FulfillmentStatus.FULFILLED: frozenset({FulfillmentStatus.SHIPPED}),
    FulfillmentStatus.SHIPPED: frozenset({FulfillmentStatus.DELIVERED}),
    FulfillmentStatus.DELIVERED: frozenset({FulfillmentStatus.RETURNED}),
    FulfillmentStatus.RETURNED: frozenset(),
}

TERMINAL_STATES = frozenset(status for status, targets in ORDER_TRANSITIONS.items() if not targets)
CAPTURED_PAYMENT_STATES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
)
PAYMENT_COMPLETION_ORDER_STATES = frozenset({OrderStatus.PROCESSING, OrderStatus.PAID})
UNSETTLED_PAYMENT_STATES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED})
# Reached only by recording refund money, never by a direct status change.
REFUND_ONLY_ORDER_STATES = frozenset({OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED})
REFUND_ONLY_PAYMENT_STATES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED})


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def ensure_order_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"order status cannot move from {OrderStatus(current).value} to {OrderStatus(target).value}",
            from_state=OrderStatus(current).value,
            to_state=OrderStatus(target).value,
        )


def ensure_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if PaymentStatus(target) not in PAYMENT_TRANSITIONS[PaymentStatus(current)]:
        raise InvalidTransition(
            f"payment status cannot move from {PaymentStatus(current).value} to {PaymentStatus(target).value}",
            from_state=PaymentStatus(current).value,
            to_state=PaymentStatus(target).value,
        )


def ensure_fulfillment_transition(current: FulfillmentStatus, target: FulfillmentStatus) -> None:
    if FulfillmentStatus(target) not in FULFILLMENT_TRANSITIONS[FulfillmentStatus(current)]:
        raise InvalidTransition(
            f"fulfillment status cannot move from {FulfillmentStatus(current).value} "
            f"to {FulfillmentStatus(target).value}",
            from_state=FulfillmentStatus(current).value,
            to_state=FulfillmentStatus(target).value,
        )


def payment_captured(order: Order) -> bool:
    return order.payment_status in CAPTURED_PAYMENT_STATES


class OrderStateMachine:
    def __init__(self, clock: Callable[[], datetime] = now_utc):
        self.clock = clock

    def _touch(self, order: Order, now: datetime) -> None:
        order.updated_at = now

    # -- order status -------------------------------------------------------

    def transition(self, order: Order, target: OrderStatus, now: datetime | None = None) -> Order:
        target = OrderStatus(target)
        ensure_order_transition(order.status, target)
        if target in REFUND_ONLY_ORDER_STATES:
            raise InvalidTransition(
                f"order {order.order_number} becomes {target.value} only by recording a refund",
                from_state=order.status.value,
                to_state=target.value,
            )
        if target in (OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED) and not payment_captured(order):
            raise InvalidTransition(
                f"order {order.order_number} cannot be {target.value} before payment is captured",
                from_state=order.status.value,
                to_state=target.value,
            )
        now = now or self.clock()

        if target == OrderStatus.PAID and order.processed_at is None:
            order.processed_at = now
        if target == OrderStatus.SHIPPED:
            self._mark_shipped(order, now)
        if target == OrderStatus.DELIVERED:
            self._mark_delivered(order, now)
        if target == OrderStatus.CANCELLED and order.payment_status in UNSETTLED_PAYMENT_STATES:
            order.payment_status = PaymentStatus.CANCELLED
            order.payment.status = PaymentStatus.CANCELLED

        order.status = target
        self._touch(order, now)
        return order

    # -- payment status -----------------------------------------------------

    def set_payment_status(self, order: Order, target: PaymentStatus, now: datetime | None = None) -> Order:
        target = PaymentStatus(target)
        ensure_payment_transition(order.payment_status, target)
        if target in REFUND_ONLY_PAYMENT_STATES:
            raise InvalidTransition(
                f"payment becomes {target.value} only by recording a refund",
                from_state=order.payment_status.value,
                to_state=target.value,
            )
        if target == PaymentStatus.COMPLETED and order.status not in PAYMENT_COMPLETION_ORDER_STATES:
            raise InvalidTransition(
                f"payment can only complete while the order is processing or paid (is {order.status.value})",
                from_state=order.payment_status.value,
                to_state=target.value,
            )
        now = now or self.clock()

        order.payment_status = target
        order.payment.status = target
        if target == PaymentStatus.COMPLETED:
            if order.payment.paid_at is None:
                order.payment.paid_at = now
            if order.processed_at is None:
                order.processed_at = now
            if order.status == OrderStatus.PROCESSING:
                order.status = OrderStatus.PAID
        self._touch(order, now)
        return order

    # -- fulfillment status -------------------------------------------------

    def set_fulfillment_status(
        self,
        order: Order,
        target: FulfillmentStatus,
        now: datetime | None = None,
    ) -> Order:
        target = FulfillmentStatus(target)
        ensure_fulfillment_transition(order.fulfillment_status, target)
        if not payment_captured(order):
            raise InvalidTransition(
                f"fulfillment cannot progress before payment is captured (payment is {order.payment_status.value})",
                from_state=order.fulfillment_status.value,
                to_state=target.value,
            )
        now = now or self.clock()

        order.fulfillment_status = target
        for item in order.items:
            if target in (FulfillmentStatus.FULFILLED, FulfillmentStatus.SHIPPED, FulfillmentStatus.DELIVERED):
                item.fulfilled_quantity = item.quantity
            if target != FulfillmentStatus.PARTIALLY_FULFILLED:
                item.fulfillment_status = target
        self._touch(order, now)
        return order

    # -- shipment -----------------------------------------------------------

    def add_tracking(
        self,
        order: Order,
        carrier: str,
        tracking_number: str,
        tracking_url: str | None = None,
        now: datetime | None = None,
    ) -> Order:
        if order.status not in (OrderStatus.PAID, OrderStatus.SHIPPED) or not payment_captured(order):
            raise InvalidTransition(
                f"tracking info requires a paid order (order is {order.status.value}, "
                f"payment is {order.payment_status.value})",
                from_state=order.status.value,
                to_state=OrderStatus.SHIPPED.value,
            )
        now = now or self.clock()

        order.shipping.carrier = carrier
        order.shipping.tracking_number = tracking_number
        if tracking_url is not None:
            order.shipping.tracking_url = tracking_url
        if order.status == OrderStatus.PAID:
            self.transition(order, OrderStatus.SHIPPED, now=now)
        self._touch(order, now)
        return order

    def _mark_shipped(self, order: Order, now: datetime) -> None:
        if order.shipping.shipped_at is None:
            order.shipping.shipped_at = now
        if FulfillmentStatus.SHIPPED not in FULFILLMENT_TRANSITIONS[order.fulfillment_status]:
            return
        order.fulfillment_status = FulfillmentStatus.SHIPPED
        for item in order.items:
            item.fulfilled_quantity = item.quantity
            item.fulfillment_status = FulfillmentStatus.SHIPPED

    def _mark_delivered(self, order: Order, now: datetime) -> None:
        if order.shipping.delivered_at is None:
            order.shipping.delivered_at = now
        if FulfillmentStatus.DELIVERED not in FULFILLMENT_TRANSITIONS[order.fulfillment_status]:
            return
        order.fulfillment_status = FulfillmentStatus.DELIVERED
        for item in order.items:
            item.fulfillment_status = FulfillmentStatus.DELIVERED
