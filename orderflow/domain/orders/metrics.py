from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from orderflow.domain.orders.aggregates import Order, OrderStatus, PaymentStatus
from orderflow.domain.orders.money import Money, round_half_up


@dataclass
class OrderSummary:
    id: str
    order_number: str
    customer_email: str
    total: Money
    status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime | None
    item_count: int
    total_quantity: int

    @classmethod
    def from_order(cls, order: Order) -> OrderSummary:
        return cls(
            id=order.id or "",
            order_number=order.order_number,
            customer_email=order.customer_email,
            total=order.total,
            status=order.status,
            payment_status=order.payment_status,
            created_at=order.created_at,
            item_count=order.item_count,
            total_quantity=order.total_quantity,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_email": self.customer_email,
            "total": self.total.amount,
            "currency": self.total.currency,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "created_at": self.created_at.isoformat().replace("+00:00", "Z") if self.created_at else None,
            "item_count": self.item_count,
            "total_quantity": self.total_quantity,
        }


@dataclass
class OrderMetrics:
    total_orders: int
    total_revenue: Money
    average_order_value: Money
    orders_by_status: dict[str, int]
    recent_orders: list[OrderSummary] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_orders": self.total_orders,
            "total_revenue": self.total_revenue.amount,
            "average_order_value": self.average_order_value.amount,
            "currency": self.total_revenue.currency,
            "orders_by_status": dict(self.orders_by_status),
            "recent_orders": [summary.to_dict() for summary in self.recent_orders],
        }


def compute_order_metrics(
    orders: Iterable[Order],
    currency: str,
    recent: Iterable[Order] = (),
) -> OrderMetrics:
    by_status = {status.value: 0 for status in OrderStatus}
    revenue = Money.zero(currency)
    count = 0
    for order in orders:
        count += 1
        revenue = revenue + order.total
        by_status[order.status.value] += 1

    average = Money.zero(currency)
    if count:
        average = Money(round_half_up(Decimal(revenue.amount) / Decimal(count)), currency)

    return OrderMetrics(
        total_orders=count,
        total_revenue=revenue,
        average_order_value=average,
        orders_by_status=by_status,
        recent_orders=[OrderSummary.from_order(order) for order in recent],
    )
