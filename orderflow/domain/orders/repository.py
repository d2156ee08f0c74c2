from __future__ import annotations

from datetime import datetime
from typing import Protocol

from orderflow.domain.orders.aggregates import Order, OrderStatus, RefundRecord


class OrderRepository(Protocol):
    """Durable order storage consumed by the order service."""

    def next_order_number(self, prefix: str, width: int) -> str:
        ...

    def create_order(self, order: Order) -> Order:
        ...

    def get_order(self, order_id: str) -> Order:
        ...

    def update_order(self, order: Order) -> Order:
        ...

    def list_orders_by_customer(
        self,
        email: str,
        status: OrderStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        ...

    def list_orders_in_range(self, start: datetime | None, end: datetime | None) -> list[Order]:
        ...

    def recent_orders(self, limit: int) -> list[Order]:
        ...

    def find_refund(self, order_id: str, refund_id: str) -> RefundRecord | None:
        ...
