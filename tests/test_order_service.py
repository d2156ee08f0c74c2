from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from builders import make_item, make_request
from orderflow.core.errors import (
    ConcurrencyError,
    InvalidTransition,
    NotFoundError,
    PaymentError,
    PersistenceError,
    ValidationError,
)
from orderflow.domain.orders.aggregates import OrderStatus, PaymentStatus, ShippingMethod
from orderflow.domain.orders.commands import (
    RefundRequest,
    ShippingCalculationRequest,
    TaxCalculationRequest,
    TrackingInfoRequest,
    UpdateOrderStatusRequest,
)
from orderflow.domain.orders.lifecycle import now_utc
from orderflow.payments.gateway import PaymentOutcome
from orderflow.persistence.models import OrderItemModel, OrderModel
from orderflow.persistence.order_repository import SqlOrderRepository, sql_repository_scope
from orderflow.services.orders import OrderLocks


def _checkout(service, **kwargs):
    outcome = service.checkout(make_request(**kwargs))
    assert outcome.ok, outcome.error
    return outcome.result


def test_create_order_persists_everything(service, notifier):
    outcome = service.create_order(make_request(promo_code="SAVE1234"))
    assert outcome.ok
    order = outcome.result
    assert re.fullmatch(r"NP\d{8}", order.order_number)
    assert order.version == 1

    stored = service.get_order_by_id(order.id).result
    assert stored.total == order.total
    assert stored.discount_total.amount == 1000
    assert stored.active_discount.code == "SAVE1234"
    assert len(stored.items) == 1
    assert stored.billing_address.city == "Springfield"
    assert stored.created_at.tzinfo is not None
    stored.check_invariants()
    assert notifier.kinds() == ["order_created"]


def test_order_numbers_are_unique(service):
    numbers = {service.create_order(make_request()).result.order_number for _ in range(3)}
    assert len(numbers) == 3


def test_failed_sub_record_write_leaves_no_order(service, session, monkeypatch):
    def broken_discount_row(self, order_id, discount):
        raise OperationalError("INSERT INTO order_discounts", {}, Exception("disk I/O error"))

    monkeypatch.setattr(SqlOrderRepository, "_discount_row", broken_discount_row)
    outcome = service.create_order(make_request(promo_code="SAVE1234"))

    assert isinstance(outcome.error, PersistenceError)
    assert outcome.error.retryable is True
    assert session.scalar(select(func.count()).select_from(OrderModel)) == 0
    assert session.scalar(select(func.count()).select_from(OrderItemModel)) == 0


def test_create_order_validation_error_is_returned_not_raised(service):
    outcome = service.create_order(make_request(items=[]))
    assert outcome.result is None
    assert isinstance(outcome.error, ValidationError)
    assert outcome.error.field == "items"


def test_checkout_success(service, gateway, notifier):
    order = _checkout(service)
    assert order.status == OrderStatus.PAID
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.payment.payment_intent_id in gateway.intents
    assert order.payment.card_last4 == "4242"
    assert order.payment.paid_at is not None
    assert order.processed_at is not None
    assert notifier.kinds() == ["order_created", "order_paid"]


def test_checkout_cancelled_is_silent(service, gateway):
    gateway.outcomes.append(PaymentOutcome(status="cancelled"))
    outcome = service.checkout(make_request())

    assert isinstance(outcome.error, PaymentError)
    assert outcome.error.cancelled is True
    assert outcome.error.user_action == "none"
    assert outcome.result.status == OrderStatus.CANCELLED
    assert outcome.result.payment_status == PaymentStatus.CANCELLED


def test_checkout_gateway_error_leaves_order_processing(service, gateway):
    gateway.outcomes.append(PaymentOutcome(status="error", error="card declined"))
    outcome = service.checkout(make_request())

    assert isinstance(outcome.error, PaymentError)
    assert outcome.error.retryable is True
    assert "card declined" in outcome.error.message
    assert outcome.result.status == OrderStatus.PROCESSING
    assert outcome.result.payment_status == PaymentStatus.FAILED


def test_retry_payment_after_gateway_error_pays_order(service, gateway, notifier):
    gateway.outcomes.append(PaymentOutcome(status="error", error="card declined"))
    failed = service.checkout(make_request())
    first_intent = failed.result.payment.payment_intent_id

    outcome = service.retry_payment(failed.result.id)

    assert outcome.ok, outcome.error
    order = outcome.result
    assert order.status == OrderStatus.PAID
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.payment.payment_intent_id != first_intent
    assert len(gateway.intents) == 2
    assert notifier.kinds()[-1] == "order_paid"


def test_retry_payment_can_fail_again_or_be_cancelled(service, gateway):
    gateway.outcomes.extend(
        [
            PaymentOutcome(status="error", error="card declined"),
            PaymentOutcome(status="error", error="insufficient funds"),
            PaymentOutcome(status="cancelled"),
        ]
    )
    order = service.checkout(make_request()).result

    again = service.retry_payment(order.id)
    assert isinstance(again.error, PaymentError)
    assert again.result.status == OrderStatus.PROCESSING
    assert again.result.payment_status == PaymentStatus.FAILED

    cancelled = service.retry_payment(order.id)
    assert cancelled.error.cancelled is True
    assert cancelled.result.status == OrderStatus.CANCELLED
    assert cancelled.result.payment_status == PaymentStatus.CANCELLED


def test_retry_payment_requires_failed_payment(service, gateway):
    paid = _checkout(service)
    pending = service.create_order(make_request()).result

    for order in (paid, pending):
        outcome = service.retry_payment(order.id)
        assert isinstance(outcome.error, InvalidTransition)
    assert len(gateway.intents) == 1
    assert isinstance(service.retry_payment("missing").error, NotFoundError)


def test_status_update_with_replayed_idempotency_key_is_a_no_op(service):
    order = service.create_order(make_request()).result
    request = UpdateOrderStatusRequest(status=OrderStatus.PROCESSING, idempotency_key="op-1")

    first = service.update_order_status(order.id, request)
    assert first.ok
    assert first.result.status == OrderStatus.PROCESSING

    replay = service.update_order_status(order.id, request)
    assert replay.ok
    assert replay.result.version == first.result.version


def test_invalid_status_update_leaves_order_unchanged(service):
    order = service.create_order(make_request()).result
    outcome = service.update_order_status(order.id, UpdateOrderStatusRequest(status=OrderStatus.SHIPPED))

    assert isinstance(outcome.error, InvalidTransition)
    stored = service.get_order_by_id(order.id).result
    assert stored.status == OrderStatus.PENDING
    assert stored.version == order.version


def test_status_update_applies_payment_and_status_together(service):
    order = service.create_order(make_request()).result
    service.update_order_status(order.id, UpdateOrderStatusRequest(status=OrderStatus.PROCESSING))
    outcome = service.update_order_status(
        order.id,
        UpdateOrderStatusRequest(
            status=OrderStatus.PAID,
            payment_status=PaymentStatus.COMPLETED,
            admin_notes="paid by bank transfer",
        ),
    )
    assert outcome.ok
    assert outcome.result.status == OrderStatus.PAID
    assert outcome.result.payment_status == PaymentStatus.COMPLETED
    assert outcome.result.admin_notes == "paid by bank transfer"


def test_status_update_cannot_mark_order_paid_while_payment_pending(service):
    order = service.create_order(make_request()).result
    service.update_order_status(order.id, UpdateOrderStatusRequest(status=OrderStatus.PROCESSING))

    outcome = service.update_order_status(order.id, UpdateOrderStatusRequest(status=OrderStatus.PAID))

    assert isinstance(outcome.error, InvalidTransition)
    stored = service.get_order_by_id(order.id).result
    assert stored.status == OrderStatus.PROCESSING
    assert stored.payment_status == PaymentStatus.PENDING
    assert stored.processed_at is None


@pytest.mark.parametrize(
    "changes",
    [
        {"status": OrderStatus.REFUNDED},
        {"status": OrderStatus.PARTIALLY_REFUNDED},
        {"payment_status": PaymentStatus.REFUNDED},
        {"payment_status": PaymentStatus.PARTIALLY_REFUNDED},
    ],
)
def test_status_update_cannot_reach_refund_states_without_refund_money(service, changes):
    order = _checkout(service)

    outcome = service.update_order_status(order.id, UpdateOrderStatusRequest(**changes))

    assert isinstance(outcome.error, InvalidTransition)
    stored = service.get_order_by_id(order.id).result
    assert stored.status == OrderStatus.PAID
    assert stored.payment_status == PaymentStatus.COMPLETED
    assert stored.version == order.version

    refunded = service.create_refund(order.id, RefundRequest(amount=100, reason="damaged box"))
    assert refunded.ok
    assert refunded.result.status == OrderStatus.PARTIALLY_REFUNDED


def test_empty_status_update_is_rejected(service):
    order = service.create_order(make_request()).result
    outcome = service.update_order_status(order.id, UpdateOrderStatusRequest())
    assert isinstance(outcome.error, ValidationError)


def test_tracking_on_pending_order_is_rejected(service):
    order = service.create_order(make_request()).result
    outcome = service.add_tracking_info(order.id, TrackingInfoRequest(carrier="UPS", tracking_number="1Z1"))
    assert isinstance(outcome.error, InvalidTransition)


def test_tracking_ships_paid_order(service, notifier):
    order = _checkout(service)
    outcome = service.add_tracking_info(order.id, TrackingInfoRequest(carrier="UPS", tracking_number="1Z1"))
    assert outcome.ok
    shipped = outcome.result
    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.shipping.shipped_at is not None
    assert all(item.fulfilled_quantity == item.quantity for item in shipped.items)
    assert notifier.kinds()[-1] == "order_shipped"


def test_refund_through_gateway_and_replay(service, gateway):
    order = _checkout(service)
    partial = service.create_refund(order.id, RefundRequest(amount=5000, reason="late delivery"))
    assert partial.ok
    assert partial.result.status == OrderStatus.PARTIALLY_REFUNDED
    assert len(gateway.refunds) == 1
    assert partial.result.refunds[0].refund_id == gateway.refunds[0][2]

    request = RefundRequest(amount=1000, reason="goodwill", refund_id="support-42")
    service.create_refund(order.id, request)
    replay = service.create_refund(order.id, request)
    assert replay.ok
    assert replay.result.total_refunded.amount == 6000
    assert len(replay.result.refunds) == 2


def test_refund_exceeding_remainder_is_rejected(service):
    order = _checkout(service)
    outcome = service.create_refund(order.id, RefundRequest(amount=order.total.amount + 1, reason="oops"))
    assert isinstance(outcome.error, ValidationError)
    assert service.get_order_by_id(order.id).result.total_refunded.amount == 0


def test_refund_retried_after_failed_write_refunds_provider_once(service, gateway, monkeypatch):
    order = _checkout(service)
    original_update = SqlOrderRepository.update_order
    attempts = []

    def update_failing_once(self, draft):
        attempts.append(draft.id)
        if len(attempts) == 1:
            raise PersistenceError("connection dropped during commit")
        return original_update(self, draft)

    monkeypatch.setattr(SqlOrderRepository, "update_order", update_failing_once)
    request = RefundRequest(amount=1000, reason="late delivery")

    failed = service.create_refund(order.id, request)
    assert isinstance(failed.error, PersistenceError)
    assert service.get_order_by_id(order.id).result.total_refunded.amount == 0

    retried = service.create_refund(order.id, request)
    assert retried.ok
    assert retried.result.total_refunded.amount == 1000
    assert len(gateway.refunds) == 1
    assert retried.result.refunds[0].refund_id == gateway.refunds[0][2]

    second = service.create_refund(order.id, request)
    assert second.result.total_refunded.amount == 2000
    assert len(gateway.refunds) == 2


def test_full_refund_marks_order_refunded(service, notifier):
    order = _checkout(service)
    outcome = service.create_refund(order.id, RefundRequest(amount=order.total.amount, reason="returned"))
    assert outcome.result.status == OrderStatus.REFUNDED
    assert outcome.result.payment_status == PaymentStatus.REFUNDED
    assert notifier.kinds()[-1] == "order_refunded"


def test_concurrent_refunds_on_one_order_all_land(service):
    order = _checkout(service)

    def refund(index: int):
        return service.create_refund(order.id, RefundRequest(amount=100, reason="batch", refund_id=f"batch-{index}"))

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(refund, range(8)))

    assert all(result.ok for result in results)
    stored = service.get_order_by_id(order.id).result
    assert stored.total_refunded.amount == 800
    assert len(stored.refunds) == 8
    assert len(service.locks) == 0


def test_stale_write_raises_concurrency_error(service):
    order = service.create_order(make_request()).result
    with sql_repository_scope() as repo:
        first = repo.get_order(order.id)
    with sql_repository_scope() as repo:
        second = repo.get_order(order.id)

    first.admin_notes = "first writer"
    with sql_repository_scope() as repo:
        repo.update_order(first)

    second.admin_notes = "second writer"
    with pytest.raises(ConcurrencyError):
        with sql_repository_scope() as repo:
            repo.update_order(second)
    assert service.get_order_by_id(order.id).result.admin_notes == "first writer"


def test_unknown_order_is_not_found(service):
    outcome = service.get_order_by_id("missing")
    assert isinstance(outcome.error, NotFoundError)
    assert outcome.error.user_action == "fix_input"


def test_list_customer_orders_newest_first_with_filters(service):
    first = service.create_order(make_request(email="grace@example.com")).result
    second = service.create_order(make_request(email="grace@example.com")).result
    paid = _checkout(service, email="grace@example.com")
    service.create_order(make_request(email="someone@example.com"))

    page = service.list_customer_orders("Grace@Example.com").result
    assert page.total_count == 3
    assert [o.order_number for o in page.orders] == [paid.order_number, second.order_number, first.order_number]

    only_paid = service.list_customer_orders("grace@example.com", status=OrderStatus.PAID).result
    assert [o.id for o in only_paid.orders] == [paid.id]

    window = service.list_customer_orders("grace@example.com", limit=1, offset=1).result
    assert window.total_count == 3
    assert [o.id for o in window.orders] == [second.id]

    assert isinstance(service.list_customer_orders("nobody").error, ValidationError)


def test_order_metrics(service):
    paid = _checkout(service)
    service.create_order(make_request(items=[make_item(unit_price=2000)], state="TX", promo_code="SAVE1234"))

    metrics = service.get_order_metrics().result
    assert metrics.total_orders == 2
    assert metrics.total_revenue.amount == paid.total.amount + 2912
    assert metrics.orders_by_status["paid"] == 1
    assert metrics.orders_by_status["pending"] == 1
    assert len(metrics.recent_orders) == 2

    future = now_utc() + timedelta(days=1)
    empty = service.get_order_metrics(future, future + timedelta(days=1)).result
    assert empty.total_orders == 0
    assert empty.average_order_value.amount == 0

    assert isinstance(service.get_order_metrics(future, future).error, ValidationError)


def test_order_metrics_range_includes_both_bounds(service):
    order = service.create_order(make_request()).result
    created = order.created_at

    ending_at_order = service.get_order_metrics(created - timedelta(days=1), created).result
    assert ending_at_order.total_orders == 1
    assert ending_at_order.total_revenue == order.total

    starting_at_order = service.get_order_metrics(created, created + timedelta(days=1)).result
    assert starting_at_order.total_orders == 1

    before_order = service.get_order_metrics(created - timedelta(days=1), created - timedelta(microseconds=1)).result
    assert before_order.total_orders == 0


def test_calculate_shipping_and_tax(service):
    shipping = service.calculate_shipping(
        ShippingCalculationRequest(
            items=[make_item(unit_price=4999)],
            shipping_address=make_request().shipping_address,
            shipping_method=ShippingMethod.STANDARD,
        )
    ).result
    assert shipping.cost.amount == 999

    empty = service.calculate_shipping(
        ShippingCalculationRequest(items=[], shipping_address=make_request().shipping_address)
    ).result
    assert empty.cost.amount == 0

    tax = service.calculate_tax(
        TaxCalculationRequest(
            items=[make_item(unit_price=2000)],
            shipping_address=make_request(state="TX").shipping_address,
            discount=200,
        )
    ).result
    assert tax.total_tax.amount == 113
    assert tax.jurisdiction == "TX"


def test_order_locks_drop_entries_once_released():
    locks = OrderLocks()
    with locks.hold("order-1"):
        with locks.hold("order-2"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("order-1"):
            raise RuntimeError("boom")
    assert len(locks) == 0
