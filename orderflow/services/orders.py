"""Order service: the surface the API and CLI call.

Every public method returns a ``ServiceResult``. Domain failures
(``OrderError`` and subclasses) land in ``result.error``; invariant
violations and programmer errors propagate to the caller.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Iterator, TypeVar
from uuid import uuid4

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import InvalidTransition, OrderError, PaymentError, ValidationError
from orderflow.domain.orders.aggregates import (
    FulfillmentStatus,
    Order,
    OrderStatus,
    PaymentStatus,
)
from orderflow.domain.orders.commands import (
    CreateOrderRequest,
    RefundRequest,
    ShippingCalculationRequest,
    TaxCalculationRequest,
    TrackingInfoRequest,
    UpdateOrderStatusRequest,
)
from orderflow.domain.orders.creation import build_order, cart_lines
from orderflow.domain.orders.discounts import DiscountResolver
from orderflow.domain.orders.lifecycle import OrderStateMachine, now_utc
from orderflow.domain.orders.metrics import OrderMetrics, compute_order_metrics
from orderflow.domain.orders.money import Money
from orderflow.domain.orders.pricing import PricingCalculator, ShippingQuote, TaxQuote
from orderflow.domain.orders.refunds import apply_refund, refund_idempotency_key, validate_refund
from orderflow.domain.orders.repository import OrderRepository
from orderflow.notifications import dispatcher
from orderflow.notifications.dispatcher import Notifier, build_notifier
from orderflow.payments.gateway import PaymentGateway, PaymentIntent, build_payment_gateway

logger = logging.getLogger(__name__)

T = TypeVar("T")
RepositoryScope = Callable[[], AbstractContextManager[OrderRepository]]

STATUS_EVENTS = {
    OrderStatus.PAID: dispatcher.ORDER_PAID,
    OrderStatus.SHIPPED: dispatcher.ORDER_SHIPPED,
    OrderStatus.DELIVERED: dispatcher.ORDER_DELIVERED,
    OrderStatus.CANCELLED: dispatcher.ORDER_CANCELLED,
    OrderStatus.REFUNDED: dispatcher.ORDER_REFUNDED,
    OrderStatus.PARTIALLY_REFUNDED: dispatcher.ORDER_REFUNDED,
}


@dataclass
class ServiceResult(Generic[T]):
    result: T | None = None
    error: OrderError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class OrderPage:
    orders: list[Order] = field(default_factory=list)
    total_count: int = 0


class OrderLocks:
    """Per-order mutexes; mutations of one order run one at a time.

    An entry lives only while some thread holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, order_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(order_id, threading.Lock())
            self._users[order_id] = self._users.get(order_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[order_id] -= 1
                if not self._users[order_id]:
                    del self._users[order_id]
                    del self._locks[order_id]


class OrderService:
    def __init__(
        self,
        repository_scope: RepositoryScope,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        calculator: PricingCalculator | None = None,
        resolver: DiscountResolver | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.settings = settings or get_settings()
        self.repository_scope = repository_scope
        self.gateway = gateway or build_payment_gateway(self.settings)
        self.notifier = notifier or build_notifier(self.settings)
        self.calculator = calculator or PricingCalculator(self.settings)
        self.resolver = resolver or DiscountResolver(self.settings)
        self.clock = clock
        self.state_machine = OrderStateMachine(clock=clock)
        self.locks = OrderLocks()

    # -- plumbing -----------------------------------------------------------

    def _run(self, action: str, fn: Callable[..., T], *args, **kwargs) -> ServiceResult[T]:
        try:
            return ServiceResult(result=fn(*args, **kwargs))
        except OrderError as exc:
            logger.warning("%s failed: code=%s detail=%s", action, exc.code, exc.message)
            return ServiceResult(error=exc)

    def _notify(self, event_kind: str, order: Order) -> None:
        try:
            self.notifier.notify(event_kind, order.snapshot())
        except Exception as exc:
            logger.warning(
                "notifier %s raised for kind=%s order=%s: %s",
                getattr(self.notifier, "backend", "unknown"),
                event_kind,
                order.order_number,
                exc,
            )

    def _notify_status_change(self, before: Order, after: Order) -> None:
        if before.status == after.status:
            return
        event_kind = STATUS_EVENTS.get(after.status)
        if event_kind is not None:
            self._notify(event_kind, after)

    def _mutate(self, order_id: str, change: Callable[[Order, OrderRepository], bool]) -> tuple[Order, Order]:
        """Apply ``change`` to a copy of the stored order and persist it.

        ``change`` returns False when there is nothing to write (replays).
        Returns the order as read and the order as stored afterwards.
        """
        with self.locks.hold(order_id):
            with self.repository_scope() as repo:
                current = repo.get_order(order_id)
                draft = copy.deepcopy(current)
                if not change(draft, repo):
                    return current, current
                draft.check_invariants()
                saved = repo.update_order(draft)
        return current, saved

    # -- creation -----------------------------------------------------------

    def _create(self, request: CreateOrderRequest) -> Order:
        now = self.clock()
        with self.repository_scope() as repo:
            order_number = repo.next_order_number(self.settings.order_number_prefix, self.settings.order_number_width)
            order = build_order(
                request,
                order_number=order_number,
                calculator=self.calculator,
                resolver=self.resolver,
                now=now,
                source=self.settings.order_source,
            )
            saved = repo.create_order(order)
        logger.info(
            "order created: order_number=%s total=%d currency=%s items=%d",
            saved.order_number,
            saved.total.amount,
            saved.currency,
            saved.item_count,
        )
        self._notify(dispatcher.ORDER_CREATED, saved)
        return saved

    def create_order(self, request: CreateOrderRequest) -> ServiceResult[Order]:
        return self._run("create_order", self._create, request)

    # -- checkout -----------------------------------------------------------

    def checkout(self, request: CreateOrderRequest) -> ServiceResult[Order]:
        """Create the order, take payment, and leave it PAID, CANCELLED or PROCESSING.

        A customer-cancelled payment comes back as ``PaymentError`` with
        ``cancelled=True`` next to the cancelled order.
        """
        created = self.create_order(request)
        if not created.ok:
            return created
        order = created.result

        def start_processing(draft: Order, _: OrderRepository) -> bool:
            self.state_machine.transition(draft, OrderStatus.PROCESSING)
            return True

        started = self._run("checkout", self._mutate, order.id, start_processing)
        if not started.ok:
            return ServiceResult(result=order, error=started.error)
        return self._take_payment(started.result[1])

    def _payable(self, order_id: str) -> Order:
        order = self._get(order_id)
        if order.status != OrderStatus.PROCESSING or order.payment_status != PaymentStatus.FAILED:
            raise InvalidTransition(
                f"payment can only be retried for a processing order whose payment failed "
                f"(order is {order.status.value}, payment is {order.payment_status.value})",
                from_state=order.payment_status.value,
                to_state=PaymentStatus.PROCESSING.value,
            )
        return order

    def retry_payment(self, order_id: str) -> ServiceResult[Order]:
        """Take payment again for a checkout whose payment failed.

        Outcomes match ``checkout``: PAID, CANCELLED with a cancelled
        ``PaymentError``, or still PROCESSING with payment FAILED.
        """
        found = self._run("retry_payment", self._payable, order_id)
        if not found.ok:
            return found
        logger.info("retrying payment: order_number=%s", found.result.order_number)
        return self._take_payment(found.result)

    def _take_payment(self, order: Order) -> ServiceResult[Order]:
        try:
            intent = self.gateway.create_intent(
                order.total,
                {"order_id": order.id, "order_number": order.order_number},
            )
        except PaymentError as exc:
            return self._payment_failed(order, exc.message)

        def record_intent(draft: Order, _: OrderRepository) -> bool:
            draft.payment.payment_intent_id = intent.id
            self.state_machine.set_payment_status(draft, PaymentStatus.PROCESSING)
            return True

        recorded = self._run("checkout", self._mutate, order.id, record_intent)
        if not recorded.ok:
            return ServiceResult(result=order, error=recorded.error)
        order = recorded.result[1]

        return self._settle_payment(order, intent)

    def _settle_payment(self, order: Order, intent: PaymentIntent) -> ServiceResult[Order]:
        outcome = self.gateway.present_payment(intent)

        if outcome.status == "cancelled":
            def cancel(draft: Order, _: OrderRepository) -> bool:
                self.state_machine.transition(draft, OrderStatus.CANCELLED)
                return True

            cancelled = self._run("checkout", self._mutate, order.id, cancel)
            if not cancelled.ok:
                return ServiceResult(result=order, error=cancelled.error)
            before, after = cancelled.result
            logger.info("payment cancelled by customer: order_number=%s", after.order_number)
            self._notify_status_change(before, after)
            return ServiceResult(result=after, error=PaymentError("payment cancelled by customer", cancelled=True))

        if outcome.status != "success":
            return self._payment_failed(order, outcome.error or "payment failed")

        def complete(draft: Order, _: OrderRepository) -> bool:
            draft.payment.transaction_id = outcome.charge_id or intent.id
            draft.payment.charge_id = outcome.charge_id
            draft.payment.card_brand = outcome.card_brand
            draft.payment.card_last4 = outcome.card_last4
            draft.payment.receipt_url = outcome.receipt_url
            self.state_machine.set_payment_status(draft, PaymentStatus.COMPLETED)
            return True

        completed = self._run("checkout", self._mutate, order.id, complete)
        if not completed.ok:
            return ServiceResult(result=order, error=completed.error)
        before, after = completed.result
        logger.info(
            "payment completed: order_number=%s amount=%d backend=%s",
            after.order_number,
            after.payment.amount.amount,
            self.gateway.backend,
        )
        self._notify_status_change(before, after)
        return ServiceResult(result=after)

    def _payment_failed(self, order: Order, message: str) -> ServiceResult[Order]:
        def fail(draft: Order, _: OrderRepository) -> bool:
            if draft.payment_status == PaymentStatus.FAILED:
                return False
            self.state_machine.set_payment_status(draft, PaymentStatus.FAILED)
            return True

        failed = self._run("checkout", self._mutate, order.id, fail)
        if failed.ok:
            order = failed.result[1]
        logger.warning("payment failed: order_number=%s detail=%s", order.order_number, message)
        return ServiceResult(result=order, error=PaymentError(message))

    # -- reads --------------------------------------------------------------

    def _get(self, order_id: str) -> Order:
        with self.repository_scope() as repo:
            return repo.get_order(order_id)

    def get_order_by_id(self, order_id: str) -> ServiceResult[Order]:
        return self._run("get_order_by_id", self._get, order_id)

    def _list(self, email: str, status: OrderStatus | None, limit: int | None, offset: int) -> OrderPage:
        if not email or "@" not in email:
            raise ValidationError("customer email must contain '@'", field="email")
        if limit is not None and limit < 0:
            raise ValidationError("limit cannot be negative", field="limit")
        if offset < 0:
            raise ValidationError("offset cannot be negative", field="offset")
        with self.repository_scope() as repo:
            orders, total_count = repo.list_orders_by_customer(email, status=status, limit=limit, offset=offset)
        return OrderPage(orders=orders, total_count=total_count)

    def list_customer_orders(
        self,
        email: str,
        status: OrderStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> ServiceResult[OrderPage]:
        return self._run("list_customer_orders", self._list, email, status, limit, offset)

    # -- status -------------------------------------------------------------

    def _update_status(self, order_id: str, request: UpdateOrderStatusRequest) -> Order:
        if (
            request.status is None
            and request.payment_status is None
            and request.fulfillment_status is None
            and request.admin_notes is None
        ):
            raise ValidationError("no status change requested", field="status")

        def change(draft: Order, _: OrderRepository) -> bool:
            if request.idempotency_key and request.idempotency_key == draft.last_idempotency_key:
                logger.info("status update replayed: order_number=%s key=%s", draft.order_number, request.idempotency_key)
                return False
            now = self.clock()
            if request.payment_status is not None:
                self.state_machine.set_payment_status(draft, request.payment_status, now=now)
            # Completing payment may already have moved the order to the requested status.
            if request.status is not None and not (
                request.payment_status is not None and draft.status == OrderStatus(request.status)
            ):
                self.state_machine.transition(draft, request.status, now=now)
            if request.fulfillment_status is not None and not (
                request.status is not None and draft.fulfillment_status == FulfillmentStatus(request.fulfillment_status)
            ):
                self.state_machine.set_fulfillment_status(draft, request.fulfillment_status, now=now)
            if request.admin_notes is not None:
                draft.admin_notes = request.admin_notes
            draft.last_idempotency_key = request.idempotency_key or draft.last_idempotency_key
            draft.updated_at = now
            return True

        before, after = self._mutate(order_id, change)
        if after is not before:
            logger.info(
                "order status updated: order_number=%s status=%s->%s payment=%s fulfillment=%s",
                after.order_number,
                before.status.value,
                after.status.value,
                after.payment_status.value,
                after.fulfillment_status.value,
            )
            self._notify_status_change(before, after)
        return after

    def update_order_status(self, order_id: str, request: UpdateOrderStatusRequest) -> ServiceResult[Order]:
        return self._run("update_order_status", self._update_status, order_id, request)

    def _add_tracking(self, order_id: str, request: TrackingInfoRequest) -> Order:
        if not request.carrier.strip() or not request.tracking_number.strip():
            raise ValidationError("carrier and tracking number are required", field="tracking_number")

        def change(draft: Order, _: OrderRepository) -> bool:
            self.state_machine.add_tracking(
                draft,
                carrier=request.carrier.strip(),
                tracking_number=request.tracking_number.strip(),
                tracking_url=request.tracking_url,
            )
            return True

        before, after = self._mutate(order_id, change)
        logger.info(
            "tracking added: order_number=%s carrier=%s tracking_number=%s",
            after.order_number,
            after.shipping.carrier,
            after.shipping.tracking_number,
        )
        self._notify_status_change(before, after)
        return after

    def add_tracking_info(self, order_id: str, request: TrackingInfoRequest) -> ServiceResult[Order]:
        return self._run("add_tracking_info", self._add_tracking, order_id, request)

    # -- refunds ------------------------------------------------------------

    def _refund(self, order_id: str, request: RefundRequest) -> Order:
        if not request.reason.strip():
            raise ValidationError("refund reason is required", field="reason")

        def change(draft: Order, repo: OrderRepository) -> bool:
            if request.refund_id and repo.find_refund(draft.id, request.refund_id) is not None:
                logger.info("refund replayed: order_number=%s refund_id=%s", draft.order_number, request.refund_id)
                return False
            amount = Money(request.amount, draft.currency)
            validate_refund(draft, amount)
            refund_id = request.refund_id
            if refund_id is None:
                if draft.payment.payment_intent_id:
                    refund_id = self.gateway.refund(
                        draft.payment.payment_intent_id,
                        amount,
                        idempotency_key=refund_idempotency_key(draft, amount),
                    )
                else:
                    refund_id = f"rf_{uuid4().hex[:16]}"
            apply_refund(draft, refund_id, amount, request.reason.strip(), now=self.clock(), notes=request.notes)
            return True

        before, after = self._mutate(order_id, change)
        if after is not before:
            logger.info(
                "refund recorded: order_number=%s amount=%d total_refunded=%d status=%s",
                after.order_number,
                request.amount,
                after.total_refunded.amount,
                after.status.value,
            )
            self._notify(dispatcher.ORDER_REFUNDED, after)
        return after

    def create_refund(self, order_id: str, request: RefundRequest) -> ServiceResult[Order]:
        return self._run("create_refund", self._refund, order_id, request)

    # -- pricing ------------------------------------------------------------

    def _shipping(self, request: ShippingCalculationRequest) -> ShippingQuote:
        cart = cart_lines(request.items, self.calculator.currency)
        address = request.shipping_address.to_address()
        quote = self.calculator.quote_shipping(self.calculator.subtotal(cart), address, request.shipping_method)
        if not cart:
            return ShippingQuote(
                method=quote.method,
                cost=self.calculator.zero(),
                estimated_delivery_days=quote.estimated_delivery_days,
                carrier=quote.carrier,
            )
        return quote

    def calculate_shipping(self, request: ShippingCalculationRequest) -> ServiceResult[ShippingQuote]:
        return self._run("calculate_shipping", self._shipping, request)

    def _tax(self, request: TaxCalculationRequest) -> TaxQuote:
        cart = cart_lines(request.items, self.calculator.currency)
        subtotal = self.calculator.subtotal(cart)
        zero = self.calculator.zero()
        discount = Money(request.discount, self.calculator.currency).clamp(zero, subtotal)
        return self.calculator.quote_tax(subtotal - discount, request.shipping_address.to_address())

    def calculate_tax(self, request: TaxCalculationRequest) -> ServiceResult[TaxQuote]:
        return self._run("calculate_tax", self._tax, request)

    # -- reporting ----------------------------------------------------------

    def _metrics(self, start: datetime | None, end: datetime | None) -> OrderMetrics:
        if start is not None and end is not None and not end > start:
            raise ValidationError("period end must be greater than start", field="period")
        with self.repository_scope() as repo:
            orders = repo.list_orders_in_range(start, end)
            recent = repo.recent_orders(self.settings.metrics_recent_orders_limit)
        return compute_order_metrics(orders, self.calculator.currency, recent=recent)

    def get_order_metrics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ServiceResult[OrderMetrics]:
        return self._run("get_order_metrics", self._metrics, start, end)


def build_order_service(settings: Settings | None = None, **overrides: Any) -> OrderService:
    from orderflow.persistence.order_repository import sql_repository_scope

    cfg = settings or get_settings()
    return OrderService(repository_scope=overrides.pop("repository_scope", sql_repository_scope), settings=cfg, **overrides)
