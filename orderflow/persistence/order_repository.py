from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

import orderflow.persistence.pg as pg
from orderflow.core.errors import ConcurrencyError, NotFoundError, PersistenceError
from orderflow.domain.orders.aggregates import (
    Address,
    DiscountKind,
    DiscountRecord,
    FulfillmentStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    RefundRecord,
    ShippingMethod,
    ShippingRecord,
)
from orderflow.domain.orders.money import Money
from orderflow.persistence.models import (
    OrderAddressModel,
    OrderDiscountModel,
    OrderItemModel,
    OrderModel,
    OrderNumberSequenceModel,
    PaymentModel,
    RefundModel,
    ShippingInfoModel,
)

logger = logging.getLogger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _address_row(order_id: str, address_type: str, address: Address) -> OrderAddressModel:
    return OrderAddressModel(
        order_id=order_id,
        address_type=address_type,
        first_name=address.first_name,
        last_name=address.last_name,
        company=address.company,
        street_line1=address.street_line1,
        street_line2=address.street_line2,
        city=address.city,
        state_province=address.state_province,
        postal_code=address.postal_code,
        country=address.country,
        phone=address.phone,
        is_residential=address.is_residential,
    )


def _address(row: OrderAddressModel) -> Address:
    return Address(
        first_name=row.first_name,
        last_name=row.last_name,
        company=row.company,
        street_line1=row.street_line1,
        street_line2=row.street_line2,
        city=row.city,
        state_province=row.state_province,
        postal_code=row.postal_code,
        country=row.country,
        phone=row.phone,
        is_residential=row.is_residential,
    )


class SqlOrderRepository:
    def __init__(self, session: Session):
        self.session = session

    def _flush(self, action: str) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise ConcurrencyError(f"order was modified concurrently during {action}") from exc
        except IntegrityError as exc:
            raise PersistenceError(f"{action} violated a storage constraint: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"{action} failed: {exc}") from exc

    # -- writes -------------------------------------------------------------

    def next_order_number(self, prefix: str, width: int) -> str:
        row = OrderNumberSequenceModel(created_at=datetime.now(timezone.utc))
        self.session.add(row)
        self._flush("order number allocation")
        return f"{prefix}{row.seq_id:0{width}d}"

    def create_order(self, order: Order) -> Order:
        order_id = order.id or str(uuid.uuid4())
        currency = order.currency
        self.session.add(
            OrderModel(
                id=order_id,
                order_number=order.order_number,
                customer_id=order.customer_id,
                customer_email=order.customer_email,
                customer_phone=order.customer_phone,
                customer_note=order.customer_note,
                currency=currency,
                subtotal=order.subtotal.amount,
                shipping_total=order.shipping_total.amount,
                tax_total=order.tax_total.amount,
                discount_total=order.discount_total.amount,
                total=order.total.amount,
                total_refunded=order.total_refunded.amount,
                status=order.status.value,
                payment_status=order.payment_status.value,
                fulfillment_status=order.fulfillment_status.value,
                source=order.source,
                tags=list(order.tags),
                admin_notes=order.admin_notes,
                created_at=order.created_at,
                updated_at=order.updated_at or order.created_at,
                processed_at=order.processed_at,
            )
        )
        # Parent row first so FK-enforcing backends accept the children.
        self._flush("order insert")

        rows: list = [
            _address_row(order_id, "billing", order.billing_address),
            _address_row(order_id, "shipping", order.shipping_address),
            PaymentModel(
                order_id=order_id,
                method=order.payment.method.value,
                status=order.payment.status.value,
                amount=order.payment.amount.amount,
                currency=currency,
            ),
            ShippingInfoModel(
                order_id=order_id,
                method=order.shipping.method.value,
                cost=order.shipping.cost.amount,
                estimated_delivery_days=order.shipping.estimated_delivery_days,
            ),
        ]
        for position, item in enumerate(order.items):
            rows.append(
                OrderItemModel(
                    order_id=order_id,
                    position=position,
                    product_id=item.product_id,
                    product_sku=item.product_sku,
                    product_name=item.product_name,
                    product_image=item.product_image,
                    variant_id=item.variant_id,
                    variant_title=item.variant_title,
                    unit_price=item.unit_price.amount,
                    compare_at_price=item.compare_at_price.amount if item.compare_at_price else None,
                    quantity=item.quantity,
                    subtotal=item.subtotal.amount,
                    tax_amount=item.tax_amount.amount,
                    discount_amount=item.discount_amount.amount,
                    total=item.total.amount,
                    fulfillment_status=item.fulfillment_status.value,
                    fulfilled_quantity=item.fulfilled_quantity,
                )
            )
        for discount in order.discounts:
            rows.append(self._discount_row(order_id, discount))
        self.session.add_all(rows)
        self._flush("order sub-record insert")
        logger.debug("order rows written: order_id=%s sub_records=%d", order_id, len(rows))
        return self.get_order(order_id)

    def _discount_row(self, order_id: str, discount: DiscountRecord) -> OrderDiscountModel:
        return OrderDiscountModel(
            order_id=order_id,
            code=discount.code,
            kind=discount.kind.value,
            value=discount.value,
            amount_saved=discount.amount_saved.amount,
            description=discount.description,
            active=discount.active,
        )

    def update_order(self, order: Order) -> Order:
        row = self.session.get(OrderModel, order.id)
        if row is None:
            raise NotFoundError(f"order not found: {order.id}")
        if row.version != order.version:
            raise ConcurrencyError(
                f"order {order.order_number} changed since it was read (version {order.version} != {row.version})"
            )

        row.status = order.status.value
        row.payment_status = order.payment_status.value
        row.fulfillment_status = order.fulfillment_status.value
        row.total_refunded = order.total_refunded.amount
        row.admin_notes = order.admin_notes
        row.tags = list(order.tags)
        row.last_idempotency_key = order.last_idempotency_key
        row.updated_at = order.updated_at
        row.processed_at = order.processed_at

        payment = self.session.scalar(select(PaymentModel).where(PaymentModel.order_id == order.id))
        if payment is not None:
            payment.status = order.payment.status.value
            payment.transaction_id = order.payment.transaction_id
            payment.payment_intent_id = order.payment.payment_intent_id
            payment.charge_id = order.payment.charge_id
            payment.card_brand = order.payment.card_brand
            payment.card_last4 = order.payment.card_last4
            payment.receipt_url = order.payment.receipt_url
            payment.paid_at = order.payment.paid_at

        shipping = self.session.scalar(select(ShippingInfoModel).where(ShippingInfoModel.order_id == order.id))
        if shipping is not None:
            shipping.carrier = order.shipping.carrier
            shipping.tracking_number = order.shipping.tracking_number
            shipping.tracking_url = order.shipping.tracking_url
            shipping.shipped_at = order.shipping.shipped_at
            shipping.delivered_at = order.shipping.delivered_at

        for item in order.items:
            item_row = self.session.get(OrderItemModel, item.id) if item.id is not None else None
            if item_row is None or item_row.order_id != order.id:
                continue
            item_row.fulfillment_status = item.fulfillment_status.value
            item_row.fulfilled_quantity = item.fulfilled_quantity

        discount_rows = list(
            self.session.scalars(
                select(OrderDiscountModel)
                .where(OrderDiscountModel.order_id == order.id)
                .order_by(OrderDiscountModel.id.asc())
            ).all()
        )
        for discount_row, discount in zip(discount_rows, order.discounts):
            discount_row.active = discount.active
        for discount in order.discounts[len(discount_rows):]:
            self.session.add(self._discount_row(order.id, discount))

        known_refunds = set(
            self.session.scalars(select(RefundModel.refund_id).where(RefundModel.order_id == order.id)).all()
        )
        for refund in order.refunds:
            if refund.refund_id in known_refunds:
                continue
            self.session.add(
                RefundModel(
                    order_id=order.id,
                    refund_id=refund.refund_id,
                    amount=refund.amount.amount,
                    reason=refund.reason,
                    status=refund.status,
                    notes=refund.notes,
                    created_at=refund.created_at or order.updated_at,
                    processed_at=refund.processed_at,
                )
            )

        self._flush("order update")
        return self.get_order(order.id)

    # -- reads --------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        try:
            row = self.session.get(OrderModel, order_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"order lookup failed: {exc}") from exc
        if row is None:
            raise NotFoundError(f"order not found: {order_id}")
        return self._to_domain(row)

    def _scalars(self, stmt: Select) -> list:
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise PersistenceError(f"order query failed: {exc}") from exc

    def list_orders_by_customer(
        self,
        email: str,
        status: OrderStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        stmt = select(OrderModel).where(OrderModel.customer_email == email.strip().lower())
        if status is not None:
            stmt = stmt.where(OrderModel.status == OrderStatus(status).value)
        try:
            total_count = int(self.session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"order count failed: {exc}") from exc

        stmt = stmt.order_by(OrderModel.created_at.desc(), OrderModel.order_number.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_domain(row) for row in self._scalars(stmt)], total_count

    def list_orders_in_range(self, start: datetime | None, end: datetime | None) -> list[Order]:
        stmt = select(OrderModel).order_by(OrderModel.created_at.asc())
        if start is not None:
            stmt = stmt.where(OrderModel.created_at >= start)
        if end is not None:
            stmt = stmt.where(OrderModel.created_at <= end)
        return [self._to_domain(row) for row in self._scalars(stmt)]

    def recent_orders(self, limit: int) -> list[Order]:
        stmt = select(OrderModel).order_by(OrderModel.created_at.desc(), OrderModel.order_number.desc()).limit(limit)
        return [self._to_domain(row) for row in self._scalars(stmt)]

    def find_refund(self, order_id: str, refund_id: str) -> RefundRecord | None:
        row = self.session.scalar(
            select(RefundModel).where(RefundModel.order_id == order_id).where(RefundModel.refund_id == refund_id)
        )
        if row is None:
            return None
        currency = self.session.scalar(select(OrderModel.currency).where(OrderModel.id == order_id))
        return self._refund(row, currency)

    @staticmethod
    def _refund(row: RefundModel, currency: str) -> RefundRecord:
        return RefundRecord(
            refund_id=row.refund_id,
            amount=Money(row.amount, currency),
            reason=row.reason,
            status=row.status,
            notes=row.notes,
            created_at=_as_utc(row.created_at),
            processed_at=_as_utc(row.processed_at),
        )

    def _to_domain(self, row: OrderModel) -> Order:
        currency = row.currency
        order_id = row.id

        addresses = {
            address.address_type: _address(address)
            for address in self._scalars(select(OrderAddressModel).where(OrderAddressModel.order_id == order_id))
        }
        payment_row = self.session.scalar(select(PaymentModel).where(PaymentModel.order_id == order_id))
        shipping_row = self.session.scalar(select(ShippingInfoModel).where(ShippingInfoModel.order_id == order_id))
        if payment_row is None or shipping_row is None or len(addresses) != 2:
            raise PersistenceError(f"order {row.order_number} is missing sub-records")

        items = [
            OrderItem(
                id=item.id,
                product_id=item.product_id,
                product_sku=item.product_sku,
                product_name=item.product_name,
                product_image=item.product_image,
                variant_id=item.variant_id,
                variant_title=item.variant_title,
                unit_price=Money(item.unit_price, currency),
                compare_at_price=Money(item.compare_at_price, currency) if item.compare_at_price is not None else None,
                quantity=item.quantity,
                subtotal=Money(item.subtotal, currency),
                tax_amount=Money(item.tax_amount, currency),
                discount_amount=Money(item.discount_amount, currency),
                total=Money(item.total, currency),
                fulfillment_status=FulfillmentStatus(item.fulfillment_status),
                fulfilled_quantity=item.fulfilled_quantity,
            )
            for item in self._scalars(
                select(OrderItemModel).where(OrderItemModel.order_id == order_id).order_by(OrderItemModel.position.asc())
            )
        ]
        discounts = [
            DiscountRecord(
                code=discount.code,
                kind=DiscountKind(discount.kind),
                value=discount.value,
                amount_saved=Money(discount.amount_saved, currency),
                description=discount.description,
                active=discount.active,
            )
            for discount in self._scalars(
                select(OrderDiscountModel)
                .where(OrderDiscountModel.order_id == order_id)
                .order_by(OrderDiscountModel.id.asc())
            )
        ]
        refunds = [
            self._refund(refund, currency)
            for refund in self._scalars(
                select(RefundModel).where(RefundModel.order_id == order_id).order_by(RefundModel.id.asc())
            )
        ]

        return Order(
            id=order_id,
            order_number=row.order_number,
            customer_id=row.customer_id,
            customer_email=row.customer_email,
            customer_phone=row.customer_phone,
            customer_note=row.customer_note,
            currency=currency,
            subtotal=Money(row.subtotal, currency),
            shipping_total=Money(row.shipping_total, currency),
            tax_total=Money(row.tax_total, currency),
            discount_total=Money(row.discount_total, currency),
            total=Money(row.total, currency),
            total_refunded=Money(row.total_refunded, currency),
            status=OrderStatus(row.status),
            payment_status=PaymentStatus(row.payment_status),
            fulfillment_status=FulfillmentStatus(row.fulfillment_status),
            billing_address=addresses["billing"],
            shipping_address=addresses["shipping"],
            payment=PaymentRecord(
                method=PaymentMethod(payment_row.method),
                status=PaymentStatus(payment_row.status),
                amount=Money(payment_row.amount, payment_row.currency),
                transaction_id=payment_row.transaction_id,
                payment_intent_id=payment_row.payment_intent_id,
                charge_id=payment_row.charge_id,
                card_brand=payment_row.card_brand,
                card_last4=payment_row.card_last4,
                receipt_url=payment_row.receipt_url,
                paid_at=_as_utc(payment_row.paid_at),
            ),
            shipping=ShippingRecord(
                method=ShippingMethod(shipping_row.method),
                cost=Money(shipping_row.cost, currency),
                carrier=shipping_row.carrier,
                tracking_number=shipping_row.tracking_number,
                tracking_url=shipping_row.tracking_url,
                estimated_delivery_days=shipping_row.estimated_delivery_days,
                shipped_at=_as_utc(shipping_row.shipped_at),
                delivered_at=_as_utc(shipping_row.delivered_at),
            ),
            items=items,
            discounts=discounts,
            refunds=refunds,
            source=row.source,
            tags=list(row.tags or []),
            admin_notes=row.admin_notes,
            last_idempotency_key=row.last_idempotency_key,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
            processed_at=_as_utc(row.processed_at),
            version=row.version,
        )


@contextmanager
def sql_repository_scope() -> Generator[SqlOrderRepository, None, None]:
    """One transaction per operation: everything commits together or not at all."""
    try:
        with pg.session_scope() as session:
            yield SqlOrderRepository(session)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"storage transaction failed: {exc}") from exc
