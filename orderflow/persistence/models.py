from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _order_fk():
    return ForeignKey("orders.id", ondelete="CASCADE")


class Base(DeclarativeBase):
    pass


class OrderNumberSequenceModel(Base):
    __tablename__ = "order_number_sequence"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderModel(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total >= 0", name="orders_total_positive"),
        CheckConstraint("subtotal >= 0", name="orders_subtotal_positive"),
        CheckConstraint("total_refunded >= 0 AND total_refunded <= total", name="orders_refund_within_total"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shipping_total: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    tax_total: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    discount_total: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_refunded: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    payment_status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    fulfillment_status: Mapped[str] = mapped_column(String(32), default="unfulfilled", nullable=False)

    source: Mapped[str] = mapped_column(String(64), default="mobile_app", nullable=False)
    tags: Mapped[list] = mapped_column(_json_type(), default=list, nullable=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class OrderItemModel(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="order_items_price_non_negative"),
        CheckConstraint(
            "fulfilled_quantity >= 0 AND fulfilled_quantity <= quantity",
            name="order_items_fulfilled_quantity_valid",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), _order_fk(), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    variant_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    variant_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    compare_at_price: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fulfillment_status: Mapped[str] = mapped_column(String(32), default="unfulfilled", nullable=False)
    fulfilled_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class OrderAddressModel(Base):
    __tablename__ = "order_addresses"
    __table_args__ = (
        UniqueConstraint("order_id", "address_type", name="uq_order_address_type"),
        CheckConstraint("address_type IN ('billing', 'shipping')", name="order_addresses_type_valid"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), _order_fk(), nullable=False)
    address_type: Mapped[str] = mapped_column(String(20), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    street_line1: Mapped[str] = mapped_column(String(255), nullable=False)
    street_line2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    state_province: Mapped[str] = mapped_column(String(100), nullable=False)
    postal_code: Mapped[str] = mapped_column(String(20), nullable=False)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    is_residential: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PaymentModel(Base):
    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount >= 0", name="payments_amount_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), _order_fk(), unique=True, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    card_brand: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ShippingInfoModel(Base):
    __tablename__ = "shipping_info"
    __table_args__ = (CheckConstraint("cost >= 0", name="shipping_info_cost_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), _order_fk(), unique=True, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    estimated_delivery_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class OrderDiscountModel(Base):
    __tablename__ = "order_discounts"
    __table_args__ = (CheckConstraint("amount_saved >= 0", name="order_discounts_amount_saved_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), _order_fk(), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount_saved: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class RefundModel(Base):
    __tablename__ = "refunds"
    __table_args__ = (
        UniqueConstraint("order_id", "refund_id", name="uq_refund_order_refund_id"),
        CheckConstraint("amount > 0", name="refunds_amount_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), _order_fk(), nullable=False)
    refund_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


Index("ix_orders_customer_email", OrderModel.customer_email)
Index("ix_orders_created_at", OrderModel.created_at)
Index("ix_orders_status", OrderModel.status)
Index("ix_order_items_order_id", OrderItemModel.order_id)
Index("ix_order_discounts_order_id", OrderDiscountModel.order_id)
Index("ix_refunds_order_id", RefundModel.order_id)
