from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from orderflow.core.errors import InvariantViolation
from orderflow.domain.orders.money import Money


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RETURNED = "returned"


class PaymentMethod(str, Enum):
    CARD = "card"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"


class DiscountKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SHIPPING = "free_shipping"


@dataclass
class Address:
    first_name: str
    last_name: str
    street_line1: str
    city: str
    state_province: str
    postal_code: str
    country: str
    phone: str
    street_line2: str | None = None
    company: str | None = None
    is_residential: bool = True

    REQUIRED_FIELDS = (
        "first_name",
        "last_name",
        "street_line1",
        "city",
        "state_province",
        "postal_code",
        "country",
        "phone",
    )


@dataclass
class OrderItem:
    product_id: str
    product_sku: str
    product_name: str
    unit_price: Money
    quantity: int
    subtotal: Money
    tax_amount: Money
    discount_amount: Money
    total: Money
    product_image: str | None = None
    variant_id: str | None = None
    variant_title: str | None = None
    compare_at_price: Money | None = None
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    fulfilled_quantity: int = 0
    id: int | None = None


@dataclass
class PaymentRecord:
    method: PaymentMethod
    amount: Money
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str | None = None
    payment_intent_id: str | None = None
    charge_id: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    receipt_url: str | None = None
    paid_at: datetime | None = None


@dataclass
class ShippingRecord:
    method: ShippingMethod
    cost: Money
    carrier: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    estimated_delivery_days: int | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None


@dataclass
class DiscountRecord:
    code: str
    kind: DiscountKind
    value: int
    amount_saved: Money
    description: str
    active: bool = True


@dataclass(frozen=True)
class RefundRecord:
    refund_id: str
    amount: Money
    reason: str
    status: str = "succeeded"
    notes: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


@dataclass
class Order:
    order_number: str
    customer_email: str
    customer_phone: str
    currency: str
    subtotal: Money
    shipping_total: Money
    tax_total: Money
    discount_total: Money
    total: Money
    billing_address: Address
    shipping_address: Address
    payment: PaymentRecord
    shipping: ShippingRecord
    total_refunded: Money | None = None
    items: list[OrderItem] = field(default_factory=list)
    discounts: list[DiscountRecord] = field(default_factory=list)
    refunds: list[RefundRecord] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    id: str | None = None
    customer_id: str | None = None
    customer_note: str | None = None
    source: str = "mobile_app"
    tags: list[str] = field(default_factory=list)
    admin_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None
    last_idempotency_key: str | None = None
    version: int = 0

    def __post_init__(self) -> None:
        if self.total_refunded is None:
            self.total_refunded = Money.zero(self.currency)

    @property
    def active_discount(self) -> DiscountRecord | None:
        for discount in self.discounts:
            if discount.active:
                return discount
        return None

    @property
    def remaining_refundable(self) -> Money:
        return self.total - self.total_refunded

    @property
    def item_count(self) -> int:
        return len(self.items)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def find_refund(self, refund_id: str) -> RefundRecord | None:
        for refund in self.refunds:
            if refund.refund_id == refund_id:
                return refund
        return None

    def check_invariants(self) -> None:
        zero = Money.zero(self.currency)
        expected = self.subtotal + self.shipping_total + self.tax_total - self.discount_total
        if self.total != expected:
            raise InvariantViolation(
                f"order {self.order_number}: total={self.total.amount} != "
                f"subtotal+shipping+tax-discount={expected.amount}"
            )
        if self.total < zero:
            raise InvariantViolation(f"order {self.order_number}: negative total {self.total.amount}")
        if self.discount_total < zero or self.discount_total > self.subtotal:
            raise InvariantViolation(
                f"order {self.order_number}: discount {self.discount_total.amount} outside [0, subtotal]"
            )
        if self.total_refunded < zero or self.total_refunded > self.total:
            raise InvariantViolation(
                f"order {self.order_number}: total_refunded={self.total_refunded.amount} outside [0, total]"
            )
        refunded = Money.sum((refund.amount for refund in self.refunds), self.currency)
        if refunded != self.total_refunded:
            raise InvariantViolation(
                f"order {self.order_number}: refund records sum {refunded.amount} != "
                f"total_refunded {self.total_refunded.amount}"
            )
        active = [discount for discount in self.discounts if discount.active]
        if len(active) > 1:
            raise InvariantViolation(f"order {self.order_number}: more than one active discount")

        if self.items:
            item_subtotal = Money.sum((item.subtotal for item in self.items), self.currency)
            item_discount = Money.sum((item.discount_amount for item in self.items), self.currency)
            item_tax = Money.sum((item.tax_amount for item in self.items), self.currency)
            if item_subtotal != self.subtotal:
                raise InvariantViolation(f"order {self.order_number}: item subtotals do not sum to subtotal")
            if item_discount != self.discount_total:
                raise InvariantViolation(f"order {self.order_number}: item discounts do not sum to discount_total")
            if item_tax != self.tax_total:
                raise InvariantViolation(f"order {self.order_number}: item taxes do not sum to tax_total")
        for item in self.items:
            if not 0 <= item.fulfilled_quantity <= item.quantity:
                raise InvariantViolation(
                    f"order {self.order_number}: item {item.product_sku} fulfilled_quantity out of range"
                )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_email": self.customer_email,
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "fulfillment_status": self.fulfillment_status.value,
            "currency": self.currency,
            "subtotal": self.subtotal.amount,
            "shipping_total": self.shipping_total.amount,
            "tax_total": self.tax_total.amount,
            "discount_total": self.discount_total.amount,
            "total": self.total.amount,
            "total_refunded": self.total_refunded.amount,
            "tracking_number": self.shipping.tracking_number,
            "carrier": self.shipping.carrier,
        }
