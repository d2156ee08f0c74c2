from __future__ import annotations

from pydantic import BaseModel, Field

from orderflow.domain.orders.aggregates import (
    Address,
    FulfillmentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ShippingMethod,
)


class AddressInput(BaseModel):
    first_name: str = ""
    last_name: str = ""
    company: str | None = None
    street_line1: str = ""
    street_line2: str | None = None
    city: str = ""
    state_province: str = ""
    postal_code: str = ""
    country: str = "US"
    phone: str = ""
    is_residential: bool = True

    def to_address(self) -> Address:
        return Address(
            first_name=self.first_name.strip(),
            last_name=self.last_name.strip(),
            company=self.company,
            street_line1=self.street_line1.strip(),
            street_line2=self.street_line2,
            city=self.city.strip(),
            state_province=self.state_province.strip().upper(),
            postal_code=self.postal_code.strip(),
            country=self.country.strip().upper(),
            phone=self.phone.strip(),
            is_residential=self.is_residential,
        )


class OrderItemInput(BaseModel):
    product_id: str
    product_sku: str
    product_name: str
    product_image: str | None = None
    variant_id: str | None = None
    variant_title: str | None = None
    unit_price: int = Field(description="int minor units")
    compare_at_price: int | None = Field(default=None, description="int minor units")
    quantity: int


class CreateOrderRequest(BaseModel):
    customer_email: str
    customer_phone: str
    customer_id: str | None = None
    customer_note: str | None = None
    billing_address: AddressInput
    shipping_address: AddressInput
    items: list[OrderItemInput]
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    payment_method: PaymentMethod = PaymentMethod.CARD
    promo_code: str | None = None
    referral_eligible: bool = False
    source: str | None = None
    tags: list[str] = Field(default_factory=list)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    fulfillment_status: FulfillmentStatus | None = None
    admin_notes: str | None = None
    idempotency_key: str | None = None


class TrackingInfoRequest(BaseModel):
    carrier: str
    tracking_number: str
    tracking_url: str | None = None


class RefundRequest(BaseModel):
    amount: int = Field(description="int minor units")
    reason: str
    refund_id: str | None = None
    notes: str | None = None


class ShippingCalculationRequest(BaseModel):
    items: list[OrderItemInput]
    shipping_address: AddressInput
    shipping_method: ShippingMethod = ShippingMethod.STANDARD


class TaxCalculationRequest(BaseModel):
    items: list[OrderItemInput]
    shipping_address: AddressInput
    discount: int = Field(default=0, ge=0, description="int minor units taken off before tax")
