from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Protocol

from orderflow.core.config import Settings, get_settings
from orderflow.domain.orders.aggregates import Address, ShippingMethod
from orderflow.domain.orders.money import Money


@dataclass(frozen=True)
class CartLine:
    product_id: str
    unit_price: Money
    quantity: int

    @property
    def line_subtotal(self) -> Money:
        return self.unit_price.scale(self.quantity)


@dataclass(frozen=True)
class PricingQuote:
    subtotal: Money
    shipping_cost: Money
    tax_amount: Money


@dataclass(frozen=True)
class ShippingQuote:
    method: ShippingMethod
    cost: Money
    estimated_delivery_days: int
    carrier: str


@dataclass(frozen=True)
class TaxQuote:
    total_tax: Money
    rate: Decimal
    jurisdiction: str
    breakdown: list[dict] = field(default_factory=list)


class ShippingRateProvider(Protocol):
    def base_cost(self, address: Address, method: ShippingMethod) -> Money:
        ...


class TaxRateProvider(Protocol):
    def rate_for(self, address: Address) -> Decimal:
        ...


class TableShippingRates:
    def __init__(self, costs: dict[str, int], currency: str):
        self.costs = costs
        self.currency = currency

    def base_cost(self, address: Address, method: ShippingMethod) -> Money:
        return Money(int(self.costs.get(ShippingMethod(method).value, 0)), self.currency)


class TableTaxRates:
    def __init__(self, rates: dict[str, str]):
        self.rates = {key.upper(): Decimal(str(value)) for key, value in rates.items()}

    def rate_for(self, address: Address) -> Decimal:
        return self.rates.get((address.state_province or "").strip().upper(), Decimal("0"))


class PricingCalculator:
    def __init__(
        self,
        settings: Settings | None = None,
        shipping_rates: ShippingRateProvider | None = None,
        tax_rates: TaxRateProvider | None = None,
    ):
        self.settings = settings or get_settings()
        self.currency = self.settings.currency
        self.shipping_rates = shipping_rates or TableShippingRates(self.settings.shipping_costs, self.currency)
        self.tax_rates = tax_rates or TableTaxRates(self.settings.tax_rates)

    def zero(self) -> Money:
        return Money.zero(self.currency)

    def subtotal(self, cart: Iterable[CartLine]) -> Money:
        return Money.sum((line.line_subtotal for line in cart), self.currency)

    def _is_domestic(self, address: Address) -> bool:
        return (address.country or "").strip().upper() == self.settings.domestic_country.upper()

    def quote_shipping(self, subtotal: Money, address: Address, method: ShippingMethod) -> ShippingQuote:
        method = ShippingMethod(method)
        cost = self.shipping_rates.base_cost(address, method)
        threshold = Money(self.settings.free_shipping_threshold, self.currency)
        if method == ShippingMethod.STANDARD and subtotal >= threshold:
            cost = self.zero()
        if method != ShippingMethod.PICKUP and not self._is_domestic(address):
            cost = cost + Money(self.settings.international_surcharge, self.currency)
        return ShippingQuote(
            method=method,
            cost=cost,
            estimated_delivery_days=int(self.settings.shipping_delivery_days.get(method.value, 5)),
            carrier=self.settings.shipping_carrier,
        )

    def quote_tax(self, taxable: Money, address: Address) -> TaxQuote:
        rate = self.tax_rates.rate_for(address)
        total_tax = taxable.apply_rate(rate)
        return TaxQuote(
            total_tax=total_tax,
            rate=rate,
            jurisdiction=(address.state_province or "").strip().upper(),
            breakdown=[{"type": "state_tax", "rate": str(rate * 100), "amount": total_tax.amount}],
        )

    def calculate(
        self,
        cart: list[CartLine],
        address: Address,
        method: ShippingMethod,
        discount: Money | None = None,
        shipping_waived: bool = False,
    ) -> PricingQuote:
        """Price a cart; ``discount`` is taken off the subtotal before tax."""
        if not cart:
            return PricingQuote(subtotal=self.zero(), shipping_cost=self.zero(), tax_amount=self.zero())

        subtotal = self.subtotal(cart)
        discount = (discount or self.zero()).clamp(self.zero(), subtotal)
        shipping = self.quote_shipping(subtotal, address, method).cost
        if shipping_waived:
            shipping = self.zero()
        tax = self.quote_tax(subtotal - discount, address).total_tax
        return PricingQuote(subtotal=subtotal, shipping_cost=shipping, tax_amount=tax)
