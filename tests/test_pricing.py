from __future__ import annotations

from decimal import Decimal

from builders import make_address
from orderflow.core.config import get_settings
from orderflow.domain.orders.aggregates import Address, ShippingMethod
from orderflow.domain.orders.money import Money
from orderflow.domain.orders.pricing import CartLine, PricingCalculator


def _cart(*prices: int) -> list[CartLine]:
    return [CartLine(product_id=f"p{i}", unit_price=Money(price), quantity=1) for i, price in enumerate(prices)]


def _calculator() -> PricingCalculator:
    return PricingCalculator(get_settings())


def test_scenario_a_free_standard_shipping_and_california_tax():
    quote = _calculator().calculate(_cart(10000), make_address("CA").to_address(), ShippingMethod.STANDARD)
    assert quote.subtotal == Money(10000)
    assert quote.shipping_cost == Money(0)
    assert quote.tax_amount == Money(875)
    assert (quote.subtotal + quote.shipping_cost + quote.tax_amount).amount == 10875


def test_scenario_b_tax_is_on_post_discount_subtotal():
    quote = _calculator().calculate(
        _cart(2000),
        make_address("TX").to_address(),
        ShippingMethod.STANDARD,
        discount=Money(200),
    )
    assert quote.shipping_cost == Money(999)
    assert quote.tax_amount == Money(113)
    total = quote.subtotal + quote.shipping_cost + quote.tax_amount - Money(200)
    assert total.amount == 2912


def test_free_shipping_boundary():
    calculator = _calculator()
    address = make_address("OR").to_address()
    at_threshold = calculator.quote_shipping(Money(5000), address, ShippingMethod.STANDARD)
    below = calculator.quote_shipping(Money(4999), address, ShippingMethod.STANDARD)
    assert at_threshold.cost == Money(0)
    assert below.cost == Money(999)


def test_only_standard_shipping_is_waived():
    calculator = _calculator()
    address = make_address("OR").to_address()
    assert calculator.quote_shipping(Money(10000), address, ShippingMethod.EXPRESS).cost == Money(1999)
    assert calculator.quote_shipping(Money(10000), address, ShippingMethod.OVERNIGHT).cost == Money(3999)
    assert calculator.quote_shipping(Money(10000), address, ShippingMethod.PICKUP).cost == Money(0)


def test_international_surcharge_applies_even_when_waived():
    calculator = _calculator()
    address = make_address("ON", country="CA").to_address()
    assert calculator.quote_shipping(Money(10000), address, ShippingMethod.STANDARD).cost == Money(1000)
    assert calculator.quote_shipping(Money(100), address, ShippingMethod.EXPRESS).cost == Money(2999)
    assert calculator.quote_shipping(Money(100), address, ShippingMethod.PICKUP).cost == Money(0)


def test_shipping_quote_carries_delivery_estimate():
    quote = _calculator().quote_shipping(Money(100), make_address().to_address(), ShippingMethod.EXPRESS)
    assert quote.estimated_delivery_days == 2
    assert quote.carrier == "Standard Shipping"


def test_unknown_jurisdiction_is_untaxed():
    quote = _calculator().quote_tax(Money(10000), make_address("ZZ").to_address())
    assert quote.total_tax == Money(0)
    assert quote.rate == Decimal("0")


def test_tax_breakdown_names_state_tax():
    quote = _calculator().quote_tax(Money(10000), make_address("ny").to_address())
    assert quote.total_tax == Money(800)
    assert quote.jurisdiction == "NY"
    assert quote.breakdown == [{"type": "state_tax", "rate": "8.00", "amount": 800}]


def test_empty_cart_prices_to_zero():
    quote = _calculator().calculate([], make_address().to_address(), ShippingMethod.OVERNIGHT)
    assert quote.subtotal.is_zero()
    assert quote.shipping_cost.is_zero()
    assert quote.tax_amount.is_zero()


def test_discount_is_clamped_to_subtotal():
    quote = _calculator().calculate(
        _cart(1000),
        make_address("CA").to_address(),
        ShippingMethod.PICKUP,
        discount=Money(5000),
    )
    assert quote.tax_amount == Money(0)


def test_rate_providers_are_pluggable():
    class FlatTax:
        def rate_for(self, address: Address) -> Decimal:
            return Decimal("0.10")

    class FlatShipping:
        def base_cost(self, address: Address, method: ShippingMethod) -> Money:
            return Money(250)

    calculator = PricingCalculator(get_settings(), shipping_rates=FlatShipping(), tax_rates=FlatTax())
    quote = calculator.calculate(_cart(1000), make_address("CA").to_address(), ShippingMethod.EXPRESS)
    assert quote.shipping_cost == Money(250)
    assert quote.tax_amount == Money(100)
