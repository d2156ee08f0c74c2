from __future__ import annotations

import re
import secrets
from dataclasses import dataclass

from pydantic import BaseModel, Field

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import ValidationError
from orderflow.domain.orders.aggregates import DiscountKind, DiscountRecord
from orderflow.domain.orders.money import Money

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6,12}$")
PROMO_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
REFERRAL_CODE = "REFERRAL"


class PromoDefinition(BaseModel):
    kind: DiscountKind
    value: int = Field(ge=0, description="percent for percentage codes, int minor units otherwise")
    description: str


@dataclass(frozen=True)
class DiscountResolution:
    discount_amount: Money
    description: str | None
    code: str | None = None
    kind: DiscountKind | None = None
    value: int = 0
    shipping_waived: bool = False
    amount_saved: Money | None = None

    @property
    def applies(self) -> bool:
        return self.code is not None

    def to_record(self) -> DiscountRecord | None:
        if not self.applies:
            return None
        return DiscountRecord(
            code=self.code,
            kind=self.kind,
            value=self.value,
            amount_saved=self.amount_saved or self.discount_amount,
            description=self.description or "",
            active=True,
        )


def normalize_promo_code(code: str | None) -> str | None:
    if code is None:
        return None
    normalized = code.strip().upper()
    return normalized or None


def is_likely_valid_promo(code: str | None) -> bool:
    normalized = normalize_promo_code(code)
    return bool(normalized) and PROMO_CODE_PATTERN.match(normalized) is not None


def generate_promo_code(length: int = 8) -> str:
    if not 6 <= length <= 12:
        raise ValueError("promo code length must be between 6 and 12")
    return "".join(secrets.choice(PROMO_CODE_ALPHABET) for _ in range(length))


class DiscountResolver:
    """Single source of truth for promo/referral discounts; they never stack."""

    def __init__(self, settings: Settings | None = None, catalog: dict[str, dict] | None = None):
        self.settings = settings or get_settings()
        raw = catalog if catalog is not None else self.settings.promo_codes
        self.catalog = {code.upper(): PromoDefinition.model_validate(spec) for code, spec in raw.items()}

    def lookup(self, code: str | None) -> tuple[str, PromoDefinition]:
        normalized = normalize_promo_code(code)
        if not normalized or PROMO_CODE_PATTERN.match(normalized) is None:
            raise ValidationError(f"malformed promo code: {code!r}", field="promo_code")
        definition = self.catalog.get(normalized)
        if definition is None:
            raise ValidationError(f"unknown promo code: {normalized}", field="promo_code")
        return normalized, definition

    def resolve(
        self,
        subtotal: Money,
        promo_code: str | None = None,
        referral_eligible: bool = False,
        shipping_cost: Money | None = None,
    ) -> DiscountResolution:
        zero = Money.zero(subtotal.currency)
        code = normalize_promo_code(promo_code)
        if code is None and not referral_eligible:
            return DiscountResolution(discount_amount=zero, description=None)

        referral_pct = self.settings.referral_discount_percent
        if code is None:
            amount = subtotal.percent(referral_pct).clamp(zero, subtotal)
            return DiscountResolution(
                discount_amount=amount,
                description=f"{referral_pct}% referral discount",
                code=REFERRAL_CODE,
                kind=DiscountKind.PERCENTAGE,
                value=referral_pct,
            )

        code, definition = self.lookup(code)
        if referral_eligible:
            # Code kept for attribution; magnitude is the single referral discount.
            amount = subtotal.percent(referral_pct).clamp(zero, subtotal)
            return DiscountResolution(
                discount_amount=amount,
                description=definition.description,
                code=code,
                kind=DiscountKind.PERCENTAGE,
                value=referral_pct,
            )

        if definition.kind == DiscountKind.FREE_SHIPPING:
            waived = shipping_cost or zero
            return DiscountResolution(
                discount_amount=zero,
                description=definition.description,
                code=code,
                kind=definition.kind,
                value=definition.value,
                shipping_waived=True,
                amount_saved=waived,
            )

        if definition.kind == DiscountKind.PERCENTAGE:
            amount = subtotal.percent(definition.value)
        else:
            amount = Money(definition.value, subtotal.currency)
        return DiscountResolution(
            discount_amount=amount.clamp(zero, subtotal),
            description=definition.description,
            code=code,
            kind=definition.kind,
            value=definition.value,
        )


def resolve_discount(
    subtotal: Money,
    promo_code: str | None = None,
    referral_eligible: bool = False,
    shipping_cost: Money | None = None,
) -> DiscountResolution:
    return DiscountResolver().resolve(
        subtotal,
        promo_code=promo_code,
        referral_eligible=referral_eligible,
        shipping_cost=shipping_cost,
    )
