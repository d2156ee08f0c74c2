from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from uuid import uuid4

import httpx

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import PaymentError
from orderflow.domain.orders.money import Money

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["success", "cancelled", "error"]


@dataclass
class PaymentIntent:
    id: str
    client_secret: str
    amount: Money
    backend: str


@dataclass
class PaymentOutcome:
    status: OutcomeStatus
    charge_id: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    receipt_url: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class PaymentGateway(Protocol):
    backend: str

    def create_intent(self, amount: Money, metadata: dict[str, str]) -> PaymentIntent:
        ...

    def present_payment(self, intent: PaymentIntent) -> PaymentOutcome:
        ...

    def refund(self, intent_id: str, amount: Money, idempotency_key: str | None = None) -> str:
        ...


class FakePaymentGateway:
    """Deterministic in-process gateway.

    ``outcomes`` is consumed front to back by ``present_payment``; once it is
    empty every payment succeeds with a test card. Refunds sent with an
    idempotency key already seen return the earlier refund id.
    """

    backend = "fake"

    def __init__(self, outcomes: list[PaymentOutcome] | None = None):
        self.outcomes = list(outcomes or [])
        self.intents: dict[str, PaymentIntent] = {}
        self.refunds: list[tuple[str, Money, str]] = []
        self.refund_keys: dict[str, str] = {}

    def create_intent(self, amount: Money, metadata: dict[str, str]) -> PaymentIntent:
        intent_id = f"pi_fake_{uuid4().hex[:16]}"
        intent = PaymentIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid4().hex[:8]}",
            amount=amount,
            backend=self.backend,
        )
        self.intents[intent_id] = intent
        return intent

    def present_payment(self, intent: PaymentIntent) -> PaymentOutcome:
        if self.outcomes:
            return self.outcomes.pop(0)
        return PaymentOutcome(
            status="success",
            charge_id=f"ch_fake_{intent.id[-8:]}",
            card_brand="visa",
            card_last4="4242",
            receipt_url=None,
        )

    def refund(self, intent_id: str, amount: Money, idempotency_key: str | None = None) -> str:
        if idempotency_key is not None and idempotency_key in self.refund_keys:
            return self.refund_keys[idempotency_key]
        refund_id = f"re_fake_{uuid4().hex[:16]}"
        self.refunds.append((intent_id, amount, refund_id))
        if idempotency_key is not None:
            self.refund_keys[idempotency_key] = refund_id
        return refund_id


class StripePaymentGateway:
    """Stripe PaymentIntents over the REST API.

    The payment sheet itself runs on the client; ``present_payment`` reads
    back the intent the client confirmed and maps its status.
    """

    backend = "stripe"

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.stripe_api_base.rstrip("/")
        self.timeout = max(1, self.settings.stripe_timeout_seconds)

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.settings.stripe_secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, url, headers=self._headers(idempotency_key), data=data, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:200]
            raise PaymentError(f"stripe {method} {path} failed with {exc.response.status_code}: {detail}") from exc
        except httpx.HTTPError as exc:
            raise PaymentError(f"stripe {method} {path} unreachable: {exc}") from exc
        payload = response.json()
        if not isinstance(payload, dict):
            raise PaymentError(f"stripe {method} {path} returned unexpected payload")
        return payload

    def create_intent(self, amount: Money, metadata: dict[str, str]) -> PaymentIntent:
        form: dict[str, Any] = {
            "amount": amount.amount,
            "currency": amount.currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
        payload = self._request("POST", "/v1/payment_intents", data=form)
        intent_id = payload.get("id")
        client_secret = payload.get("client_secret")
        if not intent_id or not client_secret:
            raise PaymentError(f"stripe intent response missing id/client_secret: {payload.get('object')}")
        return PaymentIntent(id=str(intent_id), client_secret=str(client_secret), amount=amount, backend=self.backend)

    def present_payment(self, intent: PaymentIntent) -> PaymentOutcome:
        try:
            payload = self._request("GET", f"/v1/payment_intents/{intent.id}", params={"expand[]": "latest_charge"})
        except PaymentError as exc:
            return PaymentOutcome(status="error", error=exc.message)

        status = payload.get("status")
        if status == "canceled":
            return PaymentOutcome(status="cancelled")
        if status != "succeeded":
            last_error = payload.get("last_payment_error") or {}
            return PaymentOutcome(status="error", error=last_error.get("message") or f"payment intent is {status}")

        charge = payload.get("latest_charge")
        if not isinstance(charge, dict):
            return PaymentOutcome(status="success", charge_id=charge if isinstance(charge, str) else None)
        card = (charge.get("payment_method_details") or {}).get("card") or {}
        return PaymentOutcome(
            status="success",
            charge_id=charge.get("id"),
            card_brand=card.get("brand"),
            card_last4=card.get("last4"),
            receipt_url=charge.get("receipt_url"),
        )

    def refund(self, intent_id: str, amount: Money, idempotency_key: str | None = None) -> str:
        payload = self._request(
            "POST",
            "/v1/refunds",
            data={"payment_intent": intent_id, "amount": amount.amount},
            idempotency_key=idempotency_key,
        )
        refund_id = payload.get("id")
        if not refund_id:
            raise PaymentError("stripe refund response missing id")
        return str(refund_id)


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    cfg = settings or get_settings()
    if cfg.payment_backend == "stripe":
        try:
            return StripePaymentGateway(cfg)
        except Exception as exc:
            if cfg.payment_strict:
                raise RuntimeError(f"stripe gateway unavailable in strict mode: {exc}") from exc
            logger.warning("stripe gateway unavailable, falling back to fake: %s", exc)
    elif cfg.payment_backend != "fake":
        if cfg.payment_strict:
            raise RuntimeError(f"unknown payment backend in strict mode: {cfg.payment_backend}")
        logger.warning("unknown payment backend %s, falling back to fake", cfg.payment_backend)
    return FakePaymentGateway()
