from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from orderflow.api.utils import get_order_service, serialize_order
from orderflow.domain.orders.aggregates import OrderStatus
from orderflow.domain.orders.commands import (
    CreateOrderRequest,
    RefundRequest,
    ShippingCalculationRequest,
    TaxCalculationRequest,
    TrackingInfoRequest,
    UpdateOrderStatusRequest,
)
from orderflow.services.orders import OrderService

router = APIRouter(tags=["orders"])


@router.post("/orders", status_code=201)
def create_order(req: CreateOrderRequest, service: OrderService = Depends(get_order_service)):
    outcome = service.create_order(req)
    if outcome.error:
        raise outcome.error
    return serialize_order(outcome.result)


def _payment_response(outcome) -> dict:
    if outcome.error is not None:
        if getattr(outcome.error, "cancelled", False):
            return {
                "cancelled": True,
                "order": serialize_order(outcome.result) if outcome.result else None,
                **outcome.error.to_dict(),
            }
        raise outcome.error
    return {"cancelled": False, "order": serialize_order(outcome.result)}


@router.post("/orders/checkout")
def checkout(req: CreateOrderRequest, service: OrderService = Depends(get_order_service)):
    return _payment_response(service.checkout(req))


@router.post("/orders/{order_id}/payment/retry")
def retry_payment(order_id: str, service: OrderService = Depends(get_order_service)):
    return _payment_response(service.retry_payment(order_id))


@router.get("/orders")
def list_customer_orders(
    email: str = Query(...),
    status: OrderStatus | None = Query(default=None),
    limit: int | None = Query(default=None, ge=0, le=500),
    offset: int = Query(default=0, ge=0),
    service: OrderService = Depends(get_order_service),
):
    outcome = service.list_customer_orders(email, status=status, limit=limit, offset=offset)
    if outcome.error:
        raise outcome.error
    page = outcome.result
    return {
        "count": len(page.orders),
        "total_count": page.total_count,
        "orders": [serialize_order(order) for order in page.orders],
    }


@router.get("/orders/{order_id}")
def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    outcome = service.get_order_by_id(order_id)
    if outcome.error:
        raise outcome.error
    return serialize_order(outcome.result)


@router.post("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    req: UpdateOrderStatusRequest,
    service: OrderService = Depends(get_order_service),
):
    outcome = service.update_order_status(order_id, req)
    if outcome.error:
        raise outcome.error
    return serialize_order(outcome.result)


@router.post("/orders/{order_id}/tracking")
def add_tracking_info(order_id: str, req: TrackingInfoRequest, service: OrderService = Depends(get_order_service)):
    outcome = service.add_tracking_info(order_id, req)
    if outcome.error:
        raise outcome.error
    return serialize_order(outcome.result)


@router.post("/orders/{order_id}/refunds")
def create_refund(order_id: str, req: RefundRequest, service: OrderService = Depends(get_order_service)):
    outcome = service.create_refund(order_id, req)
    if outcome.error:
        raise outcome.error
    return serialize_order(outcome.result)


@router.post("/pricing/shipping")
def calculate_shipping(req: ShippingCalculationRequest, service: OrderService = Depends(get_order_service)):
    outcome = service.calculate_shipping(req)
    if outcome.error:
        raise outcome.error
    quote = outcome.result
    return {
        "method": quote.method.value,
        "cost": quote.cost.amount,
        "currency": quote.cost.currency,
        "estimated_delivery_days": quote.estimated_delivery_days,
        "carrier": quote.carrier,
    }


@router.post("/pricing/tax")
def calculate_tax(req: TaxCalculationRequest, service: OrderService = Depends(get_order_service)):
    outcome = service.calculate_tax(req)
    if outcome.error:
        raise outcome.error
    quote = outcome.result
    return {
        "total_tax": quote.total_tax.amount,
        "currency": quote.total_tax.currency,
        "rate": str(quote.rate),
        "jurisdiction": quote.jurisdiction,
        "breakdown": quote.breakdown,
    }
