from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from orderflow.api.utils import get_order_service, iso, parse_period
from orderflow.services.orders import OrderService

router = APIRouter(tags=["reports"])


@router.get("/reports/orders/metrics")
def get_order_metrics(
    period: str | None = Query(default=None, description="ISO period: start/end"),
    service: OrderService = Depends(get_order_service),
):
    start = end = None
    if period:
        try:
            start, end = parse_period(period)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    outcome = service.get_order_metrics(start, end)
    if outcome.error:
        raise outcome.error
    return {
        "period": {"start": iso(start), "end": iso(end)},
        "metrics": outcome.result.to_dict(),
    }
