from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderflow.api.routes_orders import router as orders_router
from orderflow.api.routes_reports import router as reports_router
from orderflow.core.config import get_settings
from orderflow.core.errors import (
    InvalidTransition,
    NotFoundError,
    OrderError,
    PaymentError,
    PersistenceError,
    ValidationError,
)
from orderflow.core.logging import configure_logging
from orderflow.persistence.pg import init_db
from orderflow.services.orders import build_order_service

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

ERROR_STATUS_CODES: list[tuple[type[OrderError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (PaymentError, 402),
    (PersistenceError, 503),
]

app = FastAPI(title="Orderflow")


def status_code_for(exc: OrderError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    if getattr(app.state, "order_service", None) is None:
        app.state.order_service = build_order_service(settings)
    service = app.state.order_service
    logger.info(
        "order service ready: payment_backend=%s notifier_backend=%s currency=%s",
        service.gateway.backend,
        service.notifier.backend,
        service.calculator.currency,
    )


@app.exception_handler(OrderError)
async def order_error_handler(_: Request, exc: OrderError):
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(reports_router)
