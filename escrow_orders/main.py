from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from escrow_orders.api.routes_disputes import router as disputes_router
from escrow_orders.api.routes_ledger import router as ledger_router
from escrow_orders.api.routes_orders import router as orders_router
from escrow_orders.api.routes_pricing import router as pricing_router
from escrow_orders.api.routes_settlements import router as settlements_router
from escrow_orders.core.config import get_settings
from escrow_orders.core.logging import configure_logging
from escrow_orders.domain.errors import EngineError
from escrow_orders.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info(
        "escrow orders ready: env=%s shipping=%s payment_rail=%s",
        settings.env,
        settings.shipping_resolver,
        settings.payment_rail,
    )


@app.exception_handler(EngineError)
async def engine_error_handler(_: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": str(exc),
            "error": "invalid_request",
        },
    )


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(pricing_router)
app.include_router(settlements_router)
app.include_router(disputes_router)
app.include_router(ledger_router)
