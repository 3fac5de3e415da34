from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from settlement.api.routes_admin import router as admin_router
from settlement.api.routes_orders import router as orders_router
from settlement.api.routes_webhooks import router as webhooks_router
from settlement.core.config import get_settings
from settlement.core.errors import OrderCreationError, OrderNotFound, TransientDependencyError, ValidationError
from settlement.core.logging import configure_logging
from settlement.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    if settings.document_backend == "sql":
        init_db()
    logger.info(
        "settlement ready: store=%s payments=%s notifications=%s",
        settings.document_backend,
        settings.payment_backend,
        settings.notification_backend,
    )


@app.exception_handler(ValidationError)
async def validation_handler(_: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "error": "validation"})


@app.exception_handler(OrderNotFound)
async def order_not_found_handler(_: Request, exc: OrderNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc), "error": "order_not_found"})


@app.exception_handler(OrderCreationError)
async def order_creation_handler(_: Request, exc: OrderCreationError):
    logger.error("order creation failed: %s", exc)
    return JSONResponse(status_code=502, content={"detail": str(exc), "error": "order_creation"})


@app.exception_handler(TransientDependencyError)
async def dependency_handler(_: Request, exc: TransientDependencyError):
    logger.error("dependency failure: %s", exc)
    return JSONResponse(status_code=502, content={"detail": str(exc), "error": "dependency_unavailable"})


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(webhooks_router)
app.include_router(orders_router)
app.include_router(admin_router)
