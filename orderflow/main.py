from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderflow.api.routes_orders import router as orders_router
from orderflow.api.routes_webhooks import router as webhooks_router
from orderflow.core.config import get_settings
from orderflow.core.errors import ConfigurationError
from orderflow.core.logging import configure_logging
from orderflow.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    if not settings.payments_webhook_secret and not settings.webhook_signature_bypass:
        logger.warning("OF_PAYMENTS_WEBHOOK_SECRET is not set; payment webhooks will be rejected with 500")


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(_: Request, exc: ConfigurationError):
    return JSONResponse(status_code=exc.status_code, content={"received": False, **exc.to_dict()})


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(webhooks_router)
app.include_router(orders_router)
