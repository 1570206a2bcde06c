from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from orderflow.core.config import get_settings
from orderflow.domain.email.client import EmailClient, build_email_client
from orderflow.webhooks.context import PipelineContext
from orderflow.webhooks.pipeline import WebhookPipeline

router = APIRouter(tags=["webhooks"])

_NOT_ALLOWED = ["GET", "PUT", "PATCH", "DELETE"]


def get_email_client() -> EmailClient | None:
    return build_email_client(get_settings())


def get_pipeline_context(email_client: EmailClient | None = Depends(get_email_client)) -> PipelineContext:
    return PipelineContext(settings=get_settings(), email_client=email_client)


def _method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"received": False, "error": "method_not_allowed"},
        headers={"Allow": "POST"},
    )


@router.post("/webhooks/payments")
async def payments_webhook(request: Request, ctx: PipelineContext = Depends(get_pipeline_context)):
    body = await request.body()
    signature = request.headers.get("stripe-signature") or request.headers.get("x-webhook-signature")
    result = await run_in_threadpool(WebhookPipeline.for_payments(ctx).process, body, signature)
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/webhooks/carrier")
async def carrier_webhook(request: Request, ctx: PipelineContext = Depends(get_pipeline_context)):
    body = await request.body()
    signature = request.headers.get("x-hmac-signature") or request.headers.get("x-webhook-signature")
    result = await run_in_threadpool(WebhookPipeline.for_carrier(ctx).process, body, signature)
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.api_route("/webhooks/payments", methods=_NOT_ALLOWED, include_in_schema=False)
def payments_wrong_method():
    return _method_not_allowed()


@router.api_route("/webhooks/carrier", methods=_NOT_ALLOWED, include_in_schema=False)
def carrier_wrong_method():
    return _method_not_allowed()
