import hmac
import time
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel

from agents.dunning.cycles import (
    build_context,
    run_active_campaigns,
    run_auto_create_cycle,
    run_campaign_cycle,
    run_payment_check_cycle,
    run_task_cycle,
)
from agents.dunning.errors import NotFoundError
from agents.dunning.events import apply_delivery_event
from agents.dunning.executor import DunningContext
from agents.dunning.replies import ReplyHandler
from backend.core.config import settings
from backend.core.observability import bind_trace
from backend.core.observability.logging import logger
from backend.core.observability.metrics import observe_duration

router = APIRouter(prefix="/api")


class InboundReply(BaseModel):
    from_email: str
    text: str
    subject: str | None = None
    in_reply_to_log_id: str | None = None


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _auth_cron(authorization: str | None) -> None:
    if not settings.CRON_SECRET:
        _error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "CRON_SECRET is not configured")
    if not authorization or not authorization.lower().startswith("bearer "):
        _error(
            status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing or invalid Authorization header"
        )
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode(), settings.CRON_SECRET.encode()):
        _error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Invalid cron secret")


def _auth_webhook(secret: str | None) -> None:
    if not settings.WEBHOOK_SECRET:
        return
    if not secret or not hmac.compare_digest(secret.encode(), settings.WEBHOOK_SECRET.encode()):
        _error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Invalid webhook secret")


@lru_cache(maxsize=1)
def get_dunning_context() -> DunningContext:
    """Process-wide collaborators for request handlers."""
    return build_context()


@router.get("/cron/execute-campaigns", response_model=dict[str, Any])
def cron_execute_campaigns(
    authorization: str | None = Header(None, alias="Authorization"),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    _auth_cron(authorization)
    bind_trace(trace_header)
    return run_active_campaigns(ctx).to_dict()


@router.get("/cron/execute-scheduled-tasks", response_model=dict[str, Any])
def cron_execute_tasks(
    batch_size: int | None = Query(None, ge=1, le=500),
    authorization: str | None = Header(None, alias="Authorization"),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    _auth_cron(authorization)
    bind_trace(trace_header)
    return run_task_cycle(ctx, batch_size).to_dict()


@router.get("/cron/check-payments", response_model=dict[str, Any])
def cron_check_payments(
    authorization: str | None = Header(None, alias="Authorization"),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    _auth_cron(authorization)
    bind_trace(trace_header)
    return run_payment_check_cycle(ctx).to_dict()


@router.get("/cron/auto-create-campaigns", response_model=dict[str, Any])
def cron_auto_create(
    org_id: str | None = Query(None),
    authorization: str | None = Header(None, alias="Authorization"),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    _auth_cron(authorization)
    bind_trace(trace_header, org_id)
    return run_auto_create_cycle(ctx, org_id).to_dict()


@router.post("/campaigns/{campaign_id}/execute", response_model=dict[str, Any])
def execute_campaign(
    campaign_id: str,
    authorization: str | None = Header(None, alias="Authorization"),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    _auth_cron(authorization)
    bind_trace(trace_header)
    try:
        return run_campaign_cycle(ctx, campaign_id).to_dict()
    except NotFoundError as e:
        _error(status.HTTP_404_NOT_FOUND, "not_found", str(e))


@router.post("/webhooks/inbound", response_model=dict[str, Any])
def inbound_reply(
    body: InboundReply,
    webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    trace_header: str | None = Header(None, alias="X-Trace-ID"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    start = time.time()
    _auth_webhook(webhook_secret)
    bind_trace(trace_header)
    result = ReplyHandler(ctx).handle_reply(
        body.from_email, body.text, body.subject, body.in_reply_to_log_id
    )
    observe_duration(start, "inbound_reply_duration_ms")
    logger.info("inbound_reply_received", extra={"handled": result.handled})
    return {"received": True, **result.to_dict()}


@router.post("/webhooks/brevo", response_model=dict[str, Any])
def brevo_event(
    payload: dict[str, Any],
    webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    ctx: DunningContext = Depends(get_dunning_context),
):
    _auth_webhook(webhook_secret)
    try:
        result = apply_delivery_event(ctx.store, payload)
    except ValueError as e:
        _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_event", str(e))
    return {"received": True, **result}
