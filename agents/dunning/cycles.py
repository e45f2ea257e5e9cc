"""Triggers invoked by cron callers, the HTTP layer and the CLI.

Each trigger is idempotent under re-invocation, isolates failures per
item and returns a ``CycleResult``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy.engine import Engine

from backend.core.database import get_engine
from backend.core.observability.metrics import record_cycle_duration

from .dto import (
    Campaign,
    CampaignConfig,
    CampaignStats,
    CampaignStatus,
    CycleResult,
    Invoice,
    OutcomeStatus,
    TaskType,
)
from .executor import CampaignExecutor, DunningContext
from .risk import SweepSummary, classify_invoice_risk, summarize_risk
from .store import DunningStore
from .tasks import TaskRunner

logger = logging.getLogger(__name__)


def build_context(engine: Engine | None = None, **collaborators) -> DunningContext:
    """DunningContext over ``engine`` (default: the configured database)."""
    return DunningContext(store=DunningStore(engine or get_engine()), **collaborators)


def _timed(trigger: str, fn: Callable[[], CycleResult]) -> CycleResult:
    start = time.perf_counter()
    result = fn()
    duration_ms = (time.perf_counter() - start) * 1000
    record_cycle_duration(trigger, duration_ms)
    logger.info(
        "cycle_finished",
        extra={
            "trigger": trigger,
            "processed": result.processed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "duration_ms": round(duration_ms, 1),
        },
    )
    return result


def run_campaign_cycle(
    ctx: DunningContext, campaign_id: str, now: datetime | None = None
) -> CycleResult:
    """Execute one campaign; details hold one entry per invoice.

    Raises:
        NotFoundError: If the campaign does not exist
    """

    def cycle() -> CycleResult:
        result = CycleResult(trigger="campaign")
        summary = CampaignExecutor(ctx).execute_campaign(campaign_id, now)
        for outcome in summary.outcomes:
            detail = {"campaign_id": campaign_id, **outcome.to_dict()}
            if outcome.status == OutcomeStatus.FAILED:
                result.add_failure(detail)
            else:
                result.add_success(detail)
        result.info.update(
            campaign_id=campaign_id,
            sent=summary.sent,
            scheduled=summary.scheduled,
            skipped=summary.skipped,
            completed=summary.completed,
            reason=summary.reason,
        )
        return result

    return _timed("campaign", cycle)


def run_active_campaigns(ctx: DunningContext, now: datetime | None = None) -> CycleResult:
    """Execute every active campaign; one detail per campaign."""

    def cycle() -> CycleResult:
        result = CycleResult(trigger="campaigns")
        executor = CampaignExecutor(ctx)
        for campaign in ctx.store.list_campaigns(status=CampaignStatus.ACTIVE):
            try:
                summary = executor.execute_campaign(campaign.id, now)
            except Exception as e:
                logger.exception("campaign_cycle_failed", extra={"campaign_id": campaign.id})
                result.add_failure({"campaign_id": campaign.id, "error": str(e)})
                continue
            result.add_success(
                {
                    "campaign_id": campaign.id,
                    "processed": summary.processed,
                    "sent": summary.sent,
                    "scheduled": summary.scheduled,
                    "skipped": summary.skipped,
                    "failed": summary.failed,
                    "completed": summary.completed,
                }
            )
        return result

    return _timed("campaigns", cycle)


def run_task_cycle(
    ctx: DunningContext, max_batch: int | None = None, now: datetime | None = None
) -> CycleResult:
    """Requeue retryable failures, then claim and run due tasks."""
    now = now or ctx.now()

    def cycle() -> CycleResult:
        result = CycleResult(trigger="tasks")
        result.info["requeued"] = ctx.scheduler.requeue_retryable(now)
        runner = TaskRunner(ctx)
        for task in ctx.scheduler.claim(max_batch, now):
            try:
                ok, detail = runner.run(task, now)
            except Exception as e:
                logger.exception("task_settlement_failed", extra={"task_id": task.id})
                result.add_failure({"task_id": task.id, "error": str(e)})
                continue
            if ok:
                result.add_success(detail)
            else:
                result.add_failure(detail)
        return result

    return _timed("tasks", cycle)


def run_payment_check_cycle(ctx: DunningContext, now: datetime | None = None) -> CycleResult:
    """Complete active campaigns whose invoices are all paid."""

    def cycle() -> CycleResult:
        result = CycleResult(trigger="payments")
        executor = CampaignExecutor(ctx)
        for campaign in ctx.store.list_campaigns(status=CampaignStatus.ACTIVE):
            try:
                completed = executor.complete_if_paid(campaign)
            except Exception as e:
                logger.exception("payment_check_failed", extra={"campaign_id": campaign.id})
                result.add_failure({"campaign_id": campaign.id, "error": str(e)})
                continue
            result.add_success({"campaign_id": campaign.id, "completed": completed})
        result.info["completed"] = sum(1 for d in result.details if d.get("completed"))
        return result

    return _timed("payments", cycle)


def _create_customer_campaign(
    ctx: DunningContext, org_id: str, customer_id: str, invoices: list[Invoice], now: datetime
) -> dict:
    customer = ctx.store.get_customer(customer_id)
    if customer.stop_contact:
        return {"customer_id": customer_id, "created": False, "reason": "customer opted out"}

    org = ctx.org_config(org_id)
    config = CampaignConfig.from_dict(org.campaign_defaults.to_dict())
    invoice_ids = [inv.id for inv in invoices]
    campaign = ctx.store.insert_campaign(
        Campaign(
            id=str(uuid4()),
            org_id=org_id,
            name=f"Collection Campaign - {customer.name}",
            description=f"Auto-created campaign for {len(invoice_ids)} overdue invoice(s)",
            status=CampaignStatus.ACTIVE,
            config=config,
            target_invoice_ids=invoice_ids,
            stats=CampaignStats(
                total_invoices=len(invoice_ids),
                total_amount_cents=sum(inv.amount_due_cents for inv in invoices),
            ),
        )
    )

    scheduled = 0
    if customer.email:
        first_send = now + timedelta(minutes=org.first_email_delay_minutes)
        task_data = {"tone": config.stages[0].tone.value} if config.stages else {}
        for invoice in invoices:
            ctx.scheduler.enqueue(
                org_id,
                TaskType.SEND_EMAIL,
                first_send,
                campaign_id=campaign.id,
                invoice_id=invoice.id,
                customer_id=customer.id,
                task_data=task_data,
                metadata={"is_initial_email": True, "campaign_auto_created": True},
            )
            scheduled += 1

    logger.info(
        "campaign_auto_created",
        extra={"campaign_id": campaign.id, "invoices": len(invoice_ids), "scheduled": scheduled},
    )
    return {
        "customer_id": customer_id,
        "created": True,
        "campaign_id": campaign.id,
        "invoices": len(invoice_ids),
        "scheduled_sends": scheduled,
    }


def run_auto_create_cycle(
    ctx: DunningContext, org_id: str | None = None, now: datetime | None = None
) -> CycleResult:
    """Create one active campaign per customer with unassigned overdue invoices.

    Without ``org_id`` every organization that has invoices is processed.
    """
    now = now or ctx.now()

    def cycle() -> CycleResult:
        result = CycleResult(trigger="auto_create")
        org_ids = [org_id] if org_id else ctx.store.list_org_ids()
        for current_org in org_ids:
            try:
                today = now.astimezone(ctx.org_config(current_org).tzinfo).date()
                invoices = ctx.store.list_overdue_unassigned(current_org, today)
            except Exception as e:
                logger.exception("auto_create_org_failed", extra={"org_id": current_org})
                result.add_failure({"org_id": current_org, "error": str(e)})
                continue

            by_customer: dict[str, list[Invoice]] = {}
            for invoice in invoices:
                by_customer.setdefault(invoice.customer_id, []).append(invoice)

            for customer_id, customer_invoices in by_customer.items():
                try:
                    detail = _create_customer_campaign(
                        ctx, current_org, customer_id, customer_invoices, now
                    )
                except Exception as e:
                    logger.exception(
                        "auto_create_failed",
                        extra={"org_id": current_org, "customer_id": customer_id},
                    )
                    result.add_failure(
                        {"org_id": current_org, "customer_id": customer_id, "error": str(e)}
                    )
                    continue
                result.add_success({"org_id": current_org, **detail})

        result.info["campaigns_created"] = sum(1 for d in result.details if d.get("created"))
        return result

    return _timed("auto_create", cycle)


def run_risk_sweep(
    ctx: DunningContext, org_id: str, now: datetime | None = None
) -> SweepSummary:
    """Reclassify and persist the risk level of every open invoice of the org."""
    now = now or ctx.now()
    today = now.astimezone(ctx.org_config(org_id).tzinfo).date()
    invoices = ctx.store.list_open_invoices(org_id)
    customers = {}

    for invoice in invoices:
        if invoice.customer_id not in customers:
            customers[invoice.customer_id] = ctx.store.get_customer(invoice.customer_id)
        customer = customers[invoice.customer_id]
        assessment = classify_invoice_risk(
            invoice.due_date,
            invoice.amount_due,
            customer.payment_behavior,
            customer.avg_days_to_pay,
            today=today,
        )
        if assessment.risk_level != invoice.risk_level:
            ctx.store.set_risk_level(invoice.id, assessment.risk_level)
        invoice.risk_level = assessment.risk_level

    summary = summarize_risk(invoices, {cid: c.name for cid, c in customers.items()})
    logger.info(
        "risk_sweep_completed",
        extra={
            "org_id": org_id,
            "invoices": summary.total_invoices,
            "cash_at_risk_cents": summary.cash_at_risk_cents,
        },
    )
    return summary
