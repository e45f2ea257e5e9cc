"""Assemble decision-engine inputs from stored state.

Always called with fresh reads; nothing here is cached across invoices.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from .dto import (
    Campaign,
    CampaignContext,
    Customer,
    CustomerContext,
    EmailEngagement,
    EmailLog,
    EmailStatus,
    Invoice,
    InvoiceContext,
    LastEmailInteraction,
    StageConfig,
)
from .risk import days_overdue
from .store import DunningStore

NO_PRIOR_EMAIL_DAYS = 999
ENGAGEMENT_WINDOW = 10


def _was_opened(log: EmailLog) -> bool:
    return log.opened_at is not None or log.status in (EmailStatus.OPENED, EmailStatus.CLICKED)


def _was_clicked(log: EmailLog) -> bool:
    return log.clicked_at is not None or log.status == EmailStatus.CLICKED


def email_engagement(logs: list[EmailLog]) -> EmailEngagement:
    """Open/click rates (percent) over the given emails."""
    sent = len(logs)
    if sent == 0:
        return EmailEngagement()
    opened = sum(1 for log in logs if _was_opened(log))
    clicked = sum(1 for log in logs if _was_clicked(log))
    open_rate = opened / sent * 100
    return EmailEngagement(
        total_sent=sent,
        total_opened=opened,
        total_clicked=clicked,
        open_rate=open_rate,
        click_rate=clicked / sent * 100,
        is_engaged=open_rate > 50,
        is_active=clicked > 0,
    )


def build_customer_context(store: DunningStore, customer: Customer) -> CustomerContext:
    return CustomerContext(
        customer_id=customer.id,
        name=customer.name,
        email=customer.email,
        payment_behavior=customer.payment_behavior,
        avg_days_to_pay=customer.avg_days_to_pay,
        total_invoices=customer.total_invoices,
        total_paid_cents=customer.total_paid_cents,
        total_outstanding_cents=customer.total_outstanding_cents,
        engagement=email_engagement(store.recent_emails(customer.id, ENGAGEMENT_WINDOW)),
    )


def last_email_interaction(last: EmailLog | None, now: datetime) -> LastEmailInteraction:
    if last is None:
        return LastEmailInteraction(days_since_last_email=NO_PRIOR_EMAIL_DAYS)
    sent_at = last.sent_at or last.created_at
    return LastEmailInteraction(
        was_opened=_was_opened(last),
        was_clicked=_was_clicked(last),
        days_since_last_email=(now - sent_at).days if sent_at else NO_PRIOR_EMAIL_DAYS,
        sent_at=sent_at,
    )


def build_invoice_context(
    store: DunningStore,
    invoice: Invoice,
    now: datetime,
    tz: ZoneInfo,
    attempt_count: int | None = None,
) -> InvoiceContext:
    """Invoice context with attempt count and last interaction read now."""
    if attempt_count is None:
        attempt_count = store.count_attempts(invoice.id)
    return InvoiceContext(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        amount_due=invoice.amount_due,
        due_date=invoice.due_date,
        days_overdue=days_overdue(invoice.due_date, now.astimezone(tz).date()),
        currency=invoice.currency,
        risk_level=invoice.risk_level,
        previous_attempts=attempt_count,
        last_email_interaction=last_email_interaction(store.last_email(invoice.id), now),
        payment_url=invoice.payment_url,
    )


def build_campaign_context(
    campaign: Campaign, stage: StageConfig, attempt_count: int
) -> CampaignContext:
    return CampaignContext(
        campaign_id=campaign.id,
        stage=stage.stage,
        attempt_number=attempt_count + 1,
        max_attempts=campaign.config.max_attempts,
        days_between_emails=campaign.config.days_between_emails,
        escalate_tone=campaign.config.escalate_tone,
    )
