"""Campaign execution for collection outreach.

One orchestration path shared by every trigger: the campaign cycle, the
task cycle and the manual execute endpoint all end up in
``CampaignExecutor.process_invoice``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from backend.core.observability.metrics import (
    increment_emails_deferred,
    increment_emails_failed,
    increment_emails_sent,
    increment_invoices_skipped,
)
from backend.integrations.brevo_client import BrevoEmailSender

from .clients import (
    ContentClassifier,
    ContentGenerator,
    EmailSender,
    GenerationContext,
    HttpContentClassifier,
    TemplateContentGenerator,
)
from .compliance import (
    DisclosureData,
    add_disclosures,
    is_compliant_time,
    next_compliant_time,
    validate_content,
)
from .config import OrgConfig
from .context import build_campaign_context, build_customer_context, build_invoice_context
from .dto import (
    Campaign,
    CampaignCycleSummary,
    CampaignStatus,
    Customer,
    EmailLog,
    EmailStatus,
    Invoice,
    InvoiceOutcome,
    OutcomeStatus,
    StageConfig,
    Tone,
)
from .errors import DunningError, ExternalSendFailure, UnrecordedSendError
from .policies import personalization_hints, resolve_final_tone
from .scheduler import SEND_TASK_TYPES, TaskScheduler
from .stages import next_stage, resolve_stage
from .store import DunningStore
from .timing import REASON_OUTSIDE_WINDOW, determine_optimal_timing

REASON_OPTED_OUT = "customer opted out"
REASON_PAID = "invoice already paid"
REASON_MAX_ATTEMPTS = "max attempts reached"
REASON_NO_EMAIL = "customer has no email address"
REASON_NO_STAGE = "no stage configured"
REASON_ALREADY_SCHEDULED = "send already scheduled"
REASON_ALL_PAID = "all invoices paid"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class DunningContext:
    """Collaborators for one dunning run.

    Anything left as None is built from process settings.
    """

    store: DunningStore
    scheduler: TaskScheduler | None = None
    sender: EmailSender | None = None
    generator: ContentGenerator | None = None
    classifier: ContentClassifier | None = None
    org_loader: Callable[[str], OrgConfig] = OrgConfig.from_org
    clock: Callable[[], datetime] = _utcnow
    _orgs: dict[str, OrgConfig] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        if self.scheduler is None:
            self.scheduler = TaskScheduler(self.store)

        if self.sender is None:
            self.sender = BrevoEmailSender()

        if self.generator is None:
            self.generator = TemplateContentGenerator()

        if self.classifier is None:
            self.classifier = HttpContentClassifier()

    def now(self) -> datetime:
        return self.clock()

    def org_config(self, org_id: str) -> OrgConfig:
        if org_id not in self._orgs:
            self._orgs[org_id] = self.org_loader(org_id)
        return self._orgs[org_id]


class CampaignExecutor:
    """Runs campaigns invoice by invoice."""

    def __init__(self, context: DunningContext):
        self.ctx = context
        self.store = context.store
        self.scheduler = context.scheduler
        self.logger = logging.getLogger(__name__)

    def execute_campaign(
        self, campaign_id: str, now: datetime | None = None
    ) -> CampaignCycleSummary:
        """Run one pass over a campaign's unpaid invoices.

        Raises:
            NotFoundError: If the campaign does not exist
        """
        now = now or self.ctx.now()
        campaign = self.store.get_campaign(campaign_id)
        summary = CampaignCycleSummary(campaign_id=campaign_id)

        if campaign.status != CampaignStatus.ACTIVE:
            summary.reason = f"campaign is {campaign.status.value}"
            return summary

        if self.complete_if_paid(campaign):
            summary.completed = True
            summary.reason = REASON_ALL_PAID
            return summary

        org = self.ctx.org_config(campaign.org_id)
        for invoice in self.store.list_invoices(campaign.target_invoice_ids):
            if invoice.is_paid:
                continue
            summary.add(self._process_isolated(campaign, invoice, org, now))

        self.logger.info(
            "campaign_cycle_completed",
            extra={
                "campaign_id": campaign_id,
                "processed": summary.processed,
                "sent": summary.sent,
                "scheduled": summary.scheduled,
                "skipped": summary.skipped,
                "failed": summary.failed,
            },
        )
        return summary

    def complete_if_paid(self, campaign: Campaign) -> bool:
        """Complete the campaign when every target invoice is paid.

        Also cancels its pending tasks and records collected payments.

        Returns:
            True if this call completed the campaign
        """
        targets = set(campaign.target_invoice_ids)
        invoices = self.store.list_invoices(targets)
        if len(invoices) != len(targets) or not all(inv.is_paid for inv in invoices):
            return False

        if not self.store.set_campaign_status(
            campaign.id,
            CampaignStatus.COMPLETED,
            expected=(CampaignStatus.ACTIVE, CampaignStatus.PAUSED),
        ):
            return False

        self.scheduler.cancel(campaign_id=campaign.id, reason=REASON_ALL_PAID)
        self.store.raise_campaign_stats(
            campaign.id,
            payments_received=len(invoices),
            amount_collected_cents=sum(inv.amount_cents for inv in invoices),
        )
        self.logger.info(
            "campaign_completed",
            extra={"campaign_id": campaign.id, "invoices": len(invoices)},
        )
        return True

    def _process_isolated(
        self, campaign: Campaign, invoice: Invoice, org: OrgConfig, now: datetime
    ) -> InvoiceOutcome:
        try:
            return self.process_invoice(campaign, invoice.id, org, now)
        except DunningError as e:
            self.logger.error(
                "invoice_processing_failed",
                extra={"campaign_id": campaign.id, "invoice_id": invoice.id, "error": str(e)},
            )
            return InvoiceOutcome(invoice.id, OutcomeStatus.FAILED, error=str(e))
        except Exception as e:
            self.logger.exception(
                "invoice_processing_crashed",
                extra={"campaign_id": campaign.id, "invoice_id": invoice.id},
            )
            return InvoiceOutcome(invoice.id, OutcomeStatus.FAILED, error=str(e))

    def process_invoice(
        self,
        campaign: Campaign,
        invoice_id: str,
        org: OrgConfig,
        now: datetime,
        tone_override: Tone | None = None,
        respect_cadence: bool = True,
    ) -> InvoiceOutcome:
        """Decide and act for one invoice.

        Args:
            campaign: Campaign the invoice belongs to
            invoice_id: Invoice to process
            org: Organization settings (timezone, sender identity)
            now: Current timestamp
            tone_override: Tone requested by a scheduled task
            respect_cadence: False when a due send task is being executed;
                the task's schedule already encodes the cadence

        Returns:
            InvoiceOutcome

        Raises:
            NotFoundError: If the invoice or its customer is missing
            ExternalSendFailure: If the transport rejects the email
            UnrecordedSendError: If the email went out but its log row could not be written
        """
        invoice = self.store.get_invoice(invoice_id)
        customer = self.store.get_customer(invoice.customer_id)
        config = campaign.config

        if customer.stop_contact:
            return self._skip(campaign, invoice, REASON_OPTED_OUT)
        if invoice.is_paid:
            return self._skip(campaign, invoice, REASON_PAID)

        attempt_count = self.store.count_attempts(invoice.id)
        if attempt_count >= config.max_attempts:
            return self._skip(campaign, invoice, REASON_MAX_ATTEMPTS)
        if not customer.email:
            return self._skip(campaign, invoice, REASON_NO_EMAIL)

        invoice_ctx = build_invoice_context(self.store, invoice, now, org.tzinfo, attempt_count)
        stage = resolve_stage(config.stages, attempt_count, invoice_ctx.days_overdue)
        if stage is None:
            return self._skip(campaign, invoice, REASON_NO_STAGE)

        customer_ctx = build_customer_context(self.store, customer)
        campaign_ctx = build_campaign_context(campaign, stage, attempt_count)

        if respect_cadence:
            if self.scheduler.has_pending(campaign.id, invoice.id):
                return InvoiceOutcome(
                    invoice.id,
                    OutcomeStatus.SCHEDULED,
                    reason=REASON_ALREADY_SCHEDULED,
                    stage=stage.stage,
                )
            timing = determine_optimal_timing(
                invoice_ctx, campaign_ctx, customer_ctx, org.tzinfo, now
            )
            if not timing.should_send_now:
                return self._defer(
                    campaign, invoice, stage, timing.schedule_for, timing.reason, tone_override
                )

        if not is_compliant_time(now, org.tzinfo):
            return self._defer(
                campaign,
                invoice,
                stage,
                next_compliant_time(org.tzinfo, now),
                REASON_OUTSIDE_WINDOW,
                tone_override,
            )

        tone, recommendation = resolve_final_tone(
            customer_ctx, invoice_ctx, campaign_ctx, override=tone_override or stage.tone
        )
        generated = self.ctx.generator.generate(
            GenerationContext(
                org=org,
                customer=customer_ctx,
                invoice=invoice_ctx,
                campaign=campaign_ctx,
                tone=tone,
                hints=personalization_hints(customer_ctx, invoice_ctx, campaign_ctx),
                is_first_contact=attempt_count == 0,
            )
        )
        body = add_disclosures(
            generated.body,
            DisclosureData(
                creditor_name=org.org_name,
                amount_due=invoice.amount_due,
                currency=invoice.currency,
                invoice_number=invoice.invoice_number,
                is_first_contact=attempt_count == 0,
                org_address=org.org_address,
                org_phone=org.org_phone,
            ),
        )
        compliant, issues = validate_content(body)
        if not compliant:
            self.logger.warning(
                "content_compliance_issues",
                extra={"campaign_id": campaign.id, "invoice_id": invoice.id, "issues": issues},
            )

        metadata = {
            "stage": stage.stage,
            "tone": tone.value,
            "attempt_number": campaign_ctx.attempt_number,
            "escalation": recommendation.to_dict(),
        }
        if issues:
            metadata["content_issues"] = issues

        result = self.ctx.sender.send(
            customer.email, generated.subject, body, org.from_name, org.reply_to
        )
        if not result.success:
            self._log_email(
                campaign, invoice, customer, generated.subject, body, EmailStatus.FAILED,
                now, metadata, error=result.error,
            )
            increment_emails_failed()
            raise ExternalSendFailure(result.error or "Email send failed")

        metadata["dry_run"] = result.dry_run
        increment_emails_sent(tone.value)
        try:
            log = self._log_email(
                campaign, invoice, customer, generated.subject, body, EmailStatus.SENT,
                now, metadata, message_id=result.message_id,
            )
        except Exception as e:
            self.logger.exception(
                "sent_email_not_logged",
                extra={
                    "campaign_id": campaign.id,
                    "invoice_id": invoice.id,
                    "message_id": result.message_id,
                },
            )
            raise UnrecordedSendError(
                f"Email {result.message_id} accepted but not logged: {e}"
            ) from e

        # The message is out; bookkeeping errors past this point must not
        # turn into a retry of the send.
        reason = None
        try:
            self._after_send(campaign, invoice, customer.id, attempt_count, now)
        except Exception as e:
            reason = f"sent; bookkeeping failed: {e}"
            self.logger.exception(
                "post_send_bookkeeping_failed",
                extra={
                    "campaign_id": campaign.id,
                    "invoice_id": invoice.id,
                    "email_log_id": log.id,
                },
            )

        self.logger.info(
            "collection_email_sent",
            extra={
                "campaign_id": campaign.id,
                "invoice_id": invoice.id,
                "stage": stage.stage,
                "tone": tone.value,
                "attempt_number": campaign_ctx.attempt_number,
            },
        )
        return InvoiceOutcome(
            invoice.id,
            OutcomeStatus.SENT,
            reason=reason,
            stage=stage.stage,
            tone=tone,
            attempt_number=campaign_ctx.attempt_number,
            email_log_id=log.id,
        )

    def _after_send(
        self,
        campaign: Campaign,
        invoice: Invoice,
        customer_id: str,
        attempt_count: int,
        now: datetime,
    ) -> None:
        """Stats, supersession of other sends and the next follow-up."""
        config = campaign.config
        self.store.increment_campaign_stats(campaign.id, emails_sent=1)

        # Earlier failed sends for this invoice must not be requeued
        self.scheduler.retire_failed(campaign.id, invoice.id, reason="superseded by send")
        self.scheduler.cancel(
            campaign_id=campaign.id,
            invoice_id=invoice.id,
            task_types=SEND_TASK_TYPES,
            reason="superseded by send",
        )
        if attempt_count + 1 < config.max_attempts:
            follow_up = next_stage(config.stages, attempt_count + 1)
            self.scheduler.schedule_follow_up(
                campaign.org_id,
                campaign.id,
                invoice.id,
                customer_id,
                now + timedelta(days=config.days_between_emails),
                tone=follow_up.tone if follow_up else None,
                reason="follow-up",
            )

    def _skip(self, campaign: Campaign, invoice: Invoice, reason: str) -> InvoiceOutcome:
        increment_invoices_skipped(reason)
        self.logger.info(
            "invoice_skipped",
            extra={"campaign_id": campaign.id, "invoice_id": invoice.id, "reason": reason},
        )
        return InvoiceOutcome(invoice.id, OutcomeStatus.SKIPPED, reason=reason)

    def _defer(
        self,
        campaign: Campaign,
        invoice: Invoice,
        stage: StageConfig,
        schedule_for: datetime,
        reason: str,
        tone: Tone | None,
    ) -> InvoiceOutcome:
        if not self.scheduler.has_pending(campaign.id, invoice.id):
            self.scheduler.schedule_follow_up(
                campaign.org_id,
                campaign.id,
                invoice.id,
                invoice.customer_id,
                schedule_for,
                tone=tone,
                reason=reason,
            )
        increment_emails_deferred(reason)
        return InvoiceOutcome(
            invoice.id,
            OutcomeStatus.SCHEDULED,
            reason=reason,
            stage=stage.stage,
            scheduled_for=schedule_for,
        )

    def _log_email(
        self,
        campaign: Campaign,
        invoice: Invoice,
        customer: Customer,
        subject: str,
        body: str,
        status: EmailStatus,
        now: datetime,
        metadata: dict,
        message_id: str | None = None,
        error: str | None = None,
    ) -> EmailLog:
        return self.store.insert_email_log(
            EmailLog(
                id=str(uuid4()),
                org_id=campaign.org_id,
                customer_id=customer.id,
                campaign_id=campaign.id,
                invoice_id=invoice.id,
                status=status,
                to_email=customer.email,
                subject=subject,
                body=body,
                message_id=message_id,
                sent_at=now if status == EmailStatus.SENT else None,
                error_message=error,
                metadata=metadata,
                created_at=now,
            )
        )
