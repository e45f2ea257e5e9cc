"""Inbound reply handling.

A stop request always wins: it is detected by keyword before any
classifier runs and permanently opts the customer out. Everything else
goes through the ``ContentClassifier``; a failing classifier yields the
fail-safe analysis so the reply is still logged and routed to review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from backend.core.observability.metrics import increment_replies, increment_stop_requests

from .clients import FAIL_SAFE_ANALYSIS, ReplyAnalysis
from .dto import CampaignStatus, Customer, EmailLog, EmailStatus, ReplyIntent
from .errors import NotFoundError
from .executor import DunningContext
from .scheduler import SEND_TASK_TYPES
from .store import DIRECTION_INBOUND

STOP_KEYWORDS = ("stop", "cease", "do not contact", "opt out")
PAUSING_INTENTS = (ReplyIntent.WILL_PAY, ReplyIntent.PAID)
MAX_CLASSIFIED_CHARS = 1000


def is_stop_request(text: str) -> bool:
    """Case-insensitive substring match against the stop keywords."""
    lower = text.lower()
    return any(keyword in lower for keyword in STOP_KEYWORDS)


@dataclass
class ReplyResult:
    handled: bool
    reason: str | None = None
    customer_id: str | None = None
    stop_request: bool = False
    intent: ReplyIntent | None = None
    needs_human_review: bool = False
    suggested_action: str | None = None
    paused_campaign_ids: list[str] = field(default_factory=list)
    cancelled_tasks: int = 0
    reply_log_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "handled": self.handled,
            "reason": self.reason,
            "customer_id": self.customer_id,
            "stop_request": self.stop_request,
            "intent": self.intent.value if self.intent else None,
            "needs_human_review": self.needs_human_review,
            "suggested_action": self.suggested_action,
            "paused_campaign_ids": self.paused_campaign_ids,
            "cancelled_tasks": self.cancelled_tasks,
            "reply_log_id": self.reply_log_id,
        }


class ReplyHandler:
    """Applies stop requests and classified intents to campaign state."""

    def __init__(self, context: DunningContext):
        self.ctx = context
        self.store = context.store
        self.scheduler = context.scheduler
        self.logger = logging.getLogger(__name__)

    def _original_email(self, log_id: str | None) -> EmailLog | None:
        if not log_id:
            return None
        try:
            return self.store.get_email_log(log_id)
        except NotFoundError:
            self.logger.warning("reply_original_not_found", extra={"email_log_id": log_id})
            return None

    def handle_reply(
        self,
        from_email: str,
        text: str,
        subject: str | None = None,
        in_reply_to_log_id: str | None = None,
        now: datetime | None = None,
    ) -> ReplyResult:
        """Handle one inbound reply.

        The originating email is taken from ``in_reply_to_log_id`` when it
        resolves, otherwise it is the latest email sent to the sender.
        """
        now = now or self.ctx.now()
        original = self._original_email(in_reply_to_log_id)
        if original is not None:
            customer = self.store.get_customer(original.customer_id)
        else:
            customer = self.store.find_customer_by_email(from_email)
            if customer is None:
                self.logger.info("reply_unmatched", extra={"from_email": from_email})
                return ReplyResult(handled=False, reason="no matching customer")
            recent = self.store.recent_emails(customer.id, limit=1)
            original = recent[0] if recent else None

        if is_stop_request(text):
            return self._apply_stop_request(customer, original, from_email, text, subject, now)

        try:
            analysis = self.ctx.classifier.classify(text[:MAX_CLASSIFIED_CHARS])
        except Exception:
            self.logger.exception(
                "reply_classification_failed", extra={"customer_id": customer.id}
            )
            analysis = FAIL_SAFE_ANALYSIS

        result = ReplyResult(
            handled=True,
            customer_id=customer.id,
            intent=analysis.intent,
            needs_human_review=analysis.needs_human_review,
            suggested_action=analysis.suggested_action,
        )
        log = self._log_reply(
            customer,
            original,
            from_email,
            text,
            subject,
            now,
            {"analysis": analysis.model_dump(mode="json"), "needs_review": analysis.needs_human_review},
        )
        result.reply_log_id = log.id
        increment_replies(analysis.intent.value)

        if analysis.intent in PAUSING_INTENTS and original and original.campaign_id:
            if self.store.set_campaign_status(
                original.campaign_id, CampaignStatus.PAUSED, expected=(CampaignStatus.ACTIVE,)
            ):
                result.paused_campaign_ids.append(original.campaign_id)
                result.cancelled_tasks = self.scheduler.cancel(
                    campaign_id=original.campaign_id,
                    task_types=SEND_TASK_TYPES,
                    reason=f"customer replied: {analysis.intent.value}",
                )

        if analysis.needs_human_review:
            self.logger.warning(
                "reply_needs_human_review",
                extra={
                    "customer_id": customer.id,
                    "reply_log_id": log.id,
                    "suggested_action": analysis.suggested_action,
                },
            )

        self.logger.info("reply_handled", extra=self._log_fields(result, analysis))
        return result

    def _apply_stop_request(
        self,
        customer: Customer,
        original: EmailLog | None,
        from_email: str,
        text: str,
        subject: str | None,
        now: datetime,
    ) -> ReplyResult:
        self.store.set_stop_contact(customer.id, now)
        result = ReplyResult(handled=True, customer_id=customer.id, stop_request=True)

        for campaign in self.store.campaigns_for_customer(customer.id, CampaignStatus.ACTIVE):
            if self.store.set_campaign_status(
                campaign.id, CampaignStatus.PAUSED, expected=(CampaignStatus.ACTIVE,)
            ):
                result.paused_campaign_ids.append(campaign.id)

        result.cancelled_tasks = self.scheduler.cancel(
            customer_id=customer.id, task_types=SEND_TASK_TYPES, reason="stop request"
        )
        log = self._log_reply(
            customer, original, from_email, text, subject, now, {"is_stop_request": True}
        )
        result.reply_log_id = log.id
        increment_stop_requests()
        self.logger.warning(
            "reply_stop_request",
            extra={
                "customer_id": customer.id,
                "paused_campaigns": len(result.paused_campaign_ids),
                "cancelled_tasks": result.cancelled_tasks,
            },
        )
        return result

    def _log_reply(
        self,
        customer: Customer,
        original: EmailLog | None,
        from_email: str,
        text: str,
        subject: str | None,
        now: datetime,
        metadata: dict[str, Any],
    ) -> EmailLog:
        if subject is None and original is not None and original.subject:
            subject = f"Re: {original.subject}"
        return self.store.insert_email_log(
            EmailLog(
                id=str(uuid4()),
                org_id=customer.org_id,
                customer_id=customer.id,
                campaign_id=original.campaign_id if original else None,
                invoice_id=original.invoice_id if original else None,
                status=EmailStatus.DELIVERED,
                to_email=from_email,
                subject=subject,
                body=text,
                metadata={
                    "is_reply": True,
                    "original_email_id": original.id if original else None,
                    **metadata,
                },
                created_at=now,
            ),
            direction=DIRECTION_INBOUND,
        )

    @staticmethod
    def _log_fields(result: ReplyResult, analysis: ReplyAnalysis) -> dict[str, Any]:
        return {
            "customer_id": result.customer_id,
            "intent": analysis.intent.value,
            "urgency": analysis.urgency,
            "paused_campaigns": len(result.paused_campaign_ids),
        }
