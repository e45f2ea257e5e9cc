"""Brevo delivery and engagement events applied to email logs."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .dto import EmailStatus
from .store import DunningStore

logger = logging.getLogger(__name__)

EVENT_STATUS = {
    "delivered": EmailStatus.DELIVERED,
    "opened": EmailStatus.OPENED,
    "unique_opened": EmailStatus.OPENED,
    "click": EmailStatus.CLICKED,
    "soft_bounce": EmailStatus.BOUNCED,
    "hard_bounce": EmailStatus.BOUNCED,
    "invalid": EmailStatus.BOUNCED,
    "blocked": EmailStatus.BOUNCED,
}


class BrevoEvent(BaseModel):
    """Brevo transactional webhook payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event: str = Field(..., description="Event type")
    date: datetime | None = Field(None, description="Event timestamp")
    message_id: str | None = Field(None, alias="message-id", description="Brevo message ID")
    messageId: str | None = Field(None, description="Alternative message ID field")
    email: str | None = Field(None, description="Recipient email")
    reason: str | None = Field(None, description="Reason for bounce/block/etc.")
    link: str | None = Field(None, description="Clicked link")

    @property
    def provider_message_id(self) -> str | None:
        return self.message_id or self.messageId


def apply_delivery_event(
    store: DunningStore, payload: dict[str, Any], now: datetime | None = None
) -> dict[str, Any]:
    """Update the matching email log and campaign stats for one event.

    First opens and first clicks increase the campaign's counters; repeats
    only refresh the log status.
    """
    event = BrevoEvent.model_validate(payload)
    event_type = event.event.lower()
    status = EVENT_STATUS.get(event_type)
    result: dict[str, Any] = {"event": event_type, "applied": False}

    if status is None:
        result["reason"] = "unsupported event"
        return result
    if not event.provider_message_id:
        result["reason"] = "missing message id"
        return result

    log = store.find_email_log_by_message_id(event.provider_message_id)
    if log is None:
        result["reason"] = "unknown message id"
        return result

    at = event.date or now or datetime.now(UTC)
    if at.tzinfo is None:
        at = at.replace(tzinfo=UTC)

    result["applied"] = store.mark_email_event(log.id, status, at)
    result["email_log_id"] = log.id

    if log.campaign_id and result["applied"]:
        deltas = {}
        if status in (EmailStatus.OPENED, EmailStatus.CLICKED) and log.opened_at is None:
            deltas["emails_opened"] = 1
        if status == EmailStatus.CLICKED and log.clicked_at is None:
            deltas["emails_clicked"] = 1
        if deltas:
            store.increment_campaign_stats(log.campaign_id, **deltas)

    logger.info(
        "delivery_event_applied",
        extra={"event": event_type, "email_log_id": log.id, "applied": result["applied"]},
    )
    return result
