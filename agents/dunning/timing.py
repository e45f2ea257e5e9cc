"""Send-now versus defer decisions for collection emails."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from .compliance import at_local_hour, is_compliant_time, next_compliant_time
from .dto import CampaignContext, CustomerContext, InvoiceContext

PREFERRED_SEND_HOUR = 10
CLICK_GRACE_DAYS = 2

REASON_TOO_EARLY = "too early"
REASON_AWAIT_CLICK = "await payment processing after click"
REASON_HIGH_URGENCY = "high urgency"
REASON_CADENCE_SATISFIED = "cadence satisfied"
REASON_OUTSIDE_WINDOW = "outside compliance window"
REASON_CADENCE_GAP = "awaiting cadence gap"


@dataclass(frozen=True)
class TimingDecision:
    should_send_now: bool
    reason: str
    schedule_for: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_send_now": self.should_send_now,
            "reason": self.reason,
            "schedule_for": self.schedule_for.isoformat() if self.schedule_for else None,
        }


def _send_if_compliant(reason: str, tz: str | ZoneInfo, now: datetime) -> TimingDecision:
    if is_compliant_time(now, tz):
        return TimingDecision(should_send_now=True, reason=reason)
    return TimingDecision(
        should_send_now=False,
        reason=REASON_OUTSIDE_WINDOW,
        schedule_for=next_compliant_time(tz, now),
    )


def determine_optimal_timing(
    invoice: InvoiceContext,
    campaign: CampaignContext,
    customer: CustomerContext,
    tz: str | ZoneInfo,
    now: datetime | None = None,
) -> TimingDecision:
    """Decide whether to send now or when to try again.

    Args:
        invoice: Invoice context with fresh attempt/interaction data
        campaign: Campaign context (cadence)
        customer: Customer context
        tz: Consumer timezone
        now: Current timestamp (for testing)

    Returns:
        TimingDecision; deferrals always carry ``schedule_for``
    """
    if now is None:
        now = datetime.now(UTC)

    since = invoice.last_email_interaction.days_since_last_email
    between = campaign.days_between_emails

    if since < between:
        return TimingDecision(
            should_send_now=False,
            reason=REASON_TOO_EARLY,
            schedule_for=at_local_hour(now, tz, between - since, PREFERRED_SEND_HOUR),
        )

    if invoice.last_email_interaction.was_clicked:
        return TimingDecision(
            should_send_now=False,
            reason=REASON_AWAIT_CLICK,
            schedule_for=at_local_hour(now, tz, CLICK_GRACE_DAYS, PREFERRED_SEND_HOUR),
        )

    if invoice.days_overdue >= 30:
        return _send_if_compliant(REASON_HIGH_URGENCY, tz, now)

    if since >= between:
        return _send_if_compliant(REASON_CADENCE_SATISFIED, tz, now)

    # Rules 1 and 4 are exhaustive for ordered day counts
    gap = max(between - since, 0)
    return TimingDecision(
        should_send_now=False,
        reason=REASON_CADENCE_GAP,
        schedule_for=next_compliant_time(tz, now) + timedelta(days=gap),
    )
