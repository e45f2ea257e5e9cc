"""Tone and escalation policies for collection emails.

Implements deterministic, priority-ordered rules mapping customer,
invoice and campaign context to a communication tone and an escalation
recommendation. All functions are pure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .dto import CampaignContext, CustomerContext, InvoiceContext, PaymentBehavior, Tone

ACTION_PAUSE_CAMPAIGN = "pause_campaign"
ACTION_FLAG_FOR_REVIEW = "flag_for_review"
ACTION_ALTERNATIVE_CHANNEL = "suggest_alternative_channel"
ACTION_ALTERNATE_SUBJECT = "try_alternate_subject"


@dataclass(frozen=True)
class EscalationRecommendation:
    should_escalate: bool
    reason: str
    new_tone: Tone | None = None
    actions: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_escalate": self.should_escalate,
            "new_tone": self.new_tone.value if self.new_tone else None,
            "reason": self.reason,
            "actions": list(self.actions),
        }


def determine_tone(
    customer: CustomerContext, invoice: InvoiceContext, campaign: CampaignContext
) -> Tone:
    """Compute the tone for the next email; first matching rule wins."""
    days = invoice.days_overdue
    attempt = campaign.attempt_number
    behavior = customer.payment_behavior

    if days >= 30 or attempt >= 4:
        return Tone.URGENT
    if days >= 14 or attempt >= 3:
        return Tone.FIRM
    if (
        behavior in (PaymentBehavior.EXCELLENT, PaymentBehavior.GOOD)
        and attempt <= 2
        and days < 14
    ):
        return Tone.FRIENDLY
    if behavior == PaymentBehavior.PROBLEMATIC and (attempt >= 2 or days >= 7):
        return Tone.FIRM
    return Tone.PROFESSIONAL


def escalation_recommendation(
    customer: CustomerContext, invoice: InvoiceContext, campaign: CampaignContext
) -> EscalationRecommendation:
    """Decide whether the next email should escalate beyond its stage tone."""
    days = invoice.days_overdue
    attempt = campaign.attempt_number

    if attempt >= campaign.max_attempts:
        return EscalationRecommendation(
            should_escalate=False,
            reason="Maximum attempts reached",
            actions=(ACTION_PAUSE_CAMPAIGN, ACTION_FLAG_FOR_REVIEW, ACTION_ALTERNATIVE_CHANNEL),
        )
    if days >= 30 and attempt >= 3:
        return EscalationRecommendation(
            should_escalate=True,
            new_tone=Tone.URGENT,
            reason="30+ days overdue after multiple attempts",
        )
    if days >= 14 and attempt >= 2:
        return EscalationRecommendation(
            should_escalate=True,
            new_tone=Tone.FIRM,
            reason="14+ days overdue with previous contact",
        )
    if (
        not invoice.last_email_interaction.was_opened
        and invoice.previous_attempts >= 2
    ):
        return EscalationRecommendation(
            should_escalate=True,
            new_tone=Tone.FIRM,
            reason="Previous emails not opened",
            actions=(ACTION_ALTERNATE_SUBJECT, ACTION_ALTERNATIVE_CHANNEL),
        )
    return EscalationRecommendation(should_escalate=False, reason="Continue with current tone")


def resolve_final_tone(
    customer: CustomerContext,
    invoice: InvoiceContext,
    campaign: CampaignContext,
    override: Tone | None = None,
) -> tuple[Tone, EscalationRecommendation]:
    """Escalation tone, else the override, else the computed tone.

    Escalation is only applied when the campaign allows tone escalation.
    """
    recommendation = escalation_recommendation(customer, invoice, campaign)
    if campaign.escalate_tone and recommendation.should_escalate and recommendation.new_tone:
        return recommendation.new_tone, recommendation
    if override is not None:
        return override, recommendation
    return determine_tone(customer, invoice, campaign), recommendation


def personalization_hints(
    customer: CustomerContext, invoice: InvoiceContext, campaign: CampaignContext
) -> list[str]:
    """Content hints handed to the generator alongside the tone."""
    hints = []

    if customer.payment_behavior == PaymentBehavior.EXCELLENT:
        hints.append('Mention: "This is unusual for you"')
        hints.append("Emphasize: Relationship and quick resolution")
    elif customer.payment_behavior == PaymentBehavior.PROBLEMATIC:
        hints.append("Reference: Payment history")
        hints.append("Emphasize: Consequences")

    interaction = invoice.last_email_interaction
    if interaction.was_clicked:
        hints.append('Acknowledge: "We noticed you viewed the payment link"')
    elif interaction.was_opened:
        hints.append('Reference: "Following up on our previous email"')
    elif invoice.previous_attempts >= 2:
        hints.append(f"Mention: This is attempt {campaign.attempt_number} to contact you")

    if invoice.amount_due >= 10000:
        hints.append("Offer: Payment plan options")
    elif invoice.amount_due < 100:
        hints.append("Emphasize: Quick and easy payment")

    if invoice.days_overdue >= 30:
        hints.append("Mention: Consequences (collections, account hold)")
    elif invoice.days_overdue >= 14:
        hints.append("Emphasize: Payment deadline")

    return hints
