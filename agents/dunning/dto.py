"""Data Transfer Objects for the dunning outreach agent.

Provides type-safe data structures for campaigns, invoices, customers,
email logs and scheduled tasks with serialization support.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class Tone(Enum):
    """Communication register, strictly ordered by escalation."""

    FRIENDLY = "friendly"
    PROFESSIONAL = "professional"
    FIRM = "firm"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _TONE_RANK[self]


_TONE_RANK = {Tone.FRIENDLY: 0, Tone.PROFESSIONAL: 1, Tone.FIRM: 2, Tone.URGENT: 3}


class RiskLevel(Enum):
    LOW = "low"
    AT_RISK = "at_risk"
    OVERDUE = "overdue"
    CRITICAL = "critical"


class PaymentBehavior(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    SLOW = "slow"
    PROBLEMATIC = "problematic"


class CampaignStatus(Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class InvoiceStatus(Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    VOID = "void"


class EmailStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"


# Statuses that count as a dispatched attempt for an invoice
ATTEMPT_STATUSES = frozenset(
    {EmailStatus.SENT, EmailStatus.DELIVERED, EmailStatus.OPENED, EmailStatus.CLICKED}
)


class TaskType(Enum):
    SEND_EMAIL = "send_email"
    CHECK_PAYMENT = "check_payment"
    FOLLOW_UP = "follow_up"
    ESCALATE = "escalate"
    PAUSE_CAMPAIGN = "pause_campaign"
    RESUME_CAMPAIGN = "resume_campaign"


class TaskStatus(Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReplyIntent(Enum):
    WILL_PAY = "will_pay"
    PAID = "paid"
    DISPUTE = "dispute"
    PAYMENT_PLAN = "payment_plan"
    QUESTION = "question"
    OTHER = "other"


class OutcomeStatus(Enum):
    SENT = "sent"
    SCHEDULED = "scheduled"
    SKIPPED = "skipped"
    FAILED = "failed"


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class StageConfig:
    """One rung of a campaign's stage ladder."""

    stage: str
    days_trigger: int
    tone: Tone

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "days_trigger": self.days_trigger, "tone": self.tone.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageConfig":
        return cls(
            stage=data["stage"],
            days_trigger=int(data["days_trigger"]),
            tone=Tone(data["tone"]),
        )


def default_stages() -> list[StageConfig]:
    """Default four-step ladder used for new campaigns."""
    return [
        StageConfig("reminder", 0, Tone.FRIENDLY),
        StageConfig("follow_up", 5, Tone.PROFESSIONAL),
        StageConfig("escalation", 10, Tone.FIRM),
        StageConfig("final_notice", 15, Tone.URGENT),
    ]


@dataclass
class CampaignConfig:
    """Cadence and escalation settings persisted with a campaign."""

    max_attempts: int = 4
    days_between_emails: int = 5
    escalate_tone: bool = True
    include_pay_button: bool = True
    attach_invoice: bool = True
    stages: list[StageConfig] = field(default_factory=default_stages)

    def validate(self) -> None:
        """Reject configurations the executor cannot honour.

        Raises:
            ValueError: On non-positive max_attempts or negative cadence
        """
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.days_between_emails < 0:
            raise ValueError(
                f"days_between_emails must be >= 0, got {self.days_between_emails}"
            )
        for stage in self.stages:
            if stage.days_trigger < 0:
                raise ValueError(f"Stage {stage.stage} has negative days_trigger")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "days_between_emails": self.days_between_emails,
            "escalate_tone": self.escalate_tone,
            "include_pay_button": self.include_pay_button,
            "attach_invoice": self.attach_invoice,
            "stages": [stage.to_dict() for stage in self.stages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CampaignConfig":
        if not data:
            return cls()
        defaults = cls()
        stages = data.get("stages")
        return cls(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            days_between_emails=int(data.get("days_between_emails", defaults.days_between_emails)),
            escalate_tone=bool(data.get("escalate_tone", defaults.escalate_tone)),
            include_pay_button=bool(data.get("include_pay_button", defaults.include_pay_button)),
            attach_invoice=bool(data.get("attach_invoice", defaults.attach_invoice)),
            stages=(
                [StageConfig.from_dict(s) for s in stages] if stages is not None else default_stages()
            ),
        )


@dataclass
class CampaignStats:
    """Running totals of a campaign; only ever increased."""

    total_invoices: int = 0
    total_amount_cents: int = 0
    emails_sent: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    payments_received: int = 0
    amount_collected_cents: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_invoices": self.total_invoices,
            "total_amount_cents": self.total_amount_cents,
            "emails_sent": self.emails_sent,
            "emails_opened": self.emails_opened,
            "emails_clicked": self.emails_clicked,
            "payments_received": self.payments_received,
            "amount_collected_cents": self.amount_collected_cents,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CampaignStats":
        data = data or {}
        return cls(**{name: int(data.get(name, 0)) for name in cls().to_dict()})


@dataclass
class Campaign:
    """A configured, multi-stage outreach run over a set of invoices."""

    id: str
    org_id: str
    name: str
    status: CampaignStatus = CampaignStatus.DRAFT
    config: CampaignConfig = field(default_factory=CampaignConfig)
    target_invoice_ids: list[str] = field(default_factory=list)
    stats: CampaignStats = field(default_factory=CampaignStats)
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "target_invoice_ids": list(self.target_invoice_ids),
            "stats": self.stats.to_dict(),
            "description": self.description,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Invoice:
    """An invoice as synced from the accounting platform."""

    id: str
    org_id: str
    customer_id: str
    invoice_number: str
    due_date: date
    amount_due_cents: int
    amount_cents: int = 0
    status: InvoiceStatus = InvoiceStatus.PENDING
    currency: str = "USD"
    risk_level: RiskLevel | None = None
    payment_url: str | None = None
    paid_at: datetime | None = None

    @property
    def amount_due(self) -> Decimal:
        """Get outstanding amount as Decimal for calculations."""
        return Decimal(self.amount_due_cents) / 100

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "customer_id": self.customer_id,
            "invoice_number": self.invoice_number,
            "due_date": _iso(self.due_date),
            "amount_cents": self.amount_cents,
            "amount_due_cents": self.amount_due_cents,
            "status": self.status.value,
            "currency": self.currency,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "payment_url": self.payment_url,
            "paid_at": _iso(self.paid_at),
        }


@dataclass
class Customer:
    """A debtor; ``stop_contact`` is sticky once set."""

    id: str
    org_id: str
    name: str
    email: str | None = None
    payment_behavior: PaymentBehavior = PaymentBehavior.AVERAGE
    avg_days_to_pay: int | None = None
    total_invoices: int = 0
    total_paid_cents: int = 0
    total_outstanding_cents: int = 0
    stop_contact: bool = False
    stop_contact_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "email": self.email,
            "payment_behavior": self.payment_behavior.value,
            "avg_days_to_pay": self.avg_days_to_pay,
            "total_invoices": self.total_invoices,
            "total_paid_cents": self.total_paid_cents,
            "total_outstanding_cents": self.total_outstanding_cents,
            "stop_contact": self.stop_contact,
            "stop_contact_at": _iso(self.stop_contact_at),
        }


@dataclass
class EmailLog:
    """One attempted, sent or received communication. Append-only."""

    id: str
    org_id: str
    customer_id: str
    status: EmailStatus
    campaign_id: str | None = None
    invoice_id: str | None = None
    to_email: str | None = None
    subject: str | None = None
    body: str | None = None
    message_id: str | None = None
    sent_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "customer_id": self.customer_id,
            "campaign_id": self.campaign_id,
            "invoice_id": self.invoice_id,
            "status": self.status.value,
            "to_email": self.to_email,
            "subject": self.subject,
            "message_id": self.message_id,
            "sent_at": _iso(self.sent_at),
            "opened_at": _iso(self.opened_at),
            "clicked_at": _iso(self.clicked_at),
            "error_message": self.error_message,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
        }


@dataclass
class ScheduledTask:
    """A durable, claimable unit of deferred work."""

    id: str
    org_id: str
    task_type: TaskType
    scheduled_for: datetime
    status: TaskStatus = TaskStatus.PENDING
    campaign_id: str | None = None
    invoice_id: str | None = None
    customer_id: str | None = None
    task_data: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    retryable: bool = False
    error_message: str | None = None
    executed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "task_type": self.task_type.value,
            "scheduled_for": _iso(self.scheduled_for),
            "status": self.status.value,
            "campaign_id": self.campaign_id,
            "invoice_id": self.invoice_id,
            "customer_id": self.customer_id,
            "task_data": self.task_data,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "retryable": self.retryable,
            "error_message": self.error_message,
            "executed_at": _iso(self.executed_at),
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# Decision-engine inputs


@dataclass
class EmailEngagement:
    """Engagement over a customer's most recent emails (rates in percent)."""

    total_sent: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0
    is_engaged: bool = False
    is_active: bool = False


@dataclass
class CustomerContext:
    customer_id: str
    name: str
    email: str | None
    payment_behavior: PaymentBehavior = PaymentBehavior.AVERAGE
    avg_days_to_pay: int | None = None
    total_invoices: int = 0
    total_paid_cents: int = 0
    total_outstanding_cents: int = 0
    engagement: EmailEngagement = field(default_factory=EmailEngagement)


@dataclass
class LastEmailInteraction:
    was_opened: bool = False
    was_clicked: bool = False
    days_since_last_email: int = 999
    sent_at: datetime | None = None


@dataclass
class InvoiceContext:
    invoice_id: str
    invoice_number: str
    amount_due: Decimal
    due_date: date
    days_overdue: int
    currency: str = "USD"
    risk_level: RiskLevel | None = None
    previous_attempts: int = 0
    last_email_interaction: LastEmailInteraction = field(default_factory=LastEmailInteraction)
    payment_url: str | None = None


@dataclass
class CampaignContext:
    campaign_id: str
    stage: str
    attempt_number: int
    max_attempts: int
    days_between_emails: int
    escalate_tone: bool = True


# Outcomes


@dataclass
class InvoiceOutcome:
    """What happened to one invoice during a campaign pass."""

    invoice_id: str
    status: OutcomeStatus
    reason: str | None = None
    stage: str | None = None
    tone: Tone | None = None
    attempt_number: int | None = None
    scheduled_for: datetime | None = None
    email_log_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "status": self.status.value,
            "reason": self.reason,
            "stage": self.stage,
            "tone": self.tone.value if self.tone else None,
            "attempt_number": self.attempt_number,
            "scheduled_for": _iso(self.scheduled_for),
            "email_log_id": self.email_log_id,
            "error": self.error,
        }


@dataclass
class CampaignCycleSummary:
    """Aggregate of one campaign pass."""

    campaign_id: str
    processed: int = 0
    sent: int = 0
    scheduled: int = 0
    skipped: int = 0
    failed: int = 0
    completed: bool = False
    reason: str | None = None
    outcomes: list[InvoiceOutcome] = field(default_factory=list)

    def add(self, outcome: InvoiceOutcome) -> None:
        self.outcomes.append(outcome)
        self.processed += 1
        if outcome.status == OutcomeStatus.SENT:
            self.sent += 1
        elif outcome.status == OutcomeStatus.SCHEDULED:
            self.scheduled += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "processed": self.processed,
            "sent": self.sent,
            "scheduled": self.scheduled,
            "skipped": self.skipped,
            "failed": self.failed,
            "completed": self.completed,
            "reason": self.reason,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class CycleResult:
    """Result shape shared by every trigger."""

    trigger: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)
    info: dict[str, Any] = field(default_factory=dict)

    def add_success(self, detail: dict[str, Any]) -> None:
        self.processed += 1
        self.succeeded += 1
        self.details.append({**detail, "ok": True})

    def add_failure(self, detail: dict[str, Any]) -> None:
        self.processed += 1
        self.failed += 1
        self.details.append({**detail, "ok": False})

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "details": self.details,
            "info": self.info,
        }
