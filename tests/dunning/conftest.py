"""Fixtures for the dunning agent tests.

Every test gets a fresh in-memory SQLite database and plain test doubles
for the three collaborators, so nothing here touches the network.
"""

from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from agents.dunning.clients import GeneratedEmail, ReplyAnalysis, SendResult
from agents.dunning.config import OrgConfig
from agents.dunning.dto import (
    Campaign,
    CampaignConfig,
    CampaignStatus,
    Customer,
    EmailLog,
    EmailStatus,
    Invoice,
    InvoiceStatus,
    PaymentBehavior,
    ReplyIntent,
)
from agents.dunning.errors import ClassificationFailure
from agents.dunning.executor import DunningContext
from agents.dunning.scheduler import TaskScheduler
from agents.dunning.store import DunningStore, create_schema

ORG_ID = "acme"
TIMEZONE = "America/New_York"
# Tuesday 2026-03-10 11:00 EDT, inside the contact window
NOW = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
TODAY = date(2026, 3, 10)


class RecordingSender:
    """EmailSender double that records every call."""

    def __init__(self, fail_with: str | None = None):
        self.fail_with = fail_with
        self.sent: list[dict] = []

    def send(self, to, subject, body, from_name, reply_to=None) -> SendResult:
        self.sent.append(
            {"to": to, "subject": subject, "body": body, "from_name": from_name, "reply_to": reply_to}
        )
        if self.fail_with:
            return SendResult(success=False, error=self.fail_with)
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")


class FixedGenerator:
    """ContentGenerator double producing predictable text."""

    def __init__(self):
        self.contexts = []

    def generate(self, context) -> GeneratedEmail:
        self.contexts.append(context)
        return GeneratedEmail(
            subject=f"Invoice {context.invoice.invoice_number}",
            body=f"Dear {context.customer.name}, please pay. ({context.tone.value})",
        )


class ScriptedClassifier:
    """ContentClassifier double returning a fixed analysis or failing."""

    def __init__(self, analysis: ReplyAnalysis | None = None, error: Exception | None = None):
        self.analysis = analysis or ReplyAnalysis(intent=ReplyIntent.QUESTION)
        self.error = error
        self.calls: list[str] = []

    def classify(self, reply_text: str) -> ReplyAnalysis:
        self.calls.append(reply_text)
        if self.error is not None:
            raise self.error
        return self.analysis


class Seeder:
    """Writes customers, invoices, campaigns and emails for a test."""

    def __init__(self, store: DunningStore):
        self.store = store

    def customer(self, **overrides) -> Customer:
        values = {
            "id": str(uuid4()),
            "org_id": ORG_ID,
            "name": "Jane Doe",
            "email": "jane@example.com",
            "payment_behavior": PaymentBehavior.AVERAGE,
        }
        values.update(overrides)
        return self.store.upsert_customer(Customer(**values))

    def invoice(self, customer: Customer, days_overdue: int = 20, amount_cents: int = 500000, **overrides) -> Invoice:
        values = {
            "id": str(uuid4()),
            "org_id": ORG_ID,
            "customer_id": customer.id,
            "invoice_number": f"INV-{uuid4().hex[:6].upper()}",
            "due_date": TODAY - timedelta(days=days_overdue),
            "amount_due_cents": amount_cents,
            "amount_cents": amount_cents,
            "status": InvoiceStatus.OVERDUE,
        }
        values.update(overrides)
        return self.store.upsert_invoice(Invoice(**values))

    def campaign(
        self,
        invoices: list[Invoice],
        status: CampaignStatus = CampaignStatus.ACTIVE,
        config: CampaignConfig | None = None,
    ) -> Campaign:
        return self.store.insert_campaign(
            Campaign(
                id=str(uuid4()),
                org_id=ORG_ID,
                name="Test campaign",
                status=status,
                config=config or CampaignConfig(),
                target_invoice_ids=[inv.id for inv in invoices],
            )
        )

    def sent_email(
        self,
        invoice: Invoice,
        campaign: Campaign | None = None,
        sent_at: datetime = NOW - timedelta(days=6),
        status: EmailStatus = EmailStatus.SENT,
        message_id: str | None = None,
    ) -> EmailLog:
        return self.store.insert_email_log(
            EmailLog(
                id=str(uuid4()),
                org_id=ORG_ID,
                customer_id=invoice.customer_id,
                campaign_id=campaign.id if campaign else None,
                invoice_id=invoice.id,
                status=status,
                to_email="jane@example.com",
                subject=f"Invoice {invoice.invoice_number}",
                message_id=message_id or f"prior-{uuid4().hex[:8]}",
                sent_at=sent_at,
                opened_at=sent_at + timedelta(hours=1)
                if status in (EmailStatus.OPENED, EmailStatus.CLICKED)
                else None,
                clicked_at=sent_at + timedelta(hours=2) if status == EmailStatus.CLICKED else None,
                created_at=sent_at,
            )
        )

    def mark_paid(self, invoice: Invoice) -> Invoice:
        invoice.status = InvoiceStatus.PAID
        invoice.amount_due_cents = 0
        invoice.paid_at = NOW
        return self.store.upsert_invoice(invoice)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> DunningStore:
    return DunningStore(engine)


@pytest.fixture
def scheduler(store) -> TaskScheduler:
    return TaskScheduler(store, max_retries=3, backoff_steps=(900, 2700, 8100))


@pytest.fixture
def seed(store) -> Seeder:
    return Seeder(store)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def generator() -> FixedGenerator:
    return FixedGenerator()


@pytest.fixture
def classifier() -> ScriptedClassifier:
    return ScriptedClassifier()


@pytest.fixture
def org() -> OrgConfig:
    return OrgConfig(
        org_id=ORG_ID,
        org_name="Acme Corp",
        from_name="Acme Receivables",
        reply_to="ar@acme.test",
        org_address="1 Main St, Springfield",
        timezone=TIMEZONE,
        first_email_delay_minutes=30,
    )


@pytest.fixture
def ctx(store, scheduler, sender, generator, classifier, org) -> DunningContext:
    return DunningContext(
        store=store,
        scheduler=scheduler,
        sender=sender,
        generator=generator,
        classifier=classifier,
        org_loader=lambda org_id: org,
        clock=lambda: NOW,
    )


@pytest.fixture
def failing_classifier() -> ScriptedClassifier:
    return ScriptedClassifier(error=ClassificationFailure("classifier down"))
