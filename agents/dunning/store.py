"""Persistence for campaigns, invoices, customers, email logs and tasks.

SQLAlchemy Core tables on a shared ``MetaData`` plus a small repository
class. All instants are written as UTC; engines without timezone support
hand back naive values, which are re-tagged as UTC on read.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, Row

from .dto import (
    ATTEMPT_STATUSES,
    Campaign,
    CampaignConfig,
    CampaignStats,
    CampaignStatus,
    Customer,
    EmailLog,
    EmailStatus,
    Invoice,
    InvoiceStatus,
    PaymentBehavior,
    RiskLevel,
    ScheduledTask,
    TaskStatus,
    TaskType,
)
from .errors import NotFoundError

DIRECTION_OUTBOUND = "outbound"
DIRECTION_INBOUND = "inbound"


@dataclass(frozen=True)
class DunningTables:
    campaigns: Table
    campaign_invoices: Table
    customers: Table
    invoices: Table
    email_logs: Table
    scheduled_tasks: Table


def get_tables(metadata: MetaData) -> DunningTables:
    """Return Table objects for the dunning schema bound to ``metadata``."""
    campaigns = Table(
        "campaigns",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("org_id", String(64), nullable=False, index=True),
        Column("name", Text, nullable=False),
        Column("description", Text),
        Column("status", String(16), nullable=False),
        Column("config", JSON, nullable=False),
        Column("stats", JSON, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    campaign_invoices = Table(
        "campaign_invoices",
        metadata,
        Column("campaign_id", String(36), primary_key=True),
        Column("invoice_id", String(36), primary_key=True),
        Index("ix_campaign_invoices_invoice_id", "invoice_id"),
        extend_existing=True,
    )
    customers = Table(
        "customers",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("org_id", String(64), nullable=False, index=True),
        Column("name", Text, nullable=False),
        Column("email", String(320)),
        Column("payment_behavior", String(16), nullable=False),
        Column("avg_days_to_pay", Integer),
        Column("total_invoices", Integer, nullable=False, default=0),
        Column("total_paid_cents", BigInteger, nullable=False, default=0),
        Column("total_outstanding_cents", BigInteger, nullable=False, default=0),
        Column("stop_contact", Boolean, nullable=False, default=False),
        Column("stop_contact_at", DateTime(timezone=True)),
        extend_existing=True,
    )
    invoices = Table(
        "invoices",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("org_id", String(64), nullable=False, index=True),
        Column("customer_id", String(36), nullable=False, index=True),
        Column("invoice_number", String(64), nullable=False),
        Column("due_date", Date, nullable=False),
        Column("amount_cents", BigInteger, nullable=False),
        Column("amount_due_cents", BigInteger, nullable=False),
        Column("status", String(16), nullable=False),
        Column("currency", String(3), nullable=False),
        Column("risk_level", String(16)),
        Column("payment_url", Text),
        Column("paid_at", DateTime(timezone=True)),
        extend_existing=True,
    )
    email_logs = Table(
        "email_logs",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("org_id", String(64), nullable=False),
        Column("campaign_id", String(36)),
        Column("invoice_id", String(36), index=True),
        Column("customer_id", String(36), nullable=False, index=True),
        Column("direction", String(8), nullable=False, default=DIRECTION_OUTBOUND),
        Column("to_email", String(320)),
        Column("subject", Text),
        Column("body", Text),
        Column("status", String(16), nullable=False),
        Column("message_id", String(255), index=True),
        Column("sent_at", DateTime(timezone=True)),
        Column("opened_at", DateTime(timezone=True)),
        Column("clicked_at", DateTime(timezone=True)),
        Column("error_message", Text),
        Column("meta", JSON, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    scheduled_tasks = Table(
        "scheduled_tasks",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("org_id", String(64), nullable=False),
        Column("campaign_id", String(36), index=True),
        Column("invoice_id", String(36)),
        Column("customer_id", String(36)),
        Column("task_type", String(32), nullable=False),
        Column("task_data", JSON, nullable=False),
        Column("scheduled_for", DateTime(timezone=True), nullable=False),
        Column("status", String(16), nullable=False),
        Column("retry_count", Integer, nullable=False, default=0),
        Column("max_retries", Integer, nullable=False, default=3),
        Column("retryable", Boolean, nullable=False, default=False),
        Column("error_message", Text),
        Column("executed_at", DateTime(timezone=True)),
        Column("meta", JSON, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
        Index("ix_scheduled_tasks_status_scheduled_for", "status", "scheduled_for"),
        extend_existing=True,
    )
    return DunningTables(
        campaigns, campaign_invoices, customers, invoices, email_logs, scheduled_tasks
    )


_METADATA = MetaData()
TABLES = get_tables(_METADATA)


def create_schema(engine: Engine) -> None:
    """Create all dunning tables (tests and local runs)."""
    _METADATA.create_all(engine)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _now() -> datetime:
    return datetime.now(UTC)


def _customer_from_row(row: Row) -> Customer:
    return Customer(
        id=row.id,
        org_id=row.org_id,
        name=row.name,
        email=row.email,
        payment_behavior=PaymentBehavior(row.payment_behavior),
        avg_days_to_pay=row.avg_days_to_pay,
        total_invoices=row.total_invoices or 0,
        total_paid_cents=row.total_paid_cents or 0,
        total_outstanding_cents=row.total_outstanding_cents or 0,
        stop_contact=bool(row.stop_contact),
        stop_contact_at=_utc(row.stop_contact_at),
    )


def _invoice_from_row(row: Row) -> Invoice:
    return Invoice(
        id=row.id,
        org_id=row.org_id,
        customer_id=row.customer_id,
        invoice_number=row.invoice_number,
        due_date=row.due_date,
        amount_cents=row.amount_cents,
        amount_due_cents=row.amount_due_cents,
        status=InvoiceStatus(row.status),
        currency=row.currency,
        risk_level=RiskLevel(row.risk_level) if row.risk_level else None,
        payment_url=row.payment_url,
        paid_at=_utc(row.paid_at),
    )


def _email_log_from_row(row: Row) -> EmailLog:
    return EmailLog(
        id=row.id,
        org_id=row.org_id,
        customer_id=row.customer_id,
        status=EmailStatus(row.status),
        campaign_id=row.campaign_id,
        invoice_id=row.invoice_id,
        to_email=row.to_email,
        subject=row.subject,
        body=row.body,
        message_id=row.message_id,
        sent_at=_utc(row.sent_at),
        opened_at=_utc(row.opened_at),
        clicked_at=_utc(row.clicked_at),
        error_message=row.error_message,
        metadata={**(row.meta or {}), "direction": row.direction},
        created_at=_utc(row.created_at),
    )


def _task_from_row(row: Row) -> ScheduledTask:
    return ScheduledTask(
        id=row.id,
        org_id=row.org_id,
        task_type=TaskType(row.task_type),
        scheduled_for=_utc(row.scheduled_for),
        status=TaskStatus(row.status),
        campaign_id=row.campaign_id,
        invoice_id=row.invoice_id,
        customer_id=row.customer_id,
        task_data=dict(row.task_data or {}),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        retryable=bool(row.retryable),
        error_message=row.error_message,
        executed_at=_utc(row.executed_at),
        metadata=dict(row.meta or {}),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


class DunningStore:
    """Repository over the dunning tables.

    Every method runs in its own short transaction; nothing is cached
    between calls so callers always observe committed state.
    """

    def __init__(self, engine: Engine, tables: DunningTables = TABLES):
        self.engine = engine
        self.t = tables

    # Campaigns

    def insert_campaign(self, campaign: Campaign) -> Campaign:
        now = _now()
        campaign.created_at = campaign.created_at or now
        campaign.updated_at = now
        with self.engine.begin() as conn:
            conn.execute(
                insert(self.t.campaigns).values(
                    id=campaign.id,
                    org_id=campaign.org_id,
                    name=campaign.name,
                    description=campaign.description,
                    status=campaign.status.value,
                    config=campaign.config.to_dict(),
                    stats=campaign.stats.to_dict(),
                    created_at=_utc(campaign.created_at),
                    updated_at=now,
                )
            )
            if campaign.target_invoice_ids:
                conn.execute(
                    insert(self.t.campaign_invoices),
                    [
                        {"campaign_id": campaign.id, "invoice_id": invoice_id}
                        for invoice_id in dict.fromkeys(campaign.target_invoice_ids)
                    ],
                )
        return campaign

    def _campaign_targets(self, conn, campaign_ids: list[str]) -> dict[str, list[str]]:
        targets: dict[str, list[str]] = {cid: [] for cid in campaign_ids}
        if not campaign_ids:
            return targets
        rows = conn.execute(
            select(self.t.campaign_invoices.c.campaign_id, self.t.campaign_invoices.c.invoice_id)
            .where(self.t.campaign_invoices.c.campaign_id.in_(campaign_ids))
            .order_by(self.t.campaign_invoices.c.invoice_id)
        ).fetchall()
        for row in rows:
            targets[row.campaign_id].append(row.invoice_id)
        return targets

    def _campaigns_from_rows(self, conn, rows: list[Row]) -> list[Campaign]:
        targets = self._campaign_targets(conn, [row.id for row in rows])
        return [
            Campaign(
                id=row.id,
                org_id=row.org_id,
                name=row.name,
                description=row.description,
                status=CampaignStatus(row.status),
                config=CampaignConfig.from_dict(row.config),
                target_invoice_ids=targets[row.id],
                stats=CampaignStats.from_dict(row.stats),
                created_at=_utc(row.created_at),
                updated_at=_utc(row.updated_at),
            )
            for row in rows
        ]

    def get_campaign(self, campaign_id: str) -> Campaign:
        """Load a campaign with its target invoice ids.

        Raises:
            NotFoundError: If the campaign does not exist
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.campaigns).where(self.t.campaigns.c.id == campaign_id)
            ).first()
            if row is None:
                raise NotFoundError("campaign", campaign_id)
            return self._campaigns_from_rows(conn, [row])[0]

    def list_campaigns(
        self,
        status: CampaignStatus | None = None,
        org_id: str | None = None,
    ) -> list[Campaign]:
        stmt = select(self.t.campaigns).order_by(self.t.campaigns.c.created_at)
        if status is not None:
            stmt = stmt.where(self.t.campaigns.c.status == status.value)
        if org_id is not None:
            stmt = stmt.where(self.t.campaigns.c.org_id == org_id)
        with self.engine.connect() as conn:
            return self._campaigns_from_rows(conn, conn.execute(stmt).fetchall())

    def campaigns_for_customer(
        self, customer_id: str, status: CampaignStatus | None = None
    ) -> list[Campaign]:
        """Campaigns targeting at least one invoice of ``customer_id``."""
        ci, inv, c = self.t.campaign_invoices, self.t.invoices, self.t.campaigns
        ids = (
            select(ci.c.campaign_id)
            .join(inv, inv.c.id == ci.c.invoice_id)
            .where(inv.c.customer_id == customer_id)
        )
        stmt = select(c).where(c.c.id.in_(ids)).order_by(c.c.created_at)
        if status is not None:
            stmt = stmt.where(c.c.status == status.value)
        with self.engine.connect() as conn:
            return self._campaigns_from_rows(conn, conn.execute(stmt).fetchall())

    def set_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        expected: Iterable[CampaignStatus] | None = None,
    ) -> bool:
        """Set campaign status, optionally only from one of ``expected``.

        Returns:
            True if a row changed
        """
        stmt = (
            update(self.t.campaigns)
            .where(self.t.campaigns.c.id == campaign_id)
            .values(status=status.value, updated_at=_now())
        )
        if expected is not None:
            stmt = stmt.where(self.t.campaigns.c.status.in_([s.value for s in expected]))
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount == 1

    def update_campaign_config(self, campaign_id: str, config: CampaignConfig) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(self.t.campaigns)
                .where(self.t.campaigns.c.id == campaign_id)
                .values(config=config.to_dict(), updated_at=_now())
            )
        if result.rowcount == 0:
            raise NotFoundError("campaign", campaign_id)

    def locked_stats_select(self, campaign_id: str):
        """Campaign stats read that holds the row lock until the transaction ends."""
        return (
            select(self.t.campaigns.c.stats)
            .where(self.t.campaigns.c.id == campaign_id)
            .with_for_update()
        )

    def _update_stats(
        self, campaign_id: str, change: Callable[[CampaignStats], None]
    ) -> CampaignStats:
        with self.engine.begin() as conn:
            row = conn.execute(self.locked_stats_select(campaign_id)).first()
            if row is None:
                raise NotFoundError("campaign", campaign_id)
            stats = CampaignStats.from_dict(row.stats)
            change(stats)
            conn.execute(
                update(self.t.campaigns)
                .where(self.t.campaigns.c.id == campaign_id)
                .values(stats=stats.to_dict(), updated_at=_now())
            )
        return stats

    def increment_campaign_stats(self, campaign_id: str, **deltas: int) -> CampaignStats:
        """Add ``deltas`` to the campaign's stats counters.

        Negative deltas are ignored; stats only ever grow.
        """

        def change(stats: CampaignStats) -> None:
            for name, delta in deltas.items():
                setattr(stats, name, getattr(stats, name) + max(delta, 0))

        return self._update_stats(campaign_id, change)

    def raise_campaign_stats(self, campaign_id: str, **values: int) -> CampaignStats:
        """Set stats counters to ``values`` where that does not lower them."""

        def change(stats: CampaignStats) -> None:
            for name, value in values.items():
                setattr(stats, name, max(getattr(stats, name), value))

        return self._update_stats(campaign_id, change)

    def assigned_invoice_ids(
        self, org_id: str, statuses: Iterable[CampaignStatus]
    ) -> set[str]:
        """Invoice ids already targeted by a campaign of the given statuses."""
        ci, c = self.t.campaign_invoices, self.t.campaigns
        stmt = (
            select(ci.c.invoice_id)
            .join(c, c.c.id == ci.c.campaign_id)
            .where(c.c.org_id == org_id)
            .where(c.c.status.in_([s.value for s in statuses]))
        )
        with self.engine.connect() as conn:
            return {row.invoice_id for row in conn.execute(stmt)}

    # Customers

    def upsert_customer(self, customer: Customer) -> Customer:
        """Insert or update a customer. ``stop_contact`` is never cleared."""
        values = customer.to_dict()
        values["payment_behavior"] = customer.payment_behavior.value
        values["stop_contact_at"] = _utc(customer.stop_contact_at)
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(self.t.customers.c.stop_contact, self.t.customers.c.stop_contact_at)
                .where(self.t.customers.c.id == customer.id)
            ).first()
            if existing is None:
                conn.execute(insert(self.t.customers).values(**values))
            else:
                if existing.stop_contact:
                    values["stop_contact"] = True
                    values["stop_contact_at"] = _utc(existing.stop_contact_at)
                conn.execute(
                    update(self.t.customers)
                    .where(self.t.customers.c.id == customer.id)
                    .values(**values)
                )
        customer.stop_contact = bool(values["stop_contact"])
        customer.stop_contact_at = values["stop_contact_at"]
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.customers).where(self.t.customers.c.id == customer_id)
            ).first()
        if row is None:
            raise NotFoundError("customer", customer_id)
        return _customer_from_row(row)

    def find_customer_by_email(self, email: str, org_id: str | None = None) -> Customer | None:
        stmt = select(self.t.customers).where(
            func.lower(self.t.customers.c.email) == email.strip().lower()
        )
        if org_id is not None:
            stmt = stmt.where(self.t.customers.c.org_id == org_id)
        with self.engine.connect() as conn:
            row = conn.execute(stmt.limit(1)).first()
        return _customer_from_row(row) if row else None

    def set_stop_contact(self, customer_id: str, at: datetime | None = None) -> bool:
        """Set the sticky opt-out flag.

        Returns:
            True if the flag changed, False if it was already set
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                update(self.t.customers)
                .where(self.t.customers.c.id == customer_id)
                .where(self.t.customers.c.stop_contact.is_(False))
                .values(stop_contact=True, stop_contact_at=_utc(at or _now()))
            )
            if result.rowcount == 0:
                exists = conn.execute(
                    select(self.t.customers.c.id).where(self.t.customers.c.id == customer_id)
                ).first()
                if exists is None:
                    raise NotFoundError("customer", customer_id)
        return result.rowcount == 1

    # Invoices

    def upsert_invoice(self, invoice: Invoice) -> Invoice:
        values = invoice.to_dict()
        values.update(
            due_date=invoice.due_date,
            status=invoice.status.value,
            risk_level=invoice.risk_level.value if invoice.risk_level else None,
            paid_at=_utc(invoice.paid_at),
        )
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(self.t.invoices.c.id).where(self.t.invoices.c.id == invoice.id)
            ).first()
            if exists is None:
                conn.execute(insert(self.t.invoices).values(**values))
            else:
                conn.execute(
                    update(self.t.invoices).where(self.t.invoices.c.id == invoice.id).values(**values)
                )
        return invoice

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.invoices).where(self.t.invoices.c.id == invoice_id)
            ).first()
        if row is None:
            raise NotFoundError("invoice", invoice_id)
        return _invoice_from_row(row)

    def list_invoices(self, invoice_ids: Iterable[str]) -> list[Invoice]:
        invoice_ids = list(invoice_ids)
        if not invoice_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(self.t.invoices)
                .where(self.t.invoices.c.id.in_(invoice_ids))
                .order_by(self.t.invoices.c.due_date, self.t.invoices.c.id)
            ).fetchall()
        return [_invoice_from_row(row) for row in rows]

    def list_open_invoices(self, org_id: str) -> list[Invoice]:
        """Invoices of the org that are neither paid, cancelled nor void."""
        closed = [InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value, InvoiceStatus.VOID.value]
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(self.t.invoices)
                .where(self.t.invoices.c.org_id == org_id)
                .where(self.t.invoices.c.status.not_in(closed))
                .order_by(self.t.invoices.c.due_date, self.t.invoices.c.id)
            ).fetchall()
        return [_invoice_from_row(row) for row in rows]

    def list_overdue_invoices(self, org_id: str, today: date) -> list[Invoice]:
        """Open invoices past due with an outstanding amount."""
        return [
            invoice
            for invoice in self.list_open_invoices(org_id)
            if invoice.due_date < today and invoice.amount_due_cents > 0
        ]

    def list_overdue_unassigned(self, org_id: str, today: date) -> list[Invoice]:
        """Overdue invoices not targeted by any draft, active or paused campaign."""
        assigned = self.assigned_invoice_ids(
            org_id, (CampaignStatus.DRAFT, CampaignStatus.ACTIVE, CampaignStatus.PAUSED)
        )
        return [inv for inv in self.list_overdue_invoices(org_id, today) if inv.id not in assigned]

    def list_org_ids(self) -> list[str]:
        """Organizations that have at least one invoice."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(self.t.invoices.c.org_id).distinct().order_by(self.t.invoices.c.org_id)
            ).fetchall()
        return [row.org_id for row in rows]

    def set_risk_level(self, invoice_id: str, level: RiskLevel) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(self.t.invoices)
                .where(self.t.invoices.c.id == invoice_id)
                .values(risk_level=level.value)
            )

    # Email logs

    def insert_email_log(self, log: EmailLog, direction: str = DIRECTION_OUTBOUND) -> EmailLog:
        log.created_at = log.created_at or _now()
        with self.engine.begin() as conn:
            conn.execute(
                insert(self.t.email_logs).values(
                    id=log.id,
                    org_id=log.org_id,
                    campaign_id=log.campaign_id,
                    invoice_id=log.invoice_id,
                    customer_id=log.customer_id,
                    direction=direction,
                    to_email=log.to_email,
                    subject=log.subject,
                    body=log.body,
                    status=log.status.value,
                    message_id=log.message_id,
                    sent_at=_utc(log.sent_at),
                    opened_at=_utc(log.opened_at),
                    clicked_at=_utc(log.clicked_at),
                    error_message=log.error_message,
                    meta=log.metadata,
                    created_at=_utc(log.created_at),
                )
            )
        return log

    def get_email_log(self, log_id: str) -> EmailLog:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.email_logs).where(self.t.email_logs.c.id == log_id)
            ).first()
        if row is None:
            raise NotFoundError("email_log", log_id)
        return _email_log_from_row(row)

    def find_email_log_by_message_id(self, message_id: str) -> EmailLog | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.email_logs).where(self.t.email_logs.c.message_id == message_id)
            ).first()
        return _email_log_from_row(row) if row else None

    def _outbound_attempts(self):
        logs = self.t.email_logs
        return (
            select(logs)
            .where(logs.c.direction == DIRECTION_OUTBOUND)
            .where(logs.c.status.in_([s.value for s in ATTEMPT_STATUSES]))
        )

    def count_attempts(self, invoice_id: str) -> int:
        """Dispatched outbound emails for an invoice."""
        logs = self.t.email_logs
        stmt = (
            select(func.count())
            .select_from(logs)
            .where(logs.c.invoice_id == invoice_id)
            .where(logs.c.direction == DIRECTION_OUTBOUND)
            .where(logs.c.status.in_([s.value for s in ATTEMPT_STATUSES]))
        )
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    def last_email(self, invoice_id: str) -> EmailLog | None:
        """Most recent dispatched outbound email for an invoice."""
        logs = self.t.email_logs
        stmt = (
            self._outbound_attempts()
            .where(logs.c.invoice_id == invoice_id)
            .order_by(logs.c.sent_at.desc(), logs.c.created_at.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _email_log_from_row(row) if row else None

    def recent_emails(self, customer_id: str, limit: int = 10) -> list[EmailLog]:
        """The customer's latest dispatched outbound emails, newest first."""
        logs = self.t.email_logs
        stmt = (
            self._outbound_attempts()
            .where(logs.c.customer_id == customer_id)
            .order_by(logs.c.sent_at.desc(), logs.c.created_at.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [_email_log_from_row(row) for row in conn.execute(stmt)]

    def mark_email_event(self, log_id: str, status: EmailStatus, at: datetime) -> bool:
        """Record a delivery/engagement event on an outbound email.

        Opened and clicked timestamps are only set once.
        """
        values: dict[str, Any] = {"status": status.value}
        logs = self.t.email_logs
        stmt = update(logs).where(logs.c.id == log_id)
        if status == EmailStatus.OPENED:
            values["opened_at"] = func.coalesce(logs.c.opened_at, _utc(at))
            stmt = stmt.where(logs.c.status != EmailStatus.CLICKED.value)
        elif status == EmailStatus.CLICKED:
            values["clicked_at"] = func.coalesce(logs.c.clicked_at, _utc(at))
            values["opened_at"] = func.coalesce(logs.c.opened_at, _utc(at))
        elif status == EmailStatus.DELIVERED:
            stmt = stmt.where(logs.c.status == EmailStatus.SENT.value)
        with self.engine.begin() as conn:
            result = conn.execute(stmt.values(**values))
        return result.rowcount == 1

    # Scheduled tasks

    def insert_task(self, task: ScheduledTask) -> ScheduledTask:
        now = _now()
        task.created_at = task.created_at or now
        task.updated_at = now
        with self.engine.begin() as conn:
            conn.execute(
                insert(self.t.scheduled_tasks).values(
                    id=task.id,
                    org_id=task.org_id,
                    campaign_id=task.campaign_id,
                    invoice_id=task.invoice_id,
                    customer_id=task.customer_id,
                    task_type=task.task_type.value,
                    task_data=task.task_data,
                    scheduled_for=_utc(task.scheduled_for),
                    status=task.status.value,
                    retry_count=task.retry_count,
                    max_retries=task.max_retries,
                    retryable=task.retryable,
                    error_message=task.error_message,
                    executed_at=_utc(task.executed_at),
                    meta=task.metadata,
                    created_at=_utc(task.created_at),
                    updated_at=now,
                )
            )
        return task

    def get_task(self, task_id: str) -> ScheduledTask:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.t.scheduled_tasks).where(self.t.scheduled_tasks.c.id == task_id)
            ).first()
        if row is None:
            raise NotFoundError("task", task_id)
        return _task_from_row(row)

    def list_tasks(
        self,
        campaign_id: str | None = None,
        status: TaskStatus | None = None,
    ) -> list[ScheduledTask]:
        tasks = self.t.scheduled_tasks
        stmt = select(tasks).order_by(tasks.c.scheduled_for, tasks.c.created_at)
        if campaign_id is not None:
            stmt = stmt.where(tasks.c.campaign_id == campaign_id)
        if status is not None:
            stmt = stmt.where(tasks.c.status == status.value)
        with self.engine.connect() as conn:
            return [_task_from_row(row) for row in conn.execute(stmt)]

    def due_task_ids(self, now: datetime, limit: int) -> list[str]:
        """Ids of pending tasks due at ``now``, oldest schedule first."""
        tasks = self.t.scheduled_tasks
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(tasks.c.id)
                .where(tasks.c.status == TaskStatus.PENDING.value)
                .where(tasks.c.scheduled_for <= _utc(now))
                .order_by(tasks.c.scheduled_for, tasks.c.created_at)
                .limit(limit)
            ).fetchall()
        return [row.id for row in rows]

    def transition_task(
        self, task_id: str, expected: TaskStatus, new: TaskStatus, **values: Any
    ) -> bool:
        """Compare-and-swap a task's status.

        The row only changes if its current status equals ``expected``.

        Returns:
            True if this call performed the transition
        """
        values = {k: _utc(v) if isinstance(v, datetime) else v for k, v in values.items()}
        tasks = self.t.scheduled_tasks
        with self.engine.begin() as conn:
            result = conn.execute(
                update(tasks)
                .where(tasks.c.id == task_id)
                .where(tasks.c.status == expected.value)
                .values(status=new.value, updated_at=_now(), **values)
            )
        return result.rowcount == 1

    def cancel_tasks(
        self,
        org_id: str | None = None,
        campaign_id: str | None = None,
        invoice_id: str | None = None,
        customer_id: str | None = None,
        task_types: Iterable[TaskType] | None = None,
        reason: str | None = None,
    ) -> int:
        """Move matching pending tasks to cancelled.

        Raises:
            ValueError: If no scoping filter is given
        """
        if not any((org_id, campaign_id, invoice_id, customer_id)):
            raise ValueError("cancel_tasks requires at least one of org/campaign/invoice/customer")
        tasks = self.t.scheduled_tasks
        stmt = update(tasks).where(tasks.c.status == TaskStatus.PENDING.value)
        if org_id:
            stmt = stmt.where(tasks.c.org_id == org_id)
        if campaign_id:
            stmt = stmt.where(tasks.c.campaign_id == campaign_id)
        if invoice_id:
            stmt = stmt.where(tasks.c.invoice_id == invoice_id)
        if customer_id:
            stmt = stmt.where(tasks.c.customer_id == customer_id)
        if task_types is not None:
            stmt = stmt.where(tasks.c.task_type.in_([t.value for t in task_types]))
        with self.engine.begin() as conn:
            result = conn.execute(
                stmt.values(
                    status=TaskStatus.CANCELLED.value,
                    error_message=reason,
                    updated_at=_now(),
                )
            )
        return result.rowcount

    def retire_failed_tasks(
        self,
        campaign_id: str,
        invoice_id: str,
        task_types: Iterable[TaskType],
        reason: str,
    ) -> int:
        """Clear the retryable flag on an invoice's failed tasks."""
        tasks = self.t.scheduled_tasks
        with self.engine.begin() as conn:
            result = conn.execute(
                update(tasks)
                .where(tasks.c.campaign_id == campaign_id)
                .where(tasks.c.invoice_id == invoice_id)
                .where(tasks.c.status == TaskStatus.FAILED.value)
                .where(tasks.c.retryable.is_(True))
                .where(tasks.c.task_type.in_([t.value for t in task_types]))
                .values(retryable=False, error_message=reason, updated_at=_now())
            )
        return result.rowcount

    def has_pending_task(
        self, campaign_id: str, invoice_id: str, task_types: Iterable[TaskType]
    ) -> bool:
        tasks = self.t.scheduled_tasks
        with self.engine.connect() as conn:
            row = conn.execute(
                select(tasks.c.id)
                .where(tasks.c.campaign_id == campaign_id)
                .where(tasks.c.invoice_id == invoice_id)
                .where(tasks.c.status == TaskStatus.PENDING.value)
                .where(tasks.c.task_type.in_([t.value for t in task_types]))
                .limit(1)
            ).first()
        return row is not None

    def retryable_failed_tasks(self, limit: int) -> list[ScheduledTask]:
        tasks = self.t.scheduled_tasks
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(tasks)
                .where(tasks.c.status == TaskStatus.FAILED.value)
                .where(tasks.c.retryable.is_(True))
                .where(tasks.c.retry_count < tasks.c.max_retries)
                .order_by(tasks.c.updated_at)
                .limit(limit)
            ).fetchall()
        return [_task_from_row(row) for row in rows]

    def delete_finished_tasks(self, before: datetime) -> int:
        tasks = self.t.scheduled_tasks
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(tasks)
                .where(
                    tasks.c.status.in_([TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value])
                )
                .where(tasks.c.updated_at < _utc(before))
            )
        return result.rowcount

    def task_counts(self, org_id: str | None = None) -> dict[str, int]:
        tasks = self.t.scheduled_tasks
        stmt = select(tasks.c.status, func.count()).group_by(tasks.c.status)
        if org_id is not None:
            stmt = stmt.where(tasks.c.org_id == org_id)
        counts = {status.value: 0 for status in TaskStatus}
        with self.engine.connect() as conn:
            for status, count in conn.execute(stmt):
                counts[status] = int(count)
        return counts
