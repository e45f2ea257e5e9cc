"""Campaign execution end to end against an in-memory database."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import insert, select

from agents.dunning.compliance import MINI_MIRANDA, VALIDATION_NOTICE
from agents.dunning.dto import (
    CampaignConfig,
    CampaignStatus,
    EmailStatus,
    OutcomeStatus,
    TaskStatus,
    TaskType,
    Tone,
)
from agents.dunning.errors import ExternalSendFailure, NotFoundError
from agents.dunning.executor import (
    REASON_ALL_PAID,
    REASON_ALREADY_SCHEDULED,
    REASON_MAX_ATTEMPTS,
    REASON_NO_EMAIL,
    REASON_OPTED_OUT,
    CampaignExecutor,
)
from agents.dunning.store import TABLES
from agents.dunning.timing import REASON_OUTSIDE_WINDOW, REASON_TOO_EARLY

from .conftest import NOW, FixedGenerator, RecordingSender

# 22:00 EDT on 2026-03-10
NIGHT = datetime(2026, 3, 11, 2, 0, tzinfo=UTC)


@pytest.fixture
def executor(ctx) -> CampaignExecutor:
    return CampaignExecutor(ctx)


def _pending_sends(store, campaign_id):
    return [
        t
        for t in store.list_tasks(campaign_id=campaign_id, status=TaskStatus.PENDING)
        if t.task_type == TaskType.SEND_EMAIL
    ]


class TestSend:
    """Invoices that are due for an email get one."""

    def test_follow_up_after_cadence_escalates_to_firm(self, executor, store, seed, sender) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=20, amount_cents=500000)
        campaign = seed.campaign([invoice])
        seed.sent_email(invoice, campaign, sent_at=NOW - timedelta(days=6))

        summary = executor.execute_campaign(campaign.id, NOW)

        assert summary.sent == 1
        outcome = summary.outcomes[0]
        assert outcome.status == OutcomeStatus.SENT
        assert outcome.stage == "follow_up"
        assert outcome.tone == Tone.FIRM
        assert outcome.attempt_number == 2

        assert len(sender.sent) == 1
        message = sender.sent[0]
        assert message["to"] == "jane@example.com"
        assert message["from_name"] == "Acme Receivables"
        assert message["reply_to"] == "ar@acme.test"
        assert MINI_MIRANDA in message["body"]
        assert VALIDATION_NOTICE not in message["body"]

        log = store.get_email_log(outcome.email_log_id)
        assert log.status == EmailStatus.SENT
        assert log.sent_at == NOW
        assert log.metadata["stage"] == "follow_up"
        assert log.metadata["tone"] == "firm"
        assert log.metadata["attempt_number"] == 2
        assert log.metadata["escalation"]["should_escalate"] is True
        assert store.count_attempts(invoice.id) == 2
        assert store.get_campaign(campaign.id).stats.emails_sent == 1

        follow_ups = _pending_sends(store, campaign.id)
        assert len(follow_ups) == 1
        assert follow_ups[0].scheduled_for == NOW + timedelta(days=5)
        assert follow_ups[0].task_data["tone"] == Tone.FIRM.value

    def test_first_contact_carries_validation_notice(self, executor, seed, sender, generator) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=3)
        campaign = seed.campaign([invoice])

        outcome = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert outcome.stage == "reminder"
        assert outcome.tone == Tone.FRIENDLY
        assert outcome.attempt_number == 1
        assert VALIDATION_NOTICE in sender.sent[0]["body"]
        assert generator.contexts[0].is_first_contact is True

    def test_last_allowed_attempt_schedules_no_follow_up(self, executor, store, seed) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=20)
        campaign = seed.campaign([invoice], config=CampaignConfig(max_attempts=2))
        seed.sent_email(invoice, campaign, sent_at=NOW - timedelta(days=6))

        outcome = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert outcome.status == OutcomeStatus.SENT
        assert _pending_sends(store, campaign.id) == []


class TestSkip:
    def test_opted_out_customer_is_never_emailed(self, executor, seed, sender) -> None:
        customer = seed.customer(stop_contact=True, stop_contact_at=NOW - timedelta(days=1))
        invoice = seed.invoice(customer)
        campaign = seed.campaign([invoice])

        outcome = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.reason == REASON_OPTED_OUT
        assert sender.sent == []

    def test_max_attempts_reached(self, executor, seed, sender) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=30)
        campaign = seed.campaign([invoice], config=CampaignConfig(max_attempts=2))
        seed.sent_email(invoice, campaign, sent_at=NOW - timedelta(days=12))
        seed.sent_email(invoice, campaign, sent_at=NOW - timedelta(days=6))

        outcome = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert outcome.reason == REASON_MAX_ATTEMPTS
        assert sender.sent == []

    def test_bounced_email_is_not_an_attempt(self, executor, seed, sender) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=30)
        campaign = seed.campaign([invoice], config=CampaignConfig(max_attempts=1))
        seed.sent_email(invoice, campaign, status=EmailStatus.BOUNCED)

        outcome = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert outcome.status == OutcomeStatus.SENT
        assert outcome.attempt_number == 1

    def test_customer_without_email(self, executor, seed) -> None:
        customer = seed.customer(email=None)
        invoice = seed.invoice(customer)
        campaign = seed.campaign([invoice])

        outcome = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert outcome.reason == REASON_NO_EMAIL


class TestDefer:
    def test_too_early_schedules_one_follow_up(self, executor, store, seed, sender) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=20)
        campaign = seed.campaign([invoice])
        seed.sent_email(invoice, campaign, sent_at=NOW - timedelta(days=2))

        first = executor.execute_campaign(campaign.id, NOW).outcomes[0]
        second = executor.execute_campaign(campaign.id, NOW).outcomes[0]

        assert first.status == OutcomeStatus.SCHEDULED
        assert first.reason == REASON_TOO_EARLY
        # 10:00 EDT three days later
        assert first.scheduled_for == datetime(2026, 3, 13, 14, 0, tzinfo=UTC)
        assert second.status == OutcomeStatus.SCHEDULED
        assert second.reason == REASON_ALREADY_SCHEDULED
        assert len(_pending_sends(store, campaign.id)) == 1
        assert sender.sent == []

    def test_outside_window_defers_to_next_morning(self, executor, store, seed, sender) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=3)
        campaign = seed.campaign([invoice])

        outcome = executor.execute_campaign(campaign.id, NIGHT).outcomes[0]

        assert outcome.status == OutcomeStatus.SCHEDULED
        assert outcome.reason == REASON_OUTSIDE_WINDOW
        assert outcome.scheduled_for == datetime(2026, 3, 11, 12, 0, tzinfo=UTC)
        assert sender.sent == []
        [task] = _pending_sends(store, campaign.id)
        assert task.scheduled_for == outcome.scheduled_for

    def test_task_path_still_honours_window(self, executor, store, seed, sender, org) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=3)
        campaign = seed.campaign([invoice])

        outcome = executor.process_invoice(
            campaign, invoice.id, org, NIGHT, tone_override=Tone.FRIENDLY, respect_cadence=False
        )

        assert outcome.reason == REASON_OUTSIDE_WINDOW
        assert sender.sent == []
        [task] = _pending_sends(store, campaign.id)
        assert task.task_data["tone"] == "friendly"


class TestCompletion:
    def test_all_paid_completes_and_cancels_tasks(self, executor, store, scheduler, seed) -> None:
        customer = seed.customer()
        first = seed.invoice(customer, amount_cents=10000)
        second = seed.invoice(customer, amount_cents=25000)
        campaign = seed.campaign([first, second])
        scheduler.schedule_follow_up(
            campaign.org_id, campaign.id, first.id, customer.id, NOW + timedelta(days=2)
        )
        seed.mark_paid(first)
        seed.mark_paid(second)

        summary = executor.execute_campaign(campaign.id, NOW)

        assert summary.completed is True
        assert summary.reason == REASON_ALL_PAID
        stored = store.get_campaign(campaign.id)
        assert stored.status == CampaignStatus.COMPLETED
        assert stored.stats.payments_received == 2
        assert stored.stats.amount_collected_cents == 35000
        assert store.list_tasks(campaign_id=campaign.id, status=TaskStatus.PENDING) == []

    def test_partially_paid_campaign_stays_active(self, executor, store, seed, sender) -> None:
        customer = seed.customer()
        paid = seed.invoice(customer, days_overdue=3)
        open_invoice = seed.invoice(customer, days_overdue=3)
        campaign = seed.campaign([paid, open_invoice])
        seed.mark_paid(paid)

        summary = executor.execute_campaign(campaign.id, NOW)

        assert summary.completed is False
        assert [o.invoice_id for o in summary.outcomes] == [open_invoice.id]
        assert store.get_campaign(campaign.id).status == CampaignStatus.ACTIVE

    def test_missing_target_invoice_blocks_completion(self, executor, store, seed) -> None:
        customer = seed.customer()
        paid = seed.invoice(customer)
        campaign = seed.campaign([paid])
        with store.engine.begin() as conn:
            conn.execute(
                insert(TABLES.campaign_invoices).values(campaign_id=campaign.id, invoice_id="ghost")
            )
        seed.mark_paid(paid)

        reloaded = store.get_campaign(campaign.id)
        assert "ghost" in reloaded.target_invoice_ids
        assert executor.complete_if_paid(reloaded) is False
        assert store.get_campaign(campaign.id).status == CampaignStatus.ACTIVE

    def test_campaign_without_targets_completes(self, executor, store, seed) -> None:
        campaign = seed.campaign([])

        summary = executor.execute_campaign(campaign.id, NOW)

        assert summary.completed is True
        assert store.get_campaign(campaign.id).status == CampaignStatus.COMPLETED

    def test_paused_campaign_is_not_processed(self, executor, seed, sender) -> None:
        customer = seed.customer()
        invoice = seed.invoice(customer)
        campaign = seed.campaign([invoice], status=CampaignStatus.PAUSED)

        summary = executor.execute_campaign(campaign.id, NOW)

        assert summary.processed == 0
        assert summary.reason == "campaign is paused"
        assert sender.sent == []


class TestFailures:
    def test_unknown_campaign(self, executor) -> None:
        with pytest.raises(NotFoundError):
            executor.execute_campaign("missing", NOW)

    def test_send_failure_is_logged_and_raised(self, ctx, store, seed, org) -> None:
        ctx.sender = RecordingSender(fail_with="mailbox unavailable")
        customer = seed.customer()
        invoice = seed.invoice(customer, days_overdue=3)
        campaign = seed.campaign([invoice])

        with pytest.raises(ExternalSendFailure, match="mailbox unavailable"):
            CampaignExecutor(ctx).process_invoice(campaign, invoice.id, org, NOW)

        with store.engine.connect() as conn:
            logs = conn.execute(
                select(TABLES.email_logs).where(TABLES.email_logs.c.invoice_id == invoice.id)
            ).fetchall()
        assert [row.status for row in logs] == ["failed"]
        assert logs[0].error_message == "mailbox unavailable"
        assert store.count_attempts(invoice.id) == 0
        assert store.get_campaign(campaign.id).stats.emails_sent == 0

    def test_one_failing_invoice_does_not_stop_the_others(self, ctx, seed, sender) -> None:
        class BrokenForOne(FixedGenerator):
            def generate(self, context):
                if context.invoice.invoice_number == "INV-BAD":
                    raise RuntimeError("template exploded")
                return super().generate(context)

        ctx.generator = BrokenForOne()
        customer = seed.customer()
        bad = seed.invoice(customer, days_overdue=3, invoice_number="INV-BAD")
        good = seed.invoice(customer, days_overdue=4, invoice_number="INV-GOOD")
        campaign = seed.campaign([bad, good])

        summary = CampaignExecutor(ctx).execute_campaign(campaign.id, NOW)

        by_invoice = {o.invoice_id: o for o in summary.outcomes}
        assert by_invoice[bad.id].status == OutcomeStatus.FAILED
        assert by_invoice[bad.id].error == "template exploded"
        assert by_invoice[good.id].status == OutcomeStatus.SENT
        assert summary.failed == 1
        assert summary.sent == 1
        assert len(sender.sent) == 1
