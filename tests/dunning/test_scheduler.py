"""Task queue semantics: claim CAS, settlement, retries, cancellation."""

import threading
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine

from agents.dunning.dto import TaskStatus, TaskType, Tone
from agents.dunning.errors import TaskStateError
from agents.dunning.scheduler import TaskScheduler
from agents.dunning.store import DunningStore, create_schema
from backend.core.observability.metrics import get_counter, reset_metrics

from .conftest import NOW, ORG_ID


def _enqueue(scheduler, offset: timedelta = -timedelta(hours=1), **kwargs):
    return scheduler.enqueue(
        ORG_ID,
        kwargs.pop("task_type", TaskType.SEND_EMAIL),
        NOW + offset,
        campaign_id=kwargs.pop("campaign_id", "camp-1"),
        invoice_id=kwargs.pop("invoice_id", "inv-1"),
        customer_id=kwargs.pop("customer_id", "cust-1"),
        **kwargs,
    )


def test_enqueue_requires_aware_datetime(scheduler) -> None:
    with pytest.raises(ValueError):
        scheduler.enqueue(ORG_ID, TaskType.SEND_EMAIL, datetime(2026, 3, 10, 9, 0))


def test_claim_returns_due_tasks_oldest_first(scheduler) -> None:
    later = _enqueue(scheduler, -timedelta(minutes=5))
    earlier = _enqueue(scheduler, -timedelta(hours=2))
    _enqueue(scheduler, timedelta(hours=1))

    claimed = scheduler.claim(batch_size=10, now=NOW)

    assert [t.id for t in claimed] == [earlier.id, later.id]
    assert all(t.status == TaskStatus.EXECUTING for t in claimed)
    assert scheduler.claim(batch_size=10, now=NOW) == []


def test_claim_respects_batch_size(scheduler) -> None:
    for _ in range(3):
        _enqueue(scheduler)

    assert len(scheduler.claim(batch_size=2, now=NOW)) == 2


def test_second_claim_of_same_task_loses(scheduler) -> None:
    reset_metrics()
    task = _enqueue(scheduler)

    first = scheduler.try_claim(task.id, NOW)
    second = scheduler.try_claim(task.id, NOW)

    assert first is not None
    assert first.executed_at == NOW
    assert second is None
    assert get_counter("task_claim_conflicts_total") == 1


def test_racing_pollers_never_share_a_task(scheduler, store, monkeypatch) -> None:
    """Both pollers see the same due ids; each task is executed once."""
    tasks = [_enqueue(scheduler) for _ in range(4)]
    due = [t.id for t in tasks]
    monkeypatch.setattr(store, "due_task_ids", lambda now, limit: list(due))

    first = scheduler.claim(batch_size=10, now=NOW)
    second = scheduler.claim(batch_size=10, now=NOW)

    assert len(first) == 4
    assert second == []


def test_concurrent_claims_on_one_task_have_one_winner(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tasks.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_schema(engine)
    store = DunningStore(engine)
    scheduler = TaskScheduler(store, max_retries=3, backoff_steps=(900,))
    task = _enqueue(scheduler)
    barrier = threading.Barrier(2)
    results = []

    def poller() -> None:
        barrier.wait()
        results.append(scheduler.try_claim(task.id, NOW))

    threads = [threading.Thread(target=poller) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert len(results) == 2
        assert len([r for r in results if r is not None]) == 1
        assert store.get_task(task.id).status == TaskStatus.EXECUTING
    finally:
        engine.dispose()


def test_complete_stores_result(scheduler, store) -> None:
    task = _enqueue(scheduler)
    scheduler.try_claim(task.id, NOW)

    scheduler.complete(task.id, {"status": "sent"})

    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.metadata["result"] == {"status": "sent"}


def test_settling_a_pending_task_is_rejected(scheduler) -> None:
    task = _enqueue(scheduler)

    with pytest.raises(TaskStateError):
        scheduler.complete(task.id)
    with pytest.raises(TaskStateError):
        scheduler.fail(task.id, "boom", retryable=True)


def test_retryable_failures_requeue_with_backoff(scheduler, store) -> None:
    task = _enqueue(scheduler)
    expected_delays = [900, 2700, 8100]

    for retry, delay in enumerate(expected_delays, start=1):
        claimed = scheduler.claim(now=NOW + timedelta(days=retry))
        assert [t.id for t in claimed] == [task.id]
        scheduler.fail(task.id, "smtp timeout", retryable=True)

        requeue_at = NOW + timedelta(days=retry, minutes=1)
        assert scheduler.requeue_retryable(requeue_at) == 1

        stored = store.get_task(task.id)
        assert stored.status == TaskStatus.PENDING
        assert stored.retry_count == retry
        assert stored.scheduled_for == requeue_at + timedelta(seconds=delay)
        # never due in the poll that requeued it
        assert scheduler.claim(now=requeue_at) == []

    scheduler.claim(now=NOW + timedelta(days=10))
    scheduler.fail(task.id, "smtp timeout", retryable=True)

    assert scheduler.requeue_retryable(NOW + timedelta(days=10)) == 0
    assert store.get_task(task.id).status == TaskStatus.FAILED


def test_non_retryable_failure_stays_failed(scheduler, store) -> None:
    task = _enqueue(scheduler)
    scheduler.try_claim(task.id, NOW)
    scheduler.fail(task.id, "campaign not found", retryable=False)

    assert scheduler.requeue_retryable(NOW) == 0
    stored = store.get_task(task.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.error_message == "campaign not found"


def test_cancel_leaves_executing_tasks_alone(scheduler, store) -> None:
    running = _enqueue(scheduler)
    waiting = _enqueue(scheduler, timedelta(days=1))
    other_campaign = _enqueue(scheduler, campaign_id="camp-2")
    scheduler.try_claim(running.id, NOW)

    cancelled = scheduler.cancel(campaign_id="camp-1", reason="campaign paused")

    assert cancelled == 1
    assert store.get_task(running.id).status == TaskStatus.EXECUTING
    assert store.get_task(waiting.id).status == TaskStatus.CANCELLED
    assert store.get_task(waiting.id).error_message == "campaign paused"
    assert store.get_task(other_campaign.id).status == TaskStatus.PENDING


def test_cancel_filters_by_task_type(scheduler, store) -> None:
    send = _enqueue(scheduler)
    resume = _enqueue(scheduler, task_type=TaskType.RESUME_CAMPAIGN)

    scheduler.cancel(campaign_id="camp-1", task_types=(TaskType.SEND_EMAIL, TaskType.FOLLOW_UP))

    assert store.get_task(send.id).status == TaskStatus.CANCELLED
    assert store.get_task(resume.id).status == TaskStatus.PENDING


def test_cancel_requires_a_scope(scheduler) -> None:
    with pytest.raises(ValueError):
        scheduler.cancel()


def test_has_pending_and_follow_up_payload(scheduler) -> None:
    assert scheduler.has_pending("camp-1", "inv-1") is False

    task = scheduler.schedule_follow_up(
        ORG_ID, "camp-1", "inv-1", "cust-1", NOW, tone=Tone.FIRM, reason="follow-up"
    )

    assert task.task_data == {"tone": "firm", "reason": "follow-up"}
    assert scheduler.has_pending("camp-1", "inv-1") is True
    assert scheduler.has_pending("camp-1", "inv-1", (TaskType.ESCALATE,)) is False


def test_cleanup_and_stats(scheduler) -> None:
    done = _enqueue(scheduler)
    scheduler.try_claim(done.id, NOW)
    scheduler.complete(done.id)
    _enqueue(scheduler, timedelta(days=1))

    assert scheduler.stats()["completed"] == 1
    assert scheduler.stats()["total"] == 2

    deleted = scheduler.cleanup(older_than_days=30, now=datetime.now(UTC) + timedelta(days=31))

    assert deleted == 1
    assert scheduler.stats()["total"] == 1
    assert scheduler.stats()["pending"] == 1
