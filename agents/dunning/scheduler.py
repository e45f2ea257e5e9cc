"""Durable task scheduler for deferred outreach work.

Tasks move ``pending -> executing -> completed | failed | cancelled``.
Claiming is a per-row compare-and-swap on the expected ``pending``
status, so two pollers racing for the same task can never both win it.
Failed tasks flagged retryable go back to ``pending`` only through
``requeue_retryable``, with a backoff that places them in a later poll.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from backend.core.config import parse_backoff_steps, settings
from backend.core.observability.metrics import (
    increment_task_claim_conflicts,
    increment_tasks_claimed,
    increment_tasks_completed,
    increment_tasks_enqueued,
    increment_tasks_failed,
)

from .dto import ScheduledTask, TaskStatus, TaskType, Tone
from .errors import TaskStateError
from .store import DunningStore

logger = logging.getLogger(__name__)

SEND_TASK_TYPES = (TaskType.SEND_EMAIL, TaskType.FOLLOW_UP)


class TaskScheduler:
    """Queue operations over the ``scheduled_tasks`` table."""

    def __init__(
        self,
        store: DunningStore,
        max_retries: int | None = None,
        backoff_steps: tuple[int, ...] | None = None,
    ):
        self.store = store
        self.max_retries = settings.TASK_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_steps = (
            parse_backoff_steps(settings.TASK_BACKOFF_STEPS)
            if backoff_steps is None
            else backoff_steps
        )

    def backoff_seconds(self, retry_number: int) -> int:
        """Delay before the ``retry_number``-th retry (1-based)."""
        if not self.backoff_steps:
            return 300
        idx = min(max(retry_number - 1, 0), len(self.backoff_steps) - 1)
        return self.backoff_steps[idx]

    def enqueue(
        self,
        org_id: str,
        task_type: TaskType,
        scheduled_for: datetime,
        campaign_id: str | None = None,
        invoice_id: str | None = None,
        customer_id: str | None = None,
        task_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ScheduledTask:
        """Create a task in ``pending``."""
        if scheduled_for.tzinfo is None:
            raise ValueError("scheduled_for must be timezone-aware")
        task = ScheduledTask(
            id=str(uuid4()),
            org_id=org_id,
            task_type=task_type,
            scheduled_for=scheduled_for.astimezone(UTC),
            campaign_id=campaign_id,
            invoice_id=invoice_id,
            customer_id=customer_id,
            task_data=dict(task_data or {}),
            max_retries=self.max_retries,
            metadata=dict(metadata or {}),
        )
        self.store.insert_task(task)
        increment_tasks_enqueued(task_type.value)
        logger.info(
            "task_enqueued",
            extra={
                "task_id": task.id,
                "task_type": task_type.value,
                "campaign_id": campaign_id,
                "invoice_id": invoice_id,
                "scheduled_for": task.scheduled_for.isoformat(),
            },
        )
        return task

    def try_claim(self, task_id: str, now: datetime | None = None) -> ScheduledTask | None:
        """Claim one task; None if another caller got there first."""
        now = now or datetime.now(UTC)
        if not self.store.transition_task(
            task_id, TaskStatus.PENDING, TaskStatus.EXECUTING, executed_at=now
        ):
            increment_task_claim_conflicts()
            logger.info("task_claim_lost", extra={"task_id": task_id})
            return None
        return self.store.get_task(task_id)

    def claim(self, batch_size: int | None = None, now: datetime | None = None) -> list[ScheduledTask]:
        """Claim up to ``batch_size`` due tasks, oldest schedule first."""
        now = now or datetime.now(UTC)
        limit = batch_size or settings.TASK_BATCH_SIZE
        claimed = []
        for task_id in self.store.due_task_ids(now, limit):
            task = self.try_claim(task_id, now)
            if task is not None:
                claimed.append(task)
        if claimed:
            increment_tasks_claimed(len(claimed))
            logger.info("tasks_claimed", extra={"count": len(claimed)})
        return claimed

    def complete(self, task_id: str, result: dict[str, Any] | None = None) -> None:
        """``executing -> completed``.

        Raises:
            TaskStateError: If the task is not executing
        """
        task = self.store.get_task(task_id)
        metadata = {**task.metadata, "result": result or {}}
        if not self.store.transition_task(
            task_id, TaskStatus.EXECUTING, TaskStatus.COMPLETED, meta=metadata
        ):
            raise TaskStateError(task_id, TaskStatus.EXECUTING.value, "complete")
        increment_tasks_completed(task.task_type.value)

    def fail(self, task_id: str, error: str, retryable: bool) -> None:
        """``executing -> failed`` with a retryable flag.

        Raises:
            TaskStateError: If the task is not executing
        """
        task = self.store.get_task(task_id)
        if not self.store.transition_task(
            task_id,
            TaskStatus.EXECUTING,
            TaskStatus.FAILED,
            error_message=error,
            retryable=retryable,
        ):
            raise TaskStateError(task_id, TaskStatus.EXECUTING.value, "fail")
        increment_tasks_failed(task.task_type.value, retryable)
        logger.warning(
            "task_failed",
            extra={
                "task_id": task_id,
                "task_type": task.task_type.value,
                "retryable": retryable,
                "error": error,
            },
        )

    def cancel(
        self,
        org_id: str | None = None,
        campaign_id: str | None = None,
        invoice_id: str | None = None,
        customer_id: str | None = None,
        task_types: Iterable[TaskType] | None = None,
        reason: str | None = None,
    ) -> int:
        """Cancel matching pending tasks. Executing tasks are left alone."""
        count = self.store.cancel_tasks(
            org_id=org_id,
            campaign_id=campaign_id,
            invoice_id=invoice_id,
            customer_id=customer_id,
            task_types=task_types,
            reason=reason,
        )
        if count:
            logger.info(
                "tasks_cancelled",
                extra={
                    "count": count,
                    "campaign_id": campaign_id,
                    "customer_id": customer_id,
                    "reason": reason,
                },
            )
        return count

    def retire_failed(
        self,
        campaign_id: str,
        invoice_id: str,
        task_types: Iterable[TaskType] = SEND_TASK_TYPES,
        reason: str | None = None,
    ) -> int:
        """Stop failed tasks for an invoice from being requeued."""
        count = self.store.retire_failed_tasks(
            campaign_id, invoice_id, task_types, reason or "superseded"
        )
        if count:
            logger.info(
                "failed_tasks_retired",
                extra={
                    "count": count,
                    "campaign_id": campaign_id,
                    "invoice_id": invoice_id,
                    "reason": reason,
                },
            )
        return count

    def requeue_retryable(self, now: datetime | None = None, limit: int | None = None) -> int:
        """Return retryable failures to ``pending`` with backoff.

        The new ``scheduled_for`` is always in the future, so a task
        requeued here is never claimed by the poll that requeued it.
        """
        now = now or datetime.now(UTC)
        requeued = 0
        for task in self.store.retryable_failed_tasks(limit or settings.TASK_BATCH_SIZE):
            retry_number = task.retry_count + 1
            scheduled_for = now + timedelta(seconds=self.backoff_seconds(retry_number))
            if self.store.transition_task(
                task.id,
                TaskStatus.FAILED,
                TaskStatus.PENDING,
                retry_count=retry_number,
                scheduled_for=scheduled_for,
                retryable=False,
            ):
                requeued += 1
                logger.info(
                    "task_requeued",
                    extra={
                        "task_id": task.id,
                        "retry": retry_number,
                        "scheduled_for": scheduled_for.isoformat(),
                    },
                )
        return requeued

    def has_pending(
        self,
        campaign_id: str,
        invoice_id: str,
        task_types: Iterable[TaskType] = SEND_TASK_TYPES,
    ) -> bool:
        return self.store.has_pending_task(campaign_id, invoice_id, task_types)

    def schedule_follow_up(
        self,
        org_id: str,
        campaign_id: str,
        invoice_id: str,
        customer_id: str,
        scheduled_for: datetime,
        tone: Tone | None = None,
        reason: str | None = None,
    ) -> ScheduledTask:
        task_data: dict[str, Any] = {}
        if tone is not None:
            task_data["tone"] = tone.value
        if reason:
            task_data["reason"] = reason
        return self.enqueue(
            org_id,
            TaskType.SEND_EMAIL,
            scheduled_for,
            campaign_id=campaign_id,
            invoice_id=invoice_id,
            customer_id=customer_id,
            task_data=task_data,
        )

    def schedule_payment_check(
        self, org_id: str, campaign_id: str, scheduled_for: datetime
    ) -> ScheduledTask:
        return self.enqueue(org_id, TaskType.CHECK_PAYMENT, scheduled_for, campaign_id=campaign_id)

    def schedule_escalation(
        self, org_id: str, campaign_id: str, new_tone: Tone, scheduled_for: datetime
    ) -> ScheduledTask:
        return self.enqueue(
            org_id,
            TaskType.ESCALATE,
            scheduled_for,
            campaign_id=campaign_id,
            task_data={"new_tone": new_tone.value},
        )

    def schedule_pause(self, org_id: str, campaign_id: str, scheduled_for: datetime) -> ScheduledTask:
        return self.enqueue(org_id, TaskType.PAUSE_CAMPAIGN, scheduled_for, campaign_id=campaign_id)

    def schedule_resume(self, org_id: str, campaign_id: str, scheduled_for: datetime) -> ScheduledTask:
        return self.enqueue(org_id, TaskType.RESUME_CAMPAIGN, scheduled_for, campaign_id=campaign_id)

    def cleanup(self, older_than_days: int | None = None, now: datetime | None = None) -> int:
        """Delete completed and cancelled tasks older than the cutoff."""
        now = now or datetime.now(UTC)
        days = settings.TASK_CLEANUP_DAYS if older_than_days is None else older_than_days
        deleted = self.store.delete_finished_tasks(now - timedelta(days=days))
        logger.info("tasks_cleaned_up", extra={"deleted": deleted, "older_than_days": days})
        return deleted

    def stats(self, org_id: str | None = None) -> dict[str, int]:
        counts = self.store.task_counts(org_id)
        counts["total"] = sum(counts.values())
        return counts
