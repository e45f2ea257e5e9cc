"""Execution of claimed scheduled tasks.

Handlers are resolved from a map keyed by ``TaskType``; there is no
lookup by name. Failure classification:

- ``NotFoundError`` / ``InvalidTaskError`` / ``UnrecordedSendError``: failed,
  not retryable
- ``ExternalSendFailure`` and anything unexpected: failed, retryable
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .dto import CampaignStatus, ScheduledTask, TaskType, Tone
from .errors import InvalidTaskError, NotFoundError, UnrecordedSendError
from .executor import CampaignExecutor, DunningContext
from .scheduler import SEND_TASK_TYPES

TaskHandler = Callable[[ScheduledTask, datetime], dict[str, Any]]


def _tone(value: Any, field_name: str) -> Tone:
    try:
        return Tone(value)
    except ValueError as exc:
        raise InvalidTaskError(f"Invalid {field_name}: {value!r}") from exc


class TaskRunner:
    """Runs claimed tasks and settles them as completed or failed."""

    def __init__(self, context: DunningContext, executor: CampaignExecutor | None = None):
        self.ctx = context
        self.store = context.store
        self.scheduler = context.scheduler
        self.executor = executor or CampaignExecutor(context)
        self.logger = logging.getLogger(__name__)
        self.handlers: dict[TaskType, TaskHandler] = {
            TaskType.SEND_EMAIL: self.send_email,
            TaskType.FOLLOW_UP: self.send_email,
            TaskType.CHECK_PAYMENT: self.check_payment,
            TaskType.ESCALATE: self.escalate,
            TaskType.PAUSE_CAMPAIGN: self.pause_campaign,
            TaskType.RESUME_CAMPAIGN: self.resume_campaign,
        }

    def run(self, task: ScheduledTask, now: datetime | None = None) -> tuple[bool, dict[str, Any]]:
        """Execute one claimed task.

        Returns:
            Tuple of (succeeded, detail)
        """
        now = now or self.ctx.now()
        detail: dict[str, Any] = {"task_id": task.id, "task_type": task.task_type.value}
        handler = self.handlers.get(task.task_type)

        try:
            if handler is None:
                raise InvalidTaskError(f"No handler for task type {task.task_type.value}")
            result = handler(task, now)
        except (NotFoundError, InvalidTaskError, UnrecordedSendError) as e:
            self.scheduler.fail(task.id, str(e), retryable=False)
            return False, {**detail, "error": str(e), "retryable": False}
        except Exception as e:
            self.logger.exception("task_handler_error", extra={"task_id": task.id})
            self.scheduler.fail(task.id, str(e), retryable=True)
            return False, {**detail, "error": str(e), "retryable": True}

        self.scheduler.complete(task.id, result)
        self.logger.info("task_completed", extra={**detail, "result": result})
        return True, {**detail, "result": result}

    def _campaign_of(self, task: ScheduledTask):
        if not task.campaign_id:
            raise InvalidTaskError(f"Task {task.id} has no campaign_id")
        return self.store.get_campaign(task.campaign_id)

    def send_email(self, task: ScheduledTask, now: datetime) -> dict[str, Any]:
        campaign = self._campaign_of(task)
        if not task.invoice_id:
            raise InvalidTaskError(f"Task {task.id} has no invoice_id")
        if campaign.status != CampaignStatus.ACTIVE:
            return {"status": "skipped", "reason": f"campaign is {campaign.status.value}"}

        tone = None
        if task.task_data.get("tone"):
            tone = _tone(task.task_data["tone"], "tone")

        outcome = self.executor.process_invoice(
            campaign,
            task.invoice_id,
            self.ctx.org_config(campaign.org_id),
            now,
            tone_override=tone,
            respect_cadence=False,
        )
        return outcome.to_dict()

    def check_payment(self, task: ScheduledTask, now: datetime) -> dict[str, Any]:
        campaign = self._campaign_of(task)
        if campaign.status not in (CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
            return {"completed": False, "reason": f"campaign is {campaign.status.value}"}
        return {"completed": self.executor.complete_if_paid(campaign)}

    def escalate(self, task: ScheduledTask, now: datetime) -> dict[str, Any]:
        """Rewrite the tone of every stage in the campaign's ladder."""
        campaign = self._campaign_of(task)
        new_tone = _tone(task.task_data.get("new_tone"), "new_tone")
        config = campaign.config
        for stage in config.stages:
            stage.tone = new_tone
        self.store.update_campaign_config(campaign.id, config)
        self.logger.warning(
            "campaign_tone_escalated",
            extra={
                "campaign_id": campaign.id,
                "new_tone": new_tone.value,
                "stages_rewritten": len(config.stages),
            },
        )
        return {"new_tone": new_tone.value, "stages_rewritten": len(config.stages)}

    def pause_campaign(self, task: ScheduledTask, now: datetime) -> dict[str, Any]:
        campaign = self._campaign_of(task)
        paused = self.store.set_campaign_status(
            campaign.id, CampaignStatus.PAUSED, expected=(CampaignStatus.ACTIVE,)
        )
        cancelled = 0
        if paused:
            cancelled = self.scheduler.cancel(
                campaign_id=campaign.id, task_types=SEND_TASK_TYPES, reason="campaign paused"
            )
        return {"paused": paused, "cancelled_tasks": cancelled}

    def resume_campaign(self, task: ScheduledTask, now: datetime) -> dict[str, Any]:
        campaign = self._campaign_of(task)
        resumed = self.store.set_campaign_status(
            campaign.id, CampaignStatus.ACTIVE, expected=(CampaignStatus.PAUSED,)
        )
        return {"resumed": resumed}
