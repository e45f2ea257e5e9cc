"""Dunning Agent - automated collection outreach for overdue invoices.

This module provides the decision core of the collections workflow: risk
classification, compliance windows, stage resolution, tone and timing
decisions. Orchestration lives in the submodules listed below and is
imported from there directly.

Key Components:
- DTOs: Campaigns, invoices, customers, email logs and scheduled tasks
- Config: Organization settings with environment overrides
- Risk: Invoice risk classification and portfolio sweeps
- Compliance: Contact-hour window and disclosure footer
- Policies: Tone and escalation rules
- Timing: Send-now versus defer decisions
- Store / Scheduler: SQLAlchemy persistence and the durable task queue
- Executor / Tasks / Replies / Cycles: Orchestration and triggers
- Templates: Jinja2 email bodies per tone
"""

__version__ = "1.0.0"

from .compliance import is_compliant_time, next_compliant_time
from .config import OrgConfig
from .dto import (
    Campaign,
    CampaignConfig,
    CampaignStatus,
    Customer,
    Invoice,
    PaymentBehavior,
    RiskLevel,
    ScheduledTask,
    StageConfig,
    TaskStatus,
    TaskType,
    Tone,
)
from .errors import DunningError, ExternalSendFailure, NotFoundError
from .policies import determine_tone, escalation_recommendation
from .risk import classify_invoice_risk
from .stages import resolve_stage
from .timing import determine_optimal_timing

__all__ = [
    "Campaign",
    "CampaignConfig",
    "CampaignStatus",
    "Customer",
    "DunningError",
    "ExternalSendFailure",
    "Invoice",
    "NotFoundError",
    "OrgConfig",
    "PaymentBehavior",
    "RiskLevel",
    "ScheduledTask",
    "StageConfig",
    "TaskStatus",
    "TaskType",
    "Tone",
    "classify_invoice_risk",
    "determine_optimal_timing",
    "determine_tone",
    "escalation_recommendation",
    "is_compliant_time",
    "next_compliant_time",
    "resolve_stage",
]
