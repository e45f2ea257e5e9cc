"""Invoice risk classification.

Pure scoring of an invoice's collection risk from due-date age, amount
and the customer's payment history, plus the org-level sweep summary.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from .dto import Invoice, PaymentBehavior, RiskLevel

NO_RISK_FACTORS = "No significant risk factors"

_BEHAVIOR_ADJUSTMENT = {
    PaymentBehavior.PROBLEMATIC: (25, "Customer has problematic payment history"),
    PaymentBehavior.SLOW: (15, "Customer typically pays late"),
    PaymentBehavior.AVERAGE: (5, "Customer has average payment history"),
    PaymentBehavior.GOOD: (-5, None),
    PaymentBehavior.EXCELLENT: (-10, "Customer has excellent payment history"),
}


@dataclass(frozen=True)
class RiskAssessment:
    """Risk level of one invoice with the factors that produced it."""

    risk_level: RiskLevel
    risk_score: int
    days_overdue: int
    factors: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "days_overdue": self.days_overdue,
            "factors": list(self.factors),
        }


def days_overdue(due_date: date, today: date | None = None) -> int:
    """Whole days past the due date (negative while not yet due)."""
    if today is None:
        today = datetime.now(UTC).date()
    return (today - due_date).days


def classify_invoice_risk(
    due_date: date,
    amount_due: Decimal | int | float,
    payment_behavior: PaymentBehavior | None = None,
    avg_days_to_pay: int | None = None,
    today: date | None = None,
) -> RiskAssessment:
    """Classify an invoice's risk.

    Args:
        due_date: Invoice due date
        amount_due: Outstanding amount in currency units
        payment_behavior: Customer payment behavior, if known
        avg_days_to_pay: Customer's average days to pay, if known
        today: Reference date (for testing)

    Returns:
        RiskAssessment with a score clamped to [0, 100]
    """
    overdue = days_overdue(due_date, today)
    factors: list[str] = []
    score = 0

    if overdue > 60:
        score += 50
        factors.append("More than 60 days overdue")
    elif overdue > 30:
        score += 40
        factors.append("More than 30 days overdue")
    elif overdue > 14:
        score += 30
        factors.append("More than 14 days overdue")
    elif overdue > 7:
        score += 20
        factors.append("More than 7 days overdue")
    elif overdue > 0:
        score += 10
        factors.append("Past due date")
    elif overdue > -7:
        score += 5
        factors.append("Due within 7 days")

    if payment_behavior is not None:
        adjustment, factor = _BEHAVIOR_ADJUSTMENT[payment_behavior]
        score += adjustment
        if factor:
            factors.append(factor)

    if avg_days_to_pay:
        if avg_days_to_pay > 45:
            score += 10
            factors.append(f"Average payment time: {avg_days_to_pay} days")
        elif avg_days_to_pay > 30:
            score += 5

    if amount_due > 10000:
        score += 5
        factors.append("High value invoice")
    elif amount_due > 5000:
        score += 3

    score = max(0, min(100, score))

    if overdue > 30:
        level = RiskLevel.CRITICAL
    elif overdue > 0:
        level = RiskLevel.OVERDUE
    elif score >= 30 or (overdue > -7 and payment_behavior == PaymentBehavior.PROBLEMATIC):
        level = RiskLevel.AT_RISK
    else:
        level = RiskLevel.LOW

    return RiskAssessment(
        risk_level=level,
        risk_score=score,
        days_overdue=overdue,
        factors=tuple(factors) if factors else (NO_RISK_FACTORS,),
    )


def determine_payment_behavior(
    history: Iterable[tuple[date, date | None]],
) -> tuple[PaymentBehavior, int]:
    """Derive payment behavior from (due_date, paid_date) pairs.

    Returns:
        Tuple of (behavior, rounded average days to pay)
    """
    history = list(history)
    if not history:
        return PaymentBehavior.AVERAGE, 0

    days_to_pay = [(paid - due).days for due, paid in history if paid is not None]
    if not days_to_pay:
        return PaymentBehavior.PROBLEMATIC, 0

    avg_days = sum(days_to_pay) / len(days_to_pay)
    on_time_rate = sum(1 for d in days_to_pay if d <= 0) / len(days_to_pay)

    if on_time_rate >= 0.9 and avg_days <= 0:
        behavior = PaymentBehavior.EXCELLENT
    elif on_time_rate >= 0.7 and avg_days <= 7:
        behavior = PaymentBehavior.GOOD
    elif avg_days <= 14:
        behavior = PaymentBehavior.AVERAGE
    elif avg_days <= 30:
        behavior = PaymentBehavior.SLOW
    else:
        behavior = PaymentBehavior.PROBLEMATIC

    return behavior, math.floor(avg_days + 0.5)


@dataclass
class LevelTotals:
    count: int = 0
    amount_cents: int = 0


@dataclass
class SweepSummary:
    """Portfolio view of open invoices by risk level."""

    total_invoices: int = 0
    total_amount_cents: int = 0
    total_amount_due_cents: int = 0
    by_level: dict[RiskLevel, LevelTotals] = field(
        default_factory=lambda: {level: LevelTotals() for level in RiskLevel}
    )
    cash_at_risk_cents: int = 0
    cash_at_risk_percentage: float = 0.0
    top_overdue_customers: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_invoices": self.total_invoices,
            "total_amount_cents": self.total_amount_cents,
            "total_amount_due_cents": self.total_amount_due_cents,
            "by_level": {
                level.value: {"count": t.count, "amount_cents": t.amount_cents}
                for level, t in self.by_level.items()
            },
            "cash_at_risk_cents": self.cash_at_risk_cents,
            "cash_at_risk_percentage": round(self.cash_at_risk_percentage, 2),
            "top_overdue_customers": self.top_overdue_customers,
        }


def summarize_risk(
    invoices: Iterable[Invoice], customer_names: Mapping[str, str] | None = None
) -> SweepSummary:
    """Aggregate open invoices into a SweepSummary.

    Invoices without a risk level are counted in the totals only.
    """
    customer_names = customer_names or {}
    summary = SweepSummary()
    per_customer: dict[str, dict[str, Any]] = {}

    for invoice in invoices:
        summary.total_invoices += 1
        summary.total_amount_cents += invoice.amount_cents
        summary.total_amount_due_cents += invoice.amount_due_cents

        if invoice.risk_level is None:
            continue
        totals = summary.by_level[invoice.risk_level]
        totals.count += 1
        totals.amount_cents += invoice.amount_due_cents

        if invoice.risk_level != RiskLevel.LOW and invoice.amount_due_cents > 0:
            entry = per_customer.setdefault(
                invoice.customer_id,
                {
                    "customer_id": invoice.customer_id,
                    "customer_name": customer_names.get(invoice.customer_id, "Unknown"),
                    "total_due_cents": 0,
                    "invoice_count": 0,
                },
            )
            entry["total_due_cents"] += invoice.amount_due_cents
            entry["invoice_count"] += 1

    summary.cash_at_risk_cents = sum(
        summary.by_level[level].amount_cents
        for level in (RiskLevel.AT_RISK, RiskLevel.OVERDUE, RiskLevel.CRITICAL)
    )
    if summary.total_amount_due_cents > 0:
        summary.cash_at_risk_percentage = (
            summary.cash_at_risk_cents / summary.total_amount_due_cents * 100
        )
    summary.top_overdue_customers = sorted(
        per_customer.values(), key=lambda e: e["total_due_cents"], reverse=True
    )[:5]
    return summary
