"""Risk classification and portfolio summary."""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from agents.dunning.dto import Invoice, InvoiceStatus, PaymentBehavior, RiskLevel
from agents.dunning.risk import (
    NO_RISK_FACTORS,
    classify_invoice_risk,
    determine_payment_behavior,
    summarize_risk,
)

TODAY = date(2026, 3, 10)


def _due(days_overdue: int) -> date:
    return TODAY - timedelta(days=days_overdue)


class TestClassifyInvoiceRisk:
    """Level and score for representative invoices."""

    def test_slow_payer_45_days_is_critical(self) -> None:
        result = classify_invoice_risk(
            _due(45), Decimal("12000"), PaymentBehavior.SLOW, 50, today=TODAY
        )

        assert result.risk_level == RiskLevel.CRITICAL
        # 40 (30+ days) + 15 (slow) + 10 (avg > 45) + 5 (high value)
        assert result.risk_score == 70
        assert result.days_overdue == 45
        assert "High value invoice" in result.factors

    def test_excellent_payer_not_yet_due_is_low(self) -> None:
        result = classify_invoice_risk(
            _due(-20), Decimal("500"), PaymentBehavior.EXCELLENT, today=TODAY
        )

        assert result.risk_level == RiskLevel.LOW
        assert result.risk_score == 0

    def test_no_factors_reports_placeholder(self) -> None:
        result = classify_invoice_risk(_due(-30), Decimal("100"), today=TODAY)

        assert result.factors == (NO_RISK_FACTORS,)

    def test_problematic_payer_due_soon_is_at_risk(self) -> None:
        result = classify_invoice_risk(
            _due(-3), Decimal("100"), PaymentBehavior.PROBLEMATIC, today=TODAY
        )

        assert result.risk_level == RiskLevel.AT_RISK
        assert result.risk_score == 30

    @pytest.mark.parametrize(
        "days,level",
        [(31, RiskLevel.CRITICAL), (30, RiskLevel.OVERDUE), (1, RiskLevel.OVERDUE)],
    )
    def test_level_follows_days_overdue(self, days: int, level: RiskLevel) -> None:
        result = classify_invoice_risk(_due(days), Decimal("100"), today=TODAY)

        assert result.risk_level == level

    def test_score_is_clamped(self) -> None:
        worst = classify_invoice_risk(
            _due(90), Decimal("50000"), PaymentBehavior.PROBLEMATIC, 90, today=TODAY
        )

        assert worst.risk_score == 90
        assert 0 <= worst.risk_score <= 100


def test_payment_behavior_from_history() -> None:
    on_time = [(date(2026, 1, 1), date(2025, 12, 30))] * 10
    assert determine_payment_behavior(on_time) == (PaymentBehavior.EXCELLENT, -2)

    slow = [(date(2026, 1, 1), date(2026, 1, 21)), (date(2026, 2, 1), date(2026, 2, 21))]
    assert determine_payment_behavior(slow) == (PaymentBehavior.SLOW, 20)

    assert determine_payment_behavior([]) == (PaymentBehavior.AVERAGE, 0)
    assert determine_payment_behavior([(date(2026, 1, 1), None)]) == (
        PaymentBehavior.PROBLEMATIC,
        0,
    )


def test_summarize_risk_cash_at_risk() -> None:
    def invoice(n: int, customer: str, due_cents: int, level: RiskLevel) -> Invoice:
        return Invoice(
            id=f"inv-{n}",
            org_id="acme",
            customer_id=customer,
            invoice_number=f"INV-{n}",
            due_date=TODAY,
            amount_due_cents=due_cents,
            amount_cents=due_cents,
            status=InvoiceStatus.OVERDUE,
            risk_level=level,
        )

    summary = summarize_risk(
        [
            invoice(1, "c1", 10000, RiskLevel.LOW),
            invoice(2, "c1", 20000, RiskLevel.OVERDUE),
            invoice(3, "c2", 70000, RiskLevel.CRITICAL),
        ],
        {"c1": "Alpha", "c2": "Beta"},
    )

    assert summary.total_invoices == 3
    assert summary.total_amount_due_cents == 100000
    assert summary.cash_at_risk_cents == 90000
    assert summary.cash_at_risk_percentage == pytest.approx(90.0)
    assert [c["customer_name"] for c in summary.top_overdue_customers] == ["Beta", "Alpha"]
    assert summary.to_dict()["by_level"]["critical"] == {"count": 1, "amount_cents": 70000}
