import json

import pytest

from agents.dunning.dto import TaskType
from tools.operate import collections_cycle

from .conftest import NOW, ORG_ID


@pytest.fixture
def cli(ctx, monkeypatch):
    monkeypatch.setattr(collections_cycle, "build_context", lambda **collaborators: ctx)

    def invoke(*argv: str) -> int:
        return collections_cycle.main(list(argv))

    return invoke


def test_campaigns_command_prints_cycle_result(cli, seed, sender, capsys) -> None:
    customer = seed.customer()
    seed.campaign([seed.invoice(customer, days_overdue=3)])

    code = cli("campaigns")

    assert code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["trigger"] == "campaigns"
    assert output["succeeded"] == 1
    assert len(sender.sent) == 1


def test_stats_command(cli, scheduler, capsys) -> None:
    scheduler.enqueue(ORG_ID, TaskType.CHECK_PAYMENT, NOW, campaign_id="c1")

    code = cli("stats", "--org", ORG_ID)

    assert code == 0
    assert json.loads(capsys.readouterr().out)["pending"] == 1


def test_unknown_campaign_exits_non_zero(cli, capsys) -> None:
    code = cli("campaign", "missing")

    assert code == 1
    assert capsys.readouterr().out == ""


def test_risk_sweep_requires_org() -> None:
    with pytest.raises(SystemExit):
        collections_cycle.build_parser().parse_args(["risk-sweep"])
