from zoneinfo import ZoneInfo

import pytest

from agents.dunning.config import OrgConfig
from agents.dunning.dto import CampaignConfig, StageConfig, Tone
from backend.core.config import parse_backoff_steps


def test_env_overrides_per_org(monkeypatch) -> None:
    monkeypatch.setenv("DUNNING_ACME_CORP_ORG_NAME", "Acme Corporation")
    monkeypatch.setenv("DUNNING_ACME_CORP_TIMEZONE", "America/Chicago")
    monkeypatch.setenv("DUNNING_ACME_CORP_MAX_ATTEMPTS", "6")
    monkeypatch.setenv("DUNNING_ACME_CORP_FIRST_EMAIL_DELAY_MINUTES", "5")

    config = OrgConfig.from_org("acme-corp")

    assert config.org_name == "Acme Corporation"
    assert config.tzinfo == ZoneInfo("America/Chicago")
    assert config.campaign_defaults.max_attempts == 6
    assert config.campaign_defaults.days_between_emails == 5
    assert config.first_email_delay_minutes == 5


def test_defaults_without_overrides() -> None:
    config = OrgConfig.from_org("plain")

    assert config.timezone == "America/New_York"
    assert config.campaign_defaults.max_attempts == 4
    assert [s.stage for s in config.campaign_defaults.stages] == [
        "reminder",
        "follow_up",
        "escalation",
        "final_notice",
    ]


def test_unknown_timezone_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown timezone"):
        OrgConfig(org_id="acme", timezone="Mars/Olympus_Mons")


def test_invalid_override_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("DUNNING_BROKEN_MAX_ATTEMPTS", "0")

    with pytest.raises(ValueError, match="max_attempts"):
        OrgConfig.from_org("broken")


def test_campaign_config_round_trip_keeps_custom_stages() -> None:
    config = CampaignConfig(
        max_attempts=3,
        days_between_emails=7,
        escalate_tone=False,
        stages=[StageConfig("nudge", 0, Tone.PROFESSIONAL), StageConfig("last", 20, Tone.URGENT)],
    )

    restored = CampaignConfig.from_dict(config.to_dict())

    assert restored == config
    assert CampaignConfig.from_dict(None) == CampaignConfig()


@pytest.mark.parametrize(
    "raw,expected",
    [("900,2700,8100", (900, 2700, 8100)), (" 60 , 120 ", (60, 120)), ("", ())],
)
def test_parse_backoff_steps(raw: str, expected: tuple[int, ...]) -> None:
    assert parse_backoff_steps(raw) == expected


def test_parse_backoff_steps_rejects_non_positive() -> None:
    with pytest.raises(ValueError):
        parse_backoff_steps("900,0")
