import pytest
from sqlalchemy.dialects import postgresql

from agents.dunning.errors import NotFoundError


def test_stats_read_locks_the_campaign_row(store) -> None:
    sql = str(store.locked_stats_select("c1").compile(dialect=postgresql.dialect()))

    assert "FOR UPDATE" in sql
    assert "campaigns.stats" in sql


def test_increment_adds_and_ignores_negative_deltas(store, seed) -> None:
    campaign = seed.campaign([])

    store.increment_campaign_stats(campaign.id, emails_sent=1)
    stats = store.increment_campaign_stats(campaign.id, emails_sent=2, payments_received=-4)

    assert stats.emails_sent == 3
    assert stats.payments_received == 0
    assert store.get_campaign(campaign.id).stats.emails_sent == 3


def test_raise_never_lowers_a_counter(store, seed) -> None:
    campaign = seed.campaign([])
    store.raise_campaign_stats(campaign.id, emails_opened=5)

    stats = store.raise_campaign_stats(campaign.id, emails_opened=2, emails_clicked=1)

    assert stats.emails_opened == 5
    assert stats.emails_clicked == 1


def test_stats_of_unknown_campaign(store) -> None:
    with pytest.raises(NotFoundError):
        store.increment_campaign_stats("missing", emails_sent=1)
