from agents.dunning.dto import StageConfig, Tone, default_stages
from agents.dunning.stages import next_stage, resolve_stage


def test_first_email_uses_zero_day_opener() -> None:
    stage = resolve_stage(default_stages(), attempt_count=0, days_overdue=0)

    assert stage.stage == "reminder"
    assert stage.tone == Tone.FRIENDLY


def test_stage_matches_attempt_index_once_threshold_reached() -> None:
    stages = default_stages()

    assert resolve_stage(stages, 1, 5).stage == "follow_up"
    assert resolve_stage(stages, 2, 12).stage == "escalation"
    assert resolve_stage(stages, 3, 15).stage == "final_notice"


def test_long_gap_still_takes_the_attempt_index_stage() -> None:
    # 40 days overdue with one prior send jumps no further than index 1
    assert resolve_stage(default_stages(), 1, 40).stage == "follow_up"


def test_unmatched_threshold_falls_back_to_last_stage() -> None:
    assert resolve_stage(default_stages(), 1, 3).stage == "final_notice"
    assert resolve_stage(default_stages(), 7, 90).stage == "final_notice"


def test_empty_ladder_has_no_stage() -> None:
    assert resolve_stage([], 0, 10) is None
    assert next_stage([], 1) is None


def test_opener_without_zero_day_stage() -> None:
    stages = [StageConfig("late", 3, Tone.PROFESSIONAL), StageConfig("later", 10, Tone.FIRM)]

    assert resolve_stage(stages, 0, 4).stage == "late"


def test_next_stage_clamps_to_ladder_end() -> None:
    stages = default_stages()

    assert next_stage(stages, 1).stage == "follow_up"
    assert next_stage(stages, 10).stage == "final_notice"
