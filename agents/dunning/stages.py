"""Campaign stage resolution."""

from __future__ import annotations

from collections.abc import Sequence

from .dto import StageConfig


def resolve_stage(
    stages: Sequence[StageConfig], attempt_count: int, days_overdue: int
) -> StageConfig | None:
    """Pick the ladder stage for the next email.

    A stage matches when it is the zero-day opener and nothing was sent yet,
    or when its index equals the attempt count and its day threshold has
    been reached. Without a match the last stage is used; an empty ladder
    yields None.

    Infrequent cycles can jump past several thresholds at once, in which
    case intermediate stages are skipped.
    """
    for index, stage in enumerate(stages):
        if attempt_count == 0 and stage.days_trigger == 0:
            return stage
        if days_overdue >= stage.days_trigger and attempt_count == index:
            return stage
    return stages[-1] if stages else None


def next_stage(stages: Sequence[StageConfig], attempt_count: int) -> StageConfig | None:
    """Stage that a follow-up after ``attempt_count`` sends would normally use."""
    if not stages:
        return None
    return stages[min(attempt_count, len(stages) - 1)]
