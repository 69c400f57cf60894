"""Pick the best model of a run by bound-violation count."""

from __future__ import annotations

from dgrecon.statistics import ModelStatisticsSet


def bound_violations(stats: ModelStatisticsSet, model: int) -> int:
    """Number of upper plus lower bound violations of *model*."""
    return stats.bound_violations(model)


def pick_best(stats: ModelStatisticsSet) -> int:
    """Return the model number with the fewest bound violations.

    Models are scanned in order ``1..N``; on a tie the lowest model
    number wins.
    """
    if len(stats) == 0:
        raise ValueError("Cannot pick a model from an empty statistics set")
    best_model = 1
    best_score = stats.bound_violations(1)
    for model in range(2, len(stats) + 1):
        score = stats.bound_violations(model)
        if score < best_score:
            best_model = model
            best_score = score
    return best_model
