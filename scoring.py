"""
Score aggregation for judge reviews and evaluations.

Averages are computed at read time or when a judge saves a score. There is
no weighting, outlier handling or tie-breaking beyond a stable name order.
"""
import math
from numbers import Number
from typing import Dict, Iterable, List, Optional

import numpy as np

CRITERIA = ("innovation", "impact", "feasibility", "presentation")
CRITERION_MAX = 10
REVIEW_MAX = 100


def _numeric(values: Iterable) -> List[float]:
    return [float(v) for v in values if isinstance(v, Number) and not isinstance(v, bool)]


def average_score(scores: Iterable) -> Optional[float]:
    """Mean of the judge scores rounded to one decimal, None when there are none."""
    nums = _numeric(scores)
    if not nums:
        return None
    return round(float(np.mean(nums)), 1)


def evaluation_score(scores: Optional[Dict]) -> Optional[float]:
    """Average the 0-10 criteria present in one evaluation and scale to 0-100."""
    scores = scores or {}
    nums = _numeric(scores.get(c) for c in CRITERIA)
    if not nums:
        return None
    return float(np.mean(nums)) * (REVIEW_MAX / CRITERION_MAX)


def team_score(evaluations: Iterable[Dict]) -> Optional[float]:
    """Mean of per-evaluation scores for a team, two decimals."""
    per_eval = [evaluation_score(e.get("scores")) for e in evaluations]
    per_eval = [s for s in per_eval if s is not None]
    if not per_eval:
        return None
    return round(float(np.mean(per_eval)), 2)


def leaderboard(teams: Iterable[Dict]) -> List[Dict]:
    ordered = sorted(teams, key=lambda t: (-(t.get("score") or 0), str(t.get("name", ""))))
    return [dict(team, rank=idx) for idx, team in enumerate(ordered, start=1)]


def validate_criteria(scores: Dict) -> Optional[str]:
    """Return an error message when a criterion is not a number in 0..10."""
    for key, value in (scores or {}).items():
        if key not in CRITERIA:
            return f"Unknown score criterion: {key}"
        if value is None:
            continue
        if not isinstance(value, Number) or isinstance(value, bool):
            return f"{key} must be a number"
        if not math.isfinite(value) or value < 0 or value > CRITERION_MAX:
            return f"{key} must be between 0 and {CRITERION_MAX}"
    return None
