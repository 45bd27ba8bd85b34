"""Work unit count prediction for clustering progress.

Clustering is driven mostly by the 8h time gap; in practice about one
work unit forms per ten commits, and every repository clusters on its
own, so there are at least as many units as repositories.
"""

import math
from dataclasses import dataclass
from typing import Dict

COMMITS_PER_UNIT = 10
MIN_FACTOR = 0.65
MAX_FACTOR = 1.4
RAISE_THRESHOLD = 0.9
RAISE_FACTOR = 1.3


@dataclass(frozen=True)
class WorkUnitPrediction:
    min: int
    expected: int
    max: int

    def to_dict(self) -> Dict[str, int]:
        return {"min": self.min, "expected": self.expected, "max": self.max}


def predict_work_unit_count(total_commits: int, repository_count: int) -> WorkUnitPrediction:
    """Expected range of work units before clustering starts.

    The range is ordered: min <= expected <= max.
    """
    base = math.ceil(total_commits / COMMITS_PER_UNIT)
    low = max(1, repository_count + 1, math.floor(base * MIN_FACTOR))
    expected = max(base, low)
    high = max(math.ceil(base * MAX_FACTOR), expected)
    return WorkUnitPrediction(min=low, expected=expected, max=high)


def adjust_prediction(current: WorkUnitPrediction, actual_count: int) -> WorkUnitPrediction:
    """Raise expected/max by 30% once the actual count passes 90% of max."""
    if actual_count > current.max * RAISE_THRESHOLD:
        return WorkUnitPrediction(
            min=current.min,
            expected=math.ceil(current.expected * RAISE_FACTOR),
            max=math.ceil(current.max * RAISE_FACTOR),
        )
    return current
