"""Impact scoring for work units.

score = base + size + core_module + hotspot + test + config, floored at 0
and rounded to one decimal. Deterministic for a given draft, config and
hotspot set.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from .models import ImpactFactors, ImpactResult, WorkUnitDraft
from .worktype import is_config_file, is_schema_file, is_test_file

CORE_MODULE_CAP = 10.0
HOTFIX_BONUS = 3.0
REVERT_PENALTY = -2.0
TEST_ONLY_PENALTY = -3.0
MIXED_TEST_BONUS = 2.0


@dataclass
class CriticalPath:
    pattern: str
    weight: float


DEFAULT_CRITICAL_PATHS = [
    CriticalPath("auth", 2.0),
    CriticalPath("payment", 2.5),
    CriticalPath("security", 2.0),
    CriticalPath("core", 1.8),
    CriticalPath("api", 1.5),
    CriticalPath("database", 1.8),
    CriticalPath("migration", 1.5),
]

DEFAULT_WEIGHTS = {
    "core_module": 2.0,
    "hotspot_file": 1.5,
    "test_file": 0.8,
    "config_file": 1.3,
    "schema_change": 1.8,
}


@dataclass
class ImpactConfig:
    critical_paths: List[CriticalPath] = field(default_factory=lambda: list(DEFAULT_CRITICAL_PATHS))
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    loc_cap: int = 500

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ImpactConfig":
        """Build from organization settings / run options.

        Accepts ``critical_paths`` as [{pattern, weight}], partial
        ``weights`` and ``loc_cap``. An empty critical_paths list falls
        back to the defaults.
        """
        data = data or {}
        paths = [
            CriticalPath(str(p["pattern"]), float(p["weight"]))
            for p in data.get("critical_paths") or []
            if p.get("pattern")
        ]
        weights = dict(DEFAULT_WEIGHTS)
        weights.update({k: float(v) for k, v in (data.get("weights") or {}).items()})
        return cls(
            critical_paths=paths or list(DEFAULT_CRITICAL_PATHS),
            weights=weights,
            loc_cap=int(data.get("loc_cap", 500)),
        )


def calculate_impact(
    draft: WorkUnitDraft,
    config: Optional[ImpactConfig] = None,
    hotspot_files: Optional[Set[str]] = None,
) -> ImpactResult:
    """Score one work unit draft."""
    cfg = config or ImpactConfig()
    hotspots = hotspot_files or set()
    paths = draft.paths
    factors = ImpactFactors()

    capped_loc = min(draft.loc, cfg.loc_cap)
    factors.base_score = math.log10(capped_loc + 1) * 10
    factors.size_score = min(capped_loc / 100, 5.0)

    core_bonus = 0.0
    for path in paths:
        for critical in cfg.critical_paths:
            if match_path(path, critical.pattern):
                core_bonus += critical.weight
    factors.core_module_bonus = min(core_bonus, CORE_MODULE_CAP)
    if draft.is_hotfix:
        factors.core_module_bonus += HOTFIX_BONUS

    factors.hotspot_bonus = sum(1 for p in paths if p in hotspots) * cfg.weights["hotspot_file"]

    test_ratio = (sum(1 for p in paths if is_test_file(p)) / len(paths)) if paths else 0.0
    if test_ratio > 0.8:
        factors.test_score = TEST_ONLY_PENALTY
    elif 0 < test_ratio <= 0.5:
        factors.test_score = MIXED_TEST_BONUS
    if draft.has_revert:
        factors.test_score += REVERT_PENALTY

    if any(is_config_file(p) for p in paths):
        factors.config_bonus += cfg.weights["config_file"]
    if any(is_schema_file(p) for p in paths):
        factors.config_bonus += cfg.weights["schema_change"]

    score = max(0.0, round(factors.total(), 1))
    return ImpactResult(score=score, factors=factors)


def match_path(path: str, pattern: str) -> bool:
    """Case-insensitive substring or exact path-segment match."""
    lowered = path.lower()
    needle = pattern.lower()
    if needle in lowered:
        return True
    return needle in lowered.split("/")


def calculate_hotspot_files(paths_per_commit: Iterable[Iterable[str]], top_n: int = 20) -> Set[str]:
    """Top-N most frequently changed file paths."""
    counts: Counter = Counter()
    for paths in paths_per_commit:
        counts.update(paths)
    return {path for path, _ in counts.most_common(top_n)}
