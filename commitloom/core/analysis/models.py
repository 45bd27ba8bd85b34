"""Data contracts for commit analysis.

Plain dataclasses (not ORM models) passed between the scanner, the
clustering engine, the impact scorer and the sampling engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class WorkType(Enum):
    """Inferred kind of work. Declaration order is the keyword priority."""
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCS = "docs"
    TEST = "test"
    STYLE = "style"
    CHORE = "chore"
    UNKNOWN = "unknown"


@dataclass
class FileChange:
    path: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0


@dataclass
class CommitRecord:
    """A stored commit as seen by clustering and scoring."""
    sha: str
    message: str
    committed_at: datetime
    additions: int = 0
    deletions: int = 0
    files: List[FileChange] = field(default_factory=list)
    commit_id: Optional[str] = None
    author_login: Optional[str] = None
    repo_full_name: Optional[str] = None

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]


@dataclass
class WorkUnitDraft:
    """A clustered group of commits before it is persisted.

    ``commits`` is ordered by commit time and never empty.
    """
    commits: List[CommitRecord]
    start_at: datetime
    end_at: datetime
    additions: int
    deletions: int
    paths: List[str]
    primary_paths: List[str]
    work_type: WorkType
    is_hotfix: bool = False
    has_revert: bool = False

    @property
    def loc(self) -> int:
        return self.additions + self.deletions

    @property
    def commit_count(self) -> int:
        return len(self.commits)

    @property
    def messages(self) -> List[str]:
        return [c.message for c in self.commits]


@dataclass
class ImpactFactors:
    """Additive breakdown of an impact score."""
    base_score: float = 0.0
    size_score: float = 0.0
    core_module_bonus: float = 0.0
    hotspot_bonus: float = 0.0
    test_score: float = 0.0
    config_bonus: float = 0.0

    def total(self) -> float:
        return (
            self.base_score + self.size_score + self.core_module_bonus
            + self.hotspot_bonus + self.test_score + self.config_bonus
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "base_score": round(self.base_score, 2),
            "size_score": round(self.size_score, 2),
            "core_module_bonus": round(self.core_module_bonus, 2),
            "hotspot_bonus": round(self.hotspot_bonus, 2),
            "test_score": round(self.test_score, 2),
            "config_bonus": round(self.config_bonus, 2),
        }


@dataclass
class ImpactResult:
    score: float
    factors: ImpactFactors

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "factors": self.factors.to_dict()}
