"""Work Unit clustering: groups one user's commits in one repository.

Algorithm:
1. Sort commits by commit time
2. Time-gap grouping: start a new group when the gap to the previous
   commit exceeds max_time_gap_hours (a gap equal to the limit stays)
3. Path-similarity refinement: inside a time group, adjacent commits
   (i, i+1) stay together when the Jaccard similarity of their touched
   directory sets is >= min_path_overlap. Only neighbours are compared,
   so a sub-cluster is a chain of similar neighbours; a commit cannot
   rejoin a similar commit two positions back once the chain breaks.
4. Size enforcement: drop groups below min_commits_per_unit, split
   groups above max_commits_per_unit into consecutive chunks
5. Aggregation into WorkUnitDraft (span, loc, primary paths, work type)

Input:  CommitRecord list (any order)
Output: WorkUnitDraft list; with min_commits_per_unit == 1 the drafts
        partition the input exactly.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from .models import CommitRecord, WorkUnitDraft
from .worktype import infer_work_type, is_hotfix_message, is_revert_message

logger = logging.getLogger(__name__)

PRIMARY_PATHS_LIMIT = 5


@dataclass
class ClusteringConfig:
    max_time_gap_hours: float = 8.0
    min_path_overlap: float = 0.3
    max_commits_per_unit: int = 50
    min_commits_per_unit: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClusteringConfig":
        data = data or {}
        defaults = cls()
        return cls(
            max_time_gap_hours=float(data.get("max_time_gap_hours", defaults.max_time_gap_hours)),
            min_path_overlap=float(data.get("min_path_overlap", defaults.min_path_overlap)),
            max_commits_per_unit=int(data.get("max_commits_per_unit", defaults.max_commits_per_unit)),
            min_commits_per_unit=int(data.get("min_commits_per_unit", defaults.min_commits_per_unit)),
        )


# ── Public API ──────────────────────────────────────────────────────────


def cluster_commits(
    commits: List[CommitRecord],
    config: Optional[ClusteringConfig] = None,
) -> List[WorkUnitDraft]:
    """Cluster commits into work unit drafts."""
    cfg = config or ClusteringConfig()
    if not commits:
        return []

    ordered = sorted(commits, key=lambda c: c.committed_at)

    groups: List[List[CommitRecord]] = []
    for time_group in group_by_time_gap(ordered, cfg.max_time_gap_hours):
        groups.extend(refine_by_path_similarity(time_group, cfg.min_path_overlap))

    sized = apply_size_limits(groups, cfg.min_commits_per_unit, cfg.max_commits_per_unit)
    drafts = [build_draft(group) for group in sized]

    logger.debug(
        f"Clustered {len(commits)} commits into {len(drafts)} work units "
        f"({len(groups)} raw groups)"
    )
    return drafts


def group_by_time_gap(
    commits: List[CommitRecord],
    max_gap_hours: float,
) -> List[List[CommitRecord]]:
    """Split a time-ordered commit list wherever the gap exceeds the limit."""
    if not commits:
        return []

    max_gap = timedelta(hours=max_gap_hours)
    groups = [[commits[0]]]
    for prev, curr in zip(commits, commits[1:]):
        if curr.committed_at - prev.committed_at > max_gap:
            groups.append([curr])
        else:
            groups[-1].append(curr)
    return groups


def refine_by_path_similarity(
    commits: List[CommitRecord],
    min_overlap: float,
) -> List[List[CommitRecord]]:
    """Split a time group between adjacent commits whose directories diverge."""
    if len(commits) <= 1:
        return [list(commits)] if commits else []

    dir_sets = [directories_of(c.paths) for c in commits]
    groups = [[commits[0]]]
    for i in range(1, len(commits)):
        if jaccard_similarity(dir_sets[i - 1], dir_sets[i]) >= min_overlap:
            groups[-1].append(commits[i])
        else:
            groups.append([commits[i]])
    return groups


def apply_size_limits(
    groups: List[List[CommitRecord]],
    min_size: int,
    max_size: int,
) -> List[List[CommitRecord]]:
    result = []
    for group in groups:
        if len(group) < min_size:
            continue
        if len(group) <= max_size:
            result.append(group)
            continue
        for start in range(0, len(group), max_size):
            result.append(group[start:start + max_size])
    return result


def build_draft(commits: List[CommitRecord]) -> WorkUnitDraft:
    """Aggregate one commit group into a WorkUnitDraft."""
    all_paths: List[str] = []
    seen: Set[str] = set()
    dir_counts: Counter = Counter()

    for commit in commits:
        for path in commit.paths:
            directory = get_directory(path)
            if directory:
                dir_counts[directory] += 1
            if path not in seen:
                seen.add(path)
                all_paths.append(path)

    messages = [c.message for c in commits]
    return WorkUnitDraft(
        commits=list(commits),
        start_at=commits[0].committed_at,
        end_at=commits[-1].committed_at,
        additions=sum(c.additions for c in commits),
        deletions=sum(c.deletions for c in commits),
        paths=all_paths,
        primary_paths=[d for d, _ in dir_counts.most_common(PRIMARY_PATHS_LIMIT)],
        work_type=infer_work_type(messages, all_paths),
        is_hotfix=any(is_hotfix_message(m) for m in messages),
        has_revert=any(is_revert_message(m) for m in messages),
    )


# ── Helpers ─────────────────────────────────────────────────────────────


def get_directory(path: str) -> str:
    """Path minus filename; root-level files map to ''."""
    if "/" not in path:
        return ""
    return path.rsplit("/", 1)[0]


def directories_of(paths: List[str]) -> Set[str]:
    return {get_directory(p) for p in paths}


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def clustering_stats(drafts: List[WorkUnitDraft], impact_scores: Optional[List[float]] = None) -> Dict[str, Any]:
    """Summary numbers for progress reporting."""
    total_commits = sum(d.commit_count for d in drafts)
    distribution = Counter(d.work_type.value for d in drafts)
    scores = impact_scores or []
    return {
        "total_commits": total_commits,
        "total_work_units": len(drafts),
        "avg_commits_per_unit": round(total_commits / len(drafts), 2) if drafts else 0.0,
        "avg_impact_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        "work_type_distribution": dict(distribution),
    }
