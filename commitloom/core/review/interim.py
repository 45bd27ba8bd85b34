"""Interim report: statistics for one user from work units alone.

Available as soon as BUILDING_UNITS has finished, before (or without)
any AI review.
"""

import re
from collections import Counter, defaultdict
from typing import Any, Dict, List

from sqlalchemy import select

from ..analysis.metrics import CONVENTIONAL_PATTERN, _in_category
from ..analysis.models import CommitRecord
from ..db import DatabaseManager, Repository, WorkUnit, to_uuid

BRACKET_TYPE_PATTERN = re.compile(r"^\[(\w+)\]")
LARGE_CHANGE_LINES = 500
SMALL_CHANGE_LINES = 50
TOP_UNITS_LIMIT = 10
IMPACT_BUCKETS = [(0, 20), (20, 40), (40, 60), (60, 80), (80, 100)]


def load_unit_details(db_manager: DatabaseManager, run_id, user_login: str) -> List[Dict[str, Any]]:
    with db_manager.get_session() as session:
        rows = session.execute(
            select(WorkUnit, Repository.full_name)
            .join(Repository, Repository.repo_id == WorkUnit.repo_id)
            .where(WorkUnit.run_id == to_uuid(run_id), WorkUnit.user_login == user_login)
            .order_by(WorkUnit.start_at)
        ).all()
        return [
            {
                "work_unit_id": str(unit.work_unit_id),
                "repo": repo,
                "start_at": unit.start_at,
                "work_type": unit.work_type,
                "impact_score": unit.impact_score,
                "commit_count": unit.commit_count,
                "files_changed": unit.files_changed,
                "additions": unit.additions,
                "deletions": unit.deletions,
                "is_hotfix": unit.is_hotfix,
                "has_revert": unit.has_revert,
            }
            for unit, repo in rows
        ]


def commit_type(message: str) -> str:
    """Conventional prefix or leading ``[type]`` tag, else "other"."""
    first_line = (message or "").split("\n", 1)[0].strip()
    match = CONVENTIONAL_PATTERN.match(first_line)
    if match:
        return match.group(1).lower()
    match = BRACKET_TYPE_PATTERN.match(first_line)
    if match:
        return match.group(1).lower()
    return "other"


def _ratio(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _bucket(score: float) -> str:
    for low, high in IMPACT_BUCKETS:
        if score < high:
            return f"{low}-{high}"
    return "100+"


def interim_stats(commits: List[CommitRecord], units: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Summary, activity, patterns, quality and impact figures for one user.

    Args:
        commits: The user's commits in scope
        units: Rows from load_unit_details
    """
    total_commits = len(commits)
    total_lines = sum(c.additions + c.deletions for c in commits)
    active_days = len({c.committed_at.date() for c in commits})
    scores = [u["impact_score"] for u in units]

    monthly = [
        {"month": i + 1, "commits": 0, "work_units": 0, "additions": 0, "deletions": 0, "files_changed": 0}
        for i in range(12)
    ]
    for commit in commits:
        entry = monthly[commit.committed_at.month - 1]
        entry["commits"] += 1
        entry["additions"] += commit.additions
        entry["deletions"] += commit.deletions
        entry["files_changed"] += len(commit.files)
    for unit in units:
        monthly[unit["start_at"].month - 1]["work_units"] += 1

    repo_commits = Counter(c.repo_full_name for c in commits)
    repo_units = Counter(u["repo"] for u in units)
    repo_contribution = [
        {
            "repo": repo,
            "commits": count,
            "work_units": repo_units.get(repo, 0),
            "percentage": _ratio(count, total_commits),
        }
        for repo, count in repo_commits.most_common()
    ]

    sizes = [c.additions + c.deletions for c in commits]
    paths = [p for c in commits for p in c.paths]

    distribution = {f"{low}-{high}": 0 for low, high in IMPACT_BUCKETS}
    distribution["100+"] = 0
    for score in scores:
        distribution[_bucket(score)] += 1

    heatmap: Dict[tuple, int] = defaultdict(int)
    for commit in commits:
        heatmap[(commit.committed_at.weekday(), commit.committed_at.hour)] += 1

    top_units = sorted(units, key=lambda u: u["impact_score"], reverse=True)[:TOP_UNITS_LIMIT]

    return {
        "summary": {
            "total_commits": total_commits,
            "total_work_units": len(units),
            "total_additions": sum(c.additions for c in commits),
            "total_deletions": sum(c.deletions for c in commits),
            "active_days": active_days,
            "avg_daily_commits": round(total_commits / active_days, 2) if active_days else 0.0,
            "avg_impact_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        },
        "monthly_activity": monthly,
        "repo_contribution": repo_contribution,
        "work_patterns": {
            "commit_types": dict(Counter(commit_type(c.message) for c in commits)),
            "avg_commit_size": round(total_lines / total_commits, 1) if total_commits else 0.0,
            "avg_commits_per_unit": round(total_commits / len(units), 2) if units else 0.0,
            "large_changes": sum(1 for s in sizes if s > LARGE_CHANGE_LINES),
            "small_changes": sum(1 for s in sizes if s < SMALL_CHANGE_LINES),
        },
        "quality_indicators": {
            "test_file_ratio": _ratio(sum(1 for p in paths if _in_category(p, "test")), len(paths)),
            "docs_file_ratio": _ratio(sum(1 for p in paths if _in_category(p, "docs")), len(paths)),
            "hotfix_ratio": _ratio(sum(1 for u in units if u["is_hotfix"]), len(units)),
            "revert_ratio": _ratio(sum(1 for u in units if u["has_revert"]), len(units)),
        },
        "impact_analysis": {
            "avg_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
            "distribution": distribution,
            "top_units": [
                {
                    "work_unit_id": u["work_unit_id"],
                    "repo": u["repo"],
                    "work_type": u["work_type"],
                    "impact_score": u["impact_score"],
                    "commit_count": u["commit_count"],
                    "start_at": u["start_at"].isoformat(),
                }
                for u in top_units
            ],
        },
        "activity_heatmap": [
            {"day_of_week": day, "hour": hour, "count": count}
            for (day, hour), count in sorted(heatmap.items())
        ],
    }
