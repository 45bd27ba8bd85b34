"""Quantitative developer metrics from stored commits.

Feeds stages 2-4 of the AI review and the yearly report. All functions
are pure over CommitRecord lists; timestamps are naive UTC.
"""

import re
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional

from .models import CommitRecord

CONVENTIONAL_PATTERN = re.compile(
    r"^(feat|fix|docs|style|refactor|perf|test|build|ci|chore|revert)(\(.+\))?!?:\s.+",
    re.IGNORECASE,
)
ISSUE_REFERENCE_PATTERN = re.compile(r"#\d+|[A-Z]+-\d+")
MEANINGLESS_PATTERNS = [
    re.compile(r"^(wip|fix|update|edit|change|modify)$", re.IGNORECASE),
    re.compile(r"^(merge|initial|first|init)$", re.IGNORECASE),
    re.compile(r"^\.+$"),
    re.compile(r"^[a-z]$", re.IGNORECASE),
]

FILE_CATEGORIES = {
    "frontend": [re.compile(p) for p in (
        r"\.(tsx?|jsx?)$", r"components/", r"pages/", r"app/", r"styles/",
        r"\.css$", r"\.scss$", r"\.vue$", r"\.svelte$",
    )],
    "backend": [re.compile(p) for p in (
        r"api/", r"server/", r"controllers?/", r"services?/", r"models?/",
        r"routes?/", r"middleware/", r"\.py$", r"\.go$", r"\.java$",
    )],
    "infra": [re.compile(p, re.IGNORECASE) for p in (
        r"\.github/", r"docker", r"terraform", r"kubernetes", r"k8s",
        r"\.ya?ml$", r"Dockerfile",
    )],
    "test": [re.compile(p) for p in (
        r"__tests__/", r"\.test\.", r"\.spec\.", r"(^|/)tests?/", r"(^|/)test_[^/]*$",
    )],
    "docs": [re.compile(p, re.IGNORECASE) for p in (
        r"\.md$", r"(^|/)docs?/", r"README", r"CHANGELOG",
    )],
}

SESSION_MAX_MINUTES = 720


def _pct(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole else 0


def _in_category(path: str, category: str) -> bool:
    return any(p.search(path) for p in FILE_CATEGORIES[category])


# ── Public API ──────────────────────────────────────────────────────────


def calculate_developer_metrics(
    commits: List[CommitRecord],
    repo_languages: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """All metric groups for one developer-year."""
    ordered = sorted(commits, key=lambda c: c.committed_at)
    return {
        "productivity": productivity_metrics(ordered),
        "work_pattern": work_pattern_metrics(ordered),
        "diversity": diversity_metrics(ordered, repo_languages or {}),
        "pr_activity": pr_activity_metrics(),
        "commit_quality": commit_quality_metrics(ordered),
    }


def productivity_metrics(commits: List[CommitRecord]) -> Dict[str, Any]:
    total = len(commits)
    added = sum(c.additions for c in commits)
    deleted = sum(c.deletions for c in commits)
    working_days = len({c.committed_at.date() for c in commits})
    return {
        "total_commits": total,
        "total_prs": 0,
        "lines_added": added,
        "lines_deleted": deleted,
        "net_lines": added - deleted,
        "files_changed": sum(len(c.files) for c in commits),
        "working_days": working_days,
        "avg_commits_per_day": round(total / working_days, 2) if working_days else 0.0,
        "avg_lines_per_commit": round((added + deleted) / total, 2) if total else 0.0,
    }


def work_pattern_metrics(commits: List[CommitRecord]) -> Dict[str, Any]:
    buckets = {"morning": 0, "afternoon": 0, "evening": 0, "night": 0}
    day_of_week = [0] * 7   # Monday first

    for commit in commits:
        hour = commit.committed_at.hour
        if 6 <= hour < 12:
            buckets["morning"] += 1
        elif 12 <= hour < 18:
            buckets["afternoon"] += 1
        elif 18 <= hour < 22:
            buckets["evening"] += 1
        else:
            buckets["night"] += 1
        day_of_week[commit.committed_at.weekday()] += 1

    total = len(commits)
    return {
        "time_distribution": {k: _pct(v, total) for k, v in buckets.items()},
        "day_of_week_distribution": day_of_week,
        "longest_streak": longest_streak(commits),
        "weekend_work_ratio": _pct(day_of_week[5] + day_of_week[6], total),
        "avg_session_duration": avg_session_minutes(commits),
    }


def longest_streak(commits: List[CommitRecord]) -> int:
    """Longest run of consecutive calendar days with at least one commit."""
    dates = sorted({c.committed_at.date() for c in commits})
    if not dates:
        return 0
    best = current = 1
    for prev, curr in zip(dates, dates[1:]):
        if (curr - prev).days == 1:
            current += 1
            best = max(best, current)
        else:
            current = 1
    return best


def avg_session_minutes(commits: List[CommitRecord]) -> int:
    """Mean first-to-last commit span per day, ignoring spans >= 12h."""
    by_day = defaultdict(list)
    for commit in commits:
        by_day[commit.committed_at.date()].append(commit.committed_at)

    durations = []
    for times in by_day.values():
        if len(times) < 2:
            continue
        minutes = (max(times) - min(times)).total_seconds() / 60
        if 0 < minutes < SESSION_MAX_MINUTES:
            durations.append(minutes)
    return round(sum(durations) / len(durations)) if durations else 0


def diversity_metrics(
    commits: List[CommitRecord],
    repo_languages: Dict[str, Optional[str]],
) -> Dict[str, Any]:
    per_repo = Counter(c.repo_full_name or "unknown" for c in commits)
    total = len(commits)
    distribution = [
        {"repo": repo, "commits": count, "percentage": _pct(count, total)}
        for repo, count in per_repo.most_common()
    ]
    primary = distribution[0] if distribution else {"repo": "", "percentage": 0}
    languages = sorted({lang for repo, lang in repo_languages.items() if lang and repo in per_repo})

    return {
        "repository_count": len(per_repo),
        "primary_repository": {"name": primary["repo"], "percentage": primary["percentage"]},
        "repo_distribution": distribution,
        "language_variety": languages,
        "tech_stack_coverage": tech_stack_coverage(commits),
    }


def tech_stack_coverage(commits: List[CommitRecord]) -> Dict[str, int]:
    paths = [p for c in commits for p in c.paths]
    return {
        category: _pct(sum(1 for p in paths if _in_category(p, category)), len(paths))
        for category in FILE_CATEGORIES
    }


def pr_activity_metrics() -> Dict[str, Any]:
    # Pull requests are not ingested; shape kept for prompt stability
    return {
        "total_prs": 0,
        "merged_prs": 0,
        "pr_participation_rate": 0,
        "avg_commits_per_pr": 0.0,
        "merge_success_rate": 0,
        "avg_pr_cycle_time": 0,
    }


def commit_quality_metrics(commits: List[CommitRecord]) -> Dict[str, Any]:
    total = len(commits)
    if not total:
        return {
            "avg_message_length": 0,
            "conventional_commits_rate": 0,
            "issue_reference_rate": 0,
            "meaningful_commit_rate": 0,
            "revert_rate": 0,
            "test_commit_rate": 0,
        }

    messages = [c.message or "" for c in commits]
    meaningless = sum(
        1 for m in messages if any(p.match(m.strip()) for p in MEANINGLESS_PATTERNS)
    )
    return {
        "avg_message_length": round(sum(len(m) for m in messages) / total),
        "conventional_commits_rate": _pct(sum(1 for m in messages if CONVENTIONAL_PATTERN.match(m)), total),
        "issue_reference_rate": _pct(sum(1 for m in messages if ISSUE_REFERENCE_PATTERN.search(m)), total),
        "meaningful_commit_rate": _pct(total - meaningless, total),
        "revert_rate": _pct(sum(1 for m in messages if m.lower().startswith("revert")), total),
        "test_commit_rate": _pct(
            sum(1 for c in commits if any(_in_category(p, "test") for p in c.paths)), total
        ),
    }


def calculate_monthly_activity(commits: List[CommitRecord]) -> List[Dict[str, int]]:
    """Twelve {month, commits, lines_changed} entries, January first."""
    months = [{"month": i + 1, "commits": 0, "lines_changed": 0} for i in range(12)]
    for commit in commits:
        entry = months[commit.committed_at.month - 1]
        entry["commits"] += 1
        entry["lines_changed"] += commit.additions + commit.deletions
    return months
