"""
Tests for the interim (pre-review) report statistics.

Tests cover:
- Summary, monthly activity and repository share
- Commit type detection and change size buckets
- Quality ratios and impact distribution
- Activity heatmap by weekday and hour
"""

from datetime import datetime

from commitloom.core.analysis import CommitRecord, FileChange
from commitloom.core.review.interim import commit_type, interim_stats


# ── Fixtures ──────────────────────────────────────────────────────────────


def _commit(sha, message, at, additions, deletions=0, paths=("src/app.py",), repo="acme/api"):
    return CommitRecord(
        sha=sha,
        message=message,
        committed_at=at,
        additions=additions,
        deletions=deletions,
        files=[FileChange(path=p) for p in paths],
        repo_full_name=repo,
        author_login="alice",
    )


def _unit(unit_id, repo, score, start_at, hotfix=False, revert=False, commits=1):
    return {
        "work_unit_id": unit_id,
        "repo": repo,
        "start_at": start_at,
        "work_type": "feature",
        "impact_score": score,
        "commit_count": commits,
        "files_changed": 1,
        "additions": 0,
        "deletions": 0,
        "is_hotfix": hotfix,
        "has_revert": revert,
    }


COMMITS = [
    _commit("a1", "feat: search", datetime(2024, 3, 4, 9, 0), 600, 20,
            paths=["src/search.py", "tests/test_search.py"]),
    _commit("a2", "[docs] usage notes", datetime(2024, 3, 4, 11, 0), 10, paths=["docs/usage.md"]),
    _commit("a3", "hotfix: token expiry", datetime(2024, 6, 10, 15, 0), 20, 4),
    _commit("b1", "tidy", datetime(2024, 3, 5, 14, 0), 80, repo="acme/web"),
]

UNITS = [
    _unit("u1", "acme/api", 35.5, datetime(2024, 3, 4, 9, 0), commits=2),
    _unit("u2", "acme/api", 12.0, datetime(2024, 6, 10, 15, 0), hotfix=True),
    _unit("u3", "acme/web", 104.0, datetime(2024, 3, 5, 14, 0)),
]


# ── Tests: interim_stats ──────────────────────────────────────────────────


class TestInterimStats:
    """Tests for interim_stats."""

    def test_summary(self):
        summary = interim_stats(COMMITS, UNITS)["summary"]

        assert summary["total_commits"] == 4
        assert summary["total_work_units"] == 3
        assert summary["total_additions"] == 710
        assert summary["active_days"] == 3
        assert summary["avg_daily_commits"] == 1.33
        assert summary["avg_impact_score"] == 50.5

    def test_monthly_activity(self):
        months = interim_stats(COMMITS, UNITS)["monthly_activity"]

        assert len(months) == 12
        assert months[2] == {
            "month": 3, "commits": 3, "work_units": 2,
            "additions": 690, "deletions": 20, "files_changed": 4,
        }
        assert months[5]["work_units"] == 1

    def test_repo_contribution(self):
        contribution = interim_stats(COMMITS, UNITS)["repo_contribution"]

        assert contribution[0] == {"repo": "acme/api", "commits": 3, "work_units": 2, "percentage": 75.0}
        assert contribution[1]["percentage"] == 25.0

    def test_work_patterns(self):
        patterns = interim_stats(COMMITS, UNITS)["work_patterns"]

        assert patterns["commit_types"] == {"feat": 1, "docs": 1, "other": 2}
        assert patterns["large_changes"] == 1
        assert patterns["small_changes"] == 2
        assert patterns["avg_commits_per_unit"] == 1.33

    def test_quality_indicators(self):
        quality = interim_stats(COMMITS, UNITS)["quality_indicators"]

        assert quality["test_file_ratio"] == 20.0
        assert quality["docs_file_ratio"] == 20.0
        assert quality["hotfix_ratio"] == 33.3
        assert quality["revert_ratio"] == 0.0

    def test_impact_analysis(self):
        impact = interim_stats(COMMITS, UNITS)["impact_analysis"]

        assert impact["distribution"] == {
            "0-20": 1, "20-40": 1, "40-60": 0, "60-80": 0, "80-100": 0, "100+": 1,
        }
        assert [u["work_unit_id"] for u in impact["top_units"]] == ["u3", "u1", "u2"]
        assert impact["top_units"][0]["start_at"] == "2024-03-05T14:00:00"

    def test_activity_heatmap(self):
        heatmap = interim_stats(COMMITS, UNITS)["activity_heatmap"]

        # 2024-03-04 and 2024-06-10 are Mondays
        assert heatmap == [
            {"day_of_week": 0, "hour": 9, "count": 1},
            {"day_of_week": 0, "hour": 11, "count": 1},
            {"day_of_week": 0, "hour": 15, "count": 1},
            {"day_of_week": 1, "hour": 14, "count": 1},
        ]

    def test_empty_inputs(self):
        stats = interim_stats([], [])

        assert stats["summary"]["avg_daily_commits"] == 0.0
        assert stats["quality_indicators"]["hotfix_ratio"] == 0.0
        assert stats["activity_heatmap"] == []


def test_commit_type():
    assert commit_type("fix(api): null check") == "fix"
    assert commit_type("[Refactor] split module") == "refactor"
    assert commit_type("Merge branch 'main'") == "other"
    assert commit_type("") == "other"
