"""Yearly report assembly (FINALIZING)."""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..analysis.metrics import calculate_monthly_activity
from ..analysis.models import CommitRecord
from ..db import AnalysisRun, DatabaseManager, Repository, WorkUnit, YearlyReport, to_uuid
from ..jobs.models import RunStatus
from .parsing import ASSESSMENT_WEIGHTS, grade_for, overall_score

logger = logging.getLogger(__name__)

TOP_REPOS_LIMIT = 5

__all__ = [
    "ASSESSMENT_WEIGHTS",
    "build_report_stats",
    "empty_report_stats",
    "get_report",
    "grade_for",
    "load_unit_stats",
    "overall_score",
    "previous_year_summary",
    "save_report",
]


def build_report_stats(
    commits: List[CommitRecord],
    units: List[Dict[str, Any]],
    insights: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Headline numbers for one user's year.

    Args:
        commits: The user's commits in scope
        units: [{"repo", "work_type", "impact_score"}] for the user's work units
        insights: Per-repo stage 1 insights (empty when AI was skipped)
    """
    if not commits:
        return empty_report_stats()

    repo_counts = Counter(c.repo_full_name for c in commits)
    scores = [u["impact_score"] for u in units]
    return {
        "total_commits": len(commits),
        "total_work_units": len(units),
        "total_additions": sum(c.additions for c in commits),
        "total_deletions": sum(c.deletions for c in commits),
        "avg_impact_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        "top_repos": [
            {"repo": repo, "commits": count}
            for repo, count in repo_counts.most_common(TOP_REPOS_LIMIT)
        ],
        "work_type_distribution": dict(Counter(u["work_type"] for u in units)),
        "monthly_activity": calculate_monthly_activity(commits),
        "repo_insights": insights or [],
    }


def empty_report_stats() -> Dict[str, Any]:
    return {
        "total_commits": 0,
        "total_work_units": 0,
        "total_additions": 0,
        "total_deletions": 0,
        "avg_impact_score": 0.0,
        "top_repos": [],
        "work_type_distribution": {},
        "monthly_activity": calculate_monthly_activity([]),
        "repo_insights": [],
    }


def load_unit_stats(db_manager: DatabaseManager, run_id, user_login: str) -> List[Dict[str, Any]]:
    with db_manager.get_session() as session:
        rows = session.execute(
            select(Repository.full_name, WorkUnit.work_type, WorkUnit.impact_score)
            .join(Repository, Repository.repo_id == WorkUnit.repo_id)
            .where(WorkUnit.run_id == to_uuid(run_id), WorkUnit.user_login == user_login)
        ).all()
    return [{"repo": r, "work_type": w, "impact_score": s} for r, w, s in rows]


def save_report(
    db_manager: DatabaseManager,
    run_id,
    user_login: str,
    year: int,
    stats: Dict[str, Any],
    summary: Optional[Dict[str, Any]],
) -> str:
    """Create or replace the (run, user) report. ``summary`` None means AI skipped."""
    rid = to_uuid(run_id)
    with db_manager.get_session() as session:
        report = session.execute(
            select(YearlyReport).where(
                YearlyReport.run_id == rid, YearlyReport.user_login == user_login,
            )
        ).scalar_one_or_none()
        if report is None:
            report = YearlyReport(run_id=rid, user_login=user_login, year=year)
            session.add(report)

        report.stats = stats
        report.summary = summary
        report.ai_skipped = summary is None
        report.overall_score = summary.get("overall_score") if summary else None
        report.grade = summary.get("grade") if summary else None
        report.updated_at = datetime.utcnow()
        session.flush()
        logger.info(
            f"Run {run_id}: report saved for {user_login} "
            f"(grade {report.grade or 'n/a'}, {stats.get('total_commits', 0)} commits)"
        )
        return str(report.report_id)


def previous_year_summary(db_manager: DatabaseManager, org_id, user_login: str, year: int) -> Optional[Dict[str, Any]]:
    """Stage 4 summary of the latest DONE report for year - 1, if any."""
    with db_manager.get_session() as session:
        reports = session.execute(
            select(YearlyReport)
            .join(AnalysisRun, AnalysisRun.run_id == YearlyReport.run_id)
            .where(
                AnalysisRun.org_id == to_uuid(org_id),
                AnalysisRun.status == RunStatus.DONE.value,
                YearlyReport.user_login == user_login,
                YearlyReport.year == year - 1,
            )
            .order_by(YearlyReport.created_at.desc())
        ).scalars()
        # JSON null and SQL NULL both read back as None
        for report in reports:
            if report.summary:
                return dict(report.summary)
        return None


def get_report(db_manager: DatabaseManager, run_id, user_login: str) -> Optional[Dict[str, Any]]:
    with db_manager.get_session() as session:
        report = session.execute(
            select(YearlyReport).where(
                YearlyReport.run_id == to_uuid(run_id), YearlyReport.user_login == user_login,
            )
        ).scalar_one_or_none()
        if report is None:
            return None
        return {
            "report_id": str(report.report_id),
            "run_id": str(report.run_id),
            "user_login": report.user_login,
            "year": report.year,
            "stats": report.stats or {},
            "summary": report.summary,
            "overall_score": report.overall_score,
            "grade": report.grade,
            "ai_skipped": report.ai_skipped,
            "created_at": report.created_at.isoformat() if report.created_at else None,
            "updated_at": report.updated_at.isoformat() if report.updated_at else None,
        }
