"""Resume/Retry controller.

Decides which repositories a (re)started run scans and what persisted
data is discarded first:

    RESUME        scan every repo not done, delete nothing
    RETRY         scan repos that failed (or were partial); delete their
                  commits for the target users and year, then the run's
                  derived data
    FULL_RESTART  scan everything; delete the run's derived data and all
                  commits of the target users in the org and year

The cached progress document is not trusted on its own: repo statuses
are reconciled against the commits actually stored.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

from ..db import (
    AiReview,
    AnalysisRun,
    Commit,
    CommitDiff,
    CommitFile,
    DatabaseManager,
    Repository,
    SamplingResult,
    WorkUnit,
    WorkUnitCommit,
    YearlyReport,
    to_uuid,
)
from ..errors import RunNotFound
from ..jobs.models import RepoScanStatus, RestartMode, RunStatus
from .progress import ProgressStore, summarize_repo_progress
from .scanner import year_window

logger = logging.getLogger(__name__)


@dataclass
class ResumeState:
    """Snapshot of a run's scan position."""
    run_id: str
    status: str
    completed_repos: List[str] = field(default_factory=list)
    failed_repos: List[str] = field(default_factory=list)
    partial_repos: List[str] = field(default_factory=list)
    pending_repos: List[str] = field(default_factory=list)
    total_commits: int = 0
    total_work_units: int = 0

    @property
    def total_repos(self) -> int:
        return (len(self.completed_repos) + len(self.failed_repos)
                + len(self.partial_repos) + len(self.pending_repos))

    @property
    def can_resume(self) -> bool:
        return (
            self.total_repos > 0
            and (bool(self.completed_repos) or self.total_commits > 0)
            and self.status != RunStatus.DONE.value
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "current_phase": self.status,
            "completed_repos": self.completed_repos,
            "failed_repos": self.failed_repos,
            "partial_repos": self.partial_repos,
            "pending_repos": self.pending_repos,
            "can_resume": self.can_resume,
            "stats": {
                "total_repos": self.total_repos,
                "total_commits": self.total_commits,
                "total_work_units": self.total_work_units,
                "scanned_repos": len(self.completed_repos),
            },
        }


@dataclass
class RepoSelection:
    to_scan: List[str]
    skipped: List[str]
    stats: Dict[str, int]


def delete_run_outputs(session, run_id) -> None:
    """Delete everything derived for a run: units, reviews, samples, reports."""
    rid = to_uuid(run_id)
    session.execute(delete(WorkUnitCommit).where(WorkUnitCommit.run_id == rid))
    session.execute(delete(AiReview).where(AiReview.run_id == rid))
    session.execute(delete(WorkUnit).where(WorkUnit.run_id == rid))
    session.execute(delete(SamplingResult).where(SamplingResult.run_id == rid))
    session.execute(delete(YearlyReport).where(YearlyReport.run_id == rid))


def delete_commits(session, repo_ids: List, users: List[str], year: int) -> int:
    """Delete the users' commits (and file/diff rows) in the given repos and year."""
    if not repo_ids or not users:
        return 0
    since, until = year_window(year)
    commit_ids = select(Commit.commit_id).where(
        Commit.repo_id.in_([to_uuid(r) for r in repo_ids]),
        Commit.author_login.in_(users),
        Commit.committed_at >= since,
        Commit.committed_at <= until,
    )

    session.execute(delete(WorkUnitCommit).where(WorkUnitCommit.commit_id.in_(commit_ids)))
    session.execute(delete(CommitFile).where(CommitFile.commit_id.in_(commit_ids)))
    session.execute(delete(CommitDiff).where(CommitDiff.commit_id.in_(commit_ids)))
    result = session.execute(
        delete(Commit).where(
            Commit.repo_id.in_([to_uuid(r) for r in repo_ids]),
            Commit.author_login.in_(users),
            Commit.committed_at >= since,
            Commit.committed_at <= until,
        )
    )
    return result.rowcount or 0


class ResumeController:
    """Reconcile progress with stored data and prepare a restart.

    Usage:
        controller = ResumeController(db, ProgressStore(db))
        selection = controller.prepare(run_id, all_repo_names, RestartMode.RESUME)
    """

    def __init__(self, db_manager: DatabaseManager, progress: ProgressStore):
        self._db = db_manager
        self._progress = progress

    # ── Inspection ────────────────────────────────────────────────────

    def analyze(self, run_id) -> ResumeState:
        """Classify repos by their recorded status, with stored-data stats."""
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            repo_progress = (run.progress or {}).get("repo_progress") or {}
            state = ResumeState(run_id=str(run.run_id), status=run.status)

            for name, entry in repo_progress.items():
                status = entry.get("status")
                if status == RepoScanStatus.DONE.value:
                    state.completed_repos.append(name)
                elif status == RepoScanStatus.FAILED.value:
                    state.failed_repos.append(name)
                elif status == RepoScanStatus.PARTIAL.value:
                    state.partial_repos.append(name)
                else:
                    state.pending_repos.append(name)

            since, until = year_window(run.year)
            state.total_commits = session.execute(
                select(func.count(Commit.commit_id))
                .join(Repository, Repository.repo_id == Commit.repo_id)
                .where(
                    Repository.org_id == run.org_id,
                    Commit.author_login.in_(run.target_users or []),
                    Commit.committed_at >= since,
                    Commit.committed_at <= until,
                )
            ).scalar_one()
            state.total_work_units = session.execute(
                select(func.count(WorkUnit.work_unit_id)).where(WorkUnit.run_id == run.run_id)
            ).scalar_one()
        return state

    def stored_commit_counts(self, run_id) -> Dict[str, int]:
        """Stored commit count per repo full name for the run's users and year."""
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            since, until = year_window(run.year)
            rows = session.execute(
                select(Repository.full_name, func.count(Commit.commit_id))
                .join(Commit, Commit.repo_id == Repository.repo_id)
                .where(
                    Repository.org_id == run.org_id,
                    Commit.author_login.in_(run.target_users or []),
                    Commit.committed_at >= since,
                    Commit.committed_at <= until,
                )
                .group_by(Repository.full_name)
            ).all()
        return {name: count for name, count in rows}

    # ── Selection ─────────────────────────────────────────────────────

    @staticmethod
    def select_repos(state: ResumeState, all_repos: List[str], mode: RestartMode) -> RepoSelection:
        if mode == RestartMode.RESUME:
            completed = set(state.completed_repos)
            to_scan = [r for r in all_repos if r not in completed]
            skipped = [r for r in all_repos if r in completed]
        elif mode == RestartMode.RETRY:
            retry = set(state.failed_repos) | set(state.partial_repos)
            to_scan = [r for r in all_repos if r in retry]
            skipped = [r for r in all_repos if r not in retry]
        else:
            to_scan = list(all_repos)
            skipped = []

        return RepoSelection(
            to_scan=to_scan,
            skipped=skipped,
            stats={
                "total": len(all_repos),
                "completed": len(skipped),
                "pending": len(to_scan),
                "failed": len(state.failed_repos),
            },
        )

    # ── Mutation ──────────────────────────────────────────────────────

    def cleanup(self, run_id, mode: RestartMode, repos: Optional[List[str]] = None) -> None:
        """Delete data per restart mode. ``repos`` are the RETRY targets."""
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            users = list(run.target_users or [])

            if mode == RestartMode.RESUME:
                logger.info(f"Run {run_id}: resume, keeping all existing data")
                return

            if mode == RestartMode.FULL_RESTART:
                repo_ids = list(session.execute(
                    select(Repository.repo_id).where(Repository.org_id == run.org_id)
                ).scalars())
            else:
                repo_ids = list(session.execute(
                    select(Repository.repo_id).where(Repository.full_name.in_(repos or []))
                ).scalars())

            deleted = delete_commits(session, repo_ids, users, run.year)
            delete_run_outputs(session, run.run_id)
            logger.info(
                f"Run {run_id}: {mode.value} cleanup deleted {deleted} commits "
                f"across {len(repo_ids)} repositories"
            )

    def restore_progress(self, run_id, all_repos: List[str]) -> Dict[str, Dict[str, Any]]:
        """Rewrite repo_progress from stored data.

        A repo holding commits for the scope is done whatever was recorded;
        scanning/failed entries without data go back to pending.
        """
        counts = self.stored_commit_counts(run_id)
        existing = self._progress.get(run_id).get("repo_progress") or {}

        restored: Dict[str, Dict[str, Any]] = {}
        for name in all_repos:
            entry = dict(existing.get(name) or {"repo": name, "user_progress": []})
            stored = counts.get(name, 0)
            if stored > 0:
                entry.update({"status": RepoScanStatus.DONE.value, "commits": stored, "error": None})
            elif entry.get("status") != RepoScanStatus.DONE.value:
                entry.update({"status": RepoScanStatus.PENDING.value, "commits": 0})
            restored[name] = entry

        patch = {"repo_progress": restored, **summarize_repo_progress(restored)}
        self._progress.update(run_id, patch)
        return restored

    def prepare(self, run_id, all_repos: List[str], mode: RestartMode) -> RepoSelection:
        """Cleanup, reconcile and select the repos to scan under ``mode``."""
        if mode == RestartMode.RESUME:
            self.restore_progress(run_id, all_repos)
            state = self.analyze(run_id)
            selection = self.select_repos(state, all_repos, mode)
        elif mode == RestartMode.RETRY:
            state = self.analyze(run_id)
            selection = self.select_repos(state, all_repos, mode)
            self.cleanup(run_id, mode, selection.to_scan)
            for name in selection.to_scan:
                self._progress.update_repo(run_id, name, {
                    "status": RepoScanStatus.PENDING.value, "commits": 0, "error": None,
                })
        else:
            state = self.analyze(run_id)
            selection = self.select_repos(state, all_repos, mode)
            self.cleanup(run_id, mode)
            self._progress.seed_repos(run_id, all_repos, reset=True)

        logger.info(
            f"Run {run_id}: {mode.value} will scan {len(selection.to_scan)} repos, "
            f"skip {len(selection.skipped)}"
        )
        return selection
