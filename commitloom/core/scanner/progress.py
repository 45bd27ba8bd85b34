"""Read-modify-write access to AnalysisRun status and progress.

The progress document is shared by concurrent repo scans and the
control API. Every write re-reads the row under SELECT ... FOR UPDATE
(a no-op on SQLite), merges into the latest state and writes back.

Progress document keys:
    total, completed, failed       repo counters
    current_repo, phase, message   human-readable position
    repo_progress                  {full_name: {status, commits, user_progress, error}}
    clustering_progress            clustering stats once units are built
    errors                         [{phase, message, ...}] collected per-item failures
    units_built, ai_confirmed, skip_ai_review, paused_phase   resume flags
"""

import copy
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..db import AnalysisRun, DatabaseManager, to_uuid
from ..errors import RunNotFound
from ..jobs.models import RepoScanStatus

logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 100


def summarize_repo_progress(repo_progress: Dict[str, Dict[str, Any]]) -> Dict[str, int]:
    """Counters derived from per-repo entries."""
    statuses = [entry.get("status") for entry in repo_progress.values()]
    return {
        "total": len(statuses),
        "completed": sum(1 for s in statuses if s in (RepoScanStatus.DONE.value, RepoScanStatus.PARTIAL.value)),
        "failed": sum(1 for s in statuses if s == RepoScanStatus.FAILED.value),
    }


class ProgressStore:
    """Serialized writer for one table row family (analysis_runs).

    Usage:
        store = ProgressStore(db)
        store.update(run_id, {"phase": "scanning", "message": "..."})
        store.update_repo(run_id, "acme/api", {"status": "done", "commits": 12})
        store.transition(run_id, "BUILDING_UNITS", expected={"SCANNING_COMMITS"})
    """

    def __init__(self, db_manager: DatabaseManager):
        self._db = db_manager

    def _load_for_update(self, session, run_id) -> AnalysisRun:
        run = (
            session.query(AnalysisRun)
            .filter(AnalysisRun.run_id == to_uuid(run_id))
            .with_for_update()
            .one_or_none()
        )
        if run is None:
            raise RunNotFound(f"Analysis run {run_id} not found")
        return run

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, run_id) -> Dict[str, Any]:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            return copy.deepcopy(run.progress or {})

    def get_status(self, run_id) -> str:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            return run.status

    # ── Progress writes ───────────────────────────────────────────────

    def update(self, run_id, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge ``patch`` into the latest progress document."""
        with self._db.get_session() as session:
            run = self._load_for_update(session, run_id)
            progress = copy.deepcopy(run.progress or {})
            progress.update(patch)
            run.progress = progress
            return copy.deepcopy(progress)

    def update_repo(self, run_id, repo_full_name: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Merge one repo's entry and refresh the repo counters."""
        with self._db.get_session() as session:
            run = self._load_for_update(session, run_id)
            progress = copy.deepcopy(run.progress or {})
            repos = progress.get("repo_progress") or {}
            current = dict(repos.get(repo_full_name) or {"repo": repo_full_name})
            current.update(entry)
            repos[repo_full_name] = current
            progress["repo_progress"] = repos
            progress.update(summarize_repo_progress(repos))
            if entry.get("status") == RepoScanStatus.SCANNING.value:
                progress["current_repo"] = repo_full_name
            run.progress = progress
            return copy.deepcopy(current)

    def seed_repos(self, run_id, repo_full_names: Iterable[str], reset: bool = False) -> Dict[str, Any]:
        """Add a pending entry for each repo not yet tracked (all repos when reset)."""
        with self._db.get_session() as session:
            run = self._load_for_update(session, run_id)
            progress = copy.deepcopy(run.progress or {})
            repos = {} if reset else (progress.get("repo_progress") or {})
            for name in repo_full_names:
                repos.setdefault(name, {
                    "repo": name,
                    "status": RepoScanStatus.PENDING.value,
                    "commits": 0,
                    "user_progress": [],
                    "error": None,
                })
            progress["repo_progress"] = repos
            progress.update(summarize_repo_progress(repos))
            run.progress = progress
            return copy.deepcopy(progress)

    def append_error(self, run_id, error: Dict[str, Any]) -> None:
        with self._db.get_session() as session:
            run = self._load_for_update(session, run_id)
            progress = copy.deepcopy(run.progress or {})
            errors: List[Dict[str, Any]] = progress.get("errors") or []
            errors.append(error)
            progress["errors"] = errors[-MAX_RECORDED_ERRORS:]
            run.progress = progress

    # ── Status writes ─────────────────────────────────────────────────

    def transition(
        self,
        run_id,
        status: str,
        expected: Optional[Iterable[str]] = None,
        progress_patch: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> bool:
        """Set status (and row fields) only if the run is in ``expected``.

        Returns False without writing when the run moved elsewhere in the
        meantime, e.g. a cancel landed between two worker checkpoints.
        """
        status = getattr(status, "value", status)
        allowed = {getattr(s, "value", s) for s in expected} if expected is not None else None

        with self._db.get_session() as session:
            run = self._load_for_update(session, run_id)
            if allowed is not None and run.status not in allowed:
                logger.info(
                    f"Run {run_id}: skip {run.status} -> {status} "
                    f"(expected one of {sorted(allowed)})"
                )
                return False

            run.status = status
            for name, value in fields.items():
                setattr(run, name, value)
            if progress_patch:
                progress = copy.deepcopy(run.progress or {})
                progress.update(progress_patch)
                run.progress = progress
            run.updated_at = datetime.utcnow()
            return True
