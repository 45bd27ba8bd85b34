"""Analysis Engine: public API for annual commit analysis.

Consumed by the API routes and the CLI. Control operations validate the
run's current state, write the new status conditionally and hand work
to the background worker.

Public API:
    start_analysis(org_login, users, year, options) -> run dict
    get_status(run_id) -> status document
    pause / resume / cancel / retry / delete
    get_ai_estimate(run_id) / confirm(run_id, skip_ai_review)
    get_resume_state(run_id) -> resume state dict
    get_report(run_id, user_login) -> report with current stage results
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..db import AnalysisRun, DatabaseManager, Organization, Repository, WorkUnit, to_uuid
from ..errors import InvalidRunState, RunNotFound
from ..gateway import estimate_cost
from ..review.interim import interim_stats, load_unit_details
from ..review.report import get_report
from ..review.sampling import SamplingConfig, estimate_sample_count
from ..review.stages import latest_reviews
from ..scanner.progress import ProgressStore
from ..scanner.records import load_commit_records
from ..scanner.resume import ResumeController
from ..vcs.base import VCSClient
from .models import (
    ACTIVE_STATES,
    PAUSABLE_STATES,
    RETRYABLE_STATES,
    TERMINAL_STATES,
    AnalysisJob,
    RestartMode,
    RunStatus,
)
from .runner import AnalysisRunner, LLMFactory
from .worker import AnalysisWorker

logger = logging.getLogger(__name__)

MIN_YEAR = 2000

DELETABLE_STATES = frozenset({
    RunStatus.DONE,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.PAUSED,
    RunStatus.AWAITING_AI_CONFIRMATION,
})


def _values(states) -> set:
    return {s.value for s in states}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AnalysisEngine:
    """Orchestrate annual analysis runs.

    Usage:
        engine = AnalysisEngine(db, vcs=GitHubClient.from_settings(settings))
        run = engine.start_analysis("acme", ["alice"], 2024)
        engine.get_status(run["run_id"])
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        vcs: Optional[VCSClient] = None,
        llm_factory: Optional[LLMFactory] = None,
        settings=None,
        worker: Optional[AnalysisWorker] = None,
    ):
        if settings is None:
            from ...setting import get_settings
            settings = get_settings()
        self._db = db_manager
        self._vcs = vcs
        self._llm_factory = llm_factory
        self._settings = settings
        self._worker = worker
        self._progress = ProgressStore(db_manager)
        self._resume = ResumeController(db_manager, self._progress)

    def _ensure_vcs(self) -> VCSClient:
        if self._vcs is None:
            from ..vcs.github import GitHubClient
            self._vcs = GitHubClient.from_settings(self._settings)
        return self._vcs

    def build_runner(self) -> AnalysisRunner:
        return AnalysisRunner(self._db, self._ensure_vcs(), self._llm_factory, self._settings)

    def _ensure_worker(self) -> AnalysisWorker:
        """Lazily initialize and start the background worker."""
        if self._worker is None:
            self._worker = AnalysisWorker(
                self.build_runner(),
                max_concurrent=self._settings.worker.max_concurrent_runs,
                poll_interval=self._settings.worker.poll_interval,
            )
        if not self._worker.running:
            self._worker.start()
        return self._worker

    def _submit(self, run_id, mode: RestartMode = RestartMode.RESUME) -> bool:
        """False when the worker still holds a pass for this run."""
        return self._ensure_worker().submit(AnalysisJob(run_id=str(run_id), mode=mode))

    def _is_active(self, run_id) -> bool:
        return self._worker is not None and self._worker.is_active(run_id)

    def shutdown(self) -> None:
        if self._worker is not None:
            self._worker.stop()

    # ── Run lifecycle ─────────────────────────────────────────────────

    def start_analysis(
        self,
        org_login: str,
        users: List[str],
        year: int,
        options: Optional[Dict[str, Any]] = None,
        submit: bool = True,
    ) -> Dict[str, Any]:
        """Create a QUEUED run and hand it to the worker.

        Raises:
            ValueError: empty user list or out-of-range year
            InvalidRunState: an unfinished run exists for the same org, year and users
        """
        users = sorted({u.strip() for u in users or [] if u and u.strip()})
        if not org_login or not org_login.strip():
            raise ValueError("Organization login is required")
        if not users:
            raise ValueError("At least one target user is required")
        if not isinstance(year, int) or not MIN_YEAR <= year <= datetime.utcnow().year:
            raise ValueError(f"Year must be between {MIN_YEAR} and {datetime.utcnow().year}")

        with self._db.get_session() as session:
            org = session.execute(
                select(Organization).where(Organization.login == org_login)
            ).scalar_one_or_none()
            if org is None:
                org = Organization(login=org_login, name=org_login, settings={})
                session.add(org)
                session.flush()

            unfinished = session.execute(
                select(AnalysisRun).where(
                    AnalysisRun.org_id == org.org_id,
                    AnalysisRun.year == year,
                    AnalysisRun.status.notin_(_values(TERMINAL_STATES)),
                )
            ).scalars().all()
            for other in unfinished:
                if sorted(other.target_users or []) == users:
                    raise InvalidRunState(
                        f"Run {other.run_id} for {org_login}/{year} is still {other.status}",
                        current_status=other.status,
                    )

            run = AnalysisRun(
                org_id=org.org_id,
                target_users=users,
                year=year,
                status=RunStatus.QUEUED.value,
                options=dict(options or {}),
                progress={
                    "total": 0, "completed": 0, "failed": 0,
                    "current_repo": None, "phase": "queued", "message": "Queued",
                    "repo_progress": {}, "errors": [],
                },
            )
            session.add(run)
            session.flush()
            run_id = str(run.run_id)

        logger.info(f"Run {run_id} created for {org_login} {year} ({', '.join(users)})")
        if submit:
            self._submit(run_id)
        return {"run_id": run_id, "status": RunStatus.QUEUED.value}

    def get_status(self, run_id) -> Dict[str, Any]:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            progress = dict(run.progress or {})
            repo_progress = progress.get("repo_progress") or {}
            doc = {
                "run_id": str(run.run_id),
                "status": run.status,
                "year": run.year,
                "target_users": list(run.target_users or []),
                "progress": {
                    "total": progress.get("total", 0),
                    "completed": progress.get("completed", 0),
                    "failed": progress.get("failed", 0),
                    "current_repo": progress.get("current_repo"),
                    "repo_progress": [
                        {"repo": name, **{k: v for k, v in entry.items() if k != "repo"}}
                        for name, entry in repo_progress.items()
                    ],
                    "phase": progress.get("phase"),
                    "message": progress.get("message"),
                },
                "started_at": _iso(run.started_at),
                "finished_at": _iso(run.finished_at),
            }
            if progress.get("clustering_progress"):
                doc["progress"]["clustering_progress"] = progress["clustering_progress"]
            if progress.get("review_progress"):
                doc["progress"]["review_progress"] = progress["review_progress"]
            if progress.get("errors"):
                doc["progress"]["errors"] = progress["errors"]
            if run.error:
                doc["error"] = run.error
            return doc

    def _require(self, run_id, allowed, action: str) -> str:
        status = self._progress.get_status(run_id)
        if status not in _values(allowed):
            raise InvalidRunState(f"Cannot {action} run in status {status}", current_status=status)
        return status

    def _transition(self, run_id, target: RunStatus, allowed, action: str, **kwargs) -> None:
        self._require(run_id, allowed, action)
        if not self._progress.transition(run_id, target, expected=allowed, **kwargs):
            status = self._progress.get_status(run_id)
            raise InvalidRunState(f"Cannot {action} run in status {status}", current_status=status)

    def pause(self, run_id) -> Dict[str, Any]:
        status = self._require(run_id, PAUSABLE_STATES, "pause")
        self._transition(
            run_id, RunStatus.PAUSED, PAUSABLE_STATES, "pause",
            progress_patch={"paused_phase": status, "message": f"Paused during {status}"},
        )
        logger.info(f"Run {run_id} paused (was {status})")
        return {"run_id": str(run_id), "status": RunStatus.PAUSED.value, "paused_phase": status}

    def resume(self, run_id) -> Dict[str, Any]:
        self._require(run_id, {RunStatus.PAUSED}, "resume")
        if self._is_active(run_id):
            raise InvalidRunState("Run is still stopping, try again shortly",
                                  current_status=RunStatus.PAUSED.value)
        self._transition(
            run_id, RunStatus.QUEUED, {RunStatus.PAUSED}, "resume",
            progress_patch={"message": "Resuming"},
        )
        self._submit(run_id, RestartMode.RESUME)
        return {"run_id": str(run_id), "status": RunStatus.QUEUED.value}

    def cancel(self, run_id) -> Dict[str, Any]:
        non_terminal = set(RunStatus) - set(TERMINAL_STATES)
        self._transition(
            run_id, RunStatus.CANCELLED, non_terminal, "cancel",
            progress_patch={"message": "Cancelled"},
            finished_at=datetime.utcnow(),
        )
        logger.info(f"Run {run_id} cancelled")
        return {"run_id": str(run_id), "status": RunStatus.CANCELLED.value}

    def retry(self, run_id, mode: RestartMode = RestartMode.RESUME) -> Dict[str, Any]:
        """Reset a FAILED or CANCELLED run and resubmit it.

        RETRY and FULL_RESTART delete data here; the worker then scans
        whatever the cleanup left pending.
        """
        mode = RestartMode(mode)
        self._require(run_id, RETRYABLE_STATES, "retry")
        if self._is_active(run_id):
            raise InvalidRunState("Run is still stopping, try again shortly")

        repos = list((self._progress.get(run_id).get("repo_progress") or {}).keys())
        selection = self._resume.prepare(run_id, repos, mode)
        patch: Dict[str, Any] = {"message": f"Retrying ({mode.value})", "restart_mode": mode.value}
        if mode != RestartMode.RESUME:
            patch.update({"units_built": False, "ai_confirmed": False, "sampled_users": [],
                          "review_progress": {}, "clustering_progress": None})

        self._transition(
            run_id, RunStatus.QUEUED, RETRYABLE_STATES, "retry",
            progress_patch=patch, error=None, finished_at=None,
        )
        self._submit(run_id, RestartMode.RESUME)
        return {
            "run_id": str(run_id),
            "status": RunStatus.QUEUED.value,
            "mode": mode.value,
            "repos_to_scan": selection.to_scan,
            "stats": selection.stats,
        }

    def delete(self, run_id) -> Dict[str, Any]:
        """Delete a resting run and its derived data; commits are kept."""
        self._require(run_id, DELETABLE_STATES, "delete")
        if self._is_active(run_id):
            raise InvalidRunState("Run still has a live worker task")
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            session.delete(run)
        logger.info(f"Run {run_id} deleted")
        return {"run_id": str(run_id), "deleted": True}

    # ── Confirmation gate ─────────────────────────────────────────────

    def get_ai_estimate(self, run_id) -> Dict[str, Any]:
        self._require(run_id, {RunStatus.AWAITING_AI_CONFIRMATION}, "estimate")
        review = self._settings.review
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            users = list(run.target_users or [])
            model = (run.options or {}).get("llm_model") or self._settings.llm.model
            rows = session.execute(
                select(WorkUnit.user_login, Repository.full_name, WorkUnit.commit_count)
                .join(Repository, Repository.repo_id == WorkUnit.repo_id)
                .where(WorkUnit.run_id == run.run_id)
            ).all()
            sampling_cfg = SamplingConfig.from_dict({
                **self._settings.sampling.model_dump(), **((run.options or {}).get("sampling") or {}),
            })

        units_per_scope = Counter((user, repo) for user, repo, _ in rows)
        samples = sum(
            estimate_sample_count({repo: count}, sampling_cfg)
            for (_, repo), count in units_per_scope.items()
        )
        tokens_in = samples * review.est_input_tokens_per_unit + len(users) * review.est_input_tokens_per_user
        tokens_out = samples * review.est_output_tokens_per_unit + len(users) * review.est_output_tokens_per_user
        return {
            "run_id": str(run_id),
            "sample_count": samples,
            "total_commits": sum(count for _, _, count in rows),
            "total_work_units": len(rows),
            "target_users": users,
            "estimated_input_tokens": tokens_in,
            "estimated_output_tokens": tokens_out,
            "estimated_cost_usd": estimate_cost(model, tokens_in, tokens_out),
            "model": model,
        }

    def confirm(self, run_id, skip_ai_review: bool = False, submit: bool = True) -> Dict[str, Any]:
        target = RunStatus.FINALIZING if skip_ai_review else RunStatus.REVIEWING
        if submit and self._is_active(run_id):
            raise InvalidRunState("Run is still reaching the confirmation gate, try again shortly",
                                  current_status=RunStatus.AWAITING_AI_CONFIRMATION.value)
        self._transition(
            run_id, target, {RunStatus.AWAITING_AI_CONFIRMATION}, "confirm",
            progress_patch={
                "ai_confirmed": True,
                "skip_ai_review": bool(skip_ai_review),
                "phase": target.value.lower(),
                "message": "AI review skipped" if skip_ai_review else "AI review confirmed",
            },
        )
        logger.info(f"Run {run_id} confirmed (skip_ai_review={skip_ai_review})")
        if submit and not self._submit(run_id):
            # The previous pass still holds the run; reopen the gate
            self._progress.transition(
                run_id, RunStatus.AWAITING_AI_CONFIRMATION, expected={target},
                progress_patch={"ai_confirmed": False, "phase": "awaiting_ai_confirmation",
                                "message": "Confirmation not accepted, retry shortly"},
            )
            raise InvalidRunState("Run is still reaching the confirmation gate, try again shortly",
                                  current_status=RunStatus.AWAITING_AI_CONFIRMATION.value)
        return {"run_id": str(run_id), "status": target.value, "skip_ai_review": bool(skip_ai_review)}

    # ── Read models ───────────────────────────────────────────────────

    def get_resume_state(self, run_id) -> Dict[str, Any]:
        return self._resume.analyze(run_id).to_dict()

    def get_report(self, run_id, user_login: str) -> Dict[str, Any]:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            if user_login not in (run.target_users or []):
                raise ValueError(f"{user_login} is not a target user of run {run_id}")
            status = run.status

        stages = latest_reviews(self._db, run_id, user_login)
        return {
            "run_id": str(run_id),
            "user_login": user_login,
            "status": status,
            "report": get_report(self._db, run_id, user_login),
            "stages": {str(n): stages[n] for n in sorted(stages)},
        }

    def get_interim_report(self, run_id, user_login: str) -> Dict[str, Any]:
        """Work-unit statistics for one user, available once units are built."""
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            if user_login not in (run.target_users or []):
                raise ValueError(f"{user_login} is not a target user of run {run_id}")
            org_id, year, status = run.org_id, run.year, run.status

        units = load_unit_details(self._db, run_id, user_login)
        if not units:
            raise InvalidRunState(f"No work units for {user_login} yet", current_status=status)
        commits = load_commit_records(self._db, org_id, [user_login], year)
        return {
            "run_id": str(run_id),
            "user_login": user_login,
            "year": year,
            "status": status,
            **interim_stats(commits, units),
        }

    def list_runs(self, org_login: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._db.get_session() as session:
            query = (
                select(AnalysisRun, Organization.login)
                .join(Organization, Organization.org_id == AnalysisRun.org_id)
                .order_by(AnalysisRun.created_at.desc())
            )
            if org_login:
                query = query.where(Organization.login == org_login)
            return [
                {
                    "run_id": str(run.run_id),
                    "org": login,
                    "year": run.year,
                    "target_users": list(run.target_users or []),
                    "status": run.status,
                    "created_at": _iso(run.created_at),
                    "active": run.status in _values(ACTIVE_STATES),
                }
                for run, login in session.execute(query).all()
            ]
