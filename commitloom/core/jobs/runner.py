"""Analysis Runner: drives one AnalysisRun through its phases.

QUEUED → SCANNING_REPOS → SCANNING_COMMITS → BUILDING_UNITS →
AWAITING_AI_CONFIRMATION | (confirmed) REVIEWING → FINALIZING → DONE

The runner re-reads the run status at every checkpoint (between repos,
between stage 1 units, at every stage and phase boundary) and every
phase transition is conditional on the run still being in the phase the
runner expects. A cancel or pause written by the control API therefore
stops the runner at its next checkpoint and is never overwritten.

Entry status decides where a job starts:
    QUEUED       full walk; completed work is skipped (RESUME semantics)
    REVIEWING    sampling + review, then finalize
    FINALIZING   finalize only
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select

from ..analysis import (
    ClusteringConfig,
    ImpactConfig,
    adjust_prediction,
    calculate_developer_metrics,
    calculate_hotspot_files,
    calculate_impact,
    cluster_commits,
    clustering_stats,
    predict_work_unit_count,
)
from ..analysis.models import CommitRecord
from ..db import AnalysisRun, DatabaseManager, Organization, Repository, WorkUnit, WorkUnitCommit, to_uuid
from ..errors import RunFatalError, RunInterrupted, RunNotFound, VCSError
from ..review.client import LLMClient
from ..review.parsing import default_stage4
from ..review.pipeline import ReviewPipeline
from ..review.report import build_report_stats, load_unit_stats, previous_year_summary, save_report
from ..review.sampling import SamplingConfig, SamplingEngine, load_candidates, save_sampling
from ..review.stages import ReviewStages, latest_reviews, repo_insights
from ..scanner.progress import ProgressStore
from ..scanner.records import load_commit_records, load_recent_paths, repo_languages
from ..scanner.resume import ResumeController, delete_run_outputs
from ..scanner.scanner import CommitScanner, RepoTarget
from ..vcs.base import VCSClient
from .models import ACTIVE_STATES, AnalysisJob, RunStatus

logger = logging.getLogger(__name__)

LLMFactory = Callable[[Optional[str]], LLMClient]


class AnalysisRunner:
    """Execute analysis jobs.

    Usage:
        runner = AnalysisRunner(db, vcs, llm_factory=lambda model: build_ai_client(model_name=model or ""))
        final_status = await runner.run(AnalysisJob(run_id))
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        vcs: VCSClient,
        llm_factory: Optional[LLMFactory] = None,
        settings=None,
    ):
        if settings is None:
            from ...setting import get_settings
            settings = get_settings()
        self._db = db_manager
        self._vcs = vcs
        self._llm_factory = llm_factory
        self._settings = settings
        self._progress = ProgressStore(db_manager)
        self._resume = ResumeController(db_manager, self._progress)

    # ── Entry point ───────────────────────────────────────────────────

    async def run(self, job: AnalysisJob) -> str:
        """Run from the job's current status. Returns the status it stopped at."""
        run_id = job.run_id
        try:
            status = self._progress.get_status(run_id)
            if status == RunStatus.QUEUED.value:
                return await self._run_from_start(job)
            if status == RunStatus.REVIEWING.value:
                await self._review(run_id)
                return await self._finalize(run_id)
            if status == RunStatus.FINALIZING.value:
                return await self._finalize(run_id)

            logger.info(f"Run {run_id}: nothing to do in status {status}")
            return status

        except RunInterrupted as e:
            logger.info(f"Run {run_id}: stopped at checkpoint ({e.status})")
            return e.status
        except RunNotFound:
            logger.warning(f"Run {run_id}: deleted while running")
            return "DELETED"
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}", exc_info=True)
            failed = self._progress.transition(
                run_id, RunStatus.FAILED, expected=ACTIVE_STATES,
                progress_patch={"message": f"Failed: {e}"},
                error=str(e), finished_at=datetime.utcnow(),
            )
            return RunStatus.FAILED.value if failed else self._progress.get_status(run_id)

    async def _run_from_start(self, job: AnalysisJob) -> str:
        run_id = job.run_id
        self._advance(
            run_id, RunStatus.QUEUED, RunStatus.SCANNING_REPOS,
            message="Discovering repositories", started_at=datetime.utcnow(), error=None,
        )
        repos = self._discover_repos(run_id, job)

        self._advance(run_id, RunStatus.SCANNING_REPOS, RunStatus.SCANNING_COMMITS,
                      message=f"Scanning {len(repos)} repositories")
        stored_new = await self._scan_commits(run_id, job, repos)

        await self._checkpoint(run_id, RunStatus.SCANNING_COMMITS)
        self._advance(run_id, RunStatus.SCANNING_COMMITS, RunStatus.BUILDING_UNITS,
                      message="Building work units")
        progress = self._progress.get(run_id)
        if stored_new or not progress.get("units_built"):
            stats = self.build_units(run_id)
            self._progress.update(run_id, {
                "units_built": True,
                "clustering_progress": stats,
                "sampled_users": [],
            })
        else:
            logger.info(f"Run {run_id}: no new commits, keeping existing work units")

        await self._checkpoint(run_id, RunStatus.BUILDING_UNITS)
        progress = self._progress.get(run_id)
        if not progress.get("ai_confirmed"):
            self._advance(run_id, RunStatus.BUILDING_UNITS, RunStatus.AWAITING_AI_CONFIRMATION,
                          message="Waiting for AI review confirmation")
            return RunStatus.AWAITING_AI_CONFIRMATION.value

        if progress.get("skip_ai_review"):
            self._advance(run_id, RunStatus.BUILDING_UNITS, RunStatus.FINALIZING,
                          message="Finalizing reports (AI review skipped)")
            return await self._finalize(run_id)

        self._advance(run_id, RunStatus.BUILDING_UNITS, RunStatus.REVIEWING, message="Reviewing")
        await self._review(run_id)
        return await self._finalize(run_id)

    # ── Checkpoints ───────────────────────────────────────────────────

    async def _checkpoint(self, run_id, expected: RunStatus) -> None:
        status = self._progress.get_status(run_id)
        if status != expected.value:
            raise RunInterrupted(status)

    def _advance(self, run_id, current: RunStatus, target: RunStatus, message: str = "", **fields) -> None:
        patch = {"phase": target.value.lower()}
        if message:
            patch["message"] = message
        if not self._progress.transition(run_id, target, expected={current}, progress_patch=patch, **fields):
            raise RunInterrupted(self._progress.get_status(run_id))

    def _load_run(self, run_id) -> Dict[str, Any]:
        with self._db.get_session() as session:
            run = session.get(AnalysisRun, to_uuid(run_id))
            if run is None:
                raise RunNotFound(f"Analysis run {run_id} not found")
            org = session.get(Organization, run.org_id)
            if org is None:
                raise RunFatalError(f"Organization for run {run_id} not found")
            return {
                "run_id": str(run.run_id),
                "org_id": run.org_id,
                "org_login": org.login,
                "org_settings": dict(org.settings or {}),
                "users": list(run.target_users or []),
                "year": run.year,
                "options": dict(run.options or {}),
            }

    # ── SCANNING_REPOS ────────────────────────────────────────────────

    def _discover_repos(self, run_id, job: AnalysisJob) -> List[RepoTarget]:
        """List org repos, upsert Repository rows, seed pending progress."""
        run = self._load_run(run_id)
        options = run["options"]
        include_archived = options.get("include_archived", self._settings.scan.include_archived)
        excluded = set(options.get("exclude_repos") or [])

        try:
            refs = self._vcs.list_repos(run["org_login"], include_archived)
        except VCSError as e:
            if e.status_code in (401, 403):
                raise RunFatalError(f"VCS credentials rejected for {run['org_login']}: {e}") from e
            raise RunFatalError(f"Listing repositories of {run['org_login']} failed: {e}") from e

        refs = [r for r in refs if r.full_name not in excluded and r.name not in excluded]
        targets = []
        with self._db.get_session() as session:
            existing = {
                r.full_name: r for r in session.execute(
                    select(Repository).where(Repository.full_name.in_([ref.full_name for ref in refs]))
                ).scalars()
            }
            for ref in refs:
                repo = existing.get(ref.full_name)
                if repo is None:
                    repo = Repository(org_id=run["org_id"], full_name=ref.full_name, name=ref.name)
                    session.add(repo)
                repo.language = ref.language
                repo.is_archived = ref.is_archived
                repo.default_branch = ref.default_branch
                session.flush()
                targets.append(RepoTarget(repo_id=str(repo.repo_id), full_name=ref.full_name))

        self._progress.seed_repos(run_id, [t.full_name for t in targets])
        logger.info(f"Run {run_id}: {len(targets)} repositories in {run['org_login']}")
        return targets

    # ── SCANNING_COMMITS ──────────────────────────────────────────────

    async def _scan_commits(self, run_id, job: AnalysisJob, repos: List[RepoTarget]) -> bool:
        """Scan the repos the restart mode selects. True when new commits were stored."""
        run = self._load_run(run_id)
        selection = self._resume.prepare(run_id, [r.full_name for r in repos], job.mode)
        to_scan = set(selection.to_scan)
        targets = [r for r in repos if r.full_name in to_scan]
        if not targets:
            logger.info(f"Run {run_id}: all {len(repos)} repositories already scanned")
            return False

        async def _should_continue() -> bool:
            return self._progress.get_status(run_id) == RunStatus.SCANNING_COMMITS.value

        before = sum(self._resume.stored_commit_counts(run_id).values())
        scanner = CommitScanner.from_settings(self._db, self._vcs, self._progress, self._settings.scan)
        await scanner.scan_repos(run_id, targets, run["users"], run["year"], should_continue=_should_continue)
        return sum(self._resume.stored_commit_counts(run_id).values()) != before

    # ── BUILDING_UNITS ────────────────────────────────────────────────

    def build_units(self, run_id) -> Dict[str, Any]:
        """Delete the run's units (and what hangs off them), then cluster and score again."""
        run = self._load_run(run_id)
        options = run["options"]
        clustering_cfg = ClusteringConfig.from_dict({
            **self._settings.clustering.model_dump(), **(options.get("clustering") or {}),
        })
        impact_cfg = ImpactConfig.from_dict({
            "loc_cap": self._settings.impact.loc_cap,
            **run["org_settings"],
            **(options.get("impact") or {}),
        })

        with self._db.get_session() as session:
            delete_run_outputs(session, run_id)
            repo_ids = dict(session.execute(
                select(Repository.full_name, Repository.repo_id).where(Repository.org_id == run["org_id"])
            ).all())

        commits = load_commit_records(self._db, run["org_id"], run["users"], run["year"])
        scopes: Dict[Tuple[str, str], List[CommitRecord]] = defaultdict(list)
        by_repo: Dict[str, List[CommitRecord]] = defaultdict(list)
        for commit in commits:
            scopes[(commit.repo_full_name, commit.author_login)].append(commit)
            by_repo[commit.repo_full_name].append(commit)

        hotspots = {repo: self._hotspots(repo_ids[repo], repo_commits) for repo, repo_commits in by_repo.items()}

        prediction = predict_work_unit_count(len(commits), len(by_repo))
        clustered = []
        unit_count = 0
        self._report_clustering(run_id, 0, len(scopes), unit_count, prediction)
        for index, ((repo, user), scoped) in enumerate(sorted(scopes.items()), start=1):
            drafts = cluster_commits(scoped, clustering_cfg)
            clustered.append((repo, user, drafts))
            unit_count += len(drafts)
            prediction = adjust_prediction(prediction, unit_count)
            self._report_clustering(run_id, index, len(scopes), unit_count, prediction)

        all_drafts, scores = [], []
        with self._db.get_session() as session:
            for repo, user, drafts in clustered:
                for draft in drafts:
                    impact = calculate_impact(draft, impact_cfg, hotspots[repo])
                    unit = WorkUnit(
                        run_id=to_uuid(run_id),
                        repo_id=repo_ids[repo],
                        user_login=user,
                        start_at=draft.start_at,
                        end_at=draft.end_at,
                        commit_count=draft.commit_count,
                        files_changed=len(draft.paths),
                        additions=draft.additions,
                        deletions=draft.deletions,
                        primary_paths=draft.primary_paths,
                        work_type=draft.work_type.value,
                        impact_score=impact.score,
                        impact_factors=impact.factors.to_dict(),
                        is_hotfix=draft.is_hotfix,
                        has_revert=draft.has_revert,
                    )
                    session.add(unit)
                    session.flush()
                    for index, commit in enumerate(draft.commits):
                        session.add(WorkUnitCommit(
                            work_unit_id=unit.work_unit_id,
                            commit_id=to_uuid(commit.commit_id),
                            run_id=to_uuid(run_id),
                            order_index=index,
                        ))
                    all_drafts.append(draft)
                    scores.append(impact.score)

        stats = clustering_stats(all_drafts, scores)
        stats["prediction"] = prediction.to_dict()
        logger.info(
            f"Run {run_id}: built {stats['total_work_units']} work units "
            f"from {stats['total_commits']} commits"
        )
        return stats

    def _report_clustering(self, run_id, processed: int, total: int, units: int, prediction) -> None:
        self._progress.update(run_id, {"clustering_progress": {
            "status": "clustering",
            "processed_scopes": processed,
            "total_scopes": total,
            "work_units": units,
            "prediction": prediction.to_dict(),
        }})

    def _hotspots(self, repo_id, repo_commits: List[CommitRecord]) -> set:
        if not repo_commits:
            return set()
        end = max(c.committed_at for c in repo_commits)
        since = end - timedelta(days=self._settings.impact.hotspot_window_days)
        paths = load_recent_paths(self._db, repo_id, since, end)
        return calculate_hotspot_files(paths, self._settings.impact.hotspot_top_n)

    # ── REVIEWING ─────────────────────────────────────────────────────

    def _llm(self, options: Dict[str, Any]) -> LLMClient:
        if self._llm_factory is None:
            from ..review.client import build_ai_client
            return build_ai_client(self._settings, model_name=options.get("llm_model") or "")
        return self._llm_factory(options.get("llm_model"))

    async def _review(self, run_id) -> None:
        run = self._load_run(run_id)
        llm = self._llm(run["options"])
        sampling_cfg = SamplingConfig.from_dict({
            **self._settings.sampling.model_dump(), **(run["options"].get("sampling") or {}),
        })
        review = self._settings.review

        sampled_users = set(self._progress.get(run_id).get("sampled_users") or [])
        for user in run["users"]:
            await self._checkpoint(run_id, RunStatus.REVIEWING)
            if user in sampled_users:
                continue
            candidates = load_candidates(self._db, run_id, user)
            outcome = await asyncio.to_thread(SamplingEngine(llm, sampling_cfg).sample, candidates)
            save_sampling(self._db, run_id, outcome, user_login=user)
            sampled_users.add(user)
            self._progress.update(run_id, {
                "sampled_users": sorted(sampled_users),
                "message": f"Sampled {len(outcome.selections)} work units for {user}",
            })

        stages = ReviewStages.from_settings(self._db, llm, self._vcs, review)
        pipeline = ReviewPipeline(stages, stage1_delay=review.stage1_delay_seconds)

        async def _checkpoint() -> None:
            await self._checkpoint(run_id, RunStatus.REVIEWING)

        with self._db.get_session() as session:
            unit_ids = [str(u) for u in session.execute(
                select(WorkUnit.work_unit_id)
                .where(WorkUnit.run_id == to_uuid(run_id), WorkUnit.is_sampled.is_(True))
                .order_by(WorkUnit.user_login, WorkUnit.start_at)
            ).scalars()]
        self._progress.update(run_id, {"message": f"Reviewing {len(unit_ids)} sampled work units"})
        stage1_counts = await pipeline.review_units(run_id, unit_ids, _checkpoint)

        languages = repo_languages(self._db, run["org_id"])
        review_progress = {}
        for user in run["users"]:
            await _checkpoint()
            commits = load_commit_records(self._db, run["org_id"], [user], run["year"])
            if not commits:
                logger.info(f"Run {run_id}: no commits for {user} in {run['year']}, skipping stages 2-4")
                continue
            metrics = calculate_developer_metrics(commits, languages)
            previous = previous_year_summary(self._db, run["org_id"], user, run["year"])
            state = await pipeline.run_user(run_id, user, run["year"], metrics, previous, _checkpoint)
            review_progress[user] = state.to_dict()
            self._progress.update(run_id, {
                "review_progress": review_progress,
                "stage1": stage1_counts,
                "message": f"Reviewed {user}",
            })

        await _checkpoint()
        self._advance(run_id, RunStatus.REVIEWING, RunStatus.FINALIZING, message="Finalizing reports")

    # ── FINALIZING ────────────────────────────────────────────────────

    async def _finalize(self, run_id) -> str:
        await self._checkpoint(run_id, RunStatus.FINALIZING)
        run = self._load_run(run_id)
        skip_ai = bool(self._progress.get(run_id).get("skip_ai_review"))
        stages = ReviewStages(self._db, None)

        for user in run["users"]:
            commits = load_commit_records(self._db, run["org_id"], [user], run["year"])
            units = load_unit_stats(self._db, run_id, user)
            summary: Optional[Dict[str, Any]] = None
            insights: List[Dict[str, Any]] = []
            if not skip_ai and commits:
                insights = repo_insights(stages.stage1_results(run_id, user))
                current = latest_reviews(self._db, run_id, user).get(4)
                summary = current["result"] if current else default_stage4()
            save_report(self._db, run_id, user, run["year"],
                        build_report_stats(commits, units, insights), summary)

        self._advance(run_id, RunStatus.FINALIZING, RunStatus.DONE,
                      message="Analysis complete", finished_at=datetime.utcnow())
        logger.info(f"Run {run_id}: done")
        return RunStatus.DONE.value
