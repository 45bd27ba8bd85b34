"""The four review stages.

Stage 1 reviews one sampled work unit from its (truncated) diffs; stages
2-4 run once per user on the aggregated output of the stage before.
Every call goes through ``_call``: LLM errors and unparseable responses
become the stage's normalized default with ``status="failed"``, so a
stage failure never aborts the run. Each result is appended as a new
AiReview row; the latest row per (stage, subject) is the current one.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select

from ..analysis.diff import assemble_diff, summarize_diff
from ..db import AiReview, Commit, CommitDiff, DatabaseManager, Repository, WorkUnit, WorkUnitCommit, to_uuid
from ..errors import LLMError, ResponseParseError, RunFatalError
from ..vcs.base import VCSClient
from .client import LLMClient
from .parsing import (
    default_stage1,
    default_stage2,
    default_stage3,
    default_stage4,
    extract_json,
    normalize_stage1,
    normalize_stage2,
    normalize_stage3,
    normalize_stage4,
)
from .prompts import (
    STAGE1_SYSTEM_PROMPT,
    STAGE2_SYSTEM_PROMPT,
    STAGE3_SYSTEM_PROMPT,
    STAGE4_SYSTEM_PROMPT,
    build_stage1_prompt,
    build_stage2_prompt,
    build_stage3_prompt,
    build_stage4_prompt,
)

logger = logging.getLogger(__name__)

PROMPT_VERSION = "v1.0.0"

STAGE_MAX_TOKENS = {1: 2048, 2: 2048, 3: 3000, 4: 4000}

INSIGHT_STRENGTH = "✓ "
INSIGHT_WEAKNESS = "△ "


@dataclass
class StageOutput:
    result: Dict[str, Any]
    status: str = "done"           # done | failed | skipped
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@dataclass
class UnitContext:
    work_unit_id: str
    user_login: str
    repo: str
    language: Optional[str]
    work_type: str
    commits: List[Tuple[Any, str, str]]        # (commit_id, sha, message)


# ── Aggregation (pure) ──────────────────────────────────────────────────


def _mean(values: List[float]) -> float:
    return round(sum(values) / len(values), 1) if values else 5.0


def _top(items: List[str], n: int) -> List[str]:
    return [item for item, _ in Counter(items).most_common(n)]


def summarize_stage1(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Means of the four scores and the five most frequent list items."""
    return {
        "reviewed_units": len(results),
        "avg_score": _mean([r["overall"] for r in results]),
        "avg_readability": _mean([r["readability"] for r in results]),
        "avg_maintainability": _mean([r["maintainability"] for r in results]),
        "avg_best_practices": _mean([r["best_practices"] for r in results]),
        "top_strengths": _top([s for r in results for s in r.get("strengths", [])], 5),
        "top_weaknesses": _top([s for r in results for s in r.get("weaknesses", [])], 5),
        "top_patterns": _top([s for r in results for s in r.get("patterns", [])], 5),
    }


def repo_insights(results_by_repo: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Per-repo average code quality and headline insights."""
    insights = []
    for repo, results in sorted(results_by_repo.items()):
        if not results:
            continue
        positives = _top(
            [s for r in results for s in r.get("strengths", []) + r.get("patterns", [])], 3
        )
        negatives = _top([s for r in results for s in r.get("weaknesses", [])], 2)
        insights.append({
            "repo": repo,
            "reviewed_units": len(results),
            "avg_code_quality": _mean([r["overall"] for r in results]),
            "key_insights": [INSIGHT_STRENGTH + p for p in positives]
                            + [INSIGHT_WEAKNESS + n for n in negatives],
        })
    return insights


# ── Stage runner ────────────────────────────────────────────────────────


class ReviewStages:
    """Execute and persist individual stage calls.

    Usage:
        stages = ReviewStages(db, llm_client, vcs_client)
        out = stages.review_unit(run_id, work_unit_id)        # stage 1
        out = stages.run_stage2(run_id, "alice", 2024, summary, metrics)
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        llm: Optional[LLMClient],
        vcs: Optional[VCSClient] = None,
        prompt_version: str = PROMPT_VERSION,
        diff_max_lines: int = 80,
        diff_max_chars_per_file: int = 1500,
        max_diff_commits_per_unit: int = 5,
    ):
        self._db = db_manager
        self._llm = llm
        self._vcs = vcs
        self.prompt_version = prompt_version
        self.diff_max_lines = diff_max_lines
        self.diff_max_chars_per_file = diff_max_chars_per_file
        self.max_diff_commits_per_unit = max_diff_commits_per_unit

    @classmethod
    def from_settings(cls, db_manager, llm, vcs, review_settings) -> "ReviewStages":
        return cls(
            db_manager, llm, vcs,
            prompt_version=review_settings.prompt_version,
            diff_max_lines=review_settings.diff_max_lines,
            diff_max_chars_per_file=review_settings.diff_max_chars_per_file,
            max_diff_commits_per_unit=review_settings.max_diff_commits_per_unit,
        )

    # ── LLM call with default substitution ────────────────────────────

    def _call(
        self,
        stage: int,
        system_prompt: str,
        user_prompt: str,
        normalize: Callable[[Any], Dict[str, Any]],
        default: Callable[[], Dict[str, Any]],
    ) -> StageOutput:
        if self._llm is None:
            raise RunFatalError("AI review requested but no LLM client is configured")

        try:
            result = self._llm.complete(
                system_prompt, user_prompt,
                max_tokens=STAGE_MAX_TOKENS[stage], purpose=f"stage{stage}",
            )
        except LLMError as e:
            logger.warning(f"Stage {stage} LLM call failed, using default: {e}")
            return StageOutput(result=default(), status="failed", error=str(e))

        output = StageOutput(
            result=default(),
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=result.cost_usd,
            model=result.model,
        )
        try:
            output.result = normalize(extract_json(result.text))
        except ResponseParseError as e:
            logger.warning(f"Stage {stage} response unparseable, using default: {e}")
            output.status = "failed"
            output.error = str(e)
        return output

    def _save(self, run_id, stage: int, subject_type: str, subject_id: str,
              user_login: str, output: StageOutput, work_unit_id=None) -> None:
        with self._db.get_session() as session:
            session.add(AiReview(
                run_id=to_uuid(run_id),
                work_unit_id=to_uuid(work_unit_id),
                user_login=user_login,
                stage=stage,
                subject_type=subject_type,
                subject_id=subject_id,
                prompt_version=self.prompt_version,
                model=output.model or getattr(self._llm, "model", None),
                status=output.status,
                result=output.result,
                input_tokens=output.input_tokens,
                output_tokens=output.output_tokens,
                cost_usd=output.cost_usd,
            ))

    # ── Stage 1 ───────────────────────────────────────────────────────

    def load_unit(self, work_unit_id) -> UnitContext:
        with self._db.get_session() as session:
            row = session.execute(
                select(WorkUnit, Repository.full_name, Repository.language)
                .join(Repository, Repository.repo_id == WorkUnit.repo_id)
                .where(WorkUnit.work_unit_id == to_uuid(work_unit_id))
            ).one()
            unit, repo, language = row
            commits = session.execute(
                select(Commit.commit_id, Commit.sha, Commit.message)
                .join(WorkUnitCommit, WorkUnitCommit.commit_id == Commit.commit_id)
                .where(WorkUnitCommit.work_unit_id == unit.work_unit_id)
                .order_by(WorkUnitCommit.order_index)
            ).all()
            return UnitContext(
                work_unit_id=str(unit.work_unit_id),
                user_login=unit.user_login,
                repo=repo,
                language=language,
                work_type=unit.work_type,
                commits=[tuple(c) for c in commits],
            )

    def unit_diffs(self, context: UnitContext) -> List[Tuple[str, str, str]]:
        """(sha, message, truncated diff) per commit; diffs fetched once and stored."""
        commits = context.commits[:self.max_diff_commits_per_unit]
        with self._db.get_session() as session:
            stored = {
                d.commit_id: d.diff
                for d in session.execute(
                    select(CommitDiff).where(CommitDiff.commit_id.in_([c[0] for c in commits]))
                ).scalars()
            }

        diffs = []
        for commit_id, sha, message in commits:
            diff = stored.get(commit_id)
            if diff is None and self._vcs is not None:
                detail = self._vcs.get_commit_detail(context.repo, sha)
                diff = assemble_diff((f.path, f.patch) for f in detail.files)
                with self._db.get_session() as session:
                    session.merge(CommitDiff(commit_id=commit_id, diff=diff, fetched_at=datetime.utcnow()))
            diffs.append((
                sha, message,
                summarize_diff(diff or "", self.diff_max_lines, self.diff_max_chars_per_file),
            ))
        return diffs

    def review_unit(self, run_id, work_unit_id) -> StageOutput:
        """Stage 1 for one work unit. Always appends a review row."""
        context = self.load_unit(work_unit_id)
        try:
            diffs = self.unit_diffs(context)
        except Exception as e:
            logger.warning(f"Diff fetch failed for work unit {work_unit_id}: {e}", exc_info=True)
            output = StageOutput(result=default_stage1(), status="failed", error=str(e))
        else:
            if not any(diff for _, _, diff in diffs):
                output = StageOutput(result=default_stage1(), status="skipped", error="no diffs")
            else:
                prompt = build_stage1_prompt(context.repo, context.language, context.work_type, diffs)
                output = self._call(1, STAGE1_SYSTEM_PROMPT, prompt, normalize_stage1, default_stage1)

        self._save(run_id, 1, "work_unit", context.work_unit_id, context.user_login,
                   output, work_unit_id=context.work_unit_id)
        return output

    def reviewed_unit_ids(self, run_id) -> set:
        """Units that already have a stage 1 row in this run."""
        with self._db.get_session() as session:
            return set(session.execute(
                select(AiReview.subject_id).where(
                    AiReview.run_id == to_uuid(run_id), AiReview.stage == 1,
                )
            ).scalars())

    def stage1_results(self, run_id, user_login: str) -> Dict[str, List[Dict[str, Any]]]:
        """Latest successful stage 1 result per unit, grouped by repo."""
        with self._db.get_session() as session:
            rows = session.execute(
                select(AiReview, Repository.full_name)
                .join(WorkUnit, WorkUnit.work_unit_id == AiReview.work_unit_id)
                .join(Repository, Repository.repo_id == WorkUnit.repo_id)
                .where(
                    AiReview.run_id == to_uuid(run_id),
                    AiReview.stage == 1,
                    AiReview.user_login == user_login,
                )
                .order_by(AiReview.created_at)
            ).all()

        latest: Dict[str, Tuple[str, AiReview]] = {}
        for review, repo in rows:
            latest[review.subject_id] = (repo, review)

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for repo, review in latest.values():
            if review.status == "done":
                grouped.setdefault(repo, []).append(review.result)
        return grouped

    # ── Stages 2-4 ────────────────────────────────────────────────────

    def run_stage2(self, run_id, user_login: str, year: int,
                   stage1_summary: Dict[str, Any], metrics: Dict[str, Any]) -> StageOutput:
        prompt = build_stage2_prompt(user_login, year, stage1_summary, metrics)
        output = self._call(2, STAGE2_SYSTEM_PROMPT, prompt, normalize_stage2, default_stage2)
        self._save(run_id, 2, "user", user_login, user_login, output)
        return output

    def run_stage3(self, run_id, user_login: str, year: int, stage1_summary: Dict[str, Any],
                   stage2: Dict[str, Any], metrics: Dict[str, Any]) -> StageOutput:
        prompt = build_stage3_prompt(user_login, year, stage1_summary, stage2, metrics)
        output = self._call(3, STAGE3_SYSTEM_PROMPT, prompt, normalize_stage3, default_stage3)
        self._save(run_id, 3, "user", user_login, user_login, output)
        return output

    def run_stage4(self, run_id, user_login: str, year: int, stage1_summary: Dict[str, Any],
                   stage2: Dict[str, Any], stage3: Dict[str, Any], metrics: Dict[str, Any],
                   previous_summary: Optional[Dict[str, Any]] = None) -> StageOutput:
        prompt = build_stage4_prompt(
            user_login, year, stage1_summary, stage2, stage3, metrics, previous_summary
        )
        output = self._call(4, STAGE4_SYSTEM_PROMPT, prompt, normalize_stage4, default_stage4)
        self._save(run_id, 4, "user", user_login, user_login, output)
        return output


def latest_reviews(db_manager: DatabaseManager, run_id, subject_id: str) -> Dict[int, Dict[str, Any]]:
    """Current (latest) review per stage for one subject."""
    with db_manager.get_session() as session:
        rows = session.execute(
            select(AiReview)
            .where(AiReview.run_id == to_uuid(run_id), AiReview.subject_id == subject_id)
            .order_by(AiReview.created_at)
        ).scalars().all()
        current: Dict[int, Dict[str, Any]] = {}
        for review in rows:
            current[review.stage] = {
                "stage": review.stage,
                "status": review.status,
                "result": review.result,
                "prompt_version": review.prompt_version,
                "model": review.model,
                "created_at": review.created_at.isoformat() if review.created_at else None,
            }
        return current
