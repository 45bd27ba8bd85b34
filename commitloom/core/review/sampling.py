"""Sampling Engine: pick representative work units per repository.

Per repository:
- Heuristic path: at most ``heuristic_threshold`` units, take them all
  (capped at ``max_samples_per_repo``), no LLM call
- AI path: larger repos are batched (``batch_size`` repos per call); the
  model picks ids from a compact summary, the ids are validated against
  the repo's real units, and any missing quota is backfilled by impact
- Fallback: if a batch call fails outright, each repo in it gets the
  top-impact units

Every repository with at least one unit ends with between 1 and
``max_samples_per_repo`` samples.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select

from ..db import Commit, DatabaseManager, Repository, SamplingResult, WorkUnit, WorkUnitCommit, to_uuid
from ..errors import LLMError, ResponseParseError
from .client import LLMClient
from .parsing import extract_json, normalize_sampling
from .prompts import SAMPLING_SYSTEM_PROMPT, build_sampling_prompt

logger = logging.getLogger(__name__)

SAMPLING_MAX_TOKENS = 2048
MESSAGE_PREVIEW_CHARS = 80

_CATEGORY_BY_WORK_TYPE = {
    "bugfix": "bug_fix",
    "refactor": "quality",
    "docs": "quality",
    "test": "quality",
}


def category_for_work_type(work_type: str) -> str:
    return _CATEGORY_BY_WORK_TYPE.get(work_type, "feature")


@dataclass
class SamplingConfig:
    heuristic_threshold: int = 5
    max_samples_per_repo: int = 5
    batch_size: int = 5

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SamplingConfig":
        data = data or {}
        defaults = cls()
        return cls(
            heuristic_threshold=int(data.get("heuristic_threshold", defaults.heuristic_threshold)),
            max_samples_per_repo=max(1, int(data.get("max_samples_per_repo", defaults.max_samples_per_repo))),
            batch_size=max(1, int(data.get("batch_size", defaults.batch_size))),
        )


@dataclass
class UnitCandidate:
    """What sampling needs to know about a persisted work unit."""
    work_unit_id: str
    repo: str
    work_type: str
    impact_score: float
    commit_count: int
    additions: int = 0
    deletions: int = 0
    primary_paths: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


@dataclass
class Selection:
    work_unit_id: str
    reason: str
    category: str
    method: str          # heuristic | ai | backfill | fallback

    def to_dict(self) -> Dict[str, str]:
        return {
            "work_unit_id": self.work_unit_id,
            "reason": self.reason,
            "category": self.category,
            "method": self.method,
        }


@dataclass
class SamplingOutcome:
    selections: List[Selection] = field(default_factory=list)
    repo_summaries: List[Dict[str, Any]] = field(default_factory=list)
    used_ai: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def selected_ids(self) -> List[str]:
        return [s.work_unit_id for s in self.selections]


def compact_unit_summary(unit: UnitCandidate) -> Dict[str, Any]:
    """The per-unit view the model chooses from."""
    return {
        "id": unit.work_unit_id,
        "type": unit.work_type,
        "impact": unit.impact_score,
        "start": unit.start_at.date().isoformat() if unit.start_at else None,
        "end": unit.end_at.date().isoformat() if unit.end_at else None,
        "commits": unit.commit_count,
        "loc": f"+{unit.additions}/-{unit.deletions}",
        "paths": unit.primary_paths[:3],
        "messages": [
            (m or "").split("\n", 1)[0][:MESSAGE_PREVIEW_CHARS] for m in unit.messages[:3]
        ],
    }


def by_impact(units: List[UnitCandidate]) -> List[UnitCandidate]:
    """Highest impact first; ties by start time then id for determinism."""
    return sorted(
        units,
        key=lambda u: (-u.impact_score, u.start_at or datetime.min, u.work_unit_id),
    )


def estimate_sample_count(units_per_repo: Dict[str, int], config: Optional[SamplingConfig] = None) -> int:
    """Samples a pass will select, before running it."""
    cfg = config or SamplingConfig()
    return sum(min(count, cfg.max_samples_per_repo) for count in units_per_repo.values() if count > 0)


class SamplingEngine:
    """Select work units to review.

    Usage:
        engine = SamplingEngine(llm_client, SamplingConfig())
        outcome = engine.sample(candidates)
    """

    def __init__(self, llm: Optional[LLMClient] = None, config: Optional[SamplingConfig] = None):
        self._llm = llm
        self.config = config or SamplingConfig()

    def sample(self, units: List[UnitCandidate]) -> SamplingOutcome:
        outcome = SamplingOutcome()
        by_repo: Dict[str, List[UnitCandidate]] = {}
        for unit in units:
            by_repo.setdefault(unit.repo, []).append(unit)

        ai_repos: List[Tuple[str, List[UnitCandidate]]] = []
        for repo, repo_units in by_repo.items():
            if len(repo_units) <= self.config.heuristic_threshold:
                picked = self._select_heuristic(repo_units)
                outcome.selections.extend(picked)
                outcome.repo_summaries.append(self._summarize(
                    repo, repo_units, picked, "heuristic",
                    f"{len(repo_units)} work units, at or below the threshold; selected by impact",
                ))
            else:
                ai_repos.append((repo, repo_units))

        size = self.config.batch_size
        for start in range(0, len(ai_repos), size):
            self._sample_batch(ai_repos[start:start + size], outcome)

        logger.info(
            f"Sampled {len(outcome.selections)} of {len(units)} work units "
            f"across {len(by_repo)} repositories (AI used: {outcome.used_ai})"
        )
        return outcome

    # ── Selection strategies ──────────────────────────────────────────

    def _select_heuristic(self, units: List[UnitCandidate]) -> List[Selection]:
        return [
            Selection(
                work_unit_id=u.work_unit_id,
                reason=f"{u.work_type} work, impact {u.impact_score}",
                category=category_for_work_type(u.work_type),
                method="heuristic",
            )
            for u in by_impact(units)[:self.config.max_samples_per_repo]
        ]

    def _select_top_impact(self, units: List[UnitCandidate], exclude=(), method: str = "fallback",
                           limit: Optional[int] = None) -> List[Selection]:
        limit = self.config.max_samples_per_repo if limit is None else limit
        chosen = [u for u in by_impact(units) if u.work_unit_id not in exclude][:limit]
        return [
            Selection(
                work_unit_id=u.work_unit_id,
                reason=f"High impact score ({u.impact_score})",
                category=category_for_work_type(u.work_type),
                method=method,
            )
            for u in chosen
        ]

    def _sample_batch(self, batch: List[Tuple[str, List[UnitCandidate]]], outcome: SamplingOutcome) -> None:
        if self._llm is None:
            for repo, units in batch:
                picked = self._select_top_impact(units)
                outcome.selections.extend(picked)
                outcome.repo_summaries.append(self._summarize(
                    repo, units, picked, "fallback", "No LLM configured; selected by impact",
                ))
            return

        prompt = build_sampling_prompt(
            [{"repo": repo, "units": [compact_unit_summary(u) for u in units]} for repo, units in batch],
            self.config.max_samples_per_repo,
        )
        try:
            result = self._llm.complete(
                SAMPLING_SYSTEM_PROMPT, prompt,
                max_tokens=SAMPLING_MAX_TOKENS, purpose="sampling",
            )
            ai_selections = normalize_sampling(extract_json(result.text))
        except (LLMError, ResponseParseError) as e:
            logger.warning(
                f"AI sampling failed for {len(batch)} repositories, using impact fallback: {e}"
            )
            for repo, units in batch:
                picked = self._select_top_impact(units)
                outcome.selections.extend(picked)
                outcome.repo_summaries.append(self._summarize(
                    repo, units, picked, "fallback", "AI selection failed; selected by impact",
                ))
            return

        outcome.used_ai = True
        outcome.input_tokens += result.input_tokens
        outcome.output_tokens += result.output_tokens
        outcome.cost_usd = round(outcome.cost_usd + result.cost_usd, 4)

        for repo, units in batch:
            picked = self._validate(units, ai_selections)
            backfill = self._select_top_impact(
                units,
                exclude={s.work_unit_id for s in picked},
                method="backfill",
                limit=self.config.max_samples_per_repo - len(picked),
            )
            selections = picked + backfill
            outcome.selections.extend(selections)
            outcome.repo_summaries.append(self._summarize(
                repo, units, selections, "ai",
                f"AI selected {len(picked)}, {len(backfill)} backfilled by impact",
            ))

    def _validate(self, units: List[UnitCandidate], ai_selections: List[Dict[str, str]]) -> List[Selection]:
        """AI picks whose ids belong to this repo, deduplicated and capped."""
        known = {u.work_unit_id for u in units}
        picked: List[Selection] = []
        seen = set()
        for item in ai_selections:
            unit_id = item["work_unit_id"]
            if unit_id not in known or unit_id in seen:
                continue
            seen.add(unit_id)
            picked.append(Selection(
                work_unit_id=unit_id,
                reason=item["reason"],
                category=item["category"],
                method="ai",
            ))
        return picked[:self.config.max_samples_per_repo]

    # ── Summaries ─────────────────────────────────────────────────────

    @staticmethod
    def _summarize(repo: str, units: List[UnitCandidate], picked: List[Selection],
                   method: str, reason: str) -> Dict[str, Any]:
        return {
            "repo": repo,
            "total_work_units": len(units),
            "sampled": len(picked),
            "avg_impact": round(sum(u.impact_score for u in units) / len(units), 2) if units else 0.0,
            "work_type_distribution": dict(Counter(u.work_type for u in units)),
            "sampling_reason": reason,
            "method": method,
        }


# ── Persistence ─────────────────────────────────────────────────────────


def load_candidates(db_manager: DatabaseManager, run_id, user_login: Optional[str] = None) -> List[UnitCandidate]:
    """Work units of a run (optionally one user) as sampling candidates."""
    rid = to_uuid(run_id)
    with db_manager.get_session() as session:
        query = (
            select(WorkUnit, Repository.full_name)
            .join(Repository, Repository.repo_id == WorkUnit.repo_id)
            .where(WorkUnit.run_id == rid)
        )
        if user_login is not None:
            query = query.where(WorkUnit.user_login == user_login)
        rows = session.execute(query).all()

        messages: Dict[Any, List[str]] = {}
        for unit_id, message in session.execute(
            select(WorkUnitCommit.work_unit_id, Commit.message)
            .join(Commit, Commit.commit_id == WorkUnitCommit.commit_id)
            .where(WorkUnitCommit.run_id == rid)
            .order_by(WorkUnitCommit.work_unit_id, WorkUnitCommit.order_index)
        ):
            messages.setdefault(unit_id, []).append(message)

        return [
            UnitCandidate(
                work_unit_id=str(unit.work_unit_id),
                repo=full_name,
                work_type=unit.work_type,
                impact_score=unit.impact_score,
                commit_count=unit.commit_count,
                additions=unit.additions,
                deletions=unit.deletions,
                primary_paths=list(unit.primary_paths or []),
                messages=messages.get(unit.work_unit_id, []),
                start_at=unit.start_at,
                end_at=unit.end_at,
            )
            for unit, full_name in rows
        ]


def save_sampling(db_manager: DatabaseManager, run_id, outcome: SamplingOutcome,
                  user_login: Optional[str] = None) -> str:
    """Append a SamplingResult and flag the selected units. Returns its id."""
    rid = to_uuid(run_id)
    by_id = {s.work_unit_id: s for s in outcome.selections}

    with db_manager.get_session() as session:
        query = select(WorkUnit).where(WorkUnit.run_id == rid)
        if user_login is not None:
            query = query.where(WorkUnit.user_login == user_login)
        for unit in session.execute(query).scalars():
            selection = by_id.get(str(unit.work_unit_id))
            unit.is_sampled = selection is not None
            unit.sampling_reason = selection.reason if selection else None
            unit.sampling_category = selection.category if selection else None

        record = SamplingResult(
            run_id=rid,
            user_login=user_login,
            used_ai=outcome.used_ai,
            selected_ids=outcome.selected_ids,
            selections=[s.to_dict() for s in outcome.selections],
            repo_summaries=outcome.repo_summaries,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            cost_usd=outcome.cost_usd,
        )
        session.add(record)
        session.flush()
        return str(record.sampling_id)
