"""
Tests for the sampling engine.

Tests cover:
- Heuristic path for small repositories (no LLM call)
- AI path: id validation, deduplication and backfill by impact
- Fallback when the LLM fails or none is configured
- Sample count estimation
- Persistence of selections on work units
"""

from datetime import datetime, timedelta

import pytest

from commitloom.core.db import AnalysisRun, Organization, Repository, SamplingResult, WorkUnit, to_uuid
from commitloom.core.review.sampling import (
    SamplingConfig,
    SamplingEngine,
    UnitCandidate,
    by_impact,
    estimate_sample_count,
    load_candidates,
    save_sampling,
)

from conftest import FakeLLM, llm_failure


T0 = datetime(2024, 5, 1, 9, 0)


def _units(repo, count, prefix):
    """Units with distinct impact: u0 is the lowest, the last the highest."""
    return [
        UnitCandidate(
            work_unit_id=f"{prefix}{n}",
            repo=repo,
            work_type="bugfix" if n % 2 else "feature",
            impact_score=float(n + 1),
            commit_count=1,
            start_at=T0 + timedelta(days=n),
            messages=[f"change {n}"],
        )
        for n in range(count)
    ]


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def candidates():
    return _units("acme/a", 4, "a") + _units("acme/b", 12, "b") + _units("acme/c", 7, "c")


@pytest.fixture
def ai_llm():
    return FakeLLM({"sampling": {"repos": [
        {"repo": "acme/b", "selections": [
            {"work_unit_id": "b0", "reason": "first migration", "category": "architecture"},
            {"work_unit_id": "b3", "reason": "tricky fix", "category": "bug_fix"},
            {"work_unit_id": "b3", "reason": "duplicate", "category": "bug_fix"},
            {"work_unit_id": "zz", "reason": "made up", "category": "feature"},
            {"work_unit_id": "b5", "reason": "cleanup", "category": "quality"},
        ]},
    ]}})


# ── Tests: Engine ─────────────────────────────────────────────────────────


class TestSamplingEngine:
    """Tests for SamplingEngine.sample."""

    def test_small_repos_skip_the_llm(self):
        llm = FakeLLM()
        outcome = SamplingEngine(llm).sample(_units("acme/a", 4, "a"))

        assert llm.calls == []
        assert outcome.used_ai is False
        assert sorted(outcome.selected_ids) == ["a0", "a1", "a2", "a3"]
        assert {s.method for s in outcome.selections} == {"heuristic"}
        assert outcome.repo_summaries[0]["method"] == "heuristic"

    def test_ai_selection_with_backfill(self, candidates, ai_llm):
        outcome = SamplingEngine(ai_llm).sample(candidates)

        assert ai_llm.purposes() == ["sampling"]
        assert outcome.used_ai is True
        assert outcome.input_tokens == 100

        b = [s for s in outcome.selections if s.work_unit_id.startswith("b")]
        assert [s.work_unit_id for s in b if s.method == "ai"] == ["b0", "b3", "b5"]
        # Two highest-impact units fill the remaining quota
        assert [s.work_unit_id for s in b if s.method == "backfill"] == ["b11", "b10"]
        assert b[0].reason == "first migration"

        c = [s for s in outcome.selections if s.work_unit_id.startswith("c")]
        assert [s.work_unit_id for s in c] == ["c6", "c5", "c4", "c3", "c2"]
        assert {s.method for s in c} == {"backfill"}

        summaries = {s["repo"]: s for s in outcome.repo_summaries}
        assert summaries["acme/a"]["method"] == "heuristic"
        assert summaries["acme/b"]["method"] == "ai"
        assert summaries["acme/b"]["sampled"] == 5
        assert summaries["acme/b"]["total_work_units"] == 12

    def test_every_repo_gets_between_one_and_max(self, candidates, ai_llm):
        outcome = SamplingEngine(ai_llm).sample(candidates)

        for summary in outcome.repo_summaries:
            assert 1 <= summary["sampled"] <= 5
        assert len(set(outcome.selected_ids)) == len(outcome.selected_ids)

    def test_llm_failure_falls_back_to_impact(self, candidates):
        llm = FakeLLM({"sampling": llm_failure()})
        outcome = SamplingEngine(llm).sample(candidates)

        assert outcome.used_ai is False
        b = [s for s in outcome.selections if s.work_unit_id.startswith("b")]
        assert [s.work_unit_id for s in b] == ["b11", "b10", "b9", "b8", "b7"]
        assert {s.method for s in b} == {"fallback"}

    def test_unparseable_response_falls_back(self, candidates):
        llm = FakeLLM({"sampling": "I would pick the big ones."})
        outcome = SamplingEngine(llm).sample(candidates)

        summaries = {s["repo"]: s for s in outcome.repo_summaries}
        assert summaries["acme/b"]["method"] == "fallback"
        assert summaries["acme/c"]["sampled"] == 5

    def test_no_llm_configured(self, candidates):
        outcome = SamplingEngine(None).sample(candidates)

        assert len(outcome.selections) == 4 + 5 + 5
        assert outcome.used_ai is False

    def test_batches_repos_per_call(self):
        units = []
        for n in range(3):
            units += _units(f"acme/r{n}", 6, f"r{n}-")
        llm = FakeLLM({"sampling": {"selections": []}})

        SamplingEngine(llm, SamplingConfig(batch_size=2)).sample(units)

        assert llm.purposes() == ["sampling", "sampling"]

    def test_by_impact_is_deterministic(self):
        tied = [
            UnitCandidate("x2", "r", "feature", 5.0, 1, start_at=T0),
            UnitCandidate("x1", "r", "feature", 5.0, 1, start_at=T0),
            UnitCandidate("x0", "r", "feature", 9.0, 1, start_at=T0 + timedelta(days=1)),
        ]
        assert [u.work_unit_id for u in by_impact(tied)] == ["x0", "x1", "x2"]

    def test_estimate_sample_count(self):
        assert estimate_sample_count({"a": 4, "b": 12, "c": 0}) == 9
        assert estimate_sample_count({"a": 4}, SamplingConfig(max_samples_per_repo=2)) == 2

    def test_config_from_dict(self):
        config = SamplingConfig.from_dict({"max_samples_per_repo": 0, "batch_size": "3"})
        assert config.max_samples_per_repo == 1
        assert config.batch_size == 3
        assert config.heuristic_threshold == 5

    def test_config_ignores_unknown_keys(self):
        config = SamplingConfig.from_dict({"min_samples_per_repo": 3, "max_samples_per_repo": 2})
        assert config == SamplingConfig(max_samples_per_repo=2)


# ── Tests: Persistence ────────────────────────────────────────────────────


class TestSamplingPersistence:
    """Tests for load_candidates and save_sampling on a real schema."""

    @pytest.fixture
    def run_with_units(self, db):
        with db.get_session() as session:
            org = Organization(login="acme")
            session.add(org)
            session.flush()
            repo = Repository(org_id=org.org_id, full_name="acme/api", name="api")
            run = AnalysisRun(org_id=org.org_id, target_users=["alice", "bob"], year=2024)
            session.add_all([repo, run])
            session.flush()
            units = [
                WorkUnit(
                    run_id=run.run_id, repo_id=repo.repo_id, user_login=user,
                    start_at=T0 + timedelta(days=n), end_at=T0 + timedelta(days=n, hours=1),
                    commit_count=1, work_type="feature", impact_score=float(n),
                    primary_paths=["src/"],
                )
                for n, user in enumerate(["alice", "alice", "bob"])
            ]
            session.add_all(units)
            session.flush()
            return str(run.run_id), [str(u.work_unit_id) for u in units]

    def test_load_candidates_filters_by_user(self, db, run_with_units):
        run_id, unit_ids = run_with_units

        everyone = load_candidates(db, run_id)
        alice = load_candidates(db, run_id, "alice")

        assert len(everyone) == 3
        assert sorted(c.work_unit_id for c in alice) == sorted(unit_ids[:2])
        assert alice[0].repo == "acme/api"
        assert alice[0].primary_paths == ["src/"]

    def test_save_sampling_flags_units(self, db, run_with_units):
        run_id, unit_ids = run_with_units
        outcome = SamplingEngine(None).sample(load_candidates(db, run_id, "alice"))
        outcome.selections = outcome.selections[:1]

        sampling_id = save_sampling(db, run_id, outcome, user_login="alice")

        with db.get_session() as session:
            units = {str(u.work_unit_id): u for u in session.query(WorkUnit).all()}
            record = session.get(SamplingResult, to_uuid(sampling_id))
            assert record.user_login == "alice"
            assert record.selected_ids == outcome.selected_ids
            assert record.selections[0]["method"] == "heuristic"

        sampled = [uid for uid in unit_ids[:2] if units[uid].is_sampled]
        assert sampled == outcome.selected_ids
        assert units[sampled[0]].sampling_category == "feature"
        # Other users' units are untouched
        assert units[unit_ids[2]].is_sampled is False
