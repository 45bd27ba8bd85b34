"""
End-to-end tests for the analysis runner on SQLite with fake VCS and LLM.

Tests cover:
- Full walk to the confirmation gate (a failing repo does not stop it)
- Confirmed review through to DONE with reports and stored diffs
- Skipping the AI review
- Stage 1 failures from diff fetching and users without commits
- Cancel and pause at checkpoints, resume after a pause, repeated RESUME passes
- Run-fatal VCS errors
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from commitloom.core.db import AiReview, Commit, CommitDiff, WorkUnit
from commitloom.core.errors import VCSError
from commitloom.core.jobs.engine import AnalysisEngine
from commitloom.core.jobs.models import AnalysisJob

from conftest import STAGE_RESPONSES, FakeLLM


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def worker():
    worker = MagicMock()
    worker.running = True
    worker.is_active.return_value = False
    return worker


@pytest.fixture
def engine(db, vcs, llm, settings, worker):
    return AnalysisEngine(db, vcs=vcs, llm_factory=lambda model: llm, settings=settings, worker=worker)


@pytest.fixture
def runner(engine):
    return engine.build_runner()


@pytest.fixture
def run_id(engine):
    return engine.start_analysis("acme", ["alice"], 2024, submit=False)["run_id"]


def _run(runner, run_id):
    return asyncio.run(runner.run(AnalysisJob(run_id)))


# ── Tests: Confirmation gate ─────────────────────────────────────────────


class TestUntilConfirmation:
    """Tests for the walk from QUEUED to AWAITING_AI_CONFIRMATION."""

    def test_stops_at_gate_despite_failed_repo(self, engine, runner, run_id, llm):
        assert _run(runner, run_id) == "AWAITING_AI_CONFIRMATION"

        status = engine.get_status(run_id)
        assert status["progress"]["total"] == 3
        assert status["progress"]["completed"] == 2
        assert status["progress"]["failed"] == 1
        assert status["progress"]["clustering_progress"]["total_work_units"] == 3
        assert status["progress"]["errors"][0]["repo"] == "acme/infra"
        assert status["started_at"] is not None
        assert llm.calls == []

    def test_clustering_progress_carries_prediction(self, engine, runner, run_id):
        _run(runner, run_id)

        clustering = engine.get_status(run_id)["progress"]["clustering_progress"]
        # 4 commits in 2 repos predict 3; reaching 3 units raises the estimate
        assert clustering["prediction"] == {"min": 3, "expected": 4, "max": 4}

    def test_ai_estimate(self, engine, runner, run_id, settings):
        _run(runner, run_id)

        estimate = engine.get_ai_estimate(run_id)

        assert estimate["sample_count"] == 3
        assert estimate["total_commits"] == 4
        assert estimate["total_work_units"] == 3
        assert estimate["model"] == settings.llm.model
        assert estimate["estimated_input_tokens"] == (
            3 * settings.review.est_input_tokens_per_unit + settings.review.est_input_tokens_per_user
        )
        assert estimate["estimated_cost_usd"] > 0

    def test_gate_is_idempotent(self, runner, run_id):
        _run(runner, run_id)
        assert _run(runner, run_id) == "AWAITING_AI_CONFIRMATION"


# ── Tests: Review and finalize ───────────────────────────────────────────


class TestReviewToDone:
    """Tests for confirmed and skipped AI review."""

    def test_confirmed_review(self, db, engine, runner, run_id, llm):
        _run(runner, run_id)
        engine.confirm(run_id, submit=False)

        assert _run(runner, run_id) == "DONE"
        assert llm.purposes() == ["stage1"] * 3 + ["stage2", "stage3", "stage4"]

        result = engine.get_report(run_id, "alice")
        report = result["report"]
        assert result["status"] == "DONE"
        assert report["ai_skipped"] is False
        assert report["grade"] == "B"
        assert report["overall_score"] == pytest.approx(7.4)
        assert report["stats"]["total_commits"] == 4
        assert report["stats"]["total_work_units"] == 3
        assert [i["repo"] for i in report["stats"]["repo_insights"]] == ["acme/api", "acme/web"]
        assert "✓ clear naming" in report["stats"]["repo_insights"][0]["key_insights"]
        assert sorted(result["stages"]) == ["2", "3", "4"]

        with db.get_session() as session:
            assert session.query(CommitDiff).count() == 4
            assert session.query(WorkUnit).filter(WorkUnit.is_sampled.is_(True)).count() == 3
        assert engine.get_status(run_id)["finished_at"] is not None

    def test_failed_stage_uses_default(self, engine, runner, run_id, llm):
        llm.responses["stage3"] = "not json at all"
        _run(runner, run_id)
        engine.confirm(run_id, submit=False)

        assert _run(runner, run_id) == "DONE"
        stages = engine.get_report(run_id, "alice")["stages"]
        assert stages["3"]["status"] == "failed"
        assert stages["4"]["status"] == "done"

    def test_diff_fetch_error_fails_stage1_only(self, db, engine, runner, run_id, vcs, llm):
        _run(runner, run_id)
        engine.confirm(run_id, submit=False)
        vcs.get_commit_detail = MagicMock(side_effect=ValueError("malformed patch header"))

        assert _run(runner, run_id) == "DONE"
        assert llm.purposes() == ["stage2", "stage3", "stage4"]
        with db.get_session() as session:
            statuses = [r.status for r in session.query(AiReview).filter(AiReview.stage == 1)]
        assert statuses == ["failed"] * 3

    def test_user_without_commits_skips_user_stages(self, engine, runner, llm):
        run_id = engine.start_analysis("acme", ["alice", "bob"], 2024, submit=False)["run_id"]
        _run(runner, run_id)
        engine.confirm(run_id, submit=False)

        assert _run(runner, run_id) == "DONE"
        assert llm.purposes() == ["stage1"] * 3 + ["stage2", "stage3", "stage4"]
        bob = engine.get_report(run_id, "bob")
        assert bob["report"]["stats"]["total_commits"] == 0
        assert bob["stages"] == {}

    def test_skip_ai_review(self, engine, runner, run_id, llm):
        _run(runner, run_id)
        engine.confirm(run_id, skip_ai_review=True, submit=False)

        assert _run(runner, run_id) == "DONE"
        report = engine.get_report(run_id, "alice")["report"]
        assert report["ai_skipped"] is True
        assert report["summary"] is None
        assert report["grade"] is None
        assert report["stats"]["total_commits"] == 4
        assert llm.calls == []


# ── Tests: Checkpoints ───────────────────────────────────────────────────


class TestCheckpoints:
    """Tests for cancel and pause landing between checkpoints."""

    def test_cancel_during_scan_is_preserved(self, engine, runner, run_id, vcs, settings):
        settings.scan.repo_concurrency = 1
        vcs.on_list_commits = lambda repo, author: engine.cancel(run_id)

        assert _run(runner, run_id) == "CANCELLED"

        status = engine.get_status(run_id)
        assert status["status"] == "CANCELLED"
        # The in-flight repo finishes, no further repo starts
        assert [call[0] for call in vcs.list_commits_calls] == ["acme/api"]

    def test_pause_during_review_then_resume(self, engine, runner, run_id, llm):
        paused = []

        def _pause_once(prompt):
            if not paused:
                paused.append(True)
                engine.pause(run_id)
            return STAGE_RESPONSES["stage1"]

        llm.responses["stage1"] = _pause_once
        _run(runner, run_id)
        engine.confirm(run_id, submit=False)

        assert _run(runner, run_id) == "PAUSED"
        assert llm.purposes() == ["stage1"]

        engine.resume(run_id)
        assert _run(runner, run_id) == "DONE"
        # Completed stage 1 work is not repeated
        assert llm.purposes() == ["stage1"] * 3 + ["stage2", "stage3", "stage4"]

    def test_resume_passes_keep_commit_and_unit_ids(self, db, engine, runner, run_id, vcs):
        def _ids():
            with db.get_session() as session:
                return (
                    {str(c.commit_id) for c in session.query(Commit)},
                    {str(u.work_unit_id) for u in session.query(WorkUnit)},
                )

        _run(runner, run_id)
        first = _ids()
        vcs.failing.clear()
        for _ in range(2):
            engine.cancel(run_id)
            engine.retry(run_id, "resume")
            assert _run(runner, run_id) == "AWAITING_AI_CONFIRMATION"
            assert _ids() == first


# ── Tests: Failures ──────────────────────────────────────────────────────


class TestFailures:
    """Tests for run-fatal errors."""

    def test_rejected_credentials_fail_the_run(self, engine, runner, run_id, vcs):
        vcs.list_repos_error = VCSError("Bad credentials", status_code=401)

        assert _run(runner, run_id) == "FAILED"
        status = engine.get_status(run_id)
        assert "credentials rejected" in status["error"]
        assert status["finished_at"] is not None

    def test_unknown_run(self, runner):
        assert _run(runner, "00000000-0000-0000-0000-000000000000") == "DELETED"

    def test_missing_llm_fails_review(self, db, vcs, settings, worker, run_id):
        engine = AnalysisEngine(db, vcs=vcs, llm_factory=lambda model: None, settings=settings, worker=worker)
        runner = engine.build_runner()
        _run(runner, run_id)
        engine.confirm(run_id, submit=False)

        assert _run(runner, run_id) == "FAILED"
        assert "no LLM client" in engine.get_status(run_id)["error"]
