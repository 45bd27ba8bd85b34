"""
Tests for the commit scanner.

Tests cover:
- Per-repo status (done / partial / failed) and progress counters
- Failure isolation: a failing repo does not stop the others
- Retry of transient VCS errors only, on the configured delays
- Idempotent commit upsert
- Cooperative stop via should_continue
"""

import asyncio
from datetime import datetime

import pytest

from commitloom.core.db import Commit, CommitFile
from commitloom.core.errors import VCSError
from commitloom.core.scanner import ProgressStore
from commitloom.core.scanner.scanner import (
    CommitScanner,
    RepoTarget,
    configured_delays,
    count_scoped_commits,
    year_window,
)

from conftest import create_run, make_detail


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def run(db, vcs):
    run_id, repo_ids = create_run(db, vcs)
    ProgressStore(db).seed_repos(run_id, list(repo_ids))
    return run_id, repo_ids


@pytest.fixture
def scanner(db, vcs):
    return CommitScanner(db, vcs, ProgressStore(db), retry_delays=[0, 0, 0])


def _targets(repo_ids):
    return [RepoTarget(repo_id=rid, full_name=name) for name, rid in repo_ids.items()]


# ── Tests: Scanning ───────────────────────────────────────────────────────


class TestScanRepos:
    """Tests for CommitScanner.scan_repos."""

    def test_failing_repo_is_isolated(self, db, vcs, run, scanner):
        run_id, repo_ids = run

        results = asyncio.run(scanner.scan_repos(run_id, _targets(repo_ids), ["alice"], 2024))

        by_name = {r.full_name: r for r in results}
        assert by_name["acme/api"].status == "done"
        assert by_name["acme/api"].commits == 3
        assert by_name["acme/web"].status == "done"
        assert by_name["acme/infra"].status == "failed"
        assert "404" in by_name["acme/infra"].error

        progress = ProgressStore(db).get(run_id)
        assert progress["total"] == 3
        assert progress["completed"] == 2
        assert progress["failed"] == 1
        assert progress["repo_progress"]["acme/infra"]["user_progress"][0]["status"] == "failed"
        assert progress["errors"][0]["phase"] == "scan"
        assert progress["errors"][0]["repo"] == "acme/infra"

        # Non-transient errors are not retried
        assert vcs.list_commits_calls.count(("acme/infra", "alice")) == 1
        assert count_scoped_commits(db, repo_ids["acme/api"], ["alice"], 2024) == 3

    def test_partial_when_one_user_fails(self, db, vcs, run, scanner):
        run_id, repo_ids = run
        vcs.failing.clear()

        def _reject_bob(repo, author):
            if author == "bob":
                raise VCSError("403 for bob", status_code=403)

        vcs.on_list_commits = _reject_bob
        targets = [RepoTarget(repo_ids["acme/api"], "acme/api")]

        [result] = asyncio.run(scanner.scan_repos(run_id, targets, ["alice", "bob"], 2024))

        assert result.status == "partial"
        assert result.commits == 3
        assert [u.status for u in result.users] == ["done", "failed"]
        assert result.error.startswith("bob:")
        assert ProgressStore(db).get(run_id)["completed"] == 1

    def test_transient_errors_are_retried(self, db, vcs, run, scanner):
        run_id, repo_ids = run
        vcs.flaky["acme/api"] = 2
        targets = [RepoTarget(repo_ids["acme/api"], "acme/api")]

        [result] = asyncio.run(scanner.scan_repos(run_id, targets, ["alice"], 2024))

        assert result.status == "done"
        assert vcs.list_commits_calls.count(("acme/api", "alice")) == 3

    def test_retries_are_bounded(self, db, vcs, run, scanner):
        run_id, repo_ids = run
        vcs.flaky["acme/api"] = 10
        targets = [RepoTarget(repo_ids["acme/api"], "acme/api")]

        [result] = asyncio.run(scanner.scan_repos(run_id, targets, ["alice"], 2024))

        assert result.status == "failed"
        assert vcs.list_commits_calls.count(("acme/api", "alice")) == 3

    def test_should_continue_stops_new_repos(self, db, vcs, run, scanner):
        run_id, repo_ids = run

        async def _stop():
            return False

        results = asyncio.run(scanner.scan_repos(run_id, _targets(repo_ids), ["alice"], 2024, _stop))

        assert results == []
        assert vcs.list_commits_calls == []
        assert ProgressStore(db).get(run_id)["completed"] == 0


# ── Tests: Persistence ────────────────────────────────────────────────────


class TestUpsert:
    """Tests for CommitScanner.upsert_commits."""

    def test_upsert_is_idempotent(self, db, vcs, run, scanner):
        _, repo_ids = run
        details = vcs.commits["acme/api"]["alice"]

        scanner.upsert_commits(repo_ids["acme/api"], "alice", details)
        scanner.upsert_commits(repo_ids["acme/api"], "alice", details)

        with db.get_session() as session:
            assert session.query(Commit).count() == 3
            assert session.query(CommitFile).count() == 4

    def test_upsert_refreshes_facts(self, db, run, scanner):
        _, repo_ids = run
        at = datetime(2024, 2, 1, 12, 0)
        scanner.upsert_commits(repo_ids["acme/web"], "alice", [
            make_detail("c" * 40, "wip", at, [("a.py", 1, 0), ("b.py", 2, 0)]),
        ])
        scanner.upsert_commits(repo_ids["acme/web"], "alice", [
            make_detail("c" * 40, "feat: finished", at, [("a.py", 10, 1)]),
        ])

        with db.get_session() as session:
            commit = session.query(Commit).filter_by(sha="c" * 40).one()
            assert commit.message == "feat: finished"
            assert commit.additions == 10
            assert commit.files_changed == 1
            assert [f.path for f in commit.files] == ["a.py"]

    def test_empty_batch(self, run, scanner):
        _, repo_ids = run
        assert scanner.upsert_commits(repo_ids["acme/api"], "alice", []) == 0


def test_year_window_bounds():
    since, until = year_window(2024)
    assert since == datetime(2024, 1, 1)
    assert until == datetime(2024, 12, 31, 23, 59, 59)


def test_configured_delays_repeat_the_last_one():
    delays = configured_delays([2.0, 4.0, 6.0])
    assert next(delays) is None
    assert [next(delays) for _ in range(5)] == [2.0, 4.0, 6.0, 6.0, 6.0]
