"""
Tests for the background analysis worker.

Tests cover:
- Lifecycle (start / stop)
- Jobs are run through the runner on the worker loop
- A run is queued or executing at most once
- Runner crashes are recorded and release the run
"""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest

from commitloom.core.jobs.models import AnalysisJob
from commitloom.core.jobs.worker import AnalysisWorker


def _wait_until(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class BlockingRunner:
    """Runner double whose run() waits until released."""

    def __init__(self):
        self.release = threading.Event()
        self.jobs = []

    async def run(self, job):
        self.jobs.append(job)
        while not self.release.is_set():
            await asyncio.sleep(0.01)
        return "DONE"


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def runner():
    return BlockingRunner()


@pytest.fixture
def worker(runner):
    worker = AnalysisWorker(runner, max_concurrent=2, poll_interval=0.05)
    yield worker
    runner.release.set()
    worker.stop()


# ── Tests: Worker ─────────────────────────────────────────────────────────


class TestAnalysisWorker:
    """Tests for AnalysisWorker."""

    def test_start_and_stop(self, worker):
        worker.start()
        assert worker.running is True

        worker.stop()
        assert worker.running is False

    def test_submit_runs_job(self, worker, runner):
        runner.release.set()

        assert worker.submit(AnalysisJob("run-1")) is True

        assert _wait_until(lambda: not worker.is_active("run-1"))
        assert [j.run_id for j in runner.jobs] == ["run-1"]

    def test_submit_starts_worker_lazily(self, worker, runner):
        assert worker.running is False
        runner.release.set()

        worker.submit(AnalysisJob("run-1"))

        assert worker.running is True

    def test_duplicate_submit_is_rejected(self, worker, runner):
        worker.start()
        assert worker.submit(AnalysisJob("run-1")) is True
        assert _wait_until(lambda: len(runner.jobs) == 1)

        assert worker.submit(AnalysisJob("run-1")) is False
        assert worker.is_active("run-1") is True

        runner.release.set()
        assert _wait_until(lambda: not worker.is_active("run-1"))
        assert worker.submit(AnalysisJob("run-1")) is True

    def test_runner_crash_is_recorded(self):
        crashing = MagicMock()

        async def _boom(job):
            raise RuntimeError("boom")

        crashing.run = _boom
        worker = AnalysisWorker(crashing, poll_interval=0.05)
        try:
            worker.submit(AnalysisJob("run-9"))
            assert _wait_until(lambda: not worker.is_active("run-9"))
            assert worker.errors == [{"run_id": "run-9", "error": "boom"}]
        finally:
            worker.stop()
