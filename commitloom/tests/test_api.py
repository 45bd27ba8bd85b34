"""
Tests for the analysis REST API.

Tests cover:
- Health check
- Start (202), duplicate (409), validation (400/422)
- Status, control and confirmation endpoints with error mapping
- Run listing, interim and yearly reports
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from commitloom.api.app import create_app
from commitloom.core.jobs.engine import AnalysisEngine
from commitloom.core.jobs.models import AnalysisJob

from conftest import FakeLLM

MISSING = "00000000-0000-0000-0000-000000000000"


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def engine(db, vcs, settings):
    worker = MagicMock()
    worker.running = True
    worker.is_active.return_value = False
    llm = FakeLLM()
    return AnalysisEngine(db, vcs=vcs, llm_factory=lambda model: llm, settings=settings, worker=worker)


@pytest.fixture
def client(db, engine, settings):
    return TestClient(create_app(db, engine, settings))


@pytest.fixture
def run_id(client):
    response = client.post("/api/analysis", json={"org": "acme", "users": ["alice"], "year": 2024})
    return response.json()["run_id"]


# ── Tests: Lifecycle endpoints ────────────────────────────────────────────


class TestAnalysisRoutes:
    """Tests for the analysis endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_start(self, client):
        response = client.post("/api/analysis", json={"org": "acme", "users": ["alice"], "year": 2024})

        assert response.status_code == 202
        assert response.json()["status"] == "QUEUED"

    def test_duplicate_start_conflicts(self, client, run_id):
        response = client.post("/api/analysis", json={"org": "acme", "users": ["alice"], "year": 2024})
        assert response.status_code == 409

    def test_invalid_year(self, client):
        response = client.post("/api/analysis", json={"org": "acme", "users": ["alice"], "year": 1990})
        assert response.status_code == 400

    def test_schema_validation(self, client):
        response = client.post("/api/analysis", json={"org": "acme", "users": [], "year": 2024})
        assert response.status_code == 422

    def test_status(self, client, run_id):
        response = client.get(f"/api/analysis/{run_id}/status")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "QUEUED"
        assert body["progress"]["repo_progress"] == []

    def test_unknown_run(self, client):
        assert client.get(f"/api/analysis/{MISSING}/status").status_code == 404
        assert client.post(f"/api/analysis/{MISSING}/cancel").status_code == 404

    def test_control_state_errors(self, client, run_id):
        assert client.post(f"/api/analysis/{run_id}/resume").status_code == 400
        assert client.post(f"/api/analysis/{run_id}/retry").status_code == 400
        assert client.delete(f"/api/analysis/{run_id}").status_code == 400

    def test_pause_cancel_delete(self, client, run_id):
        paused = client.post(f"/api/analysis/{run_id}/pause")
        assert paused.json()["paused_phase"] == "QUEUED"

        assert client.post(f"/api/analysis/{run_id}/cancel").json()["status"] == "CANCELLED"
        assert client.delete(f"/api/analysis/{run_id}").json()["deleted"] is True
        assert client.get(f"/api/analysis/{run_id}/status").status_code == 404

    def test_retry_cancelled_run(self, client, run_id):
        client.post(f"/api/analysis/{run_id}/cancel")

        response = client.post(f"/api/analysis/{run_id}/retry", json={"mode": "full"})

        assert response.status_code == 200
        assert response.json()["mode"] == "full"

    def test_retry_bad_mode(self, client, run_id):
        client.post(f"/api/analysis/{run_id}/cancel")
        response = client.post(f"/api/analysis/{run_id}/retry", json={"mode": "sideways"})
        assert response.status_code == 400

    def test_list_runs(self, client, run_id):
        runs = client.get("/api/analysis", params={"org": "acme"}).json()
        assert [r["run_id"] for r in runs] == [run_id]
        assert client.get("/api/analysis", params={"org": "nobody"}).json() == []


class TestConfirmationRoutes:
    """Tests for the confirmation gate and reports over HTTP."""

    @pytest.fixture
    def awaiting_run(self, engine, run_id):
        asyncio.run(engine.build_runner().run(AnalysisJob(run_id)))
        return run_id

    def test_estimate_and_confirm(self, client, awaiting_run):
        estimate = client.get(f"/api/analysis/{awaiting_run}/confirm-ai-review")
        assert estimate.status_code == 200
        assert estimate.json()["sample_count"] == 3

        confirmed = client.post(f"/api/analysis/{awaiting_run}/confirm-ai-review",
                                json={"skip_ai_review": True})
        assert confirmed.json()["status"] == "FINALIZING"

        again = client.post(f"/api/analysis/{awaiting_run}/confirm-ai-review", json={})
        assert again.status_code == 400

    def test_estimate_outside_gate(self, client, run_id):
        assert client.get(f"/api/analysis/{run_id}/confirm-ai-review").status_code == 400

    def test_interim_report_before_units(self, client, run_id):
        assert client.get(f"/api/analysis/{run_id}/interim-report/alice").status_code == 409

    def test_resume_state(self, client, awaiting_run):
        body = client.get(f"/api/analysis/{awaiting_run}/resume-state").json()
        assert body["failed_repos"] == ["acme/infra"]

    def test_report_routes(self, client, awaiting_run):
        assert client.get(f"/api/analysis/{awaiting_run}/reports/alice").json()["report"] is None
        assert client.get(f"/api/analysis/{awaiting_run}/reports/mallory").status_code == 400

    def test_interim_report_route(self, client, awaiting_run):
        body = client.get(f"/api/analysis/{awaiting_run}/interim-report/alice").json()
        assert body["summary"]["total_work_units"] == 3
        assert len(body["monthly_activity"]) == 12

        assert client.get(f"/api/analysis/{awaiting_run}/interim-report/mallory").status_code == 400
        assert client.get(f"/api/analysis/{MISSING}/interim-report/alice").status_code == 404
