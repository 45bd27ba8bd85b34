"""Run states, restart modes and job contracts for the orchestrator."""

from dataclasses import dataclass
from enum import Enum


class RunStatus(str, Enum):
    """AnalysisRun.status values, in pipeline order."""
    QUEUED = "QUEUED"
    SCANNING_REPOS = "SCANNING_REPOS"
    SCANNING_COMMITS = "SCANNING_COMMITS"
    BUILDING_UNITS = "BUILDING_UNITS"
    AWAITING_AI_CONFIRMATION = "AWAITING_AI_CONFIRMATION"
    REVIEWING = "REVIEWING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"


TERMINAL_STATES = frozenset({RunStatus.DONE, RunStatus.FAILED, RunStatus.CANCELLED})

# Phases a worker is (or is about to be) executing
ACTIVE_STATES = frozenset({
    RunStatus.QUEUED,
    RunStatus.SCANNING_REPOS,
    RunStatus.SCANNING_COMMITS,
    RunStatus.BUILDING_UNITS,
    RunStatus.REVIEWING,
    RunStatus.FINALIZING,
})

PAUSABLE_STATES = ACTIVE_STATES
RETRYABLE_STATES = frozenset({RunStatus.FAILED, RunStatus.CANCELLED})


class RestartMode(str, Enum):
    RESUME = "resume"
    RETRY = "retry"
    FULL_RESTART = "full"


class RepoScanStatus(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    DONE = "done"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class AnalysisJob:
    """Queue entry for the background worker."""
    run_id: str
    mode: RestartMode = RestartMode.RESUME
