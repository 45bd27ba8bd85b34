"""Analysis job orchestration: run states, runner, background worker, engine.

Import the runner, worker and engine from their modules; this package
only re-exports the state enums so lower layers can depend on it.
"""

from .models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    AnalysisJob,
    RepoScanStatus,
    RestartMode,
    RunStatus,
)

__all__ = [
    "ACTIVE_STATES",
    "TERMINAL_STATES",
    "AnalysisJob",
    "RepoScanStatus",
    "RestartMode",
    "RunStatus",
]
