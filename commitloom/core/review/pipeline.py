"""Typed review pipeline: stage 1 over sampled units, then stages 2-4 per user.

Each stage's input is the previous stage's normalized output. A failed
stage keeps its default result and the chain continues, so the report
can always be written.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .stages import ReviewStages, StageOutput, repo_insights, summarize_stage1

logger = logging.getLogger(__name__)

Checkpoint = Callable[[], Awaitable[None]]


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StageRecord:
    status: StageStatus = StageStatus.NOT_STARTED
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "error": self.error}


@dataclass
class PipelineState:
    """Per-user stage chain. ``stage1`` holds the aggregated summary."""
    user_login: str
    stages: Dict[int, StageRecord] = field(
        default_factory=lambda: {n: StageRecord() for n in (1, 2, 3, 4)}
    )
    repo_insights: List[Dict[str, Any]] = field(default_factory=list)

    def start(self, stage: int) -> None:
        self.stages[stage].status = StageStatus.RUNNING

    def finish(self, stage: int, output: Dict[str, Any], error: Optional[str] = None) -> None:
        record = self.stages[stage]
        record.output = output
        record.error = error
        record.status = StageStatus.FAILED if error else StageStatus.DONE

    def finish_with(self, stage: int, result: StageOutput) -> Dict[str, Any]:
        self.finish(stage, result.result, result.error if result.failed else None)
        return result.result

    def output(self, stage: int) -> Dict[str, Any]:
        return self.stages[stage].output or {}

    @property
    def final(self) -> Optional[Dict[str, Any]]:
        return self.stages[4].output

    def to_dict(self) -> Dict[str, Any]:
        return {str(n): record.to_dict() for n, record in self.stages.items()}


class ReviewPipeline:
    """Drive the stages with cooperative checkpoints.

    Usage:
        pipeline = ReviewPipeline(stages, stage1_delay=0.5)
        await pipeline.review_units(run_id, unit_ids, checkpoint)
        state = await pipeline.run_user(run_id, "alice", 2024, metrics, None, checkpoint)
    """

    def __init__(self, stages: ReviewStages, stage1_delay: float = 0.5):
        self._stages = stages
        self.stage1_delay = stage1_delay

    async def review_units(self, run_id, unit_ids: List[str], checkpoint: Checkpoint) -> Dict[str, int]:
        """Stage 1, sequential; units with an existing review are skipped."""
        done = await asyncio.to_thread(self._stages.reviewed_unit_ids, run_id)
        pending = [u for u in unit_ids if u not in done]
        counts = {"reviewed": 0, "failed": 0, "skipped": len(unit_ids) - len(pending)}

        for index, unit_id in enumerate(pending):
            await checkpoint()
            if index and self.stage1_delay:
                await asyncio.sleep(self.stage1_delay)
            output = await asyncio.to_thread(self._stages.review_unit, run_id, unit_id)
            counts["failed" if output.failed else "reviewed"] += 1

        logger.info(
            f"Run {run_id}: stage 1 reviewed {counts['reviewed']} units "
            f"({counts['failed']} failed, {counts['skipped']} already reviewed)"
        )
        return counts

    async def run_user(
        self,
        run_id,
        user_login: str,
        year: int,
        metrics: Dict[str, Any],
        previous_summary: Optional[Dict[str, Any]],
        checkpoint: Checkpoint,
    ) -> PipelineState:
        state = PipelineState(user_login=user_login)

        state.start(1)
        by_repo = await asyncio.to_thread(self._stages.stage1_results, run_id, user_login)
        results = [r for repo_results in by_repo.values() for r in repo_results]
        summary = summarize_stage1(results)
        state.repo_insights = repo_insights(by_repo)
        state.finish(1, summary)

        await checkpoint()
        state.start(2)
        stage2 = state.finish_with(2, await asyncio.to_thread(
            self._stages.run_stage2, run_id, user_login, year, summary, metrics,
        ))

        await checkpoint()
        state.start(3)
        stage3 = state.finish_with(3, await asyncio.to_thread(
            self._stages.run_stage3, run_id, user_login, year, summary, stage2, metrics,
        ))

        await checkpoint()
        state.start(4)
        state.finish_with(4, await asyncio.to_thread(
            self._stages.run_stage4, run_id, user_login, year, summary, stage2, stage3,
            metrics, previous_summary,
        ))

        failed = [n for n, r in state.stages.items() if r.status == StageStatus.FAILED]
        if failed:
            logger.warning(f"Run {run_id}: {user_login} review used defaults for stages {failed}")
        return state
