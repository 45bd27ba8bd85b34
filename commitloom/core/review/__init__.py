"""AI review: sampling, the four-stage pipeline and report assembly."""

from .client import AIClient, LLMClient, LLMResult, build_ai_client
from .pipeline import PipelineState, ReviewPipeline, StageStatus
from .sampling import SamplingConfig, SamplingEngine, UnitCandidate, category_for_work_type
from .stages import PROMPT_VERSION, ReviewStages, StageOutput

__all__ = [
    "AIClient",
    "LLMClient",
    "LLMResult",
    "PROMPT_VERSION",
    "PipelineState",
    "ReviewPipeline",
    "ReviewStages",
    "SamplingConfig",
    "SamplingEngine",
    "StageOutput",
    "StageStatus",
    "UnitCandidate",
    "build_ai_client",
    "category_for_work_type",
]
