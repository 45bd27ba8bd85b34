"""Analysis request schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StartAnalysisRequest(BaseModel):
    """Start analysis request."""
    org: str = Field(..., description="VCS organization login", min_length=1)
    users: List[str] = Field(..., description="Target user logins", min_length=1)
    year: int = Field(..., description="Calendar year to analyze")
    options: Optional[Dict[str, Any]] = Field(
        None,
        description="clustering/impact/sampling overrides, exclude_repos, include_archived, llm_model",
    )


class RetryRequest(BaseModel):
    """Retry request; mode is resume, retry or full."""
    mode: str = Field("resume", description="Restart mode")


class ConfirmRequest(BaseModel):
    """Confirmation gate answer."""
    skip_ai_review: bool = Field(False, description="Finalize without AI review")
