"""Analysis API routes: start, status, control, confirmation gate, interim and yearly reports."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ...core.errors import InvalidRunState, RunNotFound
from ..deps import get_analysis_engine
from ..schemas.analysis import ConfirmRequest, RetryRequest, StartAnalysisRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analysis"])


def _call(fn, *args, conflict_status: int = 400, **kwargs):
    """Run an engine operation, mapping domain errors to HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except RunNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidRunState as e:
        raise HTTPException(status_code=conflict_status, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/analysis", status_code=202)
async def start_analysis(body: StartAnalysisRequest, engine=Depends(get_analysis_engine)):
    return _call(
        engine.start_analysis, body.org, body.users, body.year, body.options,
        conflict_status=409,
    )


@router.get("/analysis")
async def list_runs(org: Optional[str] = None, engine=Depends(get_analysis_engine)):
    return engine.list_runs(org)


@router.get("/analysis/{run_id}/status")
async def get_status(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.get_status, run_id)


@router.post("/analysis/{run_id}/pause")
async def pause(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.pause, run_id)


@router.post("/analysis/{run_id}/resume")
async def resume(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.resume, run_id)


@router.post("/analysis/{run_id}/cancel")
async def cancel(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.cancel, run_id)


@router.post("/analysis/{run_id}/retry")
async def retry(run_id: str, body: RetryRequest = RetryRequest(), engine=Depends(get_analysis_engine)):
    return _call(engine.retry, run_id, body.mode)


@router.delete("/analysis/{run_id}")
async def delete(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.delete, run_id)


@router.get("/analysis/{run_id}/confirm-ai-review")
async def get_ai_estimate(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.get_ai_estimate, run_id)


@router.post("/analysis/{run_id}/confirm-ai-review")
async def confirm_ai_review(run_id: str, body: ConfirmRequest, engine=Depends(get_analysis_engine)):
    return _call(engine.confirm, run_id, body.skip_ai_review)


@router.get("/analysis/{run_id}/resume-state")
async def get_resume_state(run_id: str, engine=Depends(get_analysis_engine)):
    return _call(engine.get_resume_state, run_id)


@router.get("/analysis/{run_id}/reports/{user_login}")
async def get_report(run_id: str, user_login: str, engine=Depends(get_analysis_engine)):
    return _call(engine.get_report, run_id, user_login)


@router.get("/analysis/{run_id}/interim-report/{user_login}")
async def get_interim_report(run_id: str, user_login: str, engine=Depends(get_analysis_engine)):
    return _call(engine.get_interim_report, run_id, user_login, conflict_status=409)
