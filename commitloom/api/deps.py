"""FastAPI dependencies for CommitLoom.

Shared services are read from app state via Depends() injection.
"""

import logging

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


async def get_db_manager(request: Request):
    """Get DatabaseManager from app state."""
    return request.app.state.db_manager


async def get_analysis_engine(request: Request):
    """Get AnalysisEngine from app state."""
    engine = getattr(request.app.state, "analysis_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Analysis engine not available")
    return engine
