"""FastAPI application factory for CommitLoom.

Creates and configures the FastAPI app with sessions, CORS and the
analysis routes registered.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

logger = logging.getLogger(__name__)


def create_app(db_manager, engine, settings=None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        db_manager: DatabaseManager instance
        engine: AnalysisEngine instance
        settings: AppSettings (defaults to get_settings())

    Returns:
        Configured FastAPI application
    """
    if settings is None:
        from ..setting import get_settings
        settings = get_settings()

    app = FastAPI(
        title="CommitLoom API",
        description="Annual developer commit analysis",
        version="0.1.0",
    )

    app.add_middleware(SessionMiddleware, secret_key=settings.api.secret_key)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Store shared dependencies on app state
    app.state.db_manager = db_manager
    app.state.analysis_engine = engine

    from .routes.analysis import router as analysis_router

    app.include_router(analysis_router, prefix="/api")

    @app.get("/api/health")
    async def health_check():
        return {"status": "ok", "service": "commitloom"}

    logger.info("FastAPI app created with all routes registered")
    return app
