"""
Database module for CommitLoom.

Exports:
- DatabaseManager: Database connection and session management
- get_database_manager: Factory function for DatabaseManager
- wait_for_db: Database availability checker with retry logic
- Models: Organization, Repository, Commit, CommitFile, CommitDiff,
  AnalysisRun, WorkUnit, WorkUnitCommit, AiReview, SamplingResult, YearlyReport
- Base: SQLAlchemy declarative base
"""

from .db import DatabaseManager, get_database_manager, wait_for_db
from .models import (
    Base,
    Organization,
    Repository,
    Commit,
    CommitFile,
    CommitDiff,
    AnalysisRun,
    WorkUnit,
    WorkUnitCommit,
    AiReview,
    SamplingResult,
    YearlyReport,
    to_uuid,
)

__all__ = [
    # Database management
    "DatabaseManager",
    "get_database_manager",
    "wait_for_db",

    # ORM models
    "Base",
    "Organization",
    "Repository",
    "Commit",
    "CommitFile",
    "CommitDiff",
    "AnalysisRun",
    "WorkUnit",
    "WorkUnitCommit",
    "AiReview",
    "SamplingResult",
    "YearlyReport",
    "to_uuid",
]
