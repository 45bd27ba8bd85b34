"""
SQLAlchemy ORM Models for CommitLoom

Commit analysis models:
- Organization: VCS organization with per-org impact settings
- Repository: Repositories discovered during a scan
- Commit, CommitFile: Immutable commit facts, upserted by (repo_id, sha)
- CommitDiff: Assembled diff text, fetched lazily for sampled work
- AnalysisRun: One annual analysis job (status + progress document)
- WorkUnit, WorkUnitCommit: Clustered commits owned by a run
- AiReview: Append-only stage results (stage 1-4), versioned by prompt
- SamplingResult: Append-only record of each sampling pass
- YearlyReport: Final per-user report of a run
"""

from sqlalchemy import (
    Column, String, Integer, Float, Text, TIMESTAMP, ForeignKey, JSON,
    Index, TypeDecorator, Boolean, UniqueConstraint,
)
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.dialects.postgresql import UUID as PostgreSQL_UUID, JSONB
import uuid
from datetime import datetime

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# UUID type that works with both PostgreSQL and SQLite
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise stores as String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgreSQL_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


def to_uuid(value):
    """Coerce a str or UUID id to uuid.UUID."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


# =============================================================================
# Source Data
# =============================================================================

class Organization(Base):
    """VCS organization. ``settings`` may carry critical_paths/weights overrides."""
    __tablename__ = "organizations"

    org_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    login = Column(String(255), unique=True, nullable=False)
    name = Column(String(255))
    installation_id = Column(String(100), nullable=True)
    settings = Column(JSONType, default=dict)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    repositories = relationship("Repository", back_populates="organization", cascade="all, delete-orphan")
    analysis_runs = relationship("AnalysisRun", back_populates="organization", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Organization(org_id={self.org_id}, login='{self.login}')>"


class Repository(Base):
    __tablename__ = "repositories"

    repo_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(), ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False)
    full_name = Column(String(512), unique=True, nullable=False)    # owner/name
    name = Column(String(255), nullable=False)
    language = Column(String(50))
    is_archived = Column(Boolean, default=False, nullable=False)
    default_branch = Column(String(255))
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    organization = relationship("Organization", back_populates="repositories")
    commits = relationship("Commit", back_populates="repository", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Repository(full_name='{self.full_name}')>"


class Commit(Base):
    """Immutable commit fact. Re-fetch is an upsert on (repo_id, sha)."""
    __tablename__ = "commits"
    __table_args__ = (
        UniqueConstraint('repo_id', 'sha', name='uq_commit_repo_sha'),
        Index('idx_commits_author_time', 'author_login', 'committed_at'),
    )

    commit_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    repo_id = Column(UUID(), ForeignKey("repositories.repo_id", ondelete="CASCADE"), nullable=False)
    sha = Column(String(40), nullable=False)
    author_login = Column(String(255), nullable=False)
    author_email = Column(String(255))
    message = Column(Text, nullable=False, default="")
    committed_at = Column(TIMESTAMP, nullable=False)                # naive UTC
    additions = Column(Integer, default=0, nullable=False)
    deletions = Column(Integer, default=0, nullable=False)
    files_changed = Column(Integer, default=0, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    repository = relationship("Repository", back_populates="commits")
    files = relationship("CommitFile", back_populates="commit", cascade="all, delete-orphan")
    diff = relationship("CommitDiff", back_populates="commit", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Commit(sha='{self.sha[:7]}', author='{self.author_login}')>"


class CommitFile(Base):
    __tablename__ = "commit_files"
    __table_args__ = (
        UniqueConstraint('commit_id', 'path', name='uq_commit_file_path'),
    )

    file_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    commit_id = Column(UUID(), ForeignKey("commits.commit_id", ondelete="CASCADE"), nullable=False)
    path = Column(String(1024), nullable=False)
    status = Column(String(20), default="modified")    # added, modified, removed, renamed
    additions = Column(Integer, default=0, nullable=False)
    deletions = Column(Integer, default=0, nullable=False)

    commit = relationship("Commit", back_populates="files")


class CommitDiff(Base):
    __tablename__ = "commit_diffs"

    commit_id = Column(UUID(), ForeignKey("commits.commit_id", ondelete="CASCADE"), primary_key=True)
    diff = Column(Text, nullable=False, default="")
    fetched_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    commit = relationship("Commit", back_populates="diff")


# =============================================================================
# Analysis Runs
# =============================================================================

class AnalysisRun(Base):
    """One annual analysis job.

    ``progress`` is the shared progress document; always write it through
    ProgressStore (read-modify-write), never by blind assignment.
    """
    __tablename__ = "analysis_runs"
    __table_args__ = (
        Index('idx_runs_org_year', 'org_id', 'year'),
    )

    run_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(), ForeignKey("organizations.org_id", ondelete="CASCADE"), nullable=False)
    target_users = Column(JSONType, nullable=False, default=list)
    year = Column(Integer, nullable=False)
    status = Column(String(40), default="QUEUED", nullable=False)
    progress = Column(JSONType, default=dict)
    error = Column(Text, nullable=True)
    options = Column(JSONType, default=dict)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    started_at = Column(TIMESTAMP, nullable=True)
    finished_at = Column(TIMESTAMP, nullable=True)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    organization = relationship("Organization", back_populates="analysis_runs")
    work_units = relationship("WorkUnit", back_populates="run", cascade="all, delete-orphan")
    reviews = relationship("AiReview", back_populates="run", cascade="all, delete-orphan")
    sampling_results = relationship("SamplingResult", back_populates="run", cascade="all, delete-orphan")
    reports = relationship("YearlyReport", back_populates="run", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<AnalysisRun(run_id={self.run_id}, year={self.year}, status='{self.status}')>"


class WorkUnit(Base):
    __tablename__ = "work_units"
    __table_args__ = (
        Index('idx_work_units_run_repo', 'run_id', 'repo_id'),
        Index('idx_work_units_run_user', 'run_id', 'user_login'),
    )

    work_unit_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    repo_id = Column(UUID(), ForeignKey("repositories.repo_id", ondelete="CASCADE"), nullable=False)
    user_login = Column(String(255), nullable=False)
    start_at = Column(TIMESTAMP, nullable=False)
    end_at = Column(TIMESTAMP, nullable=False)
    commit_count = Column(Integer, nullable=False)
    files_changed = Column(Integer, default=0, nullable=False)
    additions = Column(Integer, default=0, nullable=False)
    deletions = Column(Integer, default=0, nullable=False)
    primary_paths = Column(JSONType, default=list)
    work_type = Column(String(20), default="unknown", nullable=False)
    impact_score = Column(Float, default=0.0, nullable=False)
    impact_factors = Column(JSONType, default=dict)
    is_hotfix = Column(Boolean, default=False, nullable=False)
    has_revert = Column(Boolean, default=False, nullable=False)
    is_sampled = Column(Boolean, default=False, nullable=False)
    sampling_reason = Column(Text, nullable=True)
    sampling_category = Column(String(30), nullable=True)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    run = relationship("AnalysisRun", back_populates="work_units")
    repository = relationship("Repository")
    commits = relationship(
        "WorkUnitCommit", back_populates="work_unit",
        cascade="all, delete-orphan", order_by="WorkUnitCommit.order_index",
    )
    reviews = relationship("AiReview", back_populates="work_unit", cascade="all, delete-orphan")


class WorkUnitCommit(Base):
    """Ordered membership of a commit in a work unit.

    (run_id, commit_id) is unique: a commit belongs to one unit per run.
    """
    __tablename__ = "work_unit_commits"
    __table_args__ = (
        UniqueConstraint('run_id', 'commit_id', name='uq_work_unit_commit_run'),
    )

    work_unit_id = Column(UUID(), ForeignKey("work_units.work_unit_id", ondelete="CASCADE"), primary_key=True)
    commit_id = Column(UUID(), ForeignKey("commits.commit_id", ondelete="CASCADE"), primary_key=True)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False)

    work_unit = relationship("WorkUnit", back_populates="commits")
    commit = relationship("Commit")


# =============================================================================
# AI Results (append-only)
# =============================================================================

class AiReview(Base):
    """Versioned stage result. Never updated in place; latest created_at wins."""
    __tablename__ = "ai_reviews"
    __table_args__ = (
        Index('idx_ai_reviews_subject', 'run_id', 'subject_id', 'stage', 'created_at'),
    )

    review_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    work_unit_id = Column(UUID(), ForeignKey("work_units.work_unit_id", ondelete="CASCADE"), nullable=True)
    user_login = Column(String(255), nullable=False)
    stage = Column(Integer, nullable=False)                     # 1-4
    subject_type = Column(String(20), nullable=False)           # work_unit | user
    subject_id = Column(String(255), nullable=False)
    prompt_version = Column(String(20), nullable=False)
    model = Column(String(100))
    status = Column(String(20), default="done", nullable=False)  # done | failed (default substituted)
    result = Column(JSONType, nullable=False)
    input_tokens = Column(Integer, default=0, nullable=False)
    output_tokens = Column(Integer, default=0, nullable=False)
    cost_usd = Column(Float, default=0.0, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    run = relationship("AnalysisRun", back_populates="reviews")
    work_unit = relationship("WorkUnit", back_populates="reviews")


class SamplingResult(Base):
    __tablename__ = "sampling_results"

    sampling_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    user_login = Column(String(255), nullable=True)
    used_ai = Column(Boolean, default=False, nullable=False)
    selected_ids = Column(JSONType, default=list)
    selections = Column(JSONType, default=list)       # [{work_unit_id, reason, category, method}]
    repo_summaries = Column(JSONType, default=list)
    input_tokens = Column(Integer, default=0, nullable=False)
    output_tokens = Column(Integer, default=0, nullable=False)
    cost_usd = Column(Float, default=0.0, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)

    run = relationship("AnalysisRun", back_populates="sampling_results")


class YearlyReport(Base):
    __tablename__ = "yearly_reports"
    __table_args__ = (
        UniqueConstraint('run_id', 'user_login', name='uq_report_run_user'),
    )

    report_id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(), ForeignKey("analysis_runs.run_id", ondelete="CASCADE"), nullable=False)
    user_login = Column(String(255), nullable=False)
    year = Column(Integer, nullable=False)
    stats = Column(JSONType, default=dict)
    summary = Column(JSONType, nullable=True)          # stage 4 result, null when AI skipped
    overall_score = Column(Float, nullable=True)
    grade = Column(String(2), nullable=True)
    ai_skipped = Column(Boolean, default=False, nullable=False)
    created_at = Column(TIMESTAMP, default=datetime.utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    run = relationship("AnalysisRun", back_populates="reports")
