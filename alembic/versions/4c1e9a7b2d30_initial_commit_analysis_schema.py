"""initial commit analysis schema

Revision ID: 4c1e9a7b2d30
Revises:
Create Date: 2026-10-18 09:12:44.118302

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4c1e9a7b2d30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('login', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('installation_id', sa.String(length=100), nullable=True),
        sa.Column('settings', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.PrimaryKeyConstraint('org_id'),
        sa.UniqueConstraint('login'),
    )
    op.create_table(
        'repositories',
        sa.Column('repo_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('full_name', sa.String(length=512), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('language', sa.String(length=50), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False),
        sa.Column('default_branch', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.org_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('repo_id'),
        sa.UniqueConstraint('full_name'),
    )
    op.create_table(
        'commits',
        sa.Column('commit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('repo_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sha', sa.String(length=40), nullable=False),
        sa.Column('author_login', sa.String(length=255), nullable=False),
        sa.Column('author_email', sa.String(length=255), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('committed_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('additions', sa.Integer(), nullable=False),
        sa.Column('deletions', sa.Integer(), nullable=False),
        sa.Column('files_changed', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['repo_id'], ['repositories.repo_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('commit_id'),
        sa.UniqueConstraint('repo_id', 'sha', name='uq_commit_repo_sha'),
    )
    op.create_index('idx_commits_author_time', 'commits', ['author_login', 'committed_at'], unique=False)
    op.create_table(
        'commit_files',
        sa.Column('file_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('commit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('path', sa.String(length=1024), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('additions', sa.Integer(), nullable=False),
        sa.Column('deletions', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['commit_id'], ['commits.commit_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('file_id'),
        sa.UniqueConstraint('commit_id', 'path', name='uq_commit_file_path'),
    )
    op.create_table(
        'commit_diffs',
        sa.Column('commit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('diff', sa.Text(), nullable=False),
        sa.Column('fetched_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['commit_id'], ['commits.commit_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('commit_id'),
    )
    op.create_table(
        'analysis_runs',
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('target_users', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=40), nullable=False),
        sa.Column('progress', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('options', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('finished_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['org_id'], ['organizations.org_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('run_id'),
    )
    op.create_index('idx_runs_org_year', 'analysis_runs', ['org_id', 'year'], unique=False)
    op.create_table(
        'work_units',
        sa.Column('work_unit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('repo_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_login', sa.String(length=255), nullable=False),
        sa.Column('start_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('end_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('commit_count', sa.Integer(), nullable=False),
        sa.Column('files_changed', sa.Integer(), nullable=False),
        sa.Column('additions', sa.Integer(), nullable=False),
        sa.Column('deletions', sa.Integer(), nullable=False),
        sa.Column('primary_paths', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('work_type', sa.String(length=20), nullable=False),
        sa.Column('impact_score', sa.Float(), nullable=False),
        sa.Column('impact_factors', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('is_hotfix', sa.Boolean(), nullable=False),
        sa.Column('has_revert', sa.Boolean(), nullable=False),
        sa.Column('is_sampled', sa.Boolean(), nullable=False),
        sa.Column('sampling_reason', sa.Text(), nullable=True),
        sa.Column('sampling_category', sa.String(length=30), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['repo_id'], ['repositories.repo_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('work_unit_id'),
    )
    op.create_index('idx_work_units_run_repo', 'work_units', ['run_id', 'repo_id'], unique=False)
    op.create_index('idx_work_units_run_user', 'work_units', ['run_id', 'user_login'], unique=False)
    op.create_table(
        'work_unit_commits',
        sa.Column('work_unit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('commit_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['work_unit_id'], ['work_units.work_unit_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['commit_id'], ['commits.commit_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('work_unit_id', 'commit_id'),
        sa.UniqueConstraint('run_id', 'commit_id', name='uq_work_unit_commit_run'),
    )
    op.create_table(
        'ai_reviews',
        sa.Column('review_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('work_unit_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('user_login', sa.String(length=255), nullable=False),
        sa.Column('stage', sa.Integer(), nullable=False),
        sa.Column('subject_type', sa.String(length=20), nullable=False),
        sa.Column('subject_id', sa.String(length=255), nullable=False),
        sa.Column('prompt_version', sa.String(length=20), nullable=False),
        sa.Column('model', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('result', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=False),
        sa.Column('output_tokens', sa.Integer(), nullable=False),
        sa.Column('cost_usd', sa.Float(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['work_unit_id'], ['work_units.work_unit_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('review_id'),
    )
    op.create_index(
        'idx_ai_reviews_subject', 'ai_reviews',
        ['run_id', 'subject_id', 'stage', 'created_at'], unique=False,
    )
    op.create_table(
        'sampling_results',
        sa.Column('sampling_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_login', sa.String(length=255), nullable=True),
        sa.Column('used_ai', sa.Boolean(), nullable=False),
        sa.Column('selected_ids', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('selections', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('repo_summaries', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=False),
        sa.Column('output_tokens', sa.Integer(), nullable=False),
        sa.Column('cost_usd', sa.Float(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('sampling_id'),
    )
    op.create_table(
        'yearly_reports',
        sa.Column('report_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('run_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_login', sa.String(length=255), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('stats', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('summary', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('overall_score', sa.Float(), nullable=True),
        sa.Column('grade', sa.String(length=2), nullable=True),
        sa.Column('ai_skipped', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
        sa.ForeignKeyConstraint(['run_id'], ['analysis_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('report_id'),
        sa.UniqueConstraint('run_id', 'user_login', name='uq_report_run_user'),
    )


def downgrade() -> None:
    op.drop_table('yearly_reports')
    op.drop_table('sampling_results')
    op.drop_index('idx_ai_reviews_subject', table_name='ai_reviews')
    op.drop_table('ai_reviews')
    op.drop_table('work_unit_commits')
    op.drop_index('idx_work_units_run_user', table_name='work_units')
    op.drop_index('idx_work_units_run_repo', table_name='work_units')
    op.drop_table('work_units')
    op.drop_index('idx_runs_org_year', table_name='analysis_runs')
    op.drop_table('analysis_runs')
    op.drop_table('commit_diffs')
    op.drop_table('commit_files')
    op.drop_index('idx_commits_author_time', table_name='commits')
    op.drop_table('commits')
    op.drop_table('repositories')
    op.drop_table('organizations')
