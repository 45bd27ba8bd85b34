"""Load stored commits back into analysis records."""

from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from ..analysis.models import CommitRecord, FileChange
from ..db import Commit, DatabaseManager, Repository, to_uuid
from .scanner import year_window


def load_commit_records(
    db_manager: DatabaseManager,
    org_id,
    users: List[str],
    year: int,
    repo_ids: Optional[List] = None,
) -> List[CommitRecord]:
    """Commits of ``users`` in the org and year, with their file rows, by time."""
    since, until = year_window(year)
    with db_manager.get_session() as session:
        query = (
            select(Commit, Repository.full_name)
            .join(Repository, Repository.repo_id == Commit.repo_id)
            .options(selectinload(Commit.files))
            .where(
                Repository.org_id == to_uuid(org_id),
                Commit.author_login.in_(users),
                Commit.committed_at >= since,
                Commit.committed_at <= until,
            )
            .order_by(Commit.committed_at, Commit.sha)
        )
        if repo_ids is not None:
            query = query.where(Commit.repo_id.in_([to_uuid(r) for r in repo_ids]))

        return [
            CommitRecord(
                sha=commit.sha,
                message=commit.message,
                committed_at=commit.committed_at,
                additions=commit.additions,
                deletions=commit.deletions,
                files=[
                    FileChange(path=f.path, status=f.status, additions=f.additions, deletions=f.deletions)
                    for f in commit.files
                ],
                commit_id=str(commit.commit_id),
                author_login=commit.author_login,
                repo_full_name=full_name,
            )
            for commit, full_name in session.execute(query).all()
        ]


def load_recent_paths(db_manager: DatabaseManager, repo_id, since, until) -> List[List[str]]:
    """Touched paths per commit in one repo and window, all authors."""
    with db_manager.get_session() as session:
        commits = session.execute(
            select(Commit)
            .options(selectinload(Commit.files))
            .where(
                Commit.repo_id == to_uuid(repo_id),
                Commit.committed_at >= since,
                Commit.committed_at <= until,
            )
        ).scalars().all()
        return [[f.path for f in c.files] for c in commits]


def repo_languages(db_manager: DatabaseManager, org_id) -> Dict[str, Optional[str]]:
    with db_manager.get_session() as session:
        rows = session.execute(
            select(Repository.full_name, Repository.language)
            .where(Repository.org_id == to_uuid(org_id))
        ).all()
    return {name: language for name, language in rows}
