"""Commit Scanner: fetch and persist one year of commits per (repo, user).

Pipeline per repository:
1. Mark the repo ``scanning`` in the progress document
2. For each target user: list commits in the year window, fetch file
   stats for each commit (bounded fan-out), upsert in batches
3. Record the repo as ``done`` / ``partial`` / ``failed`` with
   per-user sub-status

Failure isolation is at (repo, user) granularity: a user whose fetch
keeps failing is recorded as failed for that repo and everything else
proceeds. Blocking VCS calls and batch upserts run in worker threads.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence

import backoff
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..db import Commit, CommitFile, DatabaseManager, to_uuid
from ..errors import is_retryable
from ..jobs.models import RepoScanStatus
from ..vcs.base import CommitDetail, VCSClient
from .progress import ProgressStore

logger = logging.getLogger(__name__)


def year_window(year: int):
    """[Jan 1 00:00:00, Dec 31 23:59:59] of ``year`` as naive UTC."""
    return datetime(year, 1, 1), datetime(year, 12, 31, 23, 59, 59)


def configured_delays(delays: Sequence[float]) -> Iterator[Optional[float]]:
    """backoff wait generator: the configured delays, then the last one forever."""
    yield None  # backoff primes the generator before the first wait
    for delay in delays:
        yield delay
    last = delays[-1] if delays else 0.0
    while True:
        yield last


@dataclass
class RepoTarget:
    repo_id: str
    full_name: str


@dataclass
class UserScanResult:
    user_login: str
    commits: int = 0
    status: str = RepoScanStatus.DONE.value
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_login": self.user_login,
            "commits": self.commits,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class RepoScanResult:
    full_name: str
    status: str
    commits: int = 0
    users: List[UserScanResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_progress(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "commits": self.commits,
            "user_progress": [u.to_dict() for u in self.users],
            "error": self.error,
        }


def repo_status_from_users(users: Sequence[UserScanResult]) -> str:
    succeeded = sum(1 for u in users if u.status == RepoScanStatus.DONE.value)
    if users and succeeded == len(users):
        return RepoScanStatus.DONE.value
    if succeeded:
        return RepoScanStatus.PARTIAL.value
    return RepoScanStatus.FAILED.value


class CommitScanner:
    """Scan repositories concurrently for a run's target users.

    Usage:
        scanner = CommitScanner(db, vcs, ProgressStore(db))
        results = await scanner.scan_repos(run_id, targets, ["alice"], 2024)
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        vcs: VCSClient,
        progress: ProgressStore,
        repo_concurrency: int = 5,
        commit_concurrency: int = 10,
        batch_size: int = 100,
        user_retries: int = 3,
        retry_delays: Sequence[float] = (2.0, 4.0, 6.0),
    ):
        self._db = db_manager
        self._vcs = vcs
        self._progress = progress
        self.repo_concurrency = repo_concurrency
        self.commit_concurrency = commit_concurrency
        self.batch_size = batch_size
        self.user_retries = max(1, user_retries)
        self.retry_delays = list(retry_delays) or [0.0]

    @classmethod
    def from_settings(cls, db_manager, vcs, progress, scan_settings) -> "CommitScanner":
        return cls(
            db_manager, vcs, progress,
            repo_concurrency=scan_settings.repo_concurrency,
            commit_concurrency=scan_settings.commit_concurrency,
            batch_size=scan_settings.batch_size,
            user_retries=scan_settings.user_retries,
            retry_delays=scan_settings.retry_delays,
        )

    # ── Public API ────────────────────────────────────────────────────

    async def scan_repos(
        self,
        run_id: str,
        repos: List[RepoTarget],
        users: List[str],
        year: int,
        should_continue: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> List[RepoScanResult]:
        """Scan repos with bounded concurrency.

        ``should_continue`` is awaited before each repo starts; once it
        returns False no further repo is started (in-flight ones finish).
        """
        semaphore = asyncio.Semaphore(self.repo_concurrency)

        async def _bounded(repo: RepoTarget) -> Optional[RepoScanResult]:
            async with semaphore:
                if should_continue is not None and not await should_continue():
                    return None
                return await self.scan_repo(run_id, repo, users, year)

        results = await asyncio.gather(*(_bounded(r) for r in repos))
        done = [r for r in results if r is not None]
        logger.info(
            f"Run {run_id}: scanned {len(done)}/{len(repos)} repositories "
            f"({sum(1 for r in done if r.status == RepoScanStatus.FAILED.value)} failed)"
        )
        return done

    async def scan_repo(self, run_id: str, repo: RepoTarget, users: List[str], year: int) -> RepoScanResult:
        """Scan one repository for every target user."""
        self._progress.update_repo(run_id, repo.full_name, {
            "status": RepoScanStatus.SCANNING.value,
            "error": None,
        })

        try:
            user_results = []
            for user in users:
                user_results.append(await self._scan_user(repo, user, year))

            result = RepoScanResult(
                full_name=repo.full_name,
                status=repo_status_from_users(user_results),
                commits=sum(u.commits for u in user_results),
                users=user_results,
            )
            failed = [u for u in user_results if u.status == RepoScanStatus.FAILED.value]
            if failed:
                result.error = "; ".join(f"{u.user_login}: {u.error}" for u in failed)
        except Exception as e:
            logger.error(f"Repository scan failed for {repo.full_name}: {e}", exc_info=True)
            result = RepoScanResult(
                full_name=repo.full_name,
                status=RepoScanStatus.FAILED.value,
                error=str(e),
            )

        self._progress.update_repo(run_id, repo.full_name, result.to_progress())
        if result.status != RepoScanStatus.DONE.value:
            self._progress.append_error(run_id, {
                "phase": "scan",
                "repo": repo.full_name,
                "message": result.error,
            })
        return result

    # ── Per-user fetch with retry ─────────────────────────────────────

    async def _scan_user(self, repo: RepoTarget, user: str, year: int) -> UserScanResult:
        since, until = year_window(year)

        @backoff.on_exception(
            lambda: configured_delays(self.retry_delays),
            Exception,
            max_tries=self.user_retries,
            giveup=lambda e: not is_retryable(e),
            on_backoff=lambda details: self._on_retry(repo, user, details),
            jitter=None,
        )
        async def _fetch_user() -> int:
            refs = await asyncio.to_thread(
                self._vcs.list_commits, repo.full_name, user, since, until
            )
            details = await self._fetch_details(repo.full_name, [r.sha for r in refs])

            stored = 0
            for start in range(0, len(details), self.batch_size):
                stored += await asyncio.to_thread(
                    self.upsert_commits, repo.repo_id, user, details[start:start + self.batch_size]
                )
            return stored

        try:
            stored = await _fetch_user()
        except Exception as e:
            logger.error(f"Failed to collect commits for {user} in {repo.full_name}: {e}", exc_info=True)
            return UserScanResult(
                user_login=user,
                status=RepoScanStatus.FAILED.value,
                error=str(e) or type(e).__name__,
            )
        return UserScanResult(user_login=user, commits=stored)

    def _on_retry(self, repo: RepoTarget, user: str, details: dict) -> None:
        logger.warning(
            f"Fetching commits for {user} in {repo.full_name} failed "
            f"(attempt {details['tries']}/{self.user_retries}), retrying in {details['wait']}s: "
            f"{details.get('exception')}"
        )

    async def _fetch_details(self, repo_full_name: str, shas: List[str]) -> List[CommitDetail]:
        semaphore = asyncio.Semaphore(self.commit_concurrency)

        async def _one(sha: str) -> CommitDetail:
            async with semaphore:
                return await asyncio.to_thread(self._vcs.get_commit_detail, repo_full_name, sha)

        return list(await asyncio.gather(*(_one(sha) for sha in shas)))

    # ── Persistence ───────────────────────────────────────────────────

    def upsert_commits(self, repo_id, author_login: str, details: List[CommitDetail]) -> int:
        """Idempotent upsert on (repo_id, sha); each commit's file rows are replaced."""
        if not details:
            return 0

        repo_uuid = to_uuid(repo_id)
        now = datetime.utcnow()
        rows = [
            {
                "repo_id": repo_uuid,
                "sha": d.sha,
                "author_login": author_login,
                "author_email": d.author_email,
                "message": d.message or "",
                "committed_at": d.committed_at,
                "additions": d.additions,
                "deletions": d.deletions,
                "files_changed": len(d.files),
                "created_at": now,
                "updated_at": now,
            }
            for d in details
        ]

        insert = pg_insert if self._db.dialect == "postgresql" else sqlite_insert
        stmt = insert(Commit)
        stmt = stmt.on_conflict_do_update(
            index_elements=["repo_id", "sha"],
            set_={
                "author_email": stmt.excluded.author_email,
                "message": stmt.excluded.message,
                "committed_at": stmt.excluded.committed_at,
                "additions": stmt.excluded.additions,
                "deletions": stmt.excluded.deletions,
                "files_changed": stmt.excluded.files_changed,
                "updated_at": stmt.excluded.updated_at,
            },
        )

        with self._db.get_session() as session:
            session.execute(stmt, rows)

            id_by_sha = dict(session.execute(
                select(Commit.sha, Commit.commit_id).where(
                    Commit.repo_id == repo_uuid,
                    Commit.sha.in_([d.sha for d in details]),
                )
            ).all())

            session.execute(
                delete(CommitFile).where(CommitFile.commit_id.in_(list(id_by_sha.values())))
            )
            for d in details:
                seen = set()
                for f in d.files:
                    if f.path in seen:
                        continue
                    seen.add(f.path)
                    session.add(CommitFile(
                        commit_id=id_by_sha[d.sha],
                        path=f.path,
                        status=f.status or "modified",
                        additions=f.additions,
                        deletions=f.deletions,
                    ))
        return len(details)


def count_scoped_commits(db_manager: DatabaseManager, repo_id, users: List[str], year: int) -> int:
    """Stored commits of ``users`` in one repo and year."""
    since, until = year_window(year)
    with db_manager.get_session() as session:
        return session.execute(
            select(func.count(Commit.commit_id)).where(
                Commit.repo_id == to_uuid(repo_id),
                Commit.author_login.in_(users),
                Commit.committed_at >= since,
                Commit.committed_at <= until,
            )
        ).scalar_one()
