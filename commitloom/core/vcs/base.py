"""VCS collaborator contract.

The scanner only talks to a VCSClient; GitHubClient is the shipped
implementation and tests use in-memory fakes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol


@dataclass
class RepoRef:
    full_name: str
    name: str
    language: Optional[str] = None
    is_archived: bool = False
    default_branch: Optional[str] = None


@dataclass
class CommitRef:
    """A commit as listed by author/time window (no file stats yet)."""
    sha: str
    message: str
    committed_at: datetime
    author_login: Optional[str] = None
    author_email: Optional[str] = None


@dataclass
class FilePatch:
    path: str
    status: str = "modified"
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None


@dataclass
class CommitDetail:
    sha: str
    message: str
    committed_at: datetime
    additions: int = 0
    deletions: int = 0
    files: List[FilePatch] = field(default_factory=list)
    author_login: Optional[str] = None
    author_email: Optional[str] = None


class VCSClient(Protocol):
    """Errors are raised as VCSError carrying the HTTP status."""

    def list_repos(self, org: str, include_archived: bool = False) -> List[RepoRef]:
        ...

    def list_commits(
        self,
        repo_full_name: str,
        author: str,
        since: datetime,
        until: datetime,
    ) -> List[CommitRef]:
        ...

    def get_commit_detail(self, repo_full_name: str, sha: str) -> CommitDetail:
        ...
