from .base import CommitDetail, CommitRef, FilePatch, RepoRef, VCSClient
from .github import GitHubClient

__all__ = ["CommitDetail", "CommitRef", "FilePatch", "GitHubClient", "RepoRef", "VCSClient"]
