"""GitHub REST adapter for the VCS contract.

Synchronous httpx client; the scanner runs calls in worker threads via
asyncio.to_thread. Pagination follows the Link header.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import httpx

from ..errors import VCSError
from .base import CommitDetail, CommitRef, FilePatch, RepoRef

logger = logging.getLogger(__name__)


def parse_timestamp(value: Optional[str]) -> datetime:
    """ISO-8601 GitHub timestamp → naive UTC datetime."""
    if not value:
        raise VCSError("Commit without timestamp")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _isoformat(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubClient:
    """Thin wrapper over api.github.com.

    Usage:
        client = GitHubClient(token=os.environ["GITHUB_TOKEN"])
        repos = client.list_repos("acme")
    """

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        per_page: int = 100,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._per_page = per_page
        self._client = httpx.Client(
            base_url=api_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "GitHubClient":
        gh = settings.github
        return cls(token=gh.token, api_url=gh.api_url, timeout=gh.timeout, per_page=gh.per_page)

    def close(self) -> None:
        self._client.close()

    # ── VCS contract ──────────────────────────────────────────────────

    def list_repos(self, org: str, include_archived: bool = False) -> List[RepoRef]:
        repos = []
        for item in self._paginate(f"/orgs/{org}/repos", {"type": "all"}):
            if item.get("archived") and not include_archived:
                continue
            repos.append(RepoRef(
                full_name=item["full_name"],
                name=item["name"],
                language=item.get("language"),
                is_archived=bool(item.get("archived")),
                default_branch=item.get("default_branch"),
            ))
        logger.info(f"Listed {len(repos)} repositories for {org}")
        return repos

    def list_commits(
        self,
        repo_full_name: str,
        author: str,
        since: datetime,
        until: datetime,
    ) -> List[CommitRef]:
        params = {"author": author, "since": _isoformat(since), "until": _isoformat(until)}
        commits = []
        for item in self._paginate(f"/repos/{repo_full_name}/commits", params):
            meta = item.get("commit") or {}
            author_meta = meta.get("author") or {}
            commits.append(CommitRef(
                sha=item["sha"],
                message=meta.get("message") or "",
                committed_at=parse_timestamp(author_meta.get("date")),
                author_login=(item.get("author") or {}).get("login") or author,
                author_email=author_meta.get("email"),
            ))
        return commits

    def get_commit_detail(self, repo_full_name: str, sha: str) -> CommitDetail:
        item = self._get(f"/repos/{repo_full_name}/commits/{sha}").json()
        meta = item.get("commit") or {}
        author_meta = meta.get("author") or {}
        stats = item.get("stats") or {}
        files = [
            FilePatch(
                path=f["filename"],
                status=f.get("status", "modified"),
                additions=int(f.get("additions", 0)),
                deletions=int(f.get("deletions", 0)),
                patch=f.get("patch"),
            )
            for f in item.get("files") or []
        ]
        return CommitDetail(
            sha=item["sha"],
            message=meta.get("message") or "",
            committed_at=parse_timestamp(author_meta.get("date")),
            additions=int(stats.get("additions", 0)),
            deletions=int(stats.get("deletions", 0)),
            files=files,
            author_login=(item.get("author") or {}).get("login"),
            author_email=author_meta.get("email"),
        )

    # ── HTTP helpers ──────────────────────────────────────────────────

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise VCSError(f"GitHub request failed: {path}: {e}") from e

        if response.status_code >= 400:
            raise VCSError(
                f"GitHub {response.status_code} for {path}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _paginate(self, path: str, params: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        query: Optional[Dict[str, Any]] = {**params, "per_page": self._per_page}
        url = path
        while url:
            response = self._get(url, query)
            yield from response.json()
            url = response.links.get("next", {}).get("url")
            # next link already carries the query string
            query = None
