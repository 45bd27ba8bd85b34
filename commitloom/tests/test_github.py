"""
Tests for the GitHub REST adapter.

Tests cover:
- Repository listing with archived filtering and Link-header pagination
- Commit listing parameters and timestamp normalization
- Commit detail mapping (stats and file patches)
- HTTP errors surfaced as VCSError with status
"""

from datetime import datetime

import httpx
import pytest

from commitloom.core.errors import VCSError, is_retryable
from commitloom.core.vcs.github import GitHubClient, parse_timestamp


def _client(handler, **kwargs):
    return GitHubClient(token="t0ken", transport=httpx.MockTransport(handler), **kwargs)


# ── Tests: Listing ────────────────────────────────────────────────────────


class TestListing:
    """Tests for list_repos and list_commits."""

    def test_list_repos_paginates_and_skips_archived(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=[
                    {"full_name": "acme/old", "name": "old", "archived": True},
                ])
            return httpx.Response(
                200,
                json=[{"full_name": "acme/api", "name": "api", "language": "Python",
                       "default_branch": "main"}],
                headers={"Link": '<https://api.github.com/orgs/acme/repos?type=all&page=2>; rel="next"'},
            )

        repos = _client(handler).list_repos("acme")

        assert [r.full_name for r in repos] == ["acme/api"]
        assert repos[0].language == "Python"
        assert len(seen) == 2
        assert seen[0].headers["Authorization"] == "Bearer t0ken"
        assert seen[0].url.params["per_page"] == "100"

    def test_list_repos_can_include_archived(self):
        def handler(request):
            return httpx.Response(200, json=[{"full_name": "acme/old", "name": "old", "archived": True}])

        repos = _client(handler).list_repos("acme", include_archived=True)

        assert repos[0].is_archived is True

    def test_list_commits(self):
        captured = {}

        def handler(request):
            captured["params"] = dict(request.url.params)
            return httpx.Response(200, json=[{
                "sha": "abc",
                "commit": {"message": "fix: thing",
                           "author": {"date": "2024-03-04T10:00:00+02:00", "email": "a@x.io"}},
                "author": None,
            }])

        commits = _client(handler).list_commits(
            "acme/api", "alice", datetime(2024, 1, 1), datetime(2024, 12, 31, 23, 59, 59),
        )

        assert captured["params"]["author"] == "alice"
        assert captured["params"]["since"] == "2024-01-01T00:00:00Z"
        assert commits[0].committed_at == datetime(2024, 3, 4, 8, 0)
        assert commits[0].author_login == "alice"


# ── Tests: Detail and errors ──────────────────────────────────────────────


class TestDetail:
    """Tests for get_commit_detail and error mapping."""

    def test_commit_detail(self):
        def handler(request):
            assert request.url.path == "/repos/acme/api/commits/abc"
            return httpx.Response(200, json={
                "sha": "abc",
                "commit": {"message": "feat", "author": {"date": "2024-03-04T10:00:00Z"}},
                "author": {"login": "alice"},
                "stats": {"additions": 12, "deletions": 3},
                "files": [
                    {"filename": "src/app.py", "status": "modified", "additions": 10,
                     "deletions": 3, "patch": "@@ -1 +1 @@"},
                    {"filename": "README.md", "additions": 2},
                ],
            })

        detail = _client(handler).get_commit_detail("acme/api", "abc")

        assert detail.additions == 12
        assert detail.author_login == "alice"
        assert [f.path for f in detail.files] == ["src/app.py", "README.md"]
        assert detail.files[1].status == "modified"
        assert detail.files[1].patch is None

    @pytest.mark.parametrize("status,transient", [(404, False), (403, False), (502, True)])
    def test_http_errors(self, status, transient):
        def handler(request):
            return httpx.Response(status, text="nope")

        with pytest.raises(VCSError) as exc_info:
            _client(handler).get_commit_detail("acme/api", "abc")

        assert exc_info.value.status_code == status
        assert exc_info.value.is_transient is transient

    def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(VCSError) as exc_info:
            _client(handler).list_repos("acme")

        assert is_retryable(exc_info.value) is True

    def test_missing_timestamp(self):
        with pytest.raises(VCSError):
            parse_timestamp(None)
