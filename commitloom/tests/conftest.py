"""Shared fixtures: in-memory database, fast settings, fake VCS and LLM."""

import json
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytest

from commitloom.core.db import AnalysisRun, DatabaseManager, Organization, Repository
from commitloom.core.errors import LLMError, VCSError
from commitloom.core.review.client import LLMResult
from commitloom.core.vcs.base import CommitDetail, CommitRef, FilePatch, RepoRef
from commitloom.setting import AppSettings


@pytest.fixture
def db():
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    yield manager
    manager.dispose()


@pytest.fixture
def settings():
    """Defaults with every sleep and retry delay removed."""
    app_settings = AppSettings()
    app_settings.scan.retry_delays = [0.0, 0.0, 0.0]
    app_settings.review.stage1_delay_seconds = 0.0
    app_settings.worker.poll_interval = 0.05
    return app_settings


# ── Fake VCS ──────────────────────────────────────────────────────────────


def make_detail(sha, message, committed_at, files, author="alice"):
    """CommitDetail from (path, additions, deletions) tuples."""
    patches = [
        FilePatch(path=p, additions=a, deletions=d, patch=f"@@ -1 +1 @@\n-old {p}\n+new {p}")
        for p, a, d in files
    ]
    return CommitDetail(
        sha=sha,
        message=message,
        committed_at=committed_at,
        additions=sum(p.additions for p in patches),
        deletions=sum(p.deletions for p in patches),
        files=patches,
        author_login=author,
    )


class FakeVCS:
    """In-memory VCSClient.

    ``commits`` maps repo full name → user → [CommitDetail]. Repos in
    ``failing`` raise a non-transient VCSError from list_commits;
    ``flaky`` maps a repo to how many transient 502s it raises first.
    """

    def __init__(self, org: str = "acme"):
        self.org = org
        self.repos: List[RepoRef] = []
        self.commits: Dict[str, Dict[str, List[CommitDetail]]] = {}
        self.failing: set = set()
        self.flaky: Dict[str, int] = {}
        self.list_repos_error: Optional[VCSError] = None
        self.list_commits_calls: List[tuple] = []
        self.detail_calls: List[tuple] = []
        self.on_list_commits: Optional[Callable[[str, str], None]] = None
        self._lock = threading.Lock()

    def add_repo(self, name: str, language: str = "Python", archived: bool = False) -> str:
        full_name = f"{self.org}/{name}"
        self.repos.append(RepoRef(full_name=full_name, name=name, language=language, is_archived=archived))
        self.commits.setdefault(full_name, {})
        return full_name

    def add_commit(self, full_name: str, detail: CommitDetail) -> None:
        self.commits[full_name].setdefault(detail.author_login, []).append(detail)

    def list_repos(self, org: str, include_archived: bool = False) -> List[RepoRef]:
        if self.list_repos_error is not None:
            raise self.list_repos_error
        return [r for r in self.repos if include_archived or not r.is_archived]

    def list_commits(self, repo_full_name, author, since, until) -> List[CommitRef]:
        with self._lock:
            self.list_commits_calls.append((repo_full_name, author))
            if self.on_list_commits is not None:
                self.on_list_commits(repo_full_name, author)
            if repo_full_name in self.failing:
                raise VCSError(f"404 for {repo_full_name}", status_code=404)
            if self.flaky.get(repo_full_name, 0) > 0:
                self.flaky[repo_full_name] -= 1
                raise VCSError(f"502 for {repo_full_name}", status_code=502)

        return [
            CommitRef(sha=d.sha, message=d.message, committed_at=d.committed_at, author_login=author)
            for d in self.commits.get(repo_full_name, {}).get(author, [])
            if since <= d.committed_at <= until
        ]

    def get_commit_detail(self, repo_full_name, sha) -> CommitDetail:
        with self._lock:
            self.detail_calls.append((repo_full_name, sha))
        for details in self.commits.get(repo_full_name, {}).values():
            for detail in details:
                if detail.sha == sha:
                    return detail
        raise VCSError(f"Unknown commit {sha}", status_code=404)


@pytest.fixture
def vcs():
    """Three repos for alice: api (2 units), web (1 unit), infra (fails)."""
    fake = FakeVCS()
    api = fake.add_repo("api")
    web = fake.add_repo("web", language="TypeScript")
    fake.add_repo("infra", language="HCL")
    fake.failing.add("acme/infra")

    fake.add_commit(api, make_detail("a1" * 20, "feat: add search endpoint",
                                     datetime(2024, 3, 4, 9, 0), [("src/api/search.py", 120, 10)]))
    fake.add_commit(api, make_detail("a2" * 20, "test: search endpoint",
                                     datetime(2024, 3, 4, 10, 30), [("src/api/search.py", 5, 0),
                                                                    ("src/api/test_search.py", 40, 0)]))
    fake.add_commit(api, make_detail("a3" * 20, "hotfix: auth token expiry",
                                     datetime(2024, 6, 10, 15, 0), [("src/auth/token.py", 20, 4)]))
    fake.add_commit(web, make_detail("b1" * 20, "feat: search box",
                                     datetime(2024, 3, 5, 14, 0), [("web/components/Search.tsx", 80, 0)]))
    return fake


def create_run(db, fake_vcs, users=("alice",), year=2024, status="QUEUED"):
    """Org, repositories of ``fake_vcs`` and one run. Returns (run_id, {full_name: repo_id})."""
    with db.get_session() as session:
        org = Organization(login=fake_vcs.org)
        session.add(org)
        session.flush()
        repos = [
            Repository(org_id=org.org_id, full_name=r.full_name, name=r.name, language=r.language)
            for r in fake_vcs.repos
        ]
        run = AnalysisRun(org_id=org.org_id, target_users=list(users), year=year, status=status)
        session.add_all(repos + [run])
        session.flush()
        return str(run.run_id), {r.full_name: str(r.repo_id) for r in repos}


# ── Fake LLM ──────────────────────────────────────────────────────────────


STAGE_RESPONSES = {
    "stage1": {
        "code_quality": {"score": 8, "readability": 7, "maintainability": 8, "best_practices": 7},
        "strengths": ["clear naming"],
        "weaknesses": ["missing docstrings"],
        "code_patterns": ["service layer"],
        "suggestions": ["add type hints"],
    },
    "stage2": {
        "work_style": {"type": "deep-diver", "description": "long focused sessions"},
        "collaboration_pattern": {"type": "solo", "description": "works alone"},
        "productivity_insights": ["steady output"],
        "time_management_feedback": "good rhythm",
    },
    "stage3": {
        "areas_for_improvement": [{"area": "testing", "priority": "high", "specific_feedback": "more tests"}],
        "learning_opportunities": ["property-based testing"],
        "strengths": ["api design"],
        "career_growth_suggestions": ["lead a design review"],
    },
    "stage4": {
        "executive_summary": "A productive year.",
        "overall_assessment": {
            "productivity": {"score": 8, "feedback": "steady"},
            "code_quality": {"score": 8, "feedback": "clean"},
            "diversity": {"score": 7, "feedback": "two repos"},
            "collaboration": {"score": 6, "feedback": "mostly solo"},
            "growth": {"score": 7, "feedback": "improving"},
        },
        "top_achievements": ["search feature"],
        "key_improvements": ["testing"],
        "action_items": [{"item": "write more tests", "deadline": "Q2", "priority": "high"}],
    },
}


class FakeLLM:
    """LLMClient double. ``responses`` maps purpose → dict, str or Exception."""

    model = "fake-model"

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses = dict(STAGE_RESPONSES)
        self.responses.update(responses or {})
        self.calls: List[Dict[str, str]] = []

    def complete(self, system_prompt, user_prompt, max_tokens=None, temperature=None, purpose="general"):
        self.calls.append({"purpose": purpose, "prompt": user_prompt})
        response = self.responses.get(purpose)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(user_prompt)
        text = response if isinstance(response, str) else f"```json\n{json.dumps(response)}\n```"
        return LLMResult(text=text, input_tokens=100, output_tokens=50, cost_usd=0.001, model=self.model)

    def purposes(self) -> List[str]:
        return [c["purpose"] for c in self.calls]


@pytest.fixture
def llm():
    return FakeLLM()


def llm_failure(status_code: int = 500) -> LLMError:
    return LLMError("provider unavailable", status_code=status_code)
