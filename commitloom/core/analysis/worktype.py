"""Commit message and file path classifiers.

Shared by clustering (work type), scoring (test/config/schema ratios)
and developer metrics (tech stack coverage).
"""

import re
from collections import Counter
from typing import Dict, Iterable, List, Sequence, Tuple

from .models import WorkType

# Keyword table; dict order is the match priority
WORK_TYPE_KEYWORDS: Dict[WorkType, Tuple[str, ...]] = {
    WorkType.FEATURE: ("feat", "feature", "add", "implement", "create"),
    WorkType.BUGFIX: ("fix", "bug", "hotfix", "patch", "resolve"),
    WorkType.REFACTOR: ("refactor", "cleanup", "clean up", "improve", "optimize"),
    WorkType.DOCS: ("docs", "documentation", "readme", "comment"),
    WorkType.TEST: ("test", "testing", "spec", "coverage"),
    WorkType.STYLE: ("style", "format", "prettier", "lint"),
    WorkType.CHORE: ("chore", "deps", "dependency", "dependencies", "update", "upgrade", "bump"),
}

PATH_RATIO_THRESHOLD = 0.7

_TEST_PATTERNS = [
    re.compile(p) for p in (
        r"\.test\.", r"\.spec\.", r"_test\.[a-z]+$", r"_spec\.[a-z]+$",
        r"(^|/)test_[^/]*$", r"(^|/)tests?/", r"__tests__/",
    )
]

_CONFIG_PATTERNS = [
    re.compile(p) for p in (
        r"\.config\.[jt]sx?$", r"(^|/)\.env", r"(^|/)config\.[a-z]+$",
        r"(^|/)settings\.[a-z]+$", r"\.json$", r"\.ya?ml$", r"\.toml$",
        r"\.ini$", r"\.cfg$", r"Dockerfile", r"docker-compose", r"nginx\.conf",
    )
]

_SCHEMA_PATTERNS = [
    re.compile(p) for p in (
        r"schema\.prisma$", r"(^|/)schema\.[a-z]+$", r"(^|/)migrations?/",
        r"(^|/)alembic/", r"\.sql$", r"\.graphql$", r"\.proto$",
    )
]

_DOC_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\.md$", r"\.mdx$", r"\.rst$", r"\.txt$", r"(^|/)docs?/",
        r"README", r"CHANGELOG", r"LICENSE",
    )
]

_HOTFIX_PATTERN = re.compile(r"hotfix|urgent|fix:", re.IGNORECASE)
_REVERT_PATTERN = re.compile(r"revert", re.IGNORECASE)


def _matches(patterns: Sequence[re.Pattern], path: str) -> bool:
    return any(p.search(path) for p in patterns)


def is_test_file(path: str) -> bool:
    return _matches(_TEST_PATTERNS, path)


def is_config_file(path: str) -> bool:
    return _matches(_CONFIG_PATTERNS, path)


def is_schema_file(path: str) -> bool:
    return _matches(_SCHEMA_PATTERNS, path)


def is_doc_file(path: str) -> bool:
    return _matches(_DOC_PATTERNS, path)


def is_hotfix_message(message: str) -> bool:
    return bool(_HOTFIX_PATTERN.search(message or ""))


def is_revert_message(message: str) -> bool:
    return bool(_REVERT_PATTERN.search(message or ""))


def detect_work_type(message: str) -> WorkType:
    """Classify a single commit message by keyword, in priority order."""
    lowered = (message or "").lower()
    for work_type, keywords in WORK_TYPE_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return work_type
    return WorkType.UNKNOWN


def infer_work_type_from_paths(paths: List[str]) -> WorkType:
    """Fallback when messages are uninformative: dominant file category."""
    if not paths:
        return WorkType.UNKNOWN
    total = len(paths)
    if sum(1 for p in paths if is_test_file(p)) / total > PATH_RATIO_THRESHOLD:
        return WorkType.TEST
    if sum(1 for p in paths if is_doc_file(p)) / total > PATH_RATIO_THRESHOLD:
        return WorkType.DOCS
    if sum(1 for p in paths if is_config_file(p)) / total > PATH_RATIO_THRESHOLD:
        return WorkType.CHORE
    return WorkType.UNKNOWN


def infer_work_type(messages: Iterable[str], paths: List[str]) -> WorkType:
    """Most frequent recognised message type across a group of commits.

    Ties resolve by keyword priority. When no message matches a keyword
    the path-ratio fallback decides.
    """
    counts = Counter(detect_work_type(m) for m in messages)
    counts.pop(WorkType.UNKNOWN, None)
    if not counts:
        return infer_work_type_from_paths(paths)

    priority = list(WorkType)
    return max(counts.items(), key=lambda item: (item[1], -priority.index(item[0])))[0]
