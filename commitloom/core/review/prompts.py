"""Prompt templates for sampling and the four review stages.

Each builder returns the user prompt; the matching ``*_SYSTEM_PROMPT``
constant fixes the response schema. Schemas use snake_case keys, which
is what the normalizers in parsing.py read.
"""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

SAMPLING_SYSTEM_PROMPT = """You are a senior engineering manager selecting representative work for a code review.

For each repository, pick the work units that best show the developer's real contribution.
Prefer, in this order:
1. Core business logic changes
2. Architectural or structural changes
3. Significant bug fixes
4. New features with meaningful scope
5. Quality work (refactoring, tests, documentation) that shows craft

Avoid trivial units (version bumps, formatting, lockfile churn) unless nothing else exists.

Respond with JSON only:
```json
{
  "repos": [
    {
      "repo": "owner/name",
      "selections": [
        {"work_unit_id": "<id from the list>", "reason": "why this unit", "category": "business_logic|architecture|bug_fix|feature|quality"}
      ]
    }
  ]
}
```
Only use ids that appear in the input."""


STAGE1_SYSTEM_PROMPT = """You are a senior software engineer reviewing a developer's code changes.

Evaluate the diff on code quality, readability, maintainability and adherence to best practices.
Be specific and constructive; cite concrete patterns you see in the code.

Respond with JSON only:
```json
{
  "code_quality": {
    "score": 1-10,
    "readability": 1-10,
    "maintainability": 1-10,
    "best_practices": 1-10
  },
  "strengths": ["..."],
  "weaknesses": ["..."],
  "code_patterns": ["..."],
  "suggestions": ["..."]
}
```"""


STAGE2_SYSTEM_PROMPT = """You are an engineering coach analyzing how a developer works.

From the code review summary and the activity metrics, characterize the developer's work style
and collaboration pattern.

Work style is one of:
- deep-diver: long focused sessions on few areas
- multi-tasker: many parallel threads across repositories
- firefighter: frequent urgent fixes and hotfixes
- architect: structural, cross-cutting changes

Collaboration pattern is one of: solo, collaborative, mentor, learner.

Respond with JSON only:
```json
{
  "work_style": {"type": "deep-diver|multi-tasker|firefighter|architect", "description": "..."},
  "collaboration_pattern": {"type": "solo|collaborative|mentor|learner", "description": "..."},
  "productivity_insights": ["up to 5 items"],
  "time_management_feedback": "..."
}
```"""


STAGE3_SYSTEM_PROMPT = """You are a technical mentor writing a growth plan for a developer.

Ground every point in the review summary, the work pattern analysis and the metrics.

Respond with JSON only:
```json
{
  "areas_for_improvement": [
    {"area": "...", "priority": "high|medium|low", "specific_feedback": "...", "suggested_resources": ["..."]}
  ],
  "learning_opportunities": ["up to 5 items"],
  "strengths": ["up to 5 items"],
  "career_growth_suggestions": ["up to 3 items"]
}
```
Return at most 5 areas for improvement."""


STAGE4_SYSTEM_PROMPT = """You are an engineering director writing a developer's annual review.

Synthesize the code review, work pattern analysis and growth plan into a fair, specific assessment.
Score each dimension from 1 to 10.

Respond with JSON only:
```json
{
  "executive_summary": "3-5 sentences",
  "overall_assessment": {
    "productivity": {"score": 1-10, "feedback": "..."},
    "code_quality": {"score": 1-10, "feedback": "..."},
    "diversity": {"score": 1-10, "feedback": "..."},
    "collaboration": {"score": 1-10, "feedback": "..."},
    "growth": {"score": 1-10, "feedback": "..."}
  },
  "top_achievements": ["up to 5 items"],
  "key_improvements": ["up to 5 items"],
  "action_items": [
    {"item": "...", "deadline": "Q1|Q2|Q3|Q4", "priority": "high|medium|low"}
  ],
  "year_over_year_comparison": "only when a previous year summary is given"
}
```"""


# ── Sampling ────────────────────────────────────────────────────────────


def build_sampling_prompt(repos: List[Dict[str, Any]], max_samples: int) -> str:
    """Prompt for one batch of repositories.

    Args:
        repos: [{"repo": full_name, "units": [compact unit summary, ...]}]
        max_samples: Units to pick per repository
    """
    sections = []
    for entry in repos:
        sections.append(
            f"### {entry['repo']} ({len(entry['units'])} work units)\n"
            f"```json\n{json.dumps(entry['units'], indent=1)}\n```"
        )

    return f"""Select exactly {max_samples} work units per repository.

## REPOSITORIES
{chr(10).join(sections)}

Return one entry per repository listed above."""


# ── Stage 1 ─────────────────────────────────────────────────────────────


def build_stage1_prompt(
    repo: str,
    language: Optional[str],
    work_type: str,
    commits: Sequence[Tuple[str, str, str]],
) -> str:
    """Review prompt for one work unit.

    Args:
        commits: (sha, message, truncated diff) per commit, in commit order
    """
    blocks = []
    for sha, message, diff in commits:
        first_line = (message or "").split("\n", 1)[0]
        blocks.append(f"## commit: {sha[:7]} - {first_line}\n```diff\n{diff}\n```")

    return f"""## CONTEXT
- Repository: {repo}
- Language: {language or "unknown"}
- Work type: {work_type}
- Commits: {len(commits)}

## CHANGES
{chr(10).join(blocks)}

Review these changes and respond with the JSON schema above."""


# ── Shared sections ─────────────────────────────────────────────────────


def format_stage1_summary(summary: Dict[str, Any]) -> str:
    return f"""## CODE REVIEW SUMMARY ({summary.get("reviewed_units", 0)} work units reviewed)
- Average score: {summary.get("avg_score")}/10
- Readability: {summary.get("avg_readability")}/10
- Maintainability: {summary.get("avg_maintainability")}/10
- Best practices: {summary.get("avg_best_practices")}/10
- Frequent strengths: {_join(summary.get("top_strengths"))}
- Frequent weaknesses: {_join(summary.get("top_weaknesses"))}
- Frequent patterns: {_join(summary.get("top_patterns"))}"""


def format_metrics(metrics: Dict[str, Any]) -> str:
    productivity = metrics.get("productivity", {})
    pattern = metrics.get("work_pattern", {})
    diversity = metrics.get("diversity", {})
    prs = metrics.get("pr_activity", {})
    quality = metrics.get("commit_quality", {})
    time_dist = pattern.get("time_distribution", {})
    primary = diversity.get("primary_repository") or {}

    return f"""## PRODUCTIVITY
- Commits: {productivity.get("total_commits", 0)}, PRs: {productivity.get("total_prs", 0)}
- Lines: +{productivity.get("lines_added", 0)} / -{productivity.get("lines_deleted", 0)} (net {productivity.get("net_lines", 0)})
- Files changed: {productivity.get("files_changed", 0)}
- Working days: {productivity.get("working_days", 0)}, commits/day: {productivity.get("avg_commits_per_day", 0)}
- Lines/commit: {productivity.get("avg_lines_per_commit", 0)}

## WORK PATTERN
- Time of day (%): morning {time_dist.get("morning", 0)}, afternoon {time_dist.get("afternoon", 0)}, evening {time_dist.get("evening", 0)}, night {time_dist.get("night", 0)}
- Main work time: {main_work_time(time_dist)}
- Day of week (Mon..Sun): {pattern.get("day_of_week_distribution", [])}
- Longest streak: {pattern.get("longest_streak", 0)} days
- Weekend ratio: {pattern.get("weekend_work_ratio", 0)}%
- Average session: {pattern.get("avg_session_duration", 0)} minutes

## DIVERSITY
- Repositories: {diversity.get("repository_count", 0)}
- Primary repository: {primary.get("name") or "n/a"} ({primary.get("percentage", 0)}%)
- Languages: {diversity.get("language_variety", 0)}
- Tech stack coverage (%): {json.dumps(diversity.get("tech_stack_coverage", {}))}

## PR ACTIVITY
- PRs: {prs.get("total_prs", 0)}, merged: {prs.get("merged_prs", 0)}, merge rate: {prs.get("merge_success_rate", 0)}%

## COMMIT QUALITY
- Average message length: {quality.get("avg_message_length", 0)}
- Conventional commits: {quality.get("conventional_commits_rate", 0)}%
- Issue references: {quality.get("issue_reference_rate", 0)}%
- Meaningful messages: {quality.get("meaningful_commit_rate", 0)}%
- Reverts: {quality.get("revert_rate", 0)}%
- Test commits: {quality.get("test_commit_rate", 0)}%"""


def main_work_time(time_distribution: Dict[str, float]) -> str:
    """Largest time-of-day bucket."""
    if not time_distribution:
        return "unknown"
    return max(time_distribution.items(), key=lambda kv: kv[1])[0]


def _join(items: Optional[List[str]]) -> str:
    return ", ".join(items) if items else "none"


# ── Stages 2-4 ──────────────────────────────────────────────────────────


def build_stage2_prompt(user_login: str, year: int, stage1_summary: Dict[str, Any], metrics: Dict[str, Any]) -> str:
    return f"""# Developer: {user_login} ({year})

{format_stage1_summary(stage1_summary)}

{format_metrics(metrics)}

Analyze the work style and collaboration pattern."""


def build_stage3_prompt(
    user_login: str,
    year: int,
    stage1_summary: Dict[str, Any],
    stage2: Dict[str, Any],
    metrics: Dict[str, Any],
) -> str:
    style = stage2.get("work_style", {})
    collab = stage2.get("collaboration_pattern", {})
    return f"""# Developer: {user_login} ({year})

{format_stage1_summary(stage1_summary)}

## WORK PATTERN ANALYSIS
- Work style: {style.get("type")} - {style.get("description")}
- Collaboration: {collab.get("type")} - {collab.get("description")}
- Productivity insights: {_join(stage2.get("productivity_insights"))}
- Time management: {stage2.get("time_management_feedback")}

{format_metrics(metrics)}

Write the growth plan."""


def build_stage4_prompt(
    user_login: str,
    year: int,
    stage1_summary: Dict[str, Any],
    stage2: Dict[str, Any],
    stage3: Dict[str, Any],
    metrics: Dict[str, Any],
    previous_summary: Optional[Dict[str, Any]] = None,
) -> str:
    areas = "\n".join(
        f"- [{a.get('priority')}] {a.get('area')}: {a.get('specific_feedback')}"
        for a in stage3.get("areas_for_improvement", [])
    ) or "- none"

    previous = ""
    if previous_summary:
        previous = f"""
## PREVIOUS YEAR ({year - 1})
- Overall score: {previous_summary.get("overall_score")} (grade {previous_summary.get("grade")})
- Summary: {previous_summary.get("executive_summary")}
- Key improvements then: {_join(previous_summary.get("key_improvements"))}
Compare this year against the previous one in year_over_year_comparison.
"""

    return f"""# Annual review: {user_login} ({year})

{format_stage1_summary(stage1_summary)}

## WORK PATTERN ANALYSIS
- Work style: {stage2.get("work_style", {}).get("type")}
- Collaboration: {stage2.get("collaboration_pattern", {}).get("type")}
- Productivity insights: {_join(stage2.get("productivity_insights"))}

## GROWTH PLAN
{areas}
- Strengths: {_join(stage3.get("strengths"))}
- Learning opportunities: {_join(stage3.get("learning_opportunities"))}

{format_metrics(metrics)}
{previous}
Write the annual review."""
