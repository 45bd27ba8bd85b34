"""LLM response handling: lenient JSON extraction, strict normalization.

``extract_json`` is the adapter: it finds a JSON object in free text or
raises ResponseParseError. The ``normalize_*`` functions never raise;
they clamp, truncate and default every field so downstream code can rely
on the shape. ``default_stage*`` give the shape used when a stage fails.
"""

import json
import math
import re
from typing import Any, Dict, List, Optional, Sequence

from ..errors import ResponseParseError

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_BRACED = re.compile(r"\{[\s\S]*\}")

WORK_STYLES = ("deep-diver", "multi-tasker", "firefighter", "architect")
COLLABORATION_PATTERNS = ("solo", "collaborative", "mentor", "learner")
PRIORITIES = ("high", "medium", "low")
SAMPLING_CATEGORIES = ("business_logic", "architecture", "bug_fix", "feature", "quality")
ASSESSMENT_DIMENSIONS = ("productivity", "code_quality", "diversity", "collaboration", "growth")

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def extract_json(text: str) -> Dict[str, Any]:
    """Return the JSON object in a fenced ```json block or the outermost braces."""
    if not text:
        raise ResponseParseError("Empty LLM response", raw="")

    match = _FENCED_JSON.search(text) or _BRACED.search(text)
    if match is None:
        raise ResponseParseError("No JSON object in LLM response", raw=text)

    candidate = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Invalid JSON in LLM response: {e}", raw=text) from e

    if not isinstance(data, dict):
        raise ResponseParseError("LLM response JSON is not an object", raw=text)
    return data


# ── Field helpers ───────────────────────────────────────────────────────


def snake_keys(value: Any) -> Any:
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(value, dict):
        return {_CAMEL.sub("_", str(k)).lower(): snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [snake_keys(v) for v in value]
    return value


def clamp(value: Any, low: float = 1, high: float = 10, default: float = 5) -> float:
    """Numeric value clamped to [low, high]; non-numeric input gives default."""
    if isinstance(value, bool) or value is None:
        return float(default)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return float(default)
    if math.isnan(number):
        return float(default)
    return round(max(low, min(high, number)), 1)


def ensure_str_list(value: Any, limit: Optional[int] = None) -> List[str]:
    """Keep non-empty strings from a list; anything else yields []."""
    if not isinstance(value, list):
        return []
    items = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return items[:limit] if limit is not None else items


def ensure_str(value: Any, default: str = "") -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def choice(value: Any, allowed: Sequence[str], default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return default


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


# ── Sampling ────────────────────────────────────────────────────────────


def normalize_sampling(data: Any) -> List[Dict[str, str]]:
    """Flatten AI selections to [{work_unit_id, reason, category}].

    Accepts a flat ``selections`` list or ``repos: [{repo, selections}]``.
    Ids are not validated here; the sampling engine checks them per repo.
    """
    data = snake_keys(_as_dict(data))
    raw: List[Any] = list(data.get("selections") or [])
    for repo in data.get("repos") or []:
        if isinstance(repo, dict):
            raw.extend(repo.get("selections") or [])

    selections = []
    for item in raw:
        if isinstance(item, str):
            item = {"work_unit_id": item}
        if not isinstance(item, dict):
            continue
        unit_id = ensure_str(item.get("work_unit_id") or item.get("id"))
        if not unit_id:
            continue
        selections.append({
            "work_unit_id": unit_id,
            "reason": ensure_str(item.get("reason"), "Selected by AI"),
            "category": choice(item.get("category"), SAMPLING_CATEGORIES, "feature"),
        })
    return selections


# ── Stage 1 ─────────────────────────────────────────────────────────────


def default_stage1() -> Dict[str, Any]:
    return {
        "overall": 5.0,
        "readability": 5.0,
        "maintainability": 5.0,
        "best_practices": 5.0,
        "strengths": [],
        "weaknesses": [],
        "patterns": [],
        "suggestions": [],
    }


def normalize_stage1(data: Any) -> Dict[str, Any]:
    data = snake_keys(_as_dict(data))
    scores = _as_dict(data.get("code_quality")) or data
    return {
        "overall": clamp(scores.get("score", scores.get("overall"))),
        "readability": clamp(scores.get("readability")),
        "maintainability": clamp(scores.get("maintainability")),
        "best_practices": clamp(scores.get("best_practices")),
        "strengths": ensure_str_list(data.get("strengths")),
        "weaknesses": ensure_str_list(data.get("weaknesses")),
        "patterns": ensure_str_list(data.get("code_patterns", data.get("patterns"))),
        "suggestions": ensure_str_list(data.get("suggestions")),
    }


# ── Stage 2 ─────────────────────────────────────────────────────────────

INSUFFICIENT_DATA = "Insufficient data for analysis"


def default_stage2() -> Dict[str, Any]:
    return {
        "work_style": {"type": "multi-tasker", "description": INSUFFICIENT_DATA},
        "collaboration_pattern": {"type": "solo", "description": INSUFFICIENT_DATA},
        "productivity_insights": [],
        "time_management_feedback": "Further analysis needed",
    }


def normalize_stage2(data: Any) -> Dict[str, Any]:
    data = snake_keys(_as_dict(data))
    style = _as_dict(data.get("work_style"))
    collab = _as_dict(data.get("collaboration_pattern"))
    return {
        "work_style": {
            "type": choice(style.get("type"), WORK_STYLES, "multi-tasker"),
            "description": ensure_str(style.get("description"), INSUFFICIENT_DATA),
        },
        "collaboration_pattern": {
            "type": choice(collab.get("type"), COLLABORATION_PATTERNS, "solo"),
            "description": ensure_str(collab.get("description"), INSUFFICIENT_DATA),
        },
        "productivity_insights": ensure_str_list(data.get("productivity_insights"), limit=5),
        "time_management_feedback": ensure_str(
            data.get("time_management_feedback"), "Further analysis needed"
        ),
    }


# ── Stage 3 ─────────────────────────────────────────────────────────────


def default_stage3() -> Dict[str, Any]:
    return {
        "areas_for_improvement": [],
        "learning_opportunities": [],
        "strengths": [],
        "career_growth_suggestions": [],
    }


def normalize_stage3(data: Any) -> Dict[str, Any]:
    data = snake_keys(_as_dict(data))
    areas = []
    for area in data.get("areas_for_improvement") or []:
        if not isinstance(area, dict):
            continue
        areas.append({
            "area": ensure_str(area.get("area"), "Improvement area"),
            "priority": choice(area.get("priority"), PRIORITIES, "medium"),
            "specific_feedback": ensure_str(area.get("specific_feedback")),
            "suggested_resources": ensure_str_list(area.get("suggested_resources")),
        })
    return {
        "areas_for_improvement": areas[:5],
        "learning_opportunities": ensure_str_list(data.get("learning_opportunities"), limit=5),
        "strengths": ensure_str_list(data.get("strengths"), limit=5),
        "career_growth_suggestions": ensure_str_list(data.get("career_growth_suggestions"), limit=3),
    }


# ── Stage 4 ─────────────────────────────────────────────────────────────

ASSESSMENT_WEIGHTS = {
    "productivity": 0.25,
    "code_quality": 0.30,
    "diversity": 0.15,
    "collaboration": 0.15,
    "growth": 0.15,
}

GRADE_THRESHOLDS = ((9, "S"), (8, "A"), (7, "B"), (6, "C"), (5, "D"))


def overall_score(assessment: Dict[str, Dict[str, Any]]) -> float:
    """Weighted sum of the five dimension scores, one decimal."""
    total = sum(
        clamp(_as_dict(assessment.get(dim)).get("score")) * weight
        for dim, weight in ASSESSMENT_WEIGHTS.items()
    )
    return round(total, 1)


def grade_for(score: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def default_stage4() -> Dict[str, Any]:
    assessment = {dim: {"score": 5.0, "feedback": ""} for dim in ASSESSMENT_DIMENSIONS}
    score = overall_score(assessment)
    return {
        "executive_summary": INSUFFICIENT_DATA,
        "overall_assessment": assessment,
        "top_achievements": [],
        "key_improvements": [],
        "action_items": [],
        "year_over_year_comparison": None,
        "overall_score": score,
        "grade": grade_for(score),
    }


def normalize_stage4(data: Any) -> Dict[str, Any]:
    data = snake_keys(_as_dict(data))
    raw_assessment = _as_dict(data.get("overall_assessment"))
    assessment = {}
    for dim in ASSESSMENT_DIMENSIONS:
        entry = _as_dict(raw_assessment.get(dim))
        assessment[dim] = {
            "score": clamp(entry.get("score")),
            "feedback": ensure_str(entry.get("feedback")),
        }

    actions = []
    for item in data.get("action_items") or []:
        if not isinstance(item, dict):
            continue
        actions.append({
            "item": ensure_str(item.get("item")),
            "deadline": ensure_str(item.get("deadline"), "Q1"),
            "priority": choice(item.get("priority"), PRIORITIES, "medium"),
        })

    comparison = data.get("year_over_year_comparison")
    score = overall_score(assessment)
    return {
        "executive_summary": ensure_str(data.get("executive_summary"), INSUFFICIENT_DATA),
        "overall_assessment": assessment,
        "top_achievements": ensure_str_list(data.get("top_achievements"), limit=5),
        "key_improvements": ensure_str_list(data.get("key_improvements"), limit=5),
        "action_items": actions[:5],
        "year_over_year_comparison": comparison if isinstance(comparison, (dict, str)) else None,
        "overall_score": score,
        "grade": grade_for(score),
    }
