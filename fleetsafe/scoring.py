import math
from typing import Any, Iterable, Mapping, Optional, Tuple

# Value that marks a checklist item as failed
FAILING_VALUE = "fail"

RISK_LEVELS = ("low", "medium", "high", "critical")

# Values that earn an item its full points
_FULL_CREDIT = {"pass", "yes", "complete"}
_PARTIAL_CREDIT = "partial"
_NOT_APPLICABLE = "na"
_FREE_FORM_TYPES = {"text", "date", "select", "signature"}


def is_failing(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() == FAILING_VALUE


def item_points(field_type: str, value: Optional[str], points: int) -> Tuple[int, int]:
    """Return (earned, max) points for a single checklist item."""
    points = max(0, int(points or 0))
    normalized = (value or "").strip().lower()

    if normalized == _NOT_APPLICABLE:
        # Not applicable items drop out of the maximum entirely
        return 0, 0
    if not normalized:
        return 0, points
    if normalized in _FULL_CREDIT:
        return points, points
    if normalized == _PARTIAL_CREDIT:
        return points // 2, points
    if field_type == "number":
        try:
            return (points if float(normalized) == 0 else 0), points
        except ValueError:
            return 0, points
    if field_type in _FREE_FORM_TYPES:
        return points, points
    return 0, points


def module_points(items: Iterable[Any]) -> Tuple[int, int]:
    """Sum (achieved, max) across items exposing field_type/value/points."""
    achieved = 0
    maximum = 0
    for item in items:
        earned, item_max = item_points(item.field_type, item.value, item.points)
        achieved += earned
        maximum += item_max
    return achieved, maximum


def aggregate_score(scores: Mapping[Any, Tuple[float, float]]) -> int:
    """
    Weighted trip score: round(100 * sum(achieved) / sum(max)).

    Pure: identical inputs always give the identical result, so recomputing
    against unchanged module data is idempotent. A zero (or negative) total
    maximum yields 0 instead of dividing by zero.
    """
    total_achieved = sum(achieved for achieved, _ in scores.values())
    total_max = sum(maximum for _, maximum in scores.values())

    if total_max <= 0:
        return 0

    # Halves round up
    score = math.floor(100 * total_achieved / total_max + 0.5)
    return max(0, min(100, int(score)))


def percentage(achieved: float, maximum: float) -> int:
    return aggregate_score({None: (achieved, maximum)})


def risk_level_from_score(score: int) -> str:
    if score >= 90:
        return "low"
    if score >= 75:
        return "medium"
    if score >= 60:
        return "high"
    return "critical"


def max_risk(*levels: Optional[str]) -> Optional[str]:
    ranked = [level for level in levels if level in RISK_LEVELS]
    if not ranked:
        return None
    return max(ranked, key=RISK_LEVELS.index)


def derive_risk_level(score: Optional[int], open_failures: int, critical_actions: int) -> Optional[str]:
    """
    Risk level of a trip from its recomputation inputs.

    The score band is raised to ``critical`` by any critical/emergency
    enforcement action and to at least ``high`` by unresolved critical
    failures.
    """
    level = risk_level_from_score(score) if score is not None else None
    if critical_actions > 0:
        return "critical"
    if open_failures > 0:
        return max_risk(level, "high")
    return level


def module_status(items: Iterable[Any]) -> str:
    items = list(items)
    if any(item.critical and is_failing(item.value) for item in items):
        return "failed"
    if items and all((item.value or "").strip() for item in items):
        return "complete"
    return "incomplete"
