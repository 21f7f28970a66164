from __future__ import annotations

import math
from typing import Any, Tuple

from threatscore.config import THRESHOLDS, Thresholds


def coerce_score(value: Any) -> float:
    """Bound a component score into [0, 100]; anything non-numeric becomes 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v) or math.isinf(v):
        return 0.0
    return min(100.0, max(0.0, v))


def severity_from_score(score: float, thresholds: Thresholds = THRESHOLDS) -> str:
    if score >= thresholds.severity_critical:
        return "Critical"
    if score >= thresholds.severity_high:
        return "High"
    if score >= thresholds.severity_medium:
        return "Medium"
    return "Low"


def aggregate(rule_score: Any, ml_score: Any, graph_score: Any, thresholds: Thresholds = THRESHOLDS) -> Tuple[int, str]:
    """Blend the three component scores into a final risk score and severity.

    Non-negative weights make the blend monotonic in each input, so raising any
    component never lowers the score or downgrades the severity.
    """
    weights = (
        max(0.0, thresholds.rule_weight),
        max(0.0, thresholds.ml_weight),
        max(0.0, thresholds.graph_weight),
    )
    total_weight = sum(weights) or 1.0
    scores = (coerce_score(rule_score), coerce_score(ml_score), coerce_score(graph_score))
    blended = sum(w * s for w, s in zip(weights, scores)) / total_weight
    final = int(round(min(100.0, max(0.0, blended))))
    return final, severity_from_score(final, thresholds)
