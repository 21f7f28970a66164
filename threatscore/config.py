from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple


def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return default
    return tuple(item.strip() for item in v.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """Central configuration for feature extraction, graph analytics and storage.

    Every field can be overridden through a THREATSCORE_* environment variable;
    see SETTINGS below.
    """

    # Feature extraction
    max_history_events: int = 1000
    rate_window_minute_seconds: int = 60
    rate_window_hour_seconds: int = 3600
    zscore_mean: float = 50.0
    zscore_std: float = 20.0
    denylist: Tuple[str, ...] = ("192.168.1.100", "malicious-c2.com", "10.0.0.50")
    high_risk_geos: Tuple[str, ...] = ("RU", "CN", "KP", "IR")

    # Correlation heuristics
    correlation_window_minutes: int = 20
    graph_history_events: int = 1000

    # Graph analytics
    pagerank_iterations: int = 20
    pagerank_damping: float = 0.85
    community_min_weight: float = 0.5

    # Storage / runtime
    database_url: str = "sqlite:///./threatscore.db"
    storage_timeout_seconds: float = 5.0
    batch_max_workers: int = 4
    indicator_lock_stripes: int = 64


@dataclass(frozen=True)
class Thresholds:
    """Cutoffs and blend weights used at scoring time."""

    anomaly_cutoff: float = 0.6
    malicious_cutoff: float = 0.5
    ml_classifier_weight: float = 0.6
    ml_anomaly_weight: float = 0.4

    # Risk aggregator blend; weights must be non-negative and sum to 1.
    rule_weight: float = 0.4
    ml_weight: float = 0.3
    graph_weight: float = 0.3

    severity_critical: float = 80.0
    severity_high: float = 60.0
    severity_medium: float = 35.0


SETTINGS = Settings(
    max_history_events=_env_int("THREATSCORE_MAX_HISTORY_EVENTS", 1000),
    rate_window_minute_seconds=_env_int("THREATSCORE_RATE_WINDOW_MINUTE_SECONDS", 60),
    rate_window_hour_seconds=_env_int("THREATSCORE_RATE_WINDOW_HOUR_SECONDS", 3600),
    zscore_mean=_env_float("THREATSCORE_ZSCORE_MEAN", 50.0),
    zscore_std=_env_float("THREATSCORE_ZSCORE_STD", 20.0),
    denylist=_env_list("THREATSCORE_DENYLIST", ("192.168.1.100", "malicious-c2.com", "10.0.0.50")),
    high_risk_geos=_env_list("THREATSCORE_HIGH_RISK_GEOS", ("RU", "CN", "KP", "IR")),
    correlation_window_minutes=_env_int("THREATSCORE_CORRELATION_WINDOW_MINUTES", 20),
    graph_history_events=_env_int("THREATSCORE_GRAPH_HISTORY_EVENTS", 1000),
    pagerank_iterations=_env_int("THREATSCORE_PAGERANK_ITERATIONS", 20),
    pagerank_damping=_env_float("THREATSCORE_PAGERANK_DAMPING", 0.85),
    community_min_weight=_env_float("THREATSCORE_COMMUNITY_MIN_WEIGHT", 0.5),
    database_url=os.environ.get("THREATSCORE_DATABASE_URL") or "sqlite:///./threatscore.db",
    storage_timeout_seconds=_env_float("THREATSCORE_STORAGE_TIMEOUT_SECONDS", 5.0),
    batch_max_workers=_env_int("THREATSCORE_BATCH_MAX_WORKERS", 4),
    indicator_lock_stripes=_env_int("THREATSCORE_INDICATOR_LOCK_STRIPES", 64),
)


THRESHOLDS = Thresholds(
    anomaly_cutoff=_env_float("THREATSCORE_ANOMALY_CUTOFF", 0.6),
    malicious_cutoff=_env_float("THREATSCORE_MALICIOUS_CUTOFF", 0.5),
    rule_weight=_env_float("THREATSCORE_RULE_WEIGHT", 0.4),
    ml_weight=_env_float("THREATSCORE_ML_WEIGHT", 0.3),
    graph_weight=_env_float("THREATSCORE_GRAPH_WEIGHT", 0.3),
    severity_critical=_env_float("THREATSCORE_SEVERITY_CRITICAL", 80.0),
    severity_high=_env_float("THREATSCORE_SEVERITY_HIGH", 60.0),
    severity_medium=_env_float("THREATSCORE_SEVERITY_MEDIUM", 35.0),
)
