from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

import joblib
import numpy as np
from sklearn.ensemble import IsolationForest


@dataclass(frozen=True)
class IsoForestArtifact:
    model: IsolationForest
    feature_names: List[str]
    feature_stats: Dict[str, Dict[str, float]] = field(default_factory=dict)


def train_isoforest(X: np.ndarray, feature_names: List[str], random_state: int = 7) -> IsoForestArtifact:
    """Fit on normalized feature vectors (one row per indicator window)."""
    model = IsolationForest(
        n_estimators=300,
        max_samples="auto",
        contamination="auto",
        random_state=random_state,
        n_jobs=-1,
    )
    model.fit(X)
    stats = {}
    for i, name in enumerate(feature_names):
        values = X[:, i]
        stats[name] = {
            "mean": float(np.mean(values)),
            "std": float(np.std(values) + 1e-6),
            "p50": float(np.percentile(values, 50)),
            "p95": float(np.percentile(values, 95)),
        }
    return IsoForestArtifact(model=model, feature_names=list(feature_names), feature_stats=stats)


def score_isoforest(art: IsoForestArtifact, X: np.ndarray) -> np.ndarray:
    """Per-row anomaly score in [0, 1].

    sklearn's score_samples is the negated isolation score from the original
    paper, so its negation is already on [0, 1] with ~0.5 as the normal level.
    """
    X = np.atleast_2d(np.asarray(X, dtype=np.float64))
    if X.shape[0] == 0:
        return np.zeros((0,), dtype=np.float64)
    raw = -art.model.score_samples(X)
    return np.clip(raw, 0.0, 1.0)


def save_isoforest(path: str, art: IsoForestArtifact) -> None:
    joblib.dump(
        {"model": art.model, "feature_names": art.feature_names, "feature_stats": art.feature_stats},
        path,
    )


def load_isoforest(path: str) -> IsoForestArtifact:
    obj = joblib.load(path)
    return IsoForestArtifact(
        model=obj["model"],
        feature_names=list(obj["feature_names"]),
        feature_stats=dict(obj.get("feature_stats", {})),
    )
