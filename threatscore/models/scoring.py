from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from threatscore.config import THRESHOLDS, Thresholds
from threatscore.features.extract import NORMALIZED_FEATURE_NAMES
from threatscore.models.isoforest import IsoForestArtifact, score_isoforest
from threatscore.schemas import ScoreResult


VectorPredicate = Callable[[np.ndarray], bool]

# Indices into the normalized vector (see NORMALIZED_FEATURE_NAMES).
FREQ, RATE, TYPES, DIVERSITY, PORT_ENTROPY, GEO, BLACKLIST, DNS, PAYLOAD_VAR, RAPID = range(10)


@dataclass(frozen=True)
class AnomalyTerm:
    name: str
    predicate: VectorPredicate
    weight: float


@dataclass(frozen=True)
class Tree:
    name: str
    predicate: VectorPredicate
    probability: float


ANOMALY_TERMS: List[AnomalyTerm] = [
    AnomalyTerm("high_frequency", lambda x: x[FREQ] > 0.7, 0.3),
    AnomalyTerm("high_rate", lambda x: x[RATE] > 0.6, 0.25),
    AnomalyTerm("multi_vector", lambda x: x[TYPES] > 0.5, 0.2),
    AnomalyTerm("high_entropy", lambda x: x[DIVERSITY] > 0.6 or x[PORT_ENTROPY] > 0.6, 0.25),
    AnomalyTerm("geo_risk", lambda x: x[GEO] > 0.7, 0.3),
    AnomalyTerm("blacklist", lambda x: x[BLACKLIST] > 0.5, 0.4),
    AnomalyTerm("dns_entropy", lambda x: x[DNS] > 0.7, 0.3),
    AnomalyTerm("payload_variance", lambda x: x[PAYLOAD_VAR] > 0.6, 0.2),
    AnomalyTerm("rapid_events", lambda x: x[RAPID] > 0.8, 0.25),
]

CLASSIFIER_TREES: List[Tree] = [
    Tree("blacklist", lambda x: x[BLACKLIST] > 0.4, 0.8),
    Tree("frequency_and_rate", lambda x: x[FREQ] > 0.5 and x[RATE] > 0.5, 0.7),
    Tree("geo_multi_vector", lambda x: x[GEO] > 0.6 and x[TYPES] >= 0.3, 0.75),
    Tree("entropy", lambda x: x[PORT_ENTROPY] > 0.5 or x[DNS] > 0.6, 0.65),
    Tree("diversity_and_rate", lambda x: x[DIVERSITY] > 0.4 and x[RATE] > 0.4, 0.7),
    Tree("rapid_succession", lambda x: x[RAPID] > 0.7, 0.6),
    Tree("payload_anomaly", lambda x: x[PAYLOAD_VAR] > 0.5, 0.55),
    Tree("blacklist_and_geo", lambda x: x[BLACKLIST] > 0.3 and x[GEO] > 0.5, 0.85),
    Tree("frequency_with_entropy", lambda x: x[FREQ] > 0.6 and (x[DIVERSITY] > 0.5 or x[PORT_ENTROPY] > 0.5), 0.75),
]


def _as_vector(vector: Sequence[float]) -> np.ndarray:
    x = np.asarray(vector, dtype=np.float64).reshape(-1)
    if x.shape[0] != len(NORMALIZED_FEATURE_NAMES):
        raise ValueError(f"Expected {len(NORMALIZED_FEATURE_NAMES)} normalized features, got {x.shape[0]}")
    return x


class HeuristicAnomalyEstimator:
    """Additive threshold scorer: sum the weights of the terms that fire."""

    def __init__(self, terms: Sequence[AnomalyTerm] = ANOMALY_TERMS, thresholds: Thresholds = THRESHOLDS):
        self.terms = list(terms)
        self.thresholds = thresholds

    def predict(self, vector: Sequence[float]) -> Dict[str, Any]:
        x = _as_vector(vector)
        fired = [t.name for t in self.terms if t.predicate(x)]
        score = float(min(1.0, sum(t.weight for t in self.terms if t.name in fired)))
        return {
            "score": score,
            "is_anomaly": score > self.thresholds.anomaly_cutoff,
            "confidence": score,
            "terms": fired,
        }


class IsoForestAnomalyEstimator:
    """Trained drop-in for the heuristic estimator; same output contract."""

    def __init__(self, artifact: IsoForestArtifact, thresholds: Thresholds = THRESHOLDS):
        self.artifact = artifact
        self.thresholds = thresholds

    def predict(self, vector: Sequence[float]) -> Dict[str, Any]:
        x = _as_vector(vector)
        score = float(score_isoforest(self.artifact, x.reshape(1, -1))[0])
        return {
            "score": score,
            "is_anomaly": score > self.thresholds.anomaly_cutoff,
            "confidence": score,
            "terms": ["isolation_forest"],
        }


class TreeEnsembleClassifier:
    """Mean malicious probability over the trees that trigger (0 if none do)."""

    def __init__(self, trees: Sequence[Tree] = CLASSIFIER_TREES, thresholds: Thresholds = THRESHOLDS):
        self.trees = list(trees)
        self.thresholds = thresholds

    def predict_proba(self, vector: Sequence[float]) -> Dict[str, Any]:
        x = _as_vector(vector)
        hits = [t for t in self.trees if t.predicate(x)]
        p = float(min(1.0, np.mean([t.probability for t in hits]))) if hits else 0.0
        return {
            "malicious_probability": p,
            "classification": "malicious" if p > self.thresholds.malicious_cutoff else "benign",
            "confidence": abs(p - 0.5) * 2,
            "trees": [t.name for t in hits],
        }


def explain_top_features(
    x: np.ndarray,
    feature_names: List[str],
    k: int = 3,
    feature_stats: Optional[Dict[str, Dict[str, float]]] = None,
) -> List[Dict[str, Any]]:
    """Top contributing normalized features.

    With training statistics the ranking is by |z|; without them the raw
    normalized value (already on [0, 1]) is used.
    """
    v = np.asarray(x, dtype=np.float64)
    if feature_stats:
        weights = []
        for i, name in enumerate(feature_names):
            st = feature_stats.get(name)
            if st and st.get("std", 0) > 0:
                weights.append(abs((v[i] - st["mean"]) / st["std"]))
            else:
                weights.append(0.0)
        w = np.array(weights)
    else:
        w = v
    out = []
    for i in np.argsort(-w, kind="stable")[:k]:
        if w[int(i)] <= 0:
            continue
        out.append(
            {
                "feature": feature_names[int(i)],
                "value": round(float(v[int(i)]), 4),
                "attribution": round(float(w[int(i)]), 4),
            }
        )
    return out


class MLScorer:
    """Anomaly estimator + classifier ensemble over the normalized feature vector."""

    def __init__(
        self,
        anomaly_estimator: Optional[Any] = None,
        classifier: Optional[TreeEnsembleClassifier] = None,
        thresholds: Thresholds = THRESHOLDS,
    ):
        self.thresholds = thresholds
        self.anomaly_estimator = anomaly_estimator or HeuristicAnomalyEstimator(thresholds=thresholds)
        self.classifier = classifier or TreeEnsembleClassifier(thresholds=thresholds)

    @classmethod
    def from_artifact(cls, artifact: IsoForestArtifact, thresholds: Thresholds = THRESHOLDS) -> "MLScorer":
        return cls(anomaly_estimator=IsoForestAnomalyEstimator(artifact, thresholds), thresholds=thresholds)

    def score(self, vector: Sequence[float]) -> ScoreResult:
        x = _as_vector(vector)
        anomaly = self.anomaly_estimator.predict(x)
        classification = self.classifier.predict_proba(x)
        combined = (
            self.thresholds.ml_classifier_weight * classification["malicious_probability"]
            + self.thresholds.ml_anomaly_weight * anomaly["score"]
        ) * 100
        stats = getattr(getattr(self.anomaly_estimator, "artifact", None), "feature_stats", None)
        return ScoreResult(
            score=int(round(min(100.0, max(0.0, combined)))),
            details={
                "anomaly": anomaly,
                "classification": classification,
                "top_features": explain_top_features(x, NORMALIZED_FEATURE_NAMES, feature_stats=stats),
            },
        )
