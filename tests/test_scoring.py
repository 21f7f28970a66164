"""Tests for the ML scorer, risk aggregation and MITRE stage mapping."""

import itertools

import numpy as np
import pytest

from threatscore.config import Thresholds
from threatscore.correlation.mitre import MITRE_MAP, UNKNOWN_STAGE, map_stage, mitre_for_event_type
from threatscore.correlation.risk import aggregate, coerce_score, severity_from_score
from threatscore.features.extract import NORMALIZED_FEATURE_NAMES
from threatscore.models.isoforest import score_isoforest, train_isoforest
from threatscore.models.scoring import (
    HeuristicAnomalyEstimator,
    MLScorer,
    TreeEnsembleClassifier,
    explain_top_features,
)


def _vec(**named):
    x = np.zeros(len(NORMALIZED_FEATURE_NAMES))
    for name, value in named.items():
        x[NORMALIZED_FEATURE_NAMES.index(name)] = value
    return x


class TestMLScorer:
    def test_quiet_vector_scores_zero(self):
        res = MLScorer().score(_vec())
        assert res.score == 0
        assert res.details["classification"]["classification"] == "benign"
        assert res.details["anomaly"]["is_anomaly"] is False

    def test_anomaly_terms_add_and_clamp(self):
        est = HeuristicAnomalyEstimator()
        assert est.predict(_vec(blacklist_norm=0.9))["score"] == pytest.approx(0.4)
        everything = est.predict(np.ones(len(NORMALIZED_FEATURE_NAMES)))
        assert everything["score"] == 1.0
        assert everything["is_anomaly"] is True

    def test_classifier_averages_triggered_trees(self):
        clf = TreeEnsembleClassifier()
        # blacklist tree (0.8) and blacklist+geo tree (0.85)
        out = clf.predict_proba(_vec(blacklist_norm=0.9, geo_risk_norm=0.55))
        assert out["malicious_probability"] == pytest.approx(0.825)
        assert out["classification"] == "malicious"
        assert out["trees"] == ["blacklist", "blacklist_and_geo"]

    def test_brute_force_shape(self):
        res = MLScorer().score(_vec(event_frequency_norm=0.25, event_rate_norm=1.0, time_between_events_inv=1.0))
        assert res.details["anomaly"]["score"] == pytest.approx(0.5)
        assert res.details["classification"]["malicious_probability"] == pytest.approx(0.6)
        assert res.score == 56

    def test_score_bounds(self):
        rng = np.random.default_rng(3)
        scorer = MLScorer()
        for _ in range(50):
            assert 0 <= scorer.score(rng.random(len(NORMALIZED_FEATURE_NAMES))).score <= 100

    def test_wrong_vector_length(self):
        with pytest.raises(ValueError):
            MLScorer().score([0.1, 0.2])

    def test_top_features_without_stats(self):
        top = explain_top_features(_vec(blacklist_norm=0.9, geo_risk_norm=0.2), NORMALIZED_FEATURE_NAMES)
        assert [t["feature"] for t in top] == ["blacklist_norm", "geo_risk_norm"]


class TestIsolationForest:
    def test_trained_estimator_replaces_heuristic(self):
        rng = np.random.default_rng(7)
        X = rng.random((64, len(NORMALIZED_FEATURE_NAMES))) * 0.1
        art = train_isoforest(X, NORMALIZED_FEATURE_NAMES)
        assert set(art.feature_stats) == set(NORMALIZED_FEATURE_NAMES)

        scores = score_isoforest(art, X)
        assert scores.shape == (64,)
        assert np.all((scores >= 0) & (scores <= 1))

        scorer = MLScorer.from_artifact(art)
        res = scorer.score(np.ones(len(NORMALIZED_FEATURE_NAMES)))
        assert res.details["anomaly"]["terms"] == ["isolation_forest"]
        assert 0 <= res.score <= 100


class TestAggregator:
    def test_weights(self):
        assert aggregate(52, 56, 100) == (68, "High")
        assert aggregate(0, 0, 0) == (0, "Low")
        assert aggregate(100, 100, 100) == (100, "Critical")

    @pytest.mark.parametrize(
        "score,severity",
        [(80, "Critical"), (79.9, "High"), (60, "High"), (59, "Medium"), (35, "Medium"), (34, "Low")],
    )
    def test_severity_cutoffs(self, score, severity):
        assert severity_from_score(score) == severity

    def test_monotonic_in_each_component(self):
        order = {"Low": 0, "Medium": 1, "High": 2, "Critical": 3}
        grid = range(0, 101, 10)
        for base in itertools.product(grid, repeat=3):
            score, sev = aggregate(*base)
            for i in range(3):
                bumped = list(base)
                bumped[i] = min(100, bumped[i] + 10)
                s2, sev2 = aggregate(*bumped)
                assert s2 >= score
                assert order[sev2] >= order[sev]

    @pytest.mark.parametrize("bad", [None, "abc", float("nan"), float("inf"), True, [1]])
    def test_invalid_inputs_coerce_to_zero(self, bad):
        assert coerce_score(bad) == 0.0
        assert aggregate(bad, 50, 50) == aggregate(0, 50, 50)

    def test_out_of_range_inputs_clamped(self):
        assert coerce_score(250) == 100.0
        assert coerce_score(-5) == 0.0
        assert aggregate("90", 500, -1)[0] == round(0.4 * 90 + 0.3 * 100)

    def test_custom_thresholds(self):
        t = Thresholds(rule_weight=1.0, ml_weight=0.0, graph_weight=0.0)
        assert aggregate(70, 0, 0, t) == (70, "High")


class TestMitre:
    @pytest.mark.parametrize(
        "event_type,stage",
        [
            ("port_scan", "Reconnaissance"),
            ("failed_login", "Initial Access"),
            ("script_execution", "Execution"),
            ("privilege_escalation", "Privilege Escalation"),
            ("c2_communication", "Command and Control"),
            ("data_exfiltration", "Exfiltration"),
        ],
    )
    def test_known_types(self, event_type, stage):
        assert map_stage(event_type) == stage

    @pytest.mark.parametrize("event_type", ["malware_detected", "unknown", None, "", "nonsense"])
    def test_unmapped_types(self, event_type):
        assert map_stage(event_type) == UNKNOWN_STAGE

    def test_technique_lookup(self):
        assert mitre_for_event_type("failed_login")["technique_id"] == "T1110"
        assert mitre_for_event_type("malware_detected") is None
        assert len({m["event_type"] for m in MITRE_MAP}) == len(MITRE_MAP)
