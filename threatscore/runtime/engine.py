from __future__ import annotations

import logging
import math
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from threatscore.config import SETTINGS, THRESHOLDS, Settings, Thresholds
from threatscore.correlation.mitre import map_stage
from threatscore.correlation.risk import aggregate
from threatscore.detection.rules import RuleEngine, RuleResult
from threatscore.errors import NoDataError
from threatscore.features.extract import FeatureExtractor, FeatureVector, compute_features
from threatscore.graph.engine import GraphEngine
from threatscore.logs.parsers import NormalizedEvent, coerce_event
from threatscore.models.scoring import MLScorer
from threatscore.runtime.artifacts import Artifacts
from threatscore.runtime.state import Store
from threatscore.schemas import Alert, AnalysisResult, BatchItemResult, BatchReport, Event, Indicator, ScoreResult
from threatscore.utils.time import parse_ts


logger = logging.getLogger(__name__)

# Event metadata keys that describe the indicator rather than the single event.
INDICATOR_METADATA_KEYS = ("reputation", "severity")

RawEvent = Union[NormalizedEvent, Dict[str, Any]]


def _confidence(value: Any) -> float:
    try:
        c = float(value)
    except (TypeError, ValueError):
        return 0.5
    if math.isnan(c):
        return 0.5
    return min(1.0, max(0.0, c))


def _event_record(ne: NormalizedEvent, indicator_id: str) -> Event:
    md = ne.metadata
    return Event(
        indicator_id=indicator_id,
        event_type=ne.event_type,
        timestamp=parse_ts(ne.ts),
        frequency=max(1, int(md.get("attempts") or 1)),
        port=md.get("port"),
        geo_location=md.get("geo"),
        payload_size=md.get("payload_size"),
        metadata={**md, "source": ne.source, "source_event_id": ne.event_id},
    )


class ThreatPipeline:
    """Correlation and risk-scoring pipeline over one store.

    Every collaborator is an explicit instance; two pipelines never share graph
    or rule state unless they are handed the same objects.
    """

    def __init__(
        self,
        store: Store,
        settings: Settings = SETTINGS,
        thresholds: Thresholds = THRESHOLDS,
        rule_engine: Optional[RuleEngine] = None,
        ml_scorer: Optional[MLScorer] = None,
        graph_engine: Optional[GraphEngine] = None,
    ):
        self.store = store
        self.settings = settings
        self.thresholds = thresholds
        self.features = FeatureExtractor(store, settings)
        self.rules = rule_engine or RuleEngine()
        self.ml = ml_scorer or MLScorer(thresholds=thresholds)
        self.graph = graph_engine or GraphEngine(store, settings)
        self._indicator_locks = [threading.Lock() for _ in range(max(1, settings.indicator_lock_stripes))]

    @classmethod
    def from_artifacts(
        cls,
        store: Store,
        artifacts: Artifacts,
        settings: Settings = SETTINGS,
        thresholds: Thresholds = THRESHOLDS,
    ) -> "ThreatPipeline":
        return cls(store, settings, thresholds, ml_scorer=MLScorer.from_artifact(artifacts.iso, thresholds))

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        # Striped: one indicator always maps to the same lock, the pool never grows.
        return self._indicator_locks[hash(key) % len(self._indicator_locks)]

    # Library-level operations

    def extract_features(self, indicator_id: str, as_of: Optional[datetime] = None) -> FeatureVector:
        return self.features.extract(indicator_id, as_of=as_of)

    def evaluate_rules(self, features: FeatureVector, events: Sequence[Event]) -> RuleResult:
        return self.rules.evaluate(features, events)

    def score_ml(self, features: Union[FeatureVector, Sequence[float], np.ndarray]) -> ScoreResult:
        vector = features.normalized() if isinstance(features, FeatureVector) else features
        return self.ml.score(vector)

    def graph_score(self, indicator_value: str, entity_type: Optional[str] = None) -> ScoreResult:
        return self.graph.graph_score(indicator_value, entity_type)

    def update_graph(self, event: Event, indicator_id: str) -> List[str]:
        return self.graph.update_graph(event, indicator_id)

    def aggregate(self, rule_score: Any, ml_score: Any, graph_score: Any) -> Tuple[int, str]:
        return aggregate(rule_score, ml_score, graph_score, self.thresholds)

    def map_stage(self, event_type: Optional[str]) -> str:
        return map_stage(event_type)

    # Orchestration

    def ingest(self, raw: RawEvent) -> Tuple[Indicator, Event]:
        """Upsert the indicator and store the event without scoring it."""
        ne = coerce_event(raw)
        seen_at = parse_ts(ne.ts)
        indicator = self.store.upsert_indicator(
            ne.indicator_type,
            ne.indicator_value,
            ne.source,
            _confidence(ne.metadata.get("confidence")),
            seen_at,
            {k: ne.metadata[k] for k in INDICATOR_METADATA_KEYS if k in ne.metadata},
        )
        event = self.store.add_event(_event_record(ne, indicator.id))
        return indicator, event

    def analyze(self, raw: RawEvent) -> AnalysisResult:
        ne = coerce_event(raw)
        with self._lock_for(ne.indicator_key):
            return self._analyze_locked(ne)

    def _analyze_locked(self, ne: NormalizedEvent) -> AnalysisResult:
        indicator, event = self.ingest(ne)

        features: Optional[FeatureVector] = None
        rule_result = RuleResult(score=0, triggered=[])
        ml_result = ScoreResult(score=0)
        try:
            indicator, events = self.features.load_window(indicator.id)
            features = compute_features(indicator, events, self.settings)
        except NoDataError:
            logger.info("no event history for indicator %s; rule and ML scores default to 0", indicator.id)
        else:
            rule_result = self.evaluate_rules(features, events)
            ml_result = self.score_ml(features)

        graph_result = self.graph_score(indicator.value, indicator.type)
        final, severity = self.aggregate(rule_result.score, ml_result.score, graph_result.score)
        stage = self.map_stage(event.event_type)

        alert = self.store.add_alert(
            Alert(
                indicator_id=indicator.id,
                event_id=event.id,
                rule_score=rule_result.score,
                ml_score=ml_result.score,
                graph_score=graph_result.score,
                final_risk_score=final,
                severity=severity,
                mitre_stage=stage,
                triggered_rules=rule_result.rule_ids,
                explanation=rule_result.explanation,
            )
        )
        self.update_graph(event, indicator.id)

        return AnalysisResult(
            alert_id=alert.id,
            indicator_id=indicator.id,
            indicator_value=indicator.value,
            event_type=event.event_type,
            rule_score=rule_result.score,
            ml_score=ml_result.score,
            graph_score=graph_result.score,
            final_risk_score=final,
            severity=severity,
            mitre_stage=stage,
            triggered_rules=rule_result.rule_ids,
            features=features.as_dict() if features is not None else None,
            no_data=features is None,
        )

    def _run_group(self, items: List[Tuple[int, NormalizedEvent]]) -> List[BatchItemResult]:
        out: List[BatchItemResult] = []
        for index, ne in items:
            try:
                res = self.analyze(ne)
            except Exception as e:
                logger.warning("batch item %d failed: %s: %s", index, type(e).__name__, e)
                out.append(BatchItemResult(index=index, success=False, error=str(e), error_kind=type(e).__name__))
                continue
            out.append(
                BatchItemResult(
                    index=index,
                    success=True,
                    alert_id=res.alert_id,
                    severity=res.severity,
                    final_risk_score=res.final_risk_score,
                )
            )
        return out

    def analyze_batch(self, events: Iterable[RawEvent], max_workers: Optional[int] = None) -> BatchReport:
        """Score many events; one item's failure never aborts its siblings.

        Items for the same indicator run in input order on one worker; distinct
        indicators fan out across the pool.
        """
        results: Dict[int, BatchItemResult] = {}
        groups: "OrderedDict[Tuple[str, str], List[Tuple[int, NormalizedEvent]]]" = OrderedDict()
        for index, raw in enumerate(events):
            try:
                ne = coerce_event(raw)
            except (TypeError, ValueError) as e:
                logger.warning("batch item %d rejected: %s", index, e)
                results[index] = BatchItemResult(index=index, success=False, error=str(e), error_kind=type(e).__name__)
                continue
            groups.setdefault(ne.indicator_key, []).append((index, ne))

        workers = max(1, int(max_workers or self.settings.batch_max_workers))
        if groups:
            with ThreadPoolExecutor(max_workers=min(workers, len(groups))) as pool:
                for group_results in pool.map(self._run_group, list(groups.values())):
                    for r in group_results:
                        results[r.index] = r

        ordered = [results[i] for i in sorted(results)]
        ok = sum(1 for r in ordered if r.success)
        return BatchReport(total=len(ordered), successful=ok, failed=len(ordered) - ok, results=ordered)
