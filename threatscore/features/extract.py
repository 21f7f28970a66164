from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, Hashable, Iterable, List, Optional, Sequence

import numpy as np

from threatscore.config import SETTINGS, Settings
from threatscore.errors import NoDataError
from threatscore.runtime.state import Store
from threatscore.schemas import Event, Indicator


logger = logging.getLogger(__name__)


# Fixed index order consumed by the ML scorer; do not reorder.
NORMALIZED_FEATURE_NAMES: List[str] = [
    "event_frequency_norm",
    "event_rate_norm",
    "unique_event_types_norm",
    "event_diversity_norm",
    "port_entropy_norm",
    "geo_risk_norm",
    "blacklist_norm",
    "dns_entropy_norm",
    "payload_variance_norm",
    "time_between_events_inv",
]

# Raw feature -> divisor used to rescale into [0, 1].
NORMALIZATION_CAPS: Dict[str, float] = {
    "event_frequency": 1000.0,
    "event_rate_per_minute": 100.0,
    "unique_event_types": 10.0,
    "event_type_diversity": 5.0,
    "port_scan_entropy": 10.0,
    "geo_risk_score": 100.0,
    "blacklist_score": 100.0,
    "dns_entropy": 5.0,
    "payload_variance": 1_000_000.0,
}


def shannon_entropy(counts: Iterable[float]) -> float:
    """Base-2 Shannon entropy of a frequency distribution.

    Empty and single-symbol distributions have entropy 0.
    """
    values = [float(c) for c in counts if c > 0]
    total = sum(values)
    if total <= 0:
        return 0.0
    entropy = 0.0
    for c in values:
        p = c / total
        entropy -= p * math.log2(p)
    # -0.0 for a single symbol
    return abs(entropy)


def entropy_of(items: Iterable[Hashable]) -> float:
    return shannon_entropy(Counter(items).values())


@dataclass(frozen=True)
class FeatureVector:
    """Fixed-schema numeric features for one indicator's event window."""

    indicator_id: str
    event_frequency: float
    time_between_events: float
    event_rate_per_minute: float
    event_rate_per_hour: float
    unique_event_types: float
    event_type_diversity: float
    port_scan_entropy: float
    geo_risk_score: float
    unique_geolocations: float
    unique_ports: float
    avg_payload_size: float
    payload_variance: float
    event_count_zscore: float
    confidence_score: float
    blacklist_score: float
    dns_entropy: float

    def as_dict(self) -> Dict[str, float]:
        d = asdict(self)
        d.pop("indicator_id")
        return d

    def normalized(self) -> np.ndarray:
        """Rescale into [0, 1] in NORMALIZED_FEATURE_NAMES order."""
        caps = NORMALIZATION_CAPS
        x = np.array(
            [
                self.event_frequency / caps["event_frequency"],
                self.event_rate_per_minute / caps["event_rate_per_minute"],
                self.unique_event_types / caps["unique_event_types"],
                self.event_type_diversity / caps["event_type_diversity"],
                self.port_scan_entropy / caps["port_scan_entropy"],
                self.geo_risk_score / caps["geo_risk_score"],
                self.blacklist_score / caps["blacklist_score"],
                self.dns_entropy / caps["dns_entropy"],
                self.payload_variance / caps["payload_variance"],
                1.0 / (1.0 + max(0.0, self.time_between_events)),
            ],
            dtype=np.float64,
        )
        return np.clip(x, 0.0, 1.0)


def mean_interarrival_seconds(timestamps: Sequence[datetime]) -> float:
    if len(timestamps) < 2:
        return 0.0
    ordered = sorted(timestamps)
    gaps = [(b - a).total_seconds() for a, b in zip(ordered, ordered[1:])]
    return float(np.mean(gaps))


def event_rate(timestamps: Sequence[datetime], as_of: datetime, window_seconds: int) -> float:
    """Events inside the trailing window, expressed per minute."""
    if not timestamps or window_seconds <= 0:
        return 0.0
    recent = sum(1 for ts in timestamps if (as_of - ts).total_seconds() < window_seconds)
    return recent / window_seconds * 60.0


def geo_risk_score(events: Sequence[Event], high_risk: Iterable[str]) -> float:
    geo = [e.geo_location for e in events if e.geo_location]
    if not geo:
        return 0.0
    risky = set(high_risk)
    return sum(1 for g in geo if g in risky) / len(geo) * 100.0


def payload_stats(events: Sequence[Event]) -> tuple:
    payloads = np.array([e.payload_size for e in events if e.payload_size], dtype=np.float64)
    if payloads.size == 0:
        return 0.0, 0.0
    avg = float(payloads.mean())
    var = float(payloads.var()) if payloads.size >= 2 else 0.0
    return avg, var


def blacklist_score(indicator: Indicator, denylist: Iterable[str]) -> float:
    if indicator.value in set(denylist):
        return 90.0
    reputation = indicator.metadata.get("reputation")
    if reputation is None or isinstance(reputation, bool):
        return 0.0
    try:
        rep = float(reputation)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(rep):
        return 0.0
    return float(min(100.0, max(0.0, 100.0 - rep)))


def dns_entropy(indicator: Indicator, events: Sequence[Event]) -> float:
    if indicator.type != "domain":
        return 0.0
    if not any(e.event_type == "dns_query" for e in events):
        return 0.0
    return entropy_of(indicator.value)


def compute_features(
    indicator: Indicator,
    events: Sequence[Event],
    settings: Settings = SETTINGS,
    as_of: Optional[datetime] = None,
) -> FeatureVector:
    """Pure feature computation over an already-loaded event window."""
    if not events:
        raise NoDataError(indicator.id)

    timestamps = [e.timestamp for e in events]
    ref = as_of or max(timestamps)
    ports = [e.port for e in events if e.port]
    avg_payload, payload_var = payload_stats(events)
    count = len(events)
    std = settings.zscore_std or 1.0

    return FeatureVector(
        indicator_id=indicator.id,
        event_frequency=float(count),
        time_between_events=mean_interarrival_seconds(timestamps),
        event_rate_per_minute=event_rate(timestamps, ref, settings.rate_window_minute_seconds),
        event_rate_per_hour=event_rate(timestamps, ref, settings.rate_window_hour_seconds),
        unique_event_types=float(len({e.event_type for e in events})),
        event_type_diversity=entropy_of(e.event_type for e in events),
        port_scan_entropy=entropy_of(ports),
        geo_risk_score=geo_risk_score(events, settings.high_risk_geos),
        unique_geolocations=float(len({e.geo_location for e in events if e.geo_location})),
        unique_ports=float(len(set(ports))),
        avg_payload_size=avg_payload,
        payload_variance=payload_var,
        event_count_zscore=(count - settings.zscore_mean) / std,
        confidence_score=float(indicator.confidence),
        blacklist_score=blacklist_score(indicator, settings.denylist),
        dns_entropy=dns_entropy(indicator, events),
    )


class FeatureExtractor:
    """Loads an indicator's bounded history from storage and computes features."""

    def __init__(self, store: Store, settings: Settings = SETTINGS):
        self.store = store
        self.settings = settings

    def load_window(self, indicator_id: str) -> tuple:
        indicator = self.store.get_indicator(indicator_id)
        if indicator is None:
            raise KeyError(f"Unknown indicator {indicator_id}")
        events = self.store.recent_events(indicator_id, self.settings.max_history_events)
        logger.debug("indicator %s: %d events in window", indicator_id, len(events))
        return indicator, events

    def extract(self, indicator_id: str, as_of: Optional[datetime] = None) -> FeatureVector:
        indicator, events = self.load_window(indicator_id)
        return compute_features(indicator, events, self.settings, as_of=as_of)
