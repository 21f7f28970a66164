"""Shared pytest fixtures for threatscore tests.

Provides:
- Fresh in-memory and SQLite-file stores
- A pipeline wired to the in-memory store
- Factories for feature vectors, events and raw payloads
"""

from datetime import datetime, timedelta, timezone

import pytest

from threatscore.db import SqlStore
from threatscore.features.extract import FeatureVector
from threatscore.runtime.engine import ThreatPipeline
from threatscore.runtime.state import InMemoryStore
from threatscore.schemas import Event


BASE_TS = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


# ── Stores and pipeline ───────────────────────────────────────────────

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sql_store(tmp_path):
    return SqlStore(f"sqlite:///{tmp_path / 'threatscore.db'}")


@pytest.fixture
def pipeline(store):
    return ThreatPipeline(store)


# ── Factory helpers ───────────────────────────────────────────────────

def make_features(**overrides) -> FeatureVector:
    values = {
        "indicator_id": "ind-1",
        "event_frequency": 1.0,
        "time_between_events": 60.0,
        "event_rate_per_minute": 0.0,
        "event_rate_per_hour": 0.0,
        "unique_event_types": 1.0,
        "event_type_diversity": 0.0,
        "port_scan_entropy": 0.0,
        "geo_risk_score": 0.0,
        "unique_geolocations": 0.0,
        "unique_ports": 0.0,
        "avg_payload_size": 0.0,
        "payload_variance": 0.0,
        "event_count_zscore": 0.0,
        "confidence_score": 0.5,
        "blacklist_score": 0.0,
        "dns_entropy": 0.0,
    }
    values.update(overrides)
    return FeatureVector(**values)


def make_event(event_type="failed_login", indicator_id="ind-1", offset_seconds=0, **kwargs) -> Event:
    return Event(
        indicator_id=indicator_id,
        event_type=event_type,
        timestamp=BASE_TS + timedelta(seconds=offset_seconds),
        **kwargs,
    )


def raw_event(event_type, ts=None, **fields):
    payload = {"event_type": event_type, "timestamp": (ts or BASE_TS).isoformat(), "source": "test"}
    payload.update(fields)
    return payload


@pytest.fixture
def features_factory():
    return make_features


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def raw_factory():
    return raw_event
