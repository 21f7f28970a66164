"""Tests for the in-memory and SQL stores."""

import threading
from datetime import timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, StatementError

from threatscore.db import SqlStore
from threatscore.errors import StorageTimeout, StorageUnavailable
from threatscore.runtime.state import InMemoryStore
from threatscore.schemas import Alert, GraphEdge
from tests.conftest import BASE_TS, make_event


@pytest.fixture(params=["memory", "sql"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryStore()
    return SqlStore(f"sqlite:///{tmp_path / 'store.db'}")


def _alert(indicator_id, **kw):
    values = dict(
        indicator_id=indicator_id,
        rule_score=10,
        ml_score=20,
        graph_score=30,
        final_risk_score=19,
        severity="Low",
        mitre_stage="Unknown",
    )
    values.update(kw)
    return Alert(**values)


class TestIndicators:
    def test_upsert_merges(self, any_store):
        a = any_store.upsert_indicator("IP", "10.0.0.1", "fw", 0.7, BASE_TS, {"reputation": 40})
        b = any_store.upsert_indicator(
            "IP", "10.0.0.1", "ids", 0.2, BASE_TS + timedelta(minutes=5), {"severity": "high"}
        )
        assert a.id == b.id
        stored = any_store.get_indicator(a.id)
        assert stored.confidence == pytest.approx(0.7)
        assert stored.first_seen == BASE_TS
        assert stored.last_seen == BASE_TS + timedelta(minutes=5)
        assert stored.metadata == {"reputation": 40, "severity": "high"}
        assert any_store.find_indicator("IP", "10.0.0.1").id == a.id
        assert any_store.find_indicator("domain", "10.0.0.1") is None

    def test_timestamps_round_trip_tz_aware(self, any_store):
        local = BASE_TS.astimezone(timezone(timedelta(hours=2)))
        ind = any_store.upsert_indicator("IP", "10.0.0.9", "fw", 0.5, local, {})
        event = any_store.add_event(make_event("port_scan", ind.id, 0))
        stored = any_store.get_indicator(ind.id)
        assert stored.first_seen == BASE_TS
        [read_back] = any_store.recent_events(ind.id, 1)
        assert read_back.id == event.id
        assert read_back.timestamp == BASE_TS
        assert read_back.timestamp.tzinfo is not None


class TestEvents:
    def test_recent_events_newest_first_and_bounded(self, any_store):
        ind = any_store.upsert_indicator("IP", "10.0.0.1", "fw", 0.5, BASE_TS, {})
        for i in range(5):
            any_store.add_event(make_event("port_scan", ind.id, i * 10, port=1000 + i))
        recent = any_store.recent_events(ind.id, 3)
        assert [e.port for e in recent] == [1004, 1003, 1002]
        assert recent[0].timestamp == BASE_TS + timedelta(seconds=40)

    def test_event_requires_indicator(self, any_store):
        with pytest.raises(KeyError):
            any_store.add_event(make_event("port_scan", "missing"))

    def test_recent_activity_joins_indicator(self, any_store):
        a = any_store.upsert_indicator("IP", "10.0.0.1", "fw", 0.5, BASE_TS, {})
        b = any_store.upsert_indicator("domain", "evil.example.com", "dns", 0.5, BASE_TS, {})
        any_store.add_event(make_event("port_scan", a.id, 0))
        any_store.add_event(make_event("dns_query", b.id, 5))
        activity = any_store.recent_activity(10)
        assert [(i.value, e.event_type) for i, e in activity] == [
            ("evil.example.com", "dns_query"),
            ("10.0.0.1", "port_scan"),
        ]


class TestGraphRecords:
    def test_node_upsert_is_idempotent(self, any_store):
        n1 = any_store.get_or_create_graph_node("IP", "10.0.0.1")
        n2 = any_store.get_or_create_graph_node("IP", "10.0.0.1")
        assert n1.id == n2.id
        assert len(any_store.list_graph_nodes()) == 1

    def test_edges_and_metrics(self, any_store):
        a = any_store.get_or_create_graph_node("IP", "10.0.0.1")
        b = any_store.get_or_create_graph_node("domain", "evil.example.com")
        any_store.add_graph_edge(GraphEdge(source_node=a.id, target_node=b.id, relation_type="resolves_to", weight=0.7))
        any_store.add_graph_edge(GraphEdge(source_node=a.id, target_node=b.id, relation_type="resolves_to", weight=0.7))
        assert len(any_store.list_graph_edges()) == 2

        any_store.update_node_metrics({a.id: (0.3, 1.0, 0), b.id: (0.7, 0.0, 0)})
        nodes = {n.id: n for n in any_store.list_graph_nodes()}
        assert nodes[a.id].pagerank == pytest.approx(0.3)
        assert nodes[b.id].cluster_id == 0

    def test_edge_requires_nodes(self, any_store):
        a = any_store.get_or_create_graph_node("IP", "10.0.0.1")
        with pytest.raises(KeyError):
            any_store.add_graph_edge(GraphEdge(source_node=a.id, target_node="nope", relation_type="x"))


class TestAlerts:
    def test_alert_requires_indicator(self, any_store):
        with pytest.raises(KeyError):
            any_store.add_alert(_alert("missing"))

    def test_alerts_are_append_only_in_order(self, any_store):
        ind = any_store.upsert_indicator("IP", "10.0.0.1", "fw", 0.5, BASE_TS, {})
        other = any_store.upsert_indicator("IP", "10.0.0.2", "fw", 0.5, BASE_TS, {})
        first = any_store.add_alert(_alert(ind.id, triggered_rules=["a"], explanation=["A"]))
        any_store.add_alert(_alert(other.id))
        second = any_store.add_alert(_alert(ind.id))
        assert [a.id for a in any_store.list_alerts(ind.id)] == [first.id, second.id]
        assert len(any_store.list_alerts()) == 3
        assert any_store.list_alerts(ind.id)[0].triggered_rules == ["a"]


class TestFailures:
    def test_memory_lock_timeout(self):
        store = InMemoryStore(timeout_seconds=0.05)
        held = threading.Event()
        release = threading.Event()

        def hold():
            with store._guard("test"):
                held.set()
                release.wait(2)

        t = threading.Thread(target=hold)
        t.start()
        held.wait(2)
        try:
            with pytest.raises(StorageTimeout) as exc:
                store.list_alerts()
            assert exc.value.operation == "list_alerts"
        finally:
            release.set()
            t.join()

    def test_sql_errors_are_wrapped(self, tmp_path):
        store = SqlStore(f"sqlite:///{tmp_path / 'broken.db'}")
        store.engine.dispose()
        (tmp_path / "broken.db").unlink()
        (tmp_path / "broken.db").mkdir()
        with pytest.raises(StorageUnavailable) as exc:
            store.list_alerts()
        assert exc.value.operation == "list_alerts"
        assert exc.value.__cause__ is not None

    def test_sql_store_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'reopen.db'}"
        store = SqlStore(url)
        ind = store.upsert_indicator("IP", "10.0.0.1", "fw", 0.5, BASE_TS, {})
        store.add_alert(_alert(ind.id))
        store.get_or_create_graph_node("IP", "10.0.0.1")

        reopened = SqlStore(url)
        assert len(reopened.list_alerts(ind.id)) == 1
        reopened.add_alert(_alert(ind.id, final_risk_score=90, severity="Critical"))
        assert [a.severity for a in reopened.list_alerts(ind.id)] == ["Low", "Critical"]

    def test_bind_errors_are_not_storage_outages(self, tmp_path):
        store = SqlStore(f"sqlite:///{tmp_path / 'bind.db'}")
        with pytest.raises(StatementError) as exc:
            with store._session("add_event"):
                raise StatementError("bad bind", "INSERT", {}, ValueError("bad value"))
        assert not isinstance(exc.value, StorageUnavailable)

    def test_integrity_errors_are_storage_errors(self, tmp_path):
        store = SqlStore(f"sqlite:///{tmp_path / 'dup.db'}")
        with pytest.raises(StorageUnavailable) as exc:
            with store._session("add_event"):
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        assert isinstance(exc.value.__cause__, IntegrityError)
