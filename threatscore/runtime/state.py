from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from threatscore.config import SETTINGS
from threatscore.errors import StorageTimeout
from threatscore.schemas import Alert, Event, GraphEdge, GraphNode, Indicator


NodeMetrics = Dict[str, Tuple[float, float, Optional[int]]]


class Store(Protocol):
    """Storage collaborator consumed by the pipeline.

    Implementations raise StorageUnavailable (or StorageTimeout) when the
    backend fails, and KeyError when a referenced record does not exist.
    """

    def upsert_indicator(
        self,
        indicator_type: str,
        value: str,
        source: str,
        confidence: float,
        seen_at: datetime,
        metadata: Dict[str, Any],
    ) -> Indicator: ...

    def get_indicator(self, indicator_id: str) -> Optional[Indicator]: ...

    def find_indicator(self, indicator_type: str, value: str) -> Optional[Indicator]: ...

    def add_event(self, event: Event) -> Event: ...

    def recent_events(self, indicator_id: str, limit: int) -> List[Event]: ...

    def recent_activity(self, limit: int) -> List[Tuple[Indicator, Event]]: ...

    def get_or_create_graph_node(self, entity_type: str, entity_value: str) -> GraphNode: ...

    def get_graph_node(self, node_id: str) -> Optional[GraphNode]: ...

    def list_graph_nodes(self) -> List[GraphNode]: ...

    def add_graph_edge(self, edge: GraphEdge) -> GraphEdge: ...

    def list_graph_edges(self) -> List[GraphEdge]: ...

    def update_node_metrics(self, metrics: NodeMetrics) -> None: ...

    def add_alert(self, alert: Alert) -> Alert: ...

    def list_alerts(self, indicator_id: Optional[str] = None) -> List[Alert]: ...


class InMemoryStore:
    """Process-local store used by tests, the trainer and ad-hoc replays."""

    def __init__(self, timeout_seconds: float = SETTINGS.storage_timeout_seconds):
        self._timeout = timeout_seconds
        self._lock = threading.RLock()
        self._indicators: Dict[str, Indicator] = {}
        self._indicator_keys: Dict[Tuple[str, str], str] = {}
        self._events: List[Event] = []
        self._events_by_indicator: Dict[str, List[Event]] = {}
        self._nodes: Dict[str, GraphNode] = {}
        self._node_keys: Dict[Tuple[str, str], str] = {}
        self._edges: List[GraphEdge] = []
        self._alerts: List[Alert] = []

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._timeout):
            raise StorageTimeout(f"Timed out after {self._timeout}s waiting for store lock", operation=operation)
        try:
            yield
        finally:
            self._lock.release()

    # Indicators / events

    def upsert_indicator(
        self,
        indicator_type: str,
        value: str,
        source: str,
        confidence: float,
        seen_at: datetime,
        metadata: Dict[str, Any],
    ) -> Indicator:
        with self._guard("upsert_indicator"):
            key = (indicator_type, value)
            existing_id = self._indicator_keys.get(key)
            if existing_id is not None:
                merged = self._indicators[existing_id].merged_with(confidence, seen_at, metadata)
                self._indicators[existing_id] = merged
                return merged
            ind = Indicator(
                type=indicator_type,
                value=value,
                source=source,
                confidence=confidence,
                first_seen=seen_at,
                last_seen=seen_at,
                metadata=dict(metadata),
            )
            self._indicators[ind.id] = ind
            self._indicator_keys[key] = ind.id
            return ind

    def get_indicator(self, indicator_id: str) -> Optional[Indicator]:
        with self._guard("get_indicator"):
            return self._indicators.get(indicator_id)

    def find_indicator(self, indicator_type: str, value: str) -> Optional[Indicator]:
        with self._guard("find_indicator"):
            iid = self._indicator_keys.get((indicator_type, value))
            return self._indicators.get(iid) if iid else None

    def add_event(self, event: Event) -> Event:
        with self._guard("add_event"):
            if event.indicator_id not in self._indicators:
                raise KeyError(f"Unknown indicator {event.indicator_id}")
            self._events.append(event)
            self._events_by_indicator.setdefault(event.indicator_id, []).append(event)
            return event

    def recent_events(self, indicator_id: str, limit: int) -> List[Event]:
        with self._guard("recent_events"):
            events = list(self._events_by_indicator.get(indicator_id, []))
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def recent_activity(self, limit: int) -> List[Tuple[Indicator, Event]]:
        with self._guard("recent_activity"):
            events = list(self._events)
            indicators = dict(self._indicators)
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return [(indicators[e.indicator_id], e) for e in events[:limit]]

    # Graph

    def get_or_create_graph_node(self, entity_type: str, entity_value: str) -> GraphNode:
        with self._guard("get_or_create_graph_node"):
            key = (entity_type, entity_value)
            nid = self._node_keys.get(key)
            if nid is not None:
                return self._nodes[nid]
            node = GraphNode(entity_type=entity_type, entity_value=entity_value)
            self._nodes[node.id] = node
            self._node_keys[key] = node.id
            return node

    def get_graph_node(self, node_id: str) -> Optional[GraphNode]:
        with self._guard("get_graph_node"):
            return self._nodes.get(node_id)

    def list_graph_nodes(self) -> List[GraphNode]:
        with self._guard("list_graph_nodes"):
            return list(self._nodes.values())

    def add_graph_edge(self, edge: GraphEdge) -> GraphEdge:
        with self._guard("add_graph_edge"):
            for endpoint in (edge.source_node, edge.target_node):
                if endpoint not in self._nodes:
                    raise KeyError(f"Unknown graph node {endpoint}")
            self._edges.append(edge)
            return edge

    def list_graph_edges(self) -> List[GraphEdge]:
        with self._guard("list_graph_edges"):
            return list(self._edges)

    def update_node_metrics(self, metrics: NodeMetrics) -> None:
        with self._guard("update_node_metrics"):
            for node_id, (pr, cent, cluster_id) in metrics.items():
                node = self._nodes.get(node_id)
                if node is None:
                    continue
                self._nodes[node_id] = node.model_copy(
                    update={"pagerank": pr, "centrality": cent, "cluster_id": cluster_id}
                )

    # Alerts

    def add_alert(self, alert: Alert) -> Alert:
        with self._guard("add_alert"):
            if alert.indicator_id not in self._indicators:
                raise KeyError(f"Unknown indicator {alert.indicator_id}")
            self._alerts.append(alert)
            return alert

    def list_alerts(self, indicator_id: Optional[str] = None) -> List[Alert]:
        with self._guard("list_alerts"):
            if indicator_id is None:
                return list(self._alerts)
            return [a for a in self._alerts if a.indicator_id == indicator_id]
