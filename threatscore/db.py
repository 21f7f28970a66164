from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import UniqueConstraint
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from threatscore.config import SETTINGS
from threatscore.errors import StorageTimeout, StorageUnavailable
from threatscore.runtime.state import NodeMetrics
from threatscore.schemas import Alert, Event, GraphEdge, GraphNode, Indicator


logger = logging.getLogger(__name__)


class IndicatorRow(SQLModel, table=True):
    """An observed entity; never deleted, confidence is max-merged."""

    __table_args__ = (UniqueConstraint("type", "value", name="uq_indicator_type_value"),)

    id: str = Field(primary_key=True)
    type: str = Field(index=True)
    value: str = Field(index=True)
    source: str
    confidence: float = 0.5
    first_seen: datetime
    last_seen: datetime
    metadata_json: str = "{}"


class EventRow(SQLModel, table=True):
    id: str = Field(primary_key=True)
    indicator_id: str = Field(foreign_key="indicatorrow.id", index=True)
    event_type: str = Field(index=True)
    timestamp: datetime = Field(index=True)
    frequency: int = 1
    port: Optional[int] = None
    geo_location: Optional[str] = None
    payload_size: Optional[int] = None
    metadata_json: str = "{}"


class GraphNodeRow(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("entity_type", "entity_value", name="uq_node_entity"),)

    id: str = Field(primary_key=True)
    seq: Optional[int] = Field(default=None, index=True)  # creation order
    entity_type: str
    entity_value: str = Field(index=True)
    pagerank: float = 0.0
    centrality: float = 0.0
    cluster_id: Optional[int] = None


class GraphEdgeRow(SQLModel, table=True):
    id: str = Field(primary_key=True)
    seq: Optional[int] = Field(default=None, index=True)
    source_node: str = Field(foreign_key="graphnoderow.id", index=True)
    target_node: str = Field(foreign_key="graphnoderow.id", index=True)
    relation_type: str
    weight: float = 1.0
    timestamp: datetime


class AlertRow(SQLModel, table=True):
    """Append-only scoring outcome for one event/indicator pair."""

    id: str = Field(primary_key=True)
    seq: Optional[int] = Field(default=None, index=True)
    indicator_id: str = Field(foreign_key="indicatorrow.id", index=True)
    event_id: Optional[str] = None
    rule_score: int
    ml_score: int
    graph_score: int
    final_risk_score: int = Field(index=True)
    severity: str = Field(index=True)
    mitre_stage: str
    triggered_rules_json: str = "[]"
    explanation_json: str = "[]"
    created_at: datetime = Field(index=True)


def _aware(dt: datetime) -> datetime:
    # Written aware in UTC; older sqlmodel releases read SQLite columns back naive.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _indicator(row: IndicatorRow) -> Indicator:
    return Indicator(
        id=row.id,
        type=row.type,
        value=row.value,
        source=row.source,
        confidence=row.confidence,
        first_seen=_aware(row.first_seen),
        last_seen=_aware(row.last_seen),
        metadata=json.loads(row.metadata_json or "{}"),
    )


def _event(row: EventRow) -> Event:
    return Event(
        id=row.id,
        indicator_id=row.indicator_id,
        event_type=row.event_type,
        timestamp=_aware(row.timestamp),
        frequency=row.frequency,
        port=row.port,
        geo_location=row.geo_location,
        payload_size=row.payload_size,
        metadata=json.loads(row.metadata_json or "{}"),
    )


def _node(row: GraphNodeRow) -> GraphNode:
    return GraphNode(
        id=row.id,
        entity_type=row.entity_type,
        entity_value=row.entity_value,
        pagerank=row.pagerank,
        centrality=row.centrality,
        cluster_id=row.cluster_id,
    )


def _edge(row: GraphEdgeRow) -> GraphEdge:
    return GraphEdge(
        id=row.id,
        source_node=row.source_node,
        target_node=row.target_node,
        relation_type=row.relation_type,
        weight=row.weight,
        timestamp=_aware(row.timestamp),
    )


def _alert(row: AlertRow) -> Alert:
    return Alert(
        id=row.id,
        indicator_id=row.indicator_id,
        event_id=row.event_id,
        rule_score=row.rule_score,
        ml_score=row.ml_score,
        graph_score=row.graph_score,
        final_risk_score=row.final_risk_score,
        severity=row.severity,
        mitre_stage=row.mitre_stage,
        triggered_rules=json.loads(row.triggered_rules_json or "[]"),
        explanation=json.loads(row.explanation_json or "[]"),
        created_at=_aware(row.created_at),
    )


class SqlStore:
    """Relational store for indicators, events, graph nodes/edges and alerts.

    Every call opens its own short-lived session, so one instance can be shared
    across pipeline worker threads. SQLite lock waits are bounded by
    ``timeout_seconds``; exceeding it surfaces as StorageTimeout.
    """

    def __init__(self, database_url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        url = database_url or SETTINGS.database_url
        timeout = SETTINGS.storage_timeout_seconds if timeout_seconds is None else timeout_seconds
        kwargs: Dict[str, Any] = {"echo": False}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"timeout": timeout, "check_same_thread": False}
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_timeout"] = timeout
        self.engine = create_engine(url, **kwargs)
        SQLModel.metadata.create_all(self.engine)
        self._seq = _SequenceCounter(self)

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        session = Session(self.engine)
        try:
            yield session
        except OperationalError as e:
            session.rollback()
            msg = str(e).lower()
            logger.error("storage operation %s failed: %s", operation, e)
            if "locked" in msg or "timeout" in msg:
                raise StorageTimeout(f"{operation} timed out: {e}", operation=operation) from e
            raise StorageUnavailable(f"{operation} failed: {e}", operation=operation) from e
        except DBAPIError as e:
            session.rollback()
            logger.error("storage operation %s failed: %s", operation, e)
            raise StorageUnavailable(f"{operation} failed: {e}", operation=operation) from e
        except Exception:
            # Bind and mapping errors propagate unchanged.
            session.rollback()
            raise
        finally:
            session.close()

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
        for attempt in range(2):
            try:
                with self._session("upsert_indicator") as s:
                    row = s.exec(
                        select(IndicatorRow).where(IndicatorRow.type == indicator_type, IndicatorRow.value == value)
                    ).first()
                    if row is not None:
                        merged = _indicator(row).merged_with(confidence, seen_at, metadata)
                        row.confidence = merged.confidence
                        row.first_seen = _aware(merged.first_seen)
                        row.last_seen = _aware(merged.last_seen)
                        row.metadata_json = json.dumps(merged.metadata, default=str)
                        s.add(row)
                        s.commit()
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
                    s.add(
                        IndicatorRow(
                            id=ind.id,
                            type=ind.type,
                            value=ind.value,
                            source=ind.source,
                            confidence=ind.confidence,
                            first_seen=_aware(ind.first_seen),
                            last_seen=_aware(ind.last_seen),
                            metadata_json=json.dumps(ind.metadata, default=str),
                        )
                    )
                    s.commit()
                    return ind
            except StorageUnavailable as e:
                # A concurrent writer inserted the same (type, value); reread it once.
                if attempt == 0 and isinstance(e.__cause__, IntegrityError):
                    continue
                raise
        raise StorageUnavailable("upsert_indicator could not settle", operation="upsert_indicator")

    def get_indicator(self, indicator_id: str) -> Optional[Indicator]:
        with self._session("get_indicator") as s:
            row = s.get(IndicatorRow, indicator_id)
            return _indicator(row) if row else None

    def find_indicator(self, indicator_type: str, value: str) -> Optional[Indicator]:
        with self._session("find_indicator") as s:
            row = s.exec(
                select(IndicatorRow).where(IndicatorRow.type == indicator_type, IndicatorRow.value == value)
            ).first()
            return _indicator(row) if row else None

    def add_event(self, event: Event) -> Event:
        with self._session("add_event") as s:
            if s.get(IndicatorRow, event.indicator_id) is None:
                raise KeyError(f"Unknown indicator {event.indicator_id}")
            s.add(
                EventRow(
                    id=event.id,
                    indicator_id=event.indicator_id,
                    event_type=event.event_type,
                    timestamp=_aware(event.timestamp),
                    frequency=event.frequency,
                    port=event.port,
                    geo_location=event.geo_location,
                    payload_size=event.payload_size,
                    metadata_json=json.dumps(event.metadata, default=str),
                )
            )
            s.commit()
            return event

    def recent_events(self, indicator_id: str, limit: int) -> List[Event]:
        with self._session("recent_events") as s:
            rows = s.exec(
                select(EventRow)
                .where(EventRow.indicator_id == indicator_id)
                .order_by(col(EventRow.timestamp).desc())
                .limit(limit)
            ).all()
            return [_event(r) for r in rows]

    def recent_activity(self, limit: int) -> List[Tuple[Indicator, Event]]:
        with self._session("recent_activity") as s:
            rows = s.exec(
                select(IndicatorRow, EventRow)
                .where(IndicatorRow.id == EventRow.indicator_id)
                .order_by(col(EventRow.timestamp).desc())
                .limit(limit)
            ).all()
            return [(_indicator(i), _event(e)) for i, e in rows]

    # Graph

    def get_or_create_graph_node(self, entity_type: str, entity_value: str) -> GraphNode:
        for attempt in range(2):
            try:
                with self._session("get_or_create_graph_node") as s:
                    row = s.exec(
                        select(GraphNodeRow).where(
                            GraphNodeRow.entity_type == entity_type, GraphNodeRow.entity_value == entity_value
                        )
                    ).first()
                    if row is not None:
                        return _node(row)
                    node = GraphNode(entity_type=entity_type, entity_value=entity_value)
                    s.add(
                        GraphNodeRow(
                            id=node.id,
                            seq=self._seq.next(GraphNodeRow),
                            entity_type=entity_type,
                            entity_value=entity_value,
                        )
                    )
                    s.commit()
                    return node
            except StorageUnavailable as e:
                if attempt == 0 and isinstance(e.__cause__, IntegrityError):
                    continue
                raise
        raise StorageUnavailable("get_or_create_graph_node could not settle", operation="get_or_create_graph_node")

    def get_graph_node(self, node_id: str) -> Optional[GraphNode]:
        with self._session("get_graph_node") as s:
            row = s.get(GraphNodeRow, node_id)
            return _node(row) if row else None

    def list_graph_nodes(self) -> List[GraphNode]:
        with self._session("list_graph_nodes") as s:
            rows = s.exec(select(GraphNodeRow).order_by(col(GraphNodeRow.seq))).all()
            return [_node(r) for r in rows]

    def add_graph_edge(self, edge: GraphEdge) -> GraphEdge:
        with self._session("add_graph_edge") as s:
            for endpoint in (edge.source_node, edge.target_node):
                if s.get(GraphNodeRow, endpoint) is None:
                    raise KeyError(f"Unknown graph node {endpoint}")
            s.add(
                GraphEdgeRow(
                    id=edge.id,
                    seq=self._seq.next(GraphEdgeRow),
                    source_node=edge.source_node,
                    target_node=edge.target_node,
                    relation_type=edge.relation_type,
                    weight=edge.weight,
                    timestamp=_aware(edge.timestamp),
                )
            )
            s.commit()
            return edge

    def list_graph_edges(self) -> List[GraphEdge]:
        with self._session("list_graph_edges") as s:
            rows = s.exec(select(GraphEdgeRow).order_by(col(GraphEdgeRow.seq))).all()
            return [_edge(r) for r in rows]

    def update_node_metrics(self, metrics: NodeMetrics) -> None:
        if not metrics:
            return
        with self._session("update_node_metrics") as s:
            rows = s.exec(select(GraphNodeRow).where(col(GraphNodeRow.id).in_(list(metrics)))).all()
            for row in rows:
                pr, cent, cluster_id = metrics[row.id]
                row.pagerank = float(pr)
                row.centrality = float(cent)
                row.cluster_id = cluster_id
                s.add(row)
            s.commit()

    # Alerts

    def add_alert(self, alert: Alert) -> Alert:
        with self._session("add_alert") as s:
            if s.get(IndicatorRow, alert.indicator_id) is None:
                raise KeyError(f"Unknown indicator {alert.indicator_id}")
            s.add(
                AlertRow(
                    id=alert.id,
                    seq=self._seq.next(AlertRow),
                    indicator_id=alert.indicator_id,
                    event_id=alert.event_id,
                    rule_score=alert.rule_score,
                    ml_score=alert.ml_score,
                    graph_score=alert.graph_score,
                    final_risk_score=alert.final_risk_score,
                    severity=alert.severity,
                    mitre_stage=alert.mitre_stage,
                    triggered_rules_json=json.dumps(alert.triggered_rules),
                    explanation_json=json.dumps(alert.explanation),
                    created_at=_aware(alert.created_at),
                )
            )
            s.commit()
            return alert

    def list_alerts(self, indicator_id: Optional[str] = None) -> List[Alert]:
        with self._session("list_alerts") as s:
            q = select(AlertRow)
            if indicator_id is not None:
                q = q.where(AlertRow.indicator_id == indicator_id)
            rows = s.exec(q.order_by(col(AlertRow.seq))).all()
            return [_alert(r) for r in rows]


class _SequenceCounter:
    """Monotonic insertion counters so list_* calls return creation order."""

    def __init__(self, store: SqlStore):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {}
        with Session(store.engine) as s:
            for model in (GraphNodeRow, GraphEdgeRow, AlertRow):
                current = s.exec(select(col(model.seq)).order_by(col(model.seq).desc())).first()
                self._values[model.__name__] = int(current or 0)

    def next(self, model: type) -> int:
        with self._lock:
            self._values[model.__name__] += 1
            return self._values[model.__name__]
