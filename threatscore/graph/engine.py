"""Entity relationship graph
===========================
Indicators become nodes; inferred or observed relations become directed,
weighted edges. Scoring always works on a full snapshot rebuilt from storage:

  1. reload persisted nodes and edges
  2. add deterministic co-occurrence / resolution edges (see correlate.py)
  3. freeze an immutable GraphSnapshot under the engine lock
  4. compute PageRank, degree centrality, cluster density and communities
     on the snapshot, outside the lock
  5. write the refreshed pagerank / centrality / cluster_id back to the nodes

Mutations (upsert_node, add_edge, update_graph, rebuild_relationships) hold the
same lock, so a snapshot never observes a half-applied update.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from threatscore.config import SETTINGS, Settings
from threatscore.correlation.correlate import infer_relationships
from threatscore.runtime.state import Store
from threatscore.schemas import Event, GraphEdge, GraphNode, ScoreResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Adjacent:
    target: str
    relation: str
    weight: float


@dataclass(frozen=True)
class GraphSnapshot:
    node_ids: Tuple[str, ...]
    nodes: Mapping[str, GraphNode]
    adjacency: Mapping[str, Tuple[Adjacent, ...]]
    edge_count: int

    @classmethod
    def build(cls, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> "GraphSnapshot":
        node_map = {n.id: n for n in nodes}
        adjacency: Dict[str, List[Adjacent]] = {n.id: [] for n in nodes}
        count = 0
        for e in edges:
            if e.source_node not in node_map or e.target_node not in node_map:
                continue
            adjacency[e.source_node].append(Adjacent(e.target_node, e.relation_type, e.weight))
            count += 1
        return cls(
            node_ids=tuple(node_map),
            nodes=node_map,
            adjacency={k: tuple(v) for k, v in adjacency.items()},
            edge_count=count,
        )

    def out_neighbors(self, node_id: str) -> List[str]:
        """Distinct successors, excluding self-loops, in first-seen order."""
        seen: Dict[str, None] = {}
        for adj in self.adjacency.get(node_id, ()):
            if adj.target != node_id:
                seen.setdefault(adj.target, None)
        return list(seen)

    def find(self, entity_value: str, entity_type: Optional[str] = None) -> Optional[GraphNode]:
        for nid in self.node_ids:
            n = self.nodes[nid]
            if n.entity_value == entity_value and (entity_type is None or n.entity_type == entity_type):
                return n
        return None


def pagerank(snapshot: GraphSnapshot, iterations: int = 20, damping: float = 0.85) -> Dict[str, float]:
    """Power-iteration PageRank over the snapshot.

    Each node's rank is split evenly over its outgoing edges (edge weights do not
    scale flow). Rank held by dangling nodes is spread uniformly so the values
    always sum to 1.
    """
    ids = snapshot.node_ids
    n = len(ids)
    if n == 0:
        return {}
    index = {nid: i for i, nid in enumerate(ids)}
    src: List[int] = []
    dst: List[int] = []
    for nid in ids:
        for adj in snapshot.adjacency.get(nid, ()):
            src.append(index[nid])
            dst.append(index[adj.target])
    src_idx = np.array(src, dtype=np.int64)
    dst_idx = np.array(dst, dtype=np.int64)
    out_degree = np.bincount(src_idx, minlength=n).astype(np.float64)
    dangling = out_degree == 0

    pr = np.full(n, 1.0 / n, dtype=np.float64)
    for _ in range(iterations):
        flow = np.zeros(n, dtype=np.float64)
        if src_idx.size:
            np.add.at(flow, dst_idx, pr[src_idx] / out_degree[src_idx])
        dangling_mass = float(pr[dangling].sum())
        pr = (1.0 - damping) / n + damping * (flow + dangling_mass / n)
    return {nid: float(pr[i]) for i, nid in enumerate(ids)}


def degree_centrality(snapshot: GraphSnapshot) -> Dict[str, float]:
    n = len(snapshot.node_ids)
    max_degree = n - 1
    if max_degree <= 0:
        return {nid: 0.0 for nid in snapshot.node_ids}
    return {nid: len(snapshot.out_neighbors(nid)) / max_degree for nid in snapshot.node_ids}


def cluster_density(snapshot: GraphSnapshot, node_id: str) -> float:
    """Fraction of possible directed links realized among a node's neighbours."""
    neighbors = snapshot.out_neighbors(node_id)
    k = len(neighbors)
    if k < 2:
        return 0.0
    members = set(neighbors)
    links = 0
    for u in neighbors:
        links += sum(1 for v in snapshot.out_neighbors(u) if v in members and v != u)
    return links / (k * (k - 1))


def detect_communities(snapshot: GraphSnapshot, min_weight: float = 0.5) -> List[List[str]]:
    """Components reachable through edges heavier than `min_weight` (BFS)."""
    visited: set = set()
    communities: List[List[str]] = []
    for start in snapshot.node_ids:
        if start in visited:
            continue
        community: List[str] = []
        queue = deque([start])
        while queue:
            node = queue.popleft()
            if node in visited:
                continue
            visited.add(node)
            community.append(node)
            for adj in snapshot.adjacency.get(node, ()):
                if adj.weight > min_weight and adj.target not in visited:
                    queue.append(adj.target)
        communities.append(community)
    return communities


def relation_for(source_type: str, target_type: str) -> str:
    if source_type == "IP" and target_type == "domain":
        return "resolves_to"
    if target_type == "hash":
        return "downloaded"
    if target_type == "file":
        return "touched"
    if "user" in (source_type, target_type):
        return "authenticated_as"
    return "related_to"


def combine_graph_score(pr: float, centrality: float, density: float) -> int:
    raw = 0.4 * (pr * 1000) + 0.3 * (centrality * 100) + 0.3 * (density * 100)
    return int(round(min(100.0, max(0.0, raw))))


class GraphEngine:
    """Owns the in-memory graph caches for one process; no module-level state."""

    def __init__(self, store: Store, settings: Settings = SETTINGS):
        self.store = store
        self.settings = settings
        self._lock = threading.RLock()
        self._snapshot = GraphSnapshot.build([], [])

    # Mutations

    def upsert_node(self, entity_type: str, entity_value: str) -> str:
        with self._lock:
            return self.store.get_or_create_graph_node(entity_type, entity_value).id

    def add_edge(self, source: str, target: str, relation: str, weight: float = 1.0) -> str:
        if not (0.0 < float(weight) <= 1.0):
            raise ValueError(f"Edge weight must be in (0, 1], got {weight}")
        with self._lock:
            for endpoint in (source, target):
                if self.store.get_graph_node(endpoint) is None:
                    raise KeyError(f"Unknown graph node {endpoint}")
            edge = self.store.add_graph_edge(
                GraphEdge(source_node=source, target_node=target, relation_type=relation, weight=float(weight))
            )
            return edge.id

    def rebuild_relationships(self) -> int:
        """Add inferred edges that are not yet persisted; returns how many were added."""
        with self._lock:
            activity = self.store.recent_activity(self.settings.graph_history_events)
            node_ids: Dict[Tuple[str, str], str] = {}
            for indicator, _ in activity:
                key = (indicator.type, indicator.value)
                if key not in node_ids:
                    node_ids[key] = self.upsert_node(*key)

            existing = {(e.source_node, e.target_node, e.relation_type) for e in self.store.list_graph_edges()}
            added = 0
            for inferred in infer_relationships(activity, self.settings.correlation_window_minutes):
                src = node_ids[inferred.source]
                dst = node_ids[inferred.target]
                if (src, dst, inferred.relation) in existing:
                    continue
                self.add_edge(src, dst, inferred.relation, inferred.weight)
                existing.add((src, dst, inferred.relation))
                added += 1
        logger.debug("graph rebuild: %d activity rows, %d new inferred edges", len(activity), added)
        return added

    def update_graph(self, event: Event, indicator_id: str) -> List[str]:
        """Record an observed event: upsert its indicator node and link related entities.

        Node upserts are idempotent; edges are appended on every call.
        """
        indicator = self.store.get_indicator(indicator_id)
        if indicator is None:
            raise KeyError(f"Unknown indicator {indicator_id}")
        related = event.metadata.get("related") or {}
        edge_ids: List[str] = []
        with self._lock:
            node_id = self.upsert_node(indicator.type, indicator.value)
            for entity_type, entity_value in sorted(related.items()):
                if not entity_value:
                    continue
                if (entity_type, str(entity_value)) == (indicator.type, indicator.value):
                    continue
                other = self.upsert_node(entity_type, str(entity_value))
                edge_ids.append(self.add_edge(node_id, other, relation_for(indicator.type, entity_type)))
        return edge_ids

    # Snapshots and scoring

    def snapshot(self, rebuild: bool = True) -> GraphSnapshot:
        with self._lock:
            if rebuild:
                self.rebuild_relationships()
            snap = GraphSnapshot.build(self.store.list_graph_nodes(), self.store.list_graph_edges())
            self._snapshot = snap
        return snap

    def metrics(self, snap: GraphSnapshot) -> Dict[str, Dict[str, float]]:
        pr = pagerank(snap, self.settings.pagerank_iterations, self.settings.pagerank_damping)
        centrality = degree_centrality(snap)
        communities = detect_communities(snap, self.settings.community_min_weight)
        cluster_of = {nid: cid for cid, members in enumerate(communities) for nid in members}
        sizes = {cid: len(members) for cid, members in enumerate(communities)}
        return {
            nid: {
                "pagerank": pr.get(nid, 0.0),
                "centrality": centrality.get(nid, 0.0),
                "cluster_id": cluster_of.get(nid),
                "cluster_size": sizes.get(cluster_of.get(nid), 0),
            }
            for nid in snap.node_ids
        }

    def graph_score(self, indicator_value: str, entity_type: Optional[str] = None) -> ScoreResult:
        snap = self.snapshot()
        node = snap.find(indicator_value, entity_type)
        if node is None:
            return ScoreResult(score=0, details={})

        metrics = self.metrics(snap)
        self.store.update_node_metrics(
            {nid: (m["pagerank"], m["centrality"], m["cluster_id"]) for nid, m in metrics.items()}
        )

        m = metrics[node.id]
        density = cluster_density(snap, node.id)
        return ScoreResult(
            score=combine_graph_score(m["pagerank"], m["centrality"], density),
            details={
                "node_id": node.id,
                "pagerank": m["pagerank"],
                "centrality": m["centrality"],
                "cluster_density": density,
                "neighbors": len(snap.out_neighbors(node.id)),
                "cluster_id": m["cluster_id"],
                "cluster_size": m["cluster_size"],
            },
        )

    def graph_data(self, limit: Optional[int] = None) -> Dict[str, List[Dict[str, object]]]:
        """Nodes and edges for visualization consumers, from the last snapshot taken.

        Only edges whose endpoints are both among the exported nodes are included.
        """
        with self._lock:
            snap = self._snapshot
        node_ids = list(snap.node_ids)[:limit] if limit else list(snap.node_ids)
        nodes = [
            {
                "id": nid,
                "label": snap.nodes[nid].entity_value,
                "type": snap.nodes[nid].entity_type,
            }
            for nid in node_ids
        ]
        kept = set(node_ids)
        edges = [
            {"source": src, "target": adj.target, "label": adj.relation, "weight": adj.weight}
            for src in node_ids
            for adj in snap.adjacency.get(src, ())
            if adj.target in kept
        ]
        if limit:
            edges = edges[:limit]
        return {"nodes": nodes, "edges": edges}
