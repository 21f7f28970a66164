"""Tests for the entity graph engine and relationship inference."""

import threading
from datetime import timedelta

import pytest

from threatscore.correlation.correlate import CO_OCCURS_WITH, RESOLVES_TO, infer_relationships
from threatscore.graph.engine import (
    GraphEngine,
    GraphSnapshot,
    cluster_density,
    combine_graph_score,
    degree_centrality,
    detect_communities,
    pagerank,
)
from threatscore.schemas import GraphEdge, GraphNode, Indicator
from tests.conftest import BASE_TS, make_event


def _snapshot(node_count, links):
    nodes = [GraphNode(id=f"n{i}", entity_type="IP", entity_value=f"10.0.0.{i}") for i in range(node_count)]
    edges = [
        GraphEdge(source_node=f"n{s}", target_node=f"n{t}", relation_type="related_to", weight=w)
        for s, t, w in links
    ]
    return GraphSnapshot.build(nodes, edges)


class TestPageRank:
    @pytest.mark.parametrize(
        "node_count,links",
        [
            (1, []),
            (3, [(0, 1, 1.0), (1, 2, 1.0), (2, 0, 1.0)]),
            (4, [(0, 1, 1.0), (0, 2, 0.3), (1, 2, 0.9)]),
            (5, [(0, 1, 1.0), (1, 0, 1.0), (2, 0, 1.0), (2, 1, 1.0)]),
        ],
    )
    def test_sums_to_one(self, node_count, links):
        pr = pagerank(_snapshot(node_count, links))
        assert sum(pr.values()) == pytest.approx(1.0, abs=1e-9)

    def test_cycle_is_uniform(self):
        pr = pagerank(_snapshot(3, [(0, 1, 1.0), (1, 2, 1.0), (2, 0, 1.0)]))
        for v in pr.values():
            assert v == pytest.approx(1 / 3)

    def test_sink_collects_rank(self):
        pr = pagerank(_snapshot(3, [(0, 2, 1.0), (1, 2, 1.0)]))
        assert pr["n2"] > pr["n0"]
        assert pr["n0"] == pytest.approx(pr["n1"])

    def test_empty_graph(self):
        assert pagerank(_snapshot(0, [])) == {}


class TestStructure:
    def test_degree_centrality_counts_distinct_neighbors(self):
        snap = _snapshot(3, [(0, 1, 1.0), (0, 1, 0.5), (0, 2, 1.0), (1, 1, 1.0)])
        cent = degree_centrality(snap)
        assert cent["n0"] == 1.0
        assert cent["n1"] == 0.0

    def test_cluster_density(self):
        snap = _snapshot(3, [(0, 1, 1.0), (0, 2, 1.0), (1, 2, 1.0)])
        assert cluster_density(snap, "n0") == pytest.approx(0.5)
        assert cluster_density(snap, "n2") == 0.0

    def test_communities_respect_weight_cutoff(self):
        snap = _snapshot(4, [(0, 1, 0.9), (1, 2, 0.5), (2, 3, 0.6)])
        communities = detect_communities(snap, 0.5)
        assert sorted(sorted(c) for c in communities) == [["n0", "n1"], ["n2", "n3"]]


class TestInference:
    def test_shared_event_type_within_window(self):
        a = Indicator(type="IP", value="10.0.0.1")
        b = Indicator(type="IP", value="10.0.0.2")
        c = Indicator(type="IP", value="10.0.0.3")
        activity = [
            (a, make_event("failed_login", a.id, 0)),
            (b, make_event("failed_login", b.id, 300)),
            (c, make_event("failed_login", c.id, 3 * 3600)),
        ]
        edges = infer_relationships(activity, window_minutes=20)
        pairs = {(e.source[1], e.target[1]) for e in edges if e.relation == CO_OCCURS_WITH}
        assert pairs == {("10.0.0.1", "10.0.0.2"), ("10.0.0.2", "10.0.0.1")}
        assert all(e.weight == pytest.approx(0.6) for e in edges)

    def test_ip_resolves_to_queried_domain(self):
        ip = Indicator(type="IP", value="10.0.0.1")
        dom = Indicator(type="domain", value="evil.example.com")
        activity = [
            (ip, make_event("http_request", ip.id, 0)),
            (dom, make_event("dns_query", dom.id, 60)),
        ]
        edges = infer_relationships(activity, window_minutes=20)
        assert [(e.source, e.target, e.relation) for e in edges] == [
            (("IP", "10.0.0.1"), ("domain", "evil.example.com"), RESOLVES_TO)
        ]

    def test_output_is_deterministic(self):
        inds = [Indicator(type="IP", value=f"10.0.0.{i}") for i in range(5)]
        activity = [(ind, make_event("port_scan", ind.id, i * 30)) for i, ind in enumerate(inds)]
        assert infer_relationships(activity) == infer_relationships(list(reversed(activity)))


class TestGraphEngine:
    def test_isolated_node_scores_from_rank_only(self, store):
        engine = GraphEngine(store)
        engine.upsert_node("IP", "10.0.0.1")
        b = engine.upsert_node("IP", "10.0.0.2")
        c = engine.upsert_node("IP", "10.0.0.3")
        engine.add_edge(b, c, "related_to")
        res = engine.graph_score("10.0.0.1")
        assert res.details["cluster_density"] == 0.0
        assert res.details["neighbors"] == 0
        assert res.details["centrality"] == 0.0
        assert res.score == combine_graph_score(res.details["pagerank"], 0.0, 0.0)

    def test_unknown_node_scores_zero(self, store):
        res = GraphEngine(store).graph_score("203.0.113.1")
        assert res.score == 0
        assert res.details == {}

    def test_metrics_are_written_back(self, store):
        engine = GraphEngine(store)
        a = engine.upsert_node("IP", "10.0.0.1")
        b = engine.upsert_node("domain", "evil.example.com")
        engine.add_edge(a, b, "resolves_to", 0.9)
        engine.graph_score("10.0.0.1")
        nodes = {n.id: n for n in store.list_graph_nodes()}
        assert nodes[a].centrality == 1.0
        assert nodes[a].cluster_id == nodes[b].cluster_id
        assert sum(n.pagerank for n in nodes.values()) == pytest.approx(1.0)

    def test_edge_validation(self, store):
        engine = GraphEngine(store)
        a = engine.upsert_node("IP", "10.0.0.1")
        with pytest.raises(ValueError):
            engine.add_edge(a, a, "related_to", 0.0)
        with pytest.raises(KeyError):
            engine.add_edge(a, "missing", "related_to")

    def test_update_graph_node_upsert_is_idempotent(self, pipeline, store, raw_factory):
        indicator, event = pipeline.ingest(raw_factory("http_request", ip="10.1.1.1", domain="evil.example.com"))
        engine = GraphEngine(store)
        first = engine.update_graph(event, indicator.id)
        second = engine.update_graph(event, indicator.id)
        nodes = store.list_graph_nodes()
        assert len(nodes) == 2
        assert len({(n.entity_type, n.entity_value) for n in nodes}) == 2
        assert len(first) == 1 and len(second) == 1
        assert len(store.list_graph_edges()) == 2

    def test_rebuild_does_not_duplicate_inferred_edges(self, pipeline, store, raw_factory):
        pipeline.ingest(raw_factory("failed_login", ip="10.0.0.1"))
        pipeline.ingest(raw_factory("failed_login", ts=BASE_TS + timedelta(minutes=1), ip="10.0.0.2"))
        engine = GraphEngine(store)
        assert engine.rebuild_relationships() == 2
        assert engine.rebuild_relationships() == 0

    def test_graph_data_export(self, store):
        engine = GraphEngine(store)
        a = engine.upsert_node("IP", "10.0.0.1")
        b = engine.upsert_node("hash", "d41d8cd98f00b204e9800998ecf8427e")
        engine.add_edge(a, b, "downloaded")
        engine.snapshot()
        data = engine.graph_data()
        assert {n["label"] for n in data["nodes"]} == {"10.0.0.1", "d41d8cd98f00b204e9800998ecf8427e"}
        assert data["edges"] == [{"source": a, "target": b, "label": "downloaded", "weight": 1.0}]

    def test_graph_data_limit_keeps_edges_inside_exported_nodes(self, store):
        engine = GraphEngine(store)
        a = engine.upsert_node("IP", "10.0.0.1")
        b = engine.upsert_node("IP", "10.0.0.2")
        c = engine.upsert_node("IP", "10.0.0.3")
        engine.add_edge(b, c, "related_to")
        engine.add_edge(a, b, "related_to")
        engine.snapshot(rebuild=False)

        data = engine.graph_data(limit=1)
        assert [n["id"] for n in data["nodes"]] == [a]
        assert data["edges"] == []

        data = engine.graph_data(limit=2)
        exported = {n["id"] for n in data["nodes"]}
        assert data["edges"] == [{"source": a, "target": b, "label": "related_to", "weight": 1.0}]
        assert all(e["source"] in exported and e["target"] in exported for e in data["edges"])


class TestGraphConcurrency:
    def test_mutation_during_scoring_keeps_snapshots_whole(self, pipeline, store, raw_factory):
        engine = GraphEngine(store)
        ingested = [
            pipeline.ingest(raw_factory("http_request", ip=f"10.2.0.{i}", domain=f"d{i}.example.com"))
            for i in range(8)
        ]
        errors = []
        snapshots = []
        start = threading.Barrier(4)

        def mutate(offset):
            try:
                start.wait(5)
                for j in range(offset, len(ingested), 2):
                    indicator, event = ingested[j]
                    engine.update_graph(event, indicator.id)
                    extra = engine.upsert_node("IP", f"10.3.{offset}.{j}")
                    engine.add_edge(extra, engine.upsert_node(indicator.type, indicator.value), "related_to", 0.8)
            except Exception as e:
                errors.append(e)

        def read():
            try:
                start.wait(5)
                for _ in range(10):
                    engine.graph_score("10.2.0.0", "IP")
                    snapshots.append(engine.snapshot(rebuild=False))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=mutate, args=(k,)) for k in (0, 1)]
        threads += [threading.Thread(target=read) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert errors == []
        assert len(snapshots) == 20
        for snap in snapshots:
            assert set(snap.adjacency) <= set(snap.nodes)
            for adjs in snap.adjacency.values():
                assert all(adj.target in snap.nodes for adj in adjs)
            if snap.node_ids:
                assert sum(pagerank(snap).values()) == pytest.approx(1.0, abs=1e-9)

        final = engine.snapshot(rebuild=False)
        assert final.edge_count == len(store.list_graph_edges())
        assert final.edge_count >= 16
