import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from flowsim.graph import (
    Edge,
    FlowGraph,
    GraphError,
    find_edge,
    find_edge_between,
    graph_from_dict,
    list_templates,
    load_graph,
    load_template,
    node_from_dict,
    outgoing_edges,
)


def test_node_accepts_editor_payload():
    node = node_from_dict({
        "id": "n1",
        "type": "LoadBalancer",
        "data": {"label": "Edge LB", "latency": 30, "failureRate": 150, "capacity": 0, "sampleRate": -4},
    })
    assert node.kind == "load_balancer"
    assert node.display_name == "Edge LB"
    assert node.latency == 30.0
    assert node.failure_rate == 100.0
    assert node.capacity == 1
    assert node.sample_rate == 0.0


def test_node_without_params_keeps_them_unset():
    node = node_from_dict({"id": "x"})
    assert node.kind == "service"
    assert node.display_name == "x"
    assert (node.latency, node.failure_rate, node.capacity, node.sample_rate) == (None, None, None, None)


@pytest.mark.parametrize("payload", [
    [],
    {"nodes": {"a": {}}},
    {"nodes": [{"type": "client"}]},
    {"nodes": [{"id": "a"}, {"id": "a"}]},
    {"nodes": [{"id": "a"}], "edges": {"x": 1}},
    {"nodes": [{"id": "a"}], "edges": ["a->b"]},
])
def test_bad_payloads_raise_graph_error(payload):
    with pytest.raises(GraphError):
        graph_from_dict(payload)


def test_dangling_and_duplicate_edges_are_dropped(capsys):
    nodes, edges = graph_from_dict({
        "nodes": [{"id": "a"}, {"id": "b"}],
        "edges": [
            {"id": "ab", "source": "a", "target": "b"},
            {"id": "ab", "source": "b", "target": "a"},
            {"id": "ax", "source": "a", "target": "ghost"},
        ],
    })
    assert [e.id for e in edges] == ["ab"]
    out = capsys.readouterr().out
    assert "[graph] WARN" in out
    assert "ghost" in out


def test_unknown_kind_is_kept_with_a_warning(capsys):
    node = node_from_dict({"id": "c1", "type": "clinet"})
    assert node.kind == "clinet"
    out = capsys.readouterr().out
    assert "[graph] WARN" in out and "clinet" in out

    node_from_dict({"id": "c2", "type": "client"})
    assert capsys.readouterr().out == ""


def test_load_graph_from_yaml(tmp_path):
    path = tmp_path / "g.yaml"
    path.write_text(
        "nodes:\n"
        "  - { id: c, type: client }\n"
        "  - { id: s, type: service, latency: 250 }\n"
        "edges:\n"
        "  - { source: c, target: s }\n",
        encoding="utf-8",
    )
    nodes, edges = load_graph(path)
    assert [n.id for n in nodes] == ["c", "s"]
    assert edges == [Edge(id="e-c-s", source="c", target="s")]


def test_bundled_templates():
    ids = [t["id"] for t in list_templates()]
    assert sorted(ids) == ["caching-pattern", "microservices", "msg-queue", "simple-api"]

    nodes, edges = load_template("simple-api")
    by_id = {n.id: n for n in nodes}
    assert by_id["t1-1"].kind == "client"
    assert by_id["t1-2"].latency == 100.0
    assert by_id["t1-3"].latency == 500.0
    assert len(edges) == 2

    with pytest.raises(KeyError):
        load_template("nope")


def test_edge_lookups():
    edges = [
        Edge("e1", "a", "b"),
        Edge("e2", "b", "c"),
        Edge("e3", "c", "b"),
    ]
    assert [e.id for e in outgoing_edges(edges, "b")] == ["e2"]
    assert find_edge(edges, "b", "a") is None
    assert find_edge(edges, "a", "b").id == "e1"
    assert find_edge_between(edges, "b", "a").id == "e1"
    assert find_edge_between(edges, "b", "c").id == "e2"
    assert find_edge_between(edges, "a", "c") is None


def test_flow_graph_replace_returns_copies():
    graph = FlowGraph.from_template("simple-api")
    nodes = graph.get_nodes()
    nodes.clear()
    assert len(graph.get_nodes()) == 3

    graph.replace([], [])
    assert graph.to_dict() == {"nodes": [], "edges": []}
