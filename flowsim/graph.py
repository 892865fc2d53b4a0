#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/graph.py — read-only diagram model consumed by the tick engine.

Responsibilities
---------------
- Node / Edge data classes with per-node simulation parameters
- Parse diagrams from dicts (flat fields or editor-style ``data: {...}``)
- Load diagrams from YAML files and from ./templates/*.yaml
- FlowGraph: a lock-guarded holder exposing the get_nodes/get_edges
  accessor pair the engine reads fresh every tick
- Routing lookups: outgoing edges, undirected edge match for backtracking

Only non-stdlib dep is PyYAML.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .state import clamp, safe_float, safe_int

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

NODE_KINDS = {"client", "api", "service", "database", "cache", "queue", "load_balancer", "cdn"}
KIND_ALIASES = {
    "loadbalancer": "load_balancer",
    "load-balancer": "load_balancer",
    "lb": "load_balancer",
    "db": "database",
}


class GraphError(ValueError):
    """Raised when a diagram payload cannot be turned into a graph."""


# ----------------------------- data classes -----------------------------

@dataclass(frozen=True)
class Node:
    id: str
    kind: str = "service"
    label: str = ""
    latency: Optional[float] = None        # ms; travel time of the edge arriving here
    failure_rate: Optional[float] = None   # 0..100
    capacity: Optional[int] = None         # max concurrent processing packets
    sample_rate: Optional[float] = None    # 0..100, forward rate

    @property
    def display_name(self) -> str:
        return self.label or self.id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str

    def connects(self, a: str, b: str) -> bool:
        """Undirected endpoint match."""
        return (self.source == a and self.target == b) or (self.source == b and self.target == a)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ----------------------------- parsing -----------------------------

def normalize_kind(kind: Any) -> str:
    k = str(kind or "service").strip().lower()
    return KIND_ALIASES.get(k, k)


def _pick(raw: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in raw and raw[k] is not None:
            return raw[k]
    return None


def node_from_dict(raw: Dict[str, Any]) -> Node:
    nid = raw.get("id")
    if not nid:
        raise GraphError("every node needs an 'id'")
    # Editor payloads nest parameters under 'data'
    data = dict(raw.get("data") or {})
    merged = {**data, **{k: v for k, v in raw.items() if k != "data"}}

    kind = normalize_kind(_pick(merged, "kind", "type"))
    if kind not in NODE_KINDS:
        print(f"[graph] WARN: node {nid} has unknown kind '{kind}'")

    latency = safe_float(_pick(merged, "latency", "latency_ms"), None)
    if latency is not None:
        latency = max(0.0, latency)
    failure = safe_float(_pick(merged, "failure_rate", "failureRate"), None)
    if failure is not None:
        failure = clamp(failure, 0.0, 100.0)
    sample = safe_float(_pick(merged, "sample_rate", "sampleRate", "forward_rate"), None)
    if sample is not None:
        sample = clamp(sample, 0.0, 100.0)
    capacity = _pick(merged, "capacity")
    if capacity is not None:
        capacity = max(1, safe_int(capacity, 1))

    return Node(
        id=str(nid),
        kind=kind,
        label=str(merged.get("label") or ""),
        latency=latency,
        failure_rate=failure,
        capacity=capacity,
        sample_rate=sample,
    )


def graph_from_dict(obj: Dict[str, Any]) -> Tuple[List[Node], List[Edge]]:
    """
    Accepts:
      { "nodes": [ {id, type|kind, label, latency, failureRate, capacity, sampleRate}, ... ],
        "edges": [ {id?, source, target}, ... ] }
    Node parameters may also live under a nested 'data' mapping.
    """
    if not isinstance(obj, dict):
        raise GraphError("graph must be a mapping with 'nodes' and 'edges'")
    raw_nodes = obj.get("nodes")
    if not isinstance(raw_nodes, list):
        raise GraphError("graph.nodes must be a list")

    nodes: List[Node] = []
    seen: Dict[str, Node] = {}
    for rn in raw_nodes:
        if not isinstance(rn, dict):
            raise GraphError("each node must be a mapping")
        n = node_from_dict(rn)
        if n.id in seen:
            raise GraphError(f"duplicate node id '{n.id}'")
        seen[n.id] = n
        nodes.append(n)

    raw_edges = obj.get("edges")
    if raw_edges is None:
        raw_edges = []
    if not isinstance(raw_edges, list):
        raise GraphError("graph.edges must be a list")

    edges: List[Edge] = []
    edge_ids = set()
    for re_ in raw_edges:
        if not isinstance(re_, dict):
            raise GraphError("each edge must be a mapping")
        src, dst = re_.get("source"), re_.get("target")
        if src not in seen or dst not in seen:
            print(f"[graph] WARN: dropping edge {re_.get('id')} {src}->{dst}: unknown endpoint")
            continue
        eid = str(re_.get("id") or f"e-{src}-{dst}")
        if eid in edge_ids:
            print(f"[graph] WARN: dropping duplicate edge id {eid}")
            continue
        edge_ids.add(eid)
        edges.append(Edge(id=eid, source=str(src), target=str(dst)))
    return nodes, edges


def graph_to_dict(nodes: Sequence[Node], edges: Sequence[Edge]) -> Dict[str, Any]:
    return {
        "nodes": [n.to_dict() for n in nodes],
        "edges": [e.to_dict() for e in edges],
    }


def load_graph(path: Path) -> Tuple[List[Node], List[Edge]]:
    with open(path, "r", encoding="utf-8") as f:
        return graph_from_dict(yaml.safe_load(f) or {})


def list_templates(templates_dir: Path = TEMPLATES_DIR) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for f in sorted(Path(templates_dir).glob("*.yaml")):
        try:
            data = yaml.safe_load(f.read_text(encoding="utf-8")) or {}
        except Exception as e:
            print(f"[graph] WARN: failed to read template {f.name}: {e}")
            continue
        out.append({
            "id": data.get("id") or f.stem,
            "title": data.get("title"),
            "description": data.get("description"),
            "difficulty": data.get("difficulty"),
        })
    return out


def load_template(name: str, templates_dir: Path = TEMPLATES_DIR) -> Tuple[List[Node], List[Edge]]:
    for f in sorted(Path(templates_dir).glob("*.yaml")):
        data = yaml.safe_load(f.read_text(encoding="utf-8")) or {}
        if name in (f.stem, data.get("id")):
            return graph_from_dict(data)
    raise KeyError(f"template '{name}' not found")


# ----------------------------- routing lookups -----------------------------

def outgoing_edges(edges: Sequence[Edge], node_id: str) -> List[Edge]:
    return [e for e in edges if e.source == node_id]


def find_edge(edges: Sequence[Edge], source: str, target: str) -> Optional[Edge]:
    """Directed match (used by explicit spawns)."""
    for e in edges:
        if e.source == source and e.target == target:
            return e
    return None


def find_edge_between(edges: Sequence[Edge], a: str, b: str) -> Optional[Edge]:
    """First undirected match in edge order (used when backtracking responses)."""
    for e in edges:
        if e.connects(a, b):
            return e
    return None


# ----------------------------- holder -----------------------------

class FlowGraph:
    """
    Thread-safe owner of the current diagram. The editor (or API) replaces it
    between runs; the engine only calls get_nodes()/get_edges().
    """

    def __init__(self, nodes: Optional[Sequence[Node]] = None, edges: Optional[Sequence[Edge]] = None):
        self._lock = threading.RLock()
        self._nodes: List[Node] = list(nodes or [])
        self._edges: List[Edge] = list(edges or [])

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "FlowGraph":
        return cls(*graph_from_dict(obj))

    @classmethod
    def from_template(cls, name: str) -> "FlowGraph":
        return cls(*load_template(name))

    def get_nodes(self) -> List[Node]:
        with self._lock:
            return list(self._nodes)

    def get_edges(self) -> List[Edge]:
        with self._lock:
            return list(self._edges)

    def replace(self, nodes: Sequence[Node], edges: Sequence[Edge]) -> None:
        with self._lock:
            self._nodes = list(nodes)
            self._edges = list(edges)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return graph_to_dict(self._nodes, self._edges)
