#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/engine.py — discrete-time packet simulation engine.

Per tick
--------
1. Read the graph fresh through the accessor pair (get_nodes, get_edges).
2. Advance every live packet from the pre-tick snapshot:
     moving      → progress += 100 / max(1, latency / TICK_MS); arrival at >= 100
     arrival     → topology / capacity / failure checks, then processing
     processing  → response: step back along path_stack (or complete at index 0)
                   request:  forward along a random outgoing edge, or turn into
                             a response (dead end or sampled early return)
3. Maybe spawn a new request at a random client node.
4. Drop failed/completed packets, refresh node counters, commit to the context.

Processing model
----------------
Instant processing: a packet that arrives in tick N holds its node for that
tick only and makes its next decision in tick N+1. Each edge is timed by the
latency of its declared target node, in both directions, so the response leg
retraces the request leg at the same speed.

Capacity
--------
current_load is read from the snapshot (packets processing at the node before
this tick). Arrivals at the same node within one tick are admitted in
snapshot order against capacity - current_load; the rest fail.

Public API
----------
engine = TickEngine(graph.get_nodes, graph.get_edges, context, **cfg)
result = engine.tick()                      # TickResult
pkt    = engine.spawn("c1", "a1")           # explicit spawn, None if no such edge
pkt    = engine.spawn()                     # random client / random outgoing edge
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .context import SimulationContext
from .graph import Edge, Node, find_edge, find_edge_between, outgoing_edges
from .packets import (
    COMPLETED,
    MOVING,
    PROCESSING,
    REQUEST,
    RESPONSE,
    Packet,
    PacketSet,
    next_packet_id,
)
from .state import NodeStateTable

DEFAULTS = {
    "TICK_MS": 50.0,
    "DEFAULT_LATENCY_MS": 1000.0,   # travel time when the target has no latency set
    "DEFAULT_CAPACITY": 10,
    "DEFAULT_FAILURE_RATE": 0.0,
    "DEFAULT_SAMPLE_RATE": 100.0,   # forward rate
    # Spawn policy
    "AUTO_SPAWN": True,
    "MAX_LIVE_PACKETS": 5,
    "SPAWN_PROBABILITY": 0.05,
    "SPAWN_INTERVAL_MS": 1000.0,
    # Visual cues (simulated ms)
    "SPAWN_FLASH_MS": 500.0,
    "FAILURE_FLASH_MS": 200.0,
}

# progress sums of repeating fractions (e.g. 100/6) can land a hair under 100
ARRIVAL_EPSILON = 1e-9

NodesAccessor = Callable[[], Sequence[Node]]
EdgesAccessor = Callable[[], Sequence[Edge]]


@dataclass
class TickResult:
    now_ms: float
    packets: PacketSet
    retired: List[Packet] = field(default_factory=list)   # failed/completed this tick
    spawned: List[Packet] = field(default_factory=list)


def ticks_to_traverse(latency_ms: float, tick_ms: float) -> int:
    """Number of ticks a moving packet needs to cover an edge of the given latency."""
    increment = 100.0 / max(1.0, latency_ms / tick_ms)
    return int(math.ceil(100.0 / increment - ARRIVAL_EPSILON))


class TickEngine:
    def __init__(
        self,
        get_nodes: NodesAccessor,
        get_edges: EdgesAccessor,
        context: Optional[SimulationContext] = None,
        verbose: bool = False,
        **cfg: Any,
    ):
        self.get_nodes = get_nodes
        self.get_edges = get_edges
        self.ctx = context if context is not None else SimulationContext()
        self.verbose = verbose
        self.cfg = {**DEFAULTS, **cfg}

    @property
    def tick_ms(self) -> float:
        return float(self.cfg["TICK_MS"])

    def log(self, msg: str):
        if self.verbose:
            print(f"[engine] {msg}")

    # -------- node parameters (defaults applied transparently) --------

    def latency_of(self, node: Optional[Node]) -> float:
        if node is None or not node.latency:
            return float(self.cfg["DEFAULT_LATENCY_MS"])
        return float(node.latency)

    def capacity_of(self, node: Node) -> int:
        return int(node.capacity) if node.capacity else int(self.cfg["DEFAULT_CAPACITY"])

    def failure_rate_of(self, node: Node) -> float:
        if node.failure_rate is None:
            return float(self.cfg["DEFAULT_FAILURE_RATE"])
        return float(node.failure_rate)

    def sample_rate_of(self, node: Node) -> float:
        if node.sample_rate is None:
            return float(self.cfg["DEFAULT_SAMPLE_RATE"])
        return float(node.sample_rate)

    def increment_for(self, node: Optional[Node]) -> float:
        return 100.0 / max(1.0, self.latency_of(node) / self.tick_ms)

    # -------- spawning --------

    def _build_spawn(
        self,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        now_ms: float,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> Optional[Packet]:
        rng = self.ctx.rng
        if source_id and target_id:
            source = next((n for n in nodes if n.id == source_id), None)
            edge = find_edge(edges, source_id, target_id)
        else:
            clients = [n for n in nodes if n.kind == "client"]
            if not clients:
                return None
            source = rng.choice(clients)
            outs = outgoing_edges(edges, source.id)
            if not outs:
                return None
            edge = rng.choice(outs)

        if source is None or edge is None:
            return None

        return Packet(
            id=next_packet_id(),
            kind=REQUEST,
            status=MOVING,
            edge_id=edge.id,
            source_node_id=source.id,
            target_node_id=edge.target,
            progress=0.0,
            path_stack=(source.id,),
            path_index=0,
            timestamp=now_ms,
        )

    def spawn(self, source_id: Optional[str] = None, target_id: Optional[str] = None) -> Optional[Packet]:
        """
        Inject a request between ticks. With source/target the exact directed
        edge is used (scripted spawns); without, a random client is sampled.
        """
        with self.ctx.lock:
            now = self.ctx.now_ms
            pkt = self._build_spawn(self.get_nodes(), self.get_edges(), now, source_id, target_id)
            if pkt is None:
                self.log(f"spawn skipped ({source_id}->{target_id})")
                return None
            self.ctx.add_packet(pkt)
            self.ctx.node_states.flash(pkt.source_node_id, now, float(self.cfg["SPAWN_FLASH_MS"]))
            self.ctx.stats.spawned += 1
            return pkt

    def _should_auto_spawn(self, live: int, now_ms: float) -> bool:
        if not self.cfg["AUTO_SPAWN"]:
            return False
        last = self.ctx.last_spawn_ms
        if last is not None and now_ms - last < float(self.cfg["SPAWN_INTERVAL_MS"]):
            return False
        if live == 0:
            return True
        return live < int(self.cfg["MAX_LIVE_PACKETS"]) and self.ctx.rng.random() < float(self.cfg["SPAWN_PROBABILITY"])

    def maybe_spawn(
        self,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        live: int,
        states: NodeStateTable,
        now_ms: float,
    ) -> Optional[Packet]:
        """Organic arrival for one tick; live is the pre-tick packet count."""
        if not self._should_auto_spawn(live, now_ms):
            return None
        pkt = self._build_spawn(nodes, edges, now_ms)
        # the interval restarts even when no client could spawn
        self.ctx.last_spawn_ms = now_ms
        if pkt is not None:
            states.flash(pkt.source_node_id, now_ms, float(self.cfg["SPAWN_FLASH_MS"]))
            self.ctx.stats.spawned += 1
        return pkt

    # -------- per-packet transitions --------

    def _arrive(
        self,
        pkt: Packet,
        node: Optional[Node],
        loads: Dict[str, int],
        admitted: Dict[str, int],
        states: NodeStateTable,
        now_ms: float,
    ) -> Packet:
        if node is None:
            self.ctx.stats.failed_topology += 1
            self.log(f"{pkt.id}: target {pkt.target_node_id} no longer exists")
            return pkt.fail()

        flash_ms = float(self.cfg["FAILURE_FLASH_MS"])
        capacity = self.capacity_of(node)
        load = loads.get(node.id, 0) + admitted.get(node.id, 0)
        if load >= capacity:
            self.ctx.add_log(f"Capacity exceeded at {node.display_name} ({load}/{capacity})", "error", now_ms)
            states.flash(node.id, now_ms, flash_ms)
            self.ctx.stats.failed_capacity += 1
            return pkt.fail()

        if self.ctx.rng.random() * 100.0 < self.failure_rate_of(node):
            what = "Response" if pkt.kind == RESPONSE else "Request"
            self.ctx.add_log(f"{what} failed at {node.display_name}", "error", now_ms)
            states.flash(node.id, now_ms, flash_ms)
            self.ctx.stats.failed_random += 1
            return pkt.fail()

        admitted[node.id] = admitted.get(node.id, 0) + 1
        states.mark_processing(node.id, now_ms)

        changes: Dict[str, Any] = {
            "status": PROCESSING,
            "node_id": node.id,
            "edge_id": None,
            "progress": 0.0,
            "processing_time_remaining": 0.0,
        }
        if pkt.kind != RESPONSE:
            stack = pkt.path_stack + (node.id,)
            changes["path_stack"] = stack
            changes["path_index"] = len(stack) - 1
        return pkt.evolve(**changes)

    def travel_node(self, pkt: Packet, by_id: Dict[str, Node], edges_by_id: Dict[str, Edge]) -> Optional[Node]:
        """
        Node whose latency times the current edge: the edge's declared target,
        whichever way the packet travels it. Falls back to the packet's own
        target when the edge has disappeared.
        """
        edge = edges_by_id.get(pkt.edge_id or "")
        if edge is not None and edge.target in by_id:
            return by_id[edge.target]
        return by_id.get(pkt.target_node_id or "")

    def _advance(self, pkt: Packet, by_id, edges_by_id, loads, admitted, states, now_ms) -> Packet:
        target = by_id.get(pkt.target_node_id or "")
        progress = pkt.progress + self.increment_for(self.travel_node(pkt, by_id, edges_by_id))
        if progress < 100.0 - ARRIVAL_EPSILON:
            return pkt.evolve(progress=progress)
        return self._arrive(pkt.evolve(progress=100.0), target, loads, admitted, states, now_ms)

    def _process(self, pkt: Packet, by_id: Dict[str, Node], edges: Sequence[Edge], now_ms: float) -> Packet:
        node = by_id.get(pkt.node_id or "")
        if node is None:
            self.ctx.stats.failed_topology += 1
            self.log(f"{pkt.id}: node {pkt.node_id} removed while processing")
            return pkt.fail()

        if pkt.kind == RESPONSE:
            if pkt.path_index <= 0:
                self.ctx.add_log(f"Response received at {node.display_name}", "success", now_ms)
                self.ctx.stats.record_completion(now_ms - pkt.timestamp)
                return pkt.evolve(status=COMPLETED)

            prev_id = pkt.path_stack[pkt.path_index - 1]
            edge = find_edge_between(edges, node.id, prev_id)
            if edge is None:
                self.ctx.stats.failed_topology += 1
                self.log(f"{pkt.id}: no edge between {node.id} and {prev_id}")
                return pkt.fail()
            return pkt.move_along(edge.id, node.id, prev_id).evolve(path_index=pkt.path_index - 1)

        outs = outgoing_edges(edges, node.id)
        forward = self.ctx.rng.random() * 100.0 < self.sample_rate_of(node)
        if outs and forward:
            edge = self.ctx.rng.choice(outs)
            nxt = by_id.get(edge.target)
            self.ctx.add_log(
                f"Request forwarded from {node.display_name} to {nxt.display_name if nxt else edge.target}",
                "info",
                now_ms,
            )
            self.ctx.stats.forwards += 1
            return pkt.move_along(edge.id, node.id, edge.target)

        if outs:
            self.ctx.add_log(f"Request sampled/cached at {node.display_name}. Returning early.", "info", now_ms)
            self.ctx.stats.early_returns += 1
        else:
            self.ctx.add_log(f"Request processed at {node.display_name}. Sending response.", "info", now_ms)
        # stays processing; next tick walks it back along path_stack
        return pkt.evolve(kind=RESPONSE, path_index=len(pkt.path_stack) - 1, processing_time_remaining=0.0)

    # -------- tick --------

    def tick(self) -> TickResult:
        ctx = self.ctx
        with ctx.lock:
            nodes = list(self.get_nodes())
            edges = list(self.get_edges())
            by_id = {n.id: n for n in nodes}
            edges_by_id = {e.id: e for e in edges}
            now = ctx.now_ms + self.tick_ms

            snapshot = ctx.packet_set
            loads = snapshot.processing_counts()
            admitted: Dict[str, int] = {}
            states = ctx.node_states.copy()

            updated: List[Packet] = []
            for pkt in snapshot:
                if pkt.status == MOVING:
                    updated.append(self._advance(pkt, by_id, edges_by_id, loads, admitted, states, now))
                elif pkt.status == PROCESSING:
                    updated.append(self._process(pkt, by_id, edges, now))
                else:
                    updated.append(pkt)

            new_pkt = self.maybe_spawn(nodes, edges, len(snapshot), states, now)
            spawned = [new_pkt] if new_pkt is not None else []

            live = PacketSet(p for p in updated + spawned if p.alive)
            retired = [p for p in updated if not p.alive]
            states.refresh(live.processing_counts(), now)
            ctx.commit(live, states, now)
            return TickResult(now_ms=now, packets=live, retired=retired, spawned=spawned)

    def run_ticks(self, n: int) -> List[TickResult]:
        return [self.tick() for _ in range(max(0, int(n)))]
