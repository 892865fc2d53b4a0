#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/context.py — the simulation context shared by engine, scheduler and readers.

One object owns everything a run produces:
    • live packets            (PacketSet, replaced wholesale on commit)
    • node runtime table      (NodeStateTable, replaced wholesale on commit)
    • event log               (bounded)
    • simulated clock         (ms, advances by the tick period)
    • random source           (injectable / seedable)
    • run statistics

Readers (API routes, CLI, renderers) call the read accessors, which return
copies taken under the context lock. The engine is the only writer and goes
through commit().
"""

from __future__ import annotations

import random
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .eventlog import LOG_LIMIT, EventLog
from .packets import Packet, PacketSet
from .state import NodeStateTable


@dataclass
class SimulationStats:
    ticks: int = 0
    spawned: int = 0
    completed: int = 0
    failed_capacity: int = 0
    failed_random: int = 0
    failed_topology: int = 0
    forwards: int = 0
    early_returns: int = 0
    latency_total_ms: float = 0.0       # round-trip sum over completed packets
    latency_max_ms: float = 0.0

    @property
    def failed(self) -> int:
        return self.failed_capacity + self.failed_random + self.failed_topology

    def record_completion(self, latency_ms: float) -> None:
        self.completed += 1
        self.latency_total_ms += latency_ms
        self.latency_max_ms = max(self.latency_max_ms, latency_ms)

    @property
    def avg_latency_ms(self) -> Optional[float]:
        if not self.completed:
            return None
        return round(self.latency_total_ms / self.completed, 3)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["failed"] = self.failed
        d["avg_latency_ms"] = self.avg_latency_ms
        return d


class SimulationContext:
    def __init__(self, rng: Optional[random.Random] = None, seed: Optional[int] = None,
                 log_limit: int = LOG_LIMIT):
        self.lock = threading.RLock()
        self.rng = rng if rng is not None else random.Random(seed)
        self.log = EventLog(limit=log_limit)
        self.running = False
        self._packets = PacketSet()
        self._node_states = NodeStateTable()
        self.now_ms: float = 0.0
        self.last_spawn_ms: Optional[float] = None
        self.stats = SimulationStats()

    # -------- engine side --------

    @property
    def packet_set(self) -> PacketSet:
        return self._packets

    @property
    def node_states(self) -> NodeStateTable:
        return self._node_states

    def add_packet(self, packet: Packet) -> None:
        with self.lock:
            self._packets = self._packets.added(packet)

    def commit(self, packets: PacketSet, node_states: NodeStateTable, now_ms: float) -> None:
        """Swap in the results of one tick."""
        with self.lock:
            self._packets = packets
            self._node_states = node_states
            self.now_ms = now_ms
            self.stats.ticks += 1

    def add_log(self, message: str, severity: str = "info", sim_time_ms: Optional[float] = None) -> None:
        with self.lock:
            self.log.add(message, severity, sim_time_ms=self.now_ms if sim_time_ms is None else sim_time_ms)

    def reset(self) -> None:
        """Discard packets, node states, log and stats (stop semantics)."""
        with self.lock:
            self._packets = PacketSet()
            self._node_states = NodeStateTable()
            self.log.clear()
            self.now_ms = 0.0
            self.last_spawn_ms = None
            self.stats = SimulationStats()

    # -------- read side --------

    def packets(self) -> List[Dict[str, Any]]:
        with self.lock:
            return self._packets.to_list()

    def node_state(self, node_id: str) -> Dict[str, Any]:
        # entries are created lazily on first reference
        with self.lock:
            return self._node_states.get(node_id).to_dict()

    def logs(self) -> List[Dict[str, Any]]:
        with self.lock:
            return self.log.to_list()

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "running": self.running,
                "sim_time_ms": self.now_ms,
                "packets": self._packets.to_list(),
                "node_states": self._node_states.snapshot(),
                "logs": self.log.to_list(),
                "stats": self.stats.to_dict(),
            }
