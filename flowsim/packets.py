#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/packets.py — simulated request/response packets.

A packet is either moving along an edge (edge_id/source_node_id/target_node_id,
progress 0..100) or processing at a node (node_id). failed/completed are
terminal; the engine drops terminal packets at the end of the tick that
produced them.

path_stack records the request leg (client first). On the response leg the
stack is frozen and path_index walks back towards 0 (the originating client).
"""

from __future__ import annotations

import itertools
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .state import utc_ms

# kinds
REQUEST = "request"
RESPONSE = "response"
ERROR = "error"

# statuses
MOVING = "moving"
PROCESSING = "processing"
FAILED = "failed"
COMPLETED = "completed"

TERMINAL = {FAILED, COMPLETED}

_seq = itertools.count(1)


def next_packet_id() -> str:
    return f"pkt-{next(_seq):07d}"


@dataclass(frozen=True)
class Packet:
    id: str
    kind: str = REQUEST
    status: str = MOVING
    edge_id: Optional[str] = None
    source_node_id: Optional[str] = None
    target_node_id: Optional[str] = None
    node_id: Optional[str] = None
    progress: float = 0.0
    path_stack: Tuple[str, ...] = field(default_factory=tuple)
    path_index: int = 0
    processing_time_remaining: float = 0.0
    timestamp: float = 0.0                # simulated ms at creation
    spawned_at: int = field(default_factory=utc_ms)

    @property
    def alive(self) -> bool:
        return self.status not in TERMINAL

    def evolve(self, **changes: Any) -> "Packet":
        return replace(self, **changes)

    # -------- transitions --------

    def move_along(self, edge_id: str, source: str, target: str) -> "Packet":
        return self.evolve(
            status=MOVING,
            edge_id=edge_id,
            source_node_id=source,
            target_node_id=target,
            node_id=None,
            progress=0.0,
        )

    def fail(self) -> "Packet":
        return self.evolve(status=FAILED, progress=100.0)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["path_stack"] = list(self.path_stack)
        return d


class PacketSet:
    """Ordered, immutable-by-convention collection of live packets."""

    def __init__(self, packets: Optional[Iterable[Packet]] = None):
        self._packets: List[Packet] = list(packets or [])

    def __iter__(self) -> Iterator[Packet]:
        return iter(self._packets)

    def __len__(self) -> int:
        return len(self._packets)

    def __bool__(self) -> bool:
        return bool(self._packets)

    def get(self, packet_id: str) -> Optional[Packet]:
        for p in self._packets:
            if p.id == packet_id:
                return p
        return None

    def added(self, packet: Packet) -> "PacketSet":
        return PacketSet([*self._packets, packet])

    def processing_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for p in self._packets:
            if p.status == PROCESSING and p.node_id:
                counts[p.node_id] = counts.get(p.node_id, 0) + 1
        return counts

    def to_list(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self._packets]
