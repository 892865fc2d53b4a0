#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/state.py — per-node runtime state for the flow simulator.

Responsibilities
---------------
- Small coercion helpers shared by the graph loader and the engine
- NodeRuntime:   mutable, runtime-only fields for one node (active flag,
                 processing count, transient "flash" expiry)
- NodeStateTable: lazily-populated map node_id -> NodeRuntime

Design notes
------------
- Only the tick engine mutates the table; readers get copies via snapshot().
- Entries are created on first reference and survive until the context is reset (stop).
- A node is "active" while it holds processing packets or while a flash
  (spawn/failure cue) has not yet expired in simulated time.
"""

from __future__ import annotations

import copy
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional


# ----------------------------- helpers -----------------------------

def safe_float(x: Any, default: Optional[float] = 0.0) -> Optional[float]:
    try:
        return float(x)
    except Exception:
        return default


def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def utc_ms() -> int:
    return int(time.time() * 1000)


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


# ----------------------------- data classes -----------------------------

@dataclass
class NodeRuntime:
    """Mutable, runtime-only fields for a node."""
    active: bool = False
    processing_count: int = 0
    packets_queued: int = 0             # reserved; overflow drops instead of queueing
    last_active: float = 0.0            # simulated ms
    active_until: float = 0.0           # simulated ms; flash expiry

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ----------------------------- state table -----------------------------

class NodeStateTable:
    def __init__(self, states: Optional[Dict[str, NodeRuntime]] = None):
        self._states: Dict[str, NodeRuntime] = dict(states or {})

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def get(self, node_id: str) -> NodeRuntime:
        """Return the entry for node_id, creating it on first reference."""
        st = self._states.get(node_id)
        if st is None:
            st = NodeRuntime()
            self._states[node_id] = st
        return st

    def copy(self) -> "NodeStateTable":
        return NodeStateTable(copy.deepcopy(self._states))

    # -------- mutations used by the engine --------

    def flash(self, node_id: str, now_ms: float, hold_ms: float) -> None:
        """Mark a node active until now_ms + hold_ms (a transient cue, not a lock)."""
        st = self.get(node_id)
        st.active = True
        st.last_active = now_ms
        st.active_until = max(st.active_until, now_ms + hold_ms)

    def mark_processing(self, node_id: str, now_ms: float) -> None:
        st = self.get(node_id)
        st.active = True
        st.last_active = now_ms

    def refresh(self, counts: Dict[str, int], now_ms: float) -> None:
        """
        Recompute processing counts from the committed packet set and expire
        flashes. Nodes absent from counts hold zero packets.
        """
        for node_id in counts:
            self.get(node_id)
        for node_id, st in self._states.items():
            st.processing_count = counts.get(node_id, 0)
            flashing = st.active_until > now_ms
            st.active = flashing or st.processing_count > 0

    # -------- read side --------

    def snapshot(self, node_ids: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, Any]]:
        if node_ids is None:
            return {k: v.to_dict() for k, v in self._states.items()}
        return {k: self.get(k).to_dict() for k in node_ids}
