#!/usr/bin/env python3
"""
Scripted timeline runner for the flow simulator.

- Loads a lesson timeline YAML (events keyed by elapsed seconds).
- Fires each event once when simulated time passes its `time`:
    a) `packet`      → explicit spawn node_id -> data.target_node_id
    b) `highlight`, `pulse`, `annotation` → display effects for renderers
- Packet events go either to an in-process TickEngine (default) or are
  POSTed to a running API (--api http://127.0.0.1:8080).

Usage:
  python3 -m sim.timeline --timeline lesson.yaml --template simple-api --dry-run
  python3 -m sim.timeline --timeline lesson.yaml --template simple-api --run --seconds 10
  python3 -m sim.timeline --timeline lesson.yaml --api http://127.0.0.1:8080 --run

Timeline format:
events:
  - { id: ev1, time: 1.5, node_id: t1-1, action: packet, data: { target_node_id: t1-2 } }
  - { id: ev2, time: 2.0, node_id: t1-2, action: highlight, data: { duration: 1.5, color: "#f59e0b" } }
  - { id: ev3, time: 3.0, node_id: t1-3, action: annotation, data: { content: "Slow query" } }
"""

import argparse
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
import yaml

from flowsim.context import SimulationContext
from flowsim.engine import TickEngine, TickResult
from flowsim.graph import FlowGraph, load_graph

# ----------------------------- Config -----------------------------

ACTIONS = {"packet", "highlight", "pulse", "annotation"}

DEFAULT_EFFECT_DURATION_S = 1.0
MAX_EFFECTS = 100

# ----------------------------- Data classes -----------------------------


@dataclass(order=True)
class TimelineEvent:
    sort_index: Tuple[float, int] = field(init=False, repr=False)
    time: float
    id: str
    node_id: str
    action: str
    target_node_id: Optional[str] = None
    content: Optional[str] = None
    duration: Optional[float] = None
    color: Optional[str] = None
    seq: int = field(default=0, repr=False)   # position in the source file; breaks time ties

    def __post_init__(self):
        self.sort_index = (self.time, self.seq)


@dataclass
class Effect:
    event_id: str
    action: str
    node_id: str
    started_s: float
    until_s: float
    content: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "action": self.action,
            "node_id": self.node_id,
            "started_s": self.started_s,
            "until_s": self.until_s,
            "content": self.content,
            "color": self.color,
        }


# ----------------------------- I/O -----------------------------


def parse_events(raw_events: List[Dict[str, Any]]) -> List[TimelineEvent]:
    events: List[TimelineEvent] = []
    seen_ids = set()
    for i, e in enumerate(raw_events or []):
        action = str(e.get("action") or "").lower()
        if action not in ACTIONS:
            raise ValueError(f"event #{i}: unknown action '{action}'")
        node_id = e.get("node_id") or e.get("nodeId")
        if not node_id:
            raise ValueError(f"event #{i}: missing node_id")
        ev_id = str(e.get("id") or f"ev-{i + 1}")
        if ev_id in seen_ids:
            raise ValueError(f"event #{i}: duplicate id '{ev_id}'")
        seen_ids.add(ev_id)
        data = e.get("data") or {}
        duration = data.get("duration")
        events.append(TimelineEvent(
            time=float(e.get("time", 0.0) or 0.0),
            id=ev_id,
            node_id=str(node_id),
            action=action,
            target_node_id=data.get("target_node_id") or data.get("targetNodeId"),
            content=data.get("content"),
            duration=float(duration) if duration is not None else None,
            color=data.get("color"),
            seq=i,
        ))
    events.sort(key=lambda ev: ev.sort_index)
    return events


def load_timeline(path: Path) -> List[TimelineEvent]:
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}
    raw = doc.get("events") if isinstance(doc, dict) else doc
    return parse_events(raw or [])


# ----------------------------- Spawn targets -----------------------------


class ApiSpawner:
    """Sends packet events to a running flowsim API instead of a local engine."""

    def __init__(self, base_url: str, timeout: float = 2.0):
        self.base = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def spawn(self, source_id: str, target_id: str) -> Optional[Dict[str, Any]]:
        r = self.session.post(
            f"{self.base}/spawn",
            json={"source": source_id, "target": target_id},
            timeout=self.timeout,
        )
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json().get("data")


# ----------------------------- Runner -----------------------------


class TimelineRunner:
    def __init__(
        self,
        events: List[TimelineEvent],
        spawner: Any,
        effects_sink: Optional[Callable[[Effect], None]] = None,
        verbose: bool = True,
    ):
        self.events = sorted(events, key=lambda ev: ev.sort_index)
        self.spawner = spawner
        self.effects_sink = effects_sink
        self.verbose = verbose
        self.fired: set = set()               # positions in self.events
        self.effects: List[Effect] = []
        self.elapsed_s = 0.0
        self._lock = threading.RLock()

    def log(self, msg: str):
        if self.verbose:
            print(f"[timeline] {msg}")

    # -------- time --------

    def seek(self, t_s: float):
        """Jump to t_s; events after the new position fire again when reached."""
        with self._lock:
            self.elapsed_s = max(0.0, t_s)
            self.fired = {i for i, ev in enumerate(self.events) if ev.time < self.elapsed_s}
            self.effects = [fx for fx in self.effects if fx.started_s <= self.elapsed_s < fx.until_s]

    def advance(self, elapsed_s: float) -> List[TimelineEvent]:
        """Fire every not-yet-fired event with time <= elapsed_s. Returns what fired."""
        with self._lock:
            self.elapsed_s = elapsed_s
            due = [
                (i, ev) for i, ev in enumerate(self.events)
                if ev.time <= elapsed_s + 1e-9 and i not in self.fired
            ]
            for i, ev in due:
                self.fired.add(i)
                self.apply_event(ev)
            self.effects = [fx for fx in self.effects if fx.until_s > elapsed_s]
            return [ev for _, ev in due]

    def on_tick(self, result: TickResult):
        """Scheduler hook: simulated ms → timeline seconds."""
        self.advance(result.now_ms / 1000.0)

    def active_effects(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [fx.to_dict() for fx in self.effects]

    # -------- actions --------

    def apply_event(self, ev: TimelineEvent):
        if ev.action == "packet":
            if not ev.target_node_id:
                self.log(f"SKIP {ev.id}: packet event without target_node_id")
                return
            pkt = self.spawner.spawn(ev.node_id, ev.target_node_id)
            if pkt is None:
                self.log(f"SKIP {ev.id}: no edge {ev.node_id}->{ev.target_node_id}")
            else:
                self.log(f"PACKET {ev.node_id}->{ev.target_node_id} at t={ev.time:.2f}s")
            return

        duration = ev.duration if ev.duration is not None else DEFAULT_EFFECT_DURATION_S
        fx = Effect(
            event_id=ev.id,
            action=ev.action,
            node_id=ev.node_id,
            started_s=ev.time,
            until_s=ev.time + max(0.0, duration),
            content=ev.content,
            color=ev.color,
        )
        self.effects.append(fx)
        if len(self.effects) > MAX_EFFECTS:
            self.effects = self.effects[-MAX_EFFECTS:]
        if self.effects_sink:
            self.effects_sink(fx)
        self.log(f"{ev.action.upper()} {ev.node_id} for {duration:.2f}s")

    # -------- standalone wall-clock run (remote mode) --------

    def run(self, stop: threading.Event, speed: float = 1.0, until_s: Optional[float] = None):
        t0 = time.time()
        speed = max(0.01, speed)
        last = self.events[-1].time if self.events else 0.0
        end = until_s if until_s is not None else last
        self.log(f"Starting timeline with {len(self.events)} events; speed x{speed}")
        while not stop.is_set():
            vt_s = (time.time() - t0) * speed
            self.advance(vt_s)
            if vt_s >= end:
                break
            time.sleep(0.02)
        self.log("Timeline finished (or stopped).")


# ----------------------------- CLI -----------------------------


def pretty_event(ev: TimelineEvent) -> str:
    base = f"t={ev.time:7.2f}s action={ev.action} node={ev.node_id}"
    if ev.target_node_id:
        base += f" -> {ev.target_node_id}"
    if ev.duration is not None:
        base += f" dur={ev.duration:.2f}s"
    if ev.content:
        base += f" content={ev.content!r}"
    return base


def build_argparser():
    ap = argparse.ArgumentParser(description="Flow simulator timeline runner")
    ap.add_argument("--timeline", required=True, help="Path to timeline YAML")
    ap.add_argument("--template", default="simple-api", help="Template to simulate (local mode)")
    ap.add_argument("--graph", default=None, help="Graph YAML to simulate instead of a template (local mode)")
    ap.add_argument("--api", default=None, help="flowsim API base URL (remote mode)")
    ap.add_argument("--seconds", type=float, default=None, help="Simulated seconds to run (default: last event)")
    ap.add_argument("--speed", type=float, default=1.0, help="Remote mode time acceleration")
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--dry-run", action="store_true", help="Only print schedule")
    ap.add_argument("--run", action="store_true", help="Execute schedule")
    return ap


def main():
    args = build_argparser().parse_args()
    events = load_timeline(Path(args.timeline))

    if args.dry_run or not args.run:
        print(f"[timeline] Loaded {len(events)} events")
        for ev in events:
            print("  " + pretty_event(ev))
        if not args.run:
            return

    if args.api:
        runner = TimelineRunner(events, ApiSpawner(args.api))
        stop = threading.Event()

        def handle_sig(sig, frame):
            stop.set()
            print("\n[timeline] Stopping...")
        signal.signal(signal.SIGINT, handle_sig)
        signal.signal(signal.SIGTERM, handle_sig)
        runner.run(stop, speed=args.speed, until_s=args.seconds)
        return

    # Local: step an in-process engine, scripted packets only
    graph = FlowGraph(*load_graph(Path(args.graph))) if args.graph else FlowGraph.from_template(args.template)
    engine = TickEngine(graph.get_nodes, graph.get_edges, SimulationContext(seed=args.seed), AUTO_SPAWN=False)
    runner = TimelineRunner(events, engine)
    end_s = args.seconds if args.seconds is not None else (events[-1].time + 5.0 if events else 0.0)
    n_ticks = int(end_s * 1000.0 / engine.tick_ms)
    for _ in range(n_ticks):
        runner.on_tick(engine.tick())
    for entry in engine.ctx.logs():
        print(f"  [{entry['severity']:>7}] t={entry['sim_time_ms']:8.0f}ms  {entry['message']}")


if __name__ == "__main__":
    main()
