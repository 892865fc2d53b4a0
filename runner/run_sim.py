#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
runner/run_sim.py — play a diagram headlessly (local or remote).

Usage
-----
# Local (imports flowsim.* directly), 400 ticks of the cache-aside template
python3 -m runner.run_sim --template caching-pattern --ticks 400 --seed 7

# Custom graph plus a scripted lesson, no organic traffic
python3 -m runner.run_sim --graph my_graph.yaml --timeline sim/lessons/simple-api.yaml --no-auto-spawn

# Remote (drive flowsim/api.py running on another process/machine)
python3 -m runner.run_sim --remote http://127.0.0.1:8080 --template simple-api --ticks 200

Options
-------
--template NAME       Template id from ./templates (default: simple-api)
--graph PATH          Graph YAML instead of a template
--ticks N             Number of ticks to simulate (default: 200)
--seed S              Seed for the random source (local mode)
--tick-ms MS          Tick period in ms (local mode, default 50)
--timeline PATH       Timeline YAML with scripted events (local mode)
--no-auto-spawn       Only scripted spawns (local mode)
--remote URL          If provided, uses {URL}/graph, {URL}/control/step, {URL}/snapshot
--out PATH            Save the final snapshot JSON here
"""

from __future__ import annotations
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import requests
import yaml
from rich.console import Console
from rich.table import Table

from flowsim.context import SimulationContext
from flowsim.engine import TickEngine
from flowsim.graph import FlowGraph, load_graph
from flowsim.scheduler import Scheduler
from sim.timeline import TimelineRunner, load_timeline

console = Console()


def run_local(
    template: str,
    graph_path: Optional[str],
    ticks: int,
    seed: Optional[int],
    tick_ms: float,
    timeline_path: Optional[str],
    auto_spawn: bool,
) -> Dict[str, Any]:
    graph = FlowGraph(*load_graph(Path(graph_path))) if graph_path else FlowGraph.from_template(template)
    ctx = SimulationContext(seed=seed)
    engine = TickEngine(graph.get_nodes, graph.get_edges, ctx, TICK_MS=tick_ms, AUTO_SPAWN=auto_spawn)
    sched = Scheduler(engine, verbose=False)
    if timeline_path:
        runner = TimelineRunner(load_timeline(Path(timeline_path)), engine, verbose=False)
        sched.on_tick(runner.on_tick)
    sched.step(ticks)
    return ctx.snapshot()


def run_remote(base_url: str, template: Optional[str], graph_path: Optional[str], ticks: int) -> Dict[str, Any]:
    base = base_url.rstrip("/")
    with requests.Session() as s:
        if graph_path:
            body = yaml.safe_load(Path(graph_path).read_text(encoding="utf-8")) or {}
        else:
            body = {"template": template}
        r = s.put(f"{base}/graph", json=body, timeout=10)
        j = r.json()
        if not j.get("ok"):
            raise RuntimeError(f"remote /graph error: {j}")

        r = s.post(f"{base}/control/step", json={"ticks": ticks}, timeout=120)
        j = r.json()
        if not j.get("ok"):
            raise RuntimeError(f"remote /control/step error: {j}")

        r = s.get(f"{base}/snapshot", timeout=10)
        j = r.json()
        if not j.get("ok"):
            raise RuntimeError(f"remote /snapshot error: {j}")
        return j["data"]


def print_summary(snap: Dict[str, Any], title: str, tail: int = 12):
    stats = snap.get("stats") or {}
    tbl = Table(title=f"Simulation Summary — {title}", show_lines=False)
    tbl.add_column("Metric", style="bold")
    tbl.add_column("Value", justify="right")
    tbl.add_row("Simulated time", f"{snap.get('sim_time_ms', 0):.0f} ms")
    tbl.add_row("Ticks", str(stats.get("ticks", 0)))
    tbl.add_row("Spawned", str(stats.get("spawned", 0)))
    tbl.add_row("Completed", f"[green]{stats.get('completed', 0)}[/green]")
    tbl.add_row("Failed (capacity)", f"[red]{stats.get('failed_capacity', 0)}[/red]")
    tbl.add_row("Failed (random)", f"[red]{stats.get('failed_random', 0)}[/red]")
    tbl.add_row("Failed (topology)", f"[red]{stats.get('failed_topology', 0)}[/red]")
    tbl.add_row("Forwards", str(stats.get("forwards", 0)))
    tbl.add_row("Early returns", str(stats.get("early_returns", 0)))
    avg = stats.get("avg_latency_ms")
    tbl.add_row("Avg round trip", "—" if avg is None else f"{avg} ms")
    tbl.add_row("Max round trip", f"{stats.get('latency_max_ms', 0):.0f} ms")
    tbl.add_row("In flight", str(len(snap.get("packets") or [])))
    console.print(tbl)

    styles = {"info": "dim", "success": "green", "error": "red"}
    log_tbl = Table(title=f"Last {tail} log entries", show_lines=False)
    log_tbl.add_column("t (ms)", justify="right")
    log_tbl.add_column("Severity")
    log_tbl.add_column("Message")
    for entry in (snap.get("logs") or [])[-tail:]:
        sev = entry.get("severity", "info")
        log_tbl.add_row(
            f"{entry.get('sim_time_ms', 0):.0f}",
            f"[{styles.get(sev, 'dim')}]{sev}[/{styles.get(sev, 'dim')}]",
            entry.get("message", ""),
        )
    console.print(log_tbl)


def main():
    ap = argparse.ArgumentParser(description="Flow simulator — headless run")
    ap.add_argument("--template", default="simple-api", help="Template id from ./templates")
    ap.add_argument("--graph", default=None, help="Graph YAML (overrides --template)")
    ap.add_argument("--ticks", type=int, default=200, help="Ticks to simulate")
    ap.add_argument("--seed", type=int, default=None, help="Local-only: random seed")
    ap.add_argument("--tick-ms", type=float, default=50.0, help="Local-only: tick period (ms)")
    ap.add_argument("--timeline", default=None, help="Local-only: timeline YAML")
    ap.add_argument("--no-auto-spawn", action="store_true", help="Local-only: scripted spawns only")
    ap.add_argument("--remote", default=None, help="Base URL of flowsim/api (e.g., http://127.0.0.1:8080)")
    ap.add_argument("--out", default=None, help="Write the final snapshot JSON to this path")
    args = ap.parse_args()

    if args.graph and not Path(args.graph).exists():
        print(f"error: graph file not found: {args.graph}", file=sys.stderr)
        sys.exit(2)
    if args.ticks < 1:
        print("error: --ticks must be >= 1", file=sys.stderr)
        sys.exit(2)

    try:
        if args.remote:
            snap = run_remote(args.remote, args.template, args.graph, args.ticks)
        else:
            snap = run_local(
                args.template,
                args.graph,
                args.ticks,
                args.seed,
                args.tick_ms,
                args.timeline,
                auto_spawn=not args.no_auto_spawn,
            )
    except Exception as e:
        print(f"error: simulation failed: {e}", file=sys.stderr)
        sys.exit(1)

    print_summary(snap, args.graph or args.template)

    if args.out:
        outp = Path(args.out)
        try:
            outp.parent.mkdir(parents=True, exist_ok=True)
            outp.write_text(json.dumps(snap, indent=2), encoding="utf-8")
            console.print(f"[green]Saved snapshot →[/green] {outp}")
        except Exception as e:
            print(f"warn: failed to write --out file: {e}", file=sys.stderr)


if __name__ == "__main__":
    main()
