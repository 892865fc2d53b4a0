#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/api.py — Flask API around one simulation context

Endpoints
---------
GET    /health
GET    /snapshot                 running flag, sim time, packets, node states, logs, stats
GET    /packets
GET    /nodes/<node_id>/state
GET    /logs
DELETE /logs
POST   /control/start
POST   /control/pause
POST   /control/stop
POST   /control/step             { ticks?: int }
POST   /spawn                    { source?: str, target?: str }
GET    /graph
PUT    /graph                    { nodes: [...], edges: [...] }  or  { template: "simple-api" }
GET    /templates

Run
---
export FLASK_APP=flowsim.api:app
flask run -h 0.0.0.0 -p 8080

or:

python3 -m flowsim.api --host 0.0.0.0 --port 8080 --template caching-pattern --start
"""

from __future__ import annotations
import argparse
import os
from typing import Any, Optional

from flask import Flask, jsonify, request

from .context import SimulationContext
from .engine import TickEngine
from .graph import FlowGraph, GraphError, graph_from_dict, list_templates, load_template
from .scheduler import Scheduler
from .state import safe_float, safe_int

# -----------------------------------
# App singletons
# -----------------------------------

GRAPH: Optional[FlowGraph] = None
CTX: Optional[SimulationContext] = None
ENGINE: Optional[TickEngine] = None
SCHED: Optional[Scheduler] = None

app = Flask(__name__)


def configure(
    template: Optional[str] = None,
    seed: Optional[int] = None,
    tick_ms: Optional[float] = None,
    **engine_cfg: Any,
) -> None:
    """(Re)build the graph/context/engine/scheduler quartet used by the routes."""
    global GRAPH, CTX, ENGINE, SCHED

    if SCHED is not None and SCHED.running:
        SCHED.pause()

    GRAPH = FlowGraph.from_template(template) if template else FlowGraph()
    CTX = SimulationContext(seed=seed)
    if tick_ms:
        engine_cfg["TICK_MS"] = float(tick_ms)
    ENGINE = TickEngine(GRAPH.get_nodes, GRAPH.get_edges, CTX, **engine_cfg)
    SCHED = Scheduler(ENGINE, verbose=False)


configure(
    template=os.environ.get("FLOWSIM_TEMPLATE", "simple-api"),
    seed=safe_int(os.environ.get("FLOWSIM_SEED"), 0) if os.environ.get("FLOWSIM_SEED") else None,
    tick_ms=safe_float(os.environ.get("FLOWSIM_TICK_MS"), None),
)


# -----------------------------------
# Helpers
# -----------------------------------


def _ok(data: Any, status: int = 200):
    return jsonify({"ok": True, "data": data}), status


def _err(msg: str, status: int = 400, **extra):
    return jsonify({"ok": False, "error": msg, **extra}), status


def _control_state():
    return {"running": SCHED.running, "sim_time_ms": CTX.now_ms}


# -----------------------------------
# Routes
# -----------------------------------


@app.get("/health")
def health():
    return _ok({"running": SCHED.running, "sim_time_ms": CTX.now_ms, "tick_ms": ENGINE.tick_ms})


@app.get("/snapshot")
def snapshot():
    return _ok(CTX.snapshot())


@app.get("/packets")
def packets():
    return _ok(CTX.packets())


@app.get("/nodes/<node_id>/state")
def node_state(node_id: str):
    if not any(n.id == node_id for n in GRAPH.get_nodes()):
        return _err(f"unknown node '{node_id}'", status=404)
    return _ok(CTX.node_state(node_id))


@app.get("/logs")
def logs():
    return _ok(CTX.logs())


@app.delete("/logs")
def clear_logs():
    with CTX.lock:
        CTX.log.clear()
    return _ok({"cleared": True})


@app.post("/control/start")
def control_start():
    SCHED.start()
    return _ok(_control_state())


@app.post("/control/pause")
def control_pause():
    SCHED.pause()
    return _ok(_control_state())


@app.post("/control/stop")
def control_stop():
    SCHED.stop()
    return _ok(_control_state())


@app.post("/control/step")
def control_step():
    body = request.get_json(silent=True) or {}
    ticks = safe_int(body.get("ticks"), 1)
    if ticks < 1:
        return _err("ticks must be >= 1")
    if SCHED.running:
        return _err("pause the simulation before stepping", status=409)
    SCHED.step(ticks)
    return _ok({**_control_state(), "live_packets": len(CTX.packet_set)})


@app.post("/spawn")
def spawn():
    """
    Body (both optional):
    { "source": "t1-1", "target": "t1-2" }
    Without source/target a random client and outgoing edge are used.
    """
    body = request.get_json(silent=True) or {}
    source, target = body.get("source"), body.get("target")
    if bool(source) != bool(target):
        return _err("provide both 'source' and 'target', or neither")
    pkt = ENGINE.spawn(source, target)
    if pkt is None:
        return _err("no matching client/edge to spawn on", status=404)
    return _ok(pkt.to_dict(), status=201)


@app.get("/graph")
def get_graph():
    return _ok(GRAPH.to_dict())


@app.put("/graph")
def put_graph():
    if not request.is_json:
        return _err("expected JSON body")
    if SCHED.running:
        return _err("pause or stop the simulation before editing the graph", status=409)
    body = request.get_json() or {}
    try:
        if body.get("template"):
            nodes, edges = load_template(str(body["template"]))
        else:
            nodes, edges = graph_from_dict(body)
    except KeyError as e:
        return _err(str(e).strip("'\""), status=404)
    except GraphError as e:
        return _err(f"invalid graph: {e}")
    GRAPH.replace(nodes, edges)
    return _ok(GRAPH.to_dict())


@app.get("/templates")
def templates():
    return _ok(list_templates())


# -----------------------------------
# CLI entrypoint
# -----------------------------------


def main():
    ap = argparse.ArgumentParser(description="Flow simulator API")
    ap.add_argument("--host", default=os.environ.get("FLOWSIM_API_HOST", "127.0.0.1"))
    ap.add_argument(
        "--port", type=int, default=int(os.environ.get("FLOWSIM_API_PORT", "8080"))
    )
    ap.add_argument("--template", default=os.environ.get("FLOWSIM_TEMPLATE", "simple-api"))
    ap.add_argument("--seed", type=int, default=None)
    ap.add_argument("--start", action="store_true", help="Start the clock immediately")
    ap.add_argument("--debug", action="store_true")
    args = ap.parse_args()

    configure(template=args.template, seed=args.seed)
    if args.start:
        SCHED.start()
    # the reloader would spawn a second clock thread
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False)


if __name__ == "__main__":
    main()
