import pathlib
import sys
import threading
import time

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from flowsim.context import SimulationContext
from flowsim.engine import TickEngine
from flowsim.eventlog import EventLog
from flowsim.graph import FlowGraph
from flowsim.scheduler import Scheduler


@pytest.fixture()
def sched():
    graph = FlowGraph.from_template("simple-api")
    engine = TickEngine(graph.get_nodes, graph.get_edges, SimulationContext(seed=5), AUTO_SPAWN=False)
    s = Scheduler(engine, speed=20.0, verbose=False)
    yield s
    s.stop()


def test_event_log_keeps_last_fifty_oldest_first():
    log = EventLog()
    for i in range(60):
        log.add(f"msg {i}")
    assert len(log) == 50
    assert log.messages() == [f"msg {i}" for i in range(10, 60)]


def test_event_log_rejects_unknown_severity():
    with pytest.raises(ValueError):
        EventLog().add("boom", severity="fatal")


def test_start_ticks_until_paused(sched):
    sched.start()
    time.sleep(0.3)
    sched.pause()

    ctx = sched.ctx
    assert ctx.stats.ticks > 0
    frozen = ctx.now_ms
    time.sleep(0.1)
    assert ctx.now_ms == frozen
    assert ctx.log.messages()[0] == "Execution started"
    assert ctx.log.messages()[-1] == "Execution paused"


def test_start_resumes_after_pause(sched):
    sched.start()
    time.sleep(0.1)
    sched.pause()
    paused_at = sched.ctx.now_ms
    sched.start()
    time.sleep(0.1)
    sched.pause()
    assert sched.ctx.now_ms > paused_at


def test_start_twice_logs_once(sched):
    sched.start()
    sched.start()
    sched.pause()
    assert sched.ctx.log.messages().count("Execution started") == 1


def test_step_refused_while_running(sched):
    sched.start()
    with pytest.raises(RuntimeError):
        sched.step(1)
    sched.pause()
    results = sched.step(3)
    assert len(results) == 3


def test_step_advances_fixed_simulated_time(sched):
    sched.step(4)
    assert sched.ctx.now_ms == 200.0
    assert sched.ctx.stats.ticks == 4


def test_stop_discards_state(sched):
    sched.engine.spawn("t1-1", "t1-2")
    sched.step(40)
    assert sched.ctx.log.messages()
    sched.stop()

    snap = sched.ctx.snapshot()
    assert snap["running"] is False
    assert snap["packets"] == []
    assert snap["node_states"] == {}
    assert snap["sim_time_ms"] == 0.0
    assert [entry["message"] for entry in snap["logs"]] == ["Execution stopped"]


def test_tick_hooks_see_every_step(sched):
    seen = []
    sched.on_tick(lambda result: seen.append(result.now_ms))
    sched.step(3)
    assert seen == [50.0, 100.0, 150.0]


def test_event_log_replace_keeps_bound():
    src = EventLog(limit=3)
    for i in range(3):
        src.add(f"msg {i}", severity="success")
    log = EventLog(limit=2)
    log.replace(src.entries())
    assert log.messages() == ["msg 1", "msg 2"]
    log.clear()
    assert log.to_list() == []


def test_clock_that_outlives_halt_is_never_doubled(sched):
    release = threading.Event()
    stuck = threading.Thread(target=release.wait, name="FlowSimClock", daemon=True)
    stuck.start()
    sched.join_timeout_s = 0.05
    sched._thread = stuck
    sched.ctx.running = True
    try:
        sched.pause()
        assert sched._thread is stuck

        sched.start()
        assert sched._thread is stuck
        clocks = [t for t in threading.enumerate() if t.name == "FlowSimClock" and t is not stuck]
        assert clocks == []
    finally:
        release.set()
        stuck.join()

    sched.pause()
    assert sched._thread is None
