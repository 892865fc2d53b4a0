#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/scheduler.py — fixed-period clock driving the tick engine.

start()  → running, logs "Execution started", ticks every TICK_MS on a daemon thread
pause()  → not running, state kept; start() resumes where it left off
stop()   → not running, packets / node states / log / stats discarded
step(n)  → n synchronous ticks (only while not running)

Ticks never overlap: the loop holds the context lock for the whole tick and
control transitions take the same lock. Simulated time advances by TICK_MS
per tick regardless of the speed factor, which only shortens the real sleep.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, List, Optional

from .engine import TickEngine, TickResult

TickHook = Callable[[TickResult], None]


class Scheduler:
    def __init__(self, engine: TickEngine, speed: float = 1.0, verbose: bool = True):
        self.engine = engine
        self.ctx = engine.ctx
        self.speed = max(0.01, speed)
        self.verbose = verbose
        self._hooks: List[TickHook] = []
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.join_timeout_s = 2.0

    def log(self, msg: str):
        if self.verbose:
            print(f"[scheduler] {msg}")

    @property
    def running(self) -> bool:
        return self.ctx.running

    @property
    def interval_s(self) -> float:
        return self.engine.tick_ms / 1000.0 / self.speed

    def on_tick(self, hook: TickHook) -> None:
        """Register a callback run after every committed tick (timeline runner, renderers)."""
        self._hooks.append(hook)

    # -------- control --------

    def start(self):
        with self.ctx.lock:
            if self.ctx.running:
                return
            self.ctx.running = True
            self.ctx.add_log("Execution started", "info")
        self._stop_event.clear()
        th = self._thread
        if th is not None and th.is_alive():
            # a clock that outlived its halt either resumes looping or is on its way out
            th.join(timeout=self.join_timeout_s)
            if th.is_alive():
                return
        self._thread = threading.Thread(target=self._loop, name="FlowSimClock", daemon=True)
        self._thread.start()

    def pause(self):
        with self.ctx.lock:
            if not self.ctx.running:
                return
            self.ctx.running = False
            self.ctx.add_log("Execution paused", "info")
        self._halt_thread()

    def stop(self):
        with self.ctx.lock:
            self.ctx.running = False
        self._halt_thread()
        with self.ctx.lock:
            self.ctx.reset()
            self.ctx.add_log("Execution stopped", "info")

    def step(self, n: int = 1) -> List[TickResult]:
        if self.running:
            raise RuntimeError("cannot step while the scheduler is running")
        results = []
        for _ in range(max(0, int(n))):
            results.append(self._tick_once())
        return results

    # -------- loop --------

    def _halt_thread(self):
        self._stop_event.set()
        th = self._thread
        if th is None or th is threading.current_thread():
            # a hook pausing from inside the loop; the loop exits on its own
            return
        th.join(timeout=self.join_timeout_s)
        if th.is_alive():
            # keep the handle so start() never runs a second clock next to it
            print(f"[scheduler] WARN: clock thread still running after {self.join_timeout_s:.1f}s")
            return
        self._thread = None

    def _tick_once(self) -> TickResult:
        result = self.engine.tick()
        for hook in list(self._hooks):
            hook(result)
        return result

    def _loop(self):
        next_at = time.monotonic()
        while not self._stop_event.is_set():
            with self.ctx.lock:
                if not self.ctx.running:
                    break
                try:
                    self._tick_once()
                except Exception as e:
                    print(f"[scheduler] WARN: tick failed: {e}")
            next_at += self.interval_s
            delay = next_at - time.monotonic()
            if delay < 0:
                # fell behind; do not burst to catch up
                next_at = time.monotonic()
                delay = 0.0
            self._stop_event.wait(delay)
        self.log("clock halted")
