#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
flowsim/eventlog.py — bounded, human-readable trace of simulation events.

Keeps the most recent LOG_LIMIT entries (oldest evicted first). Overflow is
not an error.
"""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional

from .state import utc_ms

LOG_LIMIT = 50
SEVERITIES = ("info", "success", "error")

_seq = itertools.count(1)


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: int
    message: str
    severity: str = "info"
    sim_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventLog:
    def __init__(self, limit: int = LOG_LIMIT):
        self.limit = max(1, int(limit))
        self._entries: Deque[LogEntry] = deque(maxlen=self.limit)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, message: str, severity: str = "info", sim_time_ms: float = 0.0) -> LogEntry:
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity '{severity}'")
        entry = LogEntry(
            id=f"log-{next(_seq):07d}",
            timestamp=utc_ms(),
            message=message,
            severity=severity,
            sim_time_ms=sim_time_ms,
        )
        self._entries.append(entry)
        return entry

    def entries(self) -> List[LogEntry]:
        """Oldest first."""
        return list(self._entries)

    def messages(self) -> List[str]:
        return [e.message for e in self._entries]

    def clear(self) -> None:
        self._entries.clear()

    def replace(self, entries: Optional[Iterable[LogEntry]]) -> None:
        self._entries = deque(entries or [], maxlen=self.limit)

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self._entries]
