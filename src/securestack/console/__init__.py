"""Console events and progress reporting."""
from __future__ import annotations

from .events import Event, EventType, LogEvent, RemediationEvent, RollbackEvent, RunEvent, StageEvent
from .reporter import ConsoleReporter

__all__ = [
    "ConsoleReporter",
    "Event",
    "EventType",
    "LogEvent",
    "RemediationEvent",
    "RollbackEvent",
    "RunEvent",
    "StageEvent",
]
