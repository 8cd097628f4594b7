"""
Structured provisioning events.

The engine never talks to a terminal or a log file directly: it emits
events (step started, retry attempted, poll timed out, ...) to an EventSink
and a presentation layer decides how to render them.

Usage:
    from imagebuilder.provisioning.events import InMemoryEventSink

    sink = InMemoryEventSink()
    runner = StepRunner(steps, events=sink)
    runner.run(state)
    print(sink.names())
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from imagebuilder.timestamps import isonow

logger = logging.getLogger(__name__)

# Event names
STEP_STARTED = "step.started"
STEP_COMPLETED = "step.completed"
STEP_HALTED = "step.halted"
STEP_CANCELLED = "step.cancelled"
STEP_CLEANUP = "step.cleanup"
STEP_CLEANUP_FAILED = "step.cleanup_failed"
RUN_FINISHED = "run.finished"
RETRY_ATTEMPTED = "retry.attempted"
RETRY_EXHAUSTED = "retry.exhausted"
NETWORK_RETRY = "network.retry"
OPERATION_STARTED = "operation.started"
OPERATION_FINISHED = "operation.finished"
POLL_WAITING = "poll.waiting"
POLL_QUERY_FAILED = "poll.query_failed"
POLL_TIMED_OUT = "poll.timed_out"

# Events logged above INFO by LoggingEventSink
_WARNING_EVENTS = {STEP_HALTED, STEP_CLEANUP_FAILED, RETRY_EXHAUSTED, POLL_QUERY_FAILED, POLL_TIMED_OUT}
_DEBUG_EVENTS = {POLL_WAITING, OPERATION_STARTED}

# LogRecord attributes an event field must not overwrite
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


@dataclass
class ProvisioningEvent:
    """A single engine event."""

    name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=isonow)


class EventSink(Protocol):
    """Anything that can receive engine events."""

    def emit(self, event: ProvisioningEvent) -> None:
        ...


class LoggingEventSink:
    """Render events through the standard logging module with structured extras."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def emit(self, event: ProvisioningEvent) -> None:
        extra = {"event": event.name}
        for key, value in event.fields.items():
            extra[f"event_{key}" if key in _RESERVED else key] = value

        if event.name in _WARNING_EVENTS:
            level = logging.WARNING
        elif event.name in _DEBUG_EVENTS:
            level = logging.DEBUG
        else:
            level = logging.INFO

        details = " ".join(f"{k}={v}" for k, v in event.fields.items())
        self._log.log(level, f"{event.name} {details}".rstrip(), extra=extra)


class InMemoryEventSink:
    """Thread-safe sink that records events (tests, progress UIs)."""

    def __init__(self) -> None:
        self._events: List[ProvisioningEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: ProvisioningEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[ProvisioningEvent]:
        with self._lock:
            return list(self._events)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> List[ProvisioningEvent]:
        return [e for e in self.events if e.name == name]


class CompositeEventSink:
    """Fan an event out to several sinks; a failing sink never breaks the run."""

    def __init__(self, *sinks: EventSink):
        self._sinks = list(sinks)

    def emit(self, event: ProvisioningEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception as e:
                logger.error(f"Event sink {sink!r} failed on {event.name}: {e}")


def emit(sink: Optional[EventSink], name: str, **fields: Any) -> None:
    """Emit an event to ``sink`` (default: logging sink)."""
    (sink or _default_sink).emit(ProvisioningEvent(name=name, fields=fields))


_default_sink = LoggingEventSink()
