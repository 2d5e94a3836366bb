"""
Progress sinks.

Long operations report incremental progress through a sink rather than
a transport. A sink only needs a synchronous emit(event); it must not
block. Anything that wants to push events over a socket, SSE stream or
UI wraps one of these.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol, Union, runtime_checkable

from ._types import EventKind, ProgressEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class ProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None:
        ...


class NullProgressSink:
    """Discards every event."""

    def emit(self, event: ProgressEvent) -> None:
        pass


class ListProgressSink:
    """Collects events in memory. Handy for tests and batch callers."""

    def __init__(self):
        self.events: list[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[ProgressEvent]:
        return [e for e in self.events if e.kind == kind]


class CallbackProgressSink:
    """Passes each event to a plain callable."""

    def __init__(self, callback: Callable[[ProgressEvent], Any]):
        self.callback = callback

    def emit(self, event: ProgressEvent) -> None:
        self.callback(event)


class QueueProgressSink:
    """Feeds events into an asyncio.Queue for a consumer task."""

    def __init__(self, queue: Optional[asyncio.Queue] = None):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    def emit(self, event: ProgressEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Progress queue full, dropping {event.kind.value} event")


class LoggingProgressSink:
    """Writes events to the log. Used by the CLI."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def emit(self, event: ProgressEvent) -> None:
        if event.kind == EventKind.ERROR:
            self.log.error(f"{event.ip or ''} {event.message}".strip())
        elif event.kind == EventKind.STATUS and event.output is None:
            suffix = f" ({event.progress:.0f}%)" if event.progress is not None else ""
            self.log.info(f"{event.message}{suffix}")
        elif event.kind == EventKind.PARTIAL_UPDATE:
            self.log.info(f"Probed {event.ip}")


SinkLike = Union[ProgressSink, Callable[[ProgressEvent], Any], None]


def as_sink(sink: SinkLike) -> ProgressSink:
    """Accept a sink, a plain callable or None."""
    if sink is None:
        return NullProgressSink()
    if isinstance(sink, ProgressSink):
        return sink
    if callable(sink):
        return CallbackProgressSink(sink)
    raise TypeError(f"Not a progress sink: {sink!r}")


def status(
    message: str,
    progress: Optional[float] = None,
    output: Optional[str] = None,
    data: Any = None,
) -> ProgressEvent:
    return ProgressEvent(
        kind=EventKind.STATUS, message=message, progress=progress, output=output, data=data
    )


def partial_update(ip: str, data: dict) -> ProgressEvent:
    return ProgressEvent(kind=EventKind.PARTIAL_UPDATE, ip=ip, data=data)


def data(payload: Any) -> ProgressEvent:
    return ProgressEvent(kind=EventKind.DATA, data=payload)


def error(message: str, ip: Optional[str] = None) -> ProgressEvent:
    return ProgressEvent(kind=EventKind.ERROR, message=message, ip=ip)
