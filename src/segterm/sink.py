"""Delivery sinks — where pumped terminal output goes.

Output pumps run on their own threads and call a :class:`DeliverySink` for
every decoded chunk, for end-of-stream and for read errors. A sink must hand
the event off quickly; it must never block the pump waiting on a consumer.
"""

import queue
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class DeliverySink(Protocol):
    def on_output(self, segment_id: str, chunk: str) -> None: ...

    def on_exit(self, segment_id: str, exit_code: int | None = None) -> None: ...

    def on_error(self, segment_id: str, message: str) -> None: ...


class EventKind(str, Enum):
    OUTPUT = "output"
    EXIT = "exit"
    ERROR = "error"


@dataclass(frozen=True)
class TerminalEvent:
    kind: EventKind
    segment_id: str
    data: str = ""
    exit_code: int | None = None


class QueueSink:
    """Thread-safe bounded event queue for in-process consumers.

    When ``maxsize`` events are waiting, the oldest one is discarded to make
    room and counted in ``dropped``.
    """

    def __init__(self, maxsize: int = 10_000) -> None:
        self._events: deque[TerminalEvent] = deque()
        self._maxsize = maxsize
        self._cond = threading.Condition()
        self.dropped = 0

    def _put(self, event: TerminalEvent) -> None:
        with self._cond:
            if len(self._events) >= self._maxsize:
                self._events.popleft()
                self.dropped += 1
            self._events.append(event)
            self._cond.notify_all()

    def on_output(self, segment_id: str, chunk: str) -> None:
        self._put(TerminalEvent(EventKind.OUTPUT, segment_id, data=chunk))

    def on_exit(self, segment_id: str, exit_code: int | None = None) -> None:
        self._put(TerminalEvent(EventKind.EXIT, segment_id, exit_code=exit_code))

    def on_error(self, segment_id: str, message: str) -> None:
        self._put(TerminalEvent(EventKind.ERROR, segment_id, data=message))

    def get(self, timeout: float | None = None) -> TerminalEvent:
        """Pop the oldest event, waiting up to ``timeout`` seconds.

        Raises queue.Empty if nothing arrives in time.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._events, timeout=timeout):
                raise queue.Empty
            return self._events.popleft()

    def drain(self) -> list[TerminalEvent]:
        with self._cond:
            events = list(self._events)
            self._events.clear()
        return events

    def __len__(self) -> int:
        with self._cond:
            return len(self._events)


class OutputBacklog:
    """Recent output of one segment, kept for replay to late subscribers.

    Holds at most ``max_bytes`` of UTF-8 encoded output; the oldest chunks
    are evicted first. Not thread-safe: the owner confines it to one thread.
    """

    def __init__(self, max_bytes: int = 1024 * 1024) -> None:
        self.max_bytes = max_bytes
        self._chunks: deque[tuple[str, int]] = deque()
        self.total_bytes = 0
        self.exited = False
        self.exit_code: int | None = None

    def append(self, chunk: str) -> None:
        size = len(chunk.encode("utf-8"))
        self._chunks.append((chunk, size))
        self.total_bytes += size
        while self.total_bytes > self.max_bytes and self._chunks:
            _, removed = self._chunks.popleft()
            self.total_bytes -= removed

    def mark_exited(self, exit_code: int | None) -> None:
        self.exited = True
        self.exit_code = exit_code

    def frames(self, max_frame_chars: int = 32 * 1024) -> list[str]:
        """Return the backlog joined and re-split into bounded frames."""
        data = "".join(chunk for chunk, _ in self._chunks)
        return [
            data[offset:offset + max_frame_chars]
            for offset in range(0, len(data), max_frame_chars)
        ]

    def __len__(self) -> int:
        return len(self._chunks)
