import queue
import time

import pytest

from segterm.config import TerminalConfig
from segterm.sink import EventKind, QueueSink, TerminalEvent


@pytest.fixture()
def term_config():
    """Deterministic shell and short teardown for PTY tests."""
    return TerminalConfig(shell="/bin/sh", close_grace_seconds=0.5)


@pytest.fixture()
def sink():
    return QueueSink()


def wait_for_output(
    sink: QueueSink, segment: str, needle: str, timeout: float = 5.0
) -> str:
    """Collect output for ``segment`` until ``needle`` shows up.

    Returns everything collected. Events for other segments are discarded.
    """
    deadline = time.monotonic() + timeout
    output = ""
    while needle not in output:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError(f"{needle!r} not seen in output: {output!r}")
        try:
            event = sink.get(timeout=remaining)
        except queue.Empty:
            continue
        if event.segment_id == segment and event.kind is EventKind.OUTPUT:
            output += event.data
    return output


def wait_for_event(
    sink: QueueSink, segment: str, kind: EventKind, timeout: float = 5.0
) -> tuple[TerminalEvent, list[TerminalEvent]]:
    """Wait for the first ``kind`` event of ``segment``.

    Returns that event and every event seen before it.
    """
    deadline = time.monotonic() + timeout
    seen: list[TerminalEvent] = []
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError(f"No {kind.value} event for {segment}: {seen!r}")
        try:
            event = sink.get(timeout=remaining)
        except queue.Empty:
            continue
        if event.segment_id == segment and event.kind is kind:
            return event, seen
        seen.append(event)
