"""Tests for PTY session management."""

import queue
import threading
import time

import pytest

from conftest import wait_for_event, wait_for_output
from segterm.config import TerminalConfig
from segterm.errors import PtyIOError, SpawnFailure
from segterm.session import OutputPump, Session, resolve_shell
from segterm.sink import EventKind, QueueSink


def _pump_threads(segment: str) -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name == f"segterm-pump-{segment}"]


def test_resolve_shell_prefers_config():
    config = TerminalConfig(shell="/bin/zsh -l")
    argv, env = resolve_shell(config, platform="linux", environ={"SHELL": "/bin/fish"})
    assert argv == ["/bin/zsh", "-l"]
    assert env == {"TERM": "xterm-256color"}


def test_resolve_shell_uses_environment_then_fallback():
    config = TerminalConfig()
    argv, _ = resolve_shell(config, platform="darwin", environ={"SHELL": "/bin/fish"})
    assert argv == ["/bin/fish"]
    argv, _ = resolve_shell(config, platform="linux", environ={})
    assert argv == ["/bin/bash"]


def test_resolve_shell_windows():
    argv, env = resolve_shell(TerminalConfig(), platform="win32", environ={"SHELL": "x"})
    assert argv == ["powershell.exe"]
    assert env == {"TERM": "cygwin"}


def test_spawn_and_read(sink, term_config):
    session = Session.open("t1", sink, term_config)
    try:
        assert session.spawn()
        session.write("echo $((40+2))\n")
        assert "42" in wait_for_output(sink, "t1", "42")
    finally:
        session.close()


def test_spawn_is_idempotent(sink, term_config):
    session = Session.open("t1", sink, term_config)
    try:
        assert session.spawn() is True
        pid = session.pid
        assert session.spawn() is False
        assert session.pid == pid
        assert len(_pump_threads("t1")) == 1
    finally:
        session.close()


def test_spawn_failure_leaves_session_retryable(sink):
    config = TerminalConfig(shell="/nonexistent/segterm-shell", close_grace_seconds=0.5)
    session = Session.open("t1", sink, config)
    try:
        with pytest.raises(SpawnFailure):
            session.spawn()
        assert not session.spawned
        assert session.spawn(argv=["/bin/sh"])
        assert session.spawned
    finally:
        session.close()


def test_writes_arrive_in_order(sink, term_config):
    session = Session.open("t1", sink, term_config)
    try:
        session.spawn()
        session.write("echo one;")
        session.write(" echo two;")
        session.write(" echo three\n")
        # The echoed command line never contains this sequence, only the output does
        wait_for_output(sink, "t1", "one\r\ntwo\r\nthree\r\n")
    finally:
        session.close()


def test_concurrent_writers_do_not_interleave(sink, term_config):
    session = Session.open("t1", sink, term_config)
    lines = [f"[w{i}]" + chr(ord("a") + i) * 1500 + f"[/w{i}]" for i in range(8)]
    try:
        # Echo off, so only cat's copy of each line comes back
        session.spawn(argv=["sh", "-c", "stty -echo; echo ready; exec cat"])
        wait_for_output(sink, "t1", "ready")

        barrier = threading.Barrier(len(lines))

        def _writer(line):
            barrier.wait()
            session.write(line + "\n")

        threads = [threading.Thread(target=_writer, args=(line,)) for line in lines]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        output = ""
        deadline = time.monotonic() + 10
        while not all(line in output for line in lines):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssertionError(f"Incomplete output: {output!r}")
            try:
                event = sink.get(timeout=remaining)
            except queue.Empty:
                continue
            if event.kind is EventKind.OUTPUT:
                output += event.data
        assert sorted(output.split()) == sorted(lines)
    finally:
        session.close()


def test_resize_reaches_the_shell(sink, term_config):
    session = Session.open("t1", sink, term_config)
    try:
        session.spawn()
        session.resize(40, 120)
        session.write("stty size\n")
        assert "40 120" in wait_for_output(sink, "t1", "40 120")
    finally:
        session.close()


def test_resize_rejects_bad_size(sink, term_config):
    session = Session.open("t1", sink, term_config)
    try:
        with pytest.raises(ValueError):
            session.resize(0, 80)
        with pytest.raises(ValueError):
            session.resize(24, -1)
        with pytest.raises(ValueError):
            session.resize(70000, 80)
    finally:
        session.close()


def test_shell_exit_is_reported_as_exit(sink, term_config):
    session = Session.open("t1", sink, term_config)
    try:
        session.spawn()
        session.write("exit 3\n")
        event, seen = wait_for_event(sink, "t1", EventKind.EXIT)
        assert event.exit_code == 3
        assert all(e.kind is not EventKind.ERROR for e in seen)
    finally:
        session.close()


def test_close_stops_pump_and_is_idempotent(sink, term_config):
    session = Session.open("t1", sink, term_config)
    session.spawn()
    assert _pump_threads("t1")

    session.close()
    session.close()

    assert session.closed
    assert not _pump_threads("t1")
    with pytest.raises(PtyIOError):
        session.write("x")
    with pytest.raises(PtyIOError):
        session.resize(40, 120)
    with pytest.raises(PtyIOError):
        session.spawn()
    # Closing is not an exit of the shell
    assert all(e.kind is not EventKind.EXIT for e in sink.drain())


def test_close_without_spawn(sink, term_config):
    session = Session.open("t1", sink, term_config)
    session.write("buffered before spawn\n")
    session.close()
    assert session.closed
    assert session.info()["alive"] is False


class _ScriptedSession:
    """Stands in for a Session with a fixed sequence of reads."""

    def __init__(self, reads, sink):
        self.segment_id = "fake"
        self.sink = sink
        self.closed = False
        self._reads = list(reads)

    def _read_chunk(self):
        item = self._reads.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def _reap(self):
        return 0


def test_pump_reassembles_split_characters():
    sink = QueueSink()
    euro = "€".encode("utf-8")
    OutputPump(_ScriptedSession([euro[:2], euro[2:] + b"!", b""], sink)).run()

    events = sink.drain()
    text = "".join(e.data for e in events if e.kind is EventKind.OUTPUT)
    assert text == "€!"
    assert events[-1].kind is EventKind.EXIT
    assert events[-1].exit_code == 0


def test_pump_replaces_invalid_bytes():
    sink = QueueSink()
    OutputPump(_ScriptedSession([b"ok\xff", b""], sink)).run()
    events = sink.drain()
    assert events[0].data == "ok�"
    assert events[-1].kind is EventKind.EXIT


def test_pump_flushes_truncated_character_at_exit():
    sink = QueueSink()
    OutputPump(_ScriptedSession([b"a\xe2\x82", b""], sink)).run()
    text = "".join(e.data for e in sink.drain() if e.kind is EventKind.OUTPUT)
    assert text == "a�"


def test_pump_reports_read_errors():
    sink = QueueSink()
    OutputPump(_ScriptedSession([b"partial", PtyIOError("PTY read error: boom")], sink)).run()
    events = sink.drain()
    assert [e.kind for e in events] == [EventKind.OUTPUT, EventKind.ERROR]
    assert "boom" in events[1].data


def test_pump_stops_silently_when_interrupted():
    sink = QueueSink()
    OutputPump(_ScriptedSession([b"x", None], sink)).run()
    assert [e.kind for e in sink.drain()] == [EventKind.OUTPUT]


def test_pump_survives_failing_sink():
    class _BrokenSink(QueueSink):
        def on_output(self, segment_id, chunk):
            raise RuntimeError("sink down")

    sink = _BrokenSink()
    OutputPump(_ScriptedSession([b"x", b""], sink)).run()
    assert [e.kind for e in sink.drain()] == [EventKind.EXIT]
