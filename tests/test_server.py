"""Tests for the server's request handlers and per-client delivery."""

import asyncio

import pytest
import pytest_asyncio

from segterm.config import Config
from segterm.protocol import decode_control
from segterm.server import ClientConnection, TerminalServer


class _RecordingConnection:
    """Stands in for a ClientConnection and keeps every queued frame."""

    def __init__(self):
        self.messages = []

    def enqueue(self, message):
        self.messages.append(decode_control(message))

    def output(self, segment):
        return "".join(
            m["data"] for m in self.messages
            if m["type"] == "term:output" and m["segment"] == segment
        )


class _FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.close_calls = []

    async def send(self, message):
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))


@pytest_asyncio.fixture()
async def server(tmp_path):
    config = Config()
    config.terminal.shell = "/bin/sh"
    config.terminal.close_grace_seconds = 0.5
    srv = TerminalServer(config, tmp_path)
    srv.sink.attach_loop()
    try:
        yield srv
    finally:
        await asyncio.to_thread(srv.registry.close_all)


async def _wait_for_output(conn, segment, needle, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while needle not in conn.output(segment):
        if loop.time() > deadline:
            raise AssertionError(f"{needle!r} not seen in {conn.output(segment)!r}")
        await asyncio.sleep(0.05)
    return conn.output(segment)


@pytest.mark.asyncio
async def test_recreate_while_close_is_running_starts_fresh(server):
    first, second = _RecordingConnection(), _RecordingConnection()
    await server._create(first, {"segment": "t1"})
    await server._spawn(first, {"segment": "t1"})
    # A shell that ignores SIGHUP keeps the close busy for the whole grace period
    await server._write(first, {"segment": "t1", "data": "trap '' HUP; echo old-$((1+1))\n"})
    await _wait_for_output(first, "t1", "old-2")

    closing = asyncio.create_task(server._close(first, {"segment": "t1"}))
    await asyncio.sleep(0.1)
    assert await server._create(second, {"segment": "t1"}) == {"created": True}
    assert await closing == {"closed": True}

    await server._spawn(second, {"segment": "t1"})
    await server._write(second, {"segment": "t1", "data": "echo fresh-$((1+1))\n"})
    output = await _wait_for_output(second, "t1", "fresh-2")

    assert "old" not in output
    assert not any(m.get("replay") for m in second.messages)
    assert [s["segment"] for s in server.registry.list()] == ["t1"]


@pytest.mark.asyncio
async def test_concurrent_close_reports_one_close(server):
    conn = _RecordingConnection()
    await server._create(conn, {"segment": "t1"})
    await server._spawn(conn, {"segment": "t1"})
    results = await asyncio.gather(
        server._close(conn, {"segment": "t1"}),
        server._close(conn, {"segment": "t1"}),
    )
    assert sorted(r["closed"] for r in results) == [False, True]
    assert "t1" not in server.registry


@pytest.mark.asyncio
async def test_resize_out_of_range_is_a_bad_request(server):
    conn = _RecordingConnection()
    await server._create(conn, {"segment": "t1"})
    await server._dispatch(
        conn, {"type": "resize", "id": "9", "segment": "t1", "rows": 70000, "cols": 80}
    )
    result = conn.messages[-1]
    assert result["id"] == "9"
    assert result["ok"] is False
    assert result["error"]["code"] == "bad_request"


@pytest.mark.asyncio
async def test_overflowing_client_is_disconnected():
    ws = _FakeWebSocket()
    conn = ClientConnection(ws, "127.0.0.1", queue_size=2)
    for i in range(3):
        conn.enqueue(f"frame-{i}")
    await asyncio.sleep(0.01)
    assert ws.close_calls == [(1013, "output queue overflow")]

    conn.enqueue("late")
    await asyncio.sleep(0.01)
    assert len(ws.close_calls) == 1


@pytest.mark.asyncio
async def test_send_loop_delivers_in_order():
    ws = _FakeWebSocket()
    conn = ClientConnection(ws, "127.0.0.1", queue_size=8)
    sender = asyncio.create_task(conn.send_loop())
    for i in range(3):
        conn.enqueue(f"frame-{i}")
    await asyncio.sleep(0.01)
    sender.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sender
    assert ws.sent == ["frame-0", "frame-1", "frame-2"]
