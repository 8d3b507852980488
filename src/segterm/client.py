"""WebSocket client — drives terminal sessions on a segterm server."""

import asyncio
import itertools
import os
import signal
import sys
import termios
import tty
from pathlib import Path
from typing import Any

import websockets

from segterm import protocol
from segterm.tls import create_client_ssl_context, verify_peer_fingerprint


_CLOSED: dict[str, Any] = {"type": "connection_closed"}


class AuthenticationFailed(Exception):
    pass


class RequestFailed(Exception):
    """The server answered a request with an error result."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class TerminalClient:
    """An authenticated connection to a segterm server.

    Requests are matched to results by id, so several may be in flight.
    Pushed terminal events are queued and read with ``next_event()``.
    """

    def __init__(self, ws: websockets.ClientConnection):
        self._ws = ws
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        password: str,
        totp_code: str = "",
        fingerprint: str | None = None,
        ca_cert: Path | None = None,
        auth_timeout: float = 15,
    ) -> "TerminalClient":
        """Open, verify and authenticate a connection."""
        ws = await websockets.connect(
            f"wss://{host}:{port}",
            ssl=create_client_ssl_context(ca_cert),
            max_size=1_048_576,
            ping_interval=30,
            ping_timeout=10,
            server_hostname=host,
        )
        try:
            if fingerprint:
                verify_peer_fingerprint(ws.transport.get_extra_info("ssl_object"), fingerprint)

            await ws.send(protocol.auth_request(password, totp_code))
            raw = await asyncio.wait_for(ws.recv(), timeout=auth_timeout)
            if isinstance(raw, bytes):
                raise AuthenticationFailed("Unexpected binary response during auth")
            msg = protocol.decode_control(raw)
            if not msg.get("ok"):
                raise AuthenticationFailed(msg.get("error") or "unknown error")
        except BaseException:
            await ws.close()
            raise

        client = cls(ws)
        client._reader_task = asyncio.create_task(client._read_loop())
        return client

    async def __aenter__(self) -> "TerminalClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._ws.close()
        if self._reader_task is not None:
            await self._reader_task

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    msg = protocol.decode_control(message)
                except ValueError:
                    continue
                if msg["type"] == protocol.MsgType.RESULT.value:
                    future = self._pending.pop(str(msg.get("id")), None)
                    if future is not None and not future.done():
                        future.set_result(msg)
                else:
                    await self._events.put(msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Connection closed"))
            self._pending.clear()
            self._events.put_nowait(_CLOSED)

    async def request(self, msg_type: protocol.MsgType, **payload: Any) -> Any:
        """Send a request and wait for its result data.

        Raises RequestFailed when the server reports an error.
        """
        request_id = str(next(self._ids))
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(protocol.request(msg_type, request_id, **payload))
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        msg = await future
        if not msg.get("ok"):
            error = msg.get("error") or {}
            raise RequestFailed(error.get("code", "unknown"), error.get("message", ""))
        return msg.get("data")

    async def create(self, segment: str) -> bool:
        data = await self.request(protocol.MsgType.CREATE, segment=segment)
        return bool(data["created"])

    async def spawn(self, segment: str) -> bool:
        data = await self.request(protocol.MsgType.SPAWN, segment=segment)
        return bool(data["spawned"])

    async def write(self, segment: str, data: str) -> None:
        await self.request(protocol.MsgType.WRITE, segment=segment, data=data)

    async def resize(self, segment: str, rows: int, cols: int) -> None:
        await self.request(protocol.MsgType.RESIZE, segment=segment, rows=rows, cols=cols)

    async def close_segment(self, segment: str) -> bool:
        data = await self.request(protocol.MsgType.CLOSE, segment=segment)
        return bool(data["closed"])

    async def list_sessions(self) -> list[dict[str, Any]]:
        data = await self.request(protocol.MsgType.LIST)
        return data["sessions"]

    async def subscribe(self, segment: str) -> None:
        await self.request(protocol.MsgType.SUBSCRIBE, segment=segment)

    async def unsubscribe(self, segment: str) -> None:
        await self.request(protocol.MsgType.UNSUBSCRIBE, segment=segment)

    async def next_event(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the next pushed event (term:output, term:exit, ...).

        Raises ConnectionError once the connection is gone and every event
        received before that has been consumed.
        """
        event = await asyncio.wait_for(self._events.get(), timeout=timeout)
        if event is _CLOSED:
            self._events.put_nowait(_CLOSED)
            raise ConnectionError("Connection closed")
        return event


async def attach(client: TerminalClient, segment: str) -> int | None:
    """Attach the local terminal to a segment until detach or shell exit.

    Creates and spawns the segment if needed. Ctrl+] (0x1d) detaches and
    leaves the remote shell running. Returns the shell's exit code if it
    exited while attached.
    """
    await client.create(segment)
    await client.spawn(segment)
    await client.subscribe(segment)

    stdin_fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(stdin_fd)

    rows, cols = _get_terminal_size()
    await client.resize(segment, rows, cols)

    resize_event = asyncio.Event()

    def _on_sigwinch(signum, frame):
        resize_event.set()

    old_sigwinch = signal.signal(signal.SIGWINCH, _on_sigwinch)
    exit_code: list[int | None] = []

    try:
        tty.setraw(stdin_fd)

        tasks = [
            asyncio.create_task(_event_printer(client, segment, exit_code)),
            asyncio.create_task(_stdin_forwarder(client, segment, stdin_fd)),
            asyncio.create_task(_resize_forwarder(client, segment, resize_event)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for task in done:
            task.result()
    finally:
        termios.tcsetattr(stdin_fd, termios.TCSAFLUSH, old_settings)
        signal.signal(signal.SIGWINCH, old_sigwinch)

    return exit_code[0] if exit_code else None


async def _event_printer(
    client: TerminalClient, segment: str, exit_code: list[int | None]
) -> None:
    """Write the segment's output to stdout until the shell exits."""
    while True:
        try:
            event = await client.next_event()
        except ConnectionError:
            return
        if event.get("segment") != segment:
            continue
        event_type = event.get("type")
        if event_type == protocol.MsgType.OUTPUT.value:
            sys.stdout.buffer.write(event["data"].encode("utf-8"))
            sys.stdout.buffer.flush()
        elif event_type == protocol.MsgType.EXIT.value:
            exit_code.append(event.get("code"))
            return
        elif event_type == protocol.MsgType.TERM_ERROR.value:
            sys.stderr.write(f"\r\n[Terminal error: {event.get('message')}]\r\n")
            sys.stderr.flush()
            return


async def _stdin_forwarder(client: TerminalClient, segment: str, stdin_fd: int) -> None:
    """Forward keystrokes to the segment. Ctrl+] detaches."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    def _on_stdin_readable():
        try:
            data = os.read(stdin_fd, 4096)
        except OSError:
            data = b""
        queue.put_nowait(data or None)

    loop.add_reader(stdin_fd, _on_stdin_readable)
    pending = b""
    try:
        while True:
            data = await queue.get()
            if data is None or b"\x1d" in data:
                break
            # Hold back an incomplete UTF-8 sequence until the rest arrives
            text, pending = _split_utf8(pending + data)
            if text:
                await client.write(segment, text)
    except websockets.ConnectionClosed:
        pass
    finally:
        try:
            loop.remove_reader(stdin_fd)
        except (ValueError, OSError):
            pass


async def _resize_forwarder(
    client: TerminalClient, segment: str, resize_event: asyncio.Event
) -> None:
    """Watch for local window size changes and pass them on."""
    while True:
        await resize_event.wait()
        resize_event.clear()
        rows, cols = _get_terminal_size()
        await client.resize(segment, rows, cols)


def _split_utf8(data: bytes) -> tuple[str, bytes]:
    """Decode as much of ``data`` as forms complete UTF-8 characters."""
    for cut in range(len(data), max(len(data) - 4, -1), -1):
        try:
            return data[:cut].decode("utf-8"), data[cut:]
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace"), b""


def _get_terminal_size() -> tuple[int, int]:
    """Get terminal size as (rows, cols)."""
    try:
        size = os.get_terminal_size()
        return size.lines, size.columns
    except OSError:
        return 24, 80
