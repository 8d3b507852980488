"""WebSocket server — authenticates clients and exposes terminal sessions."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection

from segterm import auth, protocol
from segterm.config import Config
from segterm.errors import TerminalError
from segterm.registry import SessionRegistry
from segterm.sink import OutputBacklog
from segterm.tls import create_server_ssl_context

logger = logging.getLogger("segterm.server")


class ClientConnection:
    """One authenticated WebSocket client and its bounded outbound queue.

    Results and pushed events share the queue, so a client sees them in the
    order the server produced them. A client that lets the queue fill up is
    disconnected; it can reconnect and replay the backlog.
    """

    def __init__(self, ws: ServerConnection, remote_ip: str, queue_size: int):
        self.ws = ws
        self.remote_ip = remote_ip
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._overflowed = False

    def enqueue(self, message: str) -> None:
        if self._overflowed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self._overflowed = True
            logger.warning("Client %s is not keeping up, disconnecting", self.remote_ip)
            asyncio.get_running_loop().create_task(
                self.ws.close(1013, "output queue overflow")
            )

    async def send_loop(self) -> None:
        try:
            while True:
                message = await self._queue.get()
                await self.ws.send(message)
        except websockets.ConnectionClosed:
            pass


class BroadcastSink:
    """Delivery sink that pushes terminal events to subscribed clients.

    Pump threads call ``on_output``/``on_exit``/``on_error``; each call hops
    onto the event loop, so backlogs, sequence numbers and subscriber sets
    are only ever touched from the loop thread.
    """

    def __init__(self, backlog_bytes: int = 1024 * 1024):
        self.backlog_bytes = backlog_bytes
        self._loop: asyncio.AbstractEventLoop | None = None
        self._backlogs: dict[str, OutputBacklog] = {}
        self._seq: dict[str, int] = {}
        self._subscribers: dict[str, set[ClientConnection]] = {}

    def attach_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Dropped terminal event for %s after shutdown", args[0])

    # DeliverySink, called from pump threads

    def on_output(self, segment_id: str, chunk: str) -> None:
        self._call_in_loop(self._publish_output, segment_id, chunk)

    def on_exit(self, segment_id: str, exit_code: int | None = None) -> None:
        self._call_in_loop(self._publish_exit, segment_id, exit_code)

    def on_error(self, segment_id: str, message: str) -> None:
        self._call_in_loop(self._publish_error, segment_id, message)

    # Loop thread only

    def track(self, segment_id: str) -> None:
        self._backlogs.setdefault(segment_id, OutputBacklog(self.backlog_bytes))
        self._seq.setdefault(segment_id, 0)
        self._subscribers.setdefault(segment_id, set())

    def forget(self, segment_id: str) -> None:
        self._backlogs.pop(segment_id, None)
        self._seq.pop(segment_id, None)
        self._subscribers.pop(segment_id, None)

    def subscribe(self, segment_id: str, conn: ClientConnection) -> None:
        """Add a subscriber and replay the segment's backlog to it."""
        self.track(segment_id)
        subscribers = self._subscribers[segment_id]
        if conn in subscribers:
            return
        subscribers.add(conn)
        backlog = self._backlogs[segment_id]
        seq = self._seq[segment_id]
        for frame in backlog.frames():
            conn.enqueue(protocol.output_event(segment_id, seq, frame, replay=True))
        if backlog.exited:
            conn.enqueue(protocol.exit_event(segment_id, backlog.exit_code))

    def unsubscribe(self, segment_id: str, conn: ClientConnection) -> None:
        self._subscribers.get(segment_id, set()).discard(conn)

    def drop_connection(self, conn: ClientConnection) -> None:
        for subscribers in self._subscribers.values():
            subscribers.discard(conn)

    def _fanout(self, segment_id: str, message: str) -> None:
        for conn in list(self._subscribers.get(segment_id, ())):
            conn.enqueue(message)

    def _publish_output(self, segment_id: str, chunk: str) -> None:
        backlog = self._backlogs.get(segment_id)
        if backlog is None:
            return
        backlog.append(chunk)
        self._seq[segment_id] += 1
        self._fanout(segment_id, protocol.output_event(segment_id, self._seq[segment_id], chunk))

    def _publish_exit(self, segment_id: str, exit_code: int | None) -> None:
        backlog = self._backlogs.get(segment_id)
        if backlog is None:
            return
        backlog.mark_exited(exit_code)
        self._fanout(segment_id, protocol.exit_event(segment_id, exit_code))

    def _publish_error(self, segment_id: str, message: str) -> None:
        if segment_id not in self._backlogs:
            return
        self._fanout(segment_id, protocol.term_error_event(segment_id, message))


def _segment(msg: dict[str, Any]) -> str:
    segment = msg.get("segment")
    if not isinstance(segment, str) or not segment:
        raise ValueError("Missing 'segment' field")
    return segment


Handler = Callable[[ClientConnection, dict[str, Any]], Awaitable[Any]]


class TerminalServer:
    """Serves the terminal command surface over authenticated WebSocket."""

    def __init__(self, config: Config, config_dir: Path | None = None):
        self.config = config
        self.sc = config.server
        self.config_dir = config_dir or Config.config_dir()
        self.auth_tracker = auth.AuthTracker(
            self.sc.max_auth_failures,
            self.sc.auth_lockout_seconds,
        )
        self.sink = BroadcastSink(config.terminal.backlog_bytes)
        self.registry = SessionRegistry(
            self.sink,
            config.terminal,
            max_sessions=self.sc.max_sessions,
        )
        self._handlers: dict[str, Handler] = {
            protocol.MsgType.CREATE.value: self._create,
            protocol.MsgType.SPAWN.value: self._spawn,
            protocol.MsgType.WRITE.value: self._write,
            protocol.MsgType.RESIZE.value: self._resize,
            protocol.MsgType.CLOSE.value: self._close,
            protocol.MsgType.LIST.value: self._list,
            protocol.MsgType.SUBSCRIBE.value: self._subscribe,
            protocol.MsgType.UNSUBSCRIBE.value: self._unsubscribe,
        }
        # segment -> teardown still running in a worker thread
        self._closing: dict[str, asyncio.Task[bool]] = {}

    async def _authenticate(
        self, ws: ServerConnection, remote_ip: str
    ) -> bool:
        """Handle the authentication handshake. Returns True on success."""
        if self.auth_tracker.is_locked(remote_ip):
            await ws.send(protocol.auth_response(
                ok=False,
                error="Too many failed attempts. Try again later.",
            ))
            return False

        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=30)
        except (asyncio.TimeoutError, websockets.ConnectionClosed):
            return False

        if isinstance(raw, bytes):
            await ws.send(protocol.auth_response(
                ok=False, error="Expected JSON auth message"
            ))
            return False

        try:
            msg = protocol.decode_control(raw)
        except ValueError:
            await ws.send(protocol.auth_response(
                ok=False, error="Invalid message format"
            ))
            return False

        if msg.get("type") != protocol.MsgType.AUTH.value:
            await ws.send(protocol.auth_response(
                ok=False, error="Expected auth message"
            ))
            return False

        reason = auth.check_credentials(
            self.sc, str(msg.get("password", "")), str(msg.get("totp", ""))
        )
        if reason is not None:
            self.auth_tracker.record_failure(remote_ip)
            logger.warning("Auth failure from %s (%s)", remote_ip, reason)
            await ws.send(protocol.auth_response(
                ok=False, error="Authentication failed"
            ))
            return False

        self.auth_tracker.clear(remote_ip)
        await ws.send(protocol.auth_response(ok=True))
        logger.info("Authenticated client from %s", remote_ip)
        return True

    async def _handle_connection(self, ws: ServerConnection) -> None:
        """Handle a single WebSocket connection from login to disconnect."""
        remote = ws.request.headers.get(
            "X-Forwarded-For",
            ws.remote_address[0] if ws.remote_address else "unknown",
        )
        remote_ip = str(remote).split(",")[0].strip()

        logger.info("Connection from %s", remote_ip)

        if not await self._authenticate(ws, remote_ip):
            return

        conn = ClientConnection(ws, remote_ip, self.sc.client_queue_size)
        sender = asyncio.create_task(conn.send_loop())
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    conn.enqueue(protocol.error_msg("Binary frames are not supported"))
                    continue
                try:
                    msg = protocol.decode_control(message)
                except ValueError:
                    conn.enqueue(protocol.error_msg("Invalid message format"))
                    continue
                await self._dispatch(conn, msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            logger.info("Client %s disconnected", remote_ip)
            self.sink.drop_connection(conn)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    async def _dispatch(self, conn: ClientConnection, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        request_id = msg.get("id")

        if msg_type == protocol.MsgType.PING.value:
            conn.enqueue(protocol.encode_control(protocol.MsgType.PONG))
            return

        handler = self._handlers.get(str(msg_type))
        if handler is None:
            conn.enqueue(protocol.result_error(
                request_id, "unknown_request", f"Unknown request type: {msg_type}"
            ))
            return

        try:
            data = await handler(conn, msg)
        except TerminalError as exc:
            logger.info("%s for %s failed: %s", msg_type, msg.get("segment"), exc)
            conn.enqueue(protocol.result_error(request_id, exc.code, str(exc)))
        except (KeyError, TypeError, ValueError) as exc:
            conn.enqueue(protocol.result_error(request_id, "bad_request", str(exc)))
        else:
            conn.enqueue(protocol.result_ok(request_id, data))

    # Request handlers. Anything that may block on the OS runs in a worker
    # thread so one slow terminal cannot stall the event loop.

    async def _wait_for_close(self, segment: str) -> None:
        """Wait out a teardown of ``segment`` that is still in progress.

        A segment id is only reused once its old pump has stopped, so late
        events from the old shell never reach the new session's backlog.
        """
        pending = self._closing.get(segment)
        if pending is not None:
            await asyncio.wait({pending})

    async def _create(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        segment = _segment(msg)
        await self._wait_for_close(segment)
        created = self.registry.create(segment)
        self.sink.subscribe(segment, conn)
        return {"created": created}

    async def _spawn(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        spawned = await asyncio.to_thread(self.registry.spawn, _segment(msg))
        return {"spawned": spawned}

    async def _write(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        segment = _segment(msg)
        data = msg["data"]
        if not isinstance(data, str):
            raise TypeError("'data' must be a string")
        await asyncio.to_thread(self.registry.write, segment, data)
        return None

    async def _resize(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        segment = _segment(msg)
        rows, cols = int(msg["rows"]), int(msg["cols"])
        await asyncio.to_thread(self.registry.resize, segment, rows, cols)
        return None

    async def _close(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        segment = _segment(msg)
        if segment in self._closing:
            await self._wait_for_close(segment)
            return {"closed": False}

        # Output produced from here on belongs to a session that is going away
        self.sink.forget(segment)
        task = asyncio.create_task(asyncio.to_thread(self.registry.close, segment))
        self._closing[segment] = task
        task.add_done_callback(lambda _: self._closing.pop(segment, None))
        closed = await asyncio.shield(task)
        return {"closed": closed}

    async def _list(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        return {"sessions": self.registry.list()}

    async def _subscribe(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        segment = _segment(msg)
        await self._wait_for_close(segment)
        self.registry.get(segment)
        self.sink.subscribe(segment, conn)
        return None

    async def _unsubscribe(self, conn: ClientConnection, msg: dict[str, Any]) -> Any:
        self.sink.unsubscribe(_segment(msg), conn)
        return None

    async def serve(self) -> None:
        """Start the WebSocket server and run until cancelled."""
        cert_path = Config.cert_path(self.config_dir)
        key_path = Config.key_path(self.config_dir)

        if not cert_path.exists() or not key_path.exists():
            raise FileNotFoundError(
                "TLS certificate not found. Run 'segterm init' first."
            )

        ssl_ctx = create_server_ssl_context(cert_path, key_path)
        self.sink.attach_loop()

        logger.info(
            "Starting segterm server on %s:%d (TLS)",
            self.sc.host,
            self.sc.port,
        )
        logger.info("Max sessions: %d", self.sc.max_sessions)
        logger.info("TOTP 2FA: %s", "enabled" if self.sc.totp_enabled else "disabled")

        try:
            async with websockets.serve(
                self._handle_connection,
                self.sc.host,
                self.sc.port,
                ssl=ssl_ctx,
                max_size=1_048_576,  # 1 MB max message
                ping_interval=30,
                ping_timeout=10,
            ):
                logger.info("Server is ready. Waiting for connections...")
                await asyncio.Future()  # Run forever
        finally:
            await asyncio.to_thread(self.registry.close_all)
