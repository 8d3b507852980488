"""PTY session management — one shell and one output pump per segment."""

import codecs
import logging
import os
import shlex
import sys
import threading
from collections.abc import Mapping
from typing import Any

from segterm.config import TerminalConfig
from segterm.errors import PtyIOError
from segterm.ptyhandle import PtyHandle, PtyReader, PtyWriter
from segterm.sink import DeliverySink

logger = logging.getLogger("segterm.session")

# struct winsize stores rows and cols as unsigned short
MAX_DIMENSION = 0xFFFF


def resolve_shell(
    config: TerminalConfig,
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[list[str], dict[str, str]]:
    """Pick the shell command line and the TERM value for a new session.

    Windows always gets PowerShell. Elsewhere the configured shell wins, then
    ``$SHELL``, then ``config.fallback_shell``.
    """
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ

    if platform.startswith("win"):
        return ["powershell.exe"], {"TERM": "cygwin"}
    if config.shell:
        return shlex.split(config.shell), {"TERM": config.term}
    return [environ.get("SHELL") or config.fallback_shell], {"TERM": config.term}


class Session:
    """A terminal session bound to one segment id.

    The session exclusively owns its PTY, the writer and reader cloned from
    it, and the child shell. Writes serialize on the write lock, the pump
    holds the read lock while it reads, and spawn/resize/close bookkeeping
    uses a third lock, so a blocked read never stalls a write or a resize.
    """

    def __init__(
        self,
        segment_id: str,
        handle: PtyHandle,
        writer: PtyWriter,
        reader: PtyReader,
        sink: DeliverySink,
        config: TerminalConfig | None = None,
    ):
        self.segment_id = segment_id
        self.sink = sink
        self.config = config or TerminalConfig()
        self._handle = handle
        self._writer = writer
        self._reader = reader
        self._pump: OutputPump | None = None
        self._spawned = False
        self._closed = False
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._state_lock = threading.Lock()

    @classmethod
    def open(
        cls,
        segment_id: str,
        sink: DeliverySink,
        config: TerminalConfig | None = None,
    ) -> "Session":
        """Open a PTY at the default size. No process is started yet."""
        config = config or TerminalConfig()
        handle = PtyHandle.open(rows=config.rows, cols=config.cols)
        try:
            writer = handle.take_writer()
            try:
                reader = handle.take_reader()
            except Exception:
                writer.close()
                raise
        except Exception:
            handle.close()
            raise
        return cls(segment_id, handle, writer, reader, sink, config)

    @property
    def spawned(self) -> bool:
        return self._spawned

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> int | None:
        return self._handle.pid

    def spawn(
        self,
        argv: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> bool:
        """Start the shell and its output pump.

        Returns False without side effects if the shell is already running.
        Raises SpawnFailure and stays unspawned if the launch fails.
        """
        with self._state_lock:
            if self._closed:
                raise PtyIOError(f"Session {self.segment_id} is closed")
            if self._spawned:
                logger.info("Shell already spawned for %s, skipping", self.segment_id)
                return False

            if argv is None:
                argv, overrides = resolve_shell(self.config)
            else:
                overrides = {"TERM": self.config.term}
            child_env = {**os.environ, **overrides, **(env or {})}

            proc = self._handle.spawn(argv, child_env, cwd=cwd)
            self._spawned = True
            self._pump = OutputPump(self)
            self._pump.start()

        logger.info("Spawned %s for %s (pid=%d)", argv[0], self.segment_id, proc.pid)
        return True

    def write(self, data: bytes | str) -> None:
        """Send input to the shell. Raises PtyIOError on failure."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._write_lock:
            if self._writer.closed:
                raise PtyIOError(f"Session {self.segment_id} is closed")
            self._writer.write_all(data)
        logger.debug("Wrote %d bytes to %s", len(data), self.segment_id)

    def resize(self, rows: int, cols: int) -> None:
        if not (0 < rows <= MAX_DIMENSION and 0 < cols <= MAX_DIMENSION):
            raise ValueError(f"Invalid terminal size {rows}x{cols}")
        with self._state_lock:
            if self._closed:
                raise PtyIOError(f"Session {self.segment_id} is closed")
            self._handle.resize(rows, cols)

    def _read_chunk(self) -> bytes | None:
        with self._read_lock:
            return self._reader.read(self.config.read_chunk_size)

    def _reap(self) -> int | None:
        return self._handle.wait(timeout=self.config.close_grace_seconds)

    def close(self) -> None:
        """Stop the pump, end the shell and release every descriptor."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            pump = self._pump

        self._reader.interrupt()
        exit_code = self._handle.terminate(self.config.close_grace_seconds)
        # A writer stuck on a full, never-read PTY gets EIO once this is gone
        self._handle.close_subordinate()

        if pump is not None and pump is not threading.current_thread():
            pump.join(timeout=self.config.close_grace_seconds + 1.0)
            if pump.is_alive():
                logger.warning("Output pump for %s did not stop", self.segment_id)

        with self._write_lock:
            self._writer.close()
        with self._read_lock:
            self._reader.close()
        self._handle.close()
        logger.info("Closed session %s (exit code %s)", self.segment_id, exit_code)

    def info(self) -> dict[str, Any]:
        return {
            "segment": self.segment_id,
            "spawned": self._spawned,
            "pid": self.pid,
            "alive": self._spawned and self._handle.poll() is None,
            "rows": self._handle.rows,
            "cols": self._handle.cols,
        }


class OutputPump(threading.Thread):
    """Drains a session's PTY and forwards decoded text to its sink.

    Runs until end-of-stream (the shell exited), a read error, or the session
    interrupting the read on close. UTF-8 is decoded incrementally, so a
    character split across two reads arrives whole; invalid bytes are
    replaced rather than treated as fatal.
    """

    def __init__(self, session: Session):
        super().__init__(name=f"segterm-pump-{session.segment_id}", daemon=True)
        self._session = session
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _emit(self, method_name: str, *args: Any) -> None:
        try:
            getattr(self._session.sink, method_name)(self._session.segment_id, *args)
        except Exception:
            logger.exception(
                "Delivery sink %s failed for %s", method_name, self._session.segment_id
            )

    def run(self) -> None:
        session = self._session
        while True:
            try:
                chunk = session._read_chunk()
            except PtyIOError as exc:
                logger.warning("Output pump for %s failed: %s", session.segment_id, exc)
                self._emit("on_error", str(exc))
                return

            if chunk is None or (not chunk and session.closed):
                logger.debug("Output pump for %s stopped", session.segment_id)
                return

            if not chunk:
                tail = self._decoder.decode(b"", final=True)
                if tail:
                    self._emit("on_output", tail)
                exit_code = session._reap()
                logger.info("Shell for %s exited (code=%s)", session.segment_id, exit_code)
                self._emit("on_exit", exit_code)
                return

            text = self._decoder.decode(chunk)
            if text:
                self._emit("on_output", text)
