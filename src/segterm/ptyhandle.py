"""Native pseudo-terminal pairs and the shell processes attached to them.

A :class:`PtyHandle` owns both ends of one PTY and, once spawned, the child
process running on the subordinate side. Reading and writing go through
:class:`PtyReader` and :class:`PtyWriter`, each wrapping its own duplicate of
the controller descriptor. The handle gives each of them out exactly once.
"""

import errno
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import sys
import termios

from segterm.errors import PtyIOError, PtyOpenError, SpawnFailure

logger = logging.getLogger("segterm.pty")

# kqueue and poll do not report PTY devices on macOS
_Selector = (
    selectors.SelectSelector if sys.platform == "darwin" else selectors.DefaultSelector
)


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is already the subordinate side.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyWriter:
    """Write side of a PTY controller.

    Not thread-safe on its own: the owning session serializes callers.
    """

    def __init__(self, fd: int):
        self._fd: int | None = fd

    @property
    def closed(self) -> bool:
        return self._fd is None

    def write_all(self, data: bytes) -> None:
        """Write every byte of ``data``, retrying on partial writes."""
        if self._fd is None:
            raise PtyIOError("PTY writer is closed")
        view = memoryview(data)
        while view:
            try:
                written = os.write(self._fd, view)
            except OSError as exc:
                raise PtyIOError(f"Failed to write to PTY: {exc}") from exc
            view = view[written:]

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError:
            pass


class PtyReader:
    """Read side of a PTY controller with an interruptible blocking read.

    ``read()`` waits on the PTY and on a private wake-up pipe. Writing to the
    pipe through ``interrupt()`` releases a blocked reader from any thread
    without closing the descriptor underneath it.
    """

    def __init__(self, fd: int):
        self._fd: int | None = fd
        self._wake_r, self._wake_w = os.pipe()
        self._selector = _Selector()
        self._selector.register(fd, selectors.EVENT_READ)
        self._selector.register(self._wake_r, selectors.EVENT_READ)

    @property
    def closed(self) -> bool:
        return self._fd is None

    def read(self, size: int = 8192) -> bytes | None:
        """Block until output is available and return it.

        Returns ``b""`` at end-of-stream and ``None`` once interrupted.
        Raises PtyIOError for any other OS failure.
        """
        if self._fd is None:
            return None
        while True:
            ready = {key.fd for key, _ in self._selector.select()}
            if self._wake_r in ready:
                return None
            if self._fd in ready:
                break
        try:
            return os.read(self._fd, size)
        except OSError as exc:
            # Linux reports a controller whose subordinate side is gone as EIO
            if exc.errno == errno.EIO:
                return b""
            raise PtyIOError(f"PTY read error: {exc}") from exc

    def interrupt(self) -> None:
        try:
            os.write(self._wake_w, b"\0")
        except OSError:
            pass

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        self._selector.close()
        for descriptor in (fd, self._wake_r, self._wake_w):
            try:
                os.close(descriptor)
            except OSError:
                pass


class PtyHandle:
    """One pseudo-terminal pair plus the process spawned on it."""

    def __init__(self, master_fd: int, slave_fd: int, rows: int, cols: int):
        self.master_fd = master_fd
        self._slave_fd: int | None = slave_fd
        self.rows = rows
        self.cols = cols
        self.process: subprocess.Popen | None = None
        self._writer_taken = False
        self._reader_taken = False
        self._closed = False

    @classmethod
    def open(cls, rows: int = 24, cols: int = 80) -> "PtyHandle":
        """Allocate a new PTY pair sized to ``rows`` x ``cols``."""
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as exc:
            raise PtyOpenError(f"Failed to open PTY: {exc}") from exc
        try:
            _set_winsize(master_fd, rows, cols)
        except (OSError, struct.error) as exc:
            os.close(master_fd)
            os.close(slave_fd)
            raise PtyOpenError(f"Failed to size PTY: {exc}") from exc
        return cls(master_fd, slave_fd, rows, cols)

    def _clone_master(self) -> int:
        try:
            return os.dup(self.master_fd)
        except OSError as exc:
            raise PtyOpenError(f"Failed to clone PTY handle: {exc}") from exc

    def take_writer(self) -> PtyWriter:
        if self._writer_taken:
            raise RuntimeError("PTY writer already taken")
        writer = PtyWriter(self._clone_master())
        self._writer_taken = True
        return writer

    def take_reader(self) -> PtyReader:
        if self._reader_taken:
            raise RuntimeError("PTY reader already taken")
        fd = self._clone_master()
        try:
            reader = PtyReader(fd)
        except OSError as exc:
            os.close(fd)
            raise PtyOpenError(f"Failed to set up PTY reader: {exc}") from exc
        self._reader_taken = True
        return reader

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def spawn(self, argv: list[str], env: dict[str, str], cwd: str | None = None) -> subprocess.Popen:
        """Start ``argv`` with the subordinate side as its controlling terminal.

        On success the parent's copy of the subordinate descriptor is closed,
        so the controller sees end-of-stream once the child side goes away.
        On failure nothing changes and the call may be retried.
        """
        if self.process is not None:
            raise RuntimeError("PTY already has a process")
        if self._slave_fd is None:
            raise SpawnFailure("PTY is closed")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=self._slave_fd,
                stdout=self._slave_fd,
                stderr=self._slave_fd,
                env=env,
                cwd=cwd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise SpawnFailure(f"Failed to spawn {argv[0]}: {exc}") from exc

        self.process = proc
        self.close_subordinate()
        return proc

    def close_subordinate(self) -> None:
        if self._slave_fd is None:
            return
        fd, self._slave_fd = self._slave_fd, None
        try:
            os.close(fd)
        except OSError:
            pass

    def resize(self, rows: int, cols: int) -> None:
        """Apply a new window size and notify the child's process group."""
        if self._closed:
            raise PtyIOError("PTY is closed")
        try:
            _set_winsize(self.master_fd, rows, cols)
        except (OSError, struct.error) as exc:
            raise PtyIOError(f"Failed to resize PTY: {exc}") from exc
        self.rows, self.cols = rows, cols
        self._signal_group(signal.SIGWINCH)

    def _signal_group(self, signum: int) -> None:
        proc = self.process
        if proc is None or proc.returncode is not None:
            return
        try:
            # start_new_session makes the child its own process group leader
            os.killpg(proc.pid, signum)
        except ProcessLookupError:
            pass

    def poll(self) -> int | None:
        return self.process.poll() if self.process is not None else None

    def wait(self, timeout: float | None = None) -> int | None:
        """Reap the child. Returns its exit code, or None if still running."""
        if self.process is None:
            return None
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self, grace: float = 1.0) -> int | None:
        """Hang up the child's process group, escalating to SIGKILL."""
        proc = self.process
        if proc is None:
            return None
        if proc.poll() is not None:
            return proc.returncode

        self._signal_group(signal.SIGHUP)
        code = self.wait(grace)
        if code is not None:
            return code

        logger.warning("Process %d ignored SIGHUP, sending SIGKILL", proc.pid)
        self._signal_group(signal.SIGKILL)
        return self.wait(grace)

    def close(self) -> None:
        """Release both PTY descriptors. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.close_subordinate()
        try:
            os.close(self.master_fd)
        except OSError:
            pass
