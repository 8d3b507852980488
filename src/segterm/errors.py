"""Error taxonomy for terminal sessions.

Every error carries a stable ``code`` that the server puts on the wire, so
clients can branch on it without parsing messages.
"""


class TerminalError(Exception):
    """Base class for all recoverable terminal session errors."""

    code = "terminal_error"


class SessionNotFound(TerminalError):
    code = "session_not_found"

    def __init__(self, segment_id: str):
        super().__init__(f"Terminal session not found: {segment_id}")
        self.segment_id = segment_id


class SessionLimitReached(TerminalError):
    code = "session_limit"

    def __init__(self, limit: int):
        super().__init__(f"Maximum number of terminal sessions reached ({limit})")
        self.limit = limit


class PtyOpenError(TerminalError):
    """The OS refused to allocate a pseudo-terminal."""

    code = "pty_open_error"


class SpawnFailure(TerminalError):
    """The shell could not be started. The session stays usable for a retry."""

    code = "spawn_failure"


class PtyIOError(TerminalError):
    """A read, write or resize against the PTY failed."""

    code = "io_error"
