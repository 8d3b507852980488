"""Session registry — the single authority on which segments have a terminal."""

import logging
import threading
from typing import Any

from segterm.config import TerminalConfig
from segterm.errors import SessionLimitReached, SessionNotFound
from segterm.session import Session
from segterm.sink import DeliverySink

logger = logging.getLogger("segterm.registry")


class SessionRegistry:
    """Maps segment ids to live sessions.

    The lock guards map membership only. Opening and tearing down PTYs
    happens outside it, so a slow close never blocks lookups for other
    segments. Callers reach sessions through the registry's operations;
    nothing else inserts or removes entries.
    """

    def __init__(
        self,
        sink: DeliverySink,
        config: TerminalConfig | None = None,
        max_sessions: int | None = None,
    ):
        self.sink = sink
        self.config = config or TerminalConfig()
        self.max_sessions = max_sessions
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def _check_capacity(self) -> None:
        if self.max_sessions is not None and len(self._sessions) >= self.max_sessions:
            raise SessionLimitReached(self.max_sessions)

    def create(self, segment_id: str) -> bool:
        """Open a PTY for ``segment_id`` unless one already exists.

        Returns True if a session was created, False if an existing one was
        kept. Duplicate requests for the same segment are expected.
        """
        with self._lock:
            if segment_id in self._sessions:
                logger.info("Session for %s already exists, reusing", segment_id)
                return False
            self._check_capacity()

        session = Session.open(segment_id, self.sink, self.config)

        try:
            with self._lock:
                lost_race = segment_id in self._sessions
                if not lost_race:
                    self._check_capacity()
                    self._sessions[segment_id] = session
        except SessionLimitReached:
            session.close()
            raise

        if lost_race:
            session.close()
            logger.info("Session for %s created concurrently, reusing", segment_id)
            return False

        logger.info("Created session %s", segment_id)
        return True

    def get(self, segment_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(segment_id)
        if session is None:
            raise SessionNotFound(segment_id)
        return session

    def spawn(self, segment_id: str) -> bool:
        return self.get(segment_id).spawn()

    def write(self, segment_id: str, data: bytes | str) -> None:
        self.get(segment_id).write(data)

    def resize(self, segment_id: str, rows: int, cols: int) -> None:
        self.get(segment_id).resize(rows, cols)

    def close(self, segment_id: str) -> bool:
        """Remove the session and tear it down. Unknown ids are ignored.

        Returns True if a session was closed.
        """
        with self._lock:
            session = self._sessions.pop(segment_id, None)
        if session is None:
            logger.debug("Close for unknown session %s ignored", segment_id)
            return False
        session.close()
        return True

    remove = close

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.info() for s in sessions]

    def close_all(self) -> None:
        """Tear down every session. Called on shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
        if sessions:
            logger.info("Closed %d terminal sessions", len(sessions))

    def __contains__(self, segment_id: object) -> bool:
        with self._lock:
            return segment_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
