"""segterm — PTY-backed terminal sessions addressed by segment id."""

__version__ = "0.1.0"
