"""Quit-key polling for the live dashboard."""

from __future__ import annotations

import os
import select
import sys
import time

try:
    import termios
except ImportError:  # Windows
    termios = None

QUIT_KEYS = b"qQ"


def _stdin_fd() -> int | None:
    stream = sys.stdin
    if termios is None or stream is None or not stream.isatty():
        return None
    return stream.fileno()


class QuitKeys:
    """Watches a terminal (or any readable fd) for ``q``/``Q``.

    On a tty the context manager switches off line buffering and echo so a
    single keypress is readable, and restores the previous mode on exit.
    """

    def __init__(self, fd: int | None = None) -> None:
        self.fd = _stdin_fd() if fd is None else fd
        self._saved = None

    def __enter__(self) -> "QuitKeys":
        if self.fd is not None and termios is not None and os.isatty(self.fd):
            self._saved = termios.tcgetattr(self.fd)
            attrs = termios.tcgetattr(self.fd)
            attrs[3] &= ~(termios.ICANON | termios.ECHO)
            attrs[6][termios.VMIN] = 0
            attrs[6][termios.VTIME] = 0
            termios.tcsetattr(self.fd, termios.TCSANOW, attrs)
        return self

    def __exit__(self, *_exc) -> None:
        if self._saved is not None:
            termios.tcsetattr(self.fd, termios.TCSANOW, self._saved)
            self._saved = None

    def pressed(self, timeout: float = 0.0) -> bool:
        """Wait up to ``timeout`` seconds for input; True if a quit key arrived."""
        if self.fd is None:
            if timeout > 0:
                time.sleep(timeout)
            return False
        ready, _, _ = select.select([self.fd], [], [], max(timeout, 0.0))
        if not ready:
            return False
        data = os.read(self.fd, 64)
        if not data:
            # Input closed; stop watching it.
            self.fd = None
            return False
        return any(key in data for key in QUIT_KEYS)
