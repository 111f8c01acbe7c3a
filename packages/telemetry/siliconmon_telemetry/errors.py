"""Error taxonomy for telemetry sources and parsing."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base class for recoverable sampling-path failures."""


class SourceUnavailable(TelemetryError):
    """The source cannot provide data this cycle (permissions, missing counters, spawn failure)."""


class ParseTimeout(TelemetryError):
    """No complete report arrived before the read deadline."""


class ProcessExited(TelemetryError):
    """The owned report process reached end-of-stream and must be restarted."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class MalformedBlock(TelemetryError):
    """A raw block contained no recognizable line or counter."""
