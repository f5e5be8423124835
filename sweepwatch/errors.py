"""Exception hierarchy for the sweep engine.

Only caller misuse (``CallerError``) and launch failures on an explicit start
(``SpawnError``) ever reach a caller. Everything else is handled on the
engine's owner thread and surfaced on the event feed.
"""

from __future__ import annotations

from typing import Optional


class SweepWatchError(Exception):
    """Base class for all sweepwatch errors."""


class SpawnError(SweepWatchError):
    """The sweep executable could not be launched (missing, not permitted)."""


class ParseError(SweepWatchError):
    """A line of sweep output was not a valid spectrum row."""

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.line = line


class ProcessExitError(SweepWatchError):
    """The sweep process ended while it was expected to be running."""

    def __init__(self, returncode: Optional[int], reason: str):
        super().__init__(reason)
        self.returncode = returncode
        self.reason = reason


class CallerError(SweepWatchError):
    """Rejected request; no engine state was changed."""


class InvalidConfigError(CallerError, ValueError):
    pass


class AlreadyRunningError(CallerError):
    pass


class TerminalFailure(SweepWatchError):
    """The cycle was abandoned; ``cause`` is the last failure, when known."""

    def __init__(self, reason: str, cause: Optional[SweepWatchError] = None):
        super().__init__(reason)
        self.reason = reason
        self.cause = cause


class DeviceUnavailableError(SpawnError):
    """The receiver is missing or held by another process."""
