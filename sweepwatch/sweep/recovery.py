"""Fault classification and retry decisions for the sweep engine.

The controller is plain bookkeeping: it never touches processes or timers.
The engine's owner thread reports what happened and applies the decision.
"""

from __future__ import annotations

import enum
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from sweepwatch.config import EngineSettings
from sweepwatch.errors import ParseError, ProcessExitError, SweepWatchError, TerminalFailure
from sweepwatch.sweep.process import describe_exit
from sweepwatch.util.logging import get_logger

logger = get_logger(__name__)

MAX_RETRIES_REASON = "max retries exceeded"
RATE_LIMIT_REASON = "failure rate exceeded"


class RecoveryAction(enum.Enum):
    CONTINUE = "continue"
    RESTART = "restart"
    FAIL = "fail"


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    reason: str = ""
    delay_s: float = 0.0
    attempt: int = 0
    error: Optional[SweepWatchError] = None
    """What went wrong; a TerminalFailure whenever ``action`` is FAIL."""

    @classmethod
    def proceed(cls, reason: str = "") -> "RecoveryDecision":
        return cls(RecoveryAction.CONTINUE, reason)


@dataclass(frozen=True)
class RetryPolicy:
    max_failures: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0
    rate_limit_failures: int = 8
    rate_limit_window_s: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before restart number ``attempt`` (1-based)."""
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** max(0, attempt - 1)))

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "RetryPolicy":
        return cls(
            max_failures=settings.max_failures,
            backoff_base_s=settings.backoff_base_s,
            backoff_max_s=settings.backoff_max_s,
            rate_limit_failures=settings.rate_limit_failures,
            rate_limit_window_s=settings.rate_limit_window_s,
        )


@dataclass(frozen=True)
class StderrDiagnosis:
    kind: str
    recoverable: bool
    message: str


# (kind, recoverable, needles); first match wins
_STDERR_RULES = (
    ("permission_denied", False, ("permission denied", "access denied")),
    ("device_busy", True, ("resource busy", "device busy")),
    ("device_not_found", True, ("no hackrf boards found", "hackrf_open() failed", "device not found")),
    ("usb_error", True, ("libusb", "usb error", "usb_open() failed")),
    ("stream_error", True, ("hackrf_is_streaming() failed", "hackrf_start_rx() failed")),
)


def analyze_stderr(line: str) -> Optional[StderrDiagnosis]:
    """Classify a diagnostic line; ``None`` for chatter that needs no action."""
    lowered = line.lower()
    for kind, recoverable, needles in _STDERR_RULES:
        if any(n in lowered for n in needles):
            return StderrDiagnosis(kind, recoverable, line.strip())
    return None


class FaultRecoveryController:
    def __init__(self, policy: Optional[RetryPolicy] = None, clock: Callable[[], float] = time.monotonic):
        self.policy = policy or RetryPolicy()
        self._clock = clock
        self._band_failures: Dict[int, int] = {}
        self._recent: Deque[float] = deque()
        self._empty_windows: Dict[int, int] = {}
        self.parse_errors = 0
        self.total_failures = 0
        self.last_reason: Optional[str] = None

    def reset(self) -> None:
        self._band_failures.clear()
        self._recent.clear()
        self._empty_windows.clear()
        self.parse_errors = 0
        self.total_failures = 0
        self.last_reason = None

    def failures_for(self, band_index: int) -> int:
        return self._band_failures.get(band_index, 0)

    def record_sample(self, band_index: int) -> None:
        if self._band_failures.pop(band_index, 0):
            logger.debug("Band %d recovered, failure counter reset", band_index)

    def record_parse_error(self, error: ParseError) -> RecoveryDecision:
        self.parse_errors += 1
        logger.debug("Skipping unparseable line: %s", error)
        return RecoveryDecision.proceed("parse error")

    def record_empty_window(self, band_index: int) -> RecoveryDecision:
        """A dwell ended without samples; counted per band, never restarts."""
        self._empty_windows[band_index] = self._empty_windows.get(band_index, 0) + 1
        return RecoveryDecision.proceed("empty dwell window")

    def empty_windows_for(self, band_index: int) -> int:
        return self._empty_windows.get(band_index, 0)

    def record_failure(
        self,
        band_index: int,
        reason: str,
        *,
        recoverable: bool = True,
        cause: Optional[SweepWatchError] = None,
    ) -> RecoveryDecision:
        now = self._clock()
        self.total_failures += 1
        self.last_reason = reason
        if not recoverable:
            return RecoveryDecision(RecoveryAction.FAIL, reason, error=TerminalFailure(reason, cause))

        count = self._band_failures.get(band_index, 0) + 1
        self._band_failures[band_index] = count
        self._recent.append(now)
        while self._recent and now - self._recent[0] > self.policy.rate_limit_window_s:
            self._recent.popleft()

        if count >= self.policy.max_failures:
            final = MAX_RETRIES_REASON
        elif len(self._recent) >= self.policy.rate_limit_failures:
            final = RATE_LIMIT_REASON
        else:
            return RecoveryDecision(RecoveryAction.RESTART, reason, self.policy.delay_for(count), count, cause)
        return RecoveryDecision(RecoveryAction.FAIL, final, attempt=count, error=TerminalFailure(final, cause))

    def on_exit(self, band_index: int, returncode: Optional[int], requested: bool) -> RecoveryDecision:
        if requested:
            return RecoveryDecision.proceed("requested stop")
        reason = f"sweep process {describe_exit(returncode)}"
        return self.record_failure(band_index, reason, cause=ProcessExitError(returncode, reason))

    def on_stderr(self, band_index: int, line: str) -> Optional[Tuple[StderrDiagnosis, RecoveryDecision]]:
        """Diagnosis plus decision for a process-fatal diagnostic, else ``None``."""
        diagnosis = analyze_stderr(line)
        if diagnosis is None:
            return None
        logger.warning("Sweep diagnostic [%s]: %s", diagnosis.kind, diagnosis.message)
        decision = self.record_failure(
            band_index, f"{diagnosis.kind}: {diagnosis.message}", recoverable=diagnosis.recoverable
        )
        return diagnosis, decision

    @staticmethod
    def check_stall(
        now: float,
        started_at: float,
        last_sample_at: Optional[float],
        *,
        startup_timeout_s: float,
        stall_timeout_s: float,
    ) -> Optional[str]:
        """Reason string when a running process has produced no data for too long."""
        if last_sample_at is None:
            if now - started_at > startup_timeout_s:
                return f"no data within {startup_timeout_s:g}s of launch"
            return None
        if now - last_sample_at > stall_timeout_s:
            return f"no data for {now - last_sample_at:.0f}s"
        return None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "band_failures": dict(self._band_failures),
            "parse_errors": self.parse_errors,
            "empty_windows": dict(self._empty_windows),
            "total_failures": self.total_failures,
            "last_reason": self.last_reason,
        }
