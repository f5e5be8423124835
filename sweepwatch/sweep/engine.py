"""Sweep orchestration: one owner thread serializing commands, output and timers.

Every state change happens on the owner thread. Public control calls are
queued to its inbox and awaited through a ``concurrent.futures.Future``;
reader and reaper threads only post events. Timers (dwell, delayed launch,
health tick) are deadlines owned by the loop, so a stop removes a pending
restart instead of racing it.

Usage:
    engine = SweepEngine(EngineSettings.from_env())
    sub = engine.subscribe()
    engine.start_cycle(["2400", "5800"], dwell_ms=10_000)
    ...
    engine.shutdown()
"""

from __future__ import annotations

import enum
import functools
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from sweepwatch.config import EngineSettings
from sweepwatch.device import DeviceProbe, probe_hackrf
from sweepwatch.errors import AlreadyRunningError, DeviceUnavailableError, ParseError, SpawnError, SweepWatchError, TerminalFailure
from sweepwatch.events import ErrorNotice, EventPublisher, StatusEvent, Subscription
from sweepwatch.sweep.buffer import SampleBuffer
from sweepwatch.sweep.parser import parse_line
from sweepwatch.sweep.process import ProcessExited, ProcessSupervisor, StderrLine, StdoutLine
from sweepwatch.sweep.recovery import FaultRecoveryController, RecoveryAction, RecoveryDecision, RetryPolicy
from sweepwatch.sweep.scheduler import FrequencyCycler
from sweepwatch.sweep.types import GainParams, SpectrumSample, SweepCycleConfig
from sweepwatch.util.logging import get_logger, log_exception

logger = get_logger(__name__)

_DWELL = "dwell"
_LAUNCH = "launch"
_HEALTH = "health"


class EnginePhase(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    SWITCHING = "switching"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class SweepSession:
    """The live process record; only the owner thread touches it."""

    handle: Any
    band_index: int
    started_at: float
    last_sample_at: Optional[float] = None
    samples: int = 0


@dataclass
class _Command:
    name: str
    future: Future
    args: tuple = ()


_SHUTDOWN = object()


def _describe_error(error: Optional[SweepWatchError]) -> Optional[Dict[str, Any]]:
    if error is None:
        return None
    out: Dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    cause = getattr(error, "cause", None)
    if cause is not None:
        out["cause"] = _describe_error(cause)
    returncode = getattr(error, "returncode", None)
    if returncode is not None:
        out["exit_code"] = returncode
    return out


class SweepEngine:
    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        supervisor_factory: Optional[Callable[..., Any]] = None,
        publisher: Optional[EventPublisher] = None,
        prober: Optional[Callable[[], DeviceProbe]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.publisher = publisher or EventPublisher(self.settings.subscriber_queue_size)
        self.buffer = SampleBuffer(self.settings.buffer_capacity)
        self._clock = clock
        self._prober = prober or probe_hackrf
        factory = supervisor_factory or functools.partial(ProcessSupervisor, self.settings)
        self._supervisor = factory(on_event=self._post)
        self._recovery = FaultRecoveryController(RetryPolicy.from_settings(self.settings), clock=clock)

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()

        self._status: StatusEvent = StatusEvent.stopped()
        self._phase = EnginePhase.IDLE
        self._config: Optional[SweepCycleConfig] = None
        self._cycler: Optional[FrequencyCycler] = None
        self._session: Optional[SweepSession] = None
        self._timers: Dict[str, float] = {}
        self._window_samples = 0
        self._cycle_started_at: Optional[float] = None
        self._last_failure: Optional[str] = None
        self._last_error: Optional[SweepWatchError] = None

    # ------------------------------------------------------------------
    # Owner thread lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the owner thread (idempotent)."""
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="sweep-engine", daemon=True)
            self._thread.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop any sweep, end the owner thread and close subscriptions."""
        with self._thread_lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            self.publisher.close()
            return
        self.stop_sweep()
        self._inbox.put(_SHUTDOWN)
        thread.join(timeout if timeout is not None else self.settings.command_timeout_s)
        self.publisher.close()

    def __enter__(self) -> "SweepEngine":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Public control API
    # ------------------------------------------------------------------

    def start_cycle(
        self,
        bands: Iterable[Any],
        dwell_ms: Any,
        gain: Optional[GainParams] = None,
        *,
        replace: bool = False,
    ) -> StatusEvent:
        """Begin sweeping ``bands`` in order, ``dwell_ms`` each.

        Raises InvalidConfigError for a bad request and AlreadyRunningError
        when a cycle is active and ``replace`` is false; neither changes
        state. SpawnError is raised when the first band cannot be launched.
        """
        config = SweepCycleConfig.build(
            bands,
            dwell_ms,
            gain or self.default_gain(),
            default_span_hz=self.settings.default_span_hz,
        )
        return self._submit("start", config, replace)

    def stop_sweep(self) -> StatusEvent:
        """Stop the cycle and its process; safe to call in any state."""
        return self._submit("stop", None)

    stop_cycle = stop_sweep

    def emergency_stop(self) -> StatusEvent:
        """Kill the sweep process without a grace period and reap strays."""
        return self._submit("emergency")

    def get_status(self) -> StatusEvent:
        return self._status

    def replay(self, limit: Optional[int] = None) -> List[SpectrumSample]:
        return self.buffer.recent(limit)

    def subscribe(self, maxsize: Optional[int] = None, name: Optional[str] = None) -> Subscription:
        return self.publisher.subscribe(maxsize, name=name)

    def unsubscribe(self, sub: Subscription) -> None:
        self.publisher.unsubscribe(sub)

    def default_gain(self) -> GainParams:
        return GainParams(
            lna_gain_db=self.settings.default_lna_gain_db,
            vga_gain_db=self.settings.default_vga_gain_db,
            bin_width_hz=self.settings.default_bin_width_hz,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time health summary, safe to call from any thread."""
        status = self._status
        session = self._session
        config = self._config
        cycler = self._cycler
        started = self._cycle_started_at
        now = self._clock()
        return {
            "status": status.to_dict(),
            "phase": self._phase.value,
            "band": cycler.current.to_dict() if cycler is not None else None,
            "band_index": cycler.index if cycler is not None else None,
            "pid": getattr(session.handle, "pid", None) if session is not None else None,
            "session_samples": session.samples if session is not None else 0,
            "config": config.to_dict() if config is not None else None,
            "uptime_s": round(now - started, 3) if started is not None else None,
            "samples_total": self.buffer.total_appended,
            "buffered": len(self.buffer),
            "subscribers": self.publisher.subscriber_count,
            "recovery": self._recovery.snapshot(),
            "last_failure": self._last_failure,
            "last_error": _describe_error(self._last_error),
        }

    # ------------------------------------------------------------------
    # Inbox plumbing
    # ------------------------------------------------------------------

    def _post(self, event: Any) -> None:
        self._inbox.put(event)

    def _submit(self, name: str, *args: Any) -> Any:
        self.start()
        fut: Future = Future()
        self._inbox.put(_Command(name, fut, args))
        return fut.result(timeout=self.settings.command_timeout_s + 2 * self.settings.stop_grace_s)

    def _next_timeout(self) -> Optional[float]:
        if not self._timers:
            return None
        return max(0.0, min(self._timers.values()) - self._clock())

    def _run(self) -> None:
        logger.debug("Sweep engine owner thread started")
        while True:
            try:
                item = self._inbox.get(timeout=self._next_timeout())
            except queue.Empty:
                item = None
            if item is _SHUTDOWN:
                break
            if item is not None:
                self._dispatch(item)
            self._fire_due_timers()
        logger.debug("Sweep engine owner thread exiting")

    def _dispatch(self, item: Any) -> None:
        if isinstance(item, _Command):
            if not item.future.set_running_or_notify_cancel():
                return
            try:
                result = self._handle_command(item)
            except Exception as exc:
                item.future.set_exception(exc)
            else:
                item.future.set_result(result)
            return
        try:
            if isinstance(item, StdoutLine):
                self._on_stdout(item)
            elif isinstance(item, StderrLine):
                self._on_stderr(item)
            elif isinstance(item, ProcessExited):
                self._on_exit(item)
            else:
                logger.warning("Ignoring unknown engine event %r", item)
        except Exception:
            log_exception(logger, "Error handling engine event", error_type="engine_event")

    def _handle_command(self, cmd: _Command) -> StatusEvent:
        if cmd.name == "start":
            config, replace = cmd.args
            return self._cmd_start(config, replace)
        if cmd.name == "stop":
            (grace,) = cmd.args
            return self._halt(grace)
        if cmd.name == "emergency":
            return self._cmd_emergency()
        raise ValueError(f"unknown command {cmd.name}")

    def _fire_due_timers(self) -> None:
        now = self._clock()
        for name in sorted(self._timers, key=self._timers.get):
            deadline = self._timers.get(name)
            if deadline is None or deadline > now:
                continue
            del self._timers[name]
            try:
                if name == _DWELL:
                    self._on_dwell_deadline()
                elif name == _LAUNCH:
                    self._on_launch_due()
                elif name == _HEALTH:
                    self._on_health_tick()
            except Exception:
                log_exception(logger, f"Error handling {name} timer", error_type="engine_timer")

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    @property
    def _active(self) -> bool:
        return self._cycler is not None

    def _set_status(self, event: StatusEvent) -> None:
        self._status = event
        logger.info("Sweep status: %s", event)
        self.publisher.publish(event)

    def _notify(self, kind: str, message: str, *, fatal: bool = False) -> None:
        band = self._cycler.current if self._cycler is not None else None
        self.publisher.publish(ErrorNotice(kind, message, band, fatal))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_start(self, config: SweepCycleConfig, replace: bool) -> StatusEvent:
        if self._active:
            if not replace:
                raise AlreadyRunningError("a sweep cycle is already running")
            logger.info("Replacing active sweep cycle")
            self._halt(None)

        if self.settings.reap_orphans_on_start:
            reaped = self._supervisor.reap_orphans()
            if reaped:
                logger.warning("Reaped %d orphaned sweep process(es)", reaped)
        if self.settings.probe_before_start:
            probe = self._prober()
            if not probe.available:
                raise DeviceUnavailableError(probe.reason)

        now = self._clock()
        self._recovery.reset()
        self._config = config
        self._cycler = FrequencyCycler(config.bands, config.dwell_ms, self.settings.settle_s(config.dwell_ms))
        self._cycler.start(now)
        self._cycle_started_at = now
        self._last_failure = None
        self._last_error = None
        self._window_samples = 0
        self._timers.clear()
        if self._cycler.cycles:
            self._timers[_DWELL] = self._cycler.deadline
        logger.info(
            "Starting sweep cycle: %s every %d ms",
            ", ".join(str(b) for b in config.bands),
            config.dwell_ms,
        )
        self._launch(announce=True, explicit=True)
        return self._status

    def _halt(self, grace_s: Optional[float]) -> StatusEvent:
        self._timers.clear()
        session = self._session
        self._session = None
        if session is not None:
            self._supervisor.stop(session.handle, grace_s)
        elif self._supervisor.active is not None:
            self._supervisor.stop(self._supervisor.active, grace_s)
        was_active = self._active
        self._cycler = None
        self._config = None
        self._cycle_started_at = None
        if was_active:
            self._phase = EnginePhase.STOPPED
            self._set_status(StatusEvent.stopped())
        return self._status

    def _cmd_emergency(self) -> StatusEvent:
        logger.warning("Emergency stop requested")
        status = self._halt(0.0)
        reaped = self._supervisor.reap_orphans()
        if reaped:
            logger.warning("Reaped %d orphaned sweep process(es)", reaped)
        return status

    # ------------------------------------------------------------------
    # Launch / switch / recovery
    # ------------------------------------------------------------------

    def _launch(self, *, announce: bool, explicit: bool = False) -> None:
        cycler = self._cycler
        assert cycler is not None and self._config is not None
        band = cycler.current
        if self._supervisor.active is not None:
            # Never run two sweeps at once
            self._supervisor.stop(self._supervisor.active)
        if announce:
            self._phase = EnginePhase.STARTING
            self._set_status(StatusEvent.starting(band))
        try:
            try:
                handle = self._supervisor.start(band, self._config.gain)
            except AlreadyRunningError as exc:
                # The previous process survived SIGKILL
                raise SpawnError(f"previous sweep process did not exit: {exc}") from exc
        except SpawnError as exc:
            log_exception(logger, "Failed to launch sweep process", error_type="spawn", band=str(band))
            if explicit:
                self._terminate(str(exc), "spawn", TerminalFailure(str(exc), exc))
                raise
            self._notify("spawn", str(exc))
            self._apply(self._recovery.record_failure(cycler.index, str(exc), cause=exc))
            return
        now = self._clock()
        self._session = SweepSession(handle, cycler.index, now)
        self._phase = EnginePhase.RUNNING
        self._set_status(StatusEvent.running(band))
        self._timers[_HEALTH] = now + self.settings.health_interval_s

    def _stop_session(self) -> None:
        session = self._session
        self._session = None
        self._timers.pop(_HEALTH, None)
        if session is not None:
            self._supervisor.stop(session.handle)

    def _apply(self, decision: RecoveryDecision) -> None:
        if decision.action is RecoveryAction.CONTINUE:
            return
        if decision.action is RecoveryAction.FAIL:
            self._terminate(decision.reason, "terminal", decision.error)
            return
        self._phase = EnginePhase.BACKOFF
        self._timers[_LAUNCH] = self._clock() + decision.delay_s
        logger.warning(
            "Restarting sweep in %.2fs: %s",
            decision.delay_s,
            decision.reason,
            extra={"attempt": decision.attempt, "band": str(self._cycler.current) if self._cycler else None},
        )

    def _fail_session(self, kind: str, reason: str, decision: RecoveryDecision) -> None:
        self._notify(kind, reason)
        self._stop_session()
        self._apply(decision)

    def _terminate(self, reason: str, kind: str, error: Optional[SweepWatchError] = None) -> None:
        error = error or TerminalFailure(reason)
        logger.error("Sweep cycle failed: %s", reason, extra={"error_type": type(error).__name__})
        self._timers.clear()
        session = self._session
        self._session = None
        if session is not None:
            self._supervisor.stop(session.handle)
        self._notify(kind, reason, fatal=True)
        self._last_failure = reason
        self._last_error = error
        self._set_status(StatusEvent.failed(reason))
        self._cycler = None
        self._config = None
        self._cycle_started_at = None
        self._phase = EnginePhase.STOPPED
        self._set_status(StatusEvent.stopped())

    def _is_current(self, session_id: int) -> bool:
        return self._session is not None and self._session.handle.session_id == session_id

    def _on_stdout(self, event: StdoutLine) -> None:
        if not self._is_current(event.session):
            return
        try:
            sample = parse_line(
                event.text,
                received_ms=event.received_ms,
                power_range=(self.settings.power_floor_db, self.settings.power_ceiling_db),
            )
        except ParseError as exc:
            self._recovery.record_parse_error(exc)
            return
        session = self._session
        session.last_sample_at = self._clock()
        session.samples += 1
        self._window_samples += 1
        self._recovery.record_sample(session.band_index)
        self.buffer.append(sample)
        self.publisher.publish(sample)

    def _on_stderr(self, event: StderrLine) -> None:
        if not self._is_current(event.session):
            return
        logger.debug("hackrf_sweep: %s", event.text)
        result = self._recovery.on_stderr(self._session.band_index, event.text)
        if result is None:
            return
        diagnosis, decision = result
        self._fail_session(diagnosis.kind, diagnosis.message, decision)

    def _on_exit(self, event: ProcessExited) -> None:
        if not self._is_current(event.session):
            return
        session = self._session
        self._session = None
        self._timers.pop(_HEALTH, None)
        decision = self._recovery.on_exit(session.band_index, event.returncode, event.requested)
        if decision.action is RecoveryAction.CONTINUE:
            return
        self._notify("process_exit", self._recovery.last_reason or decision.reason)
        self._apply(decision)

    def _on_dwell_deadline(self) -> None:
        cycler = self._cycler
        if cycler is None or not cycler.cycles:
            return
        if self._window_samples == 0:
            message = f"no samples received while dwelling on {cycler.current}"
            logger.warning(message)
            self._notify("no_data", message)
            self._recovery.record_empty_window(cycler.index)
        self._timers.pop(_LAUNCH, None)
        self._stop_session()
        from_band, to_band = cycler.advance(self._clock())
        self._window_samples = 0
        self._phase = EnginePhase.SWITCHING
        self._set_status(StatusEvent.switching(from_band, to_band))
        now = self._clock()
        self._timers[_DWELL] = cycler.deadline
        self._timers[_LAUNCH] = cycler.launch_time(now)

    def _on_launch_due(self) -> None:
        if self._cycler is None or self._session is not None:
            return
        # Recovery restarts announce STARTING; band switches go straight to RUNNING
        self._launch(announce=self._phase is EnginePhase.BACKOFF)

    def _on_health_tick(self) -> None:
        session = self._session
        if session is None or self._cycler is None:
            return
        now = self._clock()
        self._timers[_HEALTH] = now + self.settings.health_interval_s
        issue = self._supervisor.check_health(session.handle)
        reason = issue.message if issue is not None else None
        kind = issue.kind if issue is not None else "stall"
        if reason is None:
            reason = self._recovery.check_stall(
                now,
                session.started_at,
                session.last_sample_at,
                startup_timeout_s=self.settings.startup_timeout_s,
                stall_timeout_s=self.settings.stall_timeout_s,
            )
        if reason is None:
            return
        logger.warning("Sweep health check failed: %s", reason, extra={"pid": getattr(session.handle, "pid", None)})
        decision = self._recovery.record_failure(session.band_index, reason)
        self._fail_session(kind, reason, decision)
