"""Lifecycle of the external ``hackrf_sweep`` subprocess.

The supervisor launches one sweep process at a time in its own process
group, attaches reader threads to stdout and stderr, and reaps the exit on
a background thread. Readers never touch engine state: every line and the
final exit are handed to ``on_event`` tagged with the session id, so the
owner can discard anything from a session it already replaced.
"""

from __future__ import annotations

import itertools
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

import psutil

from sweepwatch.config import EngineSettings
from sweepwatch.errors import AlreadyRunningError, SpawnError
from sweepwatch.sweep.parser import LineAssembler
from sweepwatch.sweep.types import FrequencyBand, GainParams, build_sweep_command
from sweepwatch.util.logging import get_logger, log_exception
from sweepwatch.util.time import now_ms

logger = get_logger(__name__)

_READ_CHUNK = 64 * 1024
_MB = 1024 * 1024


@dataclass(frozen=True)
class StdoutLine:
    session: int
    text: str
    received_ms: int


@dataclass(frozen=True)
class StderrLine:
    session: int
    text: str


@dataclass(frozen=True)
class ProcessExited:
    session: int
    returncode: Optional[int]
    requested: bool
    """True when the exit followed a stop request."""


@dataclass(frozen=True)
class HealthIssue:
    kind: str
    message: str


class SessionHandle:
    """One launched sweep process."""

    def __init__(self, session_id: int, band: FrequencyBand, gain: GainParams, command: List[str], proc: subprocess.Popen):
        self.session_id = session_id
        self.band = band
        self.gain = gain
        self.command = command
        self.proc = proc
        self.pid = proc.pid
        self.started_at = time.monotonic()
        self.stop_requested = False
        self.line_overflows = 0
        self._signalled: Set[int] = set()
        self._readers: List[threading.Thread] = []

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.poll()

    @property
    def alive(self) -> bool:
        return self.proc.poll() is None

    def signal_once(self, sig: int) -> bool:
        """Send ``sig`` to the process group unless already sent; False if the process is gone."""
        if sig in self._signalled:
            return True
        self._signalled.add(sig)
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.pid, sig)
            else:
                self.proc.send_signal(sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The group leader may be gone while the pgid was reused; fall back to the child itself
            try:
                self.proc.send_signal(sig)
            except ProcessLookupError:
                return False
        return True

    def __repr__(self) -> str:
        return f"SessionHandle(session={self.session_id}, pid={self.pid}, band={self.band})"


def describe_exit(returncode: Optional[int]) -> str:
    """Human-readable reason for a sweep process exit."""
    if returncode is None:
        return "exit status unknown"
    if returncode == 0:
        return "exited normally"
    if returncode in (-signal.SIGKILL, 128 + signal.SIGKILL):
        return "killed by SIGKILL (possibly out of memory)"
    if returncode in (-signal.SIGSEGV, 128 + signal.SIGSEGV):
        return "segmentation fault"
    if returncode in (-signal.SIGTERM, 128 + signal.SIGTERM):
        return "terminated"
    if returncode == 1:
        return "general device error (exit code 1)"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"killed by signal {name}"
    return f"exit code {returncode}"


class ProcessSupervisor:
    def __init__(self, settings: EngineSettings, on_event: Callable[[object], None]):
        self.settings = settings
        self.on_event = on_event
        self._ids = itertools.count(1)
        self._active: Optional[SessionHandle] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> Optional[SessionHandle]:
        with self._lock:
            handle = self._active
        if handle is not None and not handle.alive and handle.stop_requested:
            return None
        return handle

    def build_command(self, band: FrequencyBand, gain: GainParams) -> List[str]:
        return build_sweep_command(self.settings.command_prefix, band, gain)

    def start(self, band: FrequencyBand, gain: GainParams) -> SessionHandle:
        with self._lock:
            current = self._active
            if current is not None and current.alive:
                raise AlreadyRunningError(f"sweep process {current.pid} is still running")
            cmd = self.build_command(band, gain)
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise SpawnError(f"sweep executable not found: {cmd[0]}") from exc
            except PermissionError as exc:
                raise SpawnError(f"sweep executable not permitted: {cmd[0]}") from exc
            except OSError as exc:
                raise SpawnError(f"failed to launch {cmd[0]}: {exc}") from exc
            handle = SessionHandle(next(self._ids), band, gain, cmd, proc)
            self._active = handle

        logger.info("Sweep process started: %s", " ".join(cmd), extra={"band": str(band), "pid": proc.pid})
        self._spawn_readers(handle)
        return handle

    def _spawn_readers(self, handle: SessionHandle) -> None:
        out = threading.Thread(
            target=self._read_stdout, args=(handle,), name=f"sweep-stdout-{handle.session_id}", daemon=True
        )
        err = threading.Thread(
            target=self._read_stderr, args=(handle,), name=f"sweep-stderr-{handle.session_id}", daemon=True
        )
        handle._readers = [out, err]
        out.start()
        err.start()
        reaper = threading.Thread(
            target=self._reap, args=(handle,), name=f"sweep-reaper-{handle.session_id}", daemon=True
        )
        reaper.start()

    def _pump(self, handle: SessionHandle, stream, emit: Callable[[str], None]) -> None:
        assembler = LineAssembler(self.settings.line_buffer_limit)
        fd = stream.fileno()
        try:
            while True:
                chunk = os.read(fd, _READ_CHUNK)
                if not chunk:
                    break
                for line in assembler.feed(chunk):
                    emit(line)
            for line in assembler.flush():
                emit(line)
        except OSError as exc:
            logger.debug("Reader for session %d ended: %s", handle.session_id, exc)
        finally:
            if assembler.overflows:
                handle.line_overflows += assembler.overflows
                logger.warning(
                    "Output line buffer overflowed %d time(s)", assembler.overflows, extra={"pid": handle.pid}
                )
            stream.close()

    def _read_stdout(self, handle: SessionHandle) -> None:
        sid = handle.session_id
        self._pump(handle, handle.proc.stdout, lambda text: self.on_event(StdoutLine(sid, text, now_ms())))

    def _read_stderr(self, handle: SessionHandle) -> None:
        sid = handle.session_id
        self._pump(handle, handle.proc.stderr, lambda text: self.on_event(StderrLine(sid, text)))

    def _reap(self, handle: SessionHandle) -> None:
        rc = handle.proc.wait()
        for reader in handle._readers:
            reader.join(timeout=5.0)
        with self._lock:
            if self._active is handle:
                self._active = None
        level = logger.debug if handle.stop_requested else logger.warning
        level(
            "Sweep process exited: %s",
            describe_exit(rc),
            extra={"pid": handle.pid, "exit_code": rc, "band": str(handle.band)},
        )
        self.on_event(ProcessExited(handle.session_id, rc, handle.stop_requested))

    def stop(self, handle: Optional[SessionHandle] = None, grace_s: Optional[float] = None) -> Optional[int]:
        """Terminate ``handle`` (default: the active session) and return its exit code.

        SIGTERM goes to the whole process group first; SIGKILL follows if the
        process outlives the grace period. Stopping an exited or unknown
        session is a no-op.
        """
        with self._lock:
            if handle is None:
                handle = self._active
        if handle is None:
            return None
        handle.stop_requested = True
        grace = self.settings.stop_grace_s if grace_s is None else grace_s
        rc = handle.proc.poll()
        if rc is None and handle.signal_once(signal.SIGTERM):
            try:
                rc = handle.proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning("Sweep process ignored SIGTERM, sending SIGKILL", extra={"pid": handle.pid})
                handle.signal_once(getattr(signal, "SIGKILL", signal.SIGTERM))
                try:
                    rc = handle.proc.wait(timeout=max(grace, 1.0))
                except subprocess.TimeoutExpired:
                    logger.error("Sweep process survived SIGKILL", extra={"pid": handle.pid})
                    rc = None
        if rc is None:
            rc = handle.proc.poll()
        with self._lock:
            if self._active is handle and rc is not None:
                self._active = None
        return rc

    def check_health(self, handle: Optional[SessionHandle] = None) -> Optional[HealthIssue]:
        """Resident-memory check of the sweep process; low system memory is only logged."""
        handle = handle or self.active
        if handle is None or not handle.alive:
            return None
        try:
            rss_mb = psutil.Process(handle.pid).memory_info().rss / _MB
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None
        try:
            available_mb = psutil.virtual_memory().available / _MB
        except OSError:
            available_mb = None
        if available_mb is not None and available_mb < self.settings.low_system_memory_mb:
            logger.warning("Low system memory: %.0f MB available", available_mb, extra={"pid": handle.pid})
        if rss_mb > self.settings.memory_limit_mb:
            return HealthIssue(
                "memory",
                f"sweep process using {rss_mb:.0f} MB (limit {self.settings.memory_limit_mb:.0f} MB)",
            )
        return None

    def _is_sweep_process(self, name: str, cmdline: List[str]) -> bool:
        """True when the process is our sweep command, not one that merely mentions it."""
        prefix = self.settings.command_prefix or ["hackrf_sweep"]
        binary = os.path.basename(prefix[-1])
        if name == binary or (cmdline and os.path.basename(cmdline[0]) == binary):
            return True
        if len(prefix) < 2 or len(cmdline) < len(prefix):
            return False
        return (
            os.path.basename(cmdline[0]) == os.path.basename(prefix[0])
            and list(cmdline[1:len(prefix)]) == prefix[1:]
        )

    def reap_orphans(self) -> int:
        """Kill stray sweep processes left behind by an earlier run."""
        active = self.active
        skip = {os.getpid()}
        if active is not None:
            skip.add(active.pid)
        killed = 0
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                if proc.info["pid"] in skip:
                    continue
                if not self._is_sweep_process(proc.info.get("name") or "", proc.info.get("cmdline") or []):
                    continue
                proc.kill()
                killed += 1
                logger.warning("Killed orphaned sweep process", extra={"pid": proc.info["pid"]})
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            except OSError:
                log_exception(logger, "Failed to reap orphaned process", error_type="orphan_reap")
        return killed
