import itertools
import shlex
import sys
import textwrap
import time
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from sweepwatch.config import EngineSettings
from sweepwatch.errors import AlreadyRunningError
from sweepwatch.events import ErrorNotice, StatusEvent
from sweepwatch.sweep.engine import SweepEngine
from sweepwatch.sweep.process import HealthIssue, ProcessExited, StderrLine, StdoutLine
from sweepwatch.util.time import now_ms


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def data_line(start_hz: int = 2_400_000_000, width_hz: int = 5_000_000, powers=(-70.0, -65.5, -42.0, -80.25)) -> str:
    bin_width = width_hz / len(powers)
    cols = ["2024-05-01", "12:00:00.123456", str(start_hz), str(start_hz + width_hz), f"{bin_width:.2f}", "20"]
    cols += [f"{p:.2f}" for p in powers]
    return ", ".join(cols)


def statuses(events) -> List[StatusEvent]:
    return [e for e in events if isinstance(e, StatusEvent)]


def notices(events) -> List[ErrorNotice]:
    return [e for e in events if isinstance(e, ErrorNotice)]


class FakeHandle:
    def __init__(self, session_id: int, band, gain):
        self.session_id = session_id
        self.pid = 40000 + session_id
        self.band = band
        self.gain = gain
        self.alive = True


class FakeSupervisor:
    """Stands in for ProcessSupervisor; tests drive output and exits by hand."""

    def __init__(self, on_event):
        self.on_event = on_event
        self.started: List[FakeHandle] = []
        self.stopped: List[FakeHandle] = []
        self.spawn_errors: List[Exception] = []
        self.health_issue: Optional[HealthIssue] = None
        self.reap_calls = 0
        self.max_alive = 0
        self._active: Optional[FakeHandle] = None
        self._ids = itertools.count(1)

    @property
    def active(self) -> Optional[FakeHandle]:
        if self._active is not None and self._active.alive:
            return self._active
        return None

    def start(self, band, gain) -> FakeHandle:
        if self.spawn_errors:
            raise self.spawn_errors.pop(0)
        if self.active is not None:
            raise AlreadyRunningError("fake process still running")
        handle = FakeHandle(next(self._ids), band, gain)
        self.started.append(handle)
        self._active = handle
        self.max_alive = max(self.max_alive, sum(1 for h in self.started if h.alive))
        return handle

    def stop(self, handle=None, grace_s=None):
        handle = handle or self._active
        if handle is None:
            return None
        if handle.alive:
            handle.alive = False
            self.stopped.append(handle)
            self.on_event(ProcessExited(handle.session_id, -15, True))
        if self._active is handle:
            self._active = None
        return -15

    def crash(self, returncode: int = 1) -> FakeHandle:
        handle = self._active
        assert handle is not None and handle.alive
        handle.alive = False
        self._active = None
        self.on_event(ProcessExited(handle.session_id, returncode, False))
        return handle

    def emit(self, text: str, handle: Optional[FakeHandle] = None) -> None:
        handle = handle or self._active
        self.on_event(StdoutLine(handle.session_id, text, now_ms()))

    def emit_stderr(self, text: str, handle: Optional[FakeHandle] = None) -> None:
        handle = handle or self._active
        self.on_event(StderrLine(handle.session_id, text))

    def check_health(self, handle=None):
        return self.health_issue

    def reap_orphans(self) -> int:
        self.reap_calls += 1
        return 0


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        backoff_base_s=0.01,
        backoff_max_s=0.05,
        settle_cap_s=0.0,
        stop_grace_s=0.5,
        command_timeout_s=5.0,
        health_interval_s=60.0,
    )


@pytest.fixture
def fake_engine(settings):
    holder = {}

    def factory(on_event):
        holder["sup"] = FakeSupervisor(on_event)
        return holder["sup"]

    engine = SweepEngine(settings, supervisor_factory=factory)
    engine.fake = holder["sup"]
    engine.start()
    yield engine
    engine.shutdown()


FAKE_SWEEP = textwrap.dedent(
    """
    import signal
    import sys
    import time

    mode = sys.argv[1] if len(sys.argv) > 1 and not sys.argv[1].startswith("-") else "sleep"
    if mode == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    sys.stderr.write("args: " + " ".join(sys.argv[1:]) + "\\n")
    sys.stderr.flush()
    for i in range(3):
        sys.stdout.write(
            "2024-05-01, 12:00:00.000001, %d, %d, 1000000.00, 20, -70.00, -60.00, -50.00\\n"
            % (2400000000 + i * 5000000, 2405000000 + i * 5000000)
        )
        sys.stdout.flush()
    if mode == "crash":
        sys.exit(1)
    time.sleep(30)
    """
)


@pytest.fixture
def fake_sweep_script(tmp_path: Path) -> Path:
    script = tmp_path / "fake_sweep.py"
    script.write_text(FAKE_SWEEP, encoding="utf-8")
    return script


def sweep_command(script: Path, mode: Optional[str] = None) -> str:
    parts = [sys.executable, str(script)]
    if mode:
        parts.append(mode)
    return " ".join(shlex.quote(p) for p in parts)
