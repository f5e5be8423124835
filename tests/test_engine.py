import time

import pytest

from sweepwatch.errors import AlreadyRunningError, DeviceUnavailableError, InvalidConfigError, SpawnError
from sweepwatch.device import DeviceProbe
from sweepwatch.events import StatusKind
from sweepwatch.sweep.engine import SweepEngine
from sweepwatch.sweep.process import HealthIssue
from sweepwatch.sweep.recovery import MAX_RETRIES_REASON

from conftest import FakeSupervisor, data_line, notices, statuses, sweep_command, wait_for


def _kinds(events):
    return [e.kind for e in statuses(events)]


def _engine_with(settings, **kwargs):
    holder = {}

    def factory(on_event):
        holder["sup"] = FakeSupervisor(on_event)
        return holder["sup"]

    engine = SweepEngine(settings, supervisor_factory=factory, **kwargs)
    engine.fake = holder["sup"]
    return engine


def test_initial_status_is_stopped(fake_engine) -> None:
    assert fake_engine.get_status().kind is StatusKind.STOPPED
    assert fake_engine.snapshot()["phase"] == "idle"


def test_start_publishes_starting_then_running(fake_engine) -> None:
    sub = fake_engine.subscribe()
    status = fake_engine.start_cycle(["2400"], dwell_ms=1000)
    assert status.kind is StatusKind.RUNNING
    events = sub.drain()
    assert _kinds(events) == [StatusKind.STARTING, StatusKind.RUNNING]
    assert str(events[0].band) == "2400 MHz"
    assert str(events[1].band) == "2400 MHz"
    handle = fake_engine.fake.started[0]
    assert handle.band.start_hz == pytest.approx(2.39e9)


def test_samples_reach_buffer_and_subscribers(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake_engine.start_cycle(["2400"], dwell_ms=5000)
    fake_engine.fake.emit(data_line())
    assert wait_for(lambda: len(fake_engine.replay()) == 1)
    events = [e for e in sub.drain() if not hasattr(e, "kind")]
    assert len(events) == 1
    assert events[0].start_hz == 2_400_000_000


def test_replay_returns_last_n_of_fifty(fake_engine) -> None:
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    for i in range(50):
        fake_engine.fake.emit(data_line(start_hz=2_400_000_000 + i * 1000))
    assert wait_for(lambda: fake_engine.buffer.total_appended == 50)
    recent = fake_engine.replay(10)
    assert [s.start_hz for s in recent] == [2_400_000_000 + i * 1000 for i in range(40, 50)]


def test_parse_errors_are_counted_not_published(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    fake_engine.fake.emit("not, a, data, row")
    fake_engine.fake.emit(data_line())
    assert wait_for(lambda: len(fake_engine.replay()) == 1)
    assert fake_engine.snapshot()["recovery"]["parse_errors"] == 1
    assert notices(sub.drain()) == []


def test_cycle_visits_bands_in_order_and_wraps(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake_engine.start_cycle(["100", "200", "300"], dwell_ms=150)
    fake = fake_engine.fake
    assert wait_for(lambda: len(fake.started) >= 4, timeout=5.0)
    assert [str(h.band) for h in fake.started[:4]] == ["100 MHz", "200 MHz", "300 MHz", "100 MHz"]
    assert fake.max_alive == 1
    fake_engine.stop_sweep()
    events = sub.drain()
    switches = [(str(e.from_band), str(e.to_band)) for e in statuses(events) if e.kind is StatusKind.SWITCHING]
    assert switches[:3] == [("100 MHz", "200 MHz"), ("200 MHz", "300 MHz"), ("300 MHz", "100 MHz")]
    # band switches go straight from SWITCHING to RUNNING
    kinds = _kinds(events)
    first_switch = kinds.index(StatusKind.SWITCHING)
    assert kinds[first_switch + 1] is StatusKind.RUNNING
    # nothing arrived during any dwell
    assert any(n.kind == "no_data" and not n.fatal for n in notices(events))
    assert fake_engine.snapshot()["recovery"]["empty_windows"].get(0, 0) >= 1


def test_single_band_never_switches(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake_engine.start_cycle(["2400"], dwell_ms=50)
    time.sleep(0.3)
    assert len(fake_engine.fake.started) == 1
    assert StatusKind.SWITCHING not in _kinds(sub.drain())


def test_three_failures_publish_failed_then_stopped(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake = fake_engine.fake
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    for attempt in range(3):
        assert wait_for(lambda: len(fake.started) == attempt + 1 and fake.active is not None)
        fake.crash(returncode=1)
    assert wait_for(lambda: fake_engine.get_status().kind is StatusKind.STOPPED)
    time.sleep(0.2)
    assert len(fake.started) == 3
    events = sub.drain()
    kinds = _kinds(events)
    assert kinds[-2:] == [StatusKind.FAILED, StatusKind.STOPPED]
    failed = statuses(events)[-2]
    assert failed.reason == MAX_RETRIES_REASON
    assert fake_engine.snapshot()["last_failure"] == MAX_RETRIES_REASON
    last_error = fake_engine.snapshot()["last_error"]
    assert last_error["type"] == "TerminalFailure"
    assert last_error["cause"]["type"] == "ProcessExitError"
    assert last_error["cause"]["exit_code"] == 1
    assert any(n.fatal for n in notices(events))


def test_successful_sample_resets_failure_budget(fake_engine) -> None:
    fake = fake_engine.fake
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    for attempt in range(4):
        assert wait_for(lambda: len(fake.started) == attempt + 1 and fake.active is not None)
        fake.emit(data_line())
        assert wait_for(lambda: fake_engine.buffer.total_appended == attempt + 1)
        fake.crash()
    assert wait_for(lambda: len(fake.started) == 5)
    assert wait_for(lambda: fake_engine.get_status().kind is StatusKind.RUNNING)


def test_stop_during_backoff_cancels_restart(settings) -> None:
    engine = _engine_with(settings.with_overrides(backoff_base_s=0.4, backoff_max_s=0.4))
    try:
        engine.start_cycle(["2400"], dwell_ms=60_000)
        engine.fake.crash()
        assert wait_for(lambda: engine.snapshot()["phase"] == "backoff")
        status = engine.stop_sweep()
        assert status.kind is StatusKind.STOPPED
        time.sleep(0.7)
        assert len(engine.fake.started) == 1
        assert engine.fake.active is None
    finally:
        engine.shutdown()


def test_stop_is_idempotent(fake_engine) -> None:
    sub = fake_engine.subscribe()
    assert fake_engine.stop_sweep().kind is StatusKind.STOPPED
    assert sub.drain() == []
    fake_engine.start_cycle(["2400"], dwell_ms=1000)
    fake_engine.stop_sweep()
    fake_engine.stop_sweep()
    kinds = _kinds(sub.drain())
    assert kinds.count(StatusKind.STOPPED) == 1
    assert fake_engine.fake.active is None
    assert len(fake_engine.fake.stopped) == 1


def test_stale_exit_after_stop_is_ignored(fake_engine) -> None:
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    fake_engine.stop_sweep()
    time.sleep(0.1)
    assert len(fake_engine.fake.started) == 1
    assert fake_engine.snapshot()["recovery"]["total_failures"] == 0


@pytest.mark.parametrize(
    "bands, dwell",
    [([], 1000), (["2400"], 0), (["2400"], -1), (["99999"], 1000), (["nonsense"], 1000)],
)
def test_invalid_config_is_rejected_without_state_change(fake_engine, bands, dwell) -> None:
    sub = fake_engine.subscribe()
    with pytest.raises(InvalidConfigError):
        fake_engine.start_cycle(bands, dwell)
    assert fake_engine.get_status().kind is StatusKind.STOPPED
    assert fake_engine.fake.started == []
    assert sub.drain() == []


def test_second_start_requires_replace(fake_engine) -> None:
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    with pytest.raises(AlreadyRunningError):
        fake_engine.start_cycle(["5800"], dwell_ms=60_000)
    assert len(fake_engine.fake.started) == 1

    sub = fake_engine.subscribe()
    status = fake_engine.start_cycle(["5800"], dwell_ms=60_000, replace=True)
    assert str(status.band) == "5800 MHz"
    assert _kinds(sub.drain()) == [StatusKind.STOPPED, StatusKind.STARTING, StatusKind.RUNNING]
    old, new = fake_engine.fake.started
    assert not old.alive and new.alive


def test_output_from_replaced_session_is_discarded(fake_engine) -> None:
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    old = fake_engine.fake.started[0]
    fake_engine.start_cycle(["5800"], dwell_ms=60_000, replace=True)
    fake_engine.fake.emit(data_line(), handle=old)
    fake_engine.fake.emit(data_line(start_hz=5_800_000_000))
    assert wait_for(lambda: fake_engine.buffer.total_appended >= 1)
    time.sleep(0.05)
    assert [s.start_hz for s in fake_engine.replay()] == [5_800_000_000]


def test_spawn_failure_on_explicit_start_is_raised(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake_engine.fake.spawn_errors.append(SpawnError("sweep executable not found: hackrf_sweep"))
    with pytest.raises(SpawnError):
        fake_engine.start_cycle(["2400"], dwell_ms=1000)
    events = sub.drain()
    assert _kinds(events) == [StatusKind.STARTING, StatusKind.FAILED, StatusKind.STOPPED]
    assert notices(events)[0].kind == "spawn"
    assert fake_engine.get_status().kind is StatusKind.STOPPED


def test_spawn_failure_during_restart_uses_backoff(fake_engine) -> None:
    fake = fake_engine.fake
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    fake.spawn_errors.append(SpawnError("transient"))
    fake.crash()
    assert wait_for(lambda: len(fake.started) == 2)
    assert wait_for(lambda: fake_engine.get_status().kind is StatusKind.RUNNING)
    assert fake_engine.snapshot()["recovery"]["band_failures"] == {0: 2}


class _UnkillableSupervisor(FakeSupervisor):
    """The process ignores every signal and stays alive."""

    def stop(self, handle=None, grace_s=None):
        return None


def test_process_surviving_stop_counts_as_band_failure(settings) -> None:
    holder = {}

    def factory(on_event):
        holder["sup"] = _UnkillableSupervisor(on_event)
        return holder["sup"]

    engine = SweepEngine(settings, supervisor_factory=factory)
    sub = engine.subscribe()
    try:
        engine.start_cycle(["2400"], dwell_ms=60_000)
        holder["sup"].emit_stderr("hackrf_open() failed: Resource busy (-1000)")
        assert wait_for(lambda: engine.get_status().kind is StatusKind.STOPPED)
        events = sub.drain()
        assert _kinds(events)[-2:] == [StatusKind.FAILED, StatusKind.STOPPED]
        assert statuses(events)[-2].reason == MAX_RETRIES_REASON
        assert any(n.kind == "spawn" and "did not exit" in n.message for n in notices(events))
        assert len(holder["sup"].started) == 1
    finally:
        engine.shutdown()


def test_fatal_stderr_restarts_same_band(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake = fake_engine.fake
    fake_engine.start_cycle(["2400", "5800"], dwell_ms=60_000)
    fake.emit_stderr("hackrf_open() failed: Resource busy (-1000)")
    assert wait_for(lambda: len(fake.started) == 2)
    assert [str(h.band) for h in fake.started] == ["2400 MHz", "2400 MHz"]
    assert not fake.started[0].alive
    assert any(n.kind == "device_busy" for n in notices(sub.drain()))


def test_permission_denied_is_terminal(fake_engine) -> None:
    sub = fake_engine.subscribe()
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    fake_engine.fake.emit_stderr("hackrf_open() failed: Permission denied")
    assert wait_for(lambda: fake_engine.get_status().kind is StatusKind.STOPPED)
    kinds = _kinds(sub.drain())
    assert kinds[-2:] == [StatusKind.FAILED, StatusKind.STOPPED]
    assert len(fake_engine.fake.started) == 1


def test_health_issue_triggers_restart(settings) -> None:
    engine = _engine_with(settings.with_overrides(health_interval_s=0.05))
    try:
        engine.start_cycle(["2400"], dwell_ms=60_000)
        engine.fake.health_issue = HealthIssue("memory", "sweep process using 900 MB (limit 512 MB)")
        assert wait_for(lambda: len(engine.fake.started) >= 2)
        assert not engine.fake.started[0].alive
    finally:
        engine.fake.health_issue = None
        engine.shutdown()


def test_startup_stall_is_a_failure(settings) -> None:
    engine = _engine_with(settings.with_overrides(health_interval_s=0.05, startup_timeout_s=0.1))
    try:
        engine.start_cycle(["2400"], dwell_ms=60_000)
        assert wait_for(lambda: len(engine.fake.started) >= 2)
        assert "no data within" in engine.snapshot()["recovery"]["last_reason"]
    finally:
        engine.shutdown()


def test_emergency_stop_reaps_orphans(fake_engine) -> None:
    fake_engine.start_cycle(["2400"], dwell_ms=60_000)
    status = fake_engine.emergency_stop()
    assert status.kind is StatusKind.STOPPED
    assert fake_engine.fake.reap_calls == 1
    assert fake_engine.fake.active is None


def test_probe_before_start_rejects_missing_device(settings) -> None:
    engine = _engine_with(
        settings.with_overrides(probe_before_start=True),
        prober=lambda: DeviceProbe(False, "No HackRF found"),
    )
    try:
        with pytest.raises(DeviceUnavailableError):
            engine.start_cycle(["2400"], dwell_ms=1000)
        assert engine.fake.started == []
        assert engine.get_status().kind is StatusKind.STOPPED
    finally:
        engine.shutdown()


def test_engine_drives_real_subprocess(settings, fake_sweep_script) -> None:
    engine = SweepEngine(settings.with_overrides(executable=sweep_command(fake_sweep_script)))
    try:
        engine.start_cycle(["2400"], dwell_ms=60_000)
        assert wait_for(lambda: engine.buffer.total_appended == 3, timeout=10.0)
        assert engine.snapshot()["pid"] is not None
        assert engine.stop_sweep().kind is StatusKind.STOPPED
        assert engine.snapshot()["recovery"]["total_failures"] == 0
    finally:
        engine.shutdown()
