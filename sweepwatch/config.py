"""
Engine settings and environment parsing for SweepWatch.

All SWEEPWATCH_* engine variables are parsed here into an ``EngineSettings``
instance. Components receive the settings object rather than reading
os.environ directly.
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Optional


def _int_env(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    """Parse an integer no smaller than ``minimum``, returning default on missing/invalid."""
    val = env.get(name)
    if not val:
        return default
    try:
        return max(minimum, int(float(val)))
    except (ValueError, OverflowError):
        return default


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    """Parse a float from environment, returning default on missing/invalid."""
    val = env.get(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    val = env.get(name)
    if val is None or not val.strip():
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineSettings:
    """Tunables for the sweep engine.

    Durations are seconds unless the name says otherwise.
    """

    executable: str = "hackrf_sweep"
    """Sweep command; may carry leading arguments (split with shlex)."""

    default_lna_gain_db: int = 32
    default_vga_gain_db: int = 20
    default_bin_width_hz: int = 20_000
    default_span_hz: float = 10_000_000.0
    """Half-width on each side of a band centre when a band has no explicit span."""

    buffer_capacity: int = 1000
    """Recent samples kept for late subscribers."""

    subscriber_queue_size: int = 256
    line_buffer_limit: int = 1 << 20
    power_floor_db: float = -150.0
    power_ceiling_db: float = 50.0

    stop_grace_s: float = 3.0
    command_timeout_s: float = 10.0

    max_failures: int = 3
    """Consecutive failures tolerated per band before the cycle is abandoned."""

    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0
    rate_limit_failures: int = 8
    rate_limit_window_s: float = 60.0

    settle_cap_s: float = 3.0
    health_interval_s: float = 30.0
    memory_limit_mb: float = 512.0
    low_system_memory_mb: float = 100.0
    startup_timeout_s: float = 60.0
    stall_timeout_s: float = 7200.0

    probe_before_start: bool = False
    reap_orphans_on_start: bool = False

    @property
    def command_prefix(self) -> List[str]:
        return shlex.split(self.executable)

    def settle_s(self, dwell_ms: int) -> float:
        """Gap between stopping one band and starting the next."""
        return min(self.settle_cap_s, dwell_ms / 4000.0)

    def with_overrides(self, **changes: Any) -> "EngineSettings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        env = os.environ if env is None else env
        base = cls()
        return cls(
            executable=env.get("SWEEPWATCH_EXECUTABLE") or base.executable,
            default_lna_gain_db=_int_env(env, "SWEEPWATCH_LNA_GAIN", base.default_lna_gain_db, minimum=0),
            default_vga_gain_db=_int_env(env, "SWEEPWATCH_VGA_GAIN", base.default_vga_gain_db, minimum=0),
            default_bin_width_hz=_int_env(env, "SWEEPWATCH_BIN_WIDTH_HZ", base.default_bin_width_hz),
            default_span_hz=_float_env(env, "SWEEPWATCH_SPAN_HZ", base.default_span_hz),
            buffer_capacity=_int_env(env, "SWEEPWATCH_BUFFER_CAPACITY", base.buffer_capacity),
            subscriber_queue_size=_int_env(env, "SWEEPWATCH_SUBSCRIBER_QUEUE", base.subscriber_queue_size),
            line_buffer_limit=_int_env(env, "SWEEPWATCH_LINE_BUFFER_LIMIT", base.line_buffer_limit),
            power_floor_db=_float_env(env, "SWEEPWATCH_POWER_FLOOR_DB", base.power_floor_db),
            power_ceiling_db=_float_env(env, "SWEEPWATCH_POWER_CEILING_DB", base.power_ceiling_db),
            stop_grace_s=_float_env(env, "SWEEPWATCH_STOP_GRACE_S", base.stop_grace_s),
            command_timeout_s=_float_env(env, "SWEEPWATCH_COMMAND_TIMEOUT_S", base.command_timeout_s),
            max_failures=_int_env(env, "SWEEPWATCH_MAX_FAILURES", base.max_failures),
            backoff_base_s=_float_env(env, "SWEEPWATCH_BACKOFF_BASE_S", base.backoff_base_s),
            backoff_max_s=_float_env(env, "SWEEPWATCH_BACKOFF_MAX_S", base.backoff_max_s),
            rate_limit_failures=_int_env(env, "SWEEPWATCH_RATE_LIMIT_FAILURES", base.rate_limit_failures),
            rate_limit_window_s=_float_env(env, "SWEEPWATCH_RATE_LIMIT_WINDOW_S", base.rate_limit_window_s),
            settle_cap_s=_float_env(env, "SWEEPWATCH_SETTLE_CAP_S", base.settle_cap_s),
            health_interval_s=_float_env(env, "SWEEPWATCH_HEALTH_INTERVAL_S", base.health_interval_s),
            memory_limit_mb=_float_env(env, "SWEEPWATCH_MEMORY_LIMIT_MB", base.memory_limit_mb),
            low_system_memory_mb=_float_env(env, "SWEEPWATCH_LOW_MEMORY_MB", base.low_system_memory_mb),
            startup_timeout_s=_float_env(env, "SWEEPWATCH_STARTUP_TIMEOUT_S", base.startup_timeout_s),
            stall_timeout_s=_float_env(env, "SWEEPWATCH_STALL_TIMEOUT_S", base.stall_timeout_s),
            probe_before_start=_bool_env(env, "SWEEPWATCH_PROBE_BEFORE_START", base.probe_before_start),
            reap_orphans_on_start=_bool_env(env, "SWEEPWATCH_REAP_ORPHANS", base.reap_orphans_on_start),
        )
