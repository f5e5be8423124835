"""Value types shared by the sweep engine components."""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np

from sweepwatch.errors import InvalidConfigError

MIN_TUNE_HZ = 1_000_000.0
MAX_TUNE_HZ = 7_250_000_000.0


class FrequencyUnit(enum.Enum):
    HZ = "Hz"
    KHZ = "kHz"
    MHZ = "MHz"
    GHZ = "GHz"

    @property
    def multiplier(self) -> float:
        return _UNIT_MULTIPLIERS[self]

    @classmethod
    def parse(cls, text: Optional[str]) -> "FrequencyUnit":
        """Case-insensitive unit lookup; empty means MHz."""
        if text is None or not str(text).strip():
            return cls.MHZ
        key = str(text).strip().lower()
        for unit in cls:
            if unit.value.lower() == key:
                return unit
        raise InvalidConfigError(f"Unknown frequency unit '{text}'")


_UNIT_MULTIPLIERS = {
    FrequencyUnit.HZ: 1.0,
    FrequencyUnit.KHZ: 1e3,
    FrequencyUnit.MHZ: 1e6,
    FrequencyUnit.GHZ: 1e9,
}


@dataclass(frozen=True)
class FrequencyBand:
    """A band centre plus the span swept around it.

    ``span_hz`` is the half-width on each side of the centre; ``None`` means
    the configured default is applied when the cycle is built.
    """

    value: float
    unit: FrequencyUnit = FrequencyUnit.MHZ
    span_hz: Optional[float] = None
    label: Optional[str] = None

    @property
    def center_hz(self) -> float:
        return float(self.value) * self.unit.multiplier

    @property
    def start_hz(self) -> float:
        return self.center_hz - (self.span_hz or 0.0)

    @property
    def stop_hz(self) -> float:
        return self.center_hz + (self.span_hz or 0.0)

    def with_default_span(self, span_hz: float) -> "FrequencyBand":
        if self.span_hz is not None:
            return self
        return FrequencyBand(self.value, self.unit, float(span_hz), self.label)

    def validate(self) -> None:
        if not math.isfinite(float(self.value)) or self.value <= 0:
            raise InvalidConfigError(f"Band value must be a positive number, got {self.value!r}")
        if self.span_hz is not None and (not math.isfinite(self.span_hz) or self.span_hz <= 0):
            raise InvalidConfigError(f"Band span must be positive, got {self.span_hz!r}")
        if self.start_hz < MIN_TUNE_HZ or self.stop_hz > MAX_TUNE_HZ:
            raise InvalidConfigError(
                f"Frequency {self.center_hz / 1e6:g} MHz out of range (1-7250 MHz)"
            )

    def describe(self) -> str:
        if self.label:
            return self.label
        return f"{_format_number(self.value)} {self.unit.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "unit": self.unit.value,
            "center_hz": self.center_hz,
            "span_hz": self.span_hz,
            "label": self.label,
        }

    def __str__(self) -> str:
        return self.describe()


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


_BAND_TEXT_RE = re.compile(r"^\s*([-+]?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_band(spec: Union[str, int, float, Mapping[str, Any], FrequencyBand]) -> FrequencyBand:
    """Normalize a caller-supplied band.

    Accepts a bare number (MHz), a string like ``"2.4GHz"`` or ``"915 mhz"``,
    or a mapping with ``value``/``frequency`` and optional ``unit``, ``span_hz``
    and ``label`` keys.
    """
    if isinstance(spec, FrequencyBand):
        return spec
    if isinstance(spec, bool):
        raise InvalidConfigError(f"Invalid band {spec!r}")
    if isinstance(spec, (int, float)):
        return FrequencyBand(float(spec), FrequencyUnit.MHZ)
    if isinstance(spec, str):
        match = _BAND_TEXT_RE.match(spec)
        if not match:
            raise InvalidConfigError(f"Invalid band '{spec}'")
        return FrequencyBand(float(match.group(1)), FrequencyUnit.parse(match.group(2)))
    if isinstance(spec, Mapping):
        raw = spec.get("value", spec.get("frequency"))
        if raw is None:
            raise InvalidConfigError(f"Band mapping needs a 'value': {dict(spec)!r}")
        try:
            value = float(raw)
            span = spec.get("span_hz")
            span_hz = float(span) if span is not None else None
        except (TypeError, ValueError) as exc:
            raise InvalidConfigError(f"Invalid band {dict(spec)!r}") from exc
        label = spec.get("label")
        return FrequencyBand(value, FrequencyUnit.parse(spec.get("unit")), span_hz, str(label) if label else None)
    raise InvalidConfigError(f"Invalid band {spec!r}")


def _check_stepped(name: str, value: int, low: int, high: int, step: int) -> None:
    if value < low or value > high or (value - low) % step:
        raise InvalidConfigError(f"{name} must be {low}-{high} in steps of {step}, got {value}")


@dataclass(frozen=True)
class GainParams:
    lna_gain_db: int = 32
    vga_gain_db: int = 20
    bin_width_hz: int = 20_000
    amp_enable: bool = False
    antenna_enable: bool = False

    def validate(self) -> None:
        _check_stepped("lna_gain_db", int(self.lna_gain_db), 0, 40, 8)
        _check_stepped("vga_gain_db", int(self.vga_gain_db), 0, 62, 2)
        if not 2445 <= int(self.bin_width_hz) <= 5_000_000:
            raise InvalidConfigError(f"bin_width_hz must be 2445-5000000, got {self.bin_width_hz}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lna_gain_db": self.lna_gain_db,
            "vga_gain_db": self.vga_gain_db,
            "bin_width_hz": self.bin_width_hz,
            "amp_enable": self.amp_enable,
            "antenna_enable": self.antenna_enable,
        }


@dataclass(frozen=True)
class SweepCycleConfig:
    bands: Tuple[FrequencyBand, ...]
    dwell_ms: int
    gain: GainParams = field(default_factory=GainParams)

    def validate(self) -> None:
        if not self.bands:
            raise InvalidConfigError("At least one band is required")
        if isinstance(self.dwell_ms, bool) or not isinstance(self.dwell_ms, int) or self.dwell_ms <= 0:
            raise InvalidConfigError(f"dwell_ms must be a positive integer, got {self.dwell_ms!r}")
        for band in self.bands:
            band.validate()
        self.gain.validate()

    @classmethod
    def build(
        cls,
        bands: Iterable[Any],
        dwell_ms: Any,
        gain: Optional[GainParams] = None,
        *,
        default_span_hz: float = 10_000_000.0,
    ) -> "SweepCycleConfig":
        """Normalize raw caller input into a validated, immutable cycle config."""
        if isinstance(bands, (str, bytes, Mapping)):
            bands = [bands]
        normalized = tuple(parse_band(b).with_default_span(default_span_hz) for b in bands)
        try:
            dwell = int(dwell_ms) if not isinstance(dwell_ms, bool) and float(dwell_ms).is_integer() else dwell_ms
        except (TypeError, ValueError) as exc:
            raise InvalidConfigError(f"dwell_ms must be a positive integer, got {dwell_ms!r}") from exc
        config = cls(normalized, dwell, gain or GainParams())
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bands": [b.to_dict() for b in self.bands],
            "dwell_ms": self.dwell_ms,
            "gain": self.gain.to_dict(),
        }


@dataclass(frozen=True)
class SpectrumSample:
    """One parsed row of sweep output."""

    timestamp_ms: int
    start_hz: float
    stop_hz: float
    bin_width_hz: float
    sample_count: int
    power_db: np.ndarray

    def __post_init__(self) -> None:
        arr = np.array(self.power_db, dtype=np.float64, copy=True)
        arr.setflags(write=False)
        object.__setattr__(self, "power_db", arr)

    @property
    def bin_count(self) -> int:
        return int(self.power_db.size)

    @property
    def center_hz(self) -> float:
        return (self.start_hz + self.stop_hz) / 2.0

    @property
    def peak_db(self) -> float:
        return float(self.power_db.max())

    @property
    def peak_hz(self) -> float:
        idx = int(np.argmax(self.power_db))
        return self.start_hz + (idx + 0.5) * self.bin_width_hz

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "start_hz": self.start_hz,
            "stop_hz": self.stop_hz,
            "bin_width_hz": self.bin_width_hz,
            "sample_count": self.sample_count,
            "center_hz": self.center_hz,
            "peak_hz": self.peak_hz,
            "peak_db": self.peak_db,
            "power_db": self.power_db.tolist(),
        }


def build_sweep_command(prefix: List[str], band: FrequencyBand, gain: GainParams) -> List[str]:
    """Arguments for one ``hackrf_sweep`` run covering ``band``."""
    lo_mhz = int(math.floor(band.start_hz / 1e6))
    hi_mhz = int(math.ceil(band.stop_hz / 1e6))
    if hi_mhz <= lo_mhz:
        hi_mhz = lo_mhz + 1
    cmd = list(prefix) + [
        "-f",
        f"{lo_mhz}:{hi_mhz}",
        "-l",
        str(int(gain.lna_gain_db)),
        "-g",
        str(int(gain.vga_gain_db)),
        "-w",
        str(int(gain.bin_width_hz)),
    ]
    if gain.amp_enable:
        cmd += ["-a", "1"]
    if gain.antenna_enable:
        cmd += ["-p", "1"]
    return cmd
