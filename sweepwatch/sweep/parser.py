"""Parsing of ``hackrf_sweep`` text output into spectrum samples.

Each data row looks like::

    2024-05-01, 12:00:00.123456, 2400000000, 2405000000, 1000000.00, 20, -70.1, -68.4, ...

i.e. date, time, low edge (Hz), high edge (Hz), bin width (Hz), FFT sample
count, then one power value (dB) per bin.
"""

from __future__ import annotations

import codecs
import re
from datetime import datetime
from typing import List, Optional, Tuple

import numpy as np

from sweepwatch.errors import ParseError
from sweepwatch.sweep.types import SpectrumSample
from sweepwatch.util.time import now_ms

MIN_FIELDS = 7
DEFAULT_POWER_RANGE: Tuple[float, float] = (-150.0, 50.0)

# Banner and diagnostic output the utility mixes into its stream
_NON_DATA_PATTERNS = [
    re.compile(p)
    for p in (
        r"^Found HackRF",
        r"^call_result is",
        r"^Reading samples",
        r"^Streaming samples",
        r"^Stop with Ctrl-C",
        r"^hackrf_sweep version",
        r"^libhackrf version",
        r"^bandwidth_hz",
        r"^sample_rate_hz",
        r"^baseband_filter_bw_hz",
        r"^Sweeping from",
        r"^RSSI:",
        r"^No HackRF boards found",
        r"^hackrf_open\(\) failed",
        r"^Resource busy",
        r"^Permission denied",
        r"^libusb_open\(\) failed",
        r"^USB error",
        r"^ERROR:",
        r"^WARNING:",
        r"^INFO:",
        r"^DEBUG:",
        r"^Exiting",
        r"^\d+ total sweeps completed",
    )
]

_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")


def is_non_data_line(text: str) -> bool:
    stripped = text.strip()
    return any(p.match(stripped) for p in _NON_DATA_PATTERNS)


def _parse_timestamp_ms(date_text: str, time_text: str) -> Optional[int]:
    stamp = f"{date_text.strip()} {time_text.strip()}"
    for fmt in _TIME_FORMATS:
        try:
            return int(datetime.strptime(stamp, fmt).timestamp() * 1000)
        except ValueError:
            continue
    return None


def parse_line(
    text: str,
    *,
    received_ms: Optional[int] = None,
    power_range: Tuple[float, float] = DEFAULT_POWER_RANGE,
) -> SpectrumSample:
    """Parse one output row.

    Raises ``ParseError`` for anything that is not a well-formed data row.
    An unparseable date/time falls back to ``received_ms`` (or the current
    clock) rather than rejecting the row.
    """
    line = text.strip()
    if not line:
        raise ParseError("empty line", text)
    if is_non_data_line(line):
        raise ParseError("non-data line", text)

    fields = [f.strip() for f in line.split(",")]
    if len(fields) < MIN_FIELDS:
        raise ParseError(f"expected at least {MIN_FIELDS} fields, got {len(fields)}", text)

    try:
        hz_low = float(fields[2])
        hz_high = float(fields[3])
        bin_width = float(fields[4])
        sample_count = int(float(fields[5]))
        power = np.array([float(v) for v in fields[6:]], dtype=np.float64)
    except (ValueError, OverflowError) as exc:
        raise ParseError(f"numeric conversion failed: {exc}", text) from exc

    if not (np.isfinite(hz_low) and np.isfinite(hz_high)) or hz_high <= hz_low:
        raise ParseError(f"invalid frequency range {fields[2]}..{fields[3]}", text)
    if not np.isfinite(bin_width) or bin_width <= 0:
        raise ParseError(f"invalid bin width {fields[4]}", text)
    if sample_count < 0:
        raise ParseError(f"invalid sample count {fields[5]}", text)
    if not np.all(np.isfinite(power)):
        raise ParseError("non-finite power value", text)
    floor_db, ceiling_db = power_range
    if power.min() < floor_db or power.max() > ceiling_db:
        raise ParseError(f"power value outside [{floor_db:g}, {ceiling_db:g}] dB", text)

    timestamp = _parse_timestamp_ms(fields[0], fields[1])
    if timestamp is None:
        timestamp = received_ms if received_ms is not None else now_ms()

    return SpectrumSample(
        timestamp_ms=timestamp,
        start_hz=hz_low,
        stop_hz=hz_high,
        bin_width_hz=bin_width,
        sample_count=sample_count,
        power_db=power,
    )


class LineAssembler:
    """Accumulate raw output chunks and hand back complete lines.

    When no newline arrives before the pending text exceeds ``limit``
    characters, only the newest half is kept and ``overflows`` is bumped.
    """

    def __init__(self, limit: int = 1 << 20):
        if limit < 2:
            raise ValueError("limit must be >= 2")
        self.limit = limit
        self.overflows = 0
        self._pending = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk) -> List[str]:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        data = self._pending + chunk
        *lines, self._pending = data.split("\n")
        if len(self._pending) > self.limit:
            self._pending = self._pending[-(self.limit // 2):]
            self.overflows += 1
        return [ln.rstrip("\r") for ln in lines if ln.strip()]

    def flush(self) -> List[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail.strip() else []
