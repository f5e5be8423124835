"""Band cycling helpers for sweep orchestrations."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

from sweepwatch.sweep.types import FrequencyBand


@dataclass(frozen=True)
class DwellWindow:
    """Single dwell window emitted by the cycler."""

    number: int
    band_index: int
    band: FrequencyBand
    start_s: float
    deadline_s: float


class FrequencyCycler:
    """Ordered band cursor with fixed dwell deadlines.

    Window ``k`` ends at ``cycle_start + (k + 1) * dwell``; deadlines never
    drift with switch latency. The settle gap before a new band launches is
    spent inside that band's window.
    """

    def __init__(self, bands: Sequence[FrequencyBand], dwell_ms: int, settle_s: float = 0.0) -> None:
        if not bands:
            raise ValueError("bands must not be empty")
        if dwell_ms <= 0:
            raise ValueError("dwell_ms must be positive")
        self._bands: Tuple[FrequencyBand, ...] = tuple(bands)
        self._dwell_s = dwell_ms / 1000.0
        self._settle_s = max(0.0, min(float(settle_s), self._dwell_s))
        self._index = 0
        self._window = 0
        self._cycle_start: Optional[float] = None
        self._completed_rounds = 0

    @property
    def bands(self) -> Tuple[FrequencyBand, ...]:
        return self._bands

    @property
    def dwell_s(self) -> float:
        return self._dwell_s

    @property
    def settle_s(self) -> float:
        return self._settle_s

    @property
    def index(self) -> int:
        return self._index

    @property
    def current(self) -> FrequencyBand:
        return self._bands[self._index]

    @property
    def window_number(self) -> int:
        return self._window

    @property
    def completed_rounds(self) -> int:
        return self._completed_rounds

    @property
    def cycles(self) -> bool:
        """Whether the cursor ever moves; a single band never switches."""

        return len(self._bands) > 1

    def start(self, now: float) -> DwellWindow:
        self._cycle_start = now
        self._index = 0
        self._window = 0
        self._completed_rounds = 0
        return self.current_window()

    def current_window(self) -> DwellWindow:
        if self._cycle_start is None:
            raise RuntimeError("cycler has not been started")
        start = self._cycle_start + self._window * self._dwell_s
        return DwellWindow(self._window, self._index, self.current, start, start + self._dwell_s)

    @property
    def deadline(self) -> float:
        return self.current_window().deadline_s

    def advance(self, now: float) -> Tuple[FrequencyBand, FrequencyBand]:
        """Move to the next band; returns ``(from_band, to_band)``.

        If the owner fell behind by more than a dwell, the window number
        jumps forward so the new deadline lies in the future; band order
        is never skipped.
        """
        if self._cycle_start is None:
            raise RuntimeError("cycler has not been started")
        previous = self.current
        elapsed_windows = int(math.floor((now - self._cycle_start) / self._dwell_s))
        self._window = max(self._window + 1, elapsed_windows)
        self._index = (self._index + 1) % len(self._bands)
        if self._index == 0:
            self._completed_rounds += 1
        return previous, self.current

    def launch_time(self, now: float) -> float:
        """When the next band's process should be spawned after a switch at ``now``."""

        return min(now + self._settle_s, self.deadline)

    def plan(self, count: int) -> List[DwellWindow]:
        """Preview the next ``count`` windows without moving the cursor."""

        if self._cycle_start is None:
            raise RuntimeError("cycler has not been started")
        out: List[DwellWindow] = []
        for step in range(count):
            number = self._window + step
            idx = (self._index + step) % len(self._bands)
            start = self._cycle_start + number * self._dwell_s
            out.append(DwellWindow(number, idx, self._bands[idx], start, start + self._dwell_s))
        return out

    def __iter__(self) -> Iterator[FrequencyBand]:
        idx = self._index
        for _ in range(len(self._bands)):
            yield self._bands[idx]
            idx = (idx + 1) % len(self._bands)
