"""Fixed-capacity ring of recent spectrum samples."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, List, Optional

from sweepwatch.sweep.types import SpectrumSample


class SampleBuffer:
    """FIFO ring: appending beyond capacity evicts the oldest sample.

    The engine's owner thread is the only writer; readers may call
    ``recent`` from any thread.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = int(capacity)
        self._items: Deque[SpectrumSample] = deque(maxlen=self._capacity)
        self._lock = threading.Lock()
        self._total = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_appended(self) -> int:
        return self._total

    def append(self, sample: SpectrumSample) -> None:
        with self._lock:
            self._items.append(sample)
            self._total += 1

    def recent(self, limit: Optional[int] = None) -> List[SpectrumSample]:
        """Up to ``limit`` newest samples, oldest first."""

        with self._lock:
            items = list(self._items)
        if limit is None:
            return items
        if limit <= 0:
            return []
        return items[-limit:]

    def latest(self) -> Optional[SpectrumSample]:
        with self._lock:
            return self._items[-1] if self._items else None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
