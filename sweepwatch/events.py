"""In-process event feed: status changes, error notices and spectrum samples.

Every subscriber owns a bounded queue. Publishing never blocks; when a
subscriber falls behind, its oldest queued events are dropped and counted.

Usage:
    sub = publisher.subscribe()
    for event in sub:          # blocks until the subscription is closed
        handle(event)
"""

from __future__ import annotations

import enum
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional, Union

from sweepwatch.sweep.types import FrequencyBand, SpectrumSample
from sweepwatch.util.logging import get_logger
from sweepwatch.util.time import now_ms

logger = get_logger(__name__)


class StatusKind(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    SWITCHING = "switching"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusEvent:
    kind: StatusKind
    band: Optional[FrequencyBand] = None
    from_band: Optional[FrequencyBand] = None
    to_band: Optional[FrequencyBand] = None
    reason: Optional[str] = None
    timestamp_ms: int = field(default_factory=now_ms)

    @classmethod
    def starting(cls, band: FrequencyBand) -> "StatusEvent":
        return cls(StatusKind.STARTING, band=band)

    @classmethod
    def running(cls, band: FrequencyBand) -> "StatusEvent":
        return cls(StatusKind.RUNNING, band=band)

    @classmethod
    def switching(cls, from_band: FrequencyBand, to_band: FrequencyBand) -> "StatusEvent":
        return cls(StatusKind.SWITCHING, from_band=from_band, to_band=to_band)

    @classmethod
    def stopped(cls) -> "StatusEvent":
        return cls(StatusKind.STOPPED)

    @classmethod
    def failed(cls, reason: str) -> "StatusEvent":
        return cls(StatusKind.FAILED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": "status", "state": self.kind.value, "timestamp_ms": self.timestamp_ms}
        if self.band is not None:
            out["band"] = self.band.to_dict()
        if self.from_band is not None:
            out["from_band"] = self.from_band.to_dict()
        if self.to_band is not None:
            out["to_band"] = self.to_band.to_dict()
        if self.reason is not None:
            out["reason"] = self.reason
        return out

    def __str__(self) -> str:
        if self.kind is StatusKind.SWITCHING:
            return f"switching({self.from_band} -> {self.to_band})"
        if self.band is not None:
            return f"{self.kind.value}({self.band})"
        if self.reason:
            return f"{self.kind.value}({self.reason})"
        return self.kind.value


@dataclass(frozen=True)
class ErrorNotice:
    """A problem reported on the feed; ``fatal`` means the cycle ended."""

    kind: str
    message: str
    band: Optional[FrequencyBand] = None
    fatal: bool = False
    timestamp_ms: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "error",
            "kind": self.kind,
            "message": self.message,
            "band": self.band.to_dict() if self.band is not None else None,
            "fatal": self.fatal,
            "timestamp_ms": self.timestamp_ms,
        }


FeedEvent = Union[StatusEvent, ErrorNotice, SpectrumSample]


def event_to_dict(event: FeedEvent) -> Dict[str, Any]:
    """JSON-ready representation of any feed event."""
    if isinstance(event, SpectrumSample):
        out = event.to_dict()
        out["type"] = "sample"
        return out
    return event.to_dict()


class Subscription:
    """Bounded drop-oldest queue owned by one consumer."""

    def __init__(self, maxsize: int = 256, name: Optional[str] = None):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self.name = name
        self.dropped = 0
        self._items: Deque[FeedEvent] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: FeedEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._items) >= self.maxsize:
                self._items.popleft()
                self.dropped += 1
            self._items.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> FeedEvent:
        """Next event; raises ``queue.Empty`` on timeout or once closed and drained."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout=timeout):
                raise queue.Empty
            if not self._items:
                raise queue.Empty
            return self._items.popleft()

    def drain(self) -> List[FeedEvent]:
        with self._cond:
            items = list(self._items)
            self._items.clear()
        return items

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[FeedEvent]:
        while True:
            try:
                yield self.get()
            except queue.Empty:
                return


class EventPublisher:
    def __init__(self, default_maxsize: int = 256):
        self.default_maxsize = default_maxsize
        self._subs: List[Subscription] = []
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(self, maxsize: Optional[int] = None, name: Optional[str] = None) -> Subscription:
        sub = Subscription(maxsize or self.default_maxsize, name=name)
        with self._lock:
            self._subs.append(sub)
        logger.debug("Subscriber attached: %s", name or id(sub))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
        sub.close()
        if sub.dropped:
            logger.info("Subscriber %s detached after dropping %d events", sub.name or id(sub), sub.dropped)

    def publish(self, event: FeedEvent) -> None:
        with self._lock:
            subs = list(self._subs)
            self.published += 1
        for sub in subs:
            sub.put(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def close(self) -> None:
        with self._lock:
            subs = list(self._subs)
            self._subs.clear()
        for sub in subs:
            sub.close()
