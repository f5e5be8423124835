"""JSON-lines journal of the event feed."""

from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, List, Optional, Set

from sweepwatch.events import FeedEvent, event_to_dict
from sweepwatch.util.logging import get_logger
from sweepwatch.util.time import utc_now_str

logger = get_logger(__name__)


class EventJournal:
    def __init__(self, log_path: Path, mirror_paths: Optional[List[Path]] = None, *, include_power: bool = False):
        self.log_path = Path(log_path).expanduser()
        self.mirror_paths: List[Path] = []
        self.include_power = include_power
        self._ensure_parent(self.log_path)
        seen: Set[str] = {str(self.log_path.absolute())}
        for mirror in mirror_paths or []:
            resolved = Path(mirror).expanduser().absolute()
            if str(resolved) in seen:
                continue
            self._ensure_parent(resolved)
            self.mirror_paths.append(resolved)
            seen.add(str(resolved))
        self.run_id = f"run-{int(time.time() * 1000)}-pid{os.getpid()}"
        self.written = 0

    @staticmethod
    def _ensure_parent(path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event: FeedEvent) -> None:
        payload = event_to_dict(event)
        if not self.include_power:
            payload.pop("power_db", None)
        self.log(payload.pop("type"), **payload)

    def log(self, event: str, **fields: Any) -> None:
        record = {
            "ts": utc_now_str(),
            "run_id": self.run_id,
            "event": event,
            **fields,
        }
        line = json.dumps(record, default=str) + "\n"
        for target in [self.log_path] + self.mirror_paths:
            try:
                with target.open("a", encoding="utf-8") as fh:
                    fh.write(line)
            except OSError as exc:
                logger.warning("Failed to write journal %s: %s", target, exc)
        self.written += 1
