"""Progress notifications for operators and polling UIs."""

import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel

from ..core.logging import log


class ProgressLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class ProgressEvent(BaseModel):
    seq: int
    ts: str
    level: ProgressLevel
    message: str
    fields: Dict[str, Any] = {}


class ProgressFeed:
    """Bounded, thread-safe buffer of recent progress events.

    Every event is also written to the structured log.
    """

    def __init__(self, capacity: int = 500):
        self._events: deque[ProgressEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._seq = 0

    def emit(self, level: ProgressLevel | str, message: str, **fields: Any) -> ProgressEvent:
        level = ProgressLevel(level)
        with self._lock:
            self._seq += 1
            event = ProgressEvent(
                seq=self._seq,
                ts=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                level=level,
                message=message,
                fields=fields,
            )
            self._events.append(event)

        if level is ProgressLevel.ERROR:
            log.error("progress", message=message, **fields)
        elif level is ProgressLevel.WARNING:
            log.warning("progress", message=message, **fields)
        else:
            log.info("progress", message=message, **fields)
        return event

    def info(self, message: str, **fields: Any) -> ProgressEvent:
        return self.emit(ProgressLevel.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> ProgressEvent:
        return self.emit(ProgressLevel.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> ProgressEvent:
        return self.emit(ProgressLevel.ERROR, message, **fields)

    def success(self, message: str, **fields: Any) -> ProgressEvent:
        return self.emit(ProgressLevel.SUCCESS, message, **fields)

    def since(self, seq: int = 0) -> List[ProgressEvent]:
        with self._lock:
            return [e for e in self._events if e.seq > seq]

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq
