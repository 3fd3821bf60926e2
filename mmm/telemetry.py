from __future__ import annotations

import threading
from typing import Any, Dict, List, Protocol, Tuple

from .logs import get_logger


class TelemetrySink(Protocol):
    def record(self, event: str, **attrs: Any) -> None:  # pragma: no cover - protocol
        ...


class NullSink:
    def record(self, event: str, **attrs: Any) -> None:
        return None


class LogSink:
    """Writes every event as a debug-level structured log line."""

    def __init__(self) -> None:
        self._log = get_logger("mmm.telemetry")

    def record(self, event: str, **attrs: Any) -> None:
        self._log.debug(event, **attrs)


class RecordingSink:
    """Keeps events in memory; handy for inspecting a run after the fact."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def record(self, event: str, **attrs: Any) -> None:
        with self._lock:
            self.events.append((event, dict(attrs)))

    def names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.events]
