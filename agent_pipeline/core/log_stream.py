"""Append-only log of a single run, observable while the run is in progress."""

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from ..models.core import LogEntry, LogLevel
from .logging import get_logger, log_with_context

logger = get_logger(__name__)

LogObserver = Callable[[LogEntry], None]

_PYTHON_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class LogStream:
    """Ordered, append-only list of log entries with live observers.

    Observers are called synchronously, in emission order, from the thread
    that emits the entry. An observer that raises is logged and skipped.
    """

    def __init__(self, execution_id: Optional[str] = None):
        self.execution_id = execution_id
        self._entries: List[LogEntry] = []
        self._observers: List[LogObserver] = []
        self._lock = threading.RLock()

    def subscribe(self, observer: LogObserver, replay: bool = False) -> None:
        """Register an observer; with ``replay`` it first receives past entries."""
        with self._lock:
            self._observers.append(observer)
            if replay:
                for entry in self._entries:
                    self._notify(observer, entry)

    def unsubscribe(self, observer: LogObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def emit(self, level: LogLevel, message: str, agent_id: Optional[str] = None) -> LogEntry:
        """Append an entry and hand it to every observer."""
        entry = LogEntry(
            timestamp=datetime.utcnow(),
            level=level,
            message=message,
            agent_id=agent_id
        )
        with self._lock:
            self._entries.append(entry)
            observers = list(self._observers)

        log_with_context(
            logger, _PYTHON_LEVELS[level], message,
            execution_id=self.execution_id,
            agent_id=agent_id,
            stream_level=level.value
        )

        for observer in observers:
            self._notify(observer, entry)
        return entry

    def info(self, message: str, agent_id: Optional[str] = None) -> LogEntry:
        return self.emit(LogLevel.INFO, message, agent_id)

    def warning(self, message: str, agent_id: Optional[str] = None) -> LogEntry:
        return self.emit(LogLevel.WARNING, message, agent_id)

    def error(self, message: str, agent_id: Optional[str] = None) -> LogEntry:
        return self.emit(LogLevel.ERROR, message, agent_id)

    def success(self, message: str, agent_id: Optional[str] = None) -> LogEntry:
        return self.emit(LogLevel.SUCCESS, message, agent_id)

    def entries(self) -> List[LogEntry]:
        """Snapshot of all entries so far."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _notify(self, observer: LogObserver, entry: LogEntry) -> None:
        try:
            observer(entry)
        except Exception as e:
            logger.error(f"Log stream observer failed: {str(e)}")
