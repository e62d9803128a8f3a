"""
Log Capture Service

Captures launcher logs and raw runtime output in memory for UI access.
Both buffers are circular and thread-safe.
"""

import logging
import re
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Deque

logger = logging.getLogger(__name__)

RUN_ID_PATTERN = re.compile(
    r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}", re.IGNORECASE
)


@dataclass
class LogEntry:
    """A single log entry"""
    timestamp: str
    level: str
    logger: str
    message: str
    run_id: str | None = None


class LogCaptureHandler(logging.Handler):
    """
    Custom logging handler that captures logs to a circular buffer.
    Thread-safe for concurrent access.
    """

    def __init__(self, max_entries: int = 1000):
        super().__init__()
        self.max_entries = max_entries
        self.logs: Deque[LogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

        self.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    def emit(self, record: logging.LogRecord) -> None:
        """Capture a log record"""
        try:
            message = record.getMessage()
            match = RUN_ID_PATTERN.search(message)

            entry = LogEntry(
                timestamp=datetime.now().isoformat(),
                level=record.levelname,
                logger=record.name,
                message=message,
                run_id=match.group(0) if match else None,
            )

            with self._lock:
                self.logs.append(entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        limit: int = 100,
        level: str | None = None,
        logger_filter: str | None = None,
    ) -> list[dict]:
        """
        Get recent logs with optional filtering.

        Args:
            limit: Maximum number of logs to return
            level: Filter by log level (INFO, WARNING, ERROR, etc.)
            logger_filter: Filter by logger name (substring match)

        Returns:
            List of log entries as dicts, most recent first
        """
        with self._lock:
            logs = list(self.logs)

        if level:
            logs = [l for l in logs if l.level == level.upper()]

        if logger_filter:
            logs = [l for l in logs if logger_filter.lower() in l.logger.lower()]

        logs = list(reversed(logs))[:limit]

        return [asdict(l) for l in logs]

    def get_stats(self) -> dict:
        """Get log statistics"""
        with self._lock:
            logs = list(self.logs)

        level_counts = {}
        for log in logs:
            level_counts[log.level] = level_counts.get(log.level, 0) + 1

        return {
            "total_captured": len(logs),
            "max_entries": self.max_entries,
            "level_counts": level_counts,
            "oldest_entry": logs[0].timestamp if logs else None,
            "newest_entry": logs[-1].timestamp if logs else None,
        }

    def clear(self) -> None:
        """Clear all captured logs"""
        with self._lock:
            self.logs.clear()


class RuntimeLogBuffer:
    """
    Process-wide sink for raw runtime output lines.

    Keeps the most recent lines and forwards each new line to listeners.
    Listener failures are contained so the subprocess reader never stalls.
    """

    def __init__(self, max_lines: int = 2000):
        self.max_lines = max_lines
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()
        self._listeners: list[Callable[[str], None]] = []

    def __call__(self, line: str) -> None:
        self.append(line)

    def append(self, line: str) -> None:
        line = line.rstrip("\r\n")
        with self._lock:
            self._lines.append(line)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(line)
            except Exception as e:
                logger.debug(f"Log listener failed: {e}")

    def add_listener(self, listener: Callable[[str], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def get_lines(self, limit: int = 200) -> list[str]:
        """Most recent lines, oldest first"""
        with self._lock:
            lines = list(self._lines)
        return lines[-limit:] if limit else lines

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()


# Global instances
_log_capture_handler: LogCaptureHandler | None = None
_runtime_log_buffer: RuntimeLogBuffer | None = None


def setup_log_capture(max_entries: int = 2000) -> LogCaptureHandler:
    """
    Set up log capture on the root logger.
    Call this once during app startup.

    Args:
        max_entries: Maximum log entries to keep in memory

    Returns:
        The LogCaptureHandler instance
    """
    global _log_capture_handler

    if _log_capture_handler is None:
        _log_capture_handler = LogCaptureHandler(max_entries=max_entries)
        _log_capture_handler.setLevel(logging.DEBUG)
        logging.getLogger().addHandler(_log_capture_handler)

    return _log_capture_handler


def get_log_capture() -> LogCaptureHandler | None:
    """Get the global log capture handler"""
    return _log_capture_handler


def get_runtime_log_buffer(max_lines: int = 2000) -> RuntimeLogBuffer:
    """Get the global runtime output buffer, creating it on first use"""
    global _runtime_log_buffer

    if _runtime_log_buffer is None:
        _runtime_log_buffer = RuntimeLogBuffer(max_lines=max_lines)
    return _runtime_log_buffer
