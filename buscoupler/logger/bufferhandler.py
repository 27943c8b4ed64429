import json
import logging
from collections import deque
from threading import Lock
from typing import List, Optional


class BufferHandler(logging.Handler):
    """
    Logging handler that keeps the most recent formatted records in memory (FIFO).

    Records are expected to be JSON strings produced by JsonFormatter, so
    ``get_logs`` can hand them back as dicts for diagnostics screens.
    """

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.buffer = deque(maxlen=capacity)
        self._lock = Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            formatted_record = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._lock:
            self.buffer.append(formatted_record)

    @property
    def records(self) -> List[str]:
        with self._lock:
            return list(self.buffer)

    def get_logs(self, count: Optional[int] = None,
                 min_id: Optional[int] = None,
                 level: Optional[str] = None) -> List[dict]:
        """Retrieve buffered logs, oldest first."""
        with self._lock:
            logs = [json.loads(item) for item in self.buffer]

        if level is not None:
            logs = [log for log in logs if log.get("level") == level]
        if min_id is not None:
            logs = [log for log in logs if log.get("id", 0) >= min_id]
        if count is not None and count < len(logs):
            logs = logs[-count:]
        return logs

    def clear(self) -> None:
        with self._lock:
            self.buffer.clear()

    def __len__(self):
        return len(self.buffer)
