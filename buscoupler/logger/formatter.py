import itertools
import json
import logging
from datetime import datetime, timezone
from threading import Lock


class JsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Every record gets a process-wide increasing ``id`` so that buffered logs
    can be paged with ``min_id``.
    """

    _ids = itertools.count(1)
    _id_lock = Lock()

    def format(self, record: logging.LogRecord) -> str:
        with self._id_lock:
            record_id = next(self._ids)

        entry = {
            "id": record_id,
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)
