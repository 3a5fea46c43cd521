"""In-memory log capture for the HTTP API's ``GET /logs``.

Provides:
- RingBufferHandler: a logging.Handler that stores the last N records in a
  bounded deque, after secret masking.
- LogBuffer: query interface (level floor, logger prefix, run id).

Oldest entries are discarded when the buffer is full; nothing touches disk.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from datetime import datetime, timezone
from typing import Any

_RUN_ID_RE = re.compile(r"\brun-[0-9a-f]{12}\b")


def _extract_run_id(record: logging.LogRecord, message: str) -> str | None:
    """Explicit ``run_id`` extra first, then the first run id in the message."""
    explicit = getattr(record, "run_id", None)
    if explicit:
        return explicit
    match = _RUN_ID_RE.search(message)
    return match.group(0) if match else None


def _record_to_dict(record: logging.LogRecord) -> dict[str, Any]:
    message = record.getMessage()
    return {
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname,
        "name": record.name,
        "message": message,
        "run_id": _extract_run_id(record, message),
    }


class RingBufferHandler(logging.Handler):
    """Pushes records into a LogBuffer.

    Attach after ``logging.basicConfig()``, together with a
    ``SecretMaskingFilter`` so captured messages are already redacted::

        handler = RingBufferHandler(log_buffer)
        handler.addFilter(SecretMaskingFilter(broker.masker))
        logging.getLogger().addHandler(handler)
    """

    def __init__(self, log_buffer: LogBuffer, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self._buffer = log_buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._buffer.push(_record_to_dict(record))
        except Exception:
            self.handleError(record)


class LogBuffer:
    """Bounded ring buffer of structured log entries."""

    def __init__(self, maxlen: int = 5_000) -> None:
        self._buffer: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def push(self, entry: dict[str, Any]) -> None:
        self._buffer.append(entry)

    def query(
        self,
        *,
        level: str | None = None,
        name: str | None = None,
        run_id: str | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        """Return matching entries, newest first.

        ``level`` is a floor (``"WARNING"`` returns WARNING and above);
        ``name`` matches logger names by prefix.
        """
        level_num = getattr(logging, level.upper(), None) if level else None

        results: list[dict[str, Any]] = []
        for entry in reversed(self._buffer):
            if level_num is not None:
                if getattr(logging, entry.get("level", "DEBUG"), logging.DEBUG) < level_num:
                    continue
            if name is not None and not entry.get("name", "").startswith(name):
                continue
            if run_id is not None and entry.get("run_id") != run_id:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    @property
    def size(self) -> int:
        return len(self._buffer)

    @property
    def maxlen(self) -> int:
        return self._buffer.maxlen or 0
