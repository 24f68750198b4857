"""Line-delimited JSON framing shared by the worker and its supervisor.

One JSON object per line, UTF-8, flushed after every write.
"""

import json
import threading
from typing import IO, Optional


class LineChannel:
    """Writes one JSON message per line. Safe to share between threads."""

    def __init__(self, stream: IO[str]):
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, message: dict) -> None:
        line = json.dumps(message, ensure_ascii=False, default=str)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


def decode_line(line: str) -> Optional[dict]:
    """Parse one protocol line. Blank lines give None; anything else must be a JSON object."""
    line = line.strip()
    if not line:
        return None
    message = json.loads(line)
    if not isinstance(message, dict):
        raise ValueError(f"expected a JSON object, got {type(message).__name__}")
    return message
