"""Worker side of the supervisor protocol.

Queries go through a single-consumer FIFO queue, so at most one turn runs at
a time and the runner's per-turn state never sees concurrent use. Control
messages (ping, reset) are answered straight from the reading thread and
never wait behind a query.

Inbound:  prompt {prompt, requestId} | reset {userId?, requestId} | ping
Outbound: ready | session | text | done | error | reset_done | pong | log
"""

import logging
import queue
import threading
from concurrent.futures import Future
from typing import IO, Any, Callable, Optional

from brain.query_runner import QueryRunner
from brain.session import SessionStore
from utils.ipc import LineChannel, decode_line

logger = logging.getLogger("eko.worker")

_STOP = object()


class RequestQueue:
    """FIFO of pending queries drained by one thread."""

    def __init__(self, run_fn: Callable[[dict], Any]):
        self._run_fn = run_fn
        self._queue: "queue.Queue" = queue.Queue()
        self._processing = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, daemon=True, name="request-queue")
        self._thread.start()

    def enqueue(self, params: dict) -> Future:
        """Queue a query. The future resolves once that query has fully finished."""
        future: Future = Future()
        self._queue.put((params, future))
        return future

    def stop(self, timeout: Optional[float] = None) -> None:
        """Let already-queued items finish, then stop the processing thread."""
        self._queue.put(_STOP)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            params, future = item
            self._processing = True
            try:
                future.set_result(self._run_fn(params))
            except Exception as e:
                logger.error("Queued query failed: %s", e, exc_info=True)
                future.set_exception(e)
            finally:
                self._processing = False


class AgentWorker:
    """Dispatches protocol lines to the request queue or answers control messages."""

    def __init__(self, runner: QueryRunner, sessions: SessionStore, channel: LineChannel):
        self._runner = runner
        self._sessions = sessions
        self._channel = channel
        self.queue = RequestQueue(self._run)
        self.queue.start()

    def _run(self, params: dict):
        return self._runner.run(params["prompt"], params["requestId"])

    def handle_line(self, line: str) -> Optional[Future]:
        try:
            msg = decode_line(line)
        except ValueError as e:
            logger.warning("Unparseable line from supervisor: %s", e)
            self._channel.send({"type": "error", "message": f"Invalid message: {e}"})
            return None
        if msg is None:
            return None

        kind = msg.get("type")
        if kind == "prompt":
            prompt, request_id = msg.get("prompt"), msg.get("requestId")
            if not isinstance(prompt, str) or not request_id:
                self._channel.send({"type": "error", "requestId": request_id, "message": "prompt requires prompt and requestId"})
                return None
            return self.queue.enqueue({"prompt": prompt, "requestId": request_id})

        if kind == "reset":
            user_id = msg.get("userId")
            if user_id:
                self._sessions.evict(user_id)
                logger.info("Reset session for %s", user_id)
            else:
                count = self._sessions.clear()
                logger.info("Reset all sessions (%d)", count)
            self._channel.send({"type": "reset_done", "requestId": msg.get("requestId")})
            return None

        if kind == "ping":
            self._channel.send({"type": "pong"})
            return None

        logger.warning("Ignoring unknown message type: %s", kind)
        return None

    def serve(self, stream: IO[str]) -> None:
        """Announce readiness, then handle lines until EOF."""
        self._channel.send({"type": "ready"})
        for line in stream:
            self.handle_line(line)
        logger.info("Input closed, draining %d queued queries", self.queue.pending)
        self.queue.stop()


class IPCLogHandler(logging.Handler):
    """Ships log records to the supervisor as {"type": "log"} lines."""

    def __init__(self, channel: LineChannel, level=logging.NOTSET):
        super().__init__(level)
        self._channel = channel

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = {
                "type": "log",
                "level": record.levelname.lower(),
                "message": self.format(record),
                "data": {"logger": record.name},
            }
            self._channel.send(message)
        except Exception:
            self.handleError(record)


def install_ipc_logging(channel: LineChannel, level: str = "INFO") -> None:
    """Route every log record in this process through the protocol channel."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = IPCLogHandler(channel)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
    # Keep HTTP client chatter out of the channel
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
