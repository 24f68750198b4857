"""
Agent supervisor: owns the worker process and multiplexes callers onto it.

Many threads may call ask() at once. The worker is spawned lazily; callers
racing on a cold start all wait on the same spawn future, so only one
process is ever started. Replies are matched to callers by requestId.

Failure handling:
  - spawn failure / no "ready" within 30s -> WorkerStartupError, state torn down
  - worker exits -> every pending request fails with WorkerExitedError
  - no reply within 2 min -> TimeoutError("Request timeout"), late reply dropped
Nothing is retried here; the next ask() spawns a fresh worker.
"""

import itertools
import logging
import subprocess
import sys
import threading
import time
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from config import CONTROL_TIMEOUT, REQUEST_TIMEOUT_SECONDS, WORKER_READY_TIMEOUT
from utils.ipc import LineChannel, decode_line

logger = logging.getLogger("eko.service")
worker_logger = logging.getLogger("eko.service.worker")

WORKER_SCRIPT = Path(__file__).resolve().parent.parent / "agent_worker.py"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class WorkerError(Exception):
    """The worker reported a failure for a request."""


class WorkerExitedError(WorkerError):
    def __init__(self, message: str = "Worker exited"):
        super().__init__(message)


class WorkerStartupError(WorkerError):
    """The worker could not be spawned or never became ready."""


@dataclass
class AgentResponse:
    response: str
    expression: str


@dataclass
class PendingRequest:
    request_id: str
    future: Future
    timer: Optional[threading.Timer] = None
    response: str = ""
    expression: str = "neutral"


def _resolve(future: Future, value) -> None:
    try:
        future.set_result(value)
    except InvalidStateError:
        pass


def _reject(future: Future, exc: BaseException) -> None:
    try:
        future.set_exception(exc)
    except InvalidStateError:
        pass


class AgentService:
    """Thread-safe front door to the agent worker process."""

    def __init__(
        self,
        command: Optional[list[str]] = None,
        memory=None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        ready_timeout: float = WORKER_READY_TIMEOUT,
        control_timeout: float = CONTROL_TIMEOUT,
        env: Optional[dict] = None,
    ):
        self._command = command or [sys.executable, str(WORKER_SCRIPT)]
        self._memory = memory  # brain.memory.Memory, for facts reported by the worker
        self._request_timeout = request_timeout
        self._ready_timeout = ready_timeout
        self._control_timeout = control_timeout
        self._env = env

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._channel: Optional[LineChannel] = None
        self._ready = False
        self._spawn_future: Optional[Future] = None
        self._ready_timer: Optional[threading.Timer] = None
        self._pending: dict[str, PendingRequest] = {}
        self._pong_waiters: list[Future] = []
        self._reset_waiters: dict[str, Future] = {}
        self._counter = itertools.count(1)
        self.spawn_count = 0
        self.session_id: Optional[str] = None

    # ── Status ─────────────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._ready and self._proc is not None and self._proc.poll() is None

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._proc.pid if self._proc is not None else None

    def _next_id(self, prefix: str) -> str:
        with self._lock:
            n = next(self._counter)
        return f"{prefix}_{n}_{int(time.time() * 1000)}"

    # ── Lifecycle ──────────────────────────────────────────────────

    def ensure_worker(self) -> None:
        """Return once a worker is ready, spawning one if needed. Concurrent callers share one spawn."""
        stale = None
        with self._lock:
            if self._proc is not None and self._proc.poll() is not None:
                stale = self._proc
        if stale is not None:
            self._on_exit(stale)

        with self._lock:
            if self._proc is not None and self._ready:
                return
            spawn = self._spawn_future is None
            if spawn:
                self._spawn_future = Future()
            future = self._spawn_future

        if spawn:
            self._spawn(future)
        future.result()

    def _spawn(self, future: Future) -> None:
        logger.info("Starting agent worker: %s", " ".join(self._command))
        try:
            proc = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                bufsize=1,
                env=self._env,
            )
        except OSError as e:
            logger.error("Failed to start agent worker: %s", e)
            with self._lock:
                self._spawn_future = None
            _reject(future, WorkerStartupError(f"Failed to start worker: {e}"))
            return

        timer = threading.Timer(self._ready_timeout, self._on_ready_timeout, args=(proc, future))
        timer.daemon = True
        with self._lock:
            self._proc = proc
            self._channel = LineChannel(proc.stdin)
            self._ready = False
            self._ready_timer = timer
            self.spawn_count += 1

        threading.Thread(target=self._read_stdout, args=(proc, future), daemon=True, name="agent-worker-stdout").start()
        threading.Thread(target=self._read_stderr, args=(proc,), daemon=True, name="agent-worker-stderr").start()
        timer.start()

    def _on_ready(self, proc: subprocess.Popen, future: Future) -> None:
        with self._lock:
            if self._proc is not proc:
                return
            self._ready = True
            self._spawn_future = None
            timer, self._ready_timer = self._ready_timer, None
        if timer is not None:
            timer.cancel()
        logger.info("Agent worker ready (pid %s)", proc.pid)
        _resolve(future, None)

    def _on_ready_timeout(self, proc: subprocess.Popen, future: Future) -> None:
        with self._lock:
            if self._proc is not proc or self._ready:
                return
            self._proc = None
            self._channel = None
            self._spawn_future = None
            self._ready_timer = None
        logger.error("Agent worker did not become ready within %.0fs, killing it", self._ready_timeout)
        _reject(future, WorkerStartupError("Worker startup timeout"))
        _terminate(proc)

    def _on_exit(self, proc: subprocess.Popen) -> None:
        """Worker is gone: fail everything that was waiting on it and forget it."""
        with self._lock:
            if self._proc is not proc:
                return
            self._proc = None
            self._channel = None
            self._ready = False
            self.session_id = None
            spawn_future, self._spawn_future = self._spawn_future, None
            timer, self._ready_timer = self._ready_timer, None
            pending = list(self._pending.values())
            self._pending.clear()
            waiters = self._pong_waiters + list(self._reset_waiters.values())
            self._pong_waiters = []
            self._reset_waiters = {}

        logger.warning("Agent worker exited with code %s (%d pending requests)", proc.poll(), len(pending))
        if timer is not None:
            timer.cancel()
        if spawn_future is not None:
            _reject(spawn_future, WorkerStartupError("Worker exited before ready"))
        for p in pending:
            if p.timer is not None:
                p.timer.cancel()
            _reject(p.future, WorkerExitedError())
        for w in waiters:
            _reject(w, WorkerExitedError())

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the worker and fail anything still pending."""
        with self._lock:
            proc, self._proc = self._proc, None
            self._channel = None
            self._ready = False
            spawn_future, self._spawn_future = self._spawn_future, None
            pending = list(self._pending.values())
            self._pending.clear()
        if spawn_future is not None:
            _reject(spawn_future, WorkerStartupError("Service shut down"))
        for p in pending:
            if p.timer is not None:
                p.timer.cancel()
            _reject(p.future, WorkerExitedError("Worker exited (shutdown)"))
        if proc is not None:
            logger.info("Stopping agent worker (pid %s)", proc.pid)
            _terminate(proc, timeout)

    # ── Stream readers ─────────────────────────────────────────────

    def _read_stdout(self, proc: subprocess.Popen, ready_future: Future) -> None:
        try:
            for line in proc.stdout:
                try:
                    msg = decode_line(line)
                except ValueError:
                    logger.error("Failed to parse worker message: %.200s", line)
                    continue
                if msg is None:
                    continue
                if msg.get("type") == "ready":
                    self._on_ready(proc, ready_future)
                else:
                    self._handle_message(msg)
        except (OSError, ValueError) as e:
            logger.debug("Worker stdout closed: %s", e)
        proc.wait()
        self._on_exit(proc)

    def _read_stderr(self, proc: subprocess.Popen) -> None:
        try:
            for line in proc.stderr:
                if line.strip():
                    worker_logger.warning("[stderr] %s", line.rstrip())
        except (OSError, ValueError):
            pass

    def _handle_message(self, msg: dict) -> None:
        kind = msg.get("type")

        if kind == "log":
            self._replay_log(msg)
            return

        if kind == "pong":
            with self._lock:
                waiters, self._pong_waiters = self._pong_waiters, []
            for w in waiters:
                _resolve(w, True)
            return

        if kind == "reset_done":
            with self._lock:
                waiter = self._reset_waiters.pop(msg.get("requestId"), None)
            if waiter is not None:
                _resolve(waiter, True)
            return

        request_id = msg.get("requestId")
        if not request_id:
            if kind == "error":
                logger.error("Worker error: %s", msg.get("message"))
            return

        with self._lock:
            pending = self._pending.get(request_id)
            if pending is None:
                logger.debug("Dropping %s for unknown request %s", kind, request_id)
                return
            if kind == "text":
                pending.response += msg.get("text") or ""
                return
            if kind == "session":
                self.session_id = msg.get("sessionId")
                logger.info("Session: %s", self.session_id)
                return
            if kind not in ("done", "error"):
                return
            del self._pending[request_id]

        if pending.timer is not None:
            pending.timer.cancel()

        if kind == "error":
            _reject(pending.future, WorkerError(msg.get("message") or "Worker error"))
            return

        memories = msg.get("memories") or []
        if memories:
            self._store_memories(memories)
        _resolve(
            pending.future,
            AgentResponse(
                response=msg.get("response") or pending.response.strip(),
                expression=msg.get("expression") or pending.expression or "neutral",
            ),
        )

    def _replay_log(self, msg: dict) -> None:
        level = _LOG_LEVELS.get(str(msg.get("level", "info")).lower(), logging.INFO)
        data = msg.get("data") or {}
        source = data.get("logger") if isinstance(data, dict) else None
        if source:
            worker_logger.log(level, "[%s] %s", source, msg.get("message", ""))
        else:
            worker_logger.log(level, "%s", msg.get("message", ""))

    # ── Requests ───────────────────────────────────────────────────

    def _send(self, message: dict) -> None:
        with self._lock:
            channel = self._channel
        if channel is None:
            raise WorkerExitedError()
        try:
            channel.send(message)
        except (OSError, ValueError) as e:
            logger.error("Failed to write to worker: %s", e)
            raise WorkerExitedError() from e

    def ask(self, prompt: str, timeout: Optional[float] = None) -> AgentResponse:
        """Send a prompt to the agent and block until its answer, an error, or the timeout."""
        self.ensure_worker()

        request_id = self._next_id("req")
        future: Future = Future()
        timer = threading.Timer(timeout or self._request_timeout, self._on_request_timeout, args=(request_id,))
        timer.daemon = True
        with self._lock:
            self._pending[request_id] = PendingRequest(request_id=request_id, future=future, timer=timer)
        timer.start()

        logger.info("Forwarding %s to worker", request_id)
        try:
            self._send({"type": "prompt", "prompt": prompt, "requestId": request_id})
        except WorkerError:
            with self._lock:
                self._pending.pop(request_id, None)
            timer.cancel()
            raise
        return future.result()

    def _on_request_timeout(self, request_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning("Request %s timed out after %.0fs", request_id, self._request_timeout)
        _reject(pending.future, TimeoutError("Request timeout"))

    def reset_session(self, user_id: Optional[str] = None) -> bool:
        """Drop one user's conversation (or all). No-op if no worker is running."""
        if not self.is_ready:
            return False
        request_id = self._next_id("reset")
        waiter: Future = Future()
        with self._lock:
            self._reset_waiters[request_id] = waiter
        message = {"type": "reset", "requestId": request_id}
        if user_id:
            message["userId"] = user_id
        try:
            self._send(message)
            waiter.result(timeout=self._control_timeout)
        except Exception as e:
            logger.warning("Session reset failed: %s", e)
            return False
        finally:
            with self._lock:
                self._reset_waiters.pop(request_id, None)
        if not user_id:
            self.session_id = None
        logger.info("Session reset (%s)", user_id or "all users")
        return True

    def ping(self) -> bool:
        """Liveness check: spawns the worker if needed, then does a ping/pong round trip."""
        try:
            self.ensure_worker()
        except WorkerError as e:
            logger.warning("Ping failed, worker unavailable: %s", e)
            return False
        waiter: Future = Future()
        with self._lock:
            self._pong_waiters.append(waiter)
        try:
            self._send({"type": "ping"})
            return bool(waiter.result(timeout=self._control_timeout))
        except Exception as e:
            logger.warning("Ping failed: %s", e)
            with self._lock:
                if waiter in self._pong_waiters:
                    self._pong_waiters.remove(waiter)
            return False

    # ── Memories ───────────────────────────────────────────────────

    def _store_memories(self, memories: list[dict]) -> None:
        """Persist facts reported by the worker without holding up the caller."""
        if self._memory is None:
            logger.debug("No memory configured, dropping %d reported memories", len(memories))
            return
        logger.info("Storing %d memories from agent response", len(memories))
        threading.Thread(
            target=self._persist_memories, args=(list(memories),), daemon=True, name="memory-writer"
        ).start()

    def _persist_memories(self, memories: list[dict]) -> None:
        try:
            stored = self._memory.remember(memories)
            logger.info("Stored %d/%d reported memories", stored, len(memories))
        except Exception as e:
            logger.error("Failed to store reported memories: %s", e)


def _terminate(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    try:
        if proc.stdin:
            proc.stdin.close()
    except OSError:
        pass
    if proc.poll() is None:
        proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
