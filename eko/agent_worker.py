"""
Eko agent worker process.

Spawned by AgentService; speaks line-delimited JSON on stdin/stdout.
stdout belongs to the protocol: logging goes through the channel and
sys.stdout is pointed at stderr so stray prints cannot corrupt a frame.

    python agent_worker.py
"""

import logging
import sys

from config import (
    AGENT_API_MAX_RETRIES,
    ANTHROPIC_API_KEY,
    LOG_LEVEL,
    PERSONALITY,
)

logger = logging.getLogger("eko.worker")


def build_worker(channel):
    """Wire memory, tools, runtime, sessions and runner into an AgentWorker."""
    import anthropic

    from brain.agent_runtime import AgentRuntime
    from brain.agent_tools import create_default_registry
    from brain.memory import Memory
    from brain.notes import NotesStore
    from brain.query_runner import QueryRunner
    from brain.session import SessionStore
    from brain.vector_store import EmbeddingClient, VectorStore
    from brain.worker import AgentWorker

    memory = Memory(VectorStore(EmbeddingClient()))
    registry = create_default_registry(memory, NotesStore())

    client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, max_retries=AGENT_API_MAX_RETRIES)
    runtime = AgentRuntime(client, registry)

    sessions = SessionStore(on_evict=lambda s: runtime.forget_session(s.external_session_id))
    sessions.start_sweeper()

    runner = QueryRunner(runtime, sessions, memory.live, channel.send)
    return AgentWorker(runner, sessions, channel)


def main() -> int:
    from brain.worker import install_ipc_logging
    from personality import load_personality, set_personality
    from utils.ipc import LineChannel

    channel = LineChannel(sys.stdout)
    sys.stdout = sys.stderr
    install_ipc_logging(channel, LOG_LEVEL)

    try:
        set_personality(load_personality(PERSONALITY))
    except FileNotFoundError as e:
        logger.warning("%s, using default persona", e)

    worker = build_worker(channel)
    logger.info("Worker started")
    worker.serve(sys.stdin)
    logger.info("Worker exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
