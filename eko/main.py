"""
Eko main process.

    +-----------+   HTTP   +-----------------+  JSON lines  +--------------+
    | Dashboard |--------->| AgentService    |<------------>| agent_worker |
    +-----------+          | (supervisor)    |              | (tools, LLM) |
          |                +-----------------+              +--------------+
          |                          | memories
          v                          v
    +---------------------+    +-----------+
    | ReflectionScheduler |--->| Memory    | (Qdrant)
    | (3h cron, Lobby)    |    +-----------+
    +---------------------+

The worker is spawned lazily on the first request. Reflection runs in its
own cron thread and posts to the chat backend directly.
"""

import logging
import os
import signal
import sys
import threading
import time

from config import LOG_LEVEL

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="[Eko] %(asctime)s %(name)s %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("eko")


def _daemon_thread_exception_hook(args):
    logger.error(
        "Unhandled exception in thread '%s': %s",
        args.thread.name if args.thread else "unknown",
        args.exc_value,
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


threading.excepthook = _daemon_thread_exception_hook

from config import (  # noqa: E402
    AGENT_API_MAX_RETRIES,
    ANTHROPIC_API_KEY,
    DASHBOARD_HOST,
    DASHBOARD_PORT,
    REFLECTION_STATE_FILE,
)


class Eko:
    def __init__(self):
        self._running = False
        self.agent = None
        self.reflection = None

    def start(self) -> bool:
        """Wire memory, supervisor, reflection and the dashboard. Returns False on fatal setup error."""
        import anthropic

        from brain.agent_service import AgentService
        from brain.chat_backend import HttpChatBackend
        from brain.memory import Memory
        from brain.reflection import ReflectionScheduler
        from brain.vector_store import EmbeddingClient, VectorStore
        from dashboard.server import create_app, start_server
        from utils.persistent_store import PersistentStore

        if not ANTHROPIC_API_KEY:
            logger.error("ANTHROPIC_API_KEY is not set")
            return False

        memory = Memory(VectorStore(EmbeddingClient()))
        self.agent = AgentService(memory=memory)

        client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, max_retries=AGENT_API_MAX_RETRIES)
        self.reflection = ReflectionScheduler(
            client,
            memory,
            HttpChatBackend(),
            PersistentStore(REFLECTION_STATE_FILE),
        )
        self.reflection.start()

        start_server(create_app(self.agent, self.reflection), host=DASHBOARD_HOST, port=DASHBOARD_PORT)
        self._running = True
        logger.info("Eko online.")
        return True

    def run(self):
        signal.signal(signal.SIGINT, self._shutdown_handler)
        signal.signal(signal.SIGTERM, self._shutdown_handler)
        while self._running:
            time.sleep(0.5)

    def _shutdown_handler(self, signum, frame):
        """Second Ctrl+C forces immediate exit."""
        if not self._running:
            logger.info("Force shutdown (second signal).")
            sys.exit(1)
        logger.info("Shutdown signal received. Press Ctrl+C again to force quit.")
        self._running = False

    def shutdown(self):
        logger.info("Shutting down Eko...")
        if self.reflection is not None:
            self.reflection.stop()
        if self.agent is not None:
            self.agent.shutdown()
        logger.info("Eko offline.")


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Eko chat companion")
    parser.add_argument("--personality", "-p", default=None, help="Personality preset name or path to YAML file")
    args = parser.parse_args()

    from personality import load_personality, set_personality

    personality_name = args.personality or os.getenv("EKO_PERSONALITY", "eko")
    try:
        set_personality(load_personality(personality_name))
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)

    # The worker process loads the persona on its own
    os.environ["EKO_PERSONALITY"] = personality_name

    eko = Eko()
    if not eko.start():
        logger.error("Failed to initialize. Exiting.")
        sys.exit(1)

    try:
        eko.run()
    except KeyboardInterrupt:
        pass
    finally:
        eko.shutdown()


if __name__ == "__main__":
    main()
