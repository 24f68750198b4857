"""Query runner: executes one user message end to end inside the worker.

IDLE -> CONTEXT_GATHERING -> MODEL_TURN -> COMPLETED | FAILED

Context gathering pulls relevant Lobby messages into this turn's system
prompt (never persisted). The model turn resumes the user's session if one
exists. Any exception fails the turn, emits an error event and evicts the
user's session so the next message starts fresh.
"""

import json
import logging
from enum import Enum
from typing import Callable, Optional

from brain.agent_runtime import AgentRuntime, AssistantTurn, SessionInit, ToolResults, TurnResult
from brain.agent_tools import RequestContext
from brain.memory import LiveContext
from brain.session import SessionStore
from config import AGENT_MAX_TURNS, AGENT_TEXT_FALLBACK, LIVE_CONTEXT_LIMIT, get_agent_prompt
from personality import get_message

logger = logging.getLogger("eko.query")

LIVE_CONTEXT_HEADER = "[Contexte live - extraits pertinents du Lobby, pas une conversation complète]"
_PREVIEW_CHARS = 100


class QueryState(str, Enum):
    IDLE = "idle"
    CONTEXT_GATHERING = "context_gathering"
    MODEL_TURN = "model_turn"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_prompt(prompt: str) -> tuple[str, str]:
    """Extract (user_id, message) from a JSON prompt. Non-JSON is taken as the raw message from "unknown"."""
    try:
        data = json.loads(prompt)
    except (TypeError, ValueError):
        return "unknown", prompt
    if not isinstance(data, dict):
        return "unknown", prompt
    return str(data.get("from") or "unknown"), str(data.get("message") or "")


def _preview(value) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    return text if len(text) <= _PREVIEW_CHARS else text[:_PREVIEW_CHARS] + "..."


class QueryRunner:
    """Runs queries one at a time. Not thread-safe: the request queue serializes calls."""

    def __init__(
        self,
        runtime: AgentRuntime,
        sessions: SessionStore,
        live: Optional[LiveContext],
        emit: Callable[[dict], None],
        system_prompt_fn: Callable[[], str] = get_agent_prompt,
        max_turns: int = AGENT_MAX_TURNS,
        text_fallback: bool = AGENT_TEXT_FALLBACK,
        live_limit: int = LIVE_CONTEXT_LIMIT,
    ):
        self._runtime = runtime
        self._sessions = sessions
        self._live = live
        self._emit = emit
        self._system_prompt_fn = system_prompt_fn
        self._max_turns = max_turns
        self._text_fallback = text_fallback
        self._live_limit = live_limit
        self.state = QueryState.IDLE
        self.current: Optional[RequestContext] = None

    def _set_state(self, state: QueryState) -> None:
        logger.debug("Query state %s -> %s", self.state.value, state.value)
        self.state = state

    def build_system_prompt(self, message: str) -> str:
        """Base prompt plus the live Lobby block for this message, if any."""
        base = self._system_prompt_fn()
        if self._live is None or not message.strip():
            return base
        try:
            messages = self._live.search(message, limit=self._live_limit)
        except Exception as e:
            logger.warning("Live context unavailable, continuing without it: %s", e)
            return base
        if not messages:
            return base
        logger.info("Live context: %d relevant messages", len(messages))
        block = LiveContext.format(messages, header=get_message("live_context_header", LIVE_CONTEXT_HEADER))
        return f"{base}\n\n{block}"

    def run(self, prompt: str, request_id: str) -> QueryState:
        user_id, message = parse_prompt(prompt)
        ctx = RequestContext(request_id=request_id, user_id=user_id, emit=self._emit)
        self.current = ctx

        self._set_state(QueryState.CONTEXT_GATHERING)
        logger.info("Starting query %s from %s: %.100s", request_id, user_id, message)

        try:
            system_prompt = self.build_system_prompt(message)

            session = self._sessions.get(user_id)
            resume = session.external_session_id if session else None
            if resume:
                logger.debug("Resuming session for %s: %s", user_id, resume)

            self._set_state(QueryState.MODEL_TURN)
            for event in self._runtime.run(prompt, system_prompt, ctx, resume=resume, max_turns=self._max_turns):
                if isinstance(event, SessionInit):
                    self._sessions.set_session_id(user_id, event.session_id)
                    self._emit({"type": "session", "sessionId": event.session_id, "requestId": request_id})
                elif isinstance(event, AssistantTurn):
                    self._on_assistant(event, ctx)
                elif isinstance(event, ToolResults):
                    for result in event.results:
                        logger.debug(
                            "Tool result for %s: %s", result.get("tool_use_id", "?")[:8], _preview(result.get("content"))
                        )
                elif isinstance(event, TurnResult):
                    self._on_result(event, ctx)
        except Exception as e:
            logger.error("Query %s failed: %s", request_id, e, exc_info=True)
            self._emit({"type": "error", "requestId": request_id, "message": str(e) or e.__class__.__name__})
            self._sessions.evict(user_id)
            self._set_state(QueryState.FAILED)
            return self.state

        self._set_state(QueryState.COMPLETED)
        return self.state

    def _on_assistant(self, event: AssistantTurn, ctx: RequestContext) -> None:
        for block in event.blocks:
            if block["type"] == "tool_use":
                logger.info("Turn %d: tool call %s %s", event.turn, block["name"], _preview(block["input"]))
            elif block["type"] == "text" and block.get("text"):
                logger.info("Turn %d: assistant text: %s", event.turn, _preview(block["text"]))
                if self._text_fallback and not ctx.has_responded and not ctx.response_data.message:
                    ctx.response_data.message = block["text"]
                    self._emit({"type": "text", "text": block["text"], "requestId": ctx.request_id})

    def _on_result(self, event: TurnResult, ctx: RequestContext) -> None:
        self._sessions.touch(ctx.user_id)
        data = ctx.response_data
        if not ctx.has_responded:
            logger.warning("Query %s finished without respond (%s)", ctx.request_id, event.stop_reason)
        logger.info(
            "Query %s completed (%d turns, %d in / %d out tokens, %d memories)",
            ctx.request_id,
            event.num_turns,
            event.input_tokens,
            event.output_tokens,
            len(data.memories),
        )
        self._emit(
            {
                "type": "done",
                "requestId": ctx.request_id,
                "response": data.message.strip(),
                "expression": data.expression,
                "memories": data.memories,
                "inputTokens": event.input_tokens,
                "outputTokens": event.output_tokens,
            }
        )
