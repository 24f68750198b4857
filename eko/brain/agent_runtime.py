"""Agent runtime: Claude in a tool-use loop, with resumable sessions.

run() is a generator so callers can observe the turn as it happens:
SessionInit, then AssistantTurn / ToolResults pairs, then TurnResult.
Transcripts are kept per session id and replayed on resume. A transcript
is only stored once the turn completes, so a turn that raises leaves the
previous transcript untouched. Stored transcripts are trimmed to the
latest user turns, and tool calls cut off by max_tokens get error results
so the history stays valid for the next turn.
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from brain.agent_tools import RequestContext, ToolOutcome, ToolRegistry
from config import AGENT_MAX_TOKENS, AGENT_MAX_TURNS, AGENT_MODEL, MAX_TRANSCRIPT_MESSAGES, MAX_TRANSCRIPTS

logger = logging.getLogger("eko.agent")


@dataclass
class SessionInit:
    session_id: str
    resumed: bool


@dataclass
class AssistantTurn:
    turn: int
    blocks: list[dict] = field(default_factory=list)


@dataclass
class ToolResults:
    turn: int
    results: list[dict] = field(default_factory=list)


@dataclass
class TurnResult:
    session_id: str
    num_turns: int
    stop_reason: str
    input_tokens: int = 0
    output_tokens: int = 0


AgentEvent = Union[SessionInit, AssistantTurn, ToolResults, TurnResult]


class AgentRuntime:
    """Runs one conversational turn against the Messages API with a restricted tool set."""

    def __init__(
        self,
        client,
        tools: ToolRegistry,
        allowed_tools: Optional[set[str]] = None,
        model: str = AGENT_MODEL,
        max_tokens: int = AGENT_MAX_TOKENS,
        max_transcripts: int = MAX_TRANSCRIPTS,
        max_messages: int = MAX_TRANSCRIPT_MESSAGES,
    ):
        self._client = client  # anthropic.Anthropic instance
        self._tools = tools
        self._allowed = set(allowed_tools) if allowed_tools is not None else set(tools.list_tools())
        self._model = model
        self._max_tokens = max_tokens
        self._max_transcripts = max_transcripts
        self._max_messages = max_messages
        self._transcripts: "OrderedDict[str, list[dict]]" = OrderedDict()
        self._lock = threading.Lock()

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._transcripts

    def forget_session(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        with self._lock:
            if self._transcripts.pop(session_id, None) is not None:
                logger.debug("[agent] Forgot session %s", session_id)

    def _load(self, session_id: Optional[str]) -> Optional[list[dict]]:
        if not session_id:
            return None
        with self._lock:
            history = self._transcripts.get(session_id)
            return list(history) if history is not None else None

    def _store(self, session_id: str, messages: list[dict]) -> None:
        messages = _trim_transcript(messages, self._max_messages)
        with self._lock:
            self._transcripts[session_id] = messages
            self._transcripts.move_to_end(session_id)
            while len(self._transcripts) > self._max_transcripts:
                dropped, _ = self._transcripts.popitem(last=False)
                logger.debug("[agent] Dropped oldest transcript %s", dropped)

    def run(
        self,
        prompt: str,
        system_prompt: str,
        ctx: RequestContext,
        resume: Optional[str] = None,
        max_turns: int = AGENT_MAX_TURNS,
    ) -> Iterator[AgentEvent]:
        """Run the agentic loop for one user message. API errors propagate to the caller."""
        messages = self._load(resume)
        if messages is None:
            if resume:
                logger.info("[agent] Unknown session %s, starting a new one", resume)
            session_id = uuid.uuid4().hex
            messages = []
            yield SessionInit(session_id=session_id, resumed=False)
        else:
            session_id = resume
            yield SessionInit(session_id=session_id, resumed=True)

        _append_user_text(messages, prompt)
        tool_defs = self._tools.get_api_definitions(self._allowed)

        input_tokens = 0
        output_tokens = 0
        stop_reason = "max_turns"
        turns = 0
        t0 = time.time()

        for turn in range(1, max_turns + 1):
            turns = turn
            response = self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system_prompt,
                tools=tool_defs,
                messages=messages,
            )
            usage = getattr(response, "usage", None)
            input_tokens += getattr(usage, "input_tokens", 0) or 0
            output_tokens += getattr(usage, "output_tokens", 0) or 0

            blocks = _content_to_dicts(response.content)
            if blocks:
                messages.append({"role": "assistant", "content": blocks})
            yield AssistantTurn(turn=turn, blocks=blocks)

            tool_uses = [b for b in blocks if b["type"] == "tool_use"]
            if response.stop_reason != "tool_use" or not tool_uses:
                stop_reason = response.stop_reason or "end_turn"
                if tool_uses:
                    # Cut off mid tool call: every tool_use still needs a result before the next user text
                    logger.warning("[agent] Stopped (%s) with %d unanswered tool call(s)", stop_reason, len(tool_uses))
                    messages.append({"role": "user", "content": _unanswered_results(tool_uses, stop_reason)})
                break

            results = []
            for block in tool_uses:
                if block["name"] not in self._allowed:
                    outcome = ToolOutcome(f"Error: tool '{block['name']}' is not allowed", is_error=True)
                else:
                    outcome = self._tools.execute(block["name"], block["input"], ctx)
                result = {"type": "tool_result", "tool_use_id": block["id"], "content": outcome.text}
                if outcome.is_error:
                    result["is_error"] = True
                results.append(result)

            messages.append({"role": "user", "content": results})
            yield ToolResults(turn=turn, results=results)
        else:
            logger.warning("[agent] Max turns (%d) reached for session %s", max_turns, session_id)

        self._store(session_id, messages)
        logger.info(
            "[agent] Turn complete in %.1fs (%d model calls, %s, %d in / %d out tokens)",
            time.time() - t0,
            turns,
            stop_reason,
            input_tokens,
            output_tokens,
        )
        yield TurnResult(
            session_id=session_id,
            num_turns=turns,
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


def _append_user_text(messages: list[dict], text: str) -> None:
    """Add the user's message, merging into a trailing user message (e.g. pending tool results)."""
    block = {"type": "text", "text": text}
    if messages and messages[-1]["role"] == "user":
        last = messages[-1]
        content = last["content"]
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        messages[-1] = {"role": "user", "content": list(content) + [block]}
    else:
        messages.append({"role": "user", "content": [block]})


def _unanswered_results(tool_uses: list[dict], stop_reason: str) -> list[dict]:
    return [
        {
            "type": "tool_result",
            "tool_use_id": block["id"],
            "content": f"Error: tool '{block['name']}' was not run (response stopped: {stop_reason})",
            "is_error": True,
        }
        for block in tool_uses
    ]


def _starts_user_turn(message: dict) -> bool:
    if message["role"] != "user":
        return False
    content = message["content"]
    if isinstance(content, str):
        return True
    return not any(block.get("type") == "tool_result" for block in content)


def _trim_transcript(messages: list[dict], max_messages: int) -> list[dict]:
    """Keep at most max_messages, cutting only where a fresh user turn begins.

    A user message carrying tool results is never a cut point, since its
    tool_use partner would be dropped. Without any cut point in range the
    transcript is kept whole.
    """
    if len(messages) <= max_messages:
        return messages
    for i in range(len(messages) - max_messages, len(messages)):
        if _starts_user_turn(messages[i]):
            return messages[i:]
    return messages


def _content_to_dicts(content_blocks) -> list[dict]:
    """Convert Anthropic ContentBlock objects to dicts for message history."""
    result = []
    for block in content_blocks:
        if block.type == "text":
            result.append({"type": "text", "text": block.text})
        elif block.type == "tool_use":
            result.append(
                {
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                }
            )
    return result
