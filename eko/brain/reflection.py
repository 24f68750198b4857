"""
Eko Reflection Scheduler: periodic, unprompted questions in the Lobby.

Every 3 hours (minute 0 of hours 0, 3, 6, ...) or on manual trigger:
  1. resolve the room (Lobby by default)
  2. pass if the last message is Eko's own (wait for a human)
  3. pick the most recent goal not posted in the last 30 days
  4. gather context: last 20 messages, facts + self-knowledge related to the goal
  5. one LLM call -> JSON decision {action, message, reason, tone}
  6. the goal id is forced onto the decision
  7. rate limits: 30 min cooldown, 5 posts per day
  8. record the entry; post and consume the goal if it is a real message

Every run ends as a TriggerResult. Errors become a "pass" with the error as reason.
Status (idle / observing / thinking) and progress are pushed to listeners.
"""

import json
import logging
import math
import re
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from brain.chat_backend import ChatBackend, ChatMessage, Room
from brain.memory import Memory, parse_timestamp
from brain.vector_store import SearchHit
from config import (
    AGENT_USERNAME,
    REFLECTION_COOLDOWN_MINUTES,
    REFLECTION_ENABLED,
    REFLECTION_EVERY_HOURS,
    REFLECTION_GOAL_REPEAT_DAYS,
    REFLECTION_HISTORY_CACHE,
    REFLECTION_MAX_ENTRIES,
    REFLECTION_MAX_FACTS,
    REFLECTION_MAX_GOALS,
    REFLECTION_MAX_MESSAGES,
    REFLECTION_MAX_PER_DAY,
    REFLECTION_MAX_SELF,
    REFLECTION_MAX_TOKENS,
    REFLECTION_MODEL,
    get_reflection_prompt,
)
from utils.persistent_store import PersistentStore

logger = logging.getLogger("eko.reflection")

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_BARE_JSON = re.compile(r"\{[\s\S]*\}")
_TONES = ("playful", "helpful", "technical")

SELF_TALK_REASON = "Le dernier message vient d'Eko, j'attends une réponse"

_DEFAULT_STATS = {
    "totalReflections": 0,
    "passCount": 0,
    "messageCount": 0,
    "rateLimitedCount": 0,
    "totalInputTokens": 0,
    "totalOutputTokens": 0,
    "lastMessageAt": None,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def next_run_time(now: datetime, every_hours: int = REFLECTION_EVERY_HOURS) -> datetime:
    """Next cron slot strictly after `now`: minute 0 of an hour divisible by every_hours."""
    candidate = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    while candidate.hour % every_hours != 0:
        candidate += timedelta(hours=1)
    return candidate


class ReflectionStatus(str, Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    THINKING = "thinking"


@dataclass
class Decision:
    action: str
    reason: str
    message: Optional[str] = None
    tone: Optional[str] = None
    goal_id: Optional[str] = None


@dataclass
class ReflectionEntry:
    id: str
    timestamp: str
    action: str
    reason: str
    message: Optional[str] = None
    tone: Optional[str] = None
    goal_id: Optional[str] = None
    room_id: Optional[str] = None
    room_name: Optional[str] = None
    rate_limited: bool = False
    dry_run: bool = False
    forced: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ReflectionEntry":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class RateLimitInfo:
    last_message_at: Optional[str]
    cooldown_minutes: int
    max_per_day: int
    today_count: int
    can_intervene: bool
    cooldown_remaining: Optional[int] = None


@dataclass
class TriggerResult:
    action: str
    reason: str
    message: Optional[str] = None
    goal_id: Optional[str] = None
    dry_run: bool = False
    rate_limited: bool = False
    entry_id: Optional[str] = None
    context: Optional[dict] = None
    input_tokens: int = 0
    output_tokens: int = 0


def parse_decision(text: str) -> Decision:
    """Extract the JSON decision from raw model text. Anything unusable becomes a pass."""
    match = _FENCED_JSON.search(text or "") or _BARE_JSON.search(text or "")
    if not match:
        logger.error("No JSON found in reflection response")
        return Decision(action="pass", reason="No JSON in LLM response")

    raw = match.group(1) if match.re is _FENCED_JSON else match.group(0)
    try:
        data = json.loads(raw.strip())
    except ValueError as e:
        logger.error("Failed to parse reflection response: %s (%.200s)", e, text)
        return Decision(action="pass", reason="Failed to parse LLM response")

    if not isinstance(data, dict) or data.get("action") not in ("pass", "message"):
        logger.error("Invalid action in reflection response: %.100s", raw)
        return Decision(action="pass", reason="Invalid LLM response format")

    message = data.get("message")
    tone = data.get("tone")
    return Decision(
        action=data["action"],
        reason=data.get("reason") or "No reason provided",
        message=message if isinstance(message, str) else None,
        tone=tone if tone in _TONES else None,
    )


def _format_time(ts: Optional[str]) -> str:
    dt = parse_timestamp(ts)
    return dt.astimezone().strftime("%H:%M") if dt else "??:??"


class ReflectionScheduler:
    """Cron-driven and manually triggerable reflection loop."""

    def __init__(
        self,
        llm_client,
        memory: Memory,
        chat: ChatBackend,
        store: PersistentStore,
        enabled: bool = REFLECTION_ENABLED,
        model: str = REFLECTION_MODEL,
        cooldown_minutes: int = REFLECTION_COOLDOWN_MINUTES,
        max_per_day: int = REFLECTION_MAX_PER_DAY,
        goal_repeat_days: int = REFLECTION_GOAL_REPEAT_DAYS,
        agent_username: str = AGENT_USERNAME,
    ):
        self._llm = llm_client  # anthropic.Anthropic instance
        self._memory = memory
        self._chat = chat
        self._store = store
        self.enabled = enabled
        self._model = model
        self._cooldown_minutes = cooldown_minutes
        self._max_per_day = max_per_day
        self._goal_repeat_days = goal_repeat_days
        self._agent_username = agent_username

        self._status = ReflectionStatus.IDLE
        self._listeners: list[Callable[[dict], None]] = []
        self._trigger_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        entries = self._store.get("entries", []) or []
        self._history: deque = deque(
            (ReflectionEntry.from_dict(e) for e in reversed(entries[-REFLECTION_HISTORY_CACHE:])),
            maxlen=REFLECTION_HISTORY_CACHE,
        )
        if self._store.get("stats") is None:
            self._store.update("stats", dict(_DEFAULT_STATS))

    # ── Status & listeners ─────────────────────────────────────────

    @property
    def status(self) -> ReflectionStatus:
        return self._status

    def add_listener(self, fn: Callable[[dict], None]) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: Callable[[dict], None]) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def _emit(self, event: dict) -> None:
        for fn in list(self._listeners):
            try:
                fn(event)
            except Exception as e:
                logger.warning("Reflection listener failed: %s", e)

    def _set_status(self, status: ReflectionStatus) -> None:
        if self._status == status:
            return
        self._status = status
        logger.info("Status changed to: %s", status.value)
        self._emit({"type": "status", "status": status.value})

    def _progress(self, step: str, /, **data) -> None:
        self._emit({"type": "progress", "step": step, **data})

    # ── Cron ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the cron thread."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._cron_loop, daemon=True, name="reflection-cron")
        self._thread.start()
        logger.info("Reflection cron started (every %dh at minute 0, enabled=%s)", REFLECTION_EVERY_HOURS, self.enabled)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        logger.info("Reflection cron stopped")

    def _cron_loop(self) -> None:
        while True:
            now = datetime.now()
            wait = (next_run_time(now) - now).total_seconds()
            logger.debug("Next reflection in %.0fs", wait)
            if self._stop.wait(wait):
                return
            logger.info("Cron triggered")
            try:
                self.trigger()
            except Exception as e:
                logger.error("Cron reflection error: %s", e, exc_info=True)

    # ── Trigger ────────────────────────────────────────────────────

    def trigger(
        self,
        room_id: Optional[str] = None,
        dry_run: bool = False,
        force: bool = False,
        ignore_rate_limit: bool = False,
    ) -> TriggerResult:
        """Run one reflection. Never raises; failures come back as a pass."""
        if not self.enabled and not force:
            logger.info("Reflection disabled, skipping")
            return TriggerResult(action="pass", reason="Reflection disabled", dry_run=dry_run)

        with self._trigger_lock:
            started = time.time()
            self._set_status(ReflectionStatus.OBSERVING)
            self._progress("gathering")
            try:
                return self._run(room_id, dry_run, force, ignore_rate_limit, started)
            except Exception as e:
                reason = str(e) or e.__class__.__name__
                logger.error("Reflection failed: %s", reason, exc_info=True)
                entry = self._record(
                    Decision(action="pass", reason=reason), started, dry_run=dry_run, forced=force
                )
                self._progress("done", action="pass", reason=f"Erreur: {reason}")
                return TriggerResult(action="pass", reason=reason, dry_run=dry_run, entry_id=entry.id)
            finally:
                self._set_status(ReflectionStatus.IDLE)

    def _early_pass(self, reason: str, started: float, room: Optional[Room], dry_run: bool, forced: bool) -> TriggerResult:
        logger.info("Pass: %s", reason)
        entry = self._record(Decision(action="pass", reason=reason), started, room=room, dry_run=dry_run, forced=forced)
        self._progress("done", action="pass", reason=reason)
        return TriggerResult(action="pass", reason=reason, dry_run=dry_run, entry_id=entry.id)

    def _run(self, room_id: Optional[str], dry_run: bool, force: bool, ignore_rate_limit: bool, started: float) -> TriggerResult:
        room = self._chat.get_room(room_id) if room_id else self._chat.get_lobby()
        if room is None:
            reason = f"Room {room_id} not found" if room_id else "No room specified and Lobby not found"
            return self._early_pass(reason, started, None, dry_run, force)

        messages = self._chat.recent_messages(room.id, REFLECTION_MAX_MESSAGES)
        if messages and self._is_own(messages[-1]):
            return self._early_pass(SELF_TALK_REASON, started, room, dry_run, force)

        now = _now()
        goal = self.get_next_goal(now)
        if goal is None:
            return self._early_pass("No unasked goals", started, room, dry_run, force)

        context = self.gather_context(room, goal, messages)
        self._progress(
            "context", messages=len(context["messages"]), facts=len(context["facts"]), self=len(context["self"])
        )

        self._set_status(ReflectionStatus.THINKING)
        self._progress("thinking")
        decision, input_tokens, output_tokens = self.call_llm(self.build_prompt(context))
        decision.goal_id = goal.id

        if decision.action == "message" and not (decision.message or "").strip():
            decision = Decision(action="pass", reason="Empty message in LLM response", goal_id=goal.id)

        limits = self.check_rate_limits(now)
        rate_limited = decision.action == "message" and not limits.can_intervene and not ignore_rate_limit
        final_action = "pass" if rate_limited else decision.action
        final_reason = decision.reason
        if rate_limited:
            if limits.cooldown_remaining:
                final_reason = f"Rate limited: {limits.cooldown_remaining}min cooldown"
            else:
                final_reason = f"Rate limited: {limits.today_count}/{limits.max_per_day} today (daily cap)"

        posting = final_action == "message" and not dry_run
        if posting:
            self._chat.post_message(room.id, decision.message)

        entry = self._record(
            Decision(
                action=final_action,
                reason=final_reason,
                message=decision.message,
                tone=decision.tone,
                goal_id=decision.goal_id,
            ),
            started,
            room=room,
            rate_limited=rate_limited,
            dry_run=dry_run,
            forced=force,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        if posting:
            try:
                self._memory.goals.delete(goal.id, reason="Asked in the Lobby")
            except Exception as e:
                logger.error("Failed to delete asked goal %s: %s", goal.id, e)

        self._progress("done", action=final_action, reason="Terminé" if posting else final_reason)
        logger.info("%s%s: %s", "[DRY-RUN] " if dry_run else "", final_action, final_reason)

        return TriggerResult(
            action=final_action,
            reason=final_reason,
            message=decision.message,
            goal_id=goal.id,
            dry_run=dry_run,
            rate_limited=rate_limited,
            entry_id=entry.id,
            context=context if dry_run else None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def _is_own(self, message: ChatMessage) -> bool:
        return message.author_username == self._agent_username or message.is_bot

    # ── Steps ──────────────────────────────────────────────────────

    def get_next_goal(self, now: Optional[datetime] = None) -> Optional[SearchHit]:
        """Most recent goal that was not posted in the last goal_repeat_days."""
        now = now or _now()
        cutoff = now - timedelta(days=self._goal_repeat_days)
        asked = set()
        for e in self._store.get("entries", []) or []:
            if e.get("action") != "message" or e.get("dry_run") or e.get("rate_limited") or not e.get("goal_id"):
                continue
            ts = parse_timestamp(e.get("timestamp"))
            if ts and ts >= cutoff:
                asked.add(e["goal_id"])

        goals = [g for g in self._memory.goals.list(REFLECTION_MAX_GOALS) if g.id not in asked]
        if not goals:
            return None
        _floor = datetime.min.replace(tzinfo=timezone.utc)
        goals.sort(key=lambda g: parse_timestamp(g.payload.get("timestamp")) or _floor, reverse=True)
        return goals[0]

    def gather_context(self, room: Room, goal: SearchHit, messages: Optional[list[ChatMessage]] = None) -> dict:
        """Room messages plus facts and self-knowledge matched against the goal, not the chat."""
        if messages is None:
            messages = self._chat.recent_messages(room.id, REFLECTION_MAX_MESSAGES)
        goal_text = goal.payload.get("content", "")

        facts = self._memory.facts.search(goal_text, limit=REFLECTION_MAX_FACTS) if goal_text else []
        self_items = self._memory.self_knowledge.search(goal_text, limit=REFLECTION_MAX_SELF) if goal_text else []

        return {
            "room": room.name,
            "goal": {"id": goal.id, "category": goal.payload.get("goalCategory", "general"), "content": goal_text},
            "messages": [
                {
                    "time": _format_time(m.created_at),
                    "author": m.author_name,
                    "content": m.content if m.type == "text" else f"[{m.type}]",
                }
                for m in messages[-REFLECTION_MAX_MESSAGES:]
            ],
            "facts": [
                {"content": f.payload.get("content", ""), "subjects": f.payload.get("subjects") or []} for f in facts
            ],
            "self": [
                {"category": s.payload.get("selfCategory", "general"), "content": s.payload.get("content", "")}
                for s in self_items
            ],
        }

    def build_prompt(self, context: dict) -> str:
        messages = "\n".join(f"[{m['time']}] {m['author']}: {m['content']}" for m in context["messages"])
        goal = context["goal"]
        facts = "\n".join(f"- {f['content']} (sujets: {', '.join(f['subjects'])})" for f in context["facts"])
        self_knowledge = "\n".join(f"- ({s['category']}) {s['content']}" for s in context["self"])
        return get_reflection_prompt(
            messages=messages or "(pas de messages récents)",
            goal=f"({goal['category']}) {goal['content']}",
            facts=facts or "(aucun fact pertinent)",
            self_knowledge=self_knowledge or "(aucune connaissance de soi)",
        )

    def call_llm(self, prompt: str) -> tuple[Decision, int, int]:
        """Single model call, no tools, no retry."""
        logger.info("Calling %s for reflection", self._model)
        response = self._llm.messages.create(
            model=self._model,
            max_tokens=REFLECTION_MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}],
        )
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0

        text = ""
        for block in response.content:
            if getattr(block, "type", None) == "text":
                text = block.text
                break
        logger.debug("Reflection raw response: %.500s", text)
        return parse_decision(text), input_tokens, output_tokens

    def check_rate_limits(self, now: Optional[datetime] = None) -> RateLimitInfo:
        now = now or _now()
        stats = self._store.get("stats") or dict(_DEFAULT_STATS)

        today_start = now.astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
        today_count = 0
        for e in self._store.get("entries", []) or []:
            if e.get("action") != "message" or e.get("rate_limited") or e.get("dry_run"):
                continue
            ts = parse_timestamp(e.get("timestamp"))
            if ts and ts >= today_start:
                today_count += 1

        cooldown_remaining = 0
        last = parse_timestamp(stats.get("lastMessageAt"))
        if last is not None:
            elapsed = (now - last).total_seconds() / 60
            if elapsed < self._cooldown_minutes:
                cooldown_remaining = math.ceil(self._cooldown_minutes - elapsed)

        return RateLimitInfo(
            last_message_at=stats.get("lastMessageAt"),
            cooldown_minutes=self._cooldown_minutes,
            max_per_day=self._max_per_day,
            today_count=today_count,
            can_intervene=cooldown_remaining == 0 and today_count < self._max_per_day,
            cooldown_remaining=cooldown_remaining or None,
        )

    # ── Persistence ────────────────────────────────────────────────

    def _record(
        self,
        decision: Decision,
        started: float,
        room: Optional[Room] = None,
        rate_limited: bool = False,
        dry_run: bool = False,
        forced: bool = False,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> ReflectionEntry:
        now = _now()
        entry = ReflectionEntry(
            id=uuid.uuid4().hex,
            timestamp=now.isoformat(),
            action=decision.action,
            reason=decision.reason,
            message=decision.message,
            tone=decision.tone,
            goal_id=decision.goal_id,
            room_id=room.id if room else None,
            room_name=room.name if room else None,
            rate_limited=rate_limited,
            dry_run=dry_run,
            forced=forced,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.time() - started) * 1000),
        )

        def bump(stats):
            stats = dict(_DEFAULT_STATS, **(stats or {}))
            stats["totalReflections"] += 1
            stats["totalInputTokens"] += input_tokens
            stats["totalOutputTokens"] += output_tokens
            if rate_limited:
                stats["rateLimitedCount"] += 1
            elif decision.action == "message" and not dry_run:
                stats["messageCount"] += 1
                stats["lastMessageAt"] = now.isoformat()
            elif decision.action == "pass":
                stats["passCount"] += 1
            return stats

        with self._state_lock:
            self._store.append_to_list("entries", entry.to_dict(), max_items=REFLECTION_MAX_ENTRIES)
            self._store.mutate("stats", bump)
            self._history.appendleft(entry)

        self._emit({"type": "update", "latest": entry.to_dict(), "stats": self.get_stats()})
        return entry

    def get_stats(self) -> dict:
        """Aggregate counters, recent history (newest first) and current rate limit state."""
        stats = dict(_DEFAULT_STATS, **(self._store.get("stats") or {}))
        with self._state_lock:
            history = [e.to_dict() for e in self._history]
        stats["history"] = history
        stats["rateLimits"] = asdict(self.check_rate_limits())
        stats["enabled"] = self.enabled
        stats["status"] = self._status.value
        return stats

    def reset_cooldown(self) -> None:
        def clear(stats):
            stats = dict(_DEFAULT_STATS, **(stats or {}))
            stats["lastMessageAt"] = None
            return stats

        self._store.mutate("stats", clear)
        logger.info("Cooldown reset")
