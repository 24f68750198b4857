"""
Eko's memory, one vector collection per kind:
  - facts: things learned about people and the world (optional TTL)
  - self:  what Eko knows about itself, tagged by selfCategory
  - goals: aspirations and open curiosities, consumed by reflection
  - live:  recent public Lobby messages, read-only context

All writes go through VectorStore.upsert, so near-duplicates replace each other.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from brain.vector_store import SearchHit, VectorStore, match_filter
from config import (
    FACTS_COLLECTION,
    GOALS_COLLECTION,
    LIVE_COLLECTION,
    REFLECTION_MAX_GOALS,
    SELF_COLLECTION,
)

logger = logging.getLogger("eko.memory")

_TTL_RE = re.compile(r"^(\d+)([dhm])$")
_TTL_UNITS = {"d": "days", "h": "hours", "m": "minutes"}
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ttl(ttl: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
    """Resolve "7d" / "12h" / "30m" into an absolute ISO expiry. None or garbage means permanent."""
    if not ttl:
        return None
    m = _TTL_RE.match(ttl)
    if not m:
        logger.warning("Ignoring malformed ttl %r", ttl)
        return None
    base = now or _now()
    return (base + timedelta(**{_TTL_UNITS[m.group(2)]: int(m.group(1))})).isoformat()


def parse_timestamp(ts) -> Optional[datetime]:
    """Parse an ISO timestamp (with or without trailing Z). Naive values are taken as UTC."""
    if not ts or not isinstance(ts, str):
        return None
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class FactMemory:
    """Facts about users and the world."""

    def __init__(self, store: VectorStore, collection: str = FACTS_COLLECTION):
        self._store = store
        self.collection = collection

    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        results = self._store.search(self.collection, query, limit=limit)
        logger.info("Searching facts %r: %d found", query, len(results))
        return results

    def recent(self, limit: int = 10) -> list[dict]:
        """Latest facts by timestamp. Fetches a 2x window and sorts client-side."""
        points = self._store.scroll(self.collection, limit=limit * 2)
        points.sort(key=lambda p: parse_timestamp(p.payload.get("timestamp")) or _EPOCH, reverse=True)
        return [
            {
                "id": p.id,
                "content": p.payload.get("content", ""),
                "subjects": p.payload.get("subjects") or [],
                "timestamp": p.payload.get("timestamp"),
            }
            for p in points[:limit]
        ]

    def store(self, content: str, subjects: list[str], ttl: Optional[str] = None) -> str:
        now = _now()
        payload = {
            "type": "fact",
            "content": content,
            "subjects": list(subjects or []),
            "expiresAt": parse_ttl(ttl, now),
            "timestamp": now.isoformat(),
        }
        point_id = self._store.upsert(self.collection, payload)
        logger.info("Stored fact: %.50s (ttl: %s)", content, ttl or "permanent")
        return point_id

    def delete(self, point_id: str, reason: str = "") -> None:
        logger.info("Deleting fact %s (reason: %s)", point_id, reason or "none")
        self._store.delete(self.collection, point_id)


class SelfMemory:
    """Self-knowledge: context, capability, limitation, preference, relation."""

    def __init__(self, store: VectorStore, collection: str = SELF_COLLECTION):
        self._store = store
        self.collection = collection

    def search(self, query: str, limit: int = 10, category: Optional[str] = None) -> list[SearchHit]:
        flt = match_filter("selfCategory", category) if category else None
        results = self._store.search(self.collection, query, limit=limit, filter=flt)
        logger.info("Searching self %r (category=%s): %d found", query, category, len(results))
        return results

    def store(self, content: str, category: str) -> str:
        payload = {
            "type": "self",
            "content": content,
            "selfCategory": category,
            "timestamp": _now().isoformat(),
        }
        point_id = self._store.upsert(self.collection, payload)
        logger.info("Stored self (%s): %.50s", category, content)
        return point_id

    def delete(self, point_id: str, reason: str = "") -> None:
        logger.info("Deleting self item %s (reason: %s)", point_id, reason or "none")
        self._store.delete(self.collection, point_id)


class GoalMemory:
    """Aspirations and curiosities."""

    def __init__(self, store: VectorStore, collection: str = GOALS_COLLECTION):
        self._store = store
        self.collection = collection

    def search(self, query: str, limit: int = 10) -> list[SearchHit]:
        results = self._store.search(self.collection, query, limit=limit)
        logger.info("Searching goals %r: %d found", query, len(results))
        return results

    def list(self, limit: int = REFLECTION_MAX_GOALS) -> list[SearchHit]:
        return self._store.scroll(self.collection, limit=limit)

    def store(self, content: str, category: str) -> str:
        payload = {
            "type": "goal",
            "content": content,
            "goalCategory": category,
            "timestamp": _now().isoformat(),
        }
        point_id = self._store.upsert(self.collection, payload)
        logger.info("Stored goal (%s): %.50s", category, content)
        return point_id

    def delete(self, point_id: str, reason: str = "") -> None:
        logger.info("Deleting goal %s (reason: %s)", point_id, reason or "none")
        self._store.delete(self.collection, point_id)


@dataclass
class LiveMessage:
    author: str
    content: str
    timestamp: Optional[str]
    score: float = 0.0


class LiveContext:
    """Recent public Lobby messages, searched by similarity to the incoming message."""

    def __init__(self, store: VectorStore, collection: str = LIVE_COLLECTION):
        self._store = store
        self.collection = collection

    def search(self, text: str, limit: int = 10) -> list[LiveMessage]:
        hits = self._store.search(self.collection, text, limit=limit)
        logger.debug("Live context for %.50s: %d messages", text, len(hits))
        return [
            LiveMessage(
                author=h.payload.get("author", "?"),
                content=h.payload.get("content", ""),
                timestamp=h.payload.get("timestamp"),
                score=h.score,
            )
            for h in hits
        ]

    @staticmethod
    def format(messages: list[LiveMessage], header: str = "") -> str:
        """Chronological bullet list. Unparseable timestamps sort last and render as ??/?? ??:??."""
        if not messages:
            return ""

        def sort_key(m: LiveMessage):
            dt = parse_timestamp(m.timestamp)
            return (dt is None, dt or _EPOCH)

        lines = []
        for m in sorted(messages, key=sort_key):
            dt = parse_timestamp(m.timestamp)
            when = dt.astimezone().strftime("%d/%m %H:%M") if dt else "??/?? ??:??"
            lines.append(f"• {m.author} ({when}) : {m.content}")
        body = "\n".join(lines)
        return f"{header}\n{body}" if header else body


class Memory:
    """Groups the four collections over a single VectorStore."""

    def __init__(self, store: VectorStore):
        self.store = store
        self.facts = FactMemory(store)
        self.self_knowledge = SelfMemory(store)
        self.goals = GoalMemory(store)
        self.live = LiveContext(store)

    def remember(self, items: list[dict]) -> int:
        """Store facts reported after a turn. One failure does not stop the rest; returns how many were written."""
        stored = 0
        for item in items or []:
            content = (item.get("content") or "").strip()
            if not content:
                continue
            try:
                self.facts.store(content, item.get("subjects") or [], item.get("ttl"))
                stored += 1
            except Exception as e:
                logger.error("Failed to store memory %.50s: %s", content, e)
        return stored
