"""Shared fixtures and mock helpers for the Eko test suite."""

import itertools
from dataclasses import dataclass, field
from unittest.mock import MagicMock

import pytest

from brain.vector_store import SearchHit

# ---------------------------------------------------------------------------
# Mock Anthropic response objects
# ---------------------------------------------------------------------------
# Dataclass-based (not MagicMock) because source code does:
#   block.type == "tool_use"   (comparison)
#   getattr(block, "type")     (attribute check)
# MagicMock auto-creates attributes, breaking these checks.


@dataclass
class MockUsage:
    input_tokens: int = 100
    output_tokens: int = 50


@dataclass
class MockTextBlock:
    type: str = "text"
    text: str = ""


@dataclass
class MockToolUseBlock:
    type: str = "tool_use"
    name: str = ""
    input: dict = field(default_factory=dict)
    id: str = "tool_call_123"


_tool_ids = itertools.count(1)


def make_text_response(text: str, input_tokens=100, output_tokens=50):
    """Create a mock Claude response with a single text block."""
    response = MagicMock()
    response.content = [MockTextBlock(type="text", text=text)]
    response.usage = MockUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    response.stop_reason = "end_turn"
    return response


def make_tool_response(tool_name: str, tool_input: dict, text: str = "", input_tokens=100, output_tokens=50):
    """Create a mock Claude response with a tool_use block (and optional preceding text)."""
    response = MagicMock()
    blocks = []
    if text:
        blocks.append(MockTextBlock(type="text", text=text))
    blocks.append(
        MockToolUseBlock(type="tool_use", name=tool_name, input=tool_input, id=f"toolu_{next(_tool_ids)}")
    )
    response.content = blocks
    response.usage = MockUsage(input_tokens=input_tokens, output_tokens=output_tokens)
    response.stop_reason = "tool_use"
    return response


def make_client(*responses):
    """Anthropic client mock whose messages.create returns the given responses in order."""
    client = MagicMock()
    client.messages.create.side_effect = list(responses)
    return client


# ---------------------------------------------------------------------------
# In-memory vector store
# ---------------------------------------------------------------------------


def _words(text: str) -> set:
    return {w.strip(".,!?;:").lower() for w in (text or "").split() if w.strip(".,!?;:")}


class FakeVectorStore:
    """Same surface as VectorStore, scoring by word overlap instead of embeddings.

    Exact-duplicate content scores 1.0, so upsert dedup behaves like the real thing.
    """

    def __init__(self, dedup_threshold: float = 0.85):
        self.collections: dict[str, dict[str, dict]] = {}
        self.deleted: list[tuple[str, str]] = []
        self._ids = itertools.count(1)
        self._dedup_threshold = dedup_threshold

    def _score(self, query: str, content: str) -> float:
        q, c = _words(query), _words(content)
        if not q or not c:
            return 0.0
        return len(q & c) / len(q | c)

    @staticmethod
    def _matches(payload: dict, flt) -> bool:
        if not flt:
            return True
        return all(payload.get(cond["key"]) == cond["match"]["value"] for cond in flt.get("must", []))

    def add(self, collection: str, payload: dict, point_id: str = None) -> str:
        point_id = point_id or f"p{next(self._ids)}"
        self.collections.setdefault(collection, {})[point_id] = dict(payload)
        return point_id

    def search(self, collection, query=None, limit=10, filter=None, vector=None):
        points = self.collections.get(collection, {})
        hits = [
            SearchHit(id=pid, score=self._score(query or "", p.get("content", "")), payload=dict(p))
            for pid, p in points.items()
            if self._matches(p, filter)
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def scroll(self, collection, limit, filter=None):
        points = self.collections.get(collection, {})
        return [
            SearchHit(id=pid, score=0.0, payload=dict(p)) for pid, p in points.items() if self._matches(p, filter)
        ][:limit]

    def upsert(self, collection, payload):
        similar = self.search(collection, payload["content"], limit=1)
        if similar and similar[0].score >= self._dedup_threshold:
            self.delete(collection, similar[0].id)
        return self.add(collection, payload)

    def delete(self, collection, point_id):
        self.collections.get(collection, {}).pop(point_id, None)
        self.deleted.append((collection, point_id))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def default_personality():
    """Every test starts from the built-in persona."""
    import personality

    personality._personality = None
    yield
    personality._personality = None


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def memory(vector_store):
    from brain.memory import Memory

    return Memory(vector_store)


@pytest.fixture
def notes_store(tmp_path):
    from brain.notes import NotesStore

    return NotesStore(str(tmp_path / "notes.json"))


@pytest.fixture
def events():
    """Collects everything a component emits."""
    return []
