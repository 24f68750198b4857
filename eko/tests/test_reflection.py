"""Tests for brain/reflection.py — unprompted questions in the Lobby."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

import brain.reflection as reflection_module
from brain.chat_backend import ChatBackend, ChatMessage, Room
from brain.reflection import (
    SELF_TALK_REASON,
    ReflectionScheduler,
    ReflectionStatus,
    next_run_time,
    parse_decision,
)
from brain.vector_store import UpstreamError
from tests.conftest import make_text_response
from utils.persistent_store import PersistentStore

NOW = datetime(2026, 1, 16, 12, 0, tzinfo=timezone.utc)
LOBBY = Room(id="lobby", name="Lobby", is_lobby=True)


class FakeChat(ChatBackend):
    def __init__(self, messages=None, lobby=LOBBY):
        self.lobby = lobby
        self.rooms = {LOBBY.id: LOBBY}
        self.messages = messages if messages is not None else [human("Mickael", "Quelqu'un a vu mes clés ?")]
        self.posted = []
        self.fail_post = False

    def get_lobby(self):
        return self.lobby

    def get_room(self, room_id):
        return self.rooms.get(room_id)

    def recent_messages(self, room_id, limit):
        return self.messages[-limit:]

    def post_message(self, room_id, content):
        if self.fail_post:
            raise UpstreamError("Chat backend POST failed: 502", status_code=502)
        self.posted.append((room_id, content))


def human(username, content, minutes_ago=5):
    return ChatMessage(
        id=f"m-{username}-{minutes_ago}",
        room_id="lobby",
        author_username=username.lower(),
        author_name=username,
        content=content,
        created_at=(NOW - timedelta(minutes=minutes_ago)).isoformat(),
    )


def decision(action="message", message="Au fait, c'est quoi un iPhone ?", reason="goal fits", tone="playful"):
    return make_text_response(json.dumps({"action": action, "message": message, "reason": reason, "tone": tone}))


@pytest.fixture(autouse=True)
def frozen_now(monkeypatch):
    monkeypatch.setattr(reflection_module, "_now", lambda: NOW)


@pytest.fixture
def store(tmp_path):
    return PersistentStore(str(tmp_path / "reflections.json"))


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def llm():
    client = MagicMock()
    client.messages.create.return_value = decision()
    return client


@pytest.fixture
def goals(vector_store):
    vector_store.add(
        "goals",
        {"content": "Comprendre ce qu'est un iPhone", "goalCategory": "understanding", "timestamp": "2026-01-10T00:00:00+00:00"},
        point_id="g-old",
    )
    vector_store.add(
        "goals",
        {"content": "Savoir jouer aux échecs", "goalCategory": "capability_request", "timestamp": "2026-01-12T00:00:00+00:00"},
        point_id="g-new",
    )
    return vector_store


@pytest.fixture
def scheduler(llm, memory, chat, store, goals):
    return ReflectionScheduler(llm, memory, chat, store, enabled=True)


def seed_entry(store, goal_id, when, action="message", **extra):
    entry = {"id": f"e-{goal_id}-{when.isoformat()}", "timestamp": when.isoformat(), "action": action, "goal_id": goal_id}
    entry.update(extra)
    store.append_to_list("entries", entry)


class TestTrigger:
    def test_posts_most_recent_goal(self, scheduler, chat, llm, goals, store):
        result = scheduler.trigger()

        assert result.action == "message"
        assert result.goal_id == "g-new"
        assert chat.posted == [("lobby", "Au fait, c'est quoi un iPhone ?")]
        assert "g-new" not in goals.collections["goals"]
        assert (result.input_tokens, result.output_tokens) == (100, 50)

        (entry,) = store.get("entries")
        assert entry["action"] == "message"
        assert entry["goal_id"] == "g-new"
        assert entry["room_name"] == "Lobby"
        stats = store.get("stats")
        assert stats["messageCount"] == 1
        assert stats["totalReflections"] == 1
        assert stats["lastMessageAt"] == NOW.isoformat()
        assert scheduler.status == ReflectionStatus.IDLE

    def test_single_llm_call_with_goal_in_prompt(self, scheduler, llm):
        scheduler.trigger()
        assert llm.messages.create.call_count == 1
        kwargs = llm.messages.create.call_args.kwargs
        assert kwargs["max_tokens"] == 500
        prompt = kwargs["messages"][0]["content"]
        assert "(capability_request) Savoir jouer aux échecs" in prompt
        assert "Mickael: Quelqu'un a vu mes clés ?" in prompt
        assert "(aucun fact pertinent)" in prompt

    def test_context_searches_memory_with_goal_text(self, scheduler, vector_store, llm):
        vector_store.add("facts", {"content": "Lucas joue aux échecs le mercredi", "subjects": ["Lucas"]})
        vector_store.add("self", {"content": "Je ne connais pas les règles des échecs", "selfCategory": "limitation"})
        scheduler.trigger()
        prompt = llm.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "- Lucas joue aux échecs le mercredi (sujets: Lucas)" in prompt
        assert "- (limitation) Je ne connais pas les règles des échecs" in prompt

    def test_goal_id_from_model_is_overridden(self, scheduler, llm):
        llm.messages.create.return_value = make_text_response(
            json.dumps({"action": "message", "message": "Hello", "reason": "r", "goalId": "invented"})
        )
        assert scheduler.trigger().goal_id == "g-new"

    def test_disabled_without_force(self, llm, memory, chat, store, goals):
        scheduler = ReflectionScheduler(llm, memory, chat, store, enabled=False)
        result = scheduler.trigger()
        assert (result.action, result.reason) == ("pass", "Reflection disabled")
        assert store.get("entries") is None
        llm.messages.create.assert_not_called()

    def test_force_runs_while_disabled(self, llm, memory, chat, store, goals):
        scheduler = ReflectionScheduler(llm, memory, chat, store, enabled=False)
        result = scheduler.trigger(force=True)
        assert result.action == "message"
        assert store.get("entries")[0]["forced"] is True

    def test_waits_when_last_message_is_own(self, scheduler, chat, llm, store):
        chat.messages.append(
            ChatMessage(id="m-eko", room_id="lobby", author_username="eko", author_name="Eko", content="Coucou !")
        )
        result = scheduler.trigger()
        assert (result.action, result.reason) == ("pass", SELF_TALK_REASON)
        llm.messages.create.assert_not_called()
        assert store.get("stats")["passCount"] == 1

    def test_bot_author_counts_as_own(self, scheduler, chat, llm):
        message = human("Helper", "beep")
        message.is_bot = True
        chat.messages.append(message)
        assert scheduler.trigger().reason == SELF_TALK_REASON

    def test_empty_room_still_reflects(self, scheduler, chat, llm):
        chat.messages = []
        assert scheduler.trigger().action == "message"
        prompt = llm.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "(pas de messages récents)" in prompt

    def test_no_goals(self, llm, memory, chat, store):
        scheduler = ReflectionScheduler(llm, memory, chat, store, enabled=True)
        result = scheduler.trigger()
        assert result.reason == "No unasked goals"
        llm.messages.create.assert_not_called()

    def test_missing_lobby(self, llm, memory, store, goals):
        scheduler = ReflectionScheduler(llm, memory, FakeChat(lobby=None), store, enabled=True)
        assert scheduler.trigger().reason == "No room specified and Lobby not found"

    def test_unknown_room(self, scheduler):
        assert scheduler.trigger(room_id="nowhere").reason == "Room nowhere not found"

    def test_model_pass(self, scheduler, llm, chat, goals):
        llm.messages.create.return_value = decision(action="pass", message=None, reason="hors sujet")
        result = scheduler.trigger()
        assert (result.action, result.reason) == ("pass", "hors sujet")
        assert chat.posted == []
        assert "g-new" in goals.collections["goals"]

    def test_empty_message_becomes_pass(self, scheduler, llm, chat):
        llm.messages.create.return_value = decision(message="  ")
        result = scheduler.trigger()
        assert result.action == "pass"
        assert chat.posted == []

    def test_unparseable_response(self, scheduler, llm, store):
        llm.messages.create.return_value = make_text_response("Je préfère ne rien dire.")
        result = scheduler.trigger()
        assert (result.action, result.reason) == ("pass", "No JSON in LLM response")
        assert store.get("entries")[0]["input_tokens"] == 100

    def test_llm_failure_is_contained(self, scheduler, llm, store):
        llm.messages.create.side_effect = RuntimeError("overloaded")
        result = scheduler.trigger()
        assert (result.action, result.reason) == ("pass", "overloaded")
        assert store.get("entries")[0]["action"] == "pass"
        assert scheduler.status == ReflectionStatus.IDLE

    def test_post_failure_is_contained(self, scheduler, chat, goals, store):
        chat.fail_post = True
        result = scheduler.trigger()
        assert result.action == "pass"
        assert "502" in result.reason
        assert "g-new" in goals.collections["goals"]
        assert store.get("stats")["messageCount"] == 0

    def test_goal_delete_failure_still_counts_as_posted(self, scheduler, chat, vector_store, monkeypatch):
        def broken_delete(collection, point_id):
            raise UpstreamError("Delete in goals failed: 500")

        monkeypatch.setattr(vector_store, "delete", broken_delete)
        result = scheduler.trigger()
        assert result.action == "message"
        assert len(chat.posted) == 1


class TestDryRun:
    def test_dry_run_has_no_side_effects(self, scheduler, chat, goals, store):
        result = scheduler.trigger(dry_run=True)
        assert result.action == "message"
        assert result.dry_run is True
        assert chat.posted == []
        assert "g-new" in goals.collections["goals"]
        assert result.context["goal"]["id"] == "g-new"
        assert result.context["room"] == "Lobby"
        stats = store.get("stats")
        assert stats["messageCount"] == 0
        assert stats["lastMessageAt"] is None
        assert store.get("entries")[0]["dry_run"] is True

    def test_dry_run_does_not_consume_goal(self, scheduler):
        scheduler.trigger(dry_run=True)
        assert scheduler.get_next_goal(NOW).id == "g-new"


class TestGoalSelection:
    def test_recently_asked_goal_is_skipped(self, scheduler, store):
        seed_entry(store, "g-new", NOW - timedelta(days=3))
        assert scheduler.get_next_goal(NOW).id == "g-old"

    def test_goal_asked_long_ago_is_eligible(self, scheduler, store):
        seed_entry(store, "g-new", NOW - timedelta(days=31))
        assert scheduler.get_next_goal(NOW).id == "g-new"

    def test_dry_run_and_rate_limited_entries_do_not_count(self, scheduler, store):
        seed_entry(store, "g-new", NOW - timedelta(days=1), dry_run=True)
        seed_entry(store, "g-new", NOW - timedelta(days=1), rate_limited=True)
        assert scheduler.get_next_goal(NOW).id == "g-new"

    def test_all_asked(self, scheduler, store):
        seed_entry(store, "g-new", NOW - timedelta(days=1))
        seed_entry(store, "g-old", NOW - timedelta(days=2))
        assert scheduler.get_next_goal(NOW) is None


class TestRateLimits:
    def test_cooldown(self, scheduler, store, chat):
        store.update("stats", dict(store.get("stats"), lastMessageAt=(NOW - timedelta(minutes=10)).isoformat()))
        result = scheduler.trigger()
        assert result.action == "pass"
        assert result.rate_limited is True
        assert result.reason == "Rate limited: 20min cooldown"
        assert chat.posted == []
        stats = store.get("stats")
        assert stats["rateLimitedCount"] == 1
        assert stats["passCount"] == 0

    def test_daily_cap(self, scheduler, store, chat):
        for i in range(5):
            seed_entry(store, f"other-{i}", NOW - timedelta(minutes=40 + i))
        result = scheduler.trigger()
        assert result.rate_limited is True
        assert result.reason == "Rate limited: 5/5 today (daily cap)"

    def test_ignore_rate_limit(self, scheduler, store, chat):
        store.update("stats", dict(store.get("stats"), lastMessageAt=(NOW - timedelta(minutes=1)).isoformat()))
        result = scheduler.trigger(ignore_rate_limit=True)
        assert result.action == "message"
        assert len(chat.posted) == 1

    def test_pass_is_not_rate_limited(self, scheduler, store, llm):
        store.update("stats", dict(store.get("stats"), lastMessageAt=(NOW - timedelta(minutes=1)).isoformat()))
        llm.messages.create.return_value = decision(action="pass", reason="rien à dire")
        result = scheduler.trigger()
        assert result.rate_limited is False
        assert result.reason == "rien à dire"

    def test_check_rate_limits_info(self, scheduler, store):
        store.update("stats", dict(store.get("stats"), lastMessageAt=(NOW - timedelta(minutes=29, seconds=30)).isoformat()))
        info = scheduler.check_rate_limits(NOW)
        assert info.can_intervene is False
        assert info.cooldown_remaining == 1
        assert info.today_count == 0

    def test_reset_cooldown(self, scheduler, store):
        store.update("stats", dict(store.get("stats"), lastMessageAt=(NOW - timedelta(minutes=1)).isoformat()))
        scheduler.reset_cooldown()
        assert scheduler.check_rate_limits(NOW).can_intervene is True


class TestStatsAndEvents:
    def test_listener_sees_status_progress_and_update(self, scheduler):
        seen = []
        scheduler.add_listener(seen.append)
        scheduler.trigger()
        statuses = [e["status"] for e in seen if e["type"] == "status"]
        assert statuses == ["observing", "thinking", "idle"]
        steps = [e["step"] for e in seen if e["type"] == "progress"]
        assert steps[0] == "gathering"
        assert steps[-1] == "done"
        update = [e for e in seen if e["type"] == "update"][-1]
        assert update["latest"]["action"] == "message"

    def test_failing_listener_is_ignored(self, scheduler):
        def broken(event):
            raise RuntimeError("socket gone")

        scheduler.add_listener(broken)
        assert scheduler.trigger().action == "message"

    def test_history_survives_restart(self, llm, memory, chat, store, goals):
        first = ReflectionScheduler(llm, memory, chat, store, enabled=True)
        first.trigger(dry_run=True)
        first.trigger(dry_run=True)

        second = ReflectionScheduler(llm, memory, chat, PersistentStore(store.path), enabled=True)
        stats = second.get_stats()
        assert len(stats["history"]) == 2
        assert stats["totalReflections"] == 2
        assert stats["rateLimits"]["max_per_day"] == 5
        assert stats["status"] == "idle"


class TestParseDecision:
    def test_fenced_json(self):
        d = parse_decision('Voilà:\n```json\n{"action": "message", "message": "Hi", "reason": "ok", "tone": "helpful"}\n```')
        assert (d.action, d.message, d.tone) == ("message", "Hi", "helpful")

    def test_bare_json_with_prose(self):
        d = parse_decision('Je pense que {"action": "pass", "reason": "calme"} est mieux.')
        assert (d.action, d.reason) == ("pass", "calme")

    def test_no_json(self):
        assert parse_decision("nothing here").reason == "No JSON in LLM response"

    def test_broken_json(self):
        assert parse_decision('{"action": "message", }').reason == "Failed to parse LLM response"

    def test_invalid_action(self):
        assert parse_decision('{"action": "shout"}').reason == "Invalid LLM response format"

    def test_missing_reason_and_bad_tone(self):
        d = parse_decision('{"action": "message", "message": "Hi", "tone": "angry"}')
        assert d.reason == "No reason provided"
        assert d.tone is None


class TestSchedule:
    def test_next_slot_same_day(self):
        assert next_run_time(datetime(2026, 1, 16, 10, 15)) == datetime(2026, 1, 16, 12, 0)

    def test_exactly_on_slot_moves_to_next(self):
        assert next_run_time(datetime(2026, 1, 16, 12, 0)) == datetime(2026, 1, 16, 15, 0)

    def test_wraps_to_midnight(self):
        assert next_run_time(datetime(2026, 1, 16, 22, 30)) == datetime(2026, 1, 17, 0, 0)

    def test_start_and_stop(self, scheduler):
        scheduler.start()
        scheduler.stop()
        assert scheduler._thread is None
