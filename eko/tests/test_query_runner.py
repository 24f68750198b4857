"""Tests for brain/query_runner.py — one query end to end inside the worker."""

import json
from unittest.mock import MagicMock

import pytest

from brain.agent_runtime import AgentRuntime
from brain.agent_tools import create_default_registry
from brain.memory import LiveMessage
from brain.query_runner import QueryRunner, QueryState, parse_prompt
from brain.session import SessionStore
from tests.conftest import make_client, make_text_response, make_tool_response


def prompt(sender="Mickael", message="Salut Eko"):
    return json.dumps({"type": "direct", "from": sender, "message": message, "time": "Fri 16 Jan 2026, 15:30"})


@pytest.fixture
def registry(memory, notes_store):
    return create_default_registry(memory, notes_store)


def make_runner(client, registry, events, live=None, **kwargs):
    runtime = AgentRuntime(client, registry)
    sessions = SessionStore(on_evict=lambda s: runtime.forget_session(s.external_session_id))
    runner = QueryRunner(runtime, sessions, live, events.append, system_prompt_fn=lambda: "BASE", **kwargs)
    return runner, runtime, sessions


class TestParsePrompt:
    def test_json(self):
        assert parse_prompt(prompt()) == ("Mickael", "Salut Eko")

    def test_missing_from(self):
        assert parse_prompt('{"message": "hi"}') == ("unknown", "hi")

    def test_not_json(self):
        assert parse_prompt("just text") == ("unknown", "just text")
        assert parse_prompt("[1, 2]") == ("unknown", "[1, 2]")


class TestRun:
    def test_happy_path_emits_session_text_done(self, registry, events):
        client = make_client(
            make_tool_response(
                "respond",
                {
                    "expression": "happy",
                    "message": " Salut Mickael ! ",
                    "memories": [{"content": "Mickael est rentré de Lyon", "subjects": ["Mickael"]}],
                },
                input_tokens=40,
                output_tokens=10,
            ),
            make_text_response("", input_tokens=50, output_tokens=2),
        )
        runner, runtime, sessions = make_runner(client, registry, events)

        assert runner.run(prompt(), "req_1") == QueryState.COMPLETED

        kinds = [e["type"] for e in events]
        assert kinds == ["session", "text", "done"]
        done = events[-1]
        assert done["requestId"] == "req_1"
        assert done["response"] == "Salut Mickael !"
        assert done["expression"] == "happy"
        assert done["memories"][0]["content"] == "Mickael est rentré de Lyon"
        assert (done["inputTokens"], done["outputTokens"]) == (90, 12)
        assert sessions.get("Mickael").external_session_id == events[0]["sessionId"]

    def test_second_message_resumes_session(self, registry, events):
        client = make_client(make_text_response("a"), make_text_response("b"))
        runner, runtime, sessions = make_runner(client, registry, events)
        runner.run(prompt(message="un"), "req_1")
        runner.run(prompt(message="deux"), "req_2")
        session_events = [e for e in events if e["type"] == "session"]
        assert session_events[0]["sessionId"] == session_events[1]["sessionId"]

    def test_users_have_separate_sessions(self, registry, events):
        client = make_client(make_text_response("a"), make_text_response("b"))
        runner, _, sessions = make_runner(client, registry, events)
        runner.run(prompt(sender="Mickael"), "req_1")
        runner.run(prompt(sender="Marie"), "req_2")
        assert sessions.get("Mickael").external_session_id != sessions.get("Marie").external_session_id

    def test_no_respond_gives_empty_response(self, registry, events):
        runner, _, _ = make_runner(make_client(make_text_response("je réfléchis")), registry, events)
        runner.run(prompt(), "req_1")
        done = events[-1]
        assert done["type"] == "done"
        assert done["response"] == ""
        assert done["expression"] == "neutral"
        assert not any(e["type"] == "text" for e in events)

    def test_text_fallback_when_enabled(self, registry, events):
        runner, _, _ = make_runner(make_client(make_text_response("coucou")), registry, events, text_fallback=True)
        runner.run(prompt(), "req_1")
        assert {"type": "text", "text": "coucou", "requestId": "req_1"} in events
        assert events[-1]["response"] == "coucou"

    def test_failure_emits_error_and_evicts_session(self, registry, events):
        client = make_client(make_text_response("ok"), RuntimeError("overloaded"))
        runner, runtime, sessions = make_runner(client, registry, events)
        runner.run(prompt(), "req_1")
        session_id = sessions.get("Mickael").external_session_id

        assert runner.run(prompt(), "req_2") == QueryState.FAILED
        assert events[-1] == {"type": "error", "requestId": "req_2", "message": "overloaded"}
        assert sessions.get("Mickael") is None
        assert not runtime.has_session(session_id)


class TestLiveContext:
    def test_live_block_appended_to_system_prompt(self, registry, events):
        live = MagicMock()
        live.search.return_value = [LiveMessage("Marie", "On mange à 20h", "2026-01-16T18:00:00Z")]
        client = make_client(make_text_response("ok"))
        runner, _, _ = make_runner(client, registry, events, live=live)
        runner.run(prompt(message="on mange quand ?"), "req_1")

        system = client.messages.create.call_args.kwargs["system"]
        assert system.startswith("BASE\n\n[Contexte live - extraits pertinents du Lobby, pas une conversation complète]\n")
        assert "• Marie (" in system
        live.search.assert_called_once_with("on mange quand ?", limit=10)

    def test_live_failure_is_not_fatal(self, registry, events):
        live = MagicMock()
        live.search.side_effect = RuntimeError("qdrant down")
        client = make_client(make_text_response("ok"))
        runner, _, _ = make_runner(client, registry, events, live=live)
        assert runner.run(prompt(), "req_1") == QueryState.COMPLETED
        assert client.messages.create.call_args.kwargs["system"] == "BASE"

    def test_no_live_results(self, registry, events):
        live = MagicMock()
        live.search.return_value = []
        runner, _, _ = make_runner(make_client(make_text_response("ok")), registry, events, live=live)
        assert runner.build_system_prompt("hello") == "BASE"
