"""Tests for brain/memory.py — fact/self/goal collections and the live context block."""

from datetime import datetime, timezone

from brain.memory import LiveContext, LiveMessage, parse_timestamp, parse_ttl


class TestParseTtl:
    NOW = datetime(2026, 1, 16, 12, 0, tzinfo=timezone.utc)

    def test_days(self):
        assert parse_ttl("7d", self.NOW) == "2026-01-23T12:00:00+00:00"

    def test_hours_and_minutes(self):
        assert parse_ttl("12h", self.NOW) == "2026-01-17T00:00:00+00:00"
        assert parse_ttl("30m", self.NOW) == "2026-01-16T12:30:00+00:00"

    def test_permanent_or_malformed(self):
        assert parse_ttl(None, self.NOW) is None
        assert parse_ttl("", self.NOW) is None
        assert parse_ttl("forever", self.NOW) is None
        assert parse_ttl("7w", self.NOW) is None


class TestParseTimestamp:
    def test_trailing_z(self):
        assert parse_timestamp("2026-01-16T15:30:00Z") == datetime(2026, 1, 16, 15, 30, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-01-16T15:30:00").tzinfo is timezone.utc

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(12) is None


class TestFacts:
    def test_store_payload(self, memory, vector_store):
        memory.facts.store("Mickael a un chat", ["Mickael"], "7d")
        (payload,) = vector_store.collections["facts"].values()
        assert payload["type"] == "fact"
        assert payload["subjects"] == ["Mickael"]
        assert payload["expiresAt"] is not None
        assert parse_timestamp(payload["timestamp"]) is not None

    def test_permanent_fact_has_no_expiry(self, memory, vector_store):
        memory.facts.store("Mickael est le père de Lucas", ["Mickael", "Lucas"])
        (payload,) = vector_store.collections["facts"].values()
        assert payload["expiresAt"] is None

    def test_storing_same_fact_twice_keeps_one(self, memory, vector_store):
        memory.facts.store("Lucas aime le foot", ["Lucas"])
        memory.facts.store("Lucas aime le foot", ["Lucas"])
        assert len(vector_store.collections["facts"]) == 1

    def test_recent_sorted_newest_first(self, memory, vector_store):
        vector_store.add("facts", {"content": "old", "timestamp": "2026-01-01T00:00:00+00:00"})
        vector_store.add("facts", {"content": "new", "timestamp": "2026-01-10T00:00:00+00:00"})
        vector_store.add("facts", {"content": "no date"})
        recent = memory.facts.recent(limit=2)
        assert [r["content"] for r in recent] == ["new", "old"]
        assert recent[0]["subjects"] == []

    def test_search_ranks_by_similarity(self, memory, vector_store):
        vector_store.add("facts", {"content": "Lucas aime le foot"})
        vector_store.add("facts", {"content": "Mickael travaille à Paris"})
        hits = memory.facts.search("Mickael Paris")
        assert hits[0].payload["content"] == "Mickael travaille à Paris"


class TestSelfAndGoals:
    def test_self_category_filter(self, memory, vector_store):
        memory.self_knowledge.store("Je ne peux pas voir les images", "limitation")
        memory.self_knowledge.store("Je peux chercher dans les notes", "capability")
        hits = memory.self_knowledge.search("images", category="limitation")
        assert len(hits) == 1
        assert hits[0].payload["selfCategory"] == "limitation"

    def test_goal_store_and_delete(self, memory, vector_store):
        goal_id = memory.goals.store("Comprendre ce qu'est un iPhone", "understanding")
        assert memory.goals.list()[0].payload["goalCategory"] == "understanding"
        memory.goals.delete(goal_id, "asked")
        assert memory.goals.list() == []


class TestRemember:
    def test_stores_each_item(self, memory, vector_store):
        stored = memory.remember(
            [
                {"content": "Lucas a perdu une dent", "subjects": ["Lucas"], "ttl": "7d"},
                {"content": "  ", "subjects": []},
                {"content": "Marie est la sœur de Lucas", "subjects": ["Marie", "Lucas"]},
            ]
        )
        assert stored == 2
        assert len(vector_store.collections["facts"]) == 2

    def test_one_failure_does_not_stop_the_rest(self, memory, vector_store, monkeypatch):
        original = vector_store.upsert

        def flaky(collection, payload):
            if "boom" in payload["content"]:
                raise RuntimeError("qdrant down")
            return original(collection, payload)

        monkeypatch.setattr(vector_store, "upsert", flaky)
        stored = memory.remember([{"content": "boom"}, {"content": "Lucas a 8 ans", "subjects": ["Lucas"]}])
        assert stored == 1


class TestLiveContext:
    def test_search_maps_payload(self, memory, vector_store):
        vector_store.add("live", {"author": "Marie", "content": "On mange à 20h", "timestamp": "2026-01-16T18:00:00Z"})
        messages = memory.live.search("manger ce soir à 20h")
        assert messages[0].author == "Marie"

    def test_format_is_chronological_with_invalid_last(self):
        messages = [
            LiveMessage("Lucas", "second", "2026-01-16T12:05:00Z"),
            LiveMessage("Marie", "broken", "not a date"),
            LiveMessage("Mickael", "first", "2026-01-16T12:00:00Z"),
        ]
        text = LiveContext.format(messages, header="[Live]")
        lines = text.split("\n")
        assert lines[0] == "[Live]"
        assert lines[1].startswith("• Mickael (") and lines[1].endswith(") : first")
        assert lines[2].startswith("• Lucas (")
        assert lines[3] == "• Marie (??/?? ??:??) : broken"

    def test_format_empty(self):
        assert LiveContext.format([], header="[Live]") == ""
