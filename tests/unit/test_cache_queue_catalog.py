"""
Unit tests for the read cache, the offline write queue and the topic catalog.
"""

import json

import pytest

from mastery_sprint.analytics.cache import StalenessCache
from mastery_sprint.core.catalog import TopicCatalog
from mastery_sprint.core.errors import CollaboratorUnavailableError
from mastery_sprint.stores.offline_queue import (
    OP_APPEND_RECORD,
    OP_PUT_SPRINT,
    OfflineQueue,
)


class TestStalenessCache:
    def test_caller_decides_freshness(self):
        clock = [100.0]
        cache = StalenessCache(clock=lambda: clock[0])
        cache.put(("alice", "model"), "v1")

        clock[0] = 130.0

        assert cache.get(("alice", "model"), max_age=60) == "v1"
        assert cache.get(("alice", "model"), max_age=10) is None
        assert cache.get_any(("alice", "model")).value == "v1"

    def test_bounded_by_least_recent_use(self):
        cache = StalenessCache(max_entries=2)
        cache.put(("alice", "model"), 1)
        cache.put(("bob", "model"), 2)
        assert cache.get(("alice", "model"), 60) == 1

        cache.put(("carol", "model"), 3)

        assert len(cache) == 2
        assert cache.get_any(("bob", "model")) is None
        assert cache.get(("alice", "model"), 60) == 1
        assert cache.get(("carol", "model"), 60) == 3

    def test_invalidate_prefix(self):
        cache = StalenessCache()
        cache.put(("alice", "model"), 1)
        cache.put(("alice", "metrics", None), 2)
        cache.put(("bob", "model"), 3)

        cache.invalidate_prefix("alice")

        assert cache.get_any(("alice", "model")) is None
        assert cache.get_any(("alice", "metrics", None)) is None
        assert cache.get(("bob", "model"), 60) == 3


class TestOfflineQueue:
    """Tests for ordered, persisted deferred writes."""

    def test_persisted_across_instances(self, tmp_path):
        path = tmp_path / "queue" / "offline.json"
        queue = OfflineQueue(path)
        queue.enqueue(OP_APPEND_RECORD, "alice", {"activity_id": "a1"})
        queue.enqueue(OP_PUT_SPRINT, "bob", {"sprint_id": "s1"})

        reloaded = OfflineQueue(path)

        assert [(i.op, i.user_id) for i in reloaded.pending()] == [
            (OP_APPEND_RECORD, "alice"),
            (OP_PUT_SPRINT, "bob"),
        ]
        assert len(reloaded.pending("alice")) == 1

    def test_unreadable_file_raises(self, tmp_path):
        path = tmp_path / "offline.json"
        path.write_text("{not json")

        with pytest.raises(json.JSONDecodeError):
            OfflineQueue(path)

    def test_discard_user(self, tmp_path):
        queue = OfflineQueue(tmp_path / "offline.json")
        queue.enqueue(OP_APPEND_RECORD, "alice", {})
        queue.enqueue(OP_APPEND_RECORD, "bob", {})
        queue.enqueue(OP_APPEND_RECORD, "alice", {})

        assert queue.discard_user("alice") == 2
        assert len(OfflineQueue(tmp_path / "offline.json")) == 1

    @pytest.mark.asyncio
    async def test_replay_in_order(self):
        queue = OfflineQueue()
        for n in range(3):
            queue.enqueue(OP_APPEND_RECORD, "alice", {"n": n})
        seen = []

        async def handler(op):
            seen.append(op.payload["n"])

        applied = await queue.replay(handler)

        assert seen == [0, 1, 2]
        assert len(applied) == 3
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_replay_halts_at_unavailable(self):
        queue = OfflineQueue()
        for n in range(3):
            queue.enqueue(OP_APPEND_RECORD, "alice", {"n": n})

        async def handler(op):
            if op.payload["n"] == 1:
                raise CollaboratorUnavailableError("still down")

        applied = await queue.replay(handler)

        assert [op.payload["n"] for op in applied] == [0]
        assert [op.payload["n"] for op in queue.pending()] == [1, 2]
        assert queue.pending()[0].attempts == 1


class TestTopicCatalog:
    def test_load_mapping_form(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({
            "topics": {
                "joins": {"difficulty": 4, "adjacent": ["indexes"], "importance": 1.5},
                "indexes": {"difficulty": 6},
            }
        }))

        catalog = TopicCatalog.load(path)

        assert catalog.importance("joins") == 1.5
        assert catalog.next_level("joins") == ["indexes"]
        assert catalog.importance("unknown") == 1.0
        assert catalog.difficulty("unknown") == 5

    def test_load_list_form(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([{"name": "loops", "prerequisites": ["variables"]}, {"name": "variables"}]))

        catalog = TopicCatalog.load(path)

        assert catalog.prerequisites("loops") == ["variables"]

    def test_next_level_only_harder_topics(self, catalog):
        assert catalog.next_level("variables") == ["loops", "functions"]
        assert catalog.next_level("window-functions") == []

    def test_match_names_and_aliases(self, catalog):
        assert catalog.match("Recursive descent and SQL-JOINS") == ["recursion", "sql-joins"]
