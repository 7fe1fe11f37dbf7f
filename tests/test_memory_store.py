"""
Tests for the scoped memory store and its backends.
"""

import asyncio
from unittest.mock import patch

import pytest
import redis

from agent_core.config import MemoryConfig
from agent_core.memory import (
    InMemoryBackend,
    MemoryStore,
    RedisMemoryBackend,
    build_backend,
)
from agent_core.models import MemoryScope
from agent_core.utils.exceptions import MemoryBackendError


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRedis:
    """Hash-only subset of the redis client used by the memory backend."""

    def __init__(self):
        self.hashes = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("connection refused")

    def hget(self, name, key):
        self._check()
        return self.hashes.get(name, {}).get(key)

    def hset(self, name, key, value):
        self._check()
        self.hashes.setdefault(name, {})[key] = value
        return 1

    def hdel(self, name, key):
        self._check()
        return 1 if self.hashes.get(name, {}).pop(key, None) is not None else 0

    def hlen(self, name):
        self._check()
        return len(self.hashes.get(name, {}))

    def delete(self, name):
        self._check()
        return 1 if self.hashes.pop(name, None) is not None else 0

    def hgetall(self, name):
        self._check()
        return dict(self.hashes.get(name, {}))

    def hexists(self, name, key):
        self._check()
        return key in self.hashes.get(name, {})


class TestBasicOperations:
    """write / read / delete / clear"""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = MemoryStore(MemoryConfig(max_working_memory=3), backend=InMemoryBackend(), clock=self.clock)

    def test_write_then_read(self):
        self.store.write("working", "plan", {"steps": 3})
        assert self.store.read(MemoryScope.WORKING, "plan") == {"steps": 3}

    def test_values_are_copied(self):
        value = {"items": [1]}
        self.store.write("longterm", "k", value)
        value["items"].append(2)

        assert self.store.read("longterm", "k") == {"items": [1]}

    def test_missing_key_reads_none(self):
        assert self.store.read("episodic", "nothing") is None

    def test_eviction_removes_oldest_write(self):
        for i in range(3):
            self.store.write("working", f"k{i}", i)
            self.clock.advance(10)

        self.store.write("working", "k3", 3)

        assert self.store.read("working", "k0") is None
        assert sorted(self.store.keys("working")) == ["k1", "k2", "k3"]

    def test_overwrite_does_not_evict(self):
        for i in range(3):
            self.store.write("working", f"k{i}", i)
            self.clock.advance(10)

        self.store.write("working", "k0", "updated")

        assert len(self.store.keys("working")) == 3
        assert self.store.read("working", "k0") == "updated"

    def test_delete_and_clear(self):
        self.store.write("longterm", "a", 1)
        self.store.write("longterm", "b", 2)

        assert self.store.delete("longterm", "a") is True
        assert self.store.delete("longterm", "a") is False
        assert self.store.clear("longterm") == 1
        assert self.store.keys("longterm") == []


class TestExpiry:
    """TTL handling, lazy and swept."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = MemoryStore(MemoryConfig(short_term_ttl_ms=1000), backend=InMemoryBackend(), clock=self.clock)

    def test_expired_entry_is_invisible(self):
        self.store.write("longterm", "temp", "value with ttl", ttl=100)
        self.clock.advance(150)

        assert self.store.read("longterm", "temp") is None
        assert self.store.search("longterm", "value") == []

    def test_shortterm_default_ttl(self):
        self.store.write("shortterm", "ctx", "x")
        self.clock.advance(999)
        assert self.store.read("shortterm", "ctx") == "x"

        self.clock.advance(2)
        assert self.store.read("shortterm", "ctx") is None

    def test_cleanup_removes_expired(self):
        self.store.write("shortterm", "a", 1)
        self.store.write("longterm", "b", 2)
        self.clock.advance(5000)

        assert self.store.cleanup() == 1
        assert self.store.keys("longterm") == ["b"]

    def test_background_sweep(self):
        self.store.write("shortterm", "a", 1)
        self.clock.advance(5000)

        async def main():
            self.store.start_background_sweep(interval_seconds=0.01)
            await asyncio.sleep(0.05)
            await self.store.stop_background_sweep()

        asyncio.run(main())

        assert self.store.backend.count("shortterm") == 0


class TestSearchAndLifecycle:
    """search, consolidate, compress, usage"""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = MemoryStore(MemoryConfig(), backend=InMemoryBackend(), clock=self.clock)

    def test_search_ranks_substring_first(self):
        self.store.write("episodic", "a", {"tool": "read_file", "note": "config"})
        self.clock.advance(1)
        self.store.write("episodic", "b", {"tool": "read", "note": "file listing"})
        self.clock.advance(1)
        self.store.write("episodic", "c", {"tool": "fetch_url"})

        matches = self.store.search("episodic", "read_file")

        assert [m.key for m in matches] == ["a"]
        assert matches[0].score == 1.0

    def test_search_token_overlap_and_recency(self):
        self.store.write("longterm", "old", "deploy the service")
        self.clock.advance(10)
        self.store.write("longterm", "new", "service deploy notes")
        self.clock.advance(10)
        self.store.write("longterm", "partial", "service only")

        matches = self.store.search("longterm", "deploy service", limit=2)

        assert [m.key for m in matches] == ["new", "old"]
        assert all(m.score == 1.0 for m in matches)

    def test_search_limit(self):
        for i in range(5):
            self.store.write("longterm", f"k{i}", "needle")
        assert len(self.store.search("longterm", "needle", limit=2)) == 2
        assert self.store.search("longterm", "   ") == []

    def test_consolidate_promotes_read_entries(self):
        self.store.write("shortterm", "read_me", {"v": 1})
        self.store.write("shortterm", "ignored", {"v": 2})
        self.store.read("shortterm", "read_me")

        promoted = self.store.consolidate("shortterm", "longterm")

        assert promoted == 1
        assert self.store.read("longterm", "read_me") == {"v": 1}
        assert self.store.read("shortterm", "read_me") == {"v": 1}
        assert self.store.read("longterm", "ignored") is None

    def test_compress_groups_by_type(self):
        self.store.write("episodic", "a1", {"type": "action", "tool": "x"})
        self.store.write("episodic", "a2", {"type": "action", "tool": "y"})
        self.store.write("episodic", "n1", "plain note")
        self.clock.advance(10_000)
        self.store.write("episodic", "fresh", {"type": "action"})

        removed = self.store.compress("episodic", 5000)

        assert removed == 3
        keys = self.store.keys("episodic")
        assert "fresh" in keys
        summaries = {
            self.store.read("episodic", key)["type"]: self.store.read("episodic", key)
            for key in keys if key.startswith("compressed_")
        }
        assert summaries["action"]["count"] == 2
        assert summaries["unknown"]["count"] == 1
        assert summaries["action"]["compressedAt"] == self.clock.now

    def test_usage_reports_every_scope(self):
        self.store.write("working", "a", "x")
        usage = {row["scope"]: row for row in self.store.get_usage()}

        assert set(usage) == {"working", "shortterm", "longterm", "episodic"}
        assert usage["working"]["count"] == 1
        assert usage["working"]["size"] > 0


class TestRedisBackend:
    """Redis persistence through a fake client."""

    def setup_method(self):
        self.client = FakeRedis()
        self.clock = FakeClock()
        self.store = MemoryStore(
            MemoryConfig(max_working_memory=2),
            backend=RedisMemoryBackend(self.client, prefix="test"),
            clock=self.clock,
        )

    def test_entries_persist_as_json(self):
        self.store.write("longterm", "pattern", {"tool": "x"})

        assert "pattern" in self.client.hashes["test:longterm"]
        assert self.store.read("longterm", "pattern") == {"tool": "x"}

    def test_access_count_persisted(self):
        self.store.write("shortterm", "k", 1)
        self.store.read("shortterm", "k")

        assert self.store.consolidate("shortterm", "longterm") == 1

    def test_eviction_on_redis(self):
        self.store.write("working", "a", 1)
        self.clock.advance(5)
        self.store.write("working", "b", 2)
        self.clock.advance(5)
        self.store.write("working", "c", 3)

        assert sorted(self.store.keys("working")) == ["b", "c"]

    def test_client_errors_become_backend_errors(self):
        self.client.fail = True

        with pytest.raises(MemoryBackendError) as exc_info:
            self.store.read("longterm", "x")

        assert exc_info.value.operation == "get"

    def test_build_backend_falls_back(self):
        failure = MemoryBackendError("connect", "cannot reach redis://nowhere")
        with patch.object(RedisMemoryBackend, "from_url", side_effect=failure):
            backend = build_backend("redis", "redis://nowhere")

        assert isinstance(backend, InMemoryBackend)
