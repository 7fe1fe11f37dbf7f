"""
Memory backends - Keyed storage behind the MemoryStore

Two backends share one small interface:
- InMemoryBackend: dict of dicts, the default
- RedisMemoryBackend: one Redis hash per scope (``<prefix>:<scope>``), one
  hash field per key, entries JSON-encoded with epoch-millisecond timestamps

Scope policy (capacity, TTL, eviction) lives in the MemoryStore; backends
only store and return MemoryEntry records.
"""

import copy
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

import redis

from agent_core.utils.exceptions import MemoryBackendError
from agent_core.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class MemoryEntry:
    """Stored value with its write time (epoch ms), optional TTL (ms) and read count."""
    value: Any
    timestamp: int
    ttl: Optional[int] = None
    access_count: int = 0

    def is_expired(self, now: int) -> bool:
        if self.ttl is None:
            return False
        return now > self.timestamp + self.ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "timestamp": self.timestamp,
            "ttl": self.ttl,
            "accessCount": self.access_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        return cls(
            value=data.get("value"),
            timestamp=int(data["timestamp"]),
            ttl=None if data.get("ttl") is None else int(data["ttl"]),
            access_count=int(data.get("accessCount", 0)),
        )


class MemoryBackend:
    """Interface of a scope-partitioned entry store."""

    name = "abstract"

    def get(self, scope: str, key: str) -> Optional[MemoryEntry]:
        raise NotImplementedError

    def put(self, scope: str, key: str, entry: MemoryEntry) -> None:
        raise NotImplementedError

    def delete(self, scope: str, key: str) -> bool:
        raise NotImplementedError

    def clear(self, scope: str) -> int:
        raise NotImplementedError

    def items(self, scope: str) -> Iterator[Tuple[str, MemoryEntry]]:
        raise NotImplementedError

    def count(self, scope: str) -> int:
        raise NotImplementedError

    def contains(self, scope: str, key: str) -> bool:
        return self.get(scope, key) is not None


class InMemoryBackend(MemoryBackend):
    """Process-local backend. Values are deep-copied on the way in."""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, Dict[str, MemoryEntry]] = {}

    def _scope(self, scope: str) -> Dict[str, MemoryEntry]:
        return self._data.setdefault(scope, {})

    def get(self, scope: str, key: str) -> Optional[MemoryEntry]:
        return self._scope(scope).get(key)

    def put(self, scope: str, key: str, entry: MemoryEntry) -> None:
        storage = self._scope(scope)
        # re-insert so dict order follows write order
        storage.pop(key, None)
        storage[key] = MemoryEntry(
            value=copy.deepcopy(entry.value),
            timestamp=entry.timestamp,
            ttl=entry.ttl,
            access_count=entry.access_count,
        )

    def delete(self, scope: str, key: str) -> bool:
        return self._scope(scope).pop(key, None) is not None

    def clear(self, scope: str) -> int:
        storage = self._scope(scope)
        cleared = len(storage)
        storage.clear()
        return cleared

    def items(self, scope: str) -> Iterator[Tuple[str, MemoryEntry]]:
        return iter(list(self._scope(scope).items()))

    def count(self, scope: str) -> int:
        return len(self._scope(scope))

    def contains(self, scope: str, key: str) -> bool:
        return key in self._scope(scope)


class RedisMemoryBackend(MemoryBackend):
    """
    Redis-backed durable backend.

    Usage:
        backend = RedisMemoryBackend.from_url("redis://localhost:6379/0")
        store = MemoryStore(config.memory, backend=backend)

    Errors raised by the client surface as MemoryBackendError.
    """

    name = "redis"

    def __init__(self, client: "redis.Redis", prefix: str = "agent_core:memory"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "agent_core:memory") -> "RedisMemoryBackend":
        """
        Connect and ping.

        Raises:
            MemoryBackendError: if the server cannot be reached
        """
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        try:
            client.ping()
        except redis.RedisError as e:
            raise MemoryBackendError("connect", f"cannot reach {url}", original_error=e) from e
        logger.info(f"[REDIS] Memory backend connected at {url}")
        return cls(client, prefix=prefix)

    def _hash_key(self, scope: str) -> str:
        return f"{self.prefix}:{scope}"

    def _decode(self, raw: Any) -> MemoryEntry:
        return MemoryEntry.from_dict(json.loads(raw))

    def get(self, scope: str, key: str) -> Optional[MemoryEntry]:
        try:
            raw = self.client.hget(self._hash_key(scope), key)
        except redis.RedisError as e:
            raise MemoryBackendError("get", str(e), original_error=e) from e
        return None if raw is None else self._decode(raw)

    def put(self, scope: str, key: str, entry: MemoryEntry) -> None:
        try:
            payload = json.dumps(entry.to_dict())
        except (TypeError, ValueError) as e:
            raise MemoryBackendError("put", f"value for '{key}' is not JSON serializable", e) from e
        try:
            self.client.hset(self._hash_key(scope), key, payload)
        except redis.RedisError as e:
            raise MemoryBackendError("put", str(e), original_error=e) from e

    def delete(self, scope: str, key: str) -> bool:
        try:
            return bool(self.client.hdel(self._hash_key(scope), key))
        except redis.RedisError as e:
            raise MemoryBackendError("delete", str(e), original_error=e) from e

    def clear(self, scope: str) -> int:
        try:
            cleared = self.client.hlen(self._hash_key(scope))
            self.client.delete(self._hash_key(scope))
        except redis.RedisError as e:
            raise MemoryBackendError("clear", str(e), original_error=e) from e
        return int(cleared)

    def items(self, scope: str) -> Iterator[Tuple[str, MemoryEntry]]:
        try:
            raw_items = self.client.hgetall(self._hash_key(scope))
        except redis.RedisError as e:
            raise MemoryBackendError("items", str(e), original_error=e) from e
        entries = [(key, self._decode(raw)) for key, raw in raw_items.items()]
        entries.sort(key=lambda item: item[1].timestamp)
        return iter(entries)

    def count(self, scope: str) -> int:
        try:
            return int(self.client.hlen(self._hash_key(scope)))
        except redis.RedisError as e:
            raise MemoryBackendError("count", str(e), original_error=e) from e

    def contains(self, scope: str, key: str) -> bool:
        try:
            return bool(self.client.hexists(self._hash_key(scope), key))
        except redis.RedisError as e:
            raise MemoryBackendError("contains", str(e), original_error=e) from e


def build_backend(backend: str = "memory", redis_url: str = "", prefix: str = "agent_core:memory") -> MemoryBackend:
    """
    Create the configured backend.

    An unreachable Redis server degrades to the in-memory backend with a
    warning, so a run can still proceed without durability.
    """
    if backend == "redis":
        try:
            return RedisMemoryBackend.from_url(redis_url, prefix=prefix)
        except MemoryBackendError as e:
            logger.warning(f"[REDIS] {e}")
            logger.warning("[REDIS] Falling back to in-memory storage (no durability)")
    return InMemoryBackend()
