"""
Memory Store - Scoped key/value memory with TTL, eviction and consolidation

Scopes:
- working:   capacity-bounded, no default TTL, cleared at the end of every run
- shortterm: capacity-bounded, default TTL (1 hour)
- longterm:  unbounded, no TTL (playbooks, learned patterns)
- episodic:  unbounded, no TTL (per-step action records), compressed over time

Features:
- Strict oldest-by-write eviction when a bounded scope is full
- Lazy expiry on read plus a periodic background sweep
- Ranked text search (substring match, else token overlap; ties by recency)
- Promotion between scopes (always copies) and lossy compression by type

Usage:
    store = MemoryStore(config.memory)
    store.write("shortterm", "session_context", {"user": "alice"})
    store.read("shortterm", "session_context")
    store.search("episodic", "read_file", limit=3)
"""

import asyncio
import copy
import json
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from agent_core.config.agent_config import MemoryConfig
from agent_core.memory.backends import MemoryBackend, MemoryEntry, InMemoryBackend, build_backend
from agent_core.models.enums import MemoryScope
from agent_core.models.task import now_ms
from agent_core.utils.logger import get_logger

logger = get_logger(__name__)

ScopeLike = Union[MemoryScope, str]

_TOKEN_RE = re.compile(r"\w+")


@dataclass
class MemoryMatch:
    key: str
    value: Any
    score: float
    timestamp: int


class MemoryStore:
    """
    Scoped memory with per-scope capacity and TTL policy.

    All operations are synchronous and serialized by one lock; the only
    asynchronous part is the optional background sweep.
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        backend: Optional[MemoryBackend] = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the store.

        Args:
            config: Capacities, TTLs and backend selection
            backend: Explicit backend (overrides config.backend)
            clock: Returns the current time in epoch milliseconds
        """
        self.config = config or MemoryConfig()
        self.backend = backend or build_backend(
            self.config.backend, self.config.redis_url, self.config.redis_prefix
        )
        self._clock = clock
        self._lock = threading.RLock()
        self._sweeper: Optional["asyncio.Task[None]"] = None

        self._capacity: Dict[MemoryScope, Optional[int]] = {
            MemoryScope.WORKING: self.config.max_working_memory,
            MemoryScope.SHORT_TERM: self.config.max_short_term,
            MemoryScope.LONG_TERM: None,
            MemoryScope.EPISODIC: None,
        }
        self._default_ttl: Dict[MemoryScope, Optional[int]] = {
            MemoryScope.WORKING: None,
            MemoryScope.SHORT_TERM: self.config.short_term_ttl_ms,
            MemoryScope.LONG_TERM: None,
            MemoryScope.EPISODIC: None,
        }

        logger.debug(f"[MEMORY] Store initialized with {self.backend.name} backend")

    # ============================================================================
    # Basic Operations
    # ============================================================================

    def write(self, scope: ScopeLike, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Store ``value`` under ``key``.

        Args:
            scope: Target scope
            key: Entry key (unique within the scope)
            value: Any JSON-compatible value; stored as a copy
            ttl: Time to live in milliseconds (scope default when omitted)
        """
        scope = MemoryScope(scope)
        with self._lock:
            capacity = self._capacity[scope]
            if capacity is not None and not self.backend.contains(scope.value, key):
                if self.backend.count(scope.value) >= capacity:
                    self._evict_oldest(scope)

            self.backend.put(scope.value, key, MemoryEntry(
                value=value,
                timestamp=self._clock(),
                ttl=ttl if ttl is not None else self._default_ttl[scope],
                access_count=0,
            ))

    def read(self, scope: ScopeLike, key: str) -> Optional[Any]:
        """Value stored under ``key``, or None when absent or expired (expired entries are deleted)."""
        scope = MemoryScope(scope)
        with self._lock:
            entry = self.backend.get(scope.value, key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self.backend.delete(scope.value, key)
                logger.debug(f"[MEMORY] Expired on read: {scope.value}/{key}")
                return None
            entry.access_count += 1
            if not isinstance(self.backend, InMemoryBackend):
                self.backend.put(scope.value, key, entry)
            return entry.value

    def delete(self, scope: ScopeLike, key: str) -> bool:
        scope = MemoryScope(scope)
        with self._lock:
            return self.backend.delete(scope.value, key)

    def clear(self, scope: ScopeLike) -> int:
        """Remove every entry of a scope. Returns how many were removed."""
        scope = MemoryScope(scope)
        with self._lock:
            cleared = self.backend.clear(scope.value)
        if cleared:
            logger.debug(f"[MEMORY] Cleared {cleared} entries from {scope.value}")
        return cleared

    def keys(self, scope: ScopeLike) -> List[str]:
        scope = MemoryScope(scope)
        with self._lock:
            now = self._clock()
            return [key for key, entry in self.backend.items(scope.value) if not entry.is_expired(now)]

    # ============================================================================
    # Search Operations
    # ============================================================================

    def search(self, scope: ScopeLike, query: str, limit: int = 10) -> List[MemoryMatch]:
        """
        Rank unexpired entries of a scope against ``query``.

        A value whose JSON text contains the whole query scores 1.0; otherwise
        the score is the fraction of query tokens found in the value. Ties are
        broken by most recent write.
        """
        scope = MemoryScope(scope)
        query_lower = query.lower().strip()
        if not query_lower or limit <= 0:
            return []

        matches: List[MemoryMatch] = []
        with self._lock:
            now = self._clock()
            for key, entry in self.backend.items(scope.value):
                if entry.is_expired(now):
                    continue
                score = self._match_score(entry.value, query_lower)
                if score > 0:
                    matches.append(MemoryMatch(
                        key=key,
                        value=copy.deepcopy(entry.value),
                        score=score,
                        timestamp=entry.timestamp,
                    ))

        matches.sort(key=lambda m: (-m.score, -m.timestamp))
        return matches[:limit]

    @staticmethod
    def _match_score(value: Any, query_lower: str) -> float:
        haystack = json.dumps(value, default=str).lower()
        if query_lower in haystack:
            return 1.0
        query_tokens = set(_TOKEN_RE.findall(query_lower))
        if not query_tokens:
            return 0.0
        value_tokens = set(_TOKEN_RE.findall(haystack))
        return len(query_tokens & value_tokens) / len(query_tokens)

    # ============================================================================
    # Lifecycle Management
    # ============================================================================

    def cleanup(self, scope: Optional[ScopeLike] = None) -> int:
        """Delete expired entries from one scope (or all). Returns how many were removed."""
        scopes = [MemoryScope(scope)] if scope else list(MemoryScope)
        removed = 0
        with self._lock:
            now = self._clock()
            for current in scopes:
                for key, entry in self.backend.items(current.value):
                    if entry.is_expired(now):
                        self.backend.delete(current.value, key)
                        removed += 1
        if removed:
            logger.debug(f"[MEMORY] Sweep removed {removed} expired entries")
        return removed

    def consolidate(self, from_scope: ScopeLike, to_scope: ScopeLike) -> int:
        """
        Promote previously-read, unexpired entries of ``from_scope`` into
        ``to_scope``. Sources are kept; destinations receive copies.
        """
        source = MemoryScope(from_scope)
        target = MemoryScope(to_scope)
        promoted = 0
        with self._lock:
            now = self._clock()
            candidates = [
                (key, entry) for key, entry in self.backend.items(source.value)
                if not entry.is_expired(now) and entry.access_count > 0
            ]
            for key, entry in candidates:
                self.write(target, key, copy.deepcopy(entry.value))
                promoted += 1
        logger.info(f"[MEMORY] Consolidated {promoted} entries {source.value} -> {target.value}")
        return promoted

    def compress(self, scope: ScopeLike, older_than: int) -> int:
        """
        Replace entries written more than ``older_than`` ms ago with one
        summary record per inferred type (``value["type"]``, else "unknown").

        Returns:
            Number of original entries removed
        """
        scope = MemoryScope(scope)
        with self._lock:
            now = self._clock()
            cutoff = now - older_than
            groups: Dict[str, List[MemoryEntry]] = {}
            old_keys: List[str] = []

            for key, entry in self.backend.items(scope.value):
                if entry.timestamp < cutoff:
                    groups.setdefault(self._extract_type(entry.value), []).append(entry)
                    old_keys.append(key)

            for key in old_keys:
                self.backend.delete(scope.value, key)

            for value_type, entries in groups.items():
                self.write(scope, f"compressed_{value_type}_{cutoff}", {
                    "type": value_type,
                    "count": len(entries),
                    "summary": {
                        "count": len(entries),
                        "firstTimestamp": min(e.timestamp for e in entries),
                        "lastTimestamp": max(e.timestamp for e in entries),
                    },
                    "compressedAt": now,
                })

        if old_keys:
            logger.info(
                f"[MEMORY] Compressed {len(old_keys)} {scope.value} entries into {len(groups)} summaries"
            )
        return len(old_keys)

    def get_usage(self) -> List[Dict[str, Any]]:
        """Entry count and serialized size per scope."""
        usage = []
        with self._lock:
            for scope in MemoryScope:
                entries = [entry.to_dict() for _, entry in self.backend.items(scope.value)]
                usage.append({
                    "scope": scope.value,
                    "count": len(entries),
                    "size": len(json.dumps(entries, default=str)),
                })
        return usage

    # ============================================================================
    # Background Sweep
    # ============================================================================

    def start_background_sweep(self, interval_seconds: Optional[float] = None) -> "asyncio.Task[None]":
        """Start the periodic expiry sweep on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper
        interval = interval_seconds or self.config.sweep_interval_seconds
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(interval))
        return self._sweeper

    async def stop_background_sweep(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"[MEMORY] Background sweep failed: {e}")

    # ============================================================================
    # Utilities
    # ============================================================================

    def _evict_oldest(self, scope: MemoryScope) -> None:
        oldest_key: Optional[str] = None
        oldest_time: Optional[int] = None
        for key, entry in self.backend.items(scope.value):
            if oldest_time is None or entry.timestamp < oldest_time:
                oldest_key, oldest_time = key, entry.timestamp
        if oldest_key is not None:
            self.backend.delete(scope.value, oldest_key)
            logger.debug(f"[MEMORY] Evicted oldest entry {scope.value}/{oldest_key}")

    @staticmethod
    def _extract_type(value: Any) -> str:
        if isinstance(value, dict) and value.get("type"):
            return str(value["type"])
        return "unknown"
