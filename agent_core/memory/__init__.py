"""
Memory module - Scoped memory store and its storage backends
"""

from .backends import MemoryEntry, MemoryBackend, InMemoryBackend, RedisMemoryBackend, build_backend
from .store import MemoryStore, MemoryMatch

__all__ = [
    "MemoryEntry",
    "MemoryBackend",
    "InMemoryBackend",
    "RedisMemoryBackend",
    "build_backend",
    "MemoryStore",
    "MemoryMatch",
]
