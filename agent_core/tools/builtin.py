"""
Built-in tools - Memory tools and the argument models of the two tool calls
the reasoning loop handles itself (delegation and artifacts)
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from agent_core.memory.store import MemoryStore
from agent_core.models.enums import ArtifactType, EffectType, MemoryScope
from agent_core.models.policy import RetryPresets
from agent_core.tools.contract import AppliedEffect, Effect, Tool, ToolContext
from agent_core.tools.registry import ToolRegistry


DELEGATE_TOOL = "create_and_delegate_task_to_new_agent"
ARTIFACT_TOOL = "createArtifact"


# ============================================================================
# Loop-handled tool calls
# ============================================================================

class DelegateArgs(BaseModel):
    """Arguments of a delegation to a newly spawned agent."""
    agent_name: str = Field(min_length=1)
    agent_instructions: str = ""
    task_description: str = Field(min_length=1)
    agent_icon: Optional[str] = None


class ArtifactArgs(BaseModel):
    """Arguments of an artifact-producing call."""
    title: str = Field(min_length=1)
    type: ArtifactType = ArtifactType.MARKDOWN
    content: str


# ============================================================================
# Memory tools
# ============================================================================

class MemorySaveArgs(BaseModel):
    key: str = Field(min_length=1)
    value: Any
    scope: MemoryScope = MemoryScope.LONG_TERM
    tags: List[str] = Field(default_factory=list)
    ttl: Optional[int] = Field(default=None, ge=1)


class MemoryRetrieveArgs(BaseModel):
    key: str = Field(min_length=1)
    scope: MemoryScope = MemoryScope.LONG_TERM


class MemorySearchArgs(BaseModel):
    query: str = Field(min_length=1)
    scope: MemoryScope = MemoryScope.LONG_TERM
    limit: int = Field(default=5, ge=1, le=50)


class MemoryDeleteArgs(BaseModel):
    key: str = Field(min_length=1)
    scope: MemoryScope = MemoryScope.LONG_TERM


def register_memory_tools(registry: ToolRegistry, store: MemoryStore) -> None:
    """Register memory_save, memory_retrieve, memory_search and memory_delete."""

    def save(args: MemorySaveArgs, context: ToolContext) -> Dict[str, Any]:
        previous = store.read(args.scope, args.key)
        value = {"value": args.value, "tags": args.tags} if args.tags else args.value
        store.write(args.scope, args.key, value, ttl=args.ttl)
        return {"scope": args.scope.value, "key": args.key, "previous": previous}

    def undo_save(applied: AppliedEffect) -> None:
        result = applied.result
        if result["previous"] is None:
            store.delete(result["scope"], result["key"])
        else:
            store.write(result["scope"], result["key"], result["previous"])

    def retrieve(args: MemoryRetrieveArgs, context: ToolContext) -> Any:
        value = store.read(args.scope, args.key)
        if value is None:
            return f"No memory stored under '{args.key}' in {args.scope.value}"
        return value

    def search(args: MemorySearchArgs, context: ToolContext) -> List[Dict[str, Any]]:
        return [
            {"key": match.key, "value": match.value, "score": round(match.score, 3)}
            for match in store.search(args.scope, args.query, limit=args.limit)
        ]

    def delete(args: MemoryDeleteArgs, context: ToolContext) -> str:
        if store.delete(args.scope, args.key):
            return f"Deleted '{args.key}' from {args.scope.value}"
        return f"Nothing stored under '{args.key}' in {args.scope.value}"

    registry.register(Tool(
        name="memory_save",
        description="Save a value to memory under a key so it can be retrieved later",
        handler=save,
        args_model=MemorySaveArgs,
        effects=[Effect(
            type=EffectType.UPDATE,
            target="memory",
            description="writes one memory entry",
            reversible=True,
            rollback=undo_save,
        )],
        timeout_ms=5000,
        retry=RetryPresets.NONE,
    ))
    registry.register(Tool(
        name="memory_retrieve",
        description="Get a value previously saved to memory by key",
        handler=retrieve,
        args_model=MemoryRetrieveArgs,
        timeout_ms=5000,
        retry=RetryPresets.NONE,
    ))
    registry.register(Tool(
        name="memory_search",
        description="Search memory entries matching a text query",
        handler=search,
        args_model=MemorySearchArgs,
        timeout_ms=5000,
        retry=RetryPresets.NONE,
    ))
    registry.register(Tool(
        name="memory_delete",
        description="Delete a memory entry by key",
        handler=delete,
        args_model=MemoryDeleteArgs,
        effects=[Effect(type=EffectType.DELETE, target="memory", description="removes one memory entry")],
        timeout_ms=5000,
        retry=RetryPresets.NONE,
    ))
