"""
Tools module - Tool contracts, the registry and built-in tools
"""

from agent_core.models.policy import RetryPolicy, RetryPresets
from .contract import (
    FreeformArgs,
    ToolContext,
    Precondition,
    Effect,
    AppliedEffect,
    Tool,
    ToolResult,
    ToolExecution,
    PreconditionFactory,
)
from .registry import ToolRegistry
from .builtin import (
    DELEGATE_TOOL,
    ARTIFACT_TOOL,
    DelegateArgs,
    ArtifactArgs,
    register_memory_tools,
)

__all__ = [
    "RetryPolicy",
    "RetryPresets",
    "FreeformArgs",
    "ToolContext",
    "Precondition",
    "Effect",
    "AppliedEffect",
    "Tool",
    "ToolResult",
    "ToolExecution",
    "PreconditionFactory",
    "ToolRegistry",
    "DELEGATE_TOOL",
    "ARTIFACT_TOOL",
    "DelegateArgs",
    "ArtifactArgs",
    "register_memory_tools",
]
