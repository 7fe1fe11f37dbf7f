"""
Tool contract - What a tool declares about itself

A Tool bundles its handler with:
- an argument model (pydantic) validated before anything else happens
- optional return model
- preconditions (checkable predicates, some recoverable)
- effects (create/update/delete/side_effect, optionally reversible)
- a timeout and a RetryPolicy
- security flags (requires_approval, allowed_roles)
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, Union

from pydantic import BaseModel, ConfigDict

from agent_core.models.enums import EffectType, PreconditionType
from agent_core.models.policy import RetryPolicy, RetryPresets
from agent_core.models.task import now_ms


class FreeformArgs(BaseModel):
    """Argument model that accepts any keyword arguments."""
    model_config = ConfigDict(extra="allow")


@dataclass
class ToolContext:
    """
    Execution context handed to preconditions and handlers.

    Attributes:
        session_id: Identifier of the running session
        permissions: Permission names granted to the caller
        resources: Resource handles keyed by name (also used for state checks)
        task_id: Task on whose behalf the tool runs (journal key for rollback)
        agent_name: Name of the agent that issued the call
        agent_role: Role of that agent (checked against allowed_roles)
    """
    session_id: str = "default"
    permissions: Set[str] = field(default_factory=set)
    resources: Dict[str, Any] = field(default_factory=dict)
    task_id: Optional[str] = None
    agent_name: Optional[str] = None
    agent_role: Optional[str] = None
    user_id: Optional[str] = None


MaybeAwaitable = Union[Any, Awaitable[Any]]
CheckFn = Callable[[ToolContext, Any], MaybeAwaitable]


@dataclass
class Precondition:
    """
    A requirement checked before a tool runs.

    ``recover`` is consulted only for recoverable preconditions; the check is
    re-evaluated after it returns.
    """
    type: PreconditionType
    check: CheckFn
    message: str
    recoverable: bool = False
    recover: Optional[CheckFn] = None


@dataclass
class AppliedEffect:
    """An effect recorded after a successful execution."""
    tool_name: str
    effect: "Effect"
    args: Any
    result: Any
    context: ToolContext
    applied_at: int = field(default_factory=now_ms)


@dataclass
class Effect:
    """A declared side effect of a tool."""
    type: EffectType
    target: str
    description: str = ""
    reversible: bool = False
    rollback: Optional[Callable[[AppliedEffect], MaybeAwaitable]] = None


Handler = Callable[[Any, ToolContext], MaybeAwaitable]


@dataclass
class Tool:
    """
    A registered capability.

    Usage:
        class ReadFileArgs(BaseModel):
            path: str

        async def read_file(args: ReadFileArgs, context: ToolContext) -> str:
            ...

        registry.register(Tool(
            name="read_file",
            description="Read a file from the workspace",
            handler=read_file,
            args_model=ReadFileArgs,
            preconditions=[PreconditionFactory.has_permission("fs:read")],
            timeout_ms=5000,
            retry=RetryPresets.CONSERVATIVE,
        ))
    """
    name: str
    description: str
    handler: Handler
    args_model: Type[BaseModel] = FreeformArgs
    returns_model: Optional[Type[BaseModel]] = None
    preconditions: List[Precondition] = field(default_factory=list)
    effects: List[Effect] = field(default_factory=list)
    timeout_ms: int = 30000
    retry: RetryPolicy = RetryPresets.CONSERVATIVE
    requires_approval: bool = False
    allowed_roles: List[str] = field(default_factory=list)
    version: str = "1.0.0"

    def __post_init__(self):
        if not self.name:
            raise ValueError("tool name cannot be empty")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

    def describe(self) -> Dict[str, Any]:
        """Schema summary used in oracle prompts."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.args_model.model_json_schema(),
            "requires_approval": self.requires_approval,
        }


@dataclass
class ToolResult:
    """Successful outcome of ToolRegistry.execute."""
    output: Any
    duration_ms: int
    attempts: int = 1
    retries: int = 0


@dataclass
class ToolExecution:
    """Audit record of one ToolRegistry.execute call."""
    tool_name: str
    args: Dict[str, Any]
    task_id: Optional[str]
    success: bool
    started_at: int
    duration_ms: int
    attempts: int
    retries: int
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None


async def maybe_await(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` and await the result when it is awaitable."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


# ============================================================================
# Precondition Factory
# ============================================================================

class PreconditionFactory:
    """Builders for the common precondition shapes."""

    @staticmethod
    def resource_exists(resource_name: str) -> Precondition:
        return Precondition(
            type=PreconditionType.RESOURCE,
            check=lambda context, args: resource_name in context.resources,
            message=f"Resource {resource_name} does not exist",
            recoverable=False,
        )

    @staticmethod
    def has_permission(permission: str) -> Precondition:
        return Precondition(
            type=PreconditionType.PERMISSION,
            check=lambda context, args: permission in context.permissions,
            message=f"Missing permission: {permission}",
            recoverable=False,
        )

    @staticmethod
    def state_equals(key: str, value: Any, recover: Optional[CheckFn] = None) -> Precondition:
        return Precondition(
            type=PreconditionType.STATE,
            check=lambda context, args: context.resources.get(key) == value,
            message=f"State {key} does not equal {value}",
            recoverable=True,
            recover=recover,
        )

    @staticmethod
    def data_valid(validator: Callable[[Any], bool], message: str = "Data validation failed") -> Precondition:
        return Precondition(
            type=PreconditionType.DATA,
            check=lambda context, args: validator(args),
            message=message,
            recoverable=False,
        )
