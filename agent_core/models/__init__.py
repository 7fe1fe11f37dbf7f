"""
Models module - Data structures and type definitions
"""

from .enums import (
    TaskStatus,
    TERMINAL_STATUSES,
    LogStatus,
    ReviewStatus,
    ArtifactType,
    MemoryScope,
    RiskLevel,
    BackoffStrategy,
    EffectType,
    PreconditionType,
    IntentType,
    ConstraintType,
    Severity,
)
from .task import (
    AgentIdentity,
    LogEntry,
    ReviewEntry,
    ToolCall,
    SubStep,
    Artifact,
    Task,
    new_task,
    now_ms,
)
from .policy import RetryPolicy, RetryPresets
from .decision import (
    Goal,
    Entity,
    Constraint,
    Intent,
    RetrievalContext,
    ActionOption,
    ConstraintViolation,
    Decision,
    FinishSignal,
    NextStep,
    OracleResponse,
)
from .messages import SystemEvent, create_system_event

__all__ = [
    "TaskStatus",
    "TERMINAL_STATUSES",
    "LogStatus",
    "ReviewStatus",
    "ArtifactType",
    "MemoryScope",
    "RiskLevel",
    "BackoffStrategy",
    "EffectType",
    "PreconditionType",
    "IntentType",
    "ConstraintType",
    "Severity",
    "AgentIdentity",
    "LogEntry",
    "ReviewEntry",
    "ToolCall",
    "SubStep",
    "Artifact",
    "Task",
    "new_task",
    "now_ms",
    "RetryPolicy",
    "RetryPresets",
    "Goal",
    "Entity",
    "Constraint",
    "Intent",
    "RetrievalContext",
    "ActionOption",
    "ConstraintViolation",
    "Decision",
    "FinishSignal",
    "NextStep",
    "OracleResponse",
    "SystemEvent",
    "create_system_event",
]
