"""
Decision module - Intent, constraint and action option structures
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .enums import IntentType, ConstraintType, RiskLevel, Severity
from .task import ToolCall


@dataclass
class Goal:
    """Natural-language goal handed to the decision pipeline."""
    description: str
    constraints: List[str] = field(default_factory=list)
    id: Optional[str] = None
    type: Optional[IntentType] = None


@dataclass(frozen=True)
class Entity:
    type: str
    value: str
    confidence: float


@dataclass(frozen=True)
class Constraint:
    type: ConstraintType
    value: str
    strict: bool = False


@dataclass
class Intent:
    type: IntentType
    confidence: float
    entities: List[Entity] = field(default_factory=list)
    constraints: List[Constraint] = field(default_factory=list)


@dataclass
class RetrievalContext:
    """Context gathered before option generation."""
    intent: Intent
    playbooks: List[Any] = field(default_factory=list)
    similar_cases: List[Any] = field(default_factory=list)
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionOption:
    """Candidate tool invocation."""
    tool: str
    args: Dict[str, Any]
    expected_outcome: str
    confidence: float
    risk: RiskLevel
    estimated_duration: float  # seconds
    requires_approval: bool = False


@dataclass(frozen=True)
class ConstraintViolation:
    constraint: Constraint
    reason: str
    severity: Severity


@dataclass
class Decision:
    """Selected action with up to three ranked alternatives."""
    tool: str
    args: Dict[str, Any]
    confidence: float
    alternatives: List[ActionOption] = field(default_factory=list)
    risk: RiskLevel = RiskLevel.LOW
    requires_approval: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(name=self.tool, args=dict(self.args))


# ============================================================================
# ORACLE PROTOCOL
# ============================================================================

@dataclass(frozen=True)
class FinishSignal:
    """Oracle verdict that the task is complete."""
    final_thought: str = ""


@dataclass(frozen=True)
class NextStep:
    """Oracle proposal for the next action."""
    thought: str
    tool_call: ToolCall


OracleResponse = Union[FinishSignal, NextStep]
