"""
Task module - Task, reasoning trace and artifact structures
"""

import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .enums import TaskStatus, LogStatus, ReviewStatus, ArtifactType


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class AgentIdentity:
    """Agent that owns a task."""
    name: str
    role: str = "Executor"
    instructions: str = ""
    icon: Optional[str] = None
    id: str = field(default_factory=lambda: f"agent-{uuid.uuid4().hex[:8]}")


@dataclass(frozen=True)
class LogEntry:
    """One task-visible log line."""
    status: LogStatus
    message: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "message": self.message, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ReviewEntry:
    """Reviewer verdict recorded on a task."""
    reviewer: str
    status: ReviewStatus
    comments: str = ""
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ToolCall:
    """A named tool invocation proposed by the oracle."""
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubStep:
    """One thought/act/observe iteration of a reasoning loop."""
    thought: str
    tool_call: ToolCall
    observation: str


@dataclass(frozen=True)
class Artifact:
    """Named, typed output of a task."""
    task_id: str
    title: str
    type: ArtifactType
    content: str
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "title": self.title,
            "type": self.type.value,
            "content": self.content,
        }


@dataclass
class Task:
    """
    Unit of scheduled work.

    Tasks are owned by the TaskScheduler and mutated only through its update
    path; every other component receives snapshots.
    """
    id: str
    title: str
    agent: AgentIdentity = field(default_factory=lambda: AgentIdentity(name="Executor"))
    status: TaskStatus = TaskStatus.QUEUED
    details: str = ""
    estimated_time: str = ""
    dependencies: List[str] = field(default_factory=list)
    logs: List[LogEntry] = field(default_factory=list)
    review_history: List[ReviewEntry] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    sub_steps: List[SubStep] = field(default_factory=list)
    delegator_task_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        if not isinstance(self.status, TaskStatus):
            self.status = TaskStatus(self.status)
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def description(self) -> str:
        """Goal text handed to the oracle."""
        return self.details or self.title

    def to_dict(self) -> Dict[str, Any]:
        """Serializable snapshot (enums as values, timestamps in epoch ms)."""
        data = asdict(self)
        data["status"] = self.status.value
        data["logs"] = [entry.to_dict() for entry in self.logs]
        data["review_history"] = [
            {**asdict(review), "status": review.status.value} for review in self.review_history
        ]
        return data


def new_task(
    title: str,
    details: str = "",
    dependencies: Optional[List[str]] = None,
    agent: Optional[AgentIdentity] = None,
    task_id: Optional[str] = None,
    max_retries: int = 3,
    delegator_task_id: Optional[str] = None,
) -> Task:
    """Create a Queued task with a fresh id."""
    return Task(
        id=task_id or f"task-{uuid.uuid4().hex[:8]}",
        title=title,
        details=details,
        dependencies=list(dependencies or []),
        agent=agent or AgentIdentity(name="Executor"),
        max_retries=max_retries,
        delegator_task_id=delegator_task_id,
    )
