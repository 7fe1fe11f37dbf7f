"""
Enums module - Task status and other enumeration types
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Enumeration of possible task statuses"""
    QUEUED = "queued"
    EXECUTING = "executing"
    DELEGATING = "delegating"
    PENDING_REVIEW = "pending_review"
    REVISING = "revising"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Occupies one of the scheduler's parallel slots."""
        return self in (TaskStatus.EXECUTING, TaskStatus.DELEGATING)


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.ERROR, TaskStatus.CANCELLED})


class LogStatus(str, Enum):
    """Status of a task log entry"""
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    WARN = "WARN"


class ReviewStatus(str, Enum):
    """Outcome of a review"""
    APPROVED = "Approved"
    CHANGES_REQUESTED = "Changes Requested"


class ArtifactType(str, Enum):
    """Kinds of artifact a task can produce"""
    CODE = "code"
    MARKDOWN = "markdown"
    PREVIEW = "preview"


class MemoryScope(str, Enum):
    """Memory partitions with their own capacity/TTL policy"""
    WORKING = "working"
    SHORT_TERM = "shortterm"
    LONG_TERM = "longterm"
    EPISODIC = "episodic"


class RiskLevel(str, Enum):
    """Risk of an action option"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class BackoffStrategy(str, Enum):
    """Delay growth between tool retries"""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class EffectType(str, Enum):
    """Kinds of side effect a tool declares"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SIDE_EFFECT = "side_effect"


class PreconditionType(str, Enum):
    """Kinds of tool precondition"""
    RESOURCE = "resource"
    PERMISSION = "permission"
    STATE = "state"
    DATA = "data"


class IntentType(str, Enum):
    """Intent categories recognized in goal text"""
    QUERY = "query"
    ACTION = "action"
    CREATE = "create"
    ANALYZE = "analyze"
    BROWSE = "browse"


class ConstraintType(str, Enum):
    """Kinds of constraint extracted from a goal"""
    TIME = "time"
    QUALITY = "quality"
    RESOURCE = "resource"
    PERMISSION = "permission"


class Severity(str, Enum):
    """Outcome severity of a constraint check"""
    ERROR = "error"
    WARNING = "warning"
