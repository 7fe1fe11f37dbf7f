"""
Standardized Message Formats for the Execution Core

This module defines the event envelope published on the EventBus and the
payload shapes of each notification channel.

Channels:
- task_updated:     {"task": <task snapshot>}            on every task mutation
- log:              {"taskId", "status", "message", "timestamp"}
- artifact_created: {"taskId", "title", "type", "content"}
- agent_spawned:    {"id", "name", "instructions"}
- run_finished / run_failed: {"success", "unresolved", "counts"}

Timestamps are epoch milliseconds.
"""

from typing import TypedDict, Optional, Any, Literal, Dict, List
import uuid

from .task import now_ms


# ============================================================================
# CHANNEL NAMES
# ============================================================================

TASK_UPDATED = "task_updated"
LOG = "log"
ARTIFACT_CREATED = "artifact_created"
AGENT_SPAWNED = "agent_spawned"
RUN_FINISHED = "run_finished"
RUN_FAILED = "run_failed"

CHANNELS = (TASK_UPDATED, LOG, ARTIFACT_CREATED, AGENT_SPAWNED, RUN_FINISHED, RUN_FAILED)

EventCategory = Literal["task_lifecycle", "agent_execution", "data_flow", "system_state"]
EventSeverity = Literal["debug", "info", "warning", "error", "critical"]

EVENT_CATEGORIES: Dict[str, str] = {
    TASK_UPDATED: "task_lifecycle",
    LOG: "task_lifecycle",
    ARTIFACT_CREATED: "data_flow",
    AGENT_SPAWNED: "agent_execution",
    RUN_FINISHED: "system_state",
    RUN_FAILED: "system_state",
}


# ============================================================================
# EVENT ENVELOPE
# ============================================================================

class SystemEvent(TypedDict):
    """
    Standard event format for the notification channels.

    Published by: TaskScheduler, ReasoningLoop
    Consumed by: EventBus subscribers and EventStream readers
    """
    event_id: str
    event_type: str
    event_category: str
    source_agent: str
    source_task_id: Optional[str]
    payload: Dict[str, Any]
    timestamp: int
    severity: str
    propagate: bool


# ============================================================================
# CHANNEL PAYLOADS
# ============================================================================

class LogPayload(TypedDict):
    taskId: Optional[str]
    status: str
    message: str
    timestamp: int


class ArtifactPayload(TypedDict):
    taskId: str
    title: str
    type: str
    content: str


class AgentSpawnedPayload(TypedDict):
    id: str
    name: str
    instructions: str


class RunOutcomePayload(TypedDict):
    success: bool
    unresolved: int
    counts: Dict[str, int]
    failed_task_ids: List[str]


def create_system_event(
    event_type: str,
    payload: Dict[str, Any],
    source_agent: str = "scheduler",
    source_task_id: Optional[str] = None,
    event_category: Optional[str] = None,
    severity: EventSeverity = "info",
    propagate: bool = True,
) -> SystemEvent:
    """
    Helper function to create system events.

    Args:
        event_type: Channel name (e.g., "task_updated")
        payload: Event data
        source_agent: Component or agent that generated the event
        source_task_id: Optional task ID
        event_category: Category (derived from the channel when omitted)
        severity: Event severity level
        propagate: Whether to deliver to subscribers

    Returns:
        SystemEvent instance
    """
    return SystemEvent(
        event_id=str(uuid.uuid4()),
        event_type=event_type,
        event_category=event_category or EVENT_CATEGORIES.get(event_type, "system_state"),
        source_agent=source_agent,
        source_task_id=source_task_id,
        payload=payload,
        timestamp=now_ms(),
        severity=severity,
        propagate=propagate,
    )
