"""
Core module - Task scheduler, reasoning loop, oracles and event bus
"""

from .event_bus import EventBus, EventStream, EventSubscription
from .oracle import (
    ReasoningOracle,
    LLMOracle,
    DecisionPipelineOracle,
    build_chat_model,
    parse_oracle_response,
)
from .workflow import WorkflowBuilder, LoopState
from .reasoning_loop import ReasoningLoop, LoopOutcome
from .scheduler import TaskScheduler, RunOutcome

__all__ = [
    'EventBus',
    'EventStream',
    'EventSubscription',
    'ReasoningOracle',
    'LLMOracle',
    'DecisionPipelineOracle',
    'build_chat_model',
    'parse_oracle_response',
    'WorkflowBuilder',
    'LoopState',
    'ReasoningLoop',
    'LoopOutcome',
    'TaskScheduler',
    'RunOutcome',
]
