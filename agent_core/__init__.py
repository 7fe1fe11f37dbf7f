"""
Agent Execution Core - Scheduling and reasoning engine for autonomous agents

Runs a decomposed plan of interdependent tasks: a DAG scheduler with a
concurrency cap drives one LangGraph reasoning loop per task, tools execute
under typed contracts with retry policies, and observations land in a scoped
memory store.

Features:
- Dependency-aware scheduling with cancellation cascades and deadlock detection
- Per-task ReAct loop bounded by step and shared LLM-call budgets
- Delegation to newly spawned sub-agents (depth limited)
- Tool contracts: pydantic argument models, preconditions, effects, rollback
- Working, short-term, long-term and episodic memory (in-memory or Redis)
- Decision pipeline for running without a language model
- Event bus channels for task, log, artifact and agent notifications

Installation:
pip install -e .

Configuration:
    Create a .env file with your settings:

    ANTHROPIC_API_KEY=sk-ant-...
    AGENT_LLM_PROVIDER=anthropic
    AGENT_MAX_PARALLEL_TASKS=4

Example:
    >>> import asyncio
    >>> from agent_core import (AgentConfig, EnvConfig, TaskScheduler, ToolRegistry,
    ...                         MemoryStore, LLMOracle, build_chat_model, new_task)
    >>>
    >>> EnvConfig.load_env_file()
    >>> config = AgentConfig.from_env(prefix="AGENT_")
    >>> registry = ToolRegistry(retry_overrides=config.tool_retry_policies)
    >>> oracle = LLMOracle(build_chat_model(config.llm), registry)
    >>> scheduler = TaskScheduler(config, registry, MemoryStore(config.memory), oracle)
    >>> outcome = asyncio.run(scheduler.run([new_task("Summarize the README")]))
"""

__version__ = "1.0.0"
__all__ = [
    'AgentConfig',
    'LLMConfig',
    'MemoryConfig',
    'RateLimitConfig',
    'EnvConfig',
    'TaskStatus',
    'LogStatus',
    'MemoryScope',
    'Task',
    'SubStep',
    'ToolCall',
    'AgentIdentity',
    'Artifact',
    'Goal',
    'Decision',
    'FinishSignal',
    'NextStep',
    'new_task',
    'RetryPolicy',
    'RetryPresets',
    'Tool',
    'ToolContext',
    'ToolRegistry',
    'Precondition',
    'PreconditionFactory',
    'Effect',
    'register_memory_tools',
    'MemoryStore',
    'DecisionPipeline',
    'EventBus',
    'LLMOracle',
    'DecisionPipelineOracle',
    'build_chat_model',
    'ReasoningLoop',
    'TaskScheduler',
    'RunOutcome',
]

from agent_core.config import AgentConfig, LLMConfig, MemoryConfig, RateLimitConfig, EnvConfig
from agent_core.models import (
    TaskStatus,
    LogStatus,
    MemoryScope,
    Task,
    SubStep,
    ToolCall,
    AgentIdentity,
    Artifact,
    Goal,
    Decision,
    FinishSignal,
    NextStep,
    new_task,
    RetryPolicy,
    RetryPresets,
)
from agent_core.tools import (
    Tool,
    ToolContext,
    ToolRegistry,
    Precondition,
    PreconditionFactory,
    Effect,
    register_memory_tools,
)
from agent_core.memory import MemoryStore
from agent_core.decision import DecisionPipeline
from agent_core.core import (
    EventBus,
    LLMOracle,
    DecisionPipelineOracle,
    build_chat_model,
    ReasoningLoop,
    TaskScheduler,
    RunOutcome,
)
