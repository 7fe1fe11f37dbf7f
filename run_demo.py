#!/usr/bin/env python
"""
Agent Execution Core - Demo Execution

Runs a three-task plan through the scheduler. Uses the configured language
model when AGENT_LLM_PROVIDER is set, otherwise the rule-based decision
pipeline drives each task.
"""

import asyncio
import json

from agent_core import (
    AgentConfig,
    DecisionPipeline,
    DecisionPipelineOracle,
    EnvConfig,
    EventBus,
    LLMOracle,
    MemoryStore,
    TaskScheduler,
    ToolRegistry,
    build_chat_model,
    new_task,
    register_memory_tools,
)
from agent_core.models.messages import LOG


def build_plan():
    """Two independent searches feeding a summary task."""
    notes = new_task("Search memory for deployment notes", task_id="notes")
    history = new_task("Search memory for incident history", task_id="history")
    summary = new_task(
        "Summarize what is known about the deployment",
        details="Use the results of the two searches above",
        dependencies=["notes", "history"],
        task_id="summary",
    )
    return [notes, history, summary]


def main():
    """Main entry point for the demo."""
    print("=" * 70)
    print("Agent Execution Core - Demo Execution")
    print("=" * 70)
    print()

    print("Step 1: Loading configuration from .env...")
    EnvConfig.load_env_file()
    config = AgentConfig.from_env(prefix="AGENT_")
    print(f"        Max parallel tasks: {config.max_parallel_tasks}")
    print(f"        Max LLM calls:      {config.max_llm_calls_per_run}")
    print(f"        Memory backend:     {config.memory.backend}")
    print()

    print("Step 2: Building registry, memory and oracle...")
    memory = MemoryStore(config.memory)
    memory.write("longterm", "deployment_notes", "Blue/green deploys run from the release branch")
    memory.write("longterm", "incident_history", "Last incident: cache stampede after a deployment")

    registry = ToolRegistry(retry_overrides=config.tool_retry_policies, history_size=config.tool_history_size)
    register_memory_tools(registry, memory)

    if config.llm is not None:
        oracle = LLMOracle(build_chat_model(config.llm), registry)
        print(f"        Oracle: {config.llm.provider} / {config.llm.model_name}")
    else:
        oracle = DecisionPipelineOracle(DecisionPipeline(registry, memory=memory))
        print("        Oracle: decision pipeline (no LLM provider configured)")
    print()

    bus = EventBus()
    bus.subscribe(LOG, lambda event: print(f"  [{event['payload']['taskId']}] {event['payload']['message']}"))

    print("=" * 70)
    print("Step 3: Running plan...")
    print("=" * 70)

    scheduler = TaskScheduler(config, registry, memory, oracle, bus=bus)
    try:
        outcome = asyncio.run(scheduler.run(build_plan(), goal_context={"goal": "Deployment briefing"}))
    except KeyboardInterrupt:
        print()
        print("Demo interrupted by user.")
        return

    print()
    print("=" * 70)
    print("Run Complete" if outcome.success else "Run Finished With Failures")
    print("=" * 70)
    print(json.dumps(outcome.to_dict(), indent=2, default=str))

    for task in outcome.tasks:
        print(f"  {task.id}: {task.status.value} ({len(task.sub_steps)} step(s))")
    for artifact in outcome.artifacts:
        print(f"  artifact: {artifact.title} [{artifact.type.value}]")


if __name__ == "__main__":
    main()
