"""
Reasoning Loop - Thought/act/observe controller for one task

One ReasoningLoop instance runs per in-flight task. Each iteration consults
the oracle and then either finishes the task, executes a registered tool,
delegates to a new sub-agent, or publishes an artifact.

Bounds:
- max_sub_steps_per_task: checked before every consultation
- max_llm_calls_per_run: shared CallBudget, acquired before every consultation

Cancellation is cooperative: the task status is re-read before and after
every suspension point and the loop exits without mutating a cancelled task.
"""

import asyncio
import json
import re
from dataclasses import replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from agent_core.core.workflow import LoopState, WorkflowBuilder
from agent_core.models.decision import FinishSignal, NextStep
from agent_core.models.enums import LogStatus, MemoryScope, TaskStatus
from agent_core.models.messages import AGENT_SPAWNED
from agent_core.models.task import AgentIdentity, Artifact, SubStep, Task, ToolCall, new_task, now_ms
from agent_core.tools.builtin import ArtifactArgs, DelegateArgs
from agent_core.tools.contract import maybe_await
from agent_core.utils.exceptions import (
    BudgetExceededError,
    DelegationDepthExceededError,
    MemoryBackendError,
    OracleError,
    PreconditionError,
    RetryExhaustedError,
    ToolExecutionError,
    ValidationError,
)
from agent_core.utils.logger import get_logger

if TYPE_CHECKING:
    from agent_core.core.scheduler import TaskScheduler

logger = get_logger(__name__)

MAX_LOGGED_OBSERVATION = 300
MAX_STORED_OBSERVATION = 500


class LoopOutcome(str, Enum):
    """How a ReasoningLoop run ended (failures raise instead)."""
    FINISHED = "finished"
    DELEGATED = "delegated"
    CANCELLED = "cancelled"


class ReasoningLoop:
    """
    Drives one task from Executing to Done, Delegating or Cancelled.

    Raises out of ``run`` on fatal conditions (budget exhaustion, oracle
    failure, tool retries exhausted); the scheduler decides what happens to
    the task next.

    Usage:
        loop = ReasoningLoop(task.id, scheduler)
        outcome = await loop.run()
    """

    def __init__(self, task_id: str, scheduler: "TaskScheduler"):
        self.task_id = task_id
        self.scheduler = scheduler
        self.config = scheduler.config
        self.registry = scheduler.registry
        self.memory = scheduler.memory
        self.oracle = scheduler.oracle
        self.budget = scheduler.budget

        workflow = WorkflowBuilder(self).build()
        self.app = workflow.compile()

    async def run(self) -> LoopOutcome:
        initial_state: LoopState = {
            "task_id": self.task_id,
            "pending": None,
            "outcome": None,
            "final_thought": None,
        }
        # guard + consult + step per sub-step, plus headroom for the final consult
        recursion_limit = self.config.max_sub_steps_per_task * 4 + 10
        final_state = await self.app.ainvoke(initial_state, {"recursion_limit": recursion_limit})
        return LoopOutcome(final_state["outcome"])

    # ============================================================================
    # Graph nodes
    # ============================================================================

    async def _guard(self, state: LoopState) -> Dict[str, Any]:
        task = self._snapshot()
        if task.status != TaskStatus.EXECUTING:
            return {"outcome": LoopOutcome.CANCELLED.value}

        limit = self.config.max_sub_steps_per_task
        if len(task.sub_steps) >= limit:
            error = BudgetExceededError(BudgetExceededError.MAX_SUB_STEPS_REACHED, limit, task.id)
            self.scheduler.log(task.id, LogStatus.ERROR, f"[{task.agent.name}] {error.message}")
            raise error
        return {"pending": None}

    async def _consult(self, state: LoopState) -> Dict[str, Any]:
        task = self._snapshot()

        try:
            calls = self.budget.acquire(task.id)
        except BudgetExceededError as e:
            self.scheduler.log(task.id, LogStatus.ERROR, f"[{task.agent.name}] {e.message}")
            raise
        logger.debug(f"[LOOP] {task.id}: oracle call {calls}/{self.budget.limit}")

        timeout = self.config.oracle_timeout
        try:
            response = await asyncio.wait_for(
                self.oracle.next_step(task, list(task.sub_steps), self.scheduler.artifacts),
                timeout,
            )
        except asyncio.TimeoutError:
            error = OracleError(f"Oracle did not respond within {timeout:g}s")
            self.scheduler.log(task.id, LogStatus.ERROR, f"[{task.agent.name}] {error.message}")
            raise error from None
        except OracleError as e:
            self.scheduler.log(task.id, LogStatus.ERROR, f"[{task.agent.name}] Oracle error: {e.message}")
            raise

        if self._cancelled():
            return {"outcome": LoopOutcome.CANCELLED.value}

        if isinstance(response, FinishSignal):
            self.scheduler.log(task.id, LogStatus.SUCCESS, f"[{task.agent.name}] Task complete.")
            self.scheduler.update_task(task.id, status=TaskStatus.DONE, result=response.final_thought)
            return {"outcome": LoopOutcome.FINISHED.value, "final_thought": response.final_thought}

        if not isinstance(response, NextStep):
            raise OracleError(f"Oracle returned unsupported response type {type(response).__name__}")

        if response.thought:
            self.scheduler.log(task.id, LogStatus.INFO, f"[{task.agent.name}] Thought: {response.thought}")
        return {"pending": response}

    async def _act(self, state: LoopState) -> Dict[str, Any]:
        step: NextStep = state["pending"]
        call = step.tool_call
        task = self._snapshot()

        tool = self.registry.get(call.name)
        if tool is not None and tool.requires_approval:
            approved = await self._request_approval(task, call)
            if self._cancelled():
                return {"outcome": LoopOutcome.CANCELLED.value}
            if not approved:
                self.scheduler.log(task.id, LogStatus.WARN, f"[{task.agent.name}] Approval denied for '{call.name}'")
                self._record_step(task, step, f"Error: approval denied for tool '{call.name}'", success=False)
                return {"pending": None}

        context = self.scheduler.tool_context_for(task)
        self.scheduler.log(task.id, LogStatus.INFO, f"[{task.agent.name}] Calling tool '{call.name}'")

        while True:
            try:
                result = await self.registry.execute(call.name, call.args, context)
            except (ValidationError, PreconditionError) as e:
                if self._cancelled():
                    return {"outcome": LoopOutcome.CANCELLED.value}
                observation = f"Error executing tool '{call.name}': {e.message}"
                self.scheduler.log(task.id, LogStatus.WARN, f"[{task.agent.name}] {observation}")
                self._record_step(task, step, observation, success=False)
                return {"pending": None}
            except ToolExecutionError as e:
                if self._cancelled():
                    return {"outcome": LoopOutcome.CANCELLED.value}
                task = self._snapshot()
                if task.retry_count < task.max_retries:
                    retry = task.retry_count + 1
                    delay = self.config.task_retry_delay
                    self.scheduler.log(
                        task.id,
                        LogStatus.WARN,
                        f"[{task.agent.name}] Tool '{call.name}' failed: {e.message}. "
                        f"Retrying in {delay:g}s ({retry}/{task.max_retries})",
                    )
                    self.scheduler.update_task(task.id, retry_count=retry)
                    await asyncio.sleep(delay)
                    if self._cancelled():
                        return {"outcome": LoopOutcome.CANCELLED.value}
                    continue

                observation = f"Error executing tool '{call.name}': {e.message}"
                self._record_step(task, step, observation, success=False)
                self.scheduler.log(
                    task.id,
                    LogStatus.ERROR,
                    f"[{task.agent.name}] Tool '{call.name}' failed after {task.retry_count} task retries",
                )
                raise RetryExhaustedError(call.name, task.retry_count + 1, last_error=e) from e

            if self._cancelled():
                return {"outcome": LoopOutcome.CANCELLED.value}
            observation = self._format_output(result.output)
            self.scheduler.log(
                task.id,
                LogStatus.INFO,
                f"[{task.agent.name}] Observation: {self._truncate(observation, MAX_LOGGED_OBSERVATION)}",
            )
            self._record_step(task, step, observation, success=True)
            return {"pending": None}

    async def _delegate(self, state: LoopState) -> Dict[str, Any]:
        step: NextStep = state["pending"]
        task = self._snapshot()

        try:
            args = DelegateArgs.model_validate(step.tool_call.args)
        except PydanticValidationError as e:
            observation = f"Error executing tool '{step.tool_call.name}': invalid arguments ({e.error_count()} error(s))"
            self.scheduler.log(task.id, LogStatus.WARN, f"[{task.agent.name}] {observation}")
            self._record_step(task, step, observation, success=False)
            return {"pending": None}

        depth = self.scheduler.delegation_depth(task.id)
        if depth >= self.config.max_agent_depth:
            error = DelegationDepthExceededError(self.config.max_agent_depth, task.id)
            self.scheduler.log(
                task.id,
                LogStatus.WARN,
                f"[{task.agent.name}] Delegation to '{args.agent_name}' rejected at depth {depth}",
            )
            self._record_step(task, step, error.message, success=False)
            return {"pending": None}

        identity = AgentIdentity(
            name=args.agent_name,
            role="Executor",
            instructions=args.agent_instructions,
            icon=args.agent_icon,
        )
        child = new_task(
            title=f"[Level {depth + 1}] {args.agent_name}",
            details=args.task_description,
            agent=identity,
            max_retries=self.config.default_max_retries,
            delegator_task_id=task.id,
        )

        self._record_step(
            task,
            step,
            f"Delegated to sub-agent '{args.agent_name}' (task {child.id}).",
            success=True,
        )
        self.scheduler.log(
            task.id,
            LogStatus.INFO,
            f"[{task.agent.name}] Spawning recursive sub-agent '{args.agent_name}' at depth {depth + 1}",
        )
        self.scheduler.bus.emit(
            AGENT_SPAWNED,
            {"id": identity.id, "name": identity.name, "instructions": identity.instructions},
            source_agent=task.agent.name,
            source_task_id=task.id,
        )
        self.scheduler.add_task(child)
        self.scheduler.begin_delegation(task.id, child.id)
        return {"outcome": LoopOutcome.DELEGATED.value}

    async def _artifact(self, state: LoopState) -> Dict[str, Any]:
        step: NextStep = state["pending"]
        task = self._snapshot()

        try:
            args = ArtifactArgs.model_validate(step.tool_call.args)
        except PydanticValidationError as e:
            observation = f"Error executing tool '{step.tool_call.name}': invalid arguments ({e.error_count()} error(s))"
            self.scheduler.log(task.id, LogStatus.WARN, f"[{task.agent.name}] {observation}")
            self._record_step(task, step, observation, success=False)
            return {"pending": None}

        artifact = Artifact(task_id=task.id, title=args.title, type=args.type, content=args.content)
        self.scheduler.add_artifact(artifact)

        observation = f"Artifact '{artifact.title}' ({artifact.type.value}) created."
        if self.memory is not None:
            key = f"artifact_{task.id}_{re.sub(r'[^a-z0-9]+', '_', artifact.title.lower()).strip('_')}"
            try:
                self.memory.write(MemoryScope.LONG_TERM, key, {"type": "artifact", **artifact.to_dict()})
            except MemoryBackendError as e:
                observation = f"Warning: artifact '{artifact.title}' was published but could not be stored: {e.message}"
                self.scheduler.log(task.id, LogStatus.WARN, f"[{task.agent.name}] {observation}")

        self._record_step(task, step, observation, success=True)
        return {"pending": None}

    # ============================================================================
    # Helpers
    # ============================================================================

    def _snapshot(self) -> Task:
        return self.scheduler.get_task(self.task_id)

    def _cancelled(self) -> bool:
        return self.scheduler.get_task(self.task_id).status != TaskStatus.EXECUTING

    async def _request_approval(self, task: Task, call: ToolCall) -> bool:
        gate = self.scheduler.approval_gate
        if gate is None:
            self.scheduler.log(
                task.id,
                LogStatus.WARN,
                f"[{task.agent.name}] Tool '{call.name}' requires approval but no approval gate is configured; proceeding",
            )
            return True
        approved = bool(await maybe_await(gate, task, call))
        logger.info(f"[LOOP] Approval for '{call.name}' on {task.id}: {'granted' if approved else 'denied'}")
        return approved

    def _record_step(self, task: Task, step: NextStep, observation: str, success: bool) -> None:
        sub_step = SubStep(thought=step.thought, tool_call=step.tool_call, observation=observation)
        index = self.scheduler.append_sub_step(task.id, sub_step)

        if self.memory is None:
            return
        record = {
            "type": "action",
            "taskId": task.id,
            "agent": task.agent.name,
            "thought": step.thought,
            "tool": step.tool_call.name,
            "args": step.tool_call.args,
            "success": success,
            "observation": self._truncate(observation, MAX_STORED_OBSERVATION),
            "timestamp": now_ms(),
        }
        try:
            self.memory.write(MemoryScope.WORKING, f"{task.id}:step:{index}", record)
            self.memory.write(MemoryScope.EPISODIC, f"action_{task.id}_{index}", record)
        except MemoryBackendError as e:
            logger.warning(f"[LOOP] Could not record step {index} of {task.id} in memory: {e}")

    @staticmethod
    def _format_output(output: Any) -> str:
        if output is None:
            return "Tool completed with no output."
        if isinstance(output, str):
            return output
        try:
            return json.dumps(output, default=str)
        except (TypeError, ValueError):
            return str(output)

    @staticmethod
    def _truncate(text: str, limit: int) -> str:
        return text if len(text) <= limit else text[:limit] + "..."


def fold_child_result(sub_step: SubStep, child: Task) -> SubStep:
    """Copy of the delegating SubStep with the child's result appended to its observation."""
    return replace(
        sub_step,
        observation=(
            f"{sub_step.observation}\n\n"
            f"Result from sub-agent '{child.agent.name}':\n{child.result or '(no result)'}"
        ),
    )
