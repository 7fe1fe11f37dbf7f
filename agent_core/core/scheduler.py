"""
Task Scheduler - DAG executor for a decomposed plan

The scheduler owns the task arena (tasks keyed by stable id) and is the only
writer of task state: every mutation goes through ``update_task`` which runs
under one lock and publishes a ``task_updated`` event.

Run loop:
1. Settle delegations (resume parents whose child is Done, fail the rest)
2. Compute the ready set from current state (never from a snapshot)
3. Launch ready tasks while Executing + Delegating < max_parallel_tasks
4. Nothing in flight but tasks still blocked → dependency deadlock
5. Otherwise wait for the first loop to complete and handle its outcome

Completion policy: the run succeeds iff every task ends Done or Cancelled.
"""

import asyncio
import copy
import time
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from agent_core.config.agent_config import AgentConfig
from agent_core.core.event_bus import EventBus
from agent_core.core.oracle import ReasoningOracle
from agent_core.core.reasoning_loop import LoopOutcome, ReasoningLoop, fold_child_result
from agent_core.memory.store import MemoryStore
from agent_core.models.enums import LogStatus, MemoryScope, TaskStatus
from agent_core.models.messages import ARTIFACT_CREATED, LOG, RUN_FAILED, RUN_FINISHED, TASK_UPDATED
from agent_core.models.task import Artifact, LogEntry, SubStep, Task, ToolCall, now_ms
from agent_core.tools.contract import ToolContext
from agent_core.tools.registry import ToolRegistry
from agent_core.utils.exceptions import (
    AgentCoreError,
    ConfigurationError,
    DependencyCycleError,
    DependencyDeadlockError,
    MemoryBackendError,
    UnknownDependencyError,
    is_retryable,
    wrap_exception,
)
from agent_core.utils.logger import configure_logging, get_logger
from agent_core.utils.rate_limiter import CallBudget

logger = get_logger(__name__)

ApprovalGate = Callable[[Task, ToolCall], Union[bool, Awaitable[bool]]]

_LOG_LEVELS = {
    LogStatus.INFO: "info",
    LogStatus.SUCCESS: "info",
    LogStatus.WARN: "warning",
    LogStatus.ERROR: "error",
}


@dataclass
class RunOutcome:
    """Result of TaskScheduler.run."""
    success: bool
    unresolved: int
    counts: Dict[str, int]
    failed_task_ids: List[str] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    llm_calls: int = 0
    error: Optional[AgentCoreError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "unresolved": self.unresolved,
            "counts": dict(self.counts),
            "failed_task_ids": list(self.failed_task_ids),
            "llm_calls": self.llm_calls,
            "error": self.error.to_dict() if self.error else None,
        }


class TaskScheduler:
    """
    Runs a task DAG with bounded concurrency, delegation and cancellation.

    Usage:
        scheduler = TaskScheduler(config, registry, memory, oracle)
        outcome = await scheduler.run(tasks, goal_context={"goal": "..."})
        if not outcome.success:
            print(f"{outcome.unresolved} task(s) unresolved")
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        registry: Optional[ToolRegistry] = None,
        memory: Optional[MemoryStore] = None,
        oracle: Optional[ReasoningOracle] = None,
        bus: Optional[EventBus] = None,
        approval_gate: Optional[ApprovalGate] = None,
        tool_context: Optional[ToolContext] = None,
    ):
        if oracle is None:
            raise ConfigurationError("oracle", "TaskScheduler requires a reasoning oracle")

        self.config = config or AgentConfig()
        configure_logging(self.config.log_level, self.config.debug)
        self.registry = registry or ToolRegistry(
            retry_overrides=self.config.tool_retry_policies,
            history_size=self.config.tool_history_size,
        )
        self.memory = memory
        self.oracle = oracle
        self.bus = bus or EventBus()
        self.approval_gate = approval_gate
        self.budget = CallBudget(self.config.max_llm_calls_per_run)
        self.session_id = (tool_context.session_id if tool_context else None) or f"run-{uuid.uuid4().hex[:8]}"
        self._tool_context = tool_context or ToolContext(session_id=self.session_id)

        self._lock = threading.RLock()
        self._tasks: Dict[str, Task] = {}
        self._artifacts: List[Artifact] = []
        self._children: Dict[str, str] = {}
        self._retry_delays: Dict[str, float] = {}
        self._failed: List[str] = []
        self._stopped = False
        self._running = False

    # ============================================================================
    # Task arena (single update path)
    # ============================================================================

    @property
    def tasks(self) -> List[Task]:
        """Snapshots of every task in insertion order."""
        with self._lock:
            return [copy.deepcopy(task) for task in self._tasks.values()]

    @property
    def artifacts(self) -> List[Artifact]:
        with self._lock:
            return list(self._artifacts)

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            return copy.deepcopy(self._tasks[task_id])

    def update_task(self, task_id: str, **changes: Any) -> Task:
        """
        Apply ``changes`` to one task and publish the updated snapshot.

        Returns:
            Snapshot of the task after the update
        """
        with self._lock:
            task = self._tasks[task_id]
            for name, value in changes.items():
                if not hasattr(task, name):
                    raise AttributeError(f"Task has no field '{name}'")
                setattr(task, name, value)
            task.updated_at = now_ms()
            snapshot = copy.deepcopy(task)

        self.bus.emit(TASK_UPDATED, {"task": snapshot.to_dict()}, source_task_id=task_id)
        return snapshot

    def append_sub_step(self, task_id: str, sub_step: SubStep) -> int:
        """Append to the task's reasoning trace; returns the new step's index."""
        with self._lock:
            steps = self._tasks[task_id].sub_steps + [sub_step]
            self.update_task(task_id, sub_steps=steps)
        return len(steps) - 1

    def log(self, task_id: str, status: LogStatus, message: str) -> LogEntry:
        """Record a task-visible log entry and publish it on the log channel."""
        entry = LogEntry(status=status, message=message)
        getattr(logger, _LOG_LEVELS[status])(f"[SCHEDULER] {task_id}: {message}")
        with self._lock:
            logs = self._tasks[task_id].logs + [entry]
            self.update_task(task_id, logs=logs)
        self.bus.emit(
            LOG,
            {"taskId": task_id, **entry.to_dict()},
            source_task_id=task_id,
            severity="error" if status == LogStatus.ERROR else "info",
        )
        return entry

    def add_task(self, task: Task) -> Task:
        """
        Add a task to the arena (used by delegation while a run is active).

        Raises:
            ConfigurationError: duplicate id
            UnknownDependencyError: dependency on a missing task or on itself
        """
        with self._lock:
            if task.id in self._tasks:
                raise ConfigurationError("tasks", f"Duplicate task id: {task.id}")
            for dependency_id in task.dependencies:
                if dependency_id == task.id or dependency_id not in self._tasks:
                    raise UnknownDependencyError(task.id, dependency_id)
            self._tasks[task.id] = copy.deepcopy(task)
            snapshot = copy.deepcopy(task)
        self.bus.emit(TASK_UPDATED, {"task": snapshot.to_dict()}, source_task_id=task.id)
        return snapshot

    def add_artifact(self, artifact: Artifact) -> None:
        with self._lock:
            self._artifacts.append(artifact)
        self.bus.emit(ARTIFACT_CREATED, artifact.to_dict(), source_task_id=artifact.task_id)

    def delegation_depth(self, task_id: str) -> int:
        """Number of delegator links above ``task_id`` (a planned task has depth 0)."""
        depth = 0
        seen = {task_id}
        with self._lock:
            current = self._tasks[task_id].delegator_task_id
            while current is not None and current in self._tasks and current not in seen:
                depth += 1
                seen.add(current)
                current = self._tasks[current].delegator_task_id
        return depth

    def begin_delegation(self, parent_id: str, child_id: str) -> None:
        with self._lock:
            self._children[parent_id] = child_id
        self.update_task(parent_id, status=TaskStatus.DELEGATING)

    def tool_context_for(self, task: Task) -> ToolContext:
        return replace(
            self._tool_context,
            permissions=set(self._tool_context.permissions),
            resources=dict(self._tool_context.resources),
            task_id=task.id,
            agent_name=task.agent.name,
            agent_role=task.agent.role,
        )

    def dependents_of(self, task_id: str) -> List[str]:
        with self._lock:
            return [task.id for task in self._tasks.values() if task_id in task.dependencies]

    # ============================================================================
    # Validation
    # ============================================================================

    def _load(self, tasks: Iterable[Task]) -> None:
        arena: Dict[str, Task] = {}
        for task in tasks:
            if task.id in arena:
                raise ConfigurationError("tasks", f"Duplicate task id: {task.id}")
            arena[task.id] = copy.deepcopy(task)

        for task in arena.values():
            for dependency_id in task.dependencies:
                if dependency_id == task.id or dependency_id not in arena:
                    raise UnknownDependencyError(task.id, dependency_id)

        cycle = self._find_cycle(arena)
        if cycle:
            raise DependencyCycleError(cycle)

        with self._lock:
            self._tasks = arena
            self._artifacts = []
            self._children = {}
            self._retry_delays = {}
            self._failed = []

    @staticmethod
    def _find_cycle(arena: Dict[str, Task]) -> Optional[List[str]]:
        """Return one dependency cycle (first node repeated at the end), if any."""
        visiting, visited = set(), set()
        path: List[str] = []

        def visit(task_id: str) -> Optional[List[str]]:
            visiting.add(task_id)
            path.append(task_id)
            for dependency_id in arena[task_id].dependencies:
                if dependency_id in visiting:
                    return path[path.index(dependency_id):] + [dependency_id]
                if dependency_id not in visited:
                    found = visit(dependency_id)
                    if found:
                        return found
            visiting.discard(task_id)
            visited.add(task_id)
            path.pop()
            return None

        for task_id in arena:
            if task_id not in visited:
                found = visit(task_id)
                if found:
                    return found
        return None

    # ============================================================================
    # Run
    # ============================================================================

    async def run(self, tasks: Iterable[Task], goal_context: Optional[Dict[str, Any]] = None) -> RunOutcome:
        """
        Execute every task in the DAG.

        Args:
            tasks: Planned tasks (copied into the arena)
            goal_context: Session context stored in shortterm memory for the run

        Returns:
            RunOutcome; ``success`` is True iff every task ended Done or Cancelled

        Raises:
            ConfigurationError: cycles, unknown or self dependencies, duplicate ids
        """
        if self._running:
            raise ConfigurationError("scheduler", "A run is already in progress")
        self._load(tasks)
        self._stopped = False
        self._running = True
        self.budget.reset(self.config.max_llm_calls_per_run)
        started = time.time()

        logger.info(
            f"[SCHEDULER] Starting run {self.session_id}: {len(self._tasks)} task(s), "
            f"max_parallel={self.config.max_parallel_tasks}, llm_budget={self.budget.limit}"
        )
        if self.memory is not None and goal_context:
            self._remember(MemoryScope.SHORT_TERM, "session_context", dict(goal_context))

        in_flight: Dict["asyncio.Task[LoopOutcome]", str] = {}
        run_error: Optional[AgentCoreError] = None
        try:
            while True:
                if not self._stopped:
                    self._settle_delegations()
                    for task_id in self._ready_set():
                        # A resuming parent already holds its slot while Delegating
                        resuming = self._tasks[task_id].status == TaskStatus.DELEGATING
                        if not resuming and self._active_count() >= self.config.max_parallel_tasks:
                            continue
                        in_flight[self._launch(task_id)] = task_id

                if not in_flight:
                    blocked = self._blocked_task_ids()
                    if blocked and not self._stopped:
                        run_error = self._declare_deadlock(blocked)
                    break

                done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
                for future in done:
                    await self._handle_completion(in_flight.pop(future), future)
        finally:
            self._running = False

        outcome = self._finish(run_error, time.time() - started)
        return outcome

    def _ready_set(self) -> List[str]:
        """
        Queued tasks whose dependencies are all Done, plus Delegating parents
        whose child finished. Delegated children come first so a parent's
        sub-agent is not starved by unrelated work.
        """
        with self._lock:
            ready: List[str] = []
            for task in self._tasks.values():
                if task.status == TaskStatus.QUEUED and all(
                    self._tasks[dep].status == TaskStatus.DONE for dep in task.dependencies
                ):
                    ready.append(task.id)
                elif task.status == TaskStatus.DELEGATING:
                    child_id = self._children.get(task.id)
                    if child_id and self._tasks[child_id].status == TaskStatus.DONE:
                        ready.append(task.id)
            ready.sort(key=lambda task_id: self._tasks[task_id].delegator_task_id is None)
            return ready

    def _active_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.status.is_active)

    def _blocked_task_ids(self) -> List[str]:
        with self._lock:
            return [
                task.id for task in self._tasks.values()
                if task.status in (TaskStatus.QUEUED, TaskStatus.DELEGATING)
            ]

    def _launch(self, task_id: str) -> "asyncio.Task[LoopOutcome]":
        task = self.get_task(task_id)
        delay = self._retry_delays.pop(task_id, 0.0)

        if task.status == TaskStatus.DELEGATING:
            child_id = self._children.pop(task_id)
            child = self.get_task(child_id)
            steps = list(task.sub_steps)
            if steps:
                steps[-1] = fold_child_result(steps[-1], child)
            self.log(task_id, LogStatus.INFO, f"[{task.agent.name}] Resuming after sub-agent '{child.agent.name}' finished")
            self.update_task(task_id, status=TaskStatus.EXECUTING, sub_steps=steps)
        else:
            self.log(task_id, LogStatus.INFO, f"[{task.agent.name}] Starting task: {task.title}")
            self.update_task(task_id, status=TaskStatus.EXECUTING)

        return asyncio.create_task(self._run_loop(task_id, delay), name=f"loop-{task_id}")

    async def _run_loop(self, task_id: str, delay: float = 0.0) -> LoopOutcome:
        if delay > 0:
            await asyncio.sleep(delay)
            if self.get_task(task_id).status != TaskStatus.EXECUTING:
                return LoopOutcome.CANCELLED
        return await ReasoningLoop(task_id, self).run()

    def _settle_delegations(self) -> None:
        """Fail Delegating parents whose child ended Error or Cancelled."""
        with self._lock:
            broken = [
                (parent_id, child_id) for parent_id, child_id in self._children.items()
                if self._tasks[parent_id].status == TaskStatus.DELEGATING
                and self._tasks[child_id].status in (TaskStatus.ERROR, TaskStatus.CANCELLED)
            ]
        for parent_id, child_id in broken:
            with self._lock:
                self._children.pop(parent_id, None)
            child = self.get_task(child_id)
            self._fail_permanently(
                parent_id,
                f"Delegated task {child_id} ('{child.agent.name}') ended {child.status.value}",
                {"error_code": "DELEGATION_FAILED", "child_task_id": child_id},
            )

    # ============================================================================
    # Completion and failure handling
    # ============================================================================

    async def _handle_completion(self, task_id: str, future: "asyncio.Task[LoopOutcome]") -> None:
        try:
            outcome = future.result()
        except AgentCoreError as e:
            await self._handle_failure(task_id, e)
            return
        except Exception as e:
            logger.log_exception(f"[SCHEDULER] Unexpected error in loop of {task_id}", e)
            await self._handle_failure(task_id, wrap_exception(e))
            return

        if outcome == LoopOutcome.FINISHED:
            self.registry.forget(task_id)
            self._record_learning(self.get_task(task_id), success=True)
        logger.debug(f"[SCHEDULER] {task_id}: loop ended ({outcome.value})")

    async def _handle_failure(self, task_id: str, error: AgentCoreError) -> None:
        task = self.get_task(task_id)
        if task.status.is_terminal:
            logger.info(f"[SCHEDULER] {task_id}: ignoring failure after {task.status.value}: {error.message}")
            return

        if is_retryable(error) and task.retry_count < task.max_retries and not self._stopped:
            retry = task.retry_count + 1
            self.log(
                task_id,
                LogStatus.WARN,
                f"[{task.agent.name}] Task failed ({error.error_code}): {error.message}. "
                f"Retrying ({retry}/{task.max_retries})",
            )
            self._retry_delays[task_id] = self.config.task_retry_delay
            self.update_task(task_id, status=TaskStatus.QUEUED, retry_count=retry)
            return

        self._fail_permanently(task_id, error.message, error.to_dict())
        rolled_back = await self.registry.rollback(task_id)
        if rolled_back:
            self.log(task_id, LogStatus.WARN, f"Rolled back {rolled_back} effect(s) of failed task")

    def _fail_permanently(self, task_id: str, message: str, error: Dict[str, Any]) -> None:
        task = self.get_task(task_id)
        self.log(task_id, LogStatus.ERROR, f"[{task.agent.name}] Task failed: {message}")
        self.update_task(task_id, status=TaskStatus.ERROR, error=error)
        self._failed.append(task_id)
        self._record_learning(self.get_task(task_id), success=False, lesson=message)
        self._propagate_failure(task_id)

    def _propagate_failure(self, failed_id: str) -> None:
        """Mark every task transitively depending on ``failed_id`` as Error."""
        queue = deque([failed_id])
        seen = {failed_id}
        while queue:
            current = queue.popleft()
            for dependent_id in self.dependents_of(current):
                if dependent_id in seen:
                    continue
                seen.add(dependent_id)
                dependent = self.get_task(dependent_id)
                if dependent.status.is_terminal:
                    continue
                self.log(dependent_id, LogStatus.ERROR, f"Dependency {current} failed; task will not run")
                self.update_task(
                    dependent_id,
                    status=TaskStatus.ERROR,
                    error={"error_code": "DEPENDENCY_FAILED", "message": f"Dependency {current} failed",
                           "details": {"failed_task_id": failed_id}},
                )
                self._failed.append(dependent_id)
                queue.append(dependent_id)

    def _declare_deadlock(self, blocked: List[str]) -> DependencyDeadlockError:
        error = DependencyDeadlockError(blocked)
        logger.error(f"[SCHEDULER] {error.message}: {', '.join(blocked)}")
        for task_id in blocked:
            self.log(task_id, LogStatus.ERROR, f"{error.message}; task cannot make progress")
            self.update_task(task_id, status=TaskStatus.ERROR, error=error.to_dict())
            self._failed.append(task_id)
        return error

    # ============================================================================
    # Cancellation
    # ============================================================================

    def cancel(self, task_id: str) -> List[str]:
        """
        Cancel ``task_id`` and, breadth-first, every task depending on it.

        A loop already running a tool finishes that call and then exits.

        Returns:
            Ids of the tasks that became Cancelled
        """
        if task_id not in self._tasks:
            raise KeyError(task_id)

        cancelled: List[str] = []
        queue = deque([(task_id, None)])
        seen = {task_id}
        while queue:
            current, cause = queue.popleft()
            task = self.get_task(current)
            if not task.status.is_terminal:
                reason = "Task cancelled" if cause is None else f"Cancelled because dependency {cause} was cancelled"
                self.log(current, LogStatus.WARN, reason)
                self.update_task(current, status=TaskStatus.CANCELLED)
                cancelled.append(current)
            for dependent_id in self.dependents_of(current):
                if dependent_id not in seen:
                    seen.add(dependent_id)
                    queue.append((dependent_id, current))

        logger.info(f"[SCHEDULER] Cancelled {len(cancelled)} task(s) starting at {task_id}")
        return cancelled

    def stop_all(self) -> None:
        """Stop the run: nothing new launches and every unfinished task is cancelled."""
        self._stopped = True
        with self._lock:
            open_ids = [task.id for task in self._tasks.values() if not task.status.is_terminal]
        for task_id in open_ids:
            self.log(task_id, LogStatus.WARN, "Run stopped")
            self.update_task(task_id, status=TaskStatus.CANCELLED)
        logger.info(f"[SCHEDULER] Stop requested; cancelled {len(open_ids)} task(s)")

    # ============================================================================
    # End of run
    # ============================================================================

    def _finish(self, error: Optional[AgentCoreError], duration: float) -> RunOutcome:
        snapshots = self.tasks
        counts: Dict[str, int] = {status.value: 0 for status in TaskStatus}
        for task in snapshots:
            counts[task.status.value] += 1
        unresolved = sum(1 for task in snapshots if task.status not in (TaskStatus.DONE, TaskStatus.CANCELLED))
        success = unresolved == 0 and error is None

        outcome = RunOutcome(
            success=success,
            unresolved=unresolved,
            counts=counts,
            failed_task_ids=list(dict.fromkeys(self._failed)),
            tasks=snapshots,
            artifacts=self.artifacts,
            llm_calls=self.budget.used,
            error=error,
        )

        payload = {
            "success": success,
            "unresolved": unresolved,
            "counts": counts,
            "failed_task_ids": outcome.failed_task_ids,
        }
        if success:
            logger.info(f"[SCHEDULER] Run {self.session_id} succeeded: {counts[TaskStatus.DONE.value]} task(s) done")
            self.bus.emit(RUN_FINISHED, payload)
        else:
            logger.error(f"[SCHEDULER] Run {self.session_id} failed: {unresolved} task(s) unresolved")
            if error is not None:
                payload["error"] = error.to_dict()
            self.bus.emit(RUN_FAILED, payload, severity="error")

        if self.memory is not None:
            self._end_of_run_memory()

        logger.log_performance(
            "scheduler.run",
            duration,
            success=success,
            metadata={"tasks": len(snapshots), "llm_calls": self.budget.used, "unresolved": unresolved},
        )
        return outcome

    def _end_of_run_memory(self) -> None:
        try:
            cleared = self.memory.clear(MemoryScope.WORKING)
            logger.debug(f"[SCHEDULER] Cleared {cleared} working memory entries")
            horizon = self.config.memory.episodic_compression_ms
            if horizon > 0:
                compressed = self.memory.compress(MemoryScope.EPISODIC, horizon)
                if compressed:
                    logger.info(f"[SCHEDULER] Compressed {compressed} episodic entries")
        except MemoryBackendError as e:
            logger.warning(f"[SCHEDULER] End-of-run memory maintenance failed: {e}")

    def _record_learning(self, task: Task, success: bool, lesson: str = "") -> None:
        """Store a pattern (success) or antipattern (failure) record in longterm memory."""
        if self.memory is None:
            return
        tools = [step.tool_call.name for step in task.sub_steps]
        record: Dict[str, Any] = {
            "type": "pattern" if success else "antipattern",
            "taskId": task.id,
            "title": task.title,
            "agent": task.agent.name,
            "tools": tools,
            "steps": len(task.sub_steps),
            "timestamp": now_ms(),
        }
        if success:
            record["result"] = (task.result or "")[:500]
        else:
            record["lesson"] = f"Avoid repeating: {lesson}"[:500]
        self._remember(MemoryScope.LONG_TERM, f"{record['type']}_{task.id}", record)

    def _remember(self, scope: MemoryScope, key: str, value: Any) -> None:
        try:
            self.memory.write(scope, key, value)
        except MemoryBackendError as e:
            logger.warning(f"[SCHEDULER] Could not write {scope.value}/{key}: {e}")
