"""
Tests for the DAG task scheduler.
"""

import asyncio

import pytest

from agent_core.config import AgentConfig, MemoryConfig
from agent_core.core import EventBus, TaskScheduler
from agent_core.memory import InMemoryBackend, MemoryStore
from agent_core.models import FinishSignal, NextStep, TaskStatus, ToolCall, new_task
from agent_core.models.messages import LOG, RUN_FAILED, RUN_FINISHED, TASK_UPDATED
from agent_core.tools import DELEGATE_TOOL, ToolRegistry
from agent_core.utils.exceptions import (
    ConfigurationError,
    DependencyCycleError,
    DependencyDeadlockError,
    OracleError,
    UnknownDependencyError,
)


class RecordingOracle:
    """
    Finishes every task after ``delay`` seconds, tracking how many
    consultations overlap. ``hooks`` maps a task title to a callable run
    on its first consultation; the callable may return a response or raise.
    """

    def __init__(self, delay=0.0, hooks=None):
        self.delay = delay
        self.hooks = dict(hooks or {})
        self.started = []
        self.running = 0
        self.max_running = 0

    async def next_step(self, task, sub_steps, artifacts):
        self.started.append(task.title)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            hook = self.hooks.pop(task.title, None)
            if hook is not None:
                response = hook(task, sub_steps)
                if response is not None:
                    return response
            return FinishSignal(f"{task.title} done")
        finally:
            self.running -= 1


def fail(message="unusable reply"):
    def hook(task, sub_steps):
        raise OracleError(message)
    return hook


def run(scheduler, tasks, goal_context=None):
    outcome = asyncio.run(scheduler.run(tasks, goal_context=goal_context))
    return outcome, {task.id: task for task in outcome.tasks}


class TestGraphValidation:
    """Rejection of malformed task sets"""

    def setup_method(self):
        self.scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=RecordingOracle())

    def test_oracle_required(self):
        with pytest.raises(ConfigurationError):
            TaskScheduler(AgentConfig(), ToolRegistry())

    def test_cycle(self):
        tasks = [
            new_task("A", task_id="a", dependencies=["c"]),
            new_task("B", task_id="b", dependencies=["a"]),
            new_task("C", task_id="c", dependencies=["b"]),
        ]

        with pytest.raises(DependencyCycleError) as exc_info:
            asyncio.run(self.scheduler.run(tasks))

        assert exc_info.value.cycle[0] == exc_info.value.cycle[-1]
        assert set(exc_info.value.cycle) == {"a", "b", "c"}

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependencyError):
            asyncio.run(self.scheduler.run([new_task("A", task_id="a", dependencies=["ghost"])]))

    def test_self_dependency(self):
        with pytest.raises(UnknownDependencyError):
            asyncio.run(self.scheduler.run([new_task("A", task_id="a", dependencies=["a"])]))

    def test_duplicate_ids(self):
        with pytest.raises(ConfigurationError):
            asyncio.run(self.scheduler.run([new_task("A", task_id="a"), new_task("B", task_id="a")]))

    def test_empty_plan_succeeds(self):
        outcome, tasks = run(self.scheduler, [])

        assert outcome.success is True
        assert tasks == {}


class TestScheduling:
    """Ordering, concurrency and completion"""

    def test_dependencies_run_in_order(self):
        oracle = RecordingOracle()
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=oracle)
        tasks = [
            new_task("C", task_id="c", dependencies=["b"]),
            new_task("B", task_id="b", dependencies=["a"]),
            new_task("A", task_id="a"),
        ]

        outcome, by_id = run(scheduler, tasks)

        assert oracle.started == ["A", "B", "C"]
        assert outcome.success is True
        assert outcome.unresolved == 0
        assert outcome.counts["done"] == 3
        assert outcome.llm_calls == 3
        assert all(task.result == f"{task.title} done" for task in by_id.values())

    def test_parallel_cap(self):
        oracle = RecordingOracle(delay=0.02)
        scheduler = TaskScheduler(AgentConfig(max_parallel_tasks=2), ToolRegistry(), oracle=oracle)

        outcome, _ = run(scheduler, [new_task(f"T{i}", task_id=f"t{i}") for i in range(5)])

        assert outcome.success is True
        assert oracle.max_running == 2

    def test_shared_llm_budget(self):
        oracle = RecordingOracle()
        scheduler = TaskScheduler(AgentConfig(max_llm_calls_per_run=2), ToolRegistry(), oracle=oracle)

        outcome, by_id = run(scheduler, [new_task(f"T{i}", task_id=f"t{i}") for i in range(3)])

        assert outcome.llm_calls == 2
        assert outcome.counts["done"] == 2
        assert outcome.counts["error"] == 1
        failed = [task for task in by_id.values() if task.status == TaskStatus.ERROR]
        assert failed[0].error["error_code"] == "LLM_BUDGET_EXCEEDED"
        assert outcome.success is False

    def test_failure_propagates_to_dependents(self):
        oracle = RecordingOracle(hooks={"A": fail()})
        bus = EventBus(history_max_size=5000)
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=oracle, bus=bus)
        tasks = [
            new_task("A", task_id="a", max_retries=0),
            new_task("B", task_id="b", dependencies=["a"]),
            new_task("C", task_id="c", dependencies=["a"]),
            new_task("D", task_id="d", dependencies=["b", "c"]),
        ]

        outcome, by_id = run(scheduler, tasks)

        assert outcome.success is False
        assert outcome.unresolved == 4
        assert outcome.failed_task_ids == ["a", "b", "c", "d"]
        assert oracle.started == ["A"]
        assert by_id["d"].error["error_code"] == "DEPENDENCY_FAILED"
        assert by_id["b"].logs[-1].message == "Dependency a failed; task will not run"
        failed_events = bus.events([RUN_FAILED])
        assert len(failed_events) == 1
        assert failed_events[0]["payload"]["unresolved"] == 4

    def test_retryable_failure_requeues(self):
        oracle = RecordingOracle(hooks={"A": fail()})
        scheduler = TaskScheduler(AgentConfig(task_retry_delay=0.0), ToolRegistry(), oracle=oracle)

        outcome, by_id = run(scheduler, [new_task("A", task_id="a", max_retries=2)])

        assert outcome.success is True
        assert by_id["a"].retry_count == 1
        assert oracle.started == ["A", "A"]


class TestCancellation:
    """cancel() and stop_all()"""

    def test_cancel_cascades_to_dependents_only(self):
        holder = {}

        def cancel_b(task, sub_steps):
            holder["cancelled"] = holder["scheduler"].cancel("b")

        oracle = RecordingOracle(hooks={"A": cancel_b})
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=oracle)
        holder["scheduler"] = scheduler
        tasks = [
            new_task("A", task_id="a"),
            new_task("B", task_id="b", dependencies=["a"]),
            new_task("C", task_id="c", dependencies=["b"]),
            new_task("D", task_id="d", dependencies=["a"]),
        ]

        outcome, by_id = run(scheduler, tasks)

        assert holder["cancelled"] == ["b", "c"]
        assert by_id["a"].status == TaskStatus.DONE
        assert by_id["d"].status == TaskStatus.DONE
        assert by_id["c"].logs[-1].message == "Cancelled because dependency b was cancelled"
        assert outcome.success is True
        assert outcome.counts["cancelled"] == 2

    def test_cancel_unknown_task(self):
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=RecordingOracle())
        with pytest.raises(KeyError):
            scheduler.cancel("nope")

    def test_stop_all(self):
        holder = {}

        def stop(task, sub_steps):
            holder["scheduler"].stop_all()

        oracle = RecordingOracle(hooks={"A": stop})
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=oracle)
        holder["scheduler"] = scheduler

        outcome, by_id = run(scheduler, [
            new_task("A", task_id="a"),
            new_task("B", task_id="b", dependencies=["a"]),
        ])

        assert oracle.started == ["A"]
        assert by_id["a"].status == TaskStatus.CANCELLED
        assert by_id["b"].status == TaskStatus.CANCELLED

    def test_cancelled_child_fails_delegating_parent(self):
        holder = {}

        def delegate(task, sub_steps):
            return NextStep(thought="delegate", tool_call=ToolCall(DELEGATE_TOOL, {
                "agent_name": "Helper",
                "task_description": "help",
            }))

        def cancel_self(task, sub_steps):
            holder["scheduler"].cancel(task.id)

        oracle = RecordingOracle(hooks={"Parent": delegate, "[Level 1] Helper": cancel_self})
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=oracle)
        holder["scheduler"] = scheduler

        outcome, by_id = run(scheduler, [new_task("Parent", task_id="p")])

        assert by_id["p"].status == TaskStatus.ERROR
        assert by_id["p"].error["error_code"] == "DELEGATION_FAILED"
        assert outcome.success is False


class TestDeadlock:
    """Runs that can make no further progress"""

    def test_delegation_starved_by_cap(self):
        def delegate(task, sub_steps):
            return NextStep(thought="delegate", tool_call=ToolCall(DELEGATE_TOOL, {
                "agent_name": "Helper",
                "task_description": "help",
            }))

        oracle = RecordingOracle(hooks={"Parent": delegate})
        bus = EventBus()
        scheduler = TaskScheduler(AgentConfig(max_parallel_tasks=1), ToolRegistry(), oracle=oracle, bus=bus)

        outcome, by_id = run(scheduler, [new_task("Parent", task_id="p")])

        assert isinstance(outcome.error, DependencyDeadlockError)
        assert outcome.success is False
        assert all(task.status == TaskStatus.ERROR for task in by_id.values())
        assert len(by_id) == 2
        assert bus.events([RUN_FAILED])[0]["payload"]["error"]["error_code"] == "DEPENDENCY_DEADLOCK"

    def test_cap_of_two_leaves_room_for_child(self):
        def delegate(task, sub_steps):
            return NextStep(thought="delegate", tool_call=ToolCall(DELEGATE_TOOL, {
                "agent_name": "Helper",
                "task_description": "help",
            }))

        oracle = RecordingOracle(hooks={"Parent": delegate})
        scheduler = TaskScheduler(AgentConfig(max_parallel_tasks=2), ToolRegistry(), oracle=oracle)

        outcome, by_id = run(scheduler, [new_task("Parent", task_id="p")])

        assert outcome.success is True
        assert len(by_id) == 2
        assert all(task.status == TaskStatus.DONE for task in by_id.values())


class TestNotificationsAndMemory:
    """Event channels and memory side effects of a run"""

    def setup_method(self):
        self.bus = EventBus(history_max_size=5000)
        self.memory = MemoryStore(MemoryConfig(), backend=InMemoryBackend())

    def test_events(self):
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=RecordingOracle(), bus=self.bus)

        run(scheduler, [new_task("A", task_id="a")])

        statuses = [event["payload"]["task"]["status"] for event in self.bus.events([TASK_UPDATED])]
        assert "executing" in statuses
        assert statuses[-1] == "done"
        log_payload = self.bus.events([LOG])[0]["payload"]
        assert set(log_payload) == {"taskId", "status", "message", "timestamp"}
        finished = self.bus.events([RUN_FINISHED])
        assert finished[0]["payload"]["success"] is True
        assert finished[0]["payload"]["counts"]["done"] == 1

    def test_goal_context_and_learning(self):
        oracle = RecordingOracle(hooks={"B": fail("nonsense")})
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), self.memory, oracle)

        run(scheduler, [new_task("A", task_id="a"), new_task("B", task_id="b", max_retries=0)],
            goal_context={"goal": "ship v2"})

        assert self.memory.read("shortterm", "session_context") == {"goal": "ship v2"}
        assert self.memory.read("longterm", "pattern_a")["result"] == "A done"
        assert "nonsense" in self.memory.read("longterm", "antipattern_b")["lesson"]

    def test_outcome_to_dict(self):
        scheduler = TaskScheduler(AgentConfig(), ToolRegistry(), oracle=RecordingOracle())

        outcome, _ = run(scheduler, [new_task("A", task_id="a")])
        data = outcome.to_dict()

        assert data["success"] is True
        assert data["error"] is None
        assert data["llm_calls"] == 1
